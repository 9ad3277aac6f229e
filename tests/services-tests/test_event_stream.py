"""
Tests for the per-session event hub.
"""
import pytest

from agentdock.core.scripted import ScriptedLauncher
from agentdock.services.event_stream import EventHub
from agentdock.services.runner_manager import RunnerManager


def _drain(queue) -> list[dict]:
    items = []
    while not queue.empty():
        items.append(queue.get_nowait())
    return items


class TestEventHub:
    """Fan-out, sequencing and backpressure."""

    @pytest.mark.asyncio
    async def test_envelope_and_sequence(self) -> None:
        hub = EventHub()
        queue = await hub.subscribe("s1")

        hub.sink("s1", "text", {"text": "a"})
        hub.sink("s1", "text", {"text": "b"})
        hub.sink("s2", "text", {"text": "other"})

        envelopes = _drain(queue)
        assert [e["sequence"] for e in envelopes] == [1, 2]
        assert envelopes[0]["type"] == "text"
        assert envelopes[0]["data"] == {"text": "a"}
        assert envelopes[0]["session_id"] == "s1"
        assert hub.last_sequence("s1") == 2
        assert hub.last_sequence("s2") == 1

    @pytest.mark.asyncio
    async def test_every_subscriber_receives(self) -> None:
        hub = EventHub()
        first = await hub.subscribe("s1")
        second = await hub.subscribe("s1")

        hub.sink("s1", "result", {})

        assert len(_drain(first)) == len(_drain(second)) == 1
        assert await hub.get_subscriber_count("s1") == 2

    @pytest.mark.asyncio
    async def test_full_queue_drops_oldest(self) -> None:
        hub = EventHub(max_queue_size=2)
        queue = await hub.subscribe("s1")

        for n in range(5):
            hub.sink("s1", "text", {"n": n})

        assert [e["data"]["n"] for e in _drain(queue)] == [3, 4]
        stats = await hub.get_subscriber_stats("s1")
        assert stats[0]["events_dropped"] == 3
        assert stats[0]["events_received"] == 5
        assert stats[0]["last_sequence_sent"] == 5

    @pytest.mark.asyncio
    async def test_catch_up_after_sequence(self) -> None:
        hub = EventHub(history_size=3)
        for n in range(5):
            hub.sink("s1", "text", {"n": n})

        queue = await hub.subscribe("s1", after_sequence=3)
        hub.sink("s1", "exit", {"code": 0, "signal": None})

        assert [e["sequence"] for e in _drain(queue)] == [4, 5, 6]
        assert [e["sequence"] for e in hub.history("s1")] == [4, 5, 6]

    @pytest.mark.asyncio
    async def test_unsubscribe_and_forget(self) -> None:
        hub = EventHub()
        queue = await hub.subscribe("s1")
        hub.sink("s1", "text", {})

        await hub.unsubscribe("s1", queue)
        await hub.unsubscribe("s1", queue)
        hub.sink("s1", "text", {})
        hub.forget_session("s1")

        assert queue.qsize() == 1
        assert await hub.get_subscriber_count("s1") == 0
        assert hub.history("s1") == []
        assert hub.last_sequence("s1") == 0

    @pytest.mark.asyncio
    async def test_as_manager_sink(self) -> None:
        hub = EventHub()
        queue = await hub.subscribe("s1")
        manager = RunnerManager(ScriptedLauncher(scenario="echo"), on_event=hub.sink)

        runner = await manager.start_session("s1", "hi")
        assert await runner.wait_exited(timeout=3)

        envelopes = _drain(queue)
        assert [e["type"] for e in envelopes] == ["system", "text", "result", "exit"]
        assert [e["sequence"] for e in envelopes] == [1, 2, 3, 4]
