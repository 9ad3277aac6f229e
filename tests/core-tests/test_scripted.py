"""
Tests for the scripted agent process used in place of the real agent.
"""
import asyncio

import pytest

from agentdock.core.exceptions import LaunchError, WriteError
from agentdock.core.line_protocol import (
    LineDecoder,
    build_control_request,
    build_user_message,
    encode_message,
)
from agentdock.core.schemas import LaunchRequest
from agentdock.core.scripted import SCENARIOS, ScriptedLauncher, ScriptedProcess, ScriptStep


async def _read_messages(process: ScriptedProcess, count: int, timeout: float = 2.0) -> list[dict]:
    decoder = LineDecoder()
    messages: list[dict] = []

    async def collect() -> None:
        while len(messages) < count:
            chunk = await process.read()
            if not chunk:
                break
            messages.extend(decoder.feed(chunk))

    await asyncio.wait_for(collect(), timeout=timeout)
    return messages


def _request(message: str = "hi") -> LaunchRequest:
    return LaunchRequest(session_id="s1", message=message, working_dir="/tmp")


class TestScriptedProcess:
    """Replay and inbound handling."""

    @pytest.mark.asyncio
    async def test_waits_for_prompt_and_interpolates(self) -> None:
        process = ScriptedProcess(steps=[ScriptStep.text("You said {input}")])

        await process.write(encode_message(build_user_message("hello")))
        messages = await _read_messages(process, 1)

        assert messages[0]["message"]["content"][0]["text"] == "You said hello"
        assert process.last_input == "hello"

    @pytest.mark.asyncio
    async def test_exits_zero_after_stdin_closed(self) -> None:
        process = ScriptedProcess(steps=[ScriptStep.result("done")])
        await process.write(encode_message(build_user_message("hi")))
        await _read_messages(process, 1)

        await process.close_stdin()
        status = await asyncio.wait_for(process.wait(), timeout=2)

        assert status.code == 0
        assert await process.read() == b""
        with pytest.raises(WriteError):
            await process.write(b"{}\n")

    @pytest.mark.asyncio
    async def test_exit_step(self) -> None:
        process = ScriptedProcess(steps=[ScriptStep.exit(2), ScriptStep.text("never")])
        await process.write(encode_message(build_user_message("hi")))

        status = await asyncio.wait_for(process.wait(), timeout=2)

        assert status.code == 2
        assert await process.read() == b""

    @pytest.mark.asyncio
    async def test_mode_request_answered_after_delay(self) -> None:
        process = ScriptedProcess(steps=[ScriptStep.wait_for_input()], control_delay=0.05)
        await process.write(encode_message(build_user_message("hi")))
        request = build_control_request("req_1", "set_permission_mode", {"mode": "plan"})

        await process.write(encode_message(request))
        messages = await _read_messages(process, 1)

        assert messages[0]["type"] == "control_response"
        assert messages[0]["response"] == {
            "subtype": "success",
            "request_id": "req_1",
            "response": {"mode": "plan"},
        }
        process.kill()

    @pytest.mark.asyncio
    async def test_duplicate_and_dropped_responses(self) -> None:
        duplicating = ScriptedProcess(steps=[ScriptStep.wait_for_input()], duplicate_responses=True)
        await duplicating.write(encode_message(build_user_message("hi")))
        await duplicating.write(encode_message(
            build_control_request("req_1", "set_permission_mode", {"mode": "plan"})
        ))

        messages = await _read_messages(duplicating, 2)

        assert [m["response"]["request_id"] for m in messages] == ["req_1", "req_1"]
        duplicating.kill()

        dropping = ScriptedProcess(steps=[ScriptStep.wait_for_input()], drop_rate=1.0)
        await dropping.write(encode_message(build_user_message("hi")))
        await dropping.write(encode_message(
            build_control_request("req_2", "set_permission_mode", {"mode": "plan"})
        ))
        await asyncio.sleep(0.02)

        assert dropping.dropped == ["req_2"]
        dropping.kill()

    @pytest.mark.asyncio
    async def test_terminate_can_be_ignored(self) -> None:
        process = ScriptedProcess(steps=[ScriptStep.wait_for_input()], ignore_terminate=True)
        await process.write(encode_message(build_user_message("hi")))

        process.terminate()
        assert not process.exited
        process.kill()

        status = await asyncio.wait_for(process.wait(), timeout=2)
        assert status.signal == "SIGKILL"
        assert process.signals == ["SIGTERM", "SIGKILL"]

    @pytest.mark.asyncio
    async def test_chunked_output(self) -> None:
        process = ScriptedProcess(steps=[ScriptStep.text("chunks")], chunk_size=3)
        await process.write(encode_message(build_user_message("hi")))

        chunks: list[bytes] = []
        while not chunks or not chunks[-1].endswith(b"\n"):
            chunks.append(await asyncio.wait_for(process.read(), timeout=2))

        assert all(len(chunk) <= 3 for chunk in chunks)
        decoded = LineDecoder().feed(b"".join(chunks))
        assert decoded[0]["message"]["content"][0]["text"] == "chunks"
        process.kill()


class TestScriptedLauncher:
    """Launcher behaviour."""

    @pytest.mark.asyncio
    async def test_delivers_initial_message(self) -> None:
        launcher = ScriptedLauncher(scenario="echo")

        process = await launcher.launch(_request("ping"))
        messages = await _read_messages(process, 3)

        assert [m["type"] for m in messages] == ["system", "assistant", "result"]
        assert messages[1]["message"]["content"][0]["text"] == "Echo: ping"
        assert launcher.last_process is process
        process.kill()

    @pytest.mark.asyncio
    async def test_failure(self) -> None:
        launcher = ScriptedLauncher(fail_with="no runtime")

        with pytest.raises(LaunchError, match="no runtime"):
            await launcher.launch(_request())
        assert launcher.processes == []
        assert len(launcher.requests) == 1

    @pytest.mark.asyncio
    async def test_steps_built_per_request(self) -> None:
        launcher = ScriptedLauncher(steps=lambda request: [ScriptStep.text(request.session_id)])

        process = await launcher.launch(_request())
        messages = await _read_messages(process, 1)

        assert messages[0]["message"]["content"][0]["text"] == "s1"
        process.kill()

    def test_builtin_scenarios(self) -> None:
        assert set(SCENARIOS) == {"echo", "permission", "ask-question", "multi-step"}
        for build in SCENARIOS.values():
            steps = build()
            assert steps[-1].message["type"] == "result"
