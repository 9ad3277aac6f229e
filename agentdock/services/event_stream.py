"""
Per-session event fan-out for hosts.

EventHub.sink has the RunnerManager host-sink signature, so a hub can be
passed directly as the manager's event sink. Each event is wrapped in an
envelope carrying a per-session sequence number; a bounded history lets a
reconnecting subscriber catch up from the last sequence it saw.

Subscriber queues never block the runner:
- A full queue loses its oldest event (counted per subscriber)
- Gaps are visible to clients through the sequence numbers
"""
from __future__ import annotations

import asyncio
import logging
import time
from collections import defaultdict, deque
from dataclasses import dataclass
from typing import Any, DefaultDict, Deque, Dict, Optional, Set

logger = logging.getLogger(__name__)

DEFAULT_QUEUE_SIZE = 500
DEFAULT_HISTORY_SIZE = 200


@dataclass
class SubscriberStats:
    """Statistics for a subscriber queue."""
    events_received: int = 0
    events_dropped: int = 0
    last_sequence_sent: int = 0


class EventHub:
    """
    Fan out runner events to every subscriber of a session.

    History and sequence counters are kept per session until the host calls
    forget_session, which it must do when a session is deleted; nothing
    else releases them.

    Usage:
        hub = EventHub()
        manager = RunnerManager(launcher, on_event=hub.sink)
        queue = await hub.subscribe(session_id, after_sequence=last_seen)
        envelope = await queue.get()
    """

    def __init__(
        self,
        max_queue_size: int = DEFAULT_QUEUE_SIZE,
        history_size: int = DEFAULT_HISTORY_SIZE,
    ) -> None:
        self._subscribers: DefaultDict[str, Set[asyncio.Queue]] = defaultdict(set)
        self._stats: Dict[asyncio.Queue, SubscriberStats] = {}
        self._history: Dict[str, Deque[dict[str, Any]]] = {}
        self._sequences: DefaultDict[str, int] = defaultdict(int)
        self._lock = asyncio.Lock()
        self._max_queue_size = max_queue_size
        self._history_size = history_size

    async def subscribe(
        self,
        session_id: str,
        after_sequence: Optional[int] = None,
    ) -> asyncio.Queue:
        """
        Subscribe to a session's events.

        Args:
            session_id: The session ID.
            after_sequence: Replay retained events with a greater sequence
                before live ones. None subscribes to live events only.

        Returns:
            Queue receiving event envelopes.
        """
        queue: asyncio.Queue = asyncio.Queue(maxsize=self._max_queue_size)
        stats = SubscriberStats()
        async with self._lock:
            if after_sequence is not None:
                for envelope in self._history.get(session_id, ()):
                    if envelope["sequence"] > after_sequence:
                        self._offer(session_id, queue, stats, envelope)
            self._subscribers[session_id].add(queue)
            self._stats[queue] = stats
        logger.debug(
            f"New subscriber for session {session_id} "
            f"(replayed {stats.events_received} event(s))"
        )
        return queue

    async def unsubscribe(self, session_id: str, queue: asyncio.Queue) -> None:
        """Remove a subscriber queue."""
        async with self._lock:
            subscribers = self._subscribers.get(session_id)
            if not subscribers:
                return
            subscribers.discard(queue)
            stats = self._stats.pop(queue, None)
            if stats and stats.events_dropped > 0:
                logger.info(
                    f"Subscriber for session {session_id} unsubscribed after "
                    f"{stats.events_received} received, {stats.events_dropped} dropped"
                )
            if not subscribers:
                self._subscribers.pop(session_id, None)

    def sink(self, session_id: str, event_type: str, payload: dict[str, Any]) -> None:
        """
        Wrap a runner event in an envelope and publish it.

        Args:
            session_id: The session ID.
            event_type: Runner event type.
            payload: Event data.
        """
        self._sequences[session_id] += 1
        envelope = {
            "type": event_type,
            "data": payload,
            "timestamp": time.time(),
            "sequence": self._sequences[session_id],
            "session_id": session_id,
        }
        history = self._history.get(session_id)
        if history is None:
            history = self._history[session_id] = deque(maxlen=self._history_size)
        history.append(envelope)
        self.publish(session_id, envelope)

    def publish(self, session_id: str, envelope: dict[str, Any]) -> None:
        """Deliver an envelope to every current subscriber without blocking."""
        for queue in list(self._subscribers.get(session_id, ())):
            stats = self._stats.get(queue)
            if stats is not None:
                self._offer(session_id, queue, stats, envelope)

    def _offer(
        self,
        session_id: str,
        queue: asyncio.Queue,
        stats: SubscriberStats,
        envelope: dict[str, Any],
    ) -> None:
        if queue.full():
            try:
                dropped = queue.get_nowait()
            except asyncio.QueueEmpty:
                pass
            else:
                stats.events_dropped += 1
                logger.warning(
                    f"Dropping event (type={dropped.get('type', 'unknown')}, "
                    f"seq={dropped.get('sequence', '?')}) for session {session_id} "
                    f"due to backpressure; {stats.events_dropped} dropped so far"
                )
        queue.put_nowait(envelope)
        stats.events_received += 1
        stats.last_sequence_sent = envelope.get("sequence", 0)

    def forget_session(self, session_id: str) -> None:
        """Drop a session's history and sequence counter (call on session delete)."""
        self._history.pop(session_id, None)
        self._sequences.pop(session_id, None)

    def history(self, session_id: str) -> list[dict[str, Any]]:
        """Retained envelopes for a session, oldest first."""
        return list(self._history.get(session_id, ()))

    def last_sequence(self, session_id: str) -> int:
        """Sequence number of the last event published for a session."""
        return self._sequences.get(session_id, 0)

    async def get_subscriber_stats(self, session_id: str) -> list[dict[str, Any]]:
        async with self._lock:
            result = []
            for queue in self._subscribers.get(session_id, set()):
                stats = self._stats.get(queue, SubscriberStats())
                result.append({
                    "events_received": stats.events_received,
                    "events_dropped": stats.events_dropped,
                    "last_sequence_sent": stats.last_sequence_sent,
                    "queue_size": queue.qsize(),
                })
            return result

    async def get_subscriber_count(self, session_id: str) -> int:
        async with self._lock:
            return len(self._subscribers.get(session_id, set()))
