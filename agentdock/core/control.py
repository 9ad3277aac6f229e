"""
Control request correlator.

Control requests travel out-of-band on the same line protocol as
conversation messages. The agent answers them only at safe points, so
responses may arrive late, coalesced, duplicated or out of order. The
correlator keeps a pending table keyed by request id and resolves each
entry exactly once: on a matching response, on explicit failure, on
timeout, or on cancellation when the process goes away.

Futures handed out by issue() always receive a ControlOutcome result,
never an exception, so an unawaited future is harmless.
"""
import asyncio
import logging
import time
import uuid
from dataclasses import dataclass, field
from enum import StrEnum
from types import MappingProxyType
from typing import Any, Callable, Mapping, Optional

from .constants import DEFAULT_CONTROL_TIMEOUT_SECONDS
from .exceptions import ControlRequestError, ControlTimeoutError
from .line_protocol import build_control_request

logger = logging.getLogger(__name__)


class ControlStatus(StrEnum):
    """How a control request was resolved."""
    SUCCESS = "success"
    ERROR = "error"
    TIMEOUT = "timeout"
    CANCELLED = "cancelled"


@dataclass(frozen=True)
class ControlOutcome:
    """Final resolution of one control request."""

    request_id: str
    subtype: str
    status: ControlStatus
    seq: int
    payload: Mapping[str, Any] = field(default_factory=dict)
    response: Mapping[str, Any] = field(default_factory=dict)
    error: Optional[str] = None
    issued_at: float = 0.0
    resolved_at: float = 0.0

    def __post_init__(self) -> None:
        object.__setattr__(self, "payload", MappingProxyType(dict(self.payload)))
        object.__setattr__(self, "response", MappingProxyType(dict(self.response)))

    @property
    def ok(self) -> bool:
        return self.status == ControlStatus.SUCCESS

    def raise_for_status(self) -> None:
        """
        Raise if the request did not succeed.

        Raises:
            ControlTimeoutError: If the request timed out.
            ControlRequestError: If it failed or was cancelled.
        """
        if self.status == ControlStatus.TIMEOUT:
            raise ControlTimeoutError(
                f"Control request {self.request_id} ({self.subtype}) timed out"
            )
        if self.status != ControlStatus.SUCCESS:
            raise ControlRequestError(
                f"Control request {self.request_id} ({self.subtype}) "
                f"{self.status}: {self.error}"
            )

    def to_dict(self) -> dict[str, Any]:
        return {
            "request_id": self.request_id,
            "subtype": self.subtype,
            "status": self.status.value,
            "response": dict(self.response),
            "error": self.error,
        }


@dataclass
class PendingControlRequest:
    """Entry in the pending table."""

    request_id: str
    subtype: str
    payload: dict[str, Any]
    seq: int
    issued_at: float
    deadline: float
    future: asyncio.Future
    timer: Optional[asyncio.TimerHandle] = None


class ControlCorrelator:
    """
    Pending-request table for out-of-band control requests.

    Only the owning runner touches the table, from its own callbacks,
    so no locking is needed.

    Usage:
        correlator = ControlCorrelator(timeout=30.0)
        message, future = correlator.issue("set_permission_mode", {"mode": "plan"})
        await writer.send(message)
        ...
        correlator.resolve(inbound["response"])
        outcome = await future
    """

    def __init__(
        self,
        timeout: float = DEFAULT_CONTROL_TIMEOUT_SECONDS,
        on_resolved: Optional[Callable[[ControlOutcome], None]] = None,
    ) -> None:
        """
        Initialize the correlator.

        Args:
            timeout: Default seconds before an unanswered request times out.
            on_resolved: Called once for every resolved request.
        """
        self._timeout = timeout
        self._on_resolved = on_resolved
        self._pending: dict[str, PendingControlRequest] = {}
        self._seq = 0
        self.issued_count = 0
        self.ignored_count = 0
        self.resolved_counts: dict[ControlStatus, int] = {status: 0 for status in ControlStatus}

    @property
    def timeout(self) -> float:
        return self._timeout

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    @property
    def resolved_count(self) -> int:
        return sum(self.resolved_counts.values())

    def is_pending(self, request_id: str) -> bool:
        return request_id in self._pending

    def _next_request_id(self) -> str:
        return f"req_{self._seq}_{uuid.uuid4().hex[:8]}"

    def issue(
        self,
        subtype: str,
        payload: Optional[dict[str, Any]] = None,
        timeout: Optional[float] = None,
    ) -> tuple[dict[str, Any], asyncio.Future]:
        """
        Register a new control request.

        Must be called from the event loop thread. The timeout starts now,
        so a request that is queued before it can be written still resolves.

        Args:
            subtype: Control request subtype.
            payload: Extra request fields.
            timeout: Per-request timeout override.

        Returns:
            Tuple of (wire message, future resolving to ControlOutcome).
        """
        loop = asyncio.get_running_loop()
        self._seq += 1
        request_id = self._next_request_id()
        effective_timeout = self._timeout if timeout is None else timeout
        now = time.monotonic()

        pending = PendingControlRequest(
            request_id=request_id,
            subtype=subtype,
            payload=dict(payload or {}),
            seq=self._seq,
            issued_at=now,
            deadline=now + effective_timeout,
            future=loop.create_future(),
        )
        pending.timer = loop.call_later(effective_timeout, self._expire, request_id)
        self._pending[request_id] = pending
        self.issued_count += 1

        logger.debug(f"Issued control request {request_id} ({subtype})")
        return build_control_request(request_id, subtype, pending.payload), pending.future

    def resolve(self, response: Mapping[str, Any]) -> Optional[ControlOutcome]:
        """
        Resolve a pending request from an inbound control_response body.

        Args:
            response: The "response" object of a control_response message.

        Returns:
            The outcome, or None for unknown or already-resolved ids.
        """
        request_id = response.get("request_id")
        pending = self._pending.pop(request_id, None) if isinstance(request_id, str) else None
        if pending is None:
            self.ignored_count += 1
            logger.debug(f"Ignoring control response for unknown request {request_id}")
            return None

        if response.get("subtype") == "success":
            body = response.get("response")
            return self._finish(
                pending,
                ControlStatus.SUCCESS,
                response=body if isinstance(body, dict) else {},
            )

        error = response.get("error") or "control request failed"
        return self._finish(pending, ControlStatus.ERROR, error=str(error))

    def fail(self, request_id: str, error: str) -> Optional[ControlOutcome]:
        """Resolve a pending request as failed (e.g. it could not be written)."""
        pending = self._pending.pop(request_id, None)
        if pending is None:
            return None
        return self._finish(pending, ControlStatus.ERROR, error=error)

    def cancel_all(self, reason: str) -> list[ControlOutcome]:
        """Resolve every pending request as cancelled."""
        outcomes: list[ControlOutcome] = []
        for request_id in list(self._pending):
            pending = self._pending.pop(request_id)
            outcomes.append(self._finish(pending, ControlStatus.CANCELLED, error=reason))
        return outcomes

    def _expire(self, request_id: str) -> None:
        pending = self._pending.pop(request_id, None)
        if pending is None:
            return
        logger.warning(
            f"Control request {request_id} ({pending.subtype}) timed out "
            f"after {pending.deadline - pending.issued_at:.1f}s"
        )
        self._finish(pending, ControlStatus.TIMEOUT, error="timeout")

    def _finish(
        self,
        pending: PendingControlRequest,
        status: ControlStatus,
        response: Optional[dict[str, Any]] = None,
        error: Optional[str] = None,
    ) -> ControlOutcome:
        if pending.timer is not None:
            pending.timer.cancel()
            pending.timer = None

        outcome = ControlOutcome(
            request_id=pending.request_id,
            subtype=pending.subtype,
            status=status,
            seq=pending.seq,
            payload=pending.payload,
            response=response or {},
            error=error,
            issued_at=pending.issued_at,
            resolved_at=time.monotonic(),
        )
        self.resolved_counts[status] += 1

        if not pending.future.done():
            pending.future.set_result(outcome)

        if self._on_resolved is not None:
            try:
                self._on_resolved(outcome)
            except Exception:
                logger.exception(f"Control resolution callback failed for {pending.request_id}")

        return outcome
