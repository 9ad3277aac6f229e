"""
Runner events and state types.

Events are immutable and ordered within a session. The runner phase is
the coarse state machine; the pending prompt records an unresolved
permission request or question so status can be rebuilt on reconnect.
"""
import time
from dataclasses import dataclass, field
from enum import StrEnum
from types import MappingProxyType
from typing import Any, Mapping, Optional


class EventType(StrEnum):
    """Type tag of a runner event."""
    SYSTEM = "system"
    TEXT = "text"
    THINKING = "thinking"
    TOOL_USE = "tool_use"
    TOOL_RESULT = "tool_result"
    PERMISSION_REQUEST = "permission_request"
    ASK_USER_QUESTION = "ask_user_question"
    CONTROL_RESPONSE = "control_response"
    RESULT = "result"
    ERROR = "error"
    EXIT = "exit"
    USAGE = "usage"
    PERMISSION_MODE_CHANGED = "permission_mode_changed"


class RunnerPhase(StrEnum):
    """Coarse runner state."""
    IDLE = "idle"
    STARTING = "starting"
    STREAMING = "streaming"
    WAITING_PERMISSION = "waiting_permission"
    WAITING_QUESTION = "waiting_question"
    RESULT = "result"
    ERRORED = "errored"
    EXITED = "exited"


TERMINAL_PHASES = frozenset({RunnerPhase.ERRORED, RunnerPhase.EXITED})


class PermissionMode(StrEnum):
    """Policy governing whether the agent may act without confirmation."""
    DEFAULT = "default"
    ACCEPT_EDITS = "acceptEdits"
    PLAN = "plan"
    BYPASS_PERMISSIONS = "bypassPermissions"


_PERMISSION_MODE_ALIASES: dict[str, PermissionMode] = {
    "normal": PermissionMode.DEFAULT,
    "ask": PermissionMode.DEFAULT,
    "auto-edit": PermissionMode.ACCEPT_EDITS,
    "autoEdit": PermissionMode.ACCEPT_EDITS,
}


def parse_permission_mode(value: Any) -> Optional[PermissionMode]:
    """
    Normalize a permission mode announced by the agent.

    Args:
        value: Raw mode string (canonical name or alias).

    Returns:
        The PermissionMode, or None if the value is not recognized.
    """
    if isinstance(value, PermissionMode):
        return value
    if not isinstance(value, str):
        return None
    if value in _PERMISSION_MODE_ALIASES:
        return _PERMISSION_MODE_ALIASES[value]
    try:
        return PermissionMode(value)
    except ValueError:
        return None


class PromptKind(StrEnum):
    """Kind of prompt the agent is blocked on."""
    PERMISSION = "permission"
    QUESTION = "question"


@dataclass(frozen=True)
class RunnerEvent:
    """One structured event emitted by a runner."""

    type: EventType
    data: Mapping[str, Any] = field(default_factory=dict)
    timestamp: float = field(default_factory=time.time)

    def __post_init__(self) -> None:
        object.__setattr__(self, "data", MappingProxyType(dict(self.data)))

    def to_payload(self) -> dict[str, Any]:
        """Return a mutable copy of the event data."""
        return dict(self.data)


@dataclass(frozen=True)
class PendingPrompt:
    """An unresolved permission request or question."""

    kind: PromptKind
    request_id: str
    payload: Mapping[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        object.__setattr__(self, "payload", MappingProxyType(dict(self.payload)))

    def to_dict(self) -> dict[str, Any]:
        return {
            "kind": self.kind.value,
            "request_id": self.request_id,
            "payload": dict(self.payload),
        }


@dataclass(frozen=True)
class RunnerSnapshot:
    """Point-in-time view of a runner for persistence."""

    session_id: str
    phase: RunnerPhase
    permission_mode: Optional[PermissionMode] = None
    pending_prompt: Optional[PendingPrompt] = None
    external_session_id: Optional[str] = None
