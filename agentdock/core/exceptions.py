"""
Runner exceptions.

Custom exception classes for agentdock.

Only LaunchError and DoubleStartError reach the caller of start();
everything else is recovered internally or surfaced as an event.
"""
from typing import Any, Optional


class AgentDockError(Exception):
    """Base exception for runner errors."""
    pass


class LaunchError(AgentDockError):
    """Agent process or sandbox failed to start."""
    pass


class DoubleStartError(AgentDockError):
    """Start issued against a session that already has a live runner."""
    pass


class RunnerStateError(AgentDockError):
    """Operation is not valid in the runner's current phase."""
    pass


class ProtocolDecodeError(AgentDockError):
    """A single line of agent output could not be decoded."""
    pass


class ProtocolDesyncError(AgentDockError):
    """
    The agent output stream lost its line framing.

    messages holds whatever the same chunk completed before the oversized
    line; those are valid and are handled before the failure.
    """

    def __init__(self, message: str, messages: Optional[list[dict[str, Any]]] = None) -> None:
        super().__init__(message)
        self.messages = messages or []


class WriteError(AgentDockError):
    """Delivery of a message to the agent process failed."""
    pass


class ControlRequestError(AgentDockError):
    """A control request was answered with an error or never delivered."""
    pass


class ControlTimeoutError(ControlRequestError):
    """A control request was not answered before its deadline."""
    pass


class UnexpectedExitError(AgentDockError):
    """Agent process terminated without a terminal result."""
    pass
