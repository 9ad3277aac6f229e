"""
Services package for agentdock.

Contains the runner registry, event fan-out and session persistence.
"""
from .event_stream import EventHub
from .runner_manager import RunnerManager
from .session_service import SessionService, SessionStateRecorder

__all__ = [
    "EventHub",
    "RunnerManager",
    "SessionService",
    "SessionStateRecorder",
]
