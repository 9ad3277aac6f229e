"""
Session status projection.

Derives the coarse, persisted session status from runner state so a
client reconnecting mid-session sees the right status without replaying
history. "running" means the agent is computing, never merely that a
session exists.
"""
from enum import StrEnum
from typing import Optional

from .events import PromptKind, RunnerPhase, RunnerSnapshot


class SessionStatus(StrEnum):
    """Externally persisted session status."""
    RUNNING = "running"
    WAITING_INPUT = "waiting_input"
    WAITING_PERMISSION = "waiting_permission"
    IDLE = "idle"


def project_session_status(
    phase: Optional[RunnerPhase],
    pending_prompt: Optional[PromptKind] = None,
) -> SessionStatus:
    """
    Project runner state onto a session status.

    Args:
        phase: Runner phase, or None when no runner exists.
        pending_prompt: Kind of the oldest unresolved prompt, if any.

    Returns:
        The status to persist.
    """
    if phase is None or phase in (
        RunnerPhase.IDLE,
        RunnerPhase.RESULT,
        RunnerPhase.ERRORED,
        RunnerPhase.EXITED,
    ):
        return SessionStatus.IDLE

    if pending_prompt == PromptKind.PERMISSION:
        return SessionStatus.WAITING_PERMISSION
    if pending_prompt == PromptKind.QUESTION:
        return SessionStatus.WAITING_INPUT

    if phase == RunnerPhase.WAITING_PERMISSION:
        return SessionStatus.WAITING_PERMISSION
    if phase == RunnerPhase.WAITING_QUESTION:
        return SessionStatus.WAITING_INPUT

    return SessionStatus.RUNNING


def project_snapshot(snapshot: Optional[RunnerSnapshot]) -> SessionStatus:
    """Project a runner snapshot (None when the session has no runner)."""
    if snapshot is None:
        return SessionStatus.IDLE
    prompt = snapshot.pending_prompt
    return project_session_status(snapshot.phase, prompt.kind if prompt else None)
