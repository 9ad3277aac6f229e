"""
Runner manager for agentdock hosts.

Registry mapping session id to at most one live SessionRunner. Every
runner event is re-tagged with its session id and forwarded to a single
host sink; a runner is removed from the registry as soon as it exits,
before its exit event reaches the sink.

The host owns the manager instance: create it at startup and call
shutdown() at teardown.
"""
import asyncio
import logging
from typing import Any, Callable, Optional, Sequence, Union

from ..config import RunnerSettings
from ..core.events import EventType, PermissionMode, RunnerEvent, RunnerSnapshot
from ..core.exceptions import DoubleStartError
from ..core.launcher import ProcessLauncher
from ..core.runner import PermissionDecision, SessionRunner
from ..core.schemas import Attachment, StartOptions

logger = logging.getLogger(__name__)

HostEventSink = Callable[[str, str, dict[str, Any]], None]
HostStateSink = Callable[[RunnerSnapshot], None]


class RunnerManager:
    """
    Manages one SessionRunner per session.

    All registry reads are dictionary lookups; all mutations happen on the
    event loop, so no locking is needed.

    Usage:
        manager = RunnerManager(launcher, on_event=hub.sink)
        await manager.start_session(session_id, "hello", StartOptions(working_dir=path))
        await manager.send_user_message(session_id, "continue")
        await manager.shutdown()
    """

    def __init__(
        self,
        launcher: ProcessLauncher,
        on_event: HostEventSink,
        on_state: Optional[HostStateSink] = None,
        settings: Optional[RunnerSettings] = None,
    ) -> None:
        """
        Initialize the manager.

        Args:
            launcher: Launcher shared by every runner.
            on_event: Sink receiving (session_id, event_type, payload).
            on_state: Optional sink receiving runner snapshots.
            settings: Runner settings (timeouts, limits).
        """
        self._launcher = launcher
        self._on_event = on_event
        self._on_state = on_state
        self._settings = settings or RunnerSettings()
        self._runners: dict[str, SessionRunner] = {}

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    async def start_session(
        self,
        session_id: str,
        message: str,
        options: Optional[StartOptions] = None,
    ) -> SessionRunner:
        """
        Start a runner for a session.

        Args:
            session_id: The session ID.
            message: Initial user message.
            options: Start options.

        Returns:
            The started runner.

        Raises:
            DoubleStartError: If a live runner exists for the session.
            LaunchError: If the agent could not be launched.
        """
        if session_id in self._runners:
            raise DoubleStartError(f"Runner already active for session: {session_id}")

        runner: SessionRunner

        def forward(event: RunnerEvent) -> None:
            self._forward(session_id, runner, event)

        runner = SessionRunner(
            session_id,
            self._launcher,
            on_event=forward,
            on_state_change=self._on_state,
            control_timeout=self._settings.control_timeout_seconds,
            stop_grace=self._settings.stop_grace_seconds,
            max_line_bytes=self._settings.max_line_bytes,
        )
        # Reserve the slot before awaiting so a concurrent start is rejected
        self._runners[session_id] = runner

        try:
            await runner.start(message, options)
        except Exception:
            self._discard(session_id, runner)
            raise

        logger.info(f"Started runner for session: {session_id}")
        return runner

    async def stop_session(self, session_id: str) -> bool:
        """
        Stop the runner for a session.

        Returns:
            True if a runner was found, False for unknown sessions.
        """
        runner = self._runners.get(session_id)
        if runner is None:
            return False
        await runner.stop()
        return True

    async def stop_all(self) -> None:
        """Request termination of every live runner."""
        runners = list(self._runners.values())
        if runners:
            logger.info(f"Stopping {len(runners)} runner(s)")
        await asyncio.gather(*(runner.stop() for runner in runners))

    async def shutdown(self, timeout: Optional[float] = None) -> bool:
        """
        Stop every runner and wait for them to exit.

        Args:
            timeout: Seconds to wait per runner (None waits indefinitely).

        Returns:
            True if every runner exited in time.
        """
        runners = list(self._runners.values())
        await self.stop_all()
        results = await asyncio.gather(*(runner.wait_exited(timeout) for runner in runners))
        if not all(results):
            logger.warning(
                f"{results.count(False)} runner(s) did not exit within {timeout}s"
            )
        return all(results)

    # -------------------------------------------------------------------------
    # Commands
    # -------------------------------------------------------------------------

    async def send_user_message(
        self,
        session_id: str,
        text: str,
        attachments: Optional[Sequence[Attachment]] = None,
    ) -> bool:
        runner = self._runners.get(session_id)
        if runner is None:
            return False
        return await runner.send_user_message(text, attachments)

    async def respond_permission(
        self,
        session_id: str,
        request_id: str,
        decision: PermissionDecision,
    ) -> bool:
        runner = self._runners.get(session_id)
        if runner is None:
            return False
        return await runner.respond_permission(request_id, decision)

    async def respond_question(
        self,
        session_id: str,
        request_id: str,
        answers: dict[str, str],
    ) -> bool:
        runner = self._runners.get(session_id)
        if runner is None:
            return False
        return await runner.respond_question(request_id, answers)

    def request_permission_mode_change(
        self,
        session_id: str,
        mode: Union[PermissionMode, str],
        timeout: Optional[float] = None,
    ) -> Optional[asyncio.Future]:
        """
        Ask a session's agent to change permission mode.

        Returns:
            Future resolving to a ControlOutcome, or None if the session
            has no live runner.
        """
        runner = self._runners.get(session_id)
        if runner is None:
            return None
        return runner.request_permission_mode_change(mode, timeout=timeout)

    async def interrupt(self, session_id: str) -> bool:
        runner = self._runners.get(session_id)
        if runner is None:
            return False
        return await runner.interrupt()

    # -------------------------------------------------------------------------
    # Registry reads
    # -------------------------------------------------------------------------

    def get_runner(self, session_id: str) -> Optional[SessionRunner]:
        return self._runners.get(session_id)

    def has_running_session(self, session_id: str) -> bool:
        return session_id in self._runners

    def get_running_count(self) -> int:
        return len(self._runners)

    def session_ids(self) -> list[str]:
        return list(self._runners)

    # -------------------------------------------------------------------------
    # Internals
    # -------------------------------------------------------------------------

    def _discard(self, session_id: str, runner: SessionRunner) -> None:
        if self._runners.get(session_id) is runner:
            del self._runners[session_id]
            logger.debug(f"Removed runner for session: {session_id}")

    def _forward(self, session_id: str, runner: SessionRunner, event: RunnerEvent) -> None:
        if event.type == EventType.EXIT:
            self._discard(session_id, runner)
        try:
            self._on_event(session_id, event.type.value, event.to_payload())
        except Exception:
            logger.exception(f"Event sink failed for session {session_id} ({event.type})")
