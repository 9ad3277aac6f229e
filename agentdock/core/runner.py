"""
Session runner: one agent process, one state machine.

Phases:
    idle -> starting -> streaming <-> waiting_permission | waiting_question
         -> result -> exited
    any  -> errored -> exited

The runner owns its process handle, line decoder, writer and control
correlator. All of its state is mutated from its own read loop and timer
callbacks; host calls only issue writes and read the state.

Events are delivered in process emission order to a single sink.
"""
import asyncio
import json
import logging
import os
from collections import OrderedDict
from typing import Any, Callable, Coroutine, Optional, Sequence, Union

from .constants import (
    ASK_USER_QUESTION_TOOL,
    CONTROL_INTERRUPT,
    CONTROL_SET_PERMISSION_MODE,
    DEFAULT_CONTROL_TIMEOUT_SECONDS,
    DEFAULT_MAX_LINE_BYTES,
    DEFAULT_STOP_GRACE_SECONDS,
    MSG_ASSISTANT,
    MSG_CONTROL_REQUEST,
    MSG_CONTROL_RESPONSE,
    MSG_RESULT,
    MSG_SYSTEM,
    MSG_USER,
)
from .control import ControlCorrelator, ControlOutcome
from .events import (
    TERMINAL_PHASES,
    EventType,
    PendingPrompt,
    PermissionMode,
    PromptKind,
    RunnerEvent,
    RunnerPhase,
    RunnerSnapshot,
    parse_permission_mode,
)
from .exceptions import (
    DoubleStartError,
    LaunchError,
    ProtocolDesyncError,
    RunnerStateError,
    UnexpectedExitError,
)
from .launcher import AgentProcess, ProcessLauncher
from .line_protocol import (
    LineDecoder,
    LineWriter,
    build_control_response,
    build_permission_decision,
    build_user_message,
    is_permission_prompt,
)
from .schemas import Attachment, ExitStatus, LaunchRequest, StartOptions

logger = logging.getLogger(__name__)

EventSink = Callable[[RunnerEvent], None]
StateSink = Callable[[RunnerSnapshot], None]
PermissionDecision = Union[str, dict[str, Any]]

_ACTIVE_PHASES = frozenset({
    RunnerPhase.STREAMING,
    RunnerPhase.WAITING_PERMISSION,
    RunnerPhase.WAITING_QUESTION,
})


def _question_texts(questions: Any) -> list[str]:
    if not isinstance(questions, list):
        return []
    return [
        q["question"] for q in questions
        if isinstance(q, dict) and isinstance(q.get("question"), str)
    ]


def format_answers(questions: Sequence[str], answers: dict[str, str]) -> str:
    """Render question answers as a plain user message."""
    if len(questions) == 1:
        return answers[questions[0]]
    return "\n".join(f"{question}: {answers[question]}" for question in questions)


class SessionRunner:
    """
    Runs one agent process for one session.

    Usage:
        runner = SessionRunner("s1", launcher, on_event=sink)
        await runner.start("hello", StartOptions(working_dir="/repo"))
        await runner.send_user_message("and then?")
        await runner.stop()
    """

    def __init__(
        self,
        session_id: str,
        launcher: ProcessLauncher,
        on_event: EventSink,
        on_state_change: Optional[StateSink] = None,
        control_timeout: float = DEFAULT_CONTROL_TIMEOUT_SECONDS,
        stop_grace: float = DEFAULT_STOP_GRACE_SECONDS,
        max_line_bytes: int = DEFAULT_MAX_LINE_BYTES,
    ) -> None:
        """
        Initialize the runner.

        Args:
            session_id: Session this runner serves.
            launcher: Process launcher (real or scripted).
            on_event: Sink receiving every event in order.
            on_state_change: Called with a snapshot whenever phase,
                permission mode or pending prompt changes.
            control_timeout: Seconds before an unanswered control request
                resolves as a timeout.
            stop_grace: Seconds between SIGTERM and SIGKILL on stop.
            max_line_bytes: Largest tolerated partial line.
        """
        self.session_id = session_id
        self._launcher = launcher
        self._on_event = on_event
        self._on_state_change = on_state_change
        self._stop_grace = stop_grace

        self._phase = RunnerPhase.IDLE
        self._permission_mode: Optional[PermissionMode] = None
        self._mode_seq = 0
        self._external_session_id: Optional[str] = None
        self._prompts: OrderedDict[str, PendingPrompt] = OrderedDict()
        self._partial_answers: dict[str, dict[str, str]] = {}

        self._process: Optional[AgentProcess] = None
        self._writer: Optional[LineWriter] = None
        self._decoder = LineDecoder(max_line_bytes=max_line_bytes)
        self._correlator = ControlCorrelator(
            timeout=control_timeout,
            on_resolved=self._on_control_resolved,
        )
        self._outbox: list[dict[str, Any]] = []

        self._pump_task: Optional[asyncio.Task] = None
        self._tasks: set[asyncio.Task] = set()
        self._kill_timer: Optional[asyncio.TimerHandle] = None
        self._exited = asyncio.Event()
        self._exit_status: Optional[ExitStatus] = None
        self._stop_requested = False
        self._result_seen = False
        self._last_state_key: Optional[tuple] = None

    # -------------------------------------------------------------------------
    # State
    # -------------------------------------------------------------------------

    @property
    def phase(self) -> RunnerPhase:
        return self._phase

    @property
    def permission_mode(self) -> Optional[PermissionMode]:
        """Last confirmed permission mode (acknowledged or announced)."""
        return self._permission_mode

    @property
    def pending_prompt(self) -> Optional[PendingPrompt]:
        return next(iter(self._prompts.values()), None)

    @property
    def external_session_id(self) -> Optional[str]:
        return self._external_session_id

    @property
    def pid(self) -> Optional[int]:
        return self._process.pid if self._process is not None else None

    @property
    def exit_status(self) -> Optional[ExitStatus]:
        return self._exit_status

    @property
    def is_terminal(self) -> bool:
        return self._phase in TERMINAL_PHASES

    @property
    def correlator(self) -> ControlCorrelator:
        return self._correlator

    @property
    def decoder(self) -> LineDecoder:
        return self._decoder

    def snapshot(self) -> RunnerSnapshot:
        return RunnerSnapshot(
            session_id=self.session_id,
            phase=self._phase,
            permission_mode=self._permission_mode,
            pending_prompt=self.pending_prompt,
            external_session_id=self._external_session_id,
        )

    def _set_phase(self, phase: RunnerPhase) -> None:
        if phase != self._phase:
            logger.debug(f"Session {self.session_id}: {self._phase} -> {phase}")
            self._phase = phase
        self._notify_state()

    def _refresh_phase(self) -> None:
        """Derive the active phase from the oldest unresolved prompt."""
        if self._phase not in _ACTIVE_PHASES:
            self._notify_state()
            return
        prompt = self.pending_prompt
        if prompt is None:
            self._set_phase(RunnerPhase.STREAMING)
        elif prompt.kind == PromptKind.PERMISSION:
            self._set_phase(RunnerPhase.WAITING_PERMISSION)
        else:
            self._set_phase(RunnerPhase.WAITING_QUESTION)

    def _notify_state(self) -> None:
        key = (
            self._phase,
            self._permission_mode,
            tuple(self._prompts.values()),
            self._external_session_id,
        )
        if key == self._last_state_key:
            return
        self._last_state_key = key
        if self._on_state_change is None:
            return
        try:
            self._on_state_change(self.snapshot())
        except Exception:
            logger.exception(f"Session {self.session_id}: state callback failed")

    def _emit(self, event_type: EventType, data: Optional[dict[str, Any]] = None) -> None:
        event = RunnerEvent(type=event_type, data=data or {})
        try:
            self._on_event(event)
        except Exception:
            logger.exception(f"Session {self.session_id}: event sink failed on {event_type}")

    def _spawn(self, coro: Coroutine[Any, Any, Any]) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    # -------------------------------------------------------------------------
    # Commands
    # -------------------------------------------------------------------------

    async def start(self, message: str, options: Optional[StartOptions] = None) -> None:
        """
        Launch the agent with an initial message.

        Args:
            message: Initial user message.
            options: Start options.

        Raises:
            DoubleStartError: If the runner was already started.
            RunnerStateError: If the runner has already exited.
            LaunchError: If the process could not be launched.
        """
        if self._phase in TERMINAL_PHASES:
            raise RunnerStateError(f"Session {self.session_id}: runner has exited")
        if self._phase != RunnerPhase.IDLE or self._stop_requested:
            raise DoubleStartError(f"Session {self.session_id} is already running")

        options = options or StartOptions()
        if options.permission_mode is not None:
            self._permission_mode = options.permission_mode
        request = LaunchRequest(
            session_id=self.session_id,
            message=message,
            working_dir=options.working_dir or os.getcwd(),
            resume_id=options.resume_id,
            attachments=list(options.attachments),
            container_config=options.container_config,
            permission_mode=options.permission_mode,
            allowed_tools=list(options.allowed_tools),
            disallowed_tools=list(options.disallowed_tools),
            thinking_enabled=options.thinking_enabled,
        )

        self._set_phase(RunnerPhase.STARTING)
        try:
            process = await self._launcher.launch(request)
        except LaunchError as e:
            logger.error(f"Session {self.session_id}: launch failed: {e}")
            self._set_phase(RunnerPhase.ERRORED)
            self._emit(EventType.ERROR, {"kind": "launch", "message": str(e)})
            self._finish(ExitStatus(code=None))
            raise

        self._process = process
        self._writer = LineWriter(process.write)
        self._pump_task = asyncio.create_task(self._pump())

        if self._stop_requested:
            logger.info(f"Session {self.session_id}: stop requested during launch, terminating")
            self._terminate_with_grace()
            return

        outbox, self._outbox = self._outbox, []
        for queued in outbox:
            self._spawn(self._send_control(queued))

    async def send_user_message(
        self,
        text: str,
        attachments: Optional[Sequence[Attachment]] = None,
    ) -> bool:
        """
        Send a follow-up user message.

        A free-form message while a question is pending answers it.

        Returns:
            False if the runner is not accepting messages or the write failed.
        """
        if self._phase not in (RunnerPhase.STREAMING, RunnerPhase.WAITING_QUESTION):
            logger.debug(
                f"Session {self.session_id}: dropping user message in phase {self._phase}"
            )
            return False

        if self._phase == RunnerPhase.WAITING_QUESTION:
            prompt = self.pending_prompt
            assert prompt is not None
            control_id = prompt.payload.get("control_request_id")
            if control_id:
                # The agent is blocked on the tool call; the text becomes the tool's answer
                ok = await self._write(build_permission_decision(control_id, allow=False, message=text))
            else:
                ok = await self._write(build_user_message(text, attachments))
            if ok:
                self._clear_prompt(prompt.request_id)
            return ok

        return await self._write(build_user_message(text, attachments))

    async def respond_permission(self, request_id: str, decision: PermissionDecision) -> bool:
        """
        Answer a pending permission request.

        Args:
            request_id: Id from the permission_request event.
            decision: "allow", "deny", or a dict with "behavior" plus
                optional "updatedInput" / "message".

        Returns:
            True if the decision was written.
        """
        prompt = self._prompts.get(request_id)
        if prompt is None or prompt.kind != PromptKind.PERMISSION:
            logger.debug(f"Session {self.session_id}: no pending permission {request_id}")
            return False

        if isinstance(decision, str):
            decision = {"behavior": decision}
        allow = decision.get("behavior") == "allow"
        tool_input = decision.get("updatedInput")
        if tool_input is None:
            tool_input = dict(prompt.payload.get("input") or {})

        message = build_permission_decision(
            request_id,
            allow=allow,
            tool_input=tool_input,
            message=decision.get("message"),
        )
        if not await self._write(message):
            return False
        logger.info(
            f"Session {self.session_id}: permission {request_id} "
            f"{'allowed' if allow else 'denied'}"
        )
        self._clear_prompt(request_id)
        return True

    async def respond_question(self, request_id: str, answers: dict[str, str]) -> bool:
        """
        Answer some or all sub-questions of a pending question.

        Answers accumulate; the response is delivered once every question
        has an answer.

        Args:
            request_id: Id from the ask_user_question event.
            answers: Mapping of question text to answer.

        Returns:
            True if the answers were accepted (and, when complete, written).
        """
        prompt = self._find_question(request_id)
        if prompt is None:
            logger.debug(f"Session {self.session_id}: no pending question {request_id}")
            return False

        questions = _question_texts(prompt.payload.get("questions"))
        collected = dict(self._partial_answers.get(prompt.request_id, {}))
        collected.update({k: v for k, v in answers.items() if not questions or k in questions})
        self._partial_answers[prompt.request_id] = collected

        missing = [q for q in questions if q not in collected]
        if missing:
            logger.debug(
                f"Session {self.session_id}: question {prompt.request_id} "
                f"awaiting {len(missing)} more answer(s)"
            )
            return True

        control_id = prompt.payload.get("control_request_id")
        if control_id:
            updated = dict(prompt.payload.get("input") or {})
            updated["answers"] = collected
            message = build_permission_decision(control_id, allow=True, tool_input=updated)
        else:
            text = format_answers(questions, collected) if questions else json.dumps(collected)
            message = build_user_message(text)

        if not await self._write(message):
            return False
        self._clear_prompt(prompt.request_id)
        return True

    def request_permission_mode_change(
        self,
        mode: Union[PermissionMode, str],
        timeout: Optional[float] = None,
    ) -> Optional[asyncio.Future]:
        """
        Ask the agent to change permission mode.

        The confirmed mode changes only when the agent acknowledges;
        requests issued before launch are queued.

        Args:
            mode: Target mode (canonical name or alias).
            timeout: Per-request timeout override.

        Returns:
            Future resolving to a ControlOutcome, or None if the runner
            has exited.

        Raises:
            ValueError: If the mode is not recognized.
        """
        if self._phase in TERMINAL_PHASES:
            return None
        target = parse_permission_mode(mode)
        if target is None:
            raise ValueError(f"Unknown permission mode: {mode}")

        message, future = self._correlator.issue(
            CONTROL_SET_PERMISSION_MODE,
            {"mode": target.value},
            timeout=timeout,
        )
        if self._writer is None:
            self._outbox.append(message)
        else:
            self._spawn(self._send_control(message))
        return future

    async def interrupt(self) -> bool:
        """
        Ask the agent to abandon the current turn. Best effort.

        Returns:
            True if the interrupt request was written.
        """
        if self._phase != RunnerPhase.STREAMING:
            return False
        message, _ = self._correlator.issue(CONTROL_INTERRUPT)
        return await self._send_control(message)

    async def stop(self) -> None:
        """
        Terminate the agent. Safe in any phase and idempotent.

        Before the process exists the termination is deferred until
        launch completes or fails.
        """
        if self._stop_requested or self._phase in TERMINAL_PHASES:
            return
        self._stop_requested = True

        if self._phase == RunnerPhase.IDLE:
            self._finish(ExitStatus(code=None))
            return

        if self._process is None:
            logger.info(f"Session {self.session_id}: stop deferred until launch completes")
            return

        logger.info(f"Session {self.session_id}: stopping agent (pid {self._process.pid})")
        self._terminate_with_grace()

    async def wait_exited(self, timeout: Optional[float] = None) -> bool:
        """Wait for the runner to reach exited. Returns False on timeout."""
        try:
            await asyncio.wait_for(self._exited.wait(), timeout=timeout)
        except asyncio.TimeoutError:
            return False
        return True

    # -------------------------------------------------------------------------
    # Writes
    # -------------------------------------------------------------------------

    async def _write(self, message: dict[str, Any]) -> bool:
        if self._writer is None or self._phase in TERMINAL_PHASES:
            return False
        return await self._writer.send(message)

    async def _send_control(self, message: dict[str, Any]) -> bool:
        request_id = message["request_id"]
        if not self._correlator.is_pending(request_id):
            return False
        if await self._write(message):
            return True
        # A stopping runner cancels everything still pending when it exits
        if not self._stop_requested:
            self._correlator.fail(request_id, "write failed")
        return False

    def _terminate_with_grace(self) -> None:
        if self._process is None:
            return
        self._process.terminate()
        if self._kill_timer is None:
            loop = asyncio.get_running_loop()
            self._kill_timer = loop.call_later(self._stop_grace, self._force_kill)

    def _force_kill(self) -> None:
        self._kill_timer = None
        if self._process is not None and not self._exited.is_set():
            logger.warning(
                f"Session {self.session_id}: agent ignored SIGTERM for "
                f"{self._stop_grace}s, killing"
            )
            self._process.kill()

    # -------------------------------------------------------------------------
    # Read loop
    # -------------------------------------------------------------------------

    async def _pump(self) -> None:
        assert self._process is not None
        process = self._process
        try:
            while True:
                chunk = await process.read()
                if not chunk:
                    break
                for message in self._decoder.feed(chunk):
                    self._handle_message(message)
            for message in self._decoder.flush():
                self._handle_message(message)
        except ProtocolDesyncError as e:
            for message in e.messages:
                self._handle_message(message)
            self._fail("desync", str(e))
            self._terminate_with_grace()
        except OSError as e:
            self._fail("io", f"Output stream failed: {e}")
            self._terminate_with_grace()
        except Exception as e:
            logger.exception(f"Session {self.session_id}: read loop failed")
            self._fail("internal", str(e))
            self._terminate_with_grace()

        status = await process.wait()
        self._on_process_exit(status)

    def _fail(self, kind: str, message: str) -> None:
        if self._phase == RunnerPhase.ERRORED:
            return
        logger.warning(f"Session {self.session_id}: {kind}: {message}")
        self._set_phase(RunnerPhase.ERRORED)
        self._emit(EventType.ERROR, {"kind": kind, "message": message})

    def _on_process_exit(self, status: ExitStatus) -> None:
        if self._kill_timer is not None:
            self._kill_timer.cancel()
            self._kill_timer = None

        if not self._result_seen and not self._stop_requested:
            error = UnexpectedExitError(
                f"Agent exited without a result (code={status.code}, signal={status.signal})"
            )
            self._fail("unexpected_exit", str(error))

        logger.info(
            f"Session {self.session_id}: agent exited "
            f"(code={status.code}, signal={status.signal})"
        )
        self._finish(status)

    def _finish(self, status: ExitStatus) -> None:
        self._correlator.cancel_all("process exited")
        self._exit_status = status
        self._prompts.clear()
        self._partial_answers.clear()
        self._outbox.clear()
        self._set_phase(RunnerPhase.EXITED)
        self._emit(EventType.EXIT, status.as_dict())
        self._exited.set()

    # -------------------------------------------------------------------------
    # Inbound messages
    # -------------------------------------------------------------------------

    def _handle_message(self, message: dict[str, Any]) -> None:
        msg_type = message.get("type")

        if self._phase == RunnerPhase.STARTING and self._marks_ready(message):
            self._set_phase(RunnerPhase.STREAMING)

        if msg_type == MSG_SYSTEM:
            self._handle_system(message)
        elif msg_type == MSG_ASSISTANT:
            self._handle_assistant(message)
        elif msg_type == MSG_USER:
            self._handle_user(message)
        elif msg_type == MSG_RESULT:
            self._handle_result(message)
        elif msg_type == MSG_CONTROL_RESPONSE:
            response = message.get("response")
            self._correlator.resolve(response if isinstance(response, dict) else {})
        elif msg_type == MSG_CONTROL_REQUEST:
            self._handle_control_request(message)
        else:
            logger.debug(f"Session {self.session_id}: ignoring message type {msg_type}")

    @staticmethod
    def _marks_ready(message: dict[str, Any]) -> bool:
        msg_type = message.get("type")
        if msg_type == MSG_USER:
            return bool(_tool_result_blocks(message))
        return msg_type in (
            MSG_SYSTEM, MSG_ASSISTANT, MSG_RESULT, MSG_CONTROL_REQUEST, MSG_CONTROL_RESPONSE,
        )

    def _handle_system(self, message: dict[str, Any]) -> None:
        session_id = message.get("session_id")
        if isinstance(session_id, str) and session_id:
            self._external_session_id = session_id

        raw_mode = message.get("permissionMode")
        self._emit(EventType.SYSTEM, {
            "subtype": message.get("subtype"),
            "session_id": session_id,
            "model": message.get("model"),
            "tools": message.get("tools"),
            "permission_mode": raw_mode,
            "cwd": message.get("cwd"),
        })
        if raw_mode is not None:
            mode = parse_permission_mode(raw_mode)
            if mode is None:
                logger.debug(f"Session {self.session_id}: unknown permission mode {raw_mode}")
            else:
                self._apply_permission_mode(mode, source="system")
        self._notify_state()

    def _handle_assistant(self, message: dict[str, Any]) -> None:
        body = message.get("message")
        content = body.get("content") if isinstance(body, dict) else None
        if not isinstance(content, list):
            content = message.get("content")
        if not isinstance(content, list):
            return

        for block in content:
            if not isinstance(block, dict):
                continue
            block_type = block.get("type")
            if block_type == "text":
                self._emit(EventType.TEXT, {"text": block.get("text", "")})
            elif block_type == "thinking":
                self._emit(EventType.THINKING, {"thinking": block.get("thinking", "")})
            elif block_type == "tool_use":
                if block.get("name") == ASK_USER_QUESTION_TOOL:
                    self._open_question(
                        request_id=str(block.get("id")),
                        tool_use_id=block.get("id"),
                        tool_input=block.get("input"),
                    )
                else:
                    self._emit(EventType.TOOL_USE, {
                        "id": block.get("id"),
                        "name": block.get("name"),
                        "input": block.get("input"),
                    })

        usage = body.get("usage") if isinstance(body, dict) else None
        if isinstance(usage, dict):
            self._emit(EventType.USAGE, {
                "input_tokens": usage.get("input_tokens"),
                "output_tokens": usage.get("output_tokens"),
                "cache_creation_input_tokens": usage.get("cache_creation_input_tokens"),
                "cache_read_input_tokens": usage.get("cache_read_input_tokens"),
            })

    def _handle_user(self, message: dict[str, Any]) -> None:
        for block in _tool_result_blocks(message):
            content = block.get("content")
            if not isinstance(content, str):
                content = json.dumps(content)
            self._emit(EventType.TOOL_RESULT, {
                "tool_use_id": block.get("tool_use_id"),
                "content": content,
                "is_error": bool(block.get("is_error", False)),
            })

    def _handle_result(self, message: dict[str, Any]) -> None:
        session_id = message.get("session_id")
        if isinstance(session_id, str) and session_id:
            self._external_session_id = session_id

        self._result_seen = True
        self._prompts.clear()
        self._partial_answers.clear()
        if self._phase not in TERMINAL_PHASES:
            self._set_phase(RunnerPhase.RESULT)
        self._emit(EventType.RESULT, {
            "result": message.get("result"),
            "session_id": session_id,
            "subtype": message.get("subtype"),
            "is_error": bool(message.get("is_error", False)),
            "num_turns": message.get("num_turns"),
            "duration_ms": message.get("duration_ms"),
            "total_cost_usd": message.get("total_cost_usd"),
            "usage": message.get("usage"),
        })

        # The conversation is complete; closing stdin lets the agent exit
        if self._process is not None:
            self._spawn(self._process.close_stdin())

    def _handle_control_request(self, message: dict[str, Any]) -> None:
        request_id = message.get("request_id")
        request = message.get("request")
        if not isinstance(request_id, str) or not isinstance(request, dict):
            logger.debug(f"Session {self.session_id}: malformed control request")
            return

        if not is_permission_prompt(message):
            subtype = request.get("subtype")
            logger.debug(f"Session {self.session_id}: unsupported control request {subtype}")
            self._spawn(self._write(build_control_response(
                request_id, error=f"Unsupported control request subtype: {subtype}"
            )))
            return

        tool_name = request.get("tool_name")
        tool_input = request.get("input")
        tool_use_id = request.get("tool_use_id")

        if tool_name == ASK_USER_QUESTION_TOOL:
            existing = self._question_for_tool_use(tool_use_id)
            if existing is not None:
                payload = dict(existing.payload)
                payload["control_request_id"] = request_id
                self._prompts[existing.request_id] = PendingPrompt(
                    kind=PromptKind.QUESTION,
                    request_id=existing.request_id,
                    payload=payload,
                )
                self._notify_state()
                return
            self._open_question(
                request_id=request_id,
                tool_use_id=tool_use_id,
                tool_input=tool_input,
                control_request_id=request_id,
            )
            return

        payload = {
            "request_id": request_id,
            "tool_name": tool_name,
            "input": tool_input if isinstance(tool_input, dict) else {},
            "tool_use_id": tool_use_id,
        }
        self._prompts[request_id] = PendingPrompt(
            kind=PromptKind.PERMISSION,
            request_id=request_id,
            payload=payload,
        )
        self._refresh_phase()
        self._emit(EventType.PERMISSION_REQUEST, payload)

    # -------------------------------------------------------------------------
    # Prompts
    # -------------------------------------------------------------------------

    def _open_question(
        self,
        request_id: str,
        tool_use_id: Any,
        tool_input: Any,
        control_request_id: Optional[str] = None,
    ) -> None:
        tool_input = tool_input if isinstance(tool_input, dict) else {}
        payload: dict[str, Any] = {
            "request_id": request_id,
            "tool_use_id": tool_use_id,
            "questions": tool_input.get("questions", []),
            "input": tool_input,
        }
        if control_request_id:
            payload["control_request_id"] = control_request_id
        self._prompts[request_id] = PendingPrompt(
            kind=PromptKind.QUESTION,
            request_id=request_id,
            payload=payload,
        )
        self._refresh_phase()
        self._emit(EventType.ASK_USER_QUESTION, {
            "request_id": request_id,
            "tool_use_id": tool_use_id,
            "questions": payload["questions"],
        })

    def _find_question(self, request_id: str) -> Optional[PendingPrompt]:
        prompt = self._prompts.get(request_id)
        if prompt is not None:
            return prompt if prompt.kind == PromptKind.QUESTION else None
        for candidate in self._prompts.values():
            if (
                candidate.kind == PromptKind.QUESTION
                and candidate.payload.get("control_request_id") == request_id
            ):
                return candidate
        return None

    def _question_for_tool_use(self, tool_use_id: Any) -> Optional[PendingPrompt]:
        if not tool_use_id:
            return None
        for prompt in self._prompts.values():
            if prompt.kind == PromptKind.QUESTION and prompt.payload.get("tool_use_id") == tool_use_id:
                return prompt
        return None

    def _clear_prompt(self, request_id: str) -> None:
        self._prompts.pop(request_id, None)
        self._partial_answers.pop(request_id, None)
        self._refresh_phase()

    # -------------------------------------------------------------------------
    # Permission mode
    # -------------------------------------------------------------------------

    def _on_control_resolved(self, outcome: ControlOutcome) -> None:
        self._emit(EventType.CONTROL_RESPONSE, outcome.to_dict())

        if outcome.subtype != CONTROL_SET_PERMISSION_MODE or not outcome.ok:
            return
        # Acks can arrive out of order; only a newer request may move the mode
        if outcome.seq <= self._mode_seq:
            logger.debug(
                f"Session {self.session_id}: stale mode ack {outcome.request_id} ignored"
            )
            return
        mode = parse_permission_mode(outcome.response.get("mode"))
        if mode is None:
            mode = parse_permission_mode(outcome.payload.get("mode"))
        if mode is None:
            return
        self._mode_seq = outcome.seq
        self._apply_permission_mode(mode, source="control_response")

    def _apply_permission_mode(self, mode: PermissionMode, source: str) -> None:
        previous = self._permission_mode
        if mode == previous:
            return
        self._permission_mode = mode
        logger.info(f"Session {self.session_id}: permission mode {previous} -> {mode} ({source})")
        self._notify_state()
        self._emit(EventType.PERMISSION_MODE_CHANGED, {
            "permission_mode": mode.value,
            "previous": previous.value if previous else None,
            "source": source,
        })


def _tool_result_blocks(message: dict[str, Any]) -> list[dict[str, Any]]:
    body = message.get("message")
    content = body.get("content") if isinstance(body, dict) else None
    if not isinstance(content, list):
        return []
    return [
        block for block in content
        if isinstance(block, dict) and block.get("type") == "tool_result"
    ]
