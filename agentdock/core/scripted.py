"""
Scripted agent processes for deterministic runs.

ScriptedLauncher implements the same launcher capability as
AgentLauncher but, instead of spawning a program, replays a list of
ScriptSteps as protocol lines. Inbound lines are decoded like the real
agent would: user messages feed wait_for_input steps, permission-mode
control requests are answered after a configurable (and optionally
jittered, dropped or duplicated) delay, and permission decisions
unblock permission_request steps.

Usage:
    launcher = ScriptedLauncher(steps=[
        ScriptStep.system_init(),
        ScriptStep.text("Echo: {input}"),
        ScriptStep.result("done"),
    ])
    runner = SessionRunner("s1", launcher, on_event=sink)
"""
import asyncio
import logging
import random
from dataclasses import dataclass, field
from typing import Any, Callable, Optional, Sequence, Union

from .constants import (
    ASK_USER_QUESTION_TOOL,
    CONTROL_CAN_USE_TOOL,
    CONTROL_INTERRUPT,
    CONTROL_SET_PERMISSION_MODE,
    MSG_CONTROL_REQUEST,
    MSG_CONTROL_RESPONSE,
    MSG_USER,
)
from .exceptions import LaunchError, WriteError
from .line_protocol import (
    LineDecoder,
    build_control_response,
    build_user_message,
    encode_message,
)
from .schemas import ExitStatus, LaunchRequest

logger = logging.getLogger(__name__)

DEFAULT_MODEL = "claude-sonnet-4-20250514"
DEFAULT_TOOLS = ["Read", "Write", "Edit", "Bash"]


@dataclass(frozen=True)
class ScriptStep:
    """One step of a script: emit a line, wait, sleep, or exit."""

    kind: str
    message: Optional[dict[str, Any]] = None
    delay: float = 0.0
    code: int = 0

    @classmethod
    def emit(cls, message: dict[str, Any], delay: float = 0.0) -> "ScriptStep":
        return cls(kind="emit", message=message, delay=delay)

    @classmethod
    def system_init(
        cls,
        model: str = DEFAULT_MODEL,
        tools: Optional[list[str]] = None,
        permission_mode: Optional[str] = None,
        session_id: str = "scripted-session",
    ) -> "ScriptStep":
        message: dict[str, Any] = {
            "type": "system",
            "subtype": "init",
            "session_id": session_id,
            "model": model,
            "tools": list(tools if tools is not None else DEFAULT_TOOLS),
        }
        if permission_mode is not None:
            message["permissionMode"] = permission_mode
        return cls.emit(message)

    @classmethod
    def assistant(cls, *blocks: dict[str, Any], usage: Optional[dict] = None) -> "ScriptStep":
        body: dict[str, Any] = {"role": "assistant", "content": list(blocks)}
        if usage is not None:
            body["usage"] = usage
        return cls.emit({"type": "assistant", "message": body})

    @classmethod
    def text(cls, text: str, delay: float = 0.0) -> "ScriptStep":
        step = cls.assistant({"type": "text", "text": text})
        return cls(kind="emit", message=step.message, delay=delay)

    @classmethod
    def thinking(cls, thinking: str) -> "ScriptStep":
        return cls.assistant({"type": "thinking", "thinking": thinking})

    @classmethod
    def tool_use(cls, tool_id: str, name: str, tool_input: dict[str, Any]) -> "ScriptStep":
        return cls.assistant({"type": "tool_use", "id": tool_id, "name": name, "input": tool_input})

    @classmethod
    def ask_question(cls, tool_id: str, questions: list[dict[str, Any]]) -> "ScriptStep":
        return cls.tool_use(tool_id, ASK_USER_QUESTION_TOOL, {"questions": questions})

    @classmethod
    def tool_result(cls, tool_use_id: str, content: Any, is_error: bool = False) -> "ScriptStep":
        return cls.emit({
            "type": "user",
            "message": {
                "role": "user",
                "content": [{
                    "type": "tool_result",
                    "tool_use_id": tool_use_id,
                    "content": content,
                    "is_error": is_error,
                }],
            },
        })

    @classmethod
    def usage(cls, input_tokens: int, output_tokens: int) -> "ScriptStep":
        return cls.assistant(usage={"input_tokens": input_tokens, "output_tokens": output_tokens})

    @classmethod
    def result(
        cls,
        result: str,
        session_id: str = "scripted-session",
        delay: float = 0.0,
    ) -> "ScriptStep":
        return cls(kind="emit", delay=delay, message={
            "type": "result",
            "subtype": "success",
            "is_error": False,
            "result": result,
            "session_id": session_id,
        })

    @classmethod
    def permission_request(
        cls,
        request_id: str,
        tool_name: str,
        tool_input: dict[str, Any],
        tool_use_id: Optional[str] = None,
    ) -> "ScriptStep":
        """Ask permission over the control channel and block until answered."""
        return cls(kind="permission", message={
            "type": MSG_CONTROL_REQUEST,
            "request_id": request_id,
            "request": {
                "subtype": CONTROL_CAN_USE_TOOL,
                "tool_name": tool_name,
                "input": tool_input,
                "tool_use_id": tool_use_id,
            },
        })

    @classmethod
    def wait_for_input(cls) -> "ScriptStep":
        return cls(kind="wait_for_input")

    @classmethod
    def sleep(cls, seconds: float) -> "ScriptStep":
        return cls(kind="sleep", delay=seconds)

    @classmethod
    def exit(cls, code: int = 0) -> "ScriptStep":
        return cls(kind="exit", code=code)

    @classmethod
    def raw(cls, data: Union[str, bytes]) -> "ScriptStep":
        """Emit raw bytes (no JSON encoding, no terminator added)."""
        payload = data.encode("utf-8") if isinstance(data, str) else data
        return cls(kind="raw", message={"data": payload})


def _interpolate(value: Any, replacements: dict[str, str]) -> Any:
    if isinstance(value, str):
        for key, replacement in replacements.items():
            value = value.replace("{" + key + "}", replacement)
        return value
    if isinstance(value, list):
        return [_interpolate(item, replacements) for item in value]
    if isinstance(value, dict):
        return {k: _interpolate(v, replacements) for k, v in value.items()}
    return value


def _message_text(message: dict[str, Any]) -> str:
    body = message.get("message")
    content = body.get("content") if isinstance(body, dict) else None
    if isinstance(content, str):
        return content
    if not isinstance(content, list):
        return ""
    return "".join(
        block.get("text", "") for block in content
        if isinstance(block, dict) and block.get("type") == "text"
    )


@dataclass
class ScriptedProcess:
    """
    In-memory agent process replaying a script.

    After the last step the process keeps reading input, like the real
    agent, and exits 0 once stdin is closed. An exit step ends it at once.
    """

    steps: Sequence[ScriptStep]
    control_delay: float = 0.0
    control_jitter: float = 0.0
    drop_rate: float = 0.0
    duplicate_responses: bool = False
    chunk_size: Optional[int] = None
    ignore_terminate: bool = False
    seed: Optional[int] = None
    pid: int = field(default_factory=lambda: random.randint(10000, 99999))

    def __post_init__(self) -> None:
        self._loop = asyncio.get_running_loop()
        self._rng = random.Random(self.seed)
        self._output: asyncio.Queue[bytes] = asyncio.Queue()
        self._decoder = LineDecoder()
        self._inputs: asyncio.Queue[str] = asyncio.Queue()
        self._prompt_received = asyncio.Event()
        self._stdin_closed = asyncio.Event()
        self._exited = asyncio.Event()
        self._decisions: dict[str, asyncio.Future] = {}
        self._status: Optional[ExitStatus] = None
        self._eof = False
        self.last_input = ""
        self.replacements: dict[str, str] = {}
        self.received: list[dict[str, Any]] = []
        self.control_requests: list[dict[str, Any]] = []
        self.signals: list[str] = []
        self.dropped: list[str] = []
        self._script: Optional[asyncio.Future] = None
        self._interrupted = False
        self._task = self._loop.create_task(self._run())

    # AgentProcess interface

    async def write(self, data: bytes) -> None:
        if self._status is not None or self._stdin_closed.is_set():
            raise WriteError("scripted process is not accepting input")
        for message in self._decoder.feed(data):
            self._on_inbound(message)

    async def read(self) -> bytes:
        if self._eof:
            return b""
        data = await self._output.get()
        if not data:
            self._eof = True
        return data

    async def close_stdin(self) -> None:
        self._stdin_closed.set()

    async def wait(self) -> ExitStatus:
        await self._exited.wait()
        assert self._status is not None
        return self._status

    def terminate(self) -> None:
        self.signals.append("SIGTERM")
        if not self.ignore_terminate:
            self._finish(ExitStatus(code=None, signal="SIGTERM"))

    def kill(self) -> None:
        self.signals.append("SIGKILL")
        self._finish(ExitStatus(code=None, signal="SIGKILL"))

    @property
    def exited(self) -> bool:
        return self._status is not None

    def emit(self, message: dict[str, Any]) -> None:
        """Emit a line outside the script (e.g. a hand-made control response)."""
        self._send(message)

    # Inbound handling

    def _on_inbound(self, message: dict[str, Any]) -> None:
        self.received.append(message)
        msg_type = message.get("type")

        if msg_type == MSG_USER:
            text = _message_text(message)
            if not self._prompt_received.is_set():
                self.last_input = text
                self._prompt_received.set()
            else:
                self._inputs.put_nowait(text)
        elif msg_type == MSG_CONTROL_REQUEST:
            self.control_requests.append(message)
            self._on_control_request(message)
        elif msg_type == MSG_CONTROL_RESPONSE:
            response = message.get("response") or {}
            future = self._decisions.get(response.get("request_id"))
            if future is not None and not future.done():
                future.set_result(response)

    def _on_control_request(self, message: dict[str, Any]) -> None:
        request_id = message.get("request_id", "")
        request = message.get("request") or {}
        subtype = request.get("subtype")

        if subtype == CONTROL_SET_PERMISSION_MODE:
            if self.drop_rate and self._rng.random() < self.drop_rate:
                self.dropped.append(request_id)
                return
            reply = build_control_response(request_id, response={"mode": request.get("mode")})
            delay = self.control_delay + self._rng.uniform(0, self.control_jitter)
            self._loop.call_later(delay, self._send, reply)
            if self.duplicate_responses:
                duplicate = build_control_response(request_id, response={})
                self._loop.call_later(delay + 0.001, self._send, duplicate)
        elif subtype == CONTROL_INTERRUPT:
            self._send(build_control_response(request_id, response={}))
            if self._script is not None and not self._script.done():
                self._interrupted = True
                self._script.cancel()
                self._send({
                    "type": "result",
                    "subtype": "error_during_execution",
                    "is_error": True,
                    "result": "Interrupted",
                })
        else:
            self._send(build_control_response(
                request_id, error=f"Unsupported control request: {subtype}"
            ))

    # Output

    def _send(self, message: dict[str, Any]) -> None:
        self._send_bytes(encode_message(message))

    def _send_bytes(self, data: bytes) -> None:
        if self._status is not None:
            return
        if self.chunk_size:
            for offset in range(0, len(data), self.chunk_size):
                self._output.put_nowait(data[offset:offset + self.chunk_size])
        else:
            self._output.put_nowait(data)

    def _finish(self, status: ExitStatus) -> None:
        if self._status is not None:
            return
        self._status = status
        self._output.put_nowait(b"")
        for future in self._decisions.values():
            if not future.done():
                future.cancel()
        if not self._task.done() and asyncio.current_task() is not self._task:
            self._task.cancel()
        self._exited.set()

    # Script

    async def _run(self) -> None:
        await self._prompt_received.wait()
        self._script = asyncio.ensure_future(self._play())
        try:
            await self._script
        except asyncio.CancelledError:
            if not self._interrupted:
                raise
        if self._status is not None:
            return

        await self._stdin_closed.wait()
        self._finish(ExitStatus(code=0))

    async def _play(self) -> None:
        for step in self.steps:
            if self._status is not None:
                return
            if step.delay and step.kind != "sleep":
                await asyncio.sleep(step.delay)
            if not await self._run_step(step):
                return

    async def _run_step(self, step: ScriptStep) -> bool:
        replacements = {"input": self.last_input, **self.replacements}

        if step.kind == "emit":
            assert step.message is not None
            self._send(_interpolate(step.message, replacements))
        elif step.kind == "raw":
            assert step.message is not None
            self._send_bytes(step.message["data"])
        elif step.kind == "sleep":
            await asyncio.sleep(step.delay)
        elif step.kind == "wait_for_input":
            self.last_input = await self._inputs.get()
        elif step.kind == "permission":
            assert step.message is not None
            request_id = step.message["request_id"]
            future = self._loop.create_future()
            self._decisions[request_id] = future
            self._send(step.message)
            response = await future
            decision = response.get("response") or {}
            self.replacements["decision"] = str(decision.get("behavior", "error"))
            answers = (decision.get("updatedInput") or {}).get("answers")
            if isinstance(answers, dict) and answers:
                self.last_input = ", ".join(str(v) for v in answers.values())
        elif step.kind == "exit":
            self._finish(ExitStatus(code=step.code))
            return False
        return True


class ScriptedLauncher:
    """
    Launcher that hands out ScriptedProcesses.

    Args:
        steps: Script for every launch, or a callable building one per request.
        ready_delay: Seconds before launch returns (slow spawn).
        fail_with: Message of a LaunchError raised after ready_delay.
        **process_options: Passed to ScriptedProcess.
    """

    def __init__(
        self,
        steps: Union[Sequence[ScriptStep], Callable[[LaunchRequest], Sequence[ScriptStep]], None] = None,
        scenario: Optional[str] = None,
        ready_delay: float = 0.0,
        fail_with: Optional[str] = None,
        **process_options: Any,
    ) -> None:
        if steps is None:
            steps = SCENARIOS[scenario or "echo"]()
        self._steps = steps
        self._ready_delay = ready_delay
        self._fail_with = fail_with
        self._process_options = process_options
        self.requests: list[LaunchRequest] = []
        self.processes: list[ScriptedProcess] = []

    async def launch(self, request: LaunchRequest) -> ScriptedProcess:
        self.requests.append(request)
        if self._ready_delay:
            await asyncio.sleep(self._ready_delay)
        if self._fail_with is not None:
            raise LaunchError(self._fail_with)

        steps = self._steps(request) if callable(self._steps) else self._steps
        process = ScriptedProcess(steps=list(steps), **self._process_options)
        self.processes.append(process)
        await process.write(encode_message(build_user_message(request.message, request.attachments)))
        logger.debug(f"Session {request.session_id}: scripted process {process.pid} started")
        return process

    @property
    def last_process(self) -> Optional[ScriptedProcess]:
        return self.processes[-1] if self.processes else None


# =============================================================================
# Built-in scenarios
# =============================================================================

def echo_scenario() -> list[ScriptStep]:
    return [
        ScriptStep.system_init(),
        ScriptStep.text("Echo: {input}"),
        ScriptStep.result("Echo done"),
    ]


def permission_scenario() -> list[ScriptStep]:
    edit_input = {
        "file_path": "/src/app.ts",
        "old_string": "const foo = 1;",
        "new_string": "const foo = 2;",
    }
    return [
        ScriptStep.system_init(),
        ScriptStep.thinking("I need to edit the file..."),
        ScriptStep.tool_use("edit-1", "Edit", edit_input),
        ScriptStep.permission_request("perm-1", "Edit", edit_input, tool_use_id="edit-1"),
        ScriptStep.tool_result("edit-1", "Edit {decision}"),
        ScriptStep.text("Permission was {decision}."),
        ScriptStep.result("Edit completed"),
    ]


def ask_question_scenario() -> list[ScriptStep]:
    return [
        ScriptStep.system_init(tools=DEFAULT_TOOLS + [ASK_USER_QUESTION_TOOL]),
        ScriptStep.ask_question("ask-1", [{
            "question": "Which library should we use?",
            "header": "Library",
            "options": [
                {"label": "React", "description": "A JavaScript library for building UIs"},
                {"label": "Vue", "description": "A progressive JavaScript framework"},
            ],
            "multiSelect": False,
        }]),
        ScriptStep.wait_for_input(),
        ScriptStep.text("Great choice! You selected: {input}"),
        ScriptStep.result("Question answered"),
    ]


def multi_step_scenario() -> list[ScriptStep]:
    return [
        ScriptStep.system_init(tools=DEFAULT_TOOLS + ["Glob", "Grep"]),
        ScriptStep.thinking("Planning the implementation..."),
        ScriptStep.tool_use("glob-1", "Glob", {"pattern": "**/*.ts"}),
        ScriptStep.tool_result("glob-1", "src/index.ts\nsrc/app.ts"),
        ScriptStep.tool_use("read-1", "Read", {"file_path": "src/app.ts"}),
        ScriptStep.tool_result("read-1", [{"type": "text", "text": "export function app() {}"}]),
        ScriptStep.text("I have analyzed the codebase. Here are my findings."),
        ScriptStep.usage(2000, 300),
        ScriptStep.result("Analysis complete"),
    ]


SCENARIOS: dict[str, Callable[[], list[ScriptStep]]] = {
    "echo": echo_scenario,
    "permission": permission_scenario,
    "ask-question": ask_question_scenario,
    "multi-step": multi_step_scenario,
}
