"""
Agent process launcher.

Spawns the agent either natively (stdio pipes) or inside a rootless
container. Interactive containers get a pseudo-terminal as their duplex
channel; the initial user message is written over that channel before
the process is handed to the runner.

Every launcher returns an AgentProcess: a duplex byte channel plus a
termination signal. The runner never cares which implementation it holds.
"""
import asyncio
import errno
import fcntl
import logging
import os
import pty
import re
import shutil
import signal
import struct
import termios
import tty
from pathlib import Path
from typing import TYPE_CHECKING, Optional, Protocol, Sequence

from .constants import (
    DEFAULT_CLAUDE_PATH,
    DEFAULT_PERMISSION_PROMPT_TOOL,
    DEFAULT_STOP_GRACE_SECONDS,
    DEFAULT_THINKING_TOKENS,
    GIT_ENV_KEYS,
    LOG_PREVIEW_LENGTH,
    PROBE_TIMEOUT_SECONDS,
    PTY_WINDOW_SIZE,
    READ_CHUNK_SIZE,
)
from .exceptions import LaunchError, WriteError
from .line_protocol import build_user_message, encode_message
from .sandbox import build_podman_args
from .schemas import ContainerConfig, ExitStatus, LaunchRequest

if TYPE_CHECKING:
    from ..config import RunnerSettings

logger = logging.getLogger(__name__)

# Tool names: alphanumerics plus - _ : / @ .  (e.g. "Bash", "mcp__srv:tool")
VALID_TOOL_NAME = re.compile(r"^[a-zA-Z0-9_\-:/@.]+$")


class AgentProcess(Protocol):
    """A started agent process."""

    @property
    def pid(self) -> Optional[int]: ...

    async def write(self, data: bytes) -> None:
        """Write bytes to the agent. Raises WriteError on failure."""
        ...

    async def read(self) -> bytes:
        """Read the next chunk of output; b"" at end of stream."""
        ...

    async def close_stdin(self) -> None: ...

    async def wait(self) -> ExitStatus: ...

    def terminate(self) -> None: ...

    def kill(self) -> None: ...


class ProcessLauncher(Protocol):
    """Capability to start an agent process for a session."""

    async def launch(self, request: LaunchRequest) -> AgentProcess:
        """Start the process and deliver the initial message. Raises LaunchError."""
        ...


def exit_status_from_returncode(returncode: Optional[int]) -> ExitStatus:
    """Translate a subprocess return code (negative = killed by signal)."""
    if returncode is None or returncode >= 0:
        return ExitStatus(code=returncode)
    try:
        name = signal.Signals(-returncode).name
    except ValueError:
        name = str(-returncode)
    return ExitStatus(code=None, signal=name)


def _send_signal(proc: asyncio.subprocess.Process, sig: int) -> None:
    if proc.returncode is not None:
        return
    try:
        proc.send_signal(sig)
    except ProcessLookupError:
        pass


class PipeProcess:
    """Agent process connected through stdin/stdout pipes."""

    def __init__(self, proc: asyncio.subprocess.Process) -> None:
        self._proc = proc
        self._stderr_task: Optional[asyncio.Task] = None
        if proc.stderr is not None:
            self._stderr_task = asyncio.create_task(self._drain_stderr())

    @property
    def pid(self) -> Optional[int]:
        return self._proc.pid

    async def _drain_stderr(self) -> None:
        assert self._proc.stderr is not None
        while True:
            line = await self._proc.stderr.readline()
            if not line:
                break
            text = line.decode("utf-8", errors="replace").rstrip()
            if text:
                logger.debug(f"[pid {self._proc.pid}] stderr: {text}")

    async def write(self, data: bytes) -> None:
        stdin = self._proc.stdin
        if stdin is None or stdin.is_closing():
            raise WriteError("stdin is closed")
        try:
            stdin.write(data)
            await stdin.drain()
        except (BrokenPipeError, ConnectionResetError) as e:
            raise WriteError(f"stdin write failed: {e}") from e

    async def read(self) -> bytes:
        if self._proc.stdout is None:
            return b""
        return await self._proc.stdout.read(READ_CHUNK_SIZE)

    async def close_stdin(self) -> None:
        stdin = self._proc.stdin
        if stdin is None or stdin.is_closing():
            return
        stdin.close()
        try:
            await stdin.wait_closed()
        except (BrokenPipeError, ConnectionResetError) as e:
            logger.debug(f"stdin already closed by peer: {e}")

    async def wait(self) -> ExitStatus:
        returncode = await self._proc.wait()
        if self._stderr_task is not None:
            await self._stderr_task
        return exit_status_from_returncode(returncode)

    def terminate(self) -> None:
        _send_signal(self._proc, signal.SIGTERM)

    def kill(self) -> None:
        _send_signal(self._proc, signal.SIGKILL)


class PtyProcess:
    """
    Agent process attached to a pseudo-terminal.

    The terminal is put in raw mode so JSON lines pass unmodified. A
    terminal has no half-close, so close_stdin terminates the process.
    """

    def __init__(self, proc: asyncio.subprocess.Process, master_fd: int) -> None:
        self._proc = proc
        self._master_fd: Optional[int] = master_fd
        self._queue: asyncio.Queue[bytes] = asyncio.Queue()
        self._eof = False
        self._loop = asyncio.get_running_loop()
        os.set_blocking(master_fd, False)
        self._loop.add_reader(master_fd, self._on_readable)

    @classmethod
    async def spawn(
        cls,
        argv: Sequence[str],
        cwd: Optional[str] = None,
        env: Optional[dict[str, str]] = None,
    ) -> "PtyProcess":
        """
        Start argv with a new pseudo-terminal as its stdio.

        Raises:
            OSError, termios.error: If the terminal or process cannot be created.
        """
        master_fd, slave_fd = pty.openpty()
        try:
            tty.setraw(slave_fd)
            rows, cols = PTY_WINDOW_SIZE
            fcntl.ioctl(slave_fd, termios.TIOCSWINSZ, struct.pack("HHHH", rows, cols, 0, 0))
            proc = await asyncio.create_subprocess_exec(
                *argv,
                stdin=slave_fd,
                stdout=slave_fd,
                stderr=slave_fd,
                cwd=cwd,
                env=env,
                start_new_session=True,
            )
        except (OSError, termios.error):
            os.close(master_fd)
            raise
        finally:
            os.close(slave_fd)
        return cls(proc, master_fd)

    @property
    def pid(self) -> Optional[int]:
        return self._proc.pid

    def _on_readable(self) -> None:
        if self._master_fd is None:
            return
        try:
            data = os.read(self._master_fd, READ_CHUNK_SIZE)
        except BlockingIOError:
            return
        except OSError as e:
            # EIO: every slave end is closed
            if e.errno != errno.EIO:
                logger.warning(f"[pid {self._proc.pid}] terminal read failed: {e}")
            data = b""
        if not data:
            self._close_master()
        self._queue.put_nowait(data)

    def _close_master(self) -> None:
        if self._master_fd is None:
            return
        self._loop.remove_reader(self._master_fd)
        os.close(self._master_fd)
        self._master_fd = None

    async def write(self, data: bytes) -> None:
        view = memoryview(data)
        while view:
            if self._master_fd is None:
                raise WriteError("terminal is closed")
            try:
                written = os.write(self._master_fd, view)
            except BlockingIOError:
                await asyncio.sleep(0.01)
                continue
            except OSError as e:
                raise WriteError(f"terminal write failed: {e}") from e
            view = view[written:]

    async def read(self) -> bytes:
        if self._eof:
            return b""
        data = await self._queue.get()
        if not data:
            self._eof = True
        return data

    async def close_stdin(self) -> None:
        self.terminate()

    async def wait(self) -> ExitStatus:
        returncode = await self._proc.wait()
        return exit_status_from_returncode(returncode)

    def terminate(self) -> None:
        _send_signal(self._proc, signal.SIGTERM)

    def kill(self) -> None:
        _send_signal(self._proc, signal.SIGKILL)


def validate_tool_names(tools: Sequence[str]) -> None:
    """
    Reject tool names that could be mistaken for flags or inject arguments.

    Raises:
        LaunchError: If any name is invalid.
    """
    for tool in tools:
        if tool.startswith("-"):
            raise LaunchError(f"Invalid tool name: {tool!r}. Tool names cannot start with a hyphen.")
        if not VALID_TOOL_NAME.match(tool):
            raise LaunchError(
                f"Invalid tool name: {tool!r}. Tool names can only contain alphanumeric "
                "characters, hyphens, underscores, colons, slashes, at-signs, and dots."
            )


def build_agent_args(
    request: LaunchRequest,
    permission_prompt_tool: Optional[str] = DEFAULT_PERMISSION_PROMPT_TOOL,
) -> list[str]:
    """
    Build the agent command line (without the executable).

    The prompt is empty on the command line; messages arrive as
    stream-json on stdin.
    """
    args: list[str] = [
        "-p", "",
        "--input-format", "stream-json",
        "--output-format", "stream-json",
        "--verbose",
    ]
    if request.resume_id:
        args.extend(["--resume", request.resume_id])
    if request.permission_mode:
        args.extend(["--permission-mode", str(request.permission_mode)])
    if permission_prompt_tool:
        args.extend(["--permission-prompt-tool", permission_prompt_tool])
    if request.allowed_tools:
        validate_tool_names(request.allowed_tools)
        args.extend(["--allowedTools", ",".join(request.allowed_tools)])
    if request.disallowed_tools:
        validate_tool_names(request.disallowed_tools)
        args.extend(["--disallowedTools", ",".join(request.disallowed_tools)])
    return args


async def _git_config_value(git: str, key: str) -> Optional[str]:
    try:
        proc = await asyncio.create_subprocess_exec(
            git, "config", "--get", key,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.DEVNULL,
        )
        stdout, _ = await asyncio.wait_for(proc.communicate(), timeout=PROBE_TIMEOUT_SECONDS)
    except (asyncio.TimeoutError, OSError) as e:
        logger.debug(f"git config --get {key} failed: {e}")
        return None
    if proc.returncode != 0:
        return None
    value = stdout.decode("utf-8", errors="replace").strip()
    return value or None


async def get_git_env_vars() -> dict[str, str]:
    """
    Read the host git identity as GIT_AUTHOR_* / GIT_COMMITTER_* variables.

    Returns:
        Mapping of variables for every identity value that is configured.
    """
    git = shutil.which("git")
    if git is None:
        return {}

    env: dict[str, str] = {}
    for key, names in GIT_ENV_KEYS.items():
        value = await _git_config_value(git, key)
        if value:
            for name in names:
                env[name] = value
    return env


async def image_exists(runtime: str, image: str) -> bool:
    """Check whether the container image is available locally."""
    try:
        proc = await asyncio.create_subprocess_exec(
            runtime, "image", "exists", image,
            stdout=asyncio.subprocess.DEVNULL,
            stderr=asyncio.subprocess.DEVNULL,
        )
        await asyncio.wait_for(proc.wait(), timeout=PROBE_TIMEOUT_SECONDS)
    except (asyncio.TimeoutError, OSError) as e:
        logger.warning(f"Image check for {image} failed: {e}")
        return False
    return proc.returncode == 0


class AgentLauncher:
    """
    Launches the real agent CLI, natively or in a container.

    Usage:
        launcher = AgentLauncher.from_settings(settings)
        process = await launcher.launch(request)
    """

    def __init__(
        self,
        claude_path: str = DEFAULT_CLAUDE_PATH,
        permission_prompt_tool: Optional[str] = DEFAULT_PERMISSION_PROMPT_TOOL,
        thinking_tokens: int = DEFAULT_THINKING_TOKENS,
        check_image_exists: bool = True,
        default_container: Optional[ContainerConfig] = None,
        container_claude_path: str = DEFAULT_CLAUDE_PATH,
    ) -> None:
        """
        Initialize the launcher.

        Args:
            claude_path: Agent executable for native launches.
            permission_prompt_tool: Value for --permission-prompt-tool (None to omit).
            thinking_tokens: MAX_THINKING_TOKENS for extended thinking.
            check_image_exists: Verify the image before a container launch.
            default_container: Sandbox used when a request carries none.
            container_claude_path: Agent executable inside the container.
        """
        self._claude_path = claude_path
        self._permission_prompt_tool = permission_prompt_tool
        self._thinking_tokens = thinking_tokens
        self._check_image_exists = check_image_exists
        self._default_container = default_container
        self._container_claude_path = container_claude_path

    @classmethod
    def from_settings(cls, settings: "RunnerSettings") -> "AgentLauncher":
        return cls(
            claude_path=settings.claude_path,
            permission_prompt_tool=settings.permission_prompt_tool,
            thinking_tokens=settings.thinking_tokens,
            check_image_exists=settings.check_image_exists,
            default_container=settings.container,
        )

    async def launch(self, request: LaunchRequest) -> AgentProcess:
        """
        Start the agent and deliver the initial message.

        Args:
            request: Launch parameters.

        Returns:
            The running process.

        Raises:
            LaunchError: If the working directory is inaccessible, the
                executable, runtime or image is missing, or the initial
                message cannot be delivered.
        """
        working_dir = Path(request.working_dir)
        if not working_dir.is_dir() or not os.access(working_dir, os.R_OK | os.X_OK):
            raise LaunchError(f"Working directory is not accessible: {working_dir}")

        args = build_agent_args(request, self._permission_prompt_tool)

        container = request.container_config or self._default_container
        if container is not None and container.enabled:
            process = await self._launch_container(request, container, working_dir, args)
        else:
            process = await self._launch_native(request, working_dir, args)

        initial = build_user_message(request.message, request.attachments)
        try:
            await process.write(encode_message(initial))
        except WriteError as e:
            process.kill()
            try:
                await asyncio.wait_for(process.wait(), timeout=DEFAULT_STOP_GRACE_SECONDS)
            except asyncio.TimeoutError:
                logger.warning(f"Session {request.session_id}: agent not reaped after kill")
            raise LaunchError(f"Failed to deliver initial message: {e}") from e

        logger.info(
            f"Session {request.session_id}: agent started (pid {process.pid}), "
            f"prompt: {request.message[:LOG_PREVIEW_LENGTH]!r}"
        )
        return process

    async def _launch_native(
        self,
        request: LaunchRequest,
        working_dir: Path,
        args: list[str],
    ) -> AgentProcess:
        executable = shutil.which(self._claude_path)
        if executable is None:
            raise LaunchError(f"Agent executable not found: {self._claude_path}")

        env = dict(os.environ)
        if request.thinking_enabled:
            env["MAX_THINKING_TOKENS"] = str(self._thinking_tokens)

        logger.debug(f"Native launch: {executable} {' '.join(args)}")
        try:
            proc = await asyncio.create_subprocess_exec(
                executable, *args,
                cwd=str(working_dir),
                env=env,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            raise LaunchError(f"Failed to start {executable}: {e}") from e
        return PipeProcess(proc)

    async def _launch_container(
        self,
        request: LaunchRequest,
        config: ContainerConfig,
        working_dir: Path,
        args: list[str],
    ) -> AgentProcess:
        runtime = shutil.which(config.runtime)
        if runtime is None:
            raise LaunchError(f"Container runtime not found: {config.runtime}")

        if self._check_image_exists and not await image_exists(runtime, config.image):
            raise LaunchError(f"Container image not found: {config.image}")

        env = await get_git_env_vars()
        api_key = os.environ.get("ANTHROPIC_API_KEY")
        if api_key:
            env["ANTHROPIC_API_KEY"] = api_key
        if request.thinking_enabled:
            env["MAX_THINKING_TOKENS"] = str(self._thinking_tokens)

        runtime_args = build_podman_args(
            config,
            str(working_dir),
            env,
            command=[self._container_claude_path, *args],
        )
        argv = [runtime, *runtime_args]
        logger.debug(f"Container launch: {config.runtime} run ... {config.image}")

        try:
            if config.interactive:
                return await PtyProcess.spawn(argv, cwd=str(working_dir))
            proc = await asyncio.create_subprocess_exec(
                *argv,
                cwd=str(working_dir),
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except (OSError, termios.error) as e:
            raise LaunchError(f"Failed to start container: {e}") from e
        return PipeProcess(proc)
