"""
Tests for the agent process launcher.

Process tests use a small executable script that speaks the line
protocol, standing in for both the agent CLI and the container runtime.
"""
import json
import stat
import sys
from pathlib import Path

import pytest

from agentdock.core import launcher as launcher_module
from agentdock.core.events import PermissionMode
from agentdock.core.exceptions import LaunchError, WriteError
from agentdock.core.launcher import (
    AgentLauncher,
    build_agent_args,
    exit_status_from_returncode,
    get_git_env_vars,
    image_exists,
    validate_tool_names,
)
from agentdock.core.runner import SessionRunner
from agentdock.core.schemas import ContainerConfig, ExitStatus, LaunchRequest, StartOptions

FAKE_AGENT = '''#!{python}
import json
import os
import sys

args = sys.argv[1:]
if args[:2] == ["image", "exists"]:
    sys.exit(0 if args[2] == "present:latest" else 1)

record = os.environ.get("FAKE_ARGV_FILE")
if record:
    with open(record, "w") as f:
        json.dump(args, f)

while True:
    line = sys.stdin.readline()
    if not line:
        break
    line = line.strip()
    if not line:
        continue
    message = json.loads(line)
    if message.get("type") != "user":
        continue
    text = "".join(
        block.get("text", "") for block in message["message"]["content"]
        if block.get("type") == "text"
    )
    for out in (
        {{"type": "system", "subtype": "init", "session_id": "fake-session", "model": "fake"}},
        {{"type": "assistant", "message": {{"content": [{{"type": "text", "text": "Echo: " + text}}]}}}},
        {{"type": "result", "subtype": "success", "result": "done", "session_id": "fake-session"}},
    ):
        sys.stdout.write(json.dumps(out) + "\\n")
        sys.stdout.flush()
'''


@pytest.fixture
def fake_agent(tmp_path: Path) -> Path:
    """Executable that echoes user messages as protocol lines."""
    script = tmp_path / "fake-agent"
    script.write_text(FAKE_AGENT.format(python=sys.executable))
    script.chmod(script.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
    return script


@pytest.fixture
def argv_file(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    """File the fake agent records its argv into."""
    path = tmp_path / "argv.json"
    monkeypatch.setenv("FAKE_ARGV_FILE", str(path))
    return path


@pytest.fixture
def workdir(tmp_path: Path) -> Path:
    path = tmp_path / "work"
    path.mkdir()
    return path


def _request(workdir: Path, **kwargs) -> LaunchRequest:
    return LaunchRequest(session_id="s1", message="hi", working_dir=str(workdir), **kwargs)


class _ClosedStdinProcess:
    """Process whose stdin is already gone."""

    pid = 4242

    def __init__(self) -> None:
        self.killed = False
        self.reaped = False

    async def write(self, data: bytes) -> None:
        raise WriteError("stdin closed")

    def kill(self) -> None:
        self.killed = True

    async def wait(self) -> ExitStatus:
        self.reaped = True
        return ExitStatus(code=None, signal="SIGKILL")


class TestExitStatus:
    """Test return code translation."""

    @pytest.mark.parametrize("returncode,expected", [
        (0, {"code": 0, "signal": None}),
        (3, {"code": 3, "signal": None}),
        (None, {"code": None, "signal": None}),
        (-15, {"code": None, "signal": "SIGTERM"}),
        (-9, {"code": None, "signal": "SIGKILL"}),
        (-999, {"code": None, "signal": "999"}),
    ])
    def test_translation(self, returncode, expected: dict) -> None:
        assert exit_status_from_returncode(returncode).as_dict() == expected


class TestAgentArgs:
    """Test command line construction."""

    def test_minimal(self, workdir: Path) -> None:
        args = build_agent_args(_request(workdir))

        assert args == [
            "-p", "",
            "--input-format", "stream-json",
            "--output-format", "stream-json",
            "--verbose",
            "--permission-prompt-tool", "stdio",
        ]

    def test_all_options(self, workdir: Path) -> None:
        request = _request(
            workdir,
            resume_id="abc-123",
            permission_mode=PermissionMode.PLAN,
            allowed_tools=["Read", "mcp__srv:tool"],
            disallowed_tools=["Bash"],
        )

        args = build_agent_args(request, permission_prompt_tool=None)

        assert args[args.index("--resume") + 1] == "abc-123"
        assert args[args.index("--permission-mode") + 1] == "plan"
        assert args[args.index("--allowedTools") + 1] == "Read,mcp__srv:tool"
        assert args[args.index("--disallowedTools") + 1] == "Bash"
        assert "--permission-prompt-tool" not in args

    @pytest.mark.parametrize("tool", ["--dangerous", "Bash;rm", "two words", ""])
    def test_invalid_tool_names(self, tool: str) -> None:
        with pytest.raises(LaunchError):
            validate_tool_names([tool])

    def test_invalid_tool_rejected_when_building(self, workdir: Path) -> None:
        with pytest.raises(LaunchError):
            build_agent_args(_request(workdir, allowed_tools=["-x"]))


class TestLaunchFailures:
    """Preconditions and failures surfaced as LaunchError."""

    @pytest.mark.asyncio
    async def test_missing_working_dir(self, tmp_path: Path, fake_agent: Path) -> None:
        launcher = AgentLauncher(claude_path=str(fake_agent))

        with pytest.raises(LaunchError, match="Working directory"):
            await launcher.launch(_request(tmp_path / "missing"))

    @pytest.mark.asyncio
    async def test_missing_executable(self, workdir: Path) -> None:
        launcher = AgentLauncher(claude_path="agentdock-no-such-agent")

        with pytest.raises(LaunchError, match="executable not found"):
            await launcher.launch(_request(workdir))

    @pytest.mark.asyncio
    async def test_missing_runtime(self, workdir: Path) -> None:
        config = ContainerConfig(image="img", runtime="agentdock-no-such-runtime")
        launcher = AgentLauncher()

        with pytest.raises(LaunchError, match="runtime not found"):
            await launcher.launch(_request(workdir, container_config=config))

    @pytest.mark.asyncio
    @pytest.mark.integration
    async def test_missing_image(self, workdir: Path, fake_agent: Path) -> None:
        config = ContainerConfig(image="absent:latest", runtime=str(fake_agent))
        launcher = AgentLauncher(check_image_exists=True)

        with pytest.raises(LaunchError, match="image not found"):
            await launcher.launch(_request(workdir, container_config=config))

    @pytest.mark.asyncio
    @pytest.mark.integration
    async def test_image_exists_probe(self, fake_agent: Path) -> None:
        assert await image_exists(str(fake_agent), "present:latest") is True
        assert await image_exists(str(fake_agent), "absent:latest") is False

    @pytest.mark.asyncio
    async def test_image_probe_with_missing_runtime(self, tmp_path: Path) -> None:
        assert await image_exists(str(tmp_path / "nothing"), "img") is False

    @pytest.mark.asyncio
    async def test_undeliverable_message_reaps_process(
        self, workdir: Path, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        process = _ClosedStdinProcess()

        async def launch_native(self, request, working_dir, args):
            return process

        monkeypatch.setattr(AgentLauncher, "_launch_native", launch_native)

        with pytest.raises(LaunchError, match="initial message"):
            await AgentLauncher().launch(_request(workdir))

        assert process.killed is True
        assert process.reaped is True


class TestGitEnv:
    """Git identity forwarding."""

    @pytest.mark.asyncio
    async def test_no_git_no_vars(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setattr(launcher_module.shutil, "which", lambda name: None)

        assert await get_git_env_vars() == {}


@pytest.mark.integration
class TestProcessLaunch:
    """Launch the fake agent end to end through a runner."""

    @pytest.mark.asyncio
    async def test_native_launch(self, events, workdir: Path, fake_agent: Path, argv_file: Path) -> None:
        runner = SessionRunner("s1", AgentLauncher(claude_path=str(fake_agent)), on_event=events)

        await runner.start("hi", StartOptions(working_dir=str(workdir), resume_id="prev-1"))

        assert await runner.wait_exited(timeout=10)
        assert events.types == ["system", "text", "result", "exit"]
        assert events.first("text").data["text"] == "Echo: hi"
        assert events.first("exit").data == {"code": 0, "signal": None}
        assert runner.external_session_id == "fake-session"
        argv = json.loads(argv_file.read_text())
        assert argv[:2] == ["-p", ""]
        assert argv[argv.index("--resume") + 1] == "prev-1"

    @pytest.mark.asyncio
    async def test_container_pipe_launch(
        self,
        events,
        workdir: Path,
        fake_agent: Path,
        argv_file: Path,
        monkeypatch: pytest.MonkeyPatch,
    ) -> None:
        monkeypatch.setenv("ANTHROPIC_API_KEY", "test-key")
        config = ContainerConfig(image="present:latest", runtime=str(fake_agent), interactive=False)
        launcher = AgentLauncher(check_image_exists=True)
        runner = SessionRunner("s1", launcher, on_event=events)

        await runner.start("hi", StartOptions(working_dir=str(workdir), container_config=config))

        assert await runner.wait_exited(timeout=10)
        assert events.first("text").data["text"] == "Echo: hi"
        assert events.first("exit").data == {"code": 0, "signal": None}
        argv = json.loads(argv_file.read_text())
        assert argv[:4] == ["run", "-i", "--rm", "--userns=keep-id"]
        assert argv[argv.index("-v") + 1] == f"{workdir}:/workspace:O"
        assert "ANTHROPIC_API_KEY=test-key" in argv
        image_index = argv.index("present:latest")
        assert argv[image_index + 1:image_index + 4] == ["claude", "-p", ""]

    @pytest.mark.asyncio
    async def test_container_terminal_launch(
        self,
        events,
        workdir: Path,
        fake_agent: Path,
        argv_file: Path,
    ) -> None:
        config = ContainerConfig(image="present:latest", runtime=str(fake_agent), interactive=True)
        launcher = AgentLauncher(check_image_exists=False)
        runner = SessionRunner("s1", launcher, on_event=events)

        await runner.start("hi", StartOptions(working_dir=str(workdir), container_config=config))

        assert await runner.wait_exited(timeout=10)
        assert events.first("text").data["text"] == "Echo: hi"
        assert "error" not in events.types
        argv = json.loads(argv_file.read_text())
        assert argv[:2] == ["run", "-it"]
        # A terminal has no half-close, so finishing the conversation terminates it
        assert events.first("exit").data["signal"] == "SIGTERM"

    @pytest.mark.asyncio
    async def test_default_container_from_settings(
        self,
        workdir: Path,
        fake_agent: Path,
        argv_file: Path,
    ) -> None:
        default = ContainerConfig(image="present:latest", runtime=str(fake_agent), interactive=False)
        launcher = AgentLauncher(check_image_exists=False, default_container=default)

        process = await launcher.launch(_request(workdir))
        try:
            output = b""
            while b'"result"' not in output:
                chunk = await process.read()
                assert chunk
                output += chunk
        finally:
            await process.close_stdin()
            status = await process.wait()

        assert status.code == 0
        assert json.loads(argv_file.read_text())[0] == "run"
