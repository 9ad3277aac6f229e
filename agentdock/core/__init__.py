"""
Core modules for agentdock.

This package contains the runner engine:
- constants.py: Centralized constants (log formats, wire names, limits)
- control.py: Control request correlator
- events.py: Runner events, phases and permission modes
- exceptions.py: Error taxonomy
- launcher.py: Native and containerized agent processes
- line_protocol.py: Newline-delimited JSON codec and message builders
- logging_config.py: Unified logging configuration
- runner.py: Session runner state machine
- sandbox.py: Container argument builder
- schemas.py: Pydantic data models
- scripted.py: Scripted launcher for deterministic runs
- session_state.py: Session status projection

logging_config is imported directly (it depends on agentdock.config).
"""
from .control import ControlCorrelator, ControlOutcome, ControlStatus
from .events import (
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
    AgentDockError,
    ControlRequestError,
    ControlTimeoutError,
    DoubleStartError,
    LaunchError,
    ProtocolDecodeError,
    ProtocolDesyncError,
    RunnerStateError,
    UnexpectedExitError,
    WriteError,
)
from .launcher import AgentLauncher, AgentProcess, ProcessLauncher
from .line_protocol import LineDecoder, LineWriter, encode_message
from .runner import SessionRunner
from .sandbox import build_podman_args, create_default_container_config
from .schemas import (
    Attachment,
    ContainerConfig,
    ContainerMount,
    ExitStatus,
    LaunchRequest,
    StartOptions,
)
from .scripted import ScriptedLauncher, ScriptStep
from .session_state import SessionStatus, project_session_status, project_snapshot

__all__ = [
    # Control
    "ControlCorrelator",
    "ControlOutcome",
    "ControlStatus",
    # Events
    "EventType",
    "PendingPrompt",
    "PermissionMode",
    "PromptKind",
    "RunnerEvent",
    "RunnerPhase",
    "RunnerSnapshot",
    "parse_permission_mode",
    # Exceptions
    "AgentDockError",
    "ControlRequestError",
    "ControlTimeoutError",
    "DoubleStartError",
    "LaunchError",
    "ProtocolDecodeError",
    "ProtocolDesyncError",
    "RunnerStateError",
    "UnexpectedExitError",
    "WriteError",
    # Launch
    "AgentLauncher",
    "AgentProcess",
    "ProcessLauncher",
    "ScriptedLauncher",
    "ScriptStep",
    # Protocol
    "LineDecoder",
    "LineWriter",
    "encode_message",
    # Runner
    "SessionRunner",
    # Sandbox
    "build_podman_args",
    "create_default_container_config",
    # Schemas
    "Attachment",
    "ContainerConfig",
    "ContainerMount",
    "ExitStatus",
    "LaunchRequest",
    "StartOptions",
    # Session state
    "SessionStatus",
    "project_session_status",
    "project_snapshot",
]
