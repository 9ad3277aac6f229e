"""
Centralized constants for agentdock.

All magic numbers, strings, and wire-level names are defined here.
This keeps the runner, codec and launcher in agreement about the
line protocol and the default limits.

Usage:
    from .constants import (
        LOG_FORMAT_FILE,
        DEFAULT_CONTROL_TIMEOUT_SECONDS,
        ASK_USER_QUESTION_TOOL,
    )
"""


# =============================================================================
# Logging Constants
# =============================================================================

# Log format for file-based logging
LOG_FORMAT_FILE: str = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"

# Log format for console (basic, no colors)
LOG_FORMAT_CONSOLE: str = "%(levelname)-8s %(name)s: %(message)s"

# Log format for colored console (using colorlog)
LOG_FORMAT_COLORED: str = (
    "%(log_color)s%(levelname)-8s%(reset)s %(cyan)s%(name)s%(reset)s: %(message)s"
)

# Rotating file handler settings
LOG_MAX_BYTES: int = 10 * 1024 * 1024  # 10 MB
LOG_BACKUP_COUNT: int = 5

# Log file names
LOG_FILE_RUNNER: str = "runner.log"
LOG_FILE_HOST: str = "host.log"

COLORLOG_COLORS: dict[str, str] = {
    "DEBUG": "white",
    "INFO": "green",
    "WARNING": "yellow",
    "ERROR": "red",
    "CRITICAL": "red,bg_white",
}

# Preview length for prompts and raw lines in log messages
LOG_PREVIEW_LENGTH: int = 100


# =============================================================================
# Runner Defaults
# =============================================================================

DEFAULT_CLAUDE_PATH: str = "claude"
DEFAULT_CONTROL_TIMEOUT_SECONDS: float = 30.0
DEFAULT_STOP_GRACE_SECONDS: float = 5.0
DEFAULT_PERMISSION_PROMPT_TOOL: str = "stdio"
DEFAULT_THINKING_TOKENS: int = 31999

# A partial line larger than this means the stream lost its framing
DEFAULT_MAX_LINE_BYTES: int = 10 * 1024 * 1024  # 10 MB

# Bytes requested per read from the agent's output channel
READ_CHUNK_SIZE: int = 64 * 1024


# =============================================================================
# Line Protocol
# =============================================================================

# Inbound message types
MSG_SYSTEM: str = "system"
MSG_ASSISTANT: str = "assistant"
MSG_USER: str = "user"
MSG_RESULT: str = "result"
MSG_CONTROL_REQUEST: str = "control_request"
MSG_CONTROL_RESPONSE: str = "control_response"

# Control request subtypes
CONTROL_SET_PERMISSION_MODE: str = "set_permission_mode"
CONTROL_INTERRUPT: str = "interrupt"
CONTROL_CAN_USE_TOOL: str = "can_use_tool"

# Tool whose invocation is a structured multi-question prompt
ASK_USER_QUESTION_TOOL: str = "AskUserQuestion"


# =============================================================================
# Container Sandbox
# =============================================================================

DEFAULT_CONTAINER_RUNTIME: str = "podman"
CONTAINER_WORKSPACE_DIR: str = "/workspace"
CONTAINER_HOME_DIR: str = "/home/node"

# Host paths mounted into every container unless skip_default_mounts is set.
# (source, target, options); mounted only when the source exists.
DEFAULT_CONTAINER_MOUNTS: tuple[tuple[str, str, str], ...] = (
    ("~/.gitconfig", f"{CONTAINER_HOME_DIR}/.gitconfig", "ro"),
    ("~/.claude", f"{CONTAINER_HOME_DIR}/.claude", "rw"),
    ("~/.config/gh", f"{CONTAINER_HOME_DIR}/.config/gh", "ro"),
)

# Git identity forwarded from the host into the container.
# git config key -> (author variable, committer variable)
GIT_ENV_KEYS: dict[str, tuple[str, str]] = {
    "user.name": ("GIT_AUTHOR_NAME", "GIT_COMMITTER_NAME"),
    "user.email": ("GIT_AUTHOR_EMAIL", "GIT_COMMITTER_EMAIL"),
}

# Seconds allowed for auxiliary probes (git config, image exists)
PROBE_TIMEOUT_SECONDS: float = 10.0

# Terminal size for interactive container channels (rows, cols)
PTY_WINDOW_SIZE: tuple[int, int] = (50, 200)
