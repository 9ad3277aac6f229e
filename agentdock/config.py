"""
Global configuration for agentdock.

This module defines directory paths and the RunnerConfigLoader class
for loading runner settings from config/runner.yaml.

Usage:
    from agentdock.config import LOGS_DIR, SESSIONS_DIR, CONFIG_DIR
    from agentdock.config import RunnerConfigLoader, ConfigNotFoundError

    # Load settings (defaults when config/runner.yaml is absent)
    loader = RunnerConfigLoader()
    settings = loader.get_settings()

    # Or with custom config path (must exist)
    loader = RunnerConfigLoader(config_path=Path("./custom-runner.yaml"))
"""
import logging
import os
from pathlib import Path
from typing import Any, Optional

import yaml
from pydantic import BaseModel, Field, ValidationError

from .core.constants import (
    DEFAULT_CLAUDE_PATH,
    DEFAULT_CONTROL_TIMEOUT_SECONDS,
    DEFAULT_MAX_LINE_BYTES,
    DEFAULT_PERMISSION_PROMPT_TOOL,
    DEFAULT_STOP_GRACE_SECONDS,
    DEFAULT_THINKING_TOKENS,
)
from .core.schemas import ContainerConfig

logger = logging.getLogger(__name__)


class ConfigNotFoundError(Exception):
    """Raised when a required configuration file is not found."""
    pass


class ConfigValidationError(Exception):
    """Raised when configuration validation fails."""
    pass


# AGENTDOCK_DIR is the root of the project.
# Allow override via AGENTDOCK_ROOT so hosts can relocate config, logs and data.
_root_override = os.environ.get("AGENTDOCK_ROOT")
if _root_override:
    AGENTDOCK_DIR: Path = Path(_root_override).resolve()
else:
    # config.py is at ROOT/agentdock/config.py, so parent.parent = ROOT/
    AGENTDOCK_DIR = Path(__file__).parent.parent.resolve()

# Standard directories
LOGS_DIR: Path = AGENTDOCK_DIR / "logs"
SESSIONS_DIR: Path = AGENTDOCK_DIR / "sessions"
CONFIG_DIR: Path = AGENTDOCK_DIR / "config"
DATA_DIR: Path = AGENTDOCK_DIR / "data"

# Configuration files
RUNNER_CONFIG_FILE: Path = CONFIG_DIR / "runner.yaml"

DATABASE_PATH: Path = DATA_DIR / "agentdock.db"
DEFAULT_DATABASE_URL: str = f"sqlite+aiosqlite:///{DATABASE_PATH}"


class RunnerSettings(BaseModel):
    """
    Settings shared by every runner a host creates.

    control_timeout_seconds bounds how long a control request may stay
    unanswered before it resolves as a timeout.
    """
    claude_path: str = Field(
        default=DEFAULT_CLAUDE_PATH,
        description="Agent executable (native launches only)"
    )
    control_timeout_seconds: float = Field(
        default=DEFAULT_CONTROL_TIMEOUT_SECONDS,
        gt=0,
        description="Deadline for an unanswered control request"
    )
    stop_grace_seconds: float = Field(
        default=DEFAULT_STOP_GRACE_SECONDS,
        ge=0,
        description="Delay between SIGTERM and SIGKILL on stop"
    )
    max_line_bytes: int = Field(
        default=DEFAULT_MAX_LINE_BYTES,
        gt=0,
        description="Largest partial line tolerated before declaring desync"
    )
    permission_prompt_tool: Optional[str] = Field(
        default=DEFAULT_PERMISSION_PROMPT_TOOL,
        description="Route tool permission prompts over the line protocol"
    )
    thinking_tokens: int = Field(
        default=DEFAULT_THINKING_TOKENS,
        gt=0,
        description="MAX_THINKING_TOKENS when extended thinking is enabled"
    )
    check_image_exists: bool = Field(
        default=True,
        description="Verify the container image exists before launching"
    )
    database_url: str = Field(default=DEFAULT_DATABASE_URL)
    container: Optional[ContainerConfig] = Field(
        default=None,
        description="Default sandbox applied when a start request has none"
    )


class RunnerConfigLoader:
    """
    Loads runner settings from a YAML file.

    A missing default file yields default settings; an explicitly
    requested file must exist.

    Usage:
        loader = RunnerConfigLoader()
        loader.apply_overrides(control_timeout_seconds=5)
        settings = loader.get_settings()
    """

    def __init__(self, config_path: Optional[Path] = None) -> None:
        """
        Initialize the configuration loader.

        Args:
            config_path: Path to runner.yaml. Defaults to CONFIG_DIR/runner.yaml.
        """
        self._explicit = config_path is not None
        self._config_path = config_path or RUNNER_CONFIG_FILE
        self._config: dict[str, Any] | None = None
        self._overrides: dict[str, Any] = {}
        self._loaded = False

    def load(self) -> None:
        """
        Load the runner section from the YAML file.

        Raises:
            ConfigNotFoundError: If an explicitly given file is missing.
            ConfigValidationError: If the file cannot be parsed.
        """
        if not self._config_path.exists():
            if self._explicit:
                raise ConfigNotFoundError(
                    f"Runner configuration not found: {self._config_path}"
                )
            logger.debug(
                f"No runner configuration at {self._config_path}, using defaults"
            )
            self._config = {}
            self._loaded = True
            return

        try:
            with self._config_path.open("r", encoding="utf-8") as f:
                data = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise ConfigValidationError(
                f"Failed to parse runner configuration {self._config_path}: {e}"
            ) from e

        if data is None:
            data = {}
        if not isinstance(data, dict):
            raise ConfigValidationError(
                f"Runner configuration must be a mapping: {self._config_path}"
            )

        section = data.get("runner") or {}
        if not isinstance(section, dict):
            raise ConfigValidationError(
                f"'runner' section must be a mapping in {self._config_path}"
            )

        self._config = section
        self._loaded = True
        logger.info(f"Configuration loaded from {self._config_path}")

    def apply_overrides(self, **kwargs: Any) -> None:
        """
        Apply overrides on top of the file values.

        Args:
            **kwargs: Setting values to override; None values are ignored.
        """
        for key, value in kwargs.items():
            if value is not None:
                self._overrides[key] = value
                logger.debug(f"Config override: {key}={value}")

    def get_settings(self) -> RunnerSettings:
        """
        Get the validated settings (YAML + overrides).

        Returns:
            RunnerSettings instance.

        Raises:
            ConfigValidationError: If a value fails validation.
        """
        if not self._loaded:
            self.load()

        merged = dict(self._config or {})
        merged.update(self._overrides)

        try:
            return RunnerSettings.model_validate(merged)
        except ValidationError as e:
            raise ConfigValidationError(
                f"Invalid runner configuration in {self._config_path}: {e}"
            ) from e

    @property
    def config_path(self) -> Path:
        """Return the path to the runner config file."""
        return self._config_path


def ensure_dirs() -> None:
    """Ensure all required directories exist."""
    for dir_path in [LOGS_DIR, SESSIONS_DIR, CONFIG_DIR, DATA_DIR]:
        dir_path.mkdir(parents=True, exist_ok=True)
