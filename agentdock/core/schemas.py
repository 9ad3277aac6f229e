"""
Data models for agentdock.

Contains Pydantic models for sandbox configuration and start options,
plus the plain dataclasses handed to process launchers.
"""
from dataclasses import dataclass, field
from typing import Optional

from pydantic import BaseModel, Field

from .constants import CONTAINER_WORKSPACE_DIR, DEFAULT_CONTAINER_RUNTIME
from .events import PermissionMode


class ContainerMount(BaseModel):
    """Bind mount passed to the container runtime."""

    source: str = Field(description="Host path to mount")
    target: str = Field(description="Path inside the container")
    options: Optional[str] = Field(
        default=None,
        description="Mount options such as ro, rw or O (overlay)"
    )

    def to_volume_arg(self) -> str:
        """Render as the value of a -v flag."""
        if self.options:
            return f"{self.source}:{self.target}:{self.options}"
        return f"{self.source}:{self.target}"


class ContainerConfig(BaseModel):
    """
    Configuration for running the agent inside a rootless container.

    Mount order is significant: default mounts are emitted before
    extra mounts, each list in its given order.
    """

    enabled: bool = Field(default=True, description="Launch inside a container")
    runtime: str = Field(
        default=DEFAULT_CONTAINER_RUNTIME,
        description="Container runtime binary"
    )
    image: str = Field(description="Image reference")
    workdir_overlay: bool = Field(
        default=True,
        description="Mount the working directory with an overlay (O) instead of rw"
    )
    workdir_target: str = Field(
        default=CONTAINER_WORKSPACE_DIR,
        description="Working directory path inside the container"
    )
    interactive: bool = Field(
        default=True,
        description="Allocate a terminal channel (-it)"
    )
    rootless: bool = Field(
        default=True,
        description="Map the container user to the invoking host user (--userns=keep-id)"
    )
    skip_default_mounts: bool = Field(
        default=False,
        description="Omit the standard home configuration mounts"
    )
    default_mounts: list[ContainerMount] = Field(default_factory=list)
    extra_mounts: list[ContainerMount] = Field(default_factory=list)
    extra_args: list[str] = Field(
        default_factory=list,
        description="Additional runtime flags placed before the image"
    )
    env: dict[str, str] = Field(default_factory=dict)


class Attachment(BaseModel):
    """Image attachment sent with a user message."""

    data: str = Field(description="Base64 encoded image data")
    media_type: str = Field(default="image/png")
    name: Optional[str] = None


class StartOptions(BaseModel):
    """Options accepted by a runner start."""

    working_dir: Optional[str] = None
    resume_id: Optional[str] = Field(
        default=None,
        description="External agent session id to resume"
    )
    attachments: list[Attachment] = Field(default_factory=list)
    container_config: Optional[ContainerConfig] = None
    permission_mode: Optional[PermissionMode] = None
    allowed_tools: list[str] = Field(default_factory=list)
    disallowed_tools: list[str] = Field(default_factory=list)
    thinking_enabled: bool = False


@dataclass
class LaunchRequest:
    """Everything a launcher needs to spawn one agent process."""

    session_id: str
    message: str
    working_dir: str
    resume_id: Optional[str] = None
    attachments: list[Attachment] = field(default_factory=list)
    container_config: Optional[ContainerConfig] = None
    permission_mode: Optional[PermissionMode] = None
    allowed_tools: list[str] = field(default_factory=list)
    disallowed_tools: list[str] = field(default_factory=list)
    thinking_enabled: bool = False


@dataclass(frozen=True)
class ExitStatus:
    """Termination signal of an agent process."""

    code: Optional[int]
    signal: Optional[str] = None

    def as_dict(self) -> dict:
        return {"code": self.code, "signal": self.signal}
