"""
Rootless container sandbox for the agent process.

Turns a ContainerConfig into the ordered argument list for the container
runtime. Argument order is fixed so callers can assert on position:

    run, -it, --rm, --userns=keep-id,
    -v <workdir>, -w <target>,
    default mounts, extra mounts,
    -e flags (config env, then launch env),
    extra args, image, in-container command
"""
import logging
import os
from pathlib import Path
from typing import Any, Optional, Sequence

from .constants import DEFAULT_CONTAINER_MOUNTS
from .schemas import ContainerConfig, ContainerMount

logger = logging.getLogger(__name__)


def expand_path(path: str) -> str:
    """Expand a leading ~/ to the invoking user's home directory."""
    if path == "~" or path.startswith("~/"):
        return os.path.expanduser(path)
    return path


def detect_default_mounts() -> list[ContainerMount]:
    """
    Collect the standard home configuration mounts present on this host.

    Returns:
        Mounts for ~/.gitconfig, ~/.claude and ~/.config/gh, skipping
        any source that does not exist.
    """
    mounts: list[ContainerMount] = []
    for source, target, options in DEFAULT_CONTAINER_MOUNTS:
        if Path(expand_path(source)).exists():
            mounts.append(ContainerMount(source=source, target=target, options=options))
        else:
            logger.debug(f"Skipping default mount, source missing: {source}")
    return mounts


def create_default_container_config(image: str, **overrides: Any) -> ContainerConfig:
    """
    Create a container configuration with the standard mounts.

    Args:
        image: Image reference.
        **overrides: Field values applied on top of the defaults.

    Returns:
        ContainerConfig with default_mounts populated from the host.
    """
    values: dict[str, Any] = {
        "enabled": True,
        "image": image,
        "default_mounts": detect_default_mounts(),
    }
    values.update(overrides)
    return ContainerConfig.model_validate(values)


def _volume_arg(mount: ContainerMount) -> str:
    resolved = ContainerMount(
        source=expand_path(mount.source),
        target=mount.target,
        options=mount.options,
    )
    return resolved.to_volume_arg()


def build_podman_args(
    config: ContainerConfig,
    working_dir: str,
    env: Optional[dict[str, str]] = None,
    command: Sequence[str] = (),
) -> list[str]:
    """
    Build container runtime arguments (without the runtime binary itself).

    The container is always ephemeral (--rm). The config is never mutated;
    a fresh list is returned on every call.

    Args:
        config: Container configuration.
        working_dir: Host working directory mounted at config.workdir_target.
        env: Environment variables passed with -e, after config.env.
        command: In-container command placed after the image.

    Returns:
        Ordered argument list.
    """
    args: list[str] = ["run"]

    # Mode flags
    args.append("-it" if config.interactive else "-i")
    args.append("--rm")
    if config.rootless:
        args.append("--userns=keep-id")

    # Working directory mount
    workdir_options = "O" if config.workdir_overlay else "rw"
    args.extend(["-v", f"{working_dir}:{config.workdir_target}:{workdir_options}"])
    args.extend(["-w", config.workdir_target])

    # Mounts: defaults first, then extras, each in given order
    if not config.skip_default_mounts:
        for mount in config.default_mounts:
            args.extend(["-v", _volume_arg(mount)])
    for mount in config.extra_mounts:
        args.extend(["-v", _volume_arg(mount)])

    # Environment
    merged_env: dict[str, str] = dict(config.env)
    if env:
        merged_env.update(env)
    for key, value in merged_env.items():
        args.extend(["-e", f"{key}={value}"])

    args.extend(config.extra_args)
    args.append(config.image)
    args.extend(command)

    return args
