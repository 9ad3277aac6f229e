"""
Logging configuration for agentdock.

Library modules only call logging.getLogger(__name__). A host embedding the
runner picks one of the setup functions below once at startup:

    setup_runner_logging(log_level="DEBUG")   # agentdock.* to console + runner.log
    setup_file_logging()                      # whole process to host.log only
"""
import logging
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Iterable, Optional

import colorlog

from ..config import LOGS_DIR
from .constants import (
    COLORLOG_COLORS,
    LOG_BACKUP_COUNT,
    LOG_FILE_HOST,
    LOG_FILE_RUNNER,
    LOG_FORMAT_COLORED,
    LOG_FORMAT_FILE,
    LOG_MAX_BYTES,
)


def _level_from_name(name: str) -> int:
    """Map a level name to its numeric value; unknown names mean INFO."""
    level = logging.getLevelName(name.upper())
    return level if isinstance(level, int) else logging.INFO


def _file_handler(path: Path, level: int, max_bytes: int, backup_count: int) -> RotatingFileHandler:
    path.parent.mkdir(parents=True, exist_ok=True)
    handler = RotatingFileHandler(
        filename=str(path),
        maxBytes=max_bytes,
        backupCount=backup_count,
        encoding="utf-8",
    )
    handler.setFormatter(logging.Formatter(LOG_FORMAT_FILE))
    handler.setLevel(level)
    return handler


def _console_handler(level: int) -> logging.Handler:
    handler = colorlog.StreamHandler(sys.stdout)
    handler.setFormatter(
        colorlog.ColoredFormatter(LOG_FORMAT_COLORED, log_colors=COLORLOG_COLORS)
    )
    handler.setLevel(level)
    return handler


def _install(
    targets: Iterable[logging.Logger],
    handlers: list[logging.Handler],
    level: int,
    isolate: bool,
) -> None:
    """Replace the handlers of each target logger."""
    for target in targets:
        target.handlers.clear()
        target.setLevel(level)
        for handler in handlers:
            target.addHandler(handler)
        if isolate:
            target.propagate = False


def setup_file_logging(
    log_level: str = "INFO",
    log_file: Optional[Path] = None,
    log_name: str = LOG_FILE_HOST,
    max_bytes: int = LOG_MAX_BYTES,
    backup_count: int = LOG_BACKUP_COUNT,
) -> None:
    """
    Send everything the process logs to a single rotating file.

    Used by hosts whose stdout belongs to something else (a TUI, a pipe).

    Args:
        log_level: Level name; unknown names fall back to INFO.
        log_file: Explicit file; defaults to LOGS_DIR / log_name.
        log_name: File name under LOGS_DIR.
        max_bytes: Rotation threshold.
        backup_count: Rotated files kept.
    """
    level = _level_from_name(log_level)
    path = log_file or LOGS_DIR / log_name
    handler = _file_handler(path, level, max_bytes, backup_count)
    _install([logging.getLogger()], [handler], level, isolate=False)


def setup_dual_logging(
    log_level: str = "INFO",
    log_file: Optional[Path] = None,
    log_name: str = LOG_FILE_RUNNER,
    loggers: Optional[list[str]] = None,
    max_bytes: int = LOG_MAX_BYTES,
    backup_count: int = LOG_BACKUP_COUNT,
) -> None:
    """
    Colored console output plus a rotating file.

    With ``loggers`` given, only those loggers are configured and they stop
    propagating, so host records never end up in the runner log. Without it
    the root logger is configured.
    """
    level = _level_from_name(log_level)
    path = log_file or LOGS_DIR / log_name
    handlers = [
        _file_handler(path, level, max_bytes, backup_count),
        _console_handler(level),
    ]

    if loggers is None:
        _install([logging.getLogger()], handlers, level, isolate=False)
    else:
        _install((logging.getLogger(name) for name in loggers), handlers, level, isolate=True)


def setup_runner_logging(
    log_level: str = "INFO",
    log_file: Optional[Path] = None,
) -> None:
    """Console and runner.log output for the agentdock loggers only."""
    setup_dual_logging(
        log_level=log_level,
        log_file=log_file,
        log_name=LOG_FILE_RUNNER,
        loggers=["agentdock"],
    )
