"""
Tests for logging setup helpers.
"""
import logging
from logging.handlers import RotatingFileHandler
from pathlib import Path

import colorlog
import pytest

from agentdock.core.logging_config import (
    setup_dual_logging,
    setup_file_logging,
    setup_runner_logging,
)


@pytest.fixture
def restore_logger():
    """Restore the agentdock logger configuration after the test."""
    logger = logging.getLogger("agentdock")
    saved = (list(logger.handlers), logger.level, logger.propagate)
    yield logger
    for handler in logger.handlers:
        handler.close()
    logger.handlers[:] = saved[0]
    logger.setLevel(saved[1])
    logger.propagate = saved[2]


class TestRunnerLogging:
    """Test logger configuration for the runner packages."""

    def test_runner_logging_handlers(self, tmp_path: Path, restore_logger: logging.Logger) -> None:
        log_file = tmp_path / "logs" / "runner.log"

        setup_runner_logging(log_level="DEBUG", log_file=log_file)

        handlers = restore_logger.handlers
        assert restore_logger.level == logging.DEBUG
        assert restore_logger.propagate is False
        assert any(isinstance(h, RotatingFileHandler) for h in handlers)
        assert any(isinstance(h.formatter, colorlog.ColoredFormatter) for h in handlers)
        assert log_file.parent.is_dir()

    def test_records_reach_the_file(self, tmp_path: Path, restore_logger: logging.Logger) -> None:
        log_file = tmp_path / "runner.log"
        setup_dual_logging(log_level="info", log_file=log_file, loggers=["agentdock"])

        logging.getLogger("agentdock.core.runner").info("Session s1: agent started")
        logging.getLogger("agentdock.core.runner").debug("not written")
        for handler in restore_logger.handlers:
            handler.flush()

        text = log_file.read_text()
        assert "[INFO] agentdock.core.runner: Session s1: agent started" in text
        assert "not written" not in text

    def test_unknown_level_falls_back_to_info(
        self, tmp_path: Path, restore_logger: logging.Logger
    ) -> None:
        setup_dual_logging(log_level="chatty", log_file=tmp_path / "x.log", loggers=["agentdock"])

        assert restore_logger.level == logging.INFO


class TestHostLogging:
    """Test file-only logging on the root logger."""

    @pytest.fixture
    def restore_root(self):
        root = logging.getLogger()
        saved = (list(root.handlers), root.level)
        yield root
        for handler in root.handlers:
            if handler not in saved[0]:
                handler.close()
        root.handlers[:] = saved[0]
        root.setLevel(saved[1])

    def test_default_file_under_logs_dir(
        self, tmp_path: Path, restore_root: logging.Logger, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        monkeypatch.setattr("agentdock.core.logging_config.LOGS_DIR", tmp_path / "logs")

        setup_file_logging(log_level="WARNING")

        assert restore_root.level == logging.WARNING
        assert len(restore_root.handlers) == 1
        handler = restore_root.handlers[0]
        assert isinstance(handler, RotatingFileHandler)
        assert Path(handler.baseFilename) == tmp_path / "logs" / "host.log"
