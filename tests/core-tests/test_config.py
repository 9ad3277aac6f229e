"""
Tests for runner configuration loading.
"""
from pathlib import Path

import pytest

import agentdock.config as config_module
from agentdock.config import (
    ConfigNotFoundError,
    ConfigValidationError,
    RunnerConfigLoader,
    RunnerSettings,
)
from agentdock.core.constants import DEFAULT_CONTROL_TIMEOUT_SECONDS

SHIPPED_CONFIG = Path(__file__).parent.parent.parent / "config" / "runner.yaml"


def _write(tmp_path: Path, text: str) -> Path:
    path = tmp_path / "runner.yaml"
    path.write_text(text)
    return path


class TestRunnerConfigLoader:
    """Test YAML loading, validation and overrides."""

    def test_missing_default_file_uses_defaults(
        self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        monkeypatch.setattr(config_module, "RUNNER_CONFIG_FILE", tmp_path / "absent.yaml")

        settings = RunnerConfigLoader().get_settings()

        assert settings == RunnerSettings()
        assert settings.control_timeout_seconds == DEFAULT_CONTROL_TIMEOUT_SECONDS
        assert settings.container is None

    def test_missing_explicit_file_raises(self, tmp_path: Path) -> None:
        loader = RunnerConfigLoader(config_path=tmp_path / "absent.yaml")

        with pytest.raises(ConfigNotFoundError):
            loader.load()

    def test_loads_runner_section(self, tmp_path: Path) -> None:
        path = _write(tmp_path, """
runner:
  control_timeout_seconds: 2.5
  stop_grace_seconds: 1
  check_image_exists: false
  container:
    image: localhost/sandbox:1
    interactive: false
    extra_mounts:
      - source: ~/.cache
        target: /cache
        options: rw
""")

        settings = RunnerConfigLoader(config_path=path).get_settings()

        assert settings.control_timeout_seconds == 2.5
        assert settings.stop_grace_seconds == 1
        assert settings.check_image_exists is False
        assert settings.container.image == "localhost/sandbox:1"
        assert settings.container.interactive is False
        assert settings.container.extra_mounts[0].options == "rw"

    def test_empty_file_uses_defaults(self, tmp_path: Path) -> None:
        settings = RunnerConfigLoader(config_path=_write(tmp_path, "")).get_settings()

        assert settings == RunnerSettings()

    def test_overrides_win_and_none_is_ignored(self, tmp_path: Path) -> None:
        path = _write(tmp_path, "runner:\n  control_timeout_seconds: 10\n  claude_path: /opt/claude\n")
        loader = RunnerConfigLoader(config_path=path)

        loader.apply_overrides(control_timeout_seconds=3, claude_path=None)
        settings = loader.get_settings()

        assert settings.control_timeout_seconds == 3
        assert settings.claude_path == "/opt/claude"

    @pytest.mark.parametrize("text", [
        "runner: [unclosed\n",
        "- just\n- a list\n",
        "runner: not-a-mapping\n",
        "runner:\n  control_timeout_seconds: 0\n",
        "runner:\n  container:\n    runtime: podman\n",
    ])
    def test_invalid_configuration(self, tmp_path: Path, text: str) -> None:
        loader = RunnerConfigLoader(config_path=_write(tmp_path, text))

        with pytest.raises(ConfigValidationError):
            loader.get_settings()

    def test_shipped_configuration_is_valid(self) -> None:
        settings = RunnerConfigLoader(config_path=SHIPPED_CONFIG).get_settings()

        assert settings.control_timeout_seconds == DEFAULT_CONTROL_TIMEOUT_SECONDS
        assert settings.permission_prompt_tool == "stdio"


class TestDirectories:
    """Test runtime directory creation."""

    def test_ensure_dirs_creates_everything(
        self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        names = ["LOGS_DIR", "SESSIONS_DIR", "CONFIG_DIR", "DATA_DIR"]
        for name in names:
            monkeypatch.setattr(config_module, name, tmp_path / name.lower())

        config_module.ensure_dirs()
        config_module.ensure_dirs()

        assert sorted(p.name for p in tmp_path.iterdir()) == sorted(n.lower() for n in names)
