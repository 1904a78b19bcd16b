"""Tests for configuration loading."""

from pathlib import Path

import pytest

from shiplog.config import ConfigError, ShiplogConfig, load_config


def _write_config(root: Path, content: str) -> Path:
    path = root / ".shiplog" / "config.yaml"
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(content)
    return path


class TestDefaults:
    """Tests for running without a config file."""

    def test_missing_file_gives_defaults(self, tmp_path):
        config = load_config(repo_root=str(tmp_path))

        assert config.autopilot.max_iterations == 20
        assert config.autopilot.stall_threshold == 3
        assert config.claude.timeout_seconds == 1800
        assert config.retry.max_retries == 2
        assert config.review.enabled is True
        assert config.review.allowed_tools == ["Read", "Grep", "Glob"]
        assert config.loop_detection.failure_block_threshold == 3

    def test_paths_resolve_under_repo_root(self, tmp_path):
        config = ShiplogConfig(repo_root=str(tmp_path))

        assert config.sprints_path == tmp_path / "docs" / "sprints"
        assert config.skillbook_file == tmp_path / "docs" / "SKILLBOOK.md"
        assert config.sessions_path == tmp_path / ".shiplog" / "sessions"
        assert config.archive_path == tmp_path / ".shiplog" / "archive"

    def test_empty_file_gives_defaults(self, tmp_path):
        _write_config(tmp_path, "")
        assert load_config(repo_root=str(tmp_path)).autopilot.max_iterations == 20

    def test_explicit_missing_path_is_an_error(self, tmp_path):
        with pytest.raises(ConfigError, match="not found"):
            load_config(config_path=str(tmp_path / "nope.yaml"))


class TestParsing:
    """Tests for YAML sections."""

    def test_sections_override_defaults(self, tmp_path):
        _write_config(tmp_path, """
sprints_dir: backlog
claude:
  model: opus
  timeout_seconds: 900
  max_cost_usd: 2.5
autopilot:
  max_iterations: 7
tests:
  command: make check
review:
  enabled: false
loop_detection:
  failure_warn_threshold: 4
""")

        config = load_config(repo_root=str(tmp_path))

        assert config.sprints_path == tmp_path / "backlog"
        assert config.claude.model == "opus"
        assert config.claude.timeout_seconds == 900
        assert config.claude.max_cost_usd == 2.5
        assert config.autopilot.max_iterations == 7
        assert config.autopilot.stall_threshold == 3
        assert config.tests.command == "make check"
        assert config.review.enabled is False
        assert config.loop_detection.failure_warn_threshold == 4
        assert config.loop_detection.failure_block_threshold == 3

    def test_env_vars_resolved(self, tmp_path, monkeypatch):
        monkeypatch.setenv("SHIPLOG_TEST_MODEL", "sonnet")
        _write_config(tmp_path, "claude:\n  model: ${SHIPLOG_TEST_MODEL}\n")

        assert load_config(repo_root=str(tmp_path)).claude.model == "sonnet"

    def test_unset_env_var_is_an_error(self, tmp_path, monkeypatch):
        monkeypatch.delenv("SHIPLOG_TEST_UNSET", raising=False)
        _write_config(tmp_path, "tests:\n  command: ${SHIPLOG_TEST_UNSET}\n")

        with pytest.raises(ConfigError, match="SHIPLOG_TEST_UNSET"):
            load_config(repo_root=str(tmp_path))

    @pytest.mark.parametrize("content", [
        "claude: [unclosed",
        "- just\n- a list\n",
        "autopilot: 5\n",
        "autopilot:\n  max_iterations: lots\n",
    ])
    def test_invalid_config(self, tmp_path, content):
        _write_config(tmp_path, content)
        with pytest.raises(ConfigError):
            load_config(repo_root=str(tmp_path))
