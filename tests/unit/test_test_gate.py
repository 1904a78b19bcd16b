"""Tests for the test gate."""

import json

import pytest

from shiplog.cancellation import CancelToken
from shiplog.errors import AgentCancelledError
from shiplog.quality.test_gate import TestGate, TestGateResult, detect_test_command


class TestDetectTestCommand:
    """Tests for test command auto-detection."""

    def test_nothing_detected(self, tmp_path):
        assert detect_test_command(tmp_path) is None

    def test_npm_test_script(self, tmp_path):
        (tmp_path / "package.json").write_text(json.dumps({"scripts": {"test": "vitest run"}}))
        assert detect_test_command(tmp_path) == "npm test"

    def test_npm_placeholder_script_is_ignored(self, tmp_path):
        (tmp_path / "package.json").write_text(json.dumps({
            "scripts": {"test": 'echo "Error: no test specified" && exit 1'},
        }))
        assert detect_test_command(tmp_path) is None

    def test_pytest_needs_config_and_tests_dir(self, tmp_path):
        (tmp_path / "pyproject.toml").write_text("[project]\nname = 'x'\n")
        assert detect_test_command(tmp_path) is None
        (tmp_path / "tests").mkdir()
        assert detect_test_command(tmp_path) == "python -m pytest -q"

    def test_cargo_and_go(self, tmp_path):
        (tmp_path / "go.mod").write_text("module x\n")
        assert detect_test_command(tmp_path) == "go test ./..."
        (tmp_path / "Cargo.toml").write_text("[package]\n")
        assert detect_test_command(tmp_path) == "cargo test"

    def test_makefile_test_target(self, tmp_path):
        (tmp_path / "Makefile").write_text("build:\n\tcc x.c\ntest:\n\t./run-tests\n")
        assert detect_test_command(tmp_path) == "make test"


class TestTestGateResult:
    """Tests for the result summary."""

    def test_summary_lists_failures_and_output_tail(self):
        result = TestGateResult.failure("pytest", "x" * 5000 + "\n1 failed", ["tests/test_a.py::test_b"])
        summary = result.summary()
        assert summary.startswith("Test gate failed: `pytest`")
        assert "Failing: tests/test_a.py::test_b" in summary
        assert summary.endswith("1 failed")
        assert len(summary) < 2200


class TestTestGate:
    """Tests for running the command."""

    def test_skip_without_command(self, config):
        result = TestGate(config).run()
        assert result.passed is True
        assert result.skipped is True

    def test_configured_command_passes(self, config):
        config.tests.command = "echo ok"
        result = TestGate(config).run()
        assert result.passed is True
        assert result.skipped is False
        assert "ok" in result.output

    def test_failing_command(self, config):
        config.tests.command = "echo 'FAILED tests/test_x.py::test_y - boom'; exit 1"
        result = TestGate(config).run()
        assert result.passed is False
        assert result.failures == ["tests/test_x.py::test_y"]

    def test_timeout_fails(self, config):
        config.tests.command = "exec sleep 5"
        config.tests.timeout_seconds = 1
        result = TestGate(config).run()
        assert result.passed is False
        assert "timed out" in result.output

    def test_autodetect_uses_project_files(self, config, tmp_path):
        config.tests.autodetect = True
        (tmp_path / "Makefile").write_text("test:\n\t@true\n")
        assert TestGate(config).resolve_command() == "make test"

    def test_cancelled_run_raises(self, config):
        config.tests.command = "true"
        token = CancelToken()
        token.cancel()
        with pytest.raises(AgentCancelledError):
            TestGate(config, cancel_token=token).run()
