"""
Stage A quality gate: run the project's test command.

The gate is binary. It passes on exit code 0 and fails on anything else,
including a timeout. A project with no configured and no detectable test
command passes as "skipped" with a warning.
"""

from __future__ import annotations

import json
import re
import subprocess
import time
from contextlib import nullcontext
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, Optional

if TYPE_CHECKING:
    from shiplog.cancellation import CancelToken
    from shiplog.config import ShiplogConfig
    from shiplog.logger import ShiplogLogger


OUTPUT_TAIL_CHARS = 2000


@dataclass
class TestGateResult:
    """Result of running the test command."""
    __test__ = False

    passed: bool
    command: str = ""
    skipped: bool = False
    output: str = ""
    failures: list[str] = field(default_factory=list)
    duration_seconds: float = 0.0

    @classmethod
    def success(cls, command: str, output: str = "", duration: float = 0.0) -> TestGateResult:
        """Create a passing result."""
        return cls(passed=True, command=command, output=output, duration_seconds=duration)

    @classmethod
    def skip(cls) -> TestGateResult:
        """Create a result for a project without a test command."""
        return cls(passed=True, skipped=True)

    @classmethod
    def failure(
        cls,
        command: str,
        output: str,
        failures: Optional[list[str]] = None,
        duration: float = 0.0,
    ) -> TestGateResult:
        """Create a failing result."""
        return cls(
            passed=False,
            command=command,
            output=output,
            failures=failures or [],
            duration_seconds=duration,
        )

    def summary(self) -> str:
        """Short failure description for the memory critique."""
        lines = [f"Test gate failed: `{self.command}`"]
        if self.failures:
            lines.append("Failing: " + ", ".join(self.failures))
        if self.output:
            lines.append(self.output[-OUTPUT_TAIL_CHARS:].strip())
        return "\n".join(lines)


def detect_test_command(repo_root: str | Path) -> Optional[str]:
    """
    Guess the test command from project files.

    Returns:
        A shell command, or None if nothing recognizable is present.
    """
    root = Path(repo_root)

    package_json = root / "package.json"
    if package_json.is_file():
        try:
            scripts = json.loads(package_json.read_text()).get("scripts") or {}
        except (OSError, json.JSONDecodeError, AttributeError):
            scripts = {}
        test_script = scripts.get("test", "")
        if test_script and "no test specified" not in test_script:
            return "npm test"

    if any((root / name).is_file() for name in ("pytest.ini", "pyproject.toml", "setup.cfg", "tox.ini")):
        if (root / "tests").is_dir() or (root / "test").is_dir():
            return "python -m pytest -q"

    if (root / "Cargo.toml").is_file():
        return "cargo test"
    if (root / "go.mod").is_file():
        return "go test ./..."

    makefile = root / "Makefile"
    if makefile.is_file():
        try:
            if re.search(r"^test:", makefile.read_text(), re.MULTILINE):
                return "make test"
        except OSError:
            return None
    return None


def _parse_failures(output: str) -> list[str]:
    """Pull failing test names out of pytest-style output."""
    failures = [m.group(1) for m in re.finditer(r"FAILED\s+([^\s]+)", output)]
    return failures[:5]


class TestGate:
    """Runs the configured or detected test command."""
    __test__ = False

    def __init__(
        self,
        config: ShiplogConfig,
        logger: Optional[ShiplogLogger] = None,
        cancel_token: Optional[CancelToken] = None,
    ) -> None:
        self._config = config
        self._logger = logger
        self._cancel_token = cancel_token

    def _log(self, event_type: str, data: Optional[dict] = None, level: str = "info") -> None:
        """Log an event if logger is configured."""
        if self._logger:
            self._logger.log(event_type, data, level=level)

    def resolve_command(self) -> Optional[str]:
        """The configured command, else an auto-detected one."""
        if self._config.tests.command:
            return self._config.tests.command
        if self._config.tests.autodetect:
            return detect_test_command(self._config.repo_root)
        return None

    def run(self) -> TestGateResult:
        """
        Run the test command once.

        Returns:
            TestGateResult; ``passed`` is True only for exit code 0 or skip.

        Raises:
            AgentCancelledError: If the run was interrupted.
        """
        command = self.resolve_command()
        if not command:
            self._log("test_gate_skipped", {"reason": "no test command"}, level="warn")
            return TestGateResult.skip()

        timeout = self._config.tests.timeout_seconds
        self._log("test_gate_start", {"command": command, "timeout": timeout})
        started = time.monotonic()

        try:
            proc = subprocess.Popen(
                command,
                shell=True,
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                text=True,
                cwd=self._config.repo_root,
            )
        except OSError as e:
            self._log("test_gate_error", {"command": command, "error": str(e)}, level="error")
            return TestGateResult.failure(command, str(e))

        registration = self._cancel_token.register(proc) if self._cancel_token else nullcontext(proc)
        with registration:
            try:
                output, _ = proc.communicate(timeout=timeout)
            except subprocess.TimeoutExpired:
                proc.kill()
                output, _ = proc.communicate()
                duration = time.monotonic() - started
                self._log("test_gate_timeout", {"command": command, "timeout": timeout}, level="error")
                return TestGateResult.failure(
                    command,
                    (output or "") + f"\nTest run timed out after {timeout} seconds",
                    duration=duration,
                )

        if self._cancel_token is not None:
            self._cancel_token.raise_if_cancelled()

        duration = time.monotonic() - started
        output = output or ""
        if proc.returncode == 0:
            self._log("test_gate_passed", {"command": command, "duration": round(duration, 2)})
            return TestGateResult.success(command, output, duration)

        failures = _parse_failures(output)
        self._log("test_gate_failed", {
            "command": command,
            "returncode": proc.returncode,
            "failures": failures,
        }, level="warn")
        return TestGateResult.failure(command, output, failures, duration)
