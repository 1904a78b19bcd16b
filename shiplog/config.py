"""
Configuration loading and validation for Shiplog.

This module handles:
- Loading .shiplog/config.yaml from the project root (optional)
- Environment variable resolution (${VAR} syntax)
- Default values for every section
"""

from __future__ import annotations

import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

import yaml

from shiplog.errors import ShiplogError

CONFIG_RELATIVE_PATH = ".shiplog/config.yaml"

DEFAULT_REVIEW_CRITERIA = [
    "The change implements the feature as described, not a narrower version of it",
    "New behaviour is covered by tests that would fail without the change",
    "No debugging leftovers, commented-out code or unrelated edits",
    "Error cases are handled rather than silently ignored",
    "Commit messages describe what changed",
]


class ConfigError(ShiplogError):
    """Raised when configuration is invalid or cannot be loaded."""
    pass


@dataclass
class ClaudeConfig:
    """Agent engine (Claude Code CLI) configuration."""
    binary: str = "claude"                     # Path to claude binary
    model: Optional[str] = None                # Model selector, None = CLI default
    timeout_seconds: int = 1800                # Per-iteration timeout (30 minutes)
    max_cost_usd: Optional[float] = None       # Per-iteration cost ceiling
    extra_args: list[str] = field(default_factory=list)  # Passed through verbatim


@dataclass
class RetryConfig:
    """Retry strategy for failed agent invocations."""
    max_retries: int = 2                       # Retries after the first attempt
    base_delay_seconds: float = 5.0            # Doubles on every attempt
    max_delay_seconds: float = 120.0           # Cap on a single backoff delay


@dataclass
class AutopilotConfig:
    """Control loop configuration."""
    max_iterations: int = 20                   # Hard limit on sessions
    stall_threshold: int = 3                   # No-progress sessions before stopping
    iteration_delay_seconds: float = 3.0       # Pause between sessions
    recent_commits: int = 5                    # Commit summaries shown in the prompt
    memory_window: int = 5                     # Memory entries shown in the prompt


@dataclass
class TestGateConfig:
    """Stage A test gate configuration."""
    __test__ = False                           # Not a pytest test class

    command: str = ""                          # Empty = auto-detect
    timeout_seconds: int = 600
    autodetect: bool = True


@dataclass
class ReviewConfig:
    """Stage B independent review configuration."""
    enabled: bool = True
    timeout_seconds: int = 300                 # Shorter than an iteration
    max_cost_usd: float = 1.0                  # Hard ceiling, separate from iterations
    allowed_tools: list[str] = field(default_factory=lambda: ["Read", "Grep", "Glob"])
    criteria: list[str] = field(default_factory=lambda: list(DEFAULT_REVIEW_CRITERIA))


@dataclass
class LoopDetectionConfig:
    """Thresholds for the loop/oscillation detector."""
    failure_warn_threshold: int = 2            # Failures on one item before warning
    failure_block_threshold: int = 3           # Failures on one item before blocking
    oscillation_window: int = 5                # Recent entries scanned for fix/revert
    oscillation_threshold: int = 3             # Fix/revert mentions before warning
    approach_prefix_length: int = 50           # Normalized approach prefix length
    approach_warn_threshold: int = 2           # Duplicate approaches before warning
    approach_block_threshold: int = 3          # Duplicate approaches before blocking


@dataclass
class ShiplogConfig:
    """
    Main configuration for Shiplog.

    This is the top-level config loaded from .shiplog/config.yaml.
    """
    # Paths
    repo_root: str = "."
    sprints_dir: str = "docs/sprints"
    skillbook_path: str = "docs/SKILLBOOK.md"
    state_dir: str = ".shiplog"

    # Nested configurations
    claude: ClaudeConfig = field(default_factory=ClaudeConfig)
    retry: RetryConfig = field(default_factory=RetryConfig)
    autopilot: AutopilotConfig = field(default_factory=AutopilotConfig)
    tests: TestGateConfig = field(default_factory=TestGateConfig)
    review: ReviewConfig = field(default_factory=ReviewConfig)
    loop_detection: LoopDetectionConfig = field(default_factory=LoopDetectionConfig)

    def __post_init__(self) -> None:
        """Convert paths to absolute paths based on repo_root."""
        self.repo_root = str(Path(self.repo_root).absolute())

    @property
    def sprints_path(self) -> Path:
        """Absolute path to the sprint (backlog) directory."""
        return Path(self.repo_root) / self.sprints_dir

    @property
    def skillbook_file(self) -> Path:
        """Absolute path to the skillbook."""
        return Path(self.repo_root) / self.skillbook_path

    @property
    def state_path(self) -> Path:
        """Absolute path to the .shiplog directory."""
        return Path(self.repo_root) / self.state_dir

    @property
    def sessions_path(self) -> Path:
        """Absolute path to per-session logs."""
        return self.state_path / "sessions"

    @property
    def logs_path(self) -> Path:
        """Absolute path to JSONL event logs."""
        return self.state_path / "logs"

    @property
    def archive_path(self) -> Path:
        """Absolute path to archived memory files."""
        return self.state_path / "archive"


def _resolve_env_vars(value: Any) -> Any:
    """
    Resolve environment variables in a value.

    Supports ${VAR} syntax for environment variable substitution.
    Returns the original value if it's not a string.
    """
    if isinstance(value, str):
        pattern = re.compile(r'\$\{([A-Za-z_][A-Za-z0-9_]*)\}')

        def replace(match: re.Match) -> str:
            var_name = match.group(1)
            env_value = os.environ.get(var_name)
            if env_value is None:
                raise ConfigError(f"Environment variable ${{{var_name}}} is not set")
            return env_value

        return pattern.sub(replace, value)

    if isinstance(value, dict):
        return {k: _resolve_env_vars(v) for k, v in value.items()}

    if isinstance(value, list):
        return [_resolve_env_vars(item) for item in value]

    return value


def _section(data: dict[str, Any], name: str) -> dict[str, Any]:
    """Return a config section, rejecting non-mapping values."""
    section = data.get(name) or {}
    if not isinstance(section, dict):
        raise ConfigError(f"Section '{name}' must be a mapping")
    return section


def _parse_claude_config(data: dict[str, Any]) -> ClaudeConfig:
    """Parse agent engine configuration from dict."""
    return ClaudeConfig(
        binary=data.get("binary", "claude"),
        model=data.get("model"),
        timeout_seconds=int(data.get("timeout_seconds", 1800)),
        max_cost_usd=data.get("max_cost_usd"),
        extra_args=list(data.get("extra_args", [])),
    )


def _parse_retry_config(data: dict[str, Any]) -> RetryConfig:
    """Parse retry configuration from dict."""
    return RetryConfig(
        max_retries=int(data.get("max_retries", 2)),
        base_delay_seconds=float(data.get("base_delay_seconds", 5.0)),
        max_delay_seconds=float(data.get("max_delay_seconds", 120.0)),
    )


def _parse_autopilot_config(data: dict[str, Any]) -> AutopilotConfig:
    """Parse control loop configuration from dict."""
    return AutopilotConfig(
        max_iterations=int(data.get("max_iterations", 20)),
        stall_threshold=int(data.get("stall_threshold", 3)),
        iteration_delay_seconds=float(data.get("iteration_delay_seconds", 3.0)),
        recent_commits=int(data.get("recent_commits", 5)),
        memory_window=int(data.get("memory_window", 5)),
    )


def _parse_tests_config(data: dict[str, Any]) -> TestGateConfig:
    """Parse test gate configuration from dict."""
    return TestGateConfig(
        command=data.get("command", "") or "",
        timeout_seconds=int(data.get("timeout_seconds", 600)),
        autodetect=bool(data.get("autodetect", True)),
    )


def _parse_review_config(data: dict[str, Any]) -> ReviewConfig:
    """Parse review gate configuration from dict."""
    return ReviewConfig(
        enabled=bool(data.get("enabled", True)),
        timeout_seconds=int(data.get("timeout_seconds", 300)),
        max_cost_usd=float(data.get("max_cost_usd", 1.0)),
        allowed_tools=list(data.get("allowed_tools", ["Read", "Grep", "Glob"])),
        criteria=list(data.get("criteria", DEFAULT_REVIEW_CRITERIA)),
    )


def _parse_loop_detection_config(data: dict[str, Any]) -> LoopDetectionConfig:
    """Parse loop detector thresholds from dict."""
    defaults = LoopDetectionConfig()
    return LoopDetectionConfig(**{
        name: int(data.get(name, getattr(defaults, name)))
        for name in defaults.__dataclass_fields__
    })


def load_config(config_path: Optional[str] = None, repo_root: str = ".") -> ShiplogConfig:
    """
    Load configuration from .shiplog/config.yaml.

    A missing file is not an error: every section has defaults.

    Args:
        config_path: Optional explicit path to the config file.
        repo_root: Project root used to locate the default config file.

    Returns:
        ShiplogConfig: Loaded configuration.

    Raises:
        ConfigError: If the file exists but is invalid.
    """
    path = Path(config_path) if config_path else Path(repo_root) / CONFIG_RELATIVE_PATH

    if not path.exists():
        if config_path:
            raise ConfigError(f"Configuration file not found: {config_path}")
        return ShiplogConfig(repo_root=repo_root)

    try:
        with open(path, "r") as f:
            raw_data = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML in config file: {e}")
    except OSError as e:
        raise ConfigError(f"Cannot read config file {path}: {e}")

    if raw_data is None:
        return ShiplogConfig(repo_root=repo_root)
    if not isinstance(raw_data, dict):
        raise ConfigError("Configuration file must contain a mapping")

    data = _resolve_env_vars(raw_data)

    try:
        return ShiplogConfig(
            repo_root=data.get("repo_root", repo_root),
            sprints_dir=data.get("sprints_dir", "docs/sprints"),
            skillbook_path=data.get("skillbook_path", "docs/SKILLBOOK.md"),
            state_dir=data.get("state_dir", ".shiplog"),
            claude=_parse_claude_config(_section(data, "claude")),
            retry=_parse_retry_config(_section(data, "retry")),
            autopilot=_parse_autopilot_config(_section(data, "autopilot")),
            tests=_parse_tests_config(_section(data, "tests")),
            review=_parse_review_config(_section(data, "review")),
            loop_detection=_parse_loop_detection_config(_section(data, "loop_detection")),
        )
    except (TypeError, ValueError) as e:
        raise ConfigError(f"Invalid configuration value: {e}")
