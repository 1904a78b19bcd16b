"""Shared fixtures: a throwaway project, a scripted agent and an in-memory git."""

import json
from pathlib import Path
from typing import Any, Callable, Optional
from unittest.mock import MagicMock

import pytest
from typer.testing import CliRunner

from shiplog.config import ShiplogConfig
from shiplog.models import AgentResult
from shiplog.quality.test_gate import TestGateResult


def write_sprint(
    config: ShiplogConfig,
    name: str = "001-initial",
    initiative: str = "Initial",
    features: Optional[list[dict[str, Any]]] = None,
    status: str = "in_progress",
) -> Path:
    """Write a sprint file and return its path."""
    if features is None:
        features = [
            {"id": "F1", "description": "Add login form", "passes": False},
            {"id": "F2", "description": "Add logout button", "passes": False},
        ]
    path = config.sprints_path / f"{name}.json"
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps({
        "initiative": initiative,
        "created": "2026-01-01",
        "status": status,
        "features": features,
    }, indent=2))
    return path


def mark_passing(path: Path, *item_ids: str) -> None:
    """Flip ``passes`` to true in a sprint file, the way the agent does."""
    data = json.loads(path.read_text())
    for feature in data["features"]:
        if feature["id"] in item_ids:
            feature["passes"] = True
    if all(f["passes"] for f in data["features"]):
        data["status"] = "completed"
    path.write_text(json.dumps(data, indent=2))


def read_sprint(path: Path) -> dict[str, Any]:
    return json.loads(path.read_text())


def agent_result(
    approach: str = "Implemented the feature",
    session_id: str = "sess-1",
    cost_usd: float = 0.10,
    **kwargs: Any,
) -> AgentResult:
    """A successful engine result carrying an iteration report."""
    return AgentResult(
        text="Done.",
        exit_status=kwargs.pop("exit_status", 0),
        session_id=session_id,
        cost_usd=cost_usd,
        input_tokens=100,
        output_tokens=50,
        structured={"approach": approach, "learnings": [], "failures": []},
        **kwargs,
    )


class FakeGit:
    """In-memory stand-in for GitTracker."""

    def __init__(self) -> None:
        self.subjects: list[str] = []       # Oldest first
        self.files: list[list[str]] = []
        self.dirty: list[str] = []
        self.revisions: dict[str, int] = {}

    def commit(self, subject: str, files: Optional[list[str]] = None) -> None:
        self.subjects.append(subject)
        self.files.append(files or ["src/app.py"])

    def commit_count(self) -> int:
        return len(self.subjects)

    def recent_commit_summaries(self, n: int) -> list[str]:
        recent = list(reversed(self.subjects))[:n] if n > 0 else []
        return [f"abc{i:04d} {s}" for i, s in enumerate(recent)]

    def recent_commit_subjects(self, n: int) -> list[str]:
        return list(reversed(self.subjects))[:n] if n > 0 else []

    def touch(self, path: str) -> None:
        """Edit a file without committing it."""
        self.revisions[path] = self.revisions.get(path, 0) + 1
        if path not in self.dirty:
            self.dirty.append(path)

    def working_tree_diff_paths(self) -> list[str]:
        return list(self.dirty)

    def working_tree_snapshot(self) -> dict[str, str]:
        return {path: str(self.revisions.get(path, 0)) for path in self.dirty}

    def changed_files_in_last(self, n: int) -> list[str]:
        seen: list[str] = []
        for files in (self.files[-n:] if n > 0 else []):
            for path in files:
                if path not in seen:
                    seen.append(path)
        return seen


Step = Callable[[str, dict[str, Any]], AgentResult]


class FakeRunner:
    """
    Scripted agent engine.

    Each call pops the next step; a step is a callable taking
    (prompt, kwargs) that returns an AgentResult or raises.
    """

    def __init__(self, steps: Optional[list[Step]] = None) -> None:
        self.steps = list(steps or [])
        self.calls: list[dict[str, Any]] = []

    def run(self, prompt: str, **kwargs: Any) -> AgentResult:
        self.calls.append({"prompt": prompt, **kwargs})
        if not self.steps:
            return agent_result(approach="Idle")
        step = self.steps.pop(0)
        return step(prompt, kwargs)


@pytest.fixture
def config(tmp_path: Path) -> ShiplogConfig:
    """Config rooted at a temp project with every delay set to zero."""
    cfg = ShiplogConfig(repo_root=str(tmp_path))
    cfg.autopilot.iteration_delay_seconds = 0
    cfg.retry.base_delay_seconds = 0
    cfg.retry.max_delay_seconds = 0
    cfg.tests.autodetect = False
    cfg.review.enabled = False
    return cfg


@pytest.fixture
def sprint(config: ShiplogConfig) -> Path:
    """Default two-item sprint file."""
    return write_sprint(config)


@pytest.fixture
def git() -> FakeGit:
    return FakeGit()


@pytest.fixture
def passing_test_gate() -> MagicMock:
    gate = MagicMock()
    gate.run.return_value = TestGateResult.success("pytest")
    return gate


@pytest.fixture
def failing_test_gate() -> MagicMock:
    gate = MagicMock()
    gate.run.return_value = TestGateResult.failure(
        "pytest", "FAILED tests/test_login.py::test_submit - AssertionError", ["tests/test_login.py::test_submit"]
    )
    return gate


@pytest.fixture
def cli_runner() -> CliRunner:
    """Typer CLI test runner."""
    return CliRunner()
