"""Stall detection against a real git repository."""

import shutil
import subprocess
from pathlib import Path

import pytest
from conftest import FakeRunner, agent_result, mark_passing, read_sprint

from shiplog.autopilot import AutopilotOrchestrator, RunOptions, StopReason
from shiplog.models import SessionStatus

pytestmark = pytest.mark.skipif(shutil.which("git") is None, reason="git not installed")


def _git(root: Path, *args: str) -> None:
    subprocess.run(
        ["git", "-c", "user.name=Shiplog Test", "-c", "user.email=test@example.com", *args],
        cwd=root,
        check=True,
        capture_output=True,
    )


@pytest.fixture
def repo(config, sprint):
    root = Path(config.repo_root)
    (root / "src").mkdir()
    (root / "src" / "app.py").write_text("import mising\n")
    _git(root, "init", "-q")
    _git(root, "add", "-A")
    _git(root, "commit", "-q", "-m", "initial")
    return root


def _run(config, steps, test_gate=None, **overrides):
    options = RunOptions.from_config(config, **overrides)
    orchestrator = AutopilotOrchestrator(
        config, options=options, runner=FakeRunner(steps), git=None, test_gate=test_gate
    )
    return orchestrator.run(install_signals=False)


def fix_import(root, sprint=None, passes=()):
    def step(prompt, kwargs):
        (root / "src" / "app.py").write_text("import missing\n")
        _git(root, "commit", "-q", "-am", "fix: broken import")
        if passes:
            mark_passing(sprint, *passes)
        return agent_result()
    return step


class TestStallWithRealGit:
    """Files written by shiplog itself never count as progress."""

    def test_skillbook_update_does_not_hold_off_stall(self, config, repo):
        result = _run(config, [fix_import(repo)], max_iterations=8, stall_threshold=2)

        assert config.skillbook_file.exists()
        assert result.reason == StopReason.STALLED
        assert result.state.iterations == 3
        assert [s.commits_made for s in result.state.sessions] == [1, 0, 0]

    def test_rolled_back_sprint_file_does_not_hold_off_stall(self, config, sprint, repo, failing_test_gate):
        steps = [fix_import(repo, sprint, passes=["F1"])]

        result = _run(config, steps, test_gate=failing_test_gate, max_iterations=8, stall_threshold=2)

        assert read_sprint(sprint)["features"][0]["passes"] is False
        assert result.reason == StopReason.STALLED
        assert result.state.iterations == 3

    def test_leftover_edit_counts_once(self, config, repo):
        def scratch(prompt, kwargs):
            (repo / "src" / "wip.py").write_text("x = 1\n")
            return agent_result()

        result = _run(config, [scratch], max_iterations=8, stall_threshold=2)

        assert result.reason == StopReason.STALLED
        assert result.state.iterations == 3
        assert result.state.sessions[0].status == SessionStatus.COMPLETED
        assert result.state.sessions[0].files_changed == ["src/wip.py"]
