"""Tests for RunStateStore."""

import json

import pytest

from shiplog.autopilot.state_store import RunStateStore
from shiplog.errors import StatePersistenceError
from shiplog.models import RunState, RunStatus, SessionLog, SessionStatus


class TestLoadSave:
    """Tests for state persistence."""

    def test_missing_state_loads_as_none(self, config):
        assert RunStateStore(config).load() is None

    def test_save_then_load(self, config):
        store = RunStateStore(config)
        store.save(RunState(initiative="Auth", started="t", iterations=4, stall_count=1,
                            status=RunStatus.INTERRUPTED))

        state = RunStateStore(config).load()

        assert state.iterations == 4
        assert state.stall_count == 1
        assert state.status == RunStatus.INTERRUPTED

    @pytest.mark.parametrize("content", ["{ nope", '{"started": "t"}', '{"initiative": "x", "status": "bogus"}'])
    def test_corrupt_state_is_treated_as_absent(self, config, content):
        store = RunStateStore(config)
        store.path.parent.mkdir(parents=True)
        store.path.write_text(content)

        assert store.load() is None

    def test_save_failure_raises(self, config):
        config.state_path.write_text("not a directory")
        with pytest.raises(StatePersistenceError):
            RunStateStore(config).save(RunState(initiative="Auth", started="t"))


class TestArtifacts:
    """Tests for session logs and the saved prompt."""

    def test_session_written_to_own_file(self, config):
        session = SessionLog(session_id="session-001-5", iteration=1, start_time="t", start_commits=0,
                             status=SessionStatus.COMPLETED)

        path = RunStateStore(config).save_session(session)

        assert path == config.sessions_path / "session-001-5.json"
        assert json.loads(path.read_text())["status"] == "completed"

    def test_prompt_saved(self, config):
        path = RunStateStore(config).save_prompt("# Autopilot Session 1\n")
        assert path.name == "current-prompt.md"
        assert path.read_text() == "# Autopilot Session 1\n"


class TestEnsureDirectories:
    """Tests for directory setup and .gitignore."""

    def test_creates_state_and_session_dirs(self, config):
        RunStateStore(config).ensure_directories()
        assert config.state_path.is_dir()
        assert config.sessions_path.is_dir()

    def test_appends_to_existing_gitignore_once(self, config, tmp_path):
        gitignore = tmp_path / ".gitignore"
        gitignore.write_text("node_modules/\n")
        store = RunStateStore(config)

        store.ensure_directories()
        store.ensure_directories()

        content = gitignore.read_text()
        assert content.count(".shiplog/") == 1
        assert content.startswith("node_modules/\n")

    def test_does_not_create_gitignore(self, config, tmp_path):
        RunStateStore(config).ensure_directories()
        assert not (tmp_path / ".gitignore").exists()
