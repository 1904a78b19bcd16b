"""
Run state persistence for the autopilot.

This module handles:
- Saving and loading .shiplog/autopilot-state.json
- Writing each finished session to .shiplog/sessions/<session_id>.json
- Saving the composed prompt to .shiplog/current-prompt.md
- Creating the state directory and listing it in .gitignore
- Graceful handling of missing or corrupted state files
"""

from __future__ import annotations

import json
from pathlib import Path
from typing import TYPE_CHECKING, Optional

from shiplog.errors import StatePersistenceError
from shiplog.models import RunState, SessionLog
from shiplog.utils.fs import FileSystemError, ensure_dir, file_exists, read_file, safe_write

if TYPE_CHECKING:
    from shiplog.config import ShiplogConfig
    from shiplog.logger import ShiplogLogger


STATE_FILENAME = "autopilot-state.json"
PROMPT_FILENAME = "current-prompt.md"
GITIGNORE_COMMENT = "# Shiplog session data"


class RunStateStore:
    """
    Persistent storage for the autopilot RunState.

    Single writer: the orchestrator of the current process.
    """

    def __init__(self, config: ShiplogConfig, logger: Optional[ShiplogLogger] = None) -> None:
        """
        Initialize the state store.

        Args:
            config: ShiplogConfig with paths configured.
            logger: Optional logger for recording operations.
        """
        self._config = config
        self._logger = logger
        self._state_dir = config.state_path
        self._sessions_dir = config.sessions_path
        self.path = self._state_dir / STATE_FILENAME

    def _log(self, event_type: str, data: Optional[dict] = None, level: str = "info") -> None:
        """Log an event if logger is configured."""
        if self._logger:
            self._logger.log(event_type, data, level=level)

    def ensure_directories(self) -> None:
        """
        Create the state and session directories.

        Also appends the state directory to an existing .gitignore.

        Raises:
            StatePersistenceError: If the directories cannot be created.
        """
        try:
            ensure_dir(self._state_dir)
            ensure_dir(self._sessions_dir)
        except FileSystemError as e:
            raise StatePersistenceError(str(e))

        gitignore = Path(self._config.repo_root) / ".gitignore"
        entry = self._config.state_dir.rstrip("/") + "/"
        if not file_exists(gitignore):
            return
        try:
            content = read_file(gitignore)
            if entry not in content.splitlines():
                with open(gitignore, "a") as f:
                    f.write(f"\n{GITIGNORE_COMMENT}\n{entry}\n")
                self._log("gitignore_updated", {"entry": entry})
        except (FileSystemError, OSError) as e:
            self._log("gitignore_update_failed", {"error": str(e)}, level="warn")

    def load(self) -> Optional[RunState]:
        """
        Load run state from disk.

        Returns:
            RunState if the file exists and is valid, None otherwise. A
            corrupted file is treated as absent.
        """
        if not file_exists(self.path):
            self._log("state_load_miss", level="debug")
            return None

        try:
            state = RunState.from_dict(json.loads(read_file(self.path)))
        except json.JSONDecodeError as e:
            self._log("state_corrupted", {"error": str(e), "path": str(self.path)}, level="error")
            return None
        except (KeyError, ValueError, TypeError, AttributeError) as e:
            self._log("state_invalid", {"error": str(e), "path": str(self.path)}, level="error")
            return None
        except FileSystemError as e:
            self._log("state_read_failed", {"error": str(e)}, level="error")
            return None

        self._log("state_loaded", {
            "initiative": state.initiative,
            "iterations": state.iterations,
            "status": state.status.value,
        })
        return state

    def save(self, state: RunState) -> None:
        """
        Save run state atomically.

        Raises:
            StatePersistenceError: If the write fails.
        """
        try:
            safe_write(self.path, json.dumps(state.to_dict(), indent=2) + "\n")
        except FileSystemError as e:
            self._log("state_save_failed", {"error": str(e)}, level="error")
            raise StatePersistenceError(f"Cannot write run state: {e}")
        self._log("state_saved", {
            "iterations": state.iterations,
            "status": state.status.value,
        }, level="debug")

    def save_session(self, session: SessionLog) -> Path:
        """
        Write one session log to its own file.

        Raises:
            StatePersistenceError: If the write fails.
        """
        path = self._sessions_dir / f"{session.session_id}.json"
        try:
            safe_write(path, json.dumps(session.to_dict(), indent=2) + "\n")
        except FileSystemError as e:
            raise StatePersistenceError(f"Cannot write session log: {e}")
        return path

    def save_prompt(self, prompt: str) -> Path:
        """
        Keep the last composed prompt for inspection.

        Raises:
            StatePersistenceError: If the write fails.
        """
        path = self._state_dir / PROMPT_FILENAME
        try:
            safe_write(path, prompt)
        except FileSystemError as e:
            raise StatePersistenceError(f"Cannot write prompt: {e}")
        return path
