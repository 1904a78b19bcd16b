"""
Backlog (sprint) reading for Shiplog.

This module handles:
- Discovering sprint files in docs/sprints/*.json, newest first
- Selecting the active backlog (in progress, with failing items)
- Writing the ``passes`` flag back, preserving every other field
"""

from __future__ import annotations

import json
from pathlib import Path
from typing import TYPE_CHECKING, Iterable, Optional

from shiplog.errors import BacklogNotFoundError, StatePersistenceError
from shiplog.models import Backlog, BacklogStatus, WorkItem
from shiplog.utils.fs import FileSystemError, read_file, safe_write

if TYPE_CHECKING:
    from shiplog.config import ShiplogConfig
    from shiplog.logger import ShiplogLogger


class BacklogReader:
    """
    Loads sprint files and writes completion flags.

    The control loop never writes any field other than ``passes``.
    """

    def __init__(self, config: ShiplogConfig, logger: Optional[ShiplogLogger] = None) -> None:
        self._config = config
        self._logger = logger
        self._sprints_dir = config.sprints_path

    def _log(self, event_type: str, data: Optional[dict] = None, level: str = "info") -> None:
        """Log an event if logger is configured."""
        if self._logger:
            self._logger.log(event_type, data, level=level)

    def list_files(self) -> list[Path]:
        """Sprint files sorted by filename, newest first."""
        if not self._sprints_dir.is_dir():
            return []
        return sorted(self._sprints_dir.glob("*.json"), key=lambda p: p.name, reverse=True)

    def load(self, path: Path) -> Backlog:
        """
        Load a single sprint file.

        Raises:
            BacklogNotFoundError: If the file is missing or malformed.
        """
        try:
            data = json.loads(read_file(path))
            if not isinstance(data, dict):
                raise ValueError("sprint file must contain a JSON object")
            return Backlog.from_dict(data, path=path)
        except FileSystemError as e:
            raise BacklogNotFoundError(str(e))
        except (json.JSONDecodeError, ValueError, TypeError, AttributeError) as e:
            raise BacklogNotFoundError(f"Malformed sprint file {path}: {e}")

    def find_active(self, name: Optional[str] = None) -> Optional[Backlog]:
        """
        Find the active backlog.

        Args:
            name: Optional sprint filename stem or initiative name to match.

        Returns:
            The first in-progress backlog with at least one failing item,
            or the named backlog regardless of its state. None if nothing
            matches.
        """
        for path in self.list_files():
            try:
                backlog = self.load(path)
            except BacklogNotFoundError as e:
                self._log("backlog_skipped", {"path": str(path), "error": str(e)}, level="warn")
                continue

            if name is not None:
                if name in (path.stem, backlog.initiative):
                    return backlog
                continue

            if backlog.status == BacklogStatus.IN_PROGRESS and backlog.incomplete_items:
                return backlog
        return None

    def select(self, name: Optional[str] = None) -> Backlog:
        """
        Pick the backlog a run should work on.

        Falls back to the newest readable sprint file so that an already
        finished backlog is reported as complete rather than missing.

        Raises:
            BacklogNotFoundError: If no sprint file can be read at all.
        """
        backlog = self.find_active(name)
        if backlog is not None:
            return backlog
        if name is not None:
            raise BacklogNotFoundError(f"No sprint named '{name}' in {self._sprints_dir}")

        for path in self.list_files():
            try:
                return self.load(path)
            except BacklogNotFoundError:
                continue
        raise BacklogNotFoundError(
            f"No sprint files found in {self._sprints_dir}. "
            "Create one (e.g. docs/sprints/001-initial.json) before running."
        )

    def reload(self, backlog: Backlog) -> Backlog:
        """
        Re-read a backlog from its file.

        The agent edits the file during an iteration; a half-written or
        broken file keeps the previous in-memory copy.
        """
        if backlog.path is None:
            return backlog
        try:
            return self.load(backlog.path)
        except BacklogNotFoundError as e:
            self._log("backlog_reload_failed", {"path": str(backlog.path), "error": str(e)}, level="warn")
            return backlog

    def set_passes(self, backlog: Backlog, item_ids: Iterable[str], passes: bool) -> Backlog:
        """
        Write the ``passes`` flag for the given items.

        Unknown fields are written back untouched. When rolling an item
        back on a document already marked completed, the status returns to
        in_progress so the backlog stays discoverable.

        Returns:
            The reloaded backlog.

        Raises:
            StatePersistenceError: If the file cannot be read or written.
        """
        if backlog.path is None:
            raise StatePersistenceError("Backlog has no source file")

        ids = set(item_ids)
        try:
            data = json.loads(read_file(backlog.path))
        except (FileSystemError, json.JSONDecodeError) as e:
            raise StatePersistenceError(f"Cannot update {backlog.path}: {e}")

        key = "features" if "features" in data else "items"
        changed = []
        for raw in data.get(key) or []:
            item_id = WorkItem.from_dict(raw).id
            if item_id in ids and raw.get("passes") != passes:
                raw["passes"] = passes
                changed.append(item_id)

        if not passes and changed and data.get("status") == BacklogStatus.COMPLETED.value:
            data["status"] = BacklogStatus.IN_PROGRESS.value

        try:
            safe_write(backlog.path, json.dumps(data, indent=2) + "\n")
        except FileSystemError as e:
            raise StatePersistenceError(str(e))

        self._log("backlog_passes_updated", {"items": changed, "passes": passes})
        return self.reload(backlog)


def newly_passed(previously_failing: set[str], backlog: Backlog) -> list[WorkItem]:
    """Items that were failing before the iteration and pass now."""
    return [item for item in backlog.items if item.passes and item.id in previously_failing]
