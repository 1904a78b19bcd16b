"""
Persistent iteration memory for Shiplog.

One memory document per working directory, stored at .shiplog/memory.json:
- One MemoryEntry appended per completed iteration
- Only the most recent entry may be amended (quality gate feedback)
- A different initiative or a fresh start archives the old document
  under .shiplog/archive/ before a new one is started
- A corrupted document is archived with a "corrupt" label and replaced
"""

from __future__ import annotations

import json
from pathlib import Path
from typing import TYPE_CHECKING, Optional

from shiplog.errors import StatePersistenceError
from shiplog.models import Memory, MemoryEntry, Outcome, utc_now
from shiplog.utils.fs import FileSystemError, archive_file, file_exists, read_file, safe_write

if TYPE_CHECKING:
    from shiplog.config import ShiplogConfig
    from shiplog.logger import ShiplogLogger


MEMORY_FILENAME = "memory.json"


class MemoryStore:
    """
    Read-modify-persist store for the iteration memory.

    Every mutation is written immediately with an atomic replace.
    """

    def __init__(self, config: ShiplogConfig, logger: Optional[ShiplogLogger] = None) -> None:
        """
        Initialize the memory store.

        Args:
            config: ShiplogConfig with the state directory configured.
            logger: Optional logger for recording operations.
        """
        self._logger = logger
        self.path: Path = config.state_path / MEMORY_FILENAME
        self.archive_dir: Path = config.archive_path

    def _log(self, event_type: str, data: Optional[dict] = None, level: str = "info") -> None:
        """Log an event if logger is configured."""
        if self._logger:
            self._logger.log(event_type, data, level=level)

    def load(self) -> Optional[Memory]:
        """
        Load the memory document from disk.

        A corrupted document is archived so it is never silently lost.

        Returns:
            Memory if a valid document exists, None otherwise.
        """
        if not file_exists(self.path):
            return None

        try:
            data = json.loads(read_file(self.path))
            return Memory.from_dict(data)
        except (json.JSONDecodeError, KeyError, ValueError, TypeError, AttributeError) as e:
            archived = self._archive("corrupt")
            self._log("memory_corrupted", {
                "error": str(e),
                "archived_to": str(archived) if archived else None,
            }, level="error")
            return None
        except FileSystemError as e:
            self._log("memory_read_failed", {"error": str(e)}, level="error")
            return None

    def peek(self, initiative: str) -> Optional[Memory]:
        """Memory for ``initiative`` without touching the disk, if it matches."""
        if not file_exists(self.path):
            return None
        try:
            memory = Memory.from_dict(json.loads(read_file(self.path)))
        except (FileSystemError, json.JSONDecodeError, KeyError, ValueError, TypeError, AttributeError):
            return None
        return memory if memory.initiative == initiative else None

    def open(self, initiative: str, backlog_ref: str, fresh: bool = False) -> Memory:
        """
        Get the memory for an initiative, archiving any other memory first.

        Args:
            initiative: Initiative the run is working on.
            backlog_ref: Path of the sprint file, recorded in new documents.
            fresh: Archive the existing memory even for the same initiative.

        Returns:
            The existing memory for this initiative, or a new empty one.
        """
        existing = self.load()

        if existing is not None and existing.initiative == initiative and not fresh:
            self._log("memory_loaded", {"initiative": initiative, "entries": len(existing.entries)})
            return existing

        if existing is not None:
            reason = "fresh" if existing.initiative == initiative else "initiative-change"
            archived = self._archive(reason)
            self._log("memory_archived", {
                "previous_initiative": existing.initiative,
                "reason": reason,
                "archived_to": str(archived) if archived else None,
            })

        memory = Memory(initiative=initiative, backlog=backlog_ref, started=utc_now())
        self._log("memory_started", {"initiative": initiative})
        return memory

    def save(self, memory: Memory) -> None:
        """
        Persist the memory document atomically.

        Raises:
            StatePersistenceError: If the write fails.
        """
        try:
            safe_write(self.path, json.dumps(memory.to_dict(), indent=2) + "\n")
        except FileSystemError as e:
            raise StatePersistenceError(f"Cannot write memory: {e}")

    def append(self, memory: Memory, entry: MemoryEntry) -> None:
        """Append one iteration's entry and persist."""
        if memory.entries and entry.iteration <= memory.entries[-1].iteration:
            raise ValueError(
                f"Memory entries must be ordered by iteration "
                f"(got {entry.iteration} after {memory.entries[-1].iteration})"
            )
        memory.entries.append(entry)
        self.save(memory)
        self._log("memory_entry_added", {
            "iteration": entry.iteration,
            "outcome": entry.outcome.value,
        })

    def amend_latest(
        self,
        memory: Memory,
        critique: Optional[str] = None,
        outcome: Optional[Outcome] = None,
    ) -> Optional[MemoryEntry]:
        """
        Attach a critique and/or a downgraded outcome to the latest entry.

        Returns:
            The amended entry, or None when memory is empty.
        """
        if not memory.entries:
            return None
        entry = memory.entries[-1]
        if critique:
            entry.critique = f"{entry.critique}\n\n{critique}" if entry.critique else critique
        if outcome is not None:
            entry.outcome = outcome
        self.save(memory)
        self._log("memory_entry_amended", {
            "iteration": entry.iteration,
            "outcome": entry.outcome.value,
        })
        return entry

    def _archive(self, label: str) -> Optional[Path]:
        try:
            return archive_file(self.path, self.archive_dir, label=label)
        except FileSystemError as e:
            raise StatePersistenceError(f"Cannot archive memory: {e}")
