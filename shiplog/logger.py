"""
Structured JSONL logging for Shiplog.

This module provides:
- JSONL event logging for debugging and audit trails
- Log files organized by initiative and date
- Log levels (debug, info, warn, error)
- Context manager for session-scoped logging
"""

from __future__ import annotations

import json
import re
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterator, Optional


class LogLevel:
    """Log level constants."""
    DEBUG = "debug"
    INFO = "info"
    WARN = "warn"
    ERROR = "error"


def slugify(name: str) -> str:
    """Turn an initiative name into a file-name-safe slug."""
    slug = re.sub(r"[^a-z0-9]+", "-", name.lower()).strip("-")
    return slug or "default"


class ShiplogLogger:
    """
    JSONL event logger for Shiplog.

    Writes structured log entries to .shiplog/logs/<initiative>-YYYY-MM-DD.jsonl

    Each log entry is a JSON object with:
    - timestamp: ISO format timestamp
    - level: Log level (debug, info, warn, error)
    - event_type: Type of event being logged
    - initiative: Initiative name
    - data: Additional event data (dict)
    """

    def __init__(self, initiative: str, logs_dir: Path) -> None:
        """
        Initialize logger for an initiative.

        Args:
            initiative: The initiative name for organizing logs.
            logs_dir: Directory that receives the JSONL files.
        """
        self.initiative = initiative
        self.logs_dir = Path(logs_dir)
        self._current_session_id: Optional[str] = None

    def _get_log_path(self) -> Path:
        """Get the log file path for today."""
        today = datetime.now(timezone.utc).strftime("%Y-%m-%d")
        return self.logs_dir / f"{slugify(self.initiative)}-{today}.jsonl"

    def _write_entry(self, entry: dict[str, Any]) -> None:
        """Write a log entry to the JSONL file."""
        log_path = self._get_log_path()
        log_path.parent.mkdir(parents=True, exist_ok=True)

        with open(log_path, "a") as f:
            f.write(json.dumps(entry, default=str) + "\n")

    def log(
        self,
        event_type: str,
        data: Optional[dict[str, Any]] = None,
        level: str = LogLevel.INFO,
    ) -> None:
        """
        Log an event.

        Args:
            event_type: Type of event (e.g., "iteration_start", "review_rejected").
            data: Additional data to include in the log entry.
            level: Log level (debug, info, warn, error).
        """
        entry = {
            "timestamp": datetime.now(timezone.utc).isoformat().replace("+00:00", "Z"),
            "level": level,
            "event_type": event_type,
            "initiative": self.initiative,
            "data": data or {},
        }

        if self._current_session_id:
            entry["session_id"] = self._current_session_id

        self._write_entry(entry)

    @contextmanager
    def session_context(self, session_id: str) -> Iterator[ShiplogLogger]:
        """
        Context manager for session-scoped logging.

        All logs within this context will include the session_id.

        Args:
            session_id: The session identifier.

        Yields:
            Self for chaining.

        Example:
            with logger.session_context("session-001-1700000000000") as log:
                log.log("agent_invocation_start", {"attempt": 1})
        """
        old_session_id = self._current_session_id
        self._current_session_id = session_id
        self.log("session_start", {"session_id": session_id})
        try:
            yield self
        finally:
            self.log("session_end", {"session_id": session_id})
            self._current_session_id = old_session_id
