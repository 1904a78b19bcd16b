"""
Skillbook: accumulated text learnings injected into future prompts.

The skillbook is a markdown file (docs/SKILLBOOK.md by default) with three
sections. Learnings are inserted at the top of their section so the newest
ones come first; the ``*Last updated:*`` stamp is refreshed on every write.
"""

from __future__ import annotations

import re
from pathlib import Path
from typing import TYPE_CHECKING, Optional

from shiplog.models import utc_now
from shiplog.utils.fs import FileSystemError, file_exists, read_file, safe_write

if TYPE_CHECKING:
    from shiplog.logger import ShiplogLogger


WHAT_WORKS = "## What Works"
WHAT_TO_AVOID = "## What To Avoid"
PATTERNS = "## Patterns"

_LAST_UPDATED = re.compile(r"\*Last updated:.*\*")

SKILLBOOK_TEMPLATE = """# Skillbook

> Learnings accumulated across autopilot sessions. Updated automatically.

## What Works

<!-- Patterns that lead to successful outcomes -->

## What To Avoid

<!-- Patterns that caused issues -->

## Patterns

<!-- Common patterns observed in this codebase -->

---

*Last updated: {timestamp}*
"""


def is_fix_or_revert(text: str) -> bool:
    """True when a message mentions a fix or a revert."""
    lowered = text.lower()
    return "fix" in lowered or "revert" in lowered


def classify_commit_messages(messages: list[str]) -> tuple[list[str], list[str]]:
    """
    Split commit subjects into skillbook learnings.

    Returns:
        (what_works, what_to_avoid) bullet lines.
    """
    works: list[str] = []
    avoid: list[str] = []
    for msg in messages:
        lowered = msg.lower()
        if is_fix_or_revert(msg):
            avoid.append(f'- Needed fix: "{msg}"')
        if "test" in lowered and "fix" not in lowered:
            works.append(f'- Tests added/updated: "{msg}"')
    return works, avoid


class Skillbook:
    """Reads and appends to the skillbook file."""

    def __init__(self, path: Path, logger: Optional[ShiplogLogger] = None) -> None:
        self.path = Path(path)
        self._logger = logger

    def _log(self, event_type: str, data: Optional[dict] = None, level: str = "info") -> None:
        """Log an event if logger is configured."""
        if self._logger:
            self._logger.log(event_type, data, level=level)

    def load(self) -> str:
        """Skillbook contents, or an empty string if it does not exist."""
        if not file_exists(self.path):
            return ""
        try:
            return read_file(self.path)
        except FileSystemError as e:
            self._log("skillbook_read_failed", {"error": str(e)}, level="warn")
            return ""

    def prompt_text(self) -> str:
        """
        Skillbook text worth showing to the agent.

        An untouched template holds no learnings and yields an empty string.
        """
        content = self.load()
        if not any(line.lstrip().startswith("- ") for line in content.splitlines()):
            return ""
        return content.strip()

    def ensure(self) -> None:
        """Create the skillbook from the template if it is missing."""
        if file_exists(self.path):
            return
        safe_write(self.path, SKILLBOOK_TEMPLATE.format(timestamp=utc_now()))
        self._log("skillbook_created", {"path": str(self.path)})

    def append(self, section: str, lines: list[str]) -> bool:
        """
        Insert bullet lines at the top of a section.

        Args:
            section: Section heading, e.g. WHAT_TO_AVOID.
            lines: Lines to insert.

        Returns:
            True if the file was updated.
        """
        if not lines:
            return False
        try:
            self.ensure()
            content = read_file(self.path)
        except FileSystemError as e:
            self._log("skillbook_write_failed", {"error": str(e)}, level="warn")
            return False

        start = content.find(section)
        if start == -1:
            content = content.rstrip("\n") + f"\n\n{section}\n\n"
            start = content.find(section)

        blank = content.find("\n\n", start)
        insert_at = blank + 2 if blank != -1 else len(content)
        content = content[:insert_at] + "\n".join(lines) + "\n" + content[insert_at:]
        content = _LAST_UPDATED.sub(f"*Last updated: {utc_now()}*", content)

        try:
            safe_write(self.path, content)
        except FileSystemError as e:
            self._log("skillbook_write_failed", {"error": str(e)}, level="warn")
            return False
        self._log("skillbook_updated", {"section": section, "count": len(lines)})
        return True

    def record_commit_learnings(self, messages: list[str]) -> int:
        """
        Derive learnings from one iteration's commit subjects.

        Returns:
            Number of learnings written.
        """
        works, avoid = classify_commit_messages(messages)
        self.append(WHAT_WORKS, works)
        self.append(WHAT_TO_AVOID, avoid)
        return len(works) + len(avoid)

    def record_review_rejection(
        self,
        item_description: str,
        critique: str,
        suggestions: list[str],
    ) -> None:
        """Add a reviewer rejection to What To Avoid."""
        lines = [f'- Review rejected "{item_description}": {critique.strip() or "no critique given"}']
        lines.extend(f"  - {s}" for s in suggestions if s.strip())
        self.append(WHAT_TO_AVOID, lines)
