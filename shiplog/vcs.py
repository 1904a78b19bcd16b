"""
Revision tracking for Shiplog.

Git is the only objective signal of progress. Every query here degrades to
a safe default (zero or an empty list) when git fails, so a broken or
missing repository never raises into the control loop.
"""

from __future__ import annotations

import hashlib
import subprocess
from pathlib import Path
from typing import TYPE_CHECKING, Optional

if TYPE_CHECKING:
    from shiplog.logger import ShiplogLogger


class GitTracker:
    """
    Read-only view of a git working copy.

    Paths under ``ignore_prefixes`` (the state directory and the skillbook)
    are hidden from working-tree queries so the tool's own files never
    count as progress.
    """

    def __init__(
        self,
        repo_root: str | Path,
        logger: Optional[ShiplogLogger] = None,
        ignore_prefixes: Optional[list[str]] = None,
        timeout_seconds: int = 30,
    ) -> None:
        self._root = Path(repo_root)
        self._logger = logger
        self._ignore = [p.rstrip("/") + "/" for p in (ignore_prefixes or [])]
        self._timeout = timeout_seconds

    def _log(self, event_type: str, data: Optional[dict] = None, level: str = "info") -> None:
        """Log an event if logger is configured."""
        if self._logger:
            self._logger.log(event_type, data, level=level)

    def _run_git_command(self, args: list[str]) -> str:
        """
        Run a git command and return its stdout.

        Raises:
            subprocess.SubprocessError: If the command fails.
            OSError: If git cannot be executed.
        """
        result = subprocess.run(
            ["git", *args],
            capture_output=True,
            text=True,
            timeout=self._timeout,
            cwd=self._root,
        )
        if result.returncode != 0:
            raise subprocess.SubprocessError(result.stderr.strip())
        return result.stdout

    def _query(self, args: list[str]) -> Optional[str]:
        """Run a git query, logging and returning None on failure."""
        try:
            return self._run_git_command(args)
        except (subprocess.SubprocessError, OSError) as e:
            self._log("git_query_failed", {"args": args, "error": str(e)}, level="warn")
            return None

    def commit_count(self) -> int:
        """Number of commits reachable from HEAD, or 0."""
        output = self._query(["rev-list", "--count", "HEAD"])
        if output is None:
            return 0
        try:
            return int(output.strip())
        except ValueError:
            return 0

    def recent_commit_summaries(self, n: int) -> list[str]:
        """One-line summaries (``<sha> <subject>``) of the last ``n`` commits."""
        if n <= 0:
            return []
        output = self._query(["log", "--oneline", "-n", str(n)])
        if output is None:
            return []
        return [line.strip() for line in output.splitlines() if line.strip()]

    def recent_commit_subjects(self, n: int) -> list[str]:
        """Subjects of the last ``n`` commits, newest first."""
        if n <= 0:
            return []
        output = self._query(["log", "-n", str(n), "--format=%s"])
        if output is None:
            return []
        return [line.strip() for line in output.splitlines() if line.strip()]

    def working_tree_diff_paths(self) -> list[str]:
        """Paths with uncommitted changes, including untracked files."""
        output = self._query(["status", "--porcelain", "--untracked-files=all"])
        if output is None:
            return []

        paths = []
        for line in output.splitlines():
            if len(line) < 4:
                continue
            # "XY path" or "XY old -> new"
            path = line[3:].strip()
            if " -> " in path:
                path = path.split(" -> ", 1)[1]
            path = path.strip('"')
            if self._is_ignored(path):
                continue
            paths.append(path)
        return paths

    def working_tree_snapshot(self) -> dict[str, str]:
        """Map each dirty path to a digest of its current content."""
        snapshot: dict[str, str] = {}
        for path in self.working_tree_diff_paths():
            full = self._root / path
            try:
                snapshot[path] = hashlib.sha1(full.read_bytes()).hexdigest() if full.is_file() else "-"
            except OSError:
                snapshot[path] = "?"
        return snapshot

    def changed_files_in_last(self, n: int) -> list[str]:
        """Files touched by the last ``n`` commits."""
        if n <= 0:
            return []
        output = self._query(["diff", "--name-only", f"HEAD~{n}", "HEAD"])
        if output is None:
            # Fewer than n+1 commits: fall back to listing each commit's files
            output = self._query(["log", "-n", str(n), "--name-only", "--format="])
            if output is None:
                return []
        seen: list[str] = []
        for line in output.splitlines():
            line = line.strip()
            if line and line not in seen and not self._is_ignored(line):
                seen.append(line)
        return seen

    def _is_ignored(self, path: str) -> bool:
        return any(path == p.rstrip("/") or path.startswith(p) for p in self._ignore)
