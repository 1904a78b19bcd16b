"""
Progress classification for autopilot iterations.

Commit count is the only falsifiable progress signal. Uncommitted edits are
weaker evidence: they neither reset nor advance the stall counter.
"""

from __future__ import annotations

from dataclasses import dataclass, field

from shiplog.models import Outcome, ProgressKind, SessionStatus


@dataclass
class ProgressReport:
    """Classified outcome of one iteration's repository changes."""
    kind: ProgressKind
    commits_made: int
    files_changed: list[str] = field(default_factory=list)


def classify_progress(start_commits: int, end_commits: int, changed_files: list[str]) -> ProgressReport:
    """
    Classify an iteration from pre/post commit counts and the dirty paths.

    A negative commit delta (history rewritten) counts as zero commits.
    """
    commits_made = max(0, end_commits - start_commits)
    if commits_made > 0:
        kind = ProgressKind.HARD
    elif changed_files:
        kind = ProgressKind.SOFT
    else:
        kind = ProgressKind.NONE
    return ProgressReport(kind=kind, commits_made=commits_made, files_changed=list(changed_files))


def changed_paths(before: dict[str, str], after: dict[str, str]) -> list[str]:
    """
    Dirty paths whose content changed between two working-tree snapshots.

    A file left dirty by an earlier iteration, or rewritten by shiplog
    itself after the last snapshot, only counts again once it changes.
    """
    return [path for path, digest in after.items() if before.get(path) != digest]


def next_stall_count(stall_count: int, kind: ProgressKind) -> int:
    """Apply one iteration's progress to the consecutive-stall counter."""
    if kind == ProgressKind.HARD:
        return 0
    if kind == ProgressKind.NONE:
        return stall_count + 1
    return stall_count


def session_status(kind: ProgressKind, timed_out: bool = False, errored: bool = False) -> SessionStatus:
    """Final SessionLog status for an iteration."""
    if timed_out:
        return SessionStatus.TIMEOUT
    if errored:
        return SessionStatus.ERROR
    if kind == ProgressKind.NONE:
        return SessionStatus.STALLED
    return SessionStatus.COMPLETED


def iteration_outcome(kind: ProgressKind, item_passed: bool) -> Outcome:
    """
    Memory outcome before the quality gate runs.

    Success needs both a commit and the current item newly passing.
    """
    if kind == ProgressKind.HARD and item_passed:
        return Outcome.SUCCESS
    if kind == ProgressKind.NONE:
        return Outcome.FAILURE
    return Outcome.PARTIAL
