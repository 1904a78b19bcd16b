"""Tests for progress classification and the stall counter."""

import pytest

from shiplog.autopilot.progress import (
    changed_paths,
    classify_progress,
    iteration_outcome,
    next_stall_count,
    session_status,
)
from shiplog.models import Outcome, ProgressKind, SessionStatus


class TestClassifyProgress:
    """Tests for classify_progress."""

    def test_commits_are_hard_progress(self):
        report = classify_progress(10, 12, ["a.py"])
        assert report.kind == ProgressKind.HARD
        assert report.commits_made == 2

    def test_dirty_tree_without_commits_is_soft(self):
        report = classify_progress(10, 10, ["a.py", "b.py"])
        assert report.kind == ProgressKind.SOFT
        assert report.files_changed == ["a.py", "b.py"]

    def test_nothing_is_no_progress(self):
        assert classify_progress(10, 10, []).kind == ProgressKind.NONE

    def test_rewritten_history_counts_as_zero_commits(self):
        report = classify_progress(10, 7, [])
        assert report.commits_made == 0
        assert report.kind == ProgressKind.NONE


class TestChangedPaths:
    """Tests for changed_paths between working-tree snapshots."""

    def test_new_and_edited_paths_count(self):
        before = {"a.py": "1", "b.py": "1"}
        after = {"a.py": "2", "b.py": "1", "c.py": "1"}
        assert changed_paths(before, after) == ["a.py", "c.py"]

    def test_leftover_dirty_file_is_not_new_work(self):
        assert changed_paths({"docs/SKILLBOOK.md": "x"}, {"docs/SKILLBOOK.md": "x"}) == []

    def test_cleaned_paths_are_ignored(self):
        assert changed_paths({"a.py": "1"}, {}) == []


class TestStallCount:
    """Tests for next_stall_count."""

    @pytest.mark.parametrize("before", [0, 1, 5])
    def test_hard_progress_resets(self, before):
        assert next_stall_count(before, ProgressKind.HARD) == 0

    def test_soft_progress_leaves_counter_alone(self):
        assert next_stall_count(2, ProgressKind.SOFT) == 2

    def test_no_progress_increments(self):
        assert next_stall_count(2, ProgressKind.NONE) == 3


class TestSessionStatus:
    """Tests for session_status."""

    def test_timeout_wins_over_progress(self):
        assert session_status(ProgressKind.HARD, timed_out=True) == SessionStatus.TIMEOUT

    def test_error_status(self):
        assert session_status(ProgressKind.NONE, errored=True) == SessionStatus.ERROR

    def test_stalled_and_completed(self):
        assert session_status(ProgressKind.NONE) == SessionStatus.STALLED
        assert session_status(ProgressKind.SOFT) == SessionStatus.COMPLETED


class TestIterationOutcome:
    """Tests for iteration_outcome."""

    def test_success_needs_commit_and_passing_item(self):
        assert iteration_outcome(ProgressKind.HARD, True) == Outcome.SUCCESS

    def test_commit_without_passing_item_is_partial(self):
        assert iteration_outcome(ProgressKind.HARD, False) == Outcome.PARTIAL

    def test_soft_progress_is_partial(self):
        assert iteration_outcome(ProgressKind.SOFT, True) == Outcome.PARTIAL

    def test_no_progress_is_failure(self):
        assert iteration_outcome(ProgressKind.NONE, False) == Outcome.FAILURE
