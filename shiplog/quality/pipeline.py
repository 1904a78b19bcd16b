"""
Quality gate pipeline for completion claims.

Runs once per iteration for the items whose ``passes`` flag flipped from
false to true during that iteration:

1. Test gate. On failure every newly passing item is rolled back, the
   latest memory entry gets the failure output as critique and outcome
   ``failure``, and review is skipped.
2. Independent review, per item. A rejection rolls that item back, adds
   the critique to the skillbook and downgrades the latest memory entry
   to ``partial``.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Callable, Optional

from shiplog.errors import AgentCancelledError, AutopilotInterrupted
from shiplog.models import Backlog, Memory, Outcome, ReviewVerdict, WorkItem

if TYPE_CHECKING:
    from shiplog.backlog import BacklogReader
    from shiplog.config import ShiplogConfig
    from shiplog.logger import ShiplogLogger
    from shiplog.memory.store import MemoryStore
    from shiplog.quality.review_gate import ReviewGate
    from shiplog.quality.test_gate import TestGate, TestGateResult
    from shiplog.skillbook import Skillbook
    from shiplog.vcs import GitTracker


EventCallback = Callable[[str, dict[str, Any]], None]


@dataclass
class GateReport:
    """What the pipeline did in one iteration."""
    backlog: Backlog
    checked: list[str] = field(default_factory=list)
    test_result: Optional[TestGateResult] = None
    verdicts: dict[str, ReviewVerdict] = field(default_factory=dict)
    reverted: list[str] = field(default_factory=list)
    review_cost_usd: float = 0.0

    @property
    def ran(self) -> bool:
        """True when there was at least one claim to check."""
        return bool(self.checked)


class QualityGatePipeline:
    """Applies the test gate and the review gate to newly passing items."""

    def __init__(
        self,
        config: ShiplogConfig,
        backlog_reader: BacklogReader,
        memory_store: MemoryStore,
        skillbook: Skillbook,
        test_gate: TestGate,
        review_gate: Optional[ReviewGate],
        git: GitTracker,
        logger: Optional[ShiplogLogger] = None,
        progress_callback: Optional[EventCallback] = None,
    ) -> None:
        self._config = config
        self._backlog_reader = backlog_reader
        self._memory_store = memory_store
        self._skillbook = skillbook
        self._test_gate = test_gate
        self._review_gate = review_gate
        self._git = git
        self._logger = logger
        self._progress_callback = progress_callback

    def _log(self, event_type: str, data: Optional[dict] = None, level: str = "info") -> None:
        """Log an event if logger is configured."""
        if self._logger:
            self._logger.log(event_type, data, level=level)

    def _emit(self, event: str, data: dict[str, Any]) -> None:
        """Emit progress event to callback if configured."""
        if self._progress_callback:
            self._progress_callback(event, data)

    def run(
        self,
        backlog: Backlog,
        newly_passed: list[WorkItem],
        memory: Memory,
        commits_made: int,
    ) -> GateReport:
        """
        Check every claim made this iteration.

        Args:
            backlog: Backlog as re-read after the agent call.
            newly_passed: Items that flipped to passing this iteration.
            memory: Memory whose latest entry is this iteration's.
            commits_made: Commits made this iteration.

        Returns:
            GateReport with the (possibly rolled back) backlog.
        """
        report = GateReport(backlog=backlog, checked=[item.id for item in newly_passed])
        if not newly_passed:
            return report

        self._emit("gate_start", {"items": report.checked})
        self._log("quality_gate_start", {"items": report.checked})
        try:
            return self._check(report, newly_passed, memory, commits_made)
        except (AgentCancelledError, AutopilotInterrupted):
            self._roll_back_unresolved(report, memory)
            raise

    def _check(
        self,
        report: GateReport,
        newly_passed: list[WorkItem],
        memory: Memory,
        commits_made: int,
    ) -> GateReport:
        test_result = self._test_gate.run()
        report.test_result = test_result
        if test_result.skipped:
            self._emit("test_gate_skipped", {})
        if not test_result.passed:
            return self._reject_all(report, memory, test_result)
        self._emit("test_gate_passed", {"command": test_result.command, "skipped": test_result.skipped})

        if self._review_gate is None or not self._config.review.enabled:
            return report

        commit_messages = self._git.recent_commit_subjects(commits_made)
        changed_files = self._git.changed_files_in_last(commits_made)
        for path in self._git.working_tree_diff_paths():
            if path not in changed_files:
                changed_files.append(path)

        rejected: list[WorkItem] = []
        for item in newly_passed:
            self._emit("review_start", {"item": item.id, "description": item.description})
            verdict = self._review_gate.review(item, commit_messages, changed_files)
            report.verdicts[item.id] = verdict
            report.review_cost_usd += verdict.cost_usd

            if verdict.failed_open:
                self._emit("review_failed_open", {"item": item.id, "error": verdict.error})
            elif verdict.approved:
                self._emit("review_approved", {"item": item.id})
            else:
                rejected.append(item)
                self._record_rejection(item, verdict, memory)
                self._emit("review_rejected", {
                    "item": item.id,
                    "critique": verdict.critique,
                    "suggestions": verdict.suggestions,
                })

        if rejected:
            ids = [item.id for item in rejected]
            report.backlog = self._backlog_reader.set_passes(report.backlog, ids, False)
            report.reverted.extend(ids)
        return report

    def _roll_back_unresolved(self, report: GateReport, memory: Memory) -> None:
        """
        Undo claims an interrupt left ungated.

        Only items the reviewer already approved keep ``passes``; the rest
        go back to failing so the resumed run picks them up again.
        """
        kept = {item_id for item_id, verdict in report.verdicts.items() if verdict.approved}
        pending = [i for i in report.checked if i not in kept and i not in report.reverted]
        if not pending:
            return
        report.backlog = self._backlog_reader.set_passes(report.backlog, pending, False)
        report.reverted.extend(pending)
        latest = memory.entries[-1] if memory.entries else None
        downgrade = Outcome.PARTIAL if latest is None or latest.outcome != Outcome.FAILURE else None
        self._memory_store.amend_latest(
            memory,
            critique=f"Interrupted before the quality gates finished; rolled back {', '.join(pending)}",
            outcome=downgrade,
        )
        self._log("quality_gate_interrupted", {"items": pending}, level="warn")

    def _reject_all(self, report: GateReport, memory: Memory, test_result: TestGateResult) -> GateReport:
        report.backlog = self._backlog_reader.set_passes(report.backlog, report.checked, False)
        report.reverted.extend(report.checked)
        self._memory_store.amend_latest(memory, critique=test_result.summary(), outcome=Outcome.FAILURE)
        self._log("test_gate_rollback", {"items": report.checked}, level="warn")
        self._emit("test_gate_failed", {
            "items": report.checked,
            "command": test_result.command,
            "failures": test_result.failures,
        })
        return report

    def _record_rejection(self, item: WorkItem, verdict: ReviewVerdict, memory: Memory) -> None:
        critique = f'Review rejected "{item.description}": {verdict.critique}'
        if verdict.suggestions:
            critique += "\nSuggestions:\n" + "\n".join(f"- {s}" for s in verdict.suggestions)

        latest = memory.entries[-1] if memory.entries else None
        downgrade = Outcome.PARTIAL if latest is None or latest.outcome != Outcome.FAILURE else None
        self._memory_store.amend_latest(memory, critique=critique, outcome=downgrade)
        self._skillbook.record_review_rejection(item.description, verdict.critique, verdict.suggestions)
        self._log("review_rollback", {"item": item.id, "critique": verdict.critique}, level="warn")
