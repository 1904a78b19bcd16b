"""
Stage B quality gate: independent review of a completion claim.

The reviewer is a second, narrowly scoped agent invocation. It gets the
commit messages, the changed paths and the quality checklist, never the
implementation transcript, and runs read-only with its own timeout and
cost ceiling.

Reviewer infrastructure failure (crash, timeout, unparseable verdict)
fails open: the verdict is approved with ``error`` set, so it is never
confused with an actual rejection.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any, Optional

from shiplog.errors import AgentCancelledError, AgentError
from shiplog.models import ReviewVerdict, WorkItem
from shiplog.prompts import REVIEW_SCHEMA, compose_review_prompt

if TYPE_CHECKING:
    from shiplog.config import ShiplogConfig
    from shiplog.llm_clients import ClaudeCliRunner
    from shiplog.logger import ShiplogLogger


def parse_verdict(data: Optional[dict[str, Any]]) -> Optional[ReviewVerdict]:
    """
    Build a verdict from the reviewer's structured output.

    Returns:
        ReviewVerdict, or None if ``approved`` is missing or not a boolean.
    """
    if not data or not isinstance(data.get("approved"), bool):
        return None
    suggestions = data.get("suggestions") or []
    if isinstance(suggestions, str):
        suggestions = [suggestions]
    return ReviewVerdict(
        approved=data["approved"],
        critique=str(data.get("critique") or ""),
        suggestions=[str(s) for s in suggestions if str(s).strip()],
    )


class ReviewGate:
    """Runs the independent review for one newly passing item."""

    def __init__(
        self,
        config: ShiplogConfig,
        runner: ClaudeCliRunner,
        logger: Optional[ShiplogLogger] = None,
    ) -> None:
        self._config = config
        self._runner = runner
        self._logger = logger

    def _log(self, event_type: str, data: Optional[dict] = None, level: str = "info") -> None:
        """Log an event if logger is configured."""
        if self._logger:
            self._logger.log(event_type, data, level=level)

    def _fail_open(self, item: WorkItem, reason: str, cost: float = 0.0) -> ReviewVerdict:
        self._log("review_failed_open", {"item": item.id, "reason": reason}, level="warn")
        return ReviewVerdict(approved=True, error=reason, cost_usd=cost)

    def review(
        self,
        item: WorkItem,
        commit_messages: list[str],
        changed_files: list[str],
    ) -> ReviewVerdict:
        """
        Ask the reviewer whether ``item`` is really done.

        Raises:
            AgentCancelledError: If the run is interrupted during the review.
        """
        review_config = self._config.review
        prompt = compose_review_prompt(item, commit_messages, changed_files, review_config.criteria)
        self._log("review_start", {"item": item.id, "commits": len(commit_messages)})

        try:
            result = self._runner.run(
                prompt,
                timeout=review_config.timeout_seconds,
                max_cost_usd=review_config.max_cost_usd,
                allowed_tools=review_config.allowed_tools,
                json_schema=REVIEW_SCHEMA,
            )
        except AgentCancelledError:
            raise
        except AgentError as e:
            return self._fail_open(item, f"reviewer error: {e}")

        if result.timed_out:
            return self._fail_open(
                item, f"reviewer timed out after {review_config.timeout_seconds}s", result.cost_usd
            )

        verdict = parse_verdict(result.structured)
        if verdict is None:
            return self._fail_open(item, "reviewer returned no parseable verdict", result.cost_usd)

        verdict.cost_usd = result.cost_usd
        self._log("review_complete", {
            "item": item.id,
            "approved": verdict.approved,
            "cost_usd": verdict.cost_usd,
        }, level="info" if verdict.approved else "warn")
        return verdict
