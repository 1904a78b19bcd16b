"""
Loop and oscillation detection over the iteration memory.

The checks are plain string heuristics: failure counts per
item description, fix/revert mentions in recent failures, and duplicate
approach prefixes. The detector never stops the run; its output is
advisory text for the next prompt.
"""

from __future__ import annotations

from typing import Optional

from shiplog.config import LoopDetectionConfig
from shiplog.models import LoopAnalysis, MemoryEntry, Outcome
from shiplog.skillbook import is_fix_or_revert


class LoopDetector:
    """Analyzes the full memory history for repeated or oscillating work."""

    def __init__(self, config: Optional[LoopDetectionConfig] = None) -> None:
        self.config = config or LoopDetectionConfig()

    def normalize_approach(self, approach: str) -> str:
        """Case-fold, trim and truncate an approach for comparison."""
        return approach.strip().lower()[: self.config.approach_prefix_length]

    def analyze(self, entries: list[MemoryEntry]) -> LoopAnalysis:
        """
        Compute loop warnings for the given history.

        Args:
            entries: All memory entries, oldest first.

        Returns:
            LoopAnalysis; ``has_loop`` is set only by blocking findings.
        """
        analysis = LoopAnalysis()
        self._check_repeated_failures(entries, analysis)
        self._check_oscillation(entries, analysis)
        self._check_repeated_approaches(entries, analysis)
        return analysis

    def _check_repeated_failures(self, entries: list[MemoryEntry], analysis: LoopAnalysis) -> None:
        counts: dict[str, int] = {}
        for entry in entries:
            if entry.outcome == Outcome.FAILURE:
                counts[entry.item_description] = counts.get(entry.item_description, 0) + 1

        for description, count in counts.items():
            if count >= self.config.failure_block_threshold:
                analysis.has_loop = True
                analysis.warnings.append(
                    f'LOOP DETECTED: "{description}" has failed {count} times. '
                    "Stop and try a fundamentally different approach."
                )
                if description not in analysis.blocked_approaches:
                    analysis.blocked_approaches.append(description)
            elif count >= self.config.failure_warn_threshold:
                analysis.warnings.append(
                    f'"{description}" has failed {count} times. '
                    "Review what went wrong before trying again."
                )

    def _check_oscillation(self, entries: list[MemoryEntry], analysis: LoopAnalysis) -> None:
        recent = entries[-self.config.oscillation_window:] if self.config.oscillation_window > 0 else []
        mentions = [
            failure
            for entry in recent
            for failure in entry.failures
            if is_fix_or_revert(failure)
        ]
        if len(mentions) >= self.config.oscillation_threshold:
            examples = "; ".join(mentions[-3:])
            analysis.warnings.append(
                f"OSCILLATION: {len(mentions)} fix/revert cycles in the last "
                f"{len(recent)} iterations. Recent: {examples}"
            )

    def _check_repeated_approaches(self, entries: list[MemoryEntry], analysis: LoopAnalysis) -> None:
        counts: dict[str, int] = {}
        originals: dict[str, str] = {}
        for entry in entries:
            key = self.normalize_approach(entry.approach)
            if not key:
                continue
            counts[key] = counts.get(key, 0) + 1
            originals.setdefault(key, entry.approach.strip())

        for key, count in counts.items():
            if count >= self.config.approach_block_threshold:
                analysis.has_loop = True
                analysis.warnings.append(
                    f'REPEATED APPROACH: "{originals[key]}" tried {count} times. It is now blocked.'
                )
                if originals[key] not in analysis.blocked_approaches:
                    analysis.blocked_approaches.append(originals[key])
            elif count >= self.config.approach_warn_threshold:
                analysis.warnings.append(
                    f'Approach "{originals[key]}" has been tried {count} times already.'
                )
