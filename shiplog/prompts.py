"""
Prompt composition for Shiplog.

Both prompts are deterministic text assembly: the same inputs always give
the same prompt. Section order of the iteration prompt is fixed; only the
loop-warning and skillbook sections are left out when empty.
"""

from __future__ import annotations

from typing import Any, Optional

from shiplog.models import Backlog, LoopAnalysis, MemoryEntry, WorkItem

REVIEW_SCHEMA: dict[str, Any] = {
    "type": "object",
    "properties": {
        "approved": {"type": "boolean"},
        "critique": {"type": "string"},
        "suggestions": {"type": "array", "items": {"type": "string"}},
    },
    "required": ["approved", "critique", "suggestions"],
}


def _bullets(lines: list[str], empty: str) -> str:
    if not lines:
        return f"{empty}\n"
    return "".join(f"- {line}\n" for line in lines)


def _memory_summary(entries: list[MemoryEntry], window: int) -> str:
    """Deduplicated failure list followed by the most recent entries."""
    if not entries:
        return "## Memory\nNo previous iterations recorded.\n\n"

    seen: list[str] = []
    for entry in entries:
        for failure in entry.failures:
            if failure not in seen:
                seen.append(failure)

    out = "## Memory\n"
    out += "### Do Not Repeat\n"
    out += _bullets(seen, "No recorded failures.")
    out += "\n### Recent Iterations\n"
    for entry in entries[-window:] if window > 0 else []:
        out += f"**Iteration {entry.iteration}** ({entry.outcome.value}) - {entry.item_description}\n"
        out += f"- Approach: {entry.approach or '(not reported)'}\n"
        for learning in entry.learnings:
            out += f"- Learned: {learning}\n"
        if entry.critique:
            out += f"- Critique: {entry.critique}\n"
    return out + "\n"


def compose_iteration_prompt(
    iteration: int,
    backlog: Backlog,
    entries: list[MemoryEntry],
    analysis: LoopAnalysis,
    recent_commits: list[str],
    skillbook_text: str = "",
    memory_window: int = 5,
) -> str:
    """
    Build the instruction for one autopilot iteration.

    Args:
        iteration: 1-based iteration number.
        backlog: The active backlog.
        entries: Full memory history, oldest first.
        analysis: Loop detector output for this iteration.
        recent_commits: One-line commit summaries, newest first.
        skillbook_text: Accumulated learnings; omitted when empty.
        memory_window: How many recent memory entries to show.

    Returns:
        The prompt text.
    """
    item = backlog.current_item
    passing = len(backlog.items) - len(backlog.incomplete_items)

    prompt = f"# Autopilot Session {iteration}\n\n"

    prompt += "## Current Task\n"
    prompt += f"Initiative: {backlog.initiative}\n"
    if item is not None:
        prompt += f"Feature {item.id}: {item.description}\n"
    else:
        prompt += "Feature: (all features pass)\n"
    prompt += f"Progress: {passing}/{len(backlog.items)} features passing\n"
    if backlog.path is not None:
        prompt += f"Sprint file: {backlog.path}\n"
    prompt += "\n"

    if analysis.warnings:
        prompt += "## Loop Warnings\n"
        prompt += _bullets(analysis.warnings, "")
        prompt += "\n"

    prompt += "## Blocked Approaches\n"
    prompt += _bullets(analysis.blocked_approaches, "None.")
    prompt += "\n"

    prompt += _memory_summary(entries, memory_window)

    prompt += "## Recent Commits\n"
    prompt += _bullets(recent_commits, "No commits yet.")
    prompt += "\n"

    if skillbook_text.strip():
        prompt += "## Learnings (from previous sessions)\n"
        prompt += skillbook_text.strip() + "\n\n"

    prompt += "## Instructions\n"
    prompt += "You are running in autopilot mode. Work autonomously until:\n"
    prompt += "- The current feature is complete (set \"passes\": true for it in the sprint file)\n"
    prompt += "- You encounter a blocker that requires human input\n"
    prompt += "- Context is exhausted\n\n"
    prompt += "Rules:\n"
    prompt += "- Never edit a feature's description; only its \"passes\" flag.\n"
    prompt += "- Only mark a feature as passing when its tests pass.\n"
    prompt += "- Make small commits frequently. Do not retry a blocked approach.\n\n"
    prompt += "When you stop, end your final message with a JSON object reporting this session:\n"
    prompt += "```json\n"
    prompt += '{"approach": "<one line: what you tried>", '
    prompt += '"learnings": ["<what worked>"], '
    prompt += '"failures": ["<what went wrong>"]}\n'
    prompt += "```\n"
    return prompt


def compose_review_prompt(
    item: WorkItem,
    commit_messages: list[str],
    changed_files: list[str],
    criteria: list[str],
) -> str:
    """
    Build the narrowly scoped review prompt for one newly passing item.

    The reviewer sees commit messages, changed paths and the checklist,
    never the implementation transcript.
    """
    prompt = "# Independent Review\n\n"
    prompt += "Another agent claims the following feature is complete. Verify the claim.\n\n"
    prompt += f"## Feature\n{item.id}: {item.description}\n\n"
    prompt += "## Commits\n"
    prompt += _bullets(commit_messages, "No commits were made.")
    prompt += "\n## Changed Files\n"
    prompt += _bullets(changed_files, "No files changed.")
    prompt += "\n## Quality Criteria\n"
    prompt += "".join(f"- [ ] {c}\n" for c in criteria)
    prompt += "\n## Instructions\n"
    prompt += "Read the changed files. Do not modify anything.\n"
    prompt += "Approve only if every criterion holds. Respond with a JSON object:\n"
    prompt += '{"approved": true|false, "critique": "<what is wrong, or empty>", '
    prompt += '"suggestions": ["<concrete fix>"]}\n'
    return prompt


def parse_iteration_report(structured: Optional[dict[str, Any]]) -> tuple[str, list[str], list[str]]:
    """
    Read the agent's end-of-session report.

    Returns:
        (approach, learnings, failures); missing fields come back empty.
    """
    if not structured:
        return "", [], []

    def _strings(value: Any) -> list[str]:
        if isinstance(value, str):
            return [value] if value.strip() else []
        if isinstance(value, list):
            return [str(v) for v in value if str(v).strip()]
        return []

    approach = structured.get("approach")
    return (
        approach.strip() if isinstance(approach, str) else "",
        _strings(structured.get("learnings")),
        _strings(structured.get("failures")),
    )
