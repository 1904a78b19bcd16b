"""Display helpers and formatters for the CLI.

Contains Rich formatting utilities for run status, backlog progress, memory
and the live event stream of an autopilot run.
This module should NOT import from the command modules to avoid circular imports.
"""
from __future__ import annotations

from typing import Any, Optional

from rich.console import Console
from rich.panel import Panel
from rich.table import Table
from rich.text import Text

from shiplog.models import Backlog, LoopAnalysis, Memory, Outcome, RunState, RunStatus, SessionStatus

# Run status display names and colors
RUN_STATUS_DISPLAY: dict[RunStatus, tuple[str, str]] = {
    RunStatus.RUNNING: ("Running", "cyan"),
    RunStatus.COMPLETED: ("Completed", "green bold"),
    RunStatus.STALLED: ("Stalled", "red"),
    RunStatus.INTERRUPTED: ("Interrupted", "yellow bold"),
}

SESSION_STATUS_DISPLAY: dict[SessionStatus, tuple[str, str]] = {
    SessionStatus.RUNNING: ("Running", "cyan"),
    SessionStatus.COMPLETED: ("Completed", "green"),
    SessionStatus.STALLED: ("Stalled", "yellow"),
    SessionStatus.ERROR: ("Error", "red"),
    SessionStatus.TIMEOUT: ("Timeout", "red"),
}

OUTCOME_DISPLAY: dict[Outcome, tuple[str, str]] = {
    Outcome.SUCCESS: ("success", "green"),
    Outcome.PARTIAL: ("partial", "yellow"),
    Outcome.FAILURE: ("failure", "red"),
}

PROGRESS_BAR_WIDTH = 20


def format_run_status(status: RunStatus) -> Text:
    """Format a run status as colored text."""
    display_name, style = RUN_STATUS_DISPLAY.get(status, (status.value, "white"))
    return Text(display_name, style=style)


def format_session_status(status: SessionStatus) -> Text:
    """Format a session status as colored text."""
    display_name, style = SESSION_STATUS_DISPLAY.get(status, (status.value, "white"))
    return Text(display_name, style=style)


def format_outcome(outcome: Outcome) -> Text:
    """Format a memory outcome as colored text."""
    display_name, style = OUTCOME_DISPLAY.get(outcome, (outcome.value, "white"))
    return Text(display_name, style=style)


def format_cost(cost_usd: float) -> str:
    """Format cost as a string with dollar sign."""
    if cost_usd == 0:
        return "-"
    return f"${cost_usd:.2f}"


def format_duration(seconds: float) -> str:
    """Format seconds as ``XmYs``."""
    minutes, secs = divmod(int(seconds), 60)
    return f"{minutes}m {secs}s"


def progress_bar(done: int, total: int, width: int = PROGRESS_BAR_WIDTH) -> str:
    """Text progress bar such as ``[#####-----] 2/4 (50%)``."""
    if total <= 0:
        return "[" + "-" * width + "] 0/0"
    filled = int(width * done / total)
    percent = int(100 * done / total)
    return "[" + "#" * filled + "-" * (width - filled) + f"] {done}/{total} ({percent}%)"


# ============================================================================
# Status views
# ============================================================================


def show_backlog(console: Console, backlog: Backlog) -> None:
    """Per-item completion table for a backlog."""
    done = len(backlog.items) - len(backlog.incomplete_items)
    current = backlog.current_item

    table = Table(title=f"Sprint: {backlog.initiative}", show_lines=False)
    table.add_column("ID", style="cyan", no_wrap=True)
    table.add_column("Feature")
    table.add_column("Status", justify="center")

    for item in backlog.items:
        if item.passes:
            status = Text("pass", style="green")
        elif current is not None and item.id == current.id:
            status = Text("current", style="cyan bold")
        else:
            status = Text("todo", style="dim")
        table.add_row(item.id, item.description, status)

    console.print(table)
    console.print(f"Progress: {progress_bar(done, len(backlog.items))}")


def show_run_state(console: Console, state: RunState) -> None:
    """Summary panel of the last autopilot run."""
    last = state.sessions[-1] if state.sessions else None
    lines = [
        f"Initiative: {state.initiative}",
        f"Started: {state.started}",
        f"Iterations: {state.iterations}",
        f"Commits: {state.total_commits}",
        f"Stall count: {state.stall_count}",
        f"Cost: {format_cost(state.total_cost_usd)}",
        f"Duration: {format_duration(state.total_duration_seconds)}",
    ]
    if state.resume_handle:
        lines.append(f"Resume handle: {state.resume_handle}")

    body = Text("\n".join(lines) + "\nStatus: ")
    body.append_text(format_run_status(state.status))
    if last is not None:
        body.append(f"\nLast session: {last.session_id} (")
        body.append_text(format_session_status(last.status))
        body.append(")")
    console.print(Panel(body, title="Last Run", border_style="blue"))


def show_memory(console: Console, memory: Memory, analysis: LoopAnalysis, window: int = 5) -> None:
    """Recent memory entries and current loop warnings."""
    table = Table(title=f"Memory ({len(memory.entries)} entries)")
    table.add_column("#", justify="right")
    table.add_column("Feature")
    table.add_column("Outcome", justify="center")
    table.add_column("Commits", justify="right")
    table.add_column("Approach")

    for entry in memory.entries[-window:]:
        table.add_row(
            str(entry.iteration),
            entry.item_description,
            format_outcome(entry.outcome),
            str(entry.commit_count),
            entry.approach or "-",
        )
    console.print(table)

    if analysis.warnings:
        console.print(Panel(
            "\n".join(f"- {w}" for w in analysis.warnings),
            title="Loop Warnings",
            border_style="red" if analysis.has_loop else "yellow",
        ))


# ============================================================================
# Live run output
# ============================================================================


def render_progress_event(console: Console, event: str, data: dict[str, Any]) -> None:
    """Print one orchestrator progress event."""
    if event == "run_start":
        console.print(
            f"[cyan]Autopilot:[/cyan] {data.get('initiative')} "
            f"({data.get('passing', 0)}/{data.get('items', 0)} features passing)"
        )
    elif event == "resumed":
        console.print(
            f"[yellow]Resuming[/yellow] after iteration {data.get('iterations', 0)} "
            f"(stall count {data.get('stall_count', 0)})"
        )
    elif event == "iteration_start":
        console.rule(
            f"Session {data.get('iteration')}/{data.get('max_iterations')}"
            + (f" - {data['item']}: {data['description']}" if data.get("item") else "")
        )
    elif event == "loop_warnings":
        style = "red" if data.get("has_loop") else "yellow"
        for warning in data.get("warnings", []):
            console.print(f"[{style}]! {warning}[/{style}]")
    elif event == "retry":
        console.print(
            f"[yellow]Agent failed ({data.get('error')}); retry "
            f"{data.get('attempt')}/{data.get('max_retries')} in {data.get('delay_seconds', 0):.0f}s[/yellow]"
        )
    elif event == "agent_error":
        console.print(f"[red]Agent invocation failed:[/red] {data.get('error')}")
        if data.get("requires_user_action"):
            console.print("[red]This needs your attention before the next run.[/red]")
    elif event == "timeout":
        console.print(f"[red]Session timed out after {data.get('timeout_seconds')}s[/red]")
    elif event == "iteration_end":
        console.print(
            f"[dim]Progress:[/dim] {data.get('progress')}  "
            f"[dim]commits:[/dim] {data.get('commits_made')}  "
            f"[dim]files:[/dim] {data.get('files_changed')}  "
            f"[dim]outcome:[/dim] {data.get('outcome')}  "
            f"[dim]cost:[/dim] {format_cost(data.get('cost_usd', 0.0))}"
        )
        if data.get("reverted"):
            console.print(f"[yellow]Rolled back:[/yellow] {', '.join(data['reverted'])}")
    elif event == "stall_warning":
        console.print(
            f"[yellow]No progress ({data.get('stall_count')}/{data.get('stall_threshold')} "
            f"before stopping)[/yellow]"
        )
    elif event == "gate_start":
        console.print(f"[cyan]Quality gate:[/cyan] {', '.join(data.get('items', []))}")
    elif event == "test_gate_skipped":
        console.print("[yellow]   No test command found; test gate skipped[/yellow]")
    elif event == "test_gate_passed":
        if not data.get("skipped"):
            console.print(f"[green]   Tests passed[/green] ({data.get('command')})")
    elif event == "test_gate_failed":
        console.print(f"[red]   Tests failed[/red] ({data.get('command')}); claims rolled back")
    elif event == "review_approved":
        console.print(f"[green]   Review approved {data.get('item')}[/green]")
    elif event == "review_rejected":
        console.print(f"[red]   Review rejected {data.get('item')}:[/red] {data.get('critique')}")
    elif event == "review_failed_open":
        console.print(
            f"[yellow]   Reviewer unavailable for {data.get('item')} ({data.get('error')}); "
            f"claim accepted[/yellow]"
        )
    elif event == "interrupted":
        console.print("\n[yellow]Interrupted. Run state saved.[/yellow]")


def render_stream_event(console: Console, kind: str, payload: dict[str, Any]) -> None:
    """Print one agent transcript event."""
    if kind == "text":
        console.print(payload.get("text", ""), markup=False, highlight=False)
    elif kind == "tool_use":
        console.print(f"[dim]> {payload.get('name', 'tool')}[/dim]")


def show_run_summary(console: Console, reason: str, message: str, state: Optional[RunState]) -> None:
    """Final panel for a run, colored by stop reason."""
    border = {
        "completed": "green",
        "stalled": "red",
        "max_iterations": "yellow",
        "interrupted": "yellow",
    }.get(reason, "blue")
    lines = [message]
    if state is not None:
        lines.extend([
            "",
            f"Iterations: {state.iterations}",
            f"Commits: {state.total_commits}",
            f"Cost: {format_cost(state.total_cost_usd)}",
            f"Duration: {format_duration(state.total_duration_seconds)}",
        ])
    if reason == "interrupted":
        lines.extend(["", "Resume with: shiplog run"])
    console.print(Panel("\n".join(lines), title=reason.replace("_", " ").title(), border_style=border))
