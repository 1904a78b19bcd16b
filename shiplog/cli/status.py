"""The `status` command: backlog progress, last run and memory at a glance."""
from __future__ import annotations

import json
from typing import Optional

import typer

from shiplog.cli.app import app
from shiplog.cli.common import get_console, load_config_or_exit
from shiplog.cli.display import show_backlog, show_memory, show_run_state
from shiplog.models import ExitCode

console = get_console()


@app.command("status")
def status(
    as_json: bool = typer.Option(False, "--json", help="Print machine-readable JSON"),
    sprint: Optional[str] = typer.Option(
        None, "--sprint", help="Sprint file name or initiative to show",
    ),
) -> None:
    """
    Show the active sprint, the last autopilot run and what memory holds.

    Read-only: nothing is created or modified.
    """
    from shiplog.autopilot import RunStateStore
    from shiplog.backlog import BacklogReader
    from shiplog.errors import BacklogNotFoundError
    from shiplog.memory import LoopDetector, MemoryStore

    config = load_config_or_exit()

    try:
        backlog = BacklogReader(config).select(sprint)
    except BacklogNotFoundError as e:
        console.print(f"[red]Error:[/red] {e}")
        raise typer.Exit(ExitCode.ERROR)

    state = RunStateStore(config).load()
    if state is not None and state.initiative != backlog.initiative:
        state = None
    memory = MemoryStore(config).peek(backlog.initiative)
    analysis = LoopDetector(config.loop_detection).analyze(memory.entries if memory else [])

    if as_json:
        current = backlog.current_item
        payload = {
            "initiative": backlog.initiative,
            "sprint_file": str(backlog.path) if backlog.path else None,
            "status": backlog.status.value,
            "total": len(backlog.items),
            "passing": len(backlog.items) - len(backlog.incomplete_items),
            "current_item": current.to_dict() if current else None,
            "items": [item.to_dict() for item in backlog.items],
            "run": state.to_dict() if state else None,
            "memory_entries": len(memory.entries) if memory else 0,
            "loop_warnings": analysis.warnings,
            "has_loop": analysis.has_loop,
        }
        typer.echo(json.dumps(payload, indent=2))
        return

    show_backlog(console, backlog)
    if state is not None:
        show_run_state(console, state)
    else:
        console.print("[dim]No autopilot run recorded for this sprint.[/dim]")
    if memory is not None and memory.entries:
        show_memory(console, memory, analysis, window=config.autopilot.memory_window)
