"""The `run` command (alias `autopilot`).

Builds run options from config plus flags, wires the orchestrator to the
Rich display and maps the stop reason to the process exit code.
"""
from __future__ import annotations

from typing import Any, Optional

import typer
from rich.panel import Panel
from rich.text import Text

from shiplog.cli.app import app
from shiplog.cli.common import get_console, load_config_or_exit, make_logger
from shiplog.cli.display import render_progress_event, render_stream_event, show_run_summary
from shiplog.models import ExitCode

console = get_console()


@app.command("autopilot", hidden=True)
@app.command("run")
def run_autopilot(
    max_iterations: Optional[int] = typer.Option(
        None, "--max-iterations", "-n", help="Maximum number of agent sessions", min=1,
    ),
    stall_threshold: Optional[int] = typer.Option(
        None, "--stall-threshold", "-s", help="Consecutive no-progress sessions before stopping", min=1,
    ),
    timeout: Optional[int] = typer.Option(
        None, "--timeout", "-t", help="Per-session timeout in seconds", min=1,
    ),
    max_retries: Optional[int] = typer.Option(
        None, "--max-retries", help="Retries after a failed agent call", min=0,
    ),
    max_cost: Optional[float] = typer.Option(
        None, "--max-cost", help="Per-session cost ceiling in USD",
    ),
    model: Optional[str] = typer.Option(
        None, "--model", "-m", help="Model passed to the agent engine",
    ),
    resume: Optional[bool] = typer.Option(
        None, "--resume/--no-resume", help="Reuse the agent's session after an interrupted run",
    ),
    fresh: bool = typer.Option(
        False, "--fresh", help="Archive memory and start a new run",
    ),
    dry_run: bool = typer.Option(
        False, "--dry-run", help="Show settings and the first prompt; invoke nothing",
    ),
    test_command: Optional[str] = typer.Option(
        None, "--test-command", help="Command used by the test gate (default: auto-detect)",
    ),
    no_review: bool = typer.Option(
        False, "--no-review", help="Skip the independent review gate",
    ),
    sprint: Optional[str] = typer.Option(
        None, "--sprint", help="Sprint file name or initiative to work on",
    ),
    quiet: bool = typer.Option(
        False, "--quiet", "-q", help="Hide the agent transcript",
    ),
) -> None:
    """
    Work the active sprint backlog until it completes, stalls or runs out of sessions.

    Exit codes: 0 completed, 1 stalled or error, 2 max iterations, 130 interrupted.
    """
    from shiplog.autopilot import AutopilotOrchestrator, RunOptions
    from shiplog.backlog import BacklogReader
    from shiplog.errors import BacklogNotFoundError, StatePersistenceError

    config = load_config_or_exit()
    if test_command is not None:
        config.tests.command = test_command
    if no_review:
        config.review.enabled = False

    options = RunOptions.from_config(
        config,
        max_iterations=max_iterations,
        stall_threshold=stall_threshold,
        timeout_seconds=timeout,
        max_retries=max_retries,
        max_cost_usd=max_cost,
        model=model,
        resume=resume,
        fresh=fresh,
        dry_run=dry_run,
        sprint=sprint,
    )

    try:
        backlog = BacklogReader(config).select(sprint)
    except BacklogNotFoundError as e:
        console.print(f"[red]Error:[/red] {e}")
        console.print(f"[dim]Add a sprint JSON file under {config.sprints_path}[/dim]")
        raise typer.Exit(ExitCode.ERROR)

    # Dry runs must not leave anything on disk, log files included
    logger = None if dry_run else make_logger(config, backlog.initiative)

    def on_progress(event: str, data: dict[str, Any]) -> None:
        render_progress_event(console, event, data)

    def on_stream(kind: str, payload: dict[str, Any]) -> None:
        if not quiet:
            render_stream_event(console, kind, payload)

    orchestrator = AutopilotOrchestrator(
        config,
        options=options,
        logger=logger,
        progress_callback=on_progress,
        stream_callback=on_stream,
    )

    try:
        result = orchestrator.run()
    except BacklogNotFoundError as e:
        console.print(f"[red]Error:[/red] {e}")
        raise typer.Exit(ExitCode.ERROR)
    except StatePersistenceError as e:
        console.print(f"[red]Cannot persist run state:[/red] {e}")
        raise typer.Exit(ExitCode.ERROR)

    if result.prompt is not None:
        _show_dry_run(options, result.prompt, result.warnings, backlog.initiative)
        raise typer.Exit(result.exit_code)

    show_run_summary(console, result.reason.value, result.message, result.state)
    raise typer.Exit(result.exit_code)


def _show_dry_run(options: Any, prompt: str, warnings: list[str], initiative: str) -> None:
    settings = "\n".join([
        f"Initiative: {initiative}",
        f"Max iterations: {options.max_iterations}",
        f"Stall threshold: {options.stall_threshold}",
        f"Timeout: {options.timeout_seconds}s",
        f"Max retries: {options.max_retries}",
        f"Max cost: {options.max_cost_usd if options.max_cost_usd is not None else 'none'}",
        f"Model: {options.model or 'default'}",
        f"Resume: {'yes' if options.resume else 'no'}",
        f"Fresh: {'yes' if options.fresh else 'no'}",
    ])
    console.print(Panel(settings, title="Dry Run", border_style="cyan"))
    for warning in warnings:
        console.print(f"[yellow]! {warning}[/yellow]")
    console.print(Panel(Text(prompt), title="First prompt", border_style="dim"))
