"""Main Typer app definition and routing.

This is the canonical entry point for the CLI. The app, callback and
command registrations are all defined here.
"""
from __future__ import annotations

from pathlib import Path
from typing import Optional

import typer

from shiplog import __version__
from shiplog.cli.common import get_console, set_project_dir

# Create Typer app
app = typer.Typer(
    name="shiplog",
    help="Autopilot for an AI coding agent: works a sprint backlog until it ships or stalls",
    add_completion=False,
)

# Rich console for output - use singleton from common module
console = get_console()


def version_callback(value: bool) -> None:
    """Show version and exit."""
    if value:
        console.print(f"shiplog version {__version__}")
        raise typer.Exit()


@app.callback(invoke_without_command=True)
def main(
    ctx: typer.Context,
    project: Optional[str] = typer.Option(
        None,
        "--project",
        "-p",
        help="Project directory to operate on (default: current directory)",
    ),
    version: bool = typer.Option(
        False,
        "--version",
        "-v",
        help="Show version and exit",
        callback=version_callback,
        is_eager=True,
    ),
) -> None:
    """
    Shiplog - autonomous backlog runner.

    Repeatedly invokes the coding agent against the active sprint backlog,
    remembering what was tried and gating every completion claim.
    """
    if project:
        project_path = Path(project)
        if not project_path.is_dir():
            console.print(f"[red]Error: Project directory not found: {project}[/red]")
            raise typer.Exit(1)
        set_project_dir(str(project_path.absolute()))

    # If no subcommand and no --help, show help
    if ctx.invoked_subcommand is None:
        console.print(ctx.get_help())
        raise typer.Exit(0)


# =========================================================================
# Command Registration
# =========================================================================
# Command modules register themselves on `app`; this must come AFTER app is defined
import shiplog.cli.run  # noqa: F401, E402
import shiplog.cli.status  # noqa: F401, E402


def cli_main() -> None:
    """Entry point for the CLI."""
    app()


__all__ = ["app", "cli_main"]
