"""Common utilities and global state for the CLI.

Contains project directory management, config loading and logger setup.
This module should NOT import from the command modules to avoid circular imports.
"""
from __future__ import annotations

from pathlib import Path
from typing import TYPE_CHECKING, Optional

import typer
from rich.console import Console

if TYPE_CHECKING:
    from shiplog.config import ShiplogConfig
    from shiplog.logger import ShiplogLogger

# ============================================================================
# Global State
# ============================================================================

# Global project directory override (set via --project flag)
_project_dir: Optional[str] = None

# Console singleton
_console: Optional[Console] = None


def get_project_dir() -> Optional[str]:
    """Get the project directory override if set."""
    return _project_dir


def set_project_dir(path: Optional[str]) -> None:
    """Set the project directory override."""
    global _project_dir
    _project_dir = path


def get_console() -> Console:
    """Get or create the console singleton."""
    global _console
    if _console is None:
        _console = Console()
    return _console


# ============================================================================
# Config Helpers
# ============================================================================


def load_config_or_exit() -> "ShiplogConfig":
    """
    Load config for the current project, exiting with code 1 on errors.

    A missing .shiplog/config.yaml is fine: defaults apply.
    """
    from shiplog.config import ConfigError, load_config

    repo_root = get_project_dir() or str(Path.cwd())
    try:
        return load_config(repo_root=repo_root)
    except ConfigError as e:
        get_console().print(f"[red]Configuration error:[/red] {e}")
        raise typer.Exit(1)


def make_logger(config: "ShiplogConfig", initiative: str) -> "ShiplogLogger":
    """Create the JSONL event logger for an initiative."""
    from shiplog.logger import ShiplogLogger

    return ShiplogLogger(initiative, config.logs_path)
