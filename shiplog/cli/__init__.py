"""Command line interface for Shiplog."""

from shiplog.cli.app import app, cli_main

__all__ = ["app", "cli_main"]
