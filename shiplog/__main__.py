"""
Entry point for running shiplog as a module.

Allows running as: python -m shiplog
"""

from shiplog.cli import cli_main

if __name__ == "__main__":
    cli_main()
