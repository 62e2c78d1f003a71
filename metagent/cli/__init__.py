"""CLI package for metagent.

Modules:
    app.py      - Main Typer app, version callback, task and run commands
    issues.py   - Issue tracking commands (list, add, resolve, assign, show)
    display.py  - Rich formatting utilities (format_status, print_queue, etc.)
    common.py   - Shared helpers (get_console, build_context, command_errors)

Usage:
    from metagent.cli import app, cli_main  # Main exports
"""
from metagent.cli.app import app, cli_main

__all__ = ["app", "cli_main"]
