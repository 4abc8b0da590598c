"""Audit command: show the security audit trail."""

from __future__ import annotations

from pathlib import Path

import click
from rich.table import Table

from ._common import console, home_option
from ..audit import read_audit_log


def register_audit_commands(main: click.Group) -> None:
    """Register the audit command."""

    @main.command()
    @home_option
    @click.option("--limit", "-n", default=20, help="Number of entries to show (0 = all).")
    def audit(home: str, limit: int):
        """Show recent security events."""
        entries = read_audit_log(Path(home).expanduser(), limit=limit)
        if not entries:
            console.print("[dim]No audit entries.[/]")
            return

        table = Table(show_header=True, header_style="bold", box=None, padding=(0, 2))
        table.add_column("Time", style="dim")
        table.add_column("Event", style="cyan")
        table.add_column("Detail")
        for entry in entries:
            table.add_row(entry.timestamp[:19], entry.event_type, entry.detail)
        console.print(table)
