"""Sync commands: push, pull, status."""

from __future__ import annotations

import sys
from typing import Optional

import click
from rich.panel import Panel

from ._common import console, home_option, open_core, pin_option, unlock


def register_sync_commands(main: click.Group) -> None:
    """Register the sync command group."""

    @main.group()
    def sync():
        """Encrypted change sync with linked devices."""

    @sync.command("push")
    @home_option
    @pin_option
    def sync_push(home: str, pin: Optional[str]):
        """Push local changes to linked devices now."""
        core = open_core(home)
        unlock(core, pin)
        if core.sync.pending_initial_sync:
            console.print("[yellow]Waiting for initial sync;[/] run [bold]ledgerlock sync pull[/] first.")
            sys.exit(1)
        if core.sync.flush_push():
            console.print("[green]Pushed.[/]")
        else:
            console.print(f"[red]Push failed:[/] {core.sync.status().last_error or 'nothing to push to'}")
            sys.exit(1)

    @sync.command("pull")
    @home_option
    @pin_option
    @click.option("--finish-initial", is_flag=True, help="End the initial sync even if nothing was applied.")
    def sync_pull(home: str, pin: Optional[str], finish_initial: bool):
        """Pull and apply changes from linked devices."""
        core = open_core(home)
        unlock(core, pin)
        result = core.pull(finish_initial_sync=finish_initial)
        if not result.ok:
            console.print(f"[red]Pull failed:[/] {result.error}")
            sys.exit(1)
        console.print(
            f"[green]{result.received} package(s)[/], "
            f"{result.applied} change(s) applied, {len(result.rejected)} rejected"
        )

    @sync.command("status")
    @home_option
    def sync_status(home: str):
        """Show sync state and recent activity."""
        core = open_core(home)
        state = core.sync.status()
        console.print()
        console.print(
            Panel(
                f"Pending initial sync: {'[yellow]yes[/]' if state.pending_initial_sync else 'no'}\n"
                f"Pushes: [bold]{state.pushes}[/]  Pulls: [bold]{state.pulls}[/]  "
                f"Failures: [bold]{state.failures}[/]\n"
                f"Push cursor: {state.last_push_cursor}\n"
                f"Last push: {state.last_push_at or '[dim]never[/]'}\n"
                f"Last pull: {state.last_pull_at or '[dim]never[/]'}\n"
                f"Last error: {state.last_error or '[dim]none[/]'}",
                title="Ledger Sync",
                border_style="magenta",
            )
        )
        console.print()
