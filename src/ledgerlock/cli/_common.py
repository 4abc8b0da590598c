"""Shared utilities for all CLI command modules.

Provides the Rich console instance, the core loader, the PIN unlock
helper and status formatting used across every command group.
"""

from __future__ import annotations

import sys
from pathlib import Path
from typing import Optional

import click
from rich.console import Console

from .. import LEDGER_HOME
from ..errors import CorruptedCredentialsError
from ..runtime import LedgerCore
from ..session import AuthStatus

console = Console()

home_option = click.option(
    "--home", default=LEDGER_HOME, help="Ledger home directory.", type=click.Path(),
)
pin_option = click.option(
    "--pin", envvar="LEDGERLOCK_PIN", default=None, help="PIN (prompted if omitted).",
)


def open_core(home: str) -> LedgerCore:
    """Build the core for a home directory and run the launch check."""
    core = LedgerCore(home=Path(home).expanduser())
    core.launch()
    return core


def status_label(status: AuthStatus) -> str:
    """Map an auth status to a Rich-formatted label."""
    return {
        AuthStatus.AUTHENTICATED: "[bold green]UNLOCKED[/]",
        AuthStatus.NEEDS_AUTH: "[bold yellow]LOCKED[/]",
        AuthStatus.AUTH_FAILED: "[bold red]AUTH FAILED[/]",
        AuthStatus.FIRST_TIME_SETUP: "[bold cyan]NOT SET UP[/]",
        AuthStatus.NEEDS_MIGRATION: "[bold magenta]NEEDS MIGRATION[/]",
    }.get(status, "[dim]CHECKING[/]")


def unlock(core: LedgerCore, pin: Optional[str]) -> None:
    """Unlock the ledger with a PIN or exit with a message."""
    status = core.sessions.status
    if status == AuthStatus.AUTHENTICATED:
        return
    if status in (AuthStatus.FIRST_TIME_SETUP, AuthStatus.NEEDS_MIGRATION):
        console.print("[bold red]No PIN set.[/] Run [bold]ledgerlock setup[/] first.")
        sys.exit(1)

    if pin is None:
        pin = click.prompt("PIN", hide_input=True)
    try:
        result = core.sessions.login(pin)
    except CorruptedCredentialsError as exc:
        console.print(f"[bold red]Credentials corrupted:[/] {exc}")
        console.print("Run [bold]ledgerlock wipe[/] to start over.")
        sys.exit(2)

    if not result.success:
        console.print(f"[red]Wrong PIN.[/] Failed attempts: {result.failed_attempts}")
        if result.warn:
            console.print(
                "[yellow]Forgot your PIN? It cannot be recovered; "
                "[bold]ledgerlock wipe[/] deletes everything.[/]"
            )
        sys.exit(1)
