"""PIN commands: setup, status, login, change-pin, wipe."""

from __future__ import annotations

import sys
from datetime import datetime, timezone
from typing import Optional

import click
from rich.panel import Panel

from ._common import console, home_option, open_core, pin_option, status_label, unlock
from ..errors import InvalidShareLinkError, WeakPinError
from ..session import AuthStatus, SignedSessionToken


def register_auth_commands(main: click.Group) -> None:
    """Register PIN and session commands on the main CLI group."""

    @main.command()
    @home_option
    @click.option("--pin", envvar="LEDGERLOCK_PIN", default=None, help="New PIN (prompted if omitted).")
    @click.option("--link", "share_link", default=None, help="Share link from an existing device.")
    @click.option("--force", is_flag=True, help="Overwrite existing credentials.")
    def setup(home: str, pin: Optional[str], share_link: Optional[str], force: bool):
        """Set a PIN and create (or migrate) the encrypted ledger."""
        core = open_core(home)
        status = core.sessions.status
        if status not in (AuthStatus.FIRST_TIME_SETUP, AuthStatus.NEEDS_MIGRATION) and not force:
            console.print("[yellow]A PIN is already set.[/] Use [bold]--force[/] to start over.")
            sys.exit(1)

        if share_link:
            try:
                link = core.devices.consume_share_link(share_link)
            except InvalidShareLinkError as exc:
                console.print(f"[red]Invalid share link:[/] {exc}")
                sys.exit(1)
            console.print(f"  Linking to [cyan]{link.uuid[:12]}[/]")

        if pin is None:
            pin = click.prompt("New PIN", hide_input=True, confirmation_prompt=True)

        try:
            if status == AuthStatus.NEEDS_MIGRATION:
                derived = core.sessions.migrate(pin)
                console.print("  [green]Existing ledger encrypted.[/]")
            else:
                derived = core.sessions.setup(pin)
        except WeakPinError as exc:
            console.print(f"[red]{exc}[/]")
            sys.exit(1)

        console.print(f"  Key fingerprint: [cyan]{derived.fingerprint}[/]")
        if share_link:
            if core.devices.ensure_registered() is None:
                console.print("  [yellow]Coordinator unreachable; linking resumes next time.[/]")
            else:
                console.print("  [green]Link request sent.[/] Waiting for the other device.")
        console.print()

    @main.command()
    @home_option
    def status(home: str):
        """Show lock, device and sync state."""
        core = open_core(home)
        installation = core.devices.installation()
        sync_status = core.sync.status()

        lines = [
            f"Ledger: {status_label(core.sessions.status)}",
            f"Installation: {installation.id if installation else '[dim]none[/]'}",
            f"Registered: {'[green]yes[/]' if installation and installation.jwt else '[yellow]no[/]'}",
            f"Linked devices: [bold]{len(core.devices.list_installations())}[/]",
            f"Biometrics: {core.biometric.availability().value}",
            f"Pending initial sync: {'[yellow]yes[/]' if sync_status.pending_initial_sync else 'no'}",
            f"Last push: {sync_status.last_push_at or '[dim]never[/]'}",
            f"Last pull: {sync_status.last_pull_at or '[dim]never[/]'}",
        ]
        if sync_status.last_error:
            lines.append(f"Last error: [red]{sync_status.last_error}[/]")

        console.print()
        console.print(Panel("\n".join(lines), title="ledgerlock", border_style="bright_blue"))
        console.print()

    @main.command()
    @home_option
    @pin_option
    def login(home: str, pin: Optional[str]):
        """Verify the PIN and issue a session token."""
        core = open_core(home)
        unlock(core, pin)
        token = SignedSessionToken.decode(core.sessions.current_token())
        expires = datetime.fromtimestamp(token.payload.exp, tz=timezone.utc)
        console.print(f"[green]Unlocked.[/] Session valid until {expires.isoformat()}")

    @main.command("change-pin")
    @home_option
    @click.option("--old-pin", default=None, help="Current PIN (prompted if omitted).")
    @click.option("--new-pin", default=None, help="New PIN (prompted if omitted).")
    def change_pin(home: str, old_pin: Optional[str], new_pin: Optional[str]):
        """Change the PIN. The ledger is not re-encrypted."""
        core = open_core(home)
        if core.sessions.status in (AuthStatus.FIRST_TIME_SETUP, AuthStatus.NEEDS_MIGRATION):
            console.print("[bold red]No PIN set.[/] Run [bold]ledgerlock setup[/] first.")
            sys.exit(1)

        if old_pin is None:
            old_pin = click.prompt("Current PIN", hide_input=True)
        if new_pin is None:
            new_pin = click.prompt("New PIN", hide_input=True, confirmation_prompt=True)

        try:
            changed = core.sessions.change_pin(old_pin, new_pin)
        except WeakPinError as exc:
            console.print(f"[red]{exc}[/]")
            sys.exit(1)
        if not changed:
            console.print("[red]Current PIN is wrong.[/]")
            sys.exit(1)
        console.print("[green]PIN changed.[/]")

    @main.command()
    @home_option
    @click.option("--yes", is_flag=True, help="Skip the confirmation prompt.")
    def wipe(home: str, yes: bool):
        """Delete all credentials and the ledger. Irreversible."""
        if not yes:
            click.confirm(
                "This permanently deletes the ledger and every credential. Continue?",
                abort=True,
            )
        core = open_core(home)
        core.sessions.wipe()
        console.print("[bold red]Wiped.[/] Run [bold]ledgerlock setup[/] to start over.")
