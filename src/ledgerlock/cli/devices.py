"""Device linking commands: share, link, list, unlink, register, inbox."""

from __future__ import annotations

import sys
from typing import Optional

import click
from rich.table import Table

from ._common import console, home_option, open_core, pin_option, unlock
from ..errors import CoordinatorError, InvalidShareLinkError, RegistrationError


def register_devices_commands(main: click.Group) -> None:
    """Register the devices command group."""

    @main.group()
    def devices():
        """Link other devices to this ledger."""

    @devices.command("share")
    @home_option
    @pin_option
    def devices_share(home: str, pin: Optional[str]):
        """Print a share link for a new device."""
        core = open_core(home)
        unlock(core, pin)
        link = core.devices.create_share_link()
        console.print(f"\n  [bold]Share link:[/]\n  [cyan]{link}[/]\n")
        console.print("  Open it on the new device, then run [bold]ledgerlock devices inbox[/] here.\n")

    @devices.command("link")
    @click.argument("url")
    @home_option
    @pin_option
    def devices_link(url: str, home: str, pin: Optional[str]):
        """Accept a share link from another device."""
        core = open_core(home)
        try:
            link = core.devices.consume_share_link(url)
        except InvalidShareLinkError as exc:
            console.print(f"[red]Invalid share link:[/] {exc}")
            sys.exit(1)

        console.print(f"  Share link from [cyan]{link.uuid[:12]}[/] accepted.")
        if not core.credentials.has_credentials():
            console.print("  Run [bold]ledgerlock setup[/] to choose a PIN and finish linking.")
            return

        unlock(core, pin)
        if core.devices.ensure_registered() is None:
            console.print("  [yellow]Coordinator unreachable; linking resumes next time.[/]")
        else:
            console.print("  [green]Link request sent.[/]")

    @devices.command("list")
    @home_option
    def devices_list(home: str):
        """List linked installations."""
        core = open_core(home)
        installations = core.devices.list_installations()
        if not installations:
            console.print("[dim]No linked devices.[/]")
            return

        table = Table(show_header=True, header_style="bold", box=None, padding=(0, 2))
        table.add_column("Installation", style="cyan")
        table.add_column("Public key", style="dim")
        for installation_id, public_key in sorted(installations.items()):
            table.add_row(installation_id, (public_key[:24] + "...") if public_key else "unknown")
        console.print(table)

    @devices.command("unlink")
    @click.argument("installation_id")
    @home_option
    def devices_unlink(installation_id: str, home: str):
        """Stop syncing with an installation (local only)."""
        core = open_core(home)
        if not core.devices.unlink_installation(installation_id):
            console.print(f"[yellow]Not linked:[/] {installation_id}")
            sys.exit(1)
        console.print(f"[green]Unlinked[/] {installation_id}")
        console.print("[dim]Data already synced to that device stays there.[/]")

    @devices.command("register")
    @home_option
    def devices_register(home: str):
        """Register this installation with the coordinator."""
        core = open_core(home)
        data = core.devices.ensure_installation_id()
        if data.jwt:
            console.print(f"Already registered as [cyan]{data.id}[/]")
            return
        try:
            result = core.devices.register_installation(data.id)
        except RegistrationError as exc:
            console.print(f"[red]Registration failed:[/] {exc}")
            console.print("[dim]The ledger keeps working offline; try again later.[/]")
            sys.exit(1)
        core.devices.store_registration(data.id, result)
        console.print(f"[green]Registered[/] [cyan]{data.id}[/]")

    @devices.command("inbox")
    @home_option
    @pin_option
    def devices_inbox(home: str, pin: Optional[str]):
        """Process pending link requests and DEK grants."""
        core = open_core(home)
        unlock(core, pin)
        core.devices.ensure_registered()
        try:
            report = core.process_links()
        except CoordinatorError as exc:
            console.print(f"[red]Coordinator error:[/] {exc}")
            sys.exit(1)

        for installation_id in report.new_devices:
            console.print(f"  [green]Linked[/] [cyan]{installation_id}[/]")
        if report.dek_received:
            console.print("  [green]Ledger key received.[/] Run [bold]ledgerlock sync pull[/].")
        if not report.processed:
            console.print("[dim]Nothing waiting.[/]")
