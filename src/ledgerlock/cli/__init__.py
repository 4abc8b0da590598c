"""
ledgerlock CLI — PIN, device linking and sync from the command line.

The main Click group is defined here and every command module
registers its commands on it.

Entry point: ledgerlock.cli:main
"""

from __future__ import annotations

import logging

import click

from .. import __version__


@click.group()
@click.version_option(version=__version__, prog_name="ledgerlock")
@click.option("--verbose", "-v", is_flag=True, help="Log debug output to stderr.")
def main(verbose: bool):
    """ledgerlock — local-first ledger credentials and sync."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(asctime)s %(name)s %(levelname)s %(message)s",
    )


# ---------------------------------------------------------------------------
# Register all command groups/commands from modular files
# ---------------------------------------------------------------------------

from .auth import register_auth_commands
from .devices import register_devices_commands
from .sync_cmd import register_sync_commands
from .audit import register_audit_commands

register_auth_commands(main)
register_devices_commands(main)
register_sync_commands(main)
register_audit_commands(main)
