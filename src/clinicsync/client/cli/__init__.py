"""Command-line interface for clinicsync.

This module provides the main CLI entry point and assembles all commands.

Commands:
- init: Configure the server connection
- seed: Hydrate the local store from the server
- sync: Push local changes to the server
- status: Show pending changes
- purge-undo: Remove expired undo snapshots
- server: Run the reference remote server
"""

from __future__ import annotations

import click

from clinicsync.client.cli.config import (
    get_config_dir,
    get_config_file,
    load_config,
    save_config,
    setup_logging,
)
from clinicsync.client.cli.device import init
from clinicsync.client.cli.server import server
from clinicsync.client.cli.sync import purge_undo, seed, status, sync


@click.group()
@click.version_option(package_name="clinicsync")
@click.option("--verbose", "-v", is_flag=True, help="Show debug logging.")
def cli(verbose: bool) -> None:
    """clinicsync - Offline-first sync for clinic records."""
    setup_logging(verbose)


# Setup commands
cli.add_command(init)

# Sync commands
cli.add_command(seed)
cli.add_command(sync)
cli.add_command(status)
cli.add_command(purge_undo)

# Server command
cli.add_command(server)


def main() -> None:
    """Entry point for the CLI."""
    cli()


__all__ = [
    "cli",
    "get_config_dir",
    "get_config_file",
    "load_config",
    "main",
    "save_config",
]
