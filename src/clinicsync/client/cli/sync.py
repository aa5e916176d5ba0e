"""Sync commands for the clinicsync CLI.

Commands:
- seed: Hydrate the local store from the server
- sync: Push local changes (once, or continuously with --watch)
- status: Show pending changes
- purge-undo: Remove expired undo snapshots
"""

from __future__ import annotations

import sys
import threading

import click

from clinicsync.client.cli.config import load_config, open_remote, open_store


def _require_config() -> dict[str, str]:
    config = load_config()
    if not config.get("server_url") or not config.get("token"):
        click.echo("Error: Not configured. Run 'clinicsync init' first.", err=True)
        sys.exit(1)
    return config


@click.command()
@click.option("--strict", is_flag=True, help="Fail if any collection cannot be fetched.")
def seed(strict: bool) -> None:
    """Download every collection into the local store."""
    from clinicsync.client.sync import PullEngine, SeedError

    config = _require_config()
    with open_store() as store, open_remote(config) as remote:
        try:
            result = PullEngine(store, remote).seed_all(strict=strict)
        except SeedError as e:
            click.echo(f"Error: {e}", err=True)
            sys.exit(1)

    for table, count in sorted(result.seeded.items()):
        click.echo(f"  ↓ {table}: {count}")
    for table, count in sorted(result.bootstrapped.items()):
        click.echo(f"  + {table}: {count} default rows")
    if result.errors:
        click.echo(click.style("\nErrors:", fg="red"))
        for table, error in sorted(result.errors.items()):
            click.echo(f"  ✗ {table}: {error}")
    click.echo(f"\nSeeded {result.total_seeded} records.")


@click.command()
@click.option("--watch", "-w", is_flag=True, help="Keep syncing on a timer and apply live changes.")
@click.option("--interval", type=float, default=None, help="Seconds between cycles in watch mode.")
def sync(watch: bool, interval: float | None) -> None:
    """Send local changes to the server.

    Queued deletions are sent first, then every pending record.
    Use --watch to keep syncing and to receive remote changes live.
    """
    from clinicsync.client.remote import RemoteError
    from clinicsync.client.sync import LiveSync, SyncEngine, SyncError, SyncOrchestrator
    from clinicsync.core.config import SyncSettings
    from clinicsync.core.types import SyncState

    config = _require_config()
    click.echo(f"Syncing with {config['server_url']}...")

    with open_store() as store, open_remote(config) as remote:
        engine = SyncEngine(store, remote)

        if not watch:
            try:
                result = engine.sync_all()
            except (SyncError, RemoteError) as e:
                click.echo(f"Error: {e}", err=True)
                sys.exit(1)
            pushed = result.push.total_pushed
            if pushed == 0 and result.deletions.deleted == 0:
                click.echo("Everything is up to date.")
            else:
                click.echo(f"  ✓ {pushed} pushed, {result.deletions.deleted} deleted")
            return

        settings = SyncSettings()
        if interval is not None:
            settings.sync_interval = interval
        orchestrator = SyncOrchestrator(
            store, engine, live=LiveSync(store, remote), settings=settings
        )

        def on_status(state: SyncState) -> None:
            if state == SyncState.SYNCED:
                click.echo(f"  ✓ synced ({orchestrator.pending_changes_count()} pending)")
            elif state == SyncState.ERROR:
                click.echo(f"  ✗ {orchestrator.last_error}")

        orchestrator.add_listener(on_status)
        click.echo("\nWatching for changes... (Ctrl+C to stop)\n")
        orchestrator.start_session({"uid": config.get("device_id", "local")}, seed=False)
        try:
            threading.Event().wait()
        except KeyboardInterrupt:
            click.echo("\nStopping...")
        finally:
            orchestrator.end_session(clear=False)


@click.command()
def status() -> None:
    """Show the number of local changes waiting to be sent."""
    from clinicsync.client.schema import DELETIONS_QUEUE
    from clinicsync.client.sync import pending_breakdown

    with open_store() as store:
        counts = pending_breakdown(store)

    queued = counts.pop(DELETIONS_QUEUE)
    for table_name, count in counts.items():
        if count:
            click.echo(f"  {table_name}: {count} pending")
    if queued:
        click.echo(f"  deletions: {queued} queued")
    total = sum(counts.values()) + queued
    click.echo("Everything is up to date." if total == 0 else f"{total} pending changes.")


@click.command("purge-undo")
@click.option("--window", type=float, default=None, help="Undo window in seconds.")
def purge_undo(window: float | None) -> None:
    """Remove undo snapshots whose reversal window has closed."""
    from clinicsync.client.sync import DeletionQueue
    from clinicsync.client.undo import UndoCoordinator
    from clinicsync.core.config import SyncSettings

    with open_store() as store:
        coordinator = UndoCoordinator(
            store,
            DeletionQueue(store),
            window=SyncSettings().undo_window if window is None else window,
        )
        purged = coordinator.purge_expired()
    click.echo(f"Purged {purged} expired undo records.")
