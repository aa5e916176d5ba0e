"""Setup command for the clinicsync CLI.

Commands:
- init: Store the remote server settings for this device
"""

from __future__ import annotations

import click

from clinicsync.client.cli.config import (
    default_device_id,
    get_config_file,
    load_config,
    sanitize_device_id,
    save_config,
)


@click.command()
@click.option("--server-url", prompt="Server URL", help="Base URL of the remote server.")
@click.option("--token", prompt="API token", hide_input=True, help="Bearer token for the API.")
@click.option("--device-id", default=None, help="Identifier of this device (default: hostname).")
@click.option("--force", is_flag=True, help="Overwrite an existing configuration.")
def init(server_url: str, token: str, device_id: str | None, force: bool) -> None:
    """Configure this device to sync with a server."""
    config = load_config()
    if config.get("server_url") and not force:
        if not click.confirm(f"Already configured for {config['server_url']}. Overwrite?"):
            raise click.Abort()

    if device_id:
        sanitized = sanitize_device_id(device_id)
        if sanitized != device_id:
            click.echo(f"Note: Device id sanitized to '{sanitized}'")
        device_id = sanitized
    else:
        device_id = default_device_id()

    config.update({"server_url": server_url.rstrip("/"), "token": token, "device_id": device_id})
    save_config(config)
    click.echo(f"Configuration saved to {get_config_file()}")
    click.echo(f"Device id: {device_id}")
