"""Server command for the clinicsync CLI.

Commands:
- server: Run the reference remote server
"""

from __future__ import annotations

import os

import click


@click.command()
@click.option("--host", default="127.0.0.1", show_default=True, help="Interface to bind.")
@click.option("--port", type=int, default=8000, show_default=True, help="Port to listen on.")
@click.option(
    "--db-path",
    type=click.Path(),
    default=None,
    help="Path to database file (default: CLINICSYNC_DB_PATH or ./clinicsync-server.db).",
)
def server(host: str, port: int, db_path: str | None) -> None:
    """Run the reference remote server.

    Set CLINICSYNC_API_TOKEN to accept a fixed API token.
    """
    import uvicorn

    if db_path:
        os.environ["CLINICSYNC_DB_PATH"] = db_path

    click.echo(f"Serving on http://{host}:{port}")
    uvicorn.run("clinicsync.server.app:app_factory", factory=True, host=host, port=port)
