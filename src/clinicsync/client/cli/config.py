"""Where the CLI keeps its settings and local data, and how it opens them."""

from __future__ import annotations

import json
import logging
import socket
import sys
from pathlib import Path

from clinicsync.client.api import HTTPRemoteStore
from clinicsync.client.store import LocalStore
from clinicsync.core.config import ServerConfig


def get_config_dir() -> Path:
    return Path.home() / ".clinicsync"


def get_config_file() -> Path:
    return get_config_dir() / "config.json"


def get_local_db() -> Path:
    """SQLite file backing the device's local store."""
    return get_config_dir() / "local.db"


def load_config() -> dict[str, str]:
    """Read the saved settings; an empty dict means ``init`` never ran."""
    path = get_config_file()
    if not path.exists():
        return {}
    return dict(json.loads(path.read_text()))


def save_config(config: dict[str, str]) -> None:
    path = get_config_file()
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(config, indent=2))


def sanitize_device_id(name: str) -> str:
    """Replace anything but letters, digits, ``-`` and ``_`` with ``_``."""
    return "".join(c if c.isalnum() or c in "-_" else "_" for c in name)


def default_device_id() -> str:
    return sanitize_device_id(socket.gethostname()) or "local"


def get_server_config(config: dict[str, str]) -> ServerConfig:
    """Build the server connection settings from the CLI config."""
    return ServerConfig(
        server_url=config["server_url"],
        token=config["token"],
        device_id=config.get("device_id") or default_device_id(),
    )


def open_store() -> LocalStore:
    """Open the local store in the config directory."""
    return LocalStore(get_local_db()).open()


def open_remote(config: dict[str, str]) -> HTTPRemoteStore:
    return HTTPRemoteStore(get_server_config(config))


def setup_logging(verbose: bool = False) -> None:
    """Send clinicsync log records to stderr."""
    root_logger = logging.getLogger("clinicsync")
    root_logger.setLevel(logging.DEBUG if verbose else logging.WARNING)
    if root_logger.handlers:
        return
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(logging.Formatter("%(asctime)s - %(levelname)s - %(message)s"))
    root_logger.addHandler(handler)
