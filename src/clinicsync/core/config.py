"""Shared configuration classes for clinicsync.

This module defines configuration classes used by both client and server components.
"""

from __future__ import annotations

from dataclasses import dataclass
from urllib.parse import quote


@dataclass
class ServerConfig:
    """Configuration for connecting to a clinicsync remote store.

    Used by both the HTTP client (HTTPRemoteStore) and the WebSocket
    listeners (CollectionListener) to ensure consistent connection settings.

    Attributes:
        server_url: Base URL of the server (e.g., "https://records.example.com").
        token: Bearer token for the API.
        device_id: Stable identifier of this device, used to recognize echoes.
        timeout: Request/connection timeout in seconds.
        verify_ssl: Whether to verify SSL certificates (default True).
    """

    server_url: str
    token: str
    device_id: str = "local"
    timeout: float = 30.0
    verify_ssl: bool = True

    def __post_init__(self) -> None:
        """Normalize server URL."""
        self.server_url = self.server_url.rstrip("/")

    def ws_url(self, collection: str) -> str:
        """Get the WebSocket URL for a collection subscription.

        Args:
            collection: Remote collection name.

        Returns:
            WebSocket URL with the token as query parameter.
        """
        url = self.server_url
        if url.startswith("https://"):
            url = "wss://" + url[8:]
        elif url.startswith("http://"):
            url = "ws://" + url[7:]
        return f"{url}/ws/collections/{quote(collection)}?token={quote(self.token, safe='')}"

    @property
    def is_secure(self) -> bool:
        """Check if using HTTPS/WSS."""
        return self.server_url.startswith("https://")


@dataclass
class SyncSettings:
    """Timing settings for the sync engine.

    Attributes:
        sync_interval: Seconds between periodic sync cycles while online.
        undo_window: Seconds during which a deletion can be undone.
        remote_write_timeout: Bound for write-through remote attempts.
        reconnect_delay: Delay between live subscription reconnects.
    """

    sync_interval: float = 30.0
    undo_window: float = 7.0
    remote_write_timeout: float = 5.0
    reconnect_delay: float = 5.0
