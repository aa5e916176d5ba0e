"""WebSocket listener for live collection changes.

This module provides:
- CollectionListener: receives change events for one collection and hands
  them, in arrival order, to a callback

Architecture:
    Server ─push─► CollectionListener ─► on_change(RemoteChange) ─► LiveSync

Each listener runs its own asyncio loop in a background thread, so
collections are handled independently while the events of one collection
are delivered sequentially. The connection is re-established automatically
after a disconnect.
"""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
import ssl
import threading
from typing import TYPE_CHECKING, Any

import websockets
from websockets.exceptions import WebSocketException

from clinicsync.client.remote import RemoteChange
from clinicsync.core.codec import decode_wire
from clinicsync.core.types import ChangeType

if TYPE_CHECKING:
    from websockets.asyncio.client import ClientConnection

    from clinicsync.client.remote import ChangeCallback
    from clinicsync.core.config import ServerConfig

logger = logging.getLogger(__name__)


def parse_change(data: dict[str, Any], device_id: str) -> RemoteChange | None:
    """Build a RemoteChange from a ``change`` message, or None if malformed.

    A change whose origin is this device is flagged as a local echo.
    """
    try:
        change_type = ChangeType(data.get("change"))
    except ValueError:
        return None
    doc_id = data.get("doc_id")
    if not doc_id:
        return None
    return RemoteChange(
        change_type=change_type,
        doc_id=str(doc_id),
        fields=decode_wire(data.get("fields") or {}),
        is_local_echo=data.get("origin") == device_id,
    )


class CollectionListener:
    """Keeps one collection's change stream open in a background thread.

    Usage:
        listener = CollectionListener(server_config, "patients", on_change)
        listener.start()
        ...
        listener.stop()
    """

    def __init__(
        self,
        config: ServerConfig,
        collection: str,
        on_change: ChangeCallback,
        reconnect_delay: float = 5.0,
    ) -> None:
        self._config = config
        self._collection = collection
        self._on_change = on_change
        self._reconnect_delay = reconnect_delay

        self._thread: threading.Thread | None = None
        self._loop: asyncio.AbstractEventLoop | None = None
        self._ws: ClientConnection | None = None
        self._wake: asyncio.Event | None = None
        self._closing = False
        self._connected = False

    @property
    def connected(self) -> bool:
        return self._connected

    @property
    def collection(self) -> str:
        return self._collection

    @property
    def ws_url(self) -> str:
        return self._config.ws_url(self._collection)

    def start(self) -> None:
        if self._thread is not None and self._thread.is_alive():
            logger.warning("Listener for %s already running", self._collection)
            return
        self._closing = False
        self._thread = threading.Thread(
            target=asyncio.run,
            args=(self._supervise(),),
            name=f"CollectionListener-{self._collection}",
            daemon=True,
        )
        self._thread.start()

    def stop(self, timeout: float = 5.0) -> None:
        """Close the stream and wait for the listener thread to exit."""
        self._closing = True
        loop = self._loop
        if loop is not None:
            # The loop may already be gone if the thread exited on its own
            with contextlib.suppress(RuntimeError):
                asyncio.run_coroutine_threadsafe(self._shutdown(), loop)
        thread = self._thread
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout=timeout)
        self._thread = None
        logger.debug("Listener for %s stopped", self._collection)

    async def _shutdown(self) -> None:
        if self._wake is not None:
            self._wake.set()
        if self._ws is not None:
            with contextlib.suppress(WebSocketException):
                await self._ws.close()

    def _ssl_context(self) -> ssl.SSLContext | None:
        if not self.ws_url.startswith("wss://"):
            return None
        context = ssl.create_default_context()
        if not self._config.verify_ssl:
            context.check_hostname = False
            context.verify_mode = ssl.CERT_NONE
        return context

    async def _supervise(self) -> None:
        self._loop = asyncio.get_running_loop()
        self._wake = asyncio.Event()
        sessions = 0
        try:
            while not self._closing:
                try:
                    await self._session(reconnect=sessions > 0)
                    sessions += 1
                except (WebSocketException, OSError) as e:
                    log = logger.warning if sessions else logger.debug
                    log("Stream for %s unavailable: %s", self._collection, e)
                if self._closing:
                    break
                logger.debug(
                    "Reconnecting %s in %.0fs", self._collection, self._reconnect_delay
                )
                with contextlib.suppress(TimeoutError):
                    await asyncio.wait_for(self._wake.wait(), timeout=self._reconnect_delay)
        finally:
            self._connected = False
            self._loop = None
            self._wake = None

    async def _session(self, reconnect: bool) -> None:
        async with websockets.connect(
            self.ws_url,
            ssl=self._ssl_context(),
            open_timeout=10,
            close_timeout=5,
        ) as ws:
            self._ws = ws
            self._connected = True
            if reconnect:
                logger.info("Listener for %s reconnected", self._collection)
            else:
                logger.info("Listening to %s", self._collection)
            try:
                async for message in ws:
                    if self._closing:
                        break
                    if isinstance(message, bytes):
                        message = message.decode("utf-8")
                    self.handle_message(message)
            finally:
                self._ws = None
                self._connected = False

    def handle_message(self, message: str) -> None:
        """Decode one server message and hand a change to the callback.

        Only ``{"type": "change", ...}`` messages are acted on; anything
        else (pings, malformed JSON) is dropped.
        """
        try:
            data = json.loads(message)
        except json.JSONDecodeError:
            logger.warning("Undecodable message on %s: %s", self._collection, message[:100])
            return
        if not isinstance(data, dict) or data.get("type") != "change":
            return

        change = parse_change(data, self._config.device_id)
        if change is None:
            logger.warning("Invalid change message on %s: %s", self._collection, data)
            return

        try:
            self._on_change(change)
        except Exception:
            logger.exception("Change handler failed for %s/%s", self._collection, change.doc_id)
