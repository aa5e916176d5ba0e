"""WebSocket hub for live collection changes.

This module provides:
- ChangeHub: Subscribers per collection and change broadcasting

Architecture:
    Device A ──POST /api/batch──► ChangeHub ──ws──► Devices subscribed to
                                                    the changed collection

Every subscriber receives every change, its own included. The ``origin``
field lets a device recognize the echoes of its own writes.
"""

from __future__ import annotations

import asyncio
import json
import logging
from typing import TYPE_CHECKING

from fastapi import APIRouter, WebSocket, WebSocketDisconnect
from starlette.websockets import WebSocketState

if TYPE_CHECKING:
    from clinicsync.server.database import Change, Database

logger = logging.getLogger(__name__)


def change_message(change: Change) -> str:
    """Serialize a change for subscribers."""
    return json.dumps({
        "type": "change",
        "change": change.change_type.value,
        "doc_id": change.doc_id,
        "fields": change.fields,
        "origin": change.origin,
    })


class ChangeHub:
    """Central hub for collection subscriptions.

    Thread-safe for use with asyncio.
    """

    def __init__(self) -> None:
        self._subscribers: dict[str, set[WebSocket]] = {}
        self._lock = asyncio.Lock()

    async def subscribe(self, collection: str, websocket: WebSocket) -> None:
        """Accept and register a subscriber."""
        async with self._lock:
            # Registered before any publish can run
            await websocket.accept()
            self._subscribers.setdefault(collection, set()).add(websocket)
        logger.info("Subscriber connected to %s", collection)

    async def unsubscribe(self, collection: str, websocket: WebSocket) -> None:
        async with self._lock:
            subscribers = self._subscribers.get(collection)
            if subscribers is not None:
                subscribers.discard(websocket)
                if not subscribers:
                    del self._subscribers[collection]
        logger.info("Subscriber disconnected from %s", collection)

    async def subscriber_count(self, collection: str) -> int:
        async with self._lock:
            return len(self._subscribers.get(collection, ()))

    async def publish(self, changes: list[Change]) -> None:
        """Send changes, in order, to the subscribers of their collection."""
        async with self._lock:
            disconnected: list[tuple[str, WebSocket]] = []
            for change in changes:
                message = change_message(change)
                for websocket in list(self._subscribers.get(change.collection, ())):
                    try:
                        if websocket.client_state == WebSocketState.CONNECTED:
                            await websocket.send_text(message)
                    except (RuntimeError, WebSocketDisconnect):
                        disconnected.append((change.collection, websocket))
                logger.debug(
                    "Published %s %s/%s",
                    change.change_type.value,
                    change.collection,
                    change.doc_id,
                )

            # Clean up disconnected subscribers
            for collection, websocket in disconnected:
                self._subscribers.get(collection, set()).discard(websocket)


# WebSocket router
router = APIRouter(tags=["websocket"])


@router.websocket("/ws/collections/{collection}")
async def websocket_collection(websocket: WebSocket, collection: str, token: str = "") -> None:
    """WebSocket endpoint streaming a collection's changes.

    Message format (server -> client):
        {"type": "change", "change": "added", "doc_id": "PT-1",
         "fields": {...}, "origin": "device-a"}

    Args:
        websocket: The WebSocket connection.
        collection: Collection to follow.
        token: Authentication token (query parameter).
    """
    db: Database = websocket.app.state.db
    hub: ChangeHub = websocket.app.state.hub

    # Validate token
    if not token or db.validate_token(token) is None:
        await websocket.close(code=4001, reason="Invalid token")
        return

    await hub.subscribe(collection, websocket)
    try:
        while True:
            # Clients don't send messages, just wait for disconnect
            await websocket.receive_text()
    except WebSocketDisconnect:
        logger.debug("Subscriber left %s", collection)
    finally:
        await hub.unsubscribe(collection, websocket)
