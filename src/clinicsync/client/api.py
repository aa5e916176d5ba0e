"""HTTP binding of the remote store contract.

This module provides:
- HTTPRemoteStore: RemoteStore implementation talking to a clinicsync server
  (httpx for reads and batches, one WebSocket listener per subscription)
"""

from __future__ import annotations

import logging
import threading
from typing import Any
from urllib.parse import quote

import httpx

from clinicsync.client.listener import CollectionListener
from clinicsync.client.remote import (
    AuthenticationError,
    BatchRejectedError,
    ChangeCallback,
    RemoteError,
    RemoteRecord,
    RemoteUnavailableError,
    Unsubscribe,
    WriteBatch,
)
from clinicsync.core.codec import decode_wire, encode_wire
from clinicsync.core.config import ServerConfig

logger = logging.getLogger(__name__)

DEVICE_HEADER = "X-Device-Id"


class HTTPRemoteStore:
    """Remote store client for the clinicsync server API.

    Usage:
        remote = HTTPRemoteStore(ServerConfig("http://localhost:8000", token))
        records = remote.fetch_all("patients")
        remote.batch_upsert("patients", [("PT-1", {"firstName": "Ada"})])
        unsubscribe = remote.subscribe("patients", print)
        ...
        remote.close()
    """

    def __init__(
        self,
        config: ServerConfig,
        reconnect_delay: float = 5.0,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        """Initialize the client.

        Args:
            config: Server URL, token, device id and timeouts.
            reconnect_delay: Delay between WebSocket reconnection attempts.
            transport: Optional httpx transport (used by tests).
        """
        self._config = config
        self._reconnect_delay = reconnect_delay
        self._client = httpx.Client(
            base_url=config.server_url,
            timeout=config.timeout,
            verify=config.verify_ssl,
            transport=transport,
            headers={
                "Authorization": f"Bearer {config.token}",
                DEVICE_HEADER: config.device_id,
            },
        )
        self._listeners: list[CollectionListener] = []
        self._listeners_lock = threading.Lock()

    @property
    def config(self) -> ServerConfig:
        return self._config

    def close(self) -> None:
        """Stop every subscription and close the HTTP client."""
        with self._listeners_lock:
            listeners = list(self._listeners)
            self._listeners.clear()
        for listener in listeners:
            listener.stop()
        self._client.close()

    def __enter__(self) -> HTTPRemoteStore:
        return self

    def __exit__(self, *args: object) -> None:
        self.close()

    @staticmethod
    def _detail(response: httpx.Response, default: str) -> str:
        try:
            return str(response.json().get("detail", default))
        except ValueError:
            return default

    def _handle_response(self, response: httpx.Response) -> httpx.Response:
        """Handle API response and raise appropriate exceptions."""
        if response.status_code in (401, 403):
            raise AuthenticationError("Invalid or expired token", response.status_code)
        if response.status_code in (400, 409, 422):
            raise BatchRejectedError(
                self._detail(response, "Request rejected"), response.status_code
            )
        if response.status_code >= 500:
            raise RemoteUnavailableError(
                self._detail(response, "Server error"), response.status_code
            )
        if response.status_code >= 400:
            raise RemoteError(self._detail(response, "Unknown error"), response.status_code)
        return response

    def _request(self, method: str, url: str, **kwargs: Any) -> httpx.Response:
        try:
            response = self._client.request(method, url, **kwargs)
        except httpx.RequestError as e:
            raise RemoteUnavailableError(f"{method} {url} failed: {e}") from e
        return self._handle_response(response)

    # === Health check ===

    def health_check(self) -> bool:
        """Check if the server is reachable and healthy."""
        try:
            response = self._client.get("/health")
            return response.status_code == 200
        except httpx.RequestError:
            return False

    # === Reads ===

    def fetch_all(self, collection: str) -> list[RemoteRecord]:
        """Read every document of a collection.

        Returns:
            Documents with timestamps decoded as RemoteTimestamp.
        """
        response = self._request("GET", f"/api/collections/{quote(collection)}/documents")
        return [
            RemoteRecord(doc_id=doc["id"], fields=decode_wire(doc["fields"]))
            for doc in response.json()["documents"]
        ]

    # === Writes ===

    def batch_upsert(self, collection: str, items: list[tuple[str, dict[str, Any]]]) -> None:
        batch = WriteBatch()
        for doc_id, fields in items:
            batch.upsert(collection, doc_id, fields)
        self.commit(batch)

    def batch_delete(self, collection: str, doc_ids: list[str]) -> None:
        batch = WriteBatch()
        for doc_id in doc_ids:
            batch.delete(collection, doc_id)
        self.commit(batch)

    def commit(self, batch: WriteBatch) -> None:
        """Apply a batch of writes, all or nothing.

        Raises:
            BatchRejectedError: If the server rejected the batch.
            RemoteUnavailableError: If the server could not be reached.
        """
        if not batch.ops:
            return
        writes = [
            {
                "op": op.op,
                "collection": op.collection,
                "doc_id": op.doc_id,
                "fields": encode_wire(op.fields),
            }
            for op in batch.ops
        ]
        self._request("POST", "/api/batch", json={"writes": writes})
        logger.debug("Committed batch of %d writes", len(writes))

    # === Subscriptions ===

    def subscribe(self, collection: str, on_change: ChangeCallback) -> Unsubscribe:
        """Start a WebSocket listener delivering the collection's changes."""
        listener = CollectionListener(
            self._config,
            collection,
            on_change,
            reconnect_delay=self._reconnect_delay,
        )
        with self._listeners_lock:
            self._listeners.append(listener)
        listener.start()

        def unsubscribe() -> None:
            with self._listeners_lock:
                if listener in self._listeners:
                    self._listeners.remove(listener)
            listener.stop()

        return unsubscribe
