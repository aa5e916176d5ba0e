"""Contract with the remote authoritative store.

This module provides:
- RemoteStore: protocol every remote binding implements
- RemoteRecord, RemoteChange: records and change events read from the remote
- WriteBatch: all-or-nothing group of upserts and deletes
- RemoteError and subclasses: failures reported by a remote binding

The sync engine only relies on this contract. ``clinicsync.client.api``
provides the HTTP/WebSocket binding for the reference server.
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any, Literal, Protocol

from clinicsync.core.codec import RemoteTimestamp
from clinicsync.core.types import ChangeType

__all__ = [
    "AuthenticationError",
    "BatchRejectedError",
    "ChangeCallback",
    "RemoteChange",
    "RemoteError",
    "RemoteRecord",
    "RemoteStore",
    "RemoteTimestamp",
    "RemoteUnavailableError",
    "Unsubscribe",
    "WriteBatch",
    "WriteOp",
]


class RemoteError(Exception):
    """Base exception for remote store failures."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class AuthenticationError(RemoteError):
    """Authentication failed."""


class RemoteUnavailableError(RemoteError):
    """Remote store unreachable or timed out."""


class BatchRejectedError(RemoteError):
    """Remote store rejected a batch; nothing was applied."""


@dataclass
class RemoteRecord:
    """A document read from a remote collection.

    Attributes:
        doc_id: Remote document key.
        fields: Document fields; timestamps are RemoteTimestamp values.
    """

    doc_id: str
    fields: dict[str, Any]


@dataclass
class RemoteChange:
    """A change event delivered by a live subscription.

    Attributes:
        change_type: added, modified or removed.
        doc_id: Remote document key.
        fields: New document fields (empty for removals).
        is_local_echo: True if caused by this device's own write.
    """

    change_type: ChangeType
    doc_id: str
    fields: dict[str, Any] = field(default_factory=dict)
    is_local_echo: bool = False


@dataclass
class WriteOp:
    """One write inside a WriteBatch."""

    op: Literal["upsert", "delete"]
    collection: str
    doc_id: str
    fields: dict[str, Any] = field(default_factory=dict)


@dataclass
class WriteBatch:
    """Group of writes applied all-or-nothing by the remote store."""

    ops: list[WriteOp] = field(default_factory=list)

    def upsert(self, collection: str, doc_id: str, fields: dict[str, Any]) -> WriteBatch:
        """Add a merge-write (fields are merged into the existing document)."""
        self.ops.append(WriteOp("upsert", collection, doc_id, fields))
        return self

    def delete(self, collection: str, doc_id: str) -> WriteBatch:
        self.ops.append(WriteOp("delete", collection, doc_id))
        return self

    def __len__(self) -> int:
        return len(self.ops)


ChangeCallback = Callable[[RemoteChange], None]
Unsubscribe = Callable[[], None]


class RemoteStore(Protocol):
    """Operations the sync engine needs from the remote store.

    Every write method is all-or-nothing and raises RemoteError on failure.
    """

    def fetch_all(self, collection: str) -> list[RemoteRecord]:
        """Read every document of a collection."""
        ...

    def batch_upsert(self, collection: str, items: list[tuple[str, dict[str, Any]]]) -> None:
        """Merge-write several documents of one collection."""
        ...

    def batch_delete(self, collection: str, doc_ids: list[str]) -> None:
        """Delete several documents of one collection."""
        ...

    def commit(self, batch: WriteBatch) -> None:
        """Apply a cross-collection batch."""
        ...

    def subscribe(self, collection: str, on_change: ChangeCallback) -> Unsubscribe:
        """Deliver change events of a collection, in order, until unsubscribed."""
        ...
