"""Deletion queue: durable log of remote deletes still to perform.

This module provides:
- DeletionQueue: enqueue, cancel and drain deletion markers

A marker ``{collectionName, docId, syncStatus}`` is written in the same local
transaction that removes the record. ``collectionName`` holds the local table
name; it is mapped to the remote collection when the queue is drained.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

from clinicsync.client.remote import RemoteError, WriteBatch
from clinicsync.client.schema import DELETIONS_QUEUE, UNDO_RECORDS
from clinicsync.client.sync.registry import SYNC_STATUS_FIELD, SYNC_TABLES, SyncRegistry
from clinicsync.client.sync.types import DrainResult
from clinicsync.core.types import SyncStatus

if TYPE_CHECKING:
    from clinicsync.client.remote import RemoteStore
    from clinicsync.client.store import Entity, LocalStore

logger = logging.getLogger(__name__)


class DeletionQueue:
    """Queue of pending remote deletes, drained before any upsert."""

    def __init__(
        self,
        store: LocalStore,
        remote: RemoteStore | None = None,
        registry: SyncRegistry = SYNC_TABLES,
    ) -> None:
        self._store = store
        self._remote = remote
        self._registry = registry

    def enqueue(self, table_name: str, doc_id: Any) -> int:
        """Queue the remote delete of ``doc_id``.

        Reuses the pending marker for the same key if there is one, so a key
        never has more than one marker.

        Returns:
            The marker's local id.
        """
        criteria = {
            "collectionName": table_name,
            "docId": str(doc_id),
            SYNC_STATUS_FIELD: SyncStatus.PENDING.value,
        }

        def add() -> int:
            existing = self._store.first(DELETIONS_QUEUE, where=criteria)
            if existing is not None:
                return int(existing["id"])
            return int(self._store.put(DELETIONS_QUEUE, dict(criteria)))

        return self._store.transaction([DELETIONS_QUEUE], add)

    def cancel(self, table_name: str, doc_id: Any) -> int:
        """Drop the queued delete of ``doc_id``.

        Returns:
            Number of markers removed (0 if it was already drained).
        """
        return self._store.delete_where(
            DELETIONS_QUEUE, {"collectionName": table_name, "docId": str(doc_id)}
        )

    def pending(self) -> list[Entity]:
        """Pending markers, oldest first."""
        return self._store.query(DELETIONS_QUEUE, where={SYNC_STATUS_FIELD: SyncStatus.PENDING})

    def count_pending(self) -> int:
        return self._store.count(DELETIONS_QUEUE, where={SYNC_STATUS_FIELD: SyncStatus.PENDING})

    def contains(self, table_name: str, doc_id: Any) -> bool:
        """Check whether a delete of ``doc_id`` is still queued."""
        return self._store.count(
            DELETIONS_QUEUE, where={"collectionName": table_name, "docId": str(doc_id)}
        ) > 0

    def push_deletions(self) -> DrainResult:
        """Drain every pending marker as one all-or-nothing remote batch.

        On success the drained markers are removed locally, together with the
        undo records of the same keys. On failure nothing changes locally.
        """
        if self._remote is None:
            raise RuntimeError("DeletionQueue has no remote store to drain to")

        markers = self.pending()
        if not markers:
            return DrainResult()

        batch = WriteBatch()
        for marker in markers:
            batch.delete(self._registry.collection_for(marker["collectionName"]), marker["docId"])

        try:
            self._remote.commit(batch)
        except RemoteError as e:
            logger.warning("Draining %d deletions failed: %s", len(markers), e)
            return DrainResult(error=str(e))

        tables = {
            marker["collectionName"]
            for marker in markers
            if marker["collectionName"] in self._store.schema
        }
        self._store.transaction(
            [DELETIONS_QUEUE, UNDO_RECORDS, *tables],
            lambda: self._remove_drained(markers),
        )
        logger.info("Drained %d deletions", len(markers))
        return DrainResult(deleted=len(markers))

    def _remove_drained(self, markers: list[Entity]) -> None:
        for marker in markers:
            table_name = marker["collectionName"]
            doc_id = marker["docId"]
            if self._store.get(DELETIONS_QUEUE, marker["id"]) is None:
                # Undone while the batch was in flight: the remote copy is gone,
                # so the restored row must be created again.
                self._requeue_restored(table_name, doc_id)
                continue
            self._store.delete(DELETIONS_QUEUE, marker["id"])
            self._store.delete_where(UNDO_RECORDS, {"tableName": table_name, "docId": doc_id})

    def _requeue_restored(self, table_name: str, doc_id: str) -> None:
        if table_name not in self._store.schema:
            return
        pk = self._registry.primary_key_for(table_name)
        for row in self._store.query(table_name, where={pk: doc_id}):
            key = row[self._store.schema.table(table_name).primary_key]
            self._store.update(table_name, key, {SYNC_STATUS_FIELD: SyncStatus.PENDING.value})
            logger.warning(
                "%s %s was restored after its remote delete; it will be re-created",
                table_name,
                doc_id,
            )
