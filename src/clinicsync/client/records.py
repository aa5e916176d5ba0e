"""Application write path for syncable records.

Every mutation made by the application goes through RecordWriter, which tags
the row ``pending`` so that the next sync cycle pushes it. Rows written by the
pull engine (seed and live changes) bypass this module and are tagged
``synced`` directly.
"""

from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from typing import TYPE_CHECKING, Any

from clinicsync.client.remote import RemoteError
from clinicsync.client.sync.registry import (
    SYNC_STATUS_FIELD,
    SYNC_TABLES,
    SyncRegistry,
    to_remote_fields,
)
from clinicsync.core.types import SyncStatus

if TYPE_CHECKING:
    from clinicsync.client.remote import RemoteStore
    from clinicsync.client.store import Entity, LocalStore

logger = logging.getLogger(__name__)

DEFAULT_WRITE_TIMEOUT = 5.0


class RecordWriter:
    """Writes application records locally, tagged ``pending``.

    Usage:
        writer = RecordWriter(store, remote)
        writer.save("patients", {"uid": "PT-1", "firstName": "Ada"})
        writer.save_through("audit_logs", entry)  # also tries the remote now
    """

    def __init__(
        self,
        store: LocalStore,
        remote: RemoteStore | None = None,
        registry: SyncRegistry = SYNC_TABLES,
        write_timeout: float = DEFAULT_WRITE_TIMEOUT,
    ) -> None:
        self._store = store
        self._remote = remote
        self._registry = registry
        self._write_timeout = write_timeout
        self._executor: ThreadPoolExecutor | None = None

    def save(self, table: str, entity: Entity) -> Any:
        """Create or replace a record, tagged ``pending``.

        Returns:
            The record's local primary key.
        """
        record = dict(entity)
        record[SYNC_STATUS_FIELD] = SyncStatus.PENDING.value
        return self._store.put(table, record)

    def update(self, table: str, key: Any, changes: Entity) -> Entity | None:
        """Merge changes into an existing record, tagged ``pending``.

        Returns:
            The updated record, or None if it does not exist.
        """
        merged = dict(changes)
        merged[SYNC_STATUS_FIELD] = SyncStatus.PENDING.value
        return self._store.update(table, key, merged)

    def save_through(
        self,
        table: str,
        entity: Entity,
        timeout: float | None = None,
    ) -> SyncStatus:
        """Save locally, then attempt the remote write within a bounded time.

        The local write always happens first. If the remote write succeeds
        before the timeout and the row was not modified meanwhile, the row is
        flipped to ``synced``. Any failure, timeout included, leaves it
        ``pending`` for the regular sync cycle.

        Returns:
            The row's sync status after the attempt.
        """
        key = self.save(table, entity)
        if self._remote is None:
            return SyncStatus.PENDING

        schema = self._store.schema.table(table)
        written = self._store.get(table, key)
        if written is None:
            return SyncStatus.PENDING

        doc_key = written.get(self._registry.primary_key_for(table))
        if not doc_key:
            logger.warning("Record in %s has no remote key, left pending", table)
            return SyncStatus.PENDING

        collection = self._registry.collection_for(table)
        fields = to_remote_fields(schema, written)
        future = self._pool().submit(
            self._remote.batch_upsert, collection, [(str(doc_key), fields)]
        )
        try:
            future.result(timeout=self._write_timeout if timeout is None else timeout)
        except FutureTimeoutError:
            logger.warning("Remote write to %s/%s timed out, left pending", collection, doc_key)
            return SyncStatus.PENDING
        except RemoteError as e:
            logger.warning("Remote write to %s/%s failed, left pending: %s", collection, doc_key, e)
            return SyncStatus.PENDING

        if self._mark_synced(table, key, written):
            return SyncStatus.SYNCED
        return SyncStatus.PENDING

    def _mark_synced(self, table: str, key: Any, written: Entity) -> bool:
        """Flip a row to ``synced`` if it still holds the written content."""

        def flip() -> bool:
            current = self._store.get(table, key)
            if current != written:
                return False
            current[SYNC_STATUS_FIELD] = SyncStatus.SYNCED.value
            self._store.put(table, current)
            return True

        return self._store.transaction([table], flip)

    def _pool(self) -> ThreadPoolExecutor:
        if self._executor is None:
            self._executor = ThreadPoolExecutor(max_workers=2, thread_name_prefix="write-through")
        return self._executor

    def close(self) -> None:
        """Release the write-through worker threads."""
        if self._executor is not None:
            self._executor.shutdown(wait=False)
            self._executor = None
