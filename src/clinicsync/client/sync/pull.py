"""Pull side of the sync engine.

This module provides:
- PullEngine: full-collection seed used at session start
- LiveSync: live subscriptions applying remote changes to local tables

Architecture:
    seed_all() fetches every registered collection concurrently (one worker
    per collection, retried with backoff on network errors) and applies each
    collection with a single bulk upsert, tagged ``synced``, skipping keys that
    still carry unpushed local work.

    subscribe_live() opens one subscription per collection. Events of one
    collection are applied one at a time in delivery order; different
    collections are independent.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from concurrent.futures import ThreadPoolExecutor, as_completed
from typing import TYPE_CHECKING, Any

from clinicsync.client.remote import RemoteChange, RemoteError, RemoteRecord
from clinicsync.client.schema import DELETIONS_QUEUE
from clinicsync.client.store import StoreError
from clinicsync.client.sync.registry import (
    DEFAULT_DEPARTMENTS,
    SYNC_STATUS_FIELD,
    SYNC_TABLES,
    SyncRegistry,
    SyncTable,
)
from clinicsync.client.sync.retry import retry_with_backoff
from clinicsync.client.sync.types import SeedError, SeedResult
from clinicsync.core.codec import timestamps_to_datetimes
from clinicsync.core.types import ChangeType, SyncStatus

if TYPE_CHECKING:
    from clinicsync.client.remote import RemoteStore, Unsubscribe
    from clinicsync.client.store import Entity, LocalStore

logger = logging.getLogger(__name__)

DEFAULT_BOOTSTRAP: dict[str, list[dict[str, Any]]] = {"departments": DEFAULT_DEPARTMENTS}


def to_local_entity(
    store: LocalStore,
    table: SyncTable,
    doc_id: str,
    fields: dict[str, Any],
) -> Entity:
    """Build the local row for a remote document, tagged ``synced``."""
    entity: Entity = timestamps_to_datetimes(dict(fields))
    schema = store.schema.table(table.table_name)
    if schema.auto_increment and schema.primary_key != table.pk:
        # The local auto key never comes from the remote
        entity.pop(schema.primary_key, None)
    entity[table.pk] = doc_id
    entity[SYNC_STATUS_FIELD] = SyncStatus.SYNCED.value
    return entity


class PullEngine:
    """Hydrates the local store from the remote collections."""

    def __init__(
        self,
        store: LocalStore,
        remote: RemoteStore,
        registry: SyncRegistry = SYNC_TABLES,
        bootstrap: dict[str, list[dict[str, Any]]] | None = None,
        max_workers: int = 4,
        max_retries: int = 3,
        initial_backoff: float = 1.0,
    ) -> None:
        self._store = store
        self._remote = remote
        self._registry = registry
        self._bootstrap = DEFAULT_BOOTSTRAP if bootstrap is None else bootstrap
        self._max_workers = max_workers
        self._max_retries = max_retries
        self._initial_backoff = initial_backoff

    def seed_all(self, strict: bool = False) -> SeedResult:
        """Fetch every registered collection and upsert it locally as ``synced``.

        A collection that cannot be fetched is reported in the result and the
        others are still applied. Tables listed in ``bootstrap`` that are
        still empty afterwards receive their default rows, tagged ``pending``.

        Args:
            strict: Raise SeedError if any collection failed.

        Returns:
            SeedResult with per-table row counts and errors.
        """
        result = SeedResult()
        tables = [t for t in self._registry if t.table_name in self._store.schema]
        logger.info("Seeding %d collections from the remote store", len(tables))

        with ThreadPoolExecutor(
            max_workers=self._max_workers, thread_name_prefix="seed"
        ) as executor:
            futures = {executor.submit(self._fetch, table): table for table in tables}
            for future in as_completed(futures):
                table = futures[future]
                try:
                    records = future.result()
                except RemoteError as e:
                    logger.warning("Could not fetch %s: %s", table.collection_name, e)
                    result.errors[table.table_name] = str(e)
                    continue
                result.seeded[table.table_name] = self._apply_collection(table, records)

        self._apply_bootstrap(result)

        logger.info(
            "Seed complete: %d rows, %d collection errors",
            result.total_seeded,
            len(result.errors),
        )
        if strict and result.errors:
            raise SeedError("Seeding failed for " + ", ".join(sorted(result.errors)))
        return result

    def _apply_collection(self, table: SyncTable, records: list[RemoteRecord]) -> int:
        """Upsert one fetched collection without clobbering unpushed local work.

        Documents whose local row is still ``pending``, or whose key has a
        queued deletion marker, are left alone; the next push or drain
        reconciles them with the remote.

        Returns:
            Number of rows written.
        """

        def apply() -> int:
            held = {
                str(row[table.pk])
                for row in self._store.query(
                    table.table_name, where={SYNC_STATUS_FIELD: SyncStatus.PENDING}
                )
                if row.get(table.pk) is not None
            }
            held.update(
                str(marker["docId"])
                for marker in self._store.query(
                    DELETIONS_QUEUE,
                    where={
                        "collectionName": table.table_name,
                        SYNC_STATUS_FIELD: SyncStatus.PENDING,
                    },
                )
            )
            rows = [
                to_local_entity(self._store, table, record.doc_id, record.fields)
                for record in records
                if str(record.doc_id) not in held
            ]
            if rows:
                self._store.bulk_put(table.table_name, rows)
            if len(rows) < len(records):
                logger.info(
                    "Kept %d unsynced local rows of %s over the remote copy",
                    len(records) - len(rows),
                    table.table_name,
                )
            return len(rows)

        return self._store.transaction([table.table_name, DELETIONS_QUEUE], apply)

    def _fetch(self, table: SyncTable) -> list[RemoteRecord]:
        return retry_with_backoff(
            lambda: self._remote.fetch_all(table.collection_name),
            max_retries=self._max_retries,
            initial_backoff=self._initial_backoff,
            describe=f"Fetching {table.collection_name}",
        )

    def _apply_bootstrap(self, result: SeedResult) -> None:
        for table_name, rows in self._bootstrap.items():
            if table_name not in self._store.schema or table_name in result.errors:
                continue
            if self._store.count(table_name) > 0:
                continue
            pending = [dict(row, **{SYNC_STATUS_FIELD: SyncStatus.PENDING.value}) for row in rows]
            self._store.bulk_put(table_name, pending)
            result.bootstrapped[table_name] = len(pending)
            logger.info("Bootstrapped %d default rows into %s", len(pending), table_name)


class LiveSync:
    """Applies remote change events to local tables while subscribed."""

    def __init__(
        self,
        store: LocalStore,
        remote: RemoteStore,
        registry: SyncRegistry = SYNC_TABLES,
    ) -> None:
        self._store = store
        self._remote = remote
        self._registry = registry
        self._unsubscribes: dict[str, Unsubscribe] = {}
        self._apply_locks: dict[str, threading.Lock] = {}
        self._lock = threading.Lock()

    @property
    def is_subscribed(self) -> bool:
        with self._lock:
            return bool(self._unsubscribes)

    @property
    def collections(self) -> list[str]:
        with self._lock:
            return list(self._unsubscribes)

    def subscribe_live(self) -> None:
        """Open one subscription per registered collection.

        Existing subscriptions are torn down first.
        """
        self.unsubscribe_all()
        for table in self._registry:
            if table.table_name not in self._store.schema:
                continue
            self._apply_locks.setdefault(table.collection_name, threading.Lock())
            try:
                unsubscribe = self._remote.subscribe(
                    table.collection_name, self._handler(table)
                )
            except RemoteError as e:
                logger.warning("Could not subscribe to %s: %s", table.collection_name, e)
                continue
            with self._lock:
                self._unsubscribes[table.collection_name] = unsubscribe
        logger.info("Subscribed to %d collections", len(self._unsubscribes))

    def unsubscribe_all(self) -> None:
        """Tear down every live subscription."""
        with self._lock:
            unsubscribes = list(self._unsubscribes.items())
            self._unsubscribes.clear()
        for collection, unsubscribe in unsubscribes:
            try:
                unsubscribe()
            except RemoteError as e:
                logger.warning("Error unsubscribing from %s: %s", collection, e)
        if unsubscribes:
            logger.info("Unsubscribed from %d collections", len(unsubscribes))

    def _handler(self, table: SyncTable) -> Callable[[RemoteChange], None]:
        def on_change(change: RemoteChange) -> None:
            self.apply_change(table, change)

        return on_change

    def apply_change(self, table: SyncTable, change: RemoteChange) -> None:
        """Apply one change event to the table it belongs to.

        Echoes of this device's own writes are ignored. Store failures are
        logged so that a bad event does not stop the subscription.
        """
        if change.is_local_echo:
            logger.debug(
                "Ignoring echo %s on %s/%s",
                change.change_type.value,
                table.collection_name,
                change.doc_id,
            )
            return

        lock = self._apply_locks.setdefault(table.collection_name, threading.Lock())
        with lock:
            try:
                if change.change_type == ChangeType.REMOVED:
                    self._remove(table, change.doc_id)
                else:
                    entity = to_local_entity(self._store, table, change.doc_id, change.fields)
                    self._store.put(table.table_name, entity)
            except StoreError as e:
                logger.error(
                    "Failed to apply %s of %s/%s: %s",
                    change.change_type.value,
                    table.collection_name,
                    change.doc_id,
                    e,
                )
                return
        logger.debug(
            "Applied %s %s/%s", change.change_type.value, table.collection_name, change.doc_id
        )

    def _remove(self, table: SyncTable, doc_id: str) -> None:
        schema = self._store.schema.table(table.table_name)
        if schema.primary_key == table.pk:
            self._store.delete(table.table_name, doc_id)
        else:
            self._store.delete_where(table.table_name, {table.pk: doc_id})
