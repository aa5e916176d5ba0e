"""Push engine: sends pending local rows to the remote store.

This module provides:
- PushEngine: per-table batched upsert-merge of ``pending`` rows
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

from clinicsync.client.remote import RemoteError
from clinicsync.client.sync.registry import (
    SYNC_STATUS_FIELD,
    SYNC_TABLES,
    SyncRegistry,
    SyncTable,
    to_remote_fields,
)
from clinicsync.client.sync.types import PushResult
from clinicsync.core.types import SyncStatus

if TYPE_CHECKING:
    from clinicsync.client.remote import RemoteStore
    from clinicsync.client.store import Entity, LocalStore

logger = logging.getLogger(__name__)


class PushEngine:
    """Pushes ``pending`` rows table by table.

    Each table is sent as one all-or-nothing batch. A failed batch leaves
    that table's rows ``pending`` and does not stop the other tables.
    """

    def __init__(
        self,
        store: LocalStore,
        remote: RemoteStore,
        registry: SyncRegistry = SYNC_TABLES,
    ) -> None:
        self._store = store
        self._remote = remote
        self._registry = registry

    def push_changes(self) -> PushResult:
        """Push every table's pending rows.

        Returns:
            PushResult with per-table counts and errors.
        """
        result = PushResult()
        for table in self._registry:
            if table.table_name not in self._store.schema:
                logger.debug("Skipping %s: not part of the local schema", table.table_name)
                continue
            self._push_table(table, result)

        if result.total_pushed or result.errors:
            logger.info(
                "Push complete: %d rows, %d table errors",
                result.total_pushed,
                len(result.errors),
            )
        return result

    def _push_table(self, table: SyncTable, result: PushResult) -> None:
        name = table.table_name
        schema = self._store.schema.table(name)
        rows = self._store.query(name, where={SYNC_STATUS_FIELD: SyncStatus.PENDING})
        if not rows:
            return

        items: list[tuple[str, dict[str, Any]]] = []
        selected: list[Entity] = []
        for row in rows:
            doc_id = row.get(table.pk)
            if doc_id is None or doc_id == "":
                logger.error("Missing primary key %r for row in %s, skipped", table.pk, name)
                result.skipped[name] = result.skipped.get(name, 0) + 1
                continue
            items.append((str(doc_id), to_remote_fields(schema, row)))
            selected.append(row)

        if not items:
            return

        try:
            self._remote.batch_upsert(table.collection_name, items)
        except RemoteError as e:
            logger.warning("Push of %d rows to %s failed: %s", len(items), table.collection_name, e)
            result.errors[name] = str(e)
            return

        pushed, deferred = self._mark_synced(name, schema.primary_key, selected)
        result.pushed[name] = pushed
        if deferred:
            result.deferred[name] = deferred
            logger.debug("%d rows of %s changed during push, left pending", deferred, name)

    def _mark_synced(self, name: str, key_field: str, rows: list[Entity]) -> tuple[int, int]:
        """Write pushed rows back as ``synced`` unless modified since selection."""

        def write_back() -> tuple[int, int]:
            pushed = deferred = 0
            for row in rows:
                current = self._store.get(name, row[key_field])
                if current != row:
                    deferred += 1
                    continue
                current[SYNC_STATUS_FIELD] = SyncStatus.SYNCED.value
                self._store.put(name, current)
                pushed += 1
            return pushed, deferred

        return self._store.transaction([name], write_back)
