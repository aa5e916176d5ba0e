"""Sync engine running one push cycle.

This module provides:
- SyncEngine: deletion drain followed by the upsert push, and the live
  pending-changes metric
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from typing import TYPE_CHECKING

from clinicsync.client.schema import DELETIONS_QUEUE
from clinicsync.client.sync.deletions import DeletionQueue
from clinicsync.client.sync.push import PushEngine
from clinicsync.client.sync.registry import SYNC_STATUS_FIELD, SYNC_TABLES, SyncRegistry
from clinicsync.client.sync.types import PushError, SyncError, SyncResult
from clinicsync.core.types import SyncStatus

if TYPE_CHECKING:
    from clinicsync.client.remote import RemoteStore
    from clinicsync.client.store import LocalStore, Watch

logger = logging.getLogger(__name__)


def pending_breakdown(store: LocalStore, registry: SyncRegistry = SYNC_TABLES) -> dict[str, int]:
    """Pending rows per synced table, plus queued markers under ``DELETIONS_QUEUE``.

    Reads the local store only; no remote connection is involved.
    """
    counts = {
        table.table_name: store.count(
            table.table_name, where={SYNC_STATUS_FIELD: SyncStatus.PENDING}
        )
        for table in registry
        if table.table_name in store.schema
    }
    counts[DELETIONS_QUEUE] = DeletionQueue(store, registry=registry).count_pending()
    return counts


def count_pending_changes(store: LocalStore, registry: SyncRegistry = SYNC_TABLES) -> int:
    return sum(pending_breakdown(store, registry).values())


class SyncEngine:
    """Coordinates one sync cycle between the local and remote stores."""

    def __init__(
        self,
        store: LocalStore,
        remote: RemoteStore,
        registry: SyncRegistry = SYNC_TABLES,
    ) -> None:
        """Initialize the sync engine.

        Args:
            store: Local store holding the syncable tables.
            remote: Remote store to push to.
            registry: Tables to sync, in push order.
        """
        self._store = store
        self._registry = registry
        self.deletions = DeletionQueue(store, remote, registry)
        self.push = PushEngine(store, remote, registry)

    def sync_all(self) -> SyncResult:
        """Drain queued deletions, then push pending rows.

        Deletions always go first so that a key deleted and then re-created
        locally ends up re-created remotely. If the drain fails, no upsert is
        pushed in this cycle.

        Returns:
            SyncResult of the cycle.

        Raises:
            SyncError: If the deletion drain failed.
            PushError: If one or more tables failed to push (the other tables
                were still pushed).
        """
        drained = self.deletions.push_deletions()
        if not drained.ok:
            raise SyncError(f"Deletion drain failed: {drained.error}")

        pushed = self.push.push_changes()
        result = SyncResult(deletions=drained, push=pushed)
        if not pushed.ok:
            raise PushError(pushed.errors)
        return result

    def _synced_tables(self) -> list[str]:
        return [t.table_name for t in self._registry if t.table_name in self._store.schema]

    def pending_changes_count(self) -> int:
        """Pending rows across all synced tables plus pending deletion markers."""
        return count_pending_changes(self._store, self._registry)

    def watch_pending_changes(self, callback: Callable[[int], None]) -> Watch:
        """Deliver the pending-changes count now and after every change to it."""
        return self._store.observe(
            [*self._synced_tables(), DELETIONS_QUEUE],
            self.pending_changes_count,
            callback,
        )
