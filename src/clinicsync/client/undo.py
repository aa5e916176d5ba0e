"""Soft delete with a time-boxed undo.

This module provides:
- UndoCoordinator: deletes records atomically with their undo snapshot and
  deletion marker, and restores them on demand
- UndoToast: the reversal affordance returned by ``delete_with_undo``
- UndoError, UndoExpiredError: Exception classes

Lifecycle of one deletion:

    delete_with_undo()      row removed, undo record + deletion marker written
        |
        +-- toast.undo()    row restored, undo record + marker removed
        |
        +-- window elapses  undo record removed, marker stays until drained
        |   or dismissed
        |
        +-- queue drained   remote copy deleted; a later undo re-creates the
                            row as a new pending record

Only one toast is live at a time: a new deletion dismisses the previous toast
without running its undo.
"""

from __future__ import annotations

import itertools
import logging
import re
import threading
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import TYPE_CHECKING, Any

from clinicsync.client.schema import DELETIONS_QUEUE, UNDO_RECORDS
from clinicsync.client.store import snapshot
from clinicsync.client.sync.registry import SYNC_STATUS_FIELD, SYNC_TABLES, SyncRegistry
from clinicsync.core.types import SyncStatus

if TYPE_CHECKING:
    from clinicsync.client.audit import AuditLogger
    from clinicsync.client.store import Entity, LocalStore
    from clinicsync.client.sync.deletions import DeletionQueue

logger = logging.getLogger(__name__)

DEFAULT_UNDO_WINDOW = 7.0  # seconds

_CAMEL_RE = re.compile(r"(?<!^)(?=[A-Z])")


class UndoError(Exception):
    """Base exception for undo errors."""


class UndoExpiredError(UndoError):
    """The toast was dismissed, expired or already used."""


class ToastState(str, Enum):
    LIVE = "live"
    UNDONE = "undone"
    DISMISSED = "dismissed"
    EXPIRED = "expired"


def singular(table_name: str) -> str:
    """``patients`` -> ``patient``; names without a plural ``s`` are kept."""
    return table_name[:-1] if table_name.endswith("s") else table_name


def action_name(prefix: str, table_name: str) -> str:
    """Audit action code, e.g. ``DELETE_PATIENT`` or ``DELETE_MEDICAL_HISTORY``."""
    return f"{prefix}_{_CAMEL_RE.sub('_', singular(table_name)).upper()}"


def display_name(record: Entity, fallback: str) -> str:
    name = record.get("displayName")
    if name:
        return str(name)
    parts = [str(record[k]) for k in ("firstName", "lastName") if record.get(k)]
    return " ".join(parts) or fallback


@dataclass
class UndoToast:
    """Reversal affordance for one deletion.

    Attributes:
        id: Toast identifier, increasing.
        message: Text shown to the user.
        table: Local table the record was deleted from.
        key: Local primary key of the deleted record.
        doc_id: Remote document key of the deleted record.
        expires_at: When the reversal window closes.
        undo_id: Local id of the undo record.
    """

    id: int
    message: str
    table: str
    key: Any
    doc_id: str
    expires_at: datetime
    undo_id: int
    record: Entity = field(repr=False)
    state: ToastState = ToastState.LIVE
    _coordinator: UndoCoordinator | None = field(default=None, repr=False, compare=False)

    @property
    def is_live(self) -> bool:
        return self.state == ToastState.LIVE

    def undo(self) -> Entity:
        """Restore the deleted record.

        Raises:
            UndoExpiredError: If the toast is no longer live.
            StoreError: If the restore transaction failed; the record stays
                deleted.
        """
        if self._coordinator is None:
            raise UndoExpiredError("Toast is not attached to a coordinator")
        return self._coordinator._undo(self)

    def dismiss(self) -> None:
        if self._coordinator is not None:
            self._coordinator._close(self, ToastState.DISMISSED)


class UndoCoordinator:
    """Wraps deletions in a transaction and exposes a time-boxed undo.

    Usage:
        coordinator = UndoCoordinator(store, deletions, audit=audit)
        coordinator.user = {"uid": "u1", "displayName": "Dr. Ada"}
        toast = coordinator.delete_with_undo("patients", patient)
        toast.undo()  # within the window
    """

    def __init__(
        self,
        store: LocalStore,
        deletions: DeletionQueue,
        registry: SyncRegistry = SYNC_TABLES,
        window: float = DEFAULT_UNDO_WINDOW,
        audit: AuditLogger | None = None,
        on_change: Callable[[UndoToast | None], None] | None = None,
    ) -> None:
        """Initialize the coordinator.

        Args:
            store: Local store holding the records and control tables.
            deletions: Queue receiving the deletion markers.
            registry: Source of each table's remote key field.
            window: Reversal window in seconds.
            audit: Optional audit logger for delete/undo actions.
            on_change: Called with the live toast (or None) whenever it changes.
        """
        self._store = store
        self._deletions = deletions
        self._registry = registry
        self._window = window
        self._audit = audit
        self._on_change = on_change
        self.user: dict[str, Any] | None = None

        self._lock = threading.Lock()
        self._toast: UndoToast | None = None
        self._timer: threading.Timer | None = None
        self._ids = itertools.count(1)

    @property
    def toast(self) -> UndoToast | None:
        """The live toast, if any."""
        return self._toast

    @property
    def window(self) -> float:
        return self._window

    def delete_with_undo(self, table: str, entity: Entity) -> UndoToast:
        """Delete a record, queue its remote delete and offer an undo.

        The undo record, the table delete and the deletion marker are written
        in one local transaction: either all three persist or none does.

        Args:
            table: Local table name.
            entity: The record to delete (snapshotted as given).

        Returns:
            The new live toast.

        Raises:
            UndoError: If the record has no key.
            StoreError: If the local transaction failed (nothing was deleted).
        """
        self.dismiss_toast()

        schema = self._store.schema.table(table)
        pk = self._registry.primary_key_for(table)
        doc_id = entity.get(pk)
        key = entity.get(schema.primary_key)
        if doc_id is None or key is None:
            raise UndoError(f"Record must have a {pk!r} property to be deleted")

        record = snapshot(entity)
        deleted_at = datetime.now(timezone.utc)

        def delete() -> int:
            undo_id = self._store.put(UNDO_RECORDS, {
                "tableName": table,
                "docId": str(doc_id),
                "recordData": record,
                "deletedAt": deleted_at,
            })
            self._store.delete(table, key)
            self._deletions.enqueue(table, doc_id)
            return int(undo_id)

        undo_id = self._store.transaction([UNDO_RECORDS, table, DELETIONS_QUEUE], delete)
        logger.info("Deleted %s %s (undo available for %.0fs)", table, doc_id, self._window)

        name = display_name(record, str(doc_id))
        self._log(
            action_name("DELETE", table),
            f"Deleted {singular(table)}: {name} (ID: {doc_id})",
        )

        toast = UndoToast(
            id=next(self._ids),
            message=f"The {singular(table)} has been deleted.",
            table=table,
            key=key,
            doc_id=str(doc_id),
            expires_at=deleted_at + timedelta(seconds=self._window),
            undo_id=undo_id,
            record=record,
            _coordinator=self,
        )
        timer = threading.Timer(self._window, self._close, args=(toast, ToastState.EXPIRED))
        timer.daemon = True
        with self._lock:
            self._toast = toast
            self._timer = timer
        timer.start()
        self._changed(toast)
        return toast

    def handle_undo(self) -> Entity | None:
        """Undo the live toast's deletion, if there is a live toast."""
        toast = self._toast
        if toast is None:
            return None
        return toast.undo()

    def dismiss_toast(self) -> None:
        """Close the live toast without undoing."""
        toast = self._toast
        if toast is not None:
            self._close(toast, ToastState.DISMISSED)

    def _take(self, toast: UndoToast, state: ToastState) -> bool:
        """Move a live toast to ``state``; False if it was no longer live."""
        with self._lock:
            if not toast.is_live:
                return False
            toast.state = state
            if self._toast is toast:
                self._toast = None
                if self._timer is not None:
                    self._timer.cancel()
                    self._timer = None
            return True

    def _close(self, toast: UndoToast, state: ToastState) -> None:
        if not self._take(toast, state):
            return
        # The deletion is final locally; the marker stays queued for the drain
        self._store.delete(UNDO_RECORDS, toast.undo_id)
        logger.debug("Undo for %s %s %s", toast.table, toast.doc_id, state.value)
        self._changed(None)

    def _undo(self, toast: UndoToast) -> Entity:
        if not self._take(toast, ToastState.UNDONE):
            raise UndoExpiredError(f"Undo for {toast.table} {toast.doc_id} is no longer available")

        def restore() -> Entity:
            record = snapshot(toast.record)
            if self._deletions.cancel(toast.table, toast.doc_id) == 0:
                # Marker already drained: the remote copy is gone and the row
                # comes back as a new record.
                logger.warning(
                    "Undo of %s %s after its remote delete; re-creating it",
                    toast.table,
                    toast.doc_id,
                )
                record[SYNC_STATUS_FIELD] = SyncStatus.PENDING.value
            self._store.put(toast.table, record)
            self._store.delete(UNDO_RECORDS, toast.undo_id)
            return record

        try:
            record = self._store.transaction(
                [toast.table, UNDO_RECORDS, DELETIONS_QUEUE], restore
            )
        finally:
            self._changed(None)

        logger.info("Restored %s %s", toast.table, toast.doc_id)
        name = display_name(record, toast.doc_id)
        self._log(
            action_name("UNDO_DELETE", toast.table),
            f"Restored {singular(toast.table)}: {name} (ID: {toast.doc_id})",
        )
        return record

    def purge_expired(self, now: datetime | None = None) -> int:
        """Delete undo records whose window has closed.

        Removes snapshots left behind by a process that stopped before its
        toast expired. The live toast's record is kept.

        Returns:
            Number of undo records removed.
        """
        cutoff = (now or datetime.now(timezone.utc)) - timedelta(seconds=self._window)
        live = self._toast
        stale = [
            row["id"]
            for row in self._store.query(UNDO_RECORDS, between=("deletedAt", None, cutoff))
            if live is None or row["id"] != live.undo_id
        ]
        if stale:
            self._store.bulk_delete(UNDO_RECORDS, stale)
            logger.info("Purged %d expired undo records", len(stale))
        return len(stale)

    def close(self) -> None:
        """Cancel the expiry timer (the live toast is left as is)."""
        with self._lock:
            if self._timer is not None:
                self._timer.cancel()
                self._timer = None

    def _log(self, action: str, details: str) -> None:
        if self._audit is not None and self.user is not None:
            self._audit.log_action(self.user, action, details)

    def _changed(self, toast: UndoToast | None) -> None:
        if self._on_change is not None:
            self._on_change(toast)
