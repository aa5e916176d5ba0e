"""Tests for delete-with-undo."""

from __future__ import annotations

from collections.abc import Generator
from datetime import UTC, datetime, timedelta
from typing import Any
from unittest.mock import MagicMock

import pytest

from clinicsync.client.audit import AuditLogger
from clinicsync.client.records import RecordWriter
from clinicsync.client.schema import AUDIT_LOGS, DELETIONS_QUEUE, UNDO_RECORDS
from clinicsync.client.store import LocalStore, StoreError
from clinicsync.client.sync.deletions import DeletionQueue
from clinicsync.client.sync.engine import SyncEngine
from clinicsync.client.undo import (
    ToastState,
    UndoCoordinator,
    UndoError,
    UndoExpiredError,
    UndoToast,
    action_name,
    display_name,
    singular,
)
from tests.fakes import FakeRemoteStore, wait_for

PATIENT: dict[str, Any] = {
    "uid": "PT-1",
    "firstName": "Ada",
    "lastName": "Lovelace",
    "allergies": ["penicillin"],
    "syncStatus": "synced",
}


@pytest.fixture
def deletions(store: LocalStore, remote: FakeRemoteStore) -> DeletionQueue:
    return DeletionQueue(store, remote)


@pytest.fixture
def coordinator(
    store: LocalStore, deletions: DeletionQueue
) -> Generator[UndoCoordinator, None, None]:
    """Create a coordinator with audit logging and a long window."""
    undo = UndoCoordinator(store, deletions, window=30, audit=AuditLogger(RecordWriter(store)))
    undo.user = {"uid": "u1", "displayName": "Dr. Grace"}
    store.put("patients", dict(PATIENT))
    yield undo
    undo.close()


def audit_actions(store: LocalStore) -> list[str]:
    return [row["action"] for row in store.query(AUDIT_LOGS)]


class TestNaming:
    """Tests for the naming helpers."""

    def test_singular(self) -> None:
        assert singular("patients") == "patient"
        assert singular("medicalHistory") == "medicalHistory"

    def test_action_name(self) -> None:
        assert action_name("DELETE", "patients") == "DELETE_PATIENT"
        assert action_name("UNDO_DELETE", "medicalHistory") == "UNDO_DELETE_MEDICAL_HISTORY"

    def test_display_name(self) -> None:
        assert display_name({"displayName": "Ada L."}, "x") == "Ada L."
        assert display_name({"firstName": "Ada", "lastName": "Lovelace"}, "x") == "Ada Lovelace"
        assert display_name({}, "PT-1") == "PT-1"


class TestDeleteWithUndo:
    """Tests for the atomic delete."""

    def test_delete_writes_undo_record_and_marker(
        self, coordinator: UndoCoordinator, store: LocalStore
    ) -> None:
        toast = coordinator.delete_with_undo("patients", PATIENT)

        assert store.get("patients", "PT-1") is None
        undo = store.get(UNDO_RECORDS, toast.undo_id)
        assert undo["tableName"] == "patients"
        assert undo["docId"] == "PT-1"
        assert undo["recordData"] == PATIENT
        assert store.count(DELETIONS_QUEUE, where={"docId": "PT-1"}) == 1
        assert toast.is_live
        assert toast.message == "The patient has been deleted."
        assert coordinator.toast is toast

    def test_delete_is_audited(self, coordinator: UndoCoordinator, store: LocalStore) -> None:
        coordinator.delete_with_undo("patients", PATIENT)
        entry = store.first(AUDIT_LOGS)
        assert entry["action"] == "DELETE_PATIENT"
        assert entry["details"] == "Deleted patient: Ada Lovelace (ID: PT-1)"
        assert entry["userDisplayName"] == "Dr. Grace"

    def test_record_without_key(self, coordinator: UndoCoordinator) -> None:
        with pytest.raises(UndoError):
            coordinator.delete_with_undo("patients", {"firstName": "Nobody"})

    def test_failure_leaves_everything_in_place(self, store: LocalStore) -> None:
        queue = MagicMock()
        queue.enqueue.side_effect = StoreError("disk full")
        undo = UndoCoordinator(store, queue)
        store.put("patients", dict(PATIENT))

        with pytest.raises(StoreError):
            undo.delete_with_undo("patients", PATIENT)

        assert store.get("patients", "PT-1") == PATIENT
        assert store.count(UNDO_RECORDS) == 0
        assert undo.toast is None

    def test_new_delete_dismisses_previous_toast(
        self, coordinator: UndoCoordinator, store: LocalStore
    ) -> None:
        store.put("patients", {"uid": "PT-2", "syncStatus": "synced"})
        first = coordinator.delete_with_undo("patients", PATIENT)
        second = coordinator.delete_with_undo("patients", store.get("patients", "PT-2"))

        assert first.state == ToastState.DISMISSED
        assert second.is_live
        assert store.get(UNDO_RECORDS, first.undo_id) is None
        # The first deletion is final but still queued for the remote
        assert store.count(DELETIONS_QUEUE) == 2

    def test_on_change_notified(self, store: LocalStore, deletions: DeletionQueue) -> None:
        seen: list[UndoToast | None] = []
        undo = UndoCoordinator(store, deletions, window=30, on_change=seen.append)
        store.put("patients", dict(PATIENT))
        toast = undo.delete_with_undo("patients", PATIENT)
        toast.dismiss()
        assert seen == [toast, None]


class TestUndo:
    """Tests for restoring a deletion."""

    def test_undo_restores_exact_record(
        self, coordinator: UndoCoordinator, store: LocalStore
    ) -> None:
        toast = coordinator.delete_with_undo("patients", PATIENT)

        restored = toast.undo()

        assert restored == PATIENT
        assert store.get("patients", "PT-1") == PATIENT
        assert store.count(UNDO_RECORDS) == 0
        assert store.count(DELETIONS_QUEUE) == 0
        assert toast.state == ToastState.UNDONE
        assert coordinator.toast is None
        assert audit_actions(store) == ["DELETE_PATIENT", "UNDO_DELETE_PATIENT"]

    def test_handle_undo(self, coordinator: UndoCoordinator, store: LocalStore) -> None:
        assert coordinator.handle_undo() is None
        coordinator.delete_with_undo("patients", PATIENT)
        coordinator.handle_undo()
        assert store.get("patients", "PT-1") == PATIENT

    def test_undo_twice_fails(self, coordinator: UndoCoordinator) -> None:
        toast = coordinator.delete_with_undo("patients", PATIENT)
        toast.undo()
        with pytest.raises(UndoExpiredError):
            toast.undo()

    def test_undo_after_dismiss_fails(
        self, coordinator: UndoCoordinator, store: LocalStore
    ) -> None:
        toast = coordinator.delete_with_undo("patients", PATIENT)
        coordinator.dismiss_toast()
        with pytest.raises(UndoExpiredError):
            toast.undo()
        assert store.get("patients", "PT-1") is None

    def test_window_expiry(self, store: LocalStore, deletions: DeletionQueue) -> None:
        undo = UndoCoordinator(store, deletions, window=0.05)
        store.put("patients", dict(PATIENT))
        toast = undo.delete_with_undo("patients", PATIENT)

        assert wait_for(lambda: toast.state == ToastState.EXPIRED)
        assert undo.toast is None
        assert store.get(UNDO_RECORDS, toast.undo_id) is None
        assert store.count(DELETIONS_QUEUE) == 1
        with pytest.raises(UndoExpiredError):
            toast.undo()

    def test_undo_after_drain_recreates_as_pending(
        self,
        coordinator: UndoCoordinator,
        deletions: DeletionQueue,
        store: LocalStore,
        remote: FakeRemoteStore,
    ) -> None:
        remote.collections = {"patients": {"PT-1": {"firstName": "Ada"}}}
        toast = coordinator.delete_with_undo("patients", PATIENT)
        deletions.push_deletions()
        assert remote.docs("patients") == {}

        restored = toast.undo()

        assert restored["syncStatus"] == "pending"
        assert store.get("patients", "PT-1")["syncStatus"] == "pending"
        assert store.count(DELETIONS_QUEUE) == 0


class TestPendingChangesAcrossUndo:
    """The pending-changes metric and the drain around a delete."""

    def test_undo_returns_count_to_zero(
        self,
        coordinator: UndoCoordinator,
        store: LocalStore,
        remote: FakeRemoteStore,
    ) -> None:
        engine = SyncEngine(store, remote)
        assert engine.pending_changes_count() == 0

        toast = coordinator.delete_with_undo("patients", PATIENT)
        assert engine.pending_changes_count() == 1

        toast.undo()
        assert engine.pending_changes_count() == 0
        assert store.get("patients", "PT-1") == PATIENT

    def test_expired_delete_is_drained(
        self, store: LocalStore, deletions: DeletionQueue, remote: FakeRemoteStore
    ) -> None:
        remote.collections = {"patients": {"PT-1": {"firstName": "Ada"}}}
        undo = UndoCoordinator(store, deletions, window=0.05)
        store.put("patients", dict(PATIENT))
        toast = undo.delete_with_undo("patients", PATIENT)
        assert wait_for(lambda: toast.state == ToastState.EXPIRED)

        result = deletions.push_deletions()

        assert result.ok
        assert store.count(DELETIONS_QUEUE) == 0
        assert store.count("patients") == 0
        assert remote.docs("patients") == {}


class TestPurgeExpired:
    """Tests for stale undo record cleanup."""

    def test_purges_old_records_only(
        self, coordinator: UndoCoordinator, store: LocalStore
    ) -> None:
        old = datetime.now(UTC) - timedelta(hours=1)
        store.put(UNDO_RECORDS, {
            "tableName": "patients",
            "docId": "PT-9",
            "recordData": {"uid": "PT-9"},
            "deletedAt": old,
        })
        toast = coordinator.delete_with_undo("patients", PATIENT)

        assert coordinator.purge_expired() == 1
        assert [row["id"] for row in store.query(UNDO_RECORDS)] == [toast.undo_id]

    def test_live_toast_record_kept(self, coordinator: UndoCoordinator, store: LocalStore) -> None:
        toast = coordinator.delete_with_undo("patients", PATIENT)
        later = datetime.now(UTC) + timedelta(minutes=5)
        assert coordinator.purge_expired(now=later) == 0
        assert store.get(UNDO_RECORDS, toast.undo_id) is not None
