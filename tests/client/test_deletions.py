"""Tests for the deletion queue."""

from __future__ import annotations

from datetime import UTC, datetime

import pytest

from clinicsync.client.remote import RemoteUnavailableError, WriteBatch
from clinicsync.client.schema import DELETIONS_QUEUE, UNDO_RECORDS
from clinicsync.client.store import LocalStore
from clinicsync.client.sync.deletions import DeletionQueue
from tests.fakes import FakeRemoteStore


class TestEnqueue:
    """Tests for enqueue/cancel bookkeeping."""

    def test_enqueue_writes_pending_marker(self, store: LocalStore) -> None:
        queue = DeletionQueue(store)
        marker_id = queue.enqueue("patients", "PT-1")
        marker = store.get(DELETIONS_QUEUE, marker_id)
        assert marker == {
            "id": marker_id,
            "collectionName": "patients",
            "docId": "PT-1",
            "syncStatus": "pending",
        }
        assert queue.contains("patients", "PT-1")

    def test_enqueue_is_idempotent(self, store: LocalStore) -> None:
        queue = DeletionQueue(store)
        first = queue.enqueue("patients", "PT-1")
        assert queue.enqueue("patients", "PT-1") == first
        assert queue.count_pending() == 1

    def test_cancel(self, store: LocalStore) -> None:
        queue = DeletionQueue(store)
        queue.enqueue("patients", "PT-1")
        assert queue.cancel("patients", "PT-1") == 1
        assert queue.cancel("patients", "PT-1") == 0
        assert not queue.contains("patients", "PT-1")

    def test_pending_oldest_first(self, store: LocalStore) -> None:
        queue = DeletionQueue(store)
        queue.enqueue("vitals", "V-1")
        queue.enqueue("patients", "PT-1")
        assert [m["docId"] for m in queue.pending()] == ["V-1", "PT-1"]


class TestPushDeletions:
    """Tests for draining the queue."""

    def test_empty_queue_makes_no_calls(self, store: LocalStore, remote: FakeRemoteStore) -> None:
        result = DeletionQueue(store, remote).push_deletions()
        assert result.ok
        assert result.deleted == 0
        assert remote.calls == []

    def test_drain_is_one_batch_mapped_to_collections(
        self, store: LocalStore, remote: FakeRemoteStore
    ) -> None:
        remote.collections = {
            "patients": {"PT-1": {"firstName": "Ada"}},
            "medical_history": {"MH-1": {"note": "x"}},
        }
        queue = DeletionQueue(store, remote)
        queue.enqueue("patients", "PT-1")
        queue.enqueue("medicalHistory", "MH-1")

        result = queue.push_deletions()

        assert result.deleted == 2
        batches = remote.commits()
        assert len(batches) == 1
        assert [(op.op, op.collection, op.doc_id) for op in batches[0].ops] == [
            ("delete", "patients", "PT-1"),
            ("delete", "medical_history", "MH-1"),
        ]
        assert remote.docs("patients") == {}
        assert remote.docs("medical_history") == {}
        assert store.count(DELETIONS_QUEUE) == 0

    def test_failure_keeps_markers(self, store: LocalStore, remote: FakeRemoteStore) -> None:
        remote.fail_with = RemoteUnavailableError("offline")
        queue = DeletionQueue(store, remote)
        queue.enqueue("patients", "PT-1")

        result = queue.push_deletions()

        assert not result.ok
        assert result.error == "offline"
        assert queue.count_pending() == 1

    def test_drain_removes_undo_records(self, store: LocalStore, remote: FakeRemoteStore) -> None:
        store.put(UNDO_RECORDS, {
            "tableName": "patients",
            "docId": "PT-1",
            "recordData": {"uid": "PT-1"},
            "deletedAt": datetime.now(UTC),
        })
        store.put(UNDO_RECORDS, {
            "tableName": "patients",
            "docId": "PT-2",
            "recordData": {"uid": "PT-2"},
            "deletedAt": datetime.now(UTC),
        })
        queue = DeletionQueue(store, remote)
        queue.enqueue("patients", "PT-1")

        queue.push_deletions()

        assert [row["docId"] for row in store.query(UNDO_RECORDS)] == ["PT-2"]

    def test_undo_during_drain_requeues_row(
        self, store: LocalStore, remote: FakeRemoteStore
    ) -> None:
        queue = DeletionQueue(store, remote)
        queue.enqueue("patients", "PT-1")

        def undo(batch: WriteBatch) -> None:
            # The record is restored and its marker cancelled mid-flight
            store.put("patients", {"uid": "PT-1", "syncStatus": "synced"})
            queue.cancel("patients", "PT-1")

        remote.before_commit = undo
        result = queue.push_deletions()

        assert result.deleted == 1
        assert store.get("patients", "PT-1")["syncStatus"] == "pending"

    def test_drain_without_remote(self, store: LocalStore) -> None:
        queue = DeletionQueue(store)
        queue.enqueue("patients", "PT-1")
        with pytest.raises(RuntimeError):
            queue.push_deletions()
