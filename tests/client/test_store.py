"""Tests for the SQLite-backed local store."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Any

import pytest

from clinicsync.client.schema import (
    AUDIT_LOGS,
    DELETIONS_QUEUE,
    SchemaVersion,
    StoreSchema,
    TableSchema,
)
from clinicsync.client.store import LocalStore, StoreError, snapshot


def patient(uid: str, **fields: Any) -> dict[str, Any]:
    return {"uid": uid, "firstName": "Ada", "lastName": "Lovelace", "syncStatus": "pending", **fields}


class TestLifecycle:
    """Tests for opening, migrating and closing the store."""

    def test_open_creates_latest_version(self, tmp_path: Path) -> None:
        with LocalStore(tmp_path / "local.db") as store:
            assert store.is_open
            assert store.version == 2
        assert not store.is_open

    def test_closed_store_raises(self, tmp_path: Path) -> None:
        store = LocalStore(tmp_path / "local.db")
        with pytest.raises(StoreError):
            store.get("patients", "PT-1")

    def test_in_memory_store(self) -> None:
        with LocalStore(":memory:") as store:
            store.put("patients", patient("PT-1"))
            assert store.count("patients") == 1

    def test_additive_migration_keeps_rows(self, tmp_path: Path) -> None:
        path = tmp_path / "local.db"
        v1 = [SchemaVersion(1, (TableSchema.parse("items", "uid, name"),))]
        with LocalStore(path, StoreSchema("t", v1)) as store:
            store.put("items", {"uid": "a", "name": "first", "category": "x"})

        v2 = [
            *v1,
            SchemaVersion(2, (
                TableSchema.parse("items", "uid, name, category"),
                TableSchema.parse("tags", "uid"),
            )),
        ]
        with LocalStore(path, StoreSchema("t", v2)) as store:
            assert store.version == 2
            assert store.get("items", "a") == {"uid": "a", "name": "first", "category": "x"}
            assert store.query("items", where={"category": "x"})[0]["uid"] == "a"
            store.put("tags", {"uid": "t1"})

    def test_multi_entry_field_added_by_migration(self, tmp_path: Path) -> None:
        path = tmp_path / "local.db"
        v1 = [SchemaVersion(1, (TableSchema.parse("users", "uid, role"),))]
        with LocalStore(path, StoreSchema("t", v1)) as store:
            store.put("users", {"uid": "u1", "departments": ["dental", "surgery"]})

        v2 = [*v1, SchemaVersion(2, (TableSchema.parse("users", "uid, role, *departments"),))]
        with LocalStore(path, StoreSchema("t", v2)) as store:
            rows = store.query("users", contains=("departments", "surgery"))
            assert [row["uid"] for row in rows] == ["u1"]

    def test_newer_database_is_rejected(self, tmp_path: Path) -> None:
        path = tmp_path / "local.db"
        with LocalStore(path):
            pass
        old = StoreSchema("t", [SchemaVersion(1, (TableSchema.parse("items", "uid"),))])
        with pytest.raises(StoreError, match="newer"):
            LocalStore(path, old).open()

    def test_close_and_clear(self, tmp_path: Path) -> None:
        path = tmp_path / "local.db"
        store = LocalStore(path).open()
        store.put("patients", patient("PT-1"))
        store.put(DELETIONS_QUEUE, {"collectionName": "patients", "docId": "PT-2"})
        store.close_and_clear()
        assert not store.is_open

        with LocalStore(path) as reopened:
            assert reopened.count("patients") == 0
            assert reopened.count(DELETIONS_QUEUE) == 0


class TestRowOperations:
    """Tests for get/put/update/delete."""

    def test_put_and_get(self, store: LocalStore) -> None:
        assert store.put("patients", patient("PT-1")) == "PT-1"
        assert store.get("patients", "PT-1") == patient("PT-1")
        assert store.get("patients", "PT-2") is None

    def test_put_replaces(self, store: LocalStore) -> None:
        store.put("patients", patient("PT-1"))
        store.put("patients", patient("PT-1", firstName="Grace"))
        assert store.count("patients") == 1
        assert store.get("patients", "PT-1")["firstName"] == "Grace"

    def test_put_without_key_fails(self, store: LocalStore) -> None:
        with pytest.raises(StoreError):
            store.put("patients", {"firstName": "Ada"})

    def test_unknown_table(self, store: LocalStore) -> None:
        with pytest.raises(StoreError):
            store.put("nope", {"uid": "x"})

    def test_date_fields_revived(self, store: LocalStore) -> None:
        created = datetime(2024, 3, 1, 9, 30, tzinfo=UTC)
        store.put("patients", patient("PT-1", createdAt=created, dateOfBirth="1815-12-10"))
        row = store.get("patients", "PT-1")
        assert row["createdAt"] == created
        # Not a declared date field: kept as stored
        assert row["dateOfBirth"] == "1815-12-10"

    def test_auto_increment_keys(self, store: LocalStore) -> None:
        first = store.put(DELETIONS_QUEUE, {"collectionName": "patients", "docId": "PT-1"})
        second = store.put(DELETIONS_QUEUE, {"collectionName": "patients", "docId": "PT-2"})
        assert isinstance(first, int)
        assert second > first
        assert store.get(DELETIONS_QUEUE, first)["id"] == first

    def test_unique_field_replaces_row(self, store: LocalStore) -> None:
        first = store.put(AUDIT_LOGS, {"uid": "log_1", "action": "A"})
        second = store.put(AUDIT_LOGS, {"uid": "log_1", "action": "B"})
        assert first == second
        assert store.count(AUDIT_LOGS) == 1
        assert store.get(AUDIT_LOGS, first)["action"] == "B"

    def test_update_merges(self, store: LocalStore) -> None:
        store.put("patients", patient("PT-1", phone="123"))
        updated = store.update("patients", "PT-1", {"phone": "456"})
        assert updated is not None
        assert updated["phone"] == "456"
        assert store.get("patients", "PT-1")["lastName"] == "Lovelace"

    def test_update_missing(self, store: LocalStore) -> None:
        assert store.update("patients", "PT-404", {"phone": "1"}) is None

    def test_delete_and_bulk_delete(self, store: LocalStore) -> None:
        store.bulk_put("patients", [patient(f"PT-{i}") for i in range(4)])
        store.delete("patients", "PT-0")
        store.delete("patients", "PT-404")
        store.bulk_delete("patients", ["PT-1", "PT-2"])
        assert [row["uid"] for row in store.query("patients")] == ["PT-3"]

    def test_delete_where(self, store: LocalStore) -> None:
        store.put(AUDIT_LOGS, {"uid": "log_1"})
        store.put(AUDIT_LOGS, {"uid": "log_2"})
        assert store.delete_where(AUDIT_LOGS, {"uid": "log_1"}) == 1
        assert store.delete_where(AUDIT_LOGS, {"uid": "log_1"}) == 0
        assert store.count(AUDIT_LOGS) == 1

    def test_delete_where_requires_criteria(self, store: LocalStore) -> None:
        with pytest.raises(StoreError):
            store.delete_where("patients", {})

    def test_clear_all(self, store: LocalStore) -> None:
        store.put("patients", patient("PT-1"))
        store.put("departments", {"id": "dental", "name": "Dental"})
        store.clear_all()
        assert store.count("patients") == 0
        assert store.count("departments") == 0

    def test_snapshot_is_deep(self) -> None:
        original = {"uid": "PT-1", "allergies": ["penicillin"]}
        copy = snapshot(original)
        original["allergies"].append("latex")
        assert copy["allergies"] == ["penicillin"]


class TestQueries:
    """Tests for indexed queries."""

    @pytest.fixture
    def populated(self, store: LocalStore) -> LocalStore:
        base = datetime(2024, 1, 1, tzinfo=UTC)
        store.bulk_put("patients", [
            patient("PT-1", lastName="Curie", createdAt=base, assignedDepartments=["dental"]),
            patient("PT-2", lastName="Babbage", createdAt=base + timedelta(days=1),
                    syncStatus="synced", assignedDepartments=["dental", "surgery"]),
            patient("PT-3", lastName="Hopper", createdAt=base + timedelta(days=2),
                    assignedDepartments=[]),
        ])
        return store

    def test_where(self, populated: LocalStore) -> None:
        rows = populated.query("patients", where={"syncStatus": "pending"})
        assert [row["uid"] for row in rows] == ["PT-1", "PT-3"]

    def test_between_dates(self, populated: LocalStore) -> None:
        base = datetime(2024, 1, 1, tzinfo=UTC)
        rows = populated.query(
            "patients", between=("createdAt", base + timedelta(hours=1), base + timedelta(days=2))
        )
        assert [row["uid"] for row in rows] == ["PT-2"]

    def test_open_ended_between(self, populated: LocalStore) -> None:
        cutoff = datetime(2024, 1, 2, tzinfo=UTC)
        assert populated.count("patients", between=("createdAt", None, cutoff)) == 1
        assert populated.count("patients", between=("createdAt", cutoff, None)) == 2

    def test_contains(self, populated: LocalStore) -> None:
        rows = populated.query("patients", contains=("assignedDepartments", "dental"))
        assert [row["uid"] for row in rows] == ["PT-1", "PT-2"]

    def test_order_limit_reverse(self, populated: LocalStore) -> None:
        rows = populated.query("patients", order_by="lastName", limit=2)
        assert [row["lastName"] for row in rows] == ["Babbage", "Curie"]
        rows = populated.query("patients", reverse=True, limit=1)
        assert rows[0]["uid"] == "PT-3"

    def test_predicate_before_limit(self, populated: LocalStore) -> None:
        rows = populated.query(
            "patients", predicate=lambda row: row["lastName"] != "Curie", limit=1
        )
        assert [row["uid"] for row in rows] == ["PT-2"]

    def test_first_and_count(self, populated: LocalStore) -> None:
        assert populated.first("patients", where={"lastName": "Hopper"})["uid"] == "PT-3"
        assert populated.first("patients", where={"lastName": "Nobody"}) is None
        assert populated.count("patients") == 3

    def test_invalid_field_name(self, populated: LocalStore) -> None:
        with pytest.raises(StoreError):
            populated.query("patients", where={"name') OR 1=1 --": "x"})


class TestTransactions:
    """Tests for all-or-nothing transactions."""

    def test_commit(self, store: LocalStore) -> None:
        def work() -> str:
            store.put("patients", patient("PT-1"))
            store.put(DELETIONS_QUEUE, {"collectionName": "patients", "docId": "PT-0"})
            return "done"

        assert store.transaction(["patients", DELETIONS_QUEUE], work) == "done"
        assert store.count("patients") == 1
        assert store.count(DELETIONS_QUEUE) == 1

    def test_exception_rolls_back_everything(self, store: LocalStore) -> None:
        store.put("patients", patient("PT-0"))

        def work() -> None:
            store.delete("patients", "PT-0")
            store.put(DELETIONS_QUEUE, {"collectionName": "patients", "docId": "PT-0"})
            raise ValueError("boom")

        with pytest.raises(ValueError):
            store.transaction(["patients", DELETIONS_QUEUE], work)
        assert store.get("patients", "PT-0") is not None
        assert store.count(DELETIONS_QUEUE) == 0

    def test_write_outside_scope_rejected(self, store: LocalStore) -> None:
        def work() -> None:
            store.put("patients", patient("PT-1"))
            store.put("vitals", {"uid": "V-1"})

        with pytest.raises(StoreError):
            store.transaction(["patients"], work)
        assert store.count("patients") == 0
        assert store.count("vitals") == 0

    def test_nested_scope_must_be_subset(self, store: LocalStore) -> None:
        def inner() -> None:
            store.put("vitals", {"uid": "V-1"})

        with pytest.raises(StoreError):
            store.transaction(["patients"], lambda: store.transaction(["vitals"], inner))

    def test_inner_failure_rolls_back_inner_only(self, store: LocalStore) -> None:
        def inner() -> None:
            store.put("patients", patient("PT-2"))
            raise ValueError("inner")

        def outer() -> None:
            store.put("patients", patient("PT-1"))
            with pytest.raises(ValueError):
                store.transaction(["patients"], inner)

        store.transaction(["patients"], outer)
        assert [row["uid"] for row in store.query("patients")] == ["PT-1"]


class TestObservation:
    """Tests for live queries."""

    def test_watch_delivers_current_and_changes(self, store: LocalStore) -> None:
        seen: list[list[str]] = []
        store.watch("patients", lambda rows: seen.append([r["uid"] for r in rows]),
                    where={"syncStatus": "pending"})
        store.put("patients", patient("PT-1"))
        store.put("patients", patient("PT-2", syncStatus="synced"))
        assert seen == [[], ["PT-1"], ["PT-1"]]

    def test_other_tables_do_not_notify(self, store: LocalStore) -> None:
        seen: list[int] = []
        store.observe(["patients"], lambda: store.count("patients"), seen.append)
        store.put("vitals", {"uid": "V-1"})
        assert seen == [0]

    def test_transaction_notifies_once_after_commit(self, store: LocalStore) -> None:
        seen: list[int] = []
        store.observe(["patients"], lambda: store.count("patients"), seen.append)
        store.bulk_put("patients", [patient("PT-1"), patient("PT-2")])
        assert seen == [0, 2]

    def test_rolled_back_transaction_does_not_notify(self, store: LocalStore) -> None:
        seen: list[int] = []
        store.observe(["patients"], lambda: store.count("patients"), seen.append)

        def work() -> None:
            store.put("patients", patient("PT-1"))
            raise ValueError("boom")

        with pytest.raises(ValueError):
            store.transaction(["patients"], work)
        assert seen == [0]

    def test_unsubscribe(self, store: LocalStore) -> None:
        seen: list[int] = []
        watch = store.observe(["patients"], lambda: store.count("patients"), seen.append)
        watch.unsubscribe()
        store.put("patients", patient("PT-1"))
        assert seen == [0]
        assert not watch.active

    def test_aggregate_over_tables(self, store: LocalStore) -> None:
        seen: list[int] = []
        store.observe(
            ["patients", DELETIONS_QUEUE],
            lambda: store.count("patients") + store.count(DELETIONS_QUEUE),
            seen.append,
        )
        store.put("patients", patient("PT-1"))
        store.put(DELETIONS_QUEUE, {"collectionName": "patients", "docId": "PT-9"})
        assert seen == [0, 1, 2]
