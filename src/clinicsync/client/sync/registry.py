"""Registry of syncable tables.

Maps each local table to its remote collection and the field used as the
remote document key.
"""

from __future__ import annotations

from collections.abc import Iterable, Iterator
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from clinicsync.client.schema import TableSchema

SYNC_STATUS_FIELD = "syncStatus"


@dataclass(frozen=True)
class SyncTable:
    """A local table mirrored to a remote collection.

    Attributes:
        table_name: Local table name.
        collection_name: Remote collection name.
        pk: Field holding the remote document key.
    """

    table_name: str
    collection_name: str
    pk: str = "uid"


class SyncRegistry:
    """Ordered set of SyncTable definitions.

    Iteration order is the push order of the tables.
    """

    def __init__(self, tables: Iterable[SyncTable]) -> None:
        self._tables: dict[str, SyncTable] = {}
        for table in tables:
            if table.table_name in self._tables:
                raise ValueError(f"Table registered twice: {table.table_name}")
            self._tables[table.table_name] = table

    def __iter__(self) -> Iterator[SyncTable]:
        return iter(self._tables.values())

    def __len__(self) -> int:
        return len(self._tables)

    def __contains__(self, table_name: object) -> bool:
        return table_name in self._tables

    def get(self, table_name: str) -> SyncTable | None:
        return self._tables.get(table_name)

    @property
    def table_names(self) -> list[str]:
        return list(self._tables)

    def collection_for(self, table_name: str) -> str:
        """Remote collection of a local table (the table name if unregistered)."""
        table = self._tables.get(table_name)
        return table.collection_name if table else table_name

    def primary_key_for(self, table_name: str) -> str:
        """Key field of a local table ('uid' if unregistered)."""
        table = self._tables.get(table_name)
        return table.pk if table else "uid"


SYNC_TABLES = SyncRegistry([
    SyncTable("users", "users"),
    SyncTable("patients", "patients"),
    SyncTable("departments", "departments", pk="id"),
    SyncTable("prescriptions", "prescriptions"),
    SyncTable("surgeries", "surgeries"),
    SyncTable("vitals", "vitals"),
    SyncTable("medicalHistory", "medical_history"),
    SyncTable("departmentNotes", "department_notes"),
    SyncTable("dentalProcedures", "dental_procedures"),
    SyncTable("laboratoryResults", "laboratory_results"),
    SyncTable("oAndGHistory", "o_and_g_history"),
    SyncTable("paediatricHistory", "paediatric_history"),
    SyncTable("medications", "medications"),
    SyncTable("audit_logs", "audit_logs"),
])


def to_remote_fields(table: TableSchema, entity: dict[str, Any]) -> dict[str, Any]:
    """Fields sent to the remote store (local-only fields removed)."""
    local_only = {SYNC_STATUS_FIELD}
    if table.auto_increment:
        local_only.add(table.primary_key)
    return {name: value for name, value in entity.items() if name not in local_only}


# Rows inserted as pending when their table is still empty after seeding
DEFAULT_DEPARTMENTS: list[dict[str, str]] = [
    {"id": "general_consultation", "name": "General Consultation"},
    {"id": "physiotherapy", "name": "Physiotherapy"},
    {"id": "eye_ent", "name": "Eye/ ENT"},
    {"id": "surgery", "name": "Surgery"},
    {"id": "laboratory", "name": "Laboratory"},
    {"id": "dental", "name": "Dental"},
    {"id": "paediatrics", "name": "Paediatrician"},
    {"id": "o_and_g", "name": "O and G"},
    {"id": "pharmacy", "name": "Pharmacy"},
]
