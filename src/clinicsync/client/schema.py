"""Versioned table definitions for the local store.

This module provides:
- TableSchema: primary key, indexes and date fields of one table
- SchemaVersion: the table definitions introduced by one schema version
- StoreSchema: ordered, additive list of versions
- DEFAULT_SCHEMA: the clinic records tables and the three control tables

Table definitions use a compact index syntax:

    "uid, lastName, *assignedDepartments"   primary key first, then indexes
    "++id, collectionName, docId"            auto-increment primary key
    "++id, &uid, timestamp"                  unique secondary field

A later version may redefine a table to add indexes. It may never change the
primary key or drop an index: upgrades are additive so existing rows survive.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field, replace

_FIELD_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")


class SchemaError(ValueError):
    """Invalid or non-additive schema definition."""


def check_identifier(name: str) -> str:
    if not _FIELD_RE.match(name):
        raise SchemaError(f"Invalid table or field name: {name!r}")
    return name


@dataclass(frozen=True)
class TableSchema:
    """Definition of one local table.

    Attributes:
        name: Table name.
        primary_key: Field holding the primary key.
        auto_increment: Whether the store assigns integer keys on insert.
        indexes: Single-value secondary indexes.
        multi_entry: Array fields queried by membership.
        unique: Secondary fields whose value identifies a row on upsert.
        date_fields: Fields revived as ``datetime`` on read.
    """

    name: str
    primary_key: str = "uid"
    auto_increment: bool = False
    indexes: tuple[str, ...] = ()
    multi_entry: tuple[str, ...] = ()
    unique: tuple[str, ...] = ()
    date_fields: tuple[str, ...] = ()

    def __post_init__(self) -> None:
        check_identifier(self.name)
        for name in (self.primary_key, *self.indexes, *self.multi_entry, *self.unique):
            check_identifier(name)

    @classmethod
    def parse(
        cls,
        name: str,
        index_syntax: str,
        date_fields: tuple[str, ...] = (),
    ) -> TableSchema:
        """Build a table definition from the compact index syntax."""
        parts = [part.strip() for part in index_syntax.split(",") if part.strip()]
        if not parts:
            raise SchemaError(f"Table {name!r} has no primary key")

        primary = parts[0]
        auto_increment = primary.startswith("++")
        primary = primary.lstrip("+")

        indexes: list[str] = []
        multi_entry: list[str] = []
        unique: list[str] = []
        for part in parts[1:]:
            if part.startswith("*"):
                multi_entry.append(part[1:])
            elif part.startswith("&"):
                unique.append(part[1:])
                indexes.append(part[1:])
            else:
                indexes.append(part)

        return cls(
            name=name,
            primary_key=primary,
            auto_increment=auto_increment,
            indexes=tuple(indexes),
            multi_entry=tuple(multi_entry),
            unique=tuple(unique),
            date_fields=date_fields,
        )

    def extends(self, previous: TableSchema) -> bool:
        """Check that this definition only adds to ``previous``."""
        return (
            self.primary_key == previous.primary_key
            and self.auto_increment == previous.auto_increment
            and set(previous.indexes) <= set(self.indexes)
            and set(previous.multi_entry) <= set(self.multi_entry)
            and set(previous.unique) <= set(self.unique)
        )


@dataclass(frozen=True)
class SchemaVersion:
    """Tables introduced or extended by one schema version."""

    version: int
    tables: tuple[TableSchema, ...] = field(default_factory=tuple)


class StoreSchema:
    """Ordered list of additive schema versions."""

    def __init__(self, name: str, versions: list[SchemaVersion] | None = None) -> None:
        self.name = name
        self._versions: list[SchemaVersion] = []
        self._tables: dict[str, TableSchema] = {}
        for version in versions or []:
            self.add_version(version)

    def add_version(self, version: SchemaVersion) -> StoreSchema:
        """Append a version, validating that it is newer and additive.

        Raises:
            SchemaError: If the version number does not increase or a table
                definition drops an index or changes its primary key.
        """
        if self._versions and version.version <= self._versions[-1].version:
            raise SchemaError(
                f"Schema version {version.version} must be greater than "
                f"{self._versions[-1].version}"
            )

        for table in version.tables:
            previous = self._tables.get(table.name)
            if previous is None:
                continue
            if not table.extends(previous):
                raise SchemaError(
                    f"Version {version.version} redefines table {table.name!r} "
                    "non-additively"
                )

        for table in version.tables:
            previous = self._tables.get(table.name)
            if previous is not None and not table.date_fields:
                table = replace(table, date_fields=previous.date_fields)
            self._tables[table.name] = table

        self._versions.append(version)
        return self

    @property
    def version(self) -> int:
        """Latest schema version number (0 when empty)."""
        return self._versions[-1].version if self._versions else 0

    @property
    def tables(self) -> dict[str, TableSchema]:
        """Cumulative table definitions at the latest version."""
        return dict(self._tables)

    def table(self, name: str) -> TableSchema:
        try:
            return self._tables[name]
        except KeyError:
            raise SchemaError(f"Unknown table: {name!r}") from None

    def __contains__(self, name: object) -> bool:
        return name in self._tables


# Control tables
UNDO_RECORDS = "undo_records"
DELETIONS_QUEUE = "deletions_queue"
AUDIT_LOGS = "audit_logs"

_CREATED = ("createdAt", "updatedAt")


def _build_default_schema() -> StoreSchema:
    t = TableSchema.parse
    schema = StoreSchema("clinicsync")
    schema.add_version(SchemaVersion(1, (
        t("users", "uid, email, role, syncStatus"),
        t("patients", "uid, lastName, firstName, syncStatus", _CREATED),
        t("departments", "id, syncStatus"),
        t("prescriptions", "uid, patientUid, status, syncStatus, createdAt", _CREATED),
        t("surgeries", "uid, patientUid, status, syncStatus, createdAt", _CREATED),
        t("vitals", "uid, patientUid, syncStatus, createdAt", _CREATED),
        t("medicalHistory", "uid, patientUid, syncStatus, date", _CREATED),
        t("departmentNotes", "uid, patientUid, departmentId, syncStatus, createdAt", _CREATED),
        t("dentalProcedures", "uid, patientUid, status, syncStatus, createdAt", _CREATED),
        t("laboratoryResults", "uid, patientUid, syncStatus, createdAt", _CREATED),
        t("oAndGHistory", "uid, patientUid, syncStatus, createdAt", _CREATED),
        t("paediatricHistory", "uid, patientUid, syncStatus, createdAt", _CREATED),
        t("medications", "uid, patientUid, syncStatus, startDate", _CREATED),
        t(UNDO_RECORDS, "++id, tableName, docId, deletedAt", ("deletedAt",)),
        t(DELETIONS_QUEUE, "++id, collectionName, docId, syncStatus"),
        t(AUDIT_LOGS, "++id, &uid, timestamp, userUid, action, syncStatus", ("timestamp",)),
    )))
    # Version 2: department assignments become multi-entry fields, matched
    # element-wise through json_each; SQLite has no physical index for them
    schema.add_version(SchemaVersion(2, (
        t("users", "uid, email, role, syncStatus, *departments"),
        t("patients", "uid, lastName, firstName, syncStatus, *assignedDepartments"),
    )))
    return schema


DEFAULT_SCHEMA = _build_default_schema()
