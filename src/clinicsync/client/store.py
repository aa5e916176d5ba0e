"""Local durable store for offline-first records.

This module provides:
- LocalStore: SQLite-backed, versioned, indexed document tables
- Watch: handle for a live query registered with ``watch``/``observe``
- StoreError: local storage failure

Architecture:
    Every table holds JSON documents keyed by the table's primary key.
    Secondary indexes are SQLite expression indexes on
    ``json_extract(data, '$.<field>')``; multi-entry (array) fields are
    queried through ``json_each``.

    All access goes through one connection guarded by an RLock, so a reader
    never observes a half-applied transaction or a half-cleared store.
    Writes outside ``transaction()`` are single statements (or an implicit
    transaction for bulk operations) and therefore atomic.

    Observers registered with ``watch``/``observe`` are re-evaluated after
    each commit that touched one of their tables.
"""

from __future__ import annotations

import copy
import logging
import sqlite3
import threading
from collections.abc import Callable, Iterable, Iterator
from contextlib import contextmanager
from pathlib import Path
from typing import Any, TypeVar

from clinicsync.client.schema import (
    DEFAULT_SCHEMA,
    SchemaError,
    StoreSchema,
    TableSchema,
    check_identifier,
)
from clinicsync.core.codec import dumps_local, loads_local, to_index_value

logger = logging.getLogger(__name__)

T = TypeVar("T")

Entity = dict[str, Any]
Predicate = Callable[[Entity], bool]


class StoreError(Exception):
    """Local storage failure (transaction aborted, store unusable)."""


class Watch:
    """A live query: recomputed and delivered after every relevant commit."""

    def __init__(
        self,
        store: LocalStore,
        tables: frozenset[str],
        compute: Callable[[], Any],
        callback: Callable[[Any], None],
    ) -> None:
        self._store = store
        self.tables = tables
        self._compute = compute
        self._callback = callback
        self.active = True
        self.current: Any = None

    def refresh(self) -> None:
        """Recompute the snapshot and deliver it to the callback."""
        if not self.active:
            return
        try:
            self.current = self._compute()
        except StoreError as e:
            logger.warning("Live query on %s failed: %s", sorted(self.tables), e)
            return
        self._callback(self.current)

    def unsubscribe(self) -> None:
        self.active = False
        self._store._remove_watch(self)


class LocalStore:
    """SQLite-backed local store with versioned, additive schema.

    Usage:
        store = LocalStore(tmp_path / "local.db")
        store.open()
        store.put("patients", {"uid": "PT-1", "firstName": "Ada", "syncStatus": "pending"})
        store.query("patients", where={"syncStatus": "pending"})
        store.close()
    """

    def __init__(self, db_path: Path | str, schema: StoreSchema = DEFAULT_SCHEMA) -> None:
        """Initialize the store (does not open it).

        Args:
            db_path: Path to SQLite database file, or ":memory:".
            schema: Table definitions to migrate to on open.
        """
        self._db_path = db_path if db_path == ":memory:" else Path(db_path)
        self._schema = schema
        self._conn: sqlite3.Connection | None = None

        # Lock for thread-safe database access
        self._lock = threading.RLock()

        # Transaction state (only touched while holding the lock)
        self._savepoints = 0
        self._scope: frozenset[str] | None = None
        self._changed: set[str] = set()

        self._watches: list[Watch] = []
        self._watch_lock = threading.Lock()

    # === Lifecycle ===

    def open(self) -> LocalStore:
        """Open the database and migrate it to the latest schema version.

        Raises:
            StoreError: If the database cannot be opened or has a newer
                schema version than this code knows about.
        """
        with self._lock:
            if self._conn is not None:
                return self
            try:
                if isinstance(self._db_path, Path):
                    self._db_path.parent.mkdir(parents=True, exist_ok=True)
                self._conn = sqlite3.connect(
                    str(self._db_path),
                    check_same_thread=False,
                    isolation_level=None,  # Autocommit mode
                )
                self._conn.row_factory = sqlite3.Row
                # Enable WAL mode for better concurrency
                self._conn.execute("PRAGMA journal_mode=WAL")
                self._migrate()
            except (sqlite3.Error, StoreError) as e:
                if self._conn is not None:
                    self._conn.close()
                self._conn = None
                if isinstance(e, StoreError):
                    raise
                raise StoreError(f"Cannot open local store {self._db_path}: {e}") from e
        logger.debug("Opened local store %s (schema v%d)", self._db_path, self._schema.version)
        return self

    def close(self) -> None:
        """Close the database connection."""
        with self._lock:
            if self._conn is not None:
                self._conn.close()
                self._conn = None

    def close_and_clear(self) -> None:
        """Wipe every table, then close the store."""
        self.clear_all()
        self.close()

    def __enter__(self) -> LocalStore:
        return self.open()

    def __exit__(self, *args: object) -> None:
        self.close()

    @property
    def is_open(self) -> bool:
        return self._conn is not None

    @property
    def schema(self) -> StoreSchema:
        return self._schema

    @property
    def version(self) -> int:
        """Schema version recorded in the database file."""
        with self._lock:
            return int(self._connection().execute("PRAGMA user_version").fetchone()[0])

    def _connection(self) -> sqlite3.Connection:
        if self._conn is None:
            raise StoreError("Local store is not open")
        return self._conn

    def _migrate(self) -> None:
        """Apply missing schema versions additively."""
        conn = self._connection()
        current = int(conn.execute("PRAGMA user_version").fetchone()[0])
        target = self._schema.version
        if current > target:
            raise StoreError(
                f"Local store has schema v{current}, newer than supported v{target}"
            )

        conn.execute("BEGIN IMMEDIATE")
        try:
            for table in self._schema.tables.values():
                if table.auto_increment:
                    key_column = "key INTEGER PRIMARY KEY AUTOINCREMENT"
                else:
                    key_column = "key TEXT PRIMARY KEY"
                conn.execute(
                    f'CREATE TABLE IF NOT EXISTS "{table.name}" '
                    f"({key_column}, data TEXT NOT NULL)"
                )
                for name in table.indexes:
                    conn.execute(
                        f'CREATE INDEX IF NOT EXISTS "ix_{table.name}_{name}" '
                        f"ON \"{table.name}\" (json_extract(data, '$.{name}'))"
                    )
            conn.execute(f"PRAGMA user_version = {target}")
            conn.execute("COMMIT")
        except sqlite3.Error:
            conn.execute("ROLLBACK")
            raise

        if current != target:
            logger.info("Migrated local store from schema v%d to v%d", current, target)

    def _table(self, name: str) -> TableSchema:
        try:
            return self._schema.table(name)
        except SchemaError as e:
            raise StoreError(str(e)) from e

    # === Transactions ===

    @contextmanager
    def _atomic(self, tables: Iterable[str] | None = None) -> Iterator[None]:
        """Run the enclosed block atomically.

        The outermost block is a SQLite transaction; nested blocks are
        savepoints so that an inner failure caught by the caller rolls back
        only the inner writes.
        """
        notify: set[str] = set()
        with self._lock:
            conn = self._connection()
            outer = self._savepoints == 0
            previous_scope = self._scope
            if tables is not None:
                scope = frozenset(self._table(name).name for name in tables)
                if previous_scope is not None and not scope <= previous_scope:
                    raise StoreError(
                        f"Tables {sorted(scope - previous_scope)} are not part of "
                        "the enclosing transaction"
                    )
                self._scope = scope

            savepoint = f"sp_{self._savepoints}"
            try:
                if outer:
                    conn.execute("BEGIN IMMEDIATE")
                    self._changed = set()
                else:
                    conn.execute(f"SAVEPOINT {savepoint}")
            except sqlite3.Error as e:
                self._scope = previous_scope
                raise StoreError(f"Cannot start transaction: {e}") from e

            self._savepoints += 1
            changed_before = set(self._changed)
            try:
                yield
            except BaseException:
                self._savepoints -= 1
                self._scope = previous_scope
                if outer:
                    conn.execute("ROLLBACK")
                    self._changed = set()
                else:
                    conn.execute(f"ROLLBACK TO {savepoint}")
                    conn.execute(f"RELEASE {savepoint}")
                    self._changed = changed_before
                raise
            self._savepoints -= 1
            self._scope = previous_scope
            try:
                if outer:
                    conn.execute("COMMIT")
                    notify = self._changed
                    self._changed = set()
                else:
                    conn.execute(f"RELEASE {savepoint}")
            except sqlite3.Error as e:
                if outer:
                    conn.execute("ROLLBACK")
                    self._changed = set()
                raise StoreError(f"Commit failed: {e}") from e
        # Outside the lock: observers may read the store
        if notify:
            self._notify(notify)

    def transaction(self, tables: Iterable[str], fn: Callable[[], T]) -> T:
        """Execute ``fn`` with all-or-nothing visibility across ``tables``.

        Any exception raised inside ``fn`` rolls back every write it made and
        propagates to the caller. Writes to tables outside ``tables`` are
        rejected with StoreError.

        Args:
            tables: Tables that ``fn`` may write to.
            fn: Callable executed inside the transaction.

        Returns:
            The value returned by ``fn``.
        """
        with self._atomic(list(tables)):
            return fn()

    def _write(self, table: TableSchema, sql: str, params: tuple[Any, ...]) -> sqlite3.Cursor:
        """Execute a write statement, tracking the table for observers."""
        with self._lock:
            if self._scope is not None and table.name not in self._scope:
                raise StoreError(f"Table {table.name!r} is not part of the current transaction")
            try:
                cursor = self._connection().execute(sql, params)
            except sqlite3.Error as e:
                raise StoreError(f"Write to {table.name} failed: {e}") from e
            in_transaction = self._savepoints > 0
            if in_transaction:
                self._changed.add(table.name)
        if not in_transaction:
            self._notify({table.name})
        return cursor

    # === Row operations ===

    def _decode(self, table: TableSchema, row: sqlite3.Row) -> Entity:
        entity = loads_local(row["data"], table.date_fields)
        if table.auto_increment:
            entity[table.primary_key] = row["key"]
        return entity

    def get(self, table: str, key: Any) -> Entity | None:
        """Get a record by primary key.

        Returns:
            The record, or None if absent.
        """
        schema = self._table(table)
        with self._lock:
            row = self._connection().execute(
                f'SELECT key, data FROM "{schema.name}" WHERE key = ?',
                (key,),
            ).fetchone()
        if row is None:
            return None
        return self._decode(schema, row)

    def put(self, table: str, entity: Entity) -> Any:
        """Insert or replace a record by primary key.

        For auto-increment tables, a record without a key is inserted with a
        fresh key (or replaces the row sharing one of the table's unique
        field values).

        Returns:
            The primary key of the stored record.

        Raises:
            StoreError: If the record has no primary key or the write fails.
        """
        schema = self._table(table)
        key = entity.get(schema.primary_key)

        if schema.auto_increment:
            if key is None:
                key = self._find_unique(schema, entity)
            document = {k: v for k, v in entity.items() if k != schema.primary_key}
            if key is None:
                cursor = self._write(
                    schema,
                    f'INSERT INTO "{schema.name}" (data) VALUES (?)',
                    (dumps_local(document),),
                )
                return cursor.lastrowid
            self._write(
                schema,
                f'INSERT OR REPLACE INTO "{schema.name}" (key, data) VALUES (?, ?)',
                (key, dumps_local(document)),
            )
            return key

        if key is None or key == "":
            raise StoreError(
                f"Record for {schema.name} has no primary key {schema.primary_key!r}"
            )
        self._write(
            schema,
            f'INSERT OR REPLACE INTO "{schema.name}" (key, data) VALUES (?, ?)',
            (key, dumps_local(entity)),
        )
        return key

    def _find_unique(self, schema: TableSchema, entity: Entity) -> Any:
        for name in schema.unique:
            value = entity.get(name)
            if value is None:
                continue
            with self._lock:
                row = self._connection().execute(
                    f'SELECT key FROM "{schema.name}" '
                    f"WHERE json_extract(data, '$.{name}') = ? LIMIT 1",
                    (to_index_value(value),),
                ).fetchone()
            if row is not None:
                return row["key"]
        return None

    def bulk_put(self, table: str, entities: Iterable[Entity]) -> list[Any]:
        """Upsert several records atomically."""
        with self._atomic([table]):
            return [self.put(table, entity) for entity in entities]

    def update(self, table: str, key: Any, changes: Entity) -> Entity | None:
        """Merge ``changes`` into an existing record.

        Returns:
            The updated record, or None if no record has this key.
        """
        with self._atomic([table]):
            current = self.get(table, key)
            if current is None:
                return None
            current.update(changes)
            self.put(table, current)
            return current

    def delete(self, table: str, key: Any) -> None:
        """Delete a record by primary key (no-op if absent)."""
        schema = self._table(table)
        self._write(schema, f'DELETE FROM "{schema.name}" WHERE key = ?', (key,))

    def bulk_delete(self, table: str, keys: Iterable[Any]) -> None:
        """Delete several records atomically."""
        with self._atomic([table]):
            for key in keys:
                self.delete(table, key)

    def delete_where(self, table: str, where: Entity) -> int:
        """Delete every record matching the equality criteria.

        Returns:
            Number of deleted records.
        """
        schema = self._table(table)
        clauses, params = self._where_clauses(where)
        if not clauses:
            raise StoreError("delete_where requires at least one criterion")
        cursor = self._write(
            schema,
            f'DELETE FROM "{schema.name}" WHERE {" AND ".join(clauses)}',
            tuple(params),
        )
        return cursor.rowcount

    def clear(self, table: str) -> None:
        """Delete every record of one table."""
        schema = self._table(table)
        self._write(schema, f'DELETE FROM "{schema.name}"', ())

    def clear_all(self) -> None:
        """Wipe every table in one transaction (used on logout)."""
        tables = list(self._schema.tables)
        with self._atomic(tables):
            for name in tables:
                self.clear(name)
        logger.info("Cleared all local data")

    # === Queries ===

    @staticmethod
    def _field(name: str) -> str:
        """Expression extracting a document field (name validated)."""
        try:
            check_identifier(name)
        except SchemaError as e:
            raise StoreError(str(e)) from e
        return f"json_extract(data, '$.{name}')"

    def _where_clauses(self, where: Entity | None) -> tuple[list[str], list[Any]]:
        clauses: list[str] = []
        params: list[Any] = []
        for name, value in (where or {}).items():
            expr = self._field(name)
            if value is None:
                clauses.append(f"{expr} IS NULL")
            else:
                clauses.append(f"{expr} = ?")
                params.append(to_index_value(value))
        return clauses, params

    def _select(
        self,
        schema: TableSchema,
        *,
        columns: str,
        where: Entity | None,
        between: tuple[str, Any, Any] | None,
        contains: tuple[str, Any] | None,
    ) -> tuple[str, list[Any]]:
        clauses, params = self._where_clauses(where)
        if between is not None:
            name, lower, upper = between
            expr = self._field(name)
            if lower is not None:
                clauses.append(f"{expr} >= ?")
                params.append(to_index_value(lower))
            if upper is not None:
                clauses.append(f"{expr} < ?")
                params.append(to_index_value(upper))
        if contains is not None:
            name, value = contains
            self._field(name)
            clauses.append(
                f"EXISTS (SELECT 1 FROM json_each(data, '$.{name}') WHERE value = ?)"
            )
            params.append(to_index_value(value))

        sql = f'SELECT {columns} FROM "{schema.name}"'
        if clauses:
            sql += " WHERE " + " AND ".join(clauses)
        return sql, params

    def query(
        self,
        table: str,
        *,
        where: Entity | None = None,
        between: tuple[str, Any, Any] | None = None,
        contains: tuple[str, Any] | None = None,
        order_by: str | None = None,
        reverse: bool = False,
        limit: int | None = None,
        predicate: Predicate | None = None,
    ) -> list[Entity]:
        """Select records from a table.

        Args:
            table: Table name.
            where: Equality criteria, field -> value.
            between: (field, lower, upper) range, lower inclusive and upper
                exclusive; either bound may be None.
            contains: (field, value) membership test on an array field.
            order_by: Sort field (defaults to the primary key).
            reverse: Iterate in descending order.
            limit: Maximum number of records returned.
            predicate: Additional Python-side filter, applied before ``limit``.

        Returns:
            Matching records.
        """
        schema = self._table(table)
        sql, params = self._select(
            schema, columns="key, data", where=where, between=between, contains=contains
        )
        direction = "DESC" if reverse else "ASC"
        if order_by is None or order_by == schema.primary_key:
            sql += f" ORDER BY key {direction}"
        else:
            sql += f" ORDER BY {self._field(order_by)} {direction}, key {direction}"
        if limit is not None and predicate is None:
            sql += f" LIMIT {int(limit)}"

        with self._lock:
            try:
                rows = self._connection().execute(sql, params).fetchall()
            except sqlite3.Error as e:
                raise StoreError(f"Query on {schema.name} failed: {e}") from e

        results = [self._decode(schema, row) for row in rows]
        if predicate is not None:
            results = [entity for entity in results if predicate(entity)]
            if limit is not None:
                results = results[:limit]
        return results

    def count(
        self,
        table: str,
        *,
        where: Entity | None = None,
        between: tuple[str, Any, Any] | None = None,
        contains: tuple[str, Any] | None = None,
    ) -> int:
        """Count records matching the criteria."""
        schema = self._table(table)
        sql, params = self._select(
            schema, columns="COUNT(*)", where=where, between=between, contains=contains
        )
        with self._lock:
            try:
                return int(self._connection().execute(sql, params).fetchone()[0])
            except sqlite3.Error as e:
                raise StoreError(f"Count on {schema.name} failed: {e}") from e

    def first(self, table: str, *, where: Entity | None = None) -> Entity | None:
        """Return the first record matching ``where``, by primary key."""
        results = self.query(table, where=where, limit=1)
        return results[0] if results else None

    # === Observation ===

    def observe(
        self,
        tables: Iterable[str],
        compute: Callable[[], T],
        callback: Callable[[T], None],
    ) -> Watch:
        """Register a live aggregate over several tables.

        ``compute`` is evaluated immediately and after every commit touching
        one of ``tables``; each result is passed to ``callback``.
        """
        names = frozenset(self._table(name).name for name in tables)
        watch = Watch(self, names, compute, callback)
        with self._watch_lock:
            self._watches.append(watch)
        watch.refresh()
        return watch

    def watch(
        self,
        table: str,
        callback: Callable[[list[Entity]], None],
        **criteria: Any,
    ) -> Watch:
        """Register a live query on one table.

        Accepts the same keyword criteria as ``query``; ``callback`` receives
        the full result set after every change to the table.
        """
        return self.observe([table], lambda: self.query(table, **criteria), callback)

    def _remove_watch(self, watch: Watch) -> None:
        with self._watch_lock:
            if watch in self._watches:
                self._watches.remove(watch)

    def _notify(self, tables: set[str]) -> None:
        with self._watch_lock:
            watches = [w for w in self._watches if w.tables & tables]
        for watch in watches:
            try:
                watch.refresh()
            except Exception:
                logger.exception("Observer callback failed")


def snapshot(entity: Entity) -> Entity:
    """Deep copy of a record, safe to keep while the original is mutated."""
    return copy.deepcopy(entity)
