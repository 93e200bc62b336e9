"""
StreamTask Table Store - DuckDB-backed tables with transactions and change capture hooks
"""

from __future__ import annotations
import logging
import threading
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence, Union

import duckdb
import pyarrow as pa

from streamtask.exceptions import ConfigurationError, StorageError
from streamtask.mutations import Delete, Insert, RowChange, Update
from streamtask.schema import ColumnInfo, TableSchema
from streamtask.sql import quote_identifier, quote_list

logger = logging.getLogger(__name__)

Mutation = Union[Insert, Update, Delete]
CaptureHook = Callable[[RowChange], None]

# Tables owned by the engine itself (change logs, cursors)
INTERNAL_PREFIX = "__"


def utc_now() -> datetime:
    """Current UTC time as a naive timestamp (DuckDB TIMESTAMP)."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class TableStore:
    """
    Key-value table store over a single DuckDB connection.

    Provides:
    - Table creation and schema discovery
    - Row mutations keyed by primary key
    - Re-entrant transactions (nested calls join the outer transaction)
    - Capture hooks invoked inside the mutating transaction

    All access goes through one re-entrant lock; a transaction holds it
    until commit or rollback, so transactions are serialized and commit
    order matches the order in which capture hooks ran. Source writers
    therefore wait for the whole of a merge apply into any target table,
    not only for single reads.
    """

    def __init__(self, database: str = ":memory:", read_only: bool = False):
        self._database = database
        try:
            self._conn = duckdb.connect(database, read_only=read_only)
        except duckdb.Error as e:
            raise StorageError(f"Failed to open database {database}: {e}") from e

        self._lock = threading.RLock()
        self._txn_depth = 0
        self._schemas: Dict[str, TableSchema] = {}
        self._captures: Dict[str, List[CaptureHook]] = {}
        self._closed = False

        logger.debug("TableStore opened: database=%s, read_only=%s", database, read_only)

    # =========================================================================
    # Low-level execution
    # =========================================================================

    def execute(self, sql: str, parameters: Sequence = None) -> List[tuple]:
        """
        Execute a statement and return all result rows.

        Raises:
            StorageError: If the store is closed or DuckDB rejects the statement
        """
        with self._lock:
            if self._closed:
                raise StorageError("Store is closed")
            try:
                if parameters:
                    result = self._conn.execute(sql, parameters)
                else:
                    result = self._conn.execute(sql)
                return result.fetchall() if result.description else []
            except duckdb.Error as e:
                raise StorageError(f"Statement failed: {e}") from e

    def query(self, sql: str, parameters: Sequence = None) -> List[Dict[str, Any]]:
        """Execute a query and return rows as dictionaries."""
        with self._lock:
            if self._closed:
                raise StorageError("Store is closed")
            try:
                if parameters:
                    result = self._conn.execute(sql, parameters)
                else:
                    result = self._conn.execute(sql)
                columns = [d[0] for d in result.description]
                return [dict(zip(columns, row)) for row in result.fetchall()]
            except duckdb.Error as e:
                raise StorageError(f"Query failed: {e}") from e

    @contextmanager
    def transaction(self):
        """
        Run a block inside a transaction.

        Commits when the block exits normally, rolls back on any exception.
        Nested use from the owning thread joins the outer transaction.

        Usage:
            with store.transaction():
                store.mutate("students", Insert({...}))
        """
        with self._lock:
            if self._txn_depth:
                self._txn_depth += 1
                try:
                    yield self
                finally:
                    self._txn_depth -= 1
                return

            self.execute("BEGIN TRANSACTION")
            self._txn_depth = 1
            try:
                yield self
            except BaseException:
                self._txn_depth = 0
                self._rollback()
                raise
            self._txn_depth = 0
            try:
                self._conn.execute("COMMIT")
            except duckdb.Error as e:
                self._rollback()
                raise StorageError(f"Commit failed: {e}") from e

    def _rollback(self):
        try:
            self._conn.execute("ROLLBACK")
        except duckdb.Error as e:
            # DuckDB already aborted the transaction (e.g. failed commit)
            logger.debug("Rollback after abort: %s", e)

    @property
    def in_transaction(self) -> bool:
        return self._txn_depth > 0

    # =========================================================================
    # Tables
    # =========================================================================

    def create_table(
        self,
        schema: TableSchema,
        if_not_exists: bool = False,
        replace: bool = False,
    ) -> TableSchema:
        """
        Create a table.

        Args:
            schema: Table schema
            if_not_exists: Return the existing schema instead of failing
            replace: Drop and recreate an existing table

        Returns:
            The schema of the (possibly pre-existing) table
        """
        with self._lock:
            if self.has_table(schema.name):
                if if_not_exists:
                    return self.get_schema(schema.name)
                if not replace:
                    raise ConfigurationError(f"Table already exists: {schema.name}")

            verb = "CREATE OR REPLACE TABLE" if replace else "CREATE TABLE"
            self.execute(f"{verb} {quote_identifier(schema.name)} ({schema.ddl()})")
            self._schemas[schema.name] = schema
            logger.debug("Created table %s (%d columns)", schema.name, len(schema.columns))
            return schema

    def drop_table(self, name: str, if_exists: bool = False) -> bool:
        """Drop a table. Returns False if it did not exist and ``if_exists`` is set."""
        with self._lock:
            if not self.has_table(name):
                if if_exists:
                    return False
                raise ConfigurationError(f"Unknown table: {name}")
            self.execute(f"DROP TABLE {quote_identifier(name)}")
            self._schemas.pop(name, None)
            self._captures.pop(name, None)
            return True

    def has_table(self, name: str) -> bool:
        rows = self.execute(
            "SELECT COUNT(*) FROM information_schema.tables WHERE table_name = ?",
            [name],
        )
        return rows[0][0] > 0

    def list_tables(self, include_internal: bool = False) -> List[str]:
        """List table names, excluding engine-owned tables by default."""
        rows = self.execute(
            "SELECT table_name FROM information_schema.tables ORDER BY table_name"
        )
        names = [r[0] for r in rows]
        if include_internal:
            return names
        return [n for n in names if not n.startswith(INTERNAL_PREFIX)]

    def get_schema(self, name: str) -> TableSchema:
        """
        Get a table's schema, discovering it with DESCRIBE if not cached.

        Raises:
            ConfigurationError: If the table does not exist
        """
        with self._lock:
            cached = self._schemas.get(name)
            if cached is not None:
                return cached

            if not self.has_table(name):
                raise ConfigurationError(f"Unknown table: {name}")

            described = self.query(f"DESCRIBE {quote_identifier(name)}")
            schema = TableSchema(
                name=name,
                columns=[
                    ColumnInfo(
                        name=col["column_name"],
                        data_type=col["column_type"],
                        nullable=col["null"] == "YES",
                        primary_key=col.get("key") == "PRI",
                    )
                    for col in described
                ],
            )
            self._schemas[name] = schema
            return schema

    # =========================================================================
    # Capture hooks
    # =========================================================================

    def add_capture(self, table: str, hook: CaptureHook):
        """Register a hook called with each RowChange on ``table``, inside its transaction."""
        with self._lock:
            hooks = self._captures.setdefault(table, [])
            if hook not in hooks:
                hooks.append(hook)

    def remove_capture(self, table: str, hook: CaptureHook):
        with self._lock:
            hooks = self._captures.get(table, [])
            if hook in hooks:
                hooks.remove(hook)

    # =========================================================================
    # Mutations
    # =========================================================================

    def mutate(self, table: str, ops: Union[Mutation, Iterable[Mutation]]) -> int:
        """
        Apply one or more mutations atomically.

        Capture hooks run inside the same transaction, so a change is never
        recorded without its mutation and vice versa.

        Args:
            table: Table name
            ops: A mutation or an iterable of mutations

        Returns:
            Number of rows affected
        """
        if isinstance(ops, (Insert, Update, Delete)):
            ops = [ops]

        schema = self.get_schema(table)
        affected = 0
        with self.transaction():
            for op in ops:
                change = self._apply(schema, op)
                if change is None:
                    continue
                affected += 1
                for hook in list(self._captures.get(table, [])):
                    hook(change)
        return affected

    def _apply(self, schema: TableSchema, op: Mutation) -> Optional[RowChange]:
        if isinstance(op, Insert):
            return self._apply_insert(schema, op)
        elif isinstance(op, Update):
            return self._apply_update(schema, op)
        elif isinstance(op, Delete):
            return self._apply_delete(schema, op)
        raise StorageError(f"Unsupported mutation: {op!r}")

    def _apply_insert(self, schema: TableSchema, op: Insert) -> RowChange:
        row = self._stamp(schema, dict(op.row))
        self._check_columns(schema, row)
        pk = schema.primary_key
        key = row.get(pk)
        if key is None:
            raise StorageError(f"INSERT into {schema.name} is missing primary key {pk}")

        table = quote_identifier(schema.name)
        before = self.get_row(schema.name, key)
        if before is None:
            columns = list(row)
            placeholders = ", ".join("?" for _ in columns)
            self.execute(
                f"INSERT INTO {table} ({quote_list(columns)}) VALUES ({placeholders})",
                [row[c] for c in columns],
            )
        else:
            # Re-insert of an existing key replaces the whole row
            columns = [c for c in schema.column_names if c != pk]
            if columns:
                assignments = ", ".join(f"{quote_identifier(c)} = ?" for c in columns)
                self.execute(
                    f"UPDATE {table} SET {assignments} WHERE {quote_identifier(pk)} = ?",
                    [row.get(c) for c in columns] + [key],
                )
        after = self.get_row(schema.name, key)
        return RowChange(schema.name, "INSERT", key, before=before, after=after)

    def _apply_update(self, schema: TableSchema, op: Update) -> Optional[RowChange]:
        pk = schema.primary_key
        values = dict(op.values)
        if pk in values:
            if values[pk] != op.key:
                raise StorageError(f"UPDATE cannot change primary key {pk} of {schema.name}")
            values.pop(pk)
        self._check_columns(schema, values)

        before = self.get_row(schema.name, op.key)
        if before is None:
            logger.debug("UPDATE %s key=%r matched no row", schema.name, op.key)
            return None

        values = self._stamp(schema, values)
        if values:
            assignments = ", ".join(f"{quote_identifier(c)} = ?" for c in values)
            self.execute(
                f"UPDATE {quote_identifier(schema.name)} SET {assignments} "
                f"WHERE {quote_identifier(pk)} = ?",
                list(values.values()) + [op.key],
            )
        after = self.get_row(schema.name, op.key)
        return RowChange(schema.name, "UPDATE", op.key, before=before, after=after)

    def _apply_delete(self, schema: TableSchema, op: Delete) -> Optional[RowChange]:
        before = self.get_row(schema.name, op.key)
        if before is None:
            logger.debug("DELETE %s key=%r matched no row", schema.name, op.key)
            return None
        self.execute(
            f"DELETE FROM {quote_identifier(schema.name)} "
            f"WHERE {quote_identifier(schema.primary_key)} = ?",
            [op.key],
        )
        return RowChange(schema.name, "DELETE", op.key, before=before, after=None)

    @staticmethod
    def _stamp(schema: TableSchema, values: Dict[str, Any]) -> Dict[str, Any]:
        ts = schema.timestamp_column
        if ts and values.get(ts) is None:
            values[ts] = utc_now()
        return values

    @staticmethod
    def _check_columns(schema: TableSchema, values: Dict[str, Any]):
        unknown = set(values) - set(schema.column_names)
        if unknown:
            raise StorageError(
                f"Unknown column(s) for {schema.name}: {', '.join(sorted(unknown))}"
            )

    # =========================================================================
    # Reads
    # =========================================================================

    def get_row(self, table: str, key: Any) -> Optional[Dict[str, Any]]:
        """Get one row by primary key, or None."""
        schema = self.get_schema(table)
        rows = self.query(
            f"SELECT * FROM {quote_identifier(table)} "
            f"WHERE {quote_identifier(schema.primary_key)} = ?",
            [key],
        )
        return rows[0] if rows else None

    def key_exists(self, table: str, key: Any) -> bool:
        schema = self.get_schema(table)
        rows = self.execute(
            f"SELECT 1 FROM {quote_identifier(table)} "
            f"WHERE {quote_identifier(schema.primary_key)} = ? LIMIT 1",
            [key],
        )
        return bool(rows)

    def read_rows(self, table: str) -> List[Dict[str, Any]]:
        """All rows of a table ordered by primary key."""
        schema = self.get_schema(table)
        return self.query(
            f"SELECT * FROM {quote_identifier(table)} "
            f"ORDER BY {quote_identifier(schema.primary_key)}"
        )

    def read_all(self, table: str) -> pa.Table:
        """All rows of a table as an Arrow table ordered by primary key."""
        schema = self.get_schema(table)
        return schema.to_arrow(self.read_rows(table))

    def row_count(self, table: str) -> int:
        self.get_schema(table)
        return self.execute(f"SELECT COUNT(*) FROM {quote_identifier(table)}")[0][0]

    # =========================================================================
    # Lifecycle
    # =========================================================================

    def ping(self) -> bool:
        """Test if the store is usable."""
        if self._closed:
            return False
        try:
            self.execute("SELECT 1")
            return True
        except StorageError:
            return False

    @property
    def is_closed(self) -> bool:
        return self._closed

    @property
    def database(self) -> str:
        return self._database

    def close(self):
        with self._lock:
            if not self._closed:
                self._conn.close()
                self._closed = True
                logger.debug("TableStore closed")

    def __repr__(self) -> str:
        status = "closed" if self._closed else "open"
        return f"<TableStore database={self._database} status={status}>"
