"""
Change Log - append-only, ordered record of row mutations on one source table

Each source table gets a log table ``__changes_<table>`` holding the metadata
columns (_seq, _action, _is_update, _row_id, _changed_at) followed by a
snapshot of the source columns. Entries are written by a capture hook inside
the transaction that mutates the source, so they commit or roll back with it.
"""

from __future__ import annotations
import logging
from typing import Any, Dict, List, Optional, TYPE_CHECKING

from streamtask.cdc.models import ChangeAction, ChangeBatch, ChangeEntry, row_id_for
from streamtask.exceptions import ConfigurationError
from streamtask.mutations import RowChange
from streamtask.store import INTERNAL_PREFIX, utc_now
from streamtask.sql import quote_identifier, quote_list

if TYPE_CHECKING:
    from streamtask.store import TableStore

logger = logging.getLogger(__name__)

METADATA_COLUMNS = ("_seq", "_action", "_is_update", "_row_id", "_changed_at")

# Sequence high-water marks, so purged logs never reuse a sequence
STATE_TABLE = f"{INTERNAL_PREFIX}streamtask_log_state"


def log_table_name(table: str) -> str:
    return f"{INTERNAL_PREFIX}changes_{table}"


class ChangeLog:
    """
    Change log for one source table.

    Sequences are strictly increasing and never reused. An UPDATE appends a
    DELETE (old image) then an INSERT (new image), both flagged is_update; a
    DELETE appends one DELETE; an INSERT, including a re-insert of an existing
    key, appends one INSERT with is_update false.
    """

    def __init__(self, store: "TableStore", table: str):
        self._store = store
        self._table = table
        self._schema = store.get_schema(table)
        self._log_table = log_table_name(table)
        self._attached = False

        clashes = [c for c in self._schema.column_names if c in METADATA_COLUMNS]
        if clashes:
            raise ConfigurationError(
                f"Table {table} uses reserved change-log column name(s): {', '.join(clashes)}"
            )

        with store.transaction():
            self._ensure_tables()
            self._last_sequence = self._load_high_water_mark()

        logger.debug("ChangeLog ready: table=%s, last_sequence=%d", table, self._last_sequence)

    def _ensure_tables(self):
        self._store.execute(
            f"CREATE TABLE IF NOT EXISTS {quote_identifier(STATE_TABLE)} ("
            "table_name VARCHAR PRIMARY KEY, last_sequence BIGINT NOT NULL)"
        )
        self._store.execute(
            f"CREATE TABLE IF NOT EXISTS {quote_identifier(self._log_table)} ("
            "_seq BIGINT PRIMARY KEY, "
            "_action VARCHAR NOT NULL, "
            "_is_update BOOLEAN NOT NULL, "
            "_row_id VARCHAR NOT NULL, "
            "_changed_at TIMESTAMP NOT NULL, "
            f"{self._schema.ddl(with_constraints=False)})"
        )
        self._store.execute(
            f"INSERT INTO {quote_identifier(STATE_TABLE)} VALUES (?, 0) ON CONFLICT DO NOTHING",
            [self._table],
        )

    def _load_high_water_mark(self) -> int:
        stored = self._store.execute(
            f"SELECT last_sequence FROM {quote_identifier(STATE_TABLE)} WHERE table_name = ?",
            [self._table],
        )[0][0]
        logged = self._store.execute(
            f"SELECT COALESCE(MAX(_seq), 0) FROM {quote_identifier(self._log_table)}"
        )[0][0]
        return max(stored, logged)

    # =========================================================================
    # Capture
    # =========================================================================

    def attach(self):
        """Start recording mutations of the source table."""
        self._store.add_capture(self._table, self._on_change)
        self._attached = True

    def detach(self):
        """Stop recording. Existing entries are kept."""
        self._store.remove_capture(self._table, self._on_change)
        self._attached = False

    @property
    def attached(self) -> bool:
        return self._attached

    def _on_change(self, change: RowChange):
        if change.kind == "UPDATE":
            self.append([
                (ChangeAction.DELETE, True, change.before),
                (ChangeAction.INSERT, True, change.after),
            ])
        elif change.kind == "DELETE":
            self.append([(ChangeAction.DELETE, False, change.before)])
        else:
            self.append([(ChangeAction.INSERT, False, change.after)])

    def append(self, records: List[tuple]) -> List[ChangeEntry]:
        """
        Append ``(action, is_update, row_snapshot)`` records atomically.

        Runs inside the caller's transaction when there is one; on rollback
        the entries disappear with the mutation. Sequences consumed by a
        rolled-back append are skipped, never reused.
        """
        columns = list(METADATA_COLUMNS) + self._schema.column_names
        placeholders = ", ".join("?" for _ in columns)
        sql = (
            f"INSERT INTO {quote_identifier(self._log_table)} "
            f"({quote_list(columns)}) VALUES ({placeholders})"
        )
        pk = self._schema.primary_key
        changed_at = utc_now()
        entries = []

        with self._store.transaction():
            for action, is_update, row in records:
                self._last_sequence += 1
                snapshot = self._schema.project(row)
                key = snapshot.get(pk)
                entry = ChangeEntry(
                    sequence=self._last_sequence,
                    table=self._table,
                    key=key,
                    action=ChangeAction(action),
                    is_update=is_update,
                    row=snapshot,
                    row_id=row_id_for(self._table, key),
                    changed_at=changed_at,
                )
                self._store.execute(sql, [
                    entry.sequence, entry.action.value, entry.is_update, entry.row_id, changed_at,
                ] + [snapshot.get(c) for c in self._schema.column_names])
                entries.append(entry)

            self._store.execute(
                f"UPDATE {quote_identifier(STATE_TABLE)} SET last_sequence = ? WHERE table_name = ?",
                [self._last_sequence, self._table],
            )

        logger.debug("Appended %d change(s) to %s", len(entries), self._log_table)
        return entries

    # =========================================================================
    # Reads
    # =========================================================================

    def entries_after(self, sequence: int, limit: int = None) -> List[ChangeEntry]:
        """Entries with sequence > ``sequence``, ascending."""
        sql = (
            f"SELECT * FROM {quote_identifier(self._log_table)} "
            "WHERE _seq > ? ORDER BY _seq"
        )
        params: List[Any] = [sequence]
        if limit is not None:
            sql += " LIMIT ?"
            params.append(limit)
        return [self._to_entry(r) for r in self._store.query(sql, params)]

    def has_entries_after(self, sequence: int) -> bool:
        rows = self._store.execute(
            f"SELECT 1 FROM {quote_identifier(self._log_table)} WHERE _seq > ? LIMIT 1",
            [sequence],
        )
        return bool(rows)

    def max_sequence(self) -> int:
        """Highest sequence ever assigned (0 for an empty log)."""
        with self._store.transaction():
            return self._load_high_water_mark()

    def entry_count(self) -> int:
        return self._store.execute(
            f"SELECT COUNT(*) FROM {quote_identifier(self._log_table)}"
        )[0][0]

    def batch_after(self, consumer: str, sequence: int, limit: int = None) -> ChangeBatch:
        return ChangeBatch(
            consumer=consumer,
            entries=self.entries_after(sequence, limit),
            schema=self._schema,
        )

    def _to_entry(self, record: Dict[str, Any]) -> ChangeEntry:
        row = {c: record[c] for c in self._schema.column_names}
        key = row.get(self._schema.primary_key)
        return ChangeEntry(
            sequence=record["_seq"],
            table=self._table,
            key=key,
            action=ChangeAction(record["_action"]),
            is_update=record["_is_update"],
            row=row,
            row_id=record["_row_id"],
            changed_at=record["_changed_at"],
        )

    # =========================================================================
    # Retention
    # =========================================================================

    def purge_through(self, sequence: int) -> int:
        """
        Remove entries with sequence <= ``sequence``.

        Callers pass the lowest cursor among the table's consumers so no
        consumer loses entries it has not seen.

        Returns:
            Number of entries removed
        """
        with self._store.transaction():
            count = self._store.execute(
                f"SELECT COUNT(*) FROM {quote_identifier(self._log_table)} WHERE _seq <= ?",
                [sequence],
            )[0][0]
            if count:
                self._store.execute(
                    f"DELETE FROM {quote_identifier(self._log_table)} WHERE _seq <= ?",
                    [sequence],
                )
        if count:
            logger.info("Purged %d change(s) from %s through sequence %d",
                        count, self._log_table, sequence)
        return count

    def drop(self):
        """Detach and remove the log table."""
        self.detach()
        with self._store.transaction():
            self._store.execute(f"DROP TABLE IF EXISTS {quote_identifier(self._log_table)}")

    @property
    def table(self) -> str:
        return self._table

    @property
    def schema(self):
        return self._schema

    @property
    def log_table(self) -> str:
        return self._log_table

    def __repr__(self) -> str:
        return f"<ChangeLog table={self._table} last_sequence={self._last_sequence}>"
