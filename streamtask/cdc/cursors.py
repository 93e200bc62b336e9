"""
Cursor Store - durable per-consumer offsets into change logs

One record per consumer in ``__streamtask_cursors``. Advances are a
compare-and-set on a version column, so a cursor only ever moves forward and
concurrent progress is never overwritten.
"""

from __future__ import annotations
import logging
from typing import Any, Dict, List, Optional, TYPE_CHECKING

from streamtask.exceptions import ConcurrentCursorConflict, ConfigurationError
from streamtask.store import INTERNAL_PREFIX, utc_now
from streamtask.sql import quote_identifier

if TYPE_CHECKING:
    from streamtask.store import TableStore

logger = logging.getLogger(__name__)

CURSOR_TABLE = f"{INTERNAL_PREFIX}streamtask_cursors"


class CursorStore:
    """
    Tracks ``last_sequence`` (changes already exposed) per consumer.

    Unknown consumers read as 0. ``advance`` never decreases a cursor.
    """

    def __init__(self, store: "TableStore", cas_retries: int = 5):
        self._store = store
        self._cas_retries = max(1, cas_retries)
        self._table = quote_identifier(CURSOR_TABLE)
        store.execute(
            f"CREATE TABLE IF NOT EXISTS {self._table} ("
            "consumer_id VARCHAR PRIMARY KEY, "
            "source_table VARCHAR, "
            "last_sequence BIGINT NOT NULL, "
            "version BIGINT NOT NULL, "
            "created_at TIMESTAMP, "
            "updated_at TIMESTAMP)"
        )

    def _read(self, consumer: str) -> Optional[Dict[str, Any]]:
        rows = self._store.query(
            f"SELECT * FROM {self._table} WHERE consumer_id = ?", [consumer]
        )
        return rows[0] if rows else None

    def get(self, consumer: str) -> int:
        """Last consumed sequence; 0 for an unknown consumer."""
        record = self._read(consumer)
        return record["last_sequence"] if record else 0

    def version(self, consumer: str) -> int:
        """Current CAS version; 0 for an unknown consumer."""
        record = self._read(consumer)
        return record["version"] if record else 0

    def advance(self, consumer: str, sequence: int, expected_version: int = None) -> int:
        """
        Set the cursor to ``max(current, sequence)``.

        Args:
            consumer: Consumer id
            sequence: Sequence the consumer has now seen
            expected_version: If given, fail unless the cursor is still at this
                version (optimistic callers). Otherwise lost CAS races are
                retried up to ``cas_retries`` times.

        Returns:
            The cursor value after the call

        Raises:
            ConcurrentCursorConflict: On a stale ``expected_version`` or when
                retries are exhausted
        """
        for attempt in range(1, self._cas_retries + 1):
            with self._store.transaction():
                record = self._read(consumer)
                if record is None:
                    self._store.execute(
                        f"INSERT INTO {self._table} VALUES (?, NULL, 0, 0, ?, ?) "
                        "ON CONFLICT DO NOTHING",
                        [consumer, utc_now(), utc_now()],
                    )
                    record = self._read(consumer)

                if expected_version is not None and record["version"] != expected_version:
                    raise ConcurrentCursorConflict(
                        f"Cursor for {consumer} is at version {record['version']}, "
                        f"expected {expected_version}",
                        consumer=consumer,
                        expected_version=expected_version,
                        actual_version=record["version"],
                    )

                current = record["last_sequence"]
                if sequence <= current:
                    return current

                updated = self._store.execute(
                    f"UPDATE {self._table} "
                    "SET last_sequence = ?, version = version + 1, updated_at = ? "
                    "WHERE consumer_id = ? AND version = ? "
                    "RETURNING last_sequence",
                    [sequence, utc_now(), consumer, record["version"]],
                )
                if updated:
                    logger.debug("Cursor %s advanced %d -> %d", consumer, current, sequence)
                    return updated[0][0]

            logger.debug("Cursor %s CAS lost (attempt %d)", consumer, attempt)

        raise ConcurrentCursorConflict(
            f"Could not advance cursor for {consumer} after {self._cas_retries} attempts",
            consumer=consumer,
        )

    # =========================================================================
    # Consumer registration
    # =========================================================================

    def register(
        self,
        consumer: str,
        source_table: str,
        start_sequence: int = 0,
        replace: bool = False,
    ) -> Dict[str, Any]:
        """
        Register a consumer of ``source_table``'s change log.

        Args:
            consumer: Consumer (stream) id
            source_table: Table whose log the consumer reads
            start_sequence: Initial cursor; entries up to it are never exposed
            replace: Reset an existing registration instead of failing
        """
        now = utc_now()
        with self._store.transaction():
            existing = self._read(consumer)
            if existing is not None and existing["source_table"] is not None and not replace:
                raise ConfigurationError(f"Stream already exists: {consumer}")
            if existing is None:
                self._store.execute(
                    f"INSERT INTO {self._table} VALUES (?, ?, ?, 0, ?, ?)",
                    [consumer, source_table, start_sequence, now, now],
                )
            else:
                self._store.execute(
                    f"UPDATE {self._table} SET source_table = ?, last_sequence = ?, "
                    "version = version + 1, created_at = ?, updated_at = ? "
                    "WHERE consumer_id = ?",
                    [source_table, start_sequence, now, now, consumer],
                )
            record = self._read(consumer)
        logger.debug("Registered consumer %s on %s at %d", consumer, source_table, start_sequence)
        return record

    def unregister(self, consumer: str) -> bool:
        with self._store.transaction():
            if self._read(consumer) is None:
                return False
            self._store.execute(f"DELETE FROM {self._table} WHERE consumer_id = ?", [consumer])
        return True

    def describe(self, consumer: str) -> Optional[Dict[str, Any]]:
        """Cursor record for a registered consumer, or None."""
        record = self._read(consumer)
        if record is None or record["source_table"] is None:
            return None
        return record

    def list_consumers(self, source_table: str = None) -> List[Dict[str, Any]]:
        """Registered consumers, optionally only those reading ``source_table``."""
        if source_table is None:
            return self._store.query(
                f"SELECT * FROM {self._table} WHERE source_table IS NOT NULL ORDER BY consumer_id"
            )
        return self._store.query(
            f"SELECT * FROM {self._table} WHERE source_table = ? ORDER BY consumer_id",
            [source_table],
        )
