"""
Change View - the not-yet-consumed entries of a change log for each consumer
"""

from __future__ import annotations
import logging
import threading
from contextlib import contextmanager
from typing import Dict, Iterator, Optional, TYPE_CHECKING

import pyarrow as pa

from streamtask.cdc.models import ChangeBatch

if TYPE_CHECKING:
    from streamtask.cdc.cursors import CursorStore
    from streamtask.cdc.log import ChangeLog

logger = logging.getLogger(__name__)


class ChangeView:
    """
    Exposes a change log to consumers exactly once.

    - peek(): entries after the consumer's cursor, read-only
    - consume(): same entries, then advance the cursor to the last one
    - has_data(): whether peek() would return anything

    Consumes for the same consumer are serialized by a per-consumer lock, so
    two concurrent consumes never both receive an entry. Writers are not
    blocked; entries appended after a snapshot is read wait for the next call.
    """

    def __init__(self, log: "ChangeLog", cursors: "CursorStore", max_batch_size: int = None):
        self._log = log
        self._cursors = cursors
        self._max_batch_size = max_batch_size
        self._locks: Dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()

    def _consumer_lock(self, consumer: str) -> threading.Lock:
        with self._locks_guard:
            lock = self._locks.get(consumer)
            if lock is None:
                lock = self._locks[consumer] = threading.Lock()
            return lock

    def peek(self, consumer: str, limit: int = None) -> ChangeBatch:
        """Unconsumed entries in ascending sequence order. Does not move the cursor."""
        limit = limit if limit is not None else self._max_batch_size
        cursor = self._cursors.get(consumer)
        return self._log.batch_after(consumer, cursor, limit)

    def has_data(self, consumer: str) -> bool:
        """True if the consumer has unconsumed entries. Never mutates state."""
        return self._log.has_entries_after(self._cursors.get(consumer))

    def consume(self, consumer: str, limit: int = None) -> ChangeBatch:
        """Return the unconsumed entries and advance the cursor past them."""
        with self.batch(consumer, limit) as batch:
            pass
        return batch

    @contextmanager
    def batch(self, consumer: str, limit: int = None) -> Iterator[ChangeBatch]:
        """
        Consume as a unit of work.

        Holds the consumer lock for the whole block and advances the cursor
        only if the block finishes without raising; on error the entries stay
        visible for the next attempt.

        Usage:
            with view.batch("students_stream") as batch:
                applier.apply("prod_students", batch)
        """
        with self._consumer_lock(consumer):
            batch = self.peek(consumer, limit)
            yield batch
            if not batch.is_empty:
                self._cursors.advance(consumer, batch.max_sequence)
                logger.debug("Consumer %s consumed %d change(s) through %d",
                             consumer, len(batch), batch.max_sequence)

    @property
    def log(self) -> "ChangeLog":
        return self._log


class Stream:
    """
    A named consumer bound to one table's change view.

    Usage:
        stream = conn.stream("students_stream")
        if stream.has_data():
            print(stream.to_arrow())
    """

    def __init__(self, name: str, view: ChangeView):
        self._name = name
        self._view = view

    @property
    def name(self) -> str:
        return self._name

    @property
    def source_table(self) -> str:
        return self._view.log.table

    def peek(self, limit: int = None) -> ChangeBatch:
        return self._view.peek(self._name, limit)

    def consume(self, limit: int = None) -> ChangeBatch:
        return self._view.consume(self._name, limit)

    def has_data(self) -> bool:
        return self._view.has_data(self._name)

    def batch(self, limit: int = None):
        return self._view.batch(self._name, limit)

    def to_arrow(self) -> pa.Table:
        """Unconsumed changes with METADATA$ columns, like selecting from the stream."""
        return self.peek().to_arrow()

    def __len__(self) -> int:
        return len(self.peek())

    def __repr__(self) -> str:
        return f"<Stream name={self._name} table={self.source_table}>"
