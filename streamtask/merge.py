"""
Merge Applier - reconciles a target table with a batch of change entries

Rule selection per entry (action, is_update, target has key):

    DELETE  false  yes  -> delete target row
    INSERT  true   yes  -> overwrite target row with the snapshot
    INSERT  false  yes  -> overwrite target row (re-insert treated as upsert)
    INSERT  false  no   -> insert new target row

Every other combination is a no-op. Rules read the current target state
rather than an "already applied" marker, so applying a batch twice leaves
the target as applying it once.
"""

from __future__ import annotations
import logging
import time
from dataclasses import dataclass
from typing import Any, Dict, Iterable, Optional, TYPE_CHECKING

from streamtask.cdc.models import ChangeAction, ChangeEntry
from streamtask.exceptions import ConfigurationError, StorageError, TransactionAbort
from streamtask.mutations import Delete, Insert, Update
from streamtask.schema import TableSchema

if TYPE_CHECKING:
    from streamtask.store import TableStore

logger = logging.getLogger(__name__)


@dataclass
class MergeResult:
    """Counts from one apply."""
    inserted: int = 0
    updated: int = 0
    deleted: int = 0
    skipped: int = 0

    @property
    def entries(self) -> int:
        return self.inserted + self.updated + self.deleted + self.skipped

    def to_dict(self) -> Dict[str, Any]:
        return {
            "inserted": self.inserted,
            "updated": self.updated,
            "deleted": self.deleted,
            "skipped": self.skipped,
            "entries": self.entries,
        }


class MergeApplier:
    """Applies change batches to target tables, one transaction per batch."""

    def __init__(self, store: "TableStore"):
        self._store = store

    def check_compatible(self, source: TableSchema, target: str) -> TableSchema:
        """
        Verify a target table can receive changes from ``source``.

        The target must exist and be keyed by the source's primary key column.

        Raises:
            ConfigurationError: If the target is missing or keyed differently
        """
        target_schema = self._store.get_schema(target)
        if target_schema.primary_key != source.primary_key:
            raise ConfigurationError(
                f"Target {target} is keyed by {target_schema.primary_key}, "
                f"but source {source.name} is keyed by {source.primary_key}"
            )
        return target_schema

    def apply(
        self,
        target: str,
        entries: Iterable[ChangeEntry],
        deadline: Optional[float] = None,
    ) -> MergeResult:
        """
        Apply entries to ``target`` in ascending sequence order, atomically.

        Args:
            target: Target table name
            entries: Change entries (a ChangeBatch or any iterable)
            deadline: ``time.monotonic()`` value after which the attempt is
                abandoned and rolled back

        Returns:
            MergeResult with per-rule counts

        Raises:
            TransactionAbort: If anything fails or the deadline passes; no
                entry of the batch is applied
        """
        target_schema = self._store.get_schema(target)
        ordered = sorted(entries, key=lambda e: e.sequence)
        result = MergeResult()

        try:
            with self._store.transaction():
                for entry in ordered:
                    if deadline is not None and time.monotonic() >= deadline:
                        raise TransactionAbort(
                            f"Merge into {target} timed out after {result.entries} of "
                            f"{len(ordered)} change(s)"
                        )
                    self._apply_entry(target_schema, entry, result)
        except StorageError as e:
            raise TransactionAbort(f"Merge into {target} rolled back: {e}") from e

        logger.info(
            "Merged %d change(s) into %s: %d inserted, %d updated, %d deleted, %d skipped",
            result.entries, target, result.inserted, result.updated, result.deleted, result.skipped,
        )
        return result

    def _apply_entry(self, target: TableSchema, entry: ChangeEntry, result: MergeResult):
        exists = self._store.key_exists(target.name, entry.key)
        snapshot = target.project(entry.row)

        if entry.action is ChangeAction.DELETE:
            if not entry.is_update and exists:
                self._store.mutate(target.name, Delete(entry.key))
                result.deleted += 1
                return
        elif entry.action is ChangeAction.INSERT:
            if exists:
                values = {k: v for k, v in snapshot.items() if k != target.primary_key}
                self._store.mutate(target.name, Update(entry.key, values))
                result.updated += 1
                return
            if not entry.is_update:
                snapshot[target.primary_key] = entry.key
                self._store.mutate(target.name, Insert(snapshot))
                result.inserted += 1
                return

        result.skipped += 1
        logger.debug(
            "No merge rule for %s is_update=%s key=%r exists=%s (seq %d); skipped",
            entry.action.value, entry.is_update, entry.key, exists, entry.sequence,
        )
