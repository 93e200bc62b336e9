"""
Data models for change data capture
"""

from __future__ import annotations
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Iterator, List, Optional

import pyarrow as pa

from streamtask.schema import TableSchema

# Namespace for deterministic row ids
ROW_ID_NAMESPACE = uuid.UUID("6c1e0b8a-5f0e-4f2b-9a57-2f1d0c3e8b41")

METADATA_ACTION = "METADATA$ACTION"
METADATA_ISUPDATE = "METADATA$ISUPDATE"
METADATA_ROW_ID = "METADATA$ROW_ID"
METADATA_SEQUENCE = "METADATA$SEQUENCE"


class ChangeAction(str, Enum):
    """Action recorded for a change entry. Updates are a DELETE+INSERT pair."""
    INSERT = "INSERT"
    DELETE = "DELETE"


def row_id_for(table: str, key: Any) -> str:
    """Stable identifier of a source row, the same for every change touching it."""
    return str(uuid.uuid5(ROW_ID_NAMESPACE, f"{table}:{key!r}"))


@dataclass(frozen=True)
class ChangeEntry:
    """One immutable record in a table's change log."""
    sequence: int
    table: str
    key: Any
    action: ChangeAction
    is_update: bool
    row: Dict[str, Any]
    row_id: str
    changed_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        """Row snapshot plus warehouse-style metadata columns."""
        return {
            **self.row,
            METADATA_ACTION: self.action.value,
            METADATA_ISUPDATE: self.is_update,
            METADATA_ROW_ID: self.row_id,
            METADATA_SEQUENCE: self.sequence,
        }


@dataclass
class ChangeBatch:
    """
    Entries handed to one consumer in one consume, ascending by sequence.
    """
    consumer: str
    entries: List[ChangeEntry] = field(default_factory=list)
    schema: Optional[TableSchema] = None

    @property
    def max_sequence(self) -> Optional[int]:
        return self.entries[-1].sequence if self.entries else None

    @property
    def is_empty(self) -> bool:
        return not self.entries

    def __len__(self) -> int:
        return len(self.entries)

    def __iter__(self) -> Iterator[ChangeEntry]:
        return iter(self.entries)

    def to_arrow(self) -> pa.Table:
        """
        Batch as an Arrow table: source columns followed by
        METADATA$ACTION, METADATA$ISUPDATE, METADATA$ROW_ID, METADATA$SEQUENCE.
        """
        if self.schema is not None:
            table = self.schema.to_arrow([e.row for e in self.entries])
        else:
            table = pa.Table.from_pylist([e.row for e in self.entries])
        table = table.append_column(
            METADATA_ACTION, pa.array([e.action.value for e in self.entries], type=pa.string()))
        table = table.append_column(
            METADATA_ISUPDATE, pa.array([e.is_update for e in self.entries], type=pa.bool_()))
        table = table.append_column(
            METADATA_ROW_ID, pa.array([e.row_id for e in self.entries], type=pa.string()))
        table = table.append_column(
            METADATA_SEQUENCE, pa.array([e.sequence for e in self.entries], type=pa.int64()))
        return table
