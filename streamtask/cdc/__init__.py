"""
Change Data Capture (CDC) - change logs, cursors and change views

A source table's mutations are appended to its change log in the same
transaction. Each consumer reads the log through a change view that hides
entries at or below its cursor, so every change is delivered once.
"""

from streamtask.cdc.models import (
    ChangeAction,
    ChangeBatch,
    ChangeEntry,
    row_id_for,
)
from streamtask.cdc.log import ChangeLog
from streamtask.cdc.cursors import CursorStore
from streamtask.cdc.view import ChangeView, Stream

__all__ = [
    "ChangeAction",
    "ChangeBatch",
    "ChangeEntry",
    "row_id_for",
    "ChangeLog",
    "CursorStore",
    "ChangeView",
    "Stream",
]
