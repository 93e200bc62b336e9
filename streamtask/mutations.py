"""
Mutations - row-level write operations accepted by the table store
"""

from __future__ import annotations
from dataclasses import dataclass, field
from typing import Any, Dict, Optional


@dataclass(frozen=True)
class Insert:
    """Insert a row. Inserting an existing key replaces that row."""
    row: Dict[str, Any]


@dataclass(frozen=True)
class Update:
    """Set ``values`` on the row identified by ``key``."""
    key: Any
    values: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class Delete:
    """Delete the row identified by ``key``."""
    key: Any


@dataclass(frozen=True)
class RowChange:
    """
    Effect of one applied mutation, handed to capture hooks.

    ``kind`` is the mutation kind ("INSERT", "UPDATE", "DELETE"); ``before`` is
    None for a fresh insert, ``after`` is None for a delete. An insert that
    replaced an existing row carries both images.
    """
    table: str
    kind: str
    key: Any
    before: Optional[Dict[str, Any]] = None
    after: Optional[Dict[str, Any]] = None
