"""
Table schemas - column definitions shared by source, target and change-log tables
"""

from __future__ import annotations
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import pyarrow as pa

from streamtask.exceptions import ConfigurationError
from streamtask.sql import arrow_type, parse_data_type, quote_identifier


@dataclass
class ColumnInfo:
    """Column metadata."""
    name: str
    data_type: str
    nullable: bool = True
    primary_key: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "data_type": self.data_type,
            "nullable": self.nullable,
            "primary_key": self.primary_key,
        }


@dataclass
class TableSchema:
    """
    Schema of a store table.

    Exactly one column is the primary key. When ``timestamp_column`` is set,
    the store stamps it with the current UTC time on every insert or update
    that does not supply a value.
    """
    name: str
    columns: List[ColumnInfo] = field(default_factory=list)
    timestamp_column: Optional[str] = None

    def __post_init__(self):
        if not self.columns:
            raise ConfigurationError(f"Table {self.name} has no columns")

        seen = set()
        for col in self.columns:
            if col.name in seen:
                raise ConfigurationError(f"Duplicate column {col.name} in table {self.name}")
            seen.add(col.name)
            parse_data_type(col.data_type)
            col.data_type = col.data_type.strip().upper()

        keys = [c for c in self.columns if c.primary_key]
        if len(keys) != 1:
            raise ConfigurationError(
                f"Table {self.name} must have exactly one primary key column, found {len(keys)}"
            )

        if self.timestamp_column and self.timestamp_column not in seen:
            raise ConfigurationError(
                f"Timestamp column {self.timestamp_column} is not a column of {self.name}"
            )

    @classmethod
    def build(
        cls,
        name: str,
        columns: Dict[str, str],
        primary_key: str,
        timestamp_column: str = None,
    ) -> "TableSchema":
        """
        Build a schema from a ``{column: type}`` mapping.

        Example:
            TableSchema.build(
                "students",
                {"student_id": "INTEGER", "name": "VARCHAR", "major": "VARCHAR",
                 "last_update": "TIMESTAMP"},
                primary_key="student_id",
                timestamp_column="last_update",
            )
        """
        if primary_key not in columns:
            raise ConfigurationError(f"Primary key {primary_key} is not a column of {name}")
        return cls(
            name=name,
            columns=[
                ColumnInfo(
                    name=col,
                    data_type=dtype,
                    nullable=col != primary_key,
                    primary_key=col == primary_key,
                )
                for col, dtype in columns.items()
            ],
            timestamp_column=timestamp_column,
        )

    @property
    def primary_key(self) -> str:
        return next(c.name for c in self.columns if c.primary_key)

    @property
    def column_names(self) -> List[str]:
        return [c.name for c in self.columns]

    def column(self, name: str) -> Optional[ColumnInfo]:
        for col in self.columns:
            if col.name == name:
                return col
        return None

    def ddl(self, with_constraints: bool = True) -> str:
        """Column definitions for CREATE TABLE."""
        parts = []
        for col in self.columns:
            part = f"{quote_identifier(col.name)} {col.data_type}"
            if with_constraints:
                if col.primary_key:
                    part += " PRIMARY KEY"
                elif not col.nullable:
                    part += " NOT NULL"
            parts.append(part)
        return ", ".join(parts)

    def to_arrow(self, rows: List[Dict[str, Any]]) -> pa.Table:
        """
        Convert row mappings to an Arrow table in column order.

        Columns whose type has no fixed Arrow mapping are inferred from values.
        """
        arrays = []
        fields = []
        for col in self.columns:
            values = [row.get(col.name) for row in rows]
            array = pa.array(values, type=arrow_type(col.data_type))
            arrays.append(array)
            fields.append(pa.field(col.name, array.type, nullable=col.nullable))
        return pa.Table.from_arrays(arrays, schema=pa.schema(fields))

    def project(self, row: Dict[str, Any]) -> Dict[str, Any]:
        """Keep only this schema's columns from a row mapping."""
        return {name: row[name] for name in self.column_names if name in row}
