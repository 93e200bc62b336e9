"""
SQL helpers - identifier quoting and type handling for generated DuckDB statements

All statements the engine runs are built internally; these helpers keep table
and column names safely quoted and validate declared column types with sqlglot.
"""

from __future__ import annotations
import logging
from typing import List, Optional

import pyarrow as pa
import sqlglot
from sqlglot import exp

from streamtask.exceptions import ConfigurationError

logger = logging.getLogger(__name__)

DIALECT = "duckdb"

_ARROW_TYPES = {
    exp.DataType.Type.TINYINT: pa.int8(),
    exp.DataType.Type.SMALLINT: pa.int16(),
    exp.DataType.Type.INT: pa.int32(),
    exp.DataType.Type.BIGINT: pa.int64(),
    exp.DataType.Type.BOOLEAN: pa.bool_(),
    exp.DataType.Type.FLOAT: pa.float32(),
    exp.DataType.Type.DOUBLE: pa.float64(),
    exp.DataType.Type.CHAR: pa.string(),
    exp.DataType.Type.VARCHAR: pa.string(),
    exp.DataType.Type.TEXT: pa.string(),
    exp.DataType.Type.DATE: pa.date32(),
    exp.DataType.Type.TIMESTAMP: pa.timestamp("us"),
    exp.DataType.Type.TIMESTAMPTZ: pa.timestamp("us", tz="UTC"),
}


def quote_identifier(name: str) -> str:
    """
    Quote a table or column name for DuckDB.

    Args:
        name: Raw identifier

    Returns:
        Double-quoted identifier with embedded quotes escaped
    """
    if not name or "\x00" in name:
        raise ConfigurationError(f"Invalid identifier: {name!r}")
    return exp.to_identifier(name, quoted=True).sql(dialect=DIALECT)


def quote_list(names: List[str]) -> str:
    """Comma-separated quoted identifiers."""
    return ", ".join(quote_identifier(n) for n in names)


def parse_data_type(type_name: str) -> exp.DataType:
    """
    Parse a DuckDB column type with sqlglot.

    Raises:
        ConfigurationError: If the type cannot be parsed
    """
    try:
        return exp.DataType.build(type_name, dialect=DIALECT)
    except (sqlglot.errors.ParseError, ValueError) as e:
        raise ConfigurationError(f"Invalid column type {type_name!r}: {e}") from e


def arrow_type(type_name: str) -> Optional[pa.DataType]:
    """
    Map a DuckDB type name to an Arrow type.

    Returns None for types without a fixed mapping (DECIMAL, nested types);
    callers let Arrow infer those from the values.
    """
    try:
        data_type = parse_data_type(type_name)
    except ConfigurationError:
        logger.debug("No Arrow mapping for unparsable type %s", type_name)
        return None
    return _ARROW_TYPES.get(data_type.this)
