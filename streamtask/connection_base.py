"""
StreamTask Connection Base - Common functionality for sync and async connections
"""

from __future__ import annotations
import logging
from typing import Any, Dict
from urllib.parse import urlparse, parse_qs

from streamtask.config import StreamTaskConfig
from streamtask.exceptions import ConfigurationError

logger = logging.getLogger(__name__)

MEMORY = ":memory:"


class ConnectionMixin:
    """
    Common functionality shared between sync and async connections.

    Provides:
    - Connection string parsing
    - Config resolution from connection string, config object and kwargs
    """

    @staticmethod
    def parse_connection_string(conn_str: str) -> Dict[str, Any]:
        """
        Parse a database location.

        Supported formats:
        - :memory: or memory://
        - duckdb:///path/to/file.db
        - /path/to/file.db (plain path)

        Query parameters become configuration overrides.

        Args:
            conn_str: Connection string to parse

        Returns:
            Dict with 'database' and 'params' keys

        Examples:
            >>> parse_connection_string("duckdb:///data/cdc.db?poll_interval=0.5")
            {'database': '/data/cdc.db', 'params': {'poll_interval': '0.5'}}
        """
        if conn_str in (MEMORY, "memory://", "duckdb://", "duckdb://:memory:"):
            return {"database": MEMORY, "params": {}}

        parsed = urlparse(conn_str)
        params = {k: v[0] if len(v) == 1 else v for k, v in parse_qs(parsed.query).items()}

        if parsed.scheme in ("", "file") or len(parsed.scheme) == 1:
            # Plain path (a one-letter scheme is a Windows drive)
            database = conn_str.split("?", 1)[0] if parsed.scheme != "file" else parsed.path
        elif parsed.scheme == "memory":
            database = MEMORY
        elif parsed.scheme == "duckdb":
            database = (parsed.netloc + parsed.path) or MEMORY
        else:
            raise ConfigurationError(f"Unsupported connection string scheme: {parsed.scheme}")

        result = {"database": database, "params": params}
        logger.debug("Parsed connection string: database=%s, params=%s", database, sorted(params))
        return result

    @classmethod
    def resolve_config(
        cls,
        connection_string: str = None,
        config: StreamTaskConfig = None,
        **kwargs,
    ) -> StreamTaskConfig:
        """
        Combine the sources of configuration.

        Precedence, lowest first: ``config`` (or defaults), connection
        string, explicit keyword arguments.
        """
        config = config or StreamTaskConfig()
        overrides: Dict[str, Any] = {}
        if connection_string:
            parsed = cls.parse_connection_string(connection_string)
            overrides["database"] = parsed["database"]
            overrides.update(parsed["params"])
        overrides.update(kwargs)
        return config.merged(overrides)
