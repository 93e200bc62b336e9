"""
StreamTask Config - engine settings with environment overrides
"""

from __future__ import annotations
import dataclasses
import os
from dataclasses import dataclass
from typing import Any, Dict, Mapping, Optional

from streamtask.exceptions import ConfigurationError

ENV_PREFIX = "STREAMTASK_"

_TRUE = {"1", "true", "yes", "on"}
_FALSE = {"0", "false", "no", "off"}


@dataclass
class StreamTaskConfig:
    """Configuration for a StreamTask connection"""

    # Storage
    database: str = ":memory:"
    read_only: bool = False

    # Change capture
    cas_retries: int = 5
    max_batch_size: Optional[int] = None  # None = whole backlog per run

    # Scheduling
    poll_interval: float = 1.0
    default_task_timeout: Optional[float] = None
    history_size: int = 1000

    @classmethod
    def from_env(cls, environ: Mapping[str, str] = None) -> "StreamTaskConfig":
        """
        Load configuration from STREAMTASK_* environment variables.

        e.g. STREAMTASK_DATABASE=/var/lib/app/cdc.db, STREAMTASK_POLL_INTERVAL=0.5
        """
        environ = os.environ if environ is None else environ
        values = {}
        for f in dataclasses.fields(cls):
            key = ENV_PREFIX + f.name.upper()
            if key in environ:
                values[f.name] = environ[key]
        return cls.from_dict(values)

    @classmethod
    def from_dict(cls, values: Mapping[str, Any]) -> "StreamTaskConfig":
        """
        Build a config from a mapping, coercing string values.

        Raises:
            ConfigurationError: On unknown keys or values of the wrong type
        """
        return cls().merged(values)

    def merged(self, values: Mapping[str, Any]) -> "StreamTaskConfig":
        """Copy of this config with ``values`` applied on top."""
        fields = {f.name: f for f in dataclasses.fields(self)}
        unknown = sorted(set(values) - set(fields))
        if unknown:
            raise ConfigurationError(f"Unknown configuration option(s): {', '.join(unknown)}")

        changes = {
            name: _coerce(name, fields[name].default, value)
            for name, value in values.items()
        }
        config = dataclasses.replace(self, **changes)
        config.validate()
        return config

    def validate(self) -> None:
        """Validate configuration settings"""
        errors = []

        if not self.database:
            errors.append("database must not be empty")

        if self.cas_retries <= 0:
            errors.append("cas_retries must be positive")

        if self.max_batch_size is not None and self.max_batch_size <= 0:
            errors.append("max_batch_size must be positive")

        if self.poll_interval <= 0:
            errors.append("poll_interval must be positive")

        if self.default_task_timeout is not None and self.default_task_timeout <= 0:
            errors.append("default_task_timeout must be positive")

        if self.history_size <= 0:
            errors.append("history_size must be positive")

        if errors:
            raise ConfigurationError(f"Configuration validation errors: {'; '.join(errors)}")

    def to_dict(self) -> Dict[str, Any]:
        return dataclasses.asdict(self)


# Types of the optional fields, whose defaults are None
_OPTIONAL_TYPES = {
    "max_batch_size": int,
    "default_task_timeout": float,
}


def _coerce(name: str, default: Any, value: Any) -> Any:
    if not isinstance(value, str):
        return value

    text = value.strip()
    if isinstance(default, bool):
        if text.lower() in _TRUE:
            return True
        if text.lower() in _FALSE:
            return False
        raise ConfigurationError(f"{name} must be a boolean, got {value!r}")

    target = _OPTIONAL_TYPES.get(name) or type(default)
    if name in _OPTIONAL_TYPES and text.lower() in ("", "none", "null"):
        return None
    if target is str:
        return text
    try:
        return target(text)
    except ValueError as e:
        raise ConfigurationError(f"{name} must be {target.__name__}, got {value!r}") from e
