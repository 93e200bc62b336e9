"""
Schedules - when a task runs, parsed once from its schedule text

Supported forms:
    "5 minute", "30 seconds", "2 hours"          -> FixedInterval
    "USING CRON 15 9 * * * America/New_York"      -> CronSchedule
    "AT 09:15 Europe/Paris"                       -> FixedTime (daily)
"""

from __future__ import annotations
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, time, timedelta, timezone
from typing import Dict, FrozenSet, Optional, Tuple
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from streamtask.exceptions import ConfigurationError

_INTERVAL_RE = re.compile(
    r"(\d+)\s*(s|sec|secs|second|seconds|m|min|mins|minute|minutes|h|hr|hrs|hour|hours)",
    re.IGNORECASE,
)
_UNIT_SECONDS = {"s": 1, "m": 60, "h": 3600}

_MONTH_NAMES = {
    name: i + 1 for i, name in enumerate(
        ["JAN", "FEB", "MAR", "APR", "MAY", "JUN", "JUL", "AUG", "SEP", "OCT", "NOV", "DEC"]
    )
}
_WEEKDAY_NAMES = {
    name: i for i, name in enumerate(["SUN", "MON", "TUE", "WED", "THU", "FRI", "SAT"])
}

# Searching further than this for a cron match means it can never fire
_CRON_SEARCH_LIMIT = timedelta(days=366 * 5)


def as_utc(value: datetime) -> datetime:
    """Treat naive datetimes as UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _zone(name: str) -> ZoneInfo:
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError) as e:
        raise ConfigurationError(f"Unknown timezone: {name}") from e


class Schedule(ABC):
    """Base class for schedules."""

    text: str

    @abstractmethod
    def next_run(self, after: datetime) -> datetime:
        """First run time strictly after ``after``, as an aware UTC datetime."""
        pass

    def __str__(self) -> str:
        return self.text


@dataclass(frozen=True)
class FixedInterval(Schedule):
    """Run every ``seconds`` seconds."""
    seconds: int
    text: str = ""

    def next_run(self, after: datetime) -> datetime:
        return as_utc(after) + timedelta(seconds=self.seconds)


@dataclass(frozen=True)
class FixedTime(Schedule):
    """Run once a day at a wall-clock time in ``timezone``."""
    at: time
    timezone: str = "UTC"
    text: str = ""

    def next_run(self, after: datetime) -> datetime:
        tz = _zone(self.timezone)
        local = as_utc(after).astimezone(tz)
        candidate = datetime.combine(local.date(), self.at, tzinfo=tz)
        if candidate <= local:
            candidate = datetime.combine(local.date() + timedelta(days=1), self.at, tzinfo=tz)
        return candidate.astimezone(timezone.utc)


@dataclass(frozen=True)
class CronSchedule(Schedule):
    """
    Five-field cron expression (minute hour day-of-month month day-of-week)
    evaluated in ``timezone``. Day-of-week 0 and 7 are Sunday. When both day
    fields are restricted a day matches if either does, as in cron.
    """
    minutes: FrozenSet[int]
    hours: FrozenSet[int]
    days: FrozenSet[int]
    months: FrozenSet[int]
    weekdays: FrozenSet[int]
    days_restricted: bool = False
    weekdays_restricted: bool = False
    timezone: str = "UTC"
    text: str = ""

    def _day_matches(self, moment: datetime) -> bool:
        day_ok = moment.day in self.days
        weekday_ok = (moment.weekday() + 1) % 7 in self.weekdays
        if self.days_restricted and self.weekdays_restricted:
            return day_ok or weekday_ok
        if self.days_restricted:
            return day_ok
        if self.weekdays_restricted:
            return weekday_ok
        return True

    def next_run(self, after: datetime) -> datetime:
        tz = _zone(self.timezone)
        local = as_utc(after).astimezone(tz).replace(tzinfo=None, second=0, microsecond=0)
        moment = local + timedelta(minutes=1)
        limit = moment + _CRON_SEARCH_LIMIT

        while moment < limit:
            if moment.month not in self.months:
                if moment.month == 12:
                    moment = datetime(moment.year + 1, 1, 1)
                else:
                    moment = datetime(moment.year, moment.month + 1, 1)
                continue
            if not self._day_matches(moment):
                moment = datetime(moment.year, moment.month, moment.day) + timedelta(days=1)
                continue
            if moment.hour not in self.hours:
                moment = moment.replace(minute=0) + timedelta(hours=1)
                continue
            if moment.minute not in self.minutes:
                moment += timedelta(minutes=1)
                continue
            return moment.replace(tzinfo=tz).astimezone(timezone.utc)

        raise ConfigurationError(f"Cron schedule never fires: {self.text}")


def _cron_value(token: str, names: Optional[Dict[str, int]]) -> int:
    token = token.strip().upper()
    if names and token in names:
        return names[token]
    if not token.isdigit():
        raise ConfigurationError(f"Invalid cron value: {token!r}")
    return int(token)


def _parse_cron_field(
    field: str,
    low: int,
    high: int,
    names: Optional[Dict[str, int]] = None,
) -> Tuple[FrozenSet[int], bool]:
    """
    Parse one cron field into its set of values.

    Returns:
        (values, restricted) where restricted is False for fields starting with ``*``
    """
    values = set()
    for part in field.split(","):
        step = 1
        if "/" in part:
            part, step_text = part.split("/", 1)
            if not step_text.isdigit() or int(step_text) == 0:
                raise ConfigurationError(f"Invalid cron step in {field!r}")
            step = int(step_text)

        if part == "*":
            start, end = low, high
        elif "-" in part:
            first, last = part.split("-", 1)
            start, end = _cron_value(first, names), _cron_value(last, names)
        else:
            start = _cron_value(part, names)
            end = high if step > 1 else start

        if not low <= start <= end <= high:
            raise ConfigurationError(f"Cron field {field!r} out of range {low}-{high}")
        values.update(range(start, end + 1, step))

    return frozenset(values), not field.startswith("*")


def parse_cron(expression: str, tz: str = "UTC", text: str = None) -> CronSchedule:
    """Parse a five-field cron expression."""
    fields = expression.split()
    if len(fields) != 5:
        raise ConfigurationError(f"Cron expression needs 5 fields, got {len(fields)}: {expression!r}")
    _zone(tz)

    minutes, _ = _parse_cron_field(fields[0], 0, 59)
    hours, _ = _parse_cron_field(fields[1], 0, 23)
    days, days_restricted = _parse_cron_field(fields[2], 1, 31)
    months, _ = _parse_cron_field(fields[3], 1, 12, _MONTH_NAMES)
    weekdays, weekdays_restricted = _parse_cron_field(fields[4], 0, 7, _WEEKDAY_NAMES)
    if 7 in weekdays:
        weekdays = (weekdays - {7}) | {0}

    return CronSchedule(
        minutes=minutes,
        hours=hours,
        days=days,
        months=months,
        weekdays=weekdays,
        days_restricted=days_restricted,
        weekdays_restricted=weekdays_restricted,
        timezone=tz,
        text=text or f"USING CRON {expression} {tz}",
    )


def parse_schedule(text: str) -> Schedule:
    """
    Parse schedule text into a Schedule.

    Raises:
        ConfigurationError: If the text matches no supported form
    """
    if not text or not text.strip():
        raise ConfigurationError("Schedule is empty")
    text = " ".join(text.split())
    upper = text.upper()

    match = _INTERVAL_RE.fullmatch(text)
    if match:
        count = int(match.group(1))
        if count <= 0:
            raise ConfigurationError(f"Schedule interval must be positive: {text!r}")
        unit = match.group(2)[0].lower()
        return FixedInterval(seconds=count * _UNIT_SECONDS[unit], text=text)

    if upper.startswith("USING CRON "):
        parts = text[len("USING CRON "):].split()
        if len(parts) == 5:
            return parse_cron(" ".join(parts), "UTC", text)
        if len(parts) == 6:
            return parse_cron(" ".join(parts[:5]), parts[5], text)
        raise ConfigurationError(f"Invalid cron schedule: {text!r}")

    if upper.startswith("AT "):
        parts = text[3:].split()
        if len(parts) not in (1, 2):
            raise ConfigurationError(f"Invalid time schedule: {text!r}")
        try:
            at = time.fromisoformat(parts[0])
        except ValueError as e:
            raise ConfigurationError(f"Invalid time of day in {text!r}") from e
        tz = parts[1] if len(parts) == 2 else "UTC"
        _zone(tz)
        return FixedTime(at=at, timezone=tz, text=text)

    raise ConfigurationError(f"Unrecognized schedule: {text!r}")
