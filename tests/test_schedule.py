"""
Tests for schedule parsing and next-run computation
"""

from datetime import datetime, time, timezone

import pytest

from streamtask.exceptions import ConfigurationError
from streamtask.tasks.schedule import (
    CronSchedule,
    FixedInterval,
    FixedTime,
    parse_cron,
    parse_schedule,
)

UTC = timezone.utc


class TestParseSchedule:
    """Tests for schedule text parsing."""

    @pytest.mark.parametrize("text,seconds", [
        ("5 minute", 300),
        ("5 MINUTES", 300),
        ("30 seconds", 30),
        ("1 hour", 3600),
        ("10s", 10),
    ])
    def test_intervals(self, text, seconds):
        schedule = parse_schedule(text)
        assert isinstance(schedule, FixedInterval)
        assert schedule.seconds == seconds
        assert schedule.text == text

    def test_cron(self):
        schedule = parse_schedule("USING CRON 15 9 * * * America/New_York")

        assert isinstance(schedule, CronSchedule)
        assert schedule.timezone == "America/New_York"
        assert schedule.minutes == {15}
        assert schedule.hours == {9}

    def test_cron_defaults_to_utc(self):
        assert parse_schedule("USING CRON */5 * * * *").timezone == "UTC"

    def test_fixed_time(self):
        schedule = parse_schedule("AT 09:15 Europe/Paris")

        assert isinstance(schedule, FixedTime)
        assert schedule.at == time(9, 15)
        assert schedule.timezone == "Europe/Paris"

    @pytest.mark.parametrize("text", [
        "",
        "whenever",
        "0 minutes",
        "5 fortnights",
        "USING CRON * * *",
        "USING CRON 61 * * * *",
        "USING CRON * * * * * Mars/Olympus",
        "AT 25:00",
        "AT 09:00 Nowhere/City",
    ])
    def test_invalid(self, text):
        with pytest.raises(ConfigurationError):
            parse_schedule(text)


class TestNextRun:
    """Tests for next_run on each schedule kind."""

    def test_interval(self):
        schedule = parse_schedule("5 minute")
        after = datetime(2024, 1, 1, 12, 0, tzinfo=UTC)

        assert schedule.next_run(after) == datetime(2024, 1, 1, 12, 5, tzinfo=UTC)

    def test_naive_input_is_utc(self):
        schedule = parse_schedule("30 seconds")
        assert schedule.next_run(datetime(2024, 1, 1)) == datetime(2024, 1, 1, 0, 0, 30, tzinfo=UTC)

    def test_cron_every_five_minutes(self):
        schedule = parse_cron("*/5 * * * *")
        after = datetime(2024, 1, 1, 12, 3, 30, tzinfo=UTC)

        assert schedule.next_run(after) == datetime(2024, 1, 1, 12, 5, tzinfo=UTC)

    def test_cron_is_strictly_after(self):
        schedule = parse_cron("0 * * * *")
        after = datetime(2024, 1, 1, 12, 0, tzinfo=UTC)

        assert schedule.next_run(after) == datetime(2024, 1, 1, 13, 0, tzinfo=UTC)

    def test_cron_timezone(self):
        # 09:15 in New York is 14:15 UTC in winter
        schedule = parse_cron("15 9 * * *", "America/New_York")
        after = datetime(2024, 1, 10, 15, 0, tzinfo=UTC)

        assert schedule.next_run(after) == datetime(2024, 1, 11, 14, 15, tzinfo=UTC)

    def test_cron_weekday_names(self):
        # 2024-01-01 is a Monday
        schedule = parse_cron("0 9 * * FRI")
        after = datetime(2024, 1, 1, 0, 0, tzinfo=UTC)

        assert schedule.next_run(after) == datetime(2024, 1, 5, 9, 0, tzinfo=UTC)

    def test_cron_sunday_as_seven(self):
        schedule = parse_cron("0 0 * * 7")
        after = datetime(2024, 1, 1, tzinfo=UTC)

        assert schedule.next_run(after) == datetime(2024, 1, 7, tzinfo=UTC)

    def test_cron_month_names_and_ranges(self):
        schedule = parse_cron("30 8 1 MAR-APR *")
        after = datetime(2024, 1, 15, tzinfo=UTC)

        assert schedule.next_run(after) == datetime(2024, 3, 1, 8, 30, tzinfo=UTC)

    def test_cron_day_fields_are_ored(self):
        # Either the 15th or a Monday
        schedule = parse_cron("0 0 15 * MON")
        after = datetime(2024, 1, 2, tzinfo=UTC)  # Tuesday

        assert schedule.next_run(after) == datetime(2024, 1, 8, tzinfo=UTC)
        assert schedule.next_run(datetime(2024, 1, 9, tzinfo=UTC)) == datetime(2024, 1, 15, tzinfo=UTC)

    def test_cron_impossible_date(self):
        schedule = parse_cron("0 0 31 2 *")
        with pytest.raises(ConfigurationError):
            schedule.next_run(datetime(2024, 1, 1, tzinfo=UTC))

    def test_fixed_time_today_or_tomorrow(self):
        schedule = parse_schedule("AT 09:15")

        assert schedule.next_run(datetime(2024, 1, 1, 8, 0, tzinfo=UTC)) == \
            datetime(2024, 1, 1, 9, 15, tzinfo=UTC)
        assert schedule.next_run(datetime(2024, 1, 1, 9, 15, tzinfo=UTC)) == \
            datetime(2024, 1, 2, 9, 15, tzinfo=UTC)

    def test_fixed_time_timezone(self):
        # 09:00 in Paris is 08:00 UTC in winter
        schedule = parse_schedule("AT 09:00 Europe/Paris")

        assert schedule.next_run(datetime(2024, 1, 1, 12, 0, tzinfo=UTC)) == \
            datetime(2024, 1, 2, 8, 0, tzinfo=UTC)
