"""Tests for next-run calculation."""

import logging
from datetime import datetime, timedelta, timezone
from zoneinfo import ZoneInfo

import pytest

from lazydraft.recurrence import (
    compute_next_run, local_weekday, parse_time_of_day, validate_schedule,
)


def utc(*args) -> datetime:
    return datetime(*args, tzinfo=timezone.utc)


class TestComputeNextRun:
    """Test suite for compute_next_run."""

    def test_later_the_same_day(self):
        """Monday 08:00 UTC with a Monday 09:00 schedule fires an hour later."""
        result = compute_next_run(utc(2026, 1, 5, 8, 0), [1], "09:00", "UTC")
        assert result == utc(2026, 1, 5, 9, 0)

    def test_exact_match_moves_to_next_week(self):
        """A from-time equal to a slot yields the following slot."""
        result = compute_next_run(utc(2026, 1, 5, 9, 0), [1], "09:00", "UTC")
        assert result == utc(2026, 1, 12, 9, 0)

    def test_seconds_past_slot_move_to_next_week(self):
        """Seconds past the slot minute do not count as a match."""
        result = compute_next_run(utc(2026, 1, 5, 9, 0, 30), [1], "09:00", "UTC")
        assert result == utc(2026, 1, 12, 9, 0)

    def test_picks_nearest_of_several_days(self):
        """Wednesday noon with Tue/Thu 10:00 picks Thursday."""
        result = compute_next_run(utc(2026, 1, 7, 12, 0), [2, 4], "10:00", "UTC")
        assert result == utc(2026, 1, 8, 10, 0)

    def test_half_hour_offset_timezone(self):
        """09:00 in Asia/Kolkata is 03:30 UTC."""
        result = compute_next_run(utc(2026, 1, 5, 0, 0), [1], "09:00", "Asia/Kolkata")
        assert result == utc(2026, 1, 5, 3, 30)

    def test_weekday_is_evaluated_in_local_time(self):
        """Sunday 22:00 in New York is Monday 03:00 UTC."""
        result = compute_next_run(utc(2026, 1, 5, 0, 0), [0], "22:00", "America/New_York")
        assert result == utc(2026, 1, 5, 3, 0)
        assert local_weekday(result.astimezone(ZoneInfo("America/New_York"))) == 0

    def test_nonexistent_local_time_skips_to_next_week(self):
        """02:30 does not exist on the spring-forward Sunday; the next Sunday is used."""
        result = compute_next_run(utc(2026, 3, 8, 0, 0), [0], "02:30", "America/New_York")
        assert result == utc(2026, 3, 15, 6, 30)

    def test_repeated_local_time_uses_first_occurrence(self):
        """01:30 happens twice on the fall-back Sunday; the earlier instant wins."""
        result = compute_next_run(utc(2026, 11, 1, 0, 0), [0], "01:30", "America/New_York")
        assert result == utc(2026, 11, 1, 5, 30)

    def test_repeated_local_time_fires_again_an_hour_later(self):
        """Chaining from the first 01:30 on the fall-back Sunday lands on the second one."""
        result = compute_next_run(utc(2026, 11, 1, 5, 30), [0], "01:30", "America/New_York")
        assert result == utc(2026, 11, 1, 6, 30)

    def test_naive_from_time_is_treated_as_utc(self):
        """Naive datetimes are interpreted as UTC."""
        result = compute_next_run(datetime(2026, 1, 5, 8, 0), [1], "09:00", "UTC")
        assert result == utc(2026, 1, 5, 9, 0)
        assert result.tzinfo is not None

    @pytest.mark.parametrize("tz_name", ["UTC", "Asia/Kolkata", "America/Los_Angeles", "Australia/Sydney"])
    def test_always_strictly_after_and_on_schedule(self, tz_name):
        """Every result is in the future and lands on a chosen weekday and time."""
        tz = ZoneInfo(tz_name)
        days = [0, 3, 6]
        start = utc(2026, 2, 1, 0, 0)
        for hours in range(0, 24 * 9, 7):
            from_time = start + timedelta(hours=hours, seconds=13)
            result = compute_next_run(from_time, days, "07:45", tz_name)
            local = result.astimezone(tz)
            assert result > from_time
            assert (local.hour, local.minute) == (7, 45)
            assert local_weekday(local) in days
            assert result - from_time <= timedelta(days=7, hours=1)

    def test_chained_runs_strictly_increase(self):
        """Feeding each result back in never repeats an instant."""
        current = utc(2026, 3, 1, 0, 0)
        seen = []
        for _ in range(10):
            current = compute_next_run(current, [0, 2, 5], "02:30", "Europe/Paris")
            seen.append(current)

        assert seen == sorted(seen)
        assert len(set(seen)) == len(seen)

    def test_no_matching_day_falls_back_with_warning(self, caplog):
        """An empty weekday set yields from_time + 5 minutes and logs a warning."""
        from_time = utc(2026, 1, 5, 8, 0, 30)
        with caplog.at_level(logging.WARNING, logger="lazydraft.recurrence"):
            result = compute_next_run(from_time, [], "09:00", "UTC")

        assert result == from_time + timedelta(minutes=5)
        assert "falling back" in caplog.text


class TestParseTimeOfDay:
    """Test suite for parse_time_of_day."""

    @pytest.mark.parametrize("value,expected", [
        ("09:00", (9, 0)),
        ("9:05", (9, 5)),
        ("23:59", (23, 59)),
        ("00:00", (0, 0)),
    ])
    def test_valid_values(self, value, expected):
        """HH:MM values within range parse."""
        assert parse_time_of_day(value) == expected

    @pytest.mark.parametrize("value", ["24:00", "09:60", "9am", "", "09:0", "12:00:00"])
    def test_invalid_values(self, value):
        """Anything else is rejected."""
        with pytest.raises(ValueError):
            parse_time_of_day(value)


class TestValidateSchedule:
    """Test suite for validate_schedule."""

    def test_valid_schedule(self):
        """A normal schedule passes."""
        validate_schedule([1, 2, 3], "09:00", "Europe/London")

    def test_empty_days_rejected(self):
        """At least one weekday is required."""
        with pytest.raises(ValueError, match="day of the week"):
            validate_schedule([], "09:00", "UTC")

    @pytest.mark.parametrize("day", [7, -1, True, "1", 1.0])
    def test_out_of_range_or_non_int_days_rejected(self, day):
        """Weekdays must be ints 0-6."""
        with pytest.raises(ValueError):
            validate_schedule([day], "09:00", "UTC")

    def test_unknown_timezone_rejected(self):
        """Unknown IANA names are rejected."""
        with pytest.raises(ValueError, match="Unknown timezone"):
            validate_schedule([1], "09:00", "Mars/Olympus_Mons")

    def test_bad_time_rejected(self):
        """Malformed times are rejected."""
        with pytest.raises(ValueError):
            validate_schedule([1], "25:00", "UTC")
