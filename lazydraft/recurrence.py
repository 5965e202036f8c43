"""
Next-run calculation for recurring campaigns.

Scans forward minute by minute and lets zoneinfo render each candidate in
the campaign's timezone, so DST gaps and odd UTC offsets need no special
handling. A local time that falls in a spring-forward gap never matches, so
that day is skipped.

On a fall-back day a repeated local time matches twice. Computing from the
first occurrence returns the second one an hour later, so a campaign at
that time fires twice that day.
"""

import logging
import re
from datetime import datetime, timedelta
from typing import Iterable, Tuple
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from .models import ensure_utc

logger = logging.getLogger(__name__)

SCAN_WINDOW_MINUTES = 60 * 24 * 8
FALLBACK_DELAY = timedelta(minutes=5)

_TIME_OF_DAY_RE = re.compile(r"^(\d{1,2}):(\d{2})$")


def parse_time_of_day(value: str) -> Tuple[int, int]:
    """Parse "HH:MM" (24h) into (hour, minute)."""
    match = _TIME_OF_DAY_RE.match((value or "").strip())
    if not match:
        raise ValueError(f"Invalid time of day: {value!r} (expected HH:MM)")
    hour, minute = int(match.group(1)), int(match.group(2))
    if hour > 23 or minute > 59:
        raise ValueError(f"Invalid time of day: {value!r}")
    return hour, minute


def load_timezone(name: str) -> ZoneInfo:
    """Resolve an IANA timezone name."""
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError, TypeError, OSError) as e:
        raise ValueError(f"Unknown timezone: {name!r}") from e


def validate_schedule(days_of_week: Iterable[int], time_of_day: str, timezone: str) -> None:
    """Raise ValueError unless the schedule can ever produce a run."""
    days = list(days_of_week or [])
    if not days:
        raise ValueError("At least one day of the week is required")
    for day in days:
        if isinstance(day, bool) or not isinstance(day, int) or not 0 <= day <= 6:
            raise ValueError(f"Invalid day of week: {day!r} (expected 0-6, Sunday=0)")
    parse_time_of_day(time_of_day)
    load_timezone(timezone)


def local_weekday(dt: datetime) -> int:
    """Weekday with Sunday=0 ... Saturday=6."""
    return (dt.weekday() + 1) % 7


def compute_next_run(
    from_time: datetime,
    days_of_week: Iterable[int],
    time_of_day: str,
    timezone: str
) -> datetime:
    """
    Find the next instant strictly after `from_time` that falls on one of
    `days_of_week` at `time_of_day` in `timezone`.

    Args:
        from_time: Reference instant (naive values are treated as UTC)
        days_of_week: Allowed weekdays, Sunday=0
        time_of_day: "HH:MM", 24h, local to `timezone`
        timezone: IANA timezone name

    Returns:
        Aware UTC datetime. If nothing matches within 8 days the schedule is
        malformed and `from_time + 5 minutes` is returned instead.
    """
    start = ensure_utc(from_time)
    hour, minute = parse_time_of_day(time_of_day)
    tz = load_timezone(timezone)
    days = set(days_of_week or [])

    candidate = start.replace(second=0, microsecond=0) + timedelta(minutes=1)
    for _ in range(SCAN_WINDOW_MINUTES):
        local = candidate.astimezone(tz)
        if local.hour == hour and local.minute == minute and local_weekday(local) in days:
            return candidate
        candidate += timedelta(minutes=1)

    logger.warning(
        f"No run found within 8 days for days={sorted(days)} time={time_of_day} "
        f"tz={timezone}; falling back to +5 minutes"
    )
    return start + FALLBACK_DELAY
