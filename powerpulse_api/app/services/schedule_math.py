"""
Timezone arithmetic for delivery schedules and quiet hours.

Schedules are stored as a wall-clock time (``HH:MM``) plus an IANA zone
name, so the UTC instant of a delivery changes with daylight saving
time.  All helpers take an aware UTC ``now`` instead of reading the
clock, which keeps the scheduler deterministic under test.

DST edge cases follow one rule each: a wall time that falls into a
spring-forward gap is moved forward by the size of the gap, and a wall
time that occurs twice in autumn resolves to its first occurrence.
"""

from datetime import date, datetime, time, timedelta
from typing import Optional, Tuple, Union

import pytz

from powerpulse_api.app.schemas.delivery import HHMM_PATTERN


def parse_hhmm(value: str) -> Tuple[int, int]:
    """Split ``H:MM``/``HH:MM`` into ``(hour, minute)``."""
    if not value or not HHMM_PATTERN.match(value):
        raise ValueError(f"Invalid time '{value}', expected HH:MM")
    hour, minute = value.split(":")
    return int(hour), int(minute)


def get_timezone(tz_name: str) -> pytz.BaseTzInfo:
    try:
        return pytz.timezone(tz_name)
    except pytz.UnknownTimeZoneError:
        raise ValueError(f"Unknown timezone '{tz_name}'") from None


def is_valid_timezone(tz_name: Optional[str]) -> bool:
    if not tz_name:
        return False
    try:
        get_timezone(tz_name)
    except ValueError:
        return False
    return True


def local_now(tz_name: str, now_utc: datetime) -> datetime:
    """Return ``now_utc`` converted to the wall clock of ``tz_name``."""
    return now_utc.astimezone(get_timezone(tz_name))


def scheduled_instant(tz_name: str, local_date: date, hhmm: str) -> datetime:
    """UTC instant at which ``hhmm`` occurs on ``local_date`` in ``tz_name``."""
    tz = get_timezone(tz_name)
    hour, minute = parse_hhmm(hhmm)
    naive = datetime.combine(local_date, time(hour, minute))
    try:
        local = tz.localize(naive, is_dst=None)
    except pytz.AmbiguousTimeError:
        local = tz.localize(naive, is_dst=True)
    except pytz.NonExistentTimeError:
        # Localising with the pre-transition offset and normalising moves
        # the wall time forward by the gap (02:30 -> 03:30 in US zones).
        local = tz.normalize(tz.localize(naive, is_dst=False))
    return local.astimezone(pytz.utc)


def is_delivery_due(
    tz_name: str,
    hhmm: str,
    now_utc: datetime,
    window_minutes: int,
) -> Tuple[bool, date]:
    """Decide whether a daily delivery at ``hhmm`` local time is due now.

    The delivery is due when ``now_utc`` lies in
    ``[scheduled, scheduled + window)``.  Yesterday's slot is checked as
    well so that a window straddling local midnight is not lost.

    Returns
    -------
    Tuple[bool, date]
        ``(due, local_date)`` where ``local_date`` is the local date the
        due slot belongs to, or today's local date when nothing is due.
    """
    window = timedelta(minutes=window_minutes)
    today = local_now(tz_name, now_utc).date()
    for candidate in (today, today - timedelta(days=1)):
        delta = now_utc - scheduled_instant(tz_name, candidate, hhmm)
        if timedelta(0) <= delta < window:
            return True, candidate
    return False, today


def _minute_of_day(value: Union[time, datetime]) -> int:
    return value.hour * 60 + value.minute


def in_quiet_hours(start: str, end: str, local_time: Union[time, datetime]) -> bool:
    """Return True if ``local_time`` falls inside the quiet interval.

    The interval is ``[start, end)``; when ``start`` is later than
    ``end`` it wraps around midnight.  ``start == end`` means no quiet
    hours at all.
    """
    start_h, start_m = parse_hhmm(start)
    end_h, end_m = parse_hhmm(end)
    start_min = start_h * 60 + start_m
    end_min = end_h * 60 + end_m
    current = _minute_of_day(local_time)
    if start_min == end_min:
        return False
    if start_min < end_min:
        return start_min <= current < end_min
    return current >= start_min or current < end_min


def quiet_hours_end_utc(tz_name: str, end: str, now_utc: datetime) -> datetime:
    """Next UTC instant, strictly after ``now_utc``, at which quiet hours end."""
    today = local_now(tz_name, now_utc).date()
    candidate = scheduled_instant(tz_name, today, end)
    if candidate <= now_utc:
        candidate = scheduled_instant(tz_name, today + timedelta(days=1), end)
    return candidate
