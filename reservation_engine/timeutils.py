"""
Timezone-aware helpers for the property's operational day.

The operational day runs from ``start_hour`` local time to ``start_hour`` the
next local calendar day, not midnight to midnight. All datetimes stored in the
database are naive UTC; these helpers accept naive UTC or aware datetimes and
return naive UTC.
"""
from datetime import date, datetime, time, timedelta, timezone
from typing import Tuple
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError


def utcnow() -> datetime:
    """Naive UTC now, matching how timestamps are stored."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def to_naive_utc(moment: datetime) -> datetime:
    if moment.tzinfo is None:
        return moment
    return moment.astimezone(timezone.utc).replace(tzinfo=None)


def resolve_timezone(name: str) -> ZoneInfo:
    """
    Resolve an IANA zone name.

    Raises ValueError for unknown or malformed names so callers can map it to
    their own validation error.
    """
    if not name:
        raise ValueError("Timezone is required")
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError) as exc:
        raise ValueError(f"Invalid timezone: {name}") from exc


def _local(moment: datetime, tz: ZoneInfo) -> datetime:
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return moment.astimezone(tz)


def _day_start_utc(day: date, tz: ZoneInfo, start_hour: int) -> datetime:
    local_start = datetime.combine(day, time(hour=start_hour), tzinfo=tz)
    return to_naive_utc(local_start)


def operational_date(moment: datetime, tz_name: str, start_hour: int = 6) -> date:
    """
    The operational date a moment belongs to.

    Anything before ``start_hour`` local time belongs to the previous day:
    05:00 on Jan 16 in New York is still the Jan 15 operational day.
    """
    local = _local(moment, resolve_timezone(tz_name))
    if local.hour < start_hour:
        return local.date() - timedelta(days=1)
    return local.date()


def operational_day_window(
    day: date,
    tz_name: str,
    start_hour: int = 6
) -> Tuple[datetime, datetime]:
    """
    Half-open [start, end) window of an operational date as naive UTC.

    Built from local calendar dates so DST days are 23 or 25 hours long.
    """
    tz = resolve_timezone(tz_name)
    start = _day_start_utc(day, tz, start_hour)
    end = _day_start_utc(day + timedelta(days=1), tz, start_hour)
    return start, end


def current_and_previous_windows(
    now: datetime,
    tz_name: str,
    start_hour: int = 6
) -> Tuple[Tuple[datetime, datetime], Tuple[datetime, datetime]]:
    """Today's and yesterday's operational windows relative to ``now``."""
    today = operational_date(now, tz_name, start_hour)
    return (
        operational_day_window(today, tz_name, start_hour),
        operational_day_window(today - timedelta(days=1), tz_name, start_hour),
    )


def parse_clock_time(value: str) -> time:
    """Parse a 24h ``HH:MM`` string."""
    try:
        hours, minutes = value.split(":")
        if len(hours) != 2 or len(minutes) != 2:
            raise ValueError
        return time(hour=int(hours), minute=int(minutes))
    except ValueError as exc:
        raise ValueError(f"Invalid time of day {value!r}, expected HH:MM") from exc
