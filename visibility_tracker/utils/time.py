"""
UTC timestamp utilities for the visibility tracker.

All timestamps MUST be in UTC with explicit timezone markers.

This module provides:
- utc_now(): Current time as timezone-aware datetime
- utc_timestamp(): ISO 8601 timestamp string with 'Z' suffix
- format_timestamp() / parse_timestamp(): round-trip datetimes through storage
- add_interval(): advance a datetime by a tracking interval
- month_bounds(): first and last instant of a calendar month

Examples:
    >>> from visibility_tracker.utils.time import utc_now, add_interval
    >>> add_interval(datetime(2025, 1, 31, tzinfo=UTC), "monthly")
    datetime.datetime(2025, 2, 28, 0, 0, tzinfo=datetime.timezone.utc)
"""

import calendar
from datetime import UTC, datetime, timedelta


def utc_now() -> datetime:
    """
    Return current time in UTC with timezone info.

    Note:
        NEVER use datetime.now() without timezone parameter.
        NEVER use datetime.utcnow() (deprecated, returns naive datetime).
    """
    return datetime.now(UTC)


def utc_timestamp() -> str:
    """
    Return ISO 8601 timestamp string with 'Z' suffix.

    Format: YYYY-MM-DDTHH:MM:SSZ

    Example:
        >>> utc_timestamp()
        '2025-11-02T08:30:45Z'
    """
    return format_timestamp(utc_now())


def format_timestamp(dt: datetime) -> str:
    """
    Format a timezone-aware datetime as an ISO 8601 'Z' timestamp.

    Args:
        dt: Timezone-aware datetime (converted to UTC)

    Returns:
        str: Timestamp such as '2025-11-02T08:30:45Z'

    Raises:
        ValueError: If dt is naive
    """
    if dt.tzinfo is None:
        raise ValueError(
            "Datetime must be timezone-aware (use timezone.utc). "
            "Got naive datetime. Use utc_now() or ensure dt has tzinfo set."
        )
    return dt.astimezone(UTC).strftime("%Y-%m-%dT%H:%M:%SZ")


def parse_timestamp(timestamp_str: str) -> datetime:
    """
    Parse ISO 8601 timestamp string to timezone-aware datetime.

    Expects format: YYYY-MM-DDTHH:MM:SSZ (with 'Z' suffix for UTC)

    Raises:
        ValueError: If timestamp doesn't end with 'Z' or has invalid format

    Examples:
        >>> parse_timestamp('2025-11-02T08:30:45Z').year
        2025
        >>> parse_timestamp('2025-11-02T08:30:45')
        Traceback (most recent call last):
        ...
        ValueError: Timestamp must end with 'Z' (UTC): 2025-11-02T08:30:45
    """
    if not timestamp_str.endswith("Z"):
        raise ValueError(f"Timestamp must end with 'Z' (UTC): {timestamp_str}")

    try:
        return datetime.fromisoformat(timestamp_str.replace("Z", "+00:00"))
    except ValueError as e:
        raise ValueError(f"Invalid ISO 8601 timestamp format: {timestamp_str}") from e


def add_months(dt: datetime, months: int) -> datetime:
    """
    Add calendar months to a datetime, clamping to the last day of the month.

    Example:
        >>> add_months(datetime(2025, 1, 31, tzinfo=UTC), 1).day
        28
    """
    month_index = dt.month - 1 + months
    year = dt.year + month_index // 12
    month = month_index % 12 + 1
    day = min(dt.day, calendar.monthrange(year, month)[1])
    return dt.replace(year=year, month=month, day=day)


def add_interval(dt: datetime, interval: str) -> datetime:
    """
    Advance a datetime by one tracking interval.

    Args:
        dt: Reference time (usually the moment a run completed)
        interval: "daily", "weekly" or "monthly"

    Returns:
        datetime: dt + 1 day, 7 days or 1 calendar month

    Raises:
        ValueError: For "on_demand" or any unknown interval
    """
    if interval == "daily":
        return dt + timedelta(days=1)
    if interval == "weekly":
        return dt + timedelta(days=7)
    if interval == "monthly":
        return add_months(dt, 1)
    raise ValueError(f"Interval '{interval}' has no next run time")


def month_bounds(dt: datetime) -> tuple[datetime, datetime]:
    """
    Return the first and last instant of the UTC calendar month containing dt.

    Example:
        >>> start, end = month_bounds(datetime(2025, 2, 14, tzinfo=UTC))
        >>> start.isoformat(), end.isoformat()
        ('2025-02-01T00:00:00+00:00', '2025-02-28T23:59:59+00:00')
    """
    dt = dt.astimezone(UTC)
    start = dt.replace(day=1, hour=0, minute=0, second=0, microsecond=0)
    last_day = calendar.monthrange(dt.year, dt.month)[1]
    end = dt.replace(day=last_day, hour=23, minute=59, second=59, microsecond=0)
    return start, end
