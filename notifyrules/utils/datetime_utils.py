from datetime import datetime, timedelta, timezone


def utc_now() -> datetime:
    """
    Get current UTC datetime as a timezone-aware datetime.

    Returns:
        datetime: Current UTC datetime with timezone info
    """
    return datetime.now(timezone.utc)


def naive_utc_now() -> datetime:
    """
    Get current UTC datetime as a naive datetime (no timezone info).
    Every scheduling timestamp is stored this way.

    Returns:
        datetime: Current UTC datetime without timezone info
    """
    return utc_now().replace(tzinfo=None)


def to_naive_utc(dt: datetime) -> datetime:
    """
    Convert a datetime object to naive UTC (no timezone info).

    Args:
        dt: Datetime object to convert

    Returns:
        datetime: Naive UTC datetime
    """
    if dt.tzinfo is None:
        # Already naive, assume it's UTC
        return dt
    else:
        # Convert to UTC and remove timezone info
        utc_dt = dt.astimezone(timezone.utc)
        return utc_dt.replace(tzinfo=None)


def add_seconds(dt: datetime, seconds: int) -> datetime:
    """Shift a naive UTC datetime by a number of seconds."""
    return to_naive_utc(dt) + timedelta(seconds=seconds)


def next_weekday_start(dt: datetime, weekday: int) -> datetime:
    """
    Midnight of the next given weekday strictly after ``dt``'s date.

    Args:
        dt: Reference datetime
        weekday: Monday is 0, Sunday is 6
    """
    base = to_naive_utc(dt).replace(hour=0, minute=0, second=0, microsecond=0)
    days_ahead = (weekday - base.weekday()) % 7 or 7
    return base + timedelta(days=days_ahead)
