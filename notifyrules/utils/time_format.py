import math
from typing import Dict, Mapping, Optional, Union

SECONDS_IN_MINUTE = 60
SECONDS_IN_HOUR = 60 * SECONDS_IN_MINUTE
SECONDS_IN_DAY = 24 * SECONDS_IN_HOUR


def to_human_format(seconds: int) -> Dict[str, int]:
    """
    Split a duration in seconds into days, hours, minutes and seconds.

    Args:
        seconds: Duration in seconds

    Returns:
        dict: {"days", "hours", "minutes", "seconds"}
    """
    days = seconds // SECONDS_IN_DAY
    hour_seconds = seconds % SECONDS_IN_DAY
    hours = hour_seconds // SECONDS_IN_HOUR
    minute_seconds = hour_seconds % SECONDS_IN_HOUR
    minutes = minute_seconds // SECONDS_IN_MINUTE
    remaining = math.ceil(minute_seconds % SECONDS_IN_MINUTE)

    return {
        "days": int(days),
        "hours": int(hours),
        "minutes": int(minutes),
        "seconds": int(remaining),
    }


def _part(value: Optional[Union[str, int]]) -> int:
    if value is None:
        return 0
    if isinstance(value, str):
        value = value.strip()
        if value == "":
            return 0
    return int(value)


def to_seconds_format(time: Mapping[str, Optional[Union[str, int]]]) -> int:
    """
    Inverse of to_human_format. Missing or blank parts count as zero.

    Args:
        time: Mapping with any of "days", "hours", "minutes", "seconds"
    """
    return (
        _part(time.get("days")) * SECONDS_IN_DAY
        + _part(time.get("hours")) * SECONDS_IN_HOUR
        + _part(time.get("minutes")) * SECONDS_IN_MINUTE
        + _part(time.get("seconds"))
    )
