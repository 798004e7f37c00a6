"""Calendar arithmetic for billing periods."""

from calendar import monthrange
from datetime import datetime


def add_months(dt: datetime, months: int) -> datetime:
    # Preserve time + tz, clamp day (e.g. Jan 31 -> Feb 28/29)
    total_months = dt.month - 1 + months
    year = dt.year + total_months // 12
    month = total_months % 12 + 1
    day = min(dt.day, monthrange(year, month)[1])
    return dt.replace(year=year, month=month, day=day)


def advance_period(start: datetime, interval: str) -> datetime:
    """Return the end of a billing period starting at ``start``.

    ``month`` adds one calendar month, ``year`` adds one year; anything
    unrecognized falls back to one month.
    """
    if interval == "year":
        return add_months(start, 12)
    return add_months(start, 1)


def month_start(dt: datetime) -> datetime:
    return dt.replace(day=1, hour=0, minute=0, second=0, microsecond=0)
