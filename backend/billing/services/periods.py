"""Plan duration arithmetic."""
from __future__ import annotations

import calendar
import logging
import re
from datetime import datetime, timedelta

logger = logging.getLogger(__name__)

DEFAULT_PERIOD_DAYS = 30
_DURATION_PATTERN = re.compile(r"^\s*(\d+)\s*([A-Za-z])\s*$")


def _add_months(value: datetime, months: int) -> datetime:
    month_index = value.month - 1 + months
    year = value.year + month_index // 12
    month = month_index % 12 + 1
    day = min(value.day, calendar.monthrange(year, month)[1])
    return value.replace(year=year, month=month, day=day)


def add_duration(start: datetime, duration: str) -> datetime:
    """Return ``start`` advanced by a plan duration such as ``30d``, ``1m`` or ``1y``.

    Month and year steps are calendar aware (Jan 31 + 1m is the last day of February).
    Unknown or malformed durations fall back to 30 days.
    """
    match = _DURATION_PATTERN.match(duration or "")
    if match:
        amount = int(match.group(1))
        unit = match.group(2).lower()
        if unit == "d":
            return start + timedelta(days=amount)
        if unit == "m":
            return _add_months(start, amount)
        if unit == "y":
            return _add_months(start, amount * 12)

    logger.warning("Unrecognised plan duration '%s'; defaulting to %s days.", duration, DEFAULT_PERIOD_DAYS)
    return start + timedelta(days=DEFAULT_PERIOD_DAYS)
