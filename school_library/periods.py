"""Due-date arithmetic over hours, days, weeks, months and years.

Hours, days and weeks are exact durations. Months and years use calendar
addition: the month (and year) advance and the day of month is clamped to the
last day of the target month, so 2024-01-31 + 1 month is 2024-02-29 and
2024-02-29 + 1 year is 2025-02-28. Time of day and tzinfo are kept.
"""

from __future__ import annotations

import calendar
from datetime import datetime, timedelta
from typing import Any, Tuple

from school_library.errors import InvalidPeriod

PERIOD_UNITS = ("hours", "days", "weeks", "months", "years")


def validate_period(value: Any, unit: Any) -> Tuple[int, str]:
    """Return ``(value, unit)`` normalized, or raise :class:`InvalidPeriod`."""
    if isinstance(value, bool):
        raise InvalidPeriod("Period value must be a positive integer.", period_value=value)
    try:
        number = int(value)
    except (TypeError, ValueError):
        raise InvalidPeriod("Period value must be a positive integer.", period_value=value) from None
    if number != value and not (isinstance(value, str) and value.strip().isdigit()):
        raise InvalidPeriod("Period value must be a positive integer.", period_value=value)
    if number <= 0:
        raise InvalidPeriod("Period value must be a positive integer.", period_value=value)

    unit_name = str(unit).strip().lower() if unit is not None else ""
    if unit_name not in PERIOD_UNITS:
        raise InvalidPeriod(
            f"Unknown period unit '{unit}'. Use one of: {', '.join(PERIOD_UNITS)}.",
            period_unit=unit,
        )
    return number, unit_name


def add_months(start: datetime, months: int) -> datetime:
    month_index = start.month - 1 + months
    year = start.year + month_index // 12
    month = month_index % 12 + 1
    day = min(start.day, calendar.monthrange(year, month)[1])
    return start.replace(year=year, month=month, day=day)


def add_period(start: datetime, value: Any, unit: Any) -> datetime:
    """Return ``start`` advanced by ``value`` ``unit``s."""
    number, unit_name = validate_period(value, unit)
    try:
        if unit_name == "hours":
            return start + timedelta(hours=number)
        if unit_name == "days":
            return start + timedelta(days=number)
        if unit_name == "weeks":
            return start + timedelta(weeks=number)
        if unit_name == "months":
            return add_months(start, number)
        return add_months(start, 12 * number)
    except (OverflowError, ValueError):
        raise InvalidPeriod(
            f"A period of {number} {unit_name} is too long.", period_value=value, period_unit=unit
        ) from None
