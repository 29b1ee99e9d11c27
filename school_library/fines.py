from __future__ import annotations

import math
from datetime import datetime
from decimal import Decimal
from typing import Union

from school_library.errors import InvalidRequest

SECONDS_PER_DAY = 86400

Rate = Union[Decimal, int, float, str]


def overdue_days(due_at: datetime, now: datetime) -> int:
    """Whole days overdue, rounded up. 0 while ``now <= due_at``."""
    elapsed = (now - due_at).total_seconds()
    if elapsed <= 0:
        return 0
    return math.ceil(elapsed / SECONDS_PER_DAY)


def calculate_fine(due_at: datetime, now: datetime, rate_per_day: Rate) -> Decimal:
    """Fine owed for a copy due at ``due_at`` and returned (or assessed) at ``now``.

    Pure: the return path and the overdue views call this with the same inputs
    and always agree.
    """
    rate = Decimal(str(rate_per_day))
    if rate < 0:
        raise InvalidRequest("Fine rate cannot be negative.", rate_per_day=str(rate))
    return (rate * overdue_days(due_at, now)).quantize(Decimal("0.01"))
