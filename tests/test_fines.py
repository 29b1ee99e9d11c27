from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from school_library.errors import InvalidRequest
from school_library.fines import calculate_fine, overdue_days

DUE = datetime(2024, 3, 8, 9, 0, tzinfo=timezone.utc)


def test_no_fine_on_or_before_due():
    assert calculate_fine(DUE, DUE, 10) == Decimal("0.00")
    assert calculate_fine(DUE, DUE - timedelta(days=2), 10) == Decimal("0.00")


def test_one_day_late():
    assert calculate_fine(DUE, DUE + timedelta(days=1), 10) == Decimal("10.00")


def test_partial_days_round_up():
    assert calculate_fine(DUE, DUE + timedelta(days=1, hours=12), 10) == Decimal("20.00")
    assert calculate_fine(DUE, DUE + timedelta(seconds=1), 10) == Decimal("10.00")


def test_rate_is_exact_decimal():
    assert calculate_fine(DUE, DUE + timedelta(days=3), "2.50") == Decimal("7.50")
    assert calculate_fine(DUE, DUE + timedelta(days=3), Decimal("0.10")) == Decimal("0.30")


def test_negative_rate_rejected():
    with pytest.raises(InvalidRequest):
        calculate_fine(DUE, DUE + timedelta(days=1), -1)


def test_overdue_days():
    assert overdue_days(DUE, DUE) == 0
    assert overdue_days(DUE, DUE + timedelta(hours=1)) == 1
    assert overdue_days(DUE, DUE + timedelta(days=2)) == 2
    assert overdue_days(DUE, DUE + timedelta(days=2, minutes=1)) == 3
