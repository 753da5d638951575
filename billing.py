from __future__ import annotations

import calendar
from collections.abc import Mapping
from datetime import date, datetime, timedelta
from typing import NamedTuple, Union

BILLING_UNITS = ("day", "month", "year")
BILLING_CYCLE_LIMITS = {
    "day": 365,
    "month": 12,
    "year": 5,
}
MIN_BILLING_DAY = 1
MAX_BILLING_DAY = 31


class InvalidInput(ValueError):
    pass


class InvalidPreservedDay(InvalidInput):
    def __init__(self, value: object = None) -> None:
        super().__init__("preservedBillingDay must be between 1 and 31")
        self.value = value


class InvalidBillingUnit(InvalidInput):
    def __init__(self, unit: object) -> None:
        super().__init__(f"Invalid billing cycle unit: {unit}")
        self.unit = unit


class BillingCycle(NamedTuple):
    value: int
    unit: str


CycleLike = Union[BillingCycle, Mapping[str, object]]


def as_billing_cycle(cycle: CycleLike) -> BillingCycle:
    if isinstance(cycle, BillingCycle):
        return cycle
    return BillingCycle(int(cycle["value"]), str(cycle["unit"]))


def as_date(value: date) -> date:
    if isinstance(value, datetime):
        return value.date()
    return value


def days_in_month(year: int, month: int) -> int:
    return calendar.monthrange(year, month)[1]


def add_months(source_date: date, months: int) -> tuple[int, int]:
    month_index = source_date.month - 1 + months
    return source_date.year + month_index // 12, month_index % 12 + 1


def _on_preserved_day(year: int, month: int, preserved_day: int) -> date:
    # Clamping applies to this result only; the caller keeps preserved_day.
    return date(year, month, min(preserved_day, days_in_month(year, month)))


def compute_next_renewal(from_date: date, cycle: CycleLike, preserved_day: int) -> date:
    """Return the renewal date one billing cycle after ``from_date``.

    Monthly and yearly cycles land on ``preserved_day`` whenever the target
    month has that day and on the month's last day otherwise, so a day-31
    subscription goes Jan 31 -> Feb 29 -> Mar 31 -> Apr 30 -> May 31.
    Daily cycles are plain calendar-day additions and ignore ``preserved_day``.

    Raises ``InvalidPreservedDay`` when ``preserved_day`` is outside 1-31 and
    ``InvalidBillingUnit`` for any unit other than day, month or year.
    A result past year 9999 cannot be represented as a ``date``: month and
    year cycles then raise ``ValueError`` from ``date()`` and day cycles raise
    ``OverflowError`` from the ``timedelta`` addition.
    """
    if (
        isinstance(preserved_day, bool)
        or not isinstance(preserved_day, int)
        or not MIN_BILLING_DAY <= preserved_day <= MAX_BILLING_DAY
    ):
        raise InvalidPreservedDay(preserved_day)

    value, unit = as_billing_cycle(cycle)
    start = as_date(from_date)

    if unit == "day":
        return start + timedelta(days=value)

    if unit == "month":
        target_year, target_month = add_months(start, value)
        return _on_preserved_day(target_year, target_month, preserved_day)

    if unit == "year":
        target_year = start.year + value
        if start.month == 2 and preserved_day == 29:
            return date(target_year, 2, 29 if calendar.isleap(target_year) else 28)
        return _on_preserved_day(target_year, start.month, preserved_day)

    raise InvalidBillingUnit(unit)


def resolve_preserved_day(preserved_day: int | None, anchor: date) -> int:
    # Records written before preserved days were stored fall back to the anchor's day once.
    if preserved_day is None:
        return as_date(anchor).day
    return int(preserved_day)


def validate_billing_cycle(value: object, unit: object) -> str | None:
    if unit not in BILLING_UNITS:
        return "Billing cycle unit must be day, month, or year"
    if isinstance(value, bool) or not isinstance(value, (int, str)):
        return "Billing cycle value must be a whole number"
    try:
        number = int(value)
    except ValueError:
        return "Billing cycle value must be a whole number"
    if number < 1:
        return "Billing cycle value must be at least 1"
    limit = BILLING_CYCLE_LIMITS[str(unit)]
    if number > limit:
        return f"{str(unit).capitalize()} value cannot exceed {limit}"
    return None


def monthly_cost(amount: int, cycle: CycleLike) -> float:
    value, unit = as_billing_cycle(cycle)
    if unit == "day":
        per_month = amount * 30 / value
    elif unit == "month":
        per_month = amount / value
    elif unit == "year":
        per_month = amount / (12 * value)
    else:
        raise InvalidBillingUnit(unit)
    return round(per_month, 2)


def yearly_cost(amount: int, cycle: CycleLike) -> float:
    value, unit = as_billing_cycle(cycle)
    if unit == "day":
        per_year = amount * 365 / value
    elif unit == "month":
        per_year = amount * 12 / value
    elif unit == "year":
        per_year = amount / value
    else:
        raise InvalidBillingUnit(unit)
    return round(per_year, 2)
