"""
Interest Engine Module

Simple-interest accrual for loans. Interest accrues linearly against the
outstanding principal from the disbursement date up to the as-of date, capped
at the contractual due date. No compounding.

Rates are per-period percentages: a rate of 2 on a daily loan means 2% of the
outstanding principal per elapsed day; on a monthly loan it means 2% per
30-day month. There is no implicit annualization.
"""

from decimal import Decimal
from datetime import date, datetime, time, timedelta, timezone
from enum import Enum
from typing import Union

from .exceptions import InvalidInputError
from .money import ZERO, money, to_decimal

MS_PER_DAY = 86_400_000
DAYS_PER_MONTH = 30
MS_PER_MONTH = MS_PER_DAY * DAYS_PER_MONTH

DateLike = Union[date, datetime]


class InterestType(Enum):
    """Accrual period for a loan's interest rate"""
    DAILY = "daily"       # rate applies per whole elapsed day
    MONTHLY = "monthly"   # rate applies per fractional 30-day month

    @property
    def type_code(self) -> str:
        """Single-letter code used in loan identifiers"""
        return "D" if self is InterestType.DAILY else "M"

    @classmethod
    def parse(cls, value: Union[str, 'InterestType']) -> 'InterestType':
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            raise InvalidInputError(
                f"Invalid interest type {value!r}; expected 'daily' or 'monthly'"
            )


def as_utc_datetime(value: DateLike) -> datetime:
    """Normalize a date or datetime to an aware UTC datetime"""
    if isinstance(value, datetime):
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)
    if isinstance(value, date):
        return datetime.combine(value, time.min, tzinfo=timezone.utc)
    raise InvalidInputError(f"Expected a date or datetime, got {value!r}")


def elapsed_milliseconds(start: DateLike, end: DateLike) -> int:
    """Whole milliseconds from start to end (negative if end is earlier)"""
    return (as_utc_datetime(end) - as_utc_datetime(start)) // timedelta(milliseconds=1)


def days_between(start: DateLike, end: DateLike) -> int:
    """Whole days elapsed between two instants, floored"""
    return elapsed_milliseconds(start, end) // MS_PER_DAY


def months_between(start: DateLike, end: DateLike) -> Decimal:
    """Fractional 30-day months elapsed between two instants"""
    return Decimal(elapsed_milliseconds(start, end)) / Decimal(MS_PER_MONTH)


def calculate_accrued_interest(
    outstanding_principal: Decimal,
    rate: Decimal,
    disbursement_date: DateLike,
    due_date: DateLike,
    as_of: DateLike,
    interest_type: Union[str, InterestType]
) -> Decimal:
    """
    Calculate simple interest accrued on a loan as of a date.

    Args:
        outstanding_principal: Principal the interest is charged on
        rate: Percent per period (per day or per 30-day month)
        disbursement_date: Start of accrual
        due_date: Accrual never runs past this date
        as_of: Instant to accrue up to
        interest_type: daily or monthly

    Returns:
        Accrued interest quantized to cents. Zero when the effective end
        is on or before the disbursement date.
    """
    interest_type = InterestType.parse(interest_type)
    principal = to_decimal(outstanding_principal)
    rate = to_decimal(rate)

    start = as_utc_datetime(disbursement_date)
    end = min(as_utc_datetime(as_of), as_utc_datetime(due_date))
    if end <= start:
        return ZERO

    elapsed = elapsed_milliseconds(start, end)

    if interest_type is InterestType.DAILY:
        periods = Decimal(elapsed // MS_PER_DAY)
    else:
        periods = Decimal(elapsed) / Decimal(MS_PER_MONTH)

    return money(principal * rate * periods / Decimal('100'))
