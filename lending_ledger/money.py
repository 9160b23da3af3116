"""
Money Helpers Module

All monetary values are Decimal, quantized to cents with HALF_UP rounding
wherever an amount enters the ledger. Never uses float for money.
"""

from decimal import Decimal, ROUND_HALF_UP, InvalidOperation, getcontext
from typing import Any

from .exceptions import InvalidAmountError

getcontext().prec = 28

CENT = Decimal('0.01')
ZERO = Decimal('0.00')


def to_decimal(value: Any) -> Decimal:
    """Convert a value to Decimal without rounding (None becomes zero)"""
    if value is None:
        return Decimal('0')
    if isinstance(value, Decimal):
        return value
    if isinstance(value, bool):
        raise InvalidAmountError(f"Invalid amount: {value!r}")
    try:
        return Decimal(str(value))
    except (InvalidOperation, ValueError):
        raise InvalidAmountError(f"Invalid amount: {value!r}")


def money(value: Any) -> Decimal:
    """Always return a 2-decimal Decimal with HALF_UP rounding"""
    return to_decimal(value).quantize(CENT, rounding=ROUND_HALF_UP)


def positive_money(value: Any, field_name: str = "amount") -> Decimal:
    """Quantize an amount and require it to be strictly positive"""
    amount = money(value)
    if amount <= ZERO:
        raise InvalidAmountError(f"{field_name} must be greater than zero")
    return amount


def non_negative_money(value: Any, field_name: str = "amount") -> Decimal:
    """Quantize an amount and require it to be zero or more"""
    amount = money(value)
    if amount < ZERO:
        raise InvalidAmountError(f"{field_name} cannot be negative")
    return amount


def format_inr(amount: Decimal) -> str:
    """Format for display, e.g. 'INR 1,234.50'"""
    return f"INR {money(amount):,.2f}"
