"""
Money Helpers

Every monetary value in the ledger is a Decimal quantized to cents with
ROUND_HALF_UP. NEVER uses float for stored amounts.
"""

from decimal import Decimal, ROUND_HALF_UP, getcontext
from typing import Any, Iterable

# Set global decimal context for financial precision
getcontext().prec = 28

CENT = Decimal('0.01')
ZERO = Decimal('0.00')


def to_decimal(value: Any) -> Decimal:
    """Convert a stored or user supplied value to Decimal (None -> 0)"""
    if value is None:
        return Decimal('0')
    if isinstance(value, Decimal):
        return value
    if isinstance(value, float):
        # Go through str so 0.1 stays 0.1
        return Decimal(str(value))
    return Decimal(value)


def quantize_money(value: Any) -> Decimal:
    """Round to 2 decimal places, half-up (standard currency rounding)"""
    return to_decimal(value).quantize(CENT, rounding=ROUND_HALF_UP)


def sum_money(values: Iterable[Any]) -> Decimal:
    """Sum a sequence of amounts and round the total to cents"""
    total = Decimal('0')
    for value in values:
        total += to_decimal(value)
    return quantize_money(total)


def format_money(value: Any) -> str:
    """Format for log and description text"""
    return f"${quantize_money(value):,.2f}"
