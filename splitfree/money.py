"""
Currency helpers shared by the balance, settlement and receipt code.

All amounts are ``Decimal`` values quantized to cents. The tolerance
constants below are business rules: tests and callers depend on the exact
values.
"""
from __future__ import annotations

from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Any, Iterable, Optional

CENT = Decimal("0.01")
ZERO = Decimal("0.00")
ONE = Decimal("1")

# Balances closer than this to zero are treated as settled.
BALANCE_TOLERANCE = Decimal("0.01")
# Sum of claim fractions within this of 1 counts as fully claimed (3-way splits drift more than cents).
FULL_CLAIM_TOLERANCE = Decimal("0.002")
# Receipt rounding discrepancies below this are absorbed by the largest grand total.
RECONCILIATION_THRESHOLD = Decimal("0.10")
# Claimed fraction at which an item counts as claimed in receipt statistics.
CLAIMED_THRESHOLD = Decimal("0.99")


def to_decimal(value: Any) -> Decimal:
    """Convert a row value to an unrounded Decimal.

    Floats go through ``str`` so 0.1 stays 0.1. Raises ``ValueError`` for
    anything that is not a number.
    """
    if isinstance(value, bool):
        raise ValueError("Cannot convert value to Decimal")
    if isinstance(value, Decimal):
        result = value
    elif isinstance(value, (int, float)):
        result = Decimal(str(value))
    elif isinstance(value, str):
        try:
            result = Decimal(value.strip())
        except InvalidOperation:
            raise ValueError("Cannot convert value to Decimal") from None
    else:
        raise ValueError("Cannot convert value to Decimal")
    if not result.is_finite():
        raise ValueError("Cannot convert value to Decimal")
    return result


def to_amount(value: Any) -> Decimal:
    """Convert a row value to a currency amount quantized to cents."""
    return round_currency(to_decimal(value))


def optional_amount(value: Any) -> Optional[Decimal]:
    if value is None or value == "":
        return None
    return to_amount(value)


def round_currency(amount: Decimal) -> Decimal:
    return amount.quantize(CENT, rounding=ROUND_HALF_UP)


def sum_amounts(amounts: Iterable[Decimal]) -> Decimal:
    return sum(amounts, ZERO)


def amounts_close(a: Decimal, b: Decimal, tolerance: Decimal = BALANCE_TOLERANCE) -> bool:
    return abs(a - b) <= tolerance


def is_settled(amount: Decimal) -> bool:
    return abs(amount) <= BALANCE_TOLERANCE


def format_amount(amount: Optional[Decimal]) -> Optional[str]:
    """Serialize an amount for JSON responses, two decimal places."""
    if amount is None:
        return None
    return str(round_currency(amount))
