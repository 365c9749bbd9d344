from __future__ import annotations

from decimal import Decimal
from typing import Dict, List, Mapping, Optional, Sequence, Tuple

from .money import ZERO, amounts_close, round_currency, sum_amounts

SPLIT_METHODS = ("equal", "exact", "percent", "shares")

SplitRows = List[Dict[str, object]]


def _rows(shares: List[Tuple[str, Decimal]]) -> SplitRows:
    return [{"member_id": member_id, "amount": amount} for member_id, amount in shares]


def _settle_remainder(shares: List[Tuple[str, Decimal]], amount: Decimal) -> List[Tuple[str, Decimal]]:
    # Rounding leftovers go to the last member so the splits add up to the amount
    if not shares:
        return shares
    diff = round_currency(amount - sum_amounts(a for _, a in shares))
    if diff != ZERO:
        member_id, last = shares[-1]
        shares[-1] = (member_id, round_currency(last + diff))
    return shares


def equal_split(amount: Decimal, member_ids: Sequence[str]) -> SplitRows:
    if not member_ids:
        return []

    per_person = round_currency(amount / len(member_ids))
    shares = [(member_id, per_person) for member_id in member_ids]
    return _rows(_settle_remainder(shares, amount))


def exact_split(amounts: Mapping[str, Decimal]) -> SplitRows:
    return _rows([(member_id, round_currency(a)) for member_id, a in amounts.items() if a > ZERO])


def percent_split(amount: Decimal, percents: Mapping[str, Decimal]) -> SplitRows:
    shares = [
        (member_id, round_currency(amount * percent / 100))
        for member_id, percent in percents.items()
        if percent > ZERO
    ]
    return _rows(_settle_remainder(shares, amount))


def shares_split(amount: Decimal, shares: Mapping[str, Decimal]) -> SplitRows:
    entries = [(member_id, count) for member_id, count in shares.items() if count > ZERO]
    total_shares = sum_amounts(count for _, count in entries)
    if total_shares == ZERO:
        return []

    split = [(member_id, round_currency(amount * count / total_shares)) for member_id, count in entries]
    return _rows(_settle_remainder(split, amount))


def calculate_splits(
    method: str,
    amount: Decimal,
    member_ids: Optional[Sequence[str]] = None,
    amounts: Optional[Mapping[str, Decimal]] = None,
    percents: Optional[Mapping[str, Decimal]] = None,
    shares: Optional[Mapping[str, Decimal]] = None,
) -> SplitRows:
    if method == "equal":
        return equal_split(amount, member_ids or [])
    if method == "exact":
        return exact_split(amounts or {})
    if method == "percent":
        return percent_split(amount, percents or {})
    if method == "shares":
        return shares_split(amount, shares or {})
    return []


def validate_split_data(
    method: str,
    amount: Decimal,
    member_ids: Optional[Sequence[str]] = None,
    amounts: Optional[Mapping[str, Decimal]] = None,
    percents: Optional[Mapping[str, Decimal]] = None,
    shares: Optional[Mapping[str, Decimal]] = None,
) -> Tuple[bool, Optional[str]]:
    """Check the input for ``method`` before splitting. Returns (is_valid, error)."""
    if method == "equal":
        if not member_ids:
            return False, "Please select at least one person to split with"
        return True, None

    if method == "exact":
        if not amounts:
            return False, "Please enter amounts for each person"
        total = sum_amounts(amounts.values())
        if not amounts_close(round_currency(total), round_currency(amount)):
            return False, f"Amounts must add up to ${round_currency(amount)} (currently ${round_currency(total)})"
        return True, None

    if method == "percent":
        if not percents:
            return False, "Please enter percentages for each person"
        total_percent = sum_amounts(percents.values())
        if not amounts_close(total_percent, Decimal("100")):
            return False, f"Percentages must add up to 100% (currently {total_percent.quantize(Decimal('0.1'))}%)"
        return True, None

    if method == "shares":
        if not shares or sum_amounts(shares.values()) == ZERO:
            return False, "Please assign at least one share"
        return True, None

    return False, "Invalid split method"
