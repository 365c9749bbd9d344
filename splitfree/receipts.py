"""
Receipt claim allocation.

Turns a scanned receipt, its line items and the members' claims on them into
what each member owes: their claimed items, a proportional share of tax and
tip, and a grand total. Also holds the claim-state queries used before a new
claim is written.
"""
from __future__ import annotations

from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

from .models import (
    ClaimedLine,
    ItemClaim,
    Member,
    Receipt,
    ReceiptItem,
    ReceiptMemberCalculation,
    ReceiptSummary,
)
from .money import (
    CLAIMED_THRESHOLD,
    FULL_CLAIM_TOLERANCE,
    ONE,
    RECONCILIATION_THRESHOLD,
    ZERO,
    round_currency,
    sum_amounts,
)


def claims_of(items: Iterable[ReceiptItem]) -> List[ItemClaim]:
    """Flatten the claims embedded in each item."""
    return [claim for item in items for claim in item.claims]


def _claimed_fraction(claims: Iterable[ItemClaim]) -> Decimal:
    return sum((claim.share_fraction for claim in claims), ZERO)


def item_claimed_amount(item: ReceiptItem) -> Decimal:
    return sum((item.total_price * claim.share_fraction for claim in item.claims), ZERO)


def is_item_fully_claimed(item: ReceiptItem) -> bool:
    if not item.claims:
        return False
    return abs(_claimed_fraction(item.claims) - ONE) < FULL_CLAIM_TOLERANCE


def remaining_fraction(item: ReceiptItem) -> Decimal:
    return max(ZERO, ONE - _claimed_fraction(item.claims))


@dataclass(frozen=True)
class ClaimCheck:
    can_claim: bool
    reason: Optional[str] = None
    remaining_fraction: Optional[Decimal] = None


def can_claim_item(item: ReceiptItem, member_id: str) -> ClaimCheck:
    """Whether ``member_id`` may claim (more of) ``item``.

    When allowed, ``remaining_fraction`` is the cap for the new claim.
    """
    if not item.is_regular:
        return ClaimCheck(False, reason="This item cannot be claimed")

    for claim in item.claims:
        if claim.member_id == member_id and claim.share_fraction >= ONE:
            return ClaimCheck(False, reason="You already claimed this item")

    if is_item_fully_claimed(item):
        return ClaimCheck(False, reason="Item is fully claimed")

    return ClaimCheck(True, remaining_fraction=remaining_fraction(item))


def create_claim(
    item_id: str,
    member_id: str,
    split_count: Optional[int] = None,
    share_fraction: Optional[Decimal] = None,
    max_fraction: Optional[Decimal] = None,
    claimed_via: str = "app",
) -> Dict[str, Any]:
    """Build the claim row to insert.

    ``share_fraction`` wins over ``split_count``; either is capped at
    ``max_fraction`` so the item is never over-claimed. A capped claim no
    longer matches its split count and is stored with ``split_count`` 1.
    """
    split_count = split_count or 1
    fraction = share_fraction if share_fraction is not None else ONE / Decimal(split_count)
    if max_fraction is not None and fraction > max_fraction:
        fraction = max_fraction
        split_count = 1

    return {
        "receipt_item_id": item_id,
        "member_id": member_id,
        "claim_type": "split" if fraction < ONE else "full",
        "share_fraction": fraction,
        "split_count": split_count,
        "claimed_via": claimed_via,
    }


def calculate_member_totals(
    receipt: Receipt,
    items: Sequence[ReceiptItem],
    claims: Iterable[ItemClaim],
    members: Iterable[Member],
) -> List[ReceiptMemberCalculation]:
    items_by_id = {item.id: item for item in items}
    members_by_id = {member.id: member for member in members}

    # member id -> (items total, claimed lines), in order of first claim
    per_member: Dict[str, Tuple[List[Decimal], List[ClaimedLine]]] = {}

    for claim in claims:
        item = items_by_id.get(claim.receipt_item_id)
        if item is None or not item.is_regular:
            continue
        if claim.member_id not in members_by_id or claim.share_fraction <= ZERO:
            continue

        claim_amount = round_currency(item.total_price * claim.share_fraction)
        totals, lines = per_member.setdefault(claim.member_id, ([], []))
        totals.append(claim_amount)
        lines.append(ClaimedLine(item.id, item.description, claim_amount, claim.share_fraction))

    items_totals = {member_id: sum_amounts(totals) for member_id, (totals, _) in per_member.items()}
    claimed_subtotal = sum_amounts(items_totals.values())

    tax_amount = receipt.tax_amount or ZERO
    tip_amount = receipt.tip_amount or ZERO

    results: List[ReceiptMemberCalculation] = []
    for member_id, (_, lines) in per_member.items():
        items_total = items_totals[member_id]
        proportion = items_total / claimed_subtotal if claimed_subtotal > ZERO else ZERO
        tax_share = round_currency(tax_amount * proportion)
        tip_share = round_currency(tip_amount * proportion)

        results.append(
            ReceiptMemberCalculation(
                member_id=member_id,
                member_name=members_by_id[member_id].name,
                items_total=round_currency(items_total),
                tax_share=tax_share,
                tip_share=tip_share,
                grand_total=round_currency(items_total + tax_share + tip_share),
                claimed_items=lines,
            )
        )

    if results:
        calculated_total = sum_amounts(r.grand_total for r in results)
        expected_total = receipt.total_amount or (claimed_subtotal + tax_amount + tip_amount)
        discrepancy = round_currency(expected_total - calculated_total)

        # Small gaps are rounding; large ones mean the receipt data is off and are left visible
        if ZERO < abs(discrepancy) < RECONCILIATION_THRESHOLD:
            results.sort(key=lambda r: r.grand_total, reverse=True)
            results[0].grand_total = round_currency(results[0].grand_total + discrepancy)

    return results


def summarize_receipt(
    receipt: Receipt,
    items: Sequence[ReceiptItem],
    claims: Iterable[ItemClaim],
    members: Iterable[Member],
) -> ReceiptSummary:
    claims = list(claims)
    regular_items = [item for item in items if item.is_regular]

    fraction_by_item: Dict[str, Decimal] = {}
    for claim in claims:
        fraction_by_item[claim.receipt_item_id] = fraction_by_item.get(claim.receipt_item_id, ZERO) + claim.share_fraction

    claimed_count = sum(1 for item in regular_items if fraction_by_item.get(item.id, ZERO) >= CLAIMED_THRESHOLD)

    calculated_subtotal = sum_amounts(item.total_price for item in regular_items)
    tax = receipt.tax_amount or ZERO
    tip = receipt.tip_amount or ZERO

    return ReceiptSummary(
        receipt_id=receipt.id,
        merchant_name=receipt.merchant_name,
        receipt_date=receipt.receipt_date,
        item_count=len(regular_items),
        claimed_item_count=claimed_count,
        unclaimed_item_count=len(regular_items) - claimed_count,
        subtotal=receipt.subtotal or calculated_subtotal,
        tax=tax,
        tip=tip,
        total=receipt.total_amount or calculated_subtotal + tax + tip,
        member_totals=calculate_member_totals(receipt, items, claims, members),
    )


def validate_all_items_claimed(
    items: Iterable[ReceiptItem], claims: Iterable[ItemClaim]
) -> Tuple[bool, List[ReceiptItem]]:
    claims = list(claims)
    unclaimed = []
    for item in items:
        if not item.is_regular:
            continue
        fraction = _claimed_fraction(c for c in claims if c.receipt_item_id == item.id)
        if fraction < CLAIMED_THRESHOLD:
            unclaimed.append(item)
    return not unclaimed, unclaimed


def _percent(fraction: Decimal) -> Decimal:
    return (fraction * 100).quantize(ONE, rounding=ROUND_HALF_UP)


def format_claim_description(item: ReceiptItem, claim: ItemClaim) -> str:
    if claim.share_fraction == ONE:
        return item.description
    if claim.split_count > 1:
        return f"{item.description} (1/{claim.split_count})"
    percentage = _percent(claim.share_fraction)
    return f"{item.description} ({percentage}%)"


def item_claim_status(item: ReceiptItem, members: Iterable[Member] = ()) -> str:
    if not item.claims:
        return "Unclaimed"

    fraction = _claimed_fraction(item.claims)
    if fraction >= CLAIMED_THRESHOLD:
        if len(item.claims) == 1:
            names = {m.id: m.name for m in members}
            return f"Claimed by {names.get(item.claims[0].member_id) or 'someone'}"
        return f"Split {len(item.claims)} ways"

    percentage = _percent(fraction)
    return f"{percentage}% claimed"
