"""
Records consumed and produced by the balance, settlement and receipt code.

Input records are immutable snapshots of store rows. ``from_row`` accepts a
row dict (from MySQL or a JSON payload) and raises ``ValueError`` when a
required field is missing or malformed; ``parse_rows`` skips such rows.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple, TypeVar

from .money import ONE, ZERO, optional_amount, to_amount, to_decimal

logger = logging.getLogger(__name__)

T = TypeVar("T")


def _require_id(row: Dict[str, Any], key: str = "id") -> str:
    value = row.get(key)
    if value is None or value == "":
        raise ValueError(f"missing_{key}")
    return str(value)


def _optional_id(row: Dict[str, Any], key: str) -> Optional[str]:
    value = row.get(key)
    if value is None or value == "":
        return None
    return str(value)


@dataclass(frozen=True)
class Member:
    id: str
    name: str
    user_id: Optional[str] = None

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "Member":
        return cls(
            id=_require_id(row),
            name=str(row.get("name") or ""),
            user_id=_optional_id(row, "user_id"),
        )


@dataclass(frozen=True)
class Split:
    member_id: str
    amount: Decimal

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "Split":
        return cls(member_id=_require_id(row, "member_id"), amount=to_amount(row.get("amount")))


@dataclass(frozen=True)
class Expense:
    id: str
    paid_by: str
    amount: Decimal
    splits: Tuple[Split, ...] = ()
    # Carried through untouched, conversion is not done here
    currency: Optional[str] = None
    exchange_rate: Optional[Decimal] = None

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "Expense":
        amount = to_amount(row.get("amount"))
        if amount < ZERO:
            raise ValueError("invalid_amount")
        exchange_rate = row.get("exchange_rate")
        return cls(
            id=_require_id(row),
            paid_by=_require_id(row, "paid_by"),
            amount=amount,
            splits=tuple(parse_rows(Split.from_row, row.get("splits") or [])),
            currency=row.get("currency"),
            exchange_rate=to_decimal(exchange_rate) if exchange_rate not in (None, "") else None,
        )


@dataclass(frozen=True)
class SettlementRecord:
    from_member_id: str
    to_member_id: str
    amount: Decimal
    id: Optional[str] = None
    settled_at: Optional[Any] = None
    method: Optional[str] = None
    notes: Optional[str] = None

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "SettlementRecord":
        amount = to_amount(row.get("amount"))
        if amount <= ZERO:
            raise ValueError("invalid_amount")
        return cls(
            id=_optional_id(row, "id"),
            from_member_id=_require_id(row, "from_member_id"),
            to_member_id=_require_id(row, "to_member_id"),
            amount=amount,
            settled_at=row.get("settled_at"),
            method=row.get("method"),
            notes=row.get("notes"),
        )


@dataclass(frozen=True)
class SuggestedSettlement:
    from_member_id: str
    to_member_id: str
    amount: Decimal

    def to_row(self) -> Dict[str, Any]:
        """Field shape used when the user records this transfer."""
        return {
            "from_member_id": self.from_member_id,
            "to_member_id": self.to_member_id,
            "amount": self.amount,
        }


@dataclass(frozen=True)
class Receipt:
    id: str
    merchant_name: Optional[str] = None
    receipt_date: Optional[str] = None
    subtotal: Optional[Decimal] = None
    tax_amount: Optional[Decimal] = None
    tip_amount: Optional[Decimal] = None
    total_amount: Optional[Decimal] = None
    currency: Optional[str] = None

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "Receipt":
        receipt_date = row.get("receipt_date")
        return cls(
            id=_require_id(row),
            merchant_name=row.get("merchant_name"),
            receipt_date=str(receipt_date) if receipt_date else None,
            subtotal=optional_amount(row.get("subtotal")),
            tax_amount=optional_amount(row.get("tax_amount")),
            tip_amount=optional_amount(row.get("tip_amount")),
            total_amount=optional_amount(row.get("total_amount")),
            currency=row.get("currency"),
        )


@dataclass(frozen=True)
class ItemClaim:
    receipt_item_id: str
    member_id: str
    share_fraction: Decimal = ONE
    split_count: int = 1
    claimed_via: str = "app"
    claim_type: str = "full"
    id: Optional[str] = None

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "ItemClaim":
        fraction = row.get("share_fraction")
        share_fraction = ONE if fraction is None else to_decimal(fraction)
        if share_fraction <= ZERO:
            raise ValueError("invalid_share_fraction")
        return cls(
            id=_optional_id(row, "id"),
            receipt_item_id=_require_id(row, "receipt_item_id"),
            member_id=_require_id(row, "member_id"),
            share_fraction=share_fraction,
            split_count=int(row.get("split_count") or 1),
            claimed_via=row.get("claimed_via") or "app",
            claim_type=row.get("claim_type") or ("full" if share_fraction >= ONE else "split"),
        )


ROLE_FLAGS = (
    "is_tax",
    "is_tip",
    "is_subtotal",
    "is_total",
    "is_discount",
    "is_service_charge",
    "is_modifier",
)


@dataclass(frozen=True)
class ReceiptItem:
    id: str
    description: str
    total_price: Decimal
    quantity: int = 1
    unit_price: Optional[Decimal] = None
    is_tax: bool = False
    is_tip: bool = False
    is_subtotal: bool = False
    is_total: bool = False
    is_discount: bool = False
    is_service_charge: bool = False
    is_modifier: bool = False
    parent_item_id: Optional[str] = None
    is_likely_shared: bool = False
    claims: Tuple[ItemClaim, ...] = ()

    @property
    def is_regular(self) -> bool:
        """True when the line is a claimable item rather than tax, tip, a total, etc."""
        return not any(getattr(self, flag) for flag in ROLE_FLAGS)

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "ReceiptItem":
        item_id = _require_id(row)
        claim_rows = []
        for claim in row.get("claims") or []:
            claim_rows.append({"receipt_item_id": item_id, **claim})
        return cls(
            id=item_id,
            description=str(row.get("description") or ""),
            total_price=to_amount(row.get("total_price")),
            quantity=int(row.get("quantity") or 1),
            unit_price=optional_amount(row.get("unit_price")),
            parent_item_id=_optional_id(row, "parent_item_id"),
            is_likely_shared=bool(row.get("is_likely_shared")),
            claims=tuple(parse_rows(ItemClaim.from_row, claim_rows)),
            **{flag: bool(row.get(flag)) for flag in ROLE_FLAGS},
        )


@dataclass(frozen=True)
class ClaimedLine:
    item_id: str
    description: str
    amount: Decimal
    share_fraction: Decimal


@dataclass
class ReceiptMemberCalculation:
    member_id: str
    member_name: str
    items_total: Decimal
    tax_share: Decimal
    tip_share: Decimal
    grand_total: Decimal
    claimed_items: List[ClaimedLine] = field(default_factory=list)


@dataclass
class ReceiptSummary:
    receipt_id: str
    merchant_name: Optional[str]
    receipt_date: Optional[str]
    item_count: int
    claimed_item_count: int
    unclaimed_item_count: int
    subtotal: Decimal
    tax: Decimal
    tip: Decimal
    total: Decimal
    member_totals: List[ReceiptMemberCalculation] = field(default_factory=list)


def parse_rows(parser: Callable[[Dict[str, Any]], T], rows: Iterable[Any]) -> List[T]:
    """Parse rows with ``parser``, skipping (and logging) the malformed ones."""
    parsed: List[T] = []
    for row in rows or []:
        if not isinstance(row, dict):
            logger.warning("Skipping non-object row: %r", row)
            continue
        try:
            parsed.append(parser(row))
        except (TypeError, ValueError) as exc:
            logger.warning("Skipping malformed row %r: %s", row.get("id"), exc)
    return parsed
