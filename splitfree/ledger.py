"""
Per-member net balances for a group.

Positive balance: the group owes the member. Negative: the member owes the
group.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal
from typing import Dict, Iterable, List, Mapping, Optional, Sequence

from .models import Expense, Member, SettlementRecord
from .money import ZERO, is_settled, round_currency
from .simplify import simplify_debts


def compute_balances(
    members: Iterable[Member],
    expenses: Iterable[Expense],
    settlements: Optional[Iterable[SettlementRecord]] = None,
) -> Dict[str, Decimal]:
    balances: Dict[str, Decimal] = {member.id: ZERO for member in members}

    for expense in expenses:
        if expense.paid_by in balances:
            balances[expense.paid_by] += expense.amount
        # Each split is charged as recorded, even if they don't add up to the amount
        for split in expense.splits:
            if split.member_id in balances:
                balances[split.member_id] -= split.amount

    # A payment from A to B moves A up and B down
    for settlement in settlements or ():
        if settlement.from_member_id in balances:
            balances[settlement.from_member_id] += settlement.amount
        if settlement.to_member_id in balances:
            balances[settlement.to_member_id] -= settlement.amount

    return balances


@dataclass(frozen=True)
class BalanceSummary:
    total_owed: Decimal
    total_owing: Decimal
    net_balance: Decimal


def summarize_balances(balances: Mapping[str, Decimal]) -> BalanceSummary:
    total_owed = sum((b for b in balances.values() if b > ZERO), ZERO)
    total_owing = sum((-b for b in balances.values() if b < ZERO), ZERO)
    return BalanceSummary(
        total_owed=round_currency(total_owed),
        total_owing=round_currency(total_owing),
        net_balance=round_currency(total_owed - total_owing),
    )


@dataclass(frozen=True)
class GroupSnapshot:
    """Everything needed to compute one group's balances."""

    id: str
    name: str
    members: Sequence[Member]
    expenses: Sequence[Expense]
    settlements: Sequence[SettlementRecord] = ()


@dataclass
class PersonGroupBalance:
    group_id: str
    group_name: str
    balance: Decimal


@dataclass
class PersonBalance:
    name: str
    net_balance: Decimal
    groups: List[PersonGroupBalance] = field(default_factory=list)


@dataclass
class UserGlobalBalance:
    total_owed: Decimal
    total_owing: Decimal
    net_balance: Decimal
    people: List[PersonBalance] = field(default_factory=list)


def person_balances(
    groups: Iterable[GroupSnapshot],
    user_member_ids: Mapping[str, str],
) -> UserGlobalBalance:
    """Aggregate what the user owes / is owed per person across groups.

    ``user_member_ids`` maps group id to the user's member id in that group.
    Only the simplified transfers that involve the user count, and people are
    matched by name, case-insensitively.
    """
    people: Dict[str, PersonBalance] = {}
    total_owed = ZERO
    total_owing = ZERO

    for group in groups:
        user_member_id = user_member_ids.get(group.id)
        if user_member_id is None:
            continue

        members_by_id = {m.id: m for m in group.members}
        balances = compute_balances(group.members, group.expenses, group.settlements)

        for debt in simplify_debts(balances, group.members):
            if debt.from_member_id == user_member_id:
                other_id, amount = debt.to_member_id, -debt.amount
            elif debt.to_member_id == user_member_id:
                other_id, amount = debt.from_member_id, debt.amount
            else:
                continue

            other = members_by_id.get(other_id)
            if other is None:
                continue

            person = people.setdefault(other.name.lower(), PersonBalance(name=other.name, net_balance=ZERO))
            person.net_balance += amount
            person.groups.append(PersonGroupBalance(group.id, group.name, amount))

            if amount > ZERO:
                total_owed += amount
            else:
                total_owing += -amount

    result = [
        PersonBalance(
            name=p.name,
            net_balance=round_currency(p.net_balance),
            groups=[PersonGroupBalance(g.group_id, g.group_name, round_currency(g.balance)) for g in p.groups],
        )
        for p in people.values()
        if not is_settled(p.net_balance)
    ]
    result.sort(key=lambda p: abs(p.net_balance), reverse=True)

    return UserGlobalBalance(
        total_owed=round_currency(total_owed),
        total_owing=round_currency(total_owing),
        net_balance=round_currency(total_owed - total_owing),
        people=result,
    )


@dataclass(frozen=True)
class GroupSuggestion:
    group_id: str
    group_name: str
    from_member: Member
    to_member: Member
    amount: Decimal


def suggested_settlements(groups: Iterable[GroupSnapshot]) -> List[GroupSuggestion]:
    """Simplified transfers for every group, largest amount first."""
    suggestions: List[GroupSuggestion] = []

    for group in groups:
        members_by_id = {m.id: m for m in group.members}
        balances = compute_balances(group.members, group.expenses, group.settlements)
        for debt in simplify_debts(balances, group.members):
            from_member = members_by_id.get(debt.from_member_id)
            to_member = members_by_id.get(debt.to_member_id)
            if from_member and to_member:
                suggestions.append(GroupSuggestion(group.id, group.name, from_member, to_member, debt.amount))

    # Stable, so equal amounts keep group order
    suggestions.sort(key=lambda s: s.amount, reverse=True)
    return suggestions
