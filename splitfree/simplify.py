from __future__ import annotations

from decimal import Decimal
from typing import Iterable, List, Mapping

from .models import Member, SuggestedSettlement
from .money import BALANCE_TOLERANCE, round_currency


def _largest(parties: List[List]) -> List:
    # max() keeps the first of equal values, so ties go to the earlier member
    return max(parties, key=lambda party: party[1])


def simplify_debts(balances: Mapping[str, Decimal], members: Iterable[Member]) -> List[SuggestedSettlement]:
    """
    Reduce a balance map to suggested transfers, greedy largest-first.

    Each round pairs the largest creditor with the largest debtor and settles
    the smaller of the two, so every round clears at least one party and n
    members need at most n - 1 transfers. This is not a minimum-transfer
    solver and must stay deterministic.
    """
    creditors: List[List] = []
    debtors: List[List] = []
    seen = set()

    for member in members:
        if member.id in seen or member.id not in balances:
            continue
        seen.add(member.id)
        amount = balances[member.id]
        if amount > BALANCE_TOLERANCE:
            creditors.append([member.id, amount])
        elif amount < -BALANCE_TOLERANCE:
            debtors.append([member.id, -amount])

    settlements: List[SuggestedSettlement] = []

    while creditors and debtors:
        creditor = _largest(creditors)
        debtor = _largest(debtors)

        settled_amount = min(creditor[1], debtor[1])
        settlements.append(
            SuggestedSettlement(
                from_member_id=debtor[0],
                to_member_id=creditor[0],
                amount=round_currency(settled_amount),
            )
        )

        creditor[1] -= settled_amount
        debtor[1] -= settled_amount

        if creditor[1] <= BALANCE_TOLERANCE:
            creditors.remove(creditor)
        if debtor[1] <= BALANCE_TOLERANCE:
            debtors.remove(debtor)

    return settlements
