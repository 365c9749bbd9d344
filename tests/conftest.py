from decimal import Decimal
from typing import Any, Dict, List

import pytest

from splitfree.app import create_app
from splitfree.ledger import GroupSnapshot
from splitfree.models import Expense, Member, Receipt, ReceiptItem, SettlementRecord, Split


def D(value) -> Decimal:
    return Decimal(str(value))


def member(member_id: str, name: str = None, user_id: str = None) -> Member:
    return Member(id=member_id, name=name or member_id.upper(), user_id=user_id)


def expense(expense_id: str, paid_by: str, amount, splits: Dict[str, Any]) -> Expense:
    return Expense(
        id=expense_id,
        paid_by=paid_by,
        amount=D(amount),
        splits=tuple(Split(member_id=m, amount=D(a)) for m, a in splits.items()),
    )


def settlement(from_id: str, to_id: str, amount) -> SettlementRecord:
    return SettlementRecord(from_member_id=from_id, to_member_id=to_id, amount=D(amount))


class FakeStore:
    """In-memory stand-in for splitfree.db.Store."""

    def __init__(self) -> None:
        self.groups: Dict[str, Dict[str, Any]] = {}
        self.members: Dict[str, List[Member]] = {}
        self.expenses: Dict[str, List[Expense]] = {}
        self.settlements: Dict[str, List[SettlementRecord]] = {}
        self.receipts: Dict[str, Dict[str, Any]] = {}
        self.inserted_settlements: List[Dict[str, Any]] = []
        self.claims: List[Dict[str, Any]] = []

    def add_group(self, group_id, name, members, expenses=(), settlements=()):
        self.groups[group_id] = {"id": group_id, "name": name, "currency": "USD"}
        self.members[group_id] = list(members)
        self.expenses[group_id] = list(expenses)
        self.settlements[group_id] = list(settlements)

    def add_receipt(self, receipt_row, item_rows, group_id):
        self.receipts[receipt_row["id"]] = {"row": receipt_row, "items": item_rows, "group_id": group_id}

    def get_group(self, group_id):
        return self.groups.get(group_id)

    def get_members(self, group_id):
        return self.members.get(group_id, [])

    def load_group(self, group_id):
        if group_id not in self.groups:
            return None
        return GroupSnapshot(
            id=group_id,
            name=self.groups[group_id]["name"],
            members=self.members[group_id],
            expenses=self.expenses[group_id],
            settlements=self.settlements[group_id],
        )

    def load_groups_for_user(self, user_id):
        member_by_group = {
            group_id: m.id for group_id, members in self.members.items() for m in members if m.user_id == user_id
        }
        return [self.load_group(group_id) for group_id in member_by_group], member_by_group

    def load_receipt(self, receipt_id):
        data = self.receipts.get(receipt_id)
        if data is None:
            return None
        receipt = Receipt.from_row(data["row"])
        items = [ReceiptItem.from_row(row) for row in data["items"]]
        return receipt, items, self.get_members(data["group_id"])

    def insert_settlement(self, group_id, row):
        self.inserted_settlements.append({"group_id": group_id, **row})
        return f"s{len(self.inserted_settlements)}"

    def upsert_claim(self, claim):
        self.claims.append(claim)


@pytest.fixture
def store():
    return FakeStore()


@pytest.fixture
def app(store):
    app = create_app(store=store)
    app.config["TESTING"] = True
    return app


@pytest.fixture
def client(app):
    return app.test_client()
