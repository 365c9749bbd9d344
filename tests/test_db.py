from typing import Any, Dict, List

import pytest

from conftest import D
from splitfree.db import Database, Store


class CannedDatabase:
    """Answers queries with canned rows picked by a marker in the SQL."""

    def __init__(self, responses: Dict[str, Any]) -> None:
        self.responses = responses
        self.queries: List[tuple] = []
        self.executed: List[tuple] = []

    def _rows(self, query, params):
        self.queries.append((query, list(params or ())))
        flat = " ".join(query.split())
        for marker, rows in self.responses.items():
            if marker in flat:
                if callable(rows):
                    rows = rows(list(params or ()))
                return [dict(row) for row in rows]
        return []

    def fetch_all(self, query, params=None):
        return self._rows(query, params)

    def fetch_one(self, query, params=None):
        rows = self._rows(query, params)
        return rows[0] if rows else None

    def execute(self, query, params=None):
        self.executed.append((" ".join(query.split()), tuple(params or ())))
        return 1


MEMBERS = [
    {"id": "a", "name": "Ann", "user_id": "user-1"},
    {"id": "b", "name": "Ben", "user_id": None},
]


def test_expenses_get_their_own_splits():
    db = CannedDatabase(
        {
            "FROM splits": [
                {"expense_id": "e2", "member_id": "a", "amount": "5.00"},
                {"expense_id": "e1", "member_id": "a", "amount": "30.00"},
                {"expense_id": "e1", "member_id": "b", "amount": "30.00"},
                {"expense_id": "e2", "member_id": "b", "amount": "5.00"},
            ],
            "FROM expenses": [
                {"id": "e1", "paid_by": "a", "amount": "60.00", "currency": None, "exchange_rate": None},
                {"id": "e2", "paid_by": "b", "amount": "10.00", "currency": "EUR", "exchange_rate": "1.1"},
                {"id": "e3", "paid_by": "b", "amount": "4.00", "currency": None, "exchange_rate": None},
            ],
        }
    )

    expenses = Store(db).get_expenses("g1")

    assert [(s.member_id, s.amount) for s in expenses[0].splits] == [("a", D("30.00")), ("b", D("30.00"))]
    assert [(s.member_id, s.amount) for s in expenses[1].splits] == [("a", D("5.00")), ("b", D("5.00"))]
    assert expenses[2].splits == ()
    assert expenses[1].exchange_rate == D("1.1")
    splits_query, params = db.queries[1]
    assert "IN (%s, %s, %s)" in splits_query
    assert params == ["e1", "e2", "e3"]


def test_no_expenses_skips_splits_query():
    db = CannedDatabase({"FROM expenses": []})
    assert Store(db).get_expenses("g1") == []
    assert len(db.queries) == 1


def test_receipt_items_get_their_own_claims():
    db = CannedDatabase(
        {
            "FROM item_claims": [
                {"id": "c1", "receipt_item_id": "i2", "member_id": "a", "claim_type": "full",
                 "share_fraction": "1.0000", "split_count": 1, "claimed_via": "app"},
                {"id": "c2", "receipt_item_id": "i1", "member_id": "a", "claim_type": "split",
                 "share_fraction": "0.5000", "split_count": 2, "claimed_via": "web"},
                {"id": "c3", "receipt_item_id": "i1", "member_id": "b", "claim_type": "split",
                 "share_fraction": "0.5000", "split_count": 2, "claimed_via": "app"},
            ],
            "FROM receipt_items": [
                {"id": "i1", "description": "Nachos", "total_price": "12.00", "is_tax": 0},
                {"id": "i2", "description": "Soda", "total_price": "3.00", "is_tax": 0},
                {"id": "i3", "description": "Tax", "total_price": "1.20", "is_tax": 1},
            ],
        }
    )

    items = Store(db).get_receipt_items("r1")

    assert [(c.receipt_item_id, c.member_id, c.share_fraction) for c in items[0].claims] == [
        ("i1", "a", D("0.5")),
        ("i1", "b", D("0.5")),
    ]
    assert [c.id for c in items[1].claims] == ["c1"]
    assert items[2].claims == ()
    assert items[2].is_tax
    assert items[0].claims[0].claimed_via == "web"


def test_load_receipt_reads_group_members():
    db = CannedDatabase(
        {
            "FROM receipts": [{"id": "r1", "group_id": "g1", "merchant_name": "Diner", "total_amount": "15.00"}],
            "FROM receipt_items": [{"id": "i1", "description": "Soup", "total_price": "15.00"}],
            "FROM members WHERE group_id": MEMBERS,
        }
    )

    receipt, items, members = Store(db).load_receipt("r1")

    assert receipt.merchant_name == "Diner"
    assert receipt.total_amount == D("15.00")
    assert [i.id for i in items] == ["i1"]
    assert [m.id for m in members] == ["a", "b"]


def test_load_receipt_missing():
    assert Store(CannedDatabase({})).load_receipt("nope") is None


def test_load_group():
    db = CannedDatabase(
        {
            "FROM `groups`": [{"id": "g1", "name": "Trip", "currency": "USD"}],
            "FROM members WHERE group_id": MEMBERS,
            "FROM expenses": [{"id": "e1", "paid_by": "a", "amount": "20.00"}],
            "FROM splits": [{"expense_id": "e1", "member_id": "b", "amount": "20.00"}],
            "FROM settlements": [
                {"id": "s1", "from_member_id": "b", "to_member_id": "a", "amount": "5.00", "method": "cash"},
                {"id": "s2", "from_member_id": "b", "to_member_id": "a", "amount": "0.00", "method": "cash"},
            ],
        }
    )

    group = Store(db).load_group("g1")

    assert group.name == "Trip"
    assert [m.name for m in group.members] == ["Ann", "Ben"]
    assert group.expenses[0].splits[0].member_id == "b"
    assert [s.id for s in group.settlements] == ["s1"]


def test_load_groups_for_user():
    members_by_group = {
        "g1": [{"id": "a", "name": "Ann", "user_id": "user-1"}, {"id": "b", "name": "Ben"}],
        "g2": [{"id": "c", "name": "Ann", "user_id": "user-1"}, {"id": "d", "name": "Dan"}],
    }
    db = CannedDatabase(
        {
            "FROM members WHERE user_id": [{"id": "a", "group_id": "g1"}, {"id": "c", "group_id": "g2"}],
            "FROM members WHERE group_id": lambda params: members_by_group[params[0]],
            "FROM `groups`": [{"id": "g1", "name": "Trip"}],
        }
    )

    groups, member_by_group = Store(db).load_groups_for_user("user-1")

    assert member_by_group == {"g1": "a", "g2": "c"}
    assert [(g.id, [m.id for m in g.members]) for g in groups] == [("g1", ["a", "b"])]
    groups_query, params = next(q for q in db.queries if "FROM `groups`" in q[0])
    assert "archived_at IS NULL" in groups_query
    assert params == ["g1", "g2"]


def test_load_groups_for_user_without_memberships():
    db = CannedDatabase({})
    assert Store(db).load_groups_for_user("nobody") == ([], {})
    assert len(db.queries) == 1


def test_insert_settlement_row():
    db = CannedDatabase({})
    settlement_id = Store(db).insert_settlement(
        "g1", {"from_member_id": "b", "to_member_id": "a", "amount": D("12.50"), "method": None}
    )

    query, params = db.executed[0]
    assert query.startswith("INSERT INTO settlements (id, group_id, from_member_id, to_member_id, amount, method, notes)")
    assert params == (settlement_id, "g1", "b", "a", "12.50", "other", None)


def test_upsert_claim_row():
    db = CannedDatabase({})
    Store(db).upsert_claim(
        {
            "receipt_item_id": "i1",
            "member_id": "a",
            "claim_type": "split",
            "share_fraction": D("0.25"),
            "split_count": 4,
            "claimed_via": "web",
        }
    )

    query, params = db.executed[0]
    assert "ON DUPLICATE KEY UPDATE" in query
    assert "share_fraction=VALUES(share_fraction)" in query
    assert params[1:] == ("i1", "a", "split", "0.25", 4, "web")


class FakeConnection:
    def __init__(self) -> None:
        self.events: List[str] = []

    def cursor(self, dictionary=True):
        connection = self

        class Cursor:
            def close(self):
                connection.events.append("cursor_close")

        return Cursor()

    def commit(self):
        self.events.append("commit")

    def rollback(self):
        self.events.append("rollback")

    def close(self):
        self.events.append("close")


class FakePool:
    def __init__(self, connection) -> None:
        self.connection = connection

    def get_connection(self):
        return self.connection


def _database(connection) -> Database:
    database = Database()
    database._pool = FakePool(connection)
    return database


def test_cursor_commits_on_success():
    connection = FakeConnection()
    with _database(connection).cursor():
        pass
    assert connection.events == ["commit", "cursor_close", "close"]


def test_cursor_rolls_back_on_any_error():
    connection = FakeConnection()
    with pytest.raises(KeyError):
        with _database(connection).cursor():
            raise KeyError("boom")
    assert connection.events == ["rollback", "cursor_close", "close"]
