import logging
import uuid
from contextlib import contextmanager
from typing import Any, Dict, Iterable, List, Optional, Tuple

from mysql.connector import pooling

from .config import config
from .ledger import GroupSnapshot
from .models import Expense, Member, Receipt, ReceiptItem, SettlementRecord, parse_rows

logger = logging.getLogger(__name__)


class Database:
    def __init__(self) -> None:
        self._pool: Optional[pooling.MySQLConnectionPool] = None

    @property
    def pool(self) -> pooling.MySQLConnectionPool:
        # Created on first use so importing the app does not need a running server
        if self._pool is None:
            logger.info("Opening MySQL pool to %s:%s/%s", config.DB_HOST, config.DB_PORT, config.DB_NAME)
            self._pool = pooling.MySQLConnectionPool(
                pool_name="splitfree_pool",
                pool_size=config.DB_POOL_SIZE,
                host=config.DB_HOST,
                port=config.DB_PORT,
                user=config.DB_USER,
                password=config.DB_PASSWORD,
                database=config.DB_NAME,
                auth_plugin="mysql_native_password",
            )
        return self._pool

    @contextmanager
    def connection(self):
        conn = self.pool.get_connection()
        try:
            yield conn
        finally:
            conn.close()

    @contextmanager
    def cursor(self, dictionary: bool = True):
        with self.connection() as conn:
            cursor = conn.cursor(dictionary=dictionary)
            try:
                yield cursor
                conn.commit()
            except Exception:
                conn.rollback()
                raise
            finally:
                cursor.close()

    def fetch_one(self, query: str, params: Optional[Iterable[Any]] = None) -> Optional[Dict[str, Any]]:
        with self.cursor() as cursor:
            cursor.execute(query, params or ())
            return cursor.fetchone()

    def fetch_all(self, query: str, params: Optional[Iterable[Any]] = None) -> List[Dict[str, Any]]:
        with self.cursor() as cursor:
            cursor.execute(query, params or ())
            return cursor.fetchall()

    def execute(self, query: str, params: Optional[Iterable[Any]] = None) -> int:
        with self.cursor() as cursor:
            cursor.execute(query, params or ())
            return cursor.rowcount


def _placeholders(values: List[Any]) -> str:
    return ", ".join(["%s"] * len(values))


class Store:
    """Loads snapshots for the engine and writes back the rows callers choose."""

    def __init__(self, database: Database) -> None:
        self.db = database

    def get_group(self, group_id: str) -> Optional[Dict[str, Any]]:
        return self.db.fetch_one("SELECT id, name, currency FROM `groups` WHERE id=%s", (group_id,))

    def get_members(self, group_id: str) -> List[Member]:
        rows = self.db.fetch_all(
            "SELECT id, name, user_id FROM members WHERE group_id=%s ORDER BY created_at, id",
            (group_id,),
        )
        return parse_rows(Member.from_row, rows)

    def get_expenses(self, group_id: str) -> List[Expense]:
        expenses = self.db.fetch_all(
            """
            SELECT id, paid_by, amount, currency, exchange_rate
            FROM expenses
            WHERE group_id=%s AND deleted_at IS NULL
            ORDER BY created_at, id
            """,
            (group_id,),
        )
        expense_ids = [expense["id"] for expense in expenses]
        splits_map: Dict[Any, List[Dict[str, Any]]] = {}

        if expense_ids:
            splits = self.db.fetch_all(
                f"""
                SELECT expense_id, member_id, amount
                FROM splits
                WHERE expense_id IN ({_placeholders(expense_ids)})
                ORDER BY id
                """,
                expense_ids,
            )
            for split in splits:
                splits_map.setdefault(split["expense_id"], []).append(split)

        for expense in expenses:
            expense["splits"] = splits_map.get(expense["id"], [])
        return parse_rows(Expense.from_row, expenses)

    def get_settlements(self, group_id: str) -> List[SettlementRecord]:
        rows = self.db.fetch_all(
            """
            SELECT id, from_member_id, to_member_id, amount, settled_at, method, notes
            FROM settlements
            WHERE group_id=%s
            ORDER BY settled_at, id
            """,
            (group_id,),
        )
        return parse_rows(SettlementRecord.from_row, rows)

    def load_group(self, group_id: str) -> Optional[GroupSnapshot]:
        group = self.get_group(group_id)
        if not group:
            return None
        return GroupSnapshot(
            id=str(group["id"]),
            name=group["name"],
            members=self.get_members(group_id),
            expenses=self.get_expenses(group_id),
            settlements=self.get_settlements(group_id),
        )

    def load_groups_for_user(self, user_id: str) -> Tuple[List[GroupSnapshot], Dict[str, str]]:
        """Returns the user's active groups and a map of group id to their member id."""
        memberships = self.db.fetch_all(
            "SELECT id, group_id FROM members WHERE user_id=%s ORDER BY created_at, id",
            (user_id,),
        )
        member_by_group = {str(row["group_id"]): str(row["id"]) for row in memberships}
        if not member_by_group:
            return [], {}

        group_ids = list(member_by_group)
        groups = self.db.fetch_all(
            f"""
            SELECT id, name
            FROM `groups`
            WHERE id IN ({_placeholders(group_ids)}) AND archived_at IS NULL
            ORDER BY created_at, id
            """,
            group_ids,
        )
        snapshots = [
            GroupSnapshot(
                id=str(group["id"]),
                name=group["name"],
                members=self.get_members(group["id"]),
                expenses=self.get_expenses(group["id"]),
                settlements=self.get_settlements(group["id"]),
            )
            for group in groups
        ]
        logger.debug("Loaded %d groups for user %s", len(snapshots), user_id)
        return snapshots, member_by_group

    def get_receipt(self, receipt_id: str) -> Optional[Dict[str, Any]]:
        return self.db.fetch_one(
            """
            SELECT id, group_id, merchant_name, receipt_date, subtotal, tax_amount,
                   tip_amount, total_amount, currency
            FROM receipts
            WHERE id=%s
            """,
            (receipt_id,),
        )

    def get_receipt_items(self, receipt_id: str) -> List[ReceiptItem]:
        items = self.db.fetch_all(
            """
            SELECT id, description, quantity, unit_price, total_price, is_tax, is_tip,
                   is_subtotal, is_total, is_discount, is_service_charge, is_modifier,
                   parent_item_id, is_likely_shared
            FROM receipt_items
            WHERE receipt_id=%s
            ORDER BY line_number, id
            """,
            (receipt_id,),
        )
        item_ids = [item["id"] for item in items]
        claims_map: Dict[Any, List[Dict[str, Any]]] = {}

        if item_ids:
            claims = self.db.fetch_all(
                f"""
                SELECT id, receipt_item_id, member_id, claim_type, share_fraction,
                       split_count, claimed_via
                FROM item_claims
                WHERE receipt_item_id IN ({_placeholders(item_ids)})
                ORDER BY claimed_at, id
                """,
                item_ids,
            )
            for claim in claims:
                claims_map.setdefault(claim["receipt_item_id"], []).append(claim)

        for item in items:
            item["claims"] = claims_map.get(item["id"], [])
        return parse_rows(ReceiptItem.from_row, items)

    def load_receipt(self, receipt_id: str):
        """Returns (receipt, items, members) or None when the receipt does not exist."""
        row = self.get_receipt(receipt_id)
        if not row:
            return None
        receipt = Receipt.from_row(row)
        items = self.get_receipt_items(receipt_id)
        members = self.get_members(row["group_id"]) if row.get("group_id") else []
        return receipt, items, members

    def insert_settlement(self, group_id: str, settlement: Dict[str, Any]) -> str:
        settlement_id = str(uuid.uuid4())
        self.db.execute(
            """
            INSERT INTO settlements (id, group_id, from_member_id, to_member_id, amount, method, notes)
            VALUES (%s, %s, %s, %s, %s, %s, %s)
            """,
            (
                settlement_id,
                group_id,
                settlement["from_member_id"],
                settlement["to_member_id"],
                str(settlement["amount"]),
                settlement.get("method") or "other",
                settlement.get("notes"),
            ),
        )
        return settlement_id

    def upsert_claim(self, claim: Dict[str, Any]) -> None:
        # UNIQUE (receipt_item_id, member_id) keeps one claim per member per item
        self.db.execute(
            """
            INSERT INTO item_claims (id, receipt_item_id, member_id, claim_type, share_fraction,
                                     split_count, claimed_via)
            VALUES (%s, %s, %s, %s, %s, %s, %s)
            ON DUPLICATE KEY UPDATE
                claim_type=VALUES(claim_type),
                share_fraction=VALUES(share_fraction),
                split_count=VALUES(split_count),
                claimed_via=VALUES(claimed_via)
            """,
            (
                str(uuid.uuid4()),
                claim["receipt_item_id"],
                claim["member_id"],
                claim["claim_type"],
                str(claim["share_fraction"]),
                claim["split_count"],
                claim["claimed_via"],
            ),
        )


db = Database()
store = Store(db)
