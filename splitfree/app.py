from __future__ import annotations

import logging
from decimal import Decimal
from typing import Any, Dict, List, Mapping, Optional

from flask import Flask, current_app, jsonify, request
from flask_cors import CORS

from .config import config
from .ledger import compute_balances, person_balances, suggested_settlements, summarize_balances
from .models import (
    Expense,
    ItemClaim,
    Member,
    Receipt,
    ReceiptItem,
    ReceiptMemberCalculation,
    ReceiptSummary,
    SettlementRecord,
    SuggestedSettlement,
    parse_rows,
)
from .money import ZERO, format_amount, to_amount, to_decimal
from .receipts import can_claim_item, claims_of, create_claim, summarize_receipt
from .simplify import simplify_debts
from .splits import SPLIT_METHODS, calculate_splits, validate_split_data


def create_app(store=None) -> Flask:
    logging.basicConfig(
        level=config.LOG_LEVEL,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    app = Flask(__name__)
    app.config["SECRET_KEY"] = config.SECRET_KEY

    if store is None:
        from .db import store as default_store

        store = default_store
    app.extensions["splitfree_store"] = store

    CORS(app, resources={r"/api/*": {"origins": config.CORS_ORIGINS}})

    register_routes(app)
    return app


def _store():
    return current_app.extensions["splitfree_store"]


def _payload() -> Dict[str, Any]:
    payload = request.get_json(silent=True)
    if not isinstance(payload, dict):
        raise ValueError("invalid_payload")
    return payload


def _decimal_map(value: Any) -> Dict[str, Decimal]:
    if not isinstance(value, dict):
        raise ValueError("invalid_payload")
    try:
        return {str(key): to_decimal(v) for key, v in value.items()}
    except ValueError:
        raise ValueError("invalid_amount") from None


def _balance_rows(members: List[Member], balances: Mapping[str, Decimal]) -> List[Dict[str, Any]]:
    return [
        {"member_id": m.id, "name": m.name, "balance": format_amount(balances.get(m.id, ZERO))}
        for m in members
    ]


def _settlement_rows(settlements: List[SuggestedSettlement], members: List[Member]) -> List[Dict[str, Any]]:
    names = {m.id: m.name for m in members}
    return [
        {
            "from_member_id": s.from_member_id,
            "from_name": names.get(s.from_member_id),
            "to_member_id": s.to_member_id,
            "to_name": names.get(s.to_member_id),
            "amount": format_amount(s.amount),
        }
        for s in settlements
    ]


def _member_total_row(total: ReceiptMemberCalculation) -> Dict[str, Any]:
    return {
        "member_id": total.member_id,
        "member_name": total.member_name,
        "items_total": format_amount(total.items_total),
        "tax_share": format_amount(total.tax_share),
        "tip_share": format_amount(total.tip_share),
        "grand_total": format_amount(total.grand_total),
        "claimed_items": [
            {
                "item_id": line.item_id,
                "description": line.description,
                "amount": format_amount(line.amount),
                "share_fraction": str(line.share_fraction),
            }
            for line in total.claimed_items
        ],
    }


def _summary_row(summary: ReceiptSummary) -> Dict[str, Any]:
    return {
        "receipt_id": summary.receipt_id,
        "merchant_name": summary.merchant_name,
        "receipt_date": summary.receipt_date,
        "item_count": summary.item_count,
        "claimed_item_count": summary.claimed_item_count,
        "unclaimed_item_count": summary.unclaimed_item_count,
        "subtotal": format_amount(summary.subtotal),
        "tax": format_amount(summary.tax),
        "tip": format_amount(summary.tip),
        "total": format_amount(summary.total),
        "member_totals": [_member_total_row(t) for t in summary.member_totals],
    }


def _group_balances_response(
    members: List[Member],
    expenses: List[Expense],
    settlements: List[SettlementRecord],
):
    balances = compute_balances(members, expenses, settlements)
    summary = summarize_balances(balances)
    suggested = simplify_debts(balances, members)
    return jsonify(
        {
            "balances": _balance_rows(members, balances),
            "summary": {
                "total_owed": format_amount(summary.total_owed),
                "total_owing": format_amount(summary.total_owing),
                "net_balance": format_amount(summary.net_balance),
            },
            "settlements": _settlement_rows(suggested, members),
        }
    )


def _validate_settlement(payload: Dict[str, Any], members: List[Member]) -> Dict[str, Any]:
    from_member_id = payload.get("from_member_id")
    to_member_id = payload.get("to_member_id")
    amount = payload.get("amount")

    if from_member_id is None or to_member_id is None or amount is None:
        raise ValueError("missing_fields")

    from_member_id, to_member_id = str(from_member_id), str(to_member_id)
    if from_member_id == to_member_id:
        raise ValueError("same_member")

    member_ids = {m.id for m in members}
    if from_member_id not in member_ids or to_member_id not in member_ids:
        raise ValueError("member_not_in_group")

    try:
        amount_decimal = to_amount(amount)
    except ValueError:
        raise ValueError("invalid_amount") from None
    if amount_decimal <= ZERO:
        raise ValueError("invalid_amount")

    return {
        "from_member_id": from_member_id,
        "to_member_id": to_member_id,
        "amount": amount_decimal,
        "method": payload.get("method"),
        "notes": payload.get("notes"),
    }


def _optional_fraction(value: Any) -> Optional[Decimal]:
    if value is None:
        return None
    try:
        fraction = to_decimal(value)
    except ValueError:
        raise ValueError("invalid_share_fraction") from None
    if fraction <= ZERO or fraction > 1:
        raise ValueError("invalid_share_fraction")
    return fraction


def register_routes(app: Flask) -> None:
    @app.errorhandler(ValueError)
    def handle_value_error(exc: ValueError):
        return jsonify({"error": str(exc)}), 400

    @app.get("/api/health")
    def health_check():
        return jsonify({"status": "healthy"})

    @app.post("/api/balances")
    def calculate_balances():
        payload = _payload()
        members = parse_rows(Member.from_row, payload.get("members") or [])
        expenses = parse_rows(Expense.from_row, payload.get("expenses") or [])
        settlements = parse_rows(SettlementRecord.from_row, payload.get("settlements") or [])
        return _group_balances_response(members, expenses, settlements)

    @app.post("/api/settlements/simplify")
    def simplify_settlements():
        payload = _payload()
        members = parse_rows(Member.from_row, payload.get("members") or [])
        balances = _decimal_map(payload.get("balances") or {})
        suggested = simplify_debts(balances, members)
        return jsonify({"settlements": _settlement_rows(suggested, members)})

    @app.post("/api/splits")
    def calculate_split():
        payload = _payload()
        method = payload.get("method")
        if method not in SPLIT_METHODS:
            return jsonify({"error": "invalid_split_method"}), 400

        try:
            amount = to_amount(payload.get("amount"))
        except ValueError:
            return jsonify({"error": "invalid_amount"}), 400

        options = {
            "member_ids": [str(m) for m in payload.get("member_ids") or []],
            "amounts": _decimal_map(payload.get("amounts") or {}),
            "percents": _decimal_map(payload.get("percents") or {}),
            "shares": _decimal_map(payload.get("shares") or {}),
        }
        is_valid, error = validate_split_data(method, amount, **options)
        if not is_valid:
            return jsonify({"error": "invalid_split", "message": error}), 400

        splits = calculate_splits(method, amount, **options)
        return jsonify(
            {"splits": [{"member_id": s["member_id"], "amount": format_amount(s["amount"])} for s in splits]}
        )

    @app.post("/api/receipts/summary")
    def receipt_summary():
        payload = _payload()
        receipt_row = payload.get("receipt")
        if not isinstance(receipt_row, dict):
            return jsonify({"error": "missing_fields"}), 400

        receipt = Receipt.from_row(receipt_row)
        items = parse_rows(ReceiptItem.from_row, payload.get("items") or [])
        members = parse_rows(Member.from_row, payload.get("members") or [])
        if "claims" in payload:
            claims = parse_rows(ItemClaim.from_row, payload.get("claims") or [])
        else:
            claims = claims_of(items)

        return jsonify(_summary_row(summarize_receipt(receipt, items, claims, members)))

    @app.post("/api/receipts/can-claim")
    def can_claim():
        payload = _payload()
        item_row = payload.get("item")
        member_id = payload.get("member_id")
        if not isinstance(item_row, dict) or member_id is None:
            return jsonify({"error": "missing_fields"}), 400

        check = can_claim_item(ReceiptItem.from_row(item_row), str(member_id))
        return jsonify(
            {
                "can_claim": check.can_claim,
                "reason": check.reason,
                "remaining_fraction": str(check.remaining_fraction) if check.remaining_fraction is not None else None,
            }
        )

    @app.get("/api/groups/<group_id>/balances")
    def get_group_balances(group_id: str):
        group = _store().load_group(group_id)
        if group is None:
            return jsonify({"error": "group_not_found"}), 404
        return _group_balances_response(list(group.members), list(group.expenses), list(group.settlements))

    @app.post("/api/groups/<group_id>/settlements")
    def record_settlement(group_id: str):
        store = _store()
        if store.get_group(group_id) is None:
            return jsonify({"error": "group_not_found"}), 404

        settlement = _validate_settlement(_payload(), store.get_members(group_id))
        settlement_id = store.insert_settlement(group_id, settlement)
        current_app.logger.info(
            "Recorded settlement %s in group %s: %s -> %s %s",
            settlement_id,
            group_id,
            settlement["from_member_id"],
            settlement["to_member_id"],
            settlement["amount"],
        )
        return (
            jsonify(
                {
                    "id": settlement_id,
                    "from_member_id": settlement["from_member_id"],
                    "to_member_id": settlement["to_member_id"],
                    "amount": format_amount(settlement["amount"]),
                }
            ),
            201,
        )

    @app.get("/api/users/<user_id>/balances")
    def get_user_balances(user_id: str):
        groups, member_by_group = _store().load_groups_for_user(user_id)
        result = person_balances(groups, member_by_group)
        return jsonify(
            {
                "total_owed": format_amount(result.total_owed),
                "total_owing": format_amount(result.total_owing),
                "net_balance": format_amount(result.net_balance),
                "people": [
                    {
                        "name": person.name,
                        "net_balance": format_amount(person.net_balance),
                        "groups": [
                            {
                                "group_id": g.group_id,
                                "group_name": g.group_name,
                                "balance": format_amount(g.balance),
                            }
                            for g in person.groups
                        ],
                    }
                    for person in result.people
                ],
            }
        )

    @app.get("/api/users/<user_id>/settlements")
    def get_user_suggested_settlements(user_id: str):
        groups, _ = _store().load_groups_for_user(user_id)
        return jsonify(
            {
                "settlements": [
                    {
                        "group_id": s.group_id,
                        "group_name": s.group_name,
                        "from_member_id": s.from_member.id,
                        "from_name": s.from_member.name,
                        "to_member_id": s.to_member.id,
                        "to_name": s.to_member.name,
                        "amount": format_amount(s.amount),
                    }
                    for s in suggested_settlements(groups)
                ]
            }
        )

    @app.get("/api/receipts/<receipt_id>/summary")
    def get_receipt_summary(receipt_id: str):
        loaded = _store().load_receipt(receipt_id)
        if loaded is None:
            return jsonify({"error": "receipt_not_found"}), 404

        receipt, items, members = loaded
        return jsonify(_summary_row(summarize_receipt(receipt, items, claims_of(items), members)))

    @app.post("/api/receipts/<receipt_id>/items/<item_id>/claims")
    def claim_item(receipt_id: str, item_id: str):
        store = _store()
        loaded = store.load_receipt(receipt_id)
        if loaded is None:
            return jsonify({"error": "receipt_not_found"}), 404

        _, items, members = loaded
        item = next((i for i in items if i.id == item_id), None)
        if item is None:
            return jsonify({"error": "item_not_found"}), 404

        payload = _payload()
        member_id = payload.get("member_id")
        if member_id is None:
            return jsonify({"error": "missing_fields"}), 400
        member_id = str(member_id)
        if member_id not in {m.id for m in members}:
            return jsonify({"error": "member_not_in_group"}), 400

        check = can_claim_item(item, member_id)
        if not check.can_claim:
            return jsonify({"error": "cannot_claim", "reason": check.reason}), 409

        split_count = payload.get("split_count")
        try:
            split_count = int(split_count) if split_count is not None else None
        except (TypeError, ValueError):
            return jsonify({"error": "invalid_split_count"}), 400
        if split_count is not None and split_count < 1:
            return jsonify({"error": "invalid_split_count"}), 400

        # The upsert replaces the member's own claim, so it is available again
        own_fraction = sum((c.share_fraction for c in item.claims if c.member_id == member_id), ZERO)
        claim = create_claim(
            item.id,
            member_id,
            split_count=split_count,
            share_fraction=_optional_fraction(payload.get("share_fraction")),
            max_fraction=check.remaining_fraction + own_fraction,
            claimed_via=payload.get("claimed_via") or "app",
        )
        store.upsert_claim(claim)
        current_app.logger.info(
            "Member %s claimed %s of item %s on receipt %s",
            member_id,
            claim["share_fraction"],
            item.id,
            receipt_id,
        )
        return (
            jsonify(
                {
                    "receipt_item_id": claim["receipt_item_id"],
                    "member_id": claim["member_id"],
                    "claim_type": claim["claim_type"],
                    "share_fraction": str(claim["share_fraction"]),
                    "split_count": claim["split_count"],
                    "claimed_via": claim["claimed_via"],
                }
            ),
            201,
        )


# Run as a module: python -m splitfree.app
if __name__ == "__main__":
    create_app().run(debug=True)
