from __future__ import annotations

from flask import Blueprint, jsonify, request

from nemy.extensions import db
from nemy.services import ledger_service, withdrawal_service
from nemy.utils.auth import require_user

wallets_bp = Blueprint("wallets_bp", __name__, url_prefix="/api/wallet")


def _account_type(role: str) -> str:
    role = (role or "").strip().lower()
    return role if role in ("driver", "business", "platform") else "customer"


def _own_wallet(user):
    wallet = ledger_service.get_or_create_wallet(int(user.id), _account_type(user.role))
    # Persist a lazily created row.
    db.session.commit()
    return wallet


@wallets_bp.get("")
def get_wallet():
    u = require_user()
    wallet = _own_wallet(u)
    return jsonify({"ok": True, "wallet": wallet.to_dict()}), 200


@wallets_bp.get("/transactions")
def list_transactions():
    u = require_user()
    try:
        limit = int(request.args.get("limit") or 50)
    except ValueError:
        limit = 50
    bucket = (request.args.get("bucket") or "").strip() or None
    wallet = _own_wallet(u)
    rows = ledger_service.wallet_transactions(int(wallet.id), limit=limit, bucket=bucket)
    items = [t.to_dict() for t in rows]
    return jsonify({"ok": True, "items": items, "count": len(items)}), 200


@wallets_bp.get("/withdrawals")
def list_withdrawals():
    u = require_user()
    rows = withdrawal_service.list_for_user(int(u.id))
    return jsonify({"ok": True, "items": [w.to_dict() for w in rows]}), 200


@wallets_bp.post("/withdrawals")
def request_withdrawal():
    u = require_user("driver", "business")
    data = request.get_json(silent=True) or {}
    w = withdrawal_service.request_withdrawal(
        int(u.id),
        data.get("amount"),
        destination=(data.get("destination") or "").strip() or None,
    )
    return jsonify({"ok": True, "withdrawal": w.to_dict()}), 201
