from __future__ import annotations

from flask import Blueprint, jsonify, request

from nemy.jobs.settlement_runner import block_overdue, close_week
from nemy.services import settlement_service
from nemy.utils.auth import require_user
from nemy.utils.events import events_for

settlements_bp = Blueprint("settlements_bp", __name__, url_prefix="/api/settlements")
admin_settlements_bp = Blueprint("admin_settlements_bp", __name__, url_prefix="/api/admin/settlements")


@settlements_bp.get("/current")
def current_settlement():
    u = require_user("driver")
    row = settlement_service.driver_current_settlement(int(u.id))
    return jsonify({"ok": True, "settlement": row.to_dict() if row else None}), 200


@settlements_bp.post("/<int:settlement_id>/proof")
def submit_proof(settlement_id: int):
    u = require_user("driver")
    data = request.get_json(silent=True) or {}
    row = settlement_service.submit_proof(settlement_id, int(u.id), data.get("proof_url") or "")
    return jsonify({"ok": True, "settlement": row.to_dict()}), 200


@admin_settlements_bp.get("")
def list_settlements():
    require_user("admin")
    raw = (request.args.get("status") or "").strip().lower()
    statuses = [s.strip() for s in raw.split(",") if s.strip()] or None
    try:
        limit = max(1, min(int(request.args.get("limit") or 200), 1000))
    except ValueError:
        limit = 200
    items = settlement_service.pending_settlements(statuses=statuses, limit=limit)
    return jsonify({"ok": True, "items": items, "count": len(items)}), 200


@admin_settlements_bp.post("/<int:settlement_id>/approve")
def approve(settlement_id: int):
    u = require_user("admin")
    result = settlement_service.approve(settlement_id, int(u.id))
    return jsonify({"ok": True, **result}), 200


@admin_settlements_bp.post("/<int:settlement_id>/reject")
def reject(settlement_id: int):
    u = require_user("admin")
    data = request.get_json(silent=True) or {}
    row = settlement_service.reject(settlement_id, int(u.id), data.get("notes") or "")
    return jsonify({"ok": True, "settlement": row.to_dict()}), 200


@admin_settlements_bp.get("/<int:settlement_id>/audit")
def settlement_audit(settlement_id: int):
    require_user("admin")
    items = [e.to_dict() for e in events_for("settlement", settlement_id)]
    return jsonify({"ok": True, "items": items, "count": len(items)}), 200


@admin_settlements_bp.post("/close-week")
def run_close_week():
    require_user("admin")
    return jsonify(close_week()), 200


@admin_settlements_bp.post("/block-overdue")
def run_block_overdue():
    require_user("admin")
    return jsonify(block_overdue()), 200
