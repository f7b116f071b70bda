from __future__ import annotations

from flask import Blueprint, jsonify, request

from nemy.services.reconciliation_service import latest_report, persist_report, recompute_wallet_balances
from nemy.utils.auth import require_user

recon_bp = Blueprint("recon_bp", __name__, url_prefix="/api/admin/reconcile")


@recon_bp.post("")
def run_recon():
    u = require_user("admin")
    data = request.get_json(silent=True) or {}
    try:
        tolerance = max(0, int(data.get("tolerance") or 0))
    except (TypeError, ValueError):
        tolerance = 0
    summary = recompute_wallet_balances(
        tolerance=tolerance,
        auto_correct=bool(data.get("auto_correct", True)),
        since=(data.get("since") or "").strip() or None,
    )
    report_id = None
    if bool(data.get("persist", True)):
        report = persist_report(summary, created_by=int(u.id))
        report_id = int(report.id)
    return jsonify({"ok": True, "report_id": report_id, "summary": summary}), 200


@recon_bp.get("/latest")
def latest():
    require_user("admin")
    row = latest_report()
    return jsonify({"ok": True, "report": row.to_dict() if row else None}), 200
