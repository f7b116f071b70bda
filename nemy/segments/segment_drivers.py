from __future__ import annotations

from flask import Blueprint, jsonify, request

from nemy.errors import NotFoundError, ValidationError
from nemy.models import DriverProfile
from nemy.services import driver_service
from nemy.utils.auth import require_user
from nemy.utils.events import events_for

admin_drivers_bp = Blueprint("admin_drivers_bp", __name__, url_prefix="/api/admin/drivers")


@admin_drivers_bp.get("/<int:driver_id>")
def get_driver(driver_id: int):
    require_user("admin")
    profile = DriverProfile.query.filter_by(user_id=driver_id).first()
    if profile is None:
        raise NotFoundError("driver not found", driver_id=driver_id)
    return jsonify(
        {
            "ok": True,
            "driver": profile.to_dict(),
            "can_accept_cash": driver_service.can_accept_cash_order(driver_id),
        }
    ), 200


@admin_drivers_bp.post("/<int:driver_id>/strikes")
def add_strike(driver_id: int):
    u = require_user("admin")
    data = request.get_json(silent=True) or {}
    try:
        order_id = int(data["order_id"]) if data.get("order_id") is not None else None
    except (TypeError, ValueError):
        raise ValidationError("order_id must be an integer")
    profile = driver_service.add_strike(
        driver_id,
        data.get("reason") or "",
        order_id=order_id,
        actor_id=int(u.id),
        commit=True,
    )
    return jsonify({"ok": True, "driver": profile.to_dict()}), 200


@admin_drivers_bp.delete("/<int:driver_id>/strikes")
def remove_strike(driver_id: int):
    u = require_user("admin")
    profile = driver_service.remove_strike(driver_id, actor_id=int(u.id))
    return jsonify({"ok": True, "driver": profile.to_dict()}), 200


@admin_drivers_bp.post("/<int:driver_id>/unblock")
def unblock(driver_id: int):
    u = require_user("admin")
    profile = driver_service.unblock_driver(driver_id, actor_id=int(u.id))
    return jsonify({"ok": True, "driver": profile.to_dict()}), 200


@admin_drivers_bp.get("/<int:driver_id>/audit")
def driver_audit(driver_id: int):
    require_user("admin")
    items = [e.to_dict() for e in events_for("driver", driver_id)]
    return jsonify({"ok": True, "items": items, "count": len(items)}), 200


@admin_drivers_bp.post("/lift-expired-blocks")
def run_lift_expired_blocks():
    require_user("admin")
    return jsonify(driver_service.lift_expired_blocks()), 200
