from __future__ import annotations

from flask import Blueprint, jsonify, request

from nemy.errors import AuthorizationError, NotFoundError, ValidationError
from nemy.extensions import db
from nemy.models import Business, Order
from nemy.services import order_lifecycle_service
from nemy.services.assignment_service import assign_best_driver
from nemy.services.order_lifecycle_service import actor_for_user
from nemy.utils.auth import require_user

orders_bp = Blueprint("orders_bp", __name__, url_prefix="/api/orders")


def _int_field(data: dict, name: str, *, required: bool = True):
    raw = data.get(name)
    if raw is None or str(raw).strip() == "":
        if required:
            raise ValidationError(f"{name} is required")
        return None
    try:
        return int(raw)
    except (TypeError, ValueError):
        raise ValidationError(f"{name} must be an integer")


def _can_view(user, order: Order) -> bool:
    role = (user.role or "").strip().lower()
    if role == "admin":
        return True
    if int(order.customer_id) == int(user.id):
        return True
    if order.driver_id is not None and int(order.driver_id) == int(user.id):
        return True
    business = db.session.get(Business, int(order.business_id))
    return business is not None and int(business.owner_id) == int(user.id)


@orders_bp.post("")
def create_order():
    u = require_user("customer")
    data = request.get_json(silent=True) or {}
    order = order_lifecycle_service.create_order(
        int(u.id),
        _int_field(data, "business_id"),
        data.get("total"),
        data.get("payment_method") or "card",
    )
    return jsonify({"ok": True, "order": order.to_dict()}), 201


@orders_bp.get("/<int:order_id>")
def get_order(order_id: int):
    u = require_user()
    order = db.session.get(Order, int(order_id))
    if order is None:
        raise NotFoundError("order not found", order_id=order_id)
    if not _can_view(u, order):
        raise AuthorizationError("not a party to this order", order_id=order_id)
    history = [t.to_dict() for t in order_lifecycle_service.order_history(order_id)]
    return jsonify({"ok": True, "order": order.to_dict(), "history": history}), 200


@orders_bp.post("/<int:order_id>/status")
def update_status(order_id: int):
    u = require_user()
    data = request.get_json(silent=True) or {}
    status = (data.get("status") or "").strip().lower()
    if not status:
        raise ValidationError("status is required")
    order = order_lifecycle_service.transition_order(
        order_id,
        status,
        actor=actor_for_user(u),
        reason=(data.get("reason") or "").strip(),
        driver_id=_int_field(data, "driver_id", required=False),
    )
    return jsonify({"ok": True, "order": order.to_dict()}), 200


@orders_bp.post("/<int:order_id>/assign")
def assign(order_id: int):
    u = require_user("driver", "business", "admin")
    data = request.get_json(silent=True) or {}
    actor = actor_for_user(u)
    driver_id = _int_field(data, "driver_id", required=False)
    if actor["type"] == "driver":
        driver_id = int(u.id)
    if driver_id is None:
        result = assign_best_driver(order_id, actor=actor)
        return jsonify(result), 200
    order = order_lifecycle_service.assign_driver(order_id, driver_id, actor=actor)
    return jsonify({"ok": True, "order": order.to_dict()}), 200


@orders_bp.post("/<int:order_id>/cancel")
def cancel(order_id: int):
    u = require_user()
    data = request.get_json(silent=True) or {}
    order = order_lifecycle_service.cancel_order(
        order_id,
        actor=actor_for_user(u),
        reason=(data.get("reason") or "").strip(),
        driver_fault=bool(data.get("driver_fault")),
    )
    return jsonify({"ok": True, "order": order.to_dict()}), 200


@orders_bp.post("/<int:order_id>/cancel-regret")
def cancel_regret(order_id: int):
    u = require_user("customer")
    order = order_lifecycle_service.regret_cancel(order_id, customer_id=int(u.id))
    return jsonify({"ok": True, "order": order.to_dict()}), 200
