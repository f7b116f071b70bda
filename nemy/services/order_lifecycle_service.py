from __future__ import annotations

import json
from datetime import datetime

from flask import current_app

from nemy.errors import (
    AuthorizationError,
    InvalidTransitionError,
    NoDriverAvailableError,
    NotFoundError,
    ValidationError,
)
from nemy.extensions import db
from nemy.models import Business, DriverProfile, Order, OrderTransition, User, WeeklySettlement
from nemy.services import commission_service, driver_service, outbox_service


class OrderStatus:
    PENDING = "pending"
    ACCEPTED = "accepted"
    PREPARING = "preparing"
    READY = "ready"
    ASSIGNED = "assigned"
    PICKED_UP = "picked_up"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"

    ALLOWED = {
        PENDING: {ACCEPTED, CANCELLED},
        ACCEPTED: {PREPARING, CANCELLED},
        PREPARING: {READY, CANCELLED},
        READY: {ASSIGNED, CANCELLED},
        ASSIGNED: {PICKED_UP, CANCELLED},
        PICKED_UP: {DELIVERED, CANCELLED},
        DELIVERED: set(),
        CANCELLED: set(),
    }
    TERMINAL = {DELIVERED, CANCELLED}
    ALL = set(ALLOWED)


ROLE_TARGETS = {
    "business": {OrderStatus.ACCEPTED, OrderStatus.PREPARING, OrderStatus.READY, OrderStatus.CANCELLED},
    "driver": {OrderStatus.ASSIGNED, OrderStatus.PICKED_UP, OrderStatus.DELIVERED},
    "customer": {OrderStatus.CANCELLED},
    "admin": OrderStatus.ALL,
    "system": OrderStatus.ALL,
}

STATUS_TIMESTAMPS = {
    OrderStatus.ACCEPTED: "accepted_at",
    OrderStatus.ASSIGNED: "assigned_at",
    OrderStatus.PICKED_UP: "picked_up_at",
    OrderStatus.DELIVERED: "delivered_at",
    OrderStatus.CANCELLED: "cancelled_at",
}

OPEN_SETTLEMENT_STATUSES = ("pending", "submitted", "overdue")
ACTIVE_DRIVER_STATUSES = (OrderStatus.ASSIGNED, OrderStatus.PICKED_UP)

SYSTEM_ACTOR = {"type": "system", "id": None}


def actor_for_user(user: User) -> dict:
    role = (getattr(user, "role", None) or "customer").strip().lower()
    return {"type": role, "id": int(user.id)}


def _parse_actor(actor) -> tuple[str, int | None]:
    if isinstance(actor, dict):
        actor_type = str(actor.get("type") or "system").strip().lower()
        actor_id_raw = actor.get("id")
        try:
            actor_id = int(actor_id_raw) if actor_id_raw is not None else None
        except (TypeError, ValueError):
            actor_id = None
        return actor_type, actor_id
    return "system", None


def _lock_order(order_id: int) -> Order:
    order = Order.query.filter_by(id=int(order_id)).with_for_update().populate_existing().first()
    if order is None:
        raise NotFoundError("order not found", order_id=order_id)
    return order


def _check_owner(actor_type: str, actor_id: int | None, order: Order) -> None:
    if actor_type == "business":
        business = db.session.get(Business, int(order.business_id))
        if business is None or actor_id is None or int(business.owner_id) != actor_id:
            raise AuthorizationError("business does not own this order", order_id=int(order.id))
    elif actor_type == "driver":
        if actor_id is None or order.driver_id is None or int(order.driver_id) != actor_id:
            raise AuthorizationError("driver is not assigned to this order", order_id=int(order.id))
    elif actor_type == "customer":
        if actor_id is None or int(order.customer_id) != actor_id:
            raise AuthorizationError("customer does not own this order", order_id=int(order.id))


def _authorize(actor, order: Order, target: str) -> None:
    actor_type, actor_id = _parse_actor(actor)
    allowed = ROLE_TARGETS.get(actor_type)
    if not allowed or target not in allowed:
        raise AuthorizationError(
            f"{actor_type} may not move an order to {target}",
            order_id=int(order.id),
            actor_type=actor_type,
        )
    _check_owner(actor_type, actor_id, order)


def _guard(order: Order, target: str) -> str:
    current = (order.status or OrderStatus.PENDING).strip().lower()
    if target not in OrderStatus.ALLOWED.get(current, set()):
        raise InvalidTransitionError(
            f"invalid_order_transition {current}->{target}",
            order_id=int(order.id),
        )
    return current


def _recipients(order: Order) -> list[int]:
    ids = [int(order.customer_id)]
    business = db.session.get(Business, int(order.business_id))
    if business is not None:
        ids.append(int(business.owner_id))
    if order.driver_id is not None:
        ids.append(int(order.driver_id))
    return list(dict.fromkeys(ids))


def apply_transition(order: Order, target: str, *, actor=None, reason: str = "", metadata: dict | None = None) -> Order:
    """Move a locked order to ``target`` and record it. Does not commit.

    Writes the audit row and queues a notification for every party on the
    order. Callers are responsible for authorization.
    """
    current = _guard(order, target)
    now = datetime.utcnow()
    actor_type, actor_id = _parse_actor(actor or SYSTEM_ACTOR)

    order.status = target
    stamp = STATUS_TIMESTAMPS.get(target)
    if stamp:
        setattr(order, stamp, now)
    order.updated_at = now

    db.session.add(
        OrderTransition(
            order_id=int(order.id),
            from_status=current,
            to_status=target,
            actor_type=actor_type[:32],
            actor_id=actor_id,
            idempotency_key=f"status:{target}",
            reason=(reason or "")[:240] or None,
            metadata_json=json.dumps(metadata or {}, default=str)[:4000],
            created_at=now,
        )
    )
    for user_id in _recipients(order):
        outbox_service.enqueue_notification(
            user_id,
            f"order_{target}",
            {"order_id": int(order.id), "status": target, "from_status": current},
            dedupe_key=f"notify:order:{int(order.id)}:{target}:{user_id}",
        )
    db.session.flush()
    current_app.logger.info(
        "order_transition order_id=%s from=%s to=%s actor_type=%s actor_id=%s",
        int(order.id),
        current,
        target,
        actor_type,
        actor_id,
    )
    return order


def has_active_order(driver_id: int) -> bool:
    return (
        Order.query.filter(
            Order.driver_id == int(driver_id),
            Order.status.in_(ACTIVE_DRIVER_STATUSES),
        ).first()
        is not None
    )


def release_driver(driver_id: int | None) -> None:
    """Make a driver available again once nothing keeps them off the road."""
    if driver_id is None:
        return
    profile = DriverProfile.query.filter_by(user_id=int(driver_id)).first()
    if profile is None or profile.is_blocked:
        return
    if has_active_order(int(driver_id)):
        return
    held = (
        WeeklySettlement.query.filter(
            WeeklySettlement.driver_id == int(driver_id),
            WeeklySettlement.status.in_(OPEN_SETTLEMENT_STATUSES),
        ).first()
        is not None
    )
    if not held:
        profile.is_available = True


def create_order(customer_id: int, business_id: int, total, payment_method: str = "card") -> Order:
    try:
        total_minor = int(total)
    except (TypeError, ValueError):
        raise ValidationError("total must be an integer in minor units")
    if total_minor <= 0:
        raise ValidationError("total must be positive")
    method = (payment_method or "").strip().lower()
    if method not in ("card", "cash"):
        raise ValidationError("payment_method must be card or cash")
    customer = db.session.get(User, int(customer_id))
    if customer is None:
        raise NotFoundError("customer not found", customer_id=customer_id)
    business = db.session.get(Business, int(business_id))
    if business is None:
        raise NotFoundError("business not found", business_id=business_id)
    if not business.is_open:
        raise ValidationError("business is closed", business_id=int(business.id))

    try:
        order = Order(
            customer_id=int(customer.id),
            business_id=int(business.id),
            total=total_minor,
            payment_method=method,
            status=OrderStatus.PENDING,
            payment_status="unpaid",
        )
        db.session.add(order)
        db.session.flush()
        db.session.add(
            OrderTransition(
                order_id=int(order.id),
                from_status="",
                to_status=OrderStatus.PENDING,
                actor_type="customer",
                actor_id=int(customer.id),
                idempotency_key=f"status:{OrderStatus.PENDING}",
                reason="created",
            )
        )
        outbox_service.enqueue_notification(
            int(business.owner_id),
            "order_created",
            {"order_id": int(order.id), "total": total_minor, "payment_method": method},
            dedupe_key=f"notify:order:{int(order.id)}:created:{int(business.owner_id)}",
        )
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise
    current_app.logger.info(
        "order_created order_id=%s customer_id=%s business_id=%s total=%s method=%s",
        int(order.id),
        int(customer.id),
        int(business.id),
        total_minor,
        method,
    )
    return order


def transition_order(order_id: int, to_status: str, *, actor=None, reason: str = "", driver_id: int | None = None) -> Order:
    target = (to_status or "").strip().lower()
    if target not in OrderStatus.ALL or target == OrderStatus.PENDING:
        raise ValidationError(f"unknown target status {to_status!r}")
    if target == OrderStatus.ASSIGNED:
        actor_type, actor_id = _parse_actor(actor)
        if driver_id is None and actor_type == "driver":
            driver_id = actor_id
        if driver_id is None:
            raise ValidationError("driver_id required to assign")
        return assign_driver(order_id, int(driver_id), actor=actor)
    if target == OrderStatus.DELIVERED:
        return mark_delivered(order_id, actor=actor)
    if target == OrderStatus.CANCELLED:
        return cancel_order(order_id, actor=actor, reason=reason)

    try:
        order = _lock_order(order_id)
        _authorize(actor or SYSTEM_ACTOR, order, target)
        if (
            target == OrderStatus.ACCEPTED
            and order.payment_method == "card"
            and order.payment_status != "captured"
        ):
            raise InvalidTransitionError("card payment not captured yet", order_id=int(order.id))
        apply_transition(order, target, actor=actor, reason=reason)
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise

    if target == OrderStatus.READY and order.driver_id is None:
        _on_ready(int(order.id))
        order = db.session.get(Order, int(order_id))
    return order


def _on_ready(order_id: int) -> None:
    if not current_app.config.get("AUTO_ASSIGN_ON_READY", True):
        return
    from nemy.services.assignment_service import assign_best_driver

    try:
        assign_best_driver(order_id)
    except NoDriverAvailableError as e:
        current_app.logger.warning(
            "auto_assignment_failed order_id=%s reason=%s context=%s",
            order_id,
            e.message,
            e.context,
        )


def assign_driver(order_id: int, driver_id: int, *, actor=None) -> Order:
    """Attach a driver to a ``ready`` order.

    Both writes are conditional updates: the driver must still be available
    and unblocked, and the order must still be ``ready`` with no driver. A
    lost race on either raises InvalidTransitionError and nothing changes.
    """
    actor = actor or SYSTEM_ACTOR
    actor_type, actor_id = _parse_actor(actor)
    try:
        order = _lock_order(order_id)
        if actor_type == "driver" and actor_id != int(driver_id):
            raise AuthorizationError("drivers may only assign themselves", order_id=int(order.id))
        if actor_type not in ("driver", "admin", "system", "business"):
            raise AuthorizationError(f"{actor_type} may not assign drivers", order_id=int(order.id))
        if actor_type == "business":
            _check_owner(actor_type, actor_id, order)
        if order.driver_id is not None:
            raise InvalidTransitionError("order already has a driver", order_id=int(order.id))
        current = _guard(order, OrderStatus.ASSIGNED)

        profile = DriverProfile.query.filter_by(user_id=int(driver_id)).first()
        if profile is None:
            raise NotFoundError("driver not found", driver_id=driver_id)
        if profile.is_blocked:
            raise InvalidTransitionError("driver is blocked", driver_id=int(driver_id))
        if order.payment_method == "cash" and not driver_service.can_accept_cash_order(int(driver_id)):
            raise InvalidTransitionError(
                "driver cannot collect cash until their debt is settled",
                driver_id=int(driver_id),
                order_id=int(order.id),
            )

        claimed = DriverProfile.query.filter(
            DriverProfile.user_id == int(driver_id),
            DriverProfile.is_available.is_(True),
            DriverProfile.is_blocked.is_(False),
        ).update({"is_available": False}, synchronize_session=False)
        if claimed != 1:
            raise InvalidTransitionError("driver is not available", driver_id=int(driver_id))

        now = datetime.utcnow()
        matched = Order.query.filter(
            Order.id == int(order.id),
            Order.driver_id.is_(None),
            Order.status == OrderStatus.READY,
        ).update(
            {"driver_id": int(driver_id), "status": OrderStatus.ASSIGNED, "assigned_at": now, "updated_at": now},
            synchronize_session=False,
        )
        if matched != 1:
            raise InvalidTransitionError("order was assigned concurrently", order_id=int(order.id))

        db.session.expire(order)
        db.session.expire(profile)
        db.session.add(
            OrderTransition(
                order_id=int(order_id),
                from_status=current,
                to_status=OrderStatus.ASSIGNED,
                actor_type=actor_type[:32],
                actor_id=actor_id,
                idempotency_key=f"status:{OrderStatus.ASSIGNED}",
                metadata_json=json.dumps({"driver_id": int(driver_id)}),
                created_at=now,
            )
        )
        for user_id in _recipients(order):
            outbox_service.enqueue_notification(
                user_id,
                "order_assigned",
                {"order_id": int(order_id), "status": OrderStatus.ASSIGNED, "driver_id": int(driver_id)},
                dedupe_key=f"notify:order:{int(order_id)}:{OrderStatus.ASSIGNED}:{user_id}",
            )
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise
    current_app.logger.info(
        "order_assigned order_id=%s driver_id=%s actor_type=%s",
        int(order_id),
        int(driver_id),
        actor_type,
    )
    return db.session.get(Order, int(order_id))


def mark_delivered(order_id: int, *, actor=None) -> Order:
    try:
        order = _lock_order(order_id)
        _authorize(actor or SYSTEM_ACTOR, order, OrderStatus.DELIVERED)
        apply_transition(order, OrderStatus.DELIVERED, actor=actor)
        commission_service.distribute(int(order.id), commit=False)
        profile = DriverProfile.query.filter_by(user_id=int(order.driver_id)).with_for_update().first()
        if profile is not None:
            profile.completed_deliveries = int(profile.completed_deliveries or 0) + 1
        release_driver(order.driver_id)
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise
    return order


def _cancel_locked(order: Order, *, actor, reason: str) -> Order:
    actor_type, _actor_id = _parse_actor(actor or SYSTEM_ACTOR)
    apply_transition(order, OrderStatus.CANCELLED, actor=actor, reason=reason)
    order.cancel_reason = (reason or "")[:240] or None
    order.cancelled_by = actor_type[:32]
    if order.payment_status == "captured":
        # The refund ledger entry waits for the processor's confirmation.
        order.refund_status = "requested"
    release_driver(order.driver_id)
    return order


def cancel_order(order_id: int, *, actor=None, reason: str = "", driver_fault: bool = False) -> Order:
    """Cancel an order on behalf of a business, an admin or the system.

    With ``driver_fault`` the assigned driver takes a strike in the same
    transaction.
    """
    actor_type, actor_id = _parse_actor(actor or SYSTEM_ACTOR)
    try:
        order = _lock_order(order_id)
        if actor_type == "customer":
            raise AuthorizationError("customers may only cancel within the regret window", order_id=int(order.id))
        _authorize(actor or SYSTEM_ACTOR, order, OrderStatus.CANCELLED)
        if driver_fault:
            if order.driver_id is None:
                raise ValidationError("order has no driver to hold at fault", order_id=int(order.id))
            driver_service.add_strike(
                int(order.driver_id),
                (reason or "").strip() or "cancelled_for_driver",
                order_id=int(order.id),
                actor_id=actor_id,
            )
        _cancel_locked(order, actor=actor, reason=reason)
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise
    return order


def regret_cancel(order_id: int, *, customer_id: int, now: datetime | None = None) -> Order:
    now = now or datetime.utcnow()
    window = int(current_app.config.get("ORDER_REGRET_WINDOW_SECONDS", 60))
    actor = {"type": "customer", "id": int(customer_id)}
    try:
        order = _lock_order(order_id)
        _authorize(actor, order, OrderStatus.CANCELLED)
        if order.status != OrderStatus.PENDING:
            raise InvalidTransitionError("regret cancel is only possible while pending", order_id=int(order.id))
        elapsed = (now - order.created_at).total_seconds()
        if elapsed > window:
            raise InvalidTransitionError(
                "regret window has elapsed",
                order_id=int(order.id),
                window_seconds=window,
            )
        _cancel_locked(order, actor=actor, reason="regret")
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise
    return order


def order_history(order_id: int) -> list[OrderTransition]:
    return (
        OrderTransition.query.filter_by(order_id=int(order_id))
        .order_by(OrderTransition.id.asc())
        .all()
    )
