from __future__ import annotations

import hashlib
import json
from datetime import datetime

from flask import current_app
from sqlalchemy.exc import IntegrityError

from nemy.errors import ValidationError
from nemy.extensions import db
from nemy.models import DriverProfile, Order, OutboxMessage, WebhookEvent, Withdrawal
from nemy.services import ledger_service, withdrawal_service
from nemy.services.ledger_service import Bucket, TxnType
from nemy.services.order_lifecycle_service import SYSTEM_ACTOR, OrderStatus, apply_transition, release_driver
from nemy.utils.events import log_event
from nemy.utils.observability import bind_audit_ids, get_request_id


class EventKind:
    CAPTURE_SUCCEEDED = "capture_succeeded"
    CAPTURE_FAILED = "capture_failed"
    CHARGE_REFUNDED = "charge_refunded"
    ACCOUNT_UPDATED = "account_updated"
    PAYOUT_PAID = "payout_paid"
    PAYOUT_FAILED = "payout_failed"


KIND_BY_TYPE = {
    "charge.success": EventKind.CAPTURE_SUCCEEDED,
    "payment_intent.succeeded": EventKind.CAPTURE_SUCCEEDED,
    "charge.failed": EventKind.CAPTURE_FAILED,
    "payment_intent.payment_failed": EventKind.CAPTURE_FAILED,
    "refund.processed": EventKind.CHARGE_REFUNDED,
    "charge.refunded": EventKind.CHARGE_REFUNDED,
    "subaccount.updated": EventKind.ACCOUNT_UPDATED,
    "account.updated": EventKind.ACCOUNT_UPDATED,
    "transfer.success": EventKind.PAYOUT_PAID,
    "payout.paid": EventKind.PAYOUT_PAID,
    "transfer.failed": EventKind.PAYOUT_FAILED,
    "transfer.reversed": EventKind.PAYOUT_FAILED,
    "payout.failed": EventKind.PAYOUT_FAILED,
}


def _int_or_none(value):
    try:
        return int(value) if value is not None and str(value).strip() != "" else None
    except (TypeError, ValueError):
        return None


def _payload_hash(payload) -> str:
    raw = json.dumps(payload, sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()


def normalize_paystack(payload: dict) -> dict:
    event_type = str(payload.get("event") or "").strip()
    data = payload.get("data") if isinstance(payload.get("data"), dict) else {}
    meta = data.get("metadata") if isinstance(data.get("metadata"), dict) else {}
    reference = str(data.get("transaction_reference") or data.get("reference") or "").strip()

    event_id = str(payload.get("id") or payload.get("event_id") or "").strip()
    if not event_id and data.get("id") is not None:
        event_id = f"{event_type}:{data.get('id')}"
    if not event_id:
        base = f"{event_type}:{reference}:{data.get('amount', '')}"
        event_id = hashlib.sha256(base.encode("utf-8")).hexdigest()[:32]

    return {
        "id": event_id,
        "type": event_type,
        "data": {
            "reference": reference,
            "order_id": _int_or_none(meta.get("order_id")),
            "amount": _int_or_none(data.get("amount")),
            "account_id": str(data.get("subaccount_code") or "").strip(),
            "payouts_enabled": bool(data.get("active", False)),
            "details_submitted": bool(data.get("settlement_bank") or data.get("account_number")),
            "driver_id": _int_or_none(meta.get("driver_id")),
            "reason": str(data.get("reason") or data.get("gateway_response") or "").strip(),
        },
        "payload_hash": _payload_hash(payload),
    }


def normalize_stripe(payload: dict) -> dict:
    event_type = str(payload.get("type") or "").strip()
    wrapper = payload.get("data") if isinstance(payload.get("data"), dict) else {}
    obj = wrapper.get("object") if isinstance(wrapper.get("object"), dict) else {}
    meta = obj.get("metadata") if isinstance(obj.get("metadata"), dict) else {}

    if event_type == "charge.refunded":
        reference = str(obj.get("payment_intent") or "").strip()
        amount = _int_or_none(obj.get("amount_refunded"))
    elif event_type.startswith("payout."):
        reference = str(meta.get("reference") or obj.get("id") or "").strip()
        amount = _int_or_none(obj.get("amount"))
    else:
        reference = str(obj.get("id") or "").strip()
        amount = _int_or_none(obj.get("amount_received") or obj.get("amount"))

    failure = obj.get("last_payment_error") if isinstance(obj.get("last_payment_error"), dict) else {}
    return {
        "id": str(payload.get("id") or "").strip() or _payload_hash(payload)[:32],
        "type": event_type,
        "data": {
            "reference": reference,
            "order_id": _int_or_none(meta.get("orderId") or meta.get("order_id")),
            "amount": amount,
            "account_id": str(obj.get("id") or "").strip() if event_type == "account.updated" else "",
            "payouts_enabled": bool(obj.get("payouts_enabled", False)),
            "details_submitted": bool(obj.get("details_submitted", False)),
            "driver_id": _int_or_none(meta.get("driver_id")),
            "reason": str(obj.get("failure_message") or failure.get("message") or "").strip(),
        },
        "payload_hash": _payload_hash(payload),
    }


def _find_order(data: dict) -> Order | None:
    order_id = data.get("order_id")
    q = Order.query.with_for_update().populate_existing()
    if order_id is not None:
        return q.filter_by(id=int(order_id)).first()
    reference = (data.get("reference") or "").strip()
    if reference:
        return q.filter_by(payment_reference=reference).first()
    return None


def _find_withdrawal(reference: str) -> Withdrawal | None:
    w = withdrawal_service.find_by_reference(reference)
    if w is not None or not reference:
        return w
    msg = OutboxMessage.query.filter_by(provider_ref=reference).first()
    if msg is None:
        return None
    wid = _int_or_none(msg.payload().get("withdrawal_id"))
    return db.session.get(Withdrawal, wid) if wid is not None else None


def _ignore(row: WebhookEvent, error: str) -> dict:
    row.status = "ignored"
    row.error = error[:1000]
    return {"ignored": True, "reason": error}


def _capture_succeeded(row: WebhookEvent, data: dict) -> dict:
    order = _find_order(data)
    if order is None:
        return _ignore(row, "order_not_found")
    if order.payment_status in ("captured", "refunded"):
        return {"order_id": int(order.id), "already_captured": True}
    amount = data.get("amount")
    if amount is not None and int(amount) != int(order.total or 0):
        current_app.logger.warning(
            "payment_amount_mismatch event_id=%s order_id=%s expected=%s got=%s",
            row.event_id,
            int(order.id),
            int(order.total or 0),
            int(amount),
        )
        return _ignore(row, "amount_mismatch")

    order.payment_status = "captured"
    if data.get("reference"):
        order.payment_reference = data["reference"][:128]
    ledger_service.post_transaction(
        int(ledger_service.platform_wallet().id),
        TxnType.PAYMENT,
        int(order.total or 0),
        f"Payment captured for order #{int(order.id)}",
        int(order.id),
        direction="credit",
        bucket=Bucket.PENDING,
        reference=f"order:{int(order.id)}:capture",
        commit=False,
    )
    if order.status == OrderStatus.PENDING:
        apply_transition(order, OrderStatus.ACCEPTED, actor=SYSTEM_ACTOR, reason="payment_captured")
    elif order.status == OrderStatus.CANCELLED:
        order.refund_status = "requested"
    return {"order_id": int(order.id), "status": order.status}


def _capture_failed(row: WebhookEvent, data: dict) -> dict:
    order = _find_order(data)
    if order is None:
        return _ignore(row, "order_not_found")
    if order.payment_status == "captured":
        return _ignore(row, "already_captured")
    order.payment_status = "failed"
    if order.status == OrderStatus.PENDING:
        apply_transition(order, OrderStatus.CANCELLED, actor=SYSTEM_ACTOR, reason="payment_failed")
        order.cancel_reason = (data.get("reason") or "Payment failed")[:240]
        order.cancelled_by = "system"
        release_driver(order.driver_id)
    return {"order_id": int(order.id), "status": order.status}


def _charge_refunded(row: WebhookEvent, data: dict) -> dict:
    order = _find_order(data)
    if order is None:
        return _ignore(row, "order_not_found")
    if order.refund_status == "processed":
        return {"order_id": int(order.id), "already_refunded": True}
    if order.payment_status != "captured":
        return _ignore(row, "payment_not_captured")
    amount = int(data.get("amount") or order.total or 0)
    bucket = Bucket.BALANCE if order.status == OrderStatus.DELIVERED else Bucket.PENDING
    ledger_service.post_transaction(
        int(ledger_service.platform_wallet().id),
        TxnType.REFUND,
        amount,
        f"Refund for order #{int(order.id)}",
        int(order.id),
        direction="debit",
        bucket=bucket,
        reference=f"order:{int(order.id)}:refund",
        commit=False,
    )
    order.refund_amount = amount
    order.refund_status = "processed"
    order.payment_status = "refunded"
    return {"order_id": int(order.id), "refund_amount": amount, "bucket": bucket}


def _account_updated(row: WebhookEvent, data: dict) -> dict:
    account_id = (data.get("account_id") or "").strip()
    profile = None
    if account_id:
        profile = DriverProfile.query.filter_by(payout_account_id=account_id).first()
    if profile is None and data.get("driver_id") is not None:
        profile = DriverProfile.query.filter_by(user_id=int(data["driver_id"])).first()
        if profile is not None and account_id:
            profile.payout_account_id = account_id
    if profile is None:
        return _ignore(row, "driver_not_found")
    profile.payouts_enabled = bool(data.get("payouts_enabled"))
    profile.details_submitted = bool(data.get("details_submitted"))
    return {"driver_id": int(profile.user_id), "payouts_enabled": bool(profile.payouts_enabled)}


def _payout_paid(row: WebhookEvent, data: dict) -> dict:
    w = _find_withdrawal(data.get("reference") or "")
    if w is None:
        return _ignore(row, "withdrawal_not_found")
    changed = withdrawal_service.mark_paid(w)
    return {"withdrawal_id": int(w.id), "status": w.status, "changed": changed}


def _payout_failed(row: WebhookEvent, data: dict) -> dict:
    w = _find_withdrawal(data.get("reference") or "")
    if w is None:
        return _ignore(row, "withdrawal_not_found")
    changed = withdrawal_service.mark_failed(w, data.get("reason") or "payout_failed")
    return {"withdrawal_id": int(w.id), "status": w.status, "changed": changed}


HANDLERS = {
    EventKind.CAPTURE_SUCCEEDED: _capture_succeeded,
    EventKind.CAPTURE_FAILED: _capture_failed,
    EventKind.CHARGE_REFUNDED: _charge_refunded,
    EventKind.ACCOUNT_UPDATED: _account_updated,
    EventKind.PAYOUT_PAID: _payout_paid,
    EventKind.PAYOUT_FAILED: _payout_failed,
}


def apply_event(event: dict, *, provider: str = "paystack") -> dict:
    """Apply one processor event exactly once.

    The ``webhook_events`` row and the event's effect commit together. A
    redelivered id hits the unique key and returns ``duplicate`` without side
    effects. A failure rolls the whole unit back, so redelivery retries it.
    """
    event_id = str(event.get("id") or "").strip()
    event_type = str(event.get("type") or "").strip()
    data = event.get("data") if isinstance(event.get("data"), dict) else {}
    if not event_id:
        raise ValueError("event id is required")
    bind_audit_ids(event_id=event_id)

    if WebhookEvent.query.filter_by(provider=provider, event_id=event_id[:128]).first() is not None:
        current_app.logger.info("payment_event_duplicate provider=%s event_id=%s", provider, event_id)
        return {"ok": True, "duplicate": True, "event_id": event_id}

    row = WebhookEvent(
        provider=provider,
        event_id=event_id[:128],
        event_type=event_type[:64],
        reference=(data.get("reference") or "")[:128] or None,
        status="processed",
        request_id=get_request_id()[:64] or None,
        payload_hash=event.get("payload_hash"),
    )
    try:
        with db.session.begin_nested():
            db.session.add(row)
            db.session.flush()
    except IntegrityError:
        current_app.logger.info("payment_event_duplicate provider=%s event_id=%s", provider, event_id)
        return {"ok": True, "duplicate": True, "event_id": event_id}

    kind = KIND_BY_TYPE.get(event_type)
    try:
        if kind is None:
            result = _ignore(row, f"unhandled_type:{event_type}")
            current_app.logger.info("payment_event_ignored provider=%s event_id=%s type=%s", provider, event_id, event_type)
        else:
            result = HANDLERS[kind](row, data)
        row.processed_at = datetime.utcnow()
        log_event(
            "payment_event_applied",
            subject_type="webhook_event",
            subject_id=event_id[:120],
            idempotency_key=f"payment_event:{provider}:{event_id}",
            metadata={"type": event_type, "kind": kind, "status": row.status, "result": result},
        )
        db.session.commit()
    except IntegrityError:
        db.session.rollback()
        if WebhookEvent.query.filter_by(provider=provider, event_id=event_id[:128]).first() is not None:
            return {"ok": True, "duplicate": True, "event_id": event_id}
        current_app.logger.exception("payment_event_failed provider=%s event_id=%s type=%s", provider, event_id, event_type)
        raise
    except Exception:
        db.session.rollback()
        current_app.logger.exception("payment_event_failed provider=%s event_id=%s type=%s", provider, event_id, event_type)
        raise

    current_app.logger.info(
        "payment_event_applied provider=%s event_id=%s type=%s kind=%s status=%s",
        provider,
        event_id,
        event_type,
        kind,
        row.status,
    )
    return {"ok": True, "duplicate": False, "event_id": event_id, "kind": kind, "status": row.status, **result}


def apply_events(events, *, provider: str = "paystack") -> dict:
    """Apply a batch, isolating failures per event."""
    applied = 0
    duplicates = 0
    failed = []
    for event in events:
        try:
            res = apply_event(event, provider=provider)
        except Exception as e:
            failed.append({"event_id": str(event.get("id") or ""), "error": f"{type(e).__name__}: {e}"})
            continue
        if res.get("duplicate"):
            duplicates += 1
        else:
            applied += 1
    return {"ok": not failed, "applied": applied, "duplicates": duplicates, "failed": failed}


def prune_webhook_events(*, keep: int | None = None) -> dict:
    """Keep only the newest ``keep`` processed-event rows.

    ``keep`` must be at least 1. The retained rows are what turns a replayed
    delivery into a no-op, so emptying the table is refused.
    """
    keep = int(keep if keep is not None else current_app.config.get("WEBHOOK_EVENT_RETENTION", 100000))
    if keep < 1:
        raise ValidationError("keep must be at least 1", keep=keep)
    cutoff_row = (
        WebhookEvent.query.order_by(WebhookEvent.id.desc())
        .offset(max(0, keep - 1))
        .limit(1)
        .first()
    )
    if cutoff_row is None:
        return {"ok": True, "deleted": 0, "kept": keep}
    try:
        deleted = WebhookEvent.query.filter(WebhookEvent.id < int(cutoff_row.id)).delete(synchronize_session=False)
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise
    current_app.logger.info("webhook_events_pruned deleted=%s keep=%s", deleted, keep)
    return {"ok": True, "deleted": int(deleted or 0), "kept": keep}
