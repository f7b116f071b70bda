from __future__ import annotations

import json
from datetime import datetime

from flask import current_app
from sqlalchemy.exc import IntegrityError

from nemy.extensions import db
from nemy.integrations.common import IntegrationUnavailableError
from nemy.integrations.notifications.factory import build_notification_sink
from nemy.integrations.payouts.factory import build_payouts_provider
from nemy.models import OutboxMessage, Withdrawal
from nemy.utils.job_runs import record_job_run


class OutboxKind:
    PAYOUT_TRANSFER = "payout_transfer"
    NOTIFICATION = "notification"


class OutboxStatus:
    PENDING = "pending"
    SENT = "sent"
    FAILED = "failed"


def enqueue(kind: str, dedupe_key: str, payload: dict | None = None) -> OutboxMessage:
    """Write an intent row in the caller's transaction. Does not commit."""
    key = (dedupe_key or "").strip()[:180]
    existing = OutboxMessage.query.filter_by(dedupe_key=key).first()
    if existing is not None:
        return existing
    msg = OutboxMessage(
        kind=kind,
        dedupe_key=key,
        payload_json=json.dumps(payload or {}, default=str),
        status=OutboxStatus.PENDING,
        attempts=0,
    )
    try:
        with db.session.begin_nested():
            db.session.add(msg)
            db.session.flush()
    except IntegrityError:
        msg = OutboxMessage.query.filter_by(dedupe_key=key).first()
        if msg is None:
            raise
    return msg


def enqueue_notification(user_id: int | None, template_key: str, payload: dict | None = None, *, dedupe_key: str):
    if user_id is None:
        return None
    body = dict(payload or {})
    body["user_id"] = int(user_id)
    body["template_key"] = template_key
    return enqueue(OutboxKind.NOTIFICATION, dedupe_key, body)


def enqueue_payout_transfer(withdrawal: Withdrawal) -> OutboxMessage:
    return enqueue(
        OutboxKind.PAYOUT_TRANSFER,
        f"payout:{withdrawal.payout_reference}",
        {
            "withdrawal_id": int(withdrawal.id),
            "user_id": int(withdrawal.user_id),
            "destination": withdrawal.destination or "",
            "amount_minor": int(withdrawal.amount or 0),
            "reference": withdrawal.payout_reference,
            "source": withdrawal.source or "request",
            "settlement_id": withdrawal.settlement_id,
        },
    )


def _deliver_notification(msg: OutboxMessage, sink) -> None:
    payload = msg.payload()
    user_id = payload.pop("user_id", None)
    template_key = payload.pop("template_key", "") or "generic"
    if user_id is None:
        raise ValueError("notification without user_id")
    result = sink.send(user_id=int(user_id), template_key=template_key, payload=payload)
    if not result.ok:
        raise RuntimeError(f"notification_failed:{result.code or result.message}")


def _deliver_payout(msg: OutboxMessage, provider) -> bool:
    """Send one transfer. Returns False when the provider definitively refused it."""
    from nemy.services import withdrawal_service

    payload = msg.payload()
    w = db.session.get(Withdrawal, int(payload.get("withdrawal_id") or 0))
    if w is None:
        msg.last_error = "withdrawal_missing"
        return False
    if w.status != withdrawal_service.WithdrawalStatus.PENDING:
        return True

    result = provider.transfer(
        destination=w.destination or "",
        amount_minor=int(w.amount or 0),
        reference=w.payout_reference,
        reason=f"{w.source or 'request'} payout",
    )
    msg.provider_ref = (result.provider_ref or "")[:128] or None
    if result.failed:
        withdrawal_service.mark_failed(w, result.message or "provider_rejected")
        msg.last_error = (result.message or "provider_rejected")[:1000]
        return False
    if result.status == "success":
        withdrawal_service.mark_paid(w)
    else:
        withdrawal_service.mark_processing(w)
    return True


def _give_up(msg: OutboxMessage, error: str) -> None:
    from nemy.services import withdrawal_service

    msg.status = OutboxStatus.FAILED
    msg.last_error = (error or "")[:1000]
    msg.processed_at = datetime.utcnow()
    if msg.kind == OutboxKind.PAYOUT_TRANSFER:
        w = db.session.get(Withdrawal, int(msg.payload().get("withdrawal_id") or 0))
        if w is not None:
            withdrawal_service.mark_failed(w, f"transfer_failed:{error}"[:240])


def process_outbox(*, limit: int = 100, payouts_provider=None, notification_sink=None) -> dict:
    """Drain pending outbox rows one at a time.

    Each row commits on its own; a failure is retried on later drains until
    ``OUTBOX_MAX_ATTEMPTS`` and then left as ``failed`` for manual follow-up.
    """
    started_at = datetime.utcnow()
    max_attempts = int(current_app.config.get("OUTBOX_MAX_ATTEMPTS", 5))
    sent = 0
    failed = 0
    retrying = 0
    skipped = 0

    rows = (
        OutboxMessage.query.filter_by(status=OutboxStatus.PENDING)
        .order_by(OutboxMessage.id.asc())
        .limit(int(limit))
        .all()
    )
    ids = [int(r.id) for r in rows]

    provider_error = ""
    if payouts_provider is None and any(r.kind == OutboxKind.PAYOUT_TRANSFER for r in rows):
        try:
            payouts_provider = build_payouts_provider(current_app.config)
        except IntegrationUnavailableError as e:
            provider_error = str(e)
            current_app.logger.warning("outbox_payouts_unavailable state=%s err=%s", e.state, e)
    if notification_sink is None and any(r.kind == OutboxKind.NOTIFICATION for r in rows):
        try:
            notification_sink = build_notification_sink(current_app.config)
        except IntegrationUnavailableError as e:
            current_app.logger.warning("outbox_notifications_unavailable state=%s err=%s", e.state, e)

    for mid in ids:
        msg = db.session.get(OutboxMessage, mid)
        if msg is None or msg.status != OutboxStatus.PENDING:
            continue
        if msg.kind == OutboxKind.PAYOUT_TRANSFER and payouts_provider is None:
            skipped += 1
            continue
        if msg.kind == OutboxKind.NOTIFICATION and notification_sink is None:
            skipped += 1
            continue
        try:
            if msg.kind == OutboxKind.PAYOUT_TRANSFER:
                delivered = _deliver_payout(msg, payouts_provider)
            elif msg.kind == OutboxKind.NOTIFICATION:
                _deliver_notification(msg, notification_sink)
                delivered = True
            else:
                msg.last_error = f"unknown_kind:{msg.kind}"
                delivered = False
            msg.attempts = int(msg.attempts or 0) + 1
            msg.processed_at = datetime.utcnow()
            msg.status = OutboxStatus.SENT if delivered else OutboxStatus.FAILED
            db.session.commit()
            if delivered:
                sent += 1
            else:
                failed += 1
                current_app.logger.warning(
                    "outbox_message_failed outbox_id=%s kind=%s err=%s",
                    mid,
                    msg.kind,
                    msg.last_error,
                )
        except Exception as e:
            db.session.rollback()
            current_app.logger.exception("outbox_message_error outbox_id=%s", mid)
            msg = db.session.get(OutboxMessage, mid)
            msg.attempts = int(msg.attempts or 0) + 1
            msg.last_error = f"{type(e).__name__}: {e}"[:1000]
            if msg.attempts >= max_attempts:
                _give_up(msg, msg.last_error)
                failed += 1
            else:
                retrying += 1
            db.session.commit()

    result = {
        "ok": True,
        "processed": len(ids),
        "sent": sent,
        "failed": failed,
        "retrying": retrying,
        "skipped": skipped,
        "ts": datetime.utcnow().isoformat(),
    }
    if provider_error:
        result["payouts_unavailable"] = provider_error
    record_job_run(
        job_name="outbox_drain",
        ok=failed == 0,
        started_at=started_at,
        error=None if failed == 0 else f"failed={failed}",
        result=result,
    )
    return result


def failed_messages(*, limit: int = 100) -> list[OutboxMessage]:
    return (
        OutboxMessage.query.filter_by(status=OutboxStatus.FAILED)
        .order_by(OutboxMessage.id.desc())
        .limit(int(limit))
        .all()
    )
