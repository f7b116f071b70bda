from __future__ import annotations

from datetime import datetime, timedelta

from flask import current_app
from sqlalchemy import func

from nemy.errors import AuthorizationError, InvalidTransitionError, NotFoundError, ValidationError
from nemy.extensions import db
from nemy.models import DriverProfile, Order, User, Wallet, WeeklySettlement
from nemy.services import ledger_service, order_lifecycle_service, outbox_service, withdrawal_service
from nemy.services.ledger_service import Bucket, TxnType
from nemy.utils.events import log_event


class SettlementStatus:
    PENDING = "pending"
    SUBMITTED = "submitted"
    APPROVED = "approved"
    REJECTED = "rejected"
    OVERDUE = "overdue"

    ALLOWED = {
        PENDING: {SUBMITTED, OVERDUE, APPROVED, REJECTED},
        SUBMITTED: {APPROVED, REJECTED},
        OVERDUE: {SUBMITTED, APPROVED, REJECTED},
        APPROVED: set(),
        REJECTED: set(),
    }
    OPEN = (PENDING, SUBMITTED, OVERDUE)


SETTLEMENT_BLOCK_PREFIX = "settlement_overdue:"


def move(settlement: WeeklySettlement, target: str) -> str:
    current = (settlement.status or SettlementStatus.PENDING).strip().lower()
    if target not in SettlementStatus.ALLOWED.get(current, set()):
        raise InvalidTransitionError(
            f"invalid_settlement_transition {current}->{target}",
            settlement_id=int(settlement.id),
        )
    settlement.status = target
    return current


def is_settlement_block(profile: DriverProfile) -> bool:
    return bool(profile.is_blocked) and (profile.blocked_reason or "").startswith(SETTLEMENT_BLOCK_PREFIX)


def _lock_settlement(settlement_id: int) -> WeeklySettlement:
    row = (
        WeeklySettlement.query.filter_by(id=int(settlement_id))
        .with_for_update()
        .populate_existing()
        .first()
    )
    if row is None:
        raise NotFoundError("settlement not found", settlement_id=settlement_id)
    return row


def weekly_card_earnings(driver_id: int, *, now: datetime | None = None) -> int:
    """Delivery earnings from card orders the driver delivered in the last 7 days."""
    now = now or datetime.utcnow()
    total = (
        db.session.query(func.coalesce(func.sum(Order.delivery_earnings), 0))
        .filter(
            Order.driver_id == int(driver_id),
            Order.payment_method == "card",
            Order.status == "delivered",
            Order.delivered_at >= now - timedelta(days=7),
            Order.delivered_at <= now,
        )
        .scalar()
    )
    return int(total or 0)


def submit_proof(settlement_id: int, driver_id: int, proof_url: str) -> WeeklySettlement:
    url = (proof_url or "").strip()
    if not url:
        raise ValidationError("proof_url is required")
    try:
        row = _lock_settlement(settlement_id)
        if int(row.driver_id) != int(driver_id):
            raise AuthorizationError("settlement belongs to another driver", settlement_id=int(row.id))
        previous = move(row, SettlementStatus.SUBMITTED)
        row.proof_url = url[:1024]
        row.submitted_at = datetime.utcnow()
        log_event(
            "settlement_proof_submitted",
            actor_user_id=int(driver_id),
            subject_type="settlement",
            subject_id=int(row.id),
            metadata={"from_status": previous},
        )
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise
    current_app.logger.info(
        "settlement_proof_submitted settlement_id=%s driver_id=%s from=%s",
        int(row.id),
        int(driver_id),
        previous,
    )
    return row


def approve(settlement_id: int, admin_id: int, *, now: datetime | None = None) -> dict:
    """Clear the driver's cash debt and lift the settlement hold or block.

    The driver only goes back on the road when no other block applies and
    no delivery is still in their hands.

    The weekly card-earnings payout is queued in the outbox, never sent
    inline, so a failed transfer cannot undo the approval.
    """
    now = now or datetime.utcnow()
    transfer = None
    try:
        row = _lock_settlement(settlement_id)
        move(row, SettlementStatus.APPROVED)
        row.reviewed_at = now
        row.reviewed_by = int(admin_id)

        wallet = ledger_service.get_or_create_wallet(int(row.driver_id), "driver")
        wallet = ledger_service.lock_wallet(int(wallet.id))
        cleared = min(int(row.amount_owed or 0), max(0, int(wallet.cash_owed or 0)))
        if cleared > 0:
            ledger_service.post_transaction(
                int(wallet.id),
                TxnType.ADJUSTMENT,
                cleared,
                f"Weekly settlement #{int(row.id)} approved",
                direction="debit",
                bucket=Bucket.CASH_OWED,
                reference=f"settlement:{int(row.id)}",
                commit=False,
            )

        profile = DriverProfile.query.filter_by(user_id=int(row.driver_id)).with_for_update().first()
        if profile is not None:
            if is_settlement_block(profile):
                profile.is_blocked = False
                profile.blocked_reason = None
            db.session.flush()
            order_lifecycle_service.release_driver(int(row.driver_id))

        if profile is not None and profile.has_payout_destination:
            transfer = _queue_weekly_transfer(row, wallet, profile, now=now)

        log_event(
            "settlement_approved",
            actor_user_id=int(admin_id),
            subject_type="settlement",
            subject_id=int(row.id),
            idempotency_key=f"settlement_approved:{int(row.id)}",
            metadata={
                "driver_id": int(row.driver_id),
                "cleared": cleared,
                "transfer_reference": transfer.payout_reference if transfer else None,
            },
        )
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise

    current_app.logger.info(
        "settlement_approved settlement_id=%s driver_id=%s cleared=%s transfer=%s",
        int(row.id),
        int(row.driver_id),
        cleared,
        transfer.payout_reference if transfer else "",
    )
    return {
        "settlement": row.to_dict(),
        "cleared": cleared,
        "transfer": transfer.to_dict() if transfer else None,
    }


def _queue_weekly_transfer(row: WeeklySettlement, wallet: Wallet, profile: DriverProfile, *, now: datetime):
    earnings = weekly_card_earnings(int(row.driver_id), now=now)
    amount = min(earnings, max(0, int(wallet.balance or 0)))
    if amount <= 0:
        return None
    return withdrawal_service.create_payout(
        wallet,
        amount,
        destination=profile.payout_account_id.strip(),
        source="settlement",
        settlement_id=int(row.id),
        reference=f"stl_{int(row.id)}_{int(row.driver_id)}",
    )


def reject(settlement_id: int, admin_id: int, notes: str) -> WeeklySettlement:
    text = (notes or "").strip()
    if not text:
        raise ValidationError("notes are required to reject a settlement")
    try:
        row = _lock_settlement(settlement_id)
        move(row, SettlementStatus.REJECTED)
        row.notes = text
        row.reviewed_at = datetime.utcnow()
        row.reviewed_by = int(admin_id)
        outbox_service.enqueue_notification(
            int(row.driver_id),
            "settlement_rejected",
            {"settlement_id": int(row.id), "notes": text},
            dedupe_key=f"notify:settlement:{int(row.id)}:rejected",
        )
        log_event(
            "settlement_rejected",
            actor_user_id=int(admin_id),
            subject_type="settlement",
            subject_id=int(row.id),
            idempotency_key=f"settlement_rejected:{int(row.id)}",
            metadata={"driver_id": int(row.driver_id)},
        )
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise
    current_app.logger.info("settlement_rejected settlement_id=%s admin_id=%s", int(row.id), int(admin_id))
    return row


def pending_settlements(*, statuses=None, limit: int = 200) -> list[dict]:
    wanted = tuple(statuses or SettlementStatus.OPEN)
    rows = (
        db.session.query(WeeklySettlement, User)
        .join(User, User.id == WeeklySettlement.driver_id)
        .filter(WeeklySettlement.status.in_(wanted))
        .order_by(WeeklySettlement.created_at.desc(), WeeklySettlement.id.desc())
        .limit(int(limit))
        .all()
    )
    out = []
    for settlement, driver in rows:
        item = settlement.to_dict()
        item["driver_name"] = driver.name or ""
        item["driver_phone"] = driver.phone or ""
        out.append(item)
    return out


def driver_current_settlement(driver_id: int) -> WeeklySettlement | None:
    return (
        WeeklySettlement.query.filter(
            WeeklySettlement.driver_id == int(driver_id),
            WeeklySettlement.status.in_(SettlementStatus.OPEN),
        )
        .order_by(WeeklySettlement.created_at.desc(), WeeklySettlement.id.desc())
        .first()
    )
