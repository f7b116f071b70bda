from __future__ import annotations

import uuid
from datetime import datetime

from flask import current_app

from nemy.errors import InvalidTransitionError, NotFoundError, ValidationError
from nemy.extensions import db
from nemy.models import DriverProfile, Wallet, Withdrawal
from nemy.services import ledger_service, outbox_service
from nemy.services.ledger_service import Bucket, TxnType


class WithdrawalStatus:
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"

    ALLOWED = {
        PENDING: {PROCESSING, COMPLETED, FAILED},
        PROCESSING: {COMPLETED, FAILED},
        COMPLETED: set(),
        FAILED: set(),
    }


def _move(w: Withdrawal, target: str) -> None:
    current = (w.status or WithdrawalStatus.PENDING).strip().lower()
    if target not in WithdrawalStatus.ALLOWED.get(current, set()):
        raise InvalidTransitionError(
            f"invalid_withdrawal_transition {current}->{target}",
            withdrawal_id=int(w.id),
        )
    w.status = target


def _new_reference() -> str:
    return f"wd_{uuid.uuid4().hex[:24]}"


def resolve_destination(user_id: int, destination: str | None = None) -> str:
    explicit = (destination or "").strip()
    if explicit:
        return explicit[:128]
    profile = DriverProfile.query.filter_by(user_id=int(user_id)).first()
    if profile is not None and profile.has_payout_destination:
        return profile.payout_account_id.strip()
    raise ValidationError("no payout destination linked", user_id=user_id)


def create_payout(
    wallet: Wallet,
    amount: int,
    *,
    destination: str,
    source: str = "request",
    settlement_id: int | None = None,
    reference: str | None = None,
) -> Withdrawal:
    """Debit ``amount`` from the wallet balance and queue the transfer.

    Does not commit. Raises InsufficientFundsError before any write when the
    balance cannot cover the amount.
    """
    payout_reference = (reference or _new_reference())[:128]
    ledger_service.post_transaction(
        int(wallet.id),
        TxnType.WITHDRAWAL,
        int(amount),
        f"Payout {payout_reference}",
        direction="debit",
        bucket=Bucket.BALANCE,
        reference=payout_reference,
        commit=False,
    )
    w = Withdrawal(
        wallet_id=int(wallet.id),
        user_id=int(wallet.user_id),
        amount=int(amount),
        destination=destination,
        source=source,
        settlement_id=settlement_id,
        status=WithdrawalStatus.PENDING,
        payout_reference=payout_reference,
    )
    db.session.add(w)
    db.session.flush()
    outbox_service.enqueue_payout_transfer(w)
    return w


def request_withdrawal(user_id: int, amount, *, destination: str | None = None) -> Withdrawal:
    try:
        amount_minor = int(amount)
    except (TypeError, ValueError):
        raise ValidationError("amount must be an integer in minor units")
    minimum = int(current_app.config.get("WITHDRAWAL_MIN_MINOR", 10000))
    if amount_minor < minimum:
        raise ValidationError(f"minimum withdrawal is {minimum}", minimum=minimum)

    wallet = Wallet.query.filter_by(user_id=int(user_id)).first()
    if wallet is None:
        raise NotFoundError("wallet not found", user_id=user_id)
    dest = resolve_destination(int(user_id), destination)

    try:
        w = create_payout(wallet, amount_minor, destination=dest, source="request")
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise
    current_app.logger.info(
        "withdrawal_requested withdrawal_id=%s user_id=%s amount=%s reference=%s",
        int(w.id),
        int(user_id),
        amount_minor,
        w.payout_reference,
    )
    return w


def mark_paid(w: Withdrawal) -> bool:
    """Complete a payout. Returns False when it already reached a final state."""
    if w.status == WithdrawalStatus.COMPLETED:
        return False
    if w.status == WithdrawalStatus.FAILED:
        current_app.logger.warning(
            "withdrawal_paid_after_failure withdrawal_id=%s reference=%s",
            int(w.id),
            w.payout_reference,
        )
        return False
    _move(w, WithdrawalStatus.COMPLETED)
    w.processed_at = datetime.utcnow()
    return True


def mark_processing(w: Withdrawal) -> None:
    if w.status == WithdrawalStatus.PENDING:
        _move(w, WithdrawalStatus.PROCESSING)


def mark_failed(w: Withdrawal, reason: str = "") -> bool:
    """Fail a payout and return the funds to the wallet balance. Does not commit."""
    if w.status in (WithdrawalStatus.FAILED, WithdrawalStatus.COMPLETED):
        return False
    _move(w, WithdrawalStatus.FAILED)
    w.failure_reason = (reason or "payout_failed")[:240]
    w.processed_at = datetime.utcnow()
    ledger_service.post_transaction(
        int(w.wallet_id),
        TxnType.REFUND,
        int(w.amount or 0),
        f"Payout returned {w.payout_reference}",
        direction="credit",
        bucket=Bucket.BALANCE,
        reference=f"{w.payout_reference}:returned",
        commit=False,
    )
    current_app.logger.warning(
        "withdrawal_failed withdrawal_id=%s user_id=%s amount=%s reason=%s",
        int(w.id),
        int(w.user_id),
        int(w.amount or 0),
        w.failure_reason,
    )
    return True


def find_by_reference(reference: str) -> Withdrawal | None:
    ref = (reference or "").strip()
    if not ref:
        return None
    return Withdrawal.query.filter_by(payout_reference=ref).with_for_update().first()


def list_for_user(user_id: int, *, limit: int = 50) -> list[Withdrawal]:
    return (
        Withdrawal.query.filter_by(user_id=int(user_id))
        .order_by(Withdrawal.id.desc())
        .limit(max(1, min(int(limit), 200)))
        .all()
    )
