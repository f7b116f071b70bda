from __future__ import annotations

from datetime import datetime

from flask import current_app
from sqlalchemy.exc import IntegrityError

from nemy.errors import InsufficientFundsError, NotFoundError, ValidationError
from nemy.extensions import db
from nemy.models import User, Wallet, WalletTxn
from nemy.utils.observability import bind_audit_ids


class TxnType:
    PAYMENT = "payment"
    COMMISSION = "commission"
    REFUND = "refund"
    WITHDRAWAL = "withdrawal"
    ADJUSTMENT = "adjustment"

    ALL = {PAYMENT, COMMISSION, REFUND, WITHDRAWAL, ADJUSTMENT}


class Bucket:
    BALANCE = "balance"
    PENDING = "pending_balance"
    CASH_OWED = "cash_owed"

    ALL = (BALANCE, PENDING, CASH_OWED)


DIRECTIONS = ("credit", "debit")


def _signed(direction: str, amount: int) -> int:
    return -int(amount) if direction == "debit" else int(amount)


def get_or_create_wallet(user_id: int, account_type: str = "driver") -> Wallet:
    """Return the wallet for ``user_id``, creating it lazily.

    Creation happens in a savepoint; a concurrent creator winning the unique
    ``user_id`` race is resolved by re-reading the row.
    """
    wallet = Wallet.query.filter_by(user_id=int(user_id)).first()
    if wallet is not None:
        return wallet
    wallet = Wallet(
        user_id=int(user_id),
        account_type=(account_type or "driver").strip().lower()[:16],
        balance=0,
        pending_balance=0,
        cash_owed=0,
    )
    try:
        with db.session.begin_nested():
            db.session.add(wallet)
            db.session.flush()
    except IntegrityError:
        wallet = Wallet.query.filter_by(user_id=int(user_id)).first()
        if wallet is None:
            raise
    return wallet


def platform_user_id() -> int:
    configured = current_app.config.get("PLATFORM_USER_ID")
    if configured:
        return int(configured)
    user = User.query.filter_by(role="platform").order_by(User.id.asc()).first()
    if user is None:
        user = User(name="Platform", email="platform@nemy.internal", role="platform")
        db.session.add(user)
        db.session.flush()
    return int(user.id)


def platform_wallet() -> Wallet:
    return get_or_create_wallet(platform_user_id(), "platform")


def lock_wallet(wallet_id: int) -> Wallet:
    if db.session.get_bind().dialect.name == "sqlite":
        # SQLite drops FOR UPDATE; a write takes its database lock before the read below.
        Wallet.query.filter_by(id=int(wallet_id)).update({"updated_at": datetime.utcnow()}, synchronize_session=False)
    wallet = (
        Wallet.query.filter_by(id=int(wallet_id))
        .with_for_update()
        .populate_existing()
        .first()
    )
    if wallet is None:
        raise NotFoundError("wallet not found", wallet_id=wallet_id)
    return wallet


def lock_wallets(wallet_ids) -> dict[int, Wallet]:
    """Lock several wallets in ascending id order so concurrent units never deadlock."""
    locked = {}
    for wid in sorted({int(w) for w in wallet_ids if w is not None}):
        locked[wid] = lock_wallet(wid)
    return locked


def post_transaction(
    wallet_id: int,
    txn_type: str,
    amount: int,
    description: str = "",
    order_id: int | None = None,
    *,
    direction: str,
    bucket: str = Bucket.BALANCE,
    reference: str | None = None,
    commit: bool = True,
) -> WalletTxn:
    """Append one ledger entry and move the matching wallet field.

    The wallet row is locked first, so ``balance_before``/``balance_after``
    chain without gaps. With ``commit=False`` the caller owns the transaction
    boundary and must commit or roll back.
    """
    kind = (txn_type or "").strip().lower()
    if kind not in TxnType.ALL:
        raise ValidationError(f"unknown transaction type {txn_type!r}")
    direction = (direction or "").strip().lower()
    if direction not in DIRECTIONS:
        raise ValidationError(f"unknown direction {direction!r}")
    if bucket not in Bucket.ALL:
        raise ValidationError(f"unknown bucket {bucket!r}")
    bind_audit_ids(wallet_id=wallet_id, order_id=order_id)
    try:
        magnitude = int(amount)
    except (TypeError, ValueError):
        raise ValidationError("amount must be an integer in minor units")
    if magnitude < 0:
        raise ValidationError("amount must be non-negative; use direction for sign")

    wallet = lock_wallet(wallet_id)
    before = wallet.bucket_value(bucket)
    after = before + _signed(direction, magnitude)

    if kind == TxnType.WITHDRAWAL and bucket == Bucket.BALANCE and after < 0:
        raise InsufficientFundsError(
            "withdrawal exceeds available balance",
            wallet_id=int(wallet.id),
            balance=before,
            amount=magnitude,
        )

    setattr(wallet, bucket, after)
    wallet.updated_at = datetime.utcnow()
    txn = WalletTxn(
        wallet_id=int(wallet.id),
        user_id=int(wallet.user_id),
        kind=kind,
        direction=direction,
        bucket=bucket,
        amount=magnitude,
        balance_before=before,
        balance_after=after,
        status="completed",
        description=(description or "")[:240] or None,
        order_id=int(order_id) if order_id is not None else None,
        reference=(reference or "")[:160] or None,
    )
    db.session.add(txn)
    db.session.flush()

    current_app.logger.info(
        "ledger_posted wallet_id=%s txn_id=%s kind=%s direction=%s bucket=%s amount=%s before=%s after=%s order_id=%s",
        int(wallet.id),
        int(txn.id),
        kind,
        direction,
        bucket,
        magnitude,
        before,
        after,
        order_id,
    )
    if commit:
        try:
            db.session.commit()
        except Exception:
            db.session.rollback()
            raise
    return txn


def record_drift_adjustment(wallet: Wallet, bucket: str, computed: int, *, reference: str) -> WalletTxn | None:
    """Append a correcting entry so the ledger replays to the stored value.

    The stored field is left as is; the entry records the gap between the
    replayed value and what the wallet holds.
    """
    stored = wallet.bucket_value(bucket)
    drift = stored - int(computed)
    if drift == 0:
        return None
    txn = WalletTxn(
        wallet_id=int(wallet.id),
        user_id=int(wallet.user_id),
        kind=TxnType.ADJUSTMENT,
        direction="credit" if drift > 0 else "debit",
        bucket=bucket,
        amount=abs(drift),
        balance_before=int(computed),
        balance_after=stored,
        status="completed",
        description="Reconciliation drift correction",
        reference=(reference or "")[:160] or None,
    )
    db.session.add(txn)
    db.session.flush()
    return txn


def replay_balance(wallet_id: int, bucket: str = Bucket.BALANCE) -> int:
    """Fold completed entries of ``bucket`` in id order."""
    rows = (
        WalletTxn.query.filter_by(wallet_id=int(wallet_id), bucket=bucket, status="completed")
        .order_by(WalletTxn.id.asc())
        .all()
    )
    total = 0
    for row in rows:
        total += row.signed_amount
    return total


def chain_is_consistent(wallet_id: int, bucket: str = Bucket.BALANCE) -> bool:
    rows = (
        WalletTxn.query.filter_by(wallet_id=int(wallet_id), bucket=bucket, status="completed")
        .order_by(WalletTxn.id.asc())
        .all()
    )
    running = 0
    for row in rows:
        if int(row.balance_before) != running:
            return False
        running = int(row.balance_before) + row.signed_amount
        if int(row.balance_after) != running:
            return False
    return True


def wallet_transactions(wallet_id: int, *, limit: int = 50, bucket: str | None = None) -> list[WalletTxn]:
    q = WalletTxn.query.filter_by(wallet_id=int(wallet_id))
    if bucket:
        q = q.filter_by(bucket=bucket)
    return q.order_by(WalletTxn.id.desc()).limit(max(1, min(int(limit), 500))).all()
