from __future__ import annotations

from flask import current_app

from nemy.errors import NotFoundError, ValidationError
from nemy.extensions import db
from nemy.models import Business, Order
from nemy.services import ledger_service
from nemy.services.ledger_service import Bucket, TxnType
from nemy.utils.commission import split_from_config
from nemy.utils.events import log_event


def _lock_order(order_id: int) -> Order:
    order = Order.query.filter_by(id=int(order_id)).with_for_update().populate_existing().first()
    if order is None:
        raise NotFoundError("order not found", order_id=order_id)
    return order


def _earnings(order: Order) -> dict:
    return {
        "platform_fee": int(order.platform_fee or 0),
        "business_earnings": int(order.business_earnings or 0),
        "delivery_earnings": int(order.delivery_earnings or 0),
    }


def distribute(order_id: int, *, commit: bool = True) -> dict:
    """Split a delivered order's total into ledger entries, once.

    The order row is locked before the earnings check, so two concurrent
    deliveries of the same order serialize and the second one is a no-op.
    With ``commit=False`` the caller's transaction carries every write.
    """
    try:
        order = _lock_order(order_id)
        if order.earnings_recorded:
            current_app.logger.info("commission_already_distributed order_id=%s", int(order.id))
            return {"ok": True, "order_id": int(order.id), "already_distributed": True, **_earnings(order)}
        if order.driver_id is None:
            raise ValidationError("order has no driver", order_id=int(order.id))

        business = db.session.get(Business, int(order.business_id))
        if business is None:
            raise NotFoundError("business not found", business_id=order.business_id)

        split = split_from_config(int(order.total or 0), current_app.config)
        business_minor = split["business_minor"]
        driver_minor = split["driver_minor"]
        platform_minor = split["platform_minor"]

        order.business_earnings = business_minor
        order.delivery_earnings = driver_minor
        order.platform_fee = platform_minor

        business_wallet = ledger_service.get_or_create_wallet(int(business.owner_id), "business")
        driver_wallet = ledger_service.get_or_create_wallet(int(order.driver_id), "driver")
        platform_wallet = ledger_service.platform_wallet()
        ledger_service.lock_wallets([business_wallet.id, driver_wallet.id, platform_wallet.id])

        ref = f"order:{int(order.id)}"
        method = (order.payment_method or "card").strip().lower()
        if method == "cash":
            # The driver collected the full total in cash and keeps the delivery fee.
            owed = business_minor + platform_minor
            if owed > 0:
                ledger_service.post_transaction(
                    int(driver_wallet.id),
                    TxnType.ADJUSTMENT,
                    owed,
                    f"Cash collected for order #{int(order.id)}",
                    int(order.id),
                    direction="credit",
                    bucket=Bucket.CASH_OWED,
                    reference=f"{ref}:cash_owed",
                    commit=False,
                )
        else:
            postings = (
                (business_wallet, TxnType.PAYMENT, business_minor, "Order earnings", "business"),
                (driver_wallet, TxnType.COMMISSION, driver_minor, "Delivery fee", "driver"),
                (platform_wallet, TxnType.COMMISSION, platform_minor, "Platform fee", "platform"),
            )
            for wallet, kind, amount, label, party in postings:
                if amount <= 0:
                    continue
                ledger_service.post_transaction(
                    int(wallet.id),
                    kind,
                    amount,
                    f"{label} for order #{int(order.id)}",
                    int(order.id),
                    direction="credit",
                    bucket=Bucket.BALANCE,
                    reference=f"{ref}:{party}",
                    commit=False,
                )
            if (order.payment_status or "") == "captured" and int(order.total or 0) > 0:
                ledger_service.post_transaction(
                    int(platform_wallet.id),
                    TxnType.ADJUSTMENT,
                    int(order.total),
                    f"Release held payment for order #{int(order.id)}",
                    int(order.id),
                    direction="debit",
                    bucket=Bucket.PENDING,
                    reference=f"{ref}:release",
                    commit=False,
                )

        log_event(
            "commission_distributed",
            subject_type="order",
            subject_id=int(order.id),
            idempotency_key=f"commission_distributed:{int(order.id)}",
            metadata={"payment_method": method, "rule": split["rule"], **_earnings(order)},
        )
        if commit:
            db.session.commit()
    except Exception:
        if commit:
            db.session.rollback()
        raise

    current_app.logger.info(
        "commission_distributed order_id=%s method=%s business=%s driver=%s platform=%s",
        int(order.id),
        method,
        business_minor,
        driver_minor,
        platform_minor,
    )
    return {
        "ok": True,
        "order_id": int(order.id),
        "already_distributed": False,
        "payment_method": method,
        **_earnings(order),
    }
