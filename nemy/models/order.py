from datetime import datetime

from nemy.extensions import db


class Order(db.Model):
    __tablename__ = "orders"

    id = db.Column(db.Integer, primary_key=True)

    customer_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, index=True)
    business_id = db.Column(db.Integer, db.ForeignKey("businesses.id"), nullable=False, index=True)
    driver_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True, index=True)

    status = db.Column(db.String(24), nullable=False, default="pending", index=True)

    total = db.Column(db.BigInteger, nullable=False, default=0)
    payment_method = db.Column(db.String(8), nullable=False, default="card")  # card | cash
    payment_status = db.Column(db.String(16), nullable=False, default="unpaid")  # unpaid | captured | failed | refunded
    payment_reference = db.Column(db.String(128), nullable=True, index=True)

    # Set once at delivery by the distribution engine.
    platform_fee = db.Column(db.BigInteger, nullable=True)
    business_earnings = db.Column(db.BigInteger, nullable=True)
    delivery_earnings = db.Column(db.BigInteger, nullable=True)

    refund_amount = db.Column(db.BigInteger, nullable=True)
    refund_status = db.Column(db.String(16), nullable=True)  # requested | processed

    cancel_reason = db.Column(db.String(240), nullable=True)
    cancelled_by = db.Column(db.String(32), nullable=True)

    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow, index=True)
    accepted_at = db.Column(db.DateTime, nullable=True)
    assigned_at = db.Column(db.DateTime, nullable=True)
    picked_up_at = db.Column(db.DateTime, nullable=True)
    delivered_at = db.Column(db.DateTime, nullable=True, index=True)
    cancelled_at = db.Column(db.DateTime, nullable=True)
    updated_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    @property
    def earnings_recorded(self) -> bool:
        return (
            self.platform_fee is not None
            and self.business_earnings is not None
            and self.delivery_earnings is not None
        )

    def to_dict(self) -> dict:
        def _opt(v):
            return int(v) if v is not None else None

        return {
            "id": int(self.id),
            "customer_id": int(self.customer_id),
            "business_id": int(self.business_id),
            "driver_id": _opt(self.driver_id),
            "status": self.status or "",
            "total": int(self.total or 0),
            "payment_method": self.payment_method or "card",
            "payment_status": self.payment_status or "unpaid",
            "payment_reference": self.payment_reference or "",
            "platform_fee": _opt(self.platform_fee),
            "business_earnings": _opt(self.business_earnings),
            "delivery_earnings": _opt(self.delivery_earnings),
            "refund_amount": _opt(self.refund_amount),
            "refund_status": self.refund_status or "",
            "cancel_reason": self.cancel_reason or "",
            "cancelled_by": self.cancelled_by or "",
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "accepted_at": self.accepted_at.isoformat() if self.accepted_at else None,
            "assigned_at": self.assigned_at.isoformat() if self.assigned_at else None,
            "picked_up_at": self.picked_up_at.isoformat() if self.picked_up_at else None,
            "delivered_at": self.delivered_at.isoformat() if self.delivered_at else None,
            "cancelled_at": self.cancelled_at.isoformat() if self.cancelled_at else None,
        }


class OrderTransition(db.Model):
    __tablename__ = "order_transitions"
    __table_args__ = (
        db.UniqueConstraint("order_id", "idempotency_key", name="uq_order_transition_order_key"),
    )

    id = db.Column(db.Integer, primary_key=True)
    order_id = db.Column(db.Integer, nullable=False, index=True)
    from_status = db.Column(db.String(24), nullable=False, default="")
    to_status = db.Column(db.String(24), nullable=False)
    actor_type = db.Column(db.String(32), nullable=False, default="system")
    actor_id = db.Column(db.Integer, nullable=True)
    idempotency_key = db.Column(db.String(160), nullable=False)
    reason = db.Column(db.String(240), nullable=True)
    metadata_json = db.Column(db.Text, nullable=True)
    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)

    def to_dict(self):
        return {
            "id": int(self.id),
            "order_id": int(self.order_id),
            "from_status": self.from_status or "",
            "to_status": self.to_status or "",
            "actor_type": self.actor_type or "",
            "actor_id": int(self.actor_id) if self.actor_id is not None else None,
            "idempotency_key": self.idempotency_key or "",
            "reason": self.reason or "",
            "metadata_json": self.metadata_json or "",
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }
