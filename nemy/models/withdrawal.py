from datetime import datetime

from nemy.extensions import db


class Withdrawal(db.Model):
    __tablename__ = "withdrawals"

    id = db.Column(db.Integer, primary_key=True)
    wallet_id = db.Column(db.Integer, db.ForeignKey("wallets.id"), nullable=False, index=True)
    user_id = db.Column(db.Integer, nullable=False, index=True)
    amount = db.Column(db.BigInteger, nullable=False)

    destination = db.Column(db.String(128), nullable=True)
    source = db.Column(db.String(24), nullable=False, default="request")  # request | settlement
    settlement_id = db.Column(db.Integer, nullable=True, index=True)

    status = db.Column(db.String(16), nullable=False, default="pending", index=True)  # pending | processing | completed | failed
    payout_reference = db.Column(db.String(128), nullable=True, unique=True)
    failure_reason = db.Column(db.String(240), nullable=True)

    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)
    processed_at = db.Column(db.DateTime, nullable=True)

    def to_dict(self) -> dict:
        return {
            "id": int(self.id),
            "wallet_id": int(self.wallet_id),
            "user_id": int(self.user_id),
            "amount": int(self.amount or 0),
            "destination": self.destination or "",
            "source": self.source or "request",
            "settlement_id": int(self.settlement_id) if self.settlement_id is not None else None,
            "status": self.status or "",
            "payout_reference": self.payout_reference or "",
            "failure_reason": self.failure_reason or "",
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "processed_at": self.processed_at.isoformat() if self.processed_at else None,
        }
