from datetime import datetime

from nemy.extensions import db


class Wallet(db.Model):
    __tablename__ = "wallets"

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, unique=True, index=True)
    account_type = db.Column(db.String(16), nullable=False, default="driver")  # business | driver | platform

    # Minor currency units. Only the ledger service writes these.
    balance = db.Column(db.BigInteger, nullable=False, default=0)
    pending_balance = db.Column(db.BigInteger, nullable=False, default=0)
    cash_owed = db.Column(db.BigInteger, nullable=False, default=0)

    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    def bucket_value(self, bucket: str) -> int:
        return int(getattr(self, bucket) or 0)

    def to_dict(self) -> dict:
        return {
            "id": int(self.id),
            "user_id": int(self.user_id),
            "account_type": self.account_type or "",
            "balance": int(self.balance or 0),
            "pending_balance": int(self.pending_balance or 0),
            "cash_owed": int(self.cash_owed or 0),
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }


class WalletTxn(db.Model):
    __tablename__ = "wallet_txns"
    __table_args__ = (
        db.Index("ix_wallet_txns_wallet_bucket_id", "wallet_id", "bucket", "id"),
    )

    id = db.Column(db.Integer, primary_key=True)
    wallet_id = db.Column(db.Integer, db.ForeignKey("wallets.id"), nullable=False, index=True)
    user_id = db.Column(db.Integer, nullable=False, index=True)

    kind = db.Column(db.String(24), nullable=False)  # payment | commission | refund | withdrawal | adjustment
    direction = db.Column(db.String(8), nullable=False)  # credit | debit
    bucket = db.Column(db.String(24), nullable=False, default="balance")  # balance | pending_balance | cash_owed
    amount = db.Column(db.BigInteger, nullable=False)

    balance_before = db.Column(db.BigInteger, nullable=False)
    balance_after = db.Column(db.BigInteger, nullable=False)

    status = db.Column(db.String(16), nullable=False, default="completed")
    description = db.Column(db.String(240), nullable=True)
    order_id = db.Column(db.Integer, nullable=True, index=True)
    reference = db.Column(db.String(160), nullable=True, index=True)

    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow, index=True)

    @property
    def signed_amount(self) -> int:
        if (self.direction or "").strip().lower() == "debit":
            return -abs(int(self.amount or 0))
        return abs(int(self.amount or 0))

    def to_dict(self) -> dict:
        return {
            "id": int(self.id),
            "wallet_id": int(self.wallet_id),
            "user_id": int(self.user_id),
            "type": self.kind,
            "direction": self.direction,
            "bucket": self.bucket or "balance",
            "amount": int(self.amount or 0),
            "balance_before": int(self.balance_before or 0),
            "balance_after": int(self.balance_after or 0),
            "status": self.status or "",
            "description": self.description or "",
            "order_id": int(self.order_id) if self.order_id is not None else None,
            "reference": self.reference or "",
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }
