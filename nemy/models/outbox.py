from datetime import datetime
import json

from nemy.extensions import db


class OutboxMessage(db.Model):
    __tablename__ = "outbox_messages"

    id = db.Column(db.Integer, primary_key=True)
    kind = db.Column(db.String(32), nullable=False, index=True)  # payout_transfer | notification
    dedupe_key = db.Column(db.String(180), nullable=False, unique=True)
    payload_json = db.Column(db.Text, nullable=False, default="{}")

    status = db.Column(db.String(16), nullable=False, default="pending", index=True)  # pending | sent | failed
    attempts = db.Column(db.Integer, nullable=False, default=0)
    last_error = db.Column(db.Text, nullable=True)
    provider_ref = db.Column(db.String(128), nullable=True, index=True)

    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow, index=True)
    processed_at = db.Column(db.DateTime, nullable=True)

    def payload(self) -> dict:
        try:
            parsed = json.loads(self.payload_json or "{}")
        except Exception:
            return {}
        return parsed if isinstance(parsed, dict) else {}

    def to_dict(self) -> dict:
        return {
            "id": int(self.id),
            "kind": self.kind or "",
            "dedupe_key": self.dedupe_key or "",
            "payload": self.payload(),
            "status": self.status or "",
            "attempts": int(self.attempts or 0),
            "last_error": self.last_error or "",
            "provider_ref": self.provider_ref or "",
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "processed_at": self.processed_at.isoformat() if self.processed_at else None,
        }
