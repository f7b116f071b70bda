from datetime import datetime
import json

from nemy.extensions import db


class PlatformEvent(db.Model):
    """Append-only audit trail for money and account-state changes.

    Subjects are orders, wallets, settlements, drivers and processor events;
    ``subject_id`` is stored as text so processor ids fit alongside row ids.
    """

    __tablename__ = "platform_events"
    __table_args__ = (db.Index("ix_platform_events_subject", "subject_type", "subject_id"),)

    id = db.Column(db.Integer, primary_key=True)
    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow, index=True)
    event_type = db.Column(db.String(80), nullable=False, index=True)
    actor_user_id = db.Column(db.Integer, nullable=True, index=True)
    subject_type = db.Column(db.String(40), nullable=True)
    subject_id = db.Column(db.String(120), nullable=True)
    request_id = db.Column(db.String(80), nullable=True)
    # Repeats of the same hold/approval/drift fix collapse onto one row.
    idempotency_key = db.Column(db.String(180), nullable=True, unique=True, index=True)
    severity = db.Column(db.String(16), nullable=False, default="INFO", index=True)
    metadata_json = db.Column(db.Text, nullable=True)

    @property
    def metadata_dict(self) -> dict:
        try:
            parsed = json.loads(self.metadata_json or "{}")
        except ValueError:
            return {}
        return parsed if isinstance(parsed, dict) else {}

    def to_dict(self) -> dict:
        return {
            "id": int(self.id),
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "event_type": self.event_type,
            "severity": self.severity or "INFO",
            "actor_user_id": self.actor_user_id,
            "subject": f"{self.subject_type}:{self.subject_id}" if self.subject_type else None,
            "request_id": self.request_id,
            "metadata": self.metadata_dict,
        }
