from datetime import datetime
import json

from nemy.extensions import db


class Notification(db.Model):
    __tablename__ = "notifications"

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, index=True)

    template_key = db.Column(db.String(80), nullable=False)
    payload_json = db.Column(db.Text, nullable=True)

    channel = db.Column(db.String(32), nullable=False, default="in_app")
    status = db.Column(db.String(24), nullable=False, default="sent")  # sent | read

    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)
    read_at = db.Column(db.DateTime, nullable=True)

    def payload(self) -> dict:
        raw = (self.payload_json or "").strip()
        if not raw:
            return {}
        try:
            data = json.loads(raw)
            return data if isinstance(data, dict) else {}
        except Exception:
            return {}

    def mark_read(self, read_at: datetime | None = None) -> datetime:
        stamped = read_at or datetime.utcnow()
        self.status = "read"
        self.read_at = stamped
        return stamped

    def to_dict(self):
        return {
            "id": self.id,
            "user_id": self.user_id,
            "template_key": self.template_key or "",
            "payload": self.payload(),
            "channel": self.channel or "in_app",
            "status": self.status or "sent",
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "read_at": self.read_at.isoformat() if self.read_at else None,
        }
