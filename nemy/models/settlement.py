from datetime import datetime

from nemy.extensions import db


class WeeklySettlement(db.Model):
    __tablename__ = "weekly_settlements"
    __table_args__ = (
        db.UniqueConstraint("driver_id", "week_start", name="uq_weekly_settlement_driver_week"),
    )

    id = db.Column(db.Integer, primary_key=True)
    driver_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, index=True)

    week_start = db.Column(db.Date, nullable=False)
    week_end = db.Column(db.Date, nullable=False)
    amount_owed = db.Column(db.BigInteger, nullable=False, default=0)

    # pending | submitted | approved | rejected | overdue
    status = db.Column(db.String(16), nullable=False, default="pending", index=True)
    deadline = db.Column(db.DateTime, nullable=False, index=True)

    proof_url = db.Column(db.String(1024), nullable=True)
    submitted_at = db.Column(db.DateTime, nullable=True)
    reviewed_at = db.Column(db.DateTime, nullable=True)
    reviewed_by = db.Column(db.Integer, nullable=True)
    notes = db.Column(db.Text, nullable=True)

    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow, index=True)

    def to_dict(self) -> dict:
        return {
            "id": int(self.id),
            "driver_id": int(self.driver_id),
            "week_start": self.week_start.isoformat() if self.week_start else None,
            "week_end": self.week_end.isoformat() if self.week_end else None,
            "amount_owed": int(self.amount_owed or 0),
            "status": self.status or "",
            "deadline": self.deadline.isoformat() if self.deadline else None,
            "proof_url": self.proof_url or "",
            "submitted_at": self.submitted_at.isoformat() if self.submitted_at else None,
            "reviewed_at": self.reviewed_at.isoformat() if self.reviewed_at else None,
            "reviewed_by": int(self.reviewed_by) if self.reviewed_by is not None else None,
            "notes": self.notes or "",
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }
