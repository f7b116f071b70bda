from datetime import datetime
import json

from nemy.extensions import db


class ReconciliationReport(db.Model):
    """One ledger replay pass over every wallet bucket."""

    __tablename__ = "reconciliation_reports"

    id = db.Column(db.Integer, primary_key=True)
    scope = db.Column(db.String(64), nullable=False, default="wallet_ledger")
    summary_json = db.Column(db.Text, nullable=True)
    wallet_count = db.Column(db.Integer, nullable=False, default=0)
    drift_count = db.Column(db.Integer, nullable=False, default=0)
    corrected_count = db.Column(db.Integer, nullable=False, default=0)
    created_by = db.Column(db.Integer, nullable=True)  # null for scheduled runs
    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow, index=True)

    @property
    def clean(self) -> bool:
        return int(self.drift_count or 0) == 0

    @property
    def uncorrected_count(self) -> int:
        return max(0, int(self.drift_count or 0) - int(self.corrected_count or 0))

    def to_dict(self):
        try:
            summary = json.loads(self.summary_json or "{}")
        except ValueError:
            summary = {}
        return {
            "id": int(self.id),
            "scope": self.scope,
            "clean": self.clean,
            "wallet_count": int(self.wallet_count or 0),
            "drift_count": int(self.drift_count or 0),
            "corrected_count": int(self.corrected_count or 0),
            "uncorrected_count": self.uncorrected_count,
            "drift_items": summary.get("drift_items") or [],
            "created_by": self.created_by,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }
