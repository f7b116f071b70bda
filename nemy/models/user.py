from datetime import datetime

from werkzeug.security import generate_password_hash

from nemy.extensions import db


class User(db.Model):
    __tablename__ = "users"

    id = db.Column(db.Integer, primary_key=True)

    name = db.Column(db.String(120), nullable=False, default="")
    email = db.Column(db.String(255), unique=True, index=True, nullable=False)
    phone = db.Column(db.String(32), unique=True, index=True, nullable=True)

    password_hash = db.Column(db.String(255), nullable=False, default="")

    # customer | business | driver | admin | platform
    role = db.Column(db.String(32), nullable=False, default="customer")
    is_active = db.Column(db.Boolean, nullable=False, default=True)

    created_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False)

    def set_password(self, raw_password: str) -> None:
        self.password_hash = generate_password_hash(raw_password)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "email": self.email,
            "phone": self.phone,
            "role": self.role or "customer",
            "is_active": bool(self.is_active),
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }


class DriverProfile(db.Model):
    __tablename__ = "driver_profiles"

    VEHICLE_TYPES = ("bicycle", "motorcycle", "car")

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, unique=True, index=True)

    vehicle_type = db.Column(db.String(24), nullable=False)

    # Coordinates come from the device location source; never geocoded here.
    latitude = db.Column(db.Float, nullable=True)
    longitude = db.Column(db.Float, nullable=True)

    rating = db.Column(db.Float, nullable=False, default=4.0)  # 0..5
    completed_deliveries = db.Column(db.Integer, nullable=False, default=0)
    strikes = db.Column(db.Integer, nullable=False, default=0)

    is_available = db.Column(db.Boolean, nullable=False, default=True, index=True)
    is_blocked = db.Column(db.Boolean, nullable=False, default=False, index=True)
    blocked_reason = db.Column(db.String(240), nullable=True)
    blocked_until = db.Column(db.DateTime, nullable=True)  # None means until lifted by hand or by settlement

    payout_account_id = db.Column(db.String(128), nullable=True, index=True)
    payouts_enabled = db.Column(db.Boolean, nullable=False, default=False)
    details_submitted = db.Column(db.Boolean, nullable=False, default=False)

    updated_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    @property
    def has_payout_destination(self) -> bool:
        return bool((self.payout_account_id or "").strip()) and bool(self.payouts_enabled)

    def to_dict(self) -> dict:
        return {
            "user_id": int(self.user_id),
            "vehicle_type": self.vehicle_type or "",
            "latitude": self.latitude,
            "longitude": self.longitude,
            "rating": float(self.rating or 0.0),
            "completed_deliveries": int(self.completed_deliveries or 0),
            "strikes": int(self.strikes or 0),
            "is_available": bool(self.is_available),
            "is_blocked": bool(self.is_blocked),
            "blocked_reason": self.blocked_reason or "",
            "blocked_until": self.blocked_until.isoformat() if self.blocked_until else None,
            "payout_account_id": self.payout_account_id or "",
            "payouts_enabled": bool(self.payouts_enabled),
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }


class Business(db.Model):
    __tablename__ = "businesses"

    id = db.Column(db.Integer, primary_key=True)
    owner_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, index=True)
    name = db.Column(db.String(160), nullable=False, default="")

    latitude = db.Column(db.Float, nullable=True)
    longitude = db.Column(db.Float, nullable=True)
    is_open = db.Column(db.Boolean, nullable=False, default=True)

    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)

    def to_dict(self) -> dict:
        return {
            "id": int(self.id),
            "owner_id": int(self.owner_id),
            "name": self.name or "",
            "latitude": self.latitude,
            "longitude": self.longitude,
            "is_open": bool(self.is_open),
        }
