from __future__ import annotations

from flask import Blueprint, jsonify, request

from nemy.errors import NotFoundError
from nemy.extensions import db
from nemy.models import Notification
from nemy.utils.auth import require_user

notifications_bp = Blueprint("notifications_bp", __name__, url_prefix="/api/notifications")


@notifications_bp.get("")
def list_notifications():
    u = require_user()
    q = Notification.query.filter_by(user_id=int(u.id))
    if (request.args.get("unread") or "").strip().lower() in ("1", "true", "yes"):
        q = q.filter(Notification.read_at.is_(None))
    rows = q.order_by(Notification.created_at.desc(), Notification.id.desc()).limit(80).all()
    return jsonify({"ok": True, "items": [r.to_dict() for r in rows], "count": len(rows)}), 200


@notifications_bp.post("/<int:notification_id>/read")
def mark_notification_read(notification_id: int):
    u = require_user()
    row = Notification.query.filter_by(id=notification_id, user_id=int(u.id)).first()
    if row is None:
        raise NotFoundError("notification not found", notification_id=notification_id)
    if row.read_at is None:
        row.mark_read()
        db.session.commit()
    return jsonify({"ok": True, "notification": row.to_dict()}), 200
