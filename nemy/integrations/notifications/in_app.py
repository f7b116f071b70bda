from __future__ import annotations

import json

from nemy.extensions import db
from nemy.integrations.notifications.base import DeliveryResult, NotificationSink
from nemy.models import Notification


class InAppNotificationSink(NotificationSink):
    """Persists notifications so every app instance sees the same inbox.

    Rows join the caller's transaction; the outbox drain commits them.
    """

    name = "in_app"

    def send(self, *, user_id: int, template_key: str, payload: dict | None = None) -> DeliveryResult:
        row = Notification(
            user_id=int(user_id),
            template_key=(template_key or "generic")[:80],
            payload_json=json.dumps(payload or {}, default=str),
            channel="in_app",
            status="sent",
        )
        db.session.add(row)
        db.session.flush()
        return DeliveryResult(ok=True, code="OK", message="stored", notification_id=int(row.id))
