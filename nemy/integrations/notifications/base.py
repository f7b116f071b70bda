from __future__ import annotations

from dataclasses import dataclass


@dataclass
class DeliveryResult:
    ok: bool
    code: str = ""
    message: str = ""
    notification_id: int | None = None


class NotificationSink:
    """Fire-and-forget delivery of a templated message to one user."""

    name = "unknown"

    def send(self, *, user_id: int, template_key: str, payload: dict | None = None) -> DeliveryResult:
        raise NotImplementedError
