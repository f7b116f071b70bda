from __future__ import annotations

from nemy.integrations.common import IntegrationDisabledError, IntegrationMisconfiguredError
from nemy.integrations.notifications.base import NotificationSink
from nemy.integrations.notifications.in_app import InAppNotificationSink


def build_notification_sink(config) -> NotificationSink:
    sink = (config.get("NOTIFICATION_SINK") or "in_app").strip().lower()
    if sink == "disabled":
        raise IntegrationDisabledError("notifications")
    if sink != "in_app":
        raise IntegrationMisconfiguredError("notifications", f"sink={sink}")
    return InAppNotificationSink()
