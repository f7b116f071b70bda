from nemy.models.user import User, DriverProfile, Business
from nemy.models.wallet import Wallet, WalletTxn
from nemy.models.order import Order, OrderTransition
from nemy.models.settlement import WeeklySettlement
from nemy.models.withdrawal import Withdrawal
from nemy.models.webhook_event import WebhookEvent
from nemy.models.outbox import OutboxMessage
from nemy.models.notification import Notification
from nemy.models.job_run import JobRun
from nemy.models.platform_event import PlatformEvent
from nemy.models.reconciliation_report import ReconciliationReport

__all__ = [
    "User",
    "DriverProfile",
    "Business",
    "Wallet",
    "WalletTxn",
    "Order",
    "OrderTransition",
    "WeeklySettlement",
    "Withdrawal",
    "WebhookEvent",
    "OutboxMessage",
    "Notification",
    "JobRun",
    "PlatformEvent",
    "ReconciliationReport",
]
