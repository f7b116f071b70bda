from __future__ import annotations

import unittest

from _support import AppTestCase

from nemy.extensions import db
from nemy.integrations.payouts.mock_provider import MockPayoutsProvider
from nemy.models import JobRun, Notification, OutboxMessage, Withdrawal
from nemy.services import order_lifecycle_service, outbox_service, withdrawal_service


class _BrokenProvider(MockPayoutsProvider):
    def transfer(self, **kwargs):
        raise RuntimeError("connection reset")


class OutboxTestCase(AppTestCase):
    config_overrides = {"OUTBOX_MAX_ATTEMPTS": 2}

    def test_notifications_are_delivered_once(self):
        business = self.make_business()
        customer = self.make_user("customer")
        order_lifecycle_service.create_order(int(customer.id), int(business.id), 5000, "cash")

        first = outbox_service.process_outbox()
        second = outbox_service.process_outbox()

        self.assertEqual(first["sent"], 1)
        self.assertEqual(second["processed"], 0)
        note = Notification.query.filter_by(user_id=int(business.owner_id)).one()
        self.assertEqual(note.template_key, "order_created")
        self.assertEqual(note.payload()["total"], 5000)
        self.assertEqual(OutboxMessage.query.one().status, "sent")
        self.assertEqual(JobRun.query.filter_by(job_name="outbox_drain").count(), 2)

    def test_enqueue_is_deduplicated(self):
        user = self.make_user("driver")
        a = outbox_service.enqueue_notification(int(user.id), "hello", {}, dedupe_key="notify:hello")
        b = outbox_service.enqueue_notification(int(user.id), "hello", {}, dedupe_key="notify:hello")
        db.session.commit()
        self.assertEqual(int(a.id), int(b.id))
        self.assertEqual(OutboxMessage.query.count(), 1)

    def test_transfer_success_completes_withdrawal(self):
        driver = self.make_driver(payout_account_id="ACCT_1")
        self.fund(int(driver.id), 20000)
        w = withdrawal_service.request_withdrawal(int(driver.id), 12000)

        provider = MockPayoutsProvider()
        outbox_service.process_outbox(payouts_provider=provider)

        self.assertEqual(provider.transfers[0]["reference"], w.payout_reference)
        self.assertEqual(db.session.get(Withdrawal, int(w.id)).status, "completed")
        self.assertEqual(int(self.wallet(driver.id).balance), 8000)

    def test_transient_errors_retry_then_fail_and_refund(self):
        driver = self.make_driver(payout_account_id="ACCT_2")
        self.fund(int(driver.id), 20000)
        w = withdrawal_service.request_withdrawal(int(driver.id), 12000)
        provider = _BrokenProvider()

        first = outbox_service.process_outbox(payouts_provider=provider)
        self.assertEqual(first["retrying"], 1)
        self.assertEqual(db.session.get(Withdrawal, int(w.id)).status, "pending")
        self.assertEqual(int(self.wallet(driver.id).balance), 8000)

        second = outbox_service.process_outbox(payouts_provider=provider)
        self.assertEqual(second["failed"], 1)

        msg = OutboxMessage.query.filter_by(kind="payout_transfer").one()
        self.assertEqual(msg.status, "failed")
        self.assertEqual(int(msg.attempts), 2)
        self.assertIn("connection reset", msg.last_error)
        self.assertEqual(db.session.get(Withdrawal, int(w.id)).status, "failed")
        self.assertEqual(int(self.wallet(driver.id).balance), 20000)
        self.assertEqual(len(outbox_service.failed_messages()), 1)


class DisabledSinkTestCase(AppTestCase):
    config_overrides = {"NOTIFICATION_SINK": "disabled"}

    def test_notifications_wait_while_sink_is_disabled(self):
        user = self.make_user("driver")
        outbox_service.enqueue_notification(int(user.id), "hello", {}, dedupe_key="notify:wait")
        db.session.commit()

        result = outbox_service.process_outbox()

        self.assertEqual(result["skipped"], 1)
        self.assertEqual(OutboxMessage.query.one().status, "pending")


class DisabledPayoutsTestCase(AppTestCase):
    config_overrides = {"PAYOUTS_PROVIDER": "disabled"}

    def test_transfers_are_held_while_payouts_are_disabled(self):
        driver = self.make_driver(payout_account_id="ACCT_3")
        self.fund(int(driver.id), 20000)
        w = withdrawal_service.request_withdrawal(int(driver.id), 12000)

        result = outbox_service.process_outbox()

        self.assertEqual(result["payouts_unavailable"], "INTEGRATION_DISABLED:payouts")
        self.assertEqual(result["skipped"], 1)
        self.assertEqual(db.session.get(Withdrawal, int(w.id)).status, "pending")


if __name__ == "__main__":
    unittest.main()
