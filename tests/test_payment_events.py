from __future__ import annotations

import unittest
from unittest import mock

from _support import AppTestCase

from nemy.errors import ValidationError
from nemy.extensions import db
from nemy.models import Order, WebhookEvent, Withdrawal
from nemy.services import ledger_service, order_lifecycle_service, payment_event_service, withdrawal_service
from nemy.services.payment_event_service import EventKind, apply_event, normalize_paystack, normalize_stripe


class PaymentEventTestCase(AppTestCase):
    def setUp(self):
        super().setUp()
        self.business = self.make_business()
        self.customer = self.make_user("customer")

    def _card_order(self, total=12000):
        return order_lifecycle_service.create_order(int(self.customer.id), int(self.business.id), total, "card")

    def test_capture_accepts_order_and_holds_funds(self):
        order = self._card_order()

        result = self.capture(order)

        self.assertFalse(result["duplicate"])
        self.assertEqual(result["kind"], EventKind.CAPTURE_SUCCEEDED)
        order = db.session.get(Order, int(order.id))
        self.assertEqual(order.status, "accepted")
        self.assertEqual(order.payment_status, "captured")
        self.assertEqual(order.payment_reference, f"ref_{int(order.id)}")
        self.assertEqual(int(ledger_service.platform_wallet().pending_balance), 12000)

    def test_redelivered_event_is_a_noop(self):
        order = self._card_order()
        self.capture(order, event_id="evt_1")

        again = self.capture(order, event_id="evt_1")

        self.assertTrue(again["duplicate"])
        self.assertEqual(WebhookEvent.query.count(), 1)
        self.assertEqual(int(ledger_service.platform_wallet().pending_balance), 12000)

    def test_second_capture_with_new_id_does_not_double_count(self):
        order = self._card_order()
        self.capture(order, event_id="evt_a")
        again = self.capture(order, event_id="evt_b")
        self.assertTrue(again["already_captured"])
        self.assertEqual(int(ledger_service.platform_wallet().pending_balance), 12000)

    def test_amount_mismatch_is_recorded_but_ignored(self):
        order = self._card_order()

        result = self.capture(order, amount=100)

        self.assertTrue(result["ignored"])
        row = WebhookEvent.query.one()
        self.assertEqual(row.status, "ignored")
        self.assertEqual(row.error, "amount_mismatch")
        self.assertEqual(db.session.get(Order, int(order.id)).status, "pending")

    def test_unknown_event_type_is_ignored(self):
        result = apply_event({"id": "evt_x", "type": "customeridentification.success", "data": {}})
        self.assertEqual(result["status"], "ignored")
        self.assertEqual(WebhookEvent.query.one().event_type, "customeridentification.success")

    def test_missing_event_id_is_rejected(self):
        with self.assertRaises(ValueError):
            apply_event({"type": "charge.success", "data": {}})

    def test_capture_failure_cancels_pending_order(self):
        order = self._card_order()

        apply_event(
            {"id": "evt_f", "type": "charge.failed", "data": {"order_id": int(order.id), "reason": "Declined"}}
        )

        order = db.session.get(Order, int(order.id))
        self.assertEqual(order.status, "cancelled")
        self.assertEqual(order.payment_status, "failed")
        self.assertEqual(order.cancel_reason, "Declined")
        self.assertEqual(order.cancelled_by, "system")

    def test_refund_before_delivery_releases_held_funds(self):
        order = self._card_order()
        self.capture(order)

        result = apply_event(
            {"id": "evt_r", "type": "refund.processed", "data": {"order_id": int(order.id), "amount": 12000}}
        )

        self.assertEqual(result["bucket"], "pending")
        order = db.session.get(Order, int(order.id))
        self.assertEqual(order.refund_status, "processed")
        self.assertEqual(int(order.refund_amount), 12000)
        self.assertEqual(int(ledger_service.platform_wallet().pending_balance), 0)

    def test_refund_of_uncaptured_order_is_ignored(self):
        order = self._card_order()
        result = apply_event({"id": "evt_r2", "type": "refund.processed", "data": {"order_id": int(order.id)}})
        self.assertTrue(result["ignored"])

    def test_failed_payout_webhook_returns_funds(self):
        driver = self.make_driver(payout_account_id="ACCT_9")
        self.fund(int(driver.id), 20000)
        w = withdrawal_service.request_withdrawal(int(driver.id), 15000)
        self.assertEqual(int(self.wallet(driver.id).balance), 5000)

        apply_event(
            {
                "id": "evt_tf",
                "type": "transfer.failed",
                "data": {"reference": w.payout_reference, "reason": "account closed"},
            }
        )

        w = db.session.get(Withdrawal, int(w.id))
        self.assertEqual(w.status, "failed")
        self.assertEqual(w.failure_reason, "account closed")
        self.assertEqual(int(self.wallet(driver.id).balance), 20000)

        # A late success never resurrects a failed payout.
        apply_event({"id": "evt_ts", "type": "transfer.success", "data": {"reference": w.payout_reference}})
        self.assertEqual(db.session.get(Withdrawal, int(w.id)).status, "failed")

    def test_account_update_links_payout_destination(self):
        driver = self.make_driver()
        event = normalize_stripe(
            {
                "id": "evt_acct",
                "type": "account.updated",
                "data": {
                    "object": {
                        "id": "acct_123",
                        "payouts_enabled": True,
                        "details_submitted": True,
                        "metadata": {"driver_id": str(int(driver.id))},
                    }
                },
            }
        )

        apply_event(event, provider="stripe")

        profile = self.profile(driver.id)
        self.assertEqual(profile.payout_account_id, "acct_123")
        self.assertTrue(profile.payouts_enabled)
        self.assertTrue(profile.has_payout_destination)

    def test_handler_failure_rolls_back_everything(self):
        order = self._card_order()

        def boom(row, data):
            raise RuntimeError("processor down")

        with mock.patch.dict(payment_event_service.HANDLERS, {EventKind.CAPTURE_SUCCEEDED: boom}):
            with self.assertRaises(RuntimeError):
                self.capture(order, event_id="evt_retry")

        self.assertEqual(WebhookEvent.query.count(), 0)
        self.assertEqual(db.session.get(Order, int(order.id)).payment_status, "unpaid")

        # Redelivery after the fault applies normally.
        result = self.capture(order, event_id="evt_retry")
        self.assertFalse(result["duplicate"])
        self.assertEqual(db.session.get(Order, int(order.id)).status, "accepted")

    def test_batch_isolates_failures(self):
        order = self._card_order()
        summary = payment_event_service.apply_events(
            [
                {"id": "evt_ok", "type": "charge.success", "data": {"order_id": int(order.id), "amount": 12000}},
                {"type": "charge.success", "data": {}},
                {"id": "evt_ok", "type": "charge.success", "data": {"order_id": int(order.id), "amount": 12000}},
            ]
        )
        self.assertFalse(summary["ok"])
        self.assertEqual(summary["applied"], 1)
        self.assertEqual(summary["duplicates"], 1)
        self.assertEqual(len(summary["failed"]), 1)

    def test_prune_keeps_newest_rows(self):
        for i in range(5):
            apply_event({"id": f"evt_{i}", "type": "noise", "data": {}})

        result = payment_event_service.prune_webhook_events(keep=2)

        self.assertEqual(result["deleted"], 3)
        remaining = sorted(r.event_id for r in WebhookEvent.query.all())
        self.assertEqual(remaining, ["evt_3", "evt_4"])

    def test_prune_refuses_to_empty_the_table(self):
        for i in range(3):
            apply_event({"id": f"evt_{i}", "type": "noise", "data": {}})

        for keep in (0, -4):
            with self.assertRaises(ValidationError):
                payment_event_service.prune_webhook_events(keep=keep)
        self.assertEqual(WebhookEvent.query.count(), 3)

        result = payment_event_service.prune_webhook_events(keep=1)
        self.assertEqual(result["deleted"], 2)
        self.assertEqual([r.event_id for r in WebhookEvent.query.all()], ["evt_2"])


class NormalizeTestCase(unittest.TestCase):
    def test_paystack_charge(self):
        event = normalize_paystack(
            {
                "event": "charge.success",
                "data": {"id": 991, "reference": "ps_ref", "amount": 12000, "metadata": {"order_id": "7"}},
            }
        )
        self.assertEqual(event["id"], "charge.success:991")
        self.assertEqual(event["data"]["order_id"], 7)
        self.assertEqual(event["data"]["amount"], 12000)
        self.assertEqual(event["data"]["reference"], "ps_ref")
        self.assertEqual(len(event["payload_hash"]), 64)

    def test_stripe_refund_uses_payment_intent(self):
        event = normalize_stripe(
            {
                "id": "evt_9",
                "type": "charge.refunded",
                "data": {"object": {"payment_intent": "pi_1", "amount_refunded": 500, "metadata": {"orderId": "3"}}},
            }
        )
        self.assertEqual(event["data"]["reference"], "pi_1")
        self.assertEqual(event["data"]["amount"], 500)
        self.assertEqual(event["data"]["order_id"], 3)


if __name__ == "__main__":
    unittest.main()
