from __future__ import annotations

import unittest
from datetime import timedelta

from _support import AppTestCase

from nemy.errors import AuthorizationError, InvalidTransitionError, ValidationError
from nemy.extensions import db
from nemy.models import Order, OrderTransition, OutboxMessage
from nemy.services import order_lifecycle_service as lifecycle


class OrderLifecycleTestCase(AppTestCase):
    def setUp(self):
        super().setUp()
        self.business = self.make_business()
        self.owner = {"type": "business", "id": int(self.business.owner_id)}
        self.customer = self.make_user("customer")

    def _order(self, method="cash", total=12000):
        return lifecycle.create_order(int(self.customer.id), int(self.business.id), total, method)

    def test_create_order_validates_input(self):
        with self.assertRaises(ValidationError):
            self._order(total=0)
        with self.assertRaises(ValidationError):
            self._order(method="crypto")

    def test_cannot_skip_states(self):
        order = self._order()
        with self.assertRaises(InvalidTransitionError):
            lifecycle.transition_order(int(order.id), "ready", actor=self.owner)
        self.assertEqual(db.session.get(Order, int(order.id)).status, "pending")

    def test_card_order_waits_for_capture(self):
        order = self._order(method="card")
        with self.assertRaises(InvalidTransitionError):
            lifecycle.transition_order(int(order.id), "accepted", actor=self.owner)
        self.capture(order)
        self.assertEqual(db.session.get(Order, int(order.id)).status, "accepted")

    def test_role_restrictions(self):
        order = self._order()
        stranger = self.make_user("business")
        with self.assertRaises(AuthorizationError):
            lifecycle.transition_order(int(order.id), "accepted", actor={"type": "business", "id": int(stranger.id)})
        with self.assertRaises(AuthorizationError):
            lifecycle.transition_order(int(order.id), "accepted", actor={"type": "customer", "id": int(self.customer.id)})

    def test_transitions_are_audited_and_notify_parties(self):
        order = self._order()
        lifecycle.transition_order(int(order.id), "accepted", actor=self.owner)
        history = lifecycle.order_history(int(order.id))
        self.assertEqual([(t.from_status, t.to_status) for t in history], [("", "pending"), ("pending", "accepted")])
        self.assertEqual(history[-1].actor_type, "business")
        keys = {m.dedupe_key for m in OutboxMessage.query.filter_by(kind="notification").all()}
        self.assertIn(f"notify:order:{int(order.id)}:accepted:{int(self.customer.id)}", keys)

    def test_double_assignment_is_rejected(self):
        first = self.make_driver()
        second = self.make_driver()
        order = self.ready_order(business=self.business)

        lifecycle.assign_driver(int(order.id), int(first.id), actor={"type": "driver", "id": int(first.id)})
        with self.assertRaises(InvalidTransitionError):
            lifecycle.assign_driver(int(order.id), int(second.id), actor={"type": "driver", "id": int(second.id)})

        order = db.session.get(Order, int(order.id))
        self.assertEqual(int(order.driver_id), int(first.id))
        self.assertTrue(self.profile(second.id).is_available)
        self.assertFalse(self.profile(first.id).is_available)
        self.assertEqual(OrderTransition.query.filter_by(order_id=int(order.id), to_status="assigned").count(), 1)

    def test_unavailable_driver_cannot_be_assigned(self):
        busy = self.make_driver(available=False)
        order = self.ready_order(business=self.business)
        with self.assertRaises(InvalidTransitionError):
            lifecycle.assign_driver(int(order.id), int(busy.id), actor=self.owner)
        self.assertIsNone(db.session.get(Order, int(order.id)).driver_id)

    def test_driver_cannot_assign_someone_else(self):
        a = self.make_driver()
        b = self.make_driver()
        order = self.ready_order(business=self.business)
        with self.assertRaises(AuthorizationError):
            lifecycle.assign_driver(int(order.id), int(b.id), actor={"type": "driver", "id": int(a.id)})

    def test_delivery_side_effects(self):
        driver = self.make_driver(completed=3)
        order = self.ready_order(business=self.business)

        delivered = self.deliver(order, driver)

        self.assertEqual(delivered.status, "delivered")
        self.assertIsNotNone(delivered.delivered_at)
        self.assertEqual(int(delivered.delivery_earnings), 2500)
        profile = self.profile(driver.id)
        self.assertEqual(int(profile.completed_deliveries), 4)
        self.assertTrue(profile.is_available)
        with self.assertRaises(InvalidTransitionError):
            lifecycle.cancel_order(int(order.id), actor={"type": "admin", "id": None})

    def test_cancel_releases_driver_and_flags_refund(self):
        driver = self.make_driver()
        order = self.ready_order(business=self.business)
        lifecycle.assign_driver(int(order.id), int(driver.id), actor=self.owner)

        cancelled = lifecycle.cancel_order(int(order.id), actor=self.owner, reason="out of stock")

        self.assertEqual(cancelled.status, "cancelled")
        self.assertEqual(cancelled.cancelled_by, "business")
        self.assertEqual(cancelled.refund_status, "requested")
        self.assertTrue(self.profile(driver.id).is_available)

    def test_customer_cancel_only_through_regret_window(self):
        order = self._order()
        with self.assertRaises(AuthorizationError):
            lifecycle.cancel_order(int(order.id), actor={"type": "customer", "id": int(self.customer.id)})

        cancelled = lifecycle.regret_cancel(int(order.id), customer_id=int(self.customer.id))
        self.assertEqual(cancelled.status, "cancelled")
        self.assertEqual(cancelled.cancel_reason, "regret")

    def test_regret_window_expires(self):
        order = self._order()
        late = order.created_at + timedelta(seconds=61)
        with self.assertRaises(InvalidTransitionError):
            lifecycle.regret_cancel(int(order.id), customer_id=int(self.customer.id), now=late)
        self.assertEqual(db.session.get(Order, int(order.id)).status, "pending")

    def test_regret_cancel_requires_pending(self):
        order = self._order()
        lifecycle.transition_order(int(order.id), "accepted", actor=self.owner)
        with self.assertRaises(InvalidTransitionError):
            lifecycle.regret_cancel(int(order.id), customer_id=int(self.customer.id))

    def test_unknown_target_status(self):
        order = self._order()
        with self.assertRaises(ValidationError):
            lifecycle.transition_order(int(order.id), "teleported", actor=self.owner)


if __name__ == "__main__":
    unittest.main()
