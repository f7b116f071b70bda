from __future__ import annotations

import unittest
from datetime import datetime, timedelta

from _support import AppTestCase

from nemy.errors import InvalidTransitionError, NotFoundError, ValidationError
from nemy.extensions import db
from nemy.models import JobRun, Order, User
from nemy.services import driver_service, order_lifecycle_service
from nemy.tasks import settlement_tasks
from nemy.utils.events import events_for


class StrikeTestCase(AppTestCase):
    def _strike(self, driver, reason="late_pickup", **kwargs):
        return driver_service.add_strike(int(driver.id), reason, commit=True, **kwargs)

    def test_third_strike_blocks_for_a_week(self):
        driver = self.make_driver()
        now = datetime(2026, 10, 16, 12, 0)

        self._strike(driver, now=now)
        self._strike(driver, now=now)
        profile = self.profile(driver.id)
        self.assertEqual(profile.strikes, 2)
        self.assertFalse(profile.is_blocked)
        self.assertTrue(profile.is_available)

        self._strike(driver, "no_show", now=now)

        profile = self.profile(driver.id)
        self.assertEqual(profile.strikes, 3)
        self.assertTrue(profile.is_blocked)
        self.assertFalse(profile.is_available)
        self.assertEqual(profile.blocked_reason, "strikes:no_show")
        self.assertEqual(profile.blocked_until, now + timedelta(days=7))
        self.assertEqual(
            [e.event_type for e in events_for("driver", int(driver.id))],
            ["driver_strike", "driver_strike", "driver_strike"],
        )

    def test_strike_needs_reason_and_known_driver(self):
        driver = self.make_driver()
        with self.assertRaises(ValidationError):
            driver_service.add_strike(int(driver.id), "  ")
        with self.assertRaises(NotFoundError):
            driver_service.add_strike(987654, "late_pickup")

    def test_struck_out_driver_cannot_take_orders(self):
        driver = self.make_driver()
        for _ in range(3):
            self._strike(driver)
        order = self.ready_order()
        with self.assertRaises(InvalidTransitionError):
            order_lifecycle_service.assign_driver(int(order.id), int(driver.id), actor={"type": "driver", "id": int(driver.id)})
        self.assertIsNone(db.session.get(Order, int(order.id)).driver_id)

    def test_remove_strike_never_goes_negative_and_keeps_block(self):
        driver = self.make_driver()
        driver_service.remove_strike(int(driver.id))
        self.assertEqual(self.profile(driver.id).strikes, 0)

        for _ in range(3):
            self._strike(driver)
        driver_service.remove_strike(int(driver.id))

        profile = self.profile(driver.id)
        self.assertEqual(profile.strikes, 2)
        self.assertTrue(profile.is_blocked)

    def test_unblock_resets_strikes_and_availability(self):
        driver = self.make_driver()
        for _ in range(3):
            self._strike(driver)

        driver_service.unblock_driver(int(driver.id))

        profile = self.profile(driver.id)
        self.assertFalse(profile.is_blocked)
        self.assertIsNone(profile.blocked_reason)
        self.assertIsNone(profile.blocked_until)
        self.assertEqual(profile.strikes, 0)
        self.assertTrue(profile.is_available)

    def test_unblock_keeps_driver_on_a_delivery_busy(self):
        driver = self.make_driver()
        order = self.ready_order()
        order_lifecycle_service.assign_driver(int(order.id), int(driver.id))
        for _ in range(3):
            self._strike(driver)

        driver_service.unblock_driver(int(driver.id))

        profile = self.profile(driver.id)
        self.assertFalse(profile.is_blocked)
        self.assertFalse(profile.is_available)


class DriverFaultCancellationTestCase(AppTestCase):
    def _assigned_order(self, driver, business):
        order = self.ready_order(business=business)
        return order_lifecycle_service.assign_driver(int(order.id), int(driver.id))

    def test_cancel_for_driver_fault_adds_strike(self):
        business = self.make_business()
        owner = {"type": "business", "id": int(business.owner_id)}
        driver = self.make_driver()

        order = self._assigned_order(driver, business)
        cancelled = order_lifecycle_service.cancel_order(int(order.id), actor=owner, reason="no_show", driver_fault=True)

        self.assertEqual(cancelled.status, "cancelled")
        profile = self.profile(driver.id)
        self.assertEqual(profile.strikes, 1)
        self.assertTrue(profile.is_available)

    def test_third_fault_blocks_the_driver(self):
        business = self.make_business()
        owner = {"type": "business", "id": int(business.owner_id)}
        driver = self.make_driver()

        for _ in range(3):
            order = self._assigned_order(driver, business)
            order_lifecycle_service.cancel_order(int(order.id), actor=owner, reason="no_show", driver_fault=True)

        profile = self.profile(driver.id)
        self.assertEqual(profile.strikes, 3)
        self.assertTrue(profile.is_blocked)
        self.assertFalse(profile.is_available)

    def test_plain_cancel_adds_no_strike(self):
        business = self.make_business()
        driver = self.make_driver()
        order = self._assigned_order(driver, business)
        order_lifecycle_service.cancel_order(int(order.id), actor={"type": "admin", "id": 1}, reason="kitchen fire")
        self.assertEqual(self.profile(driver.id).strikes, 0)

    def test_fault_without_driver_changes_nothing(self):
        order = self.ready_order()
        with self.assertRaises(ValidationError):
            order_lifecycle_service.cancel_order(int(order.id), actor={"type": "admin", "id": 1}, driver_fault=True)
        self.assertEqual(db.session.get(Order, int(order.id)).status, "ready")


class BlockExpiryTestCase(AppTestCase):
    def test_expired_strike_block_is_lifted(self):
        driver = self.make_driver()
        now = datetime(2026, 10, 16, 12, 0)
        for _ in range(3):
            driver_service.add_strike(int(driver.id), "no_show", now=now, commit=True)

        early = driver_service.lift_expired_blocks(now=now + timedelta(days=6))
        self.assertEqual(early["lifted"], 0)
        self.assertTrue(self.profile(driver.id).is_blocked)

        result = driver_service.lift_expired_blocks(now=now + timedelta(days=7, minutes=1))

        self.assertEqual(result["lifted"], 1)
        profile = self.profile(driver.id)
        self.assertFalse(profile.is_blocked)
        self.assertEqual(profile.strikes, 0)
        self.assertTrue(profile.is_available)
        self.assertEqual(JobRun.query.filter_by(job_name="driver_block_expiry").count(), 2)

    def test_settlement_block_is_not_lifted_by_expiry(self):
        driver = self.make_driver(blocked=True)
        profile = self.profile(driver.id)
        profile.blocked_reason = "settlement_overdue:1"
        db.session.commit()

        result = driver_service.lift_expired_blocks(now=datetime.utcnow() + timedelta(days=30))

        self.assertEqual(result["processed"], 0)
        self.assertTrue(self.profile(driver.id).is_blocked)

    def test_periodic_task_runs_expiry(self):
        result = settlement_tasks.lift_expired_blocks.run(trace_id="beat")
        self.assertTrue(result["ok"])
        self.assertEqual(result["processed"], 0)


class AdminDriverApiTestCase(AppTestCase):
    def setUp(self):
        super().setUp()
        self.admin = self.make_user("admin")

    def test_admin_strikes_and_unblocks(self):
        driver = self.make_driver()
        for _ in range(3):
            res = self.client.post(
                f"/api/admin/drivers/{int(driver.id)}/strikes",
                json={"reason": "rude"},
                headers=self.auth(self.admin),
            )
            self.assertEqual(res.status_code, 200)
        body = res.get_json()
        self.assertTrue(body["driver"]["is_blocked"])
        self.assertIsNotNone(body["driver"]["blocked_until"])

        res = self.client.post(f"/api/admin/drivers/{int(driver.id)}/unblock", headers=self.auth(self.admin))
        self.assertEqual(res.status_code, 200)
        self.assertFalse(res.get_json()["driver"]["is_blocked"])

        res = self.client.get(f"/api/admin/drivers/{int(driver.id)}/audit", headers=self.auth(self.admin))
        types = [e["event_type"] for e in res.get_json()["items"]]
        self.assertEqual(types.count("driver_strike"), 3)
        self.assertIn("driver_unblocked", types)

    def test_non_admin_is_refused(self):
        driver = self.make_driver()
        res = self.client.post(
            f"/api/admin/drivers/{int(driver.id)}/strikes",
            json={"reason": "rude"},
            headers=self.auth(driver),
        )
        self.assertEqual(res.status_code, 403)
        self.assertEqual(self.profile(driver.id).strikes, 0)

    def test_business_cancels_for_driver_fault_over_http(self):
        business = self.make_business()
        owner = db.session.get(User, int(business.owner_id))
        driver = self.make_driver()
        order = order_lifecycle_service.assign_driver(int(self.ready_order(business=business).id), int(driver.id))

        res = self.client.post(
            f"/api/orders/{int(order.id)}/cancel",
            json={"reason": "never arrived", "driver_fault": True},
            headers=self.auth(owner),
        )

        self.assertEqual(res.status_code, 200)
        self.assertEqual(res.get_json()["order"]["status"], "cancelled")
        self.assertEqual(self.profile(driver.id).strikes, 1)

    def test_driver_view_reports_cash_eligibility(self):
        driver = self.make_driver()
        self.fund(int(driver.id), 60000, bucket="cash_owed")
        res = self.client.get(f"/api/admin/drivers/{int(driver.id)}", headers=self.auth(self.admin))
        self.assertEqual(res.status_code, 200)
        self.assertFalse(res.get_json()["can_accept_cash"])


if __name__ == "__main__":
    unittest.main()
