from __future__ import annotations

import unittest
from datetime import datetime, timedelta
from unittest import mock

from _support import BASE_LAT, BASE_LNG, AppTestCase

from nemy.errors import InvalidTransitionError, NoDriverAvailableError
from nemy.extensions import db
from nemy.models import Order, WeeklySettlement
from nemy.services import assignment_service, driver_service, order_lifecycle_service
from nemy.services.assignment_service import DriverCandidate, haversine_km, rank, score_driver


class ScorerTestCase(unittest.TestCase):
    def test_close_experienced_driver_outranks_far_one(self):
        near = score_driver(1.0, 4.8, 30)
        far = score_driver(3.0, 4.2, 5)
        self.assertAlmostEqual(near, 79.8, places=6)
        self.assertAlmostEqual(far, 61.2, places=6)
        self.assertGreater(near, far)

    def test_component_scores_are_clamped(self):
        self.assertAlmostEqual(score_driver(25.0, 5.0, 500), 0.3 * 100 + 0.2 * 50)
        self.assertAlmostEqual(score_driver(0.0, 9.0, -3), 0.5 * 100 + 0.3 * 100)

    def test_haversine_one_degree_latitude(self):
        self.assertAlmostEqual(haversine_km(0.0, 0.0, 1.0, 0.0), 111.195, places=2)


class AssignmentTestCase(AppTestCase):
    def test_rank_orders_by_score(self):
        first = self.make_driver(km_north=1.0, rating=4.8, completed=30)
        second = self.make_driver(km_north=3.0, rating=4.2, completed=5)

        ranked = rank(BASE_LAT, BASE_LNG)

        self.assertEqual([c.driver_id for c in ranked], [int(first.id), int(second.id)])
        self.assertAlmostEqual(ranked[0].score, 79.8, places=2)
        self.assertAlmostEqual(ranked[1].score, 61.2, places=2)

    def test_ties_go_to_lower_driver_id(self):
        a = self.make_driver(km_north=2.0, rating=4.0, completed=10)
        b = self.make_driver(km_north=2.0, rating=4.0, completed=10)
        ranked = rank(BASE_LAT, BASE_LNG)
        self.assertEqual([c.driver_id for c in ranked], [int(a.id), int(b.id)])

    def test_ineligible_drivers_are_excluded(self):
        ok = self.make_driver()
        self.make_driver(available=False)
        self.make_driver(blocked=True)
        struck = self.make_driver()
        self.profile(struck.id).strikes = 3
        no_gps = self.make_driver()
        self.profile(no_gps.id).latitude = None
        db.session.commit()

        self.assertEqual([c.driver_id for c in rank(BASE_LAT, BASE_LNG)], [int(ok.id)])

    def test_assigns_best_candidate(self):
        best = self.make_driver(km_north=0.5, rating=4.9, completed=40)
        self.make_driver(km_north=4.0, rating=3.0, completed=1)
        order = self.ready_order()

        result = assignment_service.assign_best_driver(int(order.id))

        self.assertEqual(result["order"]["driver_id"], int(best.id))
        self.assertEqual(result["attempts"], 1)
        self.assertFalse(self.profile(best.id).is_available)

    def test_skips_candidate_that_went_unavailable(self):
        gone = self.make_driver(km_north=0.5, rating=5.0, completed=50)
        backup = self.make_driver(km_north=2.0, rating=4.0, completed=5)
        order = self.ready_order()
        stale = rank(BASE_LAT, BASE_LNG)
        self.profile(gone.id).is_available = False
        db.session.commit()

        with mock.patch.object(assignment_service, "rank", return_value=stale):
            result = assignment_service.assign_best_driver(int(order.id))

        self.assertEqual(result["order"]["driver_id"], int(backup.id))
        self.assertEqual(result["attempts"], 2)

    def test_no_candidates_leaves_order_ready(self):
        order = self.ready_order()
        with self.assertRaises(NoDriverAvailableError):
            assignment_service.assign_best_driver(int(order.id))
        order = db.session.get(Order, int(order.id))
        self.assertEqual(order.status, "ready")
        self.assertIsNone(order.driver_id)

    def test_attempts_are_bounded(self):
        order = self.ready_order()
        busy = [self.make_driver(km_north=1.0 + i, available=False) for i in range(3)]
        stale = [
            DriverCandidate(driver_id=int(d.id), distance_km=1.0 + i, rating=4.5, completed_orders=10, score=60.0 - i)
            for i, d in enumerate(busy)
        ]
        with mock.patch.object(assignment_service, "rank", return_value=stale):
            with self.assertRaises(NoDriverAvailableError) as ctx:
                assignment_service.assign_best_driver(int(order.id), max_attempts=2)
        self.assertEqual(ctx.exception.context["attempts"], 2)
        self.assertEqual(ctx.exception.context["candidates"], 3)


class CashLimitTestCase(AppTestCase):
    def _owing(self, amount: int, **kwargs):
        driver = self.make_driver(**kwargs)
        self.fund(int(driver.id), amount, bucket="cash_owed")
        return driver

    def test_cash_order_skips_driver_at_the_limit(self):
        indebted = self._owing(50000, km_north=0.5, rating=5.0, completed=50)
        clean = self.make_driver(km_north=3.0, rating=4.0, completed=5)

        self.assertEqual([c.driver_id for c in rank(BASE_LAT, BASE_LNG)], [int(indebted.id), int(clean.id)])
        self.assertEqual([c.driver_id for c in rank(BASE_LAT, BASE_LNG, cash=True)], [int(clean.id)])

        order = self.ready_order(method="cash")
        result = assignment_service.assign_best_driver(int(order.id))
        self.assertEqual(result["order"]["driver_id"], int(clean.id))
        self.assertTrue(self.profile(indebted.id).is_available)

    def test_card_order_still_goes_to_indebted_driver(self):
        indebted = self._owing(80000, km_north=0.5)
        order = self.ready_order()
        result = assignment_service.assign_best_driver(int(order.id))
        self.assertEqual(result["order"]["driver_id"], int(indebted.id))

    def test_direct_assignment_of_cash_order_is_refused(self):
        indebted = self._owing(50000)
        below = self._owing(49999)
        order = self.ready_order(method="cash")

        with self.assertRaises(InvalidTransitionError):
            order_lifecycle_service.assign_driver(int(order.id), int(indebted.id), actor={"type": "driver", "id": int(indebted.id)})
        self.assertEqual(db.session.get(Order, int(order.id)).status, "ready")
        self.assertTrue(self.profile(indebted.id).is_available)

        assigned = order_lifecycle_service.assign_driver(int(order.id), int(below.id), actor={"type": "driver", "id": int(below.id)})
        self.assertEqual(int(assigned.driver_id), int(below.id))

    def test_overdue_settlement_bars_cash_orders(self):
        driver = self._owing(1000)
        now = datetime.utcnow()
        db.session.add(
            WeeklySettlement(
                driver_id=int(driver.id),
                week_start=(now - timedelta(days=9)).date(),
                week_end=(now - timedelta(days=2)).date(),
                amount_owed=1000,
                status="overdue",
                deadline=now - timedelta(hours=1),
            )
        )
        db.session.commit()

        self.assertFalse(driver_service.can_accept_cash_order(int(driver.id)))
        order = self.ready_order(method="cash")
        with self.assertRaises(InvalidTransitionError):
            order_lifecycle_service.assign_driver(int(order.id), int(driver.id))


class ConfiguredCashLimitTestCase(AppTestCase):
    config_overrides = {"CASH_OWED_LIMIT_MINOR": 20000}

    def test_limit_comes_from_config(self):
        driver = self.make_driver()
        self.fund(int(driver.id), 20000, bucket="cash_owed")
        self.assertEqual(driver_service.cash_owed_limit(), 20000)
        self.assertFalse(driver_service.can_accept_cash_order(int(driver.id)))
        self.assertTrue(driver_service.can_accept_cash_order(int(self.make_driver().id)))


class AutoAssignTestCase(AppTestCase):
    config_overrides = {"AUTO_ASSIGN_ON_READY": True}

    def test_ready_order_is_assigned_automatically(self):
        driver = self.make_driver()
        order = self.ready_order()
        self.assertEqual(order.status, "assigned")
        self.assertEqual(int(order.driver_id), int(driver.id))

    def test_ready_without_drivers_stays_ready(self):
        order = self.ready_order()
        self.assertEqual(order.status, "ready")


if __name__ == "__main__":
    unittest.main()
