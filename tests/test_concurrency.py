from __future__ import annotations

import os
import shutil
import tempfile
import threading
import unittest

from _support import AppTestCase
from sqlalchemy.exc import OperationalError

from nemy.errors import InsufficientFundsError, InvalidTransitionError
from nemy.extensions import db
from nemy.models import Order, OrderTransition, Wallet, WalletTxn, Withdrawal
from nemy.services import ledger_service, order_lifecycle_service, withdrawal_service
from nemy.services.ledger_service import TxnType


class FileDatabaseTestCase(AppTestCase):
    """Shared on-disk database, so each worker thread gets its own connection."""

    def setUp(self):
        self.tmpdir = tempfile.mkdtemp(prefix="nemy-")
        path = os.path.join(self.tmpdir, "nemy.db").replace(os.sep, "/")
        self.config_overrides = {
            "SQLALCHEMY_DATABASE_URI": f"sqlite:///{path}",
            "SQLALCHEMY_ENGINE_OPTIONS": {"connect_args": {"timeout": 30}},
        }
        super().setUp()

    def tearDown(self):
        super().tearDown()
        with self.app.app_context():
            db.engine.dispose()
        shutil.rmtree(self.tmpdir, ignore_errors=True)

    def run_threads(self, fn, count: int) -> list[tuple[str, object]]:
        """Run ``fn(i)`` in ``count`` threads, each in its own app context and session."""
        db.session.remove()
        barrier = threading.Barrier(count)
        outcomes = []
        guard = threading.Lock()

        def worker(i):
            with self.app.app_context():
                try:
                    barrier.wait(timeout=30)
                    outcome = ("ok", fn(i))
                except Exception as e:
                    outcome = ("error", e)
                finally:
                    db.session.remove()
            with guard:
                outcomes.append(outcome)

        threads = [threading.Thread(target=worker, args=(i,)) for i in range(count)]
        for t in threads:
            t.start()
        for t in threads:
            t.join(timeout=120)
        self.assertEqual(len(outcomes), count, "a worker thread did not finish")
        return outcomes

    def assertLosersFailedCleanly(self, outcomes, *expected):
        for kind, value in outcomes:
            if kind == "error":
                self.assertIsInstance(value, expected + (OperationalError,), repr(value))


class ConcurrentAssignmentTestCase(FileDatabaseTestCase):
    def test_one_driver_wins_a_contested_order(self):
        drivers = [int(self.make_driver(km_north=1.0 + i).id) for i in range(6)]
        order_id = int(self.ready_order().id)

        def claim(i):
            driver_id = drivers[i]
            order = order_lifecycle_service.assign_driver(order_id, driver_id, actor={"type": "driver", "id": driver_id})
            return int(order.driver_id)

        outcomes = self.run_threads(claim, len(drivers))

        winners = [value for kind, value in outcomes if kind == "ok"]
        self.assertEqual(len(winners), 1, outcomes)
        self.assertLosersFailedCleanly(outcomes, InvalidTransitionError)

        order = db.session.get(Order, order_id)
        self.assertEqual(order.status, "assigned")
        self.assertEqual(int(order.driver_id), winners[0])
        self.assertEqual(OrderTransition.query.filter_by(order_id=order_id, to_status="assigned").count(), 1)
        busy = [d for d in drivers if not self.profile(d).is_available]
        self.assertEqual(busy, [winners[0]])

    def test_one_driver_cannot_take_two_orders_at_once(self):
        driver_id = int(self.make_driver().id)
        business = self.make_business()
        orders = [int(self.ready_order(business=business).id) for _ in range(4)]

        def claim(i):
            return int(order_lifecycle_service.assign_driver(orders[i], driver_id).id)

        outcomes = self.run_threads(claim, len(orders))

        self.assertEqual(len([1 for kind, _ in outcomes if kind == "ok"]), 1, outcomes)
        self.assertLosersFailedCleanly(outcomes, InvalidTransitionError)
        self.assertEqual(Order.query.filter_by(driver_id=driver_id).count(), 1)
        self.assertEqual(Order.query.filter_by(status="ready").count(), 3)


class ConcurrentWithdrawalTestCase(FileDatabaseTestCase):
    def test_parallel_requests_never_overdraw(self):
        driver = self.make_driver(payout_account_id="ACCT_1")
        driver_id = int(driver.id)
        self.fund(driver_id, 30000)

        def withdraw(i):
            return int(withdrawal_service.request_withdrawal(driver_id, 10000).id)

        outcomes = self.run_threads(withdraw, 8)

        paid = [value for kind, value in outcomes if kind == "ok"]
        self.assertLessEqual(len(paid), 3)
        self.assertGreaterEqual(len(paid), 1)
        self.assertLosersFailedCleanly(outcomes, InsufficientFundsError)

        wallet = db.session.get(Wallet, int(self.wallet(driver_id).id))
        self.assertGreaterEqual(int(wallet.balance), 0)
        self.assertEqual(int(wallet.balance), 30000 - 10000 * len(paid))
        self.assertEqual(Withdrawal.query.count(), len(paid))
        self.assertTrue(ledger_service.chain_is_consistent(int(wallet.id)))

    def test_parallel_ledger_debits_keep_the_chain(self):
        driver_id = int(self.make_driver().id)
        self.fund(driver_id, 20000)
        wallet_id = int(self.wallet(driver_id).id)

        def debit(i):
            txn = ledger_service.post_transaction(
                wallet_id,
                TxnType.WITHDRAWAL,
                7000,
                f"debit {i}",
                direction="debit",
            )
            return int(txn.id)

        outcomes = self.run_threads(debit, 6)

        posted = [value for kind, value in outcomes if kind == "ok"]
        self.assertLessEqual(len(posted), 2)
        self.assertLosersFailedCleanly(outcomes, InsufficientFundsError)

        wallet = db.session.get(Wallet, wallet_id)
        self.assertGreaterEqual(int(wallet.balance), 0)
        self.assertEqual(int(wallet.balance), 20000 - 7000 * len(posted))
        self.assertEqual(WalletTxn.query.filter_by(wallet_id=wallet_id, kind="withdrawal").count(), len(posted))
        self.assertTrue(ledger_service.chain_is_consistent(wallet_id))


if __name__ == "__main__":
    unittest.main()
