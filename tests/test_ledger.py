from __future__ import annotations

import unittest

from _support import AppTestCase

from nemy.errors import InsufficientFundsError, ValidationError
from nemy.extensions import db
from nemy.models import WalletTxn
from nemy.services import ledger_service
from nemy.services.ledger_service import Bucket, TxnType


class LedgerTestCase(AppTestCase):
    def setUp(self):
        super().setUp()
        self.driver = self.make_user("driver")
        self.wallet_id = int(ledger_service.get_or_create_wallet(int(self.driver.id), "driver").id)
        db.session.commit()

    def _post(self, kind, amount, direction, bucket=Bucket.BALANCE):
        return ledger_service.post_transaction(
            self.wallet_id,
            kind,
            amount,
            "test",
            direction=direction,
            bucket=bucket,
        )

    def test_entries_chain_balance_before_and_after(self):
        first = self._post(TxnType.COMMISSION, 2500, "credit")
        second = self._post(TxnType.PAYMENT, 700, "credit")
        third = self._post(TxnType.WITHDRAWAL, 1200, "debit")

        self.assertEqual((first.balance_before, first.balance_after), (0, 2500))
        self.assertEqual((second.balance_before, second.balance_after), (2500, 3200))
        self.assertEqual((third.balance_before, third.balance_after), (3200, 2000))
        self.assertTrue(ledger_service.chain_is_consistent(self.wallet_id))

        wallet = ledger_service.lock_wallet(self.wallet_id)
        self.assertEqual(int(wallet.balance), 2000)
        self.assertEqual(ledger_service.replay_balance(self.wallet_id), 2000)

    def test_withdrawal_cannot_overdraw_balance(self):
        self._post(TxnType.COMMISSION, 500, "credit")
        with self.assertRaises(InsufficientFundsError):
            self._post(TxnType.WITHDRAWAL, 501, "debit")
        db.session.rollback()

        wallet = ledger_service.lock_wallet(self.wallet_id)
        self.assertEqual(int(wallet.balance), 500)
        self.assertEqual(WalletTxn.query.filter_by(wallet_id=self.wallet_id).count(), 1)

    def test_buckets_are_tracked_independently(self):
        self._post(TxnType.ADJUSTMENT, 9500, "credit", bucket=Bucket.CASH_OWED)
        self._post(TxnType.COMMISSION, 2500, "credit")

        wallet = ledger_service.lock_wallet(self.wallet_id)
        self.assertEqual(int(wallet.cash_owed), 9500)
        self.assertEqual(int(wallet.balance), 2500)
        self.assertEqual(ledger_service.replay_balance(self.wallet_id, Bucket.CASH_OWED), 9500)
        self.assertEqual(ledger_service.replay_balance(self.wallet_id, Bucket.BALANCE), 2500)

    def test_rejects_bad_inputs(self):
        with self.assertRaises(ValidationError):
            self._post("bonus", 100, "credit")
        with self.assertRaises(ValidationError):
            self._post(TxnType.PAYMENT, -5, "credit")
        with self.assertRaises(ValidationError):
            self._post(TxnType.PAYMENT, 5, "sideways")
        with self.assertRaises(ValidationError):
            self._post(TxnType.PAYMENT, 5, "credit", bucket="savings")

    def test_get_or_create_wallet_is_stable(self):
        again = ledger_service.get_or_create_wallet(int(self.driver.id), "driver")
        self.assertEqual(int(again.id), self.wallet_id)

    def test_drift_adjustment_makes_replay_match_stored(self):
        self._post(TxnType.COMMISSION, 1000, "credit")
        wallet = ledger_service.lock_wallet(self.wallet_id)
        wallet.balance = 1300
        db.session.commit()

        computed = ledger_service.replay_balance(self.wallet_id)
        txn = ledger_service.record_drift_adjustment(wallet, Bucket.BALANCE, computed, reference="recon:test")
        db.session.commit()

        self.assertEqual(txn.direction, "credit")
        self.assertEqual(int(txn.amount), 300)
        self.assertEqual(ledger_service.replay_balance(self.wallet_id), 1300)
        self.assertTrue(ledger_service.chain_is_consistent(self.wallet_id))


if __name__ == "__main__":
    unittest.main()
