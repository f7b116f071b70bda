from __future__ import annotations

import unittest

from _support import AppTestCase

from nemy.errors import InsufficientFundsError, NotFoundError, ValidationError
from nemy.models import OutboxMessage, Withdrawal
from nemy.services import withdrawal_service


class WithdrawalTestCase(AppTestCase):
    def test_minimum_amount(self):
        driver = self.make_driver(payout_account_id="ACCT_1")
        self.fund(int(driver.id), 50000)
        with self.assertRaises(ValidationError):
            withdrawal_service.request_withdrawal(int(driver.id), 9999)
        with self.assertRaises(ValidationError):
            withdrawal_service.request_withdrawal(int(driver.id), "lots")

    def test_cannot_withdraw_more_than_balance(self):
        driver = self.make_driver(payout_account_id="ACCT_1")
        self.fund(int(driver.id), 12000)

        with self.assertRaises(InsufficientFundsError):
            withdrawal_service.request_withdrawal(int(driver.id), 15000)

        self.assertEqual(Withdrawal.query.count(), 0)
        self.assertEqual(OutboxMessage.query.count(), 0)
        self.assertEqual(int(self.wallet(driver.id).balance), 12000)

    def test_requires_a_destination(self):
        business = self.make_business()
        self.fund(int(business.owner_id), 30000, account_type="business")
        with self.assertRaises(ValidationError):
            withdrawal_service.request_withdrawal(int(business.owner_id), 20000)

        w = withdrawal_service.request_withdrawal(int(business.owner_id), 20000, destination="NUBAN_0123")
        self.assertEqual(w.destination, "NUBAN_0123")
        self.assertEqual(w.status, "pending")
        self.assertTrue(w.payout_reference.startswith("wd_"))

    def test_missing_wallet(self):
        driver = self.make_driver(payout_account_id="ACCT_1")
        with self.assertRaises(NotFoundError):
            withdrawal_service.request_withdrawal(int(driver.id), 20000)

    def test_request_debits_and_queues_transfer(self):
        driver = self.make_driver(payout_account_id="ACCT_1")
        self.fund(int(driver.id), 25000)

        w = withdrawal_service.request_withdrawal(int(driver.id), 20000)

        self.assertEqual(int(self.wallet(driver.id).balance), 5000)
        msg = OutboxMessage.query.filter_by(kind="payout_transfer").one()
        self.assertEqual(msg.dedupe_key, f"payout:{w.payout_reference}")
        self.assertEqual(msg.payload()["amount_minor"], 20000)
        self.assertEqual(msg.payload()["destination"], "ACCT_1")


if __name__ == "__main__":
    unittest.main()
