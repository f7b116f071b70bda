from __future__ import annotations

import unittest

from nemy.utils.commission import compute_delivery_split_minor, split_from_config


class CommissionSplitTestCase(unittest.TestCase):
    def test_card_order_split_matches_reference_numbers(self):
        split = compute_delivery_split_minor(12000, business_bps=7000, driver_flat_minor=2500)
        self.assertEqual(split["business_minor"], 8400)
        self.assertEqual(split["driver_minor"], 2500)
        self.assertEqual(split["platform_minor"], 1100)

    def test_shares_always_sum_to_total(self):
        for total in (1, 99, 3333, 12001, 987654):
            split = compute_delivery_split_minor(total, business_bps=7333, driver_mode="bps", driver_bps=1234)
            self.assertEqual(
                split["business_minor"] + split["driver_minor"] + split["platform_minor"],
                total,
            )
            self.assertGreaterEqual(split["platform_minor"], 0)

    def test_business_share_rounds_down(self):
        split = compute_delivery_split_minor(999, business_bps=7000, driver_flat_minor=0)
        self.assertEqual(split["business_minor"], 699)
        self.assertEqual(split["platform_minor"], 300)

    def test_driver_fee_is_capped_by_remainder(self):
        split = compute_delivery_split_minor(3000, business_bps=7000, driver_flat_minor=2500)
        self.assertEqual(split["business_minor"], 2100)
        self.assertEqual(split["driver_minor"], 900)
        self.assertEqual(split["platform_minor"], 0)

    def test_unknown_driver_mode_falls_back_to_flat(self):
        split = compute_delivery_split_minor(12000, driver_mode="weird")
        self.assertEqual(split["inputs"]["driver_mode"], "flat")
        self.assertEqual(split["driver_minor"], 2500)

    def test_split_from_config_reads_keys(self):
        split = split_from_config(
            10000,
            {
                "COMMISSION_BUSINESS_BPS": 6000,
                "COMMISSION_DRIVER_MODE": "bps",
                "COMMISSION_DRIVER_BPS": 2000,
            },
        )
        self.assertEqual(split["business_minor"], 6000)
        self.assertEqual(split["driver_minor"], 2000)
        self.assertEqual(split["platform_minor"], 2000)


if __name__ == "__main__":
    unittest.main()
