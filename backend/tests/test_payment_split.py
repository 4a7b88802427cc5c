from __future__ import annotations

import unittest

from app.services.payment_split import calculate_payment_split, money_major_to_minor, money_minor_to_major


class PaymentSplitTestCase(unittest.TestCase):
    def test_ninety_ten_split_on_round_prices(self):
        split = calculate_payment_split(100.0)
        self.assertEqual(split.seller_amount, 90.0)
        self.assertEqual(split.platform_fee, 10.0)

        split = calculate_payment_split(500.0)
        self.assertEqual(split.seller_amount, 450.0)
        self.assertEqual(split.platform_fee, 50.0)

    def test_seller_share_rounds_half_up_and_parts_add_back(self):
        split = calculate_payment_split(0.05)
        # 4.5 cents rounds up for the seller
        self.assertEqual(split.seller_minor, 5)
        self.assertEqual(split.platform_minor, 0)

        split = calculate_payment_split(123.45)
        self.assertEqual(split.seller_minor + split.platform_minor, 12345)
        self.assertEqual(split.seller_minor, 11111)

    def test_delivery_fee_passes_through(self):
        split = calculate_payment_split(200.0, 65.0)
        self.assertEqual(split.delivery_amount, 65.0)
        self.assertEqual(split.total_amount, 265.0)
        self.assertEqual(split.seller_amount, 180.0)

    def test_custom_commission(self):
        split = calculate_payment_split(100.0, platform_commission_bps=1500)
        self.assertEqual(split.seller_amount, 85.0)
        self.assertEqual(split.platform_fee, 15.0)

    def test_money_helpers(self):
        self.assertEqual(money_major_to_minor("19.995"), 2000)
        self.assertEqual(money_major_to_minor(None), 0)
        self.assertEqual(money_major_to_minor(-5), 0)
        self.assertEqual(money_minor_to_major(1999), 19.99)


if __name__ == "__main__":
    unittest.main()
