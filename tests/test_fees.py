import unittest

from creator_billing.services import fees
from creator_billing.services.fees import FeeMode, compute_fee


class SplitFeeTests(unittest.TestCase):
    def test_split_fee_halves(self) -> None:
        calc = compute_fee(10000, "usd")

        self.assertEqual(calc.currency, "USD")
        self.assertEqual(calc.subscriber_fee_cents, 400)
        self.assertEqual(calc.creator_fee_cents, 400)
        self.assertEqual(calc.fee_cents, 800)
        self.assertEqual(calc.gross_cents, 10400)
        self.assertEqual(calc.net_cents, 9600)
        self.assertEqual(calc.fee_model, fees.SPLIT_FEE_MODEL)
        self.assertFalse(calc.fee_was_capped)

    def test_cross_border_adds_half_buffer_per_side(self) -> None:
        calc = compute_fee(10000, "USD", is_cross_border=True)

        self.assertEqual(calc.subscriber_fee_cents, 475)
        self.assertEqual(calc.creator_fee_cents, 475)
        self.assertEqual(calc.gross_cents, 10475)

    def test_small_amount_raised_to_processor_floor(self) -> None:
        # 4% of 500 cannot cover 2.9% + 30 plus the 25 cent margin
        calc = compute_fee(500, "USD")

        self.assertTrue(calc.fee_was_capped)
        self.assertEqual(calc.fee_cents, 70)
        self.assertEqual(calc.subscriber_fee_cents, 38)
        self.assertEqual(calc.creator_fee_cents, 32)
        self.assertEqual(calc.gross_cents, 538)
        self.assertEqual(calc.net_cents, 468)

    def test_gross_minus_fee_is_net(self) -> None:
        for amount in (1, 99, 500, 1234, 10000, 999999):
            for currency in ("USD", "NGN", "KES", "GBP", "XYZ"):
                for cross_border in (False, True):
                    calc = compute_fee(amount, currency, is_cross_border=cross_border)
                    self.assertEqual(calc.gross_cents - calc.fee_cents, calc.net_cents, (amount, currency))

    def test_cross_border_never_cheaper_and_repeatable(self) -> None:
        for amount in (1, 99, 500, 1234, 10000, 999999):
            for currency in ("USD", "NGN", "GBP"):
                for mode in (FeeMode.SPLIT, FeeMode.ABSORB, FeeMode.PASS_TO_SUBSCRIBER):
                    domestic = compute_fee(amount, currency, fee_mode=mode)
                    cross = compute_fee(amount, currency, fee_mode=mode, is_cross_border=True)

                    self.assertGreaterEqual(cross.fee_cents, domestic.fee_cents, (amount, currency, mode))
                    self.assertEqual(compute_fee(amount, currency, fee_mode=mode), domestic)
                    self.assertEqual(compute_fee(amount, currency, fee_mode=mode, is_cross_border=True), cross)


class LegacyFeeTests(unittest.TestCase):
    def test_absorb_deducts_from_creator(self) -> None:
        calc = compute_fee(10000, "USD", fee_mode=FeeMode.ABSORB)

        self.assertEqual(calc.gross_cents, 10000)
        self.assertEqual(calc.net_cents, 9200)
        self.assertEqual(calc.fee_model, fees.LEGACY_FEE_MODEL)

    def test_pass_to_subscriber_adds_on_top(self) -> None:
        calc = compute_fee(10000, "USD", fee_mode="pass_to_subscriber")

        self.assertEqual(calc.gross_cents, 10800)
        self.assertEqual(calc.net_cents, 10000)

    def test_legacy_flat_by_purpose(self) -> None:
        self.assertEqual(compute_fee(10000, "USD", "service", FeeMode.LEGACY_FLAT).fee_cents, 830)
        self.assertEqual(compute_fee(10000, "USD", "fan_club", FeeMode.LEGACY_FLAT).fee_cents, 1030)

    def test_legacy_flat_never_exceeds_base(self) -> None:
        calc = compute_fee(20, "USD", None, FeeMode.LEGACY_FLAT)

        self.assertTrue(calc.fee_was_capped)
        self.assertEqual(calc.fee_cents, 20)
        self.assertEqual(calc.net_cents, 0)


class EdgeCaseTests(unittest.TestCase):
    def test_zero_amount_is_all_zeros(self) -> None:
        calc = compute_fee(0, "usd")

        self.assertEqual((calc.gross_cents, calc.fee_cents, calc.net_cents), (0, 0, 0))
        self.assertFalse(calc.fee_was_capped)

    def test_negative_amount_rejected(self) -> None:
        with self.assertRaises(ValueError):
            compute_fee(-1, "USD")

    def test_resolve_fee_mode_from_subscription(self) -> None:
        self.assertEqual(fees.resolve_fee_mode({"fee_model": "split_v1"}), FeeMode.SPLIT)
        self.assertEqual(fees.resolve_fee_mode({"fee_mode": "absorb"}), FeeMode.ABSORB)
        self.assertEqual(fees.resolve_fee_mode({"fee_mode": "pass_to_subscriber"}), FeeMode.PASS_TO_SUBSCRIBER)
        self.assertEqual(fees.resolve_fee_mode({}), FeeMode.LEGACY_FLAT)

    def test_only_split_model_requires_manual_payout(self) -> None:
        self.assertTrue(fees.requires_manual_payout({"fee_model": "split_v1"}))
        self.assertFalse(fees.requires_manual_payout({"fee_model": "legacy", "fee_mode": "absorb"}))

    def test_fee_preview(self) -> None:
        preview = fees.fee_preview(10000, "USD")

        self.assertEqual(preview["subscriberPays"], 10400)
        self.assertEqual(preview["creatorReceives"], 9600)
        self.assertEqual(preview["effectiveRate"], "4.0%")


if __name__ == "__main__":
    unittest.main()
