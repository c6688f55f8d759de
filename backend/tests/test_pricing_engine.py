from __future__ import annotations

import unittest
from decimal import Decimal

from campus_market.services.pricing import (
    MONNIFY_SCHEDULE,
    SQUAD_SCHEDULE,
    PricingConfig,
    PricingEngine,
    format_naira,
    parse_naira,
)


ROUND_TRIP_PRICES = (Decimal("100"), Decimal("2499"), Decimal("2500"), Decimal("2501"), Decimal("50000"))


def _engines():
    return (
        ("squad", PricingEngine(PricingConfig(fee_schedule=SQUAD_SCHEDULE))),
        ("monnify", PricingEngine(PricingConfig(fee_schedule=MONNIFY_SCHEDULE))),
    )


class ForwardPricingTestCase(unittest.TestCase):
    def setUp(self):
        self.engine = PricingEngine(PricingConfig(fee_schedule=SQUAD_SCHEDULE))

    def test_bank_transfer_breakdown_for_ten_thousand(self):
        p = self.engine.calculate_pricing_from_seller_price(Decimal("10000"), "BANK_TRANSFER")
        self.assertEqual(p.platform_commission, Decimal("1000.00"))
        self.assertEqual(p.payment_fee, Decimal("100.00"))
        self.assertEqual(p.buyer_pays, Decimal("11100.00"))
        self.assertEqual(p.seller_receives, Decimal("9000.00"))
        self.assertEqual(p.payment_method, "BANK_TRANSFER")

    def test_buyer_pays_is_sum_of_parts(self):
        for name, engine in _engines():
            for method in engine.config.fee_schedule.methods():
                for price in ("1", "99.99", "2499.5", "12345.67", "999999"):
                    p = engine.calculate_pricing_from_seller_price(Decimal(price), method)
                    with self.subTest(schedule=name, method=method, price=price):
                        self.assertEqual(p.buyer_pays, p.seller_price + p.platform_commission + p.payment_fee)
                        self.assertLess(p.seller_receives, p.seller_price)

    def test_unknown_method_uses_default_rule(self):
        p = self.engine.calculate_pricing_from_seller_price(Decimal("1000"), "crypto")
        self.assertEqual(p.payment_fee, Decimal("15.00"))

    def test_method_names_are_normalized(self):
        a = self.engine.calculate_pricing_from_seller_price(Decimal("1000"), "bank-transfer")
        b = self.engine.calculate_pricing_from_seller_price(Decimal("1000"), "BANK_TRANSFER")
        self.assertEqual(a.payment_fee, b.payment_fee)

    def test_fee_is_capped_exactly_above_threshold(self):
        # Card cap 2000 at 1.5% is reached above 133,333.33.
        fee = self.engine.calculate_gateway_fee(Decimal("200000"), "CARD")
        self.assertEqual(fee.capped_fee, Decimal("2000"))
        self.assertGreater(fee.total_fee, fee.capped_fee)
        under = self.engine.calculate_gateway_fee(Decimal("100000"), "CARD")
        self.assertEqual(under.capped_fee, under.total_fee)

    def test_fixed_fee_waived_below_threshold(self):
        engine = PricingEngine(PricingConfig(fee_schedule=MONNIFY_SCHEDULE))
        below = engine.calculate_gateway_fee(Decimal("2499"), "CARD")
        at = engine.calculate_gateway_fee(Decimal("2500"), "CARD")
        self.assertEqual(below.fixed_fee, Decimal("0"))
        self.assertEqual(at.fixed_fee, Decimal("50"))
        self.assertEqual(round(at.capped_fee, 2), Decimal("87.50"))

    def test_negotiation_pricing_matches_forward(self):
        a = self.engine.calculate_negotiation_pricing(Decimal("7500"), "CARD")
        b = self.engine.calculate_pricing_from_seller_price(Decimal("7500"), "CARD")
        self.assertEqual(a, b)


class ReversePricingTestCase(unittest.TestCase):
    def test_round_trip_within_one_naira(self):
        for name, engine in _engines():
            for method in engine.config.fee_schedule.methods():
                for price in ROUND_TRIP_PRICES:
                    forward = engine.calculate_pricing_from_seller_price(price, method)
                    back = engine.calculate_pricing_from_buyer_price(forward.buyer_pays, method)
                    with self.subTest(schedule=name, method=method, price=str(price)):
                        self.assertLessEqual(abs(back.seller_price - price), Decimal("1"))

    def test_reverse_output_is_a_forward_breakdown(self):
        engine = PricingEngine(PricingConfig(fee_schedule=MONNIFY_SCHEDULE))
        back = engine.calculate_pricing_from_buyer_price(Decimal("2800"), "CARD")
        again = engine.calculate_pricing_from_seller_price(back.seller_price, "CARD")
        self.assertEqual(back, again)

    def test_single_iteration_is_the_one_step_estimate(self):
        engine = PricingEngine(
            PricingConfig(fee_schedule=SQUAD_SCHEDULE, reverse_max_iterations=1, reverse_exact_fallback=False)
        )
        back = engine.calculate_pricing_from_buyer_price(Decimal("11100"), "BANK_TRANSFER")
        self.assertLessEqual(abs(back.seller_price - Decimal("10000")), Decimal("10"))


class PricingConfigTestCase(unittest.TestCase):
    def test_invalid_commission_rate_falls_back_to_default(self):
        engine = PricingEngine(PricingConfig(commission_rate="abc"))
        self.assertEqual(engine.get_commission_rate(), Decimal("0.10"))

    def test_security_deposit_to_lock(self):
        engine = PricingEngine(PricingConfig(security_deposit_amount=Decimal("5000")))
        out = engine.calculate_security_deposit_required(Decimal("1500"))
        self.assertEqual(out["required"], Decimal("5000.00"))
        self.assertEqual(out["amount_to_lock"], Decimal("3500.00"))
        self.assertEqual(engine.calculate_security_deposit_required(Decimal("9000"))["amount_to_lock"], Decimal("0.00"))


class WithdrawalPolicyTestCase(unittest.TestCase):
    def setUp(self):
        self.engine = PricingEngine()

    def test_unverified_over_limit_rejected(self):
        decision = self.engine.is_withdrawal_allowed(Decimal("6000"), False, Decimal("10000"))
        self.assertFalse(decision.allowed)
        self.assertIn("verification", decision.reason)

    def test_verified_over_limit_allowed(self):
        self.assertTrue(self.engine.is_withdrawal_allowed(Decimal("6000"), True, Decimal("10000")).allowed)

    def test_balance_checked_first(self):
        decision = self.engine.is_withdrawal_allowed(Decimal("6000"), False, Decimal("100"))
        self.assertEqual(decision.reason, "Insufficient balance")

    def test_unverified_at_limit_allowed(self):
        self.assertTrue(self.engine.is_withdrawal_allowed(Decimal("5000"), False, Decimal("5000")).allowed)


class NairaFormattingTestCase(unittest.TestCase):
    def test_format_and_parse(self):
        self.assertEqual(format_naira(Decimal("1234567.5")), "₦1,234,567.50")
        self.assertEqual(format_naira(Decimal("5000"), decimals=0), "₦5,000")
        self.assertEqual(parse_naira("₦1,234.50"), Decimal("1234.50"))
        self.assertEqual(parse_naira("not money"), Decimal("0"))


if __name__ == "__main__":
    unittest.main()
