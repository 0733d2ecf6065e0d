#!/usr/bin/env python3
"""
V3 Price Math Tests - tests/test_tick_math.py

Run with: python -m pytest tests/test_tick_math.py -v
"""

import sys
import unittest
from decimal import Decimal
from pathlib import Path

# Add parent directory to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent))

from peg_layer import tick_math
from peg_layer.tick_math import Q96


class TestPriceConversions(unittest.TestCase):

    # =========================================================================
    # CASE 1: sqrtPriceX96 <-> price
    # =========================================================================

    def test_unit_sqrt_price_is_price_one(self):
        self.assertEqual(tick_math.sqrt_price_x96_to_price(Q96), Decimal(1))

    def test_half_sqrt_price_is_quarter(self):
        """sqrt 0.5 squared is exactly 0.25 with no float drift."""
        self.assertEqual(tick_math.sqrt_price_x96_to_price(2 ** 95), Decimal("0.25"))

    def test_decimal_shift_applies_to_human_price(self):
        """token0 with 18 decimals against a 6-decimal token1 scales by 1e12."""
        price = tick_math.sqrt_price_x96_to_price(Q96, decimals0=18, decimals1=6)
        self.assertEqual(price, Decimal(10) ** 12)

    def test_price_to_sqrt_price_round_trip(self):
        sqrt_price = tick_math.price_to_sqrt_price_x96(Decimal("0.25"))
        self.assertEqual(sqrt_price, 2 ** 95)

    def test_rejects_non_positive_inputs(self):
        with self.assertRaises(ValueError):
            tick_math.sqrt_price_x96_to_ratio(0)
        with self.assertRaises(ValueError):
            tick_math.price_to_sqrt_price_x96(Decimal("-1"))
        with self.assertRaises(ValueError):
            tick_math.invert_price(Decimal(0))

    def test_invert_price(self):
        self.assertEqual(tick_math.invert_price(Decimal("0.25")), Decimal(4))

    # =========================================================================
    # CASE 2: ticks
    # =========================================================================

    def test_tick_zero_is_price_one(self):
        self.assertEqual(tick_math.tick_to_price(0), Decimal(1))

    def test_price_to_tick_brackets_price(self):
        """tick_to_price(t) <= p < tick_to_price(t + 1)."""
        for price in (Decimal("0.25"), Decimal("0.0000123"), Decimal("1"), Decimal("4567.89")):
            tick = tick_math.price_to_tick(price)
            self.assertLessEqual(tick_math.tick_to_price(tick), price)
            self.assertGreater(tick_math.tick_to_price(tick + 1), price)

    def test_negative_tick_for_price_below_one(self):
        self.assertLess(tick_math.price_to_tick(Decimal("0.25")), 0)

    def test_tick_out_of_range_rejected(self):
        with self.assertRaises(ValueError):
            tick_math.tick_to_price(tick_math.MAX_TICK + 1)

    def test_tick_to_sqrt_price_matches_price(self):
        sqrt_price = tick_math.tick_to_sqrt_price_x96(-13864)
        from_sqrt = tick_math.sqrt_price_x96_to_price(sqrt_price)
        from_tick = tick_math.tick_to_price(-13864)
        self.assertLess(abs(from_sqrt - from_tick) / from_tick, Decimal("1e-20"))


class TestSwapEstimation(unittest.TestCase):

    def setUp(self):
        self.sqrt_price = 2 ** 95     # 0.25 token1 per token0
        self.fee = 2500

    # =========================================================================
    # CASE 3: in-range output
    # =========================================================================

    def test_deep_liquidity_output_close_to_ideal(self):
        amount_in = 10 ** 18
        out, _ = tick_math.estimate_in_range_output(self.sqrt_price, 10 ** 30, amount_in, True, self.fee)
        ideal = tick_math.ideal_output(self.sqrt_price, amount_in, True, self.fee)
        self.assertLessEqual(out, ideal)
        self.assertLessEqual(tick_math.price_impact_bps(self.sqrt_price, amount_in, out, True, self.fee), 1)

    def test_thin_liquidity_has_large_impact(self):
        amount_in = 10 ** 18
        out, sqrt_next = tick_math.estimate_in_range_output(self.sqrt_price, 10 ** 18, amount_in, True, self.fee)
        self.assertLess(sqrt_next, self.sqrt_price)
        impact = tick_math.price_impact_bps(self.sqrt_price, amount_in, out, True, self.fee)
        self.assertGreater(impact, 1000)

    def test_one_for_zero_moves_price_up(self):
        out, sqrt_next = tick_math.estimate_in_range_output(self.sqrt_price, 10 ** 24, 10 ** 18, False, self.fee)
        self.assertGreater(sqrt_next, self.sqrt_price)
        self.assertGreater(out, 0)

    def test_zero_input_or_liquidity_returns_nothing(self):
        self.assertEqual(tick_math.estimate_in_range_output(self.sqrt_price, 10 ** 24, 0, True, self.fee)[0], 0)
        self.assertEqual(tick_math.estimate_in_range_output(self.sqrt_price, 0, 10 ** 18, True, self.fee)[0], 0)

    # =========================================================================
    # CASE 4: price impact
    # =========================================================================

    def test_ideal_output_excludes_fee_from_impact(self):
        amount_in = 100 * 10 ** 18
        ideal = tick_math.ideal_output(self.sqrt_price, amount_in, True, self.fee)
        self.assertEqual(ideal, Decimal("24.9375") * 10 ** 18)
        self.assertEqual(tick_math.price_impact_bps(self.sqrt_price, amount_in, int(ideal), True, self.fee), 0)

    def test_ten_percent_shortfall_is_at_least_1000_bps(self):
        amount_in = 100 * 10 ** 18
        ideal = tick_math.ideal_output(self.sqrt_price, amount_in, True, self.fee)
        impact = tick_math.price_impact_bps(self.sqrt_price, amount_in, int(ideal * Decimal("0.9")), True, self.fee)
        self.assertGreaterEqual(impact, 1000)
        self.assertLessEqual(impact, 1001)

    def test_zero_output_is_full_impact(self):
        self.assertEqual(tick_math.price_impact_bps(self.sqrt_price, 10 ** 18, 0, True, self.fee), 10_000)


if __name__ == "__main__":
    unittest.main(verbosity=2)
