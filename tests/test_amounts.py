#!/usr/bin/env python3
"""
Amount Tests - tests/test_amounts.py

Run with: python -m pytest tests/test_amounts.py -v
"""

import sys
import unittest
from decimal import Decimal
from pathlib import Path

# Add parent directory to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent))

from peg_layer.amounts import Amount, AmountMismatchError


class TestAmount(unittest.TestCase):

    def test_from_decimal_rounds_down(self):
        """Never round a spend up past what the user asked for."""
        amount = Amount.from_decimal("0.0000009", 6, "USDC")
        self.assertEqual(amount.raw, 0)
        self.assertEqual(Amount.from_decimal("1.2345679", 6, "USDC").raw, 1_234_567)

    def test_to_decimal_is_exact(self):
        amount = Amount(1_500_000_000_000_000_000, 18, "BNB")
        self.assertEqual(amount.to_decimal(), Decimal("1.5"))
        self.assertEqual(str(amount), "1.5 BNB")

    def test_arithmetic_and_comparison(self):
        a = Amount.from_decimal("1.5", 18, "BNB")
        b = Amount.from_decimal("0.5", 18, "BNB")
        self.assertEqual((a + b).to_decimal(), Decimal(2))
        self.assertEqual((a - b).to_decimal(), Decimal(1))
        self.assertTrue(b < a)
        self.assertTrue(a >= a)

    def test_mixing_assets_raises(self):
        with self.assertRaises(AmountMismatchError):
            Amount(1, 18, "BNB") + Amount(1, 18, "MWT")
        with self.assertRaises(AmountMismatchError):
            Amount(1, 18, "BNB") < Amount(1, 8, "BNB")

    def test_scale_rounds_down_and_never_negative(self):
        amount = Amount(999, 0, "X")
        self.assertEqual(amount.scale(Decimal("0.5")).raw, 499)
        self.assertEqual(amount.scale(Decimal("-1")).raw, 0)

    def test_clamp_non_negative(self):
        diff = Amount(1, 0, "X") - Amount(5, 0, "X")
        self.assertEqual(diff.raw, -4)
        self.assertTrue(diff.clamp_non_negative().is_zero())

    def test_raw_must_be_int(self):
        with self.assertRaises(TypeError):
            Amount(1.5, 18, "BNB")
        with self.assertRaises(ValueError):
            Amount(1, -1, "BNB")


if __name__ == "__main__":
    unittest.main(verbosity=2)
