#!/usr/bin/env python3
"""
Price Oracle Tests - tests/test_price_oracle.py

The fake pool prices 1 MWT at 0.25 BNB; every USD figure below follows
from the BNB/USD rate handed to the fake feed.

Run with: python -m pytest tests/test_price_oracle.py -v
"""

import sys
import unittest
from decimal import Decimal
from pathlib import Path

# Add parent directory to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent))
sys.path.insert(0, str(Path(__file__).parent))

from fakes import TOKEN, WBNB, FakeChainClient, FakeClock, FakeFeed, make_config
from peg_layer.errors import NetworkError, PriceUnavailable
from peg_layer.models import Action, PriceSource
from peg_layer.price_oracle import PriceOracle


class TestPriceOracle(unittest.IsolatedAsyncioTestCase):

    def setUp(self):
        self.clock = FakeClock()
        self.chain = FakeChainClient(self.clock)
        self.feed = FakeFeed(self.clock, {"BNB": "5", "BTC": "50000"}, name="primary")
        self.config = make_config()

    def oracle(self, *feeds, **overrides):
        config = self.config.updated(**overrides) if overrides else self.config
        return PriceOracle(self.chain, list(feeds) or [self.feed], config, now_fn=self.clock)

    # =========================================================================
    # CASE 1: Derived prices
    # =========================================================================

    async def test_usd_benchmark_and_sats(self):
        sample = await self.oracle().get_price()

        self.assertEqual(sample.price, Decimal("0.25"))
        self.assertEqual(sample.price_usd, Decimal("1.25"))
        self.assertEqual(sample.derived_prices["BTC"], Decimal("0.000025"))
        self.assertEqual(sample.derived_prices["SATS"], Decimal(2500))
        self.assertEqual(sample.price_source, PriceSource.SPOT)
        self.assertEqual(sample.reference_rates["BNB"].source, "primary")
        self.assertFalse(sample.is_stale)

    async def test_native_as_token0_is_inverted(self):
        """WBNB/MWT pool at 4 MWT per BNB still prices MWT at 0.25 BNB."""
        self.chain = FakeChainClient(self.clock, sqrt_price_x96=2 ** 97, token0=WBNB, token1=TOKEN)
        sample = await self.oracle().get_price()

        self.assertEqual(sample.price, Decimal("0.25"))
        self.assertEqual(sample.price_usd, Decimal("1.25"))

    async def test_missing_benchmark_is_skipped(self):
        feed = FakeFeed(self.clock, {"BNB": "4"})
        sample = await self.oracle(feed).get_price()

        self.assertEqual(sample.price_usd, Decimal("1.00"))
        self.assertNotIn("BTC", sample.derived_prices)
        self.assertNotIn("SATS", sample.derived_prices)

    async def test_pool_without_native_asset_is_rejected(self):
        self.chain = FakeChainClient(self.clock, token1="0x" + "44" * 20)
        with self.assertRaises(PriceUnavailable):
            await self.oracle().get_price()

    # =========================================================================
    # CASE 2: TWAP vs spot
    # =========================================================================

    async def test_twap_is_preferred_when_configured(self):
        self.chain.twap_tick = 0     # price 1.0, far from the 0.25 spot
        sample = await self.oracle(oracle={"twap_window_seconds": 60}).get_price()

        self.assertEqual(sample.price_source, PriceSource.TWAP)
        self.assertEqual(sample.price, Decimal(1))
        self.assertEqual(sample.price_usd, Decimal(5))

    async def test_twap_failure_falls_back_to_spot(self):
        self.chain.twap_tick = None
        sample = await self.oracle(oracle={"twap_window_seconds": 60}).get_price()

        self.assertEqual(sample.price_source, PriceSource.SPOT)
        self.assertEqual(sample.price, Decimal("0.25"))
        self.assertEqual(self.chain.calls["get_twap_tick"], 2)  # retried once

    async def test_twap_disabled_never_calls_observe(self):
        await self.oracle().get_price()
        self.assertEqual(self.chain.calls["get_twap_tick"], 0)

    # =========================================================================
    # CASE 3: Feed freshness
    # =========================================================================

    async def test_stale_primary_falls_back_to_secondary(self):
        stale = FakeFeed(self.clock, {"BNB": "5"}, name="stale", age_seconds=600)
        fresh = FakeFeed(self.clock, {"BNB": "3"}, name="fresh")
        sample = await self.oracle(stale, fresh).get_price()

        self.assertEqual(sample.reference_rates["BNB"].source, "fresh")
        self.assertEqual(sample.price_usd, Decimal("0.75"))

    async def test_failing_primary_falls_back_to_secondary(self):
        broken = FakeFeed(self.clock, {"BNB": "5"}, name="broken")
        broken.error = NetworkError("503 Service Unavailable")
        fresh = FakeFeed(self.clock, {"BNB": "4"}, name="fresh")
        sample = await self.oracle(broken, fresh).get_price()

        self.assertEqual(sample.reference_rates["BNB"].source, "fresh")

    async def test_all_feeds_stale_raises(self):
        """Never a zero or default price."""
        stale = FakeFeed(self.clock, {"BNB": "5"}, name="stale", age_seconds=600)
        with self.assertRaises(PriceUnavailable) as ctx:
            await self.oracle(stale).get_price()
        self.assertIn("stale", str(ctx.exception))

    async def test_pool_read_failure_raises_price_unavailable(self):
        self.chain.fail["get_pool_state"] = NetworkError("connection refused")
        with self.assertRaises(PriceUnavailable):
            await self.oracle().get_price()

    async def test_uninitialised_pool_raises_price_unavailable(self):
        """sqrtPriceX96 == 0 is a pool with no price, not a math crash."""
        self.chain.sqrt_price_x96 = 0
        with self.assertRaises(PriceUnavailable):
            await self.oracle().get_price()

        self.chain = FakeChainClient(self.clock, sqrt_price_x96=0, token0=WBNB, token1=TOKEN)
        with self.assertRaises(PriceUnavailable):
            await self.oracle().get_price()

    async def test_old_pool_state_is_flagged_stale(self):
        self.chain.pool_age_seconds = 200
        sample = await self.oracle().get_price()

        self.assertTrue(sample.is_stale)
        self.assertIn("200s", sample.stale_reason)

    # =========================================================================
    # CASE 4: Cache
    # =========================================================================

    async def test_cache_hit_within_ttl(self):
        oracle = self.oracle()
        first = await oracle.get_price()
        self.clock.advance(10)
        second = await oracle.get_price()

        self.assertIs(first, second)
        self.assertEqual(self.chain.calls["get_pool_state"], 1)

    async def test_force_refresh_and_ttl_expiry(self):
        oracle = self.oracle()
        await oracle.get_price()
        await oracle.get_price(force_refresh=True)
        self.assertEqual(self.chain.calls["get_pool_state"], 2)

        self.clock.advance(31)
        await oracle.get_price()
        self.assertEqual(self.chain.calls["get_pool_state"], 3)

        oracle.invalidate_cache()
        await oracle.get_price()
        self.assertEqual(self.chain.calls["get_pool_state"], 4)

    # =========================================================================
    # CASE 5: Deviation
    # =========================================================================

    async def test_deviation_above_peg_recommends_sell(self):
        deviation = await self.oracle().get_deviation()

        self.assertEqual(deviation.deviation_percent, Decimal(25))
        self.assertEqual(deviation.recommendation, Action.SELL)
        self.assertEqual(deviation.target_price, Decimal("1.0"))
        self.assertEqual(deviation.pool_price, Decimal("0.25"))

    async def test_deviation_below_peg_recommends_buy(self):
        feed = FakeFeed(self.clock, {"BNB": "3"})
        deviation = await self.oracle(feed).get_deviation()

        self.assertEqual(deviation.deviation_percent, Decimal(-25))
        self.assertEqual(deviation.recommendation, Action.BUY)

    async def test_deviation_inside_band_holds(self):
        feed = FakeFeed(self.clock, {"BNB": "4"})
        deviation = await self.oracle(feed).get_deviation()

        self.assertEqual(deviation.deviation_percent, Decimal(0))
        self.assertEqual(deviation.recommendation, Action.HOLD)

    async def test_explicit_target_overrides_config(self):
        deviation = await self.oracle().get_deviation(target_price=Decimal("1.25"))
        self.assertEqual(deviation.deviation_percent, Decimal(0))

    async def test_liquidity_depth(self):
        depth = await self.oracle().get_liquidity_depth()

        self.assertFalse(depth["native_is_token0"])
        self.assertEqual(depth["token0_price_in_token1"], "0.25")
        self.assertEqual(depth["liquidity"], str(10 ** 30))


if __name__ == "__main__":
    unittest.main(verbosity=2)
