#!/usr/bin/env python3
"""
CSV Repository Tests - tests/test_repository.py

Run with: python -m pytest tests/test_repository.py -v
"""

import csv
import json
import sys
import tempfile
import unittest
from dataclasses import replace
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from pathlib import Path

# Add parent directory to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent))
sys.path.insert(0, str(Path(__file__).parent))

from fakes import FakeChainClient, FakeClock, FakeFeed, bnb, make_config, mwt
from config.bot_config import BotConfig, ConfigError
from peg_layer.errors import ErrorKind, PersistenceError
from peg_layer.models import Action, TradeDecision, TradeResult, TradeStatus, UrgencyTier
from peg_layer.price_oracle import PriceOracle
from peg_layer.repository import CsvRepository


class TestCsvRepository(unittest.IsolatedAsyncioTestCase):

    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        self.data_dir = Path(self.tmp.name) / "data"
        self.repo = CsvRepository(str(self.data_dir))
        self.clock = FakeClock()

    def tearDown(self):
        self.tmp.cleanup()

    def trade(self, amount, status=TradeStatus.SUCCESS, dry_run=False, at=None):
        action = Action.SELL if amount.symbol == "MWT" else Action.BUY
        return TradeResult(
            decision=TradeDecision(action, UrgencyTier.HIGH, amount_in=amount, slippage_bps=500),
            status=status,
            error_kind=ErrorKind.INSUFFICIENT_LIQUIDITY if status is TradeStatus.FAILED else None,
            initiated_at=at or self.clock(),
            dry_run=dry_run,
        )

    # =========================================================================
    # CASE 1: Trade journal & daily volume
    # =========================================================================

    async def test_files_created_with_headers(self):
        with open(self.repo.trades_path, newline="") as f:
            self.assertEqual(next(csv.reader(f)), CsvRepository.TRADE_COLUMNS)
        self.assertTrue(self.repo.prices_path.exists())

    async def test_daily_volume_sums_successful_trades(self):
        await self.repo.save_trade(self.trade(mwt("100")))
        await self.repo.save_trade(self.trade(mwt("25.5")))
        await self.repo.save_trade(self.trade(bnb("0.75")))

        volume = await self.repo.get_daily_volume(self.clock().date())
        self.assertEqual(volume["MWT"], mwt("125.5"))
        self.assertEqual(volume["BNB"], bnb("0.75"))

    async def test_daily_volume_skips_failed_dry_run_and_other_days(self):
        await self.repo.save_trade(self.trade(mwt("10"), status=TradeStatus.FAILED))
        await self.repo.save_trade(self.trade(mwt("20"), dry_run=True))
        await self.repo.save_trade(self.trade(mwt("40"), at=self.clock() - timedelta(days=1)))

        self.assertEqual(await self.repo.get_daily_volume(self.clock().date()), {})

    async def test_dry_run_counted_when_enabled(self):
        repo = CsvRepository(str(self.data_dir), count_dry_run=True)
        await repo.save_trade(self.trade(mwt("20"), dry_run=True))
        volume = await repo.get_daily_volume(self.clock().date())
        self.assertEqual(volume["MWT"], mwt("20"))

    async def test_latest_row_per_trade_wins(self):
        """PENDING then SUCCESS for one id counts once; PENDING then FAILED not at all."""
        pending = self.trade(mwt("100"), status=TradeStatus.PENDING)
        await self.repo.save_trade(pending)
        await self.repo.save_trade(pending.resolved(TradeStatus.SUCCESS))

        dropped = self.trade(mwt("50"), status=TradeStatus.PENDING)
        await self.repo.save_trade(dropped)
        await self.repo.save_trade(dropped.resolved(TradeStatus.FAILED, error_kind=ErrorKind.NETWORK_ERROR))

        volume = await self.repo.get_daily_volume(self.clock().date())
        self.assertEqual(volume, {"MWT": mwt("100")})

    async def test_pending_trade_counts_toward_volume(self):
        """A trade that may still land is counted until it resolves."""
        await self.repo.save_trade(self.trade(mwt("30"), status=TradeStatus.PENDING))
        volume = await self.repo.get_daily_volume(self.clock().date())
        self.assertEqual(volume, {"MWT": mwt("30")})

    async def test_volume_bucketed_by_confirmation_day(self):
        late = datetime(2024, 1, 1, 23, 59, tzinfo=timezone.utc)
        crossing = replace(self.trade(mwt("10"), at=late), confirmed_at=late + timedelta(minutes=2))
        await self.repo.save_trade(crossing)

        self.assertEqual(await self.repo.get_daily_volume(late.date()), {})
        self.assertEqual(
            await self.repo.get_daily_volume(late.date() + timedelta(days=1)), {"MWT": mwt("10")}
        )

    async def test_last_trade_at_is_latest_success(self):
        self.assertIsNone(await self.repo.get_last_trade_at())

        first = replace(self.trade(mwt("5")), confirmed_at=self.clock())
        second = replace(self.trade(mwt("5")), confirmed_at=self.clock() + timedelta(seconds=30))
        failed = replace(
            self.trade(mwt("5"), status=TradeStatus.FAILED), confirmed_at=self.clock() + timedelta(seconds=90)
        )
        for result in (second, first, failed):
            await self.repo.save_trade(result)

        self.assertEqual(await self.repo.get_last_trade_at(), self.clock() + timedelta(seconds=30))

    async def test_pending_trades_rebuilt_from_journal(self):
        open_trade = replace(
            self.trade(mwt("100"), status=TradeStatus.PENDING),
            tx_hash="0x" + "ab" * 32,
            nonce=7,
            gas_price=6_000_000_000,
            executed_at=self.clock(),
        )
        settled = self.trade(mwt("50"), status=TradeStatus.PENDING)
        await self.repo.save_trade(open_trade)
        await self.repo.save_trade(settled)
        await self.repo.save_trade(settled.resolved(TradeStatus.SUCCESS, confirmed_at=self.clock()))

        pending = await self.repo.get_pending_trades()

        self.assertEqual(len(pending), 1)
        restored = pending[0]
        self.assertEqual(restored.id, open_trade.id)
        self.assertEqual(restored.status, TradeStatus.PENDING)
        self.assertEqual(restored.tx_hash, open_trade.tx_hash)
        self.assertEqual(restored.nonce, 7)
        self.assertEqual(restored.gas_price, 6_000_000_000)
        self.assertEqual(restored.decision.action, Action.SELL)
        self.assertEqual(restored.decision.urgency, UrgencyTier.HIGH)
        self.assertEqual(restored.decision.amount_in, mwt("100"))
        self.assertEqual(restored.decision.slippage_bps, 500)
        self.assertEqual(restored.initiated_at, open_trade.initiated_at)

    async def test_price_sample_row(self):
        chain = FakeChainClient(self.clock)
        feed = FakeFeed(self.clock, {"BNB": "5", "BTC": "50000"})
        sample = await PriceOracle(chain, [feed], make_config(), now_fn=self.clock).get_price()
        await self.repo.save_price_sample(sample)

        with open(self.repo.prices_path, newline="") as f:
            rows = list(csv.DictReader(f))
        self.assertEqual(len(rows), 1)
        self.assertEqual(Decimal(rows[0]["price_usd"]), Decimal("1.25"))
        self.assertEqual(rows[0]["price_sats"], "2500")
        self.assertEqual(rows[0]["native_usd"], "5")
        self.assertEqual(rows[0]["price_source"], "spot")

    # =========================================================================
    # CASE 2: Config document
    # =========================================================================

    async def test_missing_config_is_default(self):
        self.assertEqual(await self.repo.load_config(), BotConfig())

    async def test_update_config_persists(self):
        config = await self.repo.update_config({"enabled": False, "pause_reason": "breaker"})
        self.assertFalse(config.enabled)

        reopened = CsvRepository(str(self.data_dir))
        loaded = await reopened.load_config()
        self.assertEqual(loaded, config)
        self.assertEqual(loaded.pause_reason, "breaker")

    async def test_update_config_merges_with_stored(self):
        await self.repo.update_config({"limits": {"max_trade_native": "2"}})
        config = await self.repo.update_config({"limits": {"max_daily_trades": 5}})

        self.assertEqual(config.limits.max_trade_native, Decimal("2"))
        self.assertEqual(config.limits.max_daily_trades, 5)

    async def test_invalid_update_leaves_file_untouched(self):
        await self.repo.update_config({"enabled": False})
        with self.assertRaises(ConfigError):
            await self.repo.update_config({"tiers": {"low": {"slippage_bps": 0}}})
        self.assertFalse((await self.repo.load_config()).enabled)

    # =========================================================================
    # CASE 3: Failures
    # =========================================================================

    async def test_corrupt_config_raises_persistence_error(self):
        self.repo.config_path.write_text("{not json")
        with self.assertRaises(PersistenceError):
            await self.repo.load_config()

    async def test_invalid_stored_value_raises_persistence_error(self):
        """Valid JSON holding an invalid setting is a storage fault, not a crash."""
        self.repo.config_path.write_text(json.dumps({"limits": {"max_trade_native": "lots"}}))
        with self.assertRaises(PersistenceError):
            await self.repo.load_config()
        with self.assertRaises(PersistenceError):
            await self.repo.update_config({"enabled": False})

        self.repo.config_path.write_text("[1, 2, 3]")
        with self.assertRaises(PersistenceError):
            await self.repo.load_config()

    async def test_unwritable_data_dir_raises_persistence_error(self):
        blocker = Path(self.tmp.name) / "blocker"
        blocker.write_text("a file, not a directory")
        with self.assertRaises(PersistenceError):
            CsvRepository(str(blocker / "data"))

    async def test_config_file_is_plain_json(self):
        await self.repo.update_config({"market": {"target_peg_usd": "0.02"}})
        data = json.loads(self.repo.config_path.read_text())
        self.assertEqual(data["market"]["target_peg_usd"], "0.02")

    async def test_unreadable_row_is_skipped(self):
        good = self.trade(mwt("5"))
        await self.repo.save_trade(good)
        bad = replace(self.trade(mwt("7")), id="broken")
        await self.repo.save_trade(bad)
        # Corrupt the second row's raw amount
        text = self.repo.trades_path.read_text().replace(str(mwt("7").raw), "seven")
        self.repo.trades_path.write_text(text)

        volume = await self.repo.get_daily_volume(self.clock().date())
        self.assertEqual(volume, {"MWT": mwt("5")})


if __name__ == "__main__":
    unittest.main(verbosity=2)
