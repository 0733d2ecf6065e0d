#!/usr/bin/env python3
"""
Controller Integration Tests - tests/test_controller.py

Full cycles against the in-memory chain, feed and repository. With a
BNB/USD rate of 5 the token trades at $1.25 against a $1.00 peg (+25%,
HIGH), so every trading cycle sells 100 MWT (the per-trade cap).

Run with: python -m pytest tests/test_controller.py -v
"""

import json
import sys
import tempfile
import unittest
from decimal import Decimal
from pathlib import Path

# Add parent directory to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent))
sys.path.insert(0, str(Path(__file__).parent))

from fakes import FakeChainClient, FakeClock, FakeFeed, InMemoryRepository, bnb, make_config, mwt
from config.bot_config import ConfigError
from peg_layer.controller import BotController, BotState
from peg_layer.decision_engine import DecisionEngine
from peg_layer.errors import ErrorKind, NetworkError, ReceiptTimeout
from peg_layer.models import Action, TradeDecision, TradeResult, TradeStatus, UrgencyTier
from peg_layer.price_oracle import PriceOracle
from peg_layer.repository import CsvRepository
from peg_layer.safety_policy import SafetyPolicy
from peg_layer.trade_executor import TradeExecutor


class TestBotController(unittest.IsolatedAsyncioTestCase):

    def setUp(self):
        self.clock = FakeClock()
        self.chain = FakeChainClient(self.clock)
        self.feed = FakeFeed(self.clock, {"BNB": "5", "BTC": "50000"})
        self.repo = InMemoryRepository()

    def build(self, dry_run=False, repository=None):
        repository = repository or self.repo
        config = self.repo.config
        safety = SafetyPolicy(config, now_fn=self.clock)
        oracle = PriceOracle(self.chain, [self.feed], config, now_fn=self.clock)
        engine = DecisionEngine(config, safety)
        executor = TradeExecutor(self.chain, config, dry_run=dry_run, now_fn=self.clock)
        return BotController(oracle, engine, executor, safety, repository, config, now_fn=self.clock)

    # =========================================================================
    # CASE 1: One full trading cycle
    # =========================================================================

    async def test_cycle_sells_above_peg(self):
        controller = self.build()
        result = await controller.run_cycle()

        self.assertEqual(result.status, TradeStatus.SUCCESS)
        self.assertEqual(result.decision.action, Action.SELL)
        self.assertEqual(result.decision.urgency, UrgencyTier.HIGH)
        self.assertEqual(result.decision.amount_in, mwt("100"))
        self.assertEqual(controller.safety.daily_volume_used("MWT"), mwt("100"))
        self.assertEqual(self.chain.token, mwt("900"))

        self.assertEqual(len(self.repo.samples), 1)
        self.assertEqual(self.repo.trades, [result])
        self.assertEqual(controller.stats.successful_trades, 1)
        self.assertEqual(controller.last_deviation.deviation_percent, Decimal(25))

    async def test_back_to_back_cycles_respect_cooldown(self):
        controller = self.build()
        await controller.run_cycle()
        self.clock.advance(5)
        result = await controller.run_cycle()

        self.assertIsNone(result)
        self.assertTrue(controller.last_decision.is_hold)
        self.assertIn("Cooldown", controller.last_decision.reason)
        self.assertEqual(len(self.chain.sent), 1)
        self.assertEqual(controller.stats.holds, 1)

    async def test_price_inside_band_holds(self):
        self.feed.rates["BNB"] = Decimal("4.01")    # +0.25%
        controller = self.build()

        self.assertIsNone(await controller.run_cycle())
        self.assertIn("within", controller.last_decision.reason)
        self.assertEqual(self.chain.calls["sign_swap"], 0)

    async def test_dry_run_cycle(self):
        controller = self.build(dry_run=True)
        result = await controller.run_cycle()

        self.assertTrue(result.dry_run)
        self.assertEqual(self.chain.sent, [])
        self.assertEqual(self.chain.token, mwt("1000"))

    # =========================================================================
    # CASE 2: Failures feed the breaker
    # =========================================================================

    async def test_thin_pool_aborts_without_sending(self):
        self.chain.quote_factor = Decimal("0.9")
        controller = self.build()
        result = await controller.run_cycle()

        self.assertEqual(result.status, TradeStatus.FAILED)
        self.assertEqual(result.error_kind, ErrorKind.INSUFFICIENT_LIQUIDITY)
        self.assertEqual(controller.safety.state.consecutive_error_count, 1)
        self.assertEqual(self.chain.sent, [])
        self.assertTrue(controller.safety.daily_volume_used("MWT").is_zero())
        self.assertEqual(self.repo.trades[0].status, TradeStatus.FAILED)

    async def test_price_unavailable_holds_and_counts(self):
        self.feed.error = NetworkError("feed down")
        controller = self.build()

        self.assertIsNone(await controller.run_cycle())
        self.assertEqual(controller.stats.price_failures, 1)
        self.assertEqual(controller.safety.state.last_error_kind, ErrorKind.PRICE_UNAVAILABLE)
        self.assertEqual(self.chain.calls["get_balances"], 0)

    async def test_uninitialised_pool_holds_and_counts(self):
        self.chain.sqrt_price_x96 = 0
        controller = self.build()

        self.assertIsNone(await controller.run_cycle())
        self.assertEqual(controller.stats.price_failures, 1)
        self.assertEqual(controller.safety.state.consecutive_error_count, 1)
        self.assertEqual(self.chain.calls["sign_swap"], 0)

    async def test_breaker_trips_persists_and_resumes(self):
        self.feed.error = NetworkError("feed down")
        controller = self.build()

        for _ in range(5):
            await controller.run_cycle()
            self.clock.advance(60)

        self.assertTrue(controller.safety.is_paused)
        self.assertFalse(self.repo.config.enabled)
        self.assertIn("consecutive errors", self.repo.config.pause_reason)

        self.feed.error = None
        feed_calls = self.feed.calls
        self.assertIsNone(await controller.run_cycle())
        self.assertEqual(self.feed.calls, feed_calls, "paused cycle must not read prices")

        await controller.resume()
        self.assertTrue(self.repo.config.enabled)
        self.assertIsNone(self.repo.config.pause_reason)
        result = await controller.run_cycle()
        self.assertEqual(result.status, TradeStatus.SUCCESS)

    async def test_operator_pause(self):
        controller = self.build()
        await controller.pause("manual check")

        self.assertIsNone(await controller.run_cycle())
        self.assertEqual(self.repo.config.pause_reason, "manual check")
        self.assertEqual(self.chain.calls["get_pool_state"], 0)

    async def test_pause_during_execution_stops_broadcast(self):
        """An operator pause landing mid-trade wins over the broadcast."""
        controller = self.build()
        estimate_gas = self.chain.estimate_swap_gas

        async def pause_then_estimate(request):
            await controller.pause("operator stop")
            return await estimate_gas(request)

        self.chain.estimate_swap_gas = pause_then_estimate
        result = await controller.run_cycle()

        self.assertEqual(result.status, TradeStatus.FAILED)
        self.assertTrue(result.is_cancelled)
        self.assertEqual(self.chain.calls["send_swap"], 0)
        self.assertEqual(self.chain.sent, [])
        self.assertEqual(controller.safety.state.consecutive_error_count, 0)
        self.assertEqual(controller.stats.failed_trades, 0)
        self.assertEqual(self.repo.trades, [result])
        self.assertEqual(self.repo.config.pause_reason, "operator stop")

    # =========================================================================
    # CASE 3: Pending trades
    # =========================================================================

    async def test_pending_trade_blocks_then_resolves(self):
        self.chain.fail["wait_for_receipt"] = ReceiptTimeout("not mined")
        controller = self.build()

        pending = await controller.run_cycle()
        self.assertEqual(pending.status, TradeStatus.PENDING)
        self.assertIs(controller.pending_trade, pending)
        self.assertTrue(controller.safety.daily_volume_used("MWT").is_zero())

        # Not mined yet: no new trade is sized
        self.clock.advance(60)
        self.assertIsNone(await controller.run_cycle())
        self.assertEqual(self.chain.calls["sign_swap"], 1)

        self.chain.mine(pending.tx_hash)
        self.clock.advance(60)
        resolved = await controller.run_cycle()

        self.assertEqual(resolved.id, pending.id)
        self.assertEqual(resolved.status, TradeStatus.SUCCESS)
        self.assertIsNone(controller.pending_trade)
        self.assertEqual(controller.safety.daily_volume_used("MWT"), mwt("100"))
        self.assertEqual([t.status for t in self.repo.trades], [TradeStatus.PENDING, TradeStatus.SUCCESS])
        self.assertEqual(self.chain.calls["sign_swap"], 1)

    # =========================================================================
    # CASE 4: Config & recovery
    # =========================================================================

    async def test_restore_state_rebuilds_volume_and_pause(self):
        earlier = TradeResult(
            decision=TradeDecision(Action.BUY, UrgencyTier.HIGH, amount_in=bnb("9.5"), slippage_bps=500),
            status=TradeStatus.SUCCESS,
            initiated_at=self.clock(),
        )
        self.repo.trades.append(earlier)
        self.repo.config = make_config(enabled=False, pause_reason="ops freeze")

        controller = self.build()
        await controller.restore_state()

        self.assertEqual(controller.safety.daily_volume_used("BNB"), bnb("9.5"))
        self.assertTrue(controller.safety.is_paused)
        self.assertEqual(controller.safety.state.pause_reason, "ops freeze")

    async def test_restart_keeps_cooldown(self):
        await self.build().run_cycle()
        self.clock.advance(5)

        restarted = self.build()
        await restarted.restore_state()

        self.assertIsNone(await restarted.run_cycle())
        self.assertIn("Cooldown", restarted.last_decision.reason)
        self.assertEqual(len(self.chain.sent), 1)
        self.assertEqual(restarted.safety.daily_volume_used("MWT"), mwt("100"))

    async def test_restart_resolves_pending_before_trading(self):
        self.chain.fail["wait_for_receipt"] = ReceiptTimeout("not mined")
        pending = await self.build().run_cycle()
        self.assertEqual(pending.status, TradeStatus.PENDING)

        restarted = self.build()
        await restarted.restore_state()
        self.assertEqual(restarted.pending_trade.id, pending.id)
        self.assertEqual(restarted.safety.daily_volume_used("MWT"), mwt("100"))

        # Still in flight: nothing new is signed
        self.clock.advance(60)
        self.assertIsNone(await restarted.run_cycle())
        self.assertEqual(self.chain.calls["sign_swap"], 1)

        self.chain.mine(pending.tx_hash)
        self.clock.advance(60)
        resolved = await restarted.run_cycle()

        self.assertEqual(resolved.id, pending.id)
        self.assertEqual(resolved.status, TradeStatus.SUCCESS)
        self.assertIsNone(restarted.pending_trade)
        self.assertEqual(restarted.safety.daily_volume_used("MWT"), mwt("100"))
        self.assertEqual(restarted.safety.state.daily_trade_count, 1)
        self.assertEqual(self.chain.calls["sign_swap"], 1)

    async def test_invalid_stored_config_is_a_persistence_failure(self):
        with tempfile.TemporaryDirectory() as tmp:
            repository = CsvRepository(tmp)
            repository.config_path.write_text(json.dumps({"limits": {"max_trade_native": "lots"}}))
            self.feed.error = NetworkError("feed down")
            controller = self.build(repository=repository)

            await controller.restore_state()
            self.assertEqual(controller.stats.persistence_failures, 1)

            for _ in range(5):
                await controller.run_cycle()
                self.clock.advance(60)

            self.assertTrue(controller.safety.is_paused)
            self.assertEqual(controller.stats.persistence_failures, 2)

    async def test_update_config_validates_before_storing(self):
        controller = self.build()
        before = self.repo.config

        with self.assertRaises(ConfigError):
            await controller.update_config({"limits": {"max_trade_native": "-1"}})
        self.assertIs(self.repo.config, before)

        config = await controller.update_config({"limits": {"max_trade_token": "50"}})
        self.assertEqual(config.limits.max_trade_token, Decimal("50"))
        self.assertIs(controller.config, config)

        result = await controller.run_cycle()
        self.assertEqual(result.decision.amount_in, mwt("50"))

    async def test_persistence_failure_does_not_stop_trading(self):
        self.repo.fail_writes = True
        controller = self.build()
        result = await controller.run_cycle()

        self.assertEqual(result.status, TradeStatus.SUCCESS)
        self.assertEqual(controller.stats.persistence_failures, 2)   # sample + trade

    # =========================================================================
    # CASE 5: Loop
    # =========================================================================

    async def test_start_runs_max_cycles(self):
        controller = self.build(dry_run=True)
        await controller.start(interval_seconds=0, max_cycles=2)

        self.assertEqual(controller.stats.cycles, 2)
        self.assertEqual(controller.stats.successful_trades, 1)
        self.assertEqual(controller.stats.holds, 1)
        self.assertEqual(controller.state, BotState.IDLE)

    async def test_status(self):
        controller = self.build()
        await controller.run_cycle()
        status = controller.get_status()

        self.assertEqual(status["state"], "idle")
        self.assertFalse(status["dry_run"])
        self.assertEqual(status["last_trade"]["status"], "SUCCESS")
        self.assertIsNone(status["pending_trade"])
        self.assertEqual(status["statistics"]["successful_trades"], 1)
        self.assertEqual(status["target_peg_usd"], "1.0")


if __name__ == "__main__":
    unittest.main(verbosity=2)
