"""
Bot Controller - The Decision Loop

One cycle, strictly in order:
    pause check -> resolve pending trade -> price -> deviation -> balances
    -> decide -> execute -> record outcome -> persist

State machine (transitions only through this class):
    IDLE --start()--> RUNNING --pause()/breaker--> PAUSED --resume()--> RUNNING
    any --stop()--> IDLE

A single asyncio.Lock spans the whole cycle, so trade N+1 is never sized
before trade N has been recorded.
"""

import asyncio
import logging
from dataclasses import dataclass
from datetime import date, datetime
from enum import Enum
from typing import Any, Callable, Dict, Optional

from config.bot_config import BotConfig
from peg_layer.amounts import Amount
from peg_layer.decision_engine import DecisionEngine
from peg_layer.errors import ErrorKind, PegBotError, PersistenceError, PriceUnavailable, to_trade_error
from peg_layer.interfaces import Repository
from peg_layer.models import DeviationResult, TradeDecision, TradeResult, TradeStatus, utc_now
from peg_layer.price_oracle import PriceOracle
from peg_layer.safety_policy import SafetyPolicy
from peg_layer.trade_executor import TradeExecutor

logger = logging.getLogger(__name__)


class BotState(Enum):
    IDLE = "idle"
    RUNNING = "running"
    PAUSED = "paused"


@dataclass
class TradeStatistics:
    cycles: int = 0
    holds: int = 0
    total_trades: int = 0
    successful_trades: int = 0
    failed_trades: int = 0
    reverted_trades: int = 0
    price_failures: int = 0
    persistence_failures: int = 0
    gas_spent_native: Optional[Amount] = None

    def record(self, result: TradeResult) -> None:
        if result.status is TradeStatus.PENDING:
            return
        self.total_trades += 1
        if result.status is TradeStatus.SUCCESS:
            self.successful_trades += 1
        elif result.status is TradeStatus.REVERTED:
            self.reverted_trades += 1
        else:
            self.failed_trades += 1
        if result.gas_cost_native is not None and not result.dry_run:
            if self.gas_spent_native is None:
                self.gas_spent_native = result.gas_cost_native
            else:
                self.gas_spent_native = self.gas_spent_native + result.gas_cost_native

    def to_dict(self) -> dict:
        success_rate = (
            round(self.successful_trades / self.total_trades * 100, 1) if self.total_trades else 0.0
        )
        return {
            "cycles": self.cycles,
            "holds": self.holds,
            "total_trades": self.total_trades,
            "successful_trades": self.successful_trades,
            "failed_trades": self.failed_trades,
            "reverted_trades": self.reverted_trades,
            "success_rate": success_rate,
            "price_failures": self.price_failures,
            "persistence_failures": self.persistence_failures,
            "gas_spent_native": str(self.gas_spent_native) if self.gas_spent_native else "0",
        }


class BotController:
    """Owns the loop, the config snapshot and the single-writer discipline."""

    def __init__(
        self,
        oracle: PriceOracle,
        engine: DecisionEngine,
        executor: TradeExecutor,
        safety: SafetyPolicy,
        repository: Repository,
        config: BotConfig,
        now_fn: Callable[[], datetime] = utc_now,
    ):
        self.oracle = oracle
        self.engine = engine
        self.executor = executor
        self.safety = safety
        self.repository = repository
        self._config = config
        self._now = now_fn

        self._state = BotState.IDLE
        self._cycle_lock = asyncio.Lock()
        self._stop_event: Optional[asyncio.Event] = None
        self._pending: Optional[TradeResult] = None
        self._restored_volume_days: Dict[str, date] = {}
        self.stats = TradeStatistics()
        self.last_result: Optional[TradeResult] = None
        self.last_decision: Optional[TradeDecision] = None
        self.last_deviation: Optional[DeviationResult] = None
        self.last_cycle_at: Optional[datetime] = None
        self.last_error: Optional[str] = None

        self._apply_config(config)

    # =========================================================================
    # PROPERTIES
    # =========================================================================

    @property
    def state(self) -> BotState:
        return self._state

    @property
    def config(self) -> BotConfig:
        return self._config

    @property
    def pending_trade(self) -> Optional[TradeResult]:
        return self._pending

    def _apply_config(self, config: BotConfig) -> None:
        for component in (self.oracle, self.engine, self.executor, self.safety):
            component.configure(config)

    # =========================================================================
    # CYCLE
    # =========================================================================

    async def run_cycle(self) -> Optional[TradeResult]:
        """
        Run one full cycle.

        Returns the TradeResult of a trade executed (or resolved) in this
        cycle, None for HOLD, pause or a skipped cycle.
        """
        async with self._cycle_lock:
            # Snapshot for the whole cycle; update_config only affects the next one
            config = self._config
            self._apply_config(config)
            now = self._now()
            self.last_cycle_at = now
            self.stats.cycles += 1

            self.safety.reset_daily_window_if_needed(now)

            if not config.enabled and not self.safety.is_paused:
                self.safety.pause(config.pause_reason or "Disabled in configuration", now)
            if self.safety.is_paused:
                if self._state is BotState.RUNNING:
                    self._state = BotState.PAUSED
                logger.info(f"⏸️ Paused: {self.safety.state.pause_reason}")
                return None

            if self._pending is not None:
                resolved = await self._resolve_pending(now)
                if resolved is not None:
                    return resolved
                if self._pending is not None:
                    return None

            try:
                sample = await self.oracle.get_price()
            except PriceUnavailable as e:
                self.stats.price_failures += 1
                self.last_error = str(e)
                logger.error(f"❌ Price unavailable, holding: {e}")
                self.safety.record_error(ErrorKind.PRICE_UNAVAILABLE, now)
                await self._after_failure(now)
                return None

            await self._persist(self.repository.save_price_sample(sample), "price sample")

            deviation = self.oracle.deviation_for(sample)
            self.last_deviation = deviation

            try:
                balances = await self.executor.get_balances()
            except PegBotError as e:
                self.last_error = str(e)
                logger.error(f"❌ Balance read failed, holding: {e}")
                self.safety.record_error(e.kind, now)
                await self._after_failure(now)
                return None

            decision = self.engine.decide(deviation, balances, now)
            self.last_decision = decision

            if decision.is_hold:
                self.stats.holds += 1
                logger.info(f"💤 HOLD: {decision.reason}")
                return None

            result = await self.executor.execute(decision, pause_check=self._pause_reason)
            return await self._record(result, now)

    def _pause_reason(self) -> Optional[str]:
        """Checked by the executor just before broadcast."""
        if self.safety.is_paused:
            return self.safety.state.pause_reason or "paused"
        return None

    async def _record(self, result: TradeResult, now: datetime) -> TradeResult:
        self.last_result = result
        if result.status is TradeStatus.PENDING:
            self._pending = result
        elif result.is_cancelled:
            self._pending = None
            logger.info(f"🛑 Trade {result.id} not sent: {result.error_message}")
        else:
            self._pending = None
            self.stats.record(result)
            self.safety.record_outcome(
                result, now, volume_counted_on=self._restored_volume_days.pop(result.id, None)
            )
            if result.error_kind is not None:
                self.last_error = result.error_message
        await self._persist(self.repository.save_trade(result), f"trade {result.id}")
        if not result.is_success and result.is_terminal and not result.is_cancelled:
            await self._after_failure(now)
        return result

    async def _resolve_pending(self, now: datetime) -> Optional[TradeResult]:
        pending = self._pending
        try:
            resolved = await self.executor.resolve_pending(pending)
        except Exception as e:
            error = to_trade_error(e)
            self.last_error = str(error)
            logger.error(f"❌ Could not resolve pending trade {pending.id}: {error}")
            self.safety.record_error(error.kind, now)
            await self._after_failure(now)
            return None
        if resolved.status is TradeStatus.PENDING:
            logger.info(f"⏳ Trade {pending.id} still pending, no new trade this cycle")
            return None
        return await self._record(resolved, now)

    async def _after_failure(self, now: datetime) -> None:
        """Persist the breaker state once it trips so a restart stays paused."""
        if not self.safety.is_paused:
            return
        if self._state is BotState.RUNNING:
            self._state = BotState.PAUSED
        if self._config.enabled:
            reason = self.safety.state.pause_reason
            try:
                self._config = await self.repository.update_config(
                    {"enabled": False, "pause_reason": reason}
                )
            except PegBotError as e:
                self.stats.persistence_failures += 1
                logger.error(f"💾 Could not persist pause state: {e}")

    async def _persist(self, operation, label: str) -> None:
        try:
            await operation
        except Exception as e:
            self.stats.persistence_failures += 1
            error = e if isinstance(e, PersistenceError) else PersistenceError(str(e))
            logger.error(f"💾 Failed to persist {label}: {error}")

    # =========================================================================
    # LOOP CONTROL
    # =========================================================================

    async def start(self, interval_seconds: float = 60.0, max_cycles: Optional[int] = None) -> None:
        """Run cycles every `interval_seconds` until stop() (or `max_cycles`)."""
        if self._state is not BotState.IDLE:
            raise RuntimeError(f"Cannot start from state {self._state.value}")

        self._stop_event = asyncio.Event()
        self._state = BotState.PAUSED if self.safety.is_paused else BotState.RUNNING
        logger.info(f"🚀 Peg loop started (every {interval_seconds}s)")

        cycles = 0
        try:
            while not self._stop_event.is_set():
                try:
                    await self.run_cycle()
                except Exception as e:
                    # Unexpected bug: count it, keep the loop alive for the breaker to judge
                    self.last_error = str(e)
                    logger.exception(f"❌ Cycle crashed: {e}")
                    self.safety.record_error(ErrorKind.NETWORK_ERROR)
                    await self._after_failure(self._now())

                cycles += 1
                if max_cycles is not None and cycles >= max_cycles:
                    break
                try:
                    await asyncio.wait_for(self._stop_event.wait(), timeout=interval_seconds)
                except asyncio.TimeoutError:
                    pass
        finally:
            self._state = BotState.IDLE
            logger.info(f"🛑 Peg loop stopped after {cycles} cycles")

    async def stop(self) -> None:
        """Stop after the in-flight cycle finishes."""
        if self._stop_event is not None:
            self._stop_event.set()
        async with self._cycle_lock:
            self._state = BotState.IDLE

    async def pause(self, reason: str) -> None:
        """Operator pause; a cycle already running stops before its broadcast."""
        self.safety.pause(reason)
        if self._state is BotState.RUNNING:
            self._state = BotState.PAUSED
        try:
            self._config = await self.repository.update_config({"enabled": False, "pause_reason": reason})
        except PegBotError as e:
            self.stats.persistence_failures += 1
            logger.error(f"💾 Could not persist pause: {e}")

    async def resume(self) -> None:
        """Clear the pause (operator or breaker) and re-arm the breaker."""
        self.safety.clear_pause()
        if self._state is BotState.PAUSED:
            self._state = BotState.RUNNING
        try:
            self._config = await self.repository.update_config({"enabled": True, "pause_reason": None})
        except PegBotError as e:
            self.stats.persistence_failures += 1
            logger.error(f"💾 Could not persist resume: {e}")

    # =========================================================================
    # CONFIG & RECOVERY
    # =========================================================================

    async def update_config(self, partial: Dict[str, Any]) -> BotConfig:
        """
        Validate and store a new snapshot; the running cycle keeps the old one.

        Raises:
            ConfigError: the merged snapshot is invalid
            PersistenceError: the repository rejected the write
        """
        self._config.updated(**partial)  # validate before touching storage
        new_config = await self.repository.update_config(partial)
        self._config = new_config
        logger.info(f"🔧 Config updated: {sorted(partial.keys())} (applies from next cycle)")
        return new_config

    async def restore_state(self) -> None:
        """
        Reload config, today's volume, the cooldown anchor and any trade
        left PENDING after a restart.

        A restored pending trade is resolved at the top of the next cycle,
        before anything new is sized. Its input is already part of today's
        restored volume, so it is not counted twice when it lands.
        """
        now = self._now()
        try:
            self._config = await self.repository.load_config()
            volume = await self.repository.get_daily_volume(now.date())
            last_trade_at = await self.repository.get_last_trade_at()
            pending = await self.repository.get_pending_trades()
        except PegBotError as e:
            self.stats.persistence_failures += 1
            logger.error(f"💾 State restore failed, starting with empty counters: {e}")
            return

        self._apply_config(self._config)
        self.safety.restore(volume, now=now, last_trade_at=last_trade_at)
        if not self._config.enabled:
            self.safety.pause(self._config.pause_reason or "Disabled in configuration", now)

        if pending:
            for older in pending[:-1]:
                logger.warning(
                    f"⚠️ Older pending trade {older.id} ({older.tx_hash}) not tracked; "
                    f"its volume stays counted"
                )
            self._pending = pending[-1]
            self._restored_volume_days[self._pending.id] = self._pending.initiated_at.date()
            logger.warning(
                f"⏳ Restored pending trade {self._pending.id} ({self._pending.tx_hash}), "
                f"resolving it before any new trade"
            )

    # =========================================================================
    # STATUS
    # =========================================================================

    def get_status(self) -> dict:
        deviation = self.last_deviation
        return {
            "state": self._state.value,
            "dry_run": self.executor.dry_run,
            "last_cycle_at": self.last_cycle_at.isoformat() if self.last_cycle_at else None,
            "last_error": self.last_error,
            "deviation": deviation.to_dict() if deviation else None,
            "last_decision": self.last_decision.to_dict() if self.last_decision else None,
            "last_rejection": self.engine.last_rejection,
            "last_trade": self.last_result.to_dict() if self.last_result else None,
            "pending_trade": self._pending.id if self._pending else None,
            "safety": self.safety.get_status(),
            "statistics": self.stats.to_dict(),
            "target_peg_usd": str(self._config.market.target_peg_usd),
        }

    def __repr__(self) -> str:
        return f"BotController(state={self._state.value}, cycles={self.stats.cycles})"
