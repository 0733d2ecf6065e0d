"""
Safety Policy - The Gatekeeper

No swap is sized or submitted without passing through here.

Enforces:
- Sticky pause: set by the circuit breaker or an operator, cleared only explicitly
- Cooldown: min_time_between_trades since the last successful trade
- Per-trade cap: separate for the native asset and the token
- Daily caps: volume per asset and trade count, reset at the UTC day boundary
- Circuit breaker: max_consecutive_errors failed cycles -> pause
"""

import logging
import threading
from dataclasses import dataclass, field, replace
from datetime import date, datetime, time as dt_time, timezone
from typing import Callable, Dict, Mapping, Optional, Tuple

from config.bot_config import BotConfig
from peg_layer.amounts import Amount
from peg_layer.errors import ErrorKind
from peg_layer.models import TradeResult, TradeStatus, utc_now

logger = logging.getLogger(__name__)


def start_of_utc_day(moment: datetime) -> datetime:
    moment = moment.astimezone(timezone.utc)
    return datetime.combine(moment.date(), dt_time.min, tzinfo=timezone.utc)


def _format_volume(volume: Mapping[str, Amount]) -> str:
    return ", ".join(str(v) for v in volume.values()) or "no volume"


@dataclass(frozen=True)
class SafetyState:
    """Snapshot of the cross-cycle counters."""
    daily_window_started_at: datetime
    daily_volume_used: Mapping[str, Amount] = field(default_factory=dict)
    daily_trade_count: int = 0
    consecutive_error_count: int = 0
    last_error_kind: Optional[ErrorKind] = None
    last_trade_at: Optional[datetime] = None
    paused: bool = False
    pause_reason: Optional[str] = None
    paused_at: Optional[datetime] = None

    def to_dict(self) -> dict:
        return {
            "daily_window_started_at": self.daily_window_started_at.isoformat(),
            "daily_volume_used": {k: str(v) for k, v in self.daily_volume_used.items()},
            "daily_trade_count": self.daily_trade_count,
            "consecutive_error_count": self.consecutive_error_count,
            "last_error_kind": self.last_error_kind.value if self.last_error_kind else None,
            "last_trade_at": self.last_trade_at.isoformat() if self.last_trade_at else None,
            "paused": self.paused,
            "pause_reason": self.pause_reason,
            "paused_at": self.paused_at.isoformat() if self.paused_at else None,
        }


class SafetyPolicy:
    """
    Pure gate function plus the counters it reads.

    Single writer: only the controller's cycle (and explicit operator calls)
    mutate state. Every public call first rolls the daily window if the UTC
    day has changed.
    """

    def __init__(self, config: BotConfig, now_fn: Callable[[], datetime] = utc_now):
        self._now = now_fn
        self._lock = threading.Lock()
        self._state = SafetyState(daily_window_started_at=start_of_utc_day(now_fn()))
        self.configure(config)

        limits = config.limits
        logger.info(
            f"🔒 SafetyPolicy initialized:\n"
            f"   • Max trade: {limits.max_trade_native} {config.market.native_symbol} / "
            f"{limits.max_trade_token} {config.market.token_symbol}\n"
            f"   • Daily volume: {limits.max_daily_volume_native} {config.market.native_symbol} / "
            f"{limits.max_daily_volume_token} {config.market.token_symbol}\n"
            f"   • Max daily trades: {limits.max_daily_trades}\n"
            f"   • Cooldown: {limits.min_time_between_trades}s\n"
            f"   • Circuit breaker: {config.safety.max_consecutive_errors} consecutive errors"
        )

    def configure(self, config: BotConfig) -> None:
        market, limits = config.market, config.limits
        self.config = config
        self._max_trade: Dict[str, Amount] = {
            market.native_symbol: Amount.from_decimal(limits.max_trade_native, market.native_decimals, market.native_symbol),
            market.token_symbol: Amount.from_decimal(limits.max_trade_token, market.token_decimals, market.token_symbol),
        }
        self._max_daily: Dict[str, Amount] = {
            market.native_symbol: Amount.from_decimal(limits.max_daily_volume_native, market.native_decimals, market.native_symbol),
            market.token_symbol: Amount.from_decimal(limits.max_daily_volume_token, market.token_decimals, market.token_symbol),
        }

    @property
    def state(self) -> SafetyState:
        return self._state

    @property
    def is_paused(self) -> bool:
        return self._state.paused

    def max_trade_size(self, symbol: str) -> Amount:
        return self._max_trade[symbol]

    # =========================================================================
    # DAILY WINDOW
    # =========================================================================

    def reset_daily_window_if_needed(self, now: Optional[datetime] = None) -> bool:
        """Zero the daily counters once per UTC day boundary. Returns True on reset."""
        now = now or self._now()
        with self._lock:
            return self._roll_window(now)

    def _roll_window(self, now: datetime) -> bool:
        day_start = start_of_utc_day(now)
        if day_start <= self._state.daily_window_started_at:
            return False
        previous = self._state
        self._state = replace(
            previous,
            daily_window_started_at=day_start,
            daily_volume_used={},
            daily_trade_count=0,
        )
        logger.info(
            f"📊 Daily window reset ({day_start.date()}). Previous: "
            f"{_format_volume(previous.daily_volume_used)}, "
            f"{previous.daily_trade_count} trades"
        )
        return True

    def daily_volume_used(self, symbol: str) -> Amount:
        template = self._max_trade[symbol]
        return self._state.daily_volume_used.get(symbol, Amount.zero(template.decimals, symbol))

    def remaining_daily_allowance(self, symbol: str, now: Optional[datetime] = None) -> Amount:
        self.reset_daily_window_if_needed(now)
        return (self._max_daily[symbol] - self.daily_volume_used(symbol)).clamp_non_negative()

    # =========================================================================
    # GATE
    # =========================================================================

    def check_allowed(self, candidate: Amount, now: Optional[datetime] = None) -> Tuple[bool, str]:
        """
        Validate a sized trade before execution.

        Checks:
        1. Not paused / breaker not tripped
        2. Cooldown since last successful trade
        3. Per-trade cap for the asset
        4. Daily trade count and daily volume for the asset

        Returns:
            Tuple of (is_allowed, reason)
        """
        now = now or self._now()
        with self._lock:
            self._roll_window(now)
            state = self._state
            limits = self.config.limits

            if state.paused:
                return False, f"Trading paused: {state.pause_reason}"

            if state.consecutive_error_count >= self.config.safety.max_consecutive_errors:
                self._trip(f"{state.consecutive_error_count} consecutive errors", now)
                return False, f"Trading paused: {self._state.pause_reason}"

            if candidate.raw <= 0:
                return False, f"Invalid trade size: {candidate}"

            if candidate.symbol not in self._max_trade:
                return False, f"Unknown asset: {candidate.symbol}"

            if state.last_trade_at is not None:
                elapsed = (now - state.last_trade_at).total_seconds()
                if elapsed < limits.min_time_between_trades:
                    remaining = limits.min_time_between_trades - elapsed
                    return False, f"Cooldown: {remaining:.0f}s until next trade allowed"

            cap = self._max_trade[candidate.symbol]
            if candidate > cap:
                reason = f"Trade {candidate} > max {cap}"
                logger.warning(f"❌ {reason}")
                return False, reason

            if state.daily_trade_count >= limits.max_daily_trades:
                return False, f"Daily trade limit reached: {state.daily_trade_count}/{limits.max_daily_trades}"

            used = state.daily_volume_used.get(candidate.symbol, Amount.zero(cap.decimals, cap.symbol))
            daily_cap = self._max_daily[candidate.symbol]
            if used + candidate > daily_cap:
                reason = f"Daily volume limit: {used} used + {candidate} > {daily_cap}"
                logger.warning(f"❌ {reason}")
                return False, reason

        return True, "Trade allowed"

    # =========================================================================
    # OUTCOMES
    # =========================================================================

    def record_outcome(self, result: TradeResult, now: Optional[datetime] = None,
                       volume_counted_on: Optional[date] = None) -> None:
        """
        Fold a terminal trade result into the counters.

        `volume_counted_on` is the UTC day whose restored volume already
        includes this trade; its amount is not added again on that day.
        """
        now = now or self._now()
        if result.status is TradeStatus.PENDING:
            logger.info(f"⏳ Trade {result.id} pending, outcome recorded once resolved")
            return

        if result.status is TradeStatus.SUCCESS:
            amount = result.decision.amount_in
            with self._lock:
                self._roll_window(now)
                state = self._state
                volume = dict(state.daily_volume_used)
                already_counted = volume_counted_on == state.daily_window_started_at.date()
                if amount is not None and not already_counted:
                    volume[amount.symbol] = volume.get(
                        amount.symbol, Amount.zero(amount.decimals, amount.symbol)
                    ) + amount
                self._state = replace(
                    state,
                    daily_volume_used=volume,
                    daily_trade_count=state.daily_trade_count + 1,
                    consecutive_error_count=0,
                    last_error_kind=None,
                    last_trade_at=result.confirmed_at or result.executed_at or now,
                )
            logger.info(
                f"✅ Trade {result.id} recorded: {amount} "
                f"(daily {amount.symbol if amount else ''}: "
                f"{self.daily_volume_used(amount.symbol) if amount else '-'})"
            )
            return

        self.record_error(result.error_kind or ErrorKind.NETWORK_ERROR, now)

    def record_error(self, kind: ErrorKind, now: Optional[datetime] = None) -> None:
        """Count one failed cycle; trip the breaker at max_consecutive_errors."""
        now = now or self._now()
        limit = self.config.safety.max_consecutive_errors
        with self._lock:
            self._roll_window(now)
            state = self._state
            count = state.consecutive_error_count + 1
            self._state = replace(state, consecutive_error_count=count, last_error_kind=kind)

            logger.warning(f"⚠️ Cycle failed ({kind.value}): {count}/{limit} consecutive errors")

            if count >= limit and not state.paused:
                self._trip(f"{count} consecutive errors (last: {kind.value})", now)

    def _trip(self, reason: str, now: datetime) -> None:
        self._state = replace(self._state, paused=True, pause_reason=reason, paused_at=now)
        logger.critical(
            f"🚨 CIRCUIT BREAKER TRIPPED: {reason}. "
            f"Trading paused until cleared by an operator."
        )

    # =========================================================================
    # MANUAL CONTROLS
    # =========================================================================

    def pause(self, reason: str, now: Optional[datetime] = None) -> None:
        """Operator pause. Sticky until clear_pause()."""
        now = now or self._now()
        with self._lock:
            self._state = replace(self._state, paused=True, pause_reason=reason, paused_at=now)
        logger.critical(f"🛑 MANUAL PAUSE: {reason}")

    def clear_pause(self) -> None:
        """Clear a pause and re-arm the breaker."""
        with self._lock:
            was = self._state.pause_reason
            self._state = replace(
                self._state,
                paused=False,
                pause_reason=None,
                paused_at=None,
                consecutive_error_count=0,
                last_error_kind=None,
            )
        logger.info(f"✅ Pause cleared by operator (was: {was})")

    def restore(self, daily_volume: Mapping[str, Amount], daily_trade_count: int = 0,
                now: Optional[datetime] = None, last_trade_at: Optional[datetime] = None) -> None:
        """Rebuild today's counters and the cooldown anchor after a restart."""
        now = now or self._now()
        with self._lock:
            self._roll_window(now)
            self._state = replace(
                self._state,
                daily_volume_used={k: v for k, v in daily_volume.items() if k in self._max_trade},
                daily_trade_count=daily_trade_count,
                last_trade_at=last_trade_at or self._state.last_trade_at,
            )
        logger.info(
            f"♻️ Safety state restored: "
            f"{_format_volume(self._state.daily_volume_used)}, "
            f"{daily_trade_count} trades today, "
            f"last trade {last_trade_at.isoformat() if last_trade_at else 'never'}"
        )

    # =========================================================================
    # STATUS
    # =========================================================================

    def get_status(self, now: Optional[datetime] = None) -> dict:
        now = now or self._now()
        self.reset_daily_window_if_needed(now)
        state = self._state
        limits = self.config.limits
        cooldown_remaining = 0.0
        if state.last_trade_at is not None:
            elapsed = (now - state.last_trade_at).total_seconds()
            cooldown_remaining = max(0.0, limits.min_time_between_trades - elapsed)
        return {
            "trading_allowed": not state.paused,
            **state.to_dict(),
            "max_consecutive_errors": self.config.safety.max_consecutive_errors,
            "max_daily_trades": limits.max_daily_trades,
            "cooldown_remaining": round(cooldown_remaining, 1),
            "max_trade": {k: str(v) for k, v in self._max_trade.items()},
            "max_daily_volume": {k: str(v) for k, v in self._max_daily.items()},
            "remaining_daily": {
                k: str((self._max_daily[k] - self.daily_volume_used(k)).clamp_non_negative())
                for k in self._max_daily
            },
        }

    def __repr__(self) -> str:
        state = self._state
        return (
            f"SafetyPolicy("
            f"paused={state.paused}, "
            f"errors={state.consecutive_error_count}/{self.config.safety.max_consecutive_errors}, "
            f"trades_today={state.daily_trade_count})"
        )
