"""
Decision Engine - Deviation to Trade

Maps a DeviationResult to HOLD / BUY / SELL, an urgency tier and a size:

- Tier:   highest tier whose threshold <= |deviation|
- Side:   BUY (spend native) under peg, SELL (spend token) above peg
- Size:   min(per-trade cap, spendable balance * size_factor(tier))
- Gate:   SafetyPolicy.check_allowed; a rejection downgrades to HOLD,
          the engine never retries with a smaller amount
"""

import logging
from datetime import datetime
from decimal import Decimal
from typing import Optional

from config.bot_config import BotConfig
from peg_layer.amounts import Amount
from peg_layer.interfaces import WalletBalances
from peg_layer.models import Action, DeviationResult, TradeDecision, UrgencyTier
from peg_layer.safety_policy import SafetyPolicy

logger = logging.getLogger(__name__)


class DecisionEngine:
    """Stateless apart from the last rejection reason kept for observability."""

    def __init__(self, config: BotConfig, safety: SafetyPolicy):
        self.safety = safety
        self.last_rejection: Optional[str] = None
        self.last_decision: Optional[TradeDecision] = None
        self.configure(config)

    def configure(self, config: BotConfig) -> None:
        self.config = config

    # =========================================================================
    # TIERING & SIZING
    # =========================================================================

    def classify_tier(self, abs_deviation_pct: Decimal) -> UrgencyTier:
        urgency = UrgencyTier.HOLD
        for tier in (UrgencyTier.LOW, UrgencyTier.MEDIUM, UrgencyTier.HIGH, UrgencyTier.EMERGENCY):
            if self.config.tier(tier.config_key).threshold_pct <= abs_deviation_pct:
                urgency = tier
        return urgency

    def spendable_balance(self, action: Action, balances: WalletBalances) -> Amount:
        """Balance of the asset a trade would spend, minus the native gas reserve."""
        if action is Action.BUY:
            market = self.config.market
            reserve = Amount.from_decimal(
                self.config.limits.min_native_reserve, market.native_decimals, market.native_symbol
            )
            return (balances.native - reserve).clamp_non_negative()
        return balances.token

    def size_trade(self, action: Action, urgency: UrgencyTier, balances: WalletBalances) -> Amount:
        tier = self.config.tier(urgency.config_key)
        sized = self.spendable_balance(action, balances).scale(tier.size_factor)
        cap = self.safety.max_trade_size(sized.symbol)
        return cap if sized > cap else sized

    def _estimate_output(self, action: Action, amount_in: Amount, pool_price: Decimal) -> Amount:
        market = self.config.market
        if action is Action.BUY:
            # native in, token out at `pool_price` native per token
            return Amount.from_decimal(
                amount_in.to_decimal() / pool_price, market.token_decimals, market.token_symbol
            )
        return Amount.from_decimal(
            amount_in.to_decimal() * pool_price, market.native_decimals, market.native_symbol
        )

    # =========================================================================
    # DECISION
    # =========================================================================

    def decide(
        self,
        deviation: DeviationResult,
        balances: WalletBalances,
        now: Optional[datetime] = None,
    ) -> TradeDecision:
        decision = self._decide(deviation, balances, now)
        self.last_decision = decision
        return decision

    def _decide(self, deviation: DeviationResult, balances: WalletBalances, now: Optional[datetime]) -> TradeDecision:
        dev = deviation.deviation_percent
        abs_dev = abs(dev)

        if deviation.is_stale:
            return self._hold("Stale price sample", dev)

        max_dev = self.config.safety.max_deviation_pct
        if max_dev is not None and abs_dev >= max_dev:
            logger.critical(
                f"🚨 Deviation {dev:+.2f}% beyond guard {max_dev}% - holding, check price sources"
            )
            return self._hold(f"Deviation {dev:+.2f}% beyond max_deviation_pct {max_dev}%", dev)

        urgency = self.classify_tier(abs_dev)
        if urgency is UrgencyTier.HOLD:
            return TradeDecision.hold(
                f"Deviation {dev:+.2f}% within ±{self.config.tiers.low.threshold_pct}%", dev
            )

        action = Action.BUY if dev < 0 else Action.SELL
        tier = self.config.tier(urgency.config_key)
        amount_in = self.size_trade(action, urgency, balances)

        if amount_in.is_zero():
            return self._hold(f"No spendable {amount_in.symbol} balance for {action.value}", dev)

        allowed, reason = self.safety.check_allowed(amount_in, now)
        if not allowed:
            logger.warning(f"🛡️ {action.value} {amount_in} ({urgency.name}) rejected: {reason}")
            return self._hold(f"Safety: {reason}", dev)

        decision = TradeDecision(
            action=action,
            urgency=urgency,
            amount_in=amount_in,
            amount_out_estimate=self._estimate_output(action, amount_in, deviation.pool_price),
            slippage_bps=tier.slippage_bps,
            reason=f"Deviation {dev:+.2f}% -> {urgency.name}",
            deviation_percent=dev,
        )
        self.last_rejection = None
        logger.info(
            f"🎯 {action.value} {amount_in} [{urgency.name}] "
            f"deviation {dev:+.2f}%, slippage {tier.slippage_bps}bps"
        )
        return decision

    def _hold(self, reason: str, deviation_percent: Decimal) -> TradeDecision:
        self.last_rejection = reason
        return TradeDecision.hold(reason, deviation_percent)
