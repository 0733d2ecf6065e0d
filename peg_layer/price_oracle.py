"""
Price Oracle - Pool Price + Reference Feeds

Turns raw V3 pool state into the one price every other component trusts:

1. Pool price (native per token) from the TWAP tick, falling back to slot0
2. Native/USD from the first fresh reference feed (stale readings rejected)
3. Cross rates: USD, benchmark (BTC) and satoshis
4. Short-lived cache; force_refresh bypasses it

Never returns a zero or default price: if no trustworthy reading exists the
call raises PriceUnavailable.
"""

import logging
from datetime import datetime
from decimal import Decimal, ROUND_HALF_UP, localcontext
from typing import Callable, Dict, Optional, Sequence, Tuple

from config.bot_config import BotConfig
from peg_layer import tick_math
from peg_layer.errors import PegBotError, PriceUnavailable
from peg_layer.interfaces import ChainClient, PoolState, ReferenceFeedClient, ReferenceRate
from peg_layer.models import (
    Action,
    DeviationResult,
    PriceSample,
    PriceSource,
    utc_now,
)
from peg_layer.retry import RetryPolicy, call_with_retry

logger = logging.getLogger(__name__)

SATOSHIS_PER_BTC = Decimal(100_000_000)
_PRECISION = 60


def compute_deviation(sample: PriceSample, target_price: Decimal, low_threshold_pct: Decimal) -> DeviationResult:
    """
    Signed deviation of the sample's USD price from `target_price`.

    BUY when deviation <= -low threshold, SELL when >= +low threshold.
    """
    target_price = Decimal(str(target_price))
    if target_price <= 0:
        raise ValueError(f"Target price must be positive, got {target_price}")

    with localcontext() as ctx:
        ctx.prec = _PRECISION
        deviation = (sample.price_usd - target_price) / target_price * 100

    if deviation <= -low_threshold_pct:
        recommendation = Action.BUY
    elif deviation >= low_threshold_pct:
        recommendation = Action.SELL
    else:
        recommendation = Action.HOLD

    return DeviationResult(
        current_price=sample.price_usd,
        target_price=target_price,
        deviation_percent=deviation,
        recommendation=recommendation,
        pool_price=sample.price,
        is_stale=sample.is_stale,
        observed_at=sample.observed_at,
    )


class PriceOracle:
    """
    Canonical price source for a single market.

    Reference feeds are tried in order for every symbol: the first one that
    answers with a reading younger than `max_feed_age_seconds` wins.
    """

    def __init__(
        self,
        chain: ChainClient,
        feeds: Sequence[ReferenceFeedClient],
        config: BotConfig,
        now_fn: Callable[[], datetime] = utc_now,
    ):
        if not feeds:
            raise ValueError("PriceOracle needs at least one reference feed")
        self.chain = chain
        self.feeds = list(feeds)
        self._now = now_fn
        self._cache: Optional[PriceSample] = None
        self._cache_at: Optional[datetime] = None
        self.configure(config)

        logger.info(
            f"🔮 PriceOracle initialized:\n"
            f"   • Feeds: {[feed.name for feed in self.feeds]}\n"
            f"   • Cache TTL: {self.config.oracle.cache_ttl_seconds}s\n"
            f"   • Max feed age: {self.config.oracle.max_feed_age_seconds}s\n"
            f"   • TWAP window: {self.config.oracle.twap_window_seconds}s"
        )

    def configure(self, config: BotConfig) -> None:
        self.config = config
        self.retry_policy = RetryPolicy(
            max_attempts=config.safety.retry_attempts,
            initial_backoff=config.safety.retry_backoff_seconds,
            timeout=config.safety.rpc_timeout_seconds,
        )

    def invalidate_cache(self) -> None:
        self._cache = None
        self._cache_at = None

    # =========================================================================
    # PRICE
    # =========================================================================

    async def get_price(self, force_refresh: bool = False) -> PriceSample:
        """
        Current PriceSample, cached for `cache_ttl_seconds`.

        Raises:
            PriceUnavailable: pool unreadable or no fresh native/USD reading
        """
        now = self._now()
        ttl = self.config.oracle.cache_ttl_seconds
        if (
            not force_refresh
            and self._cache is not None
            and (now - self._cache_at).total_seconds() < ttl
        ):
            return self._cache

        sample = await self._build_sample(now)
        self._cache = sample
        self._cache_at = now

        logger.debug(
            f"🔮 {self.config.market.token_symbol} = {sample.price:.10f} "
            f"{self.config.market.native_symbol} = ${sample.price_usd:.6f} "
            f"({sample.price_source.value}{', STALE' if sample.is_stale else ''})"
        )
        return sample

    async def _build_sample(self, now: datetime) -> PriceSample:
        market = self.config.market

        pool_state = await self._read_pool_state()
        price, source = await self._pool_price(pool_state)
        if price <= 0:
            raise PriceUnavailable(f"Pool returned non-positive price {price}")

        native_rate = await self._fresh_rate(market.native_symbol, now)
        rates: Dict[str, ReferenceRate] = {market.native_symbol: native_rate}

        with localcontext() as ctx:
            ctx.prec = _PRECISION
            price_usd = price * native_rate.value
            derived: Dict[str, Decimal] = {"USD": price_usd}

            try:
                benchmark_rate = await self._fresh_rate(market.benchmark_symbol, now)
            except PriceUnavailable as e:
                logger.warning(f"⚠️ {market.benchmark_symbol} rate unavailable, skipping benchmark prices: {e}")
            else:
                rates[market.benchmark_symbol] = benchmark_rate
                price_benchmark = price_usd / benchmark_rate.value
                derived[market.benchmark_symbol] = price_benchmark
                if market.benchmark_symbol == "BTC":
                    derived["SATS"] = (price_benchmark * SATOSHIS_PER_BTC).quantize(
                        Decimal(1), rounding=ROUND_HALF_UP
                    )

        pool_age = (now - pool_state.block_timestamp).total_seconds()
        is_stale = pool_age > self.config.oracle.max_pool_state_age_seconds
        stale_reason = None
        if is_stale:
            stale_reason = f"pool state is {pool_age:.0f}s old (block {pool_state.block_number})"
            logger.warning(f"⚠️ Stale pool state: {stale_reason}")

        return PriceSample(
            pool_state=pool_state,
            price=price,
            price_source=source,
            reference_rates=rates,
            derived_prices=derived,
            observed_at=now,
            is_stale=is_stale,
            stale_reason=stale_reason,
        )

    async def _read_pool_state(self) -> PoolState:
        try:
            return await call_with_retry(self.chain.get_pool_state, self.retry_policy, "get_pool_state")
        except PegBotError as e:
            raise PriceUnavailable(f"Pool state unavailable: {e}") from e

    def _native_is_token0(self, pool_state: PoolState) -> bool:
        native = self.chain.wrapped_native_address.lower()
        if pool_state.token0.lower() == native:
            return True
        if pool_state.token1.lower() == native:
            return False
        raise PriceUnavailable(
            f"Pool {pool_state.token0}/{pool_state.token1} does not contain the native asset {native}"
        )

    async def _pool_price(self, pool_state: PoolState) -> Tuple[Decimal, PriceSource]:
        """Native units per 1 token, TWAP first when configured."""
        native_is_token0 = self._native_is_token0(pool_state)
        window = self.config.oracle.twap_window_seconds

        # token0 priced in token1
        raw_price: Optional[Decimal] = None
        source = PriceSource.SPOT
        if window > 0:
            try:
                tick = await call_with_retry(
                    lambda: self.chain.get_twap_tick(window), self.retry_policy, "get_twap_tick"
                )
                raw_price = tick_math.tick_to_price(tick, pool_state.decimals0, pool_state.decimals1)
                source = PriceSource.TWAP
            except Exception as e:
                logger.warning(f"⚠️ TWAP({window}s) unavailable, using spot price: {e}")

        try:
            if raw_price is None:
                raw_price = tick_math.sqrt_price_x96_to_price(
                    pool_state.sqrt_price_x96, pool_state.decimals0, pool_state.decimals1
                )
            if native_is_token0:
                # raw_price is native priced in token; flip it
                return tick_math.invert_price(raw_price), source
            return raw_price, source
        except (ValueError, ArithmeticError) as e:
            raise PriceUnavailable(f"Unusable pool price at block {pool_state.block_number}: {e}") from e

    # =========================================================================
    # REFERENCE FEEDS
    # =========================================================================

    async def _fresh_rate(self, symbol: str, now: datetime) -> ReferenceRate:
        max_age = self.config.oracle.max_feed_age_seconds
        failures = []

        for feed in self.feeds:
            try:
                rate = await call_with_retry(
                    lambda feed=feed: feed.latest_rate(symbol),
                    self.retry_policy,
                    f"{feed.name}.latest_rate({symbol})",
                )
            except Exception as e:
                failures.append(f"{feed.name}: {e}")
                continue

            age = rate.age_seconds(now)
            if rate.value <= 0:
                failures.append(f"{feed.name}: non-positive value {rate.value}")
                continue
            if age > max_age:
                failures.append(f"{feed.name}: stale ({age:.0f}s > {max_age:.0f}s)")
                logger.warning(f"⚠️ {feed.name} {symbol}/USD is stale ({age:.0f}s old), trying next feed")
                continue
            return rate

        raise PriceUnavailable(f"No fresh {symbol}/USD rate: {'; '.join(failures)}")

    # =========================================================================
    # DEVIATION & DEPTH
    # =========================================================================

    async def get_deviation(
        self,
        target_price: Optional[Decimal] = None,
        force_refresh: bool = False,
    ) -> DeviationResult:
        """Deviation of the current USD price from the peg (configured target by default)."""
        sample = await self.get_price(force_refresh=force_refresh)
        return self.deviation_for(sample, target_price)

    def deviation_for(self, sample: PriceSample, target_price: Optional[Decimal] = None) -> DeviationResult:
        target = target_price if target_price is not None else self.config.market.target_peg_usd
        return compute_deviation(sample, target, self.config.tiers.low.threshold_pct)

    async def get_liquidity_depth(self) -> dict:
        """Active-range liquidity and the prices around the current tick."""
        pool_state = await self._read_pool_state()
        native_is_token0 = self._native_is_token0(pool_state)
        spot = tick_math.sqrt_price_x96_to_price(
            pool_state.sqrt_price_x96, pool_state.decimals0, pool_state.decimals1
        )
        return {
            "tick": pool_state.tick,
            "sqrt_price_x96": str(pool_state.sqrt_price_x96),
            "liquidity": str(pool_state.liquidity),
            "fee": pool_state.fee,
            "token0_price_in_token1": str(spot),
            "token1_price_in_token0": str(tick_math.invert_price(spot)),
            "native_is_token0": native_is_token0,
            "block_number": pool_state.block_number,
        }
