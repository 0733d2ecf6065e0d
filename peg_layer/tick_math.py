"""
Concentrated-Liquidity (V3) Price Math

Pools store price as a tick and as a Q64.96 square root:

- tick t       -> raw price 1.0001^t          (token1 per token0, smallest units)
- sqrtPriceX96 -> raw price (sqrtPriceX96 / 2^96)^2
- human price  =  raw price * 10^(decimals0 - decimals1)

All conversions run in Decimal with a wide context so that uint160 square
roots survive the round trip without float truncation.
"""

from decimal import Decimal, ROUND_CEILING, ROUND_FLOOR, localcontext
from typing import Tuple

Q96 = 2 ** 96
TICK_BASE = Decimal("1.0001")
MIN_TICK = -887272
MAX_TICK = 887272
FEE_DENOMINATOR = 1_000_000  # fees are expressed in pips (2500 = 0.25%)
BPS = 10_000

_PRECISION = 80


def _decimal_shift(decimals0: int, decimals1: int) -> Decimal:
    return Decimal(10) ** (decimals0 - decimals1)


def sqrt_price_x96_to_ratio(sqrt_price_x96: int) -> Decimal:
    """Raw token1/token0 ratio in smallest units."""
    if sqrt_price_x96 <= 0:
        raise ValueError(f"Invalid sqrtPriceX96: {sqrt_price_x96}")
    with localcontext() as ctx:
        ctx.prec = _PRECISION
        root = Decimal(sqrt_price_x96) / Decimal(Q96)
        return root * root


def sqrt_price_x96_to_price(sqrt_price_x96: int, decimals0: int = 0, decimals1: int = 0) -> Decimal:
    """Human price of token0 denominated in token1."""
    with localcontext() as ctx:
        ctx.prec = _PRECISION
        return sqrt_price_x96_to_ratio(sqrt_price_x96) * _decimal_shift(decimals0, decimals1)


def price_to_sqrt_price_x96(price: Decimal, decimals0: int = 0, decimals1: int = 0) -> int:
    """Inverse of sqrt_price_x96_to_price, truncated to an integer."""
    price = Decimal(str(price))
    if price <= 0:
        raise ValueError(f"Price must be positive, got {price}")
    with localcontext() as ctx:
        ctx.prec = _PRECISION
        ratio = price / _decimal_shift(decimals0, decimals1)
        return int((ratio.sqrt() * Decimal(Q96)).to_integral_value(rounding=ROUND_FLOOR))


def tick_to_price(tick: int, decimals0: int = 0, decimals1: int = 0) -> Decimal:
    """Human price at a tick (token0 denominated in token1)."""
    if not MIN_TICK <= tick <= MAX_TICK:
        raise ValueError(f"Tick {tick} outside [{MIN_TICK}, {MAX_TICK}]")
    with localcontext() as ctx:
        ctx.prec = _PRECISION
        return (TICK_BASE ** tick) * _decimal_shift(decimals0, decimals1)


def price_to_tick(price: Decimal, decimals0: int = 0, decimals1: int = 0) -> int:
    """
    Greatest tick whose price does not exceed `price`.

    tick_to_price(price_to_tick(p)) <= p < tick_to_price(price_to_tick(p) + 1),
    so the round trip is always within one tick (0.01%).
    """
    price = Decimal(str(price))
    if price <= 0:
        raise ValueError(f"Price must be positive, got {price}")
    with localcontext() as ctx:
        ctx.prec = _PRECISION
        ratio = price / _decimal_shift(decimals0, decimals1)
        estimate = ratio.ln() / TICK_BASE.ln()
        tick = int(estimate.to_integral_value(rounding=ROUND_FLOOR))
        # Correct for rounding right at a tick boundary
        if TICK_BASE ** (tick + 1) <= ratio:
            tick += 1
        elif TICK_BASE ** tick > ratio:
            tick -= 1
    return max(MIN_TICK, min(MAX_TICK, tick))


def tick_to_sqrt_price_x96(tick: int) -> int:
    if not MIN_TICK <= tick <= MAX_TICK:
        raise ValueError(f"Tick {tick} outside [{MIN_TICK}, {MAX_TICK}]")
    with localcontext() as ctx:
        ctx.prec = _PRECISION
        root = (TICK_BASE ** tick).sqrt()
        return int((root * Decimal(Q96)).to_integral_value(rounding=ROUND_FLOOR))


def invert_price(price: Decimal) -> Decimal:
    if price <= 0:
        raise ValueError(f"Cannot invert non-positive price {price}")
    with localcontext() as ctx:
        ctx.prec = _PRECISION
        return Decimal(1) / price


# =============================================================================
# SWAP ESTIMATION (single in-range step)
# =============================================================================

def estimate_in_range_output(
    sqrt_price_x96: int,
    liquidity: int,
    amount_in: int,
    zero_for_one: bool,
    fee_pips: int,
) -> Tuple[int, int]:
    """
    Output of an exact-input swap assuming it stays inside the active tick range.

    Mirrors the pool's SqrtPriceMath rounding (output rounded down, next price
    rounded toward the input side), which makes it a conservative estimate
    whenever the real swap would cross into deeper liquidity.

    Returns:
        Tuple of (amount_out, sqrt_price_x96_after) in raw units
    """
    if amount_in <= 0 or liquidity <= 0:
        return 0, sqrt_price_x96

    amount_less_fee = amount_in * (FEE_DENOMINATOR - fee_pips) // FEE_DENOMINATOR
    if amount_less_fee <= 0:
        return 0, sqrt_price_x96

    if zero_for_one:
        # token0 in, price moves down
        numerator = liquidity << 96
        denominator = numerator + amount_less_fee * sqrt_price_x96
        sqrt_next = -((-numerator * sqrt_price_x96) // denominator)  # round up
        amount_out = (liquidity * (sqrt_price_x96 - sqrt_next)) >> 96
    else:
        # token1 in, price moves up
        sqrt_next = sqrt_price_x96 + (amount_less_fee << 96) // liquidity
        amount_out = ((liquidity << 96) * (sqrt_next - sqrt_price_x96) // sqrt_next) // sqrt_price_x96

    return max(amount_out, 0), sqrt_next


def ideal_output(sqrt_price_x96: int, amount_in: int, zero_for_one: bool, fee_pips: int) -> Decimal:
    """Output at the current marginal price after fee, with zero price movement."""
    with localcontext() as ctx:
        ctx.prec = _PRECISION
        ratio = sqrt_price_x96_to_ratio(sqrt_price_x96)
        net_in = Decimal(amount_in) * (FEE_DENOMINATOR - fee_pips) / FEE_DENOMINATOR
        return net_in * ratio if zero_for_one else net_in / ratio


def price_impact_bps(
    sqrt_price_x96: int,
    amount_in: int,
    amount_out: int,
    zero_for_one: bool,
    fee_pips: int,
) -> int:
    """
    Shortfall of `amount_out` versus the no-impact output, in basis points.

    The pool fee is excluded, so a tiny trade in deep liquidity reports ~0.
    Rounded up so a borderline impact never passes a tolerance check.
    """
    ideal = ideal_output(sqrt_price_x96, amount_in, zero_for_one, fee_pips)
    if ideal <= 0:
        return BPS
    with localcontext() as ctx:
        ctx.prec = _PRECISION
        shortfall = (ideal - Decimal(amount_out)) / ideal * BPS
        impact = int(shortfall.to_integral_value(rounding=ROUND_CEILING))
    return max(0, min(BPS, impact))
