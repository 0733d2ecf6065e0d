"""
Peg Keeper Trading Configuration

Immutable snapshots of every knob the decision loop reads. The controller
takes one snapshot at the start of a cycle and keeps it until the cycle ends;
`BotConfig.updated(...)` produces the next snapshot, it never edits in place.

Defaults:
- Tiers:   LOW 0.5% | MEDIUM 2% | HIGH 5% | EMERGENCY 10%
- Slippage 1% / 2% / 5% / 10%, gas x1.0 / x1.1 / x1.2 / x1.5
- Size     10% / 30% / 50% / 100% of spendable balance (per-trade cap applies)
- Limits   1 BNB or 100 MWT per trade, 10 BNB / 1000 MWT / 100 trades per day
"""

from dataclasses import asdict, dataclass, field, fields, is_dataclass, replace
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, Optional


class ConfigError(ValueError):
    """Raised when a configuration snapshot fails validation."""
    pass


@dataclass(frozen=True)
class MarketConfig:
    token_symbol: str = "MWT"
    native_symbol: str = "BNB"
    benchmark_symbol: str = "BTC"
    token_decimals: int = 18
    native_decimals: int = 18
    target_peg_usd: Decimal = Decimal("0.01")


@dataclass(frozen=True)
class TierSettings:
    threshold_pct: Decimal
    slippage_bps: int
    gas_multiplier: Decimal
    size_factor: Decimal


@dataclass(frozen=True)
class TierTable:
    low: TierSettings = TierSettings(Decimal("0.5"), 100, Decimal("1.0"), Decimal("0.1"))
    medium: TierSettings = TierSettings(Decimal("2"), 200, Decimal("1.1"), Decimal("0.3"))
    high: TierSettings = TierSettings(Decimal("5"), 500, Decimal("1.2"), Decimal("0.5"))
    emergency: TierSettings = TierSettings(Decimal("10"), 1000, Decimal("1.5"), Decimal("1.0"))

    def ordered(self):
        """(name, settings) pairs from least to most urgent."""
        return [
            ("low", self.low),
            ("medium", self.medium),
            ("high", self.high),
            ("emergency", self.emergency),
        ]


@dataclass(frozen=True)
class TradeLimits:
    max_trade_native: Decimal = Decimal("1")
    max_trade_token: Decimal = Decimal("100")
    max_daily_volume_native: Decimal = Decimal("10")
    max_daily_volume_token: Decimal = Decimal("1000")
    max_daily_trades: int = 100
    min_time_between_trades: float = 60.0   # seconds
    min_native_reserve: Decimal = Decimal("0.1")  # kept back for gas


@dataclass(frozen=True)
class GasSettings:
    max_gas_price_gwei: Decimal = Decimal("20")
    gas_limit_buffer_pct: int = 20
    expedite_emergency: bool = True
    deadline_seconds: int = 1200


@dataclass(frozen=True)
class OracleSettings:
    cache_ttl_seconds: float = 30.0
    max_feed_age_seconds: float = 300.0
    max_pool_state_age_seconds: float = 120.0
    twap_window_seconds: int = 60


@dataclass(frozen=True)
class SafetySettings:
    max_consecutive_errors: int = 5
    max_deviation_pct: Optional[Decimal] = None   # hold instead of trading beyond this
    rpc_timeout_seconds: float = 15.0
    receipt_timeout_seconds: float = 120.0
    retry_attempts: int = 3
    retry_backoff_seconds: float = 1.0


@dataclass(frozen=True)
class BotConfig:
    """One immutable configuration snapshot."""
    market: MarketConfig = field(default_factory=MarketConfig)
    tiers: TierTable = field(default_factory=TierTable)
    limits: TradeLimits = field(default_factory=TradeLimits)
    gas: GasSettings = field(default_factory=GasSettings)
    oracle: OracleSettings = field(default_factory=OracleSettings)
    safety: SafetySettings = field(default_factory=SafetySettings)
    enabled: bool = True
    pause_reason: Optional[str] = None

    def tier(self, name: str) -> TierSettings:
        settings = getattr(self.tiers, name.lower(), None)
        if not isinstance(settings, TierSettings):
            raise KeyError(f"Unknown urgency tier: {name}")
        return settings

    # =========================================================================
    # VALIDATION
    # =========================================================================

    def validate(self) -> "BotConfig":
        """Return self when consistent, raise ConfigError otherwise."""
        errors = []

        if self.market.target_peg_usd <= 0:
            errors.append("target_peg_usd must be positive")
        if self.market.token_symbol == self.market.native_symbol:
            errors.append("token and native symbols must differ")

        previous = None
        for name, tier in self.tiers.ordered():
            if tier.threshold_pct <= 0:
                errors.append(f"{name}.threshold_pct must be positive")
            if not 0 < tier.slippage_bps < 10_000:
                errors.append(f"{name}.slippage_bps must be in (0, 10000)")
            if tier.gas_multiplier < 1:
                errors.append(f"{name}.gas_multiplier must be >= 1")
            if not 0 < tier.size_factor <= 1:
                errors.append(f"{name}.size_factor must be in (0, 1]")
            if previous is not None:
                prev_name, prev = previous
                if tier.threshold_pct <= prev.threshold_pct:
                    errors.append(f"{name}.threshold_pct must exceed {prev_name}.threshold_pct")
                if tier.size_factor < prev.size_factor:
                    errors.append(f"{name}.size_factor must not be below {prev_name}.size_factor")
                if tier.gas_multiplier < prev.gas_multiplier:
                    errors.append(f"{name}.gas_multiplier must not be below {prev_name}.gas_multiplier")
            previous = (name, tier)

        limits = self.limits
        for attr in ("max_trade_native", "max_trade_token",
                     "max_daily_volume_native", "max_daily_volume_token"):
            if getattr(limits, attr) <= 0:
                errors.append(f"{attr} must be positive")
        if limits.max_daily_volume_native < limits.max_trade_native:
            errors.append("max_daily_volume_native must be >= max_trade_native")
        if limits.max_daily_volume_token < limits.max_trade_token:
            errors.append("max_daily_volume_token must be >= max_trade_token")
        if limits.max_daily_trades < 1:
            errors.append("max_daily_trades must be >= 1")
        if limits.min_time_between_trades < 0:
            errors.append("min_time_between_trades must be >= 0")
        if limits.min_native_reserve < 0:
            errors.append("min_native_reserve must be >= 0")

        if self.gas.max_gas_price_gwei <= 0:
            errors.append("max_gas_price_gwei must be positive")
        if not 0 <= self.gas.gas_limit_buffer_pct <= 100:
            errors.append("gas_limit_buffer_pct must be in [0, 100]")
        if self.gas.deadline_seconds < 30:
            errors.append("deadline_seconds must be >= 30")

        if self.oracle.cache_ttl_seconds < 0:
            errors.append("cache_ttl_seconds must be >= 0")
        if self.oracle.max_feed_age_seconds <= 0:
            errors.append("max_feed_age_seconds must be positive")
        if self.oracle.twap_window_seconds < 0:
            errors.append("twap_window_seconds must be >= 0")

        safety = self.safety
        if safety.max_consecutive_errors < 1:
            errors.append("max_consecutive_errors must be >= 1")
        if safety.max_deviation_pct is not None and safety.max_deviation_pct <= self.tiers.emergency.threshold_pct:
            errors.append("max_deviation_pct must exceed the emergency threshold")
        if safety.retry_attempts < 1:
            errors.append("retry_attempts must be >= 1")
        if safety.rpc_timeout_seconds <= 0 or safety.receipt_timeout_seconds <= 0:
            errors.append("timeouts must be positive")

        if errors:
            raise ConfigError("; ".join(errors))
        return self

    # =========================================================================
    # SNAPSHOTS
    # =========================================================================

    def updated(self, **partial: Any) -> "BotConfig":
        """
        New validated snapshot with `partial` merged in.

        Nested sections take dicts, e.g.
        ``config.updated(limits={"max_trade_native": "2"}, tiers={"high": {"slippage_bps": 600}})``
        """
        return _merge(self, partial).validate()

    def to_dict(self) -> Dict[str, Any]:
        return _jsonable(asdict(self))

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "BotConfig":
        return cls().updated(**(data or {}))


# =============================================================================
# HELPERS
# =============================================================================

def _merge(obj, patch: Dict[str, Any]):
    known = {f.name: f for f in fields(obj)}
    changes = {}
    for key, value in patch.items():
        if key not in known:
            raise ConfigError(f"Unknown config key '{key}' for {type(obj).__name__}")
        current = getattr(obj, key)
        if is_dataclass(current):
            if isinstance(value, dict):
                changes[key] = _merge(current, value)
            elif isinstance(value, type(current)):
                changes[key] = value
            else:
                raise ConfigError(f"'{key}' expects a mapping, got {type(value).__name__}")
        else:
            changes[key] = _coerce(key, known[key].type, current, value)
    return replace(obj, **changes)


def _coerce(key: str, field_type, current, value):
    if value is None:
        if field_type == Optional[Decimal] or field_type == Optional[str]:
            return None
        raise ConfigError(f"'{key}' cannot be null")
    try:
        if field_type is Decimal or field_type == Optional[Decimal]:
            if isinstance(value, float):
                value = repr(value)
            return Decimal(str(value))
        if field_type is bool:
            if isinstance(value, str):
                return value.strip().lower() in ("1", "true", "yes", "on")
            return bool(value)
        if field_type is int:
            return int(value)
        if field_type is float:
            return float(value)
        if field_type is str or field_type == Optional[str]:
            return str(value)
    except (InvalidOperation, TypeError, ValueError) as e:
        raise ConfigError(f"Invalid value for '{key}': {value!r}") from e
    return value


def _jsonable(value):
    if isinstance(value, dict):
        return {k: _jsonable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_jsonable(v) for v in value]
    if isinstance(value, Decimal):
        return str(value)
    return value


# Global default snapshot
DEFAULT_BOT_CONFIG = BotConfig()
