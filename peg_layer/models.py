"""
Value types produced and consumed by one decision cycle.

All of them are frozen: a PriceSample is superseded, never edited, and a
PENDING TradeResult is replaced exactly once by its terminal copy.
"""

import secrets
import time
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum, IntEnum
from typing import Mapping, Optional

from peg_layer.amounts import Amount
from peg_layer.errors import ErrorKind
from peg_layer.interfaces import PoolState, ReferenceRate


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class Action(Enum):
    HOLD = "HOLD"
    BUY = "BUY"      # spend native, acquire token (price under peg)
    SELL = "SELL"    # spend token, acquire native (price above peg)


class UrgencyTier(IntEnum):
    HOLD = 0
    LOW = 1
    MEDIUM = 2
    HIGH = 3
    EMERGENCY = 4

    @property
    def config_key(self) -> str:
        return self.name.lower()


class TradeStatus(Enum):
    PENDING = "PENDING"
    SUCCESS = "SUCCESS"
    FAILED = "FAILED"
    REVERTED = "REVERTED"


class PriceSource(Enum):
    TWAP = "twap"
    SPOT = "spot"


@dataclass(frozen=True)
class PriceSample:
    """One canonical price reading."""
    pool_state: PoolState
    price: Decimal                              # native units per 1 token
    price_source: PriceSource
    reference_rates: Mapping[str, ReferenceRate]
    derived_prices: Mapping[str, Decimal]       # "USD", benchmark symbol, "SATS"
    observed_at: datetime
    is_stale: bool = False
    stale_reason: Optional[str] = None

    @property
    def price_usd(self) -> Decimal:
        return self.derived_prices["USD"]

    def age_seconds(self, now: datetime) -> float:
        return (now - self.observed_at).total_seconds()

    def to_dict(self) -> dict:
        return {
            "price": str(self.price),
            "price_source": self.price_source.value,
            "derived_prices": {k: str(v) for k, v in self.derived_prices.items()},
            "reference_rates": {k: v.to_dict() for k, v in self.reference_rates.items()},
            "pool": self.pool_state.to_dict(),
            "observed_at": self.observed_at.isoformat(),
            "is_stale": self.is_stale,
            "stale_reason": self.stale_reason,
        }


@dataclass(frozen=True)
class DeviationResult:
    current_price: Decimal      # USD
    target_price: Decimal
    deviation_percent: Decimal  # signed, positive = above peg
    recommendation: Action
    pool_price: Decimal         # native per token
    is_stale: bool
    observed_at: datetime

    def to_dict(self) -> dict:
        return {
            "current_price": str(self.current_price),
            "target_price": str(self.target_price),
            "deviation_percent": str(self.deviation_percent),
            "recommendation": self.recommendation.value,
            "pool_price": str(self.pool_price),
            "is_stale": self.is_stale,
            "observed_at": self.observed_at.isoformat(),
        }


@dataclass(frozen=True)
class TradeDecision:
    action: Action
    urgency: UrgencyTier
    amount_in: Optional[Amount] = None
    amount_out_estimate: Optional[Amount] = None
    slippage_bps: int = 0
    reason: str = ""
    deviation_percent: Optional[Decimal] = None

    @classmethod
    def hold(cls, reason: str, deviation_percent: Optional[Decimal] = None) -> "TradeDecision":
        return cls(
            action=Action.HOLD,
            urgency=UrgencyTier.HOLD,
            reason=reason,
            deviation_percent=deviation_percent,
        )

    @property
    def is_hold(self) -> bool:
        return self.action is Action.HOLD

    def to_dict(self) -> dict:
        return {
            "action": self.action.value,
            "urgency": self.urgency.name,
            "amount_in": str(self.amount_in) if self.amount_in else None,
            "amount_out_estimate": str(self.amount_out_estimate) if self.amount_out_estimate else None,
            "slippage_bps": self.slippage_bps,
            "reason": self.reason,
            "deviation_percent": str(self.deviation_percent) if self.deviation_percent is not None else None,
        }


@dataclass(frozen=True)
class SwapEstimate:
    amount_in: Amount
    amount_out: Amount
    price_impact_bps: int
    fee_tier: int
    source: str     # "quoter" or "in_range"


def new_trade_id() -> str:
    return f"trade_{int(time.time() * 1000)}_{secrets.token_hex(4)}"


@dataclass(frozen=True)
class TradeResult:
    """Outcome of one execute() call."""
    decision: TradeDecision
    status: TradeStatus
    id: str = field(default_factory=new_trade_id)
    tx_hash: Optional[str] = None
    nonce: Optional[int] = None
    block_number: Optional[int] = None
    gas_used: int = 0
    gas_price: int = 0
    gas_cost_native: Optional[Amount] = None
    min_amount_out: Optional[Amount] = None
    realized_amount_out: Optional[Amount] = None
    error_kind: Optional[ErrorKind] = None
    error_message: Optional[str] = None
    initiated_at: datetime = field(default_factory=utc_now)
    executed_at: Optional[datetime] = None
    confirmed_at: Optional[datetime] = None
    dry_run: bool = False

    @property
    def is_terminal(self) -> bool:
        return self.status is not TradeStatus.PENDING

    @property
    def is_success(self) -> bool:
        return self.status is TradeStatus.SUCCESS

    @property
    def is_cancelled(self) -> bool:
        """Stopped before broadcast by a pause; not a trading failure."""
        return self.status is TradeStatus.FAILED and self.error_kind is None

    def resolved(self, status: TradeStatus, **changes) -> "TradeResult":
        """Terminal copy of a PENDING result."""
        if self.is_terminal:
            raise ValueError(f"Trade {self.id} already {self.status.value}")
        if status is TradeStatus.PENDING:
            raise ValueError("Resolution must move to a terminal status")
        return replace(self, status=status, **changes)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "status": self.status.value,
            "action": self.decision.action.value,
            "urgency": self.decision.urgency.name,
            "slippage_bps": self.decision.slippage_bps,
            "deviation_percent": (
                str(self.decision.deviation_percent)
                if self.decision.deviation_percent is not None else ""
            ),
            "amount_in_symbol": self.decision.amount_in.symbol if self.decision.amount_in else "",
            "amount_in_raw": str(self.decision.amount_in.raw) if self.decision.amount_in else "",
            "amount_in_decimals": self.decision.amount_in.decimals if self.decision.amount_in else "",
            "amount_out_estimate": str(self.decision.amount_out_estimate or ""),
            "min_amount_out": str(self.min_amount_out or ""),
            "realized_amount_out": str(self.realized_amount_out or ""),
            "tx_hash": self.tx_hash or "",
            "nonce": "" if self.nonce is None else self.nonce,
            "block_number": "" if self.block_number is None else self.block_number,
            "gas_used": self.gas_used,
            "gas_price": self.gas_price,
            "gas_cost_native": str(self.gas_cost_native or ""),
            "error_kind": self.error_kind.value if self.error_kind else "",
            "error_message": self.error_message or "",
            "initiated_at": self.initiated_at.isoformat(),
            "executed_at": self.executed_at.isoformat() if self.executed_at else "",
            "confirmed_at": self.confirmed_at.isoformat() if self.confirmed_at else "",
            "dry_run": self.dry_run,
        }
