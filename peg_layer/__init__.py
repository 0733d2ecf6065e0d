"""
Peg Keeper - Peg Stabilization Layer

Core Components:
- PriceOracle: pool price (TWAP/spot) + reference feeds -> USD price and deviation
- SafetyPolicy: trade caps, daily volume, cooldown, circuit breaker
- DecisionEngine: deviation -> urgency tier -> sized BUY/SELL or HOLD
- TradeExecutor: impact check, funds check, gas, sign/broadcast, receipts
- BotController: the loop, config snapshots, persistence and recovery

Chain and feed clients live in peg_layer.utils (they pull in web3/httpx).
"""

from peg_layer.amounts import Amount, AmountMismatchError
from peg_layer.errors import (
    ErrorKind,
    PegBotError,
    PriceUnavailable,
    PersistenceError,
    TradeError,
    InsufficientFunds,
    InsufficientLiquidity,
    SlippageExceeded,
    GasEstimationFailed,
    NetworkError,
)
from peg_layer.models import (
    Action,
    UrgencyTier,
    TradeStatus,
    PriceSample,
    DeviationResult,
    TradeDecision,
    TradeResult,
)
from peg_layer.price_oracle import PriceOracle, compute_deviation
from peg_layer.safety_policy import SafetyPolicy, SafetyState
from peg_layer.decision_engine import DecisionEngine
from peg_layer.trade_executor import TradeExecutor
from peg_layer.controller import BotController, BotState
from peg_layer.repository import CsvRepository

__all__ = [
    # Values
    "Amount",
    "AmountMismatchError",
    # Errors
    "ErrorKind",
    "PegBotError",
    "PriceUnavailable",
    "PersistenceError",
    "TradeError",
    "InsufficientFunds",
    "InsufficientLiquidity",
    "SlippageExceeded",
    "GasEstimationFailed",
    "NetworkError",
    # Models
    "Action",
    "UrgencyTier",
    "TradeStatus",
    "PriceSample",
    "DeviationResult",
    "TradeDecision",
    "TradeResult",
    # Components
    "PriceOracle",
    "compute_deviation",
    "SafetyPolicy",
    "SafetyState",
    "DecisionEngine",
    "TradeExecutor",
    "BotController",
    "BotState",
    "CsvRepository",
]
