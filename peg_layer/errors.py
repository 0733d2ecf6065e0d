"""
Error Taxonomy

Expected trading failures are exceptions inside the executor and typed
`ErrorKind` values on the `TradeResult` it returns:

- PriceUnavailable       -> cycle holds, counts as a failed cycle
- InsufficientFunds      -> wallet cannot cover amount + gas (or allowance)
- InsufficientLiquidity  -> price impact above tolerance / pool too thin
- SlippageExceeded       -> on-chain minimum-output check reverted
- GasEstimationFailed    -> node refused to estimate (usually a revert)
- NetworkError           -> timeouts, nonce/gas issues, anything unclassified
- PersistenceError       -> repository write/read failed (never blocks trading)
"""

import asyncio
from enum import Enum
from typing import Optional


class ErrorKind(Enum):
    PRICE_UNAVAILABLE = "price_unavailable"
    INSUFFICIENT_FUNDS = "insufficient_funds"
    INSUFFICIENT_LIQUIDITY = "insufficient_liquidity"
    SLIPPAGE_EXCEEDED = "slippage_exceeded"
    GAS_ESTIMATION_FAILED = "gas_estimation_failed"
    NETWORK_ERROR = "network_error"
    PERSISTENCE_ERROR = "persistence_error"


class PegBotError(Exception):
    """Base class for every failure the bot knows how to classify."""
    kind: ErrorKind = ErrorKind.NETWORK_ERROR
    retryable: bool = False


class PriceUnavailable(PegBotError):
    """Raised when no trustworthy price can be produced."""
    kind = ErrorKind.PRICE_UNAVAILABLE


class PersistenceError(PegBotError):
    """Raised when the repository cannot read or write."""
    kind = ErrorKind.PERSISTENCE_ERROR


class TradeError(PegBotError):
    """Base class for failures while executing a swap."""
    pass


class InsufficientFunds(TradeError):
    kind = ErrorKind.INSUFFICIENT_FUNDS


class InsufficientLiquidity(TradeError):
    kind = ErrorKind.INSUFFICIENT_LIQUIDITY


class SlippageExceeded(TradeError):
    kind = ErrorKind.SLIPPAGE_EXCEEDED


class GasEstimationFailed(TradeError):
    kind = ErrorKind.GAS_ESTIMATION_FAILED
    retryable = True


class NetworkError(TradeError):
    kind = ErrorKind.NETWORK_ERROR
    retryable = True


class ReceiptTimeout(NetworkError):
    """Transaction was broadcast but no receipt arrived in time."""
    pass


class BroadcastUncertain(NetworkError):
    """Transport failed mid-broadcast; the node may or may not have the transaction."""
    pass


# =============================================================================
# CLASSIFICATION
# =============================================================================

# Ordered: the first matching signature wins
REVERT_SIGNATURES = [
    ("INSUFFICIENT_OUTPUT_AMOUNT", SlippageExceeded),
    ("too little received", SlippageExceeded),
    ("INSUFFICIENT_LIQUIDITY", InsufficientLiquidity),
    ("SPL", InsufficientLiquidity),
    ("insufficient funds", InsufficientFunds),
    ("TRANSFER_FAILED", InsufficientFunds),
    ("STF", InsufficientFunds),
    ("cannot estimate gas", GasEstimationFailed),
    ("gas required exceeds", GasEstimationFailed),
    ("out of gas", NetworkError),
    ("nonce", NetworkError),
    ("underpriced", NetworkError),
    ("EXPIRED", NetworkError),
    ("Transaction too old", NetworkError),
]


def _matches(message: str, signature: str) -> bool:
    # Short uppercase codes (STF, SPL) are matched as whole words, case-sensitively
    if signature.isupper() and len(signature) <= 4:
        padded = f" {message} "
        for sep in ("'", '"', ":", " ", "(", ")"):
            padded = padded.replace(sep, " ")
        return f" {signature} " in padded
    if signature.isupper():
        return signature in message
    return signature.lower() in message.lower()


def classify_message(message: Optional[str]) -> type:
    """Map a revert reason or RPC error message to a TradeError subclass."""
    if not message:
        return NetworkError
    for signature, error_cls in REVERT_SIGNATURES:
        if _matches(message, signature):
            return error_cls
    return NetworkError


def to_trade_error(exc: BaseException) -> TradeError:
    """
    Convert any exception into the executor taxonomy.

    Anything unrecognised becomes a NetworkError rather than being treated
    as benign.
    """
    if isinstance(exc, TradeError):
        return exc
    if isinstance(exc, (asyncio.TimeoutError, TimeoutError)):
        return NetworkError(f"Timed out: {exc}" if str(exc) else "Timed out")
    message = str(exc) or type(exc).__name__
    error_cls = classify_message(message)
    return error_cls(message)


def classify_error(exc: BaseException) -> ErrorKind:
    if isinstance(exc, PegBotError):
        return exc.kind
    return to_trade_error(exc).kind
