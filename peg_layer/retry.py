"""
Bounded Retries for Chain Reads

An explicit RetryPolicy value is handed to every network call site:

- Each attempt runs under a per-call timeout (timeout -> NetworkError)
- Only retryable failures (NetworkError, GasEstimationFailed) are retried
- Backoff grows by BACKOFF_MULTIPLIER up to MAX_BACKOFF
- Transaction broadcast never goes through here
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional, TypeVar

from peg_layer.errors import NetworkError, PegBotError, TradeError, to_trade_error

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class RetryPolicy:
    """How many times to try a call and how long to wait in between."""
    max_attempts: int = 3
    initial_backoff: float = 0.5
    backoff_multiplier: float = 2.0
    max_backoff: float = 5.0
    timeout: Optional[float] = 15.0

    def __post_init__(self):
        if self.max_attempts < 1:
            raise ValueError(f"max_attempts must be >= 1, got {self.max_attempts}")

    def backoff_for(self, attempt: int) -> float:
        """Delay before the retry that follows `attempt` (1-based)."""
        delay = self.initial_backoff * (self.backoff_multiplier ** (attempt - 1))
        return min(delay, self.max_backoff)


NO_RETRY = RetryPolicy(max_attempts=1)


async def call_with_retry(
    fn: Callable[[], Awaitable[T]],
    policy: RetryPolicy,
    label: str = "call",
) -> T:
    """
    Await `fn()` under `policy`.

    Raises:
        TradeError subclass of the last failure once attempts are exhausted,
        or immediately for a non-retryable failure.
    """
    last_error: Optional[TradeError] = None

    for attempt in range(1, policy.max_attempts + 1):
        try:
            if policy.timeout is None:
                return await fn()
            return await asyncio.wait_for(fn(), timeout=policy.timeout)
        except asyncio.TimeoutError:
            last_error = NetworkError(f"{label} timed out after {policy.timeout}s")
        except PegBotError as e:
            if not e.retryable:
                raise
            last_error = e
        except Exception as e:
            error = to_trade_error(e)
            if not error.retryable:
                raise error from e
            last_error = error

        if attempt < policy.max_attempts:
            wait_time = policy.backoff_for(attempt)
            logger.warning(
                f"🔁 {label} failed (attempt {attempt}/{policy.max_attempts}): "
                f"{last_error} - retrying in {wait_time:.1f}s"
            )
            await asyncio.sleep(wait_time)

    logger.error(f"❌ {label} failed after {policy.max_attempts} attempts: {last_error}")
    raise last_error
