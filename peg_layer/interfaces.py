"""
Collaborator Contracts

The core never touches an RPC library or a database directly. It talks to:

- ChainClient:         pool state, balances, gas, quotes, signing, receipts
- ReferenceFeedClient: USD rates for the native and benchmark assets
- Repository:          trade/price journal, config snapshots, daily volume

Everything crossing these seams is a plain Python type defined here.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal
from typing import Dict, List, Optional

from peg_layer.amounts import Amount


# =============================================================================
# CHAIN TYPES
# =============================================================================

@dataclass(frozen=True)
class PoolState:
    """Raw state of the V3 pool at one block."""
    sqrt_price_x96: int
    tick: int
    liquidity: int
    token0: str
    token1: str
    decimals0: int
    decimals1: int
    fee: int                 # pips, 2500 = 0.25%
    block_number: int
    block_timestamp: datetime

    def to_dict(self) -> dict:
        return {
            "sqrt_price_x96": str(self.sqrt_price_x96),
            "tick": self.tick,
            "liquidity": str(self.liquidity),
            "token0": self.token0,
            "token1": self.token1,
            "fee": self.fee,
            "block_number": self.block_number,
            "block_timestamp": self.block_timestamp.isoformat(),
        }


@dataclass(frozen=True)
class WalletBalances:
    native: Amount
    token: Amount
    token_allowance: Amount

    def of(self, symbol: str) -> Amount:
        if symbol == self.native.symbol:
            return self.native
        if symbol == self.token.symbol:
            return self.token
        raise KeyError(f"No balance tracked for {symbol}")


@dataclass(frozen=True)
class SwapRequest:
    """Exact-input single-pool swap through the router."""
    token_in: str
    token_out: str
    fee: int
    amount_in: int
    amount_out_minimum: int
    deadline: int
    native_in: bool = False      # send amount_in as tx value (router wraps it)
    native_out: bool = False     # unwrap the output to the wallet


@dataclass(frozen=True)
class SignedTransaction:
    tx_hash: str
    raw: bytes
    nonce: int


@dataclass(frozen=True)
class TxReceipt:
    tx_hash: str
    status: int                  # 1 = success, 0 = reverted
    block_number: int
    gas_used: int
    effective_gas_price: int
    revert_reason: Optional[str] = None

    @property
    def succeeded(self) -> bool:
        return self.status == 1


@dataclass(frozen=True)
class ReferenceRate:
    symbol: str
    value: Decimal
    updated_at: datetime
    source: str

    def age_seconds(self, now: datetime) -> float:
        return (now - self.updated_at).total_seconds()

    def to_dict(self) -> dict:
        return {
            "symbol": self.symbol,
            "value": str(self.value),
            "updated_at": self.updated_at.isoformat(),
            "source": self.source,
        }


# =============================================================================
# CLIENT CONTRACTS
# =============================================================================

class ChainClient(ABC):
    """Read and write access to the pool, the token and the wallet."""

    wallet_address: str
    token_address: str
    wrapped_native_address: str
    router_address: str

    @abstractmethod
    async def get_pool_state(self) -> PoolState:
        pass

    @abstractmethod
    async def get_twap_tick(self, window_seconds: int) -> int:
        """Arithmetic-mean tick over the last `window_seconds`."""
        pass

    @abstractmethod
    async def get_balances(self) -> WalletBalances:
        pass

    @abstractmethod
    async def get_gas_price(self) -> int:
        """Base network gas price in wei."""
        pass

    @abstractmethod
    async def quote_exact_input(self, token_in: str, token_out: str, fee: int, amount_in: int) -> int:
        pass

    @abstractmethod
    async def estimate_swap_gas(self, request: SwapRequest) -> int:
        pass

    @abstractmethod
    async def sign_swap(self, request: SwapRequest, gas_price: int, gas_limit: int) -> SignedTransaction:
        pass

    @abstractmethod
    async def send_swap(self, signed: SignedTransaction, expedited: bool = False) -> str:
        """Broadcast a signed swap; returns its hash."""
        pass

    @abstractmethod
    async def get_receipt(self, tx_hash: str) -> Optional[TxReceipt]:
        """Receipt if mined, None otherwise."""
        pass

    @abstractmethod
    async def wait_for_receipt(self, tx_hash: str, timeout: float) -> TxReceipt:
        """Raises ReceiptTimeout when nothing is mined within `timeout`."""
        pass

    @abstractmethod
    async def get_confirmed_nonce(self) -> int:
        """Number of transactions from the wallet included in the latest block."""
        pass

    @abstractmethod
    async def approve(self, amount: int, gas_price: int) -> str:
        """Approve the router to spend `amount` of the token."""
        pass


class ReferenceFeedClient(ABC):
    """Source of USD reference rates."""

    name: str = "feed"

    @abstractmethod
    async def latest_rate(self, symbol: str) -> ReferenceRate:
        pass


class Repository(ABC):
    """Durable storage for the bot's records and configuration."""

    @abstractmethod
    async def save_trade(self, result) -> None:
        pass

    @abstractmethod
    async def save_price_sample(self, sample) -> None:
        pass

    @abstractmethod
    async def load_config(self):
        """Current BotConfig snapshot (defaults when nothing is stored)."""
        pass

    @abstractmethod
    async def update_config(self, partial: dict):
        """Validate, persist and return the new BotConfig snapshot."""
        pass

    @abstractmethod
    async def get_daily_volume(self, day: date) -> Dict[str, Amount]:
        """Sum of successful (and still pending) trade inputs per asset symbol for a UTC day."""
        pass

    @abstractmethod
    async def get_last_trade_at(self) -> Optional[datetime]:
        """Settlement time of the most recent successful trade."""
        pass

    @abstractmethod
    async def get_pending_trades(self) -> List:
        """Trades whose latest saved status is PENDING, oldest first."""
        pass
