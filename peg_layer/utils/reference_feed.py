"""
Reference Feeds
USD rates from Chainlink aggregators (primary) and a public HTTP price API (fallback)
"""
from datetime import datetime, timezone
from decimal import Decimal
from typing import Dict, Optional

import httpx
import structlog
from web3 import AsyncHTTPProvider, AsyncWeb3, Web3

from peg_layer.errors import NetworkError, PriceUnavailable
from peg_layer.interfaces import ReferenceFeedClient, ReferenceRate

log = structlog.get_logger()


AGGREGATOR_ABI = [
    {"inputs": [], "name": "decimals", "outputs": [{"name": "", "type": "uint8"}],
     "stateMutability": "view", "type": "function"},
    {
        "inputs": [],
        "name": "latestRoundData",
        "outputs": [
            {"name": "roundId", "type": "uint80"},
            {"name": "answer", "type": "int256"},
            {"name": "startedAt", "type": "uint256"},
            {"name": "updatedAt", "type": "uint256"},
            {"name": "answeredInRound", "type": "uint80"},
        ],
        "stateMutability": "view",
        "type": "function",
    },
]


class ChainlinkFeedClient(ReferenceFeedClient):
    """
    Reads `latestRoundData` from one aggregator per symbol.

    The age check is left to the oracle; this client only reports what the
    aggregator says, including its `updatedAt`.
    """

    name = "chainlink"

    def __init__(self, rpc_url: str, feeds: Dict[str, str], request_timeout: float = 15.0):
        self.w3 = AsyncWeb3(AsyncHTTPProvider(rpc_url, request_kwargs={"timeout": request_timeout}))
        self._aggregators = {
            symbol: self.w3.eth.contract(address=Web3.to_checksum_address(address), abi=AGGREGATOR_ABI)
            for symbol, address in feeds.items()
            if address
        }
        self._decimals: Dict[str, int] = {}
        log.info("chainlink_feeds_initialized", symbols=sorted(self._aggregators))

    async def latest_rate(self, symbol: str) -> ReferenceRate:
        aggregator = self._aggregators.get(symbol)
        if aggregator is None:
            raise PriceUnavailable(f"No Chainlink aggregator configured for {symbol}")

        if symbol not in self._decimals:
            self._decimals[symbol] = await aggregator.functions.decimals().call()
        _, answer, _, updated_at, _ = await aggregator.functions.latestRoundData().call()

        if answer <= 0:
            raise PriceUnavailable(f"Chainlink {symbol}/USD answered {answer}")

        value = Decimal(answer).scaleb(-self._decimals[symbol])
        return ReferenceRate(
            symbol=symbol,
            value=value,
            updated_at=datetime.fromtimestamp(updated_at, tz=timezone.utc),
            source=self.name,
        )


class HttpPriceFeedClient(ReferenceFeedClient):
    """
    CoinGecko-style `simple/price` endpoint.

    `ids` maps our symbols to the API's coin ids, e.g. {"BNB": "binancecoin"}.
    """

    name = "http"

    def __init__(self, base_url: str, ids: Dict[str, str], timeout: float = 10.0):
        self.base_url = base_url.rstrip("/")
        self.ids = {symbol: coin_id for symbol, coin_id in ids.items() if coin_id}
        self.timeout = timeout
        self._client: Optional[httpx.AsyncClient] = None

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(base_url=self.base_url, timeout=self.timeout)
        return self._client

    async def latest_rate(self, symbol: str) -> ReferenceRate:
        coin_id = self.ids.get(symbol)
        if coin_id is None:
            raise PriceUnavailable(f"No HTTP price id configured for {symbol}")

        client = await self._get_client()
        try:
            response = await client.get(
                "/simple/price",
                params={"ids": coin_id, "vs_currencies": "usd", "include_last_updated_at": "true"},
            )
            response.raise_for_status()
            data = response.json()
        except httpx.HTTPError as e:
            log.warning("http_price_failed", symbol=symbol, error=str(e))
            raise NetworkError(f"HTTP price request for {symbol} failed: {e}") from e

        entry = data.get(coin_id) or {}
        if "usd" not in entry:
            raise PriceUnavailable(f"HTTP price response has no USD quote for {coin_id}")

        updated_at = entry.get("last_updated_at")
        return ReferenceRate(
            symbol=symbol,
            value=Decimal(str(entry["usd"])),
            updated_at=(
                datetime.fromtimestamp(updated_at, tz=timezone.utc)
                if updated_at else datetime.now(timezone.utc)
            ),
            source=self.name,
        )

    async def close(self):
        if self._client:
            await self._client.aclose()
            self._client = None
