"""
Peg Keeper Environment Settings

Deployment wiring only: endpoints, addresses, credentials and paths.
Trading behaviour (thresholds, limits, tiers) lives in config/bot_config.py.
"""
from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings


class PegBotSettings(BaseSettings):
    """Environment configuration for one market"""

    # Chain
    rpc_url: str = Field(
        default="https://bsc-dataseed.binance.org",
        validation_alias="BSC_RPC_URL",
    )
    expedited_rpc_url: str = Field(default="", validation_alias="EXPEDITED_RPC_URL")
    chain_id: int = Field(default=56, validation_alias="CHAIN_ID")

    # Wallet
    private_key: str = Field(default="", validation_alias="BOT_PRIVATE_KEY")
    wallet_address: str = Field(default="", validation_alias="BOT_WALLET_ADDRESS")

    # Contracts
    pool_address: str = Field(default="", validation_alias="POOL_ADDRESS")
    token_address: str = Field(default="", validation_alias="TOKEN_ADDRESS")
    wrapped_native_address: str = Field(
        default="0xbb4CdB9CBd36B01bD1cBaEBF2De08d9173bc095c",  # WBNB
        validation_alias="WRAPPED_NATIVE_ADDRESS",
    )
    router_address: str = Field(
        default="0x13f4EA83D0bd40E75C8222255bc855a974568Dd4",  # PancakeSwap V3 SmartRouter
        validation_alias="ROUTER_ADDRESS",
    )
    quoter_address: str = Field(
        default="0xB048Bbc1Ee6b733FFfCFb9e9CeF7375518e25997",  # PancakeSwap V3 QuoterV2
        validation_alias="QUOTER_ADDRESS",
    )

    # Reference feeds (Chainlink aggregators on BSC)
    native_usd_feed: str = Field(
        default="0x0567F2323251f0Aab15c8dFb1967E4e8A7D42aeE",  # BNB/USD
        validation_alias="CHAINLINK_NATIVE_USD",
    )
    benchmark_usd_feed: str = Field(
        default="0x264990fbd0A4796A3E3d8E37C4d5F87a3aCa5Ebf",  # BTC/USD
        validation_alias="CHAINLINK_BENCHMARK_USD",
    )
    fallback_price_api: str = Field(
        default="https://api.coingecko.com/api/v3",
        validation_alias="FALLBACK_PRICE_API",
    )
    fallback_native_id: str = Field(default="binancecoin", validation_alias="FALLBACK_NATIVE_ID")
    fallback_benchmark_id: str = Field(default="bitcoin", validation_alias="FALLBACK_BENCHMARK_ID")

    # Runtime
    data_dir: str = Field(default="data", validation_alias="PEG_DATA_DIR")
    log_level: str = Field(default="INFO", validation_alias="LOG_LEVEL")
    dry_run: bool = Field(default=True, validation_alias="DRY_RUN")
    loop_interval_seconds: float = Field(default=60.0, validation_alias="LOOP_INTERVAL_SECONDS")
    kill_switch_file: str = Field(default="KILL_SWITCH.txt", validation_alias="KILL_SWITCH_FILE")
    max_rpc_latency_ms: float = Field(default=1500.0, validation_alias="MAX_RPC_LATENCY_MS")

    model_config = {
        "env_file": ".env",
        "env_file_encoding": "utf-8",
        "extra": "ignore",  # Ignore unknown env vars
        "populate_by_name": True,  # Allow both field name and alias
    }

    def is_live_ready(self) -> bool:
        """Check if the minimum wiring for live trading is present."""
        required = [
            self.private_key,
            self.wallet_address,
            self.pool_address,
            self.token_address,
        ]
        return all(v and v != "REPLACE_ME" for v in required)

    def masked_wallet(self) -> Optional[str]:
        if not self.wallet_address:
            return None
        return f"{self.wallet_address[:6]}...{self.wallet_address[-4:]}"


# Global settings instance
settings = PegBotSettings()
