"""
Peg Keeper Configuration
"""
from .settings import settings, PegBotSettings
from .bot_config import (
    BotConfig,
    ConfigError,
    GasSettings,
    MarketConfig,
    OracleSettings,
    SafetySettings,
    TierSettings,
    TierTable,
    TradeLimits,
    DEFAULT_BOT_CONFIG,
)

__all__ = [
    "settings",
    "PegBotSettings",
    "BotConfig",
    "ConfigError",
    "GasSettings",
    "MarketConfig",
    "OracleSettings",
    "SafetySettings",
    "TierSettings",
    "TierTable",
    "TradeLimits",
    "DEFAULT_BOT_CONFIG",
]
