"""
Configuration package.

This package contains environment settings and the per-session engine configuration.
"""

from volumebot.config.config import (
    EngineConfig,
    RandomizationConfig,
    RiskConfig,
    Settings,
    StrategiesConfig,
    StrategyConfig,
    WalletConfig,
)

__all__ = [
    "EngineConfig",
    "RandomizationConfig",
    "RiskConfig",
    "Settings",
    "StrategiesConfig",
    "StrategyConfig",
    "WalletConfig",
]
