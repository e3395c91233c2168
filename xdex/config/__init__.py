"""
XDEX Configuration

Loads all sections of xdex.toml at startup.
Environment variables override TOML values.
"""

from .loader import (
    ExchangeConfig,
    OracleConfig,
    LoggingConfig,
    XDEXConfig,
    load_config,
)

__all__ = [
    "ExchangeConfig",
    "OracleConfig",
    "LoggingConfig",
    "XDEXConfig",
    "load_config",
]
