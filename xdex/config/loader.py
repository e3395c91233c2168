"""
XDEX TOML Configuration Loader

Loads all sections of xdex.toml at startup with environment variable overrides.
Every section is a dataclass with from_dict / apply_env, and the root
XDEXConfig adds from_file / validate / to_dict.

Environment variable mapping:
    [exchange] fee_bps              → XDEX_FEE_BPS
    [exchange] price_precision      → XDEX_PRICE_PRECISION
    [exchange] partial_fill_policy  → XDEX_PARTIAL_FILL_POLICY
    [oracle] max_staleness_seconds  → XDEX_ORACLE_MAX_STALENESS
    [logging] level                 → XDEX_LOG_LEVEL
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Optional

try:
    import tomllib as tomli  # Python 3.11+
except ImportError:
    import tomli  # type: ignore[no-redef]

from ..constants import (
    DEFAULT_FEE_BPS,
    DEFAULT_PRICE_PRECISION,
    DEFAULT_TIME_LOCK_SECONDS,
    MAX_BATCH_SIZE,
    MAX_FEE_BPS,
    ORACLE_MAX_STALENESS_SECONDS,
    TWAP_MAX_OBSERVATIONS,
    TWAP_WINDOW_SECONDS,
)
from ..exceptions import ConfigurationError

logger = logging.getLogger(__name__)

PARTIAL_FILL_POLICIES = ("keep_remainder", "consume_on_match")
LIQUIDITY_RATIO_POLICIES = ("refund", "reject")
LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")


# ---------------------------------------------------------------------------
# Section dataclasses: one per [section] of xdex.example.toml
# ---------------------------------------------------------------------------


@dataclass
class ExchangeConfig:
    """[exchange] section."""
    fee_bps: int = DEFAULT_FEE_BPS
    price_precision: int = DEFAULT_PRICE_PRECISION
    partial_fill_policy: str = "keep_remainder"
    liquidity_ratio_policy: str = "refund"
    ratio_tolerance_bps: int = 0
    time_lock_seconds: int = DEFAULT_TIME_LOCK_SECONDS
    max_batch_size: int = MAX_BATCH_SIZE

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ExchangeConfig":
        return cls(
            fee_bps=int(data.get("fee_bps", DEFAULT_FEE_BPS)),
            price_precision=int(data.get("price_precision", DEFAULT_PRICE_PRECISION)),
            partial_fill_policy=data.get("partial_fill_policy", "keep_remainder"),
            liquidity_ratio_policy=data.get("liquidity_ratio_policy", "refund"),
            ratio_tolerance_bps=int(data.get("ratio_tolerance_bps", 0)),
            time_lock_seconds=int(data.get("time_lock_seconds", DEFAULT_TIME_LOCK_SECONDS)),
            max_batch_size=int(data.get("max_batch_size", MAX_BATCH_SIZE)),
        )

    def apply_env(self) -> None:
        """Override from environment variables."""
        if v := os.environ.get("XDEX_FEE_BPS"):
            self.fee_bps = int(v)
        if v := os.environ.get("XDEX_PRICE_PRECISION"):
            self.price_precision = int(v)
        if v := os.environ.get("XDEX_PARTIAL_FILL_POLICY"):
            self.partial_fill_policy = v.strip().lower()

    def validate(self) -> None:
        if not 0 <= self.fee_bps <= MAX_FEE_BPS:
            raise ConfigurationError(f"fee_bps must be within 0..{MAX_FEE_BPS}, got {self.fee_bps}")
        if self.price_precision < 1:
            raise ConfigurationError("price_precision must be >= 1")
        if self.partial_fill_policy not in PARTIAL_FILL_POLICIES:
            raise ConfigurationError(f"Invalid partial_fill_policy: {self.partial_fill_policy}")
        if self.liquidity_ratio_policy not in LIQUIDITY_RATIO_POLICIES:
            raise ConfigurationError(f"Invalid liquidity_ratio_policy: {self.liquidity_ratio_policy}")
        if self.ratio_tolerance_bps < 0:
            raise ConfigurationError("ratio_tolerance_bps cannot be negative")
        if self.time_lock_seconds < 0:
            raise ConfigurationError("time_lock_seconds cannot be negative")
        if self.max_batch_size < 1:
            raise ConfigurationError("max_batch_size must be >= 1")


@dataclass
class OracleConfig:
    """[oracle] section."""
    max_staleness_seconds: int = ORACLE_MAX_STALENESS_SECONDS
    twap_window_seconds: int = TWAP_WINDOW_SECONDS
    max_observations: int = TWAP_MAX_OBSERVATIONS

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "OracleConfig":
        return cls(
            max_staleness_seconds=int(data.get("max_staleness_seconds", ORACLE_MAX_STALENESS_SECONDS)),
            twap_window_seconds=int(data.get("twap_window_seconds", TWAP_WINDOW_SECONDS)),
            max_observations=int(data.get("max_observations", TWAP_MAX_OBSERVATIONS)),
        )

    def apply_env(self) -> None:
        if v := os.environ.get("XDEX_ORACLE_MAX_STALENESS"):
            self.max_staleness_seconds = int(v)

    def validate(self) -> None:
        if self.max_staleness_seconds < 0:
            raise ConfigurationError("max_staleness_seconds cannot be negative")
        if self.twap_window_seconds <= 0:
            raise ConfigurationError("twap_window_seconds must be positive")
        if self.max_observations < 2:
            raise ConfigurationError("max_observations must be >= 2")


@dataclass
class LoggingConfig:
    """[logging] section."""
    level: str = "INFO"

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "LoggingConfig":
        return cls(level=str(data.get("level", "INFO")).upper())

    def apply_env(self) -> None:
        if v := os.environ.get("XDEX_LOG_LEVEL"):
            self.level = v.upper()

    def apply(self) -> None:
        """Push the configured level to the running log handlers."""
        from ..logger import set_log_level
        set_log_level(self.level)


# ---------------------------------------------------------------------------
# Root config
# ---------------------------------------------------------------------------

@dataclass
class XDEXConfig:
    """Complete engine configuration."""
    exchange: ExchangeConfig = field(default_factory=ExchangeConfig)
    oracle: OracleConfig = field(default_factory=OracleConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "XDEXConfig":
        return cls(
            exchange=ExchangeConfig.from_dict(data.get("exchange", {})),
            oracle=OracleConfig.from_dict(data.get("oracle", {})),
            logging=LoggingConfig.from_dict(data.get("logging", {})),
        )

    @classmethod
    def from_file(cls, config_path: str) -> "XDEXConfig":
        """
        Load configuration from a TOML file.

        A missing file is not an error: defaults are used (with env
        overrides applied).
        """
        path = Path(config_path)
        if not path.exists():
            logger.warning("Config file not found: %s, using defaults", config_path)
            cfg = cls()
            cfg.apply_env()
            return cfg

        with open(path, "rb") as f:
            try:
                raw = tomli.load(f)
            except tomli.TOMLDecodeError as e:
                raise ConfigurationError(f"Malformed config file {config_path}: {e}") from e

        cfg = cls.from_dict(raw)
        cfg.apply_env()
        return cfg

    # --- env overrides ----------------------------------------------------

    def apply_env(self) -> None:
        """Apply environment variable overrides to all sections."""
        self.exchange.apply_env()
        self.oracle.apply_env()
        self.logging.apply_env()

    # --- validation -------------------------------------------------------

    def validate(self) -> bool:
        """
        Validate all configuration sections.

        Returns:
            True if all valid

        Raises:
            ConfigurationError: on invalid config
        """
        self.exchange.validate()
        self.oracle.validate()
        if self.logging.level not in LOG_LEVELS:
            raise ConfigurationError(f"Invalid log level: {self.logging.level}")
        return True

    # --- serialisation ----------------------------------------------------

    def to_dict(self) -> Dict[str, Any]:
        """Serialize to dict (for diagnostics)."""
        return {
            "exchange": {
                "fee_bps": self.exchange.fee_bps,
                "price_precision": self.exchange.price_precision,
                "partial_fill_policy": self.exchange.partial_fill_policy,
                "liquidity_ratio_policy": self.exchange.liquidity_ratio_policy,
                "ratio_tolerance_bps": self.exchange.ratio_tolerance_bps,
                "time_lock_seconds": self.exchange.time_lock_seconds,
                "max_batch_size": self.exchange.max_batch_size,
            },
            "oracle": {
                "max_staleness_seconds": self.oracle.max_staleness_seconds,
                "twap_window_seconds": self.oracle.twap_window_seconds,
                "max_observations": self.oracle.max_observations,
            },
            "logging": {
                "level": self.logging.level,
            },
        }


# -----------------------------------------------------------------------
# Convenience function
# -----------------------------------------------------------------------

def load_config(path: Optional[str] = None) -> XDEXConfig:
    """
    Load engine configuration.

    Resolution order:
        1. Explicit *path* argument
        2. XDEX_CONFIG env var
        3. ./xdex.toml in current directory
        4. Defaults (with env overrides)
    """
    if path is None:
        path = os.environ.get("XDEX_CONFIG", "xdex.toml")

    cfg = XDEXConfig.from_file(path)
    cfg.validate()
    cfg.logging.apply()
    return cfg
