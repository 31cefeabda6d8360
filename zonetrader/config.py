"""ZoneTrader — application configuration.

Loads .env variables into a typed, process-wide config object.
Validates every value on startup; a bad value is fatal.
"""

import logging
import os
from dataclasses import dataclass

from dotenv import load_dotenv

from zonetrader.errors import InvalidInput


LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"

_TRUE_VALUES = {"1", "true", "yes", "on"}
_FALSE_VALUES = {"0", "false", "no", "off"}


@dataclass(frozen=True)
class Config:
    """Typed configuration loaded from environment variables."""

    symbol: str
    base_risk_pct: float
    max_drawdown_pct: float
    max_pyramids: int
    zone_depth_multiplier: float
    macro_filter_enabled: bool
    trade_tag: str
    macro_trend_symbol: str
    macro_vol_symbol: str
    strength_band: float
    log_level: str

    def __post_init__(self) -> None:
        if self.base_risk_pct <= 0:
            raise InvalidInput(
                f"BASE_RISK_PCT must be positive, got {self.base_risk_pct}"
            )
        if not 0 < self.max_drawdown_pct <= 100:
            raise InvalidInput(
                f"MAX_DRAWDOWN_PCT must be in (0, 100], got {self.max_drawdown_pct}"
            )
        if self.max_pyramids < 0:
            raise InvalidInput(
                f"MAX_PYRAMIDS must be >= 0, got {self.max_pyramids}"
            )
        if self.zone_depth_multiplier <= 0:
            raise InvalidInput(
                "ZONE_DEPTH_MULTIPLIER must be positive, "
                f"got {self.zone_depth_multiplier}"
            )
        if self.strength_band <= 0:
            raise InvalidInput(
                f"STRENGTH_BAND must be positive, got {self.strength_band}"
            )
        if not self.symbol:
            raise InvalidInput("TRADE_SYMBOL must not be empty")

    @property
    def base_risk_fraction(self) -> float:
        """Base risk per trade as a fraction (0.5 % → 0.005)."""
        return self.base_risk_pct / 100.0


def _env_float(name: str, default: str) -> float:
    raw = os.environ.get(name, default)
    try:
        return float(raw)
    except ValueError:
        raise InvalidInput(f"{name} must be a number, got '{raw}'") from None


def _env_int(name: str, default: str) -> int:
    raw = os.environ.get(name, default)
    try:
        return int(raw)
    except ValueError:
        raise InvalidInput(f"{name} must be an integer, got '{raw}'") from None


def _env_bool(name: str, default: str) -> bool:
    raw = os.environ.get(name, default).strip().lower()
    if raw in _TRUE_VALUES:
        return True
    if raw in _FALSE_VALUES:
        return False
    raise InvalidInput(f"{name} must be a boolean, got '{raw}'")


def load_config(env_path: str | None = None) -> Config:
    """Load configuration from environment variables.

    Raises ``InvalidInput`` (a ``ValueError``) naming the offending variable
    when a value is malformed or out of range.
    """
    load_dotenv(dotenv_path=env_path)

    return Config(
        symbol=os.environ.get("TRADE_SYMBOL", "EUR_USD"),
        base_risk_pct=_env_float("BASE_RISK_PCT", "0.5"),
        max_drawdown_pct=_env_float("MAX_DRAWDOWN_PCT", "10.0"),
        max_pyramids=_env_int("MAX_PYRAMIDS", "2"),
        zone_depth_multiplier=_env_float("ZONE_DEPTH_MULTIPLIER", "0.5"),
        macro_filter_enabled=_env_bool("MACRO_FILTER_ENABLED", "true"),
        trade_tag=os.environ.get("TRADE_TAG", "ZoneTrader"),
        macro_trend_symbol=os.environ.get("MACRO_TREND_SYMBOL", "DXY"),
        macro_vol_symbol=os.environ.get("MACRO_VOL_SYMBOL", "SPX500_USD"),
        strength_band=_env_float("STRENGTH_BAND", "0.0005"),
        log_level=os.environ.get("LOG_LEVEL", "INFO"),
    )


def configure_logging(level: str = "INFO") -> None:
    """Install the root handler with the standard ZoneTrader log format."""
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format=LOG_FORMAT,
    )
