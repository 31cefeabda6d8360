"""Macro filter — gates trade direction on an auxiliary trend and a reference
volatility regime.

Both checks fail open: when their data cannot be fetched the check passes
and a warning is logged.
"""

import logging
from typing import Sequence

import numpy as np

from zonetrader.errors import DataUnavailable
from zonetrader.strategy.indicators import calculate_sma, pct_returns
from zonetrader.strategy.models import Direction

logger = logging.getLogger("zonetrader.macro")

TREND_SMA_PERIOD = 20
VOL_LOOKBACK_SESSIONS = 60
VOL_WEEK_SESSIONS = 5

# Rising auxiliary-index slope is required for *both* directions.  This is a
# stated simplification of the index/instrument relationship.
REQUIRED_TREND_SIGN = 1


def trend_allows(closes: Sequence[float], direction: Direction) -> bool:
    """SMA(20) slope over the last two periods must carry the required sign."""
    sma = calculate_sma(closes, TREND_SMA_PERIOD)
    if len(sma) < TREND_SMA_PERIOD + 1:
        raise DataUnavailable(
            f"Need {TREND_SMA_PERIOD + 1} closes for SMA slope, got {len(closes)}"
        )
    slope = sma[-1] - sma[-2]
    if direction is Direction.NONE:
        return False
    return slope * REQUIRED_TREND_SIGN > 0


def weekly_vol_stats(closes: Sequence[float]) -> tuple[float, float]:
    """``(current_weekly_vol, median_weekly_vol)`` over the trailing window.

    Uses the last ``VOL_LOOKBACK_SESSIONS`` day-over-day percentage returns.
    Weekly vol is the sum of absolute returns over 5 sessions; the median is
    taken across every overlapping 5-session window.
    """
    returns = pct_returns(closes)
    if returns.size < VOL_LOOKBACK_SESSIONS:
        raise DataUnavailable(
            f"Need {VOL_LOOKBACK_SESSIONS} returns, got {returns.size}"
        )
    abs_returns = np.abs(returns[-VOL_LOOKBACK_SESSIONS:])
    window_sums = np.convolve(abs_returns, np.ones(VOL_WEEK_SESSIONS), mode="valid")
    return float(window_sums[-1]), float(np.median(window_sums))


def volatility_allows(closes: Sequence[float]) -> bool:
    current, median = weekly_vol_stats(closes)
    return current < median


class MacroFilter:
    """Direction gate backed by the broker's auxiliary symbol data.

    Args:
        broker: ``BrokerProtocol`` implementation.
        enabled: When ``False`` every direction passes.
        trend_symbol: Auxiliary index whose slow SMA slope is checked.
        vol_symbol: Reference index for the volatility regime check.
    """

    def __init__(
        self,
        broker,
        enabled: bool,
        trend_symbol: str,
        vol_symbol: str,
    ) -> None:
        self._broker = broker
        self.enabled = enabled
        self._trend_symbol = trend_symbol
        self._vol_symbol = vol_symbol

    async def check_filter(self, direction: Direction) -> bool:
        """Return ``True`` when *direction* may be traded."""
        if not self.enabled:
            return True
        trend_ok = await self._check_trend(direction)
        if not trend_ok:
            logger.info("Macro veto: %s trend slope not rising", self._trend_symbol)
            return False
        vol_ok = await self._check_volatility()
        if not vol_ok:
            logger.info("Macro veto: %s weekly vol above median", self._vol_symbol)
            return False
        return True

    async def _check_trend(self, direction: Direction) -> bool:
        try:
            bars = await self._broker.get_daily_bars(
                self._trend_symbol, TREND_SMA_PERIOD + 1,
            )
            return trend_allows([b.close for b in bars], direction)
        except DataUnavailable as exc:
            logger.warning("Macro trend data unavailable, passing: %s", exc)
            return True

    async def _check_volatility(self) -> bool:
        try:
            bars = await self._broker.get_daily_bars(
                self._vol_symbol, VOL_LOOKBACK_SESSIONS + 1,
            )
            return volatility_allows([b.close for b in bars])
        except DataUnavailable as exc:
            logger.warning("Macro volatility data unavailable, passing: %s", exc)
            return True
