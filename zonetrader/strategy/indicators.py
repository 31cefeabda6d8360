"""Technical indicators — ATR, SMA, extremes, anchored VWAP, returns.
Pure functions, no I/O."""

from datetime import datetime
from typing import Sequence

import numpy as np

from zonetrader.broker.models import Candle
from zonetrader.errors import DataUnavailable


def calculate_atr(candles: Sequence[Candle], period: int = 14) -> float:
    """Calculate the Average True Range over *period* candles.

    Uses the standard True Range definition:
        TR = max(high - low, |high - prev_close|, |low - prev_close|)

    Requires at least ``period + 1`` candles (need a previous close for TR).
    Returns the simple average of the last *period* true ranges.

    Raises ``DataUnavailable`` if insufficient data.
    """
    if len(candles) < period + 1:
        raise DataUnavailable(
            f"Need at least {period + 1} candles for ATR({period}), "
            f"got {len(candles)}"
        )

    true_ranges: list[float] = []
    for i in range(1, len(candles)):
        high = candles[i].high
        low = candles[i].low
        prev_close = candles[i - 1].close
        true_ranges.append(
            max(high - low, abs(high - prev_close), abs(low - prev_close))
        )

    recent = true_ranges[-period:]
    return sum(recent) / len(recent)


def calculate_sma(values: Sequence[float], period: int) -> list[float]:
    """Simple moving average series.

    Returns a list the same length as *values*; entries before the first
    full window are ``float('nan')``.
    """
    if len(values) < period:
        raise DataUnavailable(
            f"Need at least {period} values for SMA({period}), got {len(values)}"
        )
    sma: list[float] = [float("nan")] * len(values)
    window_sum = sum(values[:period])
    sma[period - 1] = window_sum / period
    for i in range(period, len(values)):
        window_sum += values[i] - values[i - period]
        sma[i] = window_sum / period
    return sma


def highest_close(candles: Sequence[Candle], lookback: int) -> float:
    """Highest close of the last *lookback* candles."""
    if not candles:
        raise DataUnavailable("No candles for highest close")
    return max(c.close for c in candles[-lookback:])


def lowest_close(candles: Sequence[Candle], lookback: int) -> float:
    """Lowest close of the last *lookback* candles."""
    if not candles:
        raise DataUnavailable("No candles for lowest close")
    return min(c.close for c in candles[-lookback:])


def anchored_vwap(candles: Sequence[Candle], anchor: datetime) -> float:
    """Volume-weighted average close from *anchor* forward.

    Bars opening before *anchor* are ignored.  When the anchored bars carry
    no volume at all the plain average close is returned.
    """
    anchored = [c for c in candles if c.time >= anchor]
    if not anchored:
        raise DataUnavailable(f"No bars at or after anchor {anchor.isoformat()}")

    closes = np.array([c.close for c in anchored], dtype=float)
    volumes = np.array([c.volume for c in anchored], dtype=float)
    total_volume = volumes.sum()
    if total_volume <= 0:
        return float(closes.mean())
    return float((closes * volumes).sum() / total_volume)


def pct_returns(closes: Sequence[float]) -> np.ndarray:
    """Day-over-day percentage returns (``len(closes) - 1`` values)."""
    arr = np.asarray(closes, dtype=float)
    if arr.size < 2:
        raise DataUnavailable("Need at least 2 closes for returns")
    return (arr[1:] - arr[:-1]) / arr[:-1] * 100.0
