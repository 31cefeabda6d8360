"""Trailing stop — Chandelier and anchored-VWAP levels for open positions.

Rules:
  - Chandelier: highest close of the last 10 H4 bars − 3 × ATR(H4) for longs,
    lowest close + 3 × ATR(H4) for shorts.
  - Anchored VWAP: H1 closes weighted by tick volume since the position opened.
  - Long stop = max(chandelier, vwap), short stop = min(chandelier, vwap).
  - A new stop only ever tightens, and must sit at least the broker minimum
    stop distance plus a buffer away from price, otherwise it is skipped.
"""

from typing import Optional

from zonetrader.strategy.models import Direction


CHANDELIER_LOOKBACK = 10
CHANDELIER_ATR_MULT = 3.0
STOP_SAFETY_BUFFER = 0.0002  # price units added to the broker minimum


def chandelier_level(
    direction: Direction,
    extreme_close: float,
    atr: float,
    atr_mult: float = CHANDELIER_ATR_MULT,
) -> float:
    """Chandelier exit level from the recent extreme close."""
    if direction is Direction.LONG:
        return extreme_close - atr_mult * atr
    if direction is Direction.SHORT:
        return extreme_close + atr_mult * atr
    raise ValueError(f"direction must be LONG or SHORT, got {direction}")


def clears_min_distance(
    direction: Direction,
    stop: float,
    price: float,
    min_stop_distance: float,
    buffer: float = STOP_SAFETY_BUFFER,
) -> bool:
    """Stop sits on the loss side of *price* by at least min distance + buffer."""
    required = min_stop_distance + buffer
    if direction is Direction.LONG:
        return price - stop >= required
    return stop - price >= required


def next_trailing_stop(
    direction: Direction,
    current_stop: Optional[float],
    chandelier: float,
    vwap: float,
    price: float,
    min_stop_distance: float,
    buffer: float = STOP_SAFETY_BUFFER,
) -> Optional[float]:
    """Return the new stop if it should move, ``None`` if no change.

    The candidate must tighten the current stop and clear the broker's
    minimum stop distance plus *buffer*; a candidate that fails either test
    is dropped for this cycle rather than adjusted.
    """
    if direction is Direction.LONG:
        candidate = max(chandelier, vwap)
        if current_stop is not None and candidate <= current_stop:
            return None
    elif direction is Direction.SHORT:
        candidate = min(chandelier, vwap)
        if current_stop is not None and candidate >= current_stop:
            return None
    else:
        return None

    if not clears_min_distance(direction, candidate, price, min_stop_distance, buffer):
        return None
    return candidate
