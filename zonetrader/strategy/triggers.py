"""Trigger pattern checks — pure functions, no I/O.

Two families are evaluated against each zone:

* **Liquidity-sweep fade** — a 4H wick pierces a zone edge by a fraction of
  ATR but closes back inside; confirmed by a higher low / lower high on H1.
* **Break-and-retest** — a 4H close clears the zone by half an ATR; later
  price returns into the band and an H1 inside bar confirms the retest.
"""

from collections import deque
from datetime import datetime, timedelta
from typing import Optional

from zonetrader.broker.models import Candle
from zonetrader.strategy.models import Direction, Zone


SWEEP_ATR_FRACTION = 0.25
BREAK_ATR_FRACTION = 0.5
STOP_ATR_BUFFER = 1.0

EXECUTION_BAR = timedelta(hours=4)
RETEST_WINDOW = 12 * EXECUTION_BAR
BREAK_COOLDOWN = timedelta(days=1)

MAX_BREAKS_PER_HOUR = 2
MAX_BREAKS_PER_PASS = 2


# ── Liquidity sweep ──────────────────────────────────────────────────────


def detect_sweep(bar: Candle, zone: Zone, atr: float) -> Direction:
    """Return the fade direction implied by a sweep of *zone* on *bar*.

    * high above ``upper + 0.25·ATR`` and close back under ``upper`` → SHORT
    * low below ``lower − 0.25·ATR`` and close back over ``lower`` → LONG
    """
    excursion = SWEEP_ATR_FRACTION * atr
    if bar.high > zone.upper_bound + excursion and bar.close < zone.upper_bound:
        return Direction.SHORT
    if bar.low < zone.lower_bound - excursion and bar.close > zone.lower_bound:
        return Direction.LONG
    return Direction.NONE


def is_fade_confirmed(direction: Direction, last: Candle, previous: Candle) -> bool:
    """Higher low confirms a long fade, lower high confirms a short fade."""
    if direction is Direction.LONG:
        return last.low > previous.low
    if direction is Direction.SHORT:
        return last.high < previous.high
    return False


def fade_stop(zone: Zone, direction: Direction, atr: float) -> float:
    """Stop beyond the swept zone edge plus one ATR."""
    if direction is Direction.LONG:
        return zone.lower_bound - STOP_ATR_BUFFER * atr
    if direction is Direction.SHORT:
        return zone.upper_bound + STOP_ATR_BUFFER * atr
    raise ValueError(f"direction must be LONG or SHORT, got {direction}")


# ── Break and retest ─────────────────────────────────────────────────────


def detect_break(bar: Candle, zone: Zone, atr: float) -> Direction:
    """Direction of a decisive close beyond the zone, or NONE."""
    margin = BREAK_ATR_FRACTION * atr
    if bar.close > zone.upper_bound + margin:
        return Direction.LONG
    if bar.close < zone.lower_bound - margin:
        return Direction.SHORT
    return Direction.NONE


def is_new_break(zone: Zone, direction: Direction, now: datetime) -> bool:
    """A break counts only if it differs from the recorded one and the
    zone's last break is at least a day old."""
    if direction is Direction.NONE or direction is zone.break_direction:
        return False
    if zone.break_time is not None and now - zone.break_time < BREAK_COOLDOWN:
        return False
    return True


def in_retest_window(zone: Zone, now: datetime) -> bool:
    return zone.break_time is not None and now - zone.break_time <= RETEST_WINDOW


def is_retest(zone: Zone, price: float, last_close: Optional[float] = None) -> bool:
    """Price is back inside the band, arriving from the break side.

    When *last_close* is given it must still sit on the break side of the
    zone mid-price (or inside the band) for the retest to count.
    """
    if zone.break_direction is Direction.NONE or not zone.contains(price):
        return False
    if last_close is None:
        return True
    if zone.break_direction is Direction.LONG:
        return last_close >= zone.lower_bound
    return last_close <= zone.upper_bound


def is_inside_bar(current: Candle, previous: Candle) -> bool:
    """*current* high/low fully contained in *previous* range."""
    return current.high <= previous.high and current.low >= previous.low


def retest_order_levels(zone: Zone, direction: Direction, atr: float) -> tuple[float, float]:
    """``(limit_price, stop_loss)`` for a retest entry.

    The limit rests at the break-side edge; the stop sits beyond the
    opposite edge plus one ATR.
    """
    if direction is Direction.LONG:
        return zone.upper_bound, zone.lower_bound - STOP_ATR_BUFFER * atr
    if direction is Direction.SHORT:
        return zone.lower_bound, zone.upper_bound + STOP_ATR_BUFFER * atr
    raise ValueError(f"direction must be LONG or SHORT, got {direction}")


class BreakThrottle:
    """Limits how many break detections are accepted.

    At most *per_hour* detections within any rolling hour and at most
    *per_pass* within a single evaluation pass.
    """

    def __init__(
        self,
        per_hour: int = MAX_BREAKS_PER_HOUR,
        per_pass: int = MAX_BREAKS_PER_PASS,
    ) -> None:
        self.per_hour = per_hour
        self.per_pass = per_pass
        self._recent: deque[datetime] = deque()
        self._pass_count = 0

    def start_pass(self, now: datetime) -> None:
        self._pass_count = 0
        while self._recent and now - self._recent[0] >= timedelta(hours=1):
            self._recent.popleft()

    def allow(self) -> bool:
        return self._pass_count < self.per_pass and len(self._recent) < self.per_hour

    def record(self, now: datetime) -> None:
        self._pass_count += 1
        self._recent.append(now)

    @property
    def recent_count(self) -> int:
        return len(self._recent)
