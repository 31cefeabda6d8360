"""Strategy data models — typed representations for zones and signals."""

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Optional


class Direction(str, Enum):
    """Trade direction.  There is deliberately no "both" state."""

    NONE = "none"
    LONG = "long"
    SHORT = "short"

    @property
    def sign(self) -> int:
        """+1 for long, -1 for short, 0 for none."""
        if self is Direction.LONG:
            return 1
        if self is Direction.SHORT:
            return -1
        return 0


# Zone mid-prices closer than this are the same zone.
MID_PRICE_TOLERANCE = 1e-7


@dataclass(frozen=True)
class Pivot:
    """A fractal swing point on the daily chart."""

    price: float
    is_high: bool
    time: Optional[datetime] = None


@dataclass(frozen=True)
class Zone:
    """A support/resistance band around a cluster of pivots.

    Zones are immutable values; the detector's store swaps in updated copies
    keyed by ``zone_id``.
    """

    zone_id: int
    mid_price: float
    width: float
    strength: int
    pending_fade: bool = False
    fade_direction: Direction = Direction.NONE
    break_direction: Direction = Direction.NONE
    break_time: Optional[datetime] = None
    last_trade_time: Optional[datetime] = None

    @property
    def upper_bound(self) -> float:
        return self.mid_price + self.width / 2.0

    @property
    def lower_bound(self) -> float:
        return self.mid_price - self.width / 2.0

    def contains(self, price: float) -> bool:
        """``True`` when *price* lies inside the band (edges inclusive)."""
        return self.lower_bound <= price <= self.upper_bound


@dataclass(frozen=True)
class TradeSignal:
    """A confirmed entry request produced by trigger evaluation."""

    zone_id: int
    direction: Direction
    trade_type: str  # "fade" or "retest"
    stop_loss: float
    entry_price: Optional[float] = None  # limit price; None for market orders
    reason: str = ""
