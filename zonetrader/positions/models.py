"""Managed position model."""

from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from zonetrader.strategy.models import Direction


@dataclass(frozen=True)
class ManagedPosition:
    """A live broker position under management.

    ``initial_r`` is the account-currency risk at entry (one R).  Records are
    immutable; the manager swaps in updated copies by ``ticket``.
    """

    ticket: int
    direction: Direction
    entry_price: float
    stop_loss: Optional[float]
    lot_size: float
    trade_type: str  # "fade", "retest" or "pyramid"
    open_time: datetime
    initial_r: float
    pyramid_count: int = 0
    profit: float = 0.0
    partial_level: int = 0  # pyramid level at which the last partial was taken
    realised_pnl: float = 0.0  # already booked with the risk engine
    zone_id: Optional[int] = None

    @property
    def r_multiple(self) -> float:
        if self.initial_r <= 0:
            return 0.0
        return self.profit / self.initial_r
