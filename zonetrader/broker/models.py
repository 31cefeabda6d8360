"""Broker data models — typed representations of what the broker collaborator
returns or accepts."""

from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from zonetrader.strategy.models import Direction


@dataclass(frozen=True)
class Candle:
    """A single OHLC bar with tick volume."""

    time: datetime  # bar open time (UTC)
    open: float
    high: float
    low: float
    close: float
    volume: int = 0


@dataclass(frozen=True)
class AccountSummary:
    """Account equity snapshot."""

    balance: float
    equity: float


@dataclass(frozen=True)
class SymbolSpec:
    """Trading constraints of one instrument."""

    symbol: str
    min_lot: float = 0.01
    lot_step: float = 0.01
    max_lot: float = 100.0
    min_stop_distance: float = 0.0  # price units
    value_per_unit: float = 100_000.0  # account currency per 1.0 price move per lot


@dataclass(frozen=True)
class OrderResult:
    """Outcome of an order placement."""

    ticket: Optional[int]
    success: bool
    price: Optional[float] = None
    message: str = ""


@dataclass(frozen=True)
class PositionSnapshot:
    """An open broker position as seen at one instant."""

    ticket: int
    symbol: str
    direction: Direction
    volume: float
    entry_price: float
    stop_loss: Optional[float]
    profit: float
    open_time: datetime
    label: str = ""


@dataclass(frozen=True)
class ClosedTrade:
    """A fully or partially closed trade, as recorded by the simulated broker."""

    ticket: int
    direction: Direction
    volume: float
    entry_price: float
    exit_price: float
    pnl: float
    open_time: datetime
    close_time: datetime
    label: str = ""
    close_reason: str = ""
