"""In-memory broker for replaying historical bars.

Implements ``BrokerProtocol`` over pre-loaded D / H4 / H1 bars for the traded
symbol plus daily bars for auxiliary symbols.  Simulated time only moves when
``advance_to`` is called; every H1 bar that closes along the way is checked
for limit fills and stop hits.  No real orders are placed.
"""

import bisect
import itertools
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

from zonetrader.broker.base import TF_DAILY, TF_H1, TF_H4
from zonetrader.broker.models import (
    AccountSummary,
    Candle,
    ClosedTrade,
    OrderResult,
    PositionSnapshot,
    SymbolSpec,
)
from zonetrader.errors import DataUnavailable
from zonetrader.strategy.models import Direction

logger = logging.getLogger("zonetrader.backtest")

TIMEFRAME_SPANS: dict[str, timedelta] = {
    TF_DAILY: timedelta(days=1),
    TF_H4: timedelta(hours=4),
    TF_H1: timedelta(hours=1),
}


@dataclass
class _SimPosition:
    ticket: int
    direction: Direction
    volume: float
    entry_price: float
    stop_loss: Optional[float]
    open_time: datetime
    label: str


@dataclass
class _SimOrder:
    ticket: int
    direction: Direction
    price: float
    volume: float
    stop_loss: float
    label: str


class SimulatedBroker:
    """Replays bars and simulates fills, stops and P&L.

    Args:
        symbol: The traded instrument.
        bars: Mapping of timeframe key → candles (oldest first) for *symbol*.
            Must contain at least ``"H1"``.
        spec: Instrument constraints used for validation and P&L.
        initial_balance: Starting account balance.
        aux_daily: Daily candles for auxiliary symbols (macro filter inputs).
    """

    def __init__(
        self,
        symbol: str,
        bars: dict[str, list[Candle]],
        spec: SymbolSpec,
        initial_balance: float = 10_000.0,
        aux_daily: Optional[dict[str, list[Candle]]] = None,
    ) -> None:
        if TF_H1 not in bars or not bars[TF_H1]:
            raise ValueError("SimulatedBroker needs H1 bars")
        self._symbol = symbol
        self._bars = bars
        self._aux = aux_daily or {}
        self._spec = spec
        self._balance = initial_balance
        self._now: Optional[datetime] = None
        self._cursor = 0  # next H1 bar to process
        self._tickets = itertools.count(1)
        self._positions: dict[int, _SimPosition] = {}
        self._orders: dict[int, _SimOrder] = {}
        self.closed_trades: list[ClosedTrade] = []
        self.rejections: int = 0

    # ── Clock ────────────────────────────────────────────────────────────

    @property
    def now(self) -> Optional[datetime]:
        return self._now

    def advance_to(self, now: datetime) -> None:
        """Move simulated time forward, processing every H1 bar that closed."""
        if self._now is not None and now < self._now:
            raise ValueError("Simulated time cannot move backwards")
        self._now = now
        span = TIMEFRAME_SPANS[TF_H1]
        h1 = self._bars[TF_H1]
        while self._cursor < len(h1):
            bar = h1[self._cursor]
            closes_at = bar.time + span
            if closes_at > now:
                break
            self._cursor += 1
            self._process_bar(bar, closes_at)

    def _process_bar(self, bar: Candle, closes_at: datetime) -> None:
        for order in list(self._orders.values()):
            fill = self._limit_fill_price(order, bar)
            if fill is not None:
                self._fill_order(order, fill, bar.time)
        for pos in list(self._positions.values()):
            exit_price = self._stop_exit_price(pos, bar)
            if exit_price is not None:
                self._close(pos, pos.volume, exit_price, closes_at, "SL hit")

    @staticmethod
    def _limit_fill_price(order: _SimOrder, bar: Candle) -> Optional[float]:
        if order.direction is Direction.LONG and bar.low <= order.price:
            return min(order.price, bar.open)
        if order.direction is Direction.SHORT and bar.high >= order.price:
            return max(order.price, bar.open)
        return None

    @staticmethod
    def _stop_exit_price(pos: _SimPosition, bar: Candle) -> Optional[float]:
        if pos.stop_loss is None:
            return None
        if pos.direction is Direction.LONG and bar.low <= pos.stop_loss:
            return min(pos.stop_loss, bar.open)
        if pos.direction is Direction.SHORT and bar.high >= pos.stop_loss:
            return max(pos.stop_loss, bar.open)
        return None

    # ── Market data ──────────────────────────────────────────────────────

    def _series(self, symbol: str, timeframe: str) -> list[Candle]:
        if symbol == self._symbol:
            series = self._bars.get(timeframe)
        elif timeframe == TF_DAILY:
            series = self._aux.get(symbol)
        else:
            series = None
        if series is None:
            raise DataUnavailable(f"No {timeframe} data for {symbol}")
        return series

    def _visible(self, symbol: str, timeframe: str) -> list[Candle]:
        if self._now is None:
            raise DataUnavailable("Simulated clock not started")
        series = self._series(symbol, timeframe)
        return series[: bisect.bisect_right(series, self._now, key=lambda c: c.time)]

    async def get_bars(
        self, symbol: str, timeframe: str, shift: int, count: int,
    ) -> list[Candle]:
        visible = self._visible(symbol, timeframe)
        end = len(visible) - shift
        start = end - count
        if start < 0 or end > len(visible):
            raise DataUnavailable(
                f"Need {count} {timeframe} bars at shift {shift} for {symbol}, "
                f"have {len(visible)}"
            )
        return visible[start:end]

    async def get_daily_bars(self, symbol: str, count: int) -> list[Candle]:
        return await self.get_bars(symbol, TF_DAILY, 1, count)

    def _price(self) -> float:
        visible = self._visible(self._symbol, TF_H1)
        if not visible:
            raise DataUnavailable(f"No price for {self._symbol} yet")
        last = visible[-1]
        if last.time + TIMEFRAME_SPANS[TF_H1] > self._now:
            return last.open
        return last.close

    async def get_current_price(self, symbol: str) -> float:
        if symbol != self._symbol:
            raise DataUnavailable(f"No live price for {symbol}")
        return self._price()

    async def get_symbol_spec(self, symbol: str) -> SymbolSpec:
        return self._spec

    # ── Account ──────────────────────────────────────────────────────────

    def _profit(self, pos: _SimPosition, price: float, volume: Optional[float] = None) -> float:
        lots = pos.volume if volume is None else volume
        return (price - pos.entry_price) * pos.direction.sign * lots * self._spec.value_per_unit

    @property
    def balance(self) -> float:
        return self._balance

    @property
    def equity(self) -> float:
        if not self._positions:
            return self._balance
        price = self._price()
        return self._balance + sum(self._profit(p, price) for p in self._positions.values())

    async def get_account_summary(self) -> AccountSummary:
        return AccountSummary(balance=self._balance, equity=self.equity)

    async def get_open_positions(
        self, symbol: Optional[str] = None,
    ) -> list[PositionSnapshot]:
        if symbol is not None and symbol != self._symbol:
            return []
        price = self._price() if self._positions else 0.0
        return [
            PositionSnapshot(
                ticket=p.ticket,
                symbol=self._symbol,
                direction=p.direction,
                volume=p.volume,
                entry_price=p.entry_price,
                stop_loss=p.stop_loss,
                profit=self._profit(p, price),
                open_time=p.open_time,
                label=p.label,
            )
            for p in self._positions.values()
        ]

    async def get_pending_orders(self, symbol: Optional[str] = None) -> list[int]:
        if symbol is not None and symbol != self._symbol:
            return []
        return list(self._orders)

    async def get_realised_pnl(self, ticket: int) -> Optional[float]:
        deals = [t.pnl for t in self.closed_trades if t.ticket == ticket]
        if not deals:
            return None
        return sum(deals)

    # ── Orders ───────────────────────────────────────────────────────────

    def _stop_valid(self, direction: Direction, stop: float, price: float) -> bool:
        return (price - stop) * direction.sign >= self._spec.min_stop_distance

    def _reject(self, message: str) -> OrderResult:
        self.rejections += 1
        logger.debug("Simulated rejection: %s", message)
        return OrderResult(ticket=None, success=False, message=message)

    async def place_market_order(
        self, direction: Direction, lots: float, stop_loss: float, label: str,
    ) -> OrderResult:
        price = self._price()
        if lots < self._spec.min_lot:
            return self._reject(f"volume {lots} below minimum")
        if not self._stop_valid(direction, stop_loss, price):
            return self._reject(f"invalid stop {stop_loss} for price {price}")
        ticket = next(self._tickets)
        self._positions[ticket] = _SimPosition(
            ticket, direction, lots, price, stop_loss, self._now, label,
        )
        return OrderResult(ticket=ticket, success=True, price=price)

    async def place_limit_order(
        self,
        direction: Direction,
        price: float,
        lots: float,
        stop_loss: float,
        label: str,
    ) -> OrderResult:
        if lots < self._spec.min_lot:
            return self._reject(f"volume {lots} below minimum")
        if not self._stop_valid(direction, stop_loss, price):
            return self._reject(f"invalid stop {stop_loss} for limit {price}")
        ticket = next(self._tickets)
        order = _SimOrder(ticket, direction, price, lots, stop_loss, label)
        market = self._price()
        if (market - price) * direction.sign <= 0:
            self._fill_order(order, market, self._now)
        else:
            self._orders[ticket] = order
        return OrderResult(ticket=ticket, success=True, price=price)

    def _fill_order(self, order: _SimOrder, price: float, when: datetime) -> None:
        self._orders.pop(order.ticket, None)
        self._positions[order.ticket] = _SimPosition(
            order.ticket, order.direction, order.volume, price,
            order.stop_loss, when, order.label,
        )

    async def modify_stop(self, ticket: int, new_stop: float) -> bool:
        pos = self._positions.get(ticket)
        if pos is None:
            return False
        if not self._stop_valid(pos.direction, new_stop, self._price()):
            self.rejections += 1
            return False
        pos.stop_loss = new_stop
        return True

    async def close_position(self, ticket: int) -> bool:
        pos = self._positions.get(ticket)
        if pos is None:
            return False
        self._close(pos, pos.volume, self._price(), self._now, "closed")
        return True

    async def close_partial(self, ticket: int, lots: float) -> bool:
        pos = self._positions.get(ticket)
        if pos is None or lots <= 0 or lots >= pos.volume:
            return False
        self._close(pos, lots, self._price(), self._now, "partial")
        return True

    def close_all(self, reason: str = "end_of_data") -> None:
        price = self._price()
        for pos in list(self._positions.values()):
            self._close(pos, pos.volume, price, self._now, reason)
        self._orders.clear()

    def _close(
        self,
        pos: _SimPosition,
        volume: float,
        price: float,
        when: datetime,
        reason: str,
    ) -> None:
        pnl = self._profit(pos, price, volume)
        self._balance += pnl
        self.closed_trades.append(
            ClosedTrade(
                ticket=pos.ticket,
                direction=pos.direction,
                volume=volume,
                entry_price=pos.entry_price,
                exit_price=price,
                pnl=pnl,
                open_time=pos.open_time,
                close_time=when,
                label=pos.label,
                close_reason=reason,
            )
        )
        remaining = round(pos.volume - volume, 8)
        if remaining <= 0:
            del self._positions[pos.ticket]
        else:
            pos.volume = remaining
