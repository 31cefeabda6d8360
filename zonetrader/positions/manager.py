"""Position manager — owns live positions and runs their per-tick lifecycle.

Per tick, newest position first:

1. Settle pending orders and drop positions the broker no longer reports,
   booking the realised P&L it reports for them.
2. Refresh open profit.
3. Time-stop: close after 6 execution bars when still below 1R.
4. Pyramid: add a self-funded leg once the position is 1R up.
5. Partial profit: trim 25 % once pyramided twice and 2R up.
6. Trail the stop (Chandelier / anchored VWAP).

Steps 4-6 are skipped only when the time-stop actually closed the position.
"""

import logging
import math
from dataclasses import dataclass, replace
from datetime import datetime, timedelta
from typing import Optional

from zonetrader.broker.base import TF_H1, TF_H4
from zonetrader.broker.models import Candle, PositionSnapshot, SymbolSpec
from zonetrader.errors import DataUnavailable
from zonetrader.positions.models import ManagedPosition
from zonetrader.risk.position_sizer import calculate_lots, risk_amount_for
from zonetrader.risk.risk_engine import RiskEngine
from zonetrader.risk.trailing_stop import (
    CHANDELIER_LOOKBACK,
    STOP_SAFETY_BUFFER,
    chandelier_level,
    clears_min_distance,
    next_trailing_stop,
)
from zonetrader.strategy.indicators import (
    anchored_vwap,
    calculate_atr,
    highest_close,
    lowest_close,
)
from zonetrader.strategy.models import Direction

logger = logging.getLogger("zonetrader.positions")

ATR_PERIOD = 14
TIME_STOP_AFTER = 6 * timedelta(hours=4)
PYRAMID_RISK_FRACTION = 0.003  # of equity per add-on
PARTIAL_MIN_PYRAMIDS = 2
PARTIAL_PROFIT_R = 2.0
PARTIAL_FRACTION = 0.25
MAX_VWAP_BARS = 500


@dataclass(frozen=True)
class MarketContext:
    """Market data shared by every position within one management pass."""

    price: float
    spec: SymbolSpec
    equity: float
    atr_h4: float
    atr_h1: float
    h4_bars: list[Candle]


class PositionManager:
    """Owns the set of live positions for one symbol.

    Args:
        broker: ``BrokerProtocol`` implementation.
        risk_engine: Receives new-leg and closed-trade registrations.
        symbol: Instrument traded.
        max_pyramids: Maximum add-ons per position.
        trade_tag: Label prefix for orders placed by the manager.
        stop_buffer: Safety buffer (price units) on top of the broker
            minimum stop distance.
    """

    def __init__(
        self,
        broker,
        risk_engine: RiskEngine,
        symbol: str,
        max_pyramids: int,
        trade_tag: str = "",
        stop_buffer: float = STOP_SAFETY_BUFFER,
    ) -> None:
        self._broker = broker
        self._risk = risk_engine
        self._symbol = symbol
        self._max_pyramids = max_pyramids
        self._trade_tag = trade_tag
        self._stop_buffer = stop_buffer
        self._positions: dict[int, ManagedPosition] = {}
        self._pending: dict[int, ManagedPosition] = {}

    # ── Store access ─────────────────────────────────────────────────────

    def positions(self) -> list[ManagedPosition]:
        """Live positions in registration order."""
        return list(self._positions.values())

    def get(self, ticket: int) -> Optional[ManagedPosition]:
        return self._positions.get(ticket)

    def pending_orders(self) -> list[ManagedPosition]:
        return list(self._pending.values())

    def register_position(self, position: ManagedPosition) -> None:
        """Start managing a freshly executed position."""
        self._positions[position.ticket] = position
        logger.info(
            "Managing #%d %s %s %.2f lots @ %.5f SL=%s R=%.2f",
            position.ticket, position.trade_type, position.direction.value,
            position.lot_size, position.entry_price, position.stop_loss,
            position.initial_r,
        )

    def track_pending_order(self, position: ManagedPosition) -> None:
        """Remember a resting order; it is promoted once the broker fills it."""
        self._pending[position.ticket] = position

    def _update(self, ticket: int, **changes) -> ManagedPosition:
        updated = replace(self._positions[ticket], **changes)
        self._positions[ticket] = updated
        return updated

    async def _unbooked_pnl(self, position: ManagedPosition) -> Optional[float]:
        """Realised P&L the broker reports for *position* beyond what was booked."""
        total = await self._broker.get_realised_pnl(position.ticket)
        if total is None:
            return None
        return total - position.realised_pnl

    async def _drop(self, ticket: int, now: datetime, equity: Optional[float]) -> None:
        position = self._positions.pop(ticket)
        pnl = await self._unbooked_pnl(position)
        if pnl is None:
            logger.warning(
                "No realised P&L reported for #%d, booking last open profit %.2f",
                ticket, position.profit,
            )
            pnl = position.profit
        self._risk.register_closed_trade(pnl, equity=equity, now=now)

    # ── Per-tick management ──────────────────────────────────────────────

    async def manage(self, now: datetime) -> dict:
        """Run one management pass over every live position.

        Returns a summary dict of the actions taken.
        """
        summary: dict = {
            "closed": [], "time_stops": [], "pyramids": [],
            "partials": [], "trailed": [],
        }

        snapshots = {
            p.ticket: p for p in await self._broker.get_open_positions(self._symbol)
        }
        if not self._positions and not self._pending:
            return summary

        account = await self._broker.get_account_summary()
        if self._pending:
            summary["closed"] += await self._settle_pending_orders(
                snapshots, now, account.equity,
            )
        if not self._positions:
            return summary

        try:
            ctx: Optional[MarketContext] = await self._market_context(account.equity)
        except DataUnavailable as exc:
            logger.warning("Position management data unavailable: %s", exc)
            ctx = None

        for ticket in reversed(list(self._positions)):
            snap = snapshots.get(ticket)
            if snap is None:
                logger.info("Position #%d closed at broker", ticket)
                await self._drop(ticket, now, account.equity)
                summary["closed"].append(ticket)
                continue

            position = self._update(ticket, profit=snap.profit, lot_size=snap.volume)

            if await self.time_stop(position, now, account.equity):
                summary["time_stops"].append(ticket)
                continue

            if ctx is None:
                continue

            if await self.try_pyramid(ticket, ctx, now):
                summary["pyramids"].append(ticket)
            if await self.try_partial_profit(ticket, ctx):
                summary["partials"].append(ticket)
            new_stop = await self.trail_stop(ticket, ctx, now)
            if new_stop is not None:
                summary["trailed"].append(ticket)

        return summary

    async def _settle_pending_orders(
        self,
        snapshots: dict[int, PositionSnapshot],
        now: datetime,
        equity: float,
    ) -> list[int]:
        """Promote filled orders and settle the ones the broker no longer holds.

        An order that is neither open nor resting either filled and closed
        between ticks (its realised P&L is booked) or went away unfilled (its
        pending risk is released).  Returns the tickets booked as closed.
        """
        resting = set(await self._broker.get_pending_orders(self._symbol))
        closed: list[int] = []
        for ticket in list(self._pending):
            snap = snapshots.get(ticket)
            if snap is not None:
                pending = self._pending.pop(ticket)
                filled = replace(
                    pending,
                    entry_price=snap.entry_price,
                    open_time=snap.open_time,
                    lot_size=snap.volume,
                    profit=snap.profit,
                )
                self._risk.register_pending_fill(filled.initial_r)
                self.register_position(filled)
                continue
            if ticket in resting:
                continue

            pending = self._pending.pop(ticket)
            realised = await self._broker.get_realised_pnl(ticket)
            if realised is None:
                self._risk.release_pending_order(pending.initial_r)
                logger.info("Pending order #%d gone unfilled, risk released", ticket)
                continue
            self._risk.register_pending_fill(pending.initial_r)
            self._risk.register_closed_trade(realised, equity=equity, now=now)
            logger.info(
                "Pending order #%d filled and closed between ticks: %.2f",
                ticket, realised,
            )
            closed.append(ticket)
        return closed

    async def _market_context(self, equity: float) -> MarketContext:
        spec = await self._broker.get_symbol_spec(self._symbol)
        price = await self._broker.get_current_price(self._symbol)
        h4 = await self._broker.get_bars(
            self._symbol, TF_H4, 1, max(ATR_PERIOD + 1, CHANDELIER_LOOKBACK),
        )
        h1 = await self._broker.get_bars(self._symbol, TF_H1, 1, ATR_PERIOD + 1)
        return MarketContext(
            price=price,
            spec=spec,
            equity=equity,
            atr_h4=calculate_atr(h4, ATR_PERIOD),
            atr_h1=calculate_atr(h1, ATR_PERIOD),
            h4_bars=h4,
        )

    # ── (a) Time stop ────────────────────────────────────────────────────

    async def time_stop(
        self, position: ManagedPosition, now: datetime, equity: Optional[float] = None,
    ) -> bool:
        """Close a position that has lingered below 1R for too long.

        Returns ``True`` only when the position was closed and dropped.
        """
        if now - position.open_time <= TIME_STOP_AFTER:
            return False
        if position.profit >= position.initial_r:
            return False

        if not await self._broker.close_position(position.ticket):
            logger.error("Time-stop close failed for #%d", position.ticket)
            return False
        logger.info(
            "Time-stop closed #%d after %s at %.2fR",
            position.ticket, now - position.open_time, position.r_multiple,
        )
        await self._drop(position.ticket, now, equity)
        return True

    # ── (b) Pyramiding ───────────────────────────────────────────────────

    async def try_pyramid(self, ticket: int, ctx: MarketContext, now: datetime) -> bool:
        """Add a leg funded by open profit.

        On success the pyramid count is raised across the whole
        same-direction group (the new leg included), so no leg can pyramid
        past ``max_pyramids`` either.  The new leg's stop is then applied to
        every same-direction position whose stop it tightens.
        """
        position = self._positions[ticket]
        if position.pyramid_count >= self._max_pyramids:
            return False
        if position.profit < position.initial_r:
            return False

        add_on_risk = PYRAMID_RISK_FRACTION * ctx.equity
        if position.profit < add_on_risk:
            return False

        distance = max(ctx.atr_h1, ctx.spec.min_stop_distance + self._stop_buffer)
        stop = ctx.price - distance * position.direction.sign
        lots = calculate_lots(add_on_risk, distance, ctx.spec)

        result = await self._broker.place_market_order(
            position.direction, lots, stop, f"{self._trade_tag}:pyramid",
        )
        if not result.success or result.ticket is None:
            logger.error(
                "Pyramid order rejected for #%d: %s", ticket, result.message,
            )
            return False

        level = position.pyramid_count + 1
        leg = ManagedPosition(
            ticket=result.ticket,
            direction=position.direction,
            entry_price=result.price if result.price is not None else ctx.price,
            stop_loss=stop,
            lot_size=lots,
            trade_type="pyramid",
            open_time=now,
            initial_r=risk_amount_for(lots, distance, ctx.spec),
            pyramid_count=level,
            zone_id=position.zone_id,
        )
        self.register_position(leg)
        for other in list(self._positions.values()):
            if other.direction is position.direction and other.pyramid_count < level:
                self._update(other.ticket, pyramid_count=level)
        self._risk.register_new_trade(leg.initial_r)
        logger.info(
            "Pyramid %d/%d on #%d → leg #%d", level,
            self._max_pyramids, ticket, leg.ticket,
        )

        await self._sync_group_stop(position.direction, stop, ctx)
        return True

    async def _sync_group_stop(
        self, direction: Direction, stop: float, ctx: MarketContext,
    ) -> None:
        for other in list(self._positions.values()):
            if other.direction is not direction or other.stop_loss == stop:
                continue
            tightens = (
                other.stop_loss is None
                or (stop - other.stop_loss) * direction.sign > 0
            )
            if not tightens:
                continue
            if not clears_min_distance(
                direction, stop, ctx.price, ctx.spec.min_stop_distance, self._stop_buffer,
            ):
                continue
            if await self._broker.modify_stop(other.ticket, stop):
                self._update(other.ticket, stop_loss=stop)
            else:
                logger.error("Group stop update failed for #%d", other.ticket)

    # ── (c) Partial profit ───────────────────────────────────────────────

    async def try_partial_profit(self, ticket: int, ctx: MarketContext) -> bool:
        """Trim once per pyramid level after two pyramids and 2R of profit."""
        position = self._positions[ticket]
        if position.pyramid_count < PARTIAL_MIN_PYRAMIDS:
            return False
        if position.profit < PARTIAL_PROFIT_R * position.initial_r:
            return False
        if position.partial_level >= position.pyramid_count:
            return False
        return await self.take_partial_profit(ticket, ctx.spec)

    async def take_partial_profit(
        self, ticket: int, spec: Optional[SymbolSpec] = None,
    ) -> bool:
        """Close 25 % of the position's current volume.

        The trimmed volume is floored at the broker minimum lot; nothing is
        done when that would close the entire position.
        """
        position = self._positions[ticket]
        if spec is None:
            spec = await self._broker.get_symbol_spec(self._symbol)

        steps = math.floor(position.lot_size * PARTIAL_FRACTION / spec.lot_step + 1e-9)
        lots = max(round(steps * spec.lot_step, 8), spec.min_lot)
        if lots >= position.lot_size:
            return False

        if not await self._broker.close_partial(ticket, lots):
            logger.error("Partial close failed for #%d", ticket)
            return False

        share = position.profit * lots / position.lot_size
        realised = await self._unbooked_pnl(position)
        if realised is None:
            realised = share
        self._update(
            ticket,
            lot_size=round(position.lot_size - lots, 8),
            profit=position.profit - share,
            partial_level=position.pyramid_count,
            realised_pnl=position.realised_pnl + realised,
        )
        self._risk.register_closed_trade(realised)
        logger.info("Partial profit on #%d: closed %.2f lots", ticket, lots)
        return True

    # ── (d) Trailing stop ────────────────────────────────────────────────

    async def trail_stop(
        self, ticket: int, ctx: MarketContext, now: datetime,
    ) -> Optional[float]:
        """Move the stop to the tighter of Chandelier / anchored VWAP.

        Returns the new stop, or ``None`` when unchanged.
        """
        position = self._positions[ticket]
        try:
            hours_open = int((now - position.open_time).total_seconds() // 3600) + 1
            h1 = await self._broker.get_bars(
                self._symbol, TF_H1, 1, min(hours_open, MAX_VWAP_BARS),
            )
            vwap = anchored_vwap(h1, position.open_time)
        except DataUnavailable as exc:
            logger.debug("Trail skipped for #%d: %s", ticket, exc)
            return None

        if position.direction is Direction.LONG:
            extreme = highest_close(ctx.h4_bars, CHANDELIER_LOOKBACK)
        else:
            extreme = lowest_close(ctx.h4_bars, CHANDELIER_LOOKBACK)
        chandelier = chandelier_level(position.direction, extreme, ctx.atr_h4)

        new_stop = next_trailing_stop(
            position.direction,
            position.stop_loss,
            chandelier,
            vwap,
            ctx.price,
            ctx.spec.min_stop_distance,
            self._stop_buffer,
        )
        if new_stop is None:
            return None

        if not await self._broker.modify_stop(ticket, new_stop):
            logger.error("Trailing stop update failed for #%d", ticket)
            return None
        self._update(ticket, stop_loss=new_stop)
        logger.info(
            "Trailed #%d stop %s → %.5f", ticket, position.stop_loss, new_stop,
        )
        return new_stop
