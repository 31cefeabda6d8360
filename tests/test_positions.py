"""Tests for the position manager: time stop, pyramiding, partial profit,
trailing and broker reconciliation.

Uses an in-memory fake broker; every position starts 1.0 lot long from
1.1000 with a 50-pip stop (1R = $500 at $100k per unit).
"""

import itertools
from dataclasses import replace
from datetime import datetime, timedelta, timezone

import pytest

from zonetrader.broker.base import TF_H1, TF_H4
from zonetrader.broker.models import (
    AccountSummary,
    Candle,
    OrderResult,
    PositionSnapshot,
    SymbolSpec,
)
from zonetrader.errors import DataUnavailable
from zonetrader.positions.manager import MarketContext, PositionManager
from zonetrader.positions.models import ManagedPosition
from zonetrader.risk.risk_engine import RiskEngine
from zonetrader.strategy.models import Direction

NOW = datetime(2025, 3, 3, 12, tzinfo=timezone.utc)
SPEC = SymbolSpec(symbol="EUR_USD")


# ── Helpers ──────────────────────────────────────────────────────────────


def _flat_bars(step: timedelta, count: int, close: float = 1.1000) -> list[Candle]:
    """Closed bars ending at NOW with a constant 20-pip range (ATR 0.0020)."""
    return [
        Candle(NOW - (count - i) * step, close, close + 0.0010, close - 0.0010, close, 100)
        for i in range(count)
    ]


class FakeBroker:
    """In-memory broker recording every order-side call."""

    def __init__(self, equity: float = 100_000.0, price: float = 1.1200) -> None:
        self.equity = equity
        self.price = price
        self.spec = SPEC
        self.snapshots: dict[int, PositionSnapshot] = {}
        self.bars = {
            TF_H4: _flat_bars(timedelta(hours=4), 30),
            TF_H1: _flat_bars(timedelta(hours=1), 200),
        }
        self.market_orders: list[tuple] = []
        self.modified: list[tuple[int, float]] = []
        self.partials: list[tuple[int, float]] = []
        self.closed: list[int] = []
        self.realised: dict[int, float] = {}
        self.resting: set[int] = set()
        self.reject_orders = False
        self._tickets = itertools.count(100)

    def open(self, ticket, direction=Direction.LONG, volume=1.0, entry=1.1000,
             stop=1.0950, profit=0.0, open_time=NOW) -> None:
        self.snapshots[ticket] = PositionSnapshot(
            ticket=ticket, symbol="EUR_USD", direction=direction, volume=volume,
            entry_price=entry, stop_loss=stop, profit=profit, open_time=open_time,
            label="ZT:fade",
        )

    async def get_account_summary(self) -> AccountSummary:
        return AccountSummary(balance=self.equity, equity=self.equity)

    async def get_open_positions(self, symbol=None) -> list[PositionSnapshot]:
        return list(self.snapshots.values())

    async def get_symbol_spec(self, symbol: str) -> SymbolSpec:
        return self.spec

    async def get_current_price(self, symbol: str) -> float:
        return self.price

    async def get_bars(self, symbol, timeframe, shift, count) -> list[Candle]:
        bars = self.bars[timeframe]
        if len(bars) < count:
            raise DataUnavailable(f"need {count} {timeframe} bars")
        return bars[-count:]

    async def place_market_order(self, direction, lots, stop_loss, label) -> OrderResult:
        if self.reject_orders:
            return OrderResult(ticket=None, success=False, message="rejected")
        ticket = next(self._tickets)
        self.market_orders.append((direction, lots, stop_loss, label))
        self.open(ticket, direction, lots, self.price, stop_loss, 0.0, NOW)
        return OrderResult(ticket=ticket, success=True, price=self.price)

    async def modify_stop(self, ticket: int, new_stop: float) -> bool:
        self.modified.append((ticket, new_stop))
        self.snapshots[ticket] = replace(self.snapshots[ticket], stop_loss=new_stop)
        return True

    async def close_position(self, ticket: int) -> bool:
        self.closed.append(ticket)
        snap = self.snapshots.pop(ticket)
        self.realised[ticket] = self.realised.get(ticket, 0.0) + snap.profit
        return True

    async def close_partial(self, ticket: int, lots: float) -> bool:
        self.partials.append((ticket, lots))
        snap = self.snapshots[ticket]
        remaining = round(snap.volume - lots, 8)
        self.realised[ticket] = (
            self.realised.get(ticket, 0.0) + snap.profit * lots / snap.volume
        )
        self.snapshots[ticket] = replace(
            snap, volume=remaining, profit=snap.profit * remaining / snap.volume,
        )
        return True

    async def get_pending_orders(self, symbol=None) -> list[int]:
        return list(self.resting)

    async def get_realised_pnl(self, ticket: int):
        return self.realised.get(ticket)

    def stop_out(self, ticket: int, pnl: float) -> None:
        """Close *ticket* at the broker as if its stop was hit between ticks."""
        self.snapshots.pop(ticket, None)
        self.resting.discard(ticket)
        self.realised[ticket] = self.realised.get(ticket, 0.0) + pnl


def _position(ticket=1, profit=0.0, lot_size=1.0, pyramid_count=0,
              open_time=NOW - timedelta(hours=2), stop=1.0950,
              direction=Direction.LONG) -> ManagedPosition:
    return ManagedPosition(
        ticket=ticket,
        direction=direction,
        entry_price=1.1000,
        stop_loss=stop,
        lot_size=lot_size,
        trade_type="fade",
        open_time=open_time,
        initial_r=500.0,
        pyramid_count=pyramid_count,
        profit=profit,
    )


async def _manager(broker: FakeBroker, max_pyramids: int = 2):
    risk = RiskEngine(broker, "EUR_USD", base_risk_pct=0.5, max_drawdown_pct=10.0)
    await risk.initialize(NOW)
    manager = PositionManager(broker, risk, "EUR_USD", max_pyramids, trade_tag="ZT")
    return manager, risk


def _track(manager, broker, position: ManagedPosition) -> None:
    manager.register_position(position)
    broker.open(
        position.ticket, position.direction, position.lot_size, position.entry_price,
        position.stop_loss, position.profit, position.open_time,
    )


def _ctx(broker: FakeBroker) -> MarketContext:
    return MarketContext(
        price=broker.price,
        spec=broker.spec,
        equity=broker.equity,
        atr_h4=0.0020,
        atr_h1=0.0020,
        h4_bars=broker.bars[TF_H4],
    )


# ── Time stop ────────────────────────────────────────────────────────────


class TestTimeStop:
    @pytest.mark.asyncio
    async def test_closes_stale_position_below_one_r(self):
        broker = FakeBroker()
        manager, risk = await _manager(broker)
        _track(manager, broker, _position(profit=-200.0, open_time=NOW - timedelta(hours=25)))

        summary = await manager.manage(NOW)

        assert summary["time_stops"] == [1]
        assert broker.closed == [1]
        assert manager.get(1) is None
        assert risk.state.daily_loss == pytest.approx(200.0)

    @pytest.mark.asyncio
    async def test_keeps_position_at_one_r(self):
        broker = FakeBroker()
        manager, _ = await _manager(broker)
        _track(manager, broker, _position(profit=500.0, open_time=NOW - timedelta(hours=25)))
        assert not await manager.time_stop(manager.get(1), NOW)
        assert broker.closed == []

    @pytest.mark.asyncio
    async def test_keeps_young_position(self):
        broker = FakeBroker()
        manager, _ = await _manager(broker)
        _track(manager, broker, _position(profit=-200.0, open_time=NOW - timedelta(hours=24)))
        assert not await manager.time_stop(manager.get(1), NOW)


# ── Pyramiding ───────────────────────────────────────────────────────────


class TestPyramid:
    @pytest.mark.asyncio
    async def test_adds_leg_and_syncs_group_stop(self):
        broker = FakeBroker(price=1.1200)
        manager, risk = await _manager(broker)
        _track(manager, broker, _position(profit=2_000.0))

        assert await manager.try_pyramid(1, _ctx(broker), NOW)

        [(direction, lots, stop, label)] = broker.market_orders
        assert direction is Direction.LONG
        assert lots == pytest.approx(1.5)  # 0.3 % of 100k over a 20-pip stop
        assert stop == pytest.approx(1.1180)
        assert label == "ZT:pyramid"
        assert manager.get(1).pyramid_count == 1
        assert manager.get(1).stop_loss == pytest.approx(1.1180)
        assert (1, pytest.approx(1.1180)) in broker.modified
        assert risk.state.open_risk == pytest.approx(300.0)

    @pytest.mark.asyncio
    async def test_needs_one_r_of_profit(self):
        broker = FakeBroker()
        manager, _ = await _manager(broker)
        _track(manager, broker, _position(profit=499.0))
        assert not await manager.try_pyramid(1, _ctx(broker), NOW)
        assert broker.market_orders == []

    @pytest.mark.asyncio
    async def test_profit_must_fund_the_add_on(self):
        broker = FakeBroker(equity=1_000_000.0)  # add-on risk 3,000
        manager, _ = await _manager(broker)
        _track(manager, broker, _position(profit=2_000.0))
        assert not await manager.try_pyramid(1, _ctx(broker), NOW)

    @pytest.mark.asyncio
    async def test_rejected_order_changes_nothing(self):
        broker = FakeBroker()
        broker.reject_orders = True
        manager, risk = await _manager(broker)
        _track(manager, broker, _position(profit=2_000.0))
        assert not await manager.try_pyramid(1, _ctx(broker), NOW)
        assert manager.get(1).pyramid_count == 0
        assert manager.get(1).stop_loss == pytest.approx(1.0950)
        assert risk.state.open_risk == 0.0

    @pytest.mark.asyncio
    async def test_group_stop_never_loosens(self):
        broker = FakeBroker(price=1.1200)
        manager, _ = await _manager(broker)
        _track(manager, broker, _position(ticket=1, profit=2_000.0))
        _track(manager, broker, _position(ticket=2, stop=1.1190))
        await manager.try_pyramid(1, _ctx(broker), NOW)
        assert manager.get(2).stop_loss == pytest.approx(1.1190)

    @pytest.mark.asyncio
    @pytest.mark.parametrize("max_pyramids", [0, 1, 2, 3])
    async def test_never_exceeds_max_pyramids(self, max_pyramids):
        broker = FakeBroker(price=1.1200)
        manager, _ = await _manager(broker, max_pyramids=max_pyramids)
        _track(manager, broker, _position(profit=2_000.0))

        for i in range(8):
            # every leg is deep in profit too, so each pass qualifies again
            for ticket, snap in list(broker.snapshots.items()):
                broker.snapshots[ticket] = replace(snap, profit=5_000.0)
            await manager.manage(NOW + timedelta(minutes=i))

        assert len(broker.market_orders) == max_pyramids
        assert all(p.pyramid_count <= max_pyramids for p in manager.positions())


# ── Partial profit ───────────────────────────────────────────────────────


class TestPartialProfit:
    @pytest.mark.asyncio
    async def test_one_and_a_half_r_after_two_pyramids_closes_quarter(self):
        broker = FakeBroker()
        manager, _ = await _manager(broker)
        _track(manager, broker, _position(profit=750.0, pyramid_count=2))

        assert await manager.take_partial_profit(1)

        assert broker.partials == [(1, pytest.approx(0.25))]
        assert manager.get(1).lot_size == pytest.approx(0.75)
        assert manager.get(1).profit == pytest.approx(562.5)

    @pytest.mark.asyncio
    async def test_manage_pass_trims_after_two_pyramids_at_two_r(self):
        broker = FakeBroker()
        manager, _ = await _manager(broker)
        _track(manager, broker, _position(profit=1_000.0, pyramid_count=2))

        summary = await manager.manage(NOW)

        assert summary["partials"] == [1]
        assert broker.partials == [(1, pytest.approx(0.25))]
        assert manager.get(1).lot_size == pytest.approx(0.75)

    @pytest.mark.asyncio
    async def test_quarter_is_floored_at_min_lot(self):
        broker = FakeBroker()
        manager, _ = await _manager(broker)
        _track(manager, broker, _position(lot_size=0.03, pyramid_count=2, profit=750.0))

        assert await manager.take_partial_profit(1)
        assert broker.partials == [(1, pytest.approx(0.01))]
        assert manager.get(1).lot_size == pytest.approx(0.02)

    @pytest.mark.asyncio
    async def test_min_lot_position_is_left_alone(self):
        broker = FakeBroker()
        manager, _ = await _manager(broker)
        _track(manager, broker, _position(lot_size=0.01, pyramid_count=2, profit=750.0))
        assert not await manager.take_partial_profit(1)
        assert broker.partials == []

    @pytest.mark.asyncio
    async def test_automatic_partial_needs_two_r(self):
        broker = FakeBroker()
        manager, _ = await _manager(broker)
        _track(manager, broker, _position(profit=750.0, pyramid_count=2))
        assert not await manager.try_partial_profit(1, _ctx(broker))

        manager._positions[1] = replace(manager.get(1), profit=1_000.0)
        assert await manager.try_partial_profit(1, _ctx(broker))

    @pytest.mark.asyncio
    async def test_automatic_partial_needs_two_pyramids(self):
        broker = FakeBroker()
        manager, _ = await _manager(broker)
        _track(manager, broker, _position(profit=5_000.0, pyramid_count=1))
        assert not await manager.try_partial_profit(1, _ctx(broker))

    @pytest.mark.asyncio
    async def test_automatic_partial_once_per_pyramid_level(self):
        broker = FakeBroker()
        manager, _ = await _manager(broker)
        _track(manager, broker, _position(profit=5_000.0, pyramid_count=2))
        assert await manager.try_partial_profit(1, _ctx(broker))
        assert not await manager.try_partial_profit(1, _ctx(broker))
        assert len(broker.partials) == 1


# ── Trailing ─────────────────────────────────────────────────────────────


class TestTrailStop:
    @pytest.mark.asyncio
    async def test_trails_to_vwap_above_chandelier(self):
        broker = FakeBroker(price=1.1200)
        manager, _ = await _manager(broker)
        _track(manager, broker, _position(stop=1.0900))

        # chandelier 1.1000 - 3 × 0.0020 = 1.0940, anchored VWAP 1.1000
        new_stop = await manager.trail_stop(1, _ctx(broker), NOW)

        assert new_stop == pytest.approx(1.1000)
        assert manager.get(1).stop_loss == pytest.approx(1.1000)

    @pytest.mark.asyncio
    async def test_stop_too_close_to_price_is_skipped(self):
        broker = FakeBroker(price=1.1001)
        manager, _ = await _manager(broker)
        _track(manager, broker, _position(stop=1.0900))
        assert await manager.trail_stop(1, _ctx(broker), NOW) is None
        assert broker.modified == []

    @pytest.mark.asyncio
    async def test_long_stop_monotonic_across_passes(self):
        broker = FakeBroker(price=1.1200)
        manager, _ = await _manager(broker)
        _track(manager, broker, _position(stop=1.0900))

        stops = [manager.get(1).stop_loss]
        for i, close in enumerate([1.1000, 1.1050, 1.1030, 1.1100, 1.1060]):
            broker.bars[TF_H1] = _flat_bars(timedelta(hours=1), 200, close)
            broker.bars[TF_H4] = _flat_bars(timedelta(hours=4), 30, close)
            await manager.trail_stop(1, _ctx(broker), NOW + timedelta(minutes=i))
            stops.append(manager.get(1).stop_loss)

        assert all(b >= a for a, b in zip(stops, stops[1:]))


# ── Broker reconciliation ────────────────────────────────────────────────


class TestReconciliation:
    @pytest.mark.asyncio
    async def test_position_gone_at_broker_is_dropped(self):
        broker = FakeBroker()
        manager, risk = await _manager(broker)
        _track(manager, broker, _position(profit=-300.0))
        broker.snapshots.clear()

        summary = await manager.manage(NOW)

        assert summary["closed"] == [1]
        assert manager.positions() == []
        assert risk.state.daily_loss == pytest.approx(300.0)

    @pytest.mark.asyncio
    async def test_filled_pending_order_is_promoted(self):
        broker = FakeBroker()
        manager, risk = await _manager(broker)
        pending = replace(_position(ticket=7), trade_type="retest")
        manager.track_pending_order(pending)
        broker.resting.add(7)
        risk.register_pending_order(pending.initial_r)

        await manager.manage(NOW)
        assert manager.get(7) is None

        broker.resting.discard(7)
        broker.open(7, entry=1.1010, open_time=NOW)
        await manager.manage(NOW + timedelta(hours=1))

        assert manager.pending_orders() == []
        assert manager.get(7).entry_price == pytest.approx(1.1010)
        assert risk.state.open_risk == pytest.approx(500.0)

    @pytest.mark.asyncio
    async def test_stop_hit_between_ticks_books_realised_loss(self):
        broker = FakeBroker()
        manager, risk = await _manager(broker)
        _track(manager, broker, _position(profit=-10.0))
        await manager.manage(NOW)

        broker.stop_out(1, -500.0)
        summary = await manager.manage(NOW + timedelta(hours=1))

        assert summary["closed"] == [1]
        assert risk.state.daily_loss == pytest.approx(500.0)

    @pytest.mark.asyncio
    async def test_close_after_partial_books_only_the_remainder(self):
        broker = FakeBroker()
        manager, risk = await _manager(broker)
        _track(manager, broker, _position(profit=750.0, pyramid_count=2))
        assert await manager.take_partial_profit(1)
        assert manager.get(1).realised_pnl == pytest.approx(187.5)

        broker.stop_out(1, -300.0)
        await manager.manage(NOW)

        assert risk.state.daily_loss == pytest.approx(300.0)

    @pytest.mark.asyncio
    async def test_resting_order_stays_pending(self):
        broker = FakeBroker()
        manager, risk = await _manager(broker)
        manager.track_pending_order(replace(_position(ticket=7), trade_type="retest"))
        risk.register_pending_order(500.0)
        broker.resting.add(7)

        await manager.manage(NOW)

        assert [p.ticket for p in manager.pending_orders()] == [7]
        assert risk.state.open_risk == pytest.approx(250.0)

    @pytest.mark.asyncio
    async def test_pending_order_filled_and_stopped_between_ticks(self):
        broker = FakeBroker()
        manager, risk = await _manager(broker)
        manager.track_pending_order(replace(_position(ticket=7), trade_type="retest"))
        risk.register_pending_order(500.0)
        broker.stop_out(7, -500.0)

        summary = await manager.manage(NOW)

        assert summary["closed"] == [7]
        assert manager.pending_orders() == []
        assert manager.positions() == []
        assert risk.state.daily_loss == pytest.approx(500.0)
        assert risk.state.open_risk == 0.0

    @pytest.mark.asyncio
    async def test_unfilled_pending_order_releases_its_risk(self):
        broker = FakeBroker()
        manager, risk = await _manager(broker)
        manager.track_pending_order(replace(_position(ticket=7), trade_type="retest"))
        risk.register_pending_order(500.0)
        risk.register_new_trade(100.0)

        summary = await manager.manage(NOW)

        assert summary["closed"] == []
        assert manager.pending_orders() == []
        assert risk.state.open_risk == pytest.approx(100.0)
        assert risk.state.daily_loss == 0.0

    @pytest.mark.asyncio
    async def test_profit_refreshed_from_broker(self):
        broker = FakeBroker()
        manager, _ = await _manager(broker)
        _track(manager, broker, _position(profit=0.0))
        broker.snapshots[1] = replace(broker.snapshots[1], profit=123.0)
        await manager.manage(NOW)
        assert manager.get(1).profit == pytest.approx(123.0)
