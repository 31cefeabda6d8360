"""ZoneTrader — strategy orchestrator.

Ties zone detection, trigger evaluation, the macro filter, the risk engine
and the position manager together.  The surrounding harness calls
``on_tick`` on every price update and ``on_timer`` hourly; each call runs to
completion and all waiting is expressed as state carried between calls.

Within a tick the order is fixed: manage positions → check admission →
evaluate triggers.
"""

import logging
from datetime import datetime
from typing import Optional

from zonetrader.broker.base import TF_H1, TF_H4
from zonetrader.config import Config
from zonetrader.errors import DataUnavailable, ExecutionFailure
from zonetrader.positions.manager import PositionManager
from zonetrader.positions.models import ManagedPosition
from zonetrader.risk.position_sizer import calculate_lots, normalize_lots, risk_amount_for
from zonetrader.risk.risk_engine import RiskEngine
from zonetrader.strategy.indicators import calculate_atr
from zonetrader.strategy.macro_filter import MacroFilter
from zonetrader.strategy.models import Direction, TradeSignal, Zone
from zonetrader.strategy.triggers import (
    EXECUTION_BAR,
    BreakThrottle,
    detect_break,
    detect_sweep,
    fade_stop,
    in_retest_window,
    is_fade_confirmed,
    is_inside_bar,
    is_new_break,
    is_retest,
    retest_order_levels,
)
from zonetrader.strategy.zones import PIVOT_LOOKBACK_BARS, ZoneDetector

logger = logging.getLogger("zonetrader")

ATR_PERIOD = 14


class StrategyOrchestrator:
    """Runs one evaluation cycle per call.

    Args:
        config: Process-wide configuration.
        broker: A ``BrokerProtocol`` implementation (or compatible mock).
    """

    def __init__(self, config: Config, broker) -> None:
        self._config = config
        self._broker = broker
        self.zones = ZoneDetector(band_half_width=config.strength_band)
        self.risk = RiskEngine(
            broker,
            symbol=config.symbol,
            base_risk_pct=config.base_risk_pct,
            max_drawdown_pct=config.max_drawdown_pct,
            trade_tag=config.trade_tag,
        )
        self.positions = PositionManager(
            broker,
            self.risk,
            symbol=config.symbol,
            max_pyramids=config.max_pyramids,
            trade_tag=config.trade_tag,
        )
        self.macro = MacroFilter(
            broker,
            enabled=config.macro_filter_enabled,
            trend_symbol=config.macro_trend_symbol,
            vol_symbol=config.macro_vol_symbol,
        )
        self.break_throttle = BreakThrottle()
        self._last_h4_bar: Optional[datetime] = None
        self._last_zone_scan: Optional[datetime] = None
        self._initialized = False

    @property
    def symbol(self) -> str:
        return self._config.symbol

    # ── Lifecycle ────────────────────────────────────────────────────────

    async def initialize(self, now: datetime) -> None:
        """Seed risk state from account equity and run the first zone scan."""
        await self.risk.initialize(now)
        await self.scan_zones(now)
        self._initialized = True

    async def scan_zones(self, now: datetime) -> bool:
        """Replace the zone set from fresh daily data.

        Returns ``False`` (keeping the previous zones) when data is missing.
        """
        try:
            daily = await self._broker.get_daily_bars(self.symbol, PIVOT_LOOKBACK_BARS)
            atr = calculate_atr(daily, ATR_PERIOD)
            self.zones.detect_zones(daily, atr, self._config.zone_depth_multiplier, now)
        except DataUnavailable as exc:
            logger.warning("Zone scan skipped, data unavailable: %s", exc)
            return False
        self._last_zone_scan = now
        return True

    # ── Timer ────────────────────────────────────────────────────────────

    async def on_timer(self, now: datetime) -> dict:
        """Hourly housekeeping: daily zone rescan and risk status refresh."""
        rescanned = False
        if not self._initialized:
            await self.initialize(now)
            rescanned = self._last_zone_scan == now
        elif self._last_zone_scan is None or self._last_zone_scan.date() != now.date():
            rescanned = await self.scan_zones(now)
        try:
            await self.risk.update_risk_status(now)
        except DataUnavailable as exc:
            logger.warning("Risk status refresh skipped, data unavailable: %s", exc)
        return {"action": "timer", "zones_rescanned": rescanned, "zones": len(self.zones)}

    # ── Tick ─────────────────────────────────────────────────────────────

    async def on_tick(self, now: datetime) -> dict:
        """Execute one trading cycle.

        Returns a dict describing the action taken:

        - ``{"action": "vetoed", "reason": "<risk veto>"}``
        - ``{"action": "skipped", "reason": "..."}``
        - ``{"action": "evaluated", "orders": [...], "vetoes": [...]}``
        """
        if not self._initialized:
            await self.initialize(now)

        try:
            managed = await self.positions.manage(now)
        except DataUnavailable as exc:
            logger.warning("Position management skipped, data unavailable: %s", exc)
            return {"action": "skipped", "reason": "data_unavailable"}

        try:
            admitted = await self.risk.can_open_new_trades(now)
        except DataUnavailable as exc:
            logger.warning("Admission check skipped, data unavailable: %s", exc)
            return {"action": "skipped", "reason": "data_unavailable", "positions": managed}
        if not admitted:
            return {"action": "vetoed", "reason": self.risk.last_veto, "positions": managed}

        if not len(self.zones):
            return {"action": "skipped", "reason": "no_zones", "positions": managed}

        try:
            result = await self.evaluate_triggers(now)
        except DataUnavailable as exc:
            logger.warning("Trigger evaluation skipped, data unavailable: %s", exc)
            return {"action": "skipped", "reason": "data_unavailable", "positions": managed}
        result["positions"] = managed
        return result

    # ── Trigger evaluation ───────────────────────────────────────────────

    async def evaluate_triggers(self, now: datetime) -> dict:
        """Detect new sweeps/breaks on a fresh 4H close, then act on any
        confirmed fade or retest."""
        h4 = await self._broker.get_bars(self.symbol, TF_H4, 1, ATR_PERIOD + 1)
        h1 = await self._broker.get_bars(self.symbol, TF_H1, 1, 2)
        price = await self._broker.get_current_price(self.symbol)
        atr_h4 = calculate_atr(h4, ATR_PERIOD)
        prior = h4[-1]

        if prior.time != self._last_h4_bar:
            self._last_h4_bar = prior.time
            self._detect_sweeps(prior, atr_h4)
            self._detect_breaks(prior, atr_h4, now)

        previous, last = h1[-2], h1[-1]
        signals = self._confirmed_fades(last, previous, atr_h4, now)
        signals += self._confirmed_retests(price, last, previous, atr_h4, now)

        orders: list[dict] = []
        vetoes: list[dict] = []
        failures: list[dict] = []
        for signal in signals:
            if not await self.macro.check_filter(signal.direction):
                vetoes.append({"zone_id": signal.zone_id, "reason": "macro_filter"})
                continue
            outcome = await self._execute(signal, price, now)
            if outcome.get("success"):
                orders.append(outcome)
            else:
                failures.append(outcome)

        if orders:
            action = "order_placed"
        elif failures:
            action = "execution_failure"
        elif vetoes:
            action = "vetoed"
        else:
            action = "evaluated"
        return {
            "action": action,
            "reason": "macro_filter" if action == "vetoed" else None,
            "orders": orders,
            "vetoes": vetoes,
            "failures": failures,
        }

    def _on_cooldown(self, zone: Zone, now: datetime) -> bool:
        return zone.last_trade_time is not None and now - zone.last_trade_time < EXECUTION_BAR

    def _detect_sweeps(self, bar, atr: float) -> None:
        for zone in self.zones.zones():
            direction = detect_sweep(bar, zone, atr)
            if direction is Direction.NONE:
                continue
            self.zones.update_zone(zone.zone_id, pending_fade=True, fade_direction=direction)
            logger.info(
                "Sweep of zone %d (%.5f) → pending %s fade",
                zone.zone_id, zone.mid_price, direction.value,
            )

    def _detect_breaks(self, bar, atr: float, now: datetime) -> None:
        self.break_throttle.start_pass(now)
        for zone in self.zones.zones():
            direction = detect_break(bar, zone, atr)
            if not is_new_break(zone, direction, now):
                continue
            if not self.break_throttle.allow():
                logger.info("Break detection throttled at zone %d", zone.zone_id)
                break
            self.break_throttle.record(now)
            self.zones.update_zone(zone.zone_id, break_direction=direction, break_time=now)
            logger.info(
                "Break of zone %d (%.5f) to the %s",
                zone.zone_id, zone.mid_price, direction.value,
            )

    def _confirmed_fades(self, last, previous, atr: float, now: datetime) -> list[TradeSignal]:
        signals: list[TradeSignal] = []
        for zone in self.zones.zones():
            if not zone.pending_fade or self._on_cooldown(zone, now):
                continue
            if not is_fade_confirmed(zone.fade_direction, last, previous):
                continue
            signals.append(
                TradeSignal(
                    zone_id=zone.zone_id,
                    direction=zone.fade_direction,
                    trade_type="fade",
                    stop_loss=fade_stop(zone, zone.fade_direction, atr),
                    reason=f"Sweep fade at {zone.mid_price:.5f}",
                )
            )
        return signals

    def _confirmed_retests(
        self, price: float, last, previous, atr: float, now: datetime,
    ) -> list[TradeSignal]:
        signals: list[TradeSignal] = []
        for zone in self.zones.zones():
            if not in_retest_window(zone, now) or self._on_cooldown(zone, now):
                continue
            if not is_retest(zone, price, last.close) or not is_inside_bar(last, previous):
                continue
            limit, stop = retest_order_levels(zone, zone.break_direction, atr)
            signals.append(
                TradeSignal(
                    zone_id=zone.zone_id,
                    direction=zone.break_direction,
                    trade_type="retest",
                    stop_loss=stop,
                    entry_price=limit,
                    reason=f"Break-retest at {zone.mid_price:.5f}",
                )
            )
        return signals

    # ── Execution ────────────────────────────────────────────────────────

    async def _execute(self, signal: TradeSignal, price: float, now: datetime) -> dict:
        """Size and place one order; mutate state only on success."""
        spec = await self._broker.get_symbol_spec(self.symbol)
        entry = signal.entry_price if signal.entry_price is not None else price
        sl_distance = (entry - signal.stop_loss) * signal.direction.sign
        outcome = {
            "success": False,
            "zone_id": signal.zone_id,
            "trade_type": signal.trade_type,
            "direction": signal.direction.value,
        }
        if sl_distance <= spec.min_stop_distance:
            logger.info(
                "Signal on zone %d skipped: stop %.5f too close to entry %.5f",
                signal.zone_id, signal.stop_loss, entry,
            )
            outcome["reason"] = "stop_too_close"
            return outcome

        lots = calculate_lots(self.risk.base_risk_amount, sl_distance, spec)
        if not await self.risk.check_correlation_risk(signal.direction, lots, sl_distance):
            lots = normalize_lots(lots / 2.0, spec)

        label = f"{self._config.trade_tag}:{signal.trade_type}"
        try:
            if signal.entry_price is None:
                result = await self._broker.place_market_order(
                    signal.direction, lots, signal.stop_loss, label,
                )
            else:
                result = await self._broker.place_limit_order(
                    signal.direction, signal.entry_price, lots, signal.stop_loss, label,
                )
        except ExecutionFailure as exc:
            logger.error("Order for zone %d failed: %s", signal.zone_id, exc)
            outcome["reason"] = "execution_failure"
            return outcome

        if not result.success or result.ticket is None:
            logger.error(
                "Order for zone %d rejected: %s", signal.zone_id, result.message,
            )
            outcome["reason"] = "execution_failure"
            return outcome

        position = ManagedPosition(
            ticket=result.ticket,
            direction=signal.direction,
            entry_price=result.price if result.price is not None else entry,
            stop_loss=signal.stop_loss,
            lot_size=lots,
            trade_type=signal.trade_type,
            open_time=now,
            initial_r=risk_amount_for(lots, sl_distance, spec),
            zone_id=signal.zone_id,
        )

        if signal.trade_type == "fade":
            self.positions.register_position(position)
            self.risk.register_new_trade(position.initial_r)
            self.zones.update_zone(
                signal.zone_id,
                pending_fade=False,
                fade_direction=Direction.NONE,
                last_trade_time=now,
            )
        else:
            self.positions.track_pending_order(position)
            self.risk.register_pending_order(position.initial_r)
            self.zones.update_zone(signal.zone_id, break_time=None, last_trade_time=now)

        logger.info(
            "%s %s %.2f lots SL=%.5f (ticket %d): %s",
            signal.trade_type.capitalize(), signal.direction.value, lots,
            signal.stop_loss, result.ticket, signal.reason,
        )
        outcome.update(
            success=True,
            ticket=result.ticket,
            lots=lots,
            sl=signal.stop_loss,
            entry=position.entry_price,
            reason=signal.reason,
        )
        return outcome
