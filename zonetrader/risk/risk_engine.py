"""Account-level risk state machine.

Tracks drawdown, realised daily loss, open risk and a VaR-style budget over
daily epochs, and decides whether new entries are admitted.

Vetoes are ordinary outcomes, not errors: ``can_open_new_trades`` returns
``False`` and records the reason in ``last_veto``.
"""

import logging
from dataclasses import dataclass, replace
from datetime import date, datetime, timedelta
from typing import Optional

from zonetrader.broker.models import PositionSnapshot, SymbolSpec
from zonetrader.errors import DataUnavailable
from zonetrader.risk.drawdown import DrawdownTracker
from zonetrader.risk.position_sizer import risk_amount_for
from zonetrader.strategy.models import Direction

logger = logging.getLogger("zonetrader.risk")

DAILY_LOSS_MULTIPLE = 2.0  # × base risk of initial equity
VAR_BASE_FRACTION = 0.02
VAR_DEEP_DRAWDOWN_PCT = 3.0
VAR_DEEP_DRAWDOWN_GRACE = timedelta(hours=24)
VAR_MAX_SCALE_UP = 0.5
VAR_SCALE_DAYS = 10.0
RECONCILE_INTERVAL = timedelta(hours=4)
RECONCILE_SLACK = 1.5  # tracked may exceed actual by this factor
PENDING_ORDER_WEIGHT = 0.5
CLOSED_TRADE_RELEASE = 1.5  # × |realised profit| removed from open risk
VAR_REFRESH_RATIO = 0.5  # recompute VaR once open risk halves

# Fixed correlation assumption between same-direction positions on one
# symbol.  Not a computed statistic.
CORRELATION_ASSUMPTION = 0.75


@dataclass
class RiskState:
    """Snapshot of the engine's risk counters."""

    initial_equity: float
    peak_equity: float
    current_drawdown_pct: float = 0.0
    daily_loss: float = 0.0
    last_day_checked: Optional[date] = None
    open_risk: float = 0.0
    var_limit: float = 0.0
    last_var_update: Optional[datetime] = None
    last_reconcile: Optional[datetime] = None
    open_risk_at_var: float = 0.0


class RiskEngine:
    """Gates and records trades against account-level risk limits.

    Args:
        broker: ``BrokerProtocol`` implementation.
        symbol: Instrument whose positions are tracked.
        base_risk_pct: Risk per trade as a percentage of equity.
        max_drawdown_pct: Drawdown at which new entries stop.
        trade_tag: Label identifying this engine's positions at the broker.
    """

    def __init__(
        self,
        broker,
        symbol: str,
        base_risk_pct: float,
        max_drawdown_pct: float,
        trade_tag: str = "",
    ) -> None:
        self._broker = broker
        self._symbol = symbol
        self._base_risk_fraction = base_risk_pct / 100.0
        self._max_drawdown_pct = max_drawdown_pct
        self._trade_tag = trade_tag
        self._drawdown: Optional[DrawdownTracker] = None
        self._state: Optional[RiskState] = None
        self._last_now: Optional[datetime] = None
        self.last_veto: Optional[str] = None

    # ── Lifecycle ────────────────────────────────────────────────────────

    async def initialize(self, now: datetime) -> None:
        """Seed state from the current account equity."""
        summary = await self._broker.get_account_summary()
        self._drawdown = DrawdownTracker(
            initial_equity=summary.equity,
            max_drawdown_pct=self._max_drawdown_pct,
            deep_drawdown_pct=VAR_DEEP_DRAWDOWN_PCT,
        )
        self._drawdown.update(summary.equity, now)
        self._state = RiskState(
            initial_equity=summary.equity,
            peak_equity=summary.equity,
            last_day_checked=now.date(),
        )
        self._last_now = now
        self._refresh_var(now)
        logger.info(
            "Risk engine initialised: equity=%.2f var_limit=%.2f",
            summary.equity, self._state.var_limit,
        )

    @property
    def state(self) -> RiskState:
        """A copy of the current risk counters."""
        return replace(self._require_state())

    @property
    def equity(self) -> float:
        self._require_state()
        return self._drawdown.current_equity

    @property
    def base_risk_amount(self) -> float:
        """Single-trade risk cap in account currency at current equity."""
        return self._base_risk_fraction * self.equity

    def _require_state(self) -> RiskState:
        if self._state is None or self._drawdown is None:
            raise RuntimeError("RiskEngine.initialize() has not been awaited")
        return self._state

    # ── Status / admission ───────────────────────────────────────────────

    async def update_risk_status(self, now: datetime) -> None:
        """Advance daily epochs, refresh drawdown and reconcile open risk."""
        state = self._require_state()
        self._last_now = now

        summary = await self._broker.get_account_summary()
        self._drawdown.update(summary.equity, now)
        state.peak_equity = self._drawdown.peak_equity
        state.current_drawdown_pct = self._drawdown.drawdown_pct

        today = now.date()
        if state.last_day_checked != today:
            logger.info(
                "New trading day %s: resetting daily loss (was %.2f)",
                today.isoformat(), state.daily_loss,
            )
            state.daily_loss = 0.0
            state.last_day_checked = today
            self._refresh_var(now)

        if state.last_reconcile is None or now - state.last_reconcile >= RECONCILE_INTERVAL:
            await self._reconcile_open_risk(now)

        if state.last_var_update is None or state.last_var_update.date() != today:
            self._refresh_var(now)

    async def can_open_new_trades(self, now: datetime) -> bool:
        """``False`` when any of the daily-loss, drawdown or VaR limits bite."""
        await self.update_risk_status(now)
        state = self._require_state()

        daily_cap = DAILY_LOSS_MULTIPLE * self._base_risk_fraction * state.initial_equity
        if state.daily_loss >= daily_cap:
            return self._veto("daily_loss_limit", state.daily_loss, daily_cap)
        if state.current_drawdown_pct >= self._max_drawdown_pct:
            return self._veto(
                "max_drawdown", state.current_drawdown_pct, self._max_drawdown_pct,
            )
        if state.open_risk + state.daily_loss > state.var_limit:
            return self._veto(
                "var_limit", state.open_risk + state.daily_loss, state.var_limit,
            )

        self.last_veto = None
        return True

    def _veto(self, reason: str, value: float, limit: float) -> bool:
        self.last_veto = reason
        logger.info("Risk veto: %s (%.2f vs limit %.2f)", reason, value, limit)
        return False

    # ── VaR ──────────────────────────────────────────────────────────────

    def calculate_var(self, now: datetime) -> float:
        """Risk budget: 2 % of equity, widened while a deep drawdown persists.

        After drawdown has stayed above 3 % for more than 24 hours the budget
        grows linearly with time in drawdown, reaching +50 % at 10 days.
        """
        self._require_state()
        base = VAR_BASE_FRACTION * self._drawdown.current_equity
        hours = self._drawdown.deep_drawdown_hours(now)
        if hours <= VAR_DEEP_DRAWDOWN_GRACE.total_seconds() / 3600.0:
            return base
        days = min(hours / 24.0, VAR_SCALE_DAYS)
        return base * (1.0 + VAR_MAX_SCALE_UP * days / VAR_SCALE_DAYS)

    def _refresh_var(self, now: datetime) -> None:
        state = self._require_state()
        state.var_limit = self.calculate_var(now)
        state.last_var_update = now
        state.open_risk_at_var = state.open_risk
        logger.debug("VaR limit recomputed: %.2f", state.var_limit)

    # ── Open-risk reconciliation ─────────────────────────────────────────

    def _own(self, position: PositionSnapshot) -> bool:
        if position.symbol != self._symbol:
            return False
        return not self._trade_tag or position.label.startswith(self._trade_tag)

    def _position_risk(self, position: PositionSnapshot, spec: SymbolSpec) -> float:
        """Loss to the stop, or a base-risk estimate when no stop is set."""
        if position.stop_loss is None:
            return self.base_risk_amount
        distance = (position.entry_price - position.stop_loss) * position.direction.sign
        return risk_amount_for(position.volume, max(distance, 0.0), spec)

    async def _own_positions(self) -> tuple[list[PositionSnapshot], SymbolSpec]:
        positions = await self._broker.get_open_positions(self._symbol)
        spec = await self._broker.get_symbol_spec(self._symbol)
        return [p for p in positions if self._own(p)], spec

    async def _reconcile_open_risk(self, now: datetime) -> None:
        state = self._require_state()
        try:
            positions, spec = await self._own_positions()
        except DataUnavailable as exc:
            logger.warning("Open-risk reconciliation skipped, data unavailable: %s", exc)
            return
        state.last_reconcile = now

        actual = sum(self._position_risk(p, spec) for p in positions)
        if state.open_risk > actual * RECONCILE_SLACK:
            logger.info(
                "Open risk reconciled down: tracked=%.2f actual=%.2f",
                state.open_risk, actual,
            )
            state.open_risk = actual
            self._refresh_var(now)

    # ── Correlation ──────────────────────────────────────────────────────

    async def check_correlation_risk(
        self,
        direction: Direction,
        lot_size: float,
        sl_distance: Optional[float] = None,
    ) -> bool:
        """Admit a new same-direction position only within the base-risk cap.

        Existing same-direction risk is scaled by ``CORRELATION_ASSUMPTION``
        and added to the candidate's risk.  Returns ``False`` when the total
        would exceed the single-trade cap; the caller decides what to do
        (the orchestrator halves the lot).
        """
        self._require_state()
        positions, spec = await self._own_positions()
        same_side = [p for p in positions if p.direction is direction]
        if not same_side:
            return True

        existing = sum(self._position_risk(p, spec) for p in same_side)
        if sl_distance is None:
            new_risk = self.base_risk_amount
        else:
            new_risk = risk_amount_for(lot_size, sl_distance, spec)

        combined = existing * CORRELATION_ASSUMPTION + new_risk
        admitted = combined <= self.base_risk_amount
        if not admitted:
            logger.info(
                "Correlation veto: %s combined risk %.2f > cap %.2f",
                direction.value, combined, self.base_risk_amount,
            )
        return admitted

    # ── Registration ─────────────────────────────────────────────────────

    def register_new_trade(self, risk_amount: float) -> None:
        state = self._require_state()
        state.open_risk += max(risk_amount, 0.0)

    def register_pending_order(self, risk_amount: float) -> None:
        """Resting orders count at half weight until they fill."""
        self.register_new_trade(risk_amount * PENDING_ORDER_WEIGHT)

    def register_pending_fill(self, risk_amount: float) -> None:
        """Top a filled pending order up to full weight."""
        self.register_new_trade(risk_amount * (1.0 - PENDING_ORDER_WEIGHT))

    def release_pending_order(self, risk_amount: float) -> None:
        """Drop the half-weight risk of an order that went away unfilled."""
        state = self._require_state()
        released = max(risk_amount, 0.0) * PENDING_ORDER_WEIGHT
        state.open_risk = max(0.0, state.open_risk - released)

    def register_closed_trade(
        self,
        profit: float,
        equity: Optional[float] = None,
        now: Optional[datetime] = None,
    ) -> None:
        """Release open risk and book realised profit or loss."""
        state = self._require_state()
        now = now or self._last_now

        state.open_risk = max(0.0, state.open_risk - CLOSED_TRADE_RELEASE * abs(profit))
        if profit < 0:
            state.daily_loss += -profit
        elif profit > 0 and equity is not None:
            self._drawdown.raise_peak(equity)
            state.peak_equity = self._drawdown.peak_equity

        if (
            now is not None
            and state.open_risk_at_var > 0
            and state.open_risk <= state.open_risk_at_var * VAR_REFRESH_RATIO
        ):
            self._refresh_var(now)
