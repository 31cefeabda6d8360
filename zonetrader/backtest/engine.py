"""Backtest engine — replays historical candles through the orchestrator.

Steps simulated time one H1 bar at a time, firing the hourly timer and a
tick on each step.  Orders are filled by ``SimulatedBroker``; no real orders
are placed.
"""

import logging
from dataclasses import asdict
from datetime import datetime
from typing import Optional

from zonetrader.backtest.simulated_broker import SimulatedBroker
from zonetrader.backtest.stats import calculate_stats
from zonetrader.broker.base import TF_DAILY, TF_H1, TF_H4
from zonetrader.broker.models import Candle, SymbolSpec
from zonetrader.config import Config, configure_logging
from zonetrader.engine import StrategyOrchestrator

logger = logging.getLogger("zonetrader.backtest")


class BacktestEngine:
    """Simulates trading on historical candle data.

    Args:
        config: Application configuration (risk %, symbol, pyramids, ...).
        spec: Instrument constraints for the simulated broker.
    """

    def __init__(self, config: Config, spec: Optional[SymbolSpec] = None) -> None:
        configure_logging(config.log_level)
        self._config = config
        self._spec = spec or SymbolSpec(symbol=config.symbol)

    # ── Public API ───────────────────────────────────────────────────────

    async def run(
        self,
        daily_candles: list[Candle],
        h4_candles: list[Candle],
        h1_candles: list[Candle],
        aux_daily: Optional[dict[str, list[Candle]]] = None,
        initial_equity: float = 10_000.0,
        start: Optional[datetime] = None,
    ) -> dict:
        """Execute a full backtest.

        Args:
            daily_candles: Daily candles for zone detection.
            h4_candles: 4-hour candles for triggers and trailing.
            h1_candles: 1-hour candles; each one is a simulation step.
            aux_daily: Daily candles for the macro filter symbols.
            initial_equity: Starting virtual equity.
            start: First simulated step; defaults to the first H1 bar.

        Returns:
            Dict with ``trades`` (closed-trade dicts), ``final_equity``,
            ``equity_curve``, ``actions`` (count per tick action) and
            ``stats``.
        """
        broker = SimulatedBroker(
            symbol=self._config.symbol,
            bars={TF_DAILY: daily_candles, TF_H4: h4_candles, TF_H1: h1_candles},
            spec=self._spec,
            initial_balance=initial_equity,
            aux_daily=aux_daily,
        )
        orchestrator = StrategyOrchestrator(self._config, broker)

        equity_curve: list[float] = [initial_equity]
        actions: dict[str, int] = {}
        steps = [c.time for c in h1_candles if start is None or c.time >= start]

        for now in steps:
            broker.advance_to(now)
            await orchestrator.on_timer(now)
            result = await orchestrator.on_tick(now)
            action = result.get("action", "unknown")
            actions[action] = actions.get(action, 0) + 1
            equity_curve.append(broker.equity)

        if steps:
            broker.close_all("end_of_data")
            equity_curve.append(broker.equity)

        trades = [self._trade_dict(t) for t in broker.closed_trades]
        logger.info(
            "Backtest finished: %d steps, %d closed trades, final equity %.2f",
            len(steps), len(trades), broker.balance,
        )
        return {
            "trades": trades,
            "final_equity": broker.balance,
            "equity_curve": equity_curve,
            "actions": actions,
            "stats": calculate_stats(trades, equity_curve),
        }

    # ── Helpers ──────────────────────────────────────────────────────────

    @staticmethod
    def _trade_dict(trade) -> dict:
        record = asdict(trade)
        record["direction"] = trade.direction.value
        record["open_time"] = trade.open_time.isoformat()
        record["close_time"] = trade.close_time.isoformat()
        return record
