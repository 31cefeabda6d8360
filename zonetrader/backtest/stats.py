"""Summary metrics for a finished backtest."""

from collections import Counter
from typing import Optional, Sequence

import numpy as np

TRADING_DAYS = 252


def calculate_stats(
    trades: list[dict], equity_curve: Optional[Sequence[float]] = None,
) -> dict:
    """Summarise closed trades and, when given, the sampled equity curve.

    Every trade dict needs ``pnl``; ``close_reason`` is tallied when present.
    Partial closes count as separate trades.
    """
    stats = {
        "total_trades": len(trades),
        "winning_trades": 0,
        "losing_trades": 0,
        "win_rate": 0.0,
        "profit_factor": None,
        "expectancy": 0.0,
        "largest_win": 0.0,
        "largest_loss": 0.0,
        "sharpe_ratio": 0.0,
        "max_drawdown": 0.0,
        "max_drawdown_pct": _max_drawdown_pct(equity_curve),
        "net_pnl": 0.0,
        "close_reasons": dict(Counter(t.get("close_reason", "") for t in trades)),
    }
    if not trades:
        return stats

    pnl = np.array([t["pnl"] for t in trades], dtype=float)
    wins = pnl[pnl > 0]
    losses = pnl[pnl <= 0]
    gross_loss = float(-losses.sum())

    stats.update(
        winning_trades=int(wins.size),
        losing_trades=int(losses.size),
        win_rate=round(wins.size / pnl.size, 4),
        profit_factor=round(float(wins.sum()) / gross_loss, 4) if gross_loss > 0 else None,
        expectancy=round(float(pnl.mean()), 2),
        largest_win=round(float(wins.max()), 2) if wins.size else 0.0,
        largest_loss=round(float(losses.min()), 2) if losses.size else 0.0,
        sharpe_ratio=round(_sharpe(pnl), 4),
        max_drawdown=round(_max_drawdown(pnl), 4),
        net_pnl=round(float(pnl.sum()), 2),
    )
    return stats


def _sharpe(pnl: np.ndarray) -> float:
    """Per-trade Sharpe scaled by √252; 0.0 without variance."""
    if pnl.size < 2:
        return 0.0
    std = float(pnl.std(ddof=1))
    if std == 0:
        return 0.0
    return float(pnl.mean()) / std * np.sqrt(TRADING_DAYS)


def _max_drawdown(pnl: np.ndarray) -> float:
    """Deepest fall of cumulative P&L below its running peak (peak starts at 0)."""
    cumulative = np.concatenate(([0.0], np.cumsum(pnl)))
    return float((np.maximum.accumulate(cumulative) - cumulative).max())


def _max_drawdown_pct(equity_curve: Optional[Sequence[float]]) -> float:
    if not equity_curve:
        return 0.0
    equity = np.asarray(equity_curve, dtype=float)
    peaks = np.maximum.accumulate(equity)
    return round(float(((peaks - equity) / peaks).max() * 100.0), 4)
