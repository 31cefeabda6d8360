"""Drawdown tracking — pure math, no I/O.

Tracks peak equity, the current drawdown percentage and how long the
account has continuously stayed beyond a "deep drawdown" threshold.
"""

from datetime import datetime
from typing import Optional


class DrawdownTracker:
    """Tracks equity peaks and computes drawdown metrics.

    Args:
        initial_equity: Starting account equity.
        max_drawdown_pct: Drawdown that blocks new entries (percentage,
                          e.g. 10.0 for 10 %).
        deep_drawdown_pct: Drawdown beyond which the persistence clock
                           starts running.
    """

    def __init__(
        self,
        initial_equity: float,
        max_drawdown_pct: float = 10.0,
        deep_drawdown_pct: float = 3.0,
    ) -> None:
        if initial_equity <= 0:
            raise ValueError(
                f"initial_equity must be positive, got {initial_equity}"
            )
        self._peak_equity: float = initial_equity
        self._current_equity: float = initial_equity
        self._max_drawdown_pct: float = max_drawdown_pct
        self._deep_drawdown_pct: float = deep_drawdown_pct
        self._deep_since: Optional[datetime] = None

    # ── Mutation ─────────────────────────────────────────────────────────

    def update(self, equity: float, now: Optional[datetime] = None) -> None:
        """Record the latest equity value.

        Raises the peak when exceeded.  When *now* is supplied, the start of
        the current deep-drawdown stretch is tracked (and cleared as soon as
        drawdown recovers to the threshold).
        """
        self._current_equity = equity
        if equity > self._peak_equity:
            self._peak_equity = equity

        if now is None:
            return
        if self.drawdown_pct > self._deep_drawdown_pct:
            if self._deep_since is None:
                self._deep_since = now
        else:
            self._deep_since = None

    def raise_peak(self, equity: float) -> None:
        """Lift the peak to *equity* if higher, without touching current."""
        if equity > self._peak_equity:
            self._peak_equity = equity

    # ── Queries ──────────────────────────────────────────────────────────

    @property
    def peak_equity(self) -> float:
        """Highest equity recorded."""
        return self._peak_equity

    @property
    def current_equity(self) -> float:
        """Most recently recorded equity."""
        return self._current_equity

    @property
    def drawdown_pct(self) -> float:
        """Current drawdown as a percentage of peak equity."""
        if self._peak_equity == 0:
            return 0.0
        return (
            (self._peak_equity - self._current_equity) / self._peak_equity
        ) * 100.0

    @property
    def limit_reached(self) -> bool:
        """``True`` when drawdown has reached or exceeded the maximum."""
        return self.drawdown_pct >= self._max_drawdown_pct

    def deep_drawdown_hours(self, now: datetime) -> float:
        """Hours spent continuously beyond the deep-drawdown threshold."""
        if self._deep_since is None:
            return 0.0
        return (now - self._deep_since).total_seconds() / 3600.0
