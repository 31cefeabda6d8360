"""Broker collaborator protocol.

Market data, account introspection and order execution all live outside the
core.  Anything implementing ``BrokerProtocol`` (a live adapter, the
``SimulatedBroker`` or a test double) can drive the engine.
"""

from __future__ import annotations

from typing import Optional, Protocol, runtime_checkable

from zonetrader.broker.models import (
    AccountSummary,
    Candle,
    OrderResult,
    PositionSnapshot,
    SymbolSpec,
)
from zonetrader.strategy.models import Direction


# Timeframe keys used throughout the engine.
TF_DAILY = "D"
TF_H4 = "H4"
TF_H1 = "H1"


@runtime_checkable
class BrokerProtocol(Protocol):
    """Interface the surrounding system must provide.

    Bar queries return bars oldest-first.  ``shift`` counts back from the
    currently forming bar (``shift=0``), so ``shift=1`` starts at the most
    recently *closed* bar.  Implementations raise ``DataUnavailable`` when
    fewer than *count* bars exist.
    """

    async def get_daily_bars(self, symbol: str, count: int) -> list[Candle]:
        """The *count* most recent closed daily bars (today's bar excluded)."""
        ...

    async def get_bars(
        self, symbol: str, timeframe: str, shift: int, count: int,
    ) -> list[Candle]:
        ...

    async def get_account_summary(self) -> AccountSummary:
        ...

    async def get_current_price(self, symbol: str) -> float:
        ...

    async def get_symbol_spec(self, symbol: str) -> SymbolSpec:
        ...

    async def place_market_order(
        self,
        direction: Direction,
        lots: float,
        stop_loss: float,
        label: str,
    ) -> OrderResult:
        ...

    async def place_limit_order(
        self,
        direction: Direction,
        price: float,
        lots: float,
        stop_loss: float,
        label: str,
    ) -> OrderResult:
        ...

    async def modify_stop(self, ticket: int, new_stop: float) -> bool:
        ...

    async def close_position(self, ticket: int) -> bool:
        ...

    async def close_partial(self, ticket: int, lots: float) -> bool:
        ...

    async def get_open_positions(
        self, symbol: Optional[str] = None,
    ) -> list[PositionSnapshot]:
        ...

    async def get_pending_orders(self, symbol: Optional[str] = None) -> list[int]:
        """Tickets of resting orders that have not filled yet."""
        ...

    async def get_realised_pnl(self, ticket: int) -> Optional[float]:
        """Total realised P&L booked for *ticket*, partial closes included.

        ``None`` when the broker holds no closed deals for the ticket.
        """
        ...
