"""Error taxonomy shared by every component.

Policy vetoes (risk or macro filters saying "no") are *not* errors and never
raise; the orchestrator returns them as ordinary results.
"""


class ZoneTraderError(Exception):
    """Base class for all ZoneTrader errors."""


class DataUnavailable(ZoneTraderError):
    """Missing or insufficient price / indicator data.

    Aborts only the current detection or check pass; the caller keeps its
    prior state and retries on the next cycle.
    """


class ExecutionFailure(ZoneTraderError):
    """The broker rejected an order placement or modification."""


class InvalidInput(ZoneTraderError, ValueError):
    """Malformed configuration detected at startup."""
