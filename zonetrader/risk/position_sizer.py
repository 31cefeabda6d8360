"""Position sizing — pure math, no I/O.

Converts a risk amount in account currency and a stop distance in price
units into a broker-valid lot size, and back.
"""

import math

from zonetrader.broker.models import SymbolSpec


def normalize_lots(lots: float, spec: SymbolSpec) -> float:
    """Round *lots* down to the lot step and clamp to ``[min_lot, max_lot]``."""
    if lots <= 0:
        return spec.min_lot
    steps = math.floor(lots / spec.lot_step + 1e-9)
    stepped = round(steps * spec.lot_step, 8)
    return min(max(stepped, spec.min_lot), spec.max_lot)


def calculate_lots(
    risk_amount: float,
    sl_distance: float,
    spec: SymbolSpec,
) -> float:
    """Calculate position size in lots.

    Formula::

        lots = risk_amount / (sl_distance × value_per_unit)

    The result is normalised to the broker's lot step and limits, so the
    minimum lot is returned when the risk budget is smaller than one step.

    Args:
        risk_amount: Account-currency amount to lose if the stop is hit.
        sl_distance: Entry-to-stop distance in price units.
        spec: Instrument constraints.

    Raises:
        ValueError: If any input is non-positive.
    """
    if risk_amount <= 0:
        raise ValueError(f"risk_amount must be positive, got {risk_amount}")
    if sl_distance <= 0:
        raise ValueError(f"sl_distance must be positive, got {sl_distance}")
    if spec.value_per_unit <= 0:
        raise ValueError(f"value_per_unit must be positive, got {spec.value_per_unit}")

    raw = risk_amount / (sl_distance * spec.value_per_unit)
    return normalize_lots(raw, spec)


def risk_amount_for(lots: float, sl_distance: float, spec: SymbolSpec) -> float:
    """Account-currency risk of *lots* with a stop *sl_distance* away."""
    return abs(sl_distance) * lots * spec.value_per_unit
