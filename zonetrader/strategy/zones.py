"""Support/Resistance zone detection from Daily candles.

Pipeline: fractal pivots → proximity clustering → sweep-count strength
scoring → top-N retention.  The ``ZoneDetector`` owns the resulting zone set
as an id-indexed store; every detection pass replaces it wholesale.
"""

import itertools
import logging
import math
from dataclasses import replace
from datetime import datetime
from typing import Optional, Sequence

from zonetrader.broker.models import Candle
from zonetrader.errors import DataUnavailable
from zonetrader.strategy.models import MID_PRICE_TOLERANCE, Pivot, Zone

logger = logging.getLogger("zonetrader.zones")

PIVOT_LOOKBACK_BARS = 200
PIVOT_WING = 2  # bars on each side of a fractal
MAX_PIVOTS = 100
MAX_ZONES = 8

_ABOVE, _BELOW, _INSIDE = "above", "below", "inside"


def find_pivots(
    candles: Sequence[Candle],
    wing: int = PIVOT_WING,
    max_pivots: int = MAX_PIVOTS,
) -> list[Pivot]:
    """Identify fractal pivot highs and lows, oldest first.

    A pivot high is a bar whose high strictly exceeds the highs of the
    *wing* bars on each side; pivot lows mirror this.  A bar may be both.
    Collection stops once *max_pivots* have been found.
    """
    pivots: list[Pivot] = []
    for i in range(wing, len(candles) - wing):
        bar = candles[i]
        neighbours = [candles[i + j] for j in range(-wing, wing + 1) if j != 0]

        if all(bar.high > n.high for n in neighbours):
            pivots.append(Pivot(price=bar.high, is_high=True, time=bar.time))
            if len(pivots) >= max_pivots:
                break
        if all(bar.low < n.low for n in neighbours):
            pivots.append(Pivot(price=bar.low, is_high=False, time=bar.time))
            if len(pivots) >= max_pivots:
                break
    return pivots


def cluster_pivots(
    pivots: Sequence[Pivot],
    cluster_width: float,
) -> list[tuple[float, int]]:
    """Group pivots lying within *cluster_width* of one another.

    Pivots are visited in order.  A pivot close to an already accepted
    cluster midpoint is skipped; otherwise every pivot (high or low) within
    *cluster_width* of it forms its cluster.  Only clusters with at least two
    members are returned, as ``(mean_price, member_count)`` tuples.
    """
    accepted: list[tuple[float, int]] = []
    for pivot in pivots:
        if any(abs(pivot.price - mid) <= cluster_width for mid, _ in accepted):
            continue

        members = [p.price for p in pivots if abs(p.price - pivot.price) <= cluster_width]
        if len(members) < 2:
            continue

        mid = sum(members) / len(members)
        if any(abs(mid - m) < MID_PRICE_TOLERANCE for m, _ in accepted):
            continue
        accepted.append((mid, len(members)))
    return accepted


def _band_state(price: float, low: float, high: float) -> str:
    if price > high:
        return _ABOVE
    if price < low:
        return _BELOW
    return _INSIDE


def count_sweeps(
    candles: Sequence[Candle],
    mid_price: float,
    band_half_width: float,
) -> int:
    """Count transitions into or out of the band around *mid_price*.

    Closes are walked newest to oldest.
    """
    low = mid_price - band_half_width
    high = mid_price + band_half_width
    sweeps = 0
    state: Optional[str] = None
    for bar in reversed(candles):
        current = _band_state(bar.close, low, high)
        if state is not None and current != state and _INSIDE in (state, current):
            sweeps += 1
        state = current
    return sweeps


def score_strength(
    candles: Sequence[Candle],
    mid_price: float,
    band_half_width: float,
    now: datetime,
) -> int:
    """Zone strength = ``sweeps² × ln(max(age_days, 1))``, floored at 1."""
    sweeps = count_sweeps(candles, mid_price, band_half_width)
    age_days = (now - candles[0].time).total_seconds() / 86_400.0
    raw = sweeps ** 2 * math.log(max(age_days, 1.0))
    return max(1, int(raw))


class ZoneDetector:
    """Detects and owns the current set of S/R zones.

    Args:
        band_half_width: Constant half-width (price units) of the band used
            for strength scoring.  Independent of ATR.
        max_zones: Number of strongest zones retained per pass.
    """

    def __init__(self, band_half_width: float, max_zones: int = MAX_ZONES) -> None:
        self._band_half_width = band_half_width
        self._max_zones = max_zones
        self._zones: dict[int, Zone] = {}
        self._order: list[int] = []
        self._ids = itertools.count(1)
        self.last_detection: Optional[datetime] = None

    # ── Detection ────────────────────────────────────────────────────────

    def detect_zones(
        self,
        price_history: Sequence[Candle],
        atr: float,
        depth_multiplier: float,
        now: Optional[datetime] = None,
    ) -> list[Zone]:
        """Run a full detection pass and replace the held zone set.

        Args:
            price_history: Daily candles, oldest first.  Only the last
                ``PIVOT_LOOKBACK_BARS`` are used.
            atr: Daily ATR in price units.
            depth_multiplier: Cluster width as a multiple of *atr*.
            now: Evaluation time for zone age; defaults to the newest bar.

        Returns:
            The new zones, strongest first.

        Raises:
            DataUnavailable: Not enough bars or a non-positive ATR.  The
                previously held zones are left untouched.
        """
        window = list(price_history[-PIVOT_LOOKBACK_BARS:])
        if len(window) < 2 * PIVOT_WING + 1:
            raise DataUnavailable(
                f"Need at least {2 * PIVOT_WING + 1} daily bars for pivots, "
                f"got {len(window)}"
            )
        if atr <= 0:
            raise DataUnavailable(f"ATR must be positive, got {atr}")

        if now is None:
            now = window[-1].time

        cluster_width = atr * depth_multiplier
        pivots = find_pivots(window)
        clusters = cluster_pivots(pivots, cluster_width)

        candidates: list[Zone] = []
        for mid, _members in clusters:
            candidates.append(
                Zone(
                    zone_id=next(self._ids),
                    mid_price=mid,
                    width=cluster_width,
                    strength=score_strength(window, mid, self._band_half_width, now),
                )
            )

        candidates.sort(key=lambda z: z.strength, reverse=True)
        selected = candidates[: self._max_zones]

        self._zones = {z.zone_id: z for z in selected}
        self._order = [z.zone_id for z in selected]
        self.last_detection = now

        logger.info(
            "Zone scan: %d pivots, %d clusters, kept %d (width=%.5f)",
            len(pivots), len(clusters), len(selected), cluster_width,
        )
        return list(selected)

    # ── Store access ─────────────────────────────────────────────────────

    def zones(self) -> list[Zone]:
        """Current zones, strongest first."""
        return [self._zones[zid] for zid in self._order]

    def get(self, zone_id: int) -> Optional[Zone]:
        return self._zones.get(zone_id)

    def update_zone(self, zone_id: int, **changes) -> Optional[Zone]:
        """Replace fields on a held zone.

        Returns the updated zone, or ``None`` when the zone no longer exists
        (a detection pass replaced the set in the meantime).
        """
        zone = self._zones.get(zone_id)
        if zone is None:
            return None
        updated = replace(zone, **changes)
        self._zones[zone_id] = updated
        return updated

    def __len__(self) -> int:
        return len(self._order)
