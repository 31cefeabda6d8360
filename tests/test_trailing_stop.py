"""Tests for Chandelier / anchored-VWAP trailing stops."""

import pytest

from zonetrader.risk.trailing_stop import (
    STOP_SAFETY_BUFFER,
    chandelier_level,
    clears_min_distance,
    next_trailing_stop,
)
from zonetrader.strategy.models import Direction


def _trail(direction, steps, start_stop, min_distance=0.0005):
    """Apply next_trailing_stop over (extreme, atr, vwap, price) steps."""
    stop = start_stop
    history = [stop]
    for extreme, atr, vwap, price in steps:
        chandelier = chandelier_level(direction, extreme, atr)
        new = next_trailing_stop(direction, stop, chandelier, vwap, price, min_distance)
        if new is not None:
            stop = new
        history.append(stop)
    return history


class TestChandelier:
    def test_long_and_short_levels(self):
        assert chandelier_level(Direction.LONG, 1.1200, 0.0020) == pytest.approx(1.1140)
        assert chandelier_level(Direction.SHORT, 1.1000, 0.0020) == pytest.approx(1.1060)

    def test_rejects_none(self):
        with pytest.raises(ValueError):
            chandelier_level(Direction.NONE, 1.1, 0.002)


class TestNextTrailingStop:
    def test_long_takes_higher_of_chandelier_and_vwap(self):
        assert next_trailing_stop(
            Direction.LONG, 1.0900, 1.0950, 1.0980, price=1.1100, min_stop_distance=0.0,
        ) == pytest.approx(1.0980)

    def test_short_takes_lower_of_chandelier_and_vwap(self):
        assert next_trailing_stop(
            Direction.SHORT, 1.1200, 1.1150, 1.1120, price=1.1000, min_stop_distance=0.0,
        ) == pytest.approx(1.1120)

    def test_never_loosens(self):
        assert next_trailing_stop(
            Direction.LONG, 1.1000, 1.0950, 1.0980, price=1.1100, min_stop_distance=0.0,
        ) is None
        assert next_trailing_stop(
            Direction.SHORT, 1.1000, 1.1050, 1.1080, price=1.0900, min_stop_distance=0.0,
        ) is None

    def test_too_close_to_price_is_skipped(self):
        # 1.1095 is only 5 pips under price; needs 5 pips + buffer
        assert next_trailing_stop(
            Direction.LONG, 1.0900, 1.1095, 1.0950, price=1.1100, min_stop_distance=0.0005,
        ) is None

    def test_min_distance_includes_buffer(self):
        required = 0.0005 + STOP_SAFETY_BUFFER
        assert clears_min_distance(Direction.LONG, 1.1100 - required - 1e-9, 1.1100, 0.0005)
        assert not clears_min_distance(Direction.LONG, 1.1100 - 0.0006, 1.1100, 0.0005)
        assert clears_min_distance(Direction.SHORT, 1.1100 + required + 1e-9, 1.1100, 0.0005)

    def test_no_initial_stop_accepts_candidate(self):
        assert next_trailing_stop(
            Direction.LONG, None, 1.0950, 1.0900, price=1.1000, min_stop_distance=0.0,
        ) == pytest.approx(1.0950)


class TestMonotonicity:
    def test_long_stop_never_decreases_with_rising_inputs(self):
        steps = [
            (1.1000 + i * 0.0010, 0.0020, 1.0950 + i * 0.0008, 1.1010 + i * 0.0010)
            for i in range(30)
        ]
        history = _trail(Direction.LONG, steps, start_stop=1.0900)
        assert all(b >= a for a, b in zip(history, history[1:]))
        assert history[-1] > history[0]

    def test_short_stop_never_increases_with_falling_inputs(self):
        steps = [
            (1.1000 - i * 0.0010, 0.0020, 1.1050 - i * 0.0008, 1.0990 - i * 0.0010)
            for i in range(30)
        ]
        history = _trail(Direction.SHORT, steps, start_stop=1.1100)
        assert all(b <= a for a, b in zip(history, history[1:]))
        assert history[-1] < history[0]

    def test_long_stop_holds_when_inputs_fall_back(self):
        steps = [
            (1.1100, 0.0020, 1.1000, 1.1150),
            (1.1050, 0.0030, 1.0950, 1.1080),
        ]
        history = _trail(Direction.LONG, steps, start_stop=1.0900)
        assert history[2] == history[1]
