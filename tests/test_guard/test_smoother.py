"""Tests for reading smoothing and consecutive over-limit detection."""

from __future__ import annotations

import math

import pytest

from power_guard.config.schema import GuardConfig
from power_guard.guard.hysteresis import HysteresisDetector
from power_guard.guard.smoother import MAX_SAMPLES, SampleSmoother


def _make_smoother(window: int = 3, multiplier: float = 2.0) -> SampleSmoother:
    return SampleSmoother(GuardConfig(smoothing_window=window, spike_multiplier=multiplier))


class TestSampleSmoother:
    def test_empty_average_is_none(self) -> None:
        assert _make_smoother().average is None

    def test_average_of_partial_window(self) -> None:
        smoother = _make_smoother(window=5)
        smoother.push(1000)
        assert smoother.push(2000) == pytest.approx(1500)

    def test_average_uses_most_recent_window(self) -> None:
        smoother = _make_smoother(window=3)
        for value in (1000, 1100, 1200, 1300, 1400):
            smoother.push(value)
        assert smoother.average == pytest.approx(1300)
        assert len(smoother.samples) == 5

    def test_spike_ignored_once_window_full(self) -> None:
        smoother = _make_smoother(window=3, multiplier=2.0)
        for _ in range(3):
            smoother.push(1000)
        assert smoother.push(2500) == pytest.approx(1000)
        assert smoother.samples == [1000, 1000, 1000]
        assert smoother.spikes_ignored == 1

    def test_reading_at_threshold_is_kept(self) -> None:
        smoother = _make_smoother(window=3, multiplier=2.0)
        for _ in range(3):
            smoother.push(1000)
        smoother.push(2000)
        assert smoother.samples[-1] == 2000

    def test_no_spike_filter_before_window_full(self) -> None:
        smoother = _make_smoother(window=3)
        smoother.push(1000)
        smoother.push(5000)
        assert smoother.samples == [1000, 5000]
        assert smoother.spikes_ignored == 0

    def test_no_spike_filter_on_zero_average(self) -> None:
        smoother = _make_smoother(window=3)
        for _ in range(3):
            smoother.push(0)
        smoother.push(4000)
        assert smoother.samples[-1] == 4000

    @pytest.mark.parametrize("raw", [None, "1200", True, math.nan, math.inf, -math.inf, {"power": 1}])
    def test_invalid_readings_ignored(self, raw: object) -> None:
        smoother = _make_smoother()
        smoother.push(1000)
        assert smoother.push(raw) == pytest.approx(1000)
        assert smoother.samples == [1000]

    def test_buffer_is_bounded(self) -> None:
        smoother = _make_smoother(window=5)
        for i in range(MAX_SAMPLES + 25):
            smoother.push(1000 + i % 3)
        assert len(smoother.samples) == MAX_SAMPLES

    def test_window_follows_config_update(self) -> None:
        smoother = _make_smoother(window=2)
        for value in (1000, 2000, 3000):
            smoother.push(value)
        assert smoother.average == pytest.approx(2500)
        smoother.update_config(GuardConfig(smoothing_window=3))
        assert smoother.average == pytest.approx(2000)

    def test_reset(self) -> None:
        smoother = _make_smoother()
        for _ in range(3):
            smoother.push(1000)
        smoother.push(9000)
        smoother.reset()
        assert smoother.average is None
        assert smoother.spikes_ignored == 0


class TestHysteresisDetector:
    def test_requires_consecutive_readings(self) -> None:
        detector = HysteresisDetector(threshold=3)
        assert detector.update(11000, 10000).should_mitigate is False
        assert detector.update(11000, 10000).should_mitigate is False
        result = detector.update(11000, 10000)
        assert result.should_mitigate is True
        assert result.triggered is True
        assert detector.is_over_limit is True

    def test_triggered_only_on_rising_edge(self) -> None:
        detector = HysteresisDetector(threshold=2)
        detector.update(11000, 10000)
        assert detector.update(11000, 10000).triggered is True
        result = detector.update(11000, 10000)
        assert result.triggered is False
        assert result.should_mitigate is True

    def test_reading_under_limit_resets(self) -> None:
        detector = HysteresisDetector(threshold=3)
        detector.update(11000, 10000)
        detector.update(11000, 10000)
        result = detector.update(9000, 10000)
        assert result.over_limit is False
        assert detector.over_limit_count == 0

    def test_equal_to_limit_is_not_over(self) -> None:
        detector = HysteresisDetector(threshold=1)
        assert detector.update(10000, 10000).over_limit is False

    def test_force_over_limit(self) -> None:
        detector = HysteresisDetector(threshold=4)
        detector.force_over_limit()
        assert detector.is_over_limit is True
        assert detector.update(11000, 10000).triggered is False

    def test_reset(self) -> None:
        detector = HysteresisDetector(threshold=1)
        detector.update(11000, 10000)
        detector.reset()
        assert detector.over_limit_count == 0
        assert detector.is_over_limit is False
