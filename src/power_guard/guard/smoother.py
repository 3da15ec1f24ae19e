"""Moving-average smoothing of raw meter readings with spike rejection."""

from __future__ import annotations

import logging
import math
from collections import deque
from numbers import Real

from power_guard.config.schema import GuardConfig

logger = logging.getLogger(__name__)

MAX_SAMPLES = 60


class SampleSmoother:
    """Bounded FIFO of raw readings and the mean of the most recent window.

    Once the window is full, a reading above ``average * spike_multiplier`` is
    treated as a meter glitch and never enters the buffer.
    """

    def __init__(self, config: GuardConfig) -> None:
        self._config = config
        self._buffer: deque[float] = deque(maxlen=MAX_SAMPLES)
        self.spikes_ignored = 0

    def update_config(self, config: GuardConfig) -> None:
        self._config = config

    @property
    def samples(self) -> list[float]:
        return list(self._buffer)

    @property
    def average(self) -> float | None:
        """Mean of the last ``min(len, smoothing_window)`` readings, None when empty."""
        if not self._buffer:
            return None
        count = min(len(self._buffer), self._config.smoothing_window)
        recent = list(self._buffer)[-count:]
        return sum(recent) / count

    def push(self, raw: object) -> float | None:
        """Add a reading and return the updated average.

        Non-numeric and non-finite input is ignored and leaves the buffer as is.
        """
        if isinstance(raw, bool) or not isinstance(raw, Real):
            logger.debug("Ignoring non-numeric power reading: %r", raw)
            return self.average
        value = float(raw)
        if not math.isfinite(value):
            logger.debug("Ignoring non-finite power reading: %r", raw)
            return self.average

        avg = self.average
        if (
            avg is not None
            and avg > 0
            and len(self._buffer) >= self._config.smoothing_window
            and value > avg * self._config.spike_multiplier
        ):
            self.spikes_ignored += 1
            logger.info("Spike ignored: %.0fW (average %.0fW)", value, avg)
            return avg

        self._buffer.append(value)
        return self.average

    def reset(self) -> None:
        self._buffer.clear()
        self.spikes_ignored = 0
