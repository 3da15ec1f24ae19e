"""Consecutive over-limit counting."""

from __future__ import annotations

import logging
from dataclasses import dataclass

logger = logging.getLogger(__name__)


@dataclass
class HysteresisResult:
    over_limit: bool
    triggered: bool  # rising edge: counter just reached the threshold
    should_mitigate: bool


class HysteresisDetector:
    """Counts consecutive smoothed readings above the limit.

    Mitigation is warranted while the counter is at or above the threshold.
    The rising edge is reported exactly once per excursion.
    """

    def __init__(self, threshold: int) -> None:
        self.threshold = threshold
        self.over_limit_count = 0

    @property
    def is_over_limit(self) -> bool:
        return self.over_limit_count >= self.threshold

    def update(self, smoothed: float, limit: float) -> HysteresisResult:
        if smoothed > limit:
            self.over_limit_count += 1
            triggered = self.over_limit_count == self.threshold
            if triggered:
                logger.warning(
                    "Power %.0fW over limit %.0fW for %d consecutive readings",
                    smoothed, limit, self.over_limit_count,
                )
            return HysteresisResult(
                over_limit=True,
                triggered=triggered,
                should_mitigate=self.is_over_limit,
            )
        self.over_limit_count = 0
        return HysteresisResult(over_limit=False, triggered=False, should_mitigate=False)

    def force_over_limit(self) -> None:
        """Jump straight to the threshold so the next pass mitigates."""
        self.over_limit_count = self.threshold

    def reset(self) -> None:
        self.over_limit_count = 0
