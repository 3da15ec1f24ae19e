"""Failure counting for the guard's external dependencies.

A component turns unhealthy after ``max_consecutive_failures`` failures in a
row and healthy again on its next success. ``GET /health`` reports the
result; the guard keeps running either way.
"""

from __future__ import annotations

import logging
import time
from dataclasses import asdict, dataclass
from typing import Any, Callable

logger = logging.getLogger(__name__)

METER = "meter"
SETTINGS_STORE = "settings_store"


@dataclass
class ComponentHealth:
    name: str
    healthy: bool = True
    last_success: float | None = None
    last_failure: float | None = None
    consecutive_failures: int = 0
    total_failures: int = 0
    last_error: str = ""


class HealthChecker:
    def __init__(self, max_consecutive_failures: int = 3, clock: Callable[[], float] = time.time) -> None:
        self._threshold = max(1, max_consecutive_failures)
        self._clock = clock
        self._components: dict[str, ComponentHealth] = {}

    def register(self, name: str) -> ComponentHealth:
        return self._components.setdefault(name, ComponentHealth(name=name))

    def record_success(self, name: str) -> None:
        component = self.register(name)
        if not component.healthy:
            logger.info("%s healthy again after %d failure(s)", name, component.consecutive_failures)
        component.healthy = True
        component.consecutive_failures = 0
        component.last_success = self._clock()

    def record_failure(self, name: str, error: str = "") -> None:
        component = self.register(name)
        component.consecutive_failures += 1
        component.total_failures += 1
        component.last_failure = self._clock()
        component.last_error = error
        if component.healthy and component.consecutive_failures >= self._threshold:
            component.healthy = False
            logger.warning("%s unhealthy after %d failure(s): %s", name, component.consecutive_failures, error)

    def is_healthy(self, name: str) -> bool:
        """Components never reported on count as healthy."""
        component = self._components.get(name)
        return component is None or component.healthy

    def get_unhealthy(self) -> list[str]:
        return [c.name for c in self._components.values() if not c.healthy]

    def all_healthy(self) -> bool:
        return not self.get_unhealthy()

    def get_health(self, name: str) -> ComponentHealth | None:
        return self._components.get(name)

    def to_dict(self) -> dict[str, Any]:
        return {c.name: asdict(c) for c in self._components.values()}
