"""MQTT subscriber feeding meter readings and commands into the guard."""

from __future__ import annotations

import json
import logging
from typing import Any

from power_guard.config.schema import MQTTConfig, Profile
from power_guard.guard.driver import ControlLoopDriver
from power_guard.mqtt.topics import build_topics

logger = logging.getLogger(__name__)

_TRUE = {"1", "true", "on", "yes"}
_FALSE = {"0", "false", "off", "no"}


def parse_power(payload: str) -> float | None:
    """Accept a bare number or a JSON object with a "power" or "value" field."""
    text = payload.strip()
    try:
        return float(text)
    except ValueError:
        pass
    try:
        data: Any = json.loads(text)
    except ValueError:
        return None
    if isinstance(data, dict):
        data = data.get("power", data.get("value"))
    if isinstance(data, (int, float)) and not isinstance(data, bool):
        return float(data)
    return None


class GuardCommandSubscriber:
    """Routes incoming MQTT messages to the control loop driver."""

    def __init__(self, driver: ControlLoopDriver, config: MQTTConfig) -> None:
        self._driver = driver
        topics = build_topics(config.topic_prefix)
        self._handlers = {
            topics["profile_set"]: self._on_profile,
            topics["enabled_set"]: self._on_enabled,
            topics["recheck"]: self._on_recheck,
        }
        if config.power_topic:
            self._handlers[config.power_topic] = self._on_power

    @property
    def topics(self) -> list[str]:
        return list(self._handlers)

    async def handle_message(self, topic: str, payload: str) -> None:
        handler = self._handlers.get(topic)
        if handler is None:
            logger.debug("Unhandled MQTT message: %s", topic)
            return
        await handler(payload)

    async def _on_power(self, payload: str) -> None:
        value = parse_power(payload)
        if value is None:
            logger.debug("Ignoring unparsable power payload: %r", payload)
            return
        self._driver.submit(value, "mqtt")

    async def _on_profile(self, payload: str) -> None:
        try:
            profile = Profile(payload.strip().lower())
        except ValueError:
            logger.warning("Unknown profile requested over MQTT: %r", payload)
            return
        await self._driver.set_profile(profile)

    async def _on_enabled(self, payload: str) -> None:
        text = payload.strip().lower()
        if text in _TRUE:
            await self._driver.set_enabled(True)
        elif text in _FALSE:
            await self._driver.set_enabled(False)
        else:
            logger.warning("Invalid enabled payload over MQTT: %r", payload)

    async def _on_recheck(self, payload: str) -> None:
        await self._driver.request_recheck()
