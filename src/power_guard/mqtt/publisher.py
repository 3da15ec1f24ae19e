"""MQTT status publisher and event sink."""

from __future__ import annotations

import json
import logging
from typing import Any, Callable, Coroutine

from power_guard.devices.base import NotificationEvent
from power_guard.guard.status import GuardStatus
from power_guard.mqtt.topics import build_topics, event_topic

logger = logging.getLogger(__name__)

# Type for async publish function: (topic, payload, retain) -> None
PublishFn = Callable[[str, str, bool], Coroutine[Any, Any, None]]


class MQTTPublisher:
    """Publishes the guard status to MQTT topics."""

    def __init__(self, publish_fn: PublishFn, topic_prefix: str = "power_guard") -> None:
        self._publish = publish_fn
        self._topics = build_topics(topic_prefix)

    async def publish_status(self, status: GuardStatus) -> None:
        power = "" if status.current_power_w is None else f"{status.current_power_w:.0f}"
        await self._publish(self._topics["power"], power, False)
        await self._publish(self._topics["limit"], f"{status.limit_w:.0f}", True)
        await self._publish(self._topics["profile"], status.profile, True)
        await self._publish(self._topics["over_limit"], "true" if status.is_over_limit else "false", True)
        await self._publish(self._topics["mitigated_count"], str(len(status.mitigated_devices)), True)
        await self._publish(self._topics["state"], json.dumps(status.to_dict(), default=str), True)

    async def publish_online(self, online: bool = True) -> None:
        await self._publish(self._topics["status"], "online" if online else "offline", True)


class MQTTNotificationSink:
    """NotificationSink publishing each guard event as JSON."""

    def __init__(self, publish_fn: PublishFn, topic_prefix: str = "power_guard") -> None:
        self._publish = publish_fn
        self._prefix = topic_prefix

    async def emit(self, event: NotificationEvent, tokens: dict[str, Any]) -> None:
        await self._publish(event_topic(self._prefix, event), json.dumps(tokens, default=str), False)
