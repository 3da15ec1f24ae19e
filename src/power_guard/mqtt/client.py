"""Broker connection for the MQTT bridge (aiomqtt).

The client registers a retained ``offline`` last-will on the status topic, so
a crashed guard is visible to subscribers. ``listen()`` reconnects with
backoff until it is cancelled or ``disconnect()`` is called.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Callable, Coroutine

import aiomqtt

from power_guard.config.schema import MQTTConfig
from power_guard.mqtt.topics import build_topics

logger = logging.getLogger(__name__)

MessageCallback = Callable[[str, str], Coroutine[Any, Any, None]]

RECONNECT_DELAYS_SECONDS = (1.0, 2.0, 5.0, 10.0, 30.0)


class MQTTClient:
    def __init__(self, config: MQTTConfig) -> None:
        self._config = config
        self._client: aiomqtt.Client | None = None
        self._session: aiomqtt.Client | None = None  # set while listen() holds a connection
        self._connected = False
        self._subscriptions: dict[str, MessageCallback] = {}

    @property
    def is_connected(self) -> bool:
        return self._connected

    @property
    def topics(self) -> list[str]:
        return list(self._subscriptions)

    async def connect(self) -> None:
        """Build the broker client. Sockets are opened by publish() and listen()."""
        status_topic = build_topics(self._config.topic_prefix)["status"]
        try:
            self._client = aiomqtt.Client(
                hostname=self._config.broker_host,
                port=self._config.broker_port,
                username=self._config.username or None,
                password=self._config.password or None,
                will=aiomqtt.Will(status_topic, "offline", retain=True),
            )
        except (aiomqtt.MqttError, ValueError) as e:
            logger.error("MQTT client for %s rejected: %s", self._config.broker_host, e)
            self._connected = False
            return
        self._connected = True
        logger.info("MQTT bridge targeting %s:%d", self._config.broker_host, self._config.broker_port)

    async def disconnect(self) -> None:
        self._connected = False
        self._client = None

    async def publish(self, topic: str, payload: str, retain: bool = False) -> None:
        """Fire-and-forget publish; a no-op while disconnected, errors are logged."""
        if not self._connected or self._client is None:
            return
        try:
            if self._session is not None:
                await self._session.publish(topic, payload, retain=retain)
            else:
                async with self._client as session:
                    await session.publish(topic, payload, retain=retain)
        except aiomqtt.MqttError as e:
            logger.warning("MQTT publish to %s dropped: %s", topic, e)

    def subscribe(self, topic: str, callback: MessageCallback) -> None:
        self._subscriptions[topic] = callback

    async def dispatch(self, topic: str, payload: str) -> None:
        """Route one message to its callback. Callback errors are contained."""
        callback = self._subscriptions.get(topic)
        if callback is None:
            logger.debug("No handler for MQTT topic %s", topic)
            return
        try:
            await callback(topic, payload)
        except Exception:
            logger.exception("Handler for MQTT topic %s failed", topic)

    async def listen(self) -> None:
        """Receive subscribed messages, reconnecting after broker errors."""
        attempt = 0
        while self._connected and self._client is not None and self._subscriptions:
            try:
                async with self._client as session:
                    self._session = session
                    attempt = 0
                    for topic in self._subscriptions:
                        await session.subscribe(topic)
                    logger.info("MQTT listening on %d topic(s)", len(self._subscriptions))
                    async for message in session.messages:
                        await self.dispatch(str(message.topic), _decode(message.payload))
            except aiomqtt.MqttError as e:
                delay = RECONNECT_DELAYS_SECONDS[min(attempt, len(RECONNECT_DELAYS_SECONDS) - 1)]
                attempt += 1
                logger.warning("MQTT connection lost (%s), retrying in %.0fs", e, delay)
                await asyncio.sleep(delay)
            finally:
                self._session = None


def _decode(payload: Any) -> str:
    if isinstance(payload, (bytes, bytearray)):
        return payload.decode(errors="replace")
    return "" if payload is None else str(payload)
