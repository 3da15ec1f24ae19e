"""Fire-and-forget event dispatch to notification sinks."""

from __future__ import annotations

import asyncio
import logging
import time
from collections import deque
from typing import Any

from power_guard.devices.base import NotificationEvent, NotificationSink

logger = logging.getLogger(__name__)


class LoggingNotificationSink:
    """Writes every event to the log."""

    async def emit(self, event: NotificationEvent, tokens: dict[str, Any]) -> None:
        logger.info("Event %s %s", event.value, tokens)


class Notifier:
    """Fans events out to sinks without blocking the caller.

    Sink failures are logged and never reach the engine.
    """

    def __init__(self, sinks: list[NotificationSink] | None = None, history_size: int = 50) -> None:
        self._sinks: list[NotificationSink] = list(sinks or [])
        self._tasks: set[asyncio.Task] = set()
        self.history: deque[tuple[float, NotificationEvent, dict[str, Any]]] = deque(maxlen=history_size)

    def add_sink(self, sink: NotificationSink) -> None:
        self._sinks.append(sink)

    def emit(self, event: NotificationEvent, tokens: dict[str, Any] | None = None) -> None:
        tokens = dict(tokens or {})
        self.history.append((time.time(), event, tokens))
        for sink in self._sinks:
            task = asyncio.create_task(self._dispatch(sink, event, tokens))
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)

    def events(self, event: NotificationEvent | None = None) -> list[dict[str, Any]]:
        """Token dicts of recorded events, optionally filtered by type."""
        return [tokens for _, e, tokens in self.history if event is None or e == event]

    async def drain(self) -> None:
        """Wait for in-flight dispatches."""
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    @staticmethod
    async def _dispatch(sink: NotificationSink, event: NotificationEvent, tokens: dict[str, Any]) -> None:
        try:
            await sink.emit(event, tokens)
        except Exception:
            logger.exception("Notification sink failed for %s", event.value)
