"""Recent log lines kept in memory for GET /api/logs."""

from __future__ import annotations

import logging
import threading
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

import structlog

DEFAULT_CAPACITY = 500


@dataclass
class BufferedLog:
    timestamp: str
    level: str
    levelno: int
    logger: str
    message: str
    context: dict[str, Any] = field(default_factory=dict)  # bound via log_context()

    def to_dict(self) -> dict[str, Any]:
        return {
            "timestamp": self.timestamp,
            "level": self.level,
            "logger": self.logger,
            "message": self.message,
            "context": self.context,
        }


class LogBufferHandler(logging.Handler):
    """Keeps the newest records with the structlog context active when each was logged."""

    def __init__(self, capacity: int = DEFAULT_CAPACITY) -> None:
        super().__init__()
        self._entries: deque[BufferedLog] = deque(maxlen=capacity)
        self._lock = threading.Lock()

    @property
    def capacity(self) -> int:
        return self._entries.maxlen or 0

    def resize(self, capacity: int) -> None:
        """Change capacity, keeping the newest entries."""
        with self._lock:
            self._entries = deque(self._entries, maxlen=max(1, capacity))

    def emit(self, record: logging.LogRecord) -> None:
        try:
            entry = BufferedLog(
                timestamp=datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
                level=record.levelname,
                levelno=record.levelno,
                logger=record.name,
                message=record.getMessage(),
                context=dict(structlog.contextvars.get_contextvars()),
            )
        except Exception:
            self.handleError(record)
            return
        with self._lock:
            self._entries.append(entry)

    def get_records(self, limit: int = 200, level: str | None = None) -> list[dict[str, Any]]:
        """Newest first. ``level`` keeps records at or above that severity."""
        min_level = logging.getLevelName(level.upper()) if level else logging.NOTSET
        if not isinstance(min_level, int):
            min_level = logging.NOTSET
        with self._lock:
            entries = [e for e in reversed(self._entries) if e.levelno >= min_level]
        return [e.to_dict() for e in entries[:limit]]

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()


log_buffer = LogBufferHandler()
