"""Logging setup: stdlib loggers rendered through structlog."""

from __future__ import annotations

import logging
import sys

import structlog

from power_guard.config.schema import LoggingConfig
from power_guard.dashboard.log_buffer import log_buffer

# Libraries that are chatty at INFO
QUIET_LOGGERS = ("uvicorn.access", "aiosqlite", "httpx", "aiomqtt")

_PRE_CHAIN: list[structlog.types.Processor] = [
    structlog.contextvars.merge_contextvars,
    structlog.stdlib.add_logger_name,
    structlog.stdlib.add_log_level,
    structlog.stdlib.PositionalArgumentsFormatter(),
    structlog.processors.TimeStamper(fmt="iso", utc=True),
    structlog.processors.StackInfoRenderer(),
    structlog.processors.format_exc_info,
]


def _to_level(name: str) -> int:
    level = logging.getLevelName(name.upper())
    return level if isinstance(level, int) else logging.INFO


def build_formatter(fmt: str) -> structlog.stdlib.ProcessorFormatter:
    """JSON lines for "json", colored key/value output for "console"."""
    if fmt == "console":
        renderer: structlog.types.Processor = structlog.dev.ConsoleRenderer(colors=sys.stdout.isatty())
    else:
        renderer = structlog.processors.JSONRenderer()
    return structlog.stdlib.ProcessorFormatter(
        foreign_pre_chain=_PRE_CHAIN,
        processors=[structlog.stdlib.ProcessorFormatter.remove_processors_meta, renderer],
    )


def setup_logging(config: LoggingConfig) -> None:
    """Install the root handlers: stdout, the optional log file and the /api/logs buffer.

    ``config.levels`` maps logger names to levels, e.g.
    ``{"power_guard.guard.allocator": "DEBUG"}``, on top of the root level.
    """
    structlog.configure(
        processors=[*_PRE_CHAIN, structlog.stdlib.ProcessorFormatter.wrap_for_formatter],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )
    formatter = build_formatter(config.format)

    handlers: list[logging.Handler] = [logging.StreamHandler(sys.stdout)]
    if config.file:
        handlers.append(logging.FileHandler(config.file))
    for handler in handlers:
        handler.setFormatter(formatter)

    log_buffer.resize(config.buffer_size)
    handlers.append(log_buffer)

    root = logging.getLogger()
    root.handlers.clear()
    for handler in handlers:
        root.addHandler(handler)
    root.setLevel(_to_level(config.level))

    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
    for name, level in config.levels.items():
        logging.getLogger(name).setLevel(_to_level(level))
