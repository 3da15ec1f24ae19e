"""Task-local log context for evaluation passes."""

from __future__ import annotations

from contextlib import contextmanager
from typing import Iterator

import structlog


@contextmanager
def log_context(**values: object) -> Iterator[None]:
    """Attach ``values`` to every log line emitted inside the block.

    Nested blocks restore the outer values on exit.
    """
    tokens = structlog.contextvars.bind_contextvars(**values)
    try:
        yield
    finally:
        structlog.contextvars.reset_contextvars(**tokens)
