"""Mitigation ledger: which devices are curtailed and how to undo it."""

from __future__ import annotations

import logging
import time
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Collection, Iterator

from power_guard.config.schema import MitigationAction

logger = logging.getLogger(__name__)

LOG_CAPACITY = 100


@dataclass
class MitigationRecord:
    """A curtailed device, its pre-mitigation snapshot and, for allocator chargers, its current target."""

    device_id: str
    action: MitigationAction
    previous_state: dict[str, Any] = field(default_factory=dict)
    mitigated_at: float = 0.0
    current_target_a: int | None = None  # allocator chargers only; 0 = paused
    strategy: str | None = None
    name: str = ""

    @property
    def allocator_managed(self) -> bool:
        return self.current_target_a is not None

    def to_dict(self) -> dict[str, Any]:
        return {
            "device_id": self.device_id,
            "action": self.action.value,
            "previous_state": dict(self.previous_state),
            "mitigated_at": self.mitigated_at,
            "current_target_a": self.current_target_a,
            "strategy": self.strategy,
            "name": self.name,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> MitigationRecord:
        """Rebuild a record from persisted JSON. Raises ValueError/KeyError on bad input."""
        target = data.get("current_target_a")
        return cls(
            device_id=str(data["device_id"]),
            action=MitigationAction(data["action"]),
            previous_state=dict(data.get("previous_state") or {}),
            mitigated_at=float(data.get("mitigated_at") or 0.0),
            current_target_a=None if target is None else int(target),
            strategy=data.get("strategy"),
            name=data.get("name") or "",
        )


class MitigationLedger:
    """Ordered records, oldest first. A device appears at most once."""

    def __init__(self) -> None:
        self._records: list[MitigationRecord] = []

    def __len__(self) -> int:
        return len(self._records)

    def __iter__(self) -> Iterator[MitigationRecord]:
        return iter(list(self._records))

    def __contains__(self, device_id: object) -> bool:
        return any(r.device_id == device_id for r in self._records)

    def get(self, device_id: str) -> MitigationRecord | None:
        for record in self._records:
            if record.device_id == device_id:
                return record
        return None

    def add(self, record: MitigationRecord) -> None:
        if record.device_id in self:
            raise ValueError(f"Device {record.device_id} is already mitigated")
        self._records.append(record)

    def remove(self, device_id: str) -> MitigationRecord | None:
        record = self.get(device_id)
        if record is not None:
            self._records.remove(record)
        return record

    def last_restorable(self, released: Collection[str] = ()) -> MitigationRecord | None:
        """Most recently mitigated record that restore may act on.

        Allocator records are skipped while the allocator still owns them;
        ``released`` names chargers it has let go of.
        """
        for record in reversed(self._records):
            if not record.allocator_managed or record.device_id in released:
                return record
        return None

    def clear(self) -> None:
        self._records.clear()

    def to_list(self) -> list[dict[str, Any]]:
        return [r.to_dict() for r in self._records]

    def load_list(self, data: list[dict[str, Any]] | None) -> int:
        """Replace the ledger with persisted records; invalid and duplicate entries are skipped."""
        self._records.clear()
        for item in data or []:
            if not isinstance(item, dict):
                logger.warning("Skipping malformed persisted mitigation record %r", item)
                continue
            try:
                record = MitigationRecord.from_dict(item)
            except (KeyError, TypeError, ValueError) as e:
                logger.warning("Skipping invalid persisted mitigation record %r: %s", item, e)
                continue
            if record.device_id in self:
                logger.warning("Skipping duplicate persisted record for %s", record.device_id)
                continue
            self._records.append(record)
        return len(self._records)


@dataclass
class LogEntry:
    timestamp: float
    message: str

    def to_dict(self) -> dict[str, Any]:
        return {"timestamp": self.timestamp, "message": self.message}


class MitigationLog:
    """Bounded log of mitigation events, newest last."""

    def __init__(self, capacity: int = LOG_CAPACITY) -> None:
        self._entries: deque[LogEntry] = deque(maxlen=capacity)

    def __len__(self) -> int:
        return len(self._entries)

    def add(self, message: str, timestamp: float | None = None) -> None:
        self._entries.append(LogEntry(timestamp if timestamp is not None else time.time(), message))

    def recent(self, limit: int = 20) -> list[LogEntry]:
        if limit <= 0:
            return []
        return list(self._entries)[-limit:]

    def clear(self) -> None:
        self._entries.clear()
