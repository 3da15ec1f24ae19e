"""MQTT topic constants."""

from __future__ import annotations

from power_guard.devices.base import NotificationEvent


def build_topics(prefix: str = "power_guard") -> dict[str, str]:
    """Build all MQTT topic strings from a configurable prefix."""
    return {
        "status": f"{prefix}/status",
        "state": f"{prefix}/state",
        "power": f"{prefix}/power",
        "limit": f"{prefix}/limit",
        "profile": f"{prefix}/profile",
        "over_limit": f"{prefix}/over_limit",
        "mitigated_count": f"{prefix}/mitigated_count",
        "profile_set": f"{prefix}/profile/set",
        "enabled_set": f"{prefix}/enabled/set",
        "recheck": f"{prefix}/recheck",
    }


def event_topic(prefix: str, event: NotificationEvent) -> str:
    """Topic an individual guard event is published on."""
    return f"{prefix}/event/{event.value}"
