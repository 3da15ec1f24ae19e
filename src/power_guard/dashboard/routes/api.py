"""REST API endpoints returning JSON data."""

from __future__ import annotations

import logging
from typing import Any

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ValidationError

from power_guard.config.schema import GuardConfig, Profile
from power_guard.dashboard.log_buffer import log_buffer

router = APIRouter()
health_router = APIRouter()
logger = logging.getLogger(__name__)


# ── Request models ───────────────────────────────────

class ProfileRequest(BaseModel):
    profile: Profile


class EnabledRequest(BaseModel):
    enabled: bool


def _error(message: str, status_code: int = 422) -> JSONResponse:
    return JSONResponse({"status": "error", "message": message}, status_code=status_code)


# ── Status ───────────────────────────────────────────

@router.get("/status")
async def guard_status(request: Request) -> dict:
    """Current power, limit, mitigated devices and charger states."""
    return request.app.state.driver.get_status().to_dict()


@router.post("/recheck")
async def force_recheck(request: Request) -> dict:
    """Re-evaluate immediately, bypassing cooldowns."""
    driver = request.app.state.driver
    await driver.request_recheck()
    return driver.get_status().to_dict()


@router.post("/reset")
async def reset_statistics(request: Request) -> dict:
    await request.app.state.driver.reset_statistics()
    return {"status": "ok"}


# ── Settings ─────────────────────────────────────────

@router.get("/settings")
async def get_settings(request: Request) -> dict:
    return request.app.state.driver.guard.model_dump(mode="json")


@router.put("/settings")
async def update_settings(request: Request) -> Any:
    """Replace guard settings. Fields not in the body keep their current value."""
    body = await request.json()
    if not isinstance(body, dict):
        return _error("Expected a JSON object")

    driver = request.app.state.driver
    merged = {**driver.guard.model_dump(mode="json"), **body}
    try:
        guard = GuardConfig.model_validate(merged)
    except ValidationError as e:
        return _error(str(e))

    config_manager = request.app.state.config_manager
    if config_manager is not None:
        # Persist to config.yaml; the reload listener hands the new config to the driver
        new_config = config_manager.save_user_config({"guard": guard.model_dump(mode="json")})
    else:
        new_config = driver.config.model_copy(update={"guard": guard})
    await driver.update_config(new_config)
    request.app.state.config = new_config
    logger.info("Guard settings updated via API: %s", sorted(body))
    return {"status": "ok", "settings": driver.guard.model_dump(mode="json")}


@router.put("/profile")
async def set_profile(request: Request, body: ProfileRequest) -> dict:
    changed = await request.app.state.driver.set_profile(body.profile)
    return {"status": "ok", "profile": body.profile.value, "changed": changed}


@router.put("/enabled")
async def set_enabled(request: Request, body: EnabledRequest) -> dict:
    await request.app.state.driver.set_enabled(body.enabled)
    return {"status": "ok", "enabled": body.enabled}


# ── Logs & events ────────────────────────────────────

@router.get("/logs")
async def get_logs(request: Request, limit: int = 200, level: str = "") -> dict:
    """Recent log lines, newest first; ``level`` is a minimum severity."""
    records = log_buffer.get_records(limit=min(limit, 1000), level=level or None)
    return {"records": records}


@router.get("/events")
async def get_events(request: Request, limit: int = 50) -> dict:
    """Guard events, from the database when available."""
    repo = request.app.state.repo
    if repo is not None:
        return {"events": await repo.get_recent_events(limit=min(limit, 500))}
    notifier = request.app.state.driver.notifier
    history = list(notifier.history)[-limit:] if limit > 0 else []
    return {
        "events": [
            {"event": event.value, "tokens": tokens, "recorded_at": ts}
            for ts, event, tokens in reversed(history)
        ]
    }


# ── Health ───────────────────────────────────────────

@health_router.get("/health")
async def health(request: Request) -> dict:
    driver = request.app.state.driver
    unhealthy = driver.health.get_unhealthy()
    return {
        "status": "ok" if not unhealthy else "degraded",
        "running": driver.state.is_running,
        "meter_connected": driver.state.meter_connected,
        "meter_available": driver.state.meter_available,
        "unhealthy": unhealthy,
        "components": driver.health.to_dict(),
    }
