"""FastAPI application factory for the Power Guard HTTP API."""

from __future__ import annotations

import logging

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from power_guard import __version__
from power_guard.config.manager import ConfigManager
from power_guard.config.schema import AppConfig
from power_guard.dashboard.routes.api import health_router, router
from power_guard.db.repository import Repository
from power_guard.guard.driver import ControlLoopDriver
from power_guard.logging.context import log_context

logger = logging.getLogger(__name__)


def create_app(
    config: AppConfig,
    driver: ControlLoopDriver,
    config_manager: ConfigManager | None = None,
    repo: Repository | None = None,
) -> FastAPI:
    """Build the API around a running driver.

    Without ``config_manager`` config updates go to the driver only and are
    not persisted; without ``repo`` events come from the in-memory history.
    """
    app = FastAPI(title="Power Guard", description="Household power limit guard", version=__version__)
    app.state.config = config
    app.state.driver = driver
    app.state.config_manager = config_manager
    app.state.repo = repo

    @app.middleware("http")
    async def request_context(request: Request, call_next):
        with log_context(http_method=request.method, http_path=request.url.path):
            response = await call_next(request)
        # status and ledger change every second
        response.headers["Cache-Control"] = "no-store"
        return response

    @app.exception_handler(Exception)
    async def unhandled_error(request: Request, exc: Exception) -> JSONResponse:
        logger.exception("%s %s failed", request.method, request.url.path)
        return JSONResponse({"status": "error", "message": "internal error"}, status_code=500)

    app.include_router(router, prefix="/api")
    app.include_router(health_router)
    return app
