"""API Server — aiohttp app exposing orchestrator control, health and metrics."""

from __future__ import annotations

import hmac
import os
from datetime import datetime, timezone

import structlog
from aiohttp import web

from research_brain.api import api_key_key, ctx_key
from research_brain.api.metrics import metrics_handler
from research_brain.api.routes import error_response, setup_routes

log = structlog.get_logger()

_OPEN_PATHS = frozenset({"/metrics"})


def _authorized(request: web.Request, api_key: str) -> bool:
    scheme, _, token = request.headers.get("Authorization", "").partition(" ")
    return scheme == "Bearer" and hmac.compare_digest(token.encode(), api_key.encode())


@web.middleware
async def auth_middleware(request: web.Request, handler):
    """Bearer token auth on everything but /metrics. An unset key locks the API."""
    if request.path in _OPEN_PATHS:
        return await handler(request)

    api_key = request.app.get(api_key_key, "")
    if not api_key:
        return error_response("unauthorized", "API key not configured", 401)
    if not _authorized(request, api_key):
        return error_response("unauthorized", "Invalid or missing API key", 401)
    return await handler(request)


@web.middleware
async def error_middleware(request: web.Request, handler):
    """Turn unexpected exceptions into a 500 envelope. Tracebacks stay in the log."""
    try:
        return await handler(request)
    except web.HTTPException:
        raise
    except Exception as e:
        log.exception("api.unhandled_error", path=request.path, error_type=type(e).__name__)
        return error_response("internal_error", "An unexpected error occurred", 500)


def create_app(config, orchestrator, health, api_key: str | None = None) -> web.Application:
    app = web.Application(middlewares=[error_middleware, auth_middleware])
    app[api_key_key] = os.getenv("API_KEY", "") if api_key is None else api_key
    app[ctx_key] = {
        "config": config,
        "orchestrator": orchestrator,
        "health": health,
        "started_at": datetime.now(timezone.utc),
    }
    setup_routes(app)
    app.router.add_get("/metrics", metrics_handler)
    return app
