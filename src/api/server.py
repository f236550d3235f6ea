"""API Server — aiohttp app exposing read-only oversight state, /healthz and /metrics."""

from __future__ import annotations

import hmac
import os
from datetime import datetime, timezone

import structlog
from aiohttp import web

from src.api import api_key_key, ctx_key
from src.api.metrics import metrics_handler
from src.api.routes import error_envelope, setup_routes

log = structlog.get_logger()

# Reachable without a bearer token (metrics scraper and health check)
PUBLIC_PATHS = frozenset({"/metrics", "/healthz"})


def _mode(request: web.Request) -> str:
    return request.app[ctx_key]["config"].mode


@web.middleware
async def auth_middleware(request: web.Request, handler):
    if request.path in PUBLIC_PATHS:
        return await handler(request)

    expected = request.app.get(api_key_key, "")
    if not expected:
        message = "API key not configured"
    else:
        scheme, _, token = request.headers.get("Authorization", "").partition(" ")
        if scheme == "Bearer" and hmac.compare_digest(token.encode(), expected.encode()):
            return await handler(request)
        message = "Invalid or missing API key"

    log.warning("api.unauthorized", path=request.path, remote=request.remote)
    return web.json_response(error_envelope("unauthorized", message, _mode(request)), status=401)


@web.middleware
async def error_middleware(request: web.Request, handler):
    """Unhandled exceptions become a generic 500 envelope; details stay in the log."""
    try:
        return await handler(request)
    except web.HTTPException:
        raise
    except Exception as e:
        log.error("api.unhandled_error", path=request.path, error=str(e), error_type=type(e).__name__,
                  exc_info=True)
        return web.json_response(
            error_envelope("internal_error", "An unexpected error occurred", _mode(request)), status=500,
        )


async def healthz_handler(request: web.Request) -> web.Response:
    ctx = request.app[ctx_key]
    return web.json_response({
        "status": "ok",
        "cycle_running": ctx["orchestrator"].is_running,
        "started_at": ctx["started_at"].isoformat(),
    })


def create_app(
    config, db, state, risk_control, orchestrator, versions, promoter, ai=None, api_key: str | None = None,
) -> web.Application:
    """Build the application. api_key defaults to the API_KEY environment variable."""
    app = web.Application(middlewares=[error_middleware, auth_middleware])
    app[api_key_key] = api_key if api_key is not None else os.getenv("API_KEY", "")
    app[ctx_key] = {
        "config": config,
        "db": db,
        "state": state,
        "risk_control": risk_control,
        "orchestrator": orchestrator,
        "versions": versions,
        "promoter": promoter,
        "ai": ai,
        "started_at": datetime.now(timezone.utc),
    }

    setup_routes(app)
    app.router.add_get("/healthz", healthz_handler)
    app.router.add_get("/metrics", metrics_handler)
    return app
