"""REST API endpoint handlers — read-only access to oversight and lifecycle state.

Every response is wrapped as {"data": ..., "meta": ...} or {"error": ..., "meta": ...}.
"""

from __future__ import annotations

import json
from datetime import datetime, timezone

import structlog
from aiohttp import web

from src.api import ctx_key
from src.lifecycle.versions import VersionManager

log = structlog.get_logger()

VERSION = "1.0.0"

# Columns stored as JSON text
_JSON_COLUMNS = ("inputs", "outputs", "fallbacks", "anomalies", "allocations", "metrics",
                 "criteria_used", "failed_criteria")


def _meta(mode: str) -> dict:
    return {"timestamp": datetime.now(timezone.utc).isoformat(), "mode": mode, "version": VERSION}


def error_envelope(code: str, message: str, mode: str) -> dict:
    return {"error": {"code": code, "message": message}, "meta": _meta(mode)}


def _ok(request: web.Request, data) -> web.Response:
    return web.json_response({"data": data, "meta": _meta(request.app[ctx_key]["config"].mode)})


def _fail(request: web.Request, status: int, code: str, message: str) -> web.Response:
    mode = request.app[ctx_key]["config"].mode
    return web.json_response(error_envelope(code, message, mode), status=status)


def _query_int(request: web.Request, name: str, default: int, ceiling: int | None = None) -> int:
    """Integer query parameter; unparseable values fall back to default, then clamp to [1, ceiling]."""
    try:
        value = int(request.query.get(name, default))
    except (TypeError, ValueError):
        value = default
    value = max(1, value)
    return min(value, ceiling) if ceiling else value


def _decode(row: dict) -> dict:
    for column in _JSON_COLUMNS:
        value = row.get(column)
        if not isinstance(value, str):
            continue
        try:
            row[column] = json.loads(value)
        except json.JSONDecodeError:
            log.debug("api.undecodable_column", column=column)
    return row


async def status_handler(request: web.Request) -> web.Response:
    ctx = request.app[ctx_key]
    orchestrator = ctx["orchestrator"]
    system = await ctx["state"].get_all()
    decision = orchestrator.last_decision

    last_decision = None
    if decision is not None:
        last_decision = {
            "risk_tier": decision.risk_tier.value,
            "leverage_cap": decision.leverage_cap,
            "should_pause": decision.should_pause,
            "avg_confidence": round(decision.avg_confidence, 3),
            "fallbacks": list(decision.fallbacks),
        }

    return _ok(request, {
        "status": system.get("system_status"),
        "trading_enabled": system.get("trading_enabled"),
        "pause_reason": system.get("pause_reason"),
        "last_cycle_at": system.get("last_cycle_at"),
        "last_cycle_error": system.get("last_cycle_error"),
        "cycle_running": orchestrator.is_running,
        "allocations": system.get("current_allocations"),
        "disabled_strategies": sorted(orchestrator.context.disabled_strategies),
        "risk_parameters": system.get("risk_parameters"),
        "risk_parameters_source": ctx["risk_control"].current.updated_by,
        "last_decision": last_decision,
        "uptime_seconds": (datetime.now(timezone.utc) - ctx["started_at"]).total_seconds(),
    })


async def decisions_handler(request: web.Request) -> web.Response:
    """Most recent cycle decisions, newest first. Optional ?since= filters on decided_at."""
    db = request.app[ctx_key]["db"]
    limit = _query_int(request, "limit", 20, ceiling=200)

    since = request.query.get("since")
    if since:
        rows = await db.fetchall(
            "SELECT * FROM cycle_decisions WHERE decided_at >= ? ORDER BY id DESC LIMIT ?", (since, limit),
        )
    else:
        rows = await db.fetchall("SELECT * FROM cycle_decisions ORDER BY id DESC LIMIT ?", (limit,))
    return _ok(request, [_decode(r) for r in rows])


async def allocations_handler(request: web.Request) -> web.Response:
    db = request.app[ctx_key]["db"]
    limit = _query_int(request, "limit", 50, ceiling=500)
    rows = await db.fetchall("SELECT * FROM strategy_allocations ORDER BY id DESC LIMIT ?", (limit,))
    return _ok(request, [_decode(r) for r in rows])


async def versions_handler(request: web.Request) -> web.Response:
    versions: VersionManager = request.app[ctx_key]["versions"]
    listed = await versions.list_versions(request.query.get("strategy"))
    return _ok(request, [v.to_dict() for v in listed])


async def evaluations_handler(request: web.Request) -> web.Response:
    promoter = request.app[ctx_key]["promoter"]
    version_id = _query_int(request, "version_id", 0) if "version_id" in request.query else None
    rows = await promoter.get_recent_evaluations(
        limit=_query_int(request, "limit", 20, ceiling=200), version_id=version_id,
    )
    return _ok(request, [_decode(dict(r)) for r in rows])


async def rollbacks_handler(request: web.Request) -> web.Response:
    promoter = request.app[ctx_key]["promoter"]
    events = await promoter.get_recent_rollbacks(
        limit=_query_int(request, "limit", 10, ceiling=100), strategy_name=request.query.get("strategy"),
    )
    return _ok(request, [e.to_dict() for e in events])


async def criteria_handler(request: web.Request) -> web.Response:
    """Effective promotion criteria: the global default, or a strategy's override merged over it."""
    ctx = request.app[ctx_key]
    strategy = request.match_info.get("strategy")
    if strategy and strategy not in ctx["config"].strategies:
        return _fail(request, 404, "not_found", f"Unknown strategy: {strategy}")
    criteria = await ctx["promoter"].get_promotion_criteria(strategy)
    return _ok(request, criteria.to_dict())


async def ai_usage_handler(request: web.Request) -> web.Response:
    ctx = request.app[ctx_key]
    ai = ctx.get("ai")
    if ai is None:
        return _fail(request, 503, "unavailable", "AI client not configured")

    usage = await ai.get_daily_usage()
    return _ok(request, {
        "today": {
            "total_tokens": usage.get("used", 0),
            "total_cost_usd": round(usage.get("total_cost", 0), 4),
            "budget_limit": ctx["config"].ai.daily_token_limit,
            "budget_remaining": ai.tokens_remaining,
            "by_model": usage.get("models", {}),
            "by_purpose": usage.get("purposes", {}),
        },
    })


def setup_routes(app: web.Application) -> None:
    app.router.add_get("/v1/status", status_handler)
    app.router.add_get("/v1/decisions", decisions_handler)
    app.router.add_get("/v1/allocations", allocations_handler)
    app.router.add_get("/v1/versions", versions_handler)
    app.router.add_get("/v1/evaluations", evaluations_handler)
    app.router.add_get("/v1/rollbacks", rollbacks_handler)
    app.router.add_get("/v1/criteria", criteria_handler)
    app.router.add_get("/v1/criteria/{strategy}", criteria_handler)
    app.router.add_get("/v1/ai/usage", ai_usage_handler)
