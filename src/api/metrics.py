"""Prometheus /metrics endpoint — exports oversight and lifecycle gauges.

Counters are incremented where the event happens (cycle outcomes, oracle
fallbacks, promotions, rollbacks). Gauges are refreshed from live state at
scrape time.
"""

from __future__ import annotations

import structlog
from aiohttp import web
from prometheus_client import CollectorRegistry, Counter, Gauge, Info, generate_latest

from src.api import ctx_key

log = structlog.get_logger()

# Private registry; nothing is registered on the process-global default
registry = CollectorRegistry()

# --- Event counters ---
cycles_total = Counter("ov_cycles_total", "Oversight cycles by outcome", ["outcome"], registry=registry)
oracle_fallbacks_total = Counter(
    "ov_oracle_fallbacks_total", "Oracle calls replaced by defaults", ["role"], registry=registry,
)
promotions_total = Counter("ov_promotions_total", "Strategy version promotions", ["target"], registry=registry)
rollbacks_total = Counter("ov_rollbacks_total", "Strategy version rollbacks", ["automatic"], registry=registry)

# --- Decision gauges ---
allocation_pct = Gauge("ov_allocation_pct", "Current allocation per strategy (%)", ["strategy"], registry=registry)
leverage_cap = Gauge("ov_leverage_cap", "Leverage cap from the last decision", registry=registry)
paused = Gauge("ov_paused", "Trading paused (1=yes, 0=no)", registry=registry)
risk_score = Gauge("ov_risk_score", "Risk score from the last decision (0-100)", registry=registry)
cycle_latency_ms = Gauge("ov_last_cycle_latency_ms", "Latency of the last completed cycle", registry=registry)
decision_confidence = Gauge("ov_decision_confidence", "Average oracle confidence of the last decision", registry=registry)

# --- Account / lifecycle gauges ---
equity_usd = Gauge("ov_equity_usd", "Account equity in USD", registry=registry)
peak_equity_usd = Gauge("ov_peak_equity_usd", "Equity high-water mark in USD", registry=registry)
mainnet_active_versions = Gauge("ov_mainnet_active_versions", "Versions in mainnet_active", registry=registry)

# --- AI gauges ---
ai_daily_tokens = Gauge("ov_ai_daily_tokens", "Tokens used today", registry=registry)
ai_token_budget_pct = Gauge("ov_ai_token_budget_pct", "Percent of daily token budget consumed", registry=registry)

system_info = Info("ov_system", "Oversight service metadata", registry=registry)


async def metrics_handler(request: web.Request) -> web.Response:
    """Prometheus scrape endpoint. Reads current state and returns text metrics."""
    ctx = request.app[ctx_key]
    config = ctx["config"]
    state = ctx["state"]
    db = ctx["db"]
    orchestrator = ctx["orchestrator"]
    ai = ctx.get("ai")

    try:
        system = await state.get_all()

        allocation_pct._metrics.clear()
        for name, value in (system.get("current_allocations") or {}).items():
            allocation_pct.labels(strategy=name).set(value)
        paused.set(0 if system.get("trading_enabled", True) else 1)
        peak_equity_usd.set(system.get("peak_equity") or 0)
        equity_usd.set(await orchestrator.context.execution.get_account_value())

        decision = orchestrator.last_decision
        if decision is not None:
            leverage_cap.set(decision.leverage_cap)
            decision_confidence.set(decision.avg_confidence)
            if decision.risk_score is not None:
                risk_score.set(decision.risk_score)
        if orchestrator.last_latency_ms is not None:
            cycle_latency_ms.set(orchestrator.last_latency_ms)

        row = await db.fetchone(
            "SELECT COUNT(*) AS n FROM strategy_versions WHERE deployment_state = 'mainnet_active'"
        )
        mainnet_active_versions.set(row["n"] if row else 0)

        system_info.info({"mode": config.mode, "version": "1.0.0"})

        if ai is not None:
            limit = config.ai.daily_token_limit
            ai_daily_tokens.set(ai.tokens_used_today)
            ai_token_budget_pct.set(ai.tokens_used_today / limit * 100 if limit > 0 else 0)

    except Exception as e:
        log.error("metrics.collect_error", error=str(e), error_type=type(e).__name__)

    output = generate_latest(registry)
    resp = web.Response(body=output)
    resp.content_type = "text/plain"
    resp.headers["Content-Type"] = "text/plain; version=0.0.4; charset=utf-8"
    return resp
