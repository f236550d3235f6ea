"""Prompt builders for the four advisory oracles.

Each builder takes the cycle context dict assembled by the orchestrator and
returns the user prompt. The JSON shape each prompt asks for is exactly the
shape the validator checks.
"""

from __future__ import annotations

import json

from src.shell.contract import OracleKind

SYSTEM_PROMPT = (
    "You are an oversight advisor for an autonomous cryptocurrency perpetual-futures trading system. "
    "You never place trades. You assess state and recommend parameters. Every recommendation you make is "
    "validated and clamped by hard safety limits you cannot override. Respond with a single JSON object "
    "and nothing else."
)


def _positions_block(account: dict) -> str:
    positions = account.get("positions") or []
    if not positions:
        return "None"
    return "\n".join(
        f"- {p['symbol']} ({p['strategy']}): {p['side']} size={p['size']} entry={p['entry_price']} "
        f"mark={p['mark_price']} lev={p['leverage']}x uPnL=${p['unrealized_pnl']:.2f}"
        for p in positions
    )


def _account_block(account: dict) -> str:
    return (
        f"- Equity: ${account['equity']:.2f}\n"
        f"- Peak Equity: ${account['peak_equity']:.2f}\n"
        f"- Drawdown: {account['drawdown_pct']:.2f}%\n"
        f"- Margin Used: ${account['margin_used']:.2f}\n"
        f"- Unrealized P&L: ${account['unrealized_pnl']:.2f}\n"
        f"- Open Positions: {len(account.get('positions') or [])}"
    )


def _performance_block(performance: dict) -> str:
    if not performance:
        return "No closed trades yet."
    lines = []
    for name, m in performance.items():
        lines.append(
            f"- {name} (v{m.get('version', '?')}): trades={m['total_trades']} win_rate={m['win_rate']:.1f}% "
            f"pnl=${m['total_pnl']:.2f} sharpe={m['sharpe_ratio']:.2f} max_dd={m['max_drawdown']:.1f}% "
            f"loss_streak={m['consecutive_losses']}"
        )
    return "\n".join(lines)


def build_health_prompt(ctx: dict) -> str:
    risk = ctx["risk_parameters"]
    recent = ctx.get("recent_decisions") or []
    recent_block = "\n".join(
        f"- {d['decided_at']}: tier={d['risk_tier']} pause={bool(d['should_pause'])} leverage={d['leverage_cap']}"
        for d in recent
    ) or "None"
    return f"""Evaluate overall system health.

CURRENT STATE:
- System Status: {ctx['system_status']}
- Trading Enabled: {ctx['trading_enabled']}
- Last Cycle: {ctx.get('last_cycle_at') or 'Never'}
- Last Cycle Error: {ctx.get('last_cycle_error') or 'None'}

ACCOUNT STATE:
{_account_block(ctx['account'])}

OPEN POSITIONS:
{_positions_block(ctx['account'])}

THRESHOLDS:
- Drawdown Warning: {risk['drawdown_warning']}%
- Drawdown Critical: {risk['drawdown_critical']}%
- Drawdown Pause: {risk['drawdown_pause']}%
- Daily Loss Pause: {risk['daily_loss_pause']}%

RECENT DECISIONS:
{recent_block}

Respond in JSON:
{{
  "overall_health": "OK" | "DEGRADED" | "CRITICAL",
  "should_pause": boolean,
  "pause_reason": string | null,
  "risk_level": "NORMAL" | "REDUCED" | "MINIMUM",
  "anomalies_detected": string[],
  "recommendations": string[],
  "confidence": number (0.0 to 1.0)
}}"""


def build_allocation_prompt(ctx: dict) -> str:
    strategies = ctx["strategies"]
    template = ",\n    ".join(
        f'"{name}": {{"health": "HEALTHY" | "STRUGGLING" | "FAILING", "regime_fit": "GOOD" | "NEUTRAL" | "POOR", '
        f'"recommended_allocation": number (0-100), "reasoning": string}}'
        for name in strategies
    )
    return f"""Assess each trading strategy and recommend capital allocation.

CURRENT ALLOCATIONS (%):
{json.dumps(ctx['allocations'], indent=2)}

DISABLED STRATEGIES: {', '.join(ctx.get('disabled_strategies') or []) or 'None'}

STRATEGY PERFORMANCE (active mainnet versions):
{_performance_block(ctx.get('strategy_performance') or {})}

ACCOUNT STATE:
{_account_block(ctx['account'])}

Recommended allocations should sum to 100. List strategies that should stop trading in disable_strategies.

Respond in JSON:
{{
  "strategy_assessments": {{
    {template}
  }},
  "disable_strategies": string[],
  "allocation_rationale": string,
  "market_regime_assessment": string,
  "confidence": number (0.0 to 1.0)
}}"""


def build_risk_prompt(ctx: dict) -> str:
    return f"""Set the risk parameters for the next cycle.

CURRENT RISK TIER (from health evaluation): {ctx['risk_tier']}

CURRENT RISK PARAMETERS:
{json.dumps(ctx['risk_parameters'], indent=2)}

ACCOUNT STATE:
{_account_block(ctx['account'])}

OPEN POSITIONS:
{_positions_block(ctx['account'])}

HARD LIMITS (values beyond these are clamped):
- Drawdown thresholds: warning <= -5, critical <= -10, pause <= -15, ordered pause < critical < warning
- Leverage caps: normal <= 15, reduced <= 8, minimum <= 4, ordered minimum < reduced < normal
- Total exposure <= 0.9, position size scalar within [0.3, 1.5]

Respond in JSON:
{{
  "risk_thresholds": {{"drawdown_warning": number, "drawdown_critical": number, "drawdown_pause": number,
                       "daily_loss_pause": number, "single_trade_loss_alert": number}},
  "leverage_caps": {{"normal": number, "reduced": number, "minimum": number}},
  "exposure_limits": {{"max_total_exposure": number, "max_single_position": number,
                       "max_correlated_exposure": number}},
  "volatility_adjustments": {{"position_size_scalar": number, "hold_time_reduction": boolean,
                              "tighten_stops": boolean}},
  "immediate_actions": [{{"action_type": "REDUCE_LEVERAGE" | "TIGHTEN_STOPS" | "REDUCE_POSITION_SIZE" |
                          "PAUSE_STRATEGY" | "CLOSE_POSITION", "target": string, "value": number, "reason": string}}],
  "current_risk_score": number (0-100),
  "risk_trend": "INCREASING" | "STABLE" | "DECREASING",
  "market_stress_level": "LOW" | "MODERATE" | "HIGH" | "EXTREME",
  "reasoning": string,
  "confidence": number (0.0 to 1.0)
}}"""


def build_conflict_prompt(ctx: dict) -> str:
    return f"""Resolve conflicts between strategies and finalize allocations.

PROPOSED ALLOCATIONS (%):
{json.dumps(ctx['proposed_allocations'], indent=2)}

MAXIMUM LEVERAGE THIS CYCLE: {ctx['max_leverage']}x

OPEN POSITIONS:
{_positions_block(ctx['account'])}

Where two strategies hold opposing positions on the same symbol, choose one direction. Mark positions
that should be closed with action CLOSE. Final allocations must be non-negative and sum to 100.

Respond in JSON:
{{
  "resolved_allocations": {{{', '.join(f'"{name}": number' for name in ctx['strategies'])}}},
  "signal_resolutions": [{{"symbol": string, "chosen_direction": "LONG" | "SHORT" | "NONE",
                          "chosen_strategy": string, "reasoning": string}}],
  "position_actions": [{{"symbol": string, "action": "KEEP" | "CLOSE", "reasoning": string}}],
  "leverage_cap": number,
  "adjustments_made": string[],
  "confidence": number (0.0 to 1.0)
}}"""


PROMPT_BUILDERS = {
    OracleKind.HEALTH: build_health_prompt,
    OracleKind.ALLOCATION: build_allocation_prompt,
    OracleKind.RISK: build_risk_prompt,
    OracleKind.CONFLICT: build_conflict_prompt,
}
