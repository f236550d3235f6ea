"""Decision Engine — merges the four validated oracle outputs into one CycleDecision.

Pure: no I/O, no clock, no state. The precedence is fixed:
pause short-circuit, normalize, cap, risk-tier reduction, leverage selection,
disable passthrough, close-list extraction, reasoning trail.
"""

from __future__ import annotations

from src.shell.contract import (
    AccountSnapshot, AllocationAssessment, ConflictResolution, CycleDecision,
    HealthAssessment, RiskControlOutput, RiskTier,
)
from src.shell.state import equal_split

ALLOCATION_TOTAL = 100.0
ALLOCATION_TOLERANCE = 0.01
MAX_STRATEGY_ALLOCATION = 50.0
REDUCED_TIER_FACTOR = 0.7
MINIMUM_TIER_ALLOCATION = 30.0


def normalize_allocations(
    resolved: dict[str, float], strategies: list[str], eligible: set[str] | None = None,
) -> dict[str, float]:
    """Rescale to 100 over the eligible strategies; every other strategy is held at 0.

    Unknown names are dropped and missing names count as 0. eligible=None means
    every configured strategy may receive capital.
    """
    allowed = [name for name in strategies if eligible is None or name in eligible]
    allocs = {name: 0.0 for name in strategies}
    for name in allowed:
        allocs[name] = max(0.0, float(resolved.get(name, 0.0)))
    total = sum(allocs.values())
    if total <= 0:
        allocs.update(equal_split(allowed))
        return allocs
    if abs(total - ALLOCATION_TOTAL) > ALLOCATION_TOLERANCE:
        allocs = {name: v / total * ALLOCATION_TOTAL for name, v in allocs.items()}
    return allocs


def cap_allocations(allocs: dict[str, float], cap: float = MAX_STRATEGY_ALLOCATION) -> dict[str, float]:
    """Cap each entry and hand the excess to uncapped entries in proportion to their share.

    Zero entries stay at zero. When no uncapped entry holds a share the excess
    is dropped and the total ends below 100.
    """
    result = dict(allocs)
    capped: set[str] = set()
    while True:
        over = [name for name, v in result.items() if v > cap]
        if not over:
            break
        for name in over:
            result[name] = cap
            capped.add(name)
        free = [name for name in result if name not in capped and result[name] > 0]
        deficit = ALLOCATION_TOTAL - sum(result.values())
        if not free or deficit <= 0:
            break
        free_total = sum(result[name] for name in free)
        for name in free:
            result[name] += deficit * result[name] / free_total
    return result


def apply_risk_tier(allocs: dict[str, float], tier: RiskTier) -> dict[str, float]:
    if tier == RiskTier.REDUCED:
        return {name: v * REDUCED_TIER_FACTOR for name, v in allocs.items()}
    if tier == RiskTier.MINIMUM:
        if not allocs or max(allocs.values()) <= 0:
            return {name: 0.0 for name in allocs}
        # max() keeps the first of equal entries, so ties go to configured order
        top = max(allocs, key=lambda name: allocs[name])
        return {name: (MINIMUM_TIER_ALLOCATION if name == top else 0.0) for name in allocs}
    return dict(allocs)


def average_confidence(*outputs) -> float:
    values = [o.confidence for o in outputs if o is not None]
    return sum(values) / len(values) if values else 0.0


def build_reasoning(
    health: HealthAssessment,
    allocation: AllocationAssessment,
    risk: RiskControlOutput,
    conflict: ConflictResolution,
    constraint_actions: list[str],
    avg_confidence: float,
) -> str:
    parts = [f"System Health: {health.overall_health.value} (Risk: {health.risk_level.value})"]
    if health.anomalies_detected:
        parts.append(f"Anomalies: {', '.join(health.anomalies_detected)}")
    if allocation.market_regime_assessment:
        parts.append(f"Market: {allocation.market_regime_assessment}")
    parts.append(f"Allocation Rationale: {allocation.allocation_rationale}")
    if conflict.adjustments_made:
        parts.append(f"Adjustments: {', '.join(conflict.adjustments_made)}")
    parts.append(f"Risk Score: {risk.current_risk_score:g}/100 ({risk.risk_trend.value})")
    parts.append(f"Market Stress: {risk.market_stress_level.value}")
    if risk.immediate_actions:
        parts.append(f"Risk Actions: {len(risk.immediate_actions)}")
    if constraint_actions:
        parts.append(f"Constraints: {', '.join(constraint_actions)}")
    parts.append(f"Avg Confidence: {avg_confidence:.2f}")
    return " | ".join(parts)


def decide(
    health: HealthAssessment,
    allocation: AllocationAssessment,
    risk: RiskControlOutput,
    conflict: ConflictResolution,
    account: AccountSnapshot,
    strategies: list[str],
    constraint_actions: list[str] | None = None,
    eligible: set[str] | None = None,
) -> CycleDecision:
    """Produce the cycle decision. `risk` must already be safety-enforced.

    Only strategies in `eligible` (default: all) that the allocation oracle does
    not disable can end up with a non-zero allocation, whatever the conflict
    oracle resolved.
    """
    avg_conf = average_confidence(health, allocation, risk, conflict)

    if health.should_pause:
        reason = health.pause_reason or "Health evaluation triggered pause"
        return CycleDecision(
            allocations={name: 0.0 for name in strategies},
            strategies_to_disable=tuple(strategies),
            strategies_to_enable=(),
            positions_to_close=tuple(account.open_symbols),
            leverage_cap=0.0,
            risk_tier=RiskTier.MINIMUM,
            should_pause=True,
            pause_reason=reason,
            reasoning=f"System pause triggered: {reason}",
            avg_confidence=avg_conf,
        )

    tier = health.risk_level
    funded = set(strategies) if eligible is None else set(eligible)
    funded -= set(allocation.disable_strategies)
    allocs = normalize_allocations(conflict.resolved_allocations, strategies, funded)
    allocs = cap_allocations(allocs)
    allocs = apply_risk_tier(allocs, tier)

    to_close: list[str] = []
    for action in conflict.position_actions:
        if action.action == "CLOSE" and action.symbol not in to_close:
            to_close.append(action.symbol)

    return CycleDecision(
        allocations=allocs,
        strategies_to_disable=tuple(allocation.disable_strategies),
        strategies_to_enable=(),
        positions_to_close=tuple(to_close),
        leverage_cap=risk.leverage_caps.for_tier(tier),
        risk_tier=tier,
        should_pause=False,
        pause_reason=None,
        reasoning=build_reasoning(health, allocation, risk, conflict, constraint_actions or [], avg_conf),
        risk_score=risk.current_risk_score,
        risk_trend=risk.risk_trend,
        market_stress_level=risk.market_stress_level,
        position_size_scalar=risk.volatility_adjustments.position_size_scalar,
        max_total_exposure=risk.exposure_limits.max_total_exposure,
        avg_confidence=avg_conf,
    )
