"""Conservative per-role defaults used when an oracle fails, times out, or is rejected."""

from __future__ import annotations

from src.shell.contract import (
    AllocationAssessment, ConflictResolution, ExposureLimits, HealthAssessment, LeverageCaps,
    OverallHealth, RiskControlOutput, RiskThresholds, RiskTier, RiskTrend, StrategyAssessment,
    StressLevel, VolatilityAdjustments,
)
from src.shell.state import equal_split

DEFAULT_CONFIDENCE = 0.3

# Leverage caps by tier: (normal, reduced, minimum)
_LEVERAGE_BY_TIER = {
    RiskTier.MINIMUM: (3.0, 2.0, 1.0),
    RiskTier.REDUCED: (5.0, 3.0, 2.0),
    RiskTier.NORMAL: (8.0, 5.0, 3.0),
}
_TOTAL_EXPOSURE_BY_TIER = {RiskTier.MINIMUM: 0.3, RiskTier.REDUCED: 0.5, RiskTier.NORMAL: 0.7}
_SCALAR_BY_TIER = {RiskTier.MINIMUM: 0.5, RiskTier.REDUCED: 0.7, RiskTier.NORMAL: 1.0}
_RISK_SCORE_BY_TIER = {RiskTier.MINIMUM: 80.0, RiskTier.REDUCED: 60.0, RiskTier.NORMAL: 40.0}
_STRESS_BY_TIER = {
    RiskTier.MINIMUM: StressLevel.HIGH,
    RiskTier.REDUCED: StressLevel.MODERATE,
    RiskTier.NORMAL: StressLevel.LOW,
}


def default_health(reason: str = "Health evaluation failed") -> HealthAssessment:
    return HealthAssessment(
        overall_health=OverallHealth.DEGRADED,
        should_pause=False,
        pause_reason=None,
        risk_level=RiskTier.REDUCED,
        anomalies_detected=(reason,),
        recommendations=("Review health oracle availability",),
        confidence=DEFAULT_CONFIDENCE,
    )


def default_allocation(strategies: list[str]) -> AllocationAssessment:
    split = equal_split(strategies)
    return AllocationAssessment(
        strategy_assessments={
            name: StrategyAssessment(
                health="HEALTHY",
                regime_fit="NEUTRAL",
                recommended_allocation=share,
                reasoning="Default allocation (evaluation failed)",
            )
            for name, share in split.items()
        },
        disable_strategies=(),
        allocation_rationale="Default equal allocation due to evaluation failure",
        market_regime_assessment="Unknown (evaluation failed)",
        confidence=DEFAULT_CONFIDENCE,
    )


def default_risk(tier: RiskTier) -> RiskControlOutput:
    normal, reduced, minimum = _LEVERAGE_BY_TIER[tier]
    protective = tier != RiskTier.NORMAL
    return RiskControlOutput(
        risk_thresholds=RiskThresholds(
            drawdown_warning=-8.0,
            drawdown_critical=-12.0,
            drawdown_pause=-18.0,
            daily_loss_pause=-12.0,
            single_trade_loss_alert=-6.0,
        ),
        leverage_caps=LeverageCaps(normal=normal, reduced=reduced, minimum=minimum),
        exposure_limits=ExposureLimits(
            max_total_exposure=_TOTAL_EXPOSURE_BY_TIER[tier],
            max_single_position=0.2,
            max_correlated_exposure=0.4,
        ),
        volatility_adjustments=VolatilityAdjustments(
            position_size_scalar=_SCALAR_BY_TIER[tier],
            hold_time_reduction=protective,
            tighten_stops=protective,
        ),
        immediate_actions=(),
        current_risk_score=_RISK_SCORE_BY_TIER[tier],
        risk_trend=RiskTrend.STABLE,
        market_stress_level=_STRESS_BY_TIER[tier],
        reasoning=f"Conservative defaults for {tier.value} risk tier (evaluation failed)",
        confidence=DEFAULT_CONFIDENCE,
    )


def default_conflict(proposed: dict[str, float], strategies: list[str], max_leverage: float) -> ConflictResolution:
    """Normalize the proposed allocation, or split equally when nothing is proposed."""
    values = {name: max(0.0, proposed.get(name, 0.0)) for name in strategies}
    total = sum(values.values())
    if total <= 0:
        resolved = equal_split(strategies)
    else:
        resolved = {name: v / total * 100 for name, v in values.items()}
    return ConflictResolution(
        resolved_allocations=resolved,
        leverage_cap=max_leverage,
        adjustments_made=("Used proposed allocations due to conflict resolution failure",),
        confidence=DEFAULT_CONFIDENCE,
    )
