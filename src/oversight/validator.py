"""Output Validator — the parse-and-validate boundary for oracle results.

validate_output() runs the checks in a fixed order and reports every finding
as an anomaly string. Only structural problems, out-of-range confidence,
missing required fields and out-of-bounds values make a result invalid; low
confidence and cross-field contradictions are recorded but do not reject.

parse_output() turns a validated dict into the frozen dataclass for its kind.
Call it only on results that validated.
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from typing import Any

from src.shell.contract import (
    AllocationAssessment, ConflictResolution, ExposureLimits, HealthAssessment,
    LeverageCaps, OracleKind, OverallHealth, PositionAction, RiskAction, RiskActionType,
    RiskControlOutput, RiskThresholds, RiskTier, RiskTrend, StrategyAssessment,
    StressLevel, VolatilityAdjustments,
)

LOW_CONFIDENCE = 0.3
MAX_ALLOCATION_SUM = 150.0

REQUIRED_FIELDS: dict[OracleKind, tuple[str, ...]] = {
    OracleKind.HEALTH: ("overall_health", "should_pause", "risk_level"),
    OracleKind.ALLOCATION: ("strategy_assessments", "allocation_rationale"),
    OracleKind.RISK: (
        "risk_thresholds", "leverage_caps", "exposure_limits", "volatility_adjustments",
        "current_risk_score", "risk_trend", "market_stress_level",
    ),
    OracleKind.CONFLICT: ("resolved_allocations", "leverage_cap"),
}

THRESHOLD_FIELDS = (
    "drawdown_warning", "drawdown_critical", "drawdown_pause",
    "daily_loss_pause", "single_trade_loss_alert",
)
LEVERAGE_FIELDS = ("normal", "reduced", "minimum")
EXPOSURE_FIELDS = ("max_total_exposure", "max_single_position", "max_correlated_exposure")


@dataclass
class ValidationResult:
    valid: bool
    anomalies: list[str] = field(default_factory=list)

    def flag(self, message: str) -> None:
        """Record an anomaly that does not invalidate the result."""
        self.anomalies.append(message)

    def reject(self, message: str) -> None:
        self.anomalies.append(message)
        self.valid = False


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool) and math.isfinite(value)


def _enum_values(enum_cls) -> set[str]:
    return {m.value for m in enum_cls}


def validate_output(output: Any, kind: OracleKind, strategies: list[str] | None = None) -> ValidationResult:
    """Check one oracle result. Never raises on malformed input."""
    result = ValidationResult(valid=True)

    if not isinstance(output, dict):
        result.reject("Output is not a JSON object")
        return result

    confidence = output.get("confidence")
    if confidence is None:
        result.flag("Missing confidence, treated as 0.0")
    elif not _is_number(confidence):
        result.reject(f"Confidence {confidence!r} is not a number")
    else:
        if confidence < 0 or confidence > 1:
            result.reject(f"Confidence {confidence} outside valid range [0,1]")
        if confidence < LOW_CONFIDENCE:
            result.flag(f"Very low confidence ({confidence}), extra scrutiny required")

    for name in REQUIRED_FIELDS[kind]:
        if output.get(name) is None:
            result.reject(f"Missing required field: {name}")

    if not result.valid:
        return result

    _BOUND_CHECKS[kind](output, result, strategies)
    return result


def _check_health(output: dict, result: ValidationResult, strategies: list[str] | None) -> None:
    health = output["overall_health"]
    tier = output["risk_level"]
    if health not in _enum_values(OverallHealth):
        result.reject(f"Invalid overall_health: {health!r}")
    if tier not in _enum_values(RiskTier):
        result.reject(f"Invalid risk_level: {tier!r}")
    if not isinstance(output["should_pause"], bool):
        result.reject(f"should_pause must be a boolean, got {output['should_pause']!r}")
    for name in ("anomalies_detected", "recommendations"):
        if output.get(name) is not None and not isinstance(output[name], list):
            result.reject(f"{name} must be a list")

    if health == "OK" and output["should_pause"] is True:
        result.flag("Contradiction: health OK but should_pause true")
    if health == "CRITICAL" and output["should_pause"] is False and tier == "NORMAL":
        result.flag("Contradiction: health CRITICAL but no protective action")


def _check_allocation(output: dict, result: ValidationResult, strategies: list[str] | None) -> None:
    assessments = output["strategy_assessments"]
    if not isinstance(assessments, dict):
        result.reject("strategy_assessments must be an object")
        return

    total = 0.0
    for name, assessment in assessments.items():
        if not isinstance(assessment, dict):
            result.reject(f"Assessment for {name} is not an object")
            continue
        alloc = assessment.get("recommended_allocation", 0)
        if not _is_number(alloc):
            result.reject(f"Allocation for {name} is not a number: {alloc!r}")
            continue
        if alloc < 0 or alloc > 100:
            result.reject(f"Invalid allocation value for {name}: {alloc}")
        total += alloc
        if strategies is not None and name not in strategies:
            result.flag(f"Unknown strategy in assessments: {name}")

    if total > MAX_ALLOCATION_SUM:
        result.reject(f"Allocation sum {total}% exceeds {MAX_ALLOCATION_SUM:.0f}%, likely hallucination")

    disabled = output.get("disable_strategies")
    if disabled is not None:
        if not isinstance(disabled, list) or not all(isinstance(s, str) for s in disabled):
            result.reject("disable_strategies must be a list of strategy names")
        elif strategies is not None:
            for name in disabled:
                if name not in strategies:
                    result.flag(f"Unknown strategy in disable_strategies: {name}")


def _check_group(output: dict, group: str, names: tuple[str, ...], result: ValidationResult) -> dict | None:
    section = output[group]
    if not isinstance(section, dict):
        result.reject(f"{group} must be an object")
        return None
    for name in names:
        if not _is_number(section.get(name)):
            result.reject(f"{group}.{name} must be a number, got {section.get(name)!r}")
    return section


def _check_risk(output: dict, result: ValidationResult, strategies: list[str] | None) -> None:
    _check_group(output, "risk_thresholds", THRESHOLD_FIELDS, result)
    caps = _check_group(output, "leverage_caps", LEVERAGE_FIELDS, result)
    _check_group(output, "exposure_limits", EXPOSURE_FIELDS, result)
    vol = _check_group(output, "volatility_adjustments", ("position_size_scalar",), result)

    # Ordering and ceilings are repaired by the safety enforcer, not rejected here.
    if caps is not None:
        for name in LEVERAGE_FIELDS:
            value = caps.get(name)
            if _is_number(value) and value <= 0:
                result.reject(f"leverage_caps.{name} must be > 0, got {value}")
    if vol is not None and _is_number(vol.get("position_size_scalar")) and vol["position_size_scalar"] <= 0:
        result.reject(f"position_size_scalar must be > 0, got {vol['position_size_scalar']}")

    score = output["current_risk_score"]
    if not _is_number(score):
        result.reject(f"current_risk_score must be a number, got {score!r}")
    elif score < 0 or score > 100:
        result.reject(f"current_risk_score {score} outside [0,100]")
    if output["risk_trend"] not in _enum_values(RiskTrend):
        result.reject(f"Invalid risk_trend: {output['risk_trend']!r}")
    if output["market_stress_level"] not in _enum_values(StressLevel):
        result.reject(f"Invalid market_stress_level: {output['market_stress_level']!r}")

    actions = output.get("immediate_actions")
    if actions is not None:
        if not isinstance(actions, list):
            result.reject("immediate_actions must be a list")
            return
        valid_types = _enum_values(RiskActionType)
        for action in actions:
            if not isinstance(action, dict) or action.get("action_type") not in valid_types:
                result.flag(f"Ignoring unrecognized immediate action: {action!r}")


def _check_conflict(output: dict, result: ValidationResult, strategies: list[str] | None) -> None:
    resolved = output["resolved_allocations"]
    if not isinstance(resolved, dict):
        result.reject("resolved_allocations must be an object")
    else:
        for name, value in resolved.items():
            if not _is_number(value):
                result.reject(f"Resolved allocation for {name} is not a number: {value!r}")
            elif value < 0:
                result.reject(f"Resolved allocation for {name} is negative: {value}")
            if strategies is not None and name not in strategies:
                result.flag(f"Unknown strategy in resolved_allocations: {name}")

    cap = output["leverage_cap"]
    if not _is_number(cap) or cap <= 0:
        result.reject(f"leverage_cap must be a positive number, got {cap!r}")

    actions = output.get("position_actions")
    if actions is not None:
        if not isinstance(actions, list):
            result.reject("position_actions must be a list")
            return
        for action in actions:
            if not isinstance(action, dict) or not isinstance(action.get("symbol"), str) \
                    or action.get("action") not in ("KEEP", "CLOSE"):
                result.flag(f"Ignoring malformed position action: {action!r}")


_BOUND_CHECKS = {
    OracleKind.HEALTH: _check_health,
    OracleKind.ALLOCATION: _check_allocation,
    OracleKind.RISK: _check_risk,
    OracleKind.CONFLICT: _check_conflict,
}


# --- Parsing (validated dict -> typed output) ---

def _confidence(output: dict) -> float:
    value = output.get("confidence")
    return float(value) if _is_number(value) else 0.0


def _strings(values: Any) -> tuple[str, ...]:
    if not isinstance(values, list):
        return ()
    return tuple(str(v) for v in values)


def parse_health(output: dict) -> HealthAssessment:
    return HealthAssessment(
        overall_health=OverallHealth(output["overall_health"]),
        should_pause=output["should_pause"],
        pause_reason=output.get("pause_reason") or None,
        risk_level=RiskTier(output["risk_level"]),
        anomalies_detected=_strings(output.get("anomalies_detected")),
        recommendations=_strings(output.get("recommendations")),
        confidence=_confidence(output),
    )


def parse_allocation(output: dict) -> AllocationAssessment:
    assessments = {
        name: StrategyAssessment(
            health=str(a.get("health", "HEALTHY")),
            regime_fit=str(a.get("regime_fit", "NEUTRAL")),
            recommended_allocation=float(a.get("recommended_allocation", 0)),
            reasoning=str(a.get("reasoning", "")),
        )
        for name, a in output["strategy_assessments"].items()
    }
    return AllocationAssessment(
        strategy_assessments=assessments,
        disable_strategies=_strings(output.get("disable_strategies")),
        allocation_rationale=str(output["allocation_rationale"]),
        market_regime_assessment=str(output.get("market_regime_assessment", "")),
        confidence=_confidence(output),
    )


def parse_risk(output: dict) -> RiskControlOutput:
    th = output["risk_thresholds"]
    caps = output["leverage_caps"]
    exp = output["exposure_limits"]
    vol = output["volatility_adjustments"]

    actions = []
    valid_types = _enum_values(RiskActionType)
    for a in output.get("immediate_actions") or []:
        if not isinstance(a, dict) or a.get("action_type") not in valid_types:
            continue
        value = a.get("value")
        actions.append(RiskAction(
            action_type=RiskActionType(a["action_type"]),
            reason=str(a.get("reason", "")),
            target=str(a["target"]) if a.get("target") else None,
            value=float(value) if _is_number(value) else None,
        ))

    return RiskControlOutput(
        risk_thresholds=RiskThresholds(**{k: float(th[k]) for k in THRESHOLD_FIELDS}),
        leverage_caps=LeverageCaps(**{k: float(caps[k]) for k in LEVERAGE_FIELDS}),
        exposure_limits=ExposureLimits(**{k: float(exp[k]) for k in EXPOSURE_FIELDS}),
        volatility_adjustments=VolatilityAdjustments(
            position_size_scalar=float(vol["position_size_scalar"]),
            hold_time_reduction=bool(vol.get("hold_time_reduction", False)),
            tighten_stops=bool(vol.get("tighten_stops", False)),
        ),
        immediate_actions=tuple(actions),
        current_risk_score=float(output["current_risk_score"]),
        risk_trend=RiskTrend(output["risk_trend"]),
        market_stress_level=StressLevel(output["market_stress_level"]),
        reasoning=str(output.get("reasoning", "")),
        confidence=_confidence(output),
    )


def parse_conflict(output: dict) -> ConflictResolution:
    position_actions = tuple(
        PositionAction(symbol=a["symbol"], action=a["action"], reasoning=str(a.get("reasoning", "")))
        for a in output.get("position_actions") or []
        if isinstance(a, dict) and isinstance(a.get("symbol"), str) and a.get("action") in ("KEEP", "CLOSE")
    )
    resolutions = tuple(r for r in output.get("signal_resolutions") or [] if isinstance(r, dict))
    return ConflictResolution(
        resolved_allocations={k: float(v) for k, v in output["resolved_allocations"].items()},
        leverage_cap=float(output["leverage_cap"]),
        signal_resolutions=resolutions,
        position_actions=position_actions,
        adjustments_made=_strings(output.get("adjustments_made")),
        confidence=_confidence(output),
    )


_PARSERS = {
    OracleKind.HEALTH: parse_health,
    OracleKind.ALLOCATION: parse_allocation,
    OracleKind.RISK: parse_risk,
    OracleKind.CONFLICT: parse_conflict,
}


def parse_output(kind: OracleKind, output: dict):
    """Convert a validated result into its typed form."""
    return _PARSERS[kind](output)
