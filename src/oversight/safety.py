"""Safety Constraint Enforcer — hard limits no oracle output may exceed.

Every risk-parameter recommendation passes through enforce_safety_constraints()
before it can become the effective RiskParameters. The function is pure and
idempotent: enforcing an already-enforced output returns an equal output.
"""

from __future__ import annotations

from dataclasses import replace

import structlog

from src.shell.contract import LeverageCaps, RiskControlOutput, RiskParameters
from src.shell.state import SystemState
from src.utils.timeutil import utcnow

log = structlog.get_logger()

# Drawdown thresholds are negative percentages; more negative is more severe.
DRAWDOWN_WARNING_CEILING = -5.0
DRAWDOWN_CRITICAL_CEILING = -10.0
DRAWDOWN_PAUSE_CEILING = -15.0
DRAWDOWN_STEP = 5.0

LEVERAGE_NORMAL_MAX = 15.0
LEVERAGE_NORMAL_MIN = 1.0
LEVERAGE_REDUCED_MAX = 8.0
LEVERAGE_MINIMUM_MAX = 4.0

MAX_TOTAL_EXPOSURE = 0.9
SCALAR_MIN = 0.3
SCALAR_MAX = 1.5


def clamp_drawdowns(warning: float, critical: float, pause: float) -> tuple[float, float, float]:
    warning = min(warning, DRAWDOWN_WARNING_CEILING)
    critical = min(critical, DRAWDOWN_CRITICAL_CEILING)
    pause = min(pause, DRAWDOWN_PAUSE_CEILING)
    if critical >= warning:
        critical = warning - DRAWDOWN_STEP
    if pause >= critical:
        pause = critical - DRAWDOWN_STEP
    return warning, critical, pause


def clamp_leverage(normal: float, reduced: float, minimum: float) -> tuple[float, float, float]:
    normal = max(LEVERAGE_NORMAL_MIN, min(normal, LEVERAGE_NORMAL_MAX))
    reduced = min(reduced, LEVERAGE_REDUCED_MAX)
    if reduced >= normal or reduced <= 0:
        reduced = normal / 2
    minimum = min(minimum, LEVERAGE_MINIMUM_MAX)
    if minimum >= reduced or minimum <= 0:
        minimum = reduced / 2
    return normal, reduced, minimum


def clamp_exposure(max_total: float) -> float:
    return max(0.0, min(max_total, MAX_TOTAL_EXPOSURE))


def clamp_scalar(scalar: float) -> float:
    return max(SCALAR_MIN, min(scalar, SCALAR_MAX))


def enforce_safety_constraints(output: RiskControlOutput) -> RiskControlOutput:
    """Return a copy of the risk output with every hard limit applied."""
    th = output.risk_thresholds
    warning, critical, pause = clamp_drawdowns(th.drawdown_warning, th.drawdown_critical, th.drawdown_pause)

    caps = output.leverage_caps
    normal, reduced, minimum = clamp_leverage(caps.normal, caps.reduced, caps.minimum)

    return replace(
        output,
        risk_thresholds=replace(th, drawdown_warning=warning, drawdown_critical=critical, drawdown_pause=pause),
        leverage_caps=LeverageCaps(normal=normal, reduced=reduced, minimum=minimum),
        exposure_limits=replace(
            output.exposure_limits,
            max_total_exposure=clamp_exposure(output.exposure_limits.max_total_exposure),
        ),
        volatility_adjustments=replace(
            output.volatility_adjustments,
            position_size_scalar=clamp_scalar(output.volatility_adjustments.position_size_scalar),
        ),
    )


def enforce_parameters(params: RiskParameters) -> RiskParameters:
    """Same limits applied to a RiskParameters value (manual overrides, stored state)."""
    warning, critical, pause = clamp_drawdowns(params.drawdown_warning, params.drawdown_critical, params.drawdown_pause)
    normal, reduced, minimum = clamp_leverage(
        params.max_leverage_normal, params.max_leverage_reduced, params.max_leverage_minimum,
    )
    return replace(
        params,
        drawdown_warning=warning,
        drawdown_critical=critical,
        drawdown_pause=pause,
        max_leverage_normal=normal,
        max_leverage_reduced=reduced,
        max_leverage_minimum=minimum,
        max_total_exposure=clamp_exposure(params.max_total_exposure),
        position_size_scalar=clamp_scalar(params.position_size_scalar),
    )


def describe_constraint_actions(before: RiskControlOutput, after: RiskControlOutput) -> list[str]:
    """List each value the enforcer changed, for the reasoning trail."""
    changes: list[str] = []

    def note(label: str, old: float, new: float) -> None:
        if old != new:
            changes.append(f"{label} {old:g} -> {new:g}")

    bt, at = before.risk_thresholds, after.risk_thresholds
    note("drawdown_warning", bt.drawdown_warning, at.drawdown_warning)
    note("drawdown_critical", bt.drawdown_critical, at.drawdown_critical)
    note("drawdown_pause", bt.drawdown_pause, at.drawdown_pause)

    bl, al = before.leverage_caps, after.leverage_caps
    note("leverage_normal", bl.normal, al.normal)
    note("leverage_reduced", bl.reduced, al.reduced)
    note("leverage_minimum", bl.minimum, al.minimum)

    note("max_total_exposure", before.exposure_limits.max_total_exposure, after.exposure_limits.max_total_exposure)
    note("position_size_scalar", before.volatility_adjustments.position_size_scalar,
         after.volatility_adjustments.position_size_scalar)
    return changes


def to_parameters(output: RiskControlOutput, updated_by: str) -> RiskParameters:
    th = output.risk_thresholds
    exp = output.exposure_limits
    return RiskParameters(
        drawdown_warning=th.drawdown_warning,
        drawdown_critical=th.drawdown_critical,
        drawdown_pause=th.drawdown_pause,
        daily_loss_pause=th.daily_loss_pause,
        single_trade_loss_alert=th.single_trade_loss_alert,
        max_leverage_normal=output.leverage_caps.normal,
        max_leverage_reduced=output.leverage_caps.reduced,
        max_leverage_minimum=output.leverage_caps.minimum,
        max_total_exposure=exp.max_total_exposure,
        max_single_position=exp.max_single_position,
        max_correlated_exposure=exp.max_correlated_exposure,
        position_size_scalar=output.volatility_adjustments.position_size_scalar,
        updated_at=utcnow(),
        updated_by=updated_by,
    )


class RiskControl:
    """Holds the effective RiskParameters. Only enforced values are ever stored."""

    def __init__(self, state: SystemState) -> None:
        self._state = state
        self._current = RiskParameters()

    @property
    def current(self) -> RiskParameters:
        return self._current

    async def load(self) -> RiskParameters:
        self._current = enforce_parameters(await self._state.get_risk_parameters())
        log.info("risk_control.loaded", updated_by=self._current.updated_by,
                 leverage_normal=self._current.max_leverage_normal)
        return self._current

    def build(self, output: RiskControlOutput, used_default: bool) -> RiskParameters:
        """Effective parameters for an enforced risk output. Does not persist."""
        return to_parameters(enforce_safety_constraints(output), "default" if used_default else "oracle")

    async def stage(self, params: RiskParameters) -> None:
        """Write parameters without committing (caller owns the transaction)."""
        await self._state.set_risk_parameters(params)

    def activate(self, params: RiskParameters) -> None:
        """Adopt parameters after the enclosing transaction committed."""
        self._current = params

    async def reset_to_defaults(self) -> RiskParameters:
        params = replace(RiskParameters(), updated_at=utcnow(), updated_by="default")
        await self._state.set_risk_parameters(params)
        await self._state.commit()
        self._current = params
        log.info("risk_control.reset_to_defaults")
        return params

    async def set_manual(self, **overrides: float) -> RiskParameters:
        params = enforce_parameters(replace(self._current, **overrides, updated_at=utcnow(), updated_by="manual"))
        await self._state.set_risk_parameters(params)
        await self._state.commit()
        self._current = params
        log.info("risk_control.manual_update", fields=sorted(overrides))
        return params
