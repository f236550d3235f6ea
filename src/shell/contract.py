"""Oversight Contract — rigid types shared by the oracles, the shell, and the lifecycle.

Oracle outputs cross into the system as untrusted JSON. They are validated and
parsed into the frozen dataclasses below; nothing downstream reads raw dicts.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Optional


# --- Enums ---

class OracleKind(Enum):
    HEALTH = "health"
    ALLOCATION = "allocation"
    RISK = "risk"
    CONFLICT = "conflict"


class OverallHealth(Enum):
    OK = "OK"
    DEGRADED = "DEGRADED"
    CRITICAL = "CRITICAL"


class RiskTier(Enum):
    NORMAL = "NORMAL"
    REDUCED = "REDUCED"
    MINIMUM = "MINIMUM"


class RiskTrend(Enum):
    INCREASING = "INCREASING"
    STABLE = "STABLE"
    DECREASING = "DECREASING"


class StressLevel(Enum):
    LOW = "LOW"
    MODERATE = "MODERATE"
    HIGH = "HIGH"
    EXTREME = "EXTREME"


class RiskActionType(Enum):
    REDUCE_LEVERAGE = "REDUCE_LEVERAGE"
    TIGHTEN_STOPS = "TIGHTEN_STOPS"
    REDUCE_POSITION_SIZE = "REDUCE_POSITION_SIZE"
    PAUSE_STRATEGY = "PAUSE_STRATEGY"
    CLOSE_POSITION = "CLOSE_POSITION"


class DeploymentState(Enum):
    DEVELOPMENT = "development"
    TESTNET_PENDING = "testnet_pending"
    TESTNET_ACTIVE = "testnet_active"
    TESTNET_VALIDATED = "testnet_validated"
    MAINNET_SHADOW = "mainnet_shadow"
    MAINNET_ACTIVE = "mainnet_active"
    MAINNET_PAUSED = "mainnet_paused"
    DEPRECATED = "deprecated"


class Environment(Enum):
    TESTNET = "testnet"
    MAINNET = "mainnet"


# --- Oracle Outputs (validated, typed) ---

@dataclass(frozen=True)
class HealthAssessment:
    overall_health: OverallHealth
    should_pause: bool
    pause_reason: Optional[str]
    risk_level: RiskTier
    anomalies_detected: tuple[str, ...] = ()
    recommendations: tuple[str, ...] = ()
    confidence: float = 0.0


@dataclass(frozen=True)
class StrategyAssessment:
    health: str                     # HEALTHY / STRUGGLING / FAILING
    regime_fit: str                 # GOOD / NEUTRAL / POOR
    recommended_allocation: float
    reasoning: str = ""


@dataclass(frozen=True)
class AllocationAssessment:
    strategy_assessments: dict[str, StrategyAssessment]
    disable_strategies: tuple[str, ...]
    allocation_rationale: str
    market_regime_assessment: str = ""
    confidence: float = 0.0


@dataclass(frozen=True)
class RiskThresholds:
    drawdown_warning: float
    drawdown_critical: float
    drawdown_pause: float
    daily_loss_pause: float
    single_trade_loss_alert: float


@dataclass(frozen=True)
class LeverageCaps:
    normal: float
    reduced: float
    minimum: float

    def for_tier(self, tier: RiskTier) -> float:
        if tier == RiskTier.MINIMUM:
            return self.minimum
        if tier == RiskTier.REDUCED:
            return self.reduced
        return self.normal


@dataclass(frozen=True)
class ExposureLimits:
    max_total_exposure: float
    max_single_position: float
    max_correlated_exposure: float


@dataclass(frozen=True)
class VolatilityAdjustments:
    position_size_scalar: float
    hold_time_reduction: bool = False
    tighten_stops: bool = False


@dataclass(frozen=True)
class RiskAction:
    action_type: RiskActionType
    reason: str
    target: Optional[str] = None
    value: Optional[float] = None


@dataclass(frozen=True)
class RiskControlOutput:
    risk_thresholds: RiskThresholds
    leverage_caps: LeverageCaps
    exposure_limits: ExposureLimits
    volatility_adjustments: VolatilityAdjustments
    immediate_actions: tuple[RiskAction, ...]
    current_risk_score: float
    risk_trend: RiskTrend
    market_stress_level: StressLevel
    reasoning: str = ""
    confidence: float = 0.0


@dataclass(frozen=True)
class PositionAction:
    symbol: str
    action: str                     # KEEP / CLOSE
    reasoning: str = ""


@dataclass(frozen=True)
class ConflictResolution:
    resolved_allocations: dict[str, float]
    leverage_cap: float
    signal_resolutions: tuple[dict, ...] = ()
    position_actions: tuple[PositionAction, ...] = ()
    adjustments_made: tuple[str, ...] = ()
    confidence: float = 0.0


# --- Account / Execution Types ---

@dataclass(frozen=True)
class Position:
    symbol: str
    strategy: str
    side: str                       # "long" or "short"
    size: float
    entry_price: float
    mark_price: float
    leverage: float = 1.0
    unrealized_pnl: float = 0.0
    margin_used: float = 0.0


@dataclass(frozen=True)
class AccountSnapshot:
    equity: float
    peak_equity: float
    margin_used: float
    unrealized_pnl: float
    positions: tuple[Position, ...] = ()
    allocations: dict[str, float] = field(default_factory=dict)
    disabled_strategies: tuple[str, ...] = ()
    taken_at: Optional[datetime] = None

    @property
    def drawdown_pct(self) -> float:
        """Decline from peak equity in percent (negative or zero)."""
        if self.peak_equity <= 0:
            return 0.0
        return min(0.0, (self.equity - self.peak_equity) / self.peak_equity * 100)

    @property
    def open_symbols(self) -> list[str]:
        seen: list[str] = []
        for p in self.positions:
            if p.symbol not in seen:
                seen.append(p.symbol)
        return seen


@dataclass(frozen=True)
class RiskParameters:
    drawdown_warning: float = -10.0
    drawdown_critical: float = -15.0
    drawdown_pause: float = -20.0
    daily_loss_pause: float = -15.0
    single_trade_loss_alert: float = -8.0
    max_leverage_normal: float = 10.0
    max_leverage_reduced: float = 5.0
    max_leverage_minimum: float = 3.0
    max_total_exposure: float = 0.8
    max_single_position: float = 0.25
    max_correlated_exposure: float = 0.5
    position_size_scalar: float = 1.0
    updated_at: Optional[datetime] = None
    updated_by: str = "default"     # oracle / default / manual


@dataclass(frozen=True)
class CycleDecision:
    allocations: dict[str, float]
    strategies_to_disable: tuple[str, ...]
    strategies_to_enable: tuple[str, ...]
    positions_to_close: tuple[str, ...]
    leverage_cap: float
    risk_tier: RiskTier
    should_pause: bool
    pause_reason: Optional[str]
    reasoning: str
    risk_score: Optional[float] = None
    risk_trend: Optional[RiskTrend] = None
    market_stress_level: Optional[StressLevel] = None
    position_size_scalar: Optional[float] = None
    max_total_exposure: Optional[float] = None
    avg_confidence: float = 0.0
    fallbacks: tuple[str, ...] = ()   # oracle roles that fell back to defaults


# --- Execution Interface ---

class ExecutionBase:
    """Interface the oversight core drives. Implementations own order placement."""

    async def close_position(self, symbol: str, reason: str) -> bool:
        raise NotImplementedError

    async def close_all_positions(self, reason: str) -> int:
        raise NotImplementedError

    def disable_strategy(self, name: str) -> None:
        raise NotImplementedError

    def enable_strategy(self, name: str) -> None:
        raise NotImplementedError

    def get_all_positions(self) -> list[Position]:
        raise NotImplementedError

    def get_total_margin_used(self) -> float:
        raise NotImplementedError

    def get_total_unrealized_pnl(self) -> float:
        raise NotImplementedError

    async def get_account_value(self) -> float:
        raise NotImplementedError
