"""Strategy Promoter — promotion criteria, evaluation, and automatic rollback.

evaluate_promotion() and should_rollback() are pure. StrategyPromoter wraps
them with persistence: it loads criteria and metrics, logs every evaluation,
and drives the VersionManager through the allowed promotion edges.
"""

from __future__ import annotations

import json
from dataclasses import asdict, dataclass, field, fields, replace
from datetime import datetime

import structlog

from src.api import metrics as prom
from src.lifecycle.errors import InvalidPromotionTargetError
from src.lifecycle.metrics import PerformanceMetrics, compute_metrics
from src.lifecycle.versions import (
    PROMOTION_TARGETS, StrategyVersion, VersionManager, environment_for_state,
)
from src.shell.contract import DeploymentState, Environment
from src.shell.database import Database
from src.utils.timeutil import now_str, parse_ts, utcnow

log = structlog.get_logger()

ROLLBACK_MIN_TRADES = 10
ROLLBACK_WIN_RATE_MIN_TRADES = 20
ROLLBACK_DRAWDOWN_FACTOR = 1.5
ROLLBACK_LOSS_STREAK_FACTOR = 1.5
ROLLBACK_WIN_RATE_FACTOR = 0.7


@dataclass(frozen=True)
class PromotionCriteria:
    min_testnet_runtime_hours: float = 48
    min_trades: int = 20
    min_sharpe_ratio: float = 0.5
    max_drawdown_pct: float = -20.0
    min_win_rate_pct: float = 40.0
    min_profit_factor: float = 1.2
    max_consecutive_losses: int = 5
    min_shadow_mode_hours: float = 24

    @classmethod
    def from_row(cls, row: dict) -> PromotionCriteria:
        return cls(**{f.name: row[f.name] for f in fields(cls) if row.get(f.name) is not None})

    def to_dict(self) -> dict:
        return asdict(self)


CRITERIA_FIELDS = tuple(f.name for f in fields(PromotionCriteria))


@dataclass(frozen=True)
class PromotionEvaluation:
    strategy_name: str
    version: str
    current_state: DeploymentState
    target_state: DeploymentState
    criteria: PromotionCriteria
    metrics: PerformanceMetrics
    passed: bool
    failed_criteria: tuple[str, ...] = ()
    evaluated_at: datetime | None = None

    @property
    def reasoning(self) -> str:
        if self.passed:
            return f"All criteria met for {self.current_state.value} -> {self.target_state.value}"
        return "; ".join(self.failed_criteria)

    def to_dict(self) -> dict:
        return {
            "strategy_name": self.strategy_name,
            "version": self.version,
            "current_state": self.current_state.value,
            "target_state": self.target_state.value,
            "criteria": self.criteria.to_dict(),
            "metrics": self.metrics.to_dict(),
            "passed": self.passed,
            "failed_criteria": list(self.failed_criteria),
            "evaluated_at": self.evaluated_at.isoformat() if self.evaluated_at else None,
        }


@dataclass(frozen=True)
class RollbackEvent:
    strategy_name: str
    from_version: str
    to_version: str                 # "none" when no prior stable version existed
    reason: str
    automatic: bool
    triggered_at: datetime | None = field(default=None)

    def to_dict(self) -> dict:
        data = asdict(self)
        data["triggered_at"] = self.triggered_at.isoformat() if self.triggered_at else None
        return data


def evaluate_promotion(
    version: StrategyVersion,
    criteria: PromotionCriteria,
    metrics: PerformanceMetrics,
    runtime_hours: float,
) -> PromotionEvaluation:
    """Check a version against the criteria for its next promotion edge."""
    current = version.deployment_state
    target = PROMOTION_TARGETS.get(current)
    if target is None:
        return PromotionEvaluation(
            strategy_name=version.strategy_name,
            version=version.version,
            current_state=current,
            target_state=current,
            criteria=criteria,
            metrics=metrics,
            passed=False,
            failed_criteria=("No valid promotion target from current state",),
            evaluated_at=utcnow(),
        )

    failed: list[str] = []

    if current == DeploymentState.TESTNET_ACTIVE and runtime_hours < criteria.min_testnet_runtime_hours:
        failed.append(f"Runtime {runtime_hours:.1f}h < required {criteria.min_testnet_runtime_hours:g}h")
    elif current == DeploymentState.MAINNET_SHADOW and runtime_hours < criteria.min_shadow_mode_hours:
        failed.append(f"Shadow mode {runtime_hours:.1f}h < required {criteria.min_shadow_mode_hours:g}h")

    if metrics.total_trades < criteria.min_trades:
        failed.append(f"Trades {metrics.total_trades} < required {criteria.min_trades}")
    else:
        # Performance checks are only meaningful with enough trades
        if metrics.sharpe_ratio < criteria.min_sharpe_ratio:
            failed.append(f"Sharpe {metrics.sharpe_ratio:.2f} < required {criteria.min_sharpe_ratio:g}")
        if metrics.max_drawdown < criteria.max_drawdown_pct:
            failed.append(f"Drawdown {metrics.max_drawdown:.1f}% < allowed {criteria.max_drawdown_pct:g}%")
        if metrics.win_rate < criteria.min_win_rate_pct:
            failed.append(f"Win rate {metrics.win_rate:.1f}% < required {criteria.min_win_rate_pct:g}%")
        if metrics.profit_factor < criteria.min_profit_factor:
            failed.append(f"Profit factor {metrics.profit_factor:.2f} < required {criteria.min_profit_factor:g}")
        if metrics.consecutive_losses > criteria.max_consecutive_losses:
            failed.append(
                f"Consecutive losses {metrics.consecutive_losses} > allowed {criteria.max_consecutive_losses}"
            )

    return PromotionEvaluation(
        strategy_name=version.strategy_name,
        version=version.version,
        current_state=current,
        target_state=target,
        criteria=criteria,
        metrics=replace(metrics, runtime_hours=runtime_hours),
        passed=not failed,
        failed_criteria=tuple(failed),
        evaluated_at=utcnow(),
    )


def should_rollback(criteria: PromotionCriteria, metrics: PerformanceMetrics) -> str | None:
    """Return the rollback reason, or None. Uses looser-than-promotion limits."""
    if metrics.total_trades < ROLLBACK_MIN_TRADES:
        return None

    drawdown_limit = criteria.max_drawdown_pct * ROLLBACK_DRAWDOWN_FACTOR
    if metrics.max_drawdown < drawdown_limit:
        return f"Drawdown {metrics.max_drawdown:.1f}% breached rollback limit {drawdown_limit:g}%"

    streak_limit = criteria.max_consecutive_losses * ROLLBACK_LOSS_STREAK_FACTOR
    if metrics.consecutive_losses > streak_limit:
        return f"Consecutive losses {metrics.consecutive_losses} exceeded rollback limit {streak_limit:g}"

    win_rate_floor = criteria.min_win_rate_pct * ROLLBACK_WIN_RATE_FACTOR
    if metrics.total_trades >= ROLLBACK_WIN_RATE_MIN_TRADES and metrics.win_rate < win_rate_floor:
        return f"Win rate {metrics.win_rate:.1f}% below rollback floor {win_rate_floor:g}%"

    return None


class StrategyPromoter:
    """Evaluates versions for promotion and rolls back degraded mainnet versions."""

    def __init__(self, db: Database, versions: VersionManager) -> None:
        self._db = db
        self._versions = versions

    # --- Criteria ---

    async def get_promotion_criteria(self, strategy_name: str | None = None) -> PromotionCriteria:
        """Per-strategy override, else the global default row, else built-in defaults."""
        row = None
        if strategy_name:
            row = await self._db.fetchone(
                "SELECT * FROM promotion_criteria WHERE strategy_name = ?", (strategy_name,),
            )
        if row is None:
            row = await self._db.fetchone("SELECT * FROM promotion_criteria WHERE strategy_name IS NULL")
        if row is None:
            return PromotionCriteria()
        return PromotionCriteria.from_row(row)

    async def update_promotion_criteria(self, strategy_name: str | None, **values) -> PromotionCriteria:
        """Partial update. strategy_name None edits the global default row."""
        unknown = set(values) - set(CRITERIA_FIELDS)
        if unknown:
            raise ValueError(f"Unknown promotion criteria: {sorted(unknown)}")

        current = await self.get_promotion_criteria(strategy_name)
        merged = replace(current, **values)
        columns = ", ".join(CRITERIA_FIELDS)
        placeholders = ", ".join("?" for _ in CRITERIA_FIELDS)
        params = tuple(getattr(merged, name) for name in CRITERIA_FIELDS)

        if strategy_name is None:
            assignments = ", ".join(f"{name} = ?" for name in CRITERIA_FIELDS)
            await self._db.execute(
                f"UPDATE promotion_criteria SET {assignments}, updated_at = ? WHERE strategy_name IS NULL",
                (*params, now_str()),
            )
        else:
            updates = ", ".join(f"{name} = excluded.{name}" for name in CRITERIA_FIELDS)
            await self._db.execute(
                f"""INSERT INTO promotion_criteria (strategy_name, {columns}, updated_at)
                    VALUES (?, {placeholders}, ?)
                    ON CONFLICT(strategy_name) DO UPDATE SET {updates}, updated_at = excluded.updated_at""",
                (strategy_name, *params, now_str()),
            )
        await self._db.commit()
        log.info("promoter.criteria_updated", strategy=strategy_name or "default", fields=sorted(values))
        return merged

    # --- Metrics ---

    async def get_version_metrics(self, version_id: int, environment: Environment) -> PerformanceMetrics:
        """Cached deployment metrics when present, otherwise computed from closed trades."""
        deployment = await self._versions.get_deployment(version_id, environment)
        if deployment and deployment.performance_metrics:
            return deployment.performance_metrics

        trades = await self._db.fetchall(
            """SELECT pnl, pnl_pct FROM trades
               WHERE strategy_version_id = ? AND environment = ? AND closed_at IS NOT NULL
               ORDER BY closed_at, id""",
            (version_id, environment.value),
        )
        return compute_metrics(trades)

    # --- Promotion ---

    async def evaluate_for_promotion(self, version: StrategyVersion) -> PromotionEvaluation:
        criteria = await self.get_promotion_criteria(version.strategy_name)
        if version.deployment_state not in PROMOTION_TARGETS:
            return evaluate_promotion(version, criteria, PerformanceMetrics(), 0.0)

        environment = environment_for_state(version.deployment_state)
        metrics = await self.get_version_metrics(version.id, environment)
        runtime = await self._versions.get_runtime_hours(version.id, environment)
        evaluation = evaluate_promotion(version, criteria, metrics, runtime)

        await self._log_evaluation(version.id, evaluation)
        await self._versions.mark_evaluated(version.id, environment)
        return evaluation

    async def _log_evaluation(self, version_id: int, evaluation: PromotionEvaluation) -> None:
        await self._db.execute(
            """INSERT INTO promotion_evaluations
               (strategy_version_id, current_state, target_state, metrics, criteria_used,
                passed, failed_criteria, reasoning)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?)""",
            (
                version_id,
                evaluation.current_state.value,
                evaluation.target_state.value,
                json.dumps(evaluation.metrics.to_dict()),
                json.dumps(evaluation.criteria.to_dict()),
                int(evaluation.passed),
                json.dumps(list(evaluation.failed_criteria)),
                evaluation.reasoning,
            ),
        )
        await self._db.commit()

    async def promote(self, version: StrategyVersion, target: DeploymentState) -> StrategyVersion:
        """Take one promotion edge. Targets outside the promotion table are rejected."""
        if PROMOTION_TARGETS.get(version.deployment_state) != target:
            raise InvalidPromotionTargetError(target.value, version.deployment_state.value)

        if target == DeploymentState.TESTNET_VALIDATED:
            promoted = await self._versions.validate_testnet(version.id)
        elif target == DeploymentState.MAINNET_SHADOW:
            promoted = await self._versions.promote_to_mainnet_shadow(version.id)
        else:
            promoted = await self._versions.activate_on_mainnet(version.id)

        prom.promotions_total.labels(target=target.value).inc()
        log.info("promoter.promoted", strategy=version.strategy_name, version=version.version,
                 target=target.value)
        return promoted

    async def run_promotion_cycle(self, auto_promote: bool = True) -> list[PromotionEvaluation]:
        """Evaluate every version awaiting promotion. One failure never stops the sweep."""
        evaluations: list[PromotionEvaluation] = []
        for version in await self._versions.get_versions_awaiting_promotion():
            try:
                evaluation = await self.evaluate_for_promotion(version)
                evaluations.append(evaluation)
                if not evaluation.passed:
                    log.info("promoter.not_ready", strategy=version.strategy_name, version=version.version,
                             failed=list(evaluation.failed_criteria))
                    continue
                if not auto_promote:
                    log.info("promoter.auto_promotion_disabled", strategy=version.strategy_name,
                             version=version.version, target=evaluation.target_state.value)
                    continue
                await self.promote(version, evaluation.target_state)
            except Exception as e:
                log.error("promoter.evaluation_failed", strategy=version.strategy_name,
                          version=version.version, error=str(e), exc_info=True)
        return evaluations

    # --- Rollback ---

    async def check_for_rollback(self, version: StrategyVersion) -> str | None:
        """Rollback reason for a mainnet_active version, or None."""
        if version.deployment_state != DeploymentState.MAINNET_ACTIVE:
            return None
        criteria = await self.get_promotion_criteria(version.strategy_name)
        metrics = await self.get_version_metrics(version.id, Environment.MAINNET)
        return should_rollback(criteria, metrics)

    async def rollback(self, version: StrategyVersion, reason: str, automatic: bool = True) -> RollbackEvent:
        """Pause the version and reactivate the last stable one, if any, in one transaction."""
        previous = await self._versions.find_rollback_target(version.strategy_name, version.id)
        async with self._db.transaction():
            await self._versions.pause_on_mainnet(version.id)
            if previous is not None:
                await self._versions.activate_on_mainnet(previous.id)
            to_version = previous.version if previous else "none"
            await self._db.execute(
                """INSERT INTO rollback_events (strategy_name, from_version, to_version, reason, automatic)
                   VALUES (?, ?, ?, ?, ?)""",
                (version.strategy_name, version.version, to_version, reason, int(automatic)),
            )

        prom.rollbacks_total.labels(automatic=str(automatic).lower()).inc()
        log.warning("promoter.rolled_back", strategy=version.strategy_name, from_version=version.version,
                    to_version=to_version, reason=reason, automatic=automatic)
        return RollbackEvent(
            strategy_name=version.strategy_name,
            from_version=version.version,
            to_version=to_version,
            reason=reason,
            automatic=automatic,
            triggered_at=utcnow(),
        )

    async def run_rollback_cycle(self) -> list[RollbackEvent]:
        events: list[RollbackEvent] = []
        for version in await self._versions.get_versions_in_state(DeploymentState.MAINNET_ACTIVE):
            try:
                reason = await self.check_for_rollback(version)
                if reason:
                    events.append(await self.rollback(version, reason, automatic=True))
            except Exception as e:
                log.error("promoter.rollback_check_failed", strategy=version.strategy_name,
                          version=version.version, error=str(e), exc_info=True)
        return events

    # --- History ---

    async def get_recent_rollbacks(self, limit: int = 10, strategy_name: str | None = None) -> list[RollbackEvent]:
        if strategy_name:
            rows = await self._db.fetchall(
                "SELECT * FROM rollback_events WHERE strategy_name = ? ORDER BY id DESC LIMIT ?",
                (strategy_name, limit),
            )
        else:
            rows = await self._db.fetchall(
                "SELECT * FROM rollback_events ORDER BY id DESC LIMIT ?", (limit,),
            )
        return [
            RollbackEvent(
                strategy_name=r["strategy_name"],
                from_version=r["from_version"],
                to_version=r["to_version"],
                reason=r["reason"],
                automatic=bool(r["automatic"]),
                triggered_at=parse_ts(r["triggered_at"]),
            )
            for r in rows
        ]

    async def get_recent_evaluations(self, limit: int = 20, version_id: int | None = None) -> list[dict]:
        if version_id is not None:
            rows = await self._db.fetchall(
                "SELECT * FROM promotion_evaluations WHERE strategy_version_id = ? ORDER BY id DESC LIMIT ?",
                (version_id, limit),
            )
        else:
            rows = await self._db.fetchall(
                "SELECT * FROM promotion_evaluations ORDER BY id DESC LIMIT ?", (limit,),
            )
        for r in rows:
            r["metrics"] = json.loads(r["metrics"])
            r["criteria_used"] = json.loads(r["criteria_used"])
            r["failed_criteria"] = json.loads(r["failed_criteria"] or "[]")
            r["passed"] = bool(r["passed"])
        return rows
