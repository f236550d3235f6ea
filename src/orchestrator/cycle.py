"""Cycle Orchestrator — one oversight pass per scheduler tick.

Sequence:
1. Lifecycle sweep (promotions, then rollbacks), contained per strategy
2. Account snapshot (equity, peak, positions, allocations)
3. Health oracle -> risk oracle (fed the health tier) -> allocation oracle
   -> conflict oracle (fed the enforced leverage cap)
   Each call is timed out, validated and parsed; any failure means that
   role's conservative default.
4. Safety enforcement of the risk output, then the decision engine
5. Apply inside one database transaction (allocations, pause state,
   risk parameters, audit row)
6. Execution side effects after commit (closes, disables, immediate actions)
"""

from __future__ import annotations

import asyncio
import json
import time
from dataclasses import asdict, dataclass, field, is_dataclass, replace
from datetime import datetime
from enum import Enum
from typing import Any, Callable

import structlog

from src.api import metrics
from src.lifecycle.errors import InvalidPromotionTargetError, LifecycleError
from src.lifecycle.promoter import PromotionEvaluation, RollbackEvent, StrategyPromoter
from src.lifecycle.versions import PROMOTION_TARGETS, VersionManager
from src.oversight.decision import decide
from src.oversight.defaults import default_allocation, default_conflict, default_health, default_risk
from src.oversight.oracles import Oracle
from src.oversight.safety import RiskControl, describe_constraint_actions, enforce_safety_constraints
from src.oversight.validator import parse_output, validate_output
from src.shell.config import Config
from src.shell.contract import (
    AccountSnapshot, CycleDecision, DeploymentState, Environment, ExecutionBase, OracleKind,
    RiskActionType, RiskControlOutput, RiskParameters,
)
from src.shell.database import Database
from src.shell.state import SystemState, risk_parameters_to_dict
from src.utils.timeutil import now_str, utcnow

log = structlog.get_logger()

RECENT_DECISIONS_IN_CONTEXT = 5


def _json_default(obj: Any) -> Any:
    if isinstance(obj, Enum):
        return obj.value
    if isinstance(obj, datetime):
        return obj.isoformat()
    if isinstance(obj, (set, frozenset)):
        return sorted(obj)
    raise TypeError(f"Not JSON serializable: {type(obj).__name__}")


def _dumps(value: Any) -> str:
    if is_dataclass(value) and not isinstance(value, type):
        value = asdict(value)
    return json.dumps(value, default=_json_default)


@dataclass
class CycleContext:
    """Process-wide execution state the cycle reads and mutates."""

    execution: ExecutionBase
    disabled_strategies: set[str] = field(default_factory=set)

    def disable(self, name: str) -> None:
        self.disabled_strategies.add(name)
        self.execution.disable_strategy(name)

    def enable(self, name: str) -> None:
        self.disabled_strategies.discard(name)
        self.execution.enable_strategy(name)


@dataclass(frozen=True)
class OracleResult:
    kind: OracleKind
    output: Any
    used_default: bool
    anomalies: tuple[str, ...]
    latency_ms: int


class CycleOrchestrator:
    """Runs oversight cycles and exposes the manual lifecycle commands."""

    def __init__(
        self,
        config: Config,
        db: Database,
        state: SystemState,
        risk_control: RiskControl,
        oracles: dict[OracleKind, Oracle],
        versions: VersionManager,
        promoter: StrategyPromoter,
        context: CycleContext,
        ai=None,
    ) -> None:
        missing = [k.value for k in OracleKind if k not in oracles]
        if missing:
            raise ValueError(f"Missing oracles: {', '.join(missing)}")
        self._config = config
        self._db = db
        self._state = state
        self._risk_control = risk_control
        self._oracles = oracles
        self._versions = versions
        self._promoter = promoter
        self._context = context
        self._ai = ai
        self._strategies = list(config.strategies)
        self._cycle_lock = asyncio.Lock()
        self._cycle_id: str | None = None
        self.last_decision: CycleDecision | None = None
        self.last_latency_ms: int | None = None

    @property
    def context(self) -> CycleContext:
        return self._context

    @property
    def is_running(self) -> bool:
        return self._cycle_lock.locked()

    async def run_cycle(self) -> CycleDecision | None:
        """Run one cycle. Returns None when skipped or when the cycle failed."""
        if self._cycle_lock.locked():
            log.warning("cycle.already_running")
            metrics.cycles_total.labels(outcome="skipped").inc()
            return None
        async with self._cycle_lock:
            return await self._run_cycle_locked()

    async def _run_cycle_locked(self) -> CycleDecision | None:
        self._cycle_id = utcnow().strftime("%Y%m%d_%H%M%S_%f")
        start = time.monotonic()
        tokens_before = self._ai.tokens_used_today if self._ai is not None else None
        log.info("cycle.start", cycle_id=self._cycle_id)

        try:
            await self._run_lifecycle_checks()

            account = await self._snapshot()
            context = await self._build_context(account)

            health = await self._call_oracle(OracleKind.HEALTH, context, default_health)
            tier = health.output.risk_level

            risk = await self._call_oracle(
                OracleKind.RISK, {**context, "risk_tier": tier.value}, lambda reason: default_risk(tier),
            )
            enforced_risk = enforce_safety_constraints(risk.output)
            constraint_actions = describe_constraint_actions(risk.output, enforced_risk)
            if constraint_actions:
                log.info("cycle.constraints_applied", actions=constraint_actions)

            allocation = await self._call_oracle(
                OracleKind.ALLOCATION, context, lambda reason: default_allocation(self._strategies),
            )

            eligible = await self._eligible_strategies()
            proposed = self._proposed_allocations(allocation.output, eligible)
            max_leverage = enforced_risk.leverage_caps.for_tier(tier)
            conflict = await self._call_oracle(
                OracleKind.CONFLICT,
                {**context, "proposed_allocations": proposed, "max_leverage": max_leverage},
                lambda reason: default_conflict(proposed, self._strategies, max_leverage),
            )
            if conflict.output.leverage_cap != max_leverage:
                log.info("cycle.conflict_leverage_advisory", suggested=conflict.output.leverage_cap,
                         applied=max_leverage)

            results = (health, risk, allocation, conflict)
            fallbacks = tuple(r.kind.value for r in results if r.used_default)
            decision = decide(
                health.output, allocation.output, enforced_risk, conflict.output,
                account, self._strategies, constraint_actions, eligible=eligible,
            )
            decision = replace(decision, fallbacks=fallbacks)
            params = self._risk_control.build(enforced_risk, used_default=risk.used_default)

            latency_ms = int((time.monotonic() - start) * 1000)
            tokens_used = (self._ai.tokens_used_today - tokens_before) if tokens_before is not None else None
            await self._apply(decision, params, account, results, latency_ms, tokens_used)
            self._risk_control.activate(params)

            await self._execute(decision, enforced_risk)

            self.last_decision = decision
            self.last_latency_ms = latency_ms
            metrics.cycles_total.labels(outcome="paused" if decision.should_pause else "applied").inc()
            log.info("cycle.complete", cycle_id=self._cycle_id, latency_ms=latency_ms,
                     tier=decision.risk_tier.value, pause=decision.should_pause,
                     leverage_cap=decision.leverage_cap, fallbacks=list(fallbacks),
                     allocations={k: round(v, 2) for k, v in decision.allocations.items()})
            return decision

        except Exception as e:
            log.error("cycle.failed", cycle_id=self._cycle_id, error=str(e), exc_info=True)
            metrics.cycles_total.labels(outcome="failed").inc()
            try:
                await self._state.set("last_cycle_error", f"{type(e).__name__}: {e}")
                await self._state.commit()
            except Exception as record_error:
                log.error("cycle.record_error_failed", error=str(record_error))
            return None

    # --- Lifecycle ---

    async def _run_lifecycle_checks(self) -> None:
        if not self._config.cycle.lifecycle_enabled:
            return
        try:
            auto = self._config.cycle.auto_promotion_enabled and bool(
                await self._state.get("auto_promotion_enabled", True)
            )
            evaluations = await self._promoter.run_promotion_cycle(auto_promote=auto)
            events = await self._promoter.run_rollback_cycle()
            log.info("cycle.lifecycle_checked", evaluated=len(evaluations),
                     passed=sum(1 for e in evaluations if e.passed), rollbacks=len(events))
        except Exception as e:
            log.error("cycle.lifecycle_failed", error=str(e), exc_info=True)

    # --- Snapshot / context ---

    async def _snapshot(self) -> AccountSnapshot:
        execution = self._context.execution
        equity = await execution.get_account_value()
        peak = await self._state.update_peak_equity(equity)
        return AccountSnapshot(
            equity=equity,
            peak_equity=peak,
            margin_used=execution.get_total_margin_used(),
            unrealized_pnl=execution.get_total_unrealized_pnl(),
            positions=tuple(execution.get_all_positions()),
            allocations=await self._state.get_allocations(),
            disabled_strategies=tuple(sorted(self._context.disabled_strategies)),
            taken_at=utcnow(),
        )

    async def _build_context(self, account: AccountSnapshot) -> dict:
        system = await self._state.get_all()
        context: dict[str, Any] = {
            "cycle_id": self._cycle_id,
            "strategies": self._strategies,
            "system_status": system.get("system_status"),
            "trading_enabled": system.get("trading_enabled"),
            "last_cycle_at": system.get("last_cycle_at"),
            "last_cycle_error": system.get("last_cycle_error"),
            "account": {
                "equity": account.equity,
                "peak_equity": account.peak_equity,
                "drawdown_pct": account.drawdown_pct,
                "margin_used": account.margin_used,
                "unrealized_pnl": account.unrealized_pnl,
                "positions": [asdict(p) for p in account.positions],
            },
            "allocations": account.allocations,
            "disabled_strategies": list(account.disabled_strategies),
            "risk_parameters": risk_parameters_to_dict(self._risk_control.current),
            "strategy_performance": {},
            "recent_decisions": [],
        }

        try:
            for version in await self._versions.get_versions_in_state(DeploymentState.MAINNET_ACTIVE):
                perf = await self._promoter.get_version_metrics(version.id, Environment.MAINNET)
                context["strategy_performance"][version.strategy_name] = {**perf.to_dict(), "version": version.version}
        except Exception as e:
            log.warning("cycle.context_error", section="performance", error=str(e))

        try:
            context["recent_decisions"] = await self._db.fetchall(
                """SELECT decided_at, risk_tier, should_pause, leverage_cap FROM cycle_decisions
                   ORDER BY id DESC LIMIT ?""",
                (RECENT_DECISIONS_IN_CONTEXT,),
            )
        except Exception as e:
            log.warning("cycle.context_error", section="recent_decisions", error=str(e))

        return context

    async def _eligible_strategies(self) -> set[str]:
        """Strategies allowed capital: those with an active mainnet version.

        When no strategy has an active mainnet version the lifecycle is not in use
        and every configured strategy is eligible.
        """
        active = {v.strategy_name for v in await self._versions.get_versions_in_state(DeploymentState.MAINNET_ACTIVE)}
        return {name for name in self._strategies if not active or name in active}

    def _proposed_allocations(self, allocation, eligible: set[str]) -> dict[str, float]:
        """Allocation oracle recommendations, zeroed for ineligible strategies."""
        proposed = {}
        for name in self._strategies:
            assessment = allocation.strategy_assessments.get(name)
            share = assessment.recommended_allocation if assessment else 0.0
            proposed[name] = share if name in eligible else 0.0
        return proposed

    # --- Oracles ---

    async def _call_oracle(self, kind: OracleKind, context: dict, fallback: Callable[[str], Any]) -> OracleResult:
        oracle = self._oracles[kind]
        timeout = self._config.cycle.oracle_timeout_seconds
        start = time.monotonic()
        raw: Any = None
        anomalies: list[str] = []
        parsed = None
        valid = False

        try:
            raw = await asyncio.wait_for(oracle.evaluate(context), timeout=timeout)
            result = validate_output(raw, kind, self._strategies)
            anomalies.extend(result.anomalies)
            if result.valid:
                parsed = parse_output(kind, raw)
                valid = True
            else:
                log.warning("oracle.invalid_output", kind=kind.value, anomalies=list(result.anomalies))
        except asyncio.TimeoutError:
            anomalies.append(f"{kind.value} oracle timed out after {timeout:g}s")
            log.warning("oracle.timeout", kind=kind.value, timeout=timeout)
        except Exception as e:
            anomalies.append(f"{kind.value} oracle failed: {e}")
            log.warning("oracle.failed", kind=kind.value, error=str(e), error_type=type(e).__name__)

        latency_ms = int((time.monotonic() - start) * 1000)
        used_default = parsed is None
        if used_default:
            reason = anomalies[-1] if anomalies else f"{kind.value} oracle produced no output"
            parsed = fallback(reason)
            metrics.oracle_fallbacks_total.labels(role=kind.value).inc()
            log.warning("oracle.fallback", kind=kind.value, reason=reason)

        await self._db.execute(
            """INSERT INTO oracle_evaluations
               (cycle_id, kind, model, raw_output, valid, used_default, anomalies, latency_ms)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?)""",
            (self._cycle_id, kind.value, getattr(oracle, "model", None),
             json.dumps(raw, default=str) if raw is not None else None,
             int(valid), int(used_default), json.dumps(anomalies), latency_ms),
        )
        await self._db.commit()

        return OracleResult(kind, parsed, used_default, tuple(anomalies), latency_ms)

    # --- Apply ---

    async def _apply(
        self,
        decision: CycleDecision,
        params: RiskParameters,
        account: AccountSnapshot,
        results: tuple[OracleResult, ...],
        latency_ms: int,
        tokens_used: int | None,
    ) -> None:
        """Persist the decision. Everything lands together or not at all."""
        now = now_str()
        async with self._db.transaction():
            await self._db.execute(
                "UPDATE strategy_allocations SET effective_until = ? WHERE effective_until IS NULL",
                (now,),
            )
            await self._db.execute(
                """INSERT INTO strategy_allocations
                   (cycle_id, effective_from, allocations, total_leverage_cap, reasoning)
                   VALUES (?, ?, ?, ?, ?)""",
                (self._cycle_id, now, json.dumps(decision.allocations), decision.leverage_cap, decision.reasoning),
            )
            await self._state.set("current_allocations", decision.allocations)
            if decision.should_pause:
                await self._state.pause(decision.pause_reason or "Oversight pause")
            await self._risk_control.stage(params)
            await self._state.set("last_cycle_at", now)
            await self._state.set("last_cycle_error", None)

            inputs = {
                "account": asdict(account),
                "oracles": {r.kind.value: asdict(r.output) for r in results},
            }
            anomalies = {r.kind.value: list(r.anomalies) for r in results if r.anomalies}
            model = getattr(self._oracles[OracleKind.HEALTH], "model", None)
            await self._db.execute(
                """INSERT INTO cycle_decisions
                   (cycle_id, decided_at, inputs, outputs, reasoning, confidence, risk_tier,
                    should_pause, leverage_cap, fallbacks, anomalies, oracle_model, latency_ms, tokens_used)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                (self._cycle_id, now, _dumps(inputs), _dumps(decision), decision.reasoning,
                 decision.avg_confidence, decision.risk_tier.value, int(decision.should_pause),
                 decision.leverage_cap, json.dumps(list(decision.fallbacks)), json.dumps(anomalies),
                 model, latency_ms, tokens_used),
            )

    async def _execute(self, decision: CycleDecision, risk: RiskControlOutput) -> None:
        """Execution side effects. Each call is attempted even if an earlier one failed."""
        execution = self._context.execution

        if decision.should_pause:
            try:
                closed = await execution.close_all_positions(f"Oversight pause: {decision.pause_reason}")
                log.warning("cycle.paused", reason=decision.pause_reason, closed=closed)
            except Exception as e:
                log.error("cycle.close_all_failed", error=str(e), exc_info=True)
            for name in decision.strategies_to_disable:
                self._context.disable(name)
            return

        for symbol in decision.positions_to_close:
            await self._close(symbol, "Oversight decision")
        for name in decision.strategies_to_disable:
            self._context.disable(name)
        for name in decision.strategies_to_enable:
            self._context.enable(name)

        # Leverage, stop and size actions take effect through RiskParameters
        for action in risk.immediate_actions:
            if action.action_type == RiskActionType.CLOSE_POSITION and action.target:
                await self._close(action.target, f"Risk action: {action.reason}")
            elif action.action_type == RiskActionType.PAUSE_STRATEGY and action.target:
                if action.target in self._strategies:
                    self._context.disable(action.target)
                else:
                    log.warning("cycle.unknown_strategy_action", target=action.target)

    async def _close(self, symbol: str, reason: str) -> None:
        try:
            await self._context.execution.close_position(symbol, reason)
        except Exception as e:
            log.error("cycle.close_failed", symbol=symbol, error=str(e), exc_info=True)

    # --- Manual commands ---

    async def resume_trading(self) -> None:
        """Clear a pause and re-enable every configured strategy."""
        await self._state.resume()
        await self._state.commit()
        for name in self._strategies:
            self._context.enable(name)

    async def manual_promote(
        self, strategy_name: str, version: str, target: DeploymentState | None = None,
    ) -> PromotionEvaluation:
        """Evaluate one version and take its promotion edge if every criterion passes."""
        found = await self._versions.get_version(strategy_name, version)
        if found is None:
            raise LifecycleError(f"Version not found: {strategy_name} v{version}")
        current = found.deployment_state.value
        expected = PROMOTION_TARGETS.get(found.deployment_state)
        if target is not None and target != expected:
            raise InvalidPromotionTargetError(target.value, current)
        if expected is None:
            raise InvalidPromotionTargetError("none", current)

        evaluation = await self._promoter.evaluate_for_promotion(found)
        if evaluation.passed:
            await self._promoter.promote(found, evaluation.target_state)
            log.info("cycle.manual_promoted", strategy=strategy_name, version=version,
                     target=evaluation.target_state.value)
        else:
            log.info("cycle.manual_promotion_refused", strategy=strategy_name, version=version,
                     failed=list(evaluation.failed_criteria))
        return evaluation

    async def manual_rollback(self, strategy_name: str, reason: str) -> RollbackEvent:
        active = [
            v for v in await self._versions.get_versions_in_state(DeploymentState.MAINNET_ACTIVE)
            if v.strategy_name == strategy_name
        ]
        if not active:
            raise LifecycleError(f"No active mainnet version for {strategy_name}")
        return await self._promoter.rollback(active[0], reason, automatic=False)
