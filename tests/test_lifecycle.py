"""Strategy lifecycle: version state machine, promotion criteria, rollback."""

import json
import math

import pytest

from src.lifecycle.errors import (
    DuplicateVersionError, InvalidPromotionTargetError, InvalidTransitionError,
)
from src.lifecycle.metrics import PerformanceMetrics, compute_metrics
from src.lifecycle.promoter import (
    PromotionCriteria, StrategyPromoter, evaluate_promotion, should_rollback,
)
from src.lifecycle.versions import TRANSITIONS, StrategyVersion, VersionManager
from src.shell.contract import DeploymentState, Environment

PASSING = PerformanceMetrics(
    total_trades=25, winning_trades=12, losing_trades=13, total_pnl=500.0,
    sharpe_ratio=0.8, max_drawdown=-15.0, profit_factor=1.5, win_rate=48.0, consecutive_losses=2,
)


def _version(state, name="funding_signal", version="1.0"):
    return StrategyVersion(id=1, strategy_name=name, version=version, deployment_state=state, code_hash="abc")


async def _to_mainnet_active(versions, name, version):
    v = await versions.create_version(name, version, f"# {name} {version}")
    await versions.queue_for_testnet(v.id)
    await versions.activate_on_testnet(v.id)
    await versions.validate_testnet(v.id)
    await versions.promote_to_mainnet_shadow(v.id)
    return await versions.activate_on_mainnet(v.id)


async def _age_deployment(db, version_id, environment, hours):
    await db.execute(
        "UPDATE strategy_deployments SET deployed_at = datetime('now', ?) WHERE strategy_version_id = ? AND environment = ?",
        (f"-{hours} hours", version_id, environment.value),
    )
    await db.commit()


# --- Metrics ---

def test_compute_metrics_empty():
    assert compute_metrics([]) == PerformanceMetrics()


def test_compute_metrics_basic():
    trades = [
        {"pnl": 100.0, "pnl_pct": 10.0},
        {"pnl": -50.0, "pnl_pct": -5.0},
        {"pnl": -20.0, "pnl_pct": -2.0},
    ]
    m = compute_metrics(trades)
    assert m.total_trades == 3
    assert m.winning_trades == 1
    assert m.losing_trades == 2
    assert m.total_pnl == pytest.approx(30.0)
    assert m.profit_factor == pytest.approx(100 / 70)
    assert m.win_rate == pytest.approx(100 / 3)
    assert m.consecutive_losses == 2
    assert m.max_drawdown == pytest.approx((1.1 * 0.95 * 0.98 - 1.1) / 1.1 * 100)


def test_compute_metrics_no_losses():
    m = compute_metrics([{"pnl": 10.0, "pnl_pct": 1.0}, {"pnl": 5.0, "pnl_pct": 0.5}])
    assert m.profit_factor == float("inf")
    assert m.max_drawdown == 0.0
    assert m.consecutive_losses == 0


def test_infinite_profit_factor_serializes_as_null():
    m = compute_metrics([{"pnl": 10.0, "pnl_pct": 1.0}])
    data = m.to_dict()
    assert data["profit_factor"] is None
    json.dumps(data, allow_nan=False)
    assert PerformanceMetrics.from_dict(data).profit_factor == math.inf


def test_loss_streak_resets_on_win():
    m = compute_metrics([{"pnl": -1.0, "pnl_pct": -1.0}, {"pnl": -1.0, "pnl_pct": -1.0}, {"pnl": 2.0, "pnl_pct": 2.0}])
    assert m.consecutive_losses == 0


# --- Transition table ---

def test_every_state_has_transitions():
    assert set(TRANSITIONS) == set(DeploymentState)


@pytest.mark.asyncio
async def test_happy_path_to_mainnet(db):
    versions = VersionManager(db)
    v = await _to_mainnet_active(versions, "funding_signal", "1.0")
    assert v.deployment_state == DeploymentState.MAINNET_ACTIVE
    assert v.promoted_at is not None

    deployment = await versions.get_deployment(v.id, Environment.MAINNET)
    assert deployment.state == DeploymentState.MAINNET_ACTIVE
    assert not deployment.shadow_mode
    testnet = await versions.get_deployment(v.id, Environment.TESTNET)
    assert testnet.state == DeploymentState.TESTNET_VALIDATED


@pytest.mark.asyncio
async def test_invalid_transition_writes_nothing(db):
    versions = VersionManager(db)
    v = await versions.create_version("funding_signal", "1.0", "code")

    with pytest.raises(InvalidTransitionError, match="development -> testnet_active"):
        await versions.activate_on_testnet(v.id)

    after = await versions.get_version_by_id(v.id)
    assert after.deployment_state == DeploymentState.DEVELOPMENT
    assert await versions.get_deployment(v.id, Environment.TESTNET) is None


@pytest.mark.asyncio
async def test_duplicate_version_rejected(db):
    versions = VersionManager(db)
    await versions.create_version("funding_signal", "1.0", "code")
    with pytest.raises(DuplicateVersionError):
        await versions.create_version("funding_signal", "1.0", "other code")


@pytest.mark.asyncio
async def test_second_activation_deprecates_first(db):
    versions = VersionManager(db)
    v1 = await _to_mainnet_active(versions, "funding_signal", "1.0")
    v2 = await _to_mainnet_active(versions, "funding_signal", "2.0")

    active = await versions.get_versions_in_state(DeploymentState.MAINNET_ACTIVE)
    assert [v.id for v in active] == [v2.id]
    old = await versions.get_version_by_id(v1.id)
    assert old.deployment_state == DeploymentState.DEPRECATED
    assert (await versions.get_deployment(v1.id, Environment.MAINNET)).state == DeploymentState.DEPRECATED


@pytest.mark.asyncio
async def test_never_promoted_deprecated_cannot_reactivate(db):
    versions = VersionManager(db)
    v = await versions.create_version("funding_signal", "1.0", "code")
    await versions.deprecate_version(v.id)
    with pytest.raises(InvalidTransitionError):
        await versions.activate_on_mainnet(v.id)


@pytest.mark.asyncio
async def test_testnet_runtime_starts_at_activation(db):
    versions = VersionManager(db)
    v = await versions.create_version("funding_signal", "1.0", "code")
    await versions.queue_for_testnet(v.id)
    await _age_deployment(db, v.id, Environment.TESTNET, 100)
    await versions.activate_on_testnet(v.id)
    assert await versions.get_runtime_hours(v.id, Environment.TESTNET) < 1


@pytest.mark.asyncio
async def test_active_version_lookup(db):
    versions = VersionManager(db)
    v = await _to_mainnet_active(versions, "funding_signal", "1.0")
    found = await versions.get_active_version("funding_signal", Environment.MAINNET)
    assert found.id == v.id
    assert await versions.get_active_version("trend_follow", Environment.MAINNET) is None


@pytest.mark.asyncio
async def test_active_versions_per_environment(db):
    versions = VersionManager(db)
    live = await _to_mainnet_active(versions, "funding_signal", "1.0")
    shadow = await versions.create_version("funding_signal", "1.1", "code 1.1")
    await versions.queue_for_testnet(shadow.id)
    await versions.activate_on_testnet(shadow.id)
    await versions.validate_testnet(shadow.id)
    await versions.promote_to_mainnet_shadow(shadow.id)
    testing = await versions.create_version("trend_follow", "0.1", "trend code")
    await versions.queue_for_testnet(testing.id)
    await versions.activate_on_testnet(testing.id)

    mainnet = await versions.get_all_active_versions(Environment.MAINNET)
    assert [v.id for v in mainnet] == [live.id, shadow.id]
    testnet = await versions.get_all_active_versions(Environment.TESTNET)
    assert [v.id for v in testnet] == [testing.id]

    assert await versions.is_version_in_shadow_mode(shadow.id)
    assert not await versions.is_version_in_shadow_mode(live.id)
    assert not await versions.is_version_in_shadow_mode(testing.id)


# --- Promotion criteria (pure) ---

def test_promotion_passes_with_runtime_and_trades():
    evaluation = evaluate_promotion(_version(DeploymentState.TESTNET_ACTIVE), PromotionCriteria(), PASSING, 50)
    assert evaluation.passed
    assert evaluation.target_state == DeploymentState.TESTNET_VALIDATED
    assert evaluation.metrics.runtime_hours == 50


def test_too_few_trades_skips_performance_checks():
    bad = PerformanceMetrics(total_trades=5, sharpe_ratio=-3, max_drawdown=-60, win_rate=0, profit_factor=0)
    evaluation = evaluate_promotion(_version(DeploymentState.TESTNET_ACTIVE), PromotionCriteria(), bad, 50)
    assert not evaluation.passed
    assert evaluation.failed_criteria == ("Trades 5 < required 20",)


def test_short_runtime_fails():
    evaluation = evaluate_promotion(_version(DeploymentState.TESTNET_ACTIVE), PromotionCriteria(), PASSING, 30)
    assert not evaluation.passed
    assert any("Runtime 30.0h" in f for f in evaluation.failed_criteria)


def test_shadow_mode_hours_required():
    evaluation = evaluate_promotion(_version(DeploymentState.MAINNET_SHADOW), PromotionCriteria(), PASSING, 10)
    assert not evaluation.passed
    assert evaluation.target_state == DeploymentState.MAINNET_ACTIVE
    assert any("Shadow mode" in f for f in evaluation.failed_criteria)


def test_validated_has_no_runtime_requirement():
    evaluation = evaluate_promotion(_version(DeploymentState.TESTNET_VALIDATED), PromotionCriteria(), PASSING, 0)
    assert evaluation.passed
    assert evaluation.target_state == DeploymentState.MAINNET_SHADOW


def test_each_performance_limit_reported():
    weak = PerformanceMetrics(total_trades=30, sharpe_ratio=0.1, max_drawdown=-25, win_rate=30,
                              profit_factor=0.9, consecutive_losses=7)
    evaluation = evaluate_promotion(_version(DeploymentState.TESTNET_VALIDATED), PromotionCriteria(), weak, 0)
    assert len(evaluation.failed_criteria) == 5


def test_no_promotion_edge():
    evaluation = evaluate_promotion(_version(DeploymentState.DEVELOPMENT), PromotionCriteria(), PASSING, 100)
    assert not evaluation.passed
    assert evaluation.target_state == DeploymentState.DEVELOPMENT


def test_rollback_needs_minimum_trades():
    assert should_rollback(PromotionCriteria(), PerformanceMetrics(total_trades=5, max_drawdown=-80)) is None


def test_rollback_drawdown_limit():
    reason = should_rollback(PromotionCriteria(), PerformanceMetrics(total_trades=15, max_drawdown=-32))
    assert reason and "Drawdown" in reason
    assert should_rollback(PromotionCriteria(), PerformanceMetrics(total_trades=15, max_drawdown=-28)) is None


def test_rollback_loss_streak():
    reason = should_rollback(PromotionCriteria(), PerformanceMetrics(total_trades=15, consecutive_losses=8))
    assert reason and "Consecutive losses" in reason


def test_rollback_win_rate_floor_needs_20_trades():
    assert should_rollback(PromotionCriteria(), PerformanceMetrics(total_trades=15, win_rate=10)) is None
    reason = should_rollback(PromotionCriteria(), PerformanceMetrics(total_trades=25, win_rate=10))
    assert reason and "Win rate" in reason


# --- Promoter (persistent) ---

@pytest.mark.asyncio
async def test_promotion_cycle_promotes_ready_version(db):
    versions = VersionManager(db)
    promoter = StrategyPromoter(db, versions)
    v = await versions.create_version("funding_signal", "1.0", "code")
    await versions.queue_for_testnet(v.id)
    await versions.activate_on_testnet(v.id)
    await _age_deployment(db, v.id, Environment.TESTNET, 50)
    deployment = await versions.get_deployment(v.id, Environment.TESTNET)
    await versions.update_deployment_metrics(deployment.id, PASSING)

    evaluations = await promoter.run_promotion_cycle()

    assert len(evaluations) == 1
    assert evaluations[0].passed
    assert (await versions.get_version_by_id(v.id)).deployment_state == DeploymentState.TESTNET_VALIDATED
    logged = await promoter.get_recent_evaluations(version_id=v.id)
    assert logged[0]["passed"] is True
    assert logged[0]["target_state"] == "testnet_validated"


@pytest.mark.asyncio
async def test_promotion_cycle_without_auto_promote(db):
    versions = VersionManager(db)
    promoter = StrategyPromoter(db, versions)
    v = await versions.create_version("funding_signal", "1.0", "code")
    await versions.queue_for_testnet(v.id)
    await versions.activate_on_testnet(v.id)
    await _age_deployment(db, v.id, Environment.TESTNET, 50)
    deployment = await versions.get_deployment(v.id, Environment.TESTNET)
    await versions.update_deployment_metrics(deployment.id, PASSING)

    evaluations = await promoter.run_promotion_cycle(auto_promote=False)

    assert evaluations[0].passed
    assert (await versions.get_version_by_id(v.id)).deployment_state == DeploymentState.TESTNET_ACTIVE


@pytest.mark.asyncio
async def test_metrics_computed_from_trades(db):
    versions = VersionManager(db)
    promoter = StrategyPromoter(db, versions)
    v = await versions.create_version("funding_signal", "1.0", "code")
    for pnl in (10.0, -5.0, 20.0):
        await db.execute(
            "INSERT INTO trades (strategy_name, strategy_version_id, environment, symbol, pnl, pnl_pct) "
            "VALUES (?, ?, 'testnet', 'BTC', ?, ?)",
            ("funding_signal", v.id, pnl, pnl / 10),
        )
    await db.commit()

    metrics = await promoter.get_version_metrics(v.id, Environment.TESTNET)
    assert metrics.total_trades == 3
    assert metrics.winning_trades == 2
    assert (await promoter.get_version_metrics(v.id, Environment.MAINNET)).total_trades == 0


@pytest.mark.asyncio
async def test_sweep_continues_after_failure(db):
    versions = VersionManager(db)
    promoter = StrategyPromoter(db, versions)
    for name in ("funding_signal", "trend_follow"):
        v = await versions.create_version(name, "1.0", "code")
        await versions.queue_for_testnet(v.id)
        await versions.activate_on_testnet(v.id)

    original = promoter.evaluate_for_promotion

    async def flaky(version):
        if version.strategy_name == "funding_signal":
            raise RuntimeError("metrics store unavailable")
        return await original(version)

    promoter.evaluate_for_promotion = flaky
    evaluations = await promoter.run_promotion_cycle()
    assert [e.strategy_name for e in evaluations] == ["trend_follow"]


@pytest.mark.asyncio
async def test_promote_rejects_wrong_target(db):
    versions = VersionManager(db)
    promoter = StrategyPromoter(db, versions)
    v = await versions.create_version("funding_signal", "1.0", "code")
    await versions.queue_for_testnet(v.id)
    v = await versions.activate_on_testnet(v.id)
    with pytest.raises(InvalidPromotionTargetError):
        await promoter.promote(v, DeploymentState.MAINNET_ACTIVE)


@pytest.mark.asyncio
async def test_criteria_overrides(db):
    versions = VersionManager(db)
    promoter = StrategyPromoter(db, versions)

    await promoter.update_promotion_criteria("funding_signal", min_trades=30)
    assert (await promoter.get_promotion_criteria("funding_signal")).min_trades == 30
    assert (await promoter.get_promotion_criteria("trend_follow")).min_trades == 20

    await promoter.update_promotion_criteria(None, min_sharpe_ratio=1.0)
    assert (await promoter.get_promotion_criteria("trend_follow")).min_sharpe_ratio == 1.0
    # per-strategy row keeps its own copy
    assert (await promoter.get_promotion_criteria("funding_signal")).min_sharpe_ratio == 0.5

    with pytest.raises(ValueError):
        await promoter.update_promotion_criteria(None, min_vibes=3)


@pytest.mark.asyncio
async def test_override_changes_promotion_outcome(db):
    versions = VersionManager(db)
    promoter = StrategyPromoter(db, versions)
    await promoter.update_promotion_criteria("funding_signal", min_trades=30)
    v = await versions.create_version("funding_signal", "1.0", "code")
    await versions.queue_for_testnet(v.id)
    v = await versions.activate_on_testnet(v.id)
    await _age_deployment(db, v.id, Environment.TESTNET, 50)
    deployment = await versions.get_deployment(v.id, Environment.TESTNET)
    await versions.update_deployment_metrics(deployment.id, PASSING)

    evaluation = await promoter.evaluate_for_promotion(v)
    assert not evaluation.passed
    assert evaluation.failed_criteria == ("Trades 25 < required 30",)


@pytest.mark.asyncio
async def test_rollback_reactivates_previous_version(db):
    versions = VersionManager(db)
    promoter = StrategyPromoter(db, versions)
    v1 = await _to_mainnet_active(versions, "funding_signal", "1.0")
    v2 = await _to_mainnet_active(versions, "funding_signal", "2.0")
    deployment = await versions.get_deployment(v2.id, Environment.MAINNET)
    await versions.update_deployment_metrics(deployment.id, PerformanceMetrics(total_trades=15, max_drawdown=-32.0))

    events = await promoter.run_rollback_cycle()

    assert len(events) == 1
    event = events[0]
    assert event.from_version == "2.0"
    assert event.to_version == "1.0"
    assert event.automatic
    assert (await versions.get_version_by_id(v2.id)).deployment_state == DeploymentState.MAINNET_PAUSED
    assert (await versions.get_version_by_id(v1.id)).deployment_state == DeploymentState.MAINNET_ACTIVE

    history = await promoter.get_recent_rollbacks(strategy_name="funding_signal")
    assert history[0].to_version == "1.0"
    assert history[0].automatic


@pytest.mark.asyncio
async def test_rollback_without_previous_version(db):
    versions = VersionManager(db)
    promoter = StrategyPromoter(db, versions)
    v = await _to_mainnet_active(versions, "trend_follow", "1.0")

    event = await promoter.rollback(v, "operator request", automatic=False)

    assert event.to_version == "none"
    assert not event.automatic
    assert (await versions.get_version_by_id(v.id)).deployment_state == DeploymentState.MAINNET_PAUSED
    assert await versions.get_versions_in_state(DeploymentState.MAINNET_ACTIVE) == []


@pytest.mark.asyncio
async def test_healthy_version_not_rolled_back(db):
    versions = VersionManager(db)
    promoter = StrategyPromoter(db, versions)
    v = await _to_mainnet_active(versions, "trend_follow", "1.0")
    deployment = await versions.get_deployment(v.id, Environment.MAINNET)
    await versions.update_deployment_metrics(deployment.id, PASSING)

    assert await promoter.run_rollback_cycle() == []


def _reject_constant(name):
    raise ValueError(f"non-standard JSON constant {name}")


@pytest.mark.asyncio
async def test_stored_evaluation_is_strict_json_without_losses(db):
    versions = VersionManager(db)
    promoter = StrategyPromoter(db, versions)
    v = await versions.create_version("funding_signal", "1.0", "code")
    for pnl in (10.0, 20.0):
        await db.execute(
            "INSERT INTO trades (strategy_name, strategy_version_id, environment, symbol, pnl, pnl_pct) "
            "VALUES (?, ?, 'mainnet', 'BTC', ?, ?)",
            ("funding_signal", v.id, pnl, pnl / 10),
        )
    await db.commit()

    await promoter.evaluate_for_promotion(v)
    row = await db.fetchone("SELECT metrics FROM promotion_evaluations WHERE strategy_version_id = ?", (v.id,))
    stored = json.loads(row["metrics"], parse_constant=_reject_constant)
    assert stored["profit_factor"] is None
    assert stored["winning_trades"] == 2
