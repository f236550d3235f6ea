"""Decision engine: merging oracle outputs into one cycle decision."""

import pytest

from src.oversight.decision import apply_risk_tier, cap_allocations, decide, normalize_allocations
from src.oversight.safety import enforce_safety_constraints
from src.oversight.validator import parse_output
from src.shell.contract import AccountSnapshot, OracleKind, Position, RiskTier


def _account(*symbols):
    positions = tuple(
        Position(symbol=s, strategy="funding_signal", side="long", size=1.0, entry_price=100.0, mark_price=100.0)
        for s in symbols
    )
    return AccountSnapshot(equity=10_000, peak_equity=10_500, margin_used=0.0, unrealized_pnl=0.0,
                           positions=positions)


def _decide(health, allocation, risk, conflict, strategies, account=None, actions=None, eligible=None):
    return decide(
        parse_output(OracleKind.HEALTH, health),
        parse_output(OracleKind.ALLOCATION, allocation),
        enforce_safety_constraints(parse_output(OracleKind.RISK, risk)),
        parse_output(OracleKind.CONFLICT, conflict),
        account or _account(),
        strategies,
        actions,
        eligible=eligible,
    )


# --- Allocation math ---

def test_normalize_rescales_to_100():
    result = normalize_allocations({"a": 30, "b": 30}, ["a", "b"])
    assert result == pytest.approx({"a": 50, "b": 50})


def test_normalize_zero_sum_splits_equally(strategies):
    result = normalize_allocations({name: 0 for name in strategies}, strategies)
    assert result == pytest.approx({name: 25 for name in strategies})


def test_normalize_drops_unknown_and_fills_missing():
    result = normalize_allocations({"a": 60, "ghost": 500}, ["a", "b"])
    assert result == pytest.approx({"a": 100, "b": 0})


def test_cap_redistributes_proportionally():
    result = cap_allocations({"a": 80, "b": 10, "c": 10, "d": 0})
    assert result == pytest.approx({"a": 50, "b": 25, "c": 25, "d": 0})
    assert sum(result.values()) == pytest.approx(100)


def test_cap_two_strategies_both_at_cap():
    result = cap_allocations({"a": 90, "b": 10})
    assert result == pytest.approx({"a": 50, "b": 50})


def test_cap_single_strategy_leaves_remainder_unallocated():
    assert cap_allocations({"a": 100}) == {"a": 50}


def test_cap_never_funds_zero_entries():
    result = cap_allocations({"a": 100, "b": 0, "c": 0, "d": 0})
    assert result == {"a": 50, "b": 0, "c": 0, "d": 0}


ABCD = ["a", "b", "c", "d"]


@pytest.mark.parametrize("resolved, expected_total", [
    ({}, 100),
    ({"a": 0, "b": 0, "c": 0, "d": 0}, 100),
    ({"a": 100}, 50),
    ({"a": 100, "b": 0.5}, 100),
    ({"a": 90, "b": 90, "c": 0, "d": 0}, 100),
    ({"a": 70, "b": 20, "c": 10, "ghost": 400}, 100),
    ({"a": 1, "b": 1, "c": 1, "d": 1}, 100),
    ({"a": 60, "b": 60, "c": 60, "d": 0}, 100),
    ({"a": -5, "b": 30}, 50),
    ({"a": 0.001, "b": 99.999}, 100),
])
def test_allocation_sum_and_bounds(resolved, expected_total):
    result = cap_allocations(normalize_allocations(resolved, ABCD))

    assert set(result) == set(ABCD)
    assert sum(result.values()) == pytest.approx(expected_total, abs=0.01)
    assert all(0 <= v <= 50 + 1e-9 for v in result.values())
    if any(resolved.get(name, 0) > 0 for name in ABCD):
        for name in ABCD:
            if resolved.get(name, 0) <= 0:
                assert result[name] == 0


def test_normalize_holds_ineligible_at_zero():
    result = normalize_allocations({"a": 10, "b": 90}, ABCD, eligible={"a", "c"})
    assert result == pytest.approx({"a": 100, "b": 0, "c": 0, "d": 0})


def test_normalize_zero_sum_splits_over_eligible_only():
    result = normalize_allocations({}, ABCD, eligible={"b", "d"})
    assert result == pytest.approx({"a": 0, "b": 50, "c": 0, "d": 50})


def test_normalize_nothing_eligible():
    assert normalize_allocations({"a": 40}, ABCD, eligible=set()) == {name: 0.0 for name in ABCD}


def test_reduced_tier_scales_by_070():
    result = apply_risk_tier({"a": 50, "b": 50}, RiskTier.REDUCED)
    assert result == pytest.approx({"a": 35, "b": 35})


def test_minimum_tier_keeps_only_top_strategy():
    result = apply_risk_tier({"a": 20, "b": 50, "c": 30}, RiskTier.MINIMUM)
    assert result == {"a": 0.0, "b": 30.0, "c": 0.0}


def test_minimum_tier_tie_goes_to_first():
    result = apply_risk_tier({"a": 25, "b": 25}, RiskTier.MINIMUM)
    assert result == {"a": 30.0, "b": 0.0}


def test_minimum_tier_with_nothing_allocated():
    assert apply_risk_tier({"a": 0.0, "b": 0.0}, RiskTier.MINIMUM) == {"a": 0.0, "b": 0.0}


# --- decide() ---

def test_normal_cycle(health_payload, allocation_payload, risk_payload, conflict_payload, strategies):
    decision = _decide(health_payload, allocation_payload, risk_payload, conflict_payload, strategies)
    assert not decision.should_pause
    assert decision.risk_tier == RiskTier.NORMAL
    assert decision.allocations == pytest.approx(
        {"funding_signal": 40, "momentum_breakout": 30, "mean_reversion": 20, "trend_follow": 10})
    assert decision.leverage_cap == 10
    assert decision.position_size_scalar == 1.0
    assert decision.avg_confidence == pytest.approx((0.8 + 0.7 + 0.75 + 0.9) / 4)
    assert "System Health: OK" in decision.reasoning


def test_pause_short_circuits(health_payload, allocation_payload, risk_payload, conflict_payload, strategies):
    health_payload.update(overall_health="CRITICAL", should_pause=True, pause_reason="Drawdown breach",
                          risk_level="MINIMUM")
    decision = _decide(health_payload, allocation_payload, risk_payload, conflict_payload, strategies,
                       account=_account("BTC", "ETH", "BTC"))
    assert decision.should_pause
    assert decision.pause_reason == "Drawdown breach"
    assert decision.leverage_cap == 0
    assert decision.risk_tier == RiskTier.MINIMUM
    assert set(decision.allocations.values()) == {0.0}
    assert decision.positions_to_close == ("BTC", "ETH")
    assert set(decision.strategies_to_disable) == set(strategies)


def test_pause_without_reason_gets_generic_reason(health_payload, allocation_payload, risk_payload,
                                                  conflict_payload, strategies):
    health_payload.update(should_pause=True, pause_reason=None)
    decision = _decide(health_payload, allocation_payload, risk_payload, conflict_payload, strategies)
    assert decision.pause_reason


def test_concentrated_allocation_is_capped(health_payload, allocation_payload, risk_payload,
                                           conflict_payload, strategies):
    conflict_payload["resolved_allocations"] = {"funding_signal": 100}
    decision = _decide(health_payload, allocation_payload, risk_payload, conflict_payload, strategies)
    assert decision.allocations == {"funding_signal": 50, "momentum_breakout": 0, "mean_reversion": 0,
                                    "trend_follow": 0}


def test_reduced_tier_decision(health_payload, allocation_payload, risk_payload, conflict_payload, strategies):
    health_payload.update(overall_health="DEGRADED", risk_level="REDUCED")
    decision = _decide(health_payload, allocation_payload, risk_payload, conflict_payload, strategies)
    assert sum(decision.allocations.values()) == pytest.approx(70)
    assert decision.leverage_cap == 6


def test_minimum_tier_decision(health_payload, allocation_payload, risk_payload, conflict_payload, strategies):
    health_payload.update(overall_health="DEGRADED", risk_level="MINIMUM")
    decision = _decide(health_payload, allocation_payload, risk_payload, conflict_payload, strategies)
    assert decision.allocations["funding_signal"] == 30
    assert sum(decision.allocations.values()) == pytest.approx(30)
    assert decision.leverage_cap == 3


def test_leverage_cap_comes_from_enforced_risk(health_payload, allocation_payload, risk_payload,
                                               conflict_payload, strategies):
    risk_payload["leverage_caps"]["normal"] = 40
    conflict_payload["leverage_cap"] = 40
    decision = _decide(health_payload, allocation_payload, risk_payload, conflict_payload, strategies)
    assert decision.leverage_cap == 15


def test_disable_and_close_passthrough(health_payload, allocation_payload, risk_payload,
                                       conflict_payload, strategies):
    allocation_payload["disable_strategies"] = ["trend_follow"]
    conflict_payload["position_actions"] = [
        {"symbol": "ETH", "action": "CLOSE", "reasoning": "opposing signals"},
        {"symbol": "BTC", "action": "KEEP"},
        {"symbol": "ETH", "action": "CLOSE"},
    ]
    decision = _decide(health_payload, allocation_payload, risk_payload, conflict_payload, strategies)
    assert decision.strategies_to_disable == ("trend_follow",)
    assert decision.positions_to_close == ("ETH",)
    assert decision.allocations["trend_follow"] == 0
    assert sum(decision.allocations.values()) == pytest.approx(100)


def test_constraint_actions_in_reasoning(health_payload, allocation_payload, risk_payload,
                                         conflict_payload, strategies):
    decision = _decide(health_payload, allocation_payload, risk_payload, conflict_payload, strategies,
                       actions=["leverage_normal 20 -> 15"])
    assert "Constraints: leverage_normal 20 -> 15" in decision.reasoning


def test_conflict_cannot_fund_ineligible_strategies(health_payload, allocation_payload, risk_payload,
                                                    conflict_payload, strategies):
    decision = _decide(health_payload, allocation_payload, risk_payload, conflict_payload, strategies,
                       eligible={"funding_signal", "mean_reversion"})
    assert decision.allocations["momentum_breakout"] == 0
    assert decision.allocations["trend_follow"] == 0
    # 40 / 20 rescaled to 66.7 / 33.3, then capped at 50 with the excess to mean_reversion
    assert decision.allocations["funding_signal"] == pytest.approx(50)
    assert decision.allocations["mean_reversion"] == pytest.approx(50)


def test_single_eligible_strategy_is_capped_without_spillover(health_payload, allocation_payload, risk_payload,
                                                              conflict_payload, strategies):
    decision = _decide(health_payload, allocation_payload, risk_payload, conflict_payload, strategies,
                       eligible={"funding_signal"})
    assert decision.allocations == {"funding_signal": 50, "momentum_breakout": 0, "mean_reversion": 0,
                                    "trend_follow": 0}
