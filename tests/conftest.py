import os
import tempfile

import pytest
import pytest_asyncio

STRATEGIES = ["funding_signal", "momentum_breakout", "mean_reversion", "trend_follow"]


@pytest_asyncio.fixture
async def db():
    from src.shell.database import Database
    with tempfile.NamedTemporaryFile(suffix=".db", delete=False) as f:
        db_path = f.name

    database = Database(db_path)
    await database.connect()
    try:
        yield database
    finally:
        await database.close()
        for suffix in ("", "-wal", "-shm"):
            if os.path.exists(db_path + suffix):
                os.unlink(db_path + suffix)


@pytest.fixture
def strategies():
    return list(STRATEGIES)


@pytest.fixture
def health_payload():
    return {
        "overall_health": "OK",
        "should_pause": False,
        "pause_reason": None,
        "risk_level": "NORMAL",
        "anomalies_detected": [],
        "recommendations": ["Keep current allocation"],
        "confidence": 0.8,
    }


@pytest.fixture
def allocation_payload():
    return {
        "strategy_assessments": {
            name: {"health": "HEALTHY", "regime_fit": "GOOD", "recommended_allocation": 25, "reasoning": "steady"}
            for name in STRATEGIES
        },
        "disable_strategies": [],
        "allocation_rationale": "Balanced allocation",
        "market_regime_assessment": "Ranging",
        "confidence": 0.7,
    }


@pytest.fixture
def risk_payload():
    return {
        "risk_thresholds": {
            "drawdown_warning": -8, "drawdown_critical": -12, "drawdown_pause": -18,
            "daily_loss_pause": -10, "single_trade_loss_alert": -5,
        },
        "leverage_caps": {"normal": 10, "reduced": 6, "minimum": 3},
        "exposure_limits": {"max_total_exposure": 0.7, "max_single_position": 0.2, "max_correlated_exposure": 0.4},
        "volatility_adjustments": {"position_size_scalar": 1.0, "hold_time_reduction": False, "tighten_stops": False},
        "immediate_actions": [],
        "current_risk_score": 35,
        "risk_trend": "STABLE",
        "market_stress_level": "LOW",
        "reasoning": "Calm market",
        "confidence": 0.75,
    }


@pytest.fixture
def conflict_payload():
    return {
        "resolved_allocations": {"funding_signal": 40, "momentum_breakout": 30, "mean_reversion": 20, "trend_follow": 10},
        "signal_resolutions": [],
        "position_actions": [],
        "leverage_cap": 8,
        "adjustments_made": [],
        "confidence": 0.9,
    }
