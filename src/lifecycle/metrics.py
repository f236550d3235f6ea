"""Per-version performance metrics computed from closed trades.

Pure math over a list of trade rows, in closing order. Sharpe is per trade
(mean / sample std of trade returns, not annualized). Drawdown is the worst
peak-to-trough of the compounded per-trade return curve, as a negative percent.
"""

from __future__ import annotations

import math
from dataclasses import asdict, dataclass, fields


@dataclass(frozen=True)
class PerformanceMetrics:
    total_trades: int = 0
    winning_trades: int = 0
    losing_trades: int = 0
    total_pnl: float = 0.0
    sharpe_ratio: float = 0.0
    max_drawdown: float = 0.0           # percent, <= 0
    profit_factor: float = 0.0
    win_rate: float = 0.0               # percent
    consecutive_losses: int = 0         # current losing streak
    runtime_hours: float = 0.0

    def to_dict(self) -> dict:
        """JSON-safe form. An infinite profit factor (no losing trades) becomes None."""
        data = asdict(self)
        if math.isinf(self.profit_factor):
            data["profit_factor"] = None
        return data

    @classmethod
    def from_dict(cls, data: dict) -> PerformanceMetrics:
        known = {f.name for f in fields(cls)}
        values = {k: v for k, v in data.items() if k in known}
        if "profit_factor" in values and values["profit_factor"] is None:
            values["profit_factor"] = math.inf
        return cls(**values)


def compute_metrics(trades: list[dict]) -> PerformanceMetrics:
    """Metrics for trades ordered by close time. Each row needs pnl and pnl_pct."""
    if not trades:
        return PerformanceMetrics()

    pnls = [t.get("pnl") or 0.0 for t in trades]
    returns = [(t.get("pnl_pct") or 0.0) / 100 for t in trades]

    total = len(pnls)
    wins = sum(1 for p in pnls if p > 0)
    gross_wins = sum(p for p in pnls if p > 0)
    gross_losses = abs(sum(p for p in pnls if p < 0))

    if gross_losses > 0:
        profit_factor = gross_wins / gross_losses
    else:
        profit_factor = float("inf") if gross_wins > 0 else 0.0

    sharpe = 0.0
    if len(returns) >= 2:
        mean_r = sum(returns) / len(returns)
        variance = sum((r - mean_r) ** 2 for r in returns) / (len(returns) - 1)
        std_r = math.sqrt(variance) if variance > 0 else 0
        sharpe = mean_r / std_r if std_r > 0 else 0.0

    equity = 1.0
    peak = 1.0
    max_dd = 0.0
    for r in returns:
        equity *= 1 + r
        if equity > peak:
            peak = equity
        dd = (equity - peak) / peak * 100 if peak > 0 else 0.0
        if dd < max_dd:
            max_dd = dd

    streak = 0
    for p in reversed(pnls):
        if p > 0:
            break
        streak += 1

    return PerformanceMetrics(
        total_trades=total,
        winning_trades=wins,
        losing_trades=total - wins,
        total_pnl=sum(pnls),
        sharpe_ratio=sharpe,
        max_drawdown=max_dd,
        profit_factor=profit_factor,
        win_rate=wins / total * 100,
        consecutive_losses=streak,
    )
