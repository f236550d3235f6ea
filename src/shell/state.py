"""System State — JSON key/value store for process-wide flags and the current allocation.

Writes never commit on their own. Callers either commit explicitly or run
inside Database.transaction() so a cycle's updates land together.
"""

from __future__ import annotations

import json
from dataclasses import asdict, fields
from typing import Any

import structlog

from src.shell.contract import RiskParameters
from src.shell.database import Database
from src.utils.timeutil import now_str, parse_ts, to_str

log = structlog.get_logger()

STATUS_RUNNING = "RUNNING"
STATUS_PAUSED = "PAUSED"


def equal_split(strategies: list[str]) -> dict[str, float]:
    if not strategies:
        return {}
    share = 100.0 / len(strategies)
    return {name: share for name in strategies}


def risk_parameters_to_dict(params: RiskParameters) -> dict:
    data = asdict(params)
    data["updated_at"] = to_str(params.updated_at) if params.updated_at else None
    return data


def risk_parameters_from_dict(data: dict) -> RiskParameters:
    known = {f.name for f in fields(RiskParameters)}
    kwargs = {k: v for k, v in data.items() if k in known}
    if "updated_at" in kwargs:
        kwargs["updated_at"] = parse_ts(kwargs["updated_at"])
    return RiskParameters(**kwargs)


class SystemState:
    """Typed accessors over the system_state table."""

    def __init__(self, db: Database) -> None:
        self._db = db

    async def initialize(self, strategies: list[str]) -> None:
        """Seed defaults for keys that do not exist yet."""
        defaults: dict[str, Any] = {
            "trading_enabled": True,
            "system_status": STATUS_RUNNING,
            "pause_reason": None,
            "last_cycle_at": None,
            "last_cycle_error": None,
            "current_allocations": equal_split(strategies),
            "peak_equity": 0.0,
            "risk_parameters": risk_parameters_to_dict(RiskParameters()),
            "auto_promotion_enabled": True,
        }
        for key, value in defaults.items():
            await self._db.execute(
                "INSERT OR IGNORE INTO system_state (key, value) VALUES (?, ?)",
                (key, json.dumps(value)),
            )
        await self._db.commit()

    async def get(self, key: str, default: Any = None) -> Any:
        row = await self._db.fetchone("SELECT value FROM system_state WHERE key = ?", (key,))
        if row is None:
            return default
        return json.loads(row["value"])

    async def set(self, key: str, value: Any) -> None:
        await self._db.execute(
            """INSERT INTO system_state (key, value, updated_at) VALUES (?, ?, ?)
               ON CONFLICT(key) DO UPDATE SET value = excluded.value, updated_at = excluded.updated_at""",
            (key, json.dumps(value), now_str()),
        )

    async def commit(self) -> None:
        await self._db.commit()

    async def get_all(self) -> dict[str, Any]:
        rows = await self._db.fetchall("SELECT key, value FROM system_state ORDER BY key")
        return {r["key"]: json.loads(r["value"]) for r in rows}

    async def is_trading_enabled(self) -> bool:
        return bool(await self.get("trading_enabled", True))

    async def get_allocations(self) -> dict[str, float]:
        return await self.get("current_allocations", {}) or {}

    async def get_risk_parameters(self) -> RiskParameters:
        data = await self.get("risk_parameters")
        if not data:
            return RiskParameters()
        return risk_parameters_from_dict(data)

    async def set_risk_parameters(self, params: RiskParameters) -> None:
        await self.set("risk_parameters", risk_parameters_to_dict(params))

    async def update_peak_equity(self, equity: float) -> float:
        """Raise the stored high-water mark if equity exceeds it. Returns the peak."""
        peak = float(await self.get("peak_equity", 0.0) or 0.0)
        if equity > peak:
            peak = equity
            await self.set("peak_equity", peak)
            await self._db.commit()
        return peak

    async def pause(self, reason: str) -> None:
        await self.set("trading_enabled", False)
        await self.set("system_status", STATUS_PAUSED)
        await self.set("pause_reason", reason)
        log.warning("state.paused", reason=reason)

    async def resume(self) -> None:
        await self.set("trading_enabled", True)
        await self.set("system_status", STATUS_RUNNING)
        await self.set("pause_reason", None)
        log.info("state.resumed")
