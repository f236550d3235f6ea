"""SQLite database — single source of truth for oversight and lifecycle state."""

from __future__ import annotations

from contextlib import asynccontextmanager
from typing import AsyncIterator

import aiosqlite
import structlog

log = structlog.get_logger()

SCHEMA = """
-- System-wide key/value state (values are JSON)
CREATE TABLE IF NOT EXISTS system_state (
    key TEXT PRIMARY KEY,
    value TEXT NOT NULL,
    updated_at TEXT DEFAULT (datetime('now'))
);

-- Cycle decisions (append-only audit log)
CREATE TABLE IF NOT EXISTS cycle_decisions (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    cycle_id TEXT NOT NULL UNIQUE,
    decided_at TEXT NOT NULL,
    inputs TEXT NOT NULL,             -- JSON: account snapshot + oracle outputs
    outputs TEXT NOT NULL,            -- JSON: CycleDecision
    reasoning TEXT,
    confidence REAL,
    risk_tier TEXT NOT NULL,
    should_pause INTEGER NOT NULL DEFAULT 0,
    leverage_cap REAL NOT NULL,
    fallbacks TEXT,                   -- JSON list of oracle roles that fell back to defaults
    anomalies TEXT,                   -- JSON map of role -> anomaly strings
    oracle_model TEXT,
    latency_ms INTEGER,
    tokens_used INTEGER DEFAULT 0,
    created_at TEXT DEFAULT (datetime('now'))
);
CREATE INDEX IF NOT EXISTS idx_cycle_decisions_time ON cycle_decisions(decided_at);

-- Allocation history (current row has effective_until NULL)
CREATE TABLE IF NOT EXISTS strategy_allocations (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    cycle_id TEXT,
    effective_from TEXT NOT NULL,
    effective_until TEXT,
    allocations TEXT NOT NULL,
    total_leverage_cap REAL,
    reasoning TEXT,
    created_at TEXT DEFAULT (datetime('now'))
);

-- Raw oracle exchanges (prompt, response, validation result)
CREATE TABLE IF NOT EXISTS oracle_evaluations (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    cycle_id TEXT NOT NULL,
    kind TEXT NOT NULL,               -- health / allocation / risk / conflict
    model TEXT,
    raw_output TEXT,
    valid INTEGER NOT NULL DEFAULT 0,
    used_default INTEGER NOT NULL DEFAULT 0,
    anomalies TEXT,
    latency_ms INTEGER,
    created_at TEXT DEFAULT (datetime('now'))
);
CREATE INDEX IF NOT EXISTS idx_oracle_evaluations_cycle ON oracle_evaluations(cycle_id);

-- Strategy versions
CREATE TABLE IF NOT EXISTS strategy_versions (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    strategy_name TEXT NOT NULL,
    version TEXT NOT NULL,
    deployment_state TEXT NOT NULL DEFAULT 'development' CHECK (deployment_state IN (
        'development', 'testnet_pending', 'testnet_active', 'testnet_validated',
        'mainnet_shadow', 'mainnet_active', 'mainnet_paused', 'deprecated'
    )),
    code_hash TEXT NOT NULL,
    parameters TEXT NOT NULL DEFAULT '{}',
    created_at TEXT DEFAULT (datetime('now')),
    updated_at TEXT DEFAULT (datetime('now')),
    promoted_at TEXT,
    UNIQUE(strategy_name, version)
);
CREATE INDEX IF NOT EXISTS idx_strategy_versions_name ON strategy_versions(strategy_name);
CREATE INDEX IF NOT EXISTS idx_strategy_versions_state ON strategy_versions(deployment_state);

-- Per-environment deployments
CREATE TABLE IF NOT EXISTS strategy_deployments (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    strategy_version_id INTEGER NOT NULL REFERENCES strategy_versions(id),
    environment TEXT NOT NULL CHECK (environment IN ('testnet', 'mainnet')),
    state TEXT NOT NULL,
    shadow_mode INTEGER NOT NULL DEFAULT 0,
    deployed_at TEXT DEFAULT (datetime('now')),
    last_evaluated_at TEXT,
    performance_metrics TEXT,
    UNIQUE(strategy_version_id, environment)
);
CREATE INDEX IF NOT EXISTS idx_strategy_deployments_state ON strategy_deployments(state);

-- Promotion criteria (strategy_name NULL = global default)
CREATE TABLE IF NOT EXISTS promotion_criteria (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    strategy_name TEXT UNIQUE,
    min_testnet_runtime_hours REAL NOT NULL DEFAULT 48,
    min_trades INTEGER NOT NULL DEFAULT 20,
    min_sharpe_ratio REAL NOT NULL DEFAULT 0.5,
    max_drawdown_pct REAL NOT NULL DEFAULT -20.0,
    min_win_rate_pct REAL NOT NULL DEFAULT 40.0,
    min_profit_factor REAL NOT NULL DEFAULT 1.2,
    max_consecutive_losses INTEGER NOT NULL DEFAULT 5,
    min_shadow_mode_hours REAL NOT NULL DEFAULT 24,
    created_at TEXT DEFAULT (datetime('now')),
    updated_at TEXT DEFAULT (datetime('now'))
);

-- Promotion evaluations (append-only)
CREATE TABLE IF NOT EXISTS promotion_evaluations (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    strategy_version_id INTEGER NOT NULL REFERENCES strategy_versions(id),
    current_state TEXT NOT NULL,
    target_state TEXT NOT NULL,
    metrics TEXT NOT NULL,
    criteria_used TEXT NOT NULL,
    passed INTEGER NOT NULL,
    failed_criteria TEXT,             -- JSON list
    reasoning TEXT,
    evaluated_at TEXT DEFAULT (datetime('now'))
);
CREATE INDEX IF NOT EXISTS idx_promotion_evals_version ON promotion_evaluations(strategy_version_id);

-- Rollback events (append-only)
CREATE TABLE IF NOT EXISTS rollback_events (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    strategy_name TEXT NOT NULL,
    from_version TEXT NOT NULL,
    to_version TEXT NOT NULL,
    reason TEXT NOT NULL,
    automatic INTEGER NOT NULL DEFAULT 0,
    triggered_at TEXT DEFAULT (datetime('now'))
);
CREATE INDEX IF NOT EXISTS idx_rollback_events_strategy ON rollback_events(strategy_name);

-- Closed trades attributed to a strategy version (written by the execution side)
CREATE TABLE IF NOT EXISTS trades (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    strategy_name TEXT NOT NULL,
    strategy_version_id INTEGER REFERENCES strategy_versions(id),
    environment TEXT NOT NULL DEFAULT 'mainnet',
    symbol TEXT NOT NULL,
    side TEXT NOT NULL DEFAULT 'long',
    pnl REAL,
    pnl_pct REAL,
    opened_at TEXT,
    closed_at TEXT DEFAULT (datetime('now'))
);
CREATE INDEX IF NOT EXISTS idx_trades_version ON trades(strategy_version_id, environment);

-- AI token usage tracking
CREATE TABLE IF NOT EXISTS token_usage (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    model TEXT NOT NULL,
    input_tokens INTEGER NOT NULL,
    output_tokens INTEGER NOT NULL,
    cost_usd REAL NOT NULL,
    purpose TEXT,
    created_at TEXT DEFAULT (datetime('now'))
);

INSERT INTO promotion_criteria (strategy_name)
    SELECT NULL WHERE NOT EXISTS (SELECT 1 FROM promotion_criteria WHERE strategy_name IS NULL);
"""

PRAGMAS = ("PRAGMA journal_mode=WAL", "PRAGMA foreign_keys=ON", "PRAGMA busy_timeout=5000")


class Database:
    """Async SQLite handle shared by every component.

    Rows come back as plain dicts. Writes are grouped with transaction();
    outside one, callers commit explicitly.
    """

    def __init__(self, db_path: str):
        self._path = db_path
        self._conn: aiosqlite.Connection | None = None
        self._tx_depth = 0

    @property
    def path(self) -> str:
        return self._path

    @property
    def conn(self) -> aiosqlite.Connection:
        if self._conn is None:
            raise RuntimeError("Database not connected")
        return self._conn

    @property
    def in_transaction(self) -> bool:
        return self._tx_depth > 0

    async def connect(self) -> None:
        """Open the file and create any missing tables. Safe against an existing database."""
        conn = await aiosqlite.connect(self._path)
        conn.row_factory = aiosqlite.Row
        for pragma in PRAGMAS:
            await conn.execute(pragma)
        await conn.executescript(SCHEMA)
        await conn.commit()
        self._conn = conn
        log.info("database.connected", path=self._path)

    async def close(self) -> None:
        if self._conn is None:
            return
        conn, self._conn = self._conn, None
        await conn.commit()
        await conn.close()
        log.info("database.closed", path=self._path)

    async def execute(self, sql: str, params: tuple = ()) -> aiosqlite.Cursor:
        return await self.conn.execute(sql, params)

    async def fetchone(self, sql: str, params: tuple = ()) -> dict | None:
        async with self.conn.execute(sql, params) as cursor:
            row = await cursor.fetchone()
        return None if row is None else dict(row)

    async def fetchall(self, sql: str, params: tuple = ()) -> list[dict]:
        async with self.conn.execute(sql, params) as cursor:
            return [dict(row) for row in await cursor.fetchall()]

    async def commit(self) -> None:
        """Commit, unless an enclosing transaction() owns the commit."""
        if not self.in_transaction:
            await self.conn.commit()

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[Database]:
        """Group writes: commit once on success, roll back everything on any exception.

        Nested blocks join the outermost one. commit() calls made inside are deferred.
        """
        outermost = not self.in_transaction
        if outermost:
            await self.conn.commit()
        self._tx_depth += 1
        try:
            yield self
        except BaseException:
            if outermost:
                await self.conn.rollback()
                log.warning("database.rolled_back")
            raise
        finally:
            self._tx_depth -= 1
        if outermost:
            await self.conn.commit()
