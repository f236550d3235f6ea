"""Strategy Version Manager — owns strategy_versions and strategy_deployments.

Every state change goes through TRANSITIONS. A transition that is not in the
table raises InvalidTransitionError before anything is written, and each
public operation runs in one transaction so it lands whole or not at all.
"""

from __future__ import annotations

import hashlib
import json
from dataclasses import dataclass, field
from datetime import datetime

import aiosqlite
import structlog

from src.lifecycle.errors import DuplicateVersionError, InvalidTransitionError, VersionNotFoundError
from src.lifecycle.metrics import PerformanceMetrics
from src.shell.contract import DeploymentState, Environment
from src.shell.database import Database
from src.utils.timeutil import hours_since, now_str, parse_ts

log = structlog.get_logger()

S = DeploymentState

TRANSITIONS: dict[DeploymentState, frozenset[DeploymentState]] = {
    S.DEVELOPMENT: frozenset({S.TESTNET_PENDING, S.DEPRECATED}),
    S.TESTNET_PENDING: frozenset({S.TESTNET_ACTIVE, S.DEPRECATED}),
    S.TESTNET_ACTIVE: frozenset({S.TESTNET_VALIDATED, S.DEPRECATED}),
    S.TESTNET_VALIDATED: frozenset({S.MAINNET_SHADOW, S.DEPRECATED}),
    S.MAINNET_SHADOW: frozenset({S.MAINNET_ACTIVE, S.DEPRECATED}),
    S.MAINNET_ACTIVE: frozenset({S.MAINNET_PAUSED, S.DEPRECATED}),
    S.MAINNET_PAUSED: frozenset({S.MAINNET_ACTIVE, S.DEPRECATED}),
    # Rollback may reactivate a previously promoted version.
    S.DEPRECATED: frozenset({S.MAINNET_ACTIVE}),
}

# Edges the promoter may take automatically: current state -> next state
PROMOTION_TARGETS: dict[DeploymentState, DeploymentState] = {
    S.TESTNET_ACTIVE: S.TESTNET_VALIDATED,
    S.TESTNET_VALIDATED: S.MAINNET_SHADOW,
    S.MAINNET_SHADOW: S.MAINNET_ACTIVE,
}

AWAITING_PROMOTION = tuple(PROMOTION_TARGETS)

ACTIVE_STATES: dict[Environment, tuple[DeploymentState, ...]] = {
    Environment.MAINNET: (S.MAINNET_ACTIVE, S.MAINNET_SHADOW),
    Environment.TESTNET: (S.TESTNET_ACTIVE,),
}


def environment_for_state(state: DeploymentState) -> Environment:
    if state.value.startswith("testnet"):
        return Environment.TESTNET
    return Environment.MAINNET


def code_hash(code: str) -> str:
    return hashlib.sha256(code.encode("utf-8")).hexdigest()


@dataclass(frozen=True)
class StrategyVersion:
    id: int
    strategy_name: str
    version: str
    deployment_state: DeploymentState
    code_hash: str
    parameters: dict = field(default_factory=dict)
    created_at: datetime | None = None
    updated_at: datetime | None = None
    promoted_at: datetime | None = None

    @property
    def label(self) -> str:
        return f"{self.strategy_name} v{self.version}"

    @classmethod
    def from_row(cls, row: dict) -> StrategyVersion:
        return cls(
            id=row["id"],
            strategy_name=row["strategy_name"],
            version=row["version"],
            deployment_state=DeploymentState(row["deployment_state"]),
            code_hash=row["code_hash"],
            parameters=json.loads(row["parameters"] or "{}"),
            created_at=parse_ts(row["created_at"]),
            updated_at=parse_ts(row["updated_at"]),
            promoted_at=parse_ts(row["promoted_at"]),
        )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "strategy_name": self.strategy_name,
            "version": self.version,
            "deployment_state": self.deployment_state.value,
            "code_hash": self.code_hash,
            "parameters": self.parameters,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
            "promoted_at": self.promoted_at.isoformat() if self.promoted_at else None,
        }


@dataclass(frozen=True)
class StrategyDeployment:
    id: int
    strategy_version_id: int
    environment: Environment
    state: DeploymentState
    shadow_mode: bool
    deployed_at: str | None
    last_evaluated_at: str | None = None
    performance_metrics: PerformanceMetrics | None = None

    @classmethod
    def from_row(cls, row: dict) -> StrategyDeployment:
        metrics = row.get("performance_metrics")
        return cls(
            id=row["id"],
            strategy_version_id=row["strategy_version_id"],
            environment=Environment(row["environment"]),
            state=DeploymentState(row["state"]),
            shadow_mode=bool(row["shadow_mode"]),
            deployed_at=row["deployed_at"],
            last_evaluated_at=row["last_evaluated_at"],
            performance_metrics=PerformanceMetrics.from_dict(json.loads(metrics)) if metrics else None,
        )


_VERSION_COLUMNS = "id, strategy_name, version, deployment_state, code_hash, parameters, created_at, updated_at, promoted_at"


class VersionManager:
    """CRUD and state transitions for strategy versions and their deployments."""

    def __init__(self, db: Database) -> None:
        self._db = db

    # --- Versions ---

    async def create_version(
        self, strategy_name: str, version: str, code: str, parameters: dict | None = None,
    ) -> StrategyVersion:
        """Register a new version in `development`."""
        try:
            cursor = await self._db.execute(
                """INSERT INTO strategy_versions (strategy_name, version, deployment_state, code_hash, parameters)
                   VALUES (?, ?, ?, ?, ?)""",
                (strategy_name, version, S.DEVELOPMENT.value, code_hash(code), json.dumps(parameters or {})),
            )
        except aiosqlite.IntegrityError as e:
            raise DuplicateVersionError(strategy_name, version) from e
        await self._db.commit()
        log.info("lifecycle.version_created", strategy=strategy_name, version=version)
        return await self.require_version(cursor.lastrowid)

    async def get_version(self, strategy_name: str, version: str) -> StrategyVersion | None:
        row = await self._db.fetchone(
            f"SELECT {_VERSION_COLUMNS} FROM strategy_versions WHERE strategy_name = ? AND version = ?",
            (strategy_name, version),
        )
        return StrategyVersion.from_row(row) if row else None

    async def get_version_by_id(self, version_id: int) -> StrategyVersion | None:
        row = await self._db.fetchone(
            f"SELECT {_VERSION_COLUMNS} FROM strategy_versions WHERE id = ?", (version_id,),
        )
        return StrategyVersion.from_row(row) if row else None

    async def require_version(self, version_id: int) -> StrategyVersion:
        version = await self.get_version_by_id(version_id)
        if version is None:
            raise VersionNotFoundError(version_id)
        return version

    async def list_versions(self, strategy_name: str | None = None) -> list[StrategyVersion]:
        if strategy_name:
            rows = await self._db.fetchall(
                f"SELECT {_VERSION_COLUMNS} FROM strategy_versions WHERE strategy_name = ? ORDER BY id",
                (strategy_name,),
            )
        else:
            rows = await self._db.fetchall(
                f"SELECT {_VERSION_COLUMNS} FROM strategy_versions ORDER BY strategy_name, id",
            )
        return [StrategyVersion.from_row(r) for r in rows]

    async def get_versions_in_state(self, state: DeploymentState) -> list[StrategyVersion]:
        rows = await self._db.fetchall(
            f"SELECT {_VERSION_COLUMNS} FROM strategy_versions WHERE deployment_state = ? ORDER BY strategy_name, id",
            (state.value,),
        )
        return [StrategyVersion.from_row(r) for r in rows]

    async def get_active_version(self, strategy_name: str, environment: Environment) -> StrategyVersion | None:
        states = [s.value for s in ACTIVE_STATES[environment]]
        placeholders = ", ".join("?" for _ in states)
        row = await self._db.fetchone(
            f"""SELECT sv.id, sv.strategy_name, sv.version, sv.deployment_state, sv.code_hash,
                       sv.parameters, sv.created_at, sv.updated_at, sv.promoted_at
                FROM strategy_versions sv
                JOIN strategy_deployments sd ON sv.id = sd.strategy_version_id
                WHERE sv.strategy_name = ? AND sd.environment = ? AND sd.state IN ({placeholders})
                ORDER BY sv.created_at DESC, sv.id DESC LIMIT 1""",
            (strategy_name, environment.value, *states),
        )
        return StrategyVersion.from_row(row) if row else None

    async def get_all_active_versions(self, environment: Environment) -> list[StrategyVersion]:
        states = [s.value for s in ACTIVE_STATES[environment]]
        placeholders = ", ".join("?" for _ in states)
        rows = await self._db.fetchall(
            f"""SELECT sv.id, sv.strategy_name, sv.version, sv.deployment_state, sv.code_hash,
                       sv.parameters, sv.created_at, sv.updated_at, sv.promoted_at
                FROM strategy_versions sv
                JOIN strategy_deployments sd ON sv.id = sd.strategy_version_id
                WHERE sd.environment = ? AND sd.state IN ({placeholders})
                ORDER BY sv.strategy_name, sv.id""",
            (environment.value, *states),
        )
        return [StrategyVersion.from_row(r) for r in rows]

    async def get_versions_awaiting_promotion(self) -> list[StrategyVersion]:
        states = [s.value for s in AWAITING_PROMOTION]
        placeholders = ", ".join("?" for _ in states)
        rows = await self._db.fetchall(
            f"""SELECT {_VERSION_COLUMNS} FROM strategy_versions
                WHERE deployment_state IN ({placeholders})
                ORDER BY strategy_name, created_at DESC, id DESC""",
            tuple(states),
        )
        return [StrategyVersion.from_row(r) for r in rows]

    def check_transition(self, version: StrategyVersion, target: DeploymentState) -> None:
        if target not in TRANSITIONS[version.deployment_state]:
            raise InvalidTransitionError(version.label, version.deployment_state.value, target.value)
        if (version.deployment_state == S.DEPRECATED and target == S.MAINNET_ACTIVE
                and version.promoted_at is None):
            raise InvalidTransitionError(version.label, version.deployment_state.value, target.value)

    async def _set_state(self, version: StrategyVersion, target: DeploymentState) -> None:
        self.check_transition(version, target)
        now = now_str()
        if target == S.MAINNET_ACTIVE:
            await self._db.execute(
                "UPDATE strategy_versions SET deployment_state = ?, updated_at = ?, promoted_at = ? WHERE id = ?",
                (target.value, now, now, version.id),
            )
        else:
            await self._db.execute(
                "UPDATE strategy_versions SET deployment_state = ?, updated_at = ? WHERE id = ?",
                (target.value, now, version.id),
            )
        log.info("lifecycle.transition", strategy=version.strategy_name, version=version.version,
                 from_state=version.deployment_state.value, to_state=target.value)

    # --- Deployments ---

    async def create_deployment(
        self, version_id: int, environment: Environment, state: DeploymentState,
        shadow_mode: bool = False, reset_deployed_at: bool = False,
    ) -> StrategyDeployment:
        """Insert or update the (version, environment) deployment row."""
        deployed_clause = ", deployed_at = excluded.deployed_at" if reset_deployed_at else ""
        await self._db.execute(
            f"""INSERT INTO strategy_deployments (strategy_version_id, environment, state, shadow_mode, deployed_at)
                VALUES (?, ?, ?, ?, ?)
                ON CONFLICT(strategy_version_id, environment)
                DO UPDATE SET state = excluded.state, shadow_mode = excluded.shadow_mode{deployed_clause}""",
            (version_id, environment.value, state.value, int(shadow_mode), now_str()),
        )
        await self._db.commit()
        return await self.get_deployment(version_id, environment)

    async def get_deployment(self, version_id: int, environment: Environment) -> StrategyDeployment | None:
        row = await self._db.fetchone(
            """SELECT id, strategy_version_id, environment, state, shadow_mode, deployed_at,
                      last_evaluated_at, performance_metrics
               FROM strategy_deployments WHERE strategy_version_id = ? AND environment = ?""",
            (version_id, environment.value),
        )
        return StrategyDeployment.from_row(row) if row else None

    async def update_deployment_state(
        self, deployment_id: int, state: DeploymentState, shadow_mode: bool | None = None,
    ) -> None:
        if shadow_mode is None:
            await self._db.execute(
                "UPDATE strategy_deployments SET state = ? WHERE id = ?", (state.value, deployment_id),
            )
        else:
            await self._db.execute(
                "UPDATE strategy_deployments SET state = ?, shadow_mode = ? WHERE id = ?",
                (state.value, int(shadow_mode), deployment_id),
            )
        await self._db.commit()

    async def update_deployment_metrics(self, deployment_id: int, metrics: PerformanceMetrics) -> None:
        await self._db.execute(
            "UPDATE strategy_deployments SET performance_metrics = ?, last_evaluated_at = ? WHERE id = ?",
            (json.dumps(metrics.to_dict()), now_str(), deployment_id),
        )
        await self._db.commit()

    async def mark_evaluated(self, version_id: int, environment: Environment) -> None:
        await self._db.execute(
            "UPDATE strategy_deployments SET last_evaluated_at = ? WHERE strategy_version_id = ? AND environment = ?",
            (now_str(), version_id, environment.value),
        )
        await self._db.commit()

    # --- Lifecycle operations ---

    async def queue_for_testnet(self, version_id: int) -> StrategyVersion:
        version = await self.require_version(version_id)
        async with self._db.transaction():
            await self._set_state(version, S.TESTNET_PENDING)
            await self.create_deployment(version_id, Environment.TESTNET, S.TESTNET_PENDING)
        return await self.require_version(version_id)

    async def activate_on_testnet(self, version_id: int) -> StrategyVersion:
        version = await self.require_version(version_id)
        async with self._db.transaction():
            await self._set_state(version, S.TESTNET_ACTIVE)
            # Runtime is measured from activation, not from queueing
            await self.create_deployment(version_id, Environment.TESTNET, S.TESTNET_ACTIVE, reset_deployed_at=True)
        return await self.require_version(version_id)

    async def validate_testnet(self, version_id: int) -> StrategyVersion:
        version = await self.require_version(version_id)
        async with self._db.transaction():
            await self._set_state(version, S.TESTNET_VALIDATED)
            deployment = await self.get_deployment(version_id, Environment.TESTNET)
            if deployment:
                await self.update_deployment_state(deployment.id, S.TESTNET_VALIDATED)
        return await self.require_version(version_id)

    async def promote_to_mainnet_shadow(self, version_id: int) -> StrategyVersion:
        version = await self.require_version(version_id)
        async with self._db.transaction():
            await self._set_state(version, S.MAINNET_SHADOW)
            await self.create_deployment(
                version_id, Environment.MAINNET, S.MAINNET_SHADOW, shadow_mode=True, reset_deployed_at=True,
            )
        return await self.require_version(version_id)

    async def activate_on_mainnet(self, version_id: int) -> StrategyVersion:
        """Make this the only mainnet_active version of its strategy."""
        version = await self.require_version(version_id)
        self.check_transition(version, S.MAINNET_ACTIVE)
        async with self._db.transaction():
            others = await self._db.fetchall(
                f"""SELECT {_VERSION_COLUMNS} FROM strategy_versions
                    WHERE strategy_name = ? AND deployment_state = ? AND id != ?""",
                (version.strategy_name, S.MAINNET_ACTIVE.value, version_id),
            )
            for row in others:
                other = StrategyVersion.from_row(row)
                await self._set_state(other, S.DEPRECATED)
                deployment = await self.get_deployment(other.id, Environment.MAINNET)
                if deployment:
                    await self.update_deployment_state(deployment.id, S.DEPRECATED)

            await self._set_state(version, S.MAINNET_ACTIVE)
            deployment = await self.get_deployment(version_id, Environment.MAINNET)
            if deployment:
                await self.update_deployment_state(deployment.id, S.MAINNET_ACTIVE, shadow_mode=False)
            else:
                await self.create_deployment(version_id, Environment.MAINNET, S.MAINNET_ACTIVE)
        return await self.require_version(version_id)

    async def pause_on_mainnet(self, version_id: int) -> StrategyVersion:
        version = await self.require_version(version_id)
        async with self._db.transaction():
            await self._set_state(version, S.MAINNET_PAUSED)
            deployment = await self.get_deployment(version_id, Environment.MAINNET)
            if deployment:
                await self.update_deployment_state(deployment.id, S.MAINNET_PAUSED)
        return await self.require_version(version_id)

    async def deprecate_version(self, version_id: int) -> StrategyVersion:
        version = await self.require_version(version_id)
        async with self._db.transaction():
            await self._set_state(version, S.DEPRECATED)
            for environment in Environment:
                deployment = await self.get_deployment(version_id, environment)
                if deployment and deployment.state != S.DEPRECATED:
                    await self.update_deployment_state(deployment.id, S.DEPRECATED)
        return await self.require_version(version_id)

    async def is_version_in_shadow_mode(self, version_id: int) -> bool:
        deployment = await self.get_deployment(version_id, Environment.MAINNET)
        return deployment.shadow_mode if deployment else False

    async def get_runtime_hours(self, version_id: int, environment: Environment) -> float:
        deployment = await self.get_deployment(version_id, environment)
        if not deployment:
            return 0.0
        return hours_since(deployment.deployed_at)

    async def find_rollback_target(self, strategy_name: str, exclude_id: int) -> StrategyVersion | None:
        """Most recently promoted paused/deprecated version of the strategy."""
        row = await self._db.fetchone(
            f"""SELECT {_VERSION_COLUMNS} FROM strategy_versions
                WHERE strategy_name = ? AND id != ? AND promoted_at IS NOT NULL
                  AND deployment_state IN (?, ?)
                ORDER BY promoted_at DESC, id DESC LIMIT 1""",
            (strategy_name, exclude_id, S.MAINNET_PAUSED.value, S.DEPRECATED.value),
        )
        return StrategyVersion.from_row(row) if row else None
