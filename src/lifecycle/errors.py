"""Typed lifecycle errors. All are raised before any row is written."""

from __future__ import annotations


class LifecycleError(Exception):
    pass


class VersionNotFoundError(LifecycleError):
    def __init__(self, version_id: int) -> None:
        super().__init__(f"Strategy version {version_id} not found")
        self.version_id = version_id


class DuplicateVersionError(LifecycleError):
    def __init__(self, strategy_name: str, version: str) -> None:
        super().__init__(f"{strategy_name} v{version} already exists")
        self.strategy_name = strategy_name
        self.version = version


class InvalidTransitionError(LifecycleError):
    def __init__(self, label: str, current: str, target: str) -> None:
        super().__init__(f"Invalid transition for {label}: {current} -> {target}")
        self.label = label
        self.current = current
        self.target = target


class InvalidPromotionTargetError(LifecycleError):
    def __init__(self, target: str, current: str | None = None) -> None:
        detail = f" from {current}" if current else ""
        super().__init__(f"Cannot promote to state: {target}{detail}")
        self.target = target
        self.current = current
