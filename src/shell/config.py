"""Configuration loading — merges settings.toml and .env."""

from __future__ import annotations

import os
import tomllib
from dataclasses import dataclass, field, fields, is_dataclass
from pathlib import Path
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from dotenv import load_dotenv


PROJECT_ROOT = Path(__file__).resolve().parent.parent.parent
CONFIG_DIR = PROJECT_ROOT / "config"

DEFAULT_STRATEGIES = ["funding_signal", "momentum_breakout", "mean_reversion", "trend_follow"]


@dataclass
class AIConfig:
    provider: str = "anthropic"
    anthropic_api_key: str = ""
    oracle_model: str = "claude-sonnet-4-20250514"
    max_tokens: int = 4096
    temperature: float = 0.2
    daily_token_limit: int = 1500000
    vertex_project_id: str = ""
    vertex_region: str = "us-east5"


@dataclass
class CycleConfig:
    interval_minutes: int = 60
    oracle_timeout_seconds: float = 120.0
    lifecycle_enabled: bool = True
    auto_promotion_enabled: bool = True
    run_on_start: bool = False


@dataclass
class ApiConfig:
    enabled: bool = False
    host: str = "127.0.0.1"
    port: int = 8080


@dataclass
class Config:
    mode: str = "paper"
    paper_balance_usd: float = 10000.0
    timezone: str = "UTC"
    log_level: str = "INFO"
    strategies: list[str] = field(default_factory=lambda: list(DEFAULT_STRATEGIES))
    ai: AIConfig = field(default_factory=AIConfig)
    cycle: CycleConfig = field(default_factory=CycleConfig)
    api: ApiConfig = field(default_factory=ApiConfig)
    db_path: str = ""

    def is_paper(self) -> bool:
        return self.mode == "paper"


def _merge(target, table: dict) -> None:
    """Copy a TOML table onto matching scalar fields of a config dataclass. Unknown keys are ignored."""
    for f in fields(target):
        if f.name in table and not is_dataclass(getattr(target, f.name)):
            setattr(target, f.name, table[f.name])


def load_config() -> Config:
    """Defaults, then config/settings.toml, then environment variables."""
    load_dotenv(PROJECT_ROOT / ".env")

    config = Config(db_path=str(PROJECT_ROOT / "data" / "oversight.db"))

    settings_path = CONFIG_DIR / "settings.toml"
    if settings_path.exists():
        with open(settings_path, "rb") as f:
            settings = tomllib.load(f)

        _merge(config, settings.get("general", {}))
        config.strategies = list(settings.get("strategies", {}).get("names", config.strategies))

        ai = settings.get("ai", {})
        _merge(config.ai, ai)
        vertex = ai.get("vertex", {})
        config.ai.vertex_project_id = vertex.get("project_id", config.ai.vertex_project_id)
        config.ai.vertex_region = vertex.get("region", config.ai.vertex_region)

        _merge(config.cycle, settings.get("cycle", {}))
        _merge(config.api, settings.get("api", {}))

    # Secrets and deploy overrides
    config.ai.anthropic_api_key = os.getenv("ANTHROPIC_API_KEY", "")
    config.db_path = os.getenv("OVERSIGHT_DB_PATH", config.db_path)

    _validate_config(config)
    return config


def _validate_config(config: Config) -> None:
    """Validate config values are within sane ranges."""
    errors = []

    if config.mode not in ("paper", "live"):
        errors.append(f"mode must be 'paper' or 'live', got '{config.mode}'")
    if config.paper_balance_usd <= 0:
        errors.append(f"paper_balance_usd must be > 0, got {config.paper_balance_usd}")
    if not config.strategies:
        errors.append("At least one strategy must be configured")
    if len(set(config.strategies)) != len(config.strategies):
        errors.append(f"Duplicate strategy names: {config.strategies}")
    if config.ai.provider not in ("anthropic", "vertex"):
        errors.append(f"ai.provider must be 'anthropic' or 'vertex', got '{config.ai.provider}'")
    if config.ai.daily_token_limit < 1:
        errors.append(f"ai.daily_token_limit must be >= 1, got {config.ai.daily_token_limit}")
    if not (0 <= config.ai.temperature <= 1):
        errors.append(f"ai.temperature must be 0-1, got {config.ai.temperature}")
    if config.cycle.interval_minutes < 1:
        errors.append(f"cycle.interval_minutes must be >= 1, got {config.cycle.interval_minutes}")
    if config.cycle.oracle_timeout_seconds <= 0:
        errors.append(f"cycle.oracle_timeout_seconds must be > 0, got {config.cycle.oracle_timeout_seconds}")
    if config.api.enabled:
        if not (1 <= config.api.port <= 65535):
            errors.append(f"api.port must be 1-65535, got {config.api.port}")

    try:
        ZoneInfo(config.timezone)
    except (ZoneInfoNotFoundError, ValueError):
        errors.append(f"Invalid timezone: '{config.timezone}'")

    if errors:
        raise ValueError("Config validation failed:\n  " + "\n  ".join(errors))
