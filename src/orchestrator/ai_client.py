"""AI Client — the model endpoint behind the Claude oracles.

Wraps AsyncAnthropic / AsyncAnthropicVertex with retries on transient API
errors and a daily token budget that survives restarts. Every call writes a
token_usage row tagged with the oracle role that made it.
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass
from typing import Any

import anthropic
import structlog

from src.shell.config import AIConfig
from src.shell.database import Database

log = structlog.get_logger()

# USD per million tokens
MODEL_COSTS = {
    "claude-sonnet-4-20250514": {"input": 3.0, "output": 15.0},
    "claude-sonnet-4-5-20250929": {"input": 3.0, "output": 15.0},
    "claude-opus-4-6": {"input": 15.0, "output": 75.0},
}
DEFAULT_COSTS = {"input": 3.0, "output": 15.0}

RETRY_ATTEMPTS = 3
RETRY_BASE_SECONDS = 1.0
REQUEST_TIMEOUT_SECONDS = 300.0
OVERLOADED_STATUS = 529


class TokenBudgetExceeded(RuntimeError):
    """Daily token budget spent. Oracle calls fail (and fall back) until the reset job runs."""


@dataclass(frozen=True)
class Completion:
    text: str
    model: str
    input_tokens: int
    output_tokens: int
    cost_usd: float
    latency_ms: int

    @property
    def total_tokens(self) -> int:
        return self.input_tokens + self.output_tokens


def estimate_cost(model: str, input_tokens: int, output_tokens: int) -> float:
    costs = MODEL_COSTS.get(model, DEFAULT_COSTS)
    return (input_tokens * costs["input"] + output_tokens * costs["output"]) / 1_000_000


def is_transient(error: Exception) -> bool:
    """Connection problems, rate limits and 5xx/overloaded responses are worth retrying."""
    if isinstance(error, (anthropic.APIConnectionError, anthropic.RateLimitError, anthropic.InternalServerError)):
        return True
    return isinstance(error, anthropic.APIStatusError) and error.status_code == OVERLOADED_STATUS


class AIClient:
    """Claude access for the oracles, via the Anthropic API or Vertex."""

    def __init__(self, config: AIConfig, db: Database) -> None:
        self._config = config
        self._db = db
        self._client: Any = None
        self._daily_tokens_used = 0

    @property
    def model(self) -> str:
        return self._config.oracle_model

    @property
    def tokens_used_today(self) -> int:
        return self._daily_tokens_used

    @property
    def tokens_remaining(self) -> int:
        return max(0, self._config.daily_token_limit - self._daily_tokens_used)

    async def initialize(self) -> None:
        if self._config.provider == "vertex":
            self._client = anthropic.AsyncAnthropicVertex(
                project_id=self._config.vertex_project_id,
                region=self._config.vertex_region,
                timeout=REQUEST_TIMEOUT_SECONDS,
            )
        else:
            self._client = anthropic.AsyncAnthropic(
                api_key=self._config.anthropic_api_key,
                timeout=REQUEST_TIMEOUT_SECONDS,
            )
        self._daily_tokens_used = await self._tokens_logged_today()
        log.info("ai.initialized", provider=self._config.provider, model=self.model,
                 used_today=self._daily_tokens_used)

    async def _tokens_logged_today(self) -> int:
        row = await self._db.fetchone(
            """SELECT COALESCE(SUM(input_tokens + output_tokens), 0) AS total
               FROM token_usage WHERE created_at >= date('now')"""
        )
        return int(row["total"]) if row else 0

    def reset_daily_tokens(self) -> None:
        self._daily_tokens_used = 0

    async def complete(
        self,
        prompt: str,
        system: str = "",
        purpose: str = "",
        max_tokens: int | None = None,
        temperature: float | None = None,
    ) -> Completion:
        """One user turn against the oracle model. Usage is recorded before returning."""
        if self._client is None:
            raise RuntimeError("AI client not initialized; call initialize() first")
        if self.tokens_remaining <= 0:
            log.warning("ai.daily_limit_reached", used=self._daily_tokens_used,
                        limit=self._config.daily_token_limit, purpose=purpose)
            raise TokenBudgetExceeded(f"Daily token limit of {self._config.daily_token_limit} reached")

        request: dict[str, Any] = {
            "model": self.model,
            "max_tokens": max_tokens or self._config.max_tokens,
            "temperature": self._config.temperature if temperature is None else temperature,
            "messages": [{"role": "user", "content": prompt}],
        }
        if system:
            request["system"] = system

        start = time.monotonic()
        response = await self._create_with_retry(request)
        usage = response.usage
        completion = Completion(
            text="".join(block.text for block in response.content if getattr(block, "type", None) == "text"),
            model=self.model,
            input_tokens=usage.input_tokens,
            output_tokens=usage.output_tokens,
            cost_usd=estimate_cost(self.model, usage.input_tokens, usage.output_tokens),
            latency_ms=int((time.monotonic() - start) * 1000),
        )
        self._daily_tokens_used += completion.total_tokens
        await self._record_usage(completion, purpose)

        log.info("ai.response", model=completion.model, purpose=purpose, tokens=completion.total_tokens,
                 cost=f"${completion.cost_usd:.4f}", latency_ms=completion.latency_ms)
        return completion

    async def ask(self, prompt: str, system: str = "", purpose: str = "") -> str:
        return (await self.complete(prompt, system=system, purpose=purpose)).text

    async def _create_with_retry(self, request: dict[str, Any]):
        attempt = 0
        while True:
            attempt += 1
            try:
                return await self._client.messages.create(**request)
            except anthropic.APIError as e:
                if attempt >= RETRY_ATTEMPTS or not is_transient(e):
                    raise
                wait = RETRY_BASE_SECONDS * 2 ** (attempt - 1)
                log.warning("ai.retry", attempt=attempt, error=str(e), wait=wait)
                await asyncio.sleep(wait)

    async def _record_usage(self, completion: Completion, purpose: str) -> None:
        await self._db.execute(
            """INSERT INTO token_usage (model, input_tokens, output_tokens, cost_usd, purpose)
               VALUES (?, ?, ?, ?, ?)""",
            (completion.model, completion.input_tokens, completion.output_tokens, completion.cost_usd, purpose),
        )
        await self._db.commit()

    async def get_daily_usage(self) -> dict:
        """Today's usage, totalled per model and per purpose (oracle role)."""
        rows = await self._db.fetchall(
            """SELECT model, purpose, SUM(input_tokens) AS input_total, SUM(output_tokens) AS output_total,
                      SUM(cost_usd) AS cost_total, COUNT(*) AS calls
               FROM token_usage WHERE created_at >= date('now')
               GROUP BY model, purpose"""
        )
        models: dict[str, dict] = {}
        purposes: dict[str, dict] = {}
        for r in rows:
            for bucket in (models.setdefault(r["model"], {"input": 0, "output": 0, "cost": 0.0, "calls": 0}),
                           purposes.setdefault(r["purpose"] or "unspecified",
                                               {"input": 0, "output": 0, "cost": 0.0, "calls": 0})):
                bucket["input"] += r["input_total"]
                bucket["output"] += r["output_total"]
                bucket["cost"] += r["cost_total"]
                bucket["calls"] += r["calls"]
        return {
            "models": models,
            "purposes": purposes,
            "total_cost": sum(r["cost_total"] for r in rows),
            "daily_limit": self._config.daily_token_limit,
            "used": self._daily_tokens_used,
        }
