"""Advisory oracles — the untrusted recommendation sources the cycle consults.

An oracle only has to implement evaluate(context) -> dict and may raise. The
shipped ClaudeOracle asks the configured model and pulls the first JSON
object out of its reply.
"""

from __future__ import annotations

import json

import structlog

from src.orchestrator.ai_client import AIClient
from src.oversight.prompts import PROMPT_BUILDERS, SYSTEM_PROMPT
from src.shell.contract import OracleKind

log = structlog.get_logger()


class OracleResponseError(Exception):
    """The oracle answered but no JSON object could be extracted."""


_decoder = json.JSONDecoder()


def extract_json(response: str) -> dict | None:
    """First JSON object in a model reply, or None.

    Replies often wrap the object in prose or a ```json fence, so decoding is
    attempted at each opening brace in turn.
    """
    start = response.find("{")
    while start >= 0:
        try:
            return _decoder.raw_decode(response, start)[0]
        except json.JSONDecodeError:
            start = response.find("{", start + 1)
    return None


class Oracle:
    """Interface for one advisory role."""

    kind: OracleKind
    model: str = "unknown"

    async def evaluate(self, context: dict) -> dict:
        raise NotImplementedError


class ClaudeOracle(Oracle):
    def __init__(self, kind: OracleKind, ai: AIClient) -> None:
        self.kind = kind
        self._ai = ai

    @property
    def model(self) -> str:
        return self._ai.model

    async def evaluate(self, context: dict) -> dict:
        prompt = PROMPT_BUILDERS[self.kind](context)
        response = await self._ai.ask(prompt, system=SYSTEM_PROMPT, purpose=f"oracle_{self.kind.value}")
        parsed = extract_json(response)
        if parsed is None:
            log.warning("oracle.json_parse_failed", kind=self.kind.value, response=response[:500])
            raise OracleResponseError(f"No JSON object in {self.kind.value} oracle response")
        return parsed


def build_oracles(ai: AIClient) -> dict[OracleKind, Oracle]:
    return {kind: ClaudeOracle(kind, ai) for kind in OracleKind}
