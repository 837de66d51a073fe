"""AI Client — thin async wrapper around the Anthropic SDK (direct or Vertex).

Each call returns the text together with its token usage and dollar cost so
the orchestrator can charge the budget ledger for it. The client itself
keeps no spend state.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Any

import structlog

from research_brain.shell.config import AIConfig

log = structlog.get_logger()

# USD per million tokens
MODEL_COSTS = {
    "claude-opus-4-6": {"input": 15.0, "output": 75.0},
    "claude-sonnet-4-5-20250929": {"input": 3.0, "output": 15.0},
    "claude-haiku-4-5-20251001": {"input": 1.0, "output": 5.0},
}
_FALLBACK_COST = MODEL_COSTS["claude-sonnet-4-5-20250929"]

_TRANSIENT_MARKERS = ("timeout", "rate", "429", "500", "502", "503", "529", "overloaded", "connection")
_REQUEST_TIMEOUT = 300.0


@dataclass
class AIResponse:
    text: str
    model: str
    input_tokens: int
    output_tokens: int
    cost_usd: float

    @property
    def tokens(self) -> int:
        return self.input_tokens + self.output_tokens


def calculate_cost(model: str, input_tokens: int, output_tokens: int) -> float:
    rate = MODEL_COSTS.get(model, _FALLBACK_COST)
    return (input_tokens * rate["input"] + output_tokens * rate["output"]) / 1_000_000


def is_transient(error: Exception) -> bool:
    message = str(error).lower()
    return any(marker in message for marker in _TRANSIENT_MARKERS)


class AIClient:
    """Claude access for research executors."""

    def __init__(self, config: AIConfig, max_retries: int = 3) -> None:
        self._config = config
        self._max_retries = max(1, max_retries)
        self._client = None

    async def initialize(self) -> None:
        cfg = self._config
        if cfg.provider == "vertex":
            from anthropic import AsyncAnthropicVertex
            self._client = AsyncAnthropicVertex(
                project_id=cfg.vertex_project_id, region=cfg.vertex_region, timeout=_REQUEST_TIMEOUT,
            )
            log.info("ai.initialized", provider="vertex", project=cfg.vertex_project_id, region=cfg.vertex_region)
            return

        from anthropic import AsyncAnthropic
        self._client = AsyncAnthropic(api_key=cfg.anthropic_api_key, timeout=_REQUEST_TIMEOUT)
        log.info("ai.initialized", provider="anthropic")

    async def close(self) -> None:
        if self._client is not None:
            await self._client.close()
            self._client = None

    async def ask(
        self,
        prompt: str,
        model: str | None = None,
        system: str = "",
        max_tokens: int | None = None,
        temperature: float = 0.7,
        purpose: str = "",
    ) -> AIResponse:
        """Send one user message and return the reply with its usage and cost.

        Transient API failures (overload, rate limit, 5xx, timeouts) are
        retried with 1s, 2s, 4s... backoff; anything else is raised at once.
        """
        if self._client is None:
            raise RuntimeError("AI client not initialized — call initialize() first")

        model = model or self._config.sonnet_model
        request: dict[str, Any] = {
            "model": model,
            "max_tokens": max_tokens or self._config.max_tokens,
            "temperature": temperature,
            "messages": [{"role": "user", "content": prompt}],
        }
        if system:
            request["system"] = system

        message = await self._create(request)
        text = "".join(getattr(block, "text", "") for block in message.content)
        usage = message.usage
        response = AIResponse(
            text=text,
            model=model,
            input_tokens=usage.input_tokens,
            output_tokens=usage.output_tokens,
            cost_usd=calculate_cost(model, usage.input_tokens, usage.output_tokens),
        )
        log.info("ai.response", model=model, tokens=response.tokens,
                 cost=f"${response.cost_usd:.4f}", purpose=purpose)
        return response

    async def _create(self, request: dict[str, Any]):
        attempt = 0
        while True:
            try:
                return await self._client.messages.create(**request)
            except Exception as e:
                attempt += 1
                if attempt >= self._max_retries or not is_transient(e):
                    raise
                delay = 2 ** (attempt - 1)
                log.warning("ai.retry", attempt=attempt, delay=delay, error=str(e))
                await asyncio.sleep(delay)
