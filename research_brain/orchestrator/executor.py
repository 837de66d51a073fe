"""AI research executor — Anthropic-backed implementation of ResearchExecutor."""

from __future__ import annotations

import json

import structlog

from research_brain.orchestrator.ai_client import AIClient
from research_brain.shell.config import AIConfig
from research_brain.shell.contract import (
    ModePolicy,
    ResearchCandidate,
    ResearchDiagnostics,
    ResearchExecutor,
    ResearchMode,
    ResearchRequest,
    ResearchResult,
)

log = structlog.get_logger()

SYSTEM_PROMPT = """You are a quantitative research analyst proposing new trading-strategy candidates.
Respond with a single JSON object and nothing else:
{"candidates": [{"name": str, "archetype": str, "hypothesis": str,
                 "rules": {"entry": str, "exit": str, "risk": str}}]}
Propose at most 3 candidates. Avoid repeating anything listed under recent candidates."""

MODE_FOCUS = {
    ResearchMode.CONTRARIAN_SCAN: "Look for crowded positioning and consensus views likely to unwind.",
    ResearchMode.SENTIMENT_BURST: "React to the latest sentiment shifts; favour short-horizon ideas.",
    ResearchMode.DEEP_REASONING: "Reason from first principles about structural, slower-moving edges.",
}


def extract_json(response: str) -> dict | None:
    """Extract JSON object from AI response text.

    Handles responses that wrap JSON in explanatory text.
    Uses brace-depth tracking to find the outermost JSON object.
    """
    try:
        return json.loads(response)
    except json.JSONDecodeError:
        pass

    start = response.find("{")
    if start < 0:
        return None

    depth = 0
    in_string = False
    escape_next = False
    for i in range(start, len(response)):
        c = response[i]
        if escape_next:
            escape_next = False
            continue
        if in_string:
            if c == "\\":
                escape_next = True
                continue
            if c == '"':
                in_string = False
            continue
        if c == '"':
            in_string = True
            continue
        if c == "{":
            depth += 1
        elif c == "}":
            depth -= 1
            if depth == 0:
                try:
                    return json.loads(response[start : i + 1])
                except json.JSONDecodeError:
                    return None
    return None


def parse_candidates(data: dict, regime: str | None = None) -> list[ResearchCandidate]:
    candidates = []
    for item in data.get("candidates") or []:
        if not isinstance(item, dict) or not item.get("name"):
            continue
        rules = item.get("rules") or {}
        if not isinstance(rules, dict):
            rules = {"text": str(rules)}
        candidates.append(ResearchCandidate(
            name=str(item["name"]).strip(),
            archetype_name=str(item.get("archetype") or item.get("archetype_name") or "").strip(),
            hypothesis=str(item.get("hypothesis") or "").strip(),
            rules=rules,
            regime=regime,
        ))
    return candidates


class AIResearchExecutor(ResearchExecutor):
    def __init__(self, ai: AIClient, config: AIConfig, policies: dict[ResearchMode, ModePolicy]) -> None:
        self._ai = ai
        self._config = config
        self._policies = policies

    def _prompt(self, request: ResearchRequest) -> str:
        ctx = request.context
        lines = [f"Research mode: {request.mode.value}", MODE_FOCUS.get(request.mode, "")]
        if ctx.get("currentRegime"):
            lines.append(f"Current market regime: {ctx['currentRegime']}")
        recent = ctx.get("recentCandidates") or []
        if recent:
            lines.append("Recent candidates:")
            lines.extend(f"- {c.get('name')} ({c.get('archetype_name') or 'n/a'})" for c in recent)
        extra = {k: v for k, v in ctx.items()
                 if k not in ("mode", "modeParams", "recentCandidates", "currentRegime", "subModes", "parentMode")}
        if extra:
            lines.append(f"Additional context: {json.dumps(extra, default=str)}")
        return "\n".join(line for line in lines if line)

    async def research(self, request: ResearchRequest) -> ResearchResult:
        model = self._config.model_for(self._policies[request.mode].cost_class)
        response = await self._ai.ask(
            self._prompt(request), model=model, system=SYSTEM_PROMPT,
            purpose=f"research:{request.mode.value}",
        )
        diagnostics = ResearchDiagnostics(
            input_tokens=response.input_tokens,
            output_tokens=response.output_tokens,
            cost_usd=response.cost_usd,
            model=response.model,
        )
        data = extract_json(response.text)
        if data is None:
            log.warning("executor.unparseable_response", job_id=request.job_id,
                        mode=request.mode.value, preview=response.text[:200])
            return ResearchResult(diagnostics=diagnostics, error="response contained no JSON object")

        candidates = parse_candidates(data, regime=request.context.get("currentRegime"))
        log.info("executor.candidates", job_id=request.job_id, mode=request.mode.value,
                 count=len(candidates))
        return ResearchResult(candidates=candidates, diagnostics=diagnostics)
