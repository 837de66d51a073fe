"""Shared test helpers: temp databases, scripted executors, test config."""

from __future__ import annotations

import asyncio
import os
import tempfile
from contextlib import asynccontextmanager
from datetime import datetime, timezone

from research_brain.orchestrator.orchestrator import Orchestrator
from research_brain.shell.clock import ManualClock
from research_brain.shell.config import BudgetConfig, Config
from research_brain.shell.contract import (
    ResearchCandidate,
    ResearchDiagnostics,
    ResearchExecutor,
    ResearchMode,
    ResearchRequest,
    ResearchResult,
)
from research_brain.shell.database import Database

# Tuesday, minute 0 of the hour: outside every default slot
T0 = datetime(2026, 3, 10, 12, 0, tzinfo=timezone.utc)

ALL_SCHEDULED = ("SENTIMENT_BURST", "CONTRARIAN_SCAN", "DEEP_REASONING")


@asynccontextmanager
async def open_db():
    db_path = tempfile.mktemp(suffix=".db")
    db = Database(db_path)
    await db.connect()
    try:
        yield db
    finally:
        await db.close()
        for suffix in ("", "-wal", "-shm"):
            if os.path.exists(db_path + suffix):
                os.unlink(db_path + suffix)


def make_config(modes: dict | None = None, daily_budget: float = 50.0, **orch) -> Config:
    """Config with slot alignment off, so modes are due on cooldown alone."""
    config = Config()
    config.orchestrator.modes = {name: {"slot_minutes": []} for name in ALL_SCHEDULED}
    for name, overrides in (modes or {}).items():
        config.orchestrator.modes.setdefault(name, {}).update(overrides)
    for key, value in orch.items():
        setattr(config.orchestrator, key, value)
    config.budgets = {"anthropic": BudgetConfig(daily_budget_usd=daily_budget, period_budget_usd=1000.0)}
    return config


def candidate(name: str, hypothesis: str | None = None, archetype: str = "mean_reversion") -> ResearchCandidate:
    return ResearchCandidate(
        name=name,
        archetype_name=archetype,
        hypothesis=hypothesis or f"{name} exploits a recurring dislocation",
        rules={"entry": f"{name} entry", "exit": f"{name} exit"},
    )


def ok(*candidates: ResearchCandidate, cost: float = 0.5) -> ResearchResult:
    return ResearchResult(
        candidates=list(candidates),
        diagnostics=ResearchDiagnostics(input_tokens=1000, output_tokens=500, cost_usd=cost, model="test-model"),
    )


class ScriptedExecutor(ResearchExecutor):
    """Returns scripted results (or raises scripted exceptions) per mode.

    Unscripted calls return one unique candidate. If a gate is set, every
    call waits on it first.
    """

    def __init__(self, script: dict | None = None, gate: asyncio.Event | None = None, cost: float = 0.5) -> None:
        self.calls: list[ResearchRequest] = []
        self._script = {mode: list(items) for mode, items in (script or {}).items()}
        self._gate = gate
        self._cost = cost

    async def research(self, request: ResearchRequest) -> ResearchResult:
        self.calls.append(request)
        if self._gate is not None:
            await self._gate.wait()
        queue = self._script.get(request.mode)
        if queue:
            item = queue.pop(0)
            if isinstance(item, BaseException):
                raise item
            return item
        n = len(self.calls)
        return ok(candidate(f"{request.mode.value.lower()}-{n}"), cost=self._cost)

    def modes_called(self) -> list[ResearchMode]:
        return [c.mode for c in self.calls]


async def build_orchestrator(db: Database, executor: ResearchExecutor, config: Config | None = None,
                             clock: ManualClock | None = None, **kwargs) -> Orchestrator:
    orch = Orchestrator(
        config or make_config(), db, executor,
        clock=clock or ManualClock(T0), instance_id="test-instance", **kwargs,
    )
    await orch.initialize()
    return orch
