"""Tests for orchestrator health status and alerting."""

from __future__ import annotations

import asyncio
from datetime import timedelta

import pytest

from research_brain.orchestrator.health import (
    BACKPRESSURE_EXCEEDED,
    BUDGET_THROTTLED,
    HIGH_FAILURE_RATE,
    JOB_TIMEOUT,
    ORCHESTRATOR_STALLED,
    SCHEDULING_DRIFT,
    HealthMonitor,
)
from research_brain.shell.clock import ManualClock
from research_brain.shell.config import ObservabilityConfig
from research_brain.shell.contract import ResearchMode
from research_brain.shell.lock import LeaseLock

from tests.helpers import T0, ScriptedExecutor, build_orchestrator, make_config, open_db

SENTIMENT = ResearchMode.SENTIMENT_BURST


def _types(report) -> set[str]:
    return {a.type for a in report.alerts}


async def _set_daily_cost(orch, cost: float) -> None:
    async with orch.critical_section():
        state = await orch.state_store.load()
        state.total_cost_today = cost
        await orch.state_store.save(state)


@pytest.mark.asyncio
async def test_healthy_after_tick():
    async with open_db() as db:
        orch = await build_orchestrator(db, ScriptedExecutor())
        await orch.tick()
        await orch.drain()

        report = await HealthMonitor(orch, ObservabilityConfig()).check()
        assert report.status == "healthy"
        assert report.alerts == []
        assert report.metrics["completed_24h"] == 1
        assert report.metrics["queued"] == 2
        assert report.budget["daily_cost"] == 0.5
        assert set(report.modes) == {"SENTIMENT_BURST", "CONTRARIAN_SCAN", "DEEP_REASONING"}

        data = report.to_dict()
        assert data["status"] == "healthy"
        assert data["checked_at"] == T0.isoformat()


@pytest.mark.asyncio
async def test_stalled_without_ticks():
    async with open_db() as db:
        clock = ManualClock(T0)
        orch = await build_orchestrator(db, ScriptedExecutor(), clock=clock)
        monitor = HealthMonitor(orch, ObservabilityConfig(stall_after_ticks=5))

        assert (await monitor.check()).status == "stalled"

        await orch.tick()
        await orch.drain()
        assert ORCHESTRATOR_STALLED not in _types(await monitor.check())

        # 60s ticks, five missed
        clock.advance(seconds=301)
        report = await monitor.check()
        assert report.status == "stalled"
        assert ORCHESTRATOR_STALLED in _types(report)


@pytest.mark.asyncio
async def test_stopped_driver_is_stalled():
    async with open_db() as db:
        orch = await build_orchestrator(db, ScriptedExecutor())
        await orch.tick()
        await orch.drain()
        report = await HealthMonitor(orch, ObservabilityConfig(), driver_running=lambda: False).check()
        assert report.status == "stalled"


@pytest.mark.asyncio
async def test_disabled_orchestrator_never_stalls():
    async with open_db() as db:
        orch = await build_orchestrator(db, ScriptedExecutor(), make_config(enabled=False))
        report = await HealthMonitor(orch, ObservabilityConfig()).check()
        assert report.status == "healthy"


@pytest.mark.asyncio
async def test_budget_thresholds():
    async with open_db() as db:
        orch = await build_orchestrator(db, ScriptedExecutor(), make_config(enabled=False))
        monitor = HealthMonitor(orch, ObservabilityConfig())

        await _set_daily_cost(orch, 41.0)
        report = await monitor.check()
        assert report.status == "degraded"
        assert [a.severity for a in report.alerts if a.type == BUDGET_THROTTLED] == ["warning"]

        await _set_daily_cost(orch, 48.0)
        report = await monitor.check()
        assert report.status == "critical"
        assert [a.severity for a in report.alerts if a.type == BUDGET_THROTTLED] == ["critical"]


@pytest.mark.asyncio
async def test_high_failure_rate():
    async with open_db() as db:
        executor = ScriptedExecutor({SENTIMENT: [RuntimeError("boom")]})
        orch = await build_orchestrator(db, executor, make_config(enabled=False, default_max_retries=0))
        await orch.trigger_manual_run(SENTIMENT)
        await orch.drain()

        report = await HealthMonitor(orch, ObservabilityConfig()).check()
        assert HIGH_FAILURE_RATE in _types(report)
        assert report.metrics["failed_24h"] == 1
        assert report.metrics["failure_rate_24h"] == 1.0


@pytest.mark.asyncio
async def test_too_many_deferred_jobs():
    async with open_db() as db:
        orch = await build_orchestrator(db, ScriptedExecutor(), make_config(daily_budget=0.0))
        await orch.tick()

        report = await HealthMonitor(orch, ObservabilityConfig(backpressure_deferred_threshold=2)).check()
        assert BACKPRESSURE_EXCEEDED in _types(report)
        assert report.metrics["deferred"] == 3


@pytest.mark.asyncio
async def test_overrunning_job_flagged():
    async with open_db() as db:
        clock = ManualClock(T0)
        orch = await build_orchestrator(db, ScriptedExecutor(gate=asyncio.Event()),
                                        make_config(enabled=False), clock=clock)
        job = await orch.trigger_manual_run(SENTIMENT)
        monitor = HealthMonitor(orch, ObservabilityConfig())
        assert JOB_TIMEOUT not in _types(await monitor.check())

        clock.advance(seconds=130)
        alerts = [a for a in (await monitor.check()).alerts if a.type == JOB_TIMEOUT]
        assert alerts[0].detail == {"job_id": job.id}
        await orch.shutdown()


@pytest.mark.asyncio
async def test_scheduling_drift():
    """Ticks keep arriving but another instance holds the lease, so nothing launches."""
    async with open_db() as db:
        clock = ManualClock(T0)
        orch = await build_orchestrator(db, ScriptedExecutor(), clock=clock)
        async with orch.critical_section():
            state = await orch.state_store.load()
            for mode in state.last_run:
                state.last_run[mode] = T0
            await orch.state_store.save(state)

        clock.advance(minutes=45)
        other = LeaseLock(db, clock, holder="other-instance")
        assert await other.acquire()
        assert (await orch.tick()).status == "lock_unavailable"

        report = await HealthMonitor(orch, ObservabilityConfig(scheduling_drift_minutes=10)).check()
        drift = [a for a in report.alerts if a.type == SCHEDULING_DRIFT]
        assert [a.detail["mode"] for a in drift] == ["SENTIMENT_BURST"]
        assert drift[0].detail["overdue_minutes"] == 15


@pytest.mark.asyncio
async def test_run_logs_raised_and_resolved_alerts():
    async with open_db() as db:
        orch = await build_orchestrator(db, ScriptedExecutor())
        monitor = HealthMonitor(orch, ObservabilityConfig())

        await monitor.run()
        raised = await orch.activity.query(category="HEALTH")
        assert len(raised) == 1
        assert raised[0]["summary"].startswith(ORCHESTRATOR_STALLED)
        assert raised[0]["severity"] == "critical"

        # Unchanged: nothing new is written
        await monitor.run()
        assert len(await orch.activity.query(category="HEALTH")) == 1

        await orch.tick()
        await orch.drain()
        report = await monitor.run()
        assert report.status == "healthy"
        entries = await orch.activity.query(category="HEALTH")
        assert entries[0]["summary"] == f"{ORCHESTRATOR_STALLED} resolved"
        assert monitor.last_report is report
