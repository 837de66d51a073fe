"""Health Monitor — orchestrator health status, metrics and alerts.

Status is derived from the active alerts:
    critical  any critical alert
    stalled   enabled, but ticks have stopped arriving
    degraded  any warning
    healthy   nothing to report
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Callable

import structlog

from research_brain.shell.config import ObservabilityConfig
from research_brain.shell.contract import AUTONOMOUS_MODES, JobStatus

if TYPE_CHECKING:
    from research_brain.orchestrator.orchestrator import Orchestrator

log = structlog.get_logger()

ORCHESTRATOR_STALLED = "ORCHESTRATOR_STALLED"
BUDGET_THROTTLED = "BUDGET_THROTTLED"
HIGH_FAILURE_RATE = "HIGH_FAILURE_RATE"
BACKPRESSURE_EXCEEDED = "BACKPRESSURE_EXCEEDED"
SCHEDULING_DRIFT = "SCHEDULING_DRIFT"
JOB_TIMEOUT = "JOB_TIMEOUT"


@dataclass
class Alert:
    type: str
    severity: str           # 'warning' or 'critical'
    message: str
    detail: dict = field(default_factory=dict)


@dataclass
class HealthReport:
    status: str
    checked_at: datetime
    alerts: list[Alert]
    metrics: dict
    budget: dict
    modes: dict

    def to_dict(self) -> dict:
        return {
            "status": self.status,
            "checked_at": self.checked_at.isoformat(),
            "alerts": [asdict(a) for a in self.alerts],
            "metrics": self.metrics,
            "budget": self.budget,
            "modes": self.modes,
        }


class HealthMonitor:
    def __init__(
        self,
        orchestrator: Orchestrator,
        config: ObservabilityConfig,
        driver_running: Callable[[], bool] | None = None,
    ) -> None:
        self._orch = orchestrator
        self._config = config
        self._driver_running = driver_running
        self._active: set[str] = set()
        self._last_report: HealthReport | None = None

    @property
    def last_report(self) -> HealthReport | None:
        return self._last_report

    async def check(self) -> HealthReport:
        """Compute the current health report. Read-only."""
        orch = self._orch
        cfg = self._config
        now = orch.clock.now()
        state = await orch.state_store.load()
        counts = await orch.jobs.counts_by_status()
        window = await orch.jobs.window_stats(now - timedelta(hours=24))
        alerts: list[Alert] = []

        # Stalled: autonomous scheduling on, but the tick driver is gone or silent
        tick_interval = orch.config.orchestrator.tick_interval_seconds
        stale_after = timedelta(seconds=tick_interval * cfg.stall_after_ticks)
        last_tick = orch.last_tick_at
        if orch.enabled:
            if self._driver_running is not None and not self._driver_running():
                alerts.append(Alert(ORCHESTRATOR_STALLED, "critical", "Tick scheduler is not running"))
            elif last_tick is None or now - last_tick > stale_after:
                alerts.append(Alert(
                    ORCHESTRATOR_STALLED, "critical",
                    f"No tick for more than {int(stale_after.total_seconds())}s",
                    {"last_tick_at": last_tick.isoformat() if last_tick else None},
                ))

        # Budget utilisation against the orchestrator-wide daily cap
        cap = orch.config.orchestrator.max_daily_cost_usd
        utilisation = state.total_cost_today / cap if cap > 0 else 0.0
        if utilisation >= cfg.budget_critical_pct:
            alerts.append(Alert(BUDGET_THROTTLED, "critical",
                                f"Daily research spend at {utilisation:.0%} of ${cap:.2f}",
                                {"utilisation": round(utilisation, 4)}))
        elif utilisation >= cfg.budget_warning_pct:
            alerts.append(Alert(BUDGET_THROTTLED, "warning",
                                f"Daily research spend at {utilisation:.0%} of ${cap:.2f}",
                                {"utilisation": round(utilisation, 4)}))

        outcomes = window["completed"] + window["failed"]
        failure_rate = window["failed"] / outcomes if outcomes else 0.0
        if outcomes and failure_rate > cfg.failure_rate_threshold:
            alerts.append(Alert(HIGH_FAILURE_RATE, "warning",
                                f"{failure_rate:.0%} of research attempts failed in the last 24h",
                                {"failed": window["failed"], "completed": window["completed"]}))

        deferred = counts[JobStatus.DEFERRED.value]
        if deferred > cfg.backpressure_deferred_threshold:
            alerts.append(Alert(BACKPRESSURE_EXCEEDED, "warning",
                                f"{deferred} jobs deferred",
                                {"deferred": deferred}))

        for job in await orch.jobs.list_by_status(JobStatus.RUNNING):
            if job.started_at is None:
                continue
            elapsed = (now - job.started_at).total_seconds()
            if elapsed > orch.job_timeout(job):
                alerts.append(Alert(JOB_TIMEOUT, "warning",
                                    f"{job.mode.value} job running for {int(elapsed)}s",
                                    {"job_id": job.id}))

        modes = {}
        busy = await orch.jobs.modes_with_status(JobStatus.QUEUED, JobStatus.RUNNING, JobStatus.DEFERRED)
        drift_limit = timedelta(minutes=cfg.scheduling_drift_minutes)
        for mode in AUTONOMOUS_MODES:
            last = state.last_run_at(mode)
            nxt = orch.scheduler.next_eligible_at(mode, state, now)
            modes[mode.value] = {
                "last_run_at": last.isoformat() if last else None,
                "next_eligible_at": nxt.isoformat() if nxt else None,
                "backpressure": state.backpressure_for(mode),
            }
            if not orch.enabled or mode in busy or last is None:
                continue
            ends = orch.scheduler.cooldown_ends(mode, state)
            if ends is None:
                continue
            opening = orch.scheduler.next_eligible_at(mode, state, ends)
            if opening is not None and now - opening > drift_limit:
                alerts.append(Alert(SCHEDULING_DRIFT, "warning",
                                    f"{mode.value} overdue since {opening.isoformat()}",
                                    {"mode": mode.value,
                                     "overdue_minutes": int((now - opening).total_seconds() // 60)}))

        if any(a.severity == "critical" and a.type != ORCHESTRATOR_STALLED for a in alerts):
            status = "critical"
        elif any(a.type == ORCHESTRATOR_STALLED for a in alerts):
            status = "stalled"
        elif alerts:
            status = "degraded"
        else:
            status = "healthy"

        report = HealthReport(
            status=status,
            checked_at=now,
            alerts=alerts,
            metrics={
                "running": counts[JobStatus.RUNNING.value],
                "queued": counts[JobStatus.QUEUED.value],
                "deferred": deferred,
                "completed_24h": window["completed"],
                "failed_24h": window["failed"],
                "failure_rate_24h": round(failure_rate, 4),
                "avg_latency_seconds": window["avg_latency_seconds"],
                "in_flight": len(orch.in_flight),
            },
            budget={
                "daily_cost": round(state.total_cost_today, 4),
                "max_daily_cost": cap,
                "utilisation": round(utilisation, 4),
                "providers": state.provider_quota,
            },
            modes=modes,
        )
        self._last_report = report
        return report

    async def run(self) -> HealthReport:
        """Periodic check: records newly raised and resolved alerts in the activity log."""
        report = await self.check()
        current = {a.type: a for a in report.alerts}
        raised = [a for t, a in current.items() if t not in self._active]
        resolved = self._active - set(current)

        if raised or resolved:
            async with self._orch.critical_section(wait=True):
                for alert in raised:
                    await self._orch.activity.health(
                        f"{alert.type}: {alert.message}", severity=alert.severity,
                        detail=alert.detail, commit=False,
                    )
                for alert_type in sorted(resolved):
                    await self._orch.activity.health(f"{alert_type} resolved", commit=False)
        self._active = set(current)

        if report.status != "healthy":
            log.warning("health.check", status=report.status, alerts=[a.type for a in report.alerts])
        else:
            log.debug("health.check", status=report.status)
        return report
