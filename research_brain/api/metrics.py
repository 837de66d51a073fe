"""Prometheus /metrics endpoint — exports job, budget and scheduling gauges."""

from __future__ import annotations

from datetime import datetime, timezone

import structlog
from aiohttp import web
from prometheus_client import CollectorRegistry, Gauge, Info, generate_latest

from research_brain import __version__
from research_brain.api import ctx_key

log = structlog.get_logger()

# Custom registry avoids pytest conflicts with the global default registry.
registry = CollectorRegistry()

HEALTH_CODES = {"healthy": 0, "degraded": 1, "stalled": 2, "critical": 3}

# --- Jobs ---
rb_jobs = Gauge("rb_jobs", "Research jobs by status", ["status"], registry=registry)
rb_in_flight = Gauge("rb_in_flight_jobs", "Executor tasks running in this instance", registry=registry)

# --- Daily counters ---
rb_daily_cost_usd = Gauge("rb_daily_cost_usd", "Research spend today in USD", registry=registry)
rb_daily_jobs = Gauge("rb_daily_jobs", "Research jobs completed today", registry=registry)

# --- Budgets ---
rb_budget_used_today = Gauge("rb_budget_used_today_usd", "Provider spend today in USD", ["provider"], registry=registry)
rb_budget_daily = Gauge("rb_budget_daily_usd", "Provider daily budget in USD", ["provider"], registry=registry)
rb_budget_used_period = Gauge("rb_budget_used_period_usd", "Provider spend this period in USD", ["provider"], registry=registry)

# --- Scheduling ---
rb_backpressure = Gauge("rb_backpressure", "Backpressure counter per research mode", ["mode"], registry=registry)
rb_full_spectrum = Gauge("rb_full_spectrum_enabled", "Full-spectrum mode (1=on, 0=off)", registry=registry)
rb_enabled = Gauge("rb_autonomy_enabled", "Autonomous scheduling (1=on, 0=off)", registry=registry)
rb_health = Gauge("rb_health_status", "0=healthy 1=degraded 2=stalled 3=critical", registry=registry)
rb_uptime_seconds = Gauge("rb_uptime_seconds", "System uptime in seconds", registry=registry)

system_info = Info("rb_system", "Research orchestrator metadata", registry=registry)


async def metrics_handler(request: web.Request) -> web.Response:
    """Prometheus scrape endpoint. Reads current state and returns text metrics."""
    ctx = request.app[ctx_key]
    orch = ctx["orchestrator"]
    health = ctx.get("health")

    try:
        counts = await orch.jobs.counts_by_status()
        for status, n in counts.items():
            rb_jobs.labels(status=status).set(n)
        rb_in_flight.set(len(orch.in_flight))

        state = await orch.state_store.load()
        rb_daily_cost_usd.set(state.total_cost_today)
        rb_daily_jobs.set(state.total_jobs_today)
        rb_full_spectrum.set(1 if state.is_full_spectrum_enabled else 0)
        rb_enabled.set(1 if orch.enabled else 0)
        for mode, value in state.backpressure.items():
            rb_backpressure.labels(mode=mode.value).set(value)

        rb_budget_used_today.clear()
        rb_budget_daily.clear()
        rb_budget_used_period.clear()
        for row in await orch.ledger.all():
            rb_budget_used_today.labels(provider=row["provider"]).set(row["used_today"])
            rb_budget_daily.labels(provider=row["provider"]).set(row["daily_budget"])
            rb_budget_used_period.labels(provider=row["provider"]).set(row["used_period"])

        if health is not None:
            report = health.last_report or await health.check()
            rb_health.set(HEALTH_CODES.get(report.status, 3))

        system_info.info({"instance": orch.instance_id, "version": __version__})

        started_at = ctx.get("started_at")
        if started_at:
            rb_uptime_seconds.set((datetime.now(timezone.utc) - started_at).total_seconds())

    except Exception as e:
        log.error("metrics.collect_error", error=str(e), error_type=type(e).__name__)

    output = generate_latest(registry)
    resp = web.Response(body=output)
    resp.content_type = "text/plain"
    resp.headers["Content-Type"] = "text/plain; version=0.0.4; charset=utf-8"
    return resp
