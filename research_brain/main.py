"""Research Brain — autonomous research orchestrator.

Main entry point. Wires all components, manages lifecycle, drives the tick.

Startup: load config -> connect DB -> init AI -> init orchestrator (state, budgets, daily reset)
         -> start API -> start scheduler
Shutdown: stop scheduler -> cancel in-flight research -> stop API -> close AI -> close DB
"""

from __future__ import annotations

import asyncio
import signal
from datetime import datetime, timedelta
from pathlib import Path
from typing import Awaitable, Callable

import structlog
from aiohttp import web
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger

from research_brain.api.server import create_app as create_api_app
from research_brain.orchestrator.ai_client import AIClient
from research_brain.orchestrator.executor import AIResearchExecutor
from research_brain.orchestrator.health import HealthMonitor
from research_brain.orchestrator.orchestrator import Orchestrator
from research_brain.shell.config import Config, load_config
from research_brain.shell.database import Database
from research_brain.utils.logging import setup_logging

log = structlog.get_logger()


def _guarded(event: str, func: Callable[[], Awaitable[object]]) -> Callable[[], Awaitable[None]]:
    """Wrap a scheduled coroutine so a failure is logged and the job keeps its schedule."""

    async def job() -> None:
        try:
            await func()
        except Exception as e:
            log.error(event, error=str(e), error_type=type(e).__name__)

    return job


class ResearchBrain:
    """Main application — owns the scheduler and component lifecycle."""

    def __init__(self, config: Config | None = None) -> None:
        self._config = config
        self._db: Database | None = None
        self._ai: AIClient | None = None
        self._orchestrator: Orchestrator | None = None
        self._health: HealthMonitor | None = None
        self._scheduler: AsyncIOScheduler | None = None
        self._api_runner: web.AppRunner | None = None
        self._running = False

    @property
    def running(self) -> bool:
        return self._running

    async def start(self) -> None:
        """Full startup sequence, then keep alive until stop()."""
        log.info("brain.starting")

        # 1. Config
        if self._config is None:
            self._config = load_config()
        setup_logging(self._config.log_level, instance=self._config.instance_name)
        log.info("config.loaded", timezone=self._config.timezone,
                 max_concurrent=self._config.orchestrator.max_concurrent_jobs,
                 enabled=self._config.orchestrator.enabled)

        # 2. Database
        Path(self._config.db_path).parent.mkdir(parents=True, exist_ok=True)
        self._db = Database(self._config.db_path)
        await self._db.connect()

        # 3. AI executor
        if self._config.ai.provider == "anthropic" and not self._config.ai.anthropic_api_key:
            log.warning("ai.no_api_key", hint="Set ANTHROPIC_API_KEY in .env — research calls will fail")
        self._ai = AIClient(self._config.ai)
        await self._ai.initialize()
        policies = self._config.orchestrator.policies()
        executor = AIResearchExecutor(self._ai, self._config.ai, policies)

        # 4. Orchestrator
        self._orchestrator = Orchestrator(self._config, self._db, executor)
        await self._orchestrator.initialize()
        self._health = HealthMonitor(
            self._orchestrator, self._config.observability,
            driver_running=lambda: self._scheduler is not None and self._scheduler.running,
        )

        # 5. API (optional)
        if self._config.api.enabled:
            app = create_api_app(self._config, self._orchestrator, self._health)
            self._api_runner = web.AppRunner(app)
            await self._api_runner.setup()
            site = web.TCPSite(self._api_runner, self._config.api.host, self._config.api.port)
            await site.start()
            log.info("api.started", host=self._config.api.host, port=self._config.api.port)

        # 6. Scheduler (configured timezone for the midnight reset)
        self._scheduler = AsyncIOScheduler(timezone=self._config.timezone)
        self._setup_jobs()
        self._scheduler.start()

        self._running = True
        log.info("brain.started", instance_id=self._orchestrator.instance_id)

        while self._running:
            await asyncio.sleep(1)

    def _setup_jobs(self) -> None:
        orch = self._orchestrator
        orch_cfg = self._config.orchestrator
        soon = datetime.now()

        self._scheduler.add_job(
            self._tick, IntervalTrigger(seconds=orch_cfg.tick_interval_seconds),
            id="tick", name="Research Tick", max_instances=1, coalesce=True,
            next_run_time=soon + timedelta(seconds=5),
        )
        # Midnight in the scheduler's timezone, i.e. the configured local day
        self._scheduler.add_job(
            _guarded("orchestrator.daily_reset_failed", orch.daily_reset),
            CronTrigger(hour=0, minute=0), id="daily_reset", name="Daily Budget Reset",
        )
        self._scheduler.add_job(
            _guarded("dedup.purge_failed", orch.purge_expired_fingerprints),
            IntervalTrigger(hours=1), id="fingerprint_purge", name="Fingerprint Purge",
        )
        self._scheduler.add_job(
            _guarded("health.check_failed", self._health.run),
            IntervalTrigger(minutes=self._config.observability.health_check_minutes),
            id="health_check", name="Health Check", next_run_time=soon + timedelta(minutes=1),
        )
        log.info("scheduler.configured", tick_seconds=orch_cfg.tick_interval_seconds,
                 jobs=[job.id for job in self._scheduler.get_jobs()])

    async def _tick(self) -> None:
        try:
            result = await self._orchestrator.tick()
        except Exception as e:
            log.error("orchestrator.tick_failed", error=str(e), error_type=type(e).__name__)
            return
        if result.status == "launched" or result.enqueued or result.deferred or result.reaped:
            log.info("orchestrator.tick", status=result.status, job_id=result.job_id,
                     enqueued=len(result.enqueued), deferred=len(result.deferred),
                     reaped=len(result.reaped))

    async def stop(self) -> None:
        """Graceful shutdown sequence."""
        log.info("brain.stopping")
        self._running = False

        if self._scheduler:
            self._scheduler.shutdown(wait=False)

        if self._orchestrator:
            await self._orchestrator.shutdown()
            try:
                async with self._orchestrator.critical_section():
                    await self._orchestrator.activity.system("Research orchestrator stopped", commit=False)
            except Exception as e:
                log.warning("shutdown.activity_failed", error=str(e))

        if self._api_runner:
            await self._api_runner.cleanup()

        if self._ai:
            await self._ai.close()

        if self._db:
            await self._db.close()

        log.info("brain.stopped")


async def main() -> None:
    brain = ResearchBrain()

    # Handle SIGTERM/SIGINT for graceful shutdown
    loop = asyncio.get_running_loop()

    _stop_task = None

    def signal_handler():
        nonlocal _stop_task
        if _stop_task is None:
            _stop_task = asyncio.create_task(brain.stop())

    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, signal_handler)

    try:
        await brain.start()
    except KeyboardInterrupt:
        pass
    finally:
        if brain.running:
            await brain.stop()
        if _stop_task is not None:
            await _stop_task


def run() -> None:
    """Entry point for pyproject.toml script."""
    asyncio.run(main())


if __name__ == "__main__":
    run()
