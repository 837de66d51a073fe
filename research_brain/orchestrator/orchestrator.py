"""Research Orchestrator — decides when to launch research jobs.

Each tick runs one critical section (in-process lock + database lease):
reap stale RUNNING jobs, check the concurrency cap, enqueue modes that
are due, claim the best eligible QUEUED job. The executor then runs as a
background task outside the lock, and its outcome is recorded in a
second critical section only if the job is still RUNNING.
"""

from __future__ import annotations

import asyncio
import uuid
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import timedelta
from typing import AsyncIterator, Awaitable, Callable

import aiosqlite
import structlog

from research_brain.orchestrator.budget import BUDGET_EXCEEDED, BudgetCheck, BudgetLedger
from research_brain.orchestrator.dispatcher import Dispatcher, JobOutcome
from research_brain.orchestrator.fingerprints import FingerprintStore
from research_brain.orchestrator.jobs import ACTIVE_STATUSES, JobStore
from research_brain.orchestrator.scheduler import PlannedJob, Scheduler
from research_brain.orchestrator.sink import DatabaseCandidateSink
from research_brain.orchestrator.state import StateStore
from research_brain.shell.activity import ActivityLogger
from research_brain.shell.clock import Clock, SystemClock
from research_brain.shell.config import Config
from research_brain.shell.contract import (
    AUTONOMOUS_MODES,
    CandidateSink,
    JobStatus,
    OrchestratorState,
    ResearchExecutor,
    ResearchJob,
    ResearchMode,
    parse_sub_modes,
)
from research_brain.shell.database import Database
from research_brain.shell.lock import LeaseLock, LockTimeout, lease_expired

log = structlog.get_logger()

RegimeProvider = Callable[[], Awaitable[str | None]]

# First backoff when the outcome cannot be written because the lease is held
RECORD_RETRY_SECONDS = 0.5


@dataclass
class TickResult:
    status: str                     # 'launched', 'idle', 'saturated', 'lock_unavailable'
    job_id: str | None = None
    enqueued: list[str] = field(default_factory=list)
    deferred: list[str] = field(default_factory=list)
    reaped: list[str] = field(default_factory=list)


class Orchestrator:
    def __init__(
        self,
        config: Config,
        db: Database,
        executor: ResearchExecutor,
        clock: Clock | None = None,
        sink: CandidateSink | None = None,
        activity: ActivityLogger | None = None,
        instance_id: str | None = None,
        regime_provider: RegimeProvider | None = None,
    ) -> None:
        self._config = config
        self._cfg = config.orchestrator
        self._db = db
        self._clock = clock or SystemClock()
        self._policies = config.orchestrator.policies()
        self._instance_id = instance_id or f"{config.instance_name}-{uuid.uuid4().hex[:8]}"
        self._regime_provider = regime_provider
        self._enabled = self._cfg.enabled

        self._jobs = JobStore(db, self._clock)
        self._fingerprints = FingerprintStore(db, self._clock, ttl_hours=self._cfg.dedup_ttl_hours)
        self._ledger = BudgetLedger(db, self._clock, tz_name=config.timezone)
        self._state = StateStore(db, self._clock)
        self._scheduler = Scheduler(self._policies, tz_name=config.timezone)
        self._sink = sink or DatabaseCandidateSink(db, self._clock)
        self._activity = activity or ActivityLogger(db, self._clock)
        self._dispatcher = Dispatcher(
            executor, self._policies, self._jobs, self._fingerprints, self._ledger,
            self._sink, self._activity, self._clock,
            retry_backoff_seconds=self._cfg.retry_backoff_seconds,
        )
        self._lock = LeaseLock(
            db, self._clock, holder=self._instance_id,
            lease_seconds=self._cfg.lock_lease_seconds,
            wait_seconds=self._cfg.lock_wait_seconds,
        )
        self._local_lock = asyncio.Lock()
        self._tasks: dict[str, asyncio.Task] = {}
        self._last_tick_at = None

    # --- Accessors ---

    @property
    def instance_id(self) -> str:
        return self._instance_id

    @property
    def enabled(self) -> bool:
        return self._enabled

    @property
    def last_tick_at(self):
        return self._last_tick_at

    @property
    def jobs(self) -> JobStore:
        return self._jobs

    @property
    def ledger(self) -> BudgetLedger:
        return self._ledger

    @property
    def fingerprints(self) -> FingerprintStore:
        return self._fingerprints

    @property
    def scheduler(self) -> Scheduler:
        return self._scheduler

    @property
    def state_store(self) -> StateStore:
        return self._state

    @property
    def activity(self) -> ActivityLogger:
        return self._activity

    @property
    def clock(self) -> Clock:
        return self._clock

    @property
    def config(self) -> Config:
        return self._config

    @property
    def in_flight(self) -> list[str]:
        return list(self._tasks)

    # --- Critical sections ---

    @asynccontextmanager
    async def critical_section(self, wait: bool = True) -> AsyncIterator[bool]:
        """Hold the in-process lock and the database lease.

        Yields False when the lease is unavailable (wait=False only). The
        transaction is committed on a clean exit and rolled back otherwise.
        """
        if not wait and self._local_lock.locked():
            yield False
            return
        async with self._local_lock:
            if not await self._lock.acquire(wait=wait):
                yield False
                return
            try:
                yield True
                await self._db.commit()
            except BaseException:
                await self._db.rollback()
                raise
            finally:
                await self._lock.release()

    # --- Lifecycle ---

    async def initialize(self) -> None:
        """Create the state row, seed budgets and catch up on a missed daily reset."""
        async with self.critical_section():
            await self._state.ensure()
            await self._ledger.seed(self._config.budgets)
        await self.daily_reset()
        async with self.critical_section():
            await self._activity.system(
                "RESEARCH_ORCHESTRATOR_STARTED",
                detail={"instance_id": self._instance_id, "enabled": self._enabled,
                        "max_concurrent_jobs": self._cfg.max_concurrent_jobs},
                commit=False,
            )
        log.info("orchestrator.initialized", instance_id=self._instance_id, enabled=self._enabled)

    async def shutdown(self) -> None:
        """Cancel in-flight executor tasks. Their jobs are reaped as stale later."""
        tasks = list(self._tasks.values())
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        log.info("orchestrator.shutdown", cancelled=len(tasks))

    async def drain(self) -> None:
        """Wait for all in-flight jobs to finish and record their outcome."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks.values()), return_exceptions=True)

    # --- Tick ---

    async def tick(self) -> TickResult:
        now = self._clock.now()
        self._last_tick_at = now
        launched: ResearchJob | None = None

        async with self.critical_section(wait=False) as acquired:
            if not acquired:
                log.debug("orchestrator.tick_skipped", reason="lock_unavailable")
                return TickResult("lock_unavailable")

            state = await self._state.load()
            result = TickResult("idle")
            result.reaped = await self._reap_stale(state, now)

            running = await self._jobs.count(JobStatus.RUNNING)
            if running >= self._cfg.max_concurrent_jobs:
                log.debug("orchestrator.saturated", running=running, cap=self._cfg.max_concurrent_jobs)
                await self._state.save(state)
                result.status = "saturated"
                return result

            if self._enabled:
                result.enqueued = await self._enqueue_due(state, now)

            launched, result.deferred = await self._claim_next(state, now)
            state.provider_quota = await self._ledger.quota_snapshot()
            await self._state.save(state)

        if launched:
            result.status = "launched"
            result.job_id = launched.id
            self._launch(launched)
        return result

    async def _reap_stale(self, state: OrchestratorState, now) -> list[str]:
        """Fail RUNNING jobs whose lease (timeout + grace) has run out."""
        reaped = []
        grace = timedelta(seconds=self._cfg.stale_job_grace_seconds)
        for job in await self._jobs.list_by_status(JobStatus.RUNNING):
            if job.started_at is None:
                continue
            deadline = job.started_at + timedelta(seconds=self.job_timeout(job)) + grace
            if deadline >= now:
                continue
            log.warning("orchestrator.stale_job", job_id=job.id, mode=job.mode.value,
                        started_at=job.started_at.isoformat())
            await self._dispatcher.fail(job, "lease expired", state)
            task = self._tasks.get(job.id)
            if task and not task.done():
                task.cancel()
            reaped.append(job.id)
        return reaped

    async def _enqueue_due(self, state: OrchestratorState, now) -> list[str]:
        busy = await self._jobs.modes_with_status(*ACTIVE_STATUSES)
        enqueued = []
        for plan in self._scheduler.plan(state, now, busy):
            job = await self._enqueue(plan, state)
            enqueued.append(job.id)
            for mode in plan.sub_modes or (plan.mode,):
                state.last_run[mode] = now
        return enqueued

    async def _enqueue(self, plan: PlannedJob, state: OrchestratorState) -> ResearchJob:
        context = await self._build_context(plan.mode, plan.sub_modes)
        deferred = await self._jobs.find_for_mode(plan.mode, JobStatus.DEFERRED)
        if deferred:
            await self._jobs.transition(
                deferred, JobStatus.QUEUED, reason="revived",
                deferred_reason=None, context=context,
            )
            log.info("orchestrator.job_revived", job_id=deferred.id, mode=plan.mode.value)
            return deferred
        return await self._jobs.create(
            plan.mode, self._policies[plan.mode],
            context=context, max_retries=self._cfg.default_max_retries,
        )

    async def _claim_next(self, state: OrchestratorState, now) -> tuple[ResearchJob | None, list[str]]:
        running_modes = await self._jobs.modes_with_status(JobStatus.RUNNING)
        deferred = []
        for job in await self._jobs.eligible_queued(now):
            if running_modes.intersection(job.sub_modes) or job.mode in running_modes:
                continue

            check = await self._budget_check(job, state)
            if not check.passed:
                await self._jobs.transition(
                    job, JobStatus.DEFERRED, reason=check.reason,
                    deferred_reason=BUDGET_EXCEEDED,
                )
                for mode in job.sub_modes:
                    state.bump_backpressure(mode, 1)
                deferred.append(job.id)
                log.info("budget.deferred", job_id=job.id, mode=job.mode.value, reason=check.reason)
                await self._activity.job(
                    f"{job.mode.value} deferred: {check.reason}", severity="warning",
                    detail={"job_id": job.id}, commit=False,
                )
                continue

            try:
                claimed = await self._jobs.transition(
                    job, JobStatus.RUNNING, reason="claimed", started_at=now,
                )
            except aiosqlite.IntegrityError:
                log.info("orchestrator.claim_conflict", job_id=job.id, mode=job.mode.value)
                continue
            if claimed:
                log.info("orchestrator.job_claimed", job_id=job.id, mode=job.mode.value,
                         priority=job.priority, retry=job.retry_count)
                return job, deferred
        return None, deferred

    async def _budget_check(self, job: ResearchJob, state: OrchestratorState) -> BudgetCheck:
        per_provider: dict[str, float] = {}
        for mode in job.sub_modes:
            policy = self._policies[mode]
            per_provider[policy.provider] = per_provider.get(policy.provider, 0.0) + policy.estimated_cost_usd
        total = sum(per_provider.values())
        cap = self._cfg.max_daily_cost_usd
        if state.total_cost_today >= cap or state.total_cost_today + total > cap:
            return BudgetCheck(
                False,
                f"orchestrator daily cap ${cap:.2f} reached "
                f"(${state.total_cost_today:.2f} spent, ${total:.2f} estimated)",
            )
        for provider, estimate in per_provider.items():
            check = await self._ledger.check(provider, estimate)
            if not check.passed:
                return check
        return BudgetCheck(True, "ok")

    def job_timeout(self, job: ResearchJob) -> int:
        return max((self._policies[m].timeout_seconds for m in job.sub_modes),
                   default=self._policies[job.mode].timeout_seconds)

    async def _build_context(
        self,
        mode: ResearchMode,
        sub_modes: tuple[ResearchMode, ...] = (),
        extra: dict | None = None,
    ) -> dict:
        policy = self._policies[mode]
        context = {
            "mode": mode.value,
            "modeParams": {"costClass": policy.cost_class.value, "priority": policy.priority},
            "recentCandidates": await self._sink.recent(self._cfg.history_limit),
        }
        if sub_modes:
            context["subModes"] = [m.value for m in sub_modes]
        if self._regime_provider:
            try:
                regime = await self._regime_provider()
            except Exception as e:
                log.warning("orchestrator.regime_unavailable", error=str(e))
                regime = None
            if regime:
                context["currentRegime"] = regime
        if extra:
            context.update(extra)
        return context

    # --- Execution ---

    def _launch(self, job: ResearchJob) -> None:
        task = asyncio.create_task(self._run_job(job), name=f"research-{job.id}")
        self._tasks[job.id] = task
        task.add_done_callback(lambda t, job_id=job.id: self._on_job_done(job_id, t))

    def _on_job_done(self, job_id: str, task: asyncio.Task) -> None:
        self._tasks.pop(job_id, None)
        if task.cancelled():
            return
        exc = task.exception()
        if exc:
            log.error("orchestrator.job_task_failed", job_id=job_id, error=str(exc),
                      error_type=type(exc).__name__)

    async def _run_job(self, job: ResearchJob) -> None:
        try:
            outcome = await self._dispatcher.execute(job)
        except asyncio.CancelledError:
            log.info("orchestrator.job_cancelled_in_flight", job_id=job.id, mode=job.mode.value)
            raise
        await self._record_until_settled(job.id, outcome)

    async def _record_until_settled(self, job_id: str, outcome: JobOutcome) -> JobStatus | None:
        """Record the outcome, retrying while another holder keeps the lease.

        The provider has already been paid, so the outcome is kept until it is
        written or the job leaves RUNNING (cancelled, or reaped by a peer).
        """
        attempt = 0
        while True:
            try:
                return await self._record(job_id, outcome)
            except LockTimeout:
                attempt += 1
            job = await self._jobs.get(job_id)
            if job is None or job.status != JobStatus.RUNNING:
                log.info("orchestrator.result_discarded", job_id=job_id,
                         status=job.status.value if job else None)
                return None
            holder = await self._lock.current()
            delay = min(RECORD_RETRY_SECONDS * 2 ** (attempt - 1), self._cfg.lock_lease_seconds)
            log.warning("orchestrator.record_retry", job_id=job_id, attempt=attempt, delay=delay,
                        held_by=holder["holder"] if holder else None,
                        lease_expired=lease_expired(holder, self._clock.now()) if holder else True)
            await asyncio.sleep(delay)

    async def _record(self, job_id: str, outcome: JobOutcome) -> JobStatus | None:
        async with self.critical_section(wait=True):
            job = await self._jobs.get(job_id)
            if job is None or job.status != JobStatus.RUNNING:
                log.info("orchestrator.result_discarded", job_id=job_id,
                         status=job.status.value if job else None)
                return None
            state = await self._state.load()
            status = await self._dispatcher.record(job, outcome, state)
            state.provider_quota = await self._ledger.quota_snapshot()
            await self._state.save(state)
            return status

    # --- Control operations ---

    async def trigger_manual_run(
        self,
        mode: ResearchMode,
        context: dict | None = None,
        priority: int | None = None,
    ) -> ResearchJob:
        """Queue a job outside the regular cadence, then tick. Budget still applies.

        Raises InvalidRequest when a FULL_SPECTRUM subModes list names
        anything but autonomous modes.
        """
        sub_modes: tuple[ResearchMode, ...] = ()
        if mode == ResearchMode.FULL_SPECTRUM:
            requested = (context or {}).get("subModes")
            sub_modes = AUTONOMOUS_MODES if requested is None else parse_sub_modes(requested)
        async with self.critical_section(wait=True):
            ctx = await self._build_context(mode, sub_modes, context)
            if sub_modes:
                ctx["subModes"] = [m.value for m in sub_modes]
            job = await self._jobs.create(
                mode, self._policies[mode], context=ctx, source="manual",
                max_retries=self._cfg.default_max_retries, priority=priority,
            )
            await self._activity.orch(f"Manual {mode.value} run queued", detail={"job_id": job.id}, commit=False)
        await self.tick()
        return await self._jobs.require(job.id)

    async def cancel_job(self, job_id: str) -> ResearchJob:
        """QUEUED/RUNNING -> CANCELLED. A late executor result is discarded."""
        async with self.critical_section(wait=True):
            job = await self._jobs.require(job_id)
            await self._jobs.transition(
                job, JobStatus.CANCELLED, reason="cancelled by operator",
                completed_at=self._clock.now(),
            )
            await self._activity.job(f"{job.mode.value} cancelled", detail={"job_id": job.id}, commit=False)
        task = self._tasks.get(job_id)
        if task and not task.done():
            task.cancel()
        log.info("orchestrator.job_cancelled", job_id=job_id)
        return job

    async def enable_full_spectrum(self, enabled: bool) -> None:
        async with self.critical_section(wait=True):
            state = await self._state.load()
            state.is_full_spectrum_enabled = enabled
            await self._state.save(state)
            await self._activity.orch(
                "RESEARCH_ORCHESTRATOR_TOGGLE",
                detail={"full_spectrum": enabled}, commit=False,
            )
        log.info("orchestrator.full_spectrum", enabled=enabled)

    async def set_enabled(self, enabled: bool) -> None:
        """Turn autonomous scheduling on or off. Queued and manual jobs still run."""
        async with self.critical_section(wait=True):
            self._enabled = enabled
            await self._activity.orch(
                f"Autonomous scheduling {'enabled' if enabled else 'disabled'}",
                detail={"enabled": enabled}, commit=False,
            )
        log.info("orchestrator.autonomy", enabled=enabled)

    async def daily_reset(self) -> bool:
        """Reset daily counters once per local day. Returns True if anything was reset."""
        async with self.critical_section(wait=True):
            now = self._clock.now()
            state = await self._state.load()
            providers = await self._ledger.reset_if_due(now)

            today = self._ledger.local_date(now)
            last = state.last_daily_reset_at
            due = last is None or self._ledger.local_date(last) != today
            revived = []
            if due:
                state.total_jobs_today = 0
                state.total_cost_today = 0.0
                state.last_daily_reset_at = now
                for mode in AUTONOMOUS_MODES:
                    ceiling = self._policies[mode].backpressure_ceiling
                    if state.backpressure_for(mode) > ceiling:
                        state.backpressure[mode] = ceiling
                for job in await self._jobs.deferred_with_reason(BUDGET_EXCEEDED):
                    if await self._jobs.transition(job, JobStatus.QUEUED, reason="daily reset", deferred_reason=None):
                        revived.append(job.id)

            state.provider_quota = await self._ledger.quota_snapshot()
            await self._state.save(state)
            if due:
                await self._activity.orch(
                    "Daily research budget reset",
                    detail={"providers": providers, "revived_jobs": len(revived)},
                    commit=False,
                )
        if due or providers:
            log.info("orchestrator.daily_reset", providers=providers, revived=len(revived))
        return due or bool(providers)

    async def purge_expired_fingerprints(self) -> int:
        async with self.critical_section(wait=True):
            return await self._fingerprints.purge_expired(self._clock.now())

    # --- Queries ---

    async def get_status(self) -> dict:
        now = self._clock.now()
        state = await self._state.load()
        counts = await self._jobs.counts_by_status()
        modes = {}
        for mode in AUTONOMOUS_MODES:
            decision = self._scheduler.evaluate(mode, state, now)
            nxt = decision.next_eligible_at
            last = state.last_run_at(mode)
            modes[mode.value] = {
                "last_run_at": last.isoformat() if last else None,
                "next_eligible_at": nxt.isoformat() if nxt else None,
                "seconds_until_next": max(0, int((nxt - now).total_seconds())) if nxt else None,
                "backpressure": state.backpressure_for(mode),
                "reason": decision.reason,
            }
        return {
            "is_enabled": self._enabled,
            "is_full_spectrum": state.is_full_spectrum_enabled,
            "running_jobs": counts[JobStatus.RUNNING.value],
            "queued_jobs": counts[JobStatus.QUEUED.value],
            "deferred_jobs": counts[JobStatus.DEFERRED.value],
            "daily_cost": round(state.total_cost_today, 4),
            "daily_jobs": state.total_jobs_today,
            "modes": modes,
            "provider_quota": state.provider_quota,
            "instance_id": self._instance_id,
            "last_tick_at": self._last_tick_at.isoformat() if self._last_tick_at else None,
        }

    async def get_recent_jobs(self, limit: int = 20) -> list[dict]:
        return [job.to_dict() for job in await self._jobs.recent(limit)]

    async def get_job(self, job_id: str) -> dict:
        job = await self._jobs.require(job_id)
        data = job.to_dict()
        data["context"] = job.context
        data["result"] = job.result
        data["events"] = await self._jobs.events(job_id)
        return data
