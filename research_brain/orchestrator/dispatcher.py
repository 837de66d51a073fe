"""Dispatcher — runs a claimed job through the research executor and
applies the outcome.

execute() runs outside any lock and never touches the database. record()
and fail() are called by the orchestrator inside a critical section with
a job that is still RUNNING; they update the job, budget ledger,
orchestrator state and fingerprint store in one transaction.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from datetime import timedelta

import structlog

from research_brain.orchestrator.budget import BudgetLedger
from research_brain.orchestrator.fingerprints import FingerprintStore, compute_fingerprint
from research_brain.orchestrator.jobs import JobStore
from research_brain.shell.activity import ActivityLogger
from research_brain.shell.clock import Clock
from research_brain.shell.contract import (
    CandidateSink,
    JobStatus,
    ModePolicy,
    OrchestratorState,
    ResearchCandidate,
    ResearchDiagnostics,
    ResearchExecutor,
    ResearchJob,
    ResearchMode,
    ResearchRequest,
)

log = structlog.get_logger()


@dataclass
class ModeOutcome:
    mode: ResearchMode
    success: bool
    error: str | None = None
    candidates: list[ResearchCandidate] = field(default_factory=list)
    diagnostics: ResearchDiagnostics = field(default_factory=ResearchDiagnostics)


@dataclass
class JobOutcome:
    modes: list[ModeOutcome]

    @property
    def success(self) -> bool:
        # A FULL_SPECTRUM job succeeds if any of its sub-modes did
        return any(m.success for m in self.modes)

    @property
    def error(self) -> str | None:
        errors = [f"{m.mode.value}: {m.error}" for m in self.modes if not m.success]
        if not errors:
            return None
        if len(self.modes) == 1:
            return self.modes[0].error
        return "; ".join(errors)

    @property
    def candidates(self) -> list[ResearchCandidate]:
        return [c for m in self.modes if m.success for c in m.candidates]

    @property
    def diagnostics(self) -> ResearchDiagnostics:
        total = ResearchDiagnostics()
        models = []
        for m in self.modes:
            total.input_tokens += m.diagnostics.input_tokens or 0
            total.output_tokens += m.diagnostics.output_tokens or 0
            total.cost_usd += max(0.0, m.diagnostics.cost_usd or 0.0)
            if m.diagnostics.model:
                models.append(m.diagnostics.model)
        total.model = ",".join(models)
        return total


class Dispatcher:
    def __init__(
        self,
        executor: ResearchExecutor,
        policies: dict[ResearchMode, ModePolicy],
        jobs: JobStore,
        fingerprints: FingerprintStore,
        ledger: BudgetLedger,
        sink: CandidateSink,
        activity: ActivityLogger,
        clock: Clock,
        retry_backoff_seconds: float = 60,
    ) -> None:
        self._executor = executor
        self._policies = policies
        self._jobs = jobs
        self._fingerprints = fingerprints
        self._ledger = ledger
        self._sink = sink
        self._activity = activity
        self._clock = clock
        self._retry_backoff = retry_backoff_seconds

    # --- Execution (no DB) ---

    async def execute(self, job: ResearchJob) -> JobOutcome:
        modes = job.sub_modes if job.mode == ResearchMode.FULL_SPECTRUM else [job.mode]
        if not modes:
            return JobOutcome([ModeOutcome(job.mode, False, "no sub-modes to run")])
        outcomes = await asyncio.gather(*(self._call(job, mode) for mode in modes))
        return JobOutcome(list(outcomes))

    async def _call(self, job: ResearchJob, mode: ResearchMode) -> ModeOutcome:
        policy = self._policies[mode]
        context = dict(job.context)
        context["mode"] = mode.value
        if mode != job.mode:
            context["parentMode"] = job.mode.value
        request = ResearchRequest(mode=mode, context=context, job_id=job.id)

        log.info("dispatcher.research_start", job_id=job.id, mode=mode.value,
                 timeout=policy.timeout_seconds, trace_id=job.trace_id)
        try:
            result = await asyncio.wait_for(
                self._executor.research(request), timeout=policy.timeout_seconds,
            )
        except asyncio.TimeoutError:
            log.warning("dispatcher.research_timeout", job_id=job.id, mode=mode.value,
                        timeout=policy.timeout_seconds)
            return ModeOutcome(mode, False, f"timeout after {policy.timeout_seconds}s")
        except Exception as e:
            log.warning("dispatcher.research_error", job_id=job.id, mode=mode.value,
                        error=str(e), error_type=type(e).__name__)
            return ModeOutcome(mode, False, f"{type(e).__name__}: {e}")

        diagnostics = result.diagnostics or ResearchDiagnostics()
        if result.error:
            log.warning("dispatcher.research_failed", job_id=job.id, mode=mode.value, error=result.error)
            return ModeOutcome(mode, False, result.error, diagnostics=diagnostics)
        return ModeOutcome(mode, True, candidates=list(result.candidates), diagnostics=diagnostics)

    # --- Recording (caller holds the critical section) ---

    async def record(self, job: ResearchJob, outcome: JobOutcome, state: OrchestratorState) -> JobStatus:
        if not outcome.success:
            return await self.fail(job, outcome.error or "unknown error", state, outcome)
        return await self._complete(job, outcome, state)

    async def _complete(self, job: ResearchJob, outcome: JobOutcome, state: OrchestratorState) -> JobStatus:
        now = self._clock.now()
        regime = job.context.get("currentRegime")
        accepted = 0
        duplicates = 0
        first_hash = None

        for candidate in outcome.candidates:
            cand_regime = candidate.regime or regime
            fp = compute_fingerprint(candidate, regime=cand_regime)
            check = await self._fingerprints.check_and_record(
                fp, now, archetype_name=candidate.archetype_name, regime=cand_regime,
            )
            if check.is_duplicate:
                duplicates += 1
                continue
            try:
                candidate_id = await self._sink.submit(candidate, job, fp)
            except Exception as e:
                log.warning("dispatcher.sink_rejected", job_id=job.id, candidate=candidate.name,
                            error=str(e), error_type=type(e).__name__)
                candidate_id = None
            if candidate_id is None:
                await self._fingerprints.discard(fp)
                continue
            await self._fingerprints.link_candidate(fp, candidate_id)
            accepted += 1
            if first_hash is None:
                first_hash = fp

        diag = outcome.diagnostics
        cost = max(0.0, diag.cost_usd)
        result = {
            "candidates_returned": len(outcome.candidates),
            "duplicates": duplicates,
            "model": diag.model,
            "modes": {
                m.mode.value: {"success": m.success, "error": m.error,
                               "cost_usd": round(max(0.0, m.diagnostics.cost_usd or 0.0), 6)}
                for m in outcome.modes
            },
        }
        await self._jobs.transition(
            job, JobStatus.COMPLETED, reason="success",
            completed_at=now, cost_usd=cost,
            input_tokens=diag.input_tokens, output_tokens=diag.output_tokens,
            candidates_created=accepted, fingerprint_hash=first_hash,
            result=result,
        )
        await self._charge(outcome, state)
        state.total_jobs_today += 1
        for m in outcome.modes:
            state.bump_backpressure(m.mode, -1 if m.success else 1)

        log.info("dispatcher.job_completed", job_id=job.id, mode=job.mode.value,
                 candidates=accepted, duplicates=duplicates, cost=f"${cost:.4f}")
        await self._activity.job(
            f"{job.mode.value} completed: {accepted} new candidate(s), {duplicates} duplicate(s)",
            detail={"job_id": job.id, "cost_usd": cost, "candidates_created": accepted},
            commit=False,
        )
        return JobStatus.COMPLETED

    async def fail(
        self,
        job: ResearchJob,
        error: str,
        state: OrchestratorState,
        outcome: JobOutcome | None = None,
    ) -> JobStatus:
        """RUNNING -> FAILED, then back to QUEUED with backoff while retries remain."""
        now = self._clock.now()
        diag = outcome.diagnostics if outcome else ResearchDiagnostics()
        await self._jobs.transition(
            job, JobStatus.FAILED, reason=error[:200],
            completed_at=now, error_message=error,
            cost_usd=max(0.0, diag.cost_usd),
            input_tokens=diag.input_tokens, output_tokens=diag.output_tokens,
        )
        if outcome:
            await self._charge(outcome, state)
        modes = [m.mode for m in outcome.modes] if outcome else job.sub_modes
        for mode in modes:
            state.bump_backpressure(mode, 1)

        if job.retry_count < job.max_retries:
            attempt = job.retry_count + 1
            delay = timedelta(seconds=self._retry_backoff * (2 ** (attempt - 1)))
            await self._jobs.transition(
                job, JobStatus.QUEUED, reason="retry",
                retry_count=attempt, scheduled_for=now + delay,
                started_at=None, completed_at=None,
                cost_usd=None, input_tokens=None, output_tokens=None,
            )
            log.warning("dispatcher.job_retry", job_id=job.id, mode=job.mode.value,
                        attempt=attempt, max_retries=job.max_retries,
                        retry_at=(now + delay).isoformat(), error=error)
            return JobStatus.QUEUED

        log.error("dispatcher.job_failed", job_id=job.id, mode=job.mode.value,
                  retries=job.retry_count, error=error)
        await self._activity.job(
            f"{job.mode.value} failed after {job.retry_count} retr{'y' if job.retry_count == 1 else 'ies'}: {error[:120]}",
            severity="error",
            detail={"job_id": job.id, "error": error},
            commit=False,
        )
        return JobStatus.FAILED

    async def _charge(self, outcome: JobOutcome, state: OrchestratorState) -> None:
        for m in outcome.modes:
            cost = max(0.0, m.diagnostics.cost_usd or 0.0)
            if cost <= 0:
                continue
            await self._ledger.record_spend(self._policies[m.mode].provider, cost)
            state.total_cost_today += cost
