"""Job Store — persistence for research jobs.

All status changes are compare-and-set on the current status, so two
writers racing on the same job cannot both win. Every successful change
is appended to research_job_events.
"""

from __future__ import annotations

import json
import uuid
from datetime import datetime
from typing import Any

import structlog

from research_brain.orchestrator.lifecycle import check_transition
from research_brain.shell.clock import Clock, from_db, to_db
from research_brain.shell.contract import (
    JobStatus,
    ModePolicy,
    ResearchJob,
    ResearchMode,
)
from research_brain.shell.database import Database

log = structlog.get_logger()

ACTIVE_STATUSES = (JobStatus.QUEUED, JobStatus.RUNNING)

# Job attribute -> column for fields that may change alongside a transition
_UPDATABLE = {
    "scheduled_for": "scheduled_for",
    "started_at": "started_at",
    "completed_at": "completed_at",
    "context": "context_json",
    "result": "result_json",
    "candidates_created": "candidates_created",
    "error_message": "error_message",
    "retry_count": "retry_count",
    "fingerprint_hash": "fingerprint_hash",
    "deferred_reason": "deferred_reason",
    "cost_usd": "cost_usd",
    "input_tokens": "input_tokens",
    "output_tokens": "output_tokens",
}


class JobNotFound(Exception):
    pass


def _db_value(value: Any) -> Any:
    if isinstance(value, datetime):
        return to_db(value)
    if isinstance(value, dict):
        return json.dumps(value, default=str)
    return value


class JobStore:
    def __init__(self, db: Database, clock: Clock) -> None:
        self._db = db
        self._clock = clock

    async def create(
        self,
        mode: ResearchMode,
        policy: ModePolicy,
        *,
        context: dict | None = None,
        source: str = "scheduled",
        scheduled_for: datetime | None = None,
        max_retries: int = 0,
        priority: int | None = None,
        trace_id: str | None = None,
    ) -> ResearchJob:
        """Insert a new QUEUED job. Caller commits."""
        now = self._clock.now()
        job = ResearchJob(
            id=str(uuid.uuid4()),
            mode=mode,
            status=JobStatus.QUEUED,
            cost_class=policy.cost_class,
            priority=policy.priority if priority is None else priority,
            created_at=now,
            updated_at=now,
            scheduled_for=scheduled_for,
            max_retries=max_retries,
            context=context or {},
            trace_id=trace_id or uuid.uuid4().hex,
            source=source,
        )
        await self._db.execute(
            """INSERT INTO research_jobs
               (id, mode, status, cost_class, priority, scheduled_for, context_json,
                retry_count, max_retries, trace_id, source, created_at, updated_at)
               VALUES (?, ?, ?, ?, ?, ?, ?, 0, ?, ?, ?, ?, ?)""",
            (job.id, mode.value, job.status.value, job.cost_class.value, job.priority,
             to_db(scheduled_for), json.dumps(job.context, default=str), max_retries,
             job.trace_id, source, to_db(now), to_db(now)),
        )
        await self._record_event(job.id, None, JobStatus.QUEUED, source, now)
        log.info("jobs.created", job_id=job.id, mode=mode.value, priority=job.priority, source=source)
        return job

    async def transition(
        self,
        job: ResearchJob,
        to_status: JobStatus,
        reason: str | None = None,
        **fields: Any,
    ) -> bool:
        """Move job to to_status if it is still in job.status.

        Raises InvalidTransition for edges outside the lifecycle graph.
        Returns False when another writer changed the status first. On
        success the passed-in job object is updated in place. Caller commits.
        """
        check_transition(job.status, to_status, job.retry_count, job.max_retries)
        now = self._clock.now()

        sets = ["status = ?", "updated_at = ?"]
        params: list[Any] = [to_status.value, to_db(now)]
        for key, value in fields.items():
            column = _UPDATABLE.get(key)
            if column is None:
                raise ValueError(f"Field '{key}' cannot be updated by a transition")
            sets.append(f"{column} = ?")
            params.append(_db_value(value))
        params.extend([job.id, job.status.value])

        cursor = await self._db.execute(
            f"UPDATE research_jobs SET {', '.join(sets)} WHERE id = ? AND status = ?",
            tuple(params),
        )
        if cursor.rowcount != 1:
            log.info("jobs.transition_lost", job_id=job.id,
                     expected=job.status.value, wanted=to_status.value)
            return False

        await self._record_event(job.id, job.status, to_status, reason, now)
        log.debug("jobs.transition", job_id=job.id, mode=job.mode.value,
                  src=job.status.value, dst=to_status.value, reason=reason)
        job.status = to_status
        job.updated_at = now
        for key, value in fields.items():
            setattr(job, key, value)
        return True

    async def _record_event(
        self,
        job_id: str,
        src: JobStatus | None,
        dst: JobStatus,
        reason: str | None,
        now: datetime,
    ) -> None:
        await self._db.execute(
            "INSERT INTO research_job_events (job_id, from_status, to_status, reason, created_at) VALUES (?, ?, ?, ?, ?)",
            (job_id, src.value if src else None, dst.value, reason, to_db(now)),
        )

    # --- Queries ---

    async def get(self, job_id: str) -> ResearchJob | None:
        row = await self._db.fetchone("SELECT * FROM research_jobs WHERE id = ?", (job_id,))
        return ResearchJob.from_row(row) if row else None

    async def require(self, job_id: str) -> ResearchJob:
        job = await self.get(job_id)
        if job is None:
            raise JobNotFound(job_id)
        return job

    async def count(self, status: JobStatus) -> int:
        row = await self._db.fetchone(
            "SELECT COUNT(*) AS n FROM research_jobs WHERE status = ?", (status.value,)
        )
        return row["n"] if row else 0

    async def counts_by_status(self) -> dict[str, int]:
        rows = await self._db.fetchall(
            "SELECT status, COUNT(*) AS n FROM research_jobs GROUP BY status"
        )
        counts = {s.value: 0 for s in JobStatus}
        for r in rows:
            counts[r["status"]] = r["n"]
        return counts

    async def list_by_status(self, status: JobStatus) -> list[ResearchJob]:
        rows = await self._db.fetchall(
            "SELECT * FROM research_jobs WHERE status = ? ORDER BY created_at", (status.value,)
        )
        return [ResearchJob.from_row(r) for r in rows]

    async def modes_with_status(self, *statuses: JobStatus) -> set[ResearchMode]:
        """Modes covered by jobs in the given statuses, FULL_SPECTRUM sub-modes included."""
        placeholders = ", ".join("?" for _ in statuses)
        rows = await self._db.fetchall(
            f"SELECT * FROM research_jobs WHERE status IN ({placeholders})",
            tuple(s.value for s in statuses),
        )
        modes: set[ResearchMode] = set()
        for r in rows:
            job = ResearchJob.from_row(r)
            modes.add(job.mode)
            modes.update(job.sub_modes)
        return modes

    async def find_for_mode(self, mode: ResearchMode, status: JobStatus) -> ResearchJob | None:
        row = await self._db.fetchone(
            "SELECT * FROM research_jobs WHERE mode = ? AND status = ? ORDER BY created_at LIMIT 1",
            (mode.value, status.value),
        )
        return ResearchJob.from_row(row) if row else None

    async def eligible_queued(self, now: datetime) -> list[ResearchJob]:
        """QUEUED jobs whose scheduled_for has passed, best first.

        Order: priority desc, then scheduled time (or creation) asc.
        """
        rows = await self._db.fetchall(
            """SELECT * FROM research_jobs
               WHERE status = 'QUEUED' AND (scheduled_for IS NULL OR scheduled_for <= ?)
               ORDER BY priority DESC, COALESCE(scheduled_for, created_at) ASC, created_at ASC, id ASC""",
            (to_db(now),),
        )
        return [ResearchJob.from_row(r) for r in rows]

    async def deferred_with_reason(self, reason: str) -> list[ResearchJob]:
        rows = await self._db.fetchall(
            "SELECT * FROM research_jobs WHERE status = 'DEFERRED' AND deferred_reason = ? ORDER BY created_at",
            (reason,),
        )
        return [ResearchJob.from_row(r) for r in rows]

    async def recent(self, limit: int = 20) -> list[ResearchJob]:
        rows = await self._db.fetchall(
            "SELECT * FROM research_jobs ORDER BY created_at DESC, id DESC LIMIT ?", (limit,)
        )
        return [ResearchJob.from_row(r) for r in rows]

    async def events(self, job_id: str) -> list[dict]:
        return await self._db.fetchall(
            "SELECT from_status, to_status, reason, created_at FROM research_job_events WHERE job_id = ? ORDER BY id",
            (job_id,),
        )

    async def window_stats(self, since: datetime) -> dict:
        """Completed/failed outcomes since a point in time, with average latency."""
        rows = await self._db.fetchall(
            """SELECT to_status, COUNT(*) AS n FROM research_job_events
               WHERE created_at >= ? AND to_status IN ('COMPLETED', 'FAILED')
               GROUP BY to_status""",
            (to_db(since),),
        )
        counts = {r["to_status"]: r["n"] for r in rows}

        done = await self._db.fetchall(
            "SELECT started_at, completed_at FROM research_jobs WHERE status = 'COMPLETED' AND completed_at >= ?",
            (to_db(since),),
        )
        latencies = [
            (from_db(r["completed_at"]) - from_db(r["started_at"])).total_seconds()
            for r in done if r["started_at"] and r["completed_at"]
        ]
        return {
            "completed": counts.get("COMPLETED", 0),
            "failed": counts.get("FAILED", 0),
            "avg_latency_seconds": round(sum(latencies) / len(latencies), 2) if latencies else None,
        }
