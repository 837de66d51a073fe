"""Default candidate sink — stores accepted candidates for review."""

from __future__ import annotations

import json
import uuid

import structlog

from research_brain.shell.clock import Clock, to_db
from research_brain.shell.contract import CandidateSink, ResearchCandidate, ResearchJob
from research_brain.shell.database import Database

log = structlog.get_logger()

PENDING_REVIEW = "PENDING_REVIEW"


class DatabaseCandidateSink(CandidateSink):
    def __init__(self, db: Database, clock: Clock) -> None:
        self._db = db
        self._clock = clock

    async def submit(
        self,
        candidate: ResearchCandidate,
        job: ResearchJob,
        fingerprint_hash: str,
    ) -> str | None:
        if not candidate.name:
            raise ValueError("Candidate has no name")
        candidate_id = str(uuid.uuid4())
        await self._db.execute(
            """INSERT INTO strategy_candidates
               (id, job_id, name, archetype_name, hypothesis, rules_json, regime,
                fingerprint_hash, disposition, created_at)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
            (candidate_id, job.id, candidate.name, candidate.archetype_name,
             candidate.hypothesis, json.dumps(candidate.rules, default=str),
             candidate.regime, fingerprint_hash, PENDING_REVIEW, to_db(self._clock.now())),
        )
        log.info("sink.candidate_stored", candidate_id=candidate_id, name=candidate.name,
                 job_id=job.id, mode=job.mode.value)
        return candidate_id

    async def recent(self, limit: int = 20) -> list[dict]:
        """Latest stored candidates, newest first (executor history context)."""
        return await self._db.fetchall(
            "SELECT name, archetype_name, regime, created_at FROM strategy_candidates ORDER BY created_at DESC LIMIT ?",
            (limit,),
        )
