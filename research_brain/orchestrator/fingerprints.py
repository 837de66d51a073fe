"""Candidate de-duplication by content fingerprint.

A fingerprint is a truncated SHA-256 of the candidate's normalized
archetype, hypothesis, rules and market regime. A record is remembered
for a TTL; an expired record counts as absent and is replaced on the
next sighting.
"""

from __future__ import annotations

import hashlib
import json
import re
from dataclasses import dataclass
from datetime import datetime, timedelta

import structlog

from research_brain.shell.clock import Clock, to_db
from research_brain.shell.contract import ResearchCandidate
from research_brain.shell.database import Database

log = structlog.get_logger()

FINGERPRINT_LENGTH = 32

_WS = re.compile(r"\s+")


def _normalize(value: str | None) -> str:
    return _WS.sub(" ", (value or "").strip().lower())


def compute_fingerprint(candidate: ResearchCandidate, regime: str | None = None) -> str:
    rules = json.dumps(candidate.rules or {}, sort_keys=True, default=str)
    parts = [
        _normalize(candidate.archetype_name),
        _normalize(candidate.hypothesis),
        _normalize(rules),
        _normalize(regime if regime is not None else candidate.regime),
    ]
    return hashlib.sha256("|".join(parts).encode()).hexdigest()[:FINGERPRINT_LENGTH]


@dataclass
class FingerprintCheck:
    fingerprint_hash: str
    is_duplicate: bool
    hit_count: int


class FingerprintStore:
    def __init__(self, db: Database, clock: Clock, ttl_hours: float = 24) -> None:
        self._db = db
        self._clock = clock
        self._ttl = timedelta(hours=ttl_hours)

    async def check_and_record(
        self,
        fingerprint_hash: str,
        now: datetime | None = None,
        archetype_name: str | None = None,
        regime: str | None = None,
    ) -> FingerprintCheck:
        """Record a sighting. Duplicate iff an unexpired record already exists. Caller commits."""
        now = now or self._clock.now()
        now_s = to_db(now)
        row = await self._db.fetchone(
            "SELECT hit_count, expires_at FROM candidate_fingerprints WHERE fingerprint_hash = ?",
            (fingerprint_hash,),
        )

        if row and (row["expires_at"] is None or row["expires_at"] >= now_s):
            hits = row["hit_count"] + 1
            await self._db.execute(
                "UPDATE candidate_fingerprints SET hit_count = ?, last_seen_at = ? WHERE fingerprint_hash = ?",
                (hits, now_s, fingerprint_hash),
            )
            log.info("dedup.duplicate", fingerprint=fingerprint_hash, hit_count=hits)
            return FingerprintCheck(fingerprint_hash, True, hits)

        # Absent or expired: start a fresh record
        await self._db.execute(
            """INSERT OR REPLACE INTO candidate_fingerprints
               (fingerprint_hash, candidate_id, archetype_name, regime_context,
                hit_count, last_seen_at, expires_at, created_at)
               VALUES (?, NULL, ?, ?, 1, ?, ?, ?)""",
            (fingerprint_hash, archetype_name, regime, now_s, to_db(now + self._ttl), now_s),
        )
        if row:
            log.debug("dedup.expired_replaced", fingerprint=fingerprint_hash)
        return FingerprintCheck(fingerprint_hash, False, 1)

    async def link_candidate(self, fingerprint_hash: str, candidate_id: str) -> None:
        await self._db.execute(
            "UPDATE candidate_fingerprints SET candidate_id = ? WHERE fingerprint_hash = ?",
            (candidate_id, fingerprint_hash),
        )

    async def discard(self, fingerprint_hash: str) -> None:
        """Forget a freshly recorded fingerprint whose candidate was not stored."""
        await self._db.execute(
            "DELETE FROM candidate_fingerprints WHERE fingerprint_hash = ? AND hit_count = 1 AND candidate_id IS NULL",
            (fingerprint_hash,),
        )

    async def get(self, fingerprint_hash: str) -> dict | None:
        return await self._db.fetchone(
            "SELECT * FROM candidate_fingerprints WHERE fingerprint_hash = ?", (fingerprint_hash,)
        )

    async def purge_expired(self, now: datetime | None = None) -> int:
        now = now or self._clock.now()
        cursor = await self._db.execute(
            "DELETE FROM candidate_fingerprints WHERE expires_at IS NOT NULL AND expires_at < ?",
            (to_db(now),),
        )
        purged = cursor.rowcount or 0
        if purged:
            log.info("dedup.purged", count=purged)
        return purged
