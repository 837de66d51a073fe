"""Activity Log — operator-facing timeline of orchestrator events.

Orchestrator start/stop, mode toggles, job outcomes and health alerts land
in the ``activity_log`` table (served by ``GET /v1/activity``) and are
mirrored to structlog.
"""

from __future__ import annotations

import json
from functools import partialmethod
from typing import TYPE_CHECKING, Any

import structlog

from research_brain.shell.clock import Clock, SystemClock, to_db

if TYPE_CHECKING:
    from research_brain.shell.database import Database

log = structlog.get_logger()

CATEGORIES = ("SYSTEM", "ORCH", "JOB", "CANDIDATE", "HEALTH")
SEVERITIES = ("info", "warning", "error", "critical")


def _serialize(detail: dict | str | None) -> str | None:
    if detail is None or isinstance(detail, str):
        return detail
    try:
        return json.dumps(detail, default=str)
    except (TypeError, ValueError):
        return str(detail)


class ActivityLogger:
    def __init__(self, db: Database, clock: Clock | None = None) -> None:
        self._db = db
        self._clock = clock or SystemClock()

    async def log(
        self,
        category: str,
        summary: str,
        severity: str = "info",
        detail: dict | str | None = None,
        commit: bool = True,
    ) -> None:
        """Append one entry. Use commit=False when the caller owns the transaction."""
        await self._db.execute(
            "INSERT INTO activity_log (timestamp, category, severity, summary, detail) VALUES (?, ?, ?, ?, ?)",
            (to_db(self._clock.now()), category, severity, summary, _serialize(detail)),
        )
        if commit:
            await self._db.commit()
        log.info("activity", category=category, severity=severity, summary=summary)

    system = partialmethod(log, "SYSTEM")
    orch = partialmethod(log, "ORCH")
    job = partialmethod(log, "JOB")
    candidate = partialmethod(log, "CANDIDATE")
    health = partialmethod(log, "HEALTH")

    async def query(
        self,
        limit: int = 50,
        since: str | None = None,
        category: str | None = None,
        severity: str | None = None,
    ) -> list[dict]:
        """Newest-first entries, optionally filtered by time, category and severity."""
        clauses: list[str] = []
        params: list[Any] = []
        for clause, value in (("timestamp >= ?", since), ("category = ?", category), ("severity = ?", severity)):
            if value:
                clauses.append(clause)
                params.append(value)

        where = f"WHERE {' AND '.join(clauses)} " if clauses else ""
        params.append(limit)
        return await self._db.fetchall(f"SELECT * FROM activity_log {where}ORDER BY id DESC LIMIT ?", tuple(params))
