"""Orchestrator State — the singleton row holding cross-tick memory."""

from __future__ import annotations

import json

import structlog

from research_brain.shell.clock import Clock, from_db, to_db
from research_brain.shell.contract import OrchestratorState, ResearchMode
from research_brain.shell.database import Database

log = structlog.get_logger()

STATE_ROW_ID = 1

# Column prefix per autonomously scheduled mode
MODE_COLUMNS = {
    ResearchMode.CONTRARIAN_SCAN: "contrarian",
    ResearchMode.SENTIMENT_BURST: "sentiment",
    ResearchMode.DEEP_REASONING: "deep_reasoning",
}


class StateStore:
    def __init__(self, db: Database, clock: Clock) -> None:
        self._db = db
        self._clock = clock

    async def ensure(self) -> None:
        """Create the singleton row on first boot."""
        now_s = to_db(self._clock.now())
        cursor = await self._db.execute(
            "INSERT OR IGNORE INTO orchestrator_state (id, provider_quota_json, created_at, updated_at) VALUES (?, '{}', ?, ?)",
            (STATE_ROW_ID, now_s, now_s),
        )
        if cursor.rowcount:
            log.info("state.created")

    async def load(self) -> OrchestratorState:
        row = await self._db.fetchone("SELECT * FROM orchestrator_state WHERE id = ?", (STATE_ROW_ID,))
        if row is None:
            await self.ensure()
            row = await self._db.fetchone("SELECT * FROM orchestrator_state WHERE id = ?", (STATE_ROW_ID,))

        state = OrchestratorState(
            is_full_spectrum_enabled=bool(row["is_full_spectrum_enabled"]),
            total_jobs_today=row["total_jobs_today"],
            total_cost_today=row["total_cost_today"],
            provider_quota=json.loads(row["provider_quota_json"] or "{}"),
            last_daily_reset_at=from_db(row["last_daily_reset_at"]),
            updated_at=from_db(row["updated_at"]),
        )
        for mode, prefix in MODE_COLUMNS.items():
            state.last_run[mode] = from_db(row[f"last_{prefix}_at"])
            state.backpressure[mode] = row[f"{prefix}_backpressure"]
        return state

    async def save(self, state: OrchestratorState) -> None:
        """Persist the full row. Caller commits."""
        now = self._clock.now()
        sets = [
            "is_full_spectrum_enabled = ?",
            "total_jobs_today = ?",
            "total_cost_today = ?",
            "provider_quota_json = ?",
            "last_daily_reset_at = ?",
            "updated_at = ?",
        ]
        params: list = [
            int(state.is_full_spectrum_enabled),
            state.total_jobs_today,
            round(max(0.0, state.total_cost_today), 6),
            json.dumps(state.provider_quota, default=str),
            to_db(state.last_daily_reset_at),
            to_db(now),
        ]
        for mode, prefix in MODE_COLUMNS.items():
            sets.append(f"last_{prefix}_at = ?")
            params.append(to_db(state.last_run_at(mode)))
            sets.append(f"{prefix}_backpressure = ?")
            params.append(max(0, state.backpressure_for(mode)))
        params.append(STATE_ROW_ID)
        await self._db.execute(
            f"UPDATE orchestrator_state SET {', '.join(sets)} WHERE id = ?", tuple(params)
        )
        state.updated_at = now
