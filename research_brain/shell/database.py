"""SQLite database — single source of truth for all persistent state."""

from __future__ import annotations

import aiosqlite
import structlog

log = structlog.get_logger()

SCHEMA = """
-- Research jobs (one row per scheduled or manual research run)
CREATE TABLE IF NOT EXISTS research_jobs (
    id TEXT PRIMARY KEY,
    mode TEXT NOT NULL,                 -- ResearchMode
    status TEXT NOT NULL DEFAULT 'QUEUED',
    cost_class TEXT NOT NULL,           -- 'LOW', 'MEDIUM', 'HIGH'
    priority INTEGER NOT NULL DEFAULT 0,
    scheduled_for TEXT,                 -- not eligible before this instant
    started_at TEXT,
    completed_at TEXT,
    context_json TEXT,                  -- executor input
    result_json TEXT,                   -- summary / per-mode diagnostics
    candidates_created INTEGER NOT NULL DEFAULT 0,
    error_message TEXT,
    retry_count INTEGER NOT NULL DEFAULT 0,
    max_retries INTEGER NOT NULL DEFAULT 0,
    fingerprint_hash TEXT,
    deferred_reason TEXT,
    cost_usd REAL,
    input_tokens INTEGER,
    output_tokens INTEGER,
    trace_id TEXT,
    source TEXT NOT NULL DEFAULT 'scheduled',   -- 'scheduled' or 'manual'
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    CHECK (retry_count >= 0 AND retry_count <= max_retries),
    CHECK (cost_usd IS NULL OR cost_usd >= 0)
);

-- Status history for every job
CREATE TABLE IF NOT EXISTS research_job_events (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    job_id TEXT NOT NULL,
    from_status TEXT,
    to_status TEXT NOT NULL,
    reason TEXT,
    created_at TEXT NOT NULL
);

-- De-duplication memory for discovered candidates
CREATE TABLE IF NOT EXISTS candidate_fingerprints (
    fingerprint_hash TEXT PRIMARY KEY,
    candidate_id TEXT,
    archetype_name TEXT,
    regime_context TEXT,
    hit_count INTEGER NOT NULL DEFAULT 1 CHECK (hit_count >= 1),
    last_seen_at TEXT NOT NULL,
    expires_at TEXT,                    -- NULL = never expires
    created_at TEXT NOT NULL
);

-- Orchestrator memory (singleton row)
CREATE TABLE IF NOT EXISTS orchestrator_state (
    id INTEGER PRIMARY KEY CHECK (id = 1),
    is_full_spectrum_enabled INTEGER NOT NULL DEFAULT 0,
    last_contrarian_at TEXT,
    last_sentiment_at TEXT,
    last_deep_reasoning_at TEXT,
    contrarian_backpressure INTEGER NOT NULL DEFAULT 0 CHECK (contrarian_backpressure >= 0),
    sentiment_backpressure INTEGER NOT NULL DEFAULT 0 CHECK (sentiment_backpressure >= 0),
    deep_reasoning_backpressure INTEGER NOT NULL DEFAULT 0 CHECK (deep_reasoning_backpressure >= 0),
    total_jobs_today INTEGER NOT NULL DEFAULT 0,
    total_cost_today REAL NOT NULL DEFAULT 0,
    provider_quota_json TEXT,
    last_daily_reset_at TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

-- Per-provider LLM spend
CREATE TABLE IF NOT EXISTS llm_budgets (
    provider TEXT PRIMARY KEY,
    daily_budget REAL NOT NULL,
    used_today REAL NOT NULL DEFAULT 0,
    period_budget REAL NOT NULL,
    used_period REAL NOT NULL DEFAULT 0,
    last_reset_at TEXT
);

-- Candidates accepted by the default sink
CREATE TABLE IF NOT EXISTS strategy_candidates (
    id TEXT PRIMARY KEY,
    job_id TEXT NOT NULL,
    name TEXT NOT NULL,
    archetype_name TEXT,
    hypothesis TEXT,
    rules_json TEXT,
    regime TEXT,
    fingerprint_hash TEXT,
    disposition TEXT NOT NULL DEFAULT 'PENDING_REVIEW',
    created_at TEXT NOT NULL
);

-- Lease locks shared by every orchestrator instance on this database
CREATE TABLE IF NOT EXISTS orchestrator_locks (
    name TEXT PRIMARY KEY,
    holder TEXT NOT NULL,
    acquired_at TEXT NOT NULL,
    expires_at TEXT NOT NULL
);

-- Activity log (audit timeline)
CREATE TABLE IF NOT EXISTS activity_log (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    timestamp TEXT NOT NULL,
    category TEXT NOT NULL,
    severity TEXT NOT NULL DEFAULT 'info',
    summary TEXT NOT NULL,
    detail TEXT
);

-- Indexes for common queries
CREATE INDEX IF NOT EXISTS idx_jobs_status ON research_jobs(status, priority, scheduled_for);
CREATE INDEX IF NOT EXISTS idx_jobs_mode ON research_jobs(mode, status);
CREATE INDEX IF NOT EXISTS idx_jobs_created ON research_jobs(created_at);
CREATE UNIQUE INDEX IF NOT EXISTS uq_jobs_running_mode ON research_jobs(mode) WHERE status = 'RUNNING';
CREATE INDEX IF NOT EXISTS idx_job_events_job ON research_job_events(job_id, id);
CREATE INDEX IF NOT EXISTS idx_fingerprints_expires ON candidate_fingerprints(expires_at);
CREATE INDEX IF NOT EXISTS idx_candidates_created ON strategy_candidates(created_at);
CREATE INDEX IF NOT EXISTS idx_activity_ts ON activity_log(timestamp);
"""

# Migrations for existing databases (columns added after initial schema)
MIGRATIONS = [
    ("research_jobs", "trace_id", "ALTER TABLE research_jobs ADD COLUMN trace_id TEXT"),
    ("research_jobs", "source", "ALTER TABLE research_jobs ADD COLUMN source TEXT NOT NULL DEFAULT 'scheduled'"),
    ("candidate_fingerprints", "regime_context", "ALTER TABLE candidate_fingerprints ADD COLUMN regime_context TEXT"),
    ("orchestrator_state", "last_daily_reset_at", "ALTER TABLE orchestrator_state ADD COLUMN last_daily_reset_at TEXT"),
]


class Database:
    def __init__(self, db_path: str):
        self._path = db_path
        self._conn: aiosqlite.Connection | None = None

    @property
    def path(self) -> str:
        return self._path

    async def connect(self) -> None:
        self._conn = await aiosqlite.connect(self._path)
        self._conn.row_factory = aiosqlite.Row
        await self._conn.execute("PRAGMA journal_mode=WAL")
        await self._conn.execute("PRAGMA foreign_keys=ON")
        await self._conn.execute("PRAGMA busy_timeout=5000")
        await self._conn.executescript(SCHEMA)
        await self._run_migrations()
        await self._conn.commit()
        log.info("database.connected", path=self._path)

    async def _run_migrations(self) -> None:
        """Apply column additions to existing databases."""
        for table, column, sql in MIGRATIONS:
            cursor = await self._conn.execute(f"PRAGMA table_info({table})")
            columns = [row[1] for row in await cursor.fetchall()]
            if column not in columns:
                await self._conn.execute(sql)
                log.info("database.migration", table=table, column=column)

    async def close(self) -> None:
        if self._conn:
            await self._conn.commit()
            await self._conn.close()
            self._conn = None
            log.info("database.closed")

    @property
    def conn(self) -> aiosqlite.Connection:
        if not self._conn:
            raise RuntimeError("Database not connected")
        return self._conn

    async def execute(self, sql: str, params: tuple = ()) -> aiosqlite.Cursor:
        return await self.conn.execute(sql, params)

    async def fetchone(self, sql: str, params: tuple = ()) -> dict | None:
        cursor = await self.conn.execute(sql, params)
        row = await cursor.fetchone()
        return dict(row) if row else None

    async def fetchall(self, sql: str, params: tuple = ()) -> list[dict]:
        cursor = await self.conn.execute(sql, params)
        rows = await cursor.fetchall()
        return [dict(r) for r in rows]

    async def commit(self) -> None:
        await self.conn.commit()

    async def rollback(self) -> None:
        await self.conn.rollback()
