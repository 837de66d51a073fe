"""Lease lock stored in the shared database.

Several orchestrator instances may point at the same SQLite file. Each
critical section holds a named lease row; a lease that outlives its
expiry (crashed holder) can be taken over by anyone.
"""

from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone

import structlog

from research_brain.shell.clock import Clock, to_db
from research_brain.shell.database import Database

log = structlog.get_logger()

ORCHESTRATOR_LOCK = "research-orchestrator"


class LockTimeout(Exception):
    """Raised when a lease could not be obtained within the wait budget."""


def lease_expired(row: dict, now: datetime | None = None) -> bool:
    now = now or datetime.now(timezone.utc)
    expires = row.get("expires_at")
    if not expires:
        return True
    return expires <= to_db(now)


class LeaseLock:
    def __init__(
        self,
        db: Database,
        clock: Clock,
        holder: str,
        name: str = ORCHESTRATOR_LOCK,
        lease_seconds: float = 15,
        wait_seconds: float = 10,
        poll_seconds: float = 0.1,
    ) -> None:
        self._db = db
        self._clock = clock
        self._holder = holder
        self._name = name
        self._lease = lease_seconds
        self._wait = wait_seconds
        self._poll = poll_seconds

    @property
    def holder(self) -> str:
        return self._holder

    async def try_acquire(self) -> bool:
        """One atomic attempt. Succeeds if the lease is free, expired, or ours."""
        now = self._clock.now()
        expires = now + timedelta(seconds=self._lease)
        await self._db.execute(
            """INSERT INTO orchestrator_locks (name, holder, acquired_at, expires_at)
               VALUES (?, ?, ?, ?)
               ON CONFLICT(name) DO UPDATE SET
                   holder = excluded.holder,
                   acquired_at = excluded.acquired_at,
                   expires_at = excluded.expires_at
               WHERE orchestrator_locks.expires_at <= excluded.acquired_at
                  OR orchestrator_locks.holder = excluded.holder""",
            (self._name, self._holder, to_db(now), to_db(expires)),
        )
        await self._db.commit()
        row = await self.current()
        acquired = row is not None and row["holder"] == self._holder
        if not acquired:
            log.debug("lock.busy", name=self._name, held_by=row["holder"] if row else None)
        return acquired

    async def acquire(self, wait: bool = False) -> bool:
        """Acquire the lease. With wait=True, poll until wait_seconds then raise LockTimeout."""
        if await self.try_acquire():
            return True
        if not wait:
            return False

        loop = asyncio.get_running_loop()
        deadline = loop.time() + self._wait
        while loop.time() < deadline:
            await asyncio.sleep(self._poll)
            if await self.try_acquire():
                return True
        log.warning("lock.timeout", name=self._name, holder=self._holder, waited=self._wait)
        raise LockTimeout(f"Could not acquire lock '{self._name}' within {self._wait}s")

    async def release(self) -> None:
        """Release our lease. Safe to call when not held."""
        await self._db.execute(
            "DELETE FROM orchestrator_locks WHERE name = ? AND holder = ?",
            (self._name, self._holder),
        )
        await self._db.commit()

    async def current(self) -> dict | None:
        return await self._db.fetchone(
            "SELECT * FROM orchestrator_locks WHERE name = ?", (self._name,)
        )
