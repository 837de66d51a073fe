"""Tests for the shared-database lease lock."""

from __future__ import annotations

from datetime import timedelta

import pytest

from research_brain.shell.clock import ManualClock
from research_brain.shell.database import Database
from research_brain.shell.lock import LeaseLock, LockTimeout, lease_expired

from tests.helpers import T0, open_db


def test_lease_expired():
    assert lease_expired({"expires_at": None}, T0)
    assert lease_expired({"expires_at": "2026-03-10T11:59:59.000000+00:00"}, T0)
    assert not lease_expired({"expires_at": "2026-03-10T12:00:01.000000+00:00"}, T0)


@pytest.mark.asyncio
async def test_second_holder_blocked_until_release():
    async with open_db() as db:
        clock = ManualClock(T0)
        a = LeaseLock(db, clock, holder="a", lease_seconds=15)
        b = LeaseLock(db, clock, holder="b", lease_seconds=15)

        assert await a.acquire()
        assert not await b.acquire()
        assert (await a.current())["holder"] == "a"

        await a.release()
        assert await b.acquire()


@pytest.mark.asyncio
async def test_holder_can_renew():
    async with open_db() as db:
        clock = ManualClock(T0)
        lock = LeaseLock(db, clock, holder="a", lease_seconds=15)
        assert await lock.acquire()
        clock.advance(seconds=10)
        assert await lock.acquire()
        row = await lock.current()
        assert lease_expired(row, T0 + timedelta(seconds=25))
        assert not lease_expired(row, T0 + timedelta(seconds=24))


@pytest.mark.asyncio
async def test_expired_lease_taken_over():
    """A crashed holder never releases; its lease lapses and b takes over."""
    async with open_db() as db:
        clock = ManualClock(T0)
        a = LeaseLock(db, clock, holder="a", lease_seconds=15)
        b = LeaseLock(db, clock, holder="b", lease_seconds=15)
        assert await a.acquire()

        clock.advance(seconds=16)
        assert await b.acquire()
        assert (await b.current())["holder"] == "b"

        # a's late release must not drop b's lease
        await a.release()
        assert (await b.current())["holder"] == "b"


@pytest.mark.asyncio
async def test_wait_raises_lock_timeout():
    async with open_db() as db:
        clock = ManualClock(T0)
        a = LeaseLock(db, clock, holder="a")
        b = LeaseLock(db, clock, holder="b", wait_seconds=0.2, poll_seconds=0.05)
        assert await a.acquire()
        with pytest.raises(LockTimeout):
            await b.acquire(wait=True)


@pytest.mark.asyncio
async def test_lease_shared_across_connections():
    async with open_db() as db:
        other = Database(db.path)
        await other.connect()
        try:
            clock = ManualClock(T0)
            a = LeaseLock(db, clock, holder="a")
            b = LeaseLock(other, clock, holder="b")
            assert await a.acquire()
            assert not await b.acquire()
            await a.release()
            assert await b.acquire()
        finally:
            await other.close()
