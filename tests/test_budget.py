"""Tests for the per-provider budget ledger and daily reset."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from research_brain.orchestrator.budget import BudgetLedger
from research_brain.shell.clock import ManualClock
from research_brain.shell.config import BudgetConfig

from tests.helpers import T0, open_db


async def _ledger(db, clock, daily=50.0, period=1000.0, tz="UTC") -> BudgetLedger:
    ledger = BudgetLedger(db, clock, tz_name=tz)
    await ledger.seed({"anthropic": BudgetConfig(daily_budget_usd=daily, period_budget_usd=period)})
    return ledger


@pytest.mark.asyncio
async def test_estimate_must_fit_daily_headroom():
    """48 of 50 spent: a 2.5 estimate is refused, 2.0 fits exactly."""
    async with open_db() as db:
        ledger = await _ledger(db, ManualClock(T0))
        await ledger.record_spend("anthropic", 48.0)

        denied = await ledger.check("anthropic", 2.5)
        assert not denied.passed
        assert "daily headroom" in denied.reason

        assert (await ledger.check("anthropic", 2.0)).passed


@pytest.mark.asyncio
async def test_exhausted_daily_budget():
    async with open_db() as db:
        ledger = await _ledger(db, ManualClock(T0))
        await ledger.record_spend("anthropic", 50.0)
        check = await ledger.check("anthropic", 0.0)
        assert not check.passed
        assert "exhausted" in check.reason


@pytest.mark.asyncio
async def test_period_budget_enforced():
    async with open_db() as db:
        ledger = await _ledger(db, ManualClock(T0), daily=50.0, period=60.0)
        await db.execute("UPDATE llm_budgets SET used_period = 59 WHERE provider = 'anthropic'")
        check = await ledger.check("anthropic", 2.0)
        assert not check.passed
        assert "period" in check.reason


@pytest.mark.asyncio
async def test_unknown_provider_is_unrestricted():
    async with open_db() as db:
        ledger = await _ledger(db, ManualClock(T0))
        assert (await ledger.check("openai", 100.0)).passed
        await ledger.record_spend("openai", 5.0)
        assert await ledger.get("openai") is None


@pytest.mark.asyncio
async def test_negative_spend_ignored():
    async with open_db() as db:
        ledger = await _ledger(db, ManualClock(T0))
        await ledger.record_spend("anthropic", -3.0)
        assert (await ledger.get("anthropic"))["used_today"] == 0


@pytest.mark.asyncio
async def test_seed_keeps_spend_and_updates_limits():
    async with open_db() as db:
        clock = ManualClock(T0)
        ledger = await _ledger(db, clock)
        await ledger.record_spend("anthropic", 7.5)
        await db.commit()

        await _ledger(db, clock, daily=80.0)
        row = await ledger.get("anthropic")
        assert row["daily_budget"] == 80.0
        assert row["used_today"] == 7.5


@pytest.mark.asyncio
async def test_daily_reset_once_per_day():
    async with open_db() as db:
        clock = ManualClock(T0)
        ledger = await _ledger(db, clock)
        await ledger.record_spend("anthropic", 10.0)

        # Same day: nothing to do
        assert await ledger.reset_if_due(clock.now()) == []
        assert (await ledger.get("anthropic"))["used_today"] == 10.0

        next_day = clock.advance(days=1)
        assert await ledger.reset_if_due(next_day) == ["anthropic"]
        row = await ledger.get("anthropic")
        assert row["used_today"] == 0
        assert row["used_period"] == 10.0

        await ledger.record_spend("anthropic", 1.0)
        assert await ledger.reset_if_due(next_day + timedelta(hours=3)) == []
        assert (await ledger.get("anthropic"))["used_today"] == 1.0


@pytest.mark.asyncio
async def test_period_resets_on_month_change():
    async with open_db() as db:
        clock = ManualClock(datetime(2026, 3, 31, 12, 0, tzinfo=timezone.utc))
        ledger = await _ledger(db, clock)
        await ledger.record_spend("anthropic", 10.0)

        await ledger.reset_if_due(datetime(2026, 4, 1, 0, 5, tzinfo=timezone.utc))
        row = await ledger.get("anthropic")
        assert row["used_today"] == 0
        assert row["used_period"] == 0


@pytest.mark.asyncio
async def test_reset_follows_local_midnight():
    """In New York (UTC-4 in late March) 03:00 UTC is still the previous local day."""
    async with open_db() as db:
        clock = ManualClock(datetime(2026, 3, 24, 16, 0, tzinfo=timezone.utc))
        ledger = await _ledger(db, clock, tz="America/New_York")
        await ledger.record_spend("anthropic", 5.0)

        assert await ledger.reset_if_due(datetime(2026, 3, 25, 3, 0, tzinfo=timezone.utc)) == []
        assert await ledger.reset_if_due(datetime(2026, 3, 25, 4, 30, tzinfo=timezone.utc)) == ["anthropic"]


@pytest.mark.asyncio
async def test_quota_snapshot():
    async with open_db() as db:
        ledger = await _ledger(db, ManualClock(T0))
        await ledger.record_spend("anthropic", 12.5)
        snap = await ledger.quota_snapshot()
        assert snap["anthropic"]["daily_remaining"] == 37.5
        assert snap["anthropic"]["period_remaining"] == 987.5
        assert snap["anthropic"]["used_today"] == 12.5


@pytest.mark.asyncio
async def test_seed_leaves_commit_to_caller():
    async with open_db() as db:
        ledger = await _ledger(db, ManualClock(T0))
        assert await ledger.get("anthropic") is not None
        await db.rollback()
        assert await ledger.get("anthropic") is None
