"""Tests for candidate fingerprinting and TTL de-duplication."""

from __future__ import annotations

from datetime import timedelta

import pytest

from research_brain.orchestrator.fingerprints import FingerprintStore, compute_fingerprint
from research_brain.shell.clock import ManualClock
from research_brain.shell.contract import ResearchCandidate

from tests.helpers import T0, candidate, open_db


# --- compute_fingerprint ---


def test_fingerprint_is_stable_and_short():
    fp = compute_fingerprint(candidate("alpha"))
    assert fp == compute_fingerprint(candidate("alpha"))
    assert len(fp) == 32
    int(fp, 16)


def test_fingerprint_ignores_case_whitespace_and_name():
    a = ResearchCandidate("one", "Mean_Reversion", "Fade  the\nopen gap", {"b": 2, "a": 1})
    b = ResearchCandidate("two", "mean_reversion", " fade the open gap ", {"a": 1, "b": 2})
    assert compute_fingerprint(a) == compute_fingerprint(b)


def test_fingerprint_depends_on_content_and_regime():
    base = candidate("alpha")
    other = candidate("alpha", hypothesis="something else entirely")
    assert compute_fingerprint(base) != compute_fingerprint(other)
    assert compute_fingerprint(base, regime="trending") != compute_fingerprint(base, regime="ranging")
    assert compute_fingerprint(base) != compute_fingerprint(base, regime="trending")


# --- FingerprintStore ---


@pytest.mark.asyncio
async def test_second_sighting_is_duplicate():
    async with open_db() as db:
        store = FingerprintStore(db, ManualClock(T0), ttl_hours=24)
        fp = compute_fingerprint(candidate("alpha"))

        first = await store.check_and_record(fp, T0, archetype_name="mean_reversion")
        assert not first.is_duplicate
        assert first.hit_count == 1

        second = await store.check_and_record(fp, T0 + timedelta(hours=1))
        assert second.is_duplicate
        assert second.hit_count == 2

        row = await store.get(fp)
        assert row["hit_count"] == 2
        assert row["archetype_name"] == "mean_reversion"


@pytest.mark.asyncio
async def test_expired_record_is_replaced():
    async with open_db() as db:
        store = FingerprintStore(db, ManualClock(T0), ttl_hours=24)
        fp = compute_fingerprint(candidate("alpha"))
        await store.check_and_record(fp, T0)
        await store.link_candidate(fp, "cand-1")

        later = T0 + timedelta(hours=25)
        check = await store.check_and_record(fp, later)
        assert not check.is_duplicate
        row = await store.get(fp)
        assert row["hit_count"] == 1
        assert row["candidate_id"] is None


@pytest.mark.asyncio
async def test_discard_only_forgets_fresh_unlinked_records():
    async with open_db() as db:
        store = FingerprintStore(db, ManualClock(T0))
        fresh = compute_fingerprint(candidate("fresh"))
        linked = compute_fingerprint(candidate("linked"))
        await store.check_and_record(fresh, T0)
        await store.check_and_record(linked, T0)
        await store.link_candidate(linked, "cand-1")

        await store.discard(fresh)
        await store.discard(linked)
        assert await store.get(fresh) is None
        assert (await store.get(linked))["candidate_id"] == "cand-1"


@pytest.mark.asyncio
async def test_purge_expired():
    async with open_db() as db:
        store = FingerprintStore(db, ManualClock(T0), ttl_hours=1)
        old = compute_fingerprint(candidate("old"))
        new = compute_fingerprint(candidate("new"))
        await store.check_and_record(old, T0)
        await store.check_and_record(new, T0 + timedelta(minutes=90))

        purged = await store.purge_expired(T0 + timedelta(minutes=100))
        assert purged == 1
        assert await store.get(old) is None
        assert await store.get(new) is not None
