"""Tests for the REST API and Prometheus endpoint."""

from __future__ import annotations

import pytest
from aiohttp.test_utils import TestClient, TestServer

from research_brain.api.server import create_app
from research_brain.orchestrator.health import HealthMonitor

from tests.helpers import ScriptedExecutor, build_orchestrator, make_config, open_db

AUTH = {"Authorization": "Bearer test-key"}


async def _app(db, **config_kwargs):
    config = make_config(**config_kwargs)
    orch = await build_orchestrator(db, ScriptedExecutor(), config)
    health = HealthMonitor(orch, config.observability)
    return create_app(config, orch, health, api_key="test-key"), orch


@pytest.mark.asyncio
async def test_auth_required_except_metrics():
    async with open_db() as db:
        app, _ = await _app(db)
        async with TestClient(TestServer(app)) as client:
            resp = await client.get("/v1/status")
            assert resp.status == 401

            resp = await client.get("/v1/status", headers={"Authorization": "Bearer wrong"})
            assert resp.status == 401

            resp = await client.get("/metrics")
            assert resp.status == 200
            text = await resp.text()
            assert "rb_jobs" in text
            assert "rb_budget_daily_usd" in text


@pytest.mark.asyncio
async def test_missing_api_key_rejects_everything():
    async with open_db() as db:
        config = make_config()
        orch = await build_orchestrator(db, ScriptedExecutor(), config)
        app = create_app(config, orch, HealthMonitor(orch, config.observability), api_key="")
        async with TestClient(TestServer(app)) as client:
            resp = await client.get("/v1/status", headers=AUTH)
            assert resp.status == 401


@pytest.mark.asyncio
async def test_status_health_and_budgets():
    async with open_db() as db:
        app, _ = await _app(db)
        async with TestClient(TestServer(app)) as client:
            resp = await client.get("/v1/status", headers=AUTH)
            assert resp.status == 200
            body = await resp.json()
            assert "meta" in body
            assert body["data"]["is_enabled"] is True
            assert set(body["data"]["modes"]) == {"SENTIMENT_BURST", "CONTRARIAN_SCAN", "DEEP_REASONING"}

            resp = await client.get("/v1/health", headers=AUTH)
            assert resp.status == 200
            body = await resp.json()
            assert body["data"]["status"] in ("healthy", "degraded", "stalled", "critical")

            resp = await client.get("/v1/budgets", headers=AUTH)
            body = await resp.json()
            assert body["data"][0]["provider"] == "anthropic"


@pytest.mark.asyncio
async def test_manual_run_and_job_detail():
    async with open_db() as db:
        app, orch = await _app(db, enabled=False)
        async with TestClient(TestServer(app)) as client:
            resp = await client.post("/v1/jobs", json={"mode": "DEEP_REASONING", "priority": 95}, headers=AUTH)
            assert resp.status == 201
            job = (await resp.json())["data"]
            assert job["mode"] == "DEEP_REASONING"
            assert job["priority"] == 95
            assert job["source"] == "manual"
            await orch.drain()

            resp = await client.get(f"/v1/jobs/{job['id']}", headers=AUTH)
            assert resp.status == 200
            detail = (await resp.json())["data"]
            assert detail["status"] == "COMPLETED"
            assert [e["to_status"] for e in detail["events"]] == ["QUEUED", "RUNNING", "COMPLETED"]

            resp = await client.get("/v1/jobs?limit=5", headers=AUTH)
            assert [j["id"] for j in (await resp.json())["data"]] == [job["id"]]

            # Finished jobs cannot be cancelled
            resp = await client.post(f"/v1/jobs/{job['id']}/cancel", headers=AUTH)
            assert resp.status == 409
            assert (await resp.json())["error"]["code"] == "conflict"


@pytest.mark.asyncio
async def test_bad_requests():
    async with open_db() as db:
        app, _ = await _app(db, enabled=False)
        async with TestClient(TestServer(app)) as client:
            resp = await client.post("/v1/jobs", json={"mode": "GUESSWORK"}, headers=AUTH)
            assert resp.status == 400

            resp = await client.post("/v1/jobs", data="not json", headers=AUTH)
            assert resp.status == 400

            resp = await client.post("/v1/jobs", json={"mode": "SENTIMENT_BURST", "priority": "high"},
                                     headers=AUTH)
            assert resp.status == 400

            resp = await client.post("/v1/jobs", json={"mode": "FULL_SPECTRUM", "context": {"subModes": ["FULL_SPECTRUM"]}},
                                     headers=AUTH)
            assert resp.status == 400
            assert "subModes" in (await resp.json())["error"]["message"]

            resp = await client.get("/v1/jobs/nope", headers=AUTH)
            assert resp.status == 404

            resp = await client.post("/v1/jobs/nope/cancel", headers=AUTH)
            assert resp.status == 404

            resp = await client.post("/v1/full-spectrum", json={"enabled": "yes"}, headers=AUTH)
            assert resp.status == 400


@pytest.mark.asyncio
async def test_toggles_and_activity():
    async with open_db() as db:
        app, orch = await _app(db)
        async with TestClient(TestServer(app)) as client:
            resp = await client.post("/v1/full-spectrum", json={"enabled": True}, headers=AUTH)
            assert resp.status == 200
            assert (await resp.json())["data"]["is_full_spectrum"] is True

            resp = await client.post("/v1/autonomy", json={"enabled": False}, headers=AUTH)
            assert resp.status == 200
            assert (await resp.json())["data"]["is_enabled"] is False
            assert orch.enabled is False

            resp = await client.get("/v1/activity?category=ORCH", headers=AUTH)
            summaries = [e["summary"] for e in (await resp.json())["data"]]
            assert "RESEARCH_ORCHESTRATOR_TOGGLE" in summaries
            assert "Autonomous scheduling disabled" in summaries

            resp = await client.get("/v1/activity?severity=fatal", headers=AUTH)
            assert resp.status == 400
            assert (await resp.json())["error"]["code"] == "bad_request"

            resp = await client.get("/v1/activity?severity=critical", headers=AUTH)
            assert resp.status == 200
            assert (await resp.json())["data"] == []
