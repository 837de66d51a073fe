"""REST API endpoint handlers — orchestrator status and control."""

from __future__ import annotations

import json
from datetime import datetime, timezone

import structlog
from aiohttp import web

from research_brain import __version__
from research_brain.api import ctx_key
from research_brain.orchestrator.jobs import JobNotFound
from research_brain.orchestrator.lifecycle import InvalidTransition
from research_brain.shell.activity import CATEGORIES, SEVERITIES
from research_brain.shell.contract import InvalidRequest, ResearchMode
from research_brain.shell.lock import LockTimeout

log = structlog.get_logger()


def _safe_int(value: str, default: int) -> int:
    """Parse int from query param, returning default on failure."""
    try:
        return int(value)
    except (ValueError, TypeError):
        return default


def _meta() -> dict:
    return {
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "version": __version__,
    }


def _envelope(data) -> dict:
    return {"data": data, "meta": _meta()}


def error_response(code: str, message: str, status: int) -> web.Response:
    return web.json_response({"error": {"code": code, "message": message}, "meta": _meta()}, status=status)


async def _json_body(request: web.Request) -> dict | None:
    if not request.can_read_body:
        return {}
    try:
        body = await request.json()
    except (json.JSONDecodeError, ValueError):
        return None
    return body if isinstance(body, dict) else None


async def status_handler(request: web.Request) -> web.Response:
    ctx = request.app[ctx_key]
    data = await ctx["orchestrator"].get_status()
    data["uptime_seconds"] = (datetime.now(timezone.utc) - ctx["started_at"]).total_seconds()
    return web.json_response(_envelope(data))


async def health_handler(request: web.Request) -> web.Response:
    ctx = request.app[ctx_key]
    report = await ctx["health"].check()
    return web.json_response(_envelope(report.to_dict()))


async def jobs_handler(request: web.Request) -> web.Response:
    ctx = request.app[ctx_key]
    limit = min(max(_safe_int(request.query.get("limit", "20"), 20), 1), 200)
    jobs = await ctx["orchestrator"].get_recent_jobs(limit)
    return web.json_response(_envelope(jobs))


async def job_detail_handler(request: web.Request) -> web.Response:
    ctx = request.app[ctx_key]
    job_id = request.match_info["job_id"]
    try:
        job = await ctx["orchestrator"].get_job(job_id)
    except JobNotFound:
        return error_response("not_found", f"Job {job_id} not found", 404)
    return web.json_response(_envelope(job))


async def create_job_handler(request: web.Request) -> web.Response:
    ctx = request.app[ctx_key]
    body = await _json_body(request)
    if body is None:
        return error_response("bad_request", "Body must be a JSON object", 400)
    try:
        mode = ResearchMode(body.get("mode", ""))
    except ValueError:
        valid = ", ".join(m.value for m in ResearchMode)
        return error_response("bad_request", f"mode must be one of: {valid}", 400)
    context = body.get("context") or {}
    if not isinstance(context, dict):
        return error_response("bad_request", "context must be an object", 400)
    priority = body.get("priority")
    if priority is not None and not isinstance(priority, int):
        return error_response("bad_request", "priority must be an integer", 400)

    try:
        job = await ctx["orchestrator"].trigger_manual_run(mode, context=context, priority=priority)
    except InvalidRequest as e:
        return error_response("bad_request", str(e), 400)
    except LockTimeout:
        return error_response("busy", "Orchestrator is busy, retry shortly", 503)
    log.info("api.manual_run", job_id=job.id, mode=mode.value)
    return web.json_response(_envelope(job.to_dict()), status=201)


async def cancel_job_handler(request: web.Request) -> web.Response:
    ctx = request.app[ctx_key]
    job_id = request.match_info["job_id"]
    try:
        job = await ctx["orchestrator"].cancel_job(job_id)
    except JobNotFound:
        return error_response("not_found", f"Job {job_id} not found", 404)
    except InvalidTransition as e:
        return error_response("conflict", str(e), 409)
    except LockTimeout:
        return error_response("busy", "Orchestrator is busy, retry shortly", 503)
    return web.json_response(_envelope(job.to_dict()))


async def _toggle(request: web.Request, apply) -> web.Response:
    body = await _json_body(request)
    if body is None or not isinstance(body.get("enabled"), bool):
        return error_response("bad_request", "Body must be {\"enabled\": true|false}", 400)
    try:
        await apply(body["enabled"])
    except LockTimeout:
        return error_response("busy", "Orchestrator is busy, retry shortly", 503)
    return web.json_response(_envelope(await request.app[ctx_key]["orchestrator"].get_status()))


async def full_spectrum_handler(request: web.Request) -> web.Response:
    return await _toggle(request, request.app[ctx_key]["orchestrator"].enable_full_spectrum)


async def autonomy_handler(request: web.Request) -> web.Response:
    return await _toggle(request, request.app[ctx_key]["orchestrator"].set_enabled)


async def budgets_handler(request: web.Request) -> web.Response:
    ctx = request.app[ctx_key]
    rows = await ctx["orchestrator"].ledger.all()
    return web.json_response(_envelope(rows))


async def activity_handler(request: web.Request) -> web.Response:
    ctx = request.app[ctx_key]
    category = request.query.get("category")
    severity = request.query.get("severity")
    if category and category not in CATEGORIES:
        return error_response("bad_request", f"category must be one of: {', '.join(CATEGORIES)}", 400)
    if severity and severity not in SEVERITIES:
        return error_response("bad_request", f"severity must be one of: {', '.join(SEVERITIES)}", 400)
    limit = min(max(_safe_int(request.query.get("limit", "50"), 50), 1), 500)
    rows = await ctx["orchestrator"].activity.query(
        limit=limit, since=request.query.get("since"), category=category, severity=severity,
    )
    return web.json_response(_envelope(rows))


def setup_routes(app: web.Application) -> None:
    app.router.add_get("/v1/status", status_handler)
    app.router.add_get("/v1/health", health_handler)
    app.router.add_get("/v1/jobs", jobs_handler)
    app.router.add_post("/v1/jobs", create_job_handler)
    app.router.add_get("/v1/jobs/{job_id}", job_detail_handler)
    app.router.add_post("/v1/jobs/{job_id}/cancel", cancel_job_handler)
    app.router.add_post("/v1/full-spectrum", full_spectrum_handler)
    app.router.add_post("/v1/autonomy", autonomy_handler)
    app.router.add_get("/v1/budgets", budgets_handler)
    app.router.add_get("/v1/activity", activity_handler)
