"""API routes for applications, connection tests and results.

Endpoints:
  GET  /api/applications                  all applications with latest results
  GET  /api/applications/{id}             application detail + schedule + latest results
  POST /api/connections/{id}/test         ad-hoc probe of a single connection
  GET  /api/results/{application_id}      result history, most recent first
  GET  /api/results/stream                SSE stream of live run results
  GET  /api/scheduler/status              tick loop state, running + stale schedules
"""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Any

from fastapi import APIRouter, HTTPException, Request
from fastapi.responses import StreamingResponse

from cams.applications.registry import application_to_dict
from cams.health.engine import RunResult

logger = logging.getLogger(__name__)

health_router = APIRouter()

# ── SSE subscriber list (in-memory) ──────────────────────────────────────────

_sse_queues: list[asyncio.Queue[dict[str, Any]]] = []


def broadcast_result(run: RunResult) -> None:
    """Push a run result to all SSE subscribers."""
    data = run.to_dict()
    for q in _sse_queues:
        try:
            q.put_nowait(data)
        except asyncio.QueueFull:
            pass  # slow consumer, drop


def _overall(latest: dict[str, dict[str, Any]]) -> str:
    if not latest:
        return "unknown"
    passed = [r["success"] for r in latest.values()]
    if all(passed):
        return "pass"
    if not any(passed):
        return "fail"
    return "partial"


# ── Application endpoints ────────────────────────────────────────────────────


@health_router.get("/applications")
def list_applications(request: Request) -> dict[str, Any]:
    """List applications with the latest result per connection."""
    registry = request.app.state.registry
    results = request.app.state.result_store

    applications = registry.to_dict()
    for a in applications:
        latest = results.latest_by_connection(a["id"])
        a["health"] = _overall(latest)
        a["latest_results"] = latest
    return {"applications": applications, "count": len(applications)}


@health_router.get("/applications/{application_id}")
def get_application(application_id: str, request: Request) -> dict[str, Any]:
    """Application detail with its schedule and latest results."""
    registry = request.app.state.registry
    results = request.app.state.result_store
    schedules = request.app.state.schedule_store
    scheduler = request.app.state.scheduler

    application = registry.get(application_id)
    if not application:
        raise HTTPException(status_code=404, detail=f"Application not found: {application_id}")

    data = application_to_dict(application)
    latest = results.latest_by_connection(application_id)
    schedule = schedules.get(application_id)

    data["health"] = _overall(latest)
    data["latest_results"] = latest
    data["success_rate"] = results.success_rate(application_id)
    data["schedule"] = schedule.to_dict() if schedule else None
    data["state"] = scheduler.state(application_id).value
    return data


@health_router.post("/connections/{connection_id}/test")
async def test_connection(connection_id: str, request: Request) -> dict[str, Any]:
    """Probe one connection now. The result is returned, not recorded."""
    registry = request.app.state.registry
    scheduler = request.app.state.scheduler

    found = registry.get_connection(connection_id)
    if not found:
        raise HTTPException(status_code=404, detail=f"Connection not found: {connection_id}")
    application, connection = found

    result = await scheduler.test_connection(application.id, connection)
    return {"result": result.to_dict()}


# ── Results ──────────────────────────────────────────────────────────────────


@health_router.get("/results/stream")
async def results_stream(request: Request) -> StreamingResponse:
    """Server-Sent Events stream of run results as they are recorded."""
    queue: asyncio.Queue[dict[str, Any]] = asyncio.Queue(maxsize=50)
    _sse_queues.append(queue)

    async def event_generator():
        try:
            schedules = request.app.state.schedule_store
            initial = [s.to_dict() for s in schedules.list()]
            yield f"event: init\ndata: {json.dumps(initial)}\n\n"

            while True:
                if await request.is_disconnected():
                    break
                try:
                    data = await asyncio.wait_for(queue.get(), timeout=30)
                    yield f"event: run\ndata: {json.dumps(data)}\n\n"
                except asyncio.TimeoutError:
                    yield ": keepalive\n\n"
        finally:
            _sse_queues.remove(queue)

    return StreamingResponse(
        event_generator(),
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "Connection": "keep-alive",
            "X-Accel-Buffering": "no",
        },
    )


@health_router.get("/results/{application_id}")
def result_history(application_id: str, request: Request, limit: int = 50) -> dict[str, Any]:
    """Result history for an application, most recent first."""
    results = request.app.state.result_store
    history = results.history(application_id, limit=limit).to_list()
    return {
        "application_id": application_id,
        "success_rate": results.success_rate(application_id),
        "stale": application_id in results.stale,
        "history": history,
    }


@health_router.get("/scheduler/status")
def scheduler_status(request: Request) -> dict[str, Any]:
    return request.app.state.scheduler.status()
