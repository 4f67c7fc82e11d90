"""Schedule API routes: connection test schedule CRUD, toggle, run-now."""

from __future__ import annotations

import logging
from typing import Any

from fastapi import APIRouter, HTTPException, Request
from pydantic import BaseModel, Field

from cams.health.scheduler import RunInProgressError
from cams.schedules.cadence import Cadence, ScheduleValidationError
from cams.schedules.store import Schedule, ScheduleStore, utcnow

logger = logging.getLogger(__name__)

schedule_router = APIRouter(prefix="/schedules", tags=["schedules"])


# ── Request models ───────────────────────────────────────────────────────

class UpsertScheduleBody(BaseModel):
    application_id: str
    cadence: str = Field(..., max_length=100, description="Interval like '5m' or a 5-field cron expression")
    enabled: bool = True


class ToggleScheduleBody(BaseModel):
    enabled: bool


class ValidateCadenceBody(BaseModel):
    expression: str


# ── Helpers ──────────────────────────────────────────────────────────────

def _get_store(request: Request) -> ScheduleStore:
    return request.app.state.schedule_store  # type: ignore[no-any-return]


def _with_state(schedule: Schedule, request: Request) -> dict[str, Any]:
    data = schedule.to_dict()
    data["state"] = request.app.state.scheduler.state(schedule.application_id).value
    return data


# ── Endpoints ────────────────────────────────────────────────────────────

@schedule_router.get("")
def list_schedules(request: Request) -> dict[str, Any]:
    """List all schedules with next run time and scheduler state."""
    schedules = _get_store(request).list()
    return {"schedules": [_with_state(s, request) for s in schedules], "count": len(schedules)}


@schedule_router.post("")
def upsert_schedule(body: UpsertScheduleBody, request: Request) -> dict[str, Any]:
    """Create or update the schedule of an application."""
    if not request.app.state.registry.get(body.application_id):
        raise HTTPException(status_code=400, detail=f"Unknown application: {body.application_id}")

    store = _get_store(request)
    existed = store.get(body.application_id) is not None
    try:
        schedule = store.upsert(Schedule(
            application_id=body.application_id,
            cadence=body.cadence,
            enabled=body.enabled,
        ))
    except ScheduleValidationError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return {"schedule": _with_state(schedule, request), "status": "updated" if existed else "created"}


@schedule_router.post("/validate-cadence")
def validate_cadence(body: ValidateCadenceBody) -> dict[str, Any]:
    """Check a cadence expression without saving anything."""
    try:
        cadence = Cadence.parse(body.expression)
    except ScheduleValidationError as e:
        return {"valid": False, "error": str(e)}
    return {
        "valid": True,
        "description": cadence.describe(),
        "next_run_at": cadence.next_after(utcnow()).isoformat(),
    }


@schedule_router.get("/{application_id}")
def get_schedule(application_id: str, request: Request) -> dict[str, Any]:
    schedule = _get_store(request).get(application_id)
    if not schedule:
        raise HTTPException(status_code=404, detail="Schedule not found")
    return {"schedule": _with_state(schedule, request)}


@schedule_router.patch("/{application_id}/toggle")
def toggle_schedule(application_id: str, body: ToggleScheduleBody, request: Request) -> dict[str, Any]:
    """Enable or disable a schedule. Disabled schedules are kept."""
    schedule = _get_store(request).toggle(application_id, body.enabled)
    if not schedule:
        raise HTTPException(status_code=404, detail="Schedule not found")
    return {"schedule": _with_state(schedule, request), "status": "enabled" if body.enabled else "disabled"}


@schedule_router.delete("/{application_id}")
def delete_schedule(application_id: str, request: Request) -> dict[str, Any]:
    if not _get_store(request).delete(application_id):
        raise HTTPException(status_code=404, detail="Schedule not found")
    request.app.state.result_store.clear(application_id)
    return {"status": "deleted", "application_id": application_id}


@schedule_router.post("/{application_id}/run-now")
async def run_now(application_id: str, request: Request) -> dict[str, Any]:
    """Run the application's connection tests immediately."""
    if not _get_store(request).get(application_id):
        raise HTTPException(status_code=404, detail="Schedule not found")

    logger.info("Manual connection test requested for %s", application_id)
    try:
        run = await request.app.state.scheduler.run_now(application_id)
    except RunInProgressError as e:
        raise HTTPException(status_code=409, detail=str(e))
    return {"run": run.to_dict()}
