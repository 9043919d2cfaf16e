"""Scheduler monitoring: the switch tick schedule and its run history."""

from datetime import datetime
from typing import Literal

from fastapi import APIRouter, Query
from pydantic import BaseModel, ConfigDict
from sqlalchemy import select

from app.core.datetime_utils import get_cutoff
from app.core.scheduler import list_schedules as registered_schedules
from app.dependencies import CurrentUser, DBSession
from app.models.job_run import JobRun

router = APIRouter(prefix="/jobs")

RunOutcome = Literal["success", "error", "missed_start_deadline", "deserialization_failed"]


class ScheduleResponse(BaseModel):
    id: str
    task_id: str
    trigger: str
    next_fire_time: str | None
    last_fire_time: str | None


class JobRunResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    job_id: str
    scheduled_at: datetime
    started_at: datetime
    finished_at: datetime
    duration_seconds: float
    outcome: str
    error: str | None


@router.get("/schedules", response_model=list[ScheduleResponse])
async def list_schedules(user: CurrentUser) -> list[ScheduleResponse]:
    """Empty when the in-process scheduler is disabled (cron deployments)."""
    return [ScheduleResponse(**schedule) for schedule in await registered_schedules()]


@router.get("/runs", response_model=list[JobRunResponse])
async def list_job_runs(
    user: CurrentUser,
    db: DBSession,
    job_id: str | None = Query(default=None),
    outcome: RunOutcome | None = Query(default=None),
    since_hours: int | None = Query(default=None, ge=1, le=24 * 30),
    limit: int = Query(default=50, ge=1, le=200),
) -> list[JobRunResponse]:
    """
    Recent tick runs, newest first.

    A streak of errors usually means the database is unreachable. Failed
    email sends do not show up here: they are per-switch failures inside a
    successful tick and are logged with escalating severity instead.
    """
    filters = []
    if job_id:
        filters.append(JobRun.job_id == job_id)
    if outcome:
        filters.append(JobRun.outcome == outcome)
    if since_hours:
        filters.append(JobRun.scheduled_at >= get_cutoff(hours=since_hours))

    result = await db.execute(
        select(JobRun).where(*filters).order_by(JobRun.scheduled_at.desc()).limit(limit)
    )
    return [JobRunResponse.model_validate(run) for run in result.scalars()]
