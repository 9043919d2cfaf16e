"""
In-process scheduler for the dead-man's-switch tick.

One interval schedule (`switch_tick`) runs `run_switch_tick` every
`last_wish.tick_seconds`. Cron deployments set SCHEDULER_ENABLED=false and
call `lastwish tick` instead; claims are database compare-and-swaps, so the
two can overlap safely.
"""

from datetime import datetime
from typing import Any

from apscheduler import AsyncScheduler, ConflictPolicy, JobOutcome, JobReleased
from apscheduler.datastores.memory import MemoryDataStore
from apscheduler.triggers.interval import IntervalTrigger

from app.config import get_config, get_settings
from app.core.database import AsyncSessionLocal
from app.core.datetime_utils import to_naive_utc, utc_now
from app.core.logging import get_logger

logger = get_logger(__name__)

SWITCH_TICK_JOB_ID = "switch_tick"

scheduler: AsyncScheduler | None = None


async def switch_tick_job() -> None:
    from app.jobs.dead_mans_switch import run_switch_tick

    try:
        stats = await run_switch_tick()
    except Exception as e:
        logger.bind(error=str(e)).error("scheduled_switch_tick_failed")
        raise  # APScheduler marks the run as an error

    if stats["delivered"] or stats["failed"] or stats["errors"]:
        logger.bind(**stats).info("scheduled_switch_tick_completed")
    else:
        logger.bind(candidates=stats["candidates"]).debug("scheduled_switch_tick_idle")


def _event_time(event: JobReleased, *names: str) -> datetime:
    # Attribute names moved between APScheduler 4 pre-releases
    for name in names:
        value = getattr(event, name, None)
        if value is not None:
            return to_naive_utc(value)
    return utc_now()


async def record_job_run(event: Any) -> None:
    """Persist a finished job as a JobRun row (subscribed to JobReleased)."""
    if not isinstance(event, JobReleased):
        return

    from app.models.job_run import JobRun

    error = None
    if event.outcome == JobOutcome.error:
        error = str(
            getattr(event, "exception", None)
            or getattr(event, "exception_message", None)
            or "unknown error"
        )

    try:
        async with AsyncSessionLocal() as db:
            db.add(
                JobRun(
                    job_id=event.schedule_id or "manual",
                    scheduled_at=_event_time(event, "scheduled_start", "scheduled_fire_time"),
                    started_at=_event_time(event, "started_at"),
                    finished_at=utc_now(),
                    outcome=event.outcome.name,
                    error=error,
                )
            )
            await db.commit()
    except Exception as e:
        # History is best effort; the tick itself already ran
        logger.bind(error=str(e)).error("job_run_record_failed")


async def start_scheduler() -> AsyncScheduler | None:
    """Start the scheduler unless disabled in settings."""
    global scheduler

    if not get_settings().scheduler_enabled:
        logger.info("scheduler_disabled_by_config")
        return None

    tick_seconds = get_config().last_wish.tick_seconds

    # Switch state lives in the database; schedules are rebuilt on each start
    scheduler = AsyncScheduler(data_store=MemoryDataStore())
    # APScheduler 4 must be entered before schedules can be added
    await scheduler.__aenter__()
    scheduler.subscribe(record_job_run)

    await scheduler.add_schedule(
        switch_tick_job,
        IntervalTrigger(seconds=tick_seconds),
        id=SWITCH_TICK_JOB_ID,
        conflict_policy=ConflictPolicy.replace,
    )
    await scheduler.start_in_background()

    logger.bind(job_id=SWITCH_TICK_JOB_ID, tick_seconds=tick_seconds).info("scheduler_started")
    return scheduler


async def stop_scheduler() -> None:
    global scheduler
    if scheduler is None:
        return
    await scheduler.__aexit__(None, None, None)
    scheduler = None
    logger.info("scheduler_stopped")


async def list_schedules() -> list[dict[str, Any]]:
    """Registered schedules with fire times; empty when the scheduler is off."""
    if scheduler is None:
        return []

    def _iso(value: datetime | None) -> str | None:
        return value.isoformat() if value else None

    return [
        {
            "id": s.id,
            "task_id": s.task_id,
            "trigger": str(s.trigger),
            "next_fire_time": _iso(s.next_fire_time),
            "last_fire_time": _iso(s.last_fire_time),
        }
        for s in await scheduler.get_schedules()
    ]
