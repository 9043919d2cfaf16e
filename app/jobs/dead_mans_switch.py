"""
Dead-man's-switch tick.

Run with: python -m app.jobs.dead_mans_switch

One pass:
1. Pages through enabled, undelivered, checked-in switches
2. Evaluates each against the tick time (a switch claimed earlier in the
   epoch stays due until delivered)
3. Claims overdue switches with a conditional update (one winner per switch)
4. Delivers, then marks delivered or releases the claim for a later retry

Safe to run from several processes at once.
"""

import asyncio
from datetime import datetime
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.config import LastWishConfig, get_config
from app.core.database import AsyncSessionLocal
from app.core.datetime_utils import to_naive_utc, utc_now
from app.core.exceptions import ClaimConflict
from app.core.logging import get_logger, setup_logging
from app.models.last_wish import CheckInSwitch
from app.pipeline.countdown import evaluate_switch
from app.services import switch_store
from app.services.data_export import FinancialDataExporter
from app.services.delivery import DeliveryResult, deliver

logger = get_logger(__name__)

SessionFactory = async_sessionmaker[AsyncSession]


def failure_severity(
    attempts: int,
    first_failed_at: datetime | None,
    now: datetime,
    config: LastWishConfig,
) -> str:
    """Log level for a failed delivery; escalates the longer failures persist."""
    if attempts < config.warn_after_attempts:
        return "WARNING"
    failing_for = now - (first_failed_at or now)
    if failing_for.total_seconds() < config.critical_after_hours * 3600:
        return "ERROR"
    return "CRITICAL"


async def process_switch(
    session_factory: SessionFactory,
    candidate: CheckInSwitch,
    now: datetime,
    config: LastWishConfig,
    exporter: FinancialDataExporter | None = None,
) -> str:
    """
    Evaluate one candidate and deliver it if overdue.

    Returns:
        Outcome: "not_due", "conflict", "delivered" or "failed"
    """
    countdown = evaluate_switch(candidate, now)
    # Claimed earlier in this epoch and not yet delivered: a later check-in
    # does not cancel it
    pending = candidate.overdue_at is not None
    if not (pending or countdown.is_overdue):
        return "not_due"

    log = logger.bind(switch_id=str(candidate.id), user_id=str(candidate.user_id))

    async with session_factory() as db:
        token = await switch_store.claim(db, candidate, now, config.claim_lease_minutes)
        if token is None:
            await db.rollback()
            log.debug("claim_conflict")
            return "conflict"
        # The claim must be visible to other workers before any email goes out
        await db.commit()
        log.bind(days_left=countdown.days_left, retry=pending).info("switch_claimed")

        try:
            result = await deliver(db, candidate.id, token, now, exporter=exporter)
        except ClaimConflict:
            await db.rollback()
            log.warning("claim_lost_during_delivery")
            return "conflict"
        except Exception as e:
            await db.rollback()
            result = DeliveryResult(delivered=False, error=f"{type(e).__name__}: {e}")

        if result.delivered:
            if result.skipped:
                return "delivered"
            completed = await switch_store.complete_delivery(db, candidate.id, token, now)
            await db.commit()
            if not completed:
                log.warning("delivery_completion_lost_claim")
                return "conflict"
            log.bind(recipients=len(result.sent)).info("switch_delivered")
            return "delivered"

        error = result.error or "delivery failed"
        await switch_store.release_claim(db, candidate.id, token, error, now)
        await db.commit()

    attempts = candidate.delivery_attempts + 1
    level = failure_severity(attempts, candidate.first_failed_at, now, config)
    log.bind(
        attempts=attempts,
        first_failed_at=str(candidate.first_failed_at or now),
        error=error,
    ).log(level, "delivery_failed")
    return "failed"


async def run_switch_tick(
    session_factory: SessionFactory = AsyncSessionLocal,
    now: datetime | None = None,
    exporter: FinancialDataExporter | None = None,
) -> dict[str, Any]:
    """
    Run one scheduler pass.

    A failure on one switch is logged and counted; the rest of the batch
    still runs. Every candidate is visited, `batch_size` rows per page.
    Failing to fetch a page raises; switches on earlier pages have already
    been processed.

    Args:
        session_factory: Session factory (each switch gets its own session)
        now: Tick time, defaults to the current time
        exporter: Data export collaborator override

    Returns:
        Counters for the pass
    """
    config = get_config().last_wish
    now = to_naive_utc(now) if now is not None else utc_now()

    stats: dict[str, Any] = {
        "candidates": 0,
        "not_due": 0,
        "conflict": 0,
        "delivered": 0,
        "failed": 0,
        "errors": 0,
    }

    # Walk every candidate in id order, one page per session
    after_id = None
    while True:
        async with session_factory() as db:
            page = await switch_store.fetch_candidates(
                db, limit=config.batch_size, after_id=after_id
            )
        stats["candidates"] += len(page)

        for candidate in page:
            try:
                outcome = await process_switch(session_factory, candidate, now, config, exporter)
            except Exception as e:
                # Store unreachable mid-switch; an unfinished claim expires with its lease
                logger.bind(switch_id=str(candidate.id), error=str(e)).error("switch_tick_error")
                stats["errors"] += 1
                continue
            stats[outcome] += 1

        if len(page) < config.batch_size:
            break
        after_id = page[-1].id

    return stats


async def main() -> None:
    """Run a single tick."""
    setup_logging()
    logger.info("switch_tick_started")

    try:
        stats = await run_switch_tick()
        logger.bind(**stats).info("switch_tick_completed")
    except Exception as e:
        logger.bind(error=str(e)).error("switch_tick_failed")
        raise


if __name__ == "__main__":
    asyncio.run(main())
