"""Check-in store: every mutation of a switch row is a single conditional UPDATE.

The WHERE clause of each statement is the guard (compare-and-swap), so
concurrent API calls and scheduler workers never need application locks.
A zero rowcount means the guard failed; callers re-read the row to decide
which error applies.

Functions here do not commit. The API handlers and the scheduler own the
transaction boundaries; the scheduler commits the claim before delivering.
"""

import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from sqlalchemy import and_, func, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.datetime_utils import get_cutoff, to_naive_utc
from app.core.exceptions import (
    AlreadyDelivered,
    NoRecipients,
    NotDelivered,
    SettingsConflict,
    SwitchNotFound,
)
from app.core.logging import get_logger
from app.models.last_wish import DEFAULT_INCLUDE_DATA, CheckInSwitch, LastWishDelivery, SwitchEpoch

logger = get_logger(__name__)

# ORM-enabled UPDATEs bypass the identity map; rows are re-read explicitly
_NO_SYNC = {"synchronize_session": False}

SETTINGS_WRITE_ATTEMPTS = 3


@dataclass
class CheckInResult:
    ok: bool
    last_check_in: datetime


async def get_switch(db: AsyncSession, user_id: uuid.UUID) -> CheckInSwitch | None:
    """Load a user's switch, refreshing any stale copy in the session."""
    result = await db.execute(
        select(CheckInSwitch)
        .where(CheckInSwitch.user_id == user_id)
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def get_switch_by_id(db: AsyncSession, switch_id: uuid.UUID) -> CheckInSwitch | None:
    result = await db.execute(
        select(CheckInSwitch)
        .where(CheckInSwitch.id == switch_id)
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def require_switch(db: AsyncSession, user_id: uuid.UUID) -> CheckInSwitch:
    switch = await get_switch(db, user_id)
    if switch is None:
        raise SwitchNotFound()
    return switch


async def get_or_create_switch(
    db: AsyncSession,
    user_id: uuid.UUID,
    frequency_days: int,
) -> CheckInSwitch:
    """Return the user's switch, creating a disabled one on first configure.

    The unique constraint on user_id settles concurrent first-time requests:
    the loser's insert is rolled back to its savepoint and it reads the
    winner's row.
    """
    existing = await get_switch(db, user_id)
    if existing is not None:
        return existing

    switch = CheckInSwitch(
        user_id=user_id,
        is_enabled=False,
        frequency_days=frequency_days,
        recipients=[],
        include_data=dict(DEFAULT_INCLUDE_DATA),
        message="",
    )
    try:
        async with db.begin_nested():
            db.add(switch)
    except IntegrityError:
        logger.bind(user_id=str(user_id)).debug("switch_create_race_lost")
        return await require_switch(db, user_id)

    logger.bind(user_id=str(user_id)).info("switch_created")
    return switch


async def fetch_candidates(
    db: AsyncSession,
    limit: int = 500,
    after_id: uuid.UUID | None = None,
) -> list[CheckInSwitch]:
    """
    One page of switches that could be due: enabled, undelivered, checked in at least once.

    Pages are keyed on id; pass the last id of the previous page as
    `after_id` until a short page comes back.
    """
    conditions = [
        CheckInSwitch.is_enabled == True,  # noqa: E712
        CheckInSwitch.delivered_at.is_(None),
        CheckInSwitch.last_check_in.is_not(None),
    ]
    if after_id is not None:
        conditions.append(CheckInSwitch.id > after_id)

    result = await db.execute(
        select(CheckInSwitch)
        .where(and_(*conditions))
        .order_by(CheckInSwitch.id)
        .limit(limit)
        .execution_options(populate_existing=True)
    )
    return list(result.scalars().all())


async def check_in(db: AsyncSession, user_id: uuid.UUID, now: datetime) -> CheckInResult:
    """
    Record a check-in: last_check_in = now.

    Guarded by `delivered_at IS NULL` so a terminal switch can never be
    revived, and by `last_check_in <= now` so the clock never moves back.
    Not guarded by the claim flag: a check-in that lands after a claim is
    recorded but does not stop the delivery. `overdue_at` keeps the switch
    due until it is delivered, including across failed attempts.

    Raises:
        SwitchNotFound: The user has not configured Last Wish
        AlreadyDelivered: The switch is terminal
    """
    now = to_naive_utc(now)
    result = await db.execute(
        update(CheckInSwitch)
        .where(
            CheckInSwitch.user_id == user_id,
            CheckInSwitch.delivered_at.is_(None),
            or_(CheckInSwitch.last_check_in.is_(None), CheckInSwitch.last_check_in <= now),
        )
        .values(last_check_in=now, updated_at=now)
        .execution_options(**_NO_SYNC)
    )
    if result.rowcount == 1:
        return CheckInResult(ok=True, last_check_in=now)

    switch = await require_switch(db, user_id)
    if switch.delivered_at is not None:
        raise AlreadyDelivered()

    # Stored check-in is ahead of this clock (skew between hosts); keep it
    logger.bind(user_id=str(user_id), stored=str(switch.last_check_in)).warning(
        "check_in_clock_behind_stored_value"
    )
    return CheckInResult(ok=True, last_check_in=switch.last_check_in)


async def claim(
    db: AsyncSession,
    switch: CheckInSwitch,
    now: datetime,
    lease_minutes: int,
) -> str | None:
    """
    Try to claim an overdue switch for delivery.

    The guard re-checks, in the same statement, everything the scheduler
    evaluated: still enabled, still undelivered, and last_check_in unchanged
    since evaluation (a check-in committed in between cancels the claim).
    A switch already marked `overdue_at` by an earlier claim in this epoch
    is due whatever last_check_in says. A claim older than the lease is
    treated as abandoned and can be taken over.

    Returns:
        The claim token if this caller won, None otherwise (ClaimConflict)
    """
    now = to_naive_utc(now)
    token = str(uuid.uuid4())
    lease_cutoff = get_cutoff(minutes=lease_minutes, now=now)

    result = await db.execute(
        update(CheckInSwitch)
        .where(
            CheckInSwitch.id == switch.id,
            CheckInSwitch.is_enabled == True,  # noqa: E712
            CheckInSwitch.delivered_at.is_(None),
            or_(
                CheckInSwitch.overdue_at.is_not(None),
                CheckInSwitch.last_check_in == switch.last_check_in,
            ),
            or_(
                CheckInSwitch.delivering == False,  # noqa: E712
                CheckInSwitch.claimed_at < lease_cutoff,
            ),
        )
        .values(
            delivering=True,
            claim_token=token,
            claimed_at=now,
            overdue_at=func.coalesce(CheckInSwitch.overdue_at, now),
            updated_at=now,
        )
        .execution_options(**_NO_SYNC)
    )
    return token if result.rowcount == 1 else None


async def complete_delivery(
    db: AsyncSession,
    switch_id: uuid.UUID,
    claim_token: str,
    now: datetime,
) -> bool:
    """Mark the switch delivered. Only the current claim holder can do this, once."""
    now = to_naive_utc(now)
    result = await db.execute(
        update(CheckInSwitch)
        .where(
            CheckInSwitch.id == switch_id,
            CheckInSwitch.claim_token == claim_token,
            CheckInSwitch.delivered_at.is_(None),
        )
        .values(
            delivered_at=now,
            delivering=False,
            claim_token=None,
            claimed_at=None,
            overdue_at=None,
            last_error=None,
            updated_at=now,
        )
        .execution_options(**_NO_SYNC)
    )
    return result.rowcount == 1


async def release_claim(
    db: AsyncSession,
    switch_id: uuid.UUID,
    claim_token: str,
    error: str,
    now: datetime,
) -> bool:
    """
    Give up the claim after a failed delivery so a later tick retries.

    overdue_at is left in place: the retry does not depend on the owner
    staying silent.
    """
    now = to_naive_utc(now)
    result = await db.execute(
        update(CheckInSwitch)
        .where(
            CheckInSwitch.id == switch_id,
            CheckInSwitch.claim_token == claim_token,
        )
        .values(
            delivering=False,
            claim_token=None,
            claimed_at=None,
            delivery_attempts=CheckInSwitch.delivery_attempts + 1,
            first_failed_at=func.coalesce(CheckInSwitch.first_failed_at, now),
            last_error=error[:2000],
            updated_at=now,
        )
        .execution_options(**_NO_SYNC)
    )
    return result.rowcount == 1


async def update_settings(
    db: AsyncSession,
    user_id: uuid.UUID,
    values: dict[str, Any],
    now: datetime,
) -> CheckInSwitch:
    """
    Apply settings changes to an undelivered switch.

    Frequency changes apply against the existing last_check_in. Enabling
    requires a non-empty recipient list, checked against the merged state
    (recipients in the same request count). The write is guarded by
    settings_version, so the rule holds against the row it was checked on;
    a concurrent settings change makes this request re-read and re-check.

    Raises:
        SwitchNotFound, AlreadyDelivered, NoRecipients, SettingsConflict
    """
    now = to_naive_utc(now)
    for _ in range(SETTINGS_WRITE_ATTEMPTS):
        switch = await require_switch(db, user_id)
        if switch.delivered_at is not None:
            raise AlreadyDelivered()

        will_be_enabled = values.get("is_enabled", switch.is_enabled)
        recipients = values.get("recipients", switch.recipients)
        if will_be_enabled and not recipients:
            raise NoRecipients()

        if not values:
            return switch

        result = await db.execute(
            update(CheckInSwitch)
            .where(
                CheckInSwitch.user_id == user_id,
                CheckInSwitch.delivered_at.is_(None),
                CheckInSwitch.settings_version == switch.settings_version,
            )
            .values(**values, settings_version=switch.settings_version + 1, updated_at=now)
            .execution_options(**_NO_SYNC)
        )
        if result.rowcount == 1:
            return await require_switch(db, user_id)

        logger.bind(user_id=str(user_id)).debug("settings_write_raced")

    raise SettingsConflict()


async def rearm(db: AsyncSession, user_id: uuid.UUID, now: datetime) -> CheckInSwitch:
    """
    Explicitly start a new epoch after a delivery.

    Archives the delivered epoch, then resets the row in one conditional
    UPDATE keyed on the delivered epoch so two concurrent re-arms cannot
    both succeed. The new epoch starts checked in at `now`.

    Raises:
        SwitchNotFound, NotDelivered, NoRecipients
    """
    now = to_naive_utc(now)
    switch = await require_switch(db, user_id)
    if switch.delivered_at is None:
        raise NotDelivered()
    if not switch.recipients:
        raise NoRecipients()

    result = await db.execute(
        update(CheckInSwitch)
        .where(
            CheckInSwitch.id == switch.id,
            CheckInSwitch.epoch == switch.epoch,
            CheckInSwitch.delivered_at == switch.delivered_at,
        )
        .values(
            epoch=switch.epoch + 1,
            is_enabled=True,
            delivered_at=None,
            last_check_in=now,
            delivering=False,
            claim_token=None,
            claimed_at=None,
            overdue_at=None,
            settings_version=switch.settings_version + 1,
            delivery_attempts=0,
            first_failed_at=None,
            last_error=None,
            updated_at=now,
        )
        .execution_options(**_NO_SYNC)
    )
    if result.rowcount == 0:
        raise NotDelivered("Last Wish was already re-armed")

    db.add(
        SwitchEpoch(
            switch_id=switch.id,
            user_id=switch.user_id,
            epoch=switch.epoch,
            frequency_days=switch.frequency_days,
            last_check_in=switch.last_check_in,
            delivered_at=switch.delivered_at,
            recipient_count=len(switch.recipients),
            rearmed_at=now,
        )
    )
    await db.flush()

    logger.bind(user_id=str(user_id), epoch=switch.epoch + 1).info("switch_rearmed")
    return await require_switch(db, user_id)


async def backdate_check_in(
    db: AsyncSession,
    user_id: uuid.UUID,
    last_check_in: datetime,
) -> CheckInSwitch:
    """Administrative override of last_check_in (test/ops tooling only, never the API)."""
    await require_switch(db, user_id)
    await db.execute(
        update(CheckInSwitch)
        .where(CheckInSwitch.user_id == user_id, CheckInSwitch.delivered_at.is_(None))
        .values(last_check_in=to_naive_utc(last_check_in))
        .execution_options(**_NO_SYNC)
    )
    logger.bind(user_id=str(user_id), last_check_in=str(last_check_in)).warning(
        "check_in_backdated"
    )
    return await require_switch(db, user_id)


async def force_release_claim(db: AsyncSession, user_id: uuid.UUID) -> bool:
    """Operator intervention: drop a stuck claim without waiting for the lease."""
    result = await db.execute(
        update(CheckInSwitch)
        .where(
            CheckInSwitch.user_id == user_id,
            CheckInSwitch.delivering == True,  # noqa: E712
            CheckInSwitch.delivered_at.is_(None),
        )
        .values(delivering=False, claim_token=None, claimed_at=None)
        .execution_options(**_NO_SYNC)
    )
    released = result.rowcount == 1
    if released:
        logger.bind(user_id=str(user_id)).warning("claim_force_released")
    return released


async def sent_recipients(db: AsyncSession, switch_id: uuid.UUID, epoch: int) -> set[str]:
    """Recipients already sent the real release in this epoch (lower-cased)."""
    result = await db.execute(
        select(LastWishDelivery.recipient_email).where(
            LastWishDelivery.switch_id == switch_id,
            LastWishDelivery.epoch == epoch,
            LastWishDelivery.status == "sent",
            LastWishDelivery.is_test == False,  # noqa: E712
        )
    )
    return {email.lower() for email in result.scalars().all()}


async def list_deliveries(
    db: AsyncSession,
    switch_id: uuid.UUID,
    epoch: int | None = None,
    limit: int = 50,
) -> list[LastWishDelivery]:
    query = select(LastWishDelivery).where(LastWishDelivery.switch_id == switch_id)
    if epoch is not None:
        query = query.where(LastWishDelivery.epoch == epoch)
    query = query.order_by(LastWishDelivery.created_at.desc()).limit(limit)
    result = await db.execute(query)
    return list(result.scalars().all())
