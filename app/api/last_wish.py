"""Last Wish settings, check-in and delivery status endpoints."""

from fastapi import APIRouter, HTTPException, Query, Request, status

from app.config import get_config
from app.core.datetime_utils import to_aware_utc, utc_now
from app.core.exceptions import DeliveryFailed
from app.core.logging import get_logger
from app.core.rate_limit import limiter
from app.dependencies import Config, CurrentUser, DBSession
from app.models.last_wish import CheckInSwitch
from app.pipeline.countdown import Countdown, evaluate, evaluate_switch
from app.schemas.last_wish import (
    CheckInResponse,
    CountdownResponse,
    DeliveryLogEntry,
    DeliveryStatus,
    IncludeData,
    LastWishResponse,
    Recipient,
    SendTestEmailResponse,
    SettingsUpdate,
)
from app.services import delivery, switch_store

logger = get_logger(__name__)

router = APIRouter()


def _countdown_response(countdown: Countdown) -> CountdownResponse:
    return CountdownResponse(
        is_active=countdown.is_active,
        days_left=countdown.days_left,
        is_overdue=countdown.is_overdue,
        urgency=countdown.urgency.value,
        progress=round(countdown.progress, 1),
        next_check_in=to_aware_utc(countdown.deadline),
    )


def _switch_response(switch: CheckInSwitch) -> LastWishResponse:
    """Settings, countdown and delivery status for a switch."""
    countdown = evaluate_switch(switch, utc_now())
    return LastWishResponse(
        configured=True,
        is_enabled=switch.is_enabled,
        frequency_days=switch.frequency_days,
        last_check_in=to_aware_utc(switch.last_check_in),
        recipients=[Recipient.model_validate(r) for r in switch.recipients],
        include_data=IncludeData.model_validate(switch.include_data or {}),
        message=switch.message or "",
        # A delivered switch has nothing left to count down
        countdown=None if switch.is_delivered else _countdown_response(countdown),
        delivery=DeliveryStatus(
            is_delivered=switch.is_delivered,
            delivered_at=to_aware_utc(switch.delivered_at),
            delivering=switch.delivering,
            pending_since=to_aware_utc(switch.overdue_at),
            delivery_attempts=switch.delivery_attempts,
            last_error=switch.last_error,
            epoch=switch.epoch,
        ),
    )


@router.get("/last-wish", response_model=LastWishResponse)
async def get_last_wish(user: CurrentUser, db: DBSession, config: Config) -> LastWishResponse:
    """
    Get the current user's Last Wish.

    Returns configured=false with defaults if the user never set it up.
    """
    switch = await switch_store.get_switch(db, user.id)
    if switch is None:
        return LastWishResponse(
            configured=False,
            frequency_days=config.last_wish.default_frequency_days,
        )
    return _switch_response(switch)


@router.put("/last-wish/settings", response_model=LastWishResponse)
async def update_last_wish_settings(
    body: SettingsUpdate,
    user: CurrentUser,
    db: DBSession,
    config: Config,
) -> LastWishResponse:
    """
    Create or update Last Wish settings.

    The first call creates the switch (disabled). Changing the frequency
    keeps the current last check-in. Enabling needs at least one recipient.
    """
    limits = config.last_wish
    if body.frequency_days is not None and body.frequency_days > limits.max_frequency_days:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Check-in frequency cannot exceed {limits.max_frequency_days} days",
        )
    if body.recipients is not None and len(body.recipients) > limits.max_recipients:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"At most {limits.max_recipients} recipients are allowed",
        )

    values = body.model_dump(exclude_unset=True, exclude_none=True, mode="json")

    await switch_store.get_or_create_switch(db, user.id, limits.default_frequency_days)
    switch = await switch_store.update_settings(db, user.id, values, utc_now())
    await db.commit()

    logger.bind(user_id=str(user.id), fields=sorted(values)).info("last_wish_settings_updated")
    return _switch_response(switch)


@router.post("/last-wish/check-in", response_model=CheckInResponse)
@limiter.limit(lambda: get_config().rate_limits.check_in)
async def check_in(request: Request, user: CurrentUser, db: DBSession) -> CheckInResponse:
    """
    Check in now: resets the countdown.

    Rejected with 409 once the Last Wish has been delivered.
    """
    now = utc_now()
    result = await switch_store.check_in(db, user.id, now)
    await db.commit()

    switch = await switch_store.require_switch(db, user.id)
    countdown = evaluate(
        result.last_check_in, switch.frequency_days, now, is_enabled=switch.is_enabled
    )

    logger.bind(user_id=str(user.id)).info("check_in_recorded")
    return CheckInResponse(
        ok=result.ok,
        last_check_in=to_aware_utc(result.last_check_in),
        countdown=_countdown_response(countdown),
    )


@router.post("/last-wish/rearm", response_model=LastWishResponse)
async def rearm_last_wish(user: CurrentUser, db: DBSession) -> LastWishResponse:
    """
    Re-arm a delivered Last Wish.

    Archives the delivered epoch and starts a new countdown from now.
    """
    switch = await switch_store.rearm(db, user.id, utc_now())
    await db.commit()
    return _switch_response(switch)


@router.post("/last-wish/test-email", response_model=SendTestEmailResponse)
@limiter.limit(lambda: get_config().rate_limits.test_email)
async def send_test_email(request: Request, user: CurrentUser, db: DBSession) -> SendTestEmailResponse:
    """Send a clearly marked test email to every recipient. Nothing is released."""
    result = await delivery.send_test_email(db, user.id, utc_now())
    if result.failed and not result.sent:
        raise DeliveryFailed("The test email could not be sent to any recipient")
    return SendTestEmailResponse(ok=not result.failed, sent=result.sent, failed=result.failed)


@router.get("/last-wish/deliveries", response_model=list[DeliveryLogEntry])
async def list_deliveries(
    user: CurrentUser,
    db: DBSession,
    all_epochs: bool = Query(default=False, description="Include earlier epochs"),
    limit: int = Query(default=50, le=200),
) -> list[DeliveryLogEntry]:
    """Delivery log for the current epoch (or all epochs)."""
    switch = await switch_store.require_switch(db, user.id)
    entries = await switch_store.list_deliveries(
        db, switch.id, epoch=None if all_epochs else switch.epoch, limit=limit
    )
    return [
        DeliveryLogEntry(
            recipient_email=entry.recipient_email,
            status=entry.status,
            error=entry.error,
            is_test=entry.is_test,
            epoch=entry.epoch,
            sent_at=to_aware_utc(entry.sent_at),
            created_at=to_aware_utc(entry.created_at),
        )
        for entry in entries
    ]
