"""Delivery Trigger: send the release for a claimed switch.

Owns only the trigger-once bookkeeping. Payload contents come from the data
exporter and sending goes through the email transport; both are treated as
opaque collaborators.
"""

import uuid
from dataclasses import dataclass, field
from datetime import datetime

from sqlalchemy.ext.asyncio import AsyncSession

from app.core.exceptions import ClaimConflict, NoRecipients, SwitchNotFound
from app.core.logging import get_logger
from app.models.last_wish import DEFAULT_INCLUDE_DATA, CheckInSwitch, LastWishDelivery
from app.services import switch_store
from app.services.data_export import (
    DataExportError,
    FinancialDataExporter,
    get_data_exporter,
)
from app.services.email_service import send_last_wish_email

logger = get_logger(__name__)


@dataclass
class DeliveryResult:
    delivered: bool
    error: str | None = None
    skipped: bool = False
    sent: list[str] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)


def included_sections(switch: CheckInSwitch) -> list[str]:
    include = {**DEFAULT_INCLUDE_DATA, **(switch.include_data or {})}
    return [name for name in DEFAULT_INCLUDE_DATA if include.get(name)]


async def _send_all(
    db: AsyncSession,
    switch: CheckInSwitch,
    payload: dict[str, list[dict]],
    now: datetime,
    *,
    is_test: bool,
    skip: set[str] | None = None,
) -> tuple[list[str], list[str]]:
    """Send to each recipient, committing one log row per attempt."""
    skip = skip or set()
    # Copy out before the first commit; the loop must not touch the row
    switch_id = switch.id
    user_id = switch.user_id
    epoch = switch.epoch
    owner_email = switch.user.email
    message = switch.message or ""
    frequency_days = switch.frequency_days
    recipients = list(switch.recipients)

    sent: list[str] = []
    failed: list[str] = []
    for recipient in recipients:
        email = recipient["email"]
        if email.lower() in skip:
            continue

        ok = await send_last_wish_email(
            owner_email,
            recipient,
            message,
            payload,
            frequency_days,
            is_test=is_test,
            now=now,
        )
        db.add(
            LastWishDelivery(
                switch_id=switch_id,
                user_id=user_id,
                epoch=epoch,
                recipient_email=email,
                status="sent" if ok else "failed",
                error=None if ok else "transport rejected the email",
                is_test=is_test,
                sent_at=now if ok else None,
                created_at=now,
            )
        )
        await db.commit()
        (sent if ok else failed).append(email)

    return sent, failed


async def deliver(
    db: AsyncSession,
    switch_id: uuid.UUID,
    claim_token: str,
    now: datetime,
    exporter: FinancialDataExporter | None = None,
) -> DeliveryResult:
    """
    Send the release for a switch this caller has claimed.

    Safe to call twice for the same claim: the row is re-read first, and a
    switch that is already delivered returns `skipped` without sending.
    Recipients already sent to in this epoch are not sent to again.

    Args:
        db: Session; per-recipient log rows are committed as they are written
        switch_id: Claimed switch
        claim_token: Token returned by the claim
        now: Tick time
        exporter: Data export collaborator (defaults to the configured one)

    Returns:
        DeliveryResult; delivered is True only once every recipient was sent to

    Raises:
        SwitchNotFound: The switch row no longer exists
        ClaimConflict: The claim was lost (lease expired and taken over)
    """
    switch = await switch_store.get_switch_by_id(db, switch_id)
    if switch is None:
        raise SwitchNotFound()

    log = logger.bind(switch_id=str(switch_id), user_id=str(switch.user_id), epoch=switch.epoch)

    if switch.delivered_at is not None:
        log.info("delivery_already_completed")
        return DeliveryResult(delivered=True, skipped=True)

    if switch.claim_token != claim_token:
        raise ClaimConflict()

    if not switch.recipients:
        log.error("delivery_without_recipients")
        return DeliveryResult(delivered=False, error="no recipients configured")

    exporter = exporter or get_data_exporter()
    try:
        payload = await exporter.export(switch.user_id, included_sections(switch))
    except DataExportError as e:
        return DeliveryResult(delivered=False, error=str(e))

    already_sent = await switch_store.sent_recipients(db, switch.id, switch.epoch)
    sent, failed = await _send_all(db, switch, payload, now, is_test=False, skip=already_sent)

    if failed:
        log.bind(sent=len(sent), failed=len(failed)).warning("delivery_partially_failed")
        return DeliveryResult(
            delivered=False,
            error=f"failed to send to {len(failed)} recipient(s)",
            sent=sent,
            failed=failed,
        )

    log.bind(sent=len(sent), previously_sent=len(already_sent)).info("delivery_sent")
    return DeliveryResult(delivered=True, sent=sent)


async def send_test_email(
    db: AsyncSession,
    user_id: uuid.UUID,
    now: datetime,
    exporter: FinancialDataExporter | None = None,
) -> DeliveryResult:
    """
    Send a marked test email to every recipient.

    Never claims the switch or touches delivered_at; log rows are written
    with is_test=True.

    Raises:
        SwitchNotFound, NoRecipients
    """
    switch = await switch_store.require_switch(db, user_id)
    if not switch.recipients:
        raise NoRecipients("Add at least one recipient before sending a test email")

    exporter = exporter or get_data_exporter()
    try:
        payload = await exporter.export(switch.user_id, included_sections(switch))
    except DataExportError as e:
        logger.bind(user_id=str(user_id), error=str(e)).warning("test_email_export_failed")
        payload = {}

    sent, failed = await _send_all(db, switch, payload, now, is_test=True)
    logger.bind(user_id=str(user_id), sent=len(sent), failed=len(failed)).info("test_email_sent")
    return DeliveryResult(delivered=False, sent=sent, failed=failed)
