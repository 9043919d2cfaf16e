import asyncio
import json
from datetime import datetime
from pathlib import Path
from typing import Any

import resend
from jinja2 import Environment, FileSystemLoader

from app.config import get_config, get_settings
from app.core.datetime_utils import utc_now
from app.core.logging import get_logger

logger = get_logger(__name__)

# Initialize Jinja2 environment for email templates
template_dir = Path(__file__).parent.parent / "emails" / "templates"
jinja_env = Environment(loader=FileSystemLoader(template_dir), autoescape=True)

SUBJECT = "Important: Financial Data from {owner} - Last Wish"
TEST_SUBJECT_PREFIX = "[Test] "

SECTION_TITLES = {
    "accounts": "Accounts",
    "transactions": "Transactions",
    "purchases": "Purchases",
    "lend_borrow": "Lending & Borrowing",
    "savings": "Savings goals",
    "analytics": "Analytics summary",
}


def _init_resend() -> None:
    """Initialize Resend API with API key."""
    settings = get_settings()
    if settings.resend_api_key:
        resend.api_key = settings.resend_api_key


def build_attachment(
    owner_email: str,
    payload: dict[str, list[dict]],
    generated_at: datetime,
) -> tuple[str, bytes]:
    """Serialize the export payload to the JSON file attached to the release."""
    filename = f"financial-data-{owner_email}-{generated_at.date().isoformat()}.json"
    document = {
        "owner": owner_email,
        "generated_at": generated_at.isoformat(),
        "data": payload,
    }
    return filename, json.dumps(document, indent=2, default=str).encode("utf-8")


def render_last_wish_email(
    owner_email: str,
    recipient: dict[str, Any],
    message: str,
    payload: dict[str, list[dict]],
    frequency_days: int,
    attachment_name: str,
    generated_at: datetime,
    is_test: bool = False,
) -> str:
    """Render the HTML body; falls back to a minimal body if the template is missing."""
    sections = [
        {"title": SECTION_TITLES.get(name, name), "count": len(records)}
        for name, records in payload.items()
    ]
    try:
        template = jinja_env.get_template("last_wish.html")
        return template.render(
            subject=SUBJECT.format(owner=owner_email),
            owner_email=owner_email,
            recipient_name=recipient.get("name") or "",
            message=message,
            sections=sections,
            frequency_days=frequency_days,
            attachment_name=attachment_name,
            generated_at=generated_at.strftime("%Y-%m-%d %H:%M"),
            is_test=is_test,
        )
    except Exception as e:
        logger.bind(error=str(e)).error("template_error")
        return (
            "<html><body style=\"font-family: sans-serif; padding: 20px;\">"
            f"<p>{owner_email} has not checked in and shared their financial data with you.</p>"
            f"<p>See the attached file {attachment_name}.</p>"
            "</body></html>"
        )


async def send_last_wish_email(
    owner_email: str,
    recipient: dict[str, Any],
    message: str,
    payload: dict[str, list[dict]],
    frequency_days: int,
    *,
    is_test: bool = False,
    now: datetime | None = None,
) -> bool:
    """
    Send the Last Wish release to one recipient.

    Args:
        owner_email: Email of the switch owner
        recipient: Recipient record ({id, email, name, relationship})
        message: Personal message from the owner
        payload: Exported financial data, keyed by section
        frequency_days: Owner's check-in interval, quoted in the email
        is_test: Mark the email as a test; nothing is released
        now: Generation timestamp (defaults to the current time)

    Returns:
        True if the transport accepted the email. An unconfigured transport
        or a transport error returns False.
    """
    _init_resend()
    settings = get_settings()
    config = get_config()
    generated_at = now or utc_now()
    to_email = recipient["email"]

    attachment_name, attachment = build_attachment(owner_email, payload, generated_at)
    html = render_last_wish_email(
        owner_email,
        recipient,
        message,
        payload,
        frequency_days,
        attachment_name,
        generated_at,
        is_test=is_test,
    )

    subject = SUBJECT.format(owner=owner_email)
    if is_test:
        subject = TEST_SUBJECT_PREFIX + subject

    if not settings.resend_api_key:
        logger.bind(recipient=to_email).warning("resend_api_key_not_set")
        return False

    params = {
        "from": f"{config.last_wish.sender_name} <noreply@{settings.email_domain}>",
        "to": [to_email],
        "subject": subject,
        "html": html,
        "reply_to": owner_email,
        "attachments": [{"filename": attachment_name, "content": list(attachment)}],
    }

    try:
        # The Resend SDK is synchronous
        await asyncio.to_thread(resend.Emails.send, params)
    except Exception as e:
        logger.bind(recipient=to_email, error=str(e), is_test=is_test).error("last_wish_email_failed")
        return False

    logger.bind(recipient=to_email, is_test=is_test).info("last_wish_email_sent")
    return True


async def send_dev_test_email() -> dict[str, bool | str]:
    """
    Send a sample test release to the configured dev email.

    Returns:
        Dict with the send result or an error message
    """
    settings = get_settings()

    if not settings.dev_email:
        logger.warning("dev_email_not_configured")
        return {"error": "DEV_EMAIL not configured in .env"}

    if not settings.resend_api_key:
        logger.warning("resend_api_key_not_set")
        return {"error": "RESEND_API_KEY not configured in .env"}

    sample_payload = {
        "accounts": [{"name": "Checking", "balance": 1250.0, "currency": "USD"}],
        "savings": [{"name": "Emergency fund", "target": 5000.0, "saved": 3200.0}],
    }
    sent = await send_last_wish_email(
        owner_email=settings.dev_email,
        recipient={"email": settings.dev_email, "name": "Dev"},
        message="This is a sample personal message.",
        payload=sample_payload,
        frequency_days=30,
        is_test=True,
    )
    return {"last_wish": sent}
