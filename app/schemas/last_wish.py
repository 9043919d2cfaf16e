import uuid
from datetime import datetime

from pydantic import BaseModel, EmailStr, Field, field_validator


class Recipient(BaseModel):
    """Person who receives the release if the owner stops checking in."""

    id: str = Field(default_factory=lambda: str(uuid.uuid4()), max_length=36)
    email: EmailStr
    name: str = Field(default="", max_length=120)
    relationship: str = Field(default="", max_length=60)

    @field_validator("name", "relationship")
    @classmethod
    def strip_text(cls, v: str) -> str:
        return v.strip()


class IncludeData(BaseModel):
    """Data categories released to recipients."""

    accounts: bool = True
    transactions: bool = True
    purchases: bool = True
    lend_borrow: bool = True
    savings: bool = True
    analytics: bool = True


class SettingsUpdate(BaseModel):
    """Request body for PUT /api/last-wish/settings. Omitted fields are unchanged."""

    is_enabled: bool | None = None
    frequency_days: int | None = Field(default=None, ge=1)
    recipients: list[Recipient] | None = None
    include_data: IncludeData | None = None
    message: str | None = Field(default=None, max_length=10000)

    @field_validator("recipients")
    @classmethod
    def dedupe_recipients(cls, v: list[Recipient] | None) -> list[Recipient] | None:
        """Keep the first occurrence of each email address, preserving order."""
        if v is None:
            return v
        seen: set[str] = set()
        unique = []
        for recipient in v:
            key = recipient.email.lower()
            if key in seen:
                continue
            seen.add(key)
            unique.append(recipient)
        return unique


class CountdownResponse(BaseModel):
    is_active: bool
    days_left: int | None
    is_overdue: bool
    urgency: str
    progress: float
    next_check_in: datetime | None = None


class DeliveryStatus(BaseModel):
    is_delivered: bool
    delivered_at: datetime | None = None
    delivering: bool = False
    # Claimed for delivery in this epoch; retried until delivered
    pending_since: datetime | None = None
    delivery_attempts: int = 0
    last_error: str | None = None
    epoch: int = 1


class LastWishResponse(BaseModel):
    """Response for GET /api/last-wish."""

    configured: bool
    is_enabled: bool = False
    frequency_days: int | None = None
    last_check_in: datetime | None = None
    recipients: list[Recipient] = Field(default_factory=list)
    include_data: IncludeData = Field(default_factory=IncludeData)
    message: str = ""
    countdown: CountdownResponse | None = None
    delivery: DeliveryStatus | None = None


class CheckInResponse(BaseModel):
    ok: bool = True
    last_check_in: datetime
    countdown: CountdownResponse


class DeliveryLogEntry(BaseModel):
    recipient_email: str
    status: str
    error: str | None = None
    is_test: bool = False
    epoch: int
    sent_at: datetime | None = None
    created_at: datetime


class SendTestEmailResponse(BaseModel):
    ok: bool
    sent: list[str] = Field(default_factory=list)
    failed: list[str] = Field(default_factory=list)
