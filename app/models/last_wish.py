"""Last Wish check-in switch and its delivery bookkeeping."""

from __future__ import annotations

import uuid
from datetime import datetime
from typing import TYPE_CHECKING, Any

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
    Uuid,
    func,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.models.base import Base, TimestampMixin

if TYPE_CHECKING:
    from app.models.user import User


DEFAULT_INCLUDE_DATA: dict[str, bool] = {
    "accounts": True,
    "transactions": True,
    "purchases": True,
    "lend_borrow": True,
    "savings": True,
    "analytics": True,
}


class CheckInSwitch(Base, TimestampMixin):
    """One dead-man's switch per user.

    `delivered_at` is the terminal marker for the current epoch. Every
    mutation goes through a single-row conditional UPDATE in
    `app.services.switch_store`; nothing writes these columns through the
    ORM unit of work.
    """

    __tablename__ = "last_wish_switches"
    __table_args__ = (CheckConstraint("frequency_days > 0", name="ck_switch_frequency_positive"),)

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("users.id", ondelete="CASCADE"), unique=True, index=True
    )

    # Settings
    is_enabled: Mapped[bool] = mapped_column(Boolean, default=False)
    frequency_days: Mapped[int] = mapped_column(Integer, default=30)
    recipients: Mapped[list[dict[str, Any]]] = mapped_column(JSON, default=list)
    include_data: Mapped[dict[str, bool]] = mapped_column(
        JSON, default=lambda: dict(DEFAULT_INCLUDE_DATA)
    )
    message: Mapped[str] = mapped_column(Text, default="")

    # Countdown
    last_check_in: Mapped[datetime | None] = mapped_column(default=None)

    # Delivery state
    delivered_at: Mapped[datetime | None] = mapped_column(default=None)
    delivering: Mapped[bool] = mapped_column(Boolean, default=False)
    claim_token: Mapped[str | None] = mapped_column(String(36), default=None)
    claimed_at: Mapped[datetime | None] = mapped_column(default=None)
    # Set by the first claim of an epoch and kept until delivered or re-armed:
    # a switch claimed once stays due even if the owner checks in later
    overdue_at: Mapped[datetime | None] = mapped_column(default=None)
    delivery_attempts: Mapped[int] = mapped_column(Integer, default=0)
    first_failed_at: Mapped[datetime | None] = mapped_column(default=None)
    last_error: Mapped[str | None] = mapped_column(Text, default=None)
    epoch: Mapped[int] = mapped_column(Integer, default=1)
    # Compare-and-swap guard for settings writes
    settings_version: Mapped[int] = mapped_column(Integer, default=0)

    # Relationships
    user: Mapped[User] = relationship(lazy="selectin")

    @property
    def is_delivered(self) -> bool:
        return self.delivered_at is not None

    def __repr__(self) -> str:
        return f"<CheckInSwitch user={self.user_id} epoch={self.epoch}>"


class LastWishDelivery(Base):
    """One row per recipient send attempt (real or test)."""

    __tablename__ = "last_wish_deliveries"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    switch_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("last_wish_switches.id", ondelete="CASCADE"), index=True
    )
    user_id: Mapped[uuid.UUID] = mapped_column(Uuid, index=True)
    epoch: Mapped[int] = mapped_column(Integer)
    recipient_email: Mapped[str] = mapped_column(String(255))
    status: Mapped[str] = mapped_column(String(20))  # sent, failed
    error: Mapped[str | None] = mapped_column(Text, default=None)
    is_test: Mapped[bool] = mapped_column(Boolean, default=False)
    sent_at: Mapped[datetime | None] = mapped_column(default=None)
    created_at: Mapped[datetime] = mapped_column(default=func.now())

    def __repr__(self) -> str:
        return f"<LastWishDelivery {self.recipient_email} {self.status}>"


class SwitchEpoch(Base):
    """Archive of a delivered epoch, written by an explicit re-arm."""

    __tablename__ = "last_wish_epochs"
    __table_args__ = (UniqueConstraint("switch_id", "epoch", name="uq_switch_epoch"),)

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    switch_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("last_wish_switches.id", ondelete="CASCADE"), index=True
    )
    user_id: Mapped[uuid.UUID] = mapped_column(Uuid, index=True)
    epoch: Mapped[int] = mapped_column(Integer)
    frequency_days: Mapped[int] = mapped_column(Integer)
    last_check_in: Mapped[datetime | None] = mapped_column(default=None)
    delivered_at: Mapped[datetime] = mapped_column()
    recipient_count: Mapped[int] = mapped_column(Integer, default=0)
    rearmed_at: Mapped[datetime] = mapped_column()

    def __repr__(self) -> str:
        return f"<SwitchEpoch switch={self.switch_id} epoch={self.epoch}>"
