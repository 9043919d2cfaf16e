"""Declarative base and shared column mixins."""

from datetime import datetime

from sqlalchemy import func
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    pass


class TimestampMixin:
    """created_at / updated_at, stored as naive UTC like every other column."""

    created_at: Mapped[datetime] = mapped_column(server_default=func.now())
    # Conditional UPDATEs set updated_at explicitly; onupdate covers ORM flushes
    updated_at: Mapped[datetime] = mapped_column(server_default=func.now(), onupdate=func.now())
