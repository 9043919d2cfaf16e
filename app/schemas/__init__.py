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

__all__ = [
    "CheckInResponse",
    "CountdownResponse",
    "DeliveryLogEntry",
    "DeliveryStatus",
    "IncludeData",
    "LastWishResponse",
    "Recipient",
    "SendTestEmailResponse",
    "SettingsUpdate",
]
