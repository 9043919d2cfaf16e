"""Error taxonomy for the Last Wish switch.

Every error carries an HTTP status and a stable `code` so the API layer can
map it without knowing the individual types.
"""

from fastapi import Request, status
from fastapi.responses import JSONResponse


class LastWishError(Exception):
    """Base class for all switch errors surfaced to callers."""

    status_code: int = status.HTTP_400_BAD_REQUEST
    code: str = "last_wish_error"
    message: str = "Last Wish request failed"

    def __init__(self, message: str | None = None) -> None:
        self.message = message or self.message
        super().__init__(self.message)


class SwitchNotFound(LastWishError):
    status_code = status.HTTP_404_NOT_FOUND
    code = "switch_not_found"
    message = "Last Wish is not configured for this account"


class NotEnabled(LastWishError):
    """Operation needs an enabled switch (manual release, for example)."""

    status_code = status.HTTP_409_CONFLICT
    code = "not_enabled"
    message = "Last Wish is disabled"


class AlreadyDelivered(LastWishError):
    """Mutation attempted after the switch reached its terminal state.

    Final: the switch cannot be revived by a check-in, only by an explicit
    re-arm.
    """

    status_code = status.HTTP_409_CONFLICT
    code = "already_delivered"
    message = (
        "Your Last Wish has already been delivered to your recipients. "
        "Check-ins can no longer change it."
    )


class NotDelivered(LastWishError):
    status_code = status.HTTP_409_CONFLICT
    code = "not_delivered"
    message = "Only a delivered Last Wish can be re-armed"


class NoRecipients(LastWishError):
    status_code = status.HTTP_400_BAD_REQUEST
    code = "no_recipients"
    message = "Add at least one recipient before enabling Last Wish"


class ClaimConflict(LastWishError):
    """Another worker holds (or already finished) the delivery claim.

    A normal "skip this tick" outcome for the scheduler, never an error.
    """

    status_code = status.HTTP_409_CONFLICT
    code = "claim_conflict"
    message = "Delivery is already being handled"


class SettingsConflict(LastWishError):
    """Settings kept changing underneath this request; the caller may retry."""

    status_code = status.HTTP_409_CONFLICT
    code = "settings_conflict"
    message = "Your Last Wish settings were changed elsewhere. Please try again."


class DeliveryFailed(LastWishError):
    """Transport-level failure; the scheduler retries on the next tick."""

    status_code = status.HTTP_502_BAD_GATEWAY
    code = "delivery_failed"
    message = "Email delivery failed"


async def last_wish_error_handler(request: Request, exc: LastWishError) -> JSONResponse:
    """Render switch errors as JSON with a machine-readable code."""
    return JSONResponse(
        status_code=exc.status_code,
        content={"detail": exc.message, "code": exc.code},
    )
