from app.models.base import Base
from app.models.job_run import JobRun
from app.models.last_wish import CheckInSwitch, LastWishDelivery, SwitchEpoch
from app.models.user import Session, User

__all__ = [
    "Base",
    "User",
    "Session",
    "CheckInSwitch",
    "LastWishDelivery",
    "SwitchEpoch",
    "JobRun",
]
