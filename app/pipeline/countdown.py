"""Countdown evaluation for a Last Wish switch.

Pure and deterministic: the only notion of time is the `now` argument, so
the scheduler, the API and the tests all see the same answer for the same
inputs.

    deadline   = last_check_in + frequency_days
    days_left  = ceil((deadline - now) / 1 day)      (may be negative)
    is_overdue = now >= deadline                     (equivalently days_left <= 0)

Urgency, first match wins: overdue, critical (<= 3 days), warning (<= 7 days),
safe.
"""

import math
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum

from app.core.datetime_utils import to_naive_utc

SECONDS_PER_DAY = 86400

CRITICAL_DAYS = 3
WARNING_DAYS = 7


class Urgency(str, Enum):
    """Urgency of a countdown, ordered by severity."""

    SAFE = "safe"
    WARNING = "warning"
    CRITICAL = "critical"
    OVERDUE = "overdue"

    @property
    def severity(self) -> int:
        return _SEVERITY[self]


_SEVERITY = {
    Urgency.SAFE: 0,
    Urgency.WARNING: 1,
    Urgency.CRITICAL: 2,
    Urgency.OVERDUE: 3,
}


@dataclass(frozen=True)
class Countdown:
    """Result of evaluating a switch at a given instant."""

    is_active: bool
    days_left: int | None
    is_overdue: bool
    urgency: Urgency
    progress: float
    deadline: datetime | None = None
    seconds_left: float | None = None

    @property
    def has_deadline(self) -> bool:
        return self.deadline is not None


INACTIVE = Countdown(
    is_active=False,
    days_left=None,
    is_overdue=False,
    urgency=Urgency.SAFE,
    progress=0.0,
)


def classify_urgency(days_left: int) -> Urgency:
    """Map whole days remaining to an urgency level."""
    if days_left <= 0:
        return Urgency.OVERDUE
    if days_left <= CRITICAL_DAYS:
        return Urgency.CRITICAL
    if days_left <= WARNING_DAYS:
        return Urgency.WARNING
    return Urgency.SAFE


def compute_progress(days_left: int, frequency_days: int) -> float:
    """Share of the interval already used, as a 0-100 percentage (display only)."""
    elapsed = frequency_days - days_left
    return max(0.0, min(100.0, elapsed / frequency_days * 100))


def evaluate(
    last_check_in: datetime | None,
    frequency_days: int,
    now: datetime,
    *,
    is_enabled: bool = True,
) -> Countdown:
    """
    Evaluate the countdown for a switch.

    Args:
        last_check_in: Last check-in time, None if the user never checked in
        frequency_days: Check-in interval in days (positive)
        now: Evaluation instant
        is_enabled: Disabled switches are inert and report no countdown

    Returns:
        Countdown for display and for the scheduler's overdue decision

    Raises:
        ValueError: If frequency_days is not positive
    """
    if frequency_days <= 0:
        raise ValueError(f"frequency_days must be positive, got {frequency_days}")

    if not is_enabled:
        return INACTIVE

    if last_check_in is None:
        return Countdown(
            is_active=True,
            days_left=frequency_days,
            is_overdue=False,
            urgency=Urgency.SAFE,
            progress=0.0,
        )

    deadline = to_naive_utc(last_check_in) + timedelta(days=frequency_days)
    seconds_left = (deadline - to_naive_utc(now)).total_seconds()
    days_left = math.ceil(seconds_left / SECONDS_PER_DAY)

    # ceil maps the whole first day past the deadline (and the deadline
    # instant itself) to 0, so "overdue" and "days_left <= 0" coincide
    urgency = classify_urgency(days_left)

    return Countdown(
        is_active=True,
        days_left=days_left,
        is_overdue=urgency is Urgency.OVERDUE,
        urgency=urgency,
        progress=compute_progress(days_left, frequency_days),
        deadline=deadline,
        seconds_left=seconds_left,
    )


def evaluate_switch(switch, now: datetime) -> Countdown:
    """Evaluate a CheckInSwitch row."""
    return evaluate(
        switch.last_check_in,
        switch.frequency_days,
        now,
        is_enabled=switch.is_enabled,
    )
