"""
Date Schedule Calculator for recurring billing.

Pure functions over immutable inputs: no I/O, no clock reads. The caller
passes ``now`` explicitly. Unset dates are ``None``.

Month and year arithmetic is calendar-aware: the day of month is kept where
the target month has it, otherwise the last day of the target month is used.
A start date on the last day of a month stays on month ends.
"""

from __future__ import annotations

import calendar
import dataclasses
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from decimal import Decimal

from dateutil.relativedelta import relativedelta
from django.utils import timezone

from apps.common.types import Err, Ok, Result

from .config import ACTIVATION_THRESHOLD, END_DATE_BUFFER, MAX_NEXT_PAYMENT_ITERATIONS
from .exceptions import DateOrderingError

# ===============================================================================
# CONSTANTS
# ===============================================================================

PERIODS = ("day", "week", "month", "year")

DATE_TYPES = (
    "start",
    "trial_end",
    "next_payment",
    "last_payment",
    "end",
    "cancelled",
    "payment_retry",
)

DATE_LABELS = {
    "start": "start",
    "trial_end": "trial end",
    "next_payment": "next payment",
    "last_payment": "last order",
    "end": "end",
    "cancelled": "cancellation",
    "payment_retry": "payment retry",
}

# Dates that can only be moved, never removed
UNDELETABLE_DATES = frozenset({"start", "last_payment"})

# Average calendar days per period unit, used where a cycle has no actual dates
NOMINAL_DAYS_PER_PERIOD = {
    "day": Decimal("1"),
    "week": Decimal("7"),
    "month": Decimal("30.4375"),
    "year": Decimal("365.25"),
}

# ===============================================================================
# VALUE OBJECTS
# ===============================================================================


@dataclass(frozen=True)
class Schedule:
    """The named dates that drive a subscription's billing"""

    start: datetime | None = None
    trial_end: datetime | None = None
    next_payment: datetime | None = None
    last_payment: datetime | None = None
    end: datetime | None = None
    cancelled: datetime | None = None
    payment_retry: datetime | None = None

    def get(self, date_type: str) -> datetime | None:
        if date_type not in DATE_TYPES:
            raise KeyError(f"Unknown date type: {date_type}")
        return getattr(self, date_type)

    def with_dates(self, **changes: datetime | None) -> Schedule:
        return dataclasses.replace(self, **changes)

    def as_dict(self) -> dict[str, datetime | None]:
        return {date_type: getattr(self, date_type) for date_type in DATE_TYPES}

    def changed_dates(self, other: Schedule) -> dict[str, datetime | None]:
        """Dates in ``other`` that differ from this schedule."""
        return {
            date_type: other.get(date_type)
            for date_type in DATE_TYPES
            if other.get(date_type) != self.get(date_type)
        }


@dataclass(frozen=True)
class BillingTerms:
    """How often a subscription renews and for how many payments"""

    period: str = "month"
    interval: int = 1
    length: int = 0  # total payments, 0 = until cancelled

    def __post_init__(self) -> None:
        if self.period not in PERIODS:
            raise ValueError(f"Invalid billing period: {self.period}")
        if self.interval < 1:
            raise ValueError(f"Billing interval must be at least 1, got {self.interval}")
        if self.length < 0:
            raise ValueError(f"Subscription length cannot be negative, got {self.length}")


@dataclass(frozen=True)
class ScheduleSnapshot:
    """Everything a date calculation may look at"""

    schedule: Schedule = field(default_factory=Schedule)
    terms: BillingTerms = field(default_factory=BillingTerms)
    completed_payment_count: int = 0
    is_synchronised: bool = False


# ===============================================================================
# CALENDAR ARITHMETIC
# ===============================================================================


def add_months(from_date: datetime, months: int) -> datetime:
    """Add calendar months, keeping month-end dates on month ends."""
    target = from_date + relativedelta(months=months)
    _, days_in_from_month = calendar.monthrange(from_date.year, from_date.month)
    if from_date.day == days_in_from_month:
        _, days_in_target_month = calendar.monthrange(target.year, target.month)
        target = target.replace(day=days_in_target_month)
    return target


def add_time(number_of_periods: int, period: str, from_date: datetime) -> datetime:
    """Add ``number_of_periods`` billing periods to ``from_date``."""
    if period == "day":
        return from_date + timedelta(days=number_of_periods)
    if period == "week":
        return from_date + timedelta(weeks=number_of_periods)
    if period == "month":
        return add_months(from_date, number_of_periods)
    if period == "year":
        return add_months(from_date, 12 * number_of_periods)
    raise ValueError(f"Invalid billing period: {period}")


def days_in_cycle(period: str, interval: int) -> Decimal:
    """Nominal number of days in one billing cycle."""
    if period not in NOMINAL_DAYS_PER_PERIOD:
        raise ValueError(f"Invalid billing period: {period}")
    return NOMINAL_DAYS_PER_PERIOD[period] * interval


# ===============================================================================
# DERIVED DATES
# ===============================================================================


def _choose_anchor(snapshot: ScheduleSnapshot, now: datetime) -> datetime | None:
    schedule = snapshot.schedule
    start = schedule.start
    stored_next = schedule.next_payment
    last_payment = schedule.last_payment

    # Trial-adjacent and calendar-synced subscriptions keep their cadence
    if (
        stored_next is not None
        and stored_next < now
        and (
            (schedule.trial_end is not None and snapshot.completed_payment_count <= 1)
            or snapshot.is_synchronised
        )
    ):
        return stored_next
    if last_payment is not None and (start is None or last_payment >= start):
        return last_payment
    if stored_next is not None and start is not None and stored_next > start:
        return stored_next
    return start


def calculate_next_payment(snapshot: ScheduleSnapshot, now: datetime) -> Result[datetime | None, str]:
    """
    Compute the next renewal date.

    Returns Ok(None) when no further payment is due because the subscription
    ends first, and Err when the date cannot be computed.
    """
    schedule = snapshot.schedule
    if schedule.trial_end is not None and schedule.trial_end > now:
        candidate = schedule.trial_end
    else:
        anchor = _choose_anchor(snapshot, now)
        if anchor is None:
            return Err("cannot compute next payment date: subscription has no start date")

        terms = snapshot.terms
        threshold = now + ACTIVATION_THRESHOLD
        candidate = anchor
        for _ in range(MAX_NEXT_PAYMENT_ITERATIONS):
            candidate = add_time(terms.interval, terms.period, candidate)
            if candidate >= threshold:
                break
        else:
            return Err(
                f"cannot compute next payment date: still before {threshold.isoformat()} "
                f"after {MAX_NEXT_PAYMENT_ITERATIONS} billing intervals"
            )

    # No payment inside the buffer before the end date, trial end included
    if schedule.end is not None and candidate + END_DATE_BUFFER > schedule.end:
        return Ok(None)
    return Ok(candidate)


def calculate_trial_end(snapshot: ScheduleSnapshot, now: datetime) -> datetime | None:
    """Trial end is permanently unset once two payments have completed."""
    if snapshot.completed_payment_count >= 2:
        return None
    fresh = dataclasses.replace(snapshot, completed_payment_count=0)
    return calculate_next_payment(fresh, now).unwrap_or(None)


def calculate_end_of_prepaid_term(snapshot: ScheduleSnapshot, now: datetime) -> datetime:
    """The date up to which the customer has already paid."""
    next_payment = snapshot.schedule.next_payment
    end = snapshot.schedule.end
    if next_payment is not None and next_payment >= now:
        return next_payment
    if next_payment is None or end is None or end <= now:
        return now
    return end


def calculate_date(date_type: str, snapshot: ScheduleSnapshot, now: datetime) -> Result[datetime | None, str]:
    """Dispatch a derived-date calculation by name."""
    if date_type == "next_payment":
        return calculate_next_payment(snapshot, now)
    if date_type == "trial_end":
        return Ok(calculate_trial_end(snapshot, now))
    if date_type in ("end_of_prepaid_term", "end"):
        return Ok(calculate_end_of_prepaid_term(snapshot, now))
    return Err(f"cannot calculate date type: {date_type}")


# ===============================================================================
# VALIDATION
# ===============================================================================

# (date_type, must_not_precede, strictly_after)
_ORDERING_RULES: tuple[tuple[str, str, bool], ...] = (
    ("end", "cancelled", False),
    ("end", "last_payment", False),
    ("cancelled", "last_payment", False),
    ("end", "next_payment", True),
    ("cancelled", "next_payment", True),
    ("end", "trial_end", False),
    ("cancelled", "trial_end", False),
    ("next_payment", "trial_end", False),
    ("trial_end", "start", True),
    ("next_payment", "start", True),
)


def _ordering_error(date_type: str, other: str) -> DateOrderingError:
    return DateOrderingError(
        date_type,
        other,
        f"The {DATE_LABELS[date_type]} date must occur after the {DATE_LABELS[other]} date.",
    )


def validate_date_set(
    proposed: Mapping[str, datetime | None],
    current: Schedule,
) -> Result[Schedule, DateOrderingError]:
    """
    Merge proposed dates into the current schedule and check their ordering.

    A ``None`` value deletes that date. The whole batch is rejected on the
    first violation so callers never persist a partial update.
    """
    for date_type, value in proposed.items():
        if date_type not in DATE_TYPES:
            return Err(DateOrderingError(date_type, None, f"Invalid subscription date type: {date_type}"))
        if value is None and date_type in UNDELETABLE_DATES:
            return Err(DateOrderingError(
                date_type, None, f"The {DATE_LABELS[date_type]} date of a subscription can not be deleted, only updated."
            ))
        if value is not None and timezone.is_naive(value):
            return Err(DateOrderingError(date_type, None, f"The {DATE_LABELS[date_type]} date must be timezone-aware."))

    new_last_payment = proposed.get("last_payment")
    if new_last_payment is not None and current.last_payment is not None and new_last_payment < current.last_payment:
        return Err(DateOrderingError(
            "last_payment", None, "The last order date can not move backwards."
        ))

    merged = current.with_dates(**proposed)
    for date_type, other, strictly_after in _ORDERING_RULES:
        value = merged.get(date_type)
        other_value = merged.get(other)
        if value is None or other_value is None:
            continue
        if value < other_value or (strictly_after and value == other_value):
            return Err(_ordering_error(date_type, other))

    return Ok(merged)


__all__ = [
    "DATE_LABELS",
    "DATE_TYPES",
    "PERIODS",
    "BillingTerms",
    "Schedule",
    "ScheduleSnapshot",
    "add_months",
    "add_time",
    "calculate_date",
    "calculate_end_of_prepaid_term",
    "calculate_next_payment",
    "calculate_trial_end",
    "days_in_cycle",
    "validate_date_set",
]
