"""
Switch Proration Calculator.

Given the line item a subscriber is leaving, the plan they are moving to and
the billing state of the subscription, compute the gap payment and the new
first-payment and end dates. Pure: all inputs are values, ``now`` included.

Money is ``Decimal`` throughout and results are rounded half-up to the store
precision. Charges and remaining lengths are never negative.
"""

from __future__ import annotations

import math
from collections.abc import Mapping
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import ROUND_CEILING, ROUND_HALF_UP, Decimal
from typing import Any, ClassVar

from apps.common.types import Err, Ok, Result

from .config import END_DATE_BUFFER
from .exceptions import ConfigurationError
from .schedule import PERIODS, add_time, days_in_cycle

SECONDS_PER_DAY = Decimal(86400)
ZERO = Decimal("0")


# ===============================================================================
# POLICY
# ===============================================================================


@dataclass(frozen=True)
class ProrationPolicy:
    """Independently configurable proration modes"""

    RECURRING_PRICE_MODES: ClassVar[tuple[str, ...]] = (
        "never",
        "virtual-upgrades-only",
        "upgrades-only",
        "virtual-both",
        "both",
    )
    SIGN_UP_FEE_MODES: ClassVar[tuple[str, ...]] = ("never", "always")
    LENGTH_MODES: ClassVar[tuple[str, ...]] = ("never", "virtual-only", "always")

    recurring_price: str = "never"
    sign_up_fee: str = "never"
    length: str = "never"

    def __post_init__(self) -> None:
        if self.recurring_price not in self.RECURRING_PRICE_MODES:
            raise ConfigurationError(f"Invalid recurring price proration mode: {self.recurring_price!r}")
        if self.sign_up_fee not in self.SIGN_UP_FEE_MODES:
            raise ConfigurationError(f"Invalid sign-up fee proration mode: {self.sign_up_fee!r}")
        if self.length not in self.LENGTH_MODES:
            raise ConfigurationError(f"Invalid length proration mode: {self.length!r}")

    @classmethod
    def from_config(cls, data: Mapping[str, Any]) -> ProrationPolicy:
        if not isinstance(data, Mapping):
            raise ConfigurationError("SUBSCRIPTIONS_PRORATION must be a mapping")
        unknown = set(data) - {"recurring_price", "sign_up_fee", "length"}
        if unknown:
            raise ConfigurationError(f"Unknown proration settings: {', '.join(sorted(unknown))}")
        return cls(**{key: str(value) for key, value in data.items()})

    def prorates_recurring(self, item: RecurringItem) -> bool:
        if self.recurring_price in ("upgrades-only", "both"):
            return True
        return item.is_virtual and self.recurring_price in ("virtual-upgrades-only", "virtual-both")

    def extends_downgrades(self, item: RecurringItem) -> bool:
        if self.recurring_price == "both":
            return True
        return item.is_virtual and self.recurring_price == "virtual-both"

    def prorates_length(self, item: RecurringItem) -> bool:
        return self.length == "always" or (self.length == "virtual-only" and item.is_virtual)


# ===============================================================================
# INPUTS & RESULT
# ===============================================================================


@dataclass(frozen=True)
class RecurringItem:
    """The recurring capability of a product, or of a subscription line item"""

    price: Decimal
    quantity: int = 1
    sign_up_fee: Decimal = ZERO
    period: str = "month"
    interval: int = 1
    length: int = 0
    trial_length: int = 0
    trial_period: str = ""
    is_virtual: bool = False

    @property
    def recurring_total(self) -> Decimal:
        return self.price * self.quantity


@dataclass(frozen=True)
class SwitchSubscriptionState:
    """Billing facts about the subscription at the moment of the switch"""

    start: datetime
    next_payment: datetime | None = None
    last_payment: datetime | None = None
    trial_end: datetime | None = None
    completed_payment_count: int = 0
    total_paid_for_current_period: Decimal = ZERO
    sign_up_fee_paid: Decimal = ZERO  # per unit of the existing item


class SwitchType:
    UPGRADED = "upgraded"
    DOWNGRADED = "downgraded"
    CROSSGRADED = "crossgraded"


@dataclass(frozen=True)
class SwitchResult:
    """Outcome of a plan switch calculation; charges are per unit"""

    switch_type: str
    quantity: int
    old_price_per_day: Decimal
    new_price_per_day: Decimal
    days_in_old_cycle: Decimal
    days_in_new_cycle: Decimal
    days_until_next_payment: int
    extra_charge: Decimal
    sign_up_fee: Decimal
    first_payment: datetime | None
    end: datetime | None
    remaining_length: int
    recurring_price_prorated: bool = False
    restarts_billing: bool = False

    @property
    def amount_due(self) -> Decimal:
        return (self.extra_charge + self.sign_up_fee) * self.quantity


# ===============================================================================
# HELPERS
# ===============================================================================


def round_money(amount: Decimal, precision: int = 2) -> Decimal:
    return amount.quantize(Decimal(1).scaleb(-precision), rounding=ROUND_HALF_UP)


def _ceil(value: Decimal) -> int:
    return int(value.to_integral_value(rounding=ROUND_CEILING))


def _days_between(later: datetime, earlier: datetime) -> Decimal:
    return Decimal(str((later - earlier).total_seconds())) / SECONDS_PER_DAY


def _validate_item(item: RecurringItem, label: str) -> str | None:
    if item.quantity < 1:
        return f"{label} quantity must be at least 1"
    if item.price < 0 or item.sign_up_fee < 0:
        return f"{label} prices cannot be negative"
    if item.period not in PERIODS or item.interval < 1:
        return f"{label} has invalid billing terms {item.interval} {item.period}"
    if item.length < 0:
        return f"{label} length cannot be negative"
    return None


# ===============================================================================
# CALCULATOR
# ===============================================================================


def compute_switch(  # noqa: PLR0912, PLR0915
    existing: RecurringItem,
    new: RecurringItem,
    state: SwitchSubscriptionState,
    policy: ProrationPolicy,
    now: datetime,
    precision: int = 2,
) -> Result[SwitchResult, str]:
    """
    Price a switch from ``existing`` to ``new``.

    Upgrades either charge the difference in daily price until the next
    payment, or move the first payment earlier when the new cycle is shorter.
    Apportioned downgrades push the next payment back until the unused value
    is spent at the new daily price. Errors mean the inputs cannot be priced.
    """
    for item, label in ((existing, "existing item"), (new, "new item")):
        problem = _validate_item(item, label)
        if problem:
            return Err(problem)
    total_paid = state.total_paid_for_current_period
    if total_paid < 0 or state.sign_up_fee_paid < 0:
        return Err("amounts already paid cannot be negative")

    last_paid = state.last_payment or state.start
    is_during_trial = state.trial_end is not None and state.trial_end > now
    trial_periods_match = (
        existing.trial_length == new.trial_length and existing.trial_period == new.trial_period
    )
    is_single_payment = new.length == 1

    # Days in each cycle
    if state.next_payment is None or (is_during_trial and total_paid == 0):
        days_old = days_in_cycle(existing.period, existing.interval)
    else:
        days_old = _days_between(state.next_payment, last_paid).to_integral_value(rounding=ROUND_HALF_UP)
    if days_old <= 0:
        return Err("the current billing cycle has no length")

    days_new = _days_between(add_time(new.interval, new.period, last_paid), last_paid)
    if _ceil(days_new) == days_old or math.floor(days_new) == days_old:
        days_new = days_old

    old_ppd = total_paid / days_old
    new_ppd = ZERO if is_during_trial and trial_periods_match else new.recurring_total / days_new

    if old_ppd < new_ppd:
        switch_type = SwitchType.UPGRADED
    elif old_ppd > new_ppd:
        switch_type = SwitchType.DOWNGRADED
    else:
        switch_type = SwitchType.CROSSGRADED

    days_until_next = 0
    if state.next_payment is not None and state.next_payment > now:
        days_until_next = _ceil(_days_between(state.next_payment, now))
    days_since_last = math.floor(_days_between(now, last_paid))

    first_payment = state.next_payment
    extra = ZERO
    prorated = False
    restarts = False

    if policy.prorates_recurring(new):
        if switch_type == SwitchType.UPGRADED or is_single_payment:
            prorated = True
            reduce_prepaid_term = days_old > days_new or (
                is_during_trial and total_paid == 0 and not trial_periods_match
            )
            if reduce_prepaid_term:
                pre_paid_days = 0
                if new_ppd > 0:
                    pre_paid_days = _ceil(round_money(total_paid / new_ppd, 8))
                if days_since_last < pre_paid_days:
                    first_payment = last_paid + timedelta(days=pre_paid_days)
                else:
                    # Already-paid value is used up at the new price; bill a fresh cycle now
                    restarts = True
                    extra = new.price
                    first_payment = add_time(new.interval, new.period, now)
            else:
                cost = days_until_next * (new_ppd - old_ppd)
                if is_single_payment and state.next_payment is not None:
                    new_term_end = add_time(new.interval, new.period, last_paid)
                    if new_term_end > state.next_payment:
                        cost += new_ppd * _days_between(new_term_end, state.next_payment)
                extra = cost / new.quantity
                if extra < 0:
                    # Fully reduced: full new price less the unused paid value, next cycle from now
                    unused_value = total_paid / days_old * days_until_next
                    extra = (new.recurring_total - unused_value) / new.quantity
                    first_payment = add_time(new.interval, new.period, now)
        elif (
            switch_type == SwitchType.DOWNGRADED
            and policy.extends_downgrades(new)
            and state.next_payment is not None
            and new_ppd > 0
        ):
            prorated = True
            owed = old_ppd * days_until_next
            days_to_add = _ceil(round_money(owed / new_ppd, 8)) - days_until_next
            if days_to_add > 0:
                first_payment = state.next_payment + timedelta(days=days_to_add)

    sign_up_fee = ZERO
    if policy.sign_up_fee == "always":
        fee_paid = state.sign_up_fee_paid
        if new.quantity > existing.quantity:
            fee_paid = fee_paid * existing.quantity / new.quantity
        sign_up_fee = max(new.sign_up_fee - fee_paid, ZERO)

    remaining_length = new.length
    if new.length > 0 and policy.prorates_length(new):
        remaining_length = new.length - state.completed_payment_count
        if remaining_length <= 0:
            remaining_length = new.length

    end = None
    if remaining_length > 0:
        term_anchor = now if restarts else last_paid
        end = add_time(remaining_length * new.interval, new.period, term_anchor)
        if first_payment is not None and first_payment + END_DATE_BUFFER > end:
            first_payment = None

    return Ok(SwitchResult(
        switch_type=switch_type,
        quantity=new.quantity,
        old_price_per_day=old_ppd,
        new_price_per_day=new_ppd,
        days_in_old_cycle=days_old,
        days_in_new_cycle=days_new,
        days_until_next_payment=days_until_next,
        extra_charge=round_money(max(extra, ZERO), precision),
        sign_up_fee=round_money(sign_up_fee, precision),
        first_payment=first_payment,
        end=end,
        remaining_length=max(remaining_length, 0),
        recurring_price_prorated=prorated,
        restarts_billing=restarts,
    ))


__all__ = [
    "ProrationPolicy",
    "RecurringItem",
    "SwitchResult",
    "SwitchSubscriptionState",
    "SwitchType",
    "compute_switch",
    "round_money",
]
