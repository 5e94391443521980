"""
Subscription Status State Machine.

``can_transition`` is a pure predicate over the current status, the target
and a ``TransitionContext`` describing the payment method. ``plan_transition``
computes the date and counter side effects of entering a status without
touching storage; the engine validates and persists the plan atomically.
"""

from __future__ import annotations

from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, ClassVar

from apps.common.types import Err, Ok, Result

from .config import ACTIVATION_THRESHOLD
from .schedule import ScheduleSnapshot, calculate_end_of_prepaid_term, calculate_next_payment

# ===============================================================================
# STATUSES & FEATURES
# ===============================================================================


class SubscriptionStatus:
    PENDING = "pending"
    ACTIVE = "active"
    ON_HOLD = "on-hold"
    PENDING_CANCEL = "pending-cancel"
    CANCELLED = "cancelled"
    EXPIRED = "expired"
    SWITCHED = "switched"
    TRASH = "trash"
    DELETED = "deleted"

    CHOICES: ClassVar[tuple[tuple[str, str], ...]] = (
        (PENDING, "Pending"),
        (ACTIVE, "Active"),
        (ON_HOLD, "On hold"),
        (PENDING_CANCEL, "Pending cancellation"),
        (CANCELLED, "Cancelled"),
        (EXPIRED, "Expired"),
        (SWITCHED, "Switched"),
        (TRASH, "Trash"),
        (DELETED, "Deleted"),
    )

    ALL: ClassVar[frozenset[str]] = frozenset(value for value, _ in CHOICES)

    # Statuses in which the subscription no longer renews
    ENDED: ClassVar[frozenset[str]] = frozenset({CANCELLED, TRASH, EXPIRED, SWITCHED, PENDING_CANCEL})

    # Aliases accepted from external callers
    ALIASES: ClassVar[dict[str, str]] = {"completed": ACTIVE, "failed": ON_HOLD}


class GatewayFeature:
    SUSPENSION = "suspension"
    REACTIVATION = "reactivation"
    CANCELLATION = "cancellation"
    DATE_CHANGES = "date_changes"
    AMOUNT_CHANGES = "amount_changes"

    ALL: ClassVar[frozenset[str]] = frozenset({SUSPENSION, REACTIVATION, CANCELLATION, DATE_CHANGES, AMOUNT_CHANGES})


class OrderStatus:
    PENDING = "pending"
    PROCESSING = "processing"
    ON_HOLD = "on-hold"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"
    REFUNDED = "refunded"

    CHOICES: ClassVar[tuple[tuple[str, str], ...]] = (
        (PENDING, "Pending payment"),
        (PROCESSING, "Processing"),
        (ON_HOLD, "On hold"),
        (COMPLETED, "Completed"),
        (FAILED, "Failed"),
        (CANCELLED, "Cancelled"),
        (REFUNDED, "Refunded"),
    )

    ALL: ClassVar[frozenset[str]] = frozenset(value for value, _ in CHOICES)

    # Statuses in which an order with a positive total still needs payment
    NEEDS_PAYMENT: ClassVar[frozenset[str]] = frozenset({PENDING, FAILED})

    # Statuses that count as paid
    PAID: ClassVar[frozenset[str]] = frozenset({PROCESSING, COMPLETED})


# Meta keys remembered while a subscription is pending cancellation
END_PRE_CANCELLATION_META = "end_pre_cancellation"
TRIAL_END_PRE_CANCELLATION_META = "trial_end_pre_cancellation"


def normalize_status(status: str) -> str:
    """Map external status names onto subscription statuses."""
    return SubscriptionStatus.ALIASES.get(status, status)


# ===============================================================================
# TRANSITION CONTEXT
# ===============================================================================


@dataclass(frozen=True)
class TransitionContext:
    """What the state machine may know about a subscription besides its status"""

    is_manual: bool = False
    features: frozenset[str] = frozenset()
    needs_payment: bool = False
    end: datetime | None = None
    now: datetime | None = None

    def supports(self, feature: str) -> bool:
        # Manual renewals are driven by the customer, so every action is possible
        return self.is_manual or feature in self.features

    def prepaid_term_remaining(self) -> bool:
        return self.end is not None and self.now is not None and self.end > self.now


def _to_pending(current: str, ctx: TransitionContext) -> bool:
    # Pending is only ever an initial status
    return False


def _to_active(current: str, ctx: TransitionContext) -> bool:
    if current == SubscriptionStatus.PENDING:
        return True
    if current == SubscriptionStatus.ON_HOLD:
        return ctx.supports(GatewayFeature.REACTIVATION)
    if current == SubscriptionStatus.PENDING_CANCEL:
        return ctx.prepaid_term_remaining() and (
            ctx.is_manual
            or (ctx.supports(GatewayFeature.DATE_CHANGES) and ctx.supports(GatewayFeature.REACTIVATION))
        )
    return False


def _to_on_hold(current: str, ctx: TransitionContext) -> bool:
    return ctx.supports(GatewayFeature.SUSPENSION) and current in (
        SubscriptionStatus.ACTIVE,
        SubscriptionStatus.PENDING,
    )


def _to_cancelled(current: str, ctx: TransitionContext) -> bool:
    return ctx.supports(GatewayFeature.CANCELLATION) and (
        current == SubscriptionStatus.PENDING_CANCEL or current not in SubscriptionStatus.ENDED
    )


def _to_pending_cancel(current: str, ctx: TransitionContext) -> bool:
    if not ctx.supports(GatewayFeature.CANCELLATION):
        return False
    if current == SubscriptionStatus.ACTIVE:
        return True
    return not ctx.needs_payment and current in (SubscriptionStatus.CANCELLED, SubscriptionStatus.ON_HOLD)


def _to_expired(current: str, ctx: TransitionContext) -> bool:
    return current not in (SubscriptionStatus.CANCELLED, SubscriptionStatus.TRASH, SubscriptionStatus.SWITCHED)


def _to_switched(current: str, ctx: TransitionContext) -> bool:
    return current in (
        SubscriptionStatus.PENDING,
        SubscriptionStatus.ACTIVE,
        SubscriptionStatus.ON_HOLD,
        SubscriptionStatus.PENDING_CANCEL,
    )


def _to_trash(current: str, ctx: TransitionContext) -> bool:
    return current in SubscriptionStatus.ENDED or _to_cancelled(current, ctx)


def _to_deleted(current: str, ctx: TransitionContext) -> bool:
    return current == SubscriptionStatus.TRASH


_TRANSITION_GUARDS: dict[str, Callable[[str, TransitionContext], bool]] = {
    SubscriptionStatus.PENDING: _to_pending,
    SubscriptionStatus.ACTIVE: _to_active,
    SubscriptionStatus.ON_HOLD: _to_on_hold,
    SubscriptionStatus.CANCELLED: _to_cancelled,
    SubscriptionStatus.PENDING_CANCEL: _to_pending_cancel,
    SubscriptionStatus.EXPIRED: _to_expired,
    SubscriptionStatus.SWITCHED: _to_switched,
    SubscriptionStatus.TRASH: _to_trash,
    SubscriptionStatus.DELETED: _to_deleted,
}


def can_transition(current: str, target: str, context: TransitionContext) -> bool:
    """Whether a subscription in ``current`` may move to ``target``."""
    current = normalize_status(current)
    target = normalize_status(target)
    guard = _TRANSITION_GUARDS.get(target)
    if guard is None or current == target:
        return False
    return guard(current, context)


def transition_denial_reason(current: str, target: str, context: TransitionContext) -> str:
    """Human-readable reason a transition is not allowed."""
    current = normalize_status(current)
    target = normalize_status(target)

    if target not in SubscriptionStatus.ALL:
        return f"'{target}' is not a valid subscription status"
    if current == target:
        return f"subscription is already {target}"

    if target == SubscriptionStatus.ACTIVE and current == SubscriptionStatus.PENDING_CANCEL:
        if not context.prepaid_term_remaining():
            return "cannot reactivate: the prepaid term has already ended"
        return "cannot reactivate: payment method does not support it"
    if target == SubscriptionStatus.ACTIVE and current == SubscriptionStatus.ON_HOLD:
        return "cannot reactivate: payment method does not support it"
    if target == SubscriptionStatus.ON_HOLD and current in (SubscriptionStatus.ACTIVE, SubscriptionStatus.PENDING):
        return "cannot suspend: payment method does not support it"
    if target in (SubscriptionStatus.CANCELLED, SubscriptionStatus.PENDING_CANCEL) and not context.supports(
        GatewayFeature.CANCELLATION
    ):
        return "cannot cancel: payment method does not support it"
    if target == SubscriptionStatus.PENDING_CANCEL and context.needs_payment:
        return "cannot cancel at the end of the term: the subscription has an outstanding payment"
    return f"cannot change status from {current} to {target}"


# ===============================================================================
# TRANSITION SIDE EFFECTS
# ===============================================================================


@dataclass(frozen=True)
class TransitionPlan:
    """Side effects of entering a status; ``None`` dates are deletions"""

    dates: dict[str, datetime | None] = field(default_factory=dict)
    suspension_delta: int = 0
    meta: dict[str, Any] = field(default_factory=dict)
    meta_removals: tuple[str, ...] = ()


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value is not None else None


def _from_iso(value: Any) -> datetime | None:
    if not value:
        return None
    return datetime.fromisoformat(str(value))


def plan_transition(
    snapshot: ScheduleSnapshot,
    old_status: str,
    new_status: str,
    now: datetime,
    meta: Mapping[str, Any] | None = None,
) -> Result[TransitionPlan, str]:
    """
    Compute the schedule changes that accompany a status change.

    Only fails when a next payment date has to be recalculated and cannot be.
    """
    old_status = normalize_status(old_status)
    new_status = normalize_status(new_status)
    schedule = snapshot.schedule
    meta = meta or {}

    if new_status == SubscriptionStatus.PENDING_CANCEL:
        prepaid_until = calculate_end_of_prepaid_term(snapshot, now)
        end = prepaid_until if prepaid_until > now else now
        return Ok(TransitionPlan(
            dates={"cancelled": now, "end": end, "trial_end": None, "next_payment": None},
            meta={
                END_PRE_CANCELLATION_META: _iso(schedule.end),
                TRIAL_END_PRE_CANCELLATION_META: _iso(schedule.trial_end),
            },
        ))

    if new_status == SubscriptionStatus.ACTIVE and old_status == SubscriptionStatus.PENDING_CANCEL:
        # Reactivation: the prepaid end becomes the next renewal again
        return Ok(TransitionPlan(
            dates={
                "cancelled": None,
                "end": _from_iso(meta.get(END_PRE_CANCELLATION_META)),
                "trial_end": _from_iso(meta.get(TRIAL_END_PRE_CANCELLATION_META)),
                "next_payment": schedule.end,
            },
            meta_removals=(END_PRE_CANCELLATION_META, TRIAL_END_PRE_CANCELLATION_META),
        ))

    if new_status == SubscriptionStatus.ACTIVE:
        stored = schedule.next_payment
        if stored is not None and stored >= now + ACTIVATION_THRESHOLD:
            return Ok(TransitionPlan())
        result = calculate_next_payment(snapshot, now)
        if result.is_err():
            return Err(result.unwrap_err())
        calculated = result.unwrap()
        if calculated is not None:
            return Ok(TransitionPlan(dates={"next_payment": calculated}))
        if stored is not None and stored < now:
            return Ok(TransitionPlan(dates={"next_payment": None}))
        return Ok(TransitionPlan())

    if new_status == SubscriptionStatus.ON_HOLD:
        return Ok(TransitionPlan(suspension_delta=1))

    if new_status in (SubscriptionStatus.CANCELLED, SubscriptionStatus.EXPIRED, SubscriptionStatus.SWITCHED):
        end = schedule.end if schedule.end is not None and schedule.end <= now else now
        dates: dict[str, datetime | None] = {"trial_end": None, "next_payment": None, "end": end}
        if new_status == SubscriptionStatus.CANCELLED and schedule.cancelled is None:
            dates["cancelled"] = end
        return Ok(TransitionPlan(dates=dates))

    return Ok(TransitionPlan())


# ===============================================================================
# DATE EDIT PERMISSIONS
# ===============================================================================


def can_date_be_updated(
    date_type: str,
    status: str,
    context: TransitionContext,
    completed_payment_count: int = 0,
) -> bool:
    """Whether a customer or admin may edit ``date_type`` directly."""
    status = normalize_status(status)
    editable = status not in SubscriptionStatus.ENDED and (
        status == SubscriptionStatus.PENDING or context.supports(GatewayFeature.DATE_CHANGES)
    )
    if date_type == "start":
        return status == SubscriptionStatus.PENDING
    if date_type == "trial_end":
        return completed_payment_count < 2 and editable
    if date_type in ("next_payment", "end"):
        return editable
    return False


__all__ = [
    "END_PRE_CANCELLATION_META",
    "TRIAL_END_PRE_CANCELLATION_META",
    "GatewayFeature",
    "OrderStatus",
    "SubscriptionStatus",
    "TransitionContext",
    "TransitionPlan",
    "can_date_be_updated",
    "can_transition",
    "normalize_status",
    "plan_transition",
    "transition_denial_reason",
]
