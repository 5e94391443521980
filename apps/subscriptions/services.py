"""
Recurring Billing Engine.

Composition root over the order store, gateway registry, scheduler, clock,
event bus and retry engine. Every public operation locks the subscription row
inside ``transaction.atomic()``; a failed write rolls the database back and
restores the in-memory subscription so callers never see half-applied state.

Pure decisions live elsewhere: dates in ``schedule``, statuses in ``status``,
switch pricing in ``proration``. This module loads, decides, persists and
publishes.
"""

from __future__ import annotations

import logging
from collections.abc import Iterator, Mapping
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Any

from django.db import DatabaseError, transaction

from apps.common.clock import Clock, SystemClock

from . import config
from .events import EventBus
from .exceptions import (
    DateOrderingError,
    InvalidTransitionError,
    PersistenceError,
    SubscriptionError,
    SwitchError,
)
from .gateways import PaymentGatewayRegistry, gateway_registry
from .models import Order, PaymentRetry, Subscription, SubscriptionLineItem, SubscriptionStatusChange
from .proration import ProrationPolicy, RecurringItem, SwitchResult, SwitchSubscriptionState, compute_switch, round_money
from .retry import PaymentRetryEngine
from .retry_rules import RetryRuleTable
from .schedule import DATE_LABELS, Schedule, ScheduleSnapshot, validate_date_set
from .scheduler import DjangoQScheduler, ScheduledActionSync, Scheduler
from .status import (
    OrderStatus,
    SubscriptionStatus,
    TransitionContext,
    can_date_be_updated,
    normalize_status,
    plan_transition,
    transition_denial_reason,
)
from .status import can_transition as is_transition_allowed
from .stores import PAYMENT_RELATIONS, DjangoOrderStore, DjangoRetryStore

logger = logging.getLogger(__name__)

# Statuses a customer may resubscribe from
RESUBSCRIBABLE_STATUSES = frozenset({
    SubscriptionStatus.CANCELLED,
    SubscriptionStatus.EXPIRED,
    SubscriptionStatus.PENDING_CANCEL,
})


@dataclass(frozen=True)
class SwitchOutcome:
    """What a committed plan switch produced"""

    order: Order
    line_item: SubscriptionLineItem
    result: SwitchResult

    @property
    def amount_due(self) -> Decimal:
        return self.order.total


class RecurringBillingEngine:
    """
    💳 Recurring billing for subscriptions

    Collaborators are injectable; the defaults are the Django-backed
    production implementations configured from settings.
    """

    def __init__(
        self,
        *,
        store: DjangoOrderStore | None = None,
        retry_store: DjangoRetryStore | None = None,
        gateways: PaymentGatewayRegistry | None = None,
        scheduler: Scheduler | None = None,
        clock: Clock | None = None,
        bus: EventBus | None = None,
        retry_rules: RetryRuleTable | None = None,
        proration_policy: ProrationPolicy | None = None,
    ) -> None:
        self.clock = clock or SystemClock()
        self.store = store or DjangoOrderStore()
        self.gateways = gateways or gateway_registry
        self.actions = ScheduledActionSync(scheduler or DjangoQScheduler(), self.clock)
        self.bus = bus or EventBus(self.clock)
        self.proration_policy = proration_policy or config.get_proration_policy()
        if retry_rules is None:
            retry_rules = config.get_retry_rule_table()
        self.retries = PaymentRetryEngine(self, retry_store or DjangoRetryStore(), retry_rules)

    # ===============================================================================
    # CONTEXT
    # ===============================================================================

    def _snapshot(self, subscription: Subscription) -> ScheduleSnapshot:
        return ScheduleSnapshot(
            schedule=subscription.get_schedule(),
            terms=subscription.get_terms(),
            completed_payment_count=self.store.get_completed_payment_count(subscription),
            is_synchronised=subscription.is_synchronised,
        )

    def _context(self, subscription: Subscription, manual: bool = False) -> TransitionContext:
        return TransitionContext(
            is_manual=manual or subscription.is_manual,
            features=self.gateways.features(subscription.payment_method),
            needs_payment=self.store.subscription_needs_payment(subscription),
            end=subscription.end_date,
            now=self.clock.now(),
        )

    def supports(self, subscription: Subscription, feature: str) -> bool:
        return subscription.is_manual or self.gateways.capability(subscription.payment_method, feature)

    def can_transition(self, subscription: Subscription, target: str) -> bool:
        return is_transition_allowed(subscription.status, target, self._context(subscription))

    @contextmanager
    def _rollback_on_failure(self, subscription: Subscription, action: str) -> Iterator[None]:
        """Atomic block that also restores the in-memory subscription on failure."""
        state = subscription.capture_state()
        try:
            with transaction.atomic():
                yield
        except DatabaseError as e:
            subscription.restore_state(state)
            logger.error(f"🔥 [Subscription] Failed to {action} subscription {subscription.pk}: {e}")
            raise PersistenceError(f"Could not {action} subscription {subscription.pk}") from e
        except SubscriptionError:
            subscription.restore_state(state)
            raise

    def _publish_date_changes(self, subscription: Subscription, before: Schedule, after: Schedule) -> None:
        for date_type, value in before.changed_dates(after).items():
            self.bus.publish(
                "subscription.date_updated",
                subscription.pk,
                date_type=date_type,
                old_value=before.get(date_type),
                new_value=value,
            )

    # ===============================================================================
    # STATUS
    # ===============================================================================

    def update_status(
        self,
        subscription_id: Any,
        new_status: str,
        note: str = "",
        manual: bool = False,
    ) -> Subscription:
        """Load, lock and move a subscription to ``new_status``."""
        with transaction.atomic():
            subscription = self.store.load(subscription_id)
            return self.apply_transition(subscription, new_status, note, manual=manual)

    def apply_transition(
        self,
        subscription: Subscription,
        new_status: str,
        note: str = "",
        manual: bool = False,
    ) -> Subscription:
        """
        Move an already-loaded subscription to ``new_status``.

        Raises InvalidTransitionError when the state machine forbids the move,
        DateOrderingError when its date side effects would break the schedule
        and PersistenceError when it cannot be saved.
        """
        new_status = normalize_status(new_status)
        old_status = subscription.status
        context = self._context(subscription, manual=manual)

        if not is_transition_allowed(old_status, new_status, context):
            reason = transition_denial_reason(old_status, new_status, context)
            logger.warning(f"⚠️ [Subscription] {subscription.pk} {old_status} -> {new_status} refused: {reason}")
            raise InvalidTransitionError(old_status, new_status, reason)

        now = self.clock.now()
        planned = plan_transition(self._snapshot(subscription), old_status, new_status, now, subscription.meta)
        if planned.is_err():
            raise InvalidTransitionError(old_status, new_status, planned.unwrap_err())
        plan = planned.unwrap()

        before = subscription.get_schedule()
        validated = validate_date_set(plan.dates, before)
        if validated.is_err():
            raise validated.unwrap_err()
        after = validated.unwrap()

        with self._rollback_on_failure(subscription, "update the status of"):
            subscription.apply_schedule(after)
            subscription.status = new_status
            subscription.suspension_count += plan.suspension_delta
            subscription.meta.update(plan.meta)
            for key in plan.meta_removals:
                subscription.meta.pop(key, None)
            self.actions.sync_status(subscription)
            self.store.save(subscription)
            SubscriptionStatusChange.objects.create(
                subscription=subscription,
                old_status=old_status,
                new_status=new_status,
                note=note,
                created_at=now,
            )
            self._publish_date_changes(subscription, before, after)
            self.bus.publish(
                "subscription.status_changed",
                subscription.pk,
                old_status=old_status,
                new_status=new_status,
                note=note,
            )
            self.retries.on_subscription_status_changed(subscription, old_status, new_status)

        logger.info(f"✅ [Subscription] {subscription.pk} {old_status} -> {new_status}")
        return subscription

    # ===============================================================================
    # DATES
    # ===============================================================================

    def update_dates(
        self,
        subscription_id: Any,
        dates: Mapping[str, datetime | None],
        enforce_permissions: bool = False,
    ) -> Subscription:
        """
        Set (or, with ``None``, delete) schedule dates as one batch.

        With ``enforce_permissions`` only dates a customer or admin may edit
        in the current status are accepted.
        """
        with transaction.atomic():
            subscription = self.store.load(subscription_id)
            if enforce_permissions:
                context = self._context(subscription)
                payments = self.store.get_completed_payment_count(subscription)
                for date_type in dates:
                    if not can_date_be_updated(date_type, subscription.status, context, payments):
                        label = DATE_LABELS.get(date_type, date_type)
                        raise DateOrderingError(
                            date_type, None, f"The {label} date can not be changed for a {subscription.status} subscription."
                        )
            return self._update_dates(subscription, dates)

    def delete_date(self, subscription_id: Any, date_type: str) -> Subscription:
        return self.update_dates(subscription_id, {date_type: None})

    def set_payment_retry_date(
        self,
        subscription: Subscription,
        when: datetime | None,
        order: Order | None = None,
    ) -> Subscription:
        action_args = {"payment_retry": {"order_id": order.pk}} if order is not None else None
        return self._update_dates(subscription, {"payment_retry": when}, action_args)

    def _update_dates(
        self,
        subscription: Subscription,
        dates: Mapping[str, datetime | None],
        action_args: Mapping[str, dict[str, Any]] | None = None,
    ) -> Subscription:
        before = subscription.get_schedule()
        validated = validate_date_set(dates, before)
        if validated.is_err():
            error = validated.unwrap_err()
            logger.warning(f"⚠️ [Subscription] Rejected date update for {subscription.pk}: {error}")
            raise error
        after = validated.unwrap()

        changed = before.changed_dates(after)
        if not changed:
            return subscription

        action_args = action_args or {}
        with self._rollback_on_failure(subscription, "update the dates of"):
            subscription.apply_schedule(after)
            for date_type in changed:
                self.actions.sync_date(subscription, date_type, action_args.get(date_type))
            self.store.save(subscription)
            self._publish_date_changes(subscription, before, after)

        logger.info(f"📅 [Subscription] {subscription.pk} dates updated: {', '.join(sorted(changed))}")
        return subscription

    # ===============================================================================
    # RENEWALS & PAYMENTS
    # ===============================================================================

    def process_renewal(self, subscription_id: Any) -> Order | None:
        """
        Bill a subscription whose next payment is due.

        The subscription goes on-hold until the renewal order is paid. Free
        renewals complete at once and manual ones wait for the customer.
        """
        with transaction.atomic():
            subscription = self.store.load(subscription_id)
            now = self.clock.now()
            if subscription.status != SubscriptionStatus.ACTIVE:
                logger.info(f"⏭️ [Renewal] Subscription {subscription.pk} is {subscription.status}, skipping renewal")
                return None
            if subscription.next_payment_date is None or subscription.next_payment_date > now:
                logger.info(f"⏭️ [Renewal] Subscription {subscription.pk} has no payment due, skipping renewal")
                return None

            if self.can_transition(subscription, SubscriptionStatus.ON_HOLD):
                self.apply_transition(subscription, SubscriptionStatus.ON_HOLD, "Subscription renewal payment due.")

            order = self.store.create_derived_order(subscription, "renewal", date_created=now)
            logger.info(f"🧾 [Renewal] Created renewal order {order.pk} ({order.total}) for subscription {subscription.pk}")

            if order.total <= 0:
                self._mark_order_paid(order)
                self._complete_payment(subscription, order)
            elif subscription.is_manual:
                logger.info(f"⏳ [Renewal] Order {order.pk} awaits manual payment")
            else:
                self.charge_order(order, [subscription])
            return order

    def charge_order(self, order: Order, subscriptions: list[Subscription], is_scheduled: bool = True) -> bool:
        """Charge an order through its gateway; the outcome is recorded, never raised."""
        result = self.gateways.charge_renewal(order)
        if result.is_ok():
            order.transaction_id = result.unwrap()
            self._mark_order_paid(order)
            for subscription in subscriptions:
                self._complete_payment(subscription, order)
            return True

        logger.warning(f"💸 [Payment] Charge failed for order {order.pk}: {result.unwrap_err()}")
        self._fail_payment(subscriptions, order, is_scheduled=is_scheduled)
        return False

    def prepare_order_for_retry(self, order: Order, subscriptions: list[Subscription]) -> None:
        if order.status != OrderStatus.PENDING:
            order.status = OrderStatus.PENDING
            self.store.save_order(order)
        for subscription in subscriptions:
            if subscription.status != SubscriptionStatus.ON_HOLD and self.can_transition(
                subscription, SubscriptionStatus.ON_HOLD
            ):
                self.apply_transition(subscription, SubscriptionStatus.ON_HOLD, "Retrying renewal payment.")

    def payment_complete(self, subscription_id: Any, order_id: Any = None) -> Subscription:
        """Record a paid order and reactivate the subscription."""
        with transaction.atomic():
            subscription = self.store.load(subscription_id)
            order = self._resolve_order(subscription, order_id)
            if order is not None:
                self._mark_order_paid(order)
            return self._complete_payment(subscription, order)

    def payment_failed(
        self,
        subscription_id: Any,
        order_id: Any = None,
        new_status: str | None = None,
        is_scheduled: bool = True,
    ) -> Subscription:
        """Record a failed payment; retries first, then the terminal failure policy."""
        with transaction.atomic():
            subscription = self.store.load(subscription_id)
            order = self._resolve_order(subscription, order_id)
            self._fail_payment([subscription], order, new_status=new_status, is_scheduled=is_scheduled)
            return subscription

    def _resolve_order(self, subscription: Subscription, order_id: Any) -> Order | None:
        if order_id is not None:
            return self.store.load_order(order_id, for_update=True)
        return self.store.get_last_order(subscription)

    def _mark_order_paid(self, order: Order) -> None:
        if order.is_paid:
            return
        order.status = OrderStatus.COMPLETED
        order.date_paid = self.clock.now()
        self.store.save_order(order)
        logger.info(f"💰 [Payment] Order {order.pk} paid ({order.total})")

    def _complete_payment(self, subscription: Subscription, order: Order | None) -> Subscription:
        with self._rollback_on_failure(subscription, "record a payment for"):
            subscription.suspension_count = 0
            if order is not None and order.relation in PAYMENT_RELATIONS:
                paid_at = max(order.date_created, order.date_paid or self.clock.now())
                last_payment = subscription.last_payment_date
                if last_payment is None or paid_at > last_payment:
                    self._update_dates(subscription, {"last_payment": paid_at})

            if subscription.status != SubscriptionStatus.ACTIVE and self.can_transition(
                subscription, SubscriptionStatus.ACTIVE
            ):
                self.apply_transition(subscription, SubscriptionStatus.ACTIVE, "Payment received.")
            else:
                self.store.save(subscription)
        return subscription

    def _fail_payment(
        self,
        subscriptions: list[Subscription],
        order: Order | None,
        new_status: str | None = None,
        is_scheduled: bool = True,
    ) -> None:
        if order is not None and order.status != OrderStatus.FAILED:
            order.status = OrderStatus.FAILED
            self.store.save_order(order)

        for subscription in subscriptions:
            retry = None
            if order is not None:
                retry = self.retries.on_payment_failed(subscription, order, is_scheduled=is_scheduled)
            if retry is None:
                self._apply_failure_policy(subscription, new_status)

    def _apply_failure_policy(self, subscription: Subscription, new_status: str | None) -> None:
        target = normalize_status(new_status or config.get_failed_payment_status())
        max_suspensions = config.get_max_suspensions()
        if (
            target == SubscriptionStatus.ON_HOLD
            and max_suspensions
            and subscription.suspension_count >= max_suspensions
        ):
            logger.info(
                f"🛑 [Payment] Subscription {subscription.pk} reached {max_suspensions} suspensions, cancelling"
            )
            target = SubscriptionStatus.CANCELLED

        if subscription.status == target:
            return
        if self.can_transition(subscription, target):
            self.apply_transition(subscription, target, "Renewal payment failed.")
        else:
            logger.warning(
                f"⚠️ [Payment] Cannot move subscription {subscription.pk} from {subscription.status} to {target} "
                f"after a failed payment"
            )

    # ===============================================================================
    # RETRIES
    # ===============================================================================

    def process_payment_retry(self, order_id: Any) -> PaymentRetry | None:
        """Fire the latest pending retry of an order."""
        retry = self.retries.store.get_last_for_order(order_id)
        if retry is None or retry.status != PaymentRetry.PENDING:
            logger.info(f"⏭️ [Retry] No pending retry for order {order_id}")
            return None
        return self.retries.fire_retry(retry.pk)

    def fire_due_retries(self) -> list[PaymentRetry]:
        """Fire every pending retry whose due date has passed."""
        due = PaymentRetry.objects.filter(status=PaymentRetry.PENDING, due_date__lte=self.clock.now())
        fired = []
        for retry_id in list(due.values_list("pk", flat=True)):
            retry = self.retries.fire_retry(retry_id)
            if retry is not None:
                fired.append(retry)
        return fired

    # ===============================================================================
    # SWITCHING
    # ===============================================================================

    def _switch_state(self, subscription: Subscription, line_item: SubscriptionLineItem) -> SwitchSubscriptionState:
        now = self.clock.now()
        payments = self.store.get_completed_payment_count(subscription)
        trial_end = subscription.trial_end_date
        if trial_end is not None and trial_end > now and payments <= 1:
            total_paid = Decimal("0.00")
        else:
            total_paid = self.store.get_total_paid_for_current_period(subscription, line_item.line_total)
        return SwitchSubscriptionState(
            start=subscription.start_date or now,
            next_payment=subscription.next_payment_date,
            last_payment=subscription.last_payment_date,
            trial_end=trial_end,
            completed_payment_count=payments,
            total_paid_for_current_period=total_paid,
            sign_up_fee_paid=line_item.sign_up_fee if payments > 0 else Decimal("0.00"),
        )

    def switch_subscription(
        self,
        subscription_id: Any,
        line_item_id: Any,
        new_item: RecurringItem,
        product_id: str,
        name: str = "",
    ) -> SwitchOutcome:
        """
        Replace one line item with a different plan.

        Commits a ``switch`` order for the amount due, retires the old line
        item and moves the schedule to the new plan's terms.
        """
        with transaction.atomic():
            subscription = self.store.load(subscription_id)
            if subscription.status != SubscriptionStatus.ACTIVE:
                raise SwitchError(f"subscription {subscription.pk} is {subscription.status}, only active ones switch")
            try:
                line_item = subscription.line_items.get(pk=line_item_id, status="active")
            except SubscriptionLineItem.DoesNotExist as e:
                raise SwitchError(f"line item {line_item_id} is not active on subscription {subscription.pk}") from e

            now = self.clock.now()
            precision = config.get_price_decimals()
            existing = line_item.as_recurring_item(subscription.get_terms())
            calculated = compute_switch(
                existing, new_item, self._switch_state(subscription, line_item), self.proration_policy, now, precision
            )
            if calculated.is_err():
                logger.error(f"🔥 [Switch] Cannot price switch of subscription {subscription.pk}: {calculated.unwrap_err()}")
                raise SwitchError(calculated.unwrap_err())
            result = calculated.unwrap()

            dates: dict[str, datetime | None] = {"next_payment": result.first_payment, "end": result.end}
            trial_end = subscription.trial_end_date
            if trial_end is not None and result.first_payment is not None and trial_end > result.first_payment:
                dates["trial_end"] = None
            if result.restarts_billing:
                dates["last_payment"] = now
            validated = validate_date_set(dates, subscription.get_schedule())
            if validated.is_err():
                raise SwitchError(str(validated.unwrap_err()))

            amount_due = round_money(result.amount_due, precision)
            with self._rollback_on_failure(subscription, "switch"):
                order = self.store.create_derived_order(subscription, "switch", total=amount_due, date_created=now)
                order.meta = {
                    "switch_type": result.switch_type,
                    "old_line_item_id": line_item.pk,
                    "extra_charge": str(result.extra_charge),
                    "sign_up_fee": str(result.sign_up_fee),
                }
                if amount_due <= 0:
                    order.status = OrderStatus.COMPLETED
                    order.date_paid = now
                self.store.save_order(order)

                line_item.status = "switched"
                line_item.save(update_fields=["status"])
                new_line_item = SubscriptionLineItem.objects.create(
                    subscription=subscription,
                    product_id=product_id,
                    name=name,
                    quantity=new_item.quantity,
                    price=new_item.price,
                    sign_up_fee=new_item.sign_up_fee,
                    trial_length=new_item.trial_length,
                    trial_period=new_item.trial_period,
                    is_virtual=new_item.is_virtual,
                    switched_from=line_item,
                    meta={"switch_order_id": order.pk},
                )

                subscription.billing_period = new_item.period
                subscription.billing_interval = new_item.interval
                subscription.billing_length = new_item.length
                self._update_dates(subscription, dates)
                self.store.save(subscription)

                self.bus.publish(
                    "subscription.switched",
                    subscription.pk,
                    old_item_id=line_item.pk,
                    new_item_id=new_line_item.pk,
                    switch_type=result.switch_type,
                    amount_due=str(amount_due),
                    order_id=order.pk,
                )

        logger.info(
            f"🔀 [Switch] Subscription {subscription.pk} {result.switch_type} from item {line_item.pk} "
            f"to {new_line_item.pk}, order {order.pk} due {amount_due}"
        )
        return SwitchOutcome(order=order, line_item=new_line_item, result=result)

    # ===============================================================================
    # RESUBSCRIBE
    # ===============================================================================

    def resubscribe(self, subscription_id: Any) -> Subscription:
        """Start a new pending subscription on the same terms as an ended one."""
        with transaction.atomic():
            previous = self.store.load(subscription_id)
            if previous.status not in RESUBSCRIBABLE_STATUSES:
                raise InvalidTransitionError(
                    previous.status,
                    SubscriptionStatus.PENDING,
                    f"cannot resubscribe: subscription is {previous.status}",
                )

            now = self.clock.now()
            try:
                subscription = Subscription.objects.create(
                    customer_id=previous.customer_id,
                    resubscribed_from=previous,
                    status=SubscriptionStatus.PENDING,
                    billing_period=previous.billing_period,
                    billing_interval=previous.billing_interval,
                    billing_length=previous.billing_length,
                    is_synchronised=previous.is_synchronised,
                    start_date=now,
                    payment_method=previous.payment_method,
                    payment_method_meta=dict(previous.payment_method_meta),
                    requires_manual_renewal=previous.requires_manual_renewal,
                )
                # No trial and no sign-up fee the second time round
                for item in previous.line_items.filter(status="active"):
                    SubscriptionLineItem.objects.create(
                        subscription=subscription,
                        product_id=item.product_id,
                        name=item.name,
                        quantity=item.quantity,
                        price=item.price,
                        is_virtual=item.is_virtual,
                    )
            except DatabaseError as e:
                raise PersistenceError(f"Could not resubscribe to subscription {previous.pk}") from e

            order = self.store.create_derived_order(subscription, "resubscribe", date_created=now)
            subscription.parent_order = order
            self.store.save(subscription)

        logger.info(f"🔁 [Subscription] {subscription.pk} resubscribed from {previous.pk}, order {order.pk}")
        return subscription

    # ===============================================================================
    # SCHEDULED HOOKS
    # ===============================================================================

    def expire_subscription(self, subscription_id: Any) -> Subscription | None:
        with transaction.atomic():
            subscription = self.store.load(subscription_id)
            end = subscription.end_date
            if subscription.status != SubscriptionStatus.ACTIVE or end is None or end > self.clock.now():
                logger.info(f"⏭️ [Subscription] {subscription.pk} is not due to expire")
                return None
            return self.apply_transition(subscription, SubscriptionStatus.EXPIRED, "Subscription end date reached.")

    def end_of_prepaid_term(self, subscription_id: Any) -> Subscription | None:
        with transaction.atomic():
            subscription = self.store.load(subscription_id)
            end = subscription.end_date
            if subscription.status != SubscriptionStatus.PENDING_CANCEL or end is None or end > self.clock.now():
                logger.info(f"⏭️ [Subscription] {subscription.pk} prepaid term has not ended")
                return None
            return self.apply_transition(subscription, SubscriptionStatus.CANCELLED, "Prepaid term ended.")

    def trial_end_reached(self, subscription_id: Any) -> bool:
        subscription = self.store.load(subscription_id, for_update=False)
        trial_end = subscription.trial_end_date
        reached = trial_end is not None and trial_end <= self.clock.now()
        if reached:
            logger.info(f"🏁 [Subscription] {subscription.pk} trial ended at {trial_end.isoformat()}")
        return reached


def get_billing_engine() -> RecurringBillingEngine:
    """Default engine wired to the ORM, django-q and the process gateway registry."""
    return RecurringBillingEngine()


__all__ = ["RESUBSCRIBABLE_STATUSES", "RecurringBillingEngine", "SwitchOutcome", "get_billing_engine"]
