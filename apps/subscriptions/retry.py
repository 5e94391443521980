"""
Payment Retry Engine.

Observes failed renewal payments, applies the next rule from the retry rule
table and, when the retry falls due, charges the order again. The atomic
``pending -> processing`` claim on a retry record is the only concurrency
gate: a retry delivered twice by the scheduler charges at most once.
"""

from __future__ import annotations

import logging
from collections.abc import Iterator
from contextlib import contextmanager
from typing import TYPE_CHECKING

from django.db import transaction

from .models import Order, PaymentRetry, Subscription
from .retry_rules import RetryRule, RetryRuleTable
from .status import GatewayFeature
from .stores import DjangoRetryStore

if TYPE_CHECKING:
    from .services import RecurringBillingEngine

logger = logging.getLogger(__name__)


class PaymentRetryEngine:
    """
    🔁 Automatic retries for failed renewal payments

    Status changes made by the retry engine itself never cancel the retry
    that caused them; the re-entrancy counters below track that.
    """

    def __init__(
        self,
        engine: RecurringBillingEngine,
        retry_store: DjangoRetryStore,
        rules: RetryRuleTable | None,
    ) -> None:
        self.engine = engine
        self.store = retry_store
        self.rules = rules
        self._applying_rule = 0
        self._retrying_payment = 0

    # ===============================================================================
    # RE-ENTRANCY GUARDS
    # ===============================================================================

    @contextmanager
    def _applying(self) -> Iterator[None]:
        self._applying_rule += 1
        try:
            yield
        finally:
            self._applying_rule -= 1

    @contextmanager
    def _retrying(self) -> Iterator[None]:
        self._retrying_payment += 1
        try:
            yield
        finally:
            self._retrying_payment -= 1

    @property
    def is_busy(self) -> bool:
        return self._applying_rule > 0 or self._retrying_payment > 0

    # ===============================================================================
    # FAILURE HANDLING
    # ===============================================================================

    def is_enabled_for(self, subscription: Subscription) -> bool:
        if self.rules is None or subscription.is_manual:
            return False
        return self.engine.supports(subscription, GatewayFeature.DATE_CHANGES)

    def on_payment_failed(
        self,
        subscription: Subscription,
        order: Order,
        is_scheduled: bool = True,
    ) -> PaymentRetry | None:
        """
        Apply the next retry rule for a failed renewal.

        Returns the new retry, or None when no automatic retry will happen and
        the caller's terminal failure policy applies.
        """
        if not self.is_enabled_for(subscription):
            return None
        if not is_scheduled:
            return self.reapply_last_rule(subscription, order)

        attempt = self.store.count_for_order(order.pk)
        rule = self.rules.get_rule(attempt, subscription.payment_method) if self.rules else None
        if rule is None:
            logger.info(
                f"⏹️ [Retry] No retry rule for attempt #{attempt} of order {order.pk}, "
                f"subscription {subscription.pk}"
            )
            return None

        due = self.engine.clock.now() + rule.retry_after
        with self._applying(), transaction.atomic():
            retry = self.store.create(order, attempt, rule.to_config(), due)
            self._apply_rule_statuses(rule, subscription, order)
            if rule.retry_after_seconds > 0:
                self.engine.set_payment_retry_date(subscription, due, order)

        logger.info(
            f"✅ [Retry] Scheduled retry #{attempt} for order {order.pk} at {due.isoformat()} "
            f"(subscription {subscription.pk})"
        )
        self.engine.bus.publish(
            "retry.scheduled",
            subscription.pk,
            retry_id=retry.pk,
            order_id=order.pk,
            attempt=attempt,
            due=due,
        )
        return retry

    def reapply_last_rule(self, subscription: Subscription, order: Order) -> PaymentRetry | None:
        """Keep retry-controlled statuses after a customer's own payment attempt fails."""
        last_retry = self.store.get_last_for_order(order.pk)
        if last_retry is None or last_retry.status != PaymentRetry.PENDING:
            return None
        with self._applying():
            self._apply_rule_statuses(last_retry.rule, subscription, order)
        logger.info(f"🔁 [Retry] Re-applied retry #{last_retry.attempt_number} rule for order {order.pk}")
        return last_retry

    def _apply_rule_statuses(self, rule: RetryRule, subscription: Subscription, order: Order) -> None:
        if order.status != rule.status_to_apply_to_order:
            order.status = rule.status_to_apply_to_order
            self.engine.store.save_order(order)

        target = rule.status_to_apply_to_subscription
        if subscription.status == target:
            return
        if self.engine.can_transition(subscription, target):
            self.engine.apply_transition(subscription, target, "Payment retry rule applied.")
        else:
            logger.warning(
                f"⚠️ [Retry] Cannot move subscription {subscription.pk} from {subscription.status} "
                f"to {target} for retry rule"
            )

    # ===============================================================================
    # FIRING
    # ===============================================================================

    def order_needs_payment(self, order: Order) -> bool:
        """An order needs payment in its retry rule's status too."""
        last_retry = self.store.get_last_for_order(order.pk)
        extra = (last_retry.rule.status_to_apply_to_order,) if last_retry is not None else ()
        return order.needs_payment(extra)

    def fire_retry(self, retry_id: int) -> PaymentRetry | None:
        """
        Charge the order of a due retry.

        No-op unless the retry is still pending. Cancels the retry without
        charging when the order was paid or someone changed the statuses the
        rule put in place.
        """
        retry = self.store.get(retry_id)
        if retry is None:
            logger.warning(f"⚠️ [Retry] Retry {retry_id} not found")
            return None
        if retry.status != PaymentRetry.PENDING or not self.store.claim_pending(retry.pk):
            logger.info(f"⏭️ [Retry] Retry {retry_id} is {retry.status}, not firing")
            return None
        retry.status = PaymentRetry.PROCESSING
        rule = retry.rule

        with self._retrying(), transaction.atomic():
            order = self.engine.store.load_order(retry.order_id, for_update=True)
            subscriptions = self.engine.store.get_subscriptions_for_order(order)

            if not self.order_needs_payment(order):
                outcome = PaymentRetry.CANCELLED
                logger.info(f"🛑 [Retry] Order {order.pk} no longer needs payment, cancelling retry {retry.pk}")
            elif not self._statuses_match(rule, order, subscriptions):
                outcome = PaymentRetry.CANCELLED
                logger.info(f"🛑 [Retry] Statuses changed since retry {retry.pk} was scheduled, cancelling")
            else:
                outcome = self._charge(order, subscriptions)

            self.store.set_status(retry, outcome)
            self._clear_retry_date_if_last(retry, subscriptions)

        logger.info(f"🔁 [Retry] Retry {retry.pk} for order {retry.order_id} finished: {outcome}")
        for subscription in subscriptions:
            self.engine.bus.publish(
                "retry.fired",
                subscription.pk,
                retry_id=retry.pk,
                order_id=retry.order_id,
                status=outcome,
            )
        return retry

    def _statuses_match(self, rule: RetryRule, order: Order, subscriptions: list[Subscription]) -> bool:
        if order.status != rule.status_to_apply_to_order:
            return False
        return all(s.status == rule.status_to_apply_to_subscription for s in subscriptions)

    def _charge(self, order: Order, subscriptions: list[Subscription]) -> str:
        self.engine.prepare_order_for_retry(order, subscriptions)
        self.engine.charge_order(order, subscriptions, is_scheduled=True)
        order.refresh_from_db()
        return PaymentRetry.FAILED if self.order_needs_payment(order) else PaymentRetry.COMPLETE

    # ===============================================================================
    # CANCELLATION
    # ===============================================================================

    def _clear_retry_date_if_last(self, retry: PaymentRetry, subscriptions: list[Subscription]) -> None:
        """A finished retry that is its order's latest no longer needs a wake-up."""
        if retry.status in PaymentRetry.OUTSTANDING:
            return
        last_retry = self.store.get_last_for_order(retry.order_id)
        if last_retry is None or last_retry.pk != retry.pk:
            return
        for subscription in subscriptions:
            if subscription.payment_retry_date is not None:
                self.engine.set_payment_retry_date(subscription, None)

    def on_subscription_status_changed(self, subscription: Subscription, old_status: str, new_status: str) -> None:
        """Cancel an outstanding retry when someone else changes the subscription status."""
        if self.is_busy or subscription.payment_retry_date is None:
            return
        last_order = self.engine.store.get_last_order(subscription, ("renewal", "parent"))
        retry = self.store.get_last_for_order(last_order.pk) if last_order is not None else None

        if retry is not None and retry.status in PaymentRetry.OUTSTANDING:
            if new_status == retry.rule.status_to_apply_to_subscription:
                return
            self.store.set_status(retry, PaymentRetry.CANCELLED)
            logger.info(
                f"🛑 [Retry] Cancelled retry {retry.pk}: subscription {subscription.pk} "
                f"moved from {old_status} to {new_status}"
            )
        self.engine.set_payment_retry_date(subscription, None)

    def on_order_deleted(self, order: Order) -> int:
        """Cancel the order's outstanding retry and remove all of its retry records."""
        last_retry = self.store.get_last_for_order(order.pk)
        if last_retry is not None and last_retry.status in PaymentRetry.OUTSTANDING:
            self.store.set_status(last_retry, PaymentRetry.CANCELLED)
            if order.subscription_id is not None:
                subscription = self.engine.store.load(order.subscription_id)
                if subscription.payment_retry_date is not None:
                    self.engine.set_payment_retry_date(subscription, None)
        deleted = self.store.delete_for_order(order.pk)
        if deleted:
            logger.info(f"🗑️ [Retry] Removed {deleted} retries for deleted order {order.pk}")
        return deleted


__all__ = ["PaymentRetryEngine"]
