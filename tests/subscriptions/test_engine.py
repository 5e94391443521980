# ===============================================================================
# RECURRING BILLING ENGINE TESTS
# ===============================================================================

from decimal import Decimal
from unittest.mock import patch

from django.db import DatabaseError
from django.test import TestCase, override_settings

from apps.subscriptions.events import subscription_date_updated, subscription_status_changed, subscription_switched
from apps.subscriptions.exceptions import DateOrderingError, InvalidTransitionError, PersistenceError, SwitchError
from apps.subscriptions.models import Order, Subscription, SubscriptionStatusChange
from apps.subscriptions.proration import ProrationPolicy, RecurringItem
from apps.subscriptions.retry_rules import RetryRuleTable
from apps.subscriptions.status import END_PRE_CANCELLATION_META, GatewayFeature, OrderStatus, SubscriptionStatus
from tests.factories.subscriptions import (
    JAN_15,
    FakeGateway,
    at,
    create_active_monthly,
    create_engine,
    create_subscription,
)


def reload(subscription: Subscription) -> Subscription:
    return Subscription.objects.get(pk=subscription.pk)


def collect(signal, test_case) -> list:
    """Connect a receiver that records payloads until the test ends."""
    received = []

    def receiver(sender, event, payload, **kwargs):
        received.append(payload)

    signal.connect(receiver, weak=False)
    test_case.addCleanup(signal.disconnect, receiver)
    return received


# ===============================================================================
# STATUS CHANGES
# ===============================================================================

class StatusChangeTests(TestCase):
    """update_status() / apply_transition()"""

    def setUp(self):
        self.setup = create_engine(now=at(2024, 1, 20))
        self.engine = self.setup.engine
        self.subscription = create_active_monthly()

    def test_cancelled_subscription_cannot_be_reactivated(self):
        cancelled = create_subscription(status=SubscriptionStatus.CANCELLED)

        with self.assertRaises(InvalidTransitionError) as ctx:
            self.engine.update_status(cancelled.pk, SubscriptionStatus.ACTIVE)

        self.assertEqual(ctx.exception.reason, "cannot change status from cancelled to active")
        self.assertEqual(reload(cancelled).status, SubscriptionStatus.CANCELLED)
        self.assertFalse(SubscriptionStatusChange.objects.filter(subscription=cancelled).exists())

    def test_status_change_is_recorded(self):
        self.engine.update_status(self.subscription.pk, SubscriptionStatus.ON_HOLD, note="Card expired.")

        subscription = reload(self.subscription)
        change = SubscriptionStatusChange.objects.get(subscription=subscription)
        self.assertEqual(subscription.status, SubscriptionStatus.ON_HOLD)
        self.assertEqual(subscription.suspension_count, 1)
        self.assertEqual((change.old_status, change.new_status, change.note), ("active", "on-hold", "Card expired."))
        self.assertEqual(change.created_at, at(2024, 1, 20))

    def test_unsupported_action_is_refused_unless_manual(self):
        self.setup.registry.unregister("test_gateway")
        self.setup.registry.register(FakeGateway(features=frozenset({GatewayFeature.CANCELLATION})))

        with self.assertRaises(InvalidTransitionError) as ctx:
            self.engine.update_status(self.subscription.pk, SubscriptionStatus.ON_HOLD)
        self.assertIn("cannot suspend", str(ctx.exception))

        self.engine.update_status(self.subscription.pk, SubscriptionStatus.ON_HOLD, manual=True)
        self.assertEqual(reload(self.subscription).status, SubscriptionStatus.ON_HOLD)

    def test_pending_cancel_then_reactivate(self):
        self.engine.update_status(self.subscription.pk, SubscriptionStatus.PENDING_CANCEL)

        subscription = reload(self.subscription)
        self.assertEqual(subscription.end_date, at(2024, 2, 15))
        self.assertEqual(subscription.cancelled_date, at(2024, 1, 20))
        self.assertIsNone(subscription.next_payment_date)
        self.assertIn(END_PRE_CANCELLATION_META, subscription.meta)
        self.assertIsNone(subscription.meta[END_PRE_CANCELLATION_META])
        self.assertEqual(
            self.engine.actions.scheduled_hooks(subscription), {"end": "subscription.end_of_prepaid_term"}
        )

        self.engine.update_status(self.subscription.pk, SubscriptionStatus.ACTIVE)

        subscription = reload(self.subscription)
        self.assertEqual(subscription.status, SubscriptionStatus.ACTIVE)
        self.assertEqual(subscription.next_payment_date, at(2024, 2, 15))
        self.assertIsNone(subscription.end_date)
        self.assertIsNone(subscription.cancelled_date)
        self.assertNotIn(END_PRE_CANCELLATION_META, subscription.meta)

    def test_end_of_prepaid_term_cancels(self):
        self.engine.update_status(self.subscription.pk, SubscriptionStatus.PENDING_CANCEL)
        self.assertIsNone(self.engine.end_of_prepaid_term(self.subscription.pk))

        self.setup.clock.set(at(2024, 2, 15))
        self.engine.end_of_prepaid_term(self.subscription.pk)

        subscription = reload(self.subscription)
        self.assertEqual(subscription.status, SubscriptionStatus.CANCELLED)
        self.assertEqual(subscription.end_date, at(2024, 2, 15))
        self.assertEqual(subscription.cancelled_date, at(2024, 1, 20))

    def test_expiry_at_end_date(self):
        ending = create_active_monthly(end_date=at(2024, 3, 15))
        self.assertIsNone(self.engine.expire_subscription(ending.pk))

        self.setup.clock.set(at(2024, 3, 15))
        self.engine.expire_subscription(ending.pk)

        subscription = reload(ending)
        self.assertEqual(subscription.status, SubscriptionStatus.EXPIRED)
        self.assertEqual(subscription.end_date, at(2024, 3, 15))
        self.assertIsNone(subscription.next_payment_date)

    def test_reactivation_after_missed_cycle_skips_it(self):
        suspended = create_active_monthly(
            status=SubscriptionStatus.ON_HOLD,
            last_payment_date=at(2024, 2, 15),
            next_payment_date=at(2024, 3, 15),
        )
        self.setup.clock.set(at(2024, 3, 20))

        self.engine.update_status(suspended.pk, SubscriptionStatus.ACTIVE)

        self.assertEqual(reload(suspended).next_payment_date, at(2024, 4, 15))

    def test_activation_with_trial_ending_at_end_date_schedules_no_payment(self):
        trial = create_subscription(
            status=SubscriptionStatus.PENDING,
            trial_end_date=at(2024, 1, 22),
            end_date=at(2024, 1, 22),
        )
        self.setup.clock.set(at(2024, 1, 15, hour=12))

        self.engine.update_status(trial.pk, SubscriptionStatus.ACTIVE)

        subscription = reload(trial)
        self.assertEqual(subscription.status, SubscriptionStatus.ACTIVE)
        self.assertIsNone(subscription.next_payment_date)
        self.assertEqual(subscription.end_date, at(2024, 1, 22))

    def test_trial_end_reached(self):
        trial = create_subscription(trial_end_date=at(2024, 1, 22), next_payment_date=at(2024, 1, 22))

        self.assertFalse(self.engine.trial_end_reached(trial.pk))
        self.setup.clock.set(at(2024, 1, 22))
        self.assertTrue(self.engine.trial_end_reached(trial.pk))


class TransitionRollbackTests(TestCase):
    """A failed save leaves memory and database as they were"""

    def setUp(self):
        self.setup = create_engine(now=at(2024, 1, 20))
        self.engine = self.setup.engine
        self.subscription = create_active_monthly()

    def test_in_memory_state_is_restored(self):
        subscription = self.engine.store.load(self.subscription.pk)

        with patch.object(Subscription, "save", side_effect=DatabaseError("disk full")), \
                self.assertRaises(PersistenceError):
            self.engine.apply_transition(subscription, SubscriptionStatus.PENDING_CANCEL)

        self.assertEqual(subscription.status, SubscriptionStatus.ACTIVE)
        self.assertEqual(subscription.next_payment_date, at(2024, 2, 15))
        self.assertIsNone(subscription.cancelled_date)
        self.assertIsNone(subscription.end_date)
        self.assertEqual(subscription.meta, {})

        stored = reload(self.subscription)
        self.assertEqual(stored.status, SubscriptionStatus.ACTIVE)
        self.assertIsNone(stored.cancelled_date)
        self.assertFalse(SubscriptionStatusChange.objects.exists())

    def test_rolled_back_transition_publishes_nothing(self):
        received = collect(subscription_status_changed, self)

        with self.captureOnCommitCallbacks(execute=True) as callbacks:
            with patch.object(Subscription, "save", side_effect=DatabaseError("disk full")), \
                    self.assertRaises(PersistenceError):
                self.engine.update_status(self.subscription.pk, SubscriptionStatus.ON_HOLD)

        self.assertEqual(callbacks, [])
        self.assertEqual(received, [])

    def test_events_are_published_after_commit(self):
        statuses = collect(subscription_status_changed, self)
        dates = collect(subscription_date_updated, self)

        with self.captureOnCommitCallbacks(execute=True):
            self.engine.update_status(self.subscription.pk, SubscriptionStatus.PENDING_CANCEL, note="Customer request")

        self.assertEqual(len(statuses), 1)
        self.assertEqual(statuses[0]["old_status"], SubscriptionStatus.ACTIVE)
        self.assertEqual(statuses[0]["new_status"], SubscriptionStatus.PENDING_CANCEL)
        self.assertEqual(statuses[0]["note"], "Customer request")
        self.assertEqual(statuses[0]["occurred_at"], "2024-01-20T10:00:00+00:00")
        self.assertEqual({payload["date_type"] for payload in dates}, {"cancelled", "end", "next_payment"})


# ===============================================================================
# DATES
# ===============================================================================

class DateUpdateTests(TestCase):
    """update_dates() / delete_date()"""

    def setUp(self):
        self.setup = create_engine(now=at(2024, 1, 20))
        self.engine = self.setup.engine
        self.subscription = create_active_monthly()

    def test_moving_next_payment_reschedules_it(self):
        self.engine.update_dates(self.subscription.pk, {"next_payment": at(2024, 2, 20)})

        self.assertEqual(reload(self.subscription).next_payment_date, at(2024, 2, 20))
        self.assertEqual(self.setup.scheduler.pending("subscription.scheduled_payment")[0][0], at(2024, 2, 20))

    def test_invalid_batch_changes_nothing(self):
        with self.assertRaises(DateOrderingError):
            self.engine.update_dates(self.subscription.pk, {"end": at(2024, 6, 1), "next_payment": at(2024, 1, 10)})

        subscription = reload(self.subscription)
        self.assertIsNone(subscription.end_date)
        self.assertEqual(subscription.next_payment_date, at(2024, 2, 15))

    def test_permissions_are_enforced_on_request(self):
        with self.assertRaises(DateOrderingError) as ctx:
            self.engine.update_dates(self.subscription.pk, {"start": at(2024, 1, 10)}, enforce_permissions=True)
        self.assertEqual(str(ctx.exception), "The start date can not be changed for a active subscription.")

        self.engine.update_dates(self.subscription.pk, {"end": at(2024, 12, 15)}, enforce_permissions=True)
        self.assertEqual(reload(self.subscription).end_date, at(2024, 12, 15))

    def test_delete_date(self):
        with self.assertRaises(DateOrderingError):
            self.engine.delete_date(self.subscription.pk, "start")

        self.engine.delete_date(self.subscription.pk, "next_payment")
        self.assertIsNone(reload(self.subscription).next_payment_date)

    def test_ordering_holds_after_successive_updates(self):
        updates = [
            {"trial_end": at(2024, 2, 1)},
            {"end": at(2024, 8, 1)},
            {"next_payment": at(2024, 3, 1)},
            {"last_payment": at(2024, 1, 20)},
        ]
        last_payment = JAN_15
        for dates in updates:
            self.engine.update_dates(self.subscription.pk, dates)
            subscription = reload(self.subscription)
            self.assertLess(subscription.start_date, subscription.trial_end_date)
            self.assertLessEqual(subscription.trial_end_date, subscription.next_payment_date)
            self.assertGreaterEqual(subscription.last_payment_date, last_payment)
            if subscription.end_date:
                self.assertLess(subscription.next_payment_date, subscription.end_date)
            last_payment = subscription.last_payment_date


# ===============================================================================
# RENEWALS
# ===============================================================================

class RenewalTests(TestCase):
    """process_renewal(), payment_complete() and the failure policy"""

    def build(self, **kwargs):
        self.setup = create_engine(now=at(2024, 2, 15), **kwargs)
        self.engine = self.setup.engine

    def test_successful_renewal_moves_schedule_forward(self):
        self.build()
        subscription = create_active_monthly()

        order = self.engine.process_renewal(subscription.pk)

        order.refresh_from_db()
        subscription = reload(subscription)
        self.assertEqual(order.relation, "renewal")
        self.assertEqual(order.status, OrderStatus.COMPLETED)
        self.assertTrue(order.transaction_id.startswith("txn_"))
        self.assertEqual(subscription.status, SubscriptionStatus.ACTIVE)
        self.assertEqual(subscription.last_payment_date, at(2024, 2, 15))
        self.assertEqual(subscription.next_payment_date, at(2024, 3, 15))
        self.assertEqual(subscription.suspension_count, 0)
        self.assertEqual(
            list(subscription.status_changes.values_list("new_status", flat=True)),
            [SubscriptionStatus.ON_HOLD, SubscriptionStatus.ACTIVE],
        )

    def test_free_renewal_is_not_charged(self):
        self.build()
        subscription = create_active_monthly(price=Decimal("0.00"))

        order = self.engine.process_renewal(subscription.pk)

        order.refresh_from_db()
        self.assertEqual(self.setup.gateway.charged, [])
        self.assertEqual(order.status, OrderStatus.COMPLETED)
        self.assertEqual(reload(subscription).next_payment_date, at(2024, 3, 15))

    def test_manual_renewal_waits_for_the_customer(self):
        self.build()
        subscription = create_active_monthly(requires_manual_renewal=True)

        order = self.engine.process_renewal(subscription.pk)

        self.assertEqual(self.setup.gateway.charged, [])
        self.assertEqual(order.status, OrderStatus.PENDING)
        self.assertEqual(order.payment_method, "")
        self.assertEqual(reload(subscription).status, SubscriptionStatus.ON_HOLD)

        self.engine.payment_complete(subscription.pk, order.pk)
        self.assertEqual(reload(subscription).status, SubscriptionStatus.ACTIVE)

    def test_renewal_not_due_is_skipped(self):
        self.build()
        subscription = create_active_monthly(next_payment_date=at(2024, 2, 20))

        self.assertIsNone(self.engine.process_renewal(subscription.pk))
        self.assertFalse(Order.objects.filter(relation="renewal").exists())

    def test_inactive_subscription_is_not_renewed(self):
        self.build()
        subscription = create_active_monthly(status=SubscriptionStatus.ON_HOLD)

        self.assertIsNone(self.engine.process_renewal(subscription.pk))

    def test_gateway_crash_is_recorded_not_raised(self):
        self.build(gateway=FakeGateway(outcomes=[RuntimeError("gateway timeout")]), retry_rules=RetryRuleTable())
        subscription = create_active_monthly()

        order = self.engine.process_renewal(subscription.pk)

        order.refresh_from_db()
        self.assertEqual(order.status, OrderStatus.FAILED)
        self.assertEqual(reload(subscription).status, SubscriptionStatus.ON_HOLD)

    @override_settings(SUBSCRIPTIONS_MAX_SUSPENSIONS=2)
    def test_too_many_suspensions_cancel(self):
        self.build(gateway=FakeGateway(outcomes=["card_declined"]), retry_rules=RetryRuleTable())
        subscription = create_active_monthly(suspension_count=1)

        self.engine.process_renewal(subscription.pk)

        self.assertEqual(reload(subscription).status, SubscriptionStatus.CANCELLED)

    @override_settings(SUBSCRIPTIONS_MAX_SUSPENSIONS=2)
    def test_suspensions_below_limit_stay_on_hold(self):
        self.build(gateway=FakeGateway(outcomes=["card_declined"]), retry_rules=RetryRuleTable())
        subscription = create_active_monthly()

        self.engine.process_renewal(subscription.pk)

        subscription = reload(subscription)
        self.assertEqual(subscription.status, SubscriptionStatus.ON_HOLD)
        self.assertEqual(subscription.suspension_count, 1)


# ===============================================================================
# SWITCHING
# ===============================================================================

class SwitchTests(TestCase):
    """switch_subscription() on a 30-day plan, 10 days in"""

    def build(self, policy: ProrationPolicy, now=None, price=Decimal("10.00")):
        self.setup = create_engine(now=now or at(2024, 1, 25), proration_policy=policy)
        self.engine = self.setup.engine
        self.subscription = create_subscription(
            price=price,
            billing_period="day",
            billing_interval=30,
            last_payment_date=JAN_15,
            next_payment_date=at(2024, 2, 14),
        )
        self.line_item = self.subscription.line_items.get()

    def switch(self, price: str, **kwargs):
        new_item = RecurringItem(price=Decimal(price), period="day", interval=30, **kwargs)
        return self.engine.switch_subscription(
            self.subscription.pk, self.line_item.pk, new_item, product_id="plan-pro", name="Pro plan"
        )

    def test_upgrade_charges_the_gap(self):
        self.build(ProrationPolicy(recurring_price="upgrades-only"))
        switched = collect(subscription_switched, self)

        with self.captureOnCommitCallbacks(execute=True):
            outcome = self.switch("20.00")

        self.line_item.refresh_from_db()
        subscription = reload(self.subscription)
        self.assertEqual(outcome.amount_due, Decimal("6.67"))
        self.assertEqual(outcome.order.relation, "switch")
        self.assertEqual(outcome.order.status, OrderStatus.PENDING)
        self.assertEqual(outcome.order.meta["switch_type"], "upgraded")
        self.assertEqual(self.line_item.status, "switched")
        self.assertEqual(outcome.line_item.switched_from, self.line_item)
        self.assertEqual(outcome.line_item.price, Decimal("20.00"))
        self.assertEqual(subscription.next_payment_date, at(2024, 2, 14))
        self.assertEqual(switched[0]["amount_due"], "6.67")
        self.assertEqual(switched[0]["order_id"], outcome.order.pk)

    def test_switch_without_charge_completes_its_order(self):
        self.build(ProrationPolicy())

        outcome = self.switch("20.00")

        self.assertEqual(outcome.amount_due, Decimal("0.00"))
        self.assertEqual(outcome.order.status, OrderStatus.COMPLETED)

    def test_apportioned_downgrade_extends_next_payment(self):
        self.build(ProrationPolicy(recurring_price="both"), now=at(2024, 1, 20), price=Decimal("30.00"))

        outcome = self.switch("10.00")

        self.assertEqual(outcome.result.switch_type, "downgraded")
        self.assertEqual(outcome.amount_due, Decimal("0.00"))
        self.assertEqual(reload(self.subscription).next_payment_date, at(2024, 4, 4))

    def test_only_active_subscriptions_switch(self):
        self.build(ProrationPolicy())
        Subscription.objects.filter(pk=self.subscription.pk).update(status=SubscriptionStatus.ON_HOLD)

        with self.assertRaises(SwitchError):
            self.switch("20.00")

    def test_unpriceable_switch_is_blocked(self):
        self.build(ProrationPolicy(recurring_price="both"))

        with self.assertRaises(SwitchError) as ctx:
            self.switch("20.00", quantity=0)

        self.assertIn("contact support", ctx.exception.user_message)
        self.line_item.refresh_from_db()
        self.assertEqual(self.line_item.status, "active")
        self.assertFalse(Order.objects.filter(relation="switch").exists())


# ===============================================================================
# RESUBSCRIBE
# ===============================================================================

class ResubscribeTests(TestCase):
    """resubscribe()"""

    def setUp(self):
        self.setup = create_engine(now=at(2024, 3, 1))
        self.engine = self.setup.engine

    def test_new_subscription_on_the_same_terms(self):
        previous = create_subscription(
            status=SubscriptionStatus.CANCELLED, sign_up_fee=Decimal("5.00"), billing_interval=3
        )

        subscription = self.engine.resubscribe(previous.pk)

        subscription = reload(subscription)
        item = subscription.line_items.get()
        self.assertEqual(subscription.status, SubscriptionStatus.PENDING)
        self.assertEqual(subscription.resubscribed_from_id, previous.pk)
        self.assertEqual(subscription.billing_interval, 3)
        self.assertEqual(subscription.start_date, at(2024, 3, 1))
        self.assertEqual(item.price, Decimal("10.00"))
        self.assertEqual(item.sign_up_fee, Decimal("0.00"))
        self.assertEqual(subscription.parent_order.relation, "resubscribe")
        self.assertEqual(subscription.parent_order.total, Decimal("10.00"))

    def test_active_subscription_cannot_resubscribe(self):
        active = create_active_monthly()

        with self.assertRaises(InvalidTransitionError):
            self.engine.resubscribe(active.pk)
