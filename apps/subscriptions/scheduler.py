"""
Scheduled actions for subscription dates.

Each schedule date that needs a wake-up (trial end, next payment, payment
retry, end) gets exactly one one-shot django-q ``Schedule`` row. The tokens
of those rows are kept in the subscription's meta so they can be cancelled
when the date moves or the status changes.
"""

from __future__ import annotations

import logging
import uuid
from datetime import datetime
from typing import Any, Protocol

from django_q.models import Schedule
from django_q.tasks import schedule

from apps.common.clock import Clock

from .models import Subscription
from .status import SubscriptionStatus

logger = logging.getLogger(__name__)

# ===============================================================================
# HOOKS
# ===============================================================================

HOOK_TASKS: dict[str, str] = {
    "subscription.trial_end": "apps.subscriptions.tasks.process_trial_end",
    "subscription.scheduled_payment": "apps.subscriptions.tasks.process_scheduled_payment",
    "subscription.payment_retry": "apps.subscriptions.tasks.process_payment_retry",
    "subscription.expiration": "apps.subscriptions.tasks.process_subscription_expiration",
    "subscription.end_of_prepaid_term": "apps.subscriptions.tasks.process_end_of_prepaid_term",
}

DATE_HOOKS: dict[str, str] = {
    "trial_end": "subscription.trial_end",
    "next_payment": "subscription.scheduled_payment",
    "payment_retry": "subscription.payment_retry",
    "end": "subscription.expiration",
}

SCHEDULED_ACTIONS_META = "scheduled_actions"

# Statuses that stop every pending wake-up
UNSCHEDULE_ON_STATUSES = frozenset({
    SubscriptionStatus.ON_HOLD,
    SubscriptionStatus.CANCELLED,
    SubscriptionStatus.SWITCHED,
    SubscriptionStatus.EXPIRED,
    SubscriptionStatus.TRASH,
    SubscriptionStatus.DELETED,
})


class Scheduler(Protocol):
    def schedule(self, at: datetime, hook: str, args: dict[str, Any]) -> str: ...

    def cancel(self, token: str) -> None: ...


class DjangoQScheduler:
    """One-shot django-q schedules; the token is the Schedule primary key"""

    def schedule(self, at: datetime, hook: str, args: dict[str, Any]) -> str:
        if hook not in HOOK_TASKS:
            raise ValueError(f"Unknown scheduled hook: {hook}")
        scheduled = schedule(
            HOOK_TASKS[hook],
            name=f"{hook}:{uuid.uuid4().hex[:16]}",
            schedule_type=Schedule.ONCE,
            repeats=1,
            next_run=at,
            **args,
        )
        logger.debug(f"⏰ [Scheduler] {hook} at {at.isoformat()} -> schedule {scheduled.pk}")
        return str(scheduled.pk)

    def cancel(self, token: str) -> None:
        Schedule.objects.filter(pk=int(token)).delete()


# ===============================================================================
# DATE -> ACTION SYNCHRONISATION
# ===============================================================================


class ScheduledActionSync:
    """Keeps one scheduled action per date type in line with the subscription"""

    def __init__(self, scheduler: Scheduler, clock: Clock) -> None:
        self.scheduler = scheduler
        self.clock = clock

    def _tokens(self, subscription: Subscription) -> dict[str, dict[str, Any]]:
        return subscription.meta.setdefault(SCHEDULED_ACTIONS_META, {})

    def hook_for(self, subscription: Subscription, date_type: str) -> str | None:
        if date_type == "end" and subscription.status in (
            SubscriptionStatus.CANCELLED,
            SubscriptionStatus.PENDING_CANCEL,
        ):
            return "subscription.end_of_prepaid_term"
        return DATE_HOOKS.get(date_type)

    def should_schedule(self, subscription: Subscription, date_type: str, when: datetime | None) -> bool:
        if when is None or when <= self.clock.now():
            return False
        if date_type == "payment_retry" or subscription.status == SubscriptionStatus.ACTIVE:
            return True
        return date_type == "end" and subscription.status == SubscriptionStatus.PENDING_CANCEL

    def unschedule(self, subscription: Subscription, date_type: str) -> None:
        entry = self._tokens(subscription).pop(date_type, None)
        if entry:
            self.scheduler.cancel(entry["token"])

    def sync_date(self, subscription: Subscription, date_type: str, args: dict[str, Any] | None = None) -> None:
        """Replace the action for ``date_type`` with one matching the current date."""
        hook = self.hook_for(subscription, date_type)
        if hook is None:
            return
        previous = self._tokens(subscription).get(date_type) or {}
        args = args or previous.get("args") or {"subscription_id": str(subscription.pk)}
        self.unschedule(subscription, date_type)
        when = subscription.get_date(date_type)
        if not self.should_schedule(subscription, date_type, when):
            return
        token = self.scheduler.schedule(when, hook, args)
        self._tokens(subscription)[date_type] = {"token": token, "hook": hook, "at": when.isoformat(), "args": args}

    def unschedule_all(self, subscription: Subscription) -> None:
        for date_type in list(self._tokens(subscription)):
            self.unschedule(subscription, date_type)

    def sync_status(self, subscription: Subscription) -> None:
        """Bring every action in line with the subscription's (new) status."""
        status = subscription.status
        if status == SubscriptionStatus.ACTIVE:
            for date_type in DATE_HOOKS:
                self.sync_date(subscription, date_type)
        elif status == SubscriptionStatus.PENDING_CANCEL:
            self.unschedule_all(subscription)
            self.sync_date(subscription, "end")
        elif status in UNSCHEDULE_ON_STATUSES:
            self.unschedule_all(subscription)

    def scheduled_hooks(self, subscription: Subscription) -> dict[str, str]:
        return {date_type: entry["hook"] for date_type, entry in self._tokens(subscription).items()}


__all__ = ["DATE_HOOKS", "HOOK_TASKS", "DjangoQScheduler", "ScheduledActionSync", "Scheduler"]
