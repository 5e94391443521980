"""
Subscription background tasks.

Django-Q2 entry points for the one-shot schedules created by
``ScheduledActionSync`` plus a periodic sweep that fires payment retries
whose wake-up was missed. Every task may be delivered more than once; the
engine re-checks state before acting.
"""

from __future__ import annotations

import logging
from typing import Any

from django_q.models import Schedule
from django_q.tasks import async_task, schedule

from .exceptions import SubscriptionError
from .models import Order, Subscription
from .services import get_billing_engine

logger = logging.getLogger(__name__)

# Task configuration
TASK_TIME_LIMIT = 600  # 10 minutes
RETRY_SWEEP_MINUTES = 15


def _not_found(kind: str, object_id: Any) -> dict[str, Any]:
    error_msg = f"{kind} {object_id} not found"
    logger.error(f"❌ [SubscriptionTask] {error_msg}")
    return {"success": False, "error": error_msg}


def process_scheduled_payment(subscription_id: str) -> dict[str, Any]:
    """Renew a subscription whose next payment date has arrived."""
    logger.info(f"🔄 [SubscriptionTask] Processing scheduled payment for {subscription_id}")
    try:
        order = get_billing_engine().process_renewal(subscription_id)
    except Subscription.DoesNotExist:
        return _not_found("Subscription", subscription_id)
    except SubscriptionError as e:
        logger.error(f"🔥 [SubscriptionTask] Renewal of {subscription_id} failed: {e}")
        return {"success": False, "error": str(e)}
    except Exception as e:
        logger.exception(f"💥 [SubscriptionTask] Unexpected error renewing {subscription_id}: {e}")
        return {"success": False, "error": str(e)}

    if order is None:
        return {"success": True, "skipped": True}
    order.refresh_from_db()
    return {"success": True, "order_id": order.pk, "order_status": order.status}


def process_payment_retry(order_id: int | None = None, subscription_id: str | None = None) -> dict[str, Any]:
    """Fire the pending retry of a failed renewal order."""
    if order_id is None:
        return {"success": False, "error": "order_id is required"}

    logger.info(f"🔁 [SubscriptionTask] Processing payment retry for order {order_id}")
    try:
        retry = get_billing_engine().process_payment_retry(order_id)
    except Order.DoesNotExist:
        return _not_found("Order", order_id)
    except SubscriptionError as e:
        logger.error(f"🔥 [SubscriptionTask] Payment retry for order {order_id} failed: {e}")
        return {"success": False, "error": str(e)}
    except Exception as e:
        logger.exception(f"💥 [SubscriptionTask] Unexpected error retrying order {order_id}: {e}")
        return {"success": False, "error": str(e)}

    if retry is None:
        return {"success": True, "skipped": True}
    return {"success": True, "retry_id": retry.pk, "retry_status": retry.status}


def _run_hook(hook_name: str, subscription_id: str, operation: Any) -> dict[str, Any]:
    logger.info(f"⏰ [SubscriptionTask] Running {hook_name} for {subscription_id}")
    try:
        outcome = operation(subscription_id)
    except Subscription.DoesNotExist:
        return _not_found("Subscription", subscription_id)
    except SubscriptionError as e:
        logger.error(f"🔥 [SubscriptionTask] {hook_name} for {subscription_id} failed: {e}")
        return {"success": False, "error": str(e)}
    except Exception as e:
        logger.exception(f"💥 [SubscriptionTask] Unexpected error in {hook_name} for {subscription_id}: {e}")
        return {"success": False, "error": str(e)}

    if isinstance(outcome, Subscription):
        return {"success": True, "status": outcome.status}
    return {"success": True, "skipped": not outcome}


def process_trial_end(subscription_id: str) -> dict[str, Any]:
    return _run_hook("trial end", subscription_id, get_billing_engine().trial_end_reached)


def process_subscription_expiration(subscription_id: str) -> dict[str, Any]:
    return _run_hook("expiration", subscription_id, get_billing_engine().expire_subscription)


def process_end_of_prepaid_term(subscription_id: str) -> dict[str, Any]:
    return _run_hook("end of prepaid term", subscription_id, get_billing_engine().end_of_prepaid_term)


def process_due_payment_retries() -> dict[str, Any]:
    """Fire pending retries whose due date has passed without a wake-up."""
    try:
        fired = get_billing_engine().fire_due_retries()
    except Exception as e:
        logger.exception(f"💥 [SubscriptionTask] Retry sweep failed: {e}")
        return {"success": False, "error": str(e)}

    if fired:
        logger.info(f"✅ [SubscriptionTask] Retry sweep fired {len(fired)} retries")
    return {"success": True, "fired": [retry.pk for retry in fired]}


# ===============================================================================
# TASK QUEUE WRAPPER FUNCTIONS
# ===============================================================================


def process_scheduled_payment_async(subscription_id: str) -> str:
    """Queue a renewal for immediate processing."""
    return async_task(
        "apps.subscriptions.tasks.process_scheduled_payment",
        subscription_id,
        timeout=TASK_TIME_LIMIT,
    )


def process_due_payment_retries_async() -> str:
    """Queue a retry sweep."""
    return async_task("apps.subscriptions.tasks.process_due_payment_retries", timeout=TASK_TIME_LIMIT)


# ===============================================================================
# SCHEDULED TASKS SETUP
# ===============================================================================


def setup_subscription_scheduled_tasks() -> dict[str, str]:
    """Set up the periodic subscription tasks."""
    tasks_created = {}

    existing_tasks = list(
        Schedule.objects.filter(name__in=["subscription-retry-sweep"]).values_list("name", flat=True)
    )

    # Catch retries whose one-shot schedule was lost or has a zero delay
    if "subscription-retry-sweep" not in existing_tasks:
        schedule(
            "apps.subscriptions.tasks.process_due_payment_retries",
            schedule_type=Schedule.MINUTES,
            minutes=RETRY_SWEEP_MINUTES,
            name="subscription-retry-sweep",
        )
        tasks_created["retry_sweep"] = "created"
    else:
        tasks_created["retry_sweep"] = "already_exists"

    logger.info(f"✅ [SubscriptionTasks] Scheduled tasks setup: {tasks_created}")
    return tasks_created


__all__ = [
    "process_due_payment_retries",
    "process_end_of_prepaid_term",
    "process_payment_retry",
    "process_scheduled_payment",
    "process_subscription_expiration",
    "process_trial_end",
    "setup_subscription_scheduled_tasks",
]
