"""
Model signal receivers for subscriptions.

Deleting an order takes its payment retries with it; an outstanding retry is
cancelled first so the subscription does not keep a stale retry wake-up.
"""

import logging
from typing import Any

from django.db.models.signals import pre_delete
from django.dispatch import receiver

from .models import Order

logger = logging.getLogger(__name__)


@receiver(pre_delete, sender=Order)
def handle_order_deleted(sender: type[Order], instance: Order, **kwargs: Any) -> None:
    from .services import get_billing_engine  # noqa: PLC0415

    if not instance.payment_retries.exists():
        return
    get_billing_engine().retries.on_order_deleted(instance)
    logger.info(f"🗑️ [Signals] Cleaned up payment retries of deleted order {instance.pk}")
