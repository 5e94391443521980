"""
Subscription event bus.

Each event is a Django signal. ``EventBus.publish`` defers delivery until the
surrounding transaction commits, so receivers never observe state that is
later rolled back. Receiver errors are logged and do not reach the engine.

Every payload carries ``subscription_id`` and ``occurred_at``.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any

from django.db import transaction
from django.dispatch import Signal

from apps.common.clock import Clock, SystemClock
from apps.common.types import EventPayload

logger = logging.getLogger(__name__)

# ===============================================================================
# SIGNALS
# ===============================================================================

subscription_status_changed = Signal()  # old_status, new_status, note
subscription_date_updated = Signal()  # date_type, old_value, new_value
subscription_switched = Signal()  # old_item_id, new_item_id, switch_type, amount_due, order_id
retry_scheduled = Signal()  # retry_id, order_id, attempt, due
retry_fired = Signal()  # retry_id, order_id, status

EVENT_SIGNALS: dict[str, Signal] = {
    "subscription.status_changed": subscription_status_changed,
    "subscription.date_updated": subscription_date_updated,
    "subscription.switched": subscription_switched,
    "retry.scheduled": retry_scheduled,
    "retry.fired": retry_fired,
}


def _serialize(value: Any) -> Any:
    if isinstance(value, datetime):
        return value.isoformat()
    return value


# ===============================================================================
# EVENT BUS
# ===============================================================================


class EventBus:
    """Publishes subscription events after the current transaction commits"""

    def __init__(self, clock: Clock | None = None) -> None:
        self.clock = clock or SystemClock()

    def build_payload(self, subscription_id: str, **fields: Any) -> EventPayload:
        payload: EventPayload = {"subscription_id": str(subscription_id)}
        payload.update({key: _serialize(value) for key, value in fields.items()})
        payload["occurred_at"] = self.clock.now().isoformat()
        return payload

    def publish(self, event_name: str, subscription_id: str, **fields: Any) -> EventPayload:
        if event_name not in EVENT_SIGNALS:
            raise ValueError(f"Unknown subscription event: {event_name}")
        payload = self.build_payload(subscription_id, **fields)
        transaction.on_commit(lambda: self._dispatch(event_name, payload))
        return payload

    def _dispatch(self, event_name: str, payload: EventPayload) -> None:
        responses = EVENT_SIGNALS[event_name].send_robust(sender=self.__class__, event=event_name, payload=payload)
        for receiver_func, response in responses:
            if isinstance(response, Exception):
                logger.error(
                    f"🔥 [Events] Receiver {getattr(receiver_func, '__name__', receiver_func)} failed "
                    f"for {event_name} on subscription {payload['subscription_id']}: {response}"
                )


__all__ = [
    "EVENT_SIGNALS",
    "EventBus",
    "retry_fired",
    "retry_scheduled",
    "subscription_date_updated",
    "subscription_status_changed",
    "subscription_switched",
]
