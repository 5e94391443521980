"""
Order store and retry store backed by the Django ORM.

The engine talks to storage only through these classes. Derived lookups
(completed payment counts, related orders) are memoized in a request-scoped
``RequestCache`` that every write invalidates for the affected subscription.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import datetime
from decimal import Decimal
from typing import Any, Protocol, TypeVar

from django.db import DatabaseError
from django.db.models import Q
from django.utils import timezone

from .exceptions import PersistenceError
from .models import Order, PaymentRetry, Subscription
from .status import OrderStatus

logger = logging.getLogger(__name__)

V = TypeVar("V")

# Relations whose paid orders count as completed subscription payments
PAYMENT_RELATIONS = ("parent", "renewal", "resubscribe")


# ===============================================================================
# REQUEST CACHE
# ===============================================================================


class RequestCache:
    """Memo for derived subscription lookups, scoped to one engine invocation"""

    def __init__(self) -> None:
        self._values: dict[tuple[str, str], Any] = {}

    def get_or_set(self, subscription_id: Any, key: str, factory: Callable[[], V]) -> V:
        cache_key = (str(subscription_id), key)
        if cache_key not in self._values:
            self._values[cache_key] = factory()
        return self._values[cache_key]

    def invalidate(self, subscription_id: Any = None) -> None:
        if subscription_id is None:
            self._values.clear()
            return
        sid = str(subscription_id)
        for cache_key in [k for k in self._values if k[0] == sid]:
            del self._values[cache_key]


# ===============================================================================
# ORDER STORE
# ===============================================================================


class OrderStore(Protocol):
    def load(self, subscription_id: Any, *, for_update: bool = True) -> Subscription: ...

    def save(self, subscription: Subscription) -> None: ...

    def create_derived_order(
        self,
        subscription: Subscription,
        kind: str,
        total: Decimal | None = None,
        date_created: datetime | None = None,
    ) -> Order: ...

    def find_orders_referencing(self, subscription_id: Any, relation: str | None = None) -> list[Order]: ...


class DjangoOrderStore:
    """Order store over the subscription models"""

    def __init__(self, cache: RequestCache | None = None) -> None:
        self.cache = cache or RequestCache()

    def load(self, subscription_id: Any, *, for_update: bool = True) -> Subscription:
        """Load a subscription; inside a transaction the row stays locked until commit."""
        queryset = Subscription.objects.all()
        if for_update:
            queryset = queryset.select_for_update()
        return queryset.get(pk=subscription_id)

    def save(self, subscription: Subscription) -> None:
        try:
            subscription.save()
        except DatabaseError as e:
            logger.error(f"🔥 [Store] Failed to save subscription {subscription.pk}: {e}")
            raise PersistenceError(f"Could not save subscription {subscription.pk}") from e
        finally:
            self.cache.invalidate(subscription.pk)

    def load_order(self, order_id: Any, *, for_update: bool = False) -> Order:
        queryset = Order.objects.all()
        if for_update:
            queryset = queryset.select_for_update()
        return queryset.get(pk=order_id)

    def save_order(self, order: Order) -> None:
        try:
            order.save()
        except DatabaseError as e:
            logger.error(f"🔥 [Store] Failed to save order {order.pk}: {e}")
            raise PersistenceError(f"Could not save order {order.pk}") from e
        finally:
            if order.subscription_id:
                self.cache.invalidate(order.subscription_id)

    def create_derived_order(
        self,
        subscription: Subscription,
        kind: str,
        total: Decimal | None = None,
        date_created: datetime | None = None,
    ) -> Order:
        """Create a renewal, switch or resubscribe order for ``subscription``."""
        if total is None:
            total = sum(
                (item.line_total for item in subscription.line_items.filter(status="active")),
                Decimal("0.00"),
            )
        try:
            order = Order.objects.create(
                subscription=subscription,
                relation=kind,
                status=OrderStatus.PENDING,
                total=total,
                payment_method="" if subscription.requires_manual_renewal else subscription.payment_method,
                date_created=date_created or timezone.now(),
            )
        except DatabaseError as e:
            raise PersistenceError(f"Could not create {kind} order for subscription {subscription.pk}") from e
        self.cache.invalidate(subscription.pk)
        return order

    def find_orders_referencing(self, subscription_id: Any, relation: str | None = None) -> list[Order]:
        def query() -> list[Order]:
            queryset = Order.objects.filter(subscription_id=subscription_id)
            if relation is not None:
                queryset = queryset.filter(relation=relation)
            return list(queryset.order_by("-date_created", "-id"))

        return self.cache.get_or_set(subscription_id, f"orders:{relation or 'all'}", query)

    def get_completed_payment_count(self, subscription: Subscription) -> int:
        def query() -> int:
            paid = Q(date_paid__isnull=False) | Q(status__in=OrderStatus.PAID)
            return Order.objects.filter(paid, subscription=subscription, relation__in=PAYMENT_RELATIONS).count()

        return self.cache.get_or_set(subscription.pk, "completed_payment_count", query)

    def get_last_order(self, subscription: Subscription, relations: tuple[str, ...] = ("parent", "renewal")) -> Order | None:
        for order in self.find_orders_referencing(subscription.pk):
            if order.relation in relations:
                return order
        return None

    def get_last_paid_order(self, subscription: Subscription) -> Order | None:
        for order in self.find_orders_referencing(subscription.pk):
            if order.relation in PAYMENT_RELATIONS and order.is_paid:
                return order
        return None

    def get_total_paid_for_current_period(self, subscription: Subscription, line_total: Decimal) -> Decimal:
        """Recurring amount paid for a line in the current period; nothing before the first payment."""
        if self.get_last_paid_order(subscription) is None:
            return Decimal("0.00")
        return line_total

    def subscription_needs_payment(self, subscription: Subscription) -> bool:
        """Whether the parent or latest renewal/switch order is still unpaid."""
        unpaid = OrderStatus.NEEDS_PAYMENT | {OrderStatus.ON_HOLD, OrderStatus.CANCELLED}
        for order in (subscription.parent_order, self.get_last_order(subscription, ("renewal", "switch"))):
            if order is not None and order.total > 0 and order.status in unpaid:
                return True
        return False

    def get_subscriptions_for_order(self, order: Order) -> list[Subscription]:
        if order.subscription_id is None:
            return list(Subscription.objects.filter(parent_order=order))
        return [self.load(order.subscription_id)]


# ===============================================================================
# RETRY STORE
# ===============================================================================


class DjangoRetryStore:
    """Persistence for payment retry records"""

    def create(self, order: Order, attempt_number: int, rule_raw: dict[str, Any], due_date: Any) -> PaymentRetry:
        return PaymentRetry.objects.create(
            order=order,
            attempt_number=attempt_number,
            rule_raw=rule_raw,
            due_date=due_date,
            status=PaymentRetry.PENDING,
        )

    def get(self, retry_id: Any) -> PaymentRetry | None:
        return PaymentRetry.objects.filter(pk=retry_id).select_related("order").first()

    def get_last_for_order(self, order_id: Any) -> PaymentRetry | None:
        return PaymentRetry.objects.filter(order_id=order_id).order_by("-attempt_number", "-id").first()

    def count_for_order(self, order_id: Any) -> int:
        return PaymentRetry.objects.filter(order_id=order_id).count()

    def claim_pending(self, retry_id: Any) -> bool:
        """Atomically move a retry from pending to processing; False if someone else did."""
        claimed = PaymentRetry.objects.filter(pk=retry_id, status=PaymentRetry.PENDING).update(
            status=PaymentRetry.PROCESSING
        )
        return claimed == 1

    def set_status(self, retry: PaymentRetry, status: str) -> None:
        retry.status = status
        retry.save(update_fields=["status", "updated_at"])

    def delete_for_order(self, order_id: Any) -> int:
        deleted, _ = PaymentRetry.objects.filter(order_id=order_id).delete()
        return deleted


__all__ = ["DjangoOrderStore", "DjangoRetryStore", "OrderStore", "RequestCache"]
