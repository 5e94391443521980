"""
Subscription models for recurring billing.

A ``Subscription`` is the aggregate root: it owns its schedule dates, line
items and status history, and references the orders that pay for it.
``PaymentRetry`` records hang off the order whose payment failed.
"""

from __future__ import annotations

import copy
import logging
import uuid
from decimal import Decimal
from typing import Any, ClassVar

from django.core.validators import MinValueValidator
from django.db import models
from django.utils import timezone
from django.utils.translation import gettext_lazy as _

from .proration import RecurringItem
from .retry_rules import RetryRule
from .schedule import DATE_TYPES, BillingTerms, Schedule
from .status import OrderStatus, SubscriptionStatus

logger = logging.getLogger(__name__)

# ===============================================================================
# CONSTANTS
# ===============================================================================

PERIOD_CHOICES: tuple[tuple[str, str], ...] = (
    ("day", _("Day")),
    ("week", _("Week")),
    ("month", _("Month")),
    ("year", _("Year")),
)

# Schedule date type -> model field
DATE_FIELDS: dict[str, str] = {date_type: f"{date_type}_date" for date_type in DATE_TYPES}

MONEY_FIELD_KWARGS: dict[str, Any] = {"max_digits": 12, "decimal_places": 2, "default": Decimal("0.00")}


# ===============================================================================
# SUBSCRIPTION
# ===============================================================================


class Subscription(models.Model):
    """
    Recurring billing relationship for one customer.

    Schedule dates are read and written through ``get_schedule`` and
    ``apply_schedule`` so that every caller sees a consistent set.
    """

    STATUS_CHOICES: ClassVar[tuple[tuple[str, str], ...]] = SubscriptionStatus.CHOICES

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    customer_id = models.CharField(
        max_length=64,
        db_index=True,
        help_text=_("Identifier of the owning customer"),
    )
    parent_order = models.ForeignKey(
        "subscriptions.Order",
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name="+",
        help_text=_("Order that created this subscription"),
    )
    resubscribed_from = models.ForeignKey(
        "self",
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name="resubscriptions",
    )

    status = models.CharField(
        max_length=20,
        choices=STATUS_CHOICES,
        default=SubscriptionStatus.PENDING,
        db_index=True,
    )

    # Billing terms
    billing_period = models.CharField(max_length=10, choices=PERIOD_CHOICES, default="month")
    billing_interval = models.PositiveIntegerField(default=1, validators=[MinValueValidator(1)])
    billing_length = models.PositiveIntegerField(
        default=0,
        help_text=_("Total number of payments (0 = until cancelled)"),
    )
    is_synchronised = models.BooleanField(
        default=False,
        help_text=_("Renewals are aligned to a calendar anchor such as the 1st of the month"),
    )

    # Schedule
    start_date = models.DateTimeField(null=True, blank=True)
    trial_end_date = models.DateTimeField(null=True, blank=True)
    next_payment_date = models.DateTimeField(null=True, blank=True, db_index=True)
    last_payment_date = models.DateTimeField(null=True, blank=True)
    end_date = models.DateTimeField(null=True, blank=True)
    cancelled_date = models.DateTimeField(null=True, blank=True)
    payment_retry_date = models.DateTimeField(null=True, blank=True)

    # Payment method
    payment_method = models.CharField(
        max_length=50,
        blank=True,
        help_text=_("Gateway identifier used for automatic renewals"),
    )
    payment_method_meta = models.JSONField(default=dict, blank=True)
    requires_manual_renewal = models.BooleanField(default=False)

    suspension_count = models.PositiveIntegerField(default=0)

    meta = models.JSONField(default=dict, blank=True)

    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        db_table = "subscriptions"
        verbose_name = _("Subscription")
        verbose_name_plural = _("Subscriptions")
        ordering = ("-created_at",)
        indexes = (
            models.Index(fields=["customer_id", "status"], name="subscriptio_custome_5b1c2e_idx"),
            models.Index(fields=["status", "next_payment_date"], name="subscriptio_status_8d0a41_idx"),
        )

    def __str__(self) -> str:
        return f"Subscription {self.pk} ({self.status})"

    @property
    def is_manual(self) -> bool:
        return self.requires_manual_renewal or not self.payment_method

    @property
    def has_ended(self) -> bool:
        return self.status in SubscriptionStatus.ENDED

    # Schedule accessors

    def get_schedule(self) -> Schedule:
        return Schedule(**{date_type: getattr(self, field) for date_type, field in DATE_FIELDS.items()})

    def apply_schedule(self, schedule: Schedule) -> None:
        for date_type, field in DATE_FIELDS.items():
            setattr(self, field, schedule.get(date_type))

    def get_date(self, date_type: str) -> Any:
        return getattr(self, DATE_FIELDS[date_type])

    def get_terms(self) -> BillingTerms:
        return BillingTerms(
            period=self.billing_period,
            interval=self.billing_interval,
            length=self.billing_length,
        )

    # In-memory rollback

    def capture_state(self) -> dict[str, Any]:
        state = {field: getattr(self, field) for field in DATE_FIELDS.values()}
        state.update({
            "status": self.status,
            "suspension_count": self.suspension_count,
            "billing_period": self.billing_period,
            "billing_interval": self.billing_interval,
            "billing_length": self.billing_length,
            "meta": copy.deepcopy(self.meta),
        })
        return state

    def restore_state(self, state: dict[str, Any]) -> None:
        for field, value in state.items():
            setattr(self, field, copy.deepcopy(value) if field == "meta" else value)


class SubscriptionLineItem(models.Model):
    """A recurring product on a subscription; replaced, never edited, by a switch"""

    STATUS_CHOICES: ClassVar[tuple[tuple[str, str], ...]] = (
        ("active", _("Active")),
        ("switched", _("Switched")),
    )

    subscription = models.ForeignKey(Subscription, on_delete=models.CASCADE, related_name="line_items")
    product_id = models.CharField(max_length=64)
    name = models.CharField(max_length=200, blank=True)
    quantity = models.PositiveIntegerField(default=1, validators=[MinValueValidator(1)])
    price = models.DecimalField(
        validators=[MinValueValidator(Decimal("0"))],
        help_text=_("Recurring price per unit"),
        **MONEY_FIELD_KWARGS,
    )
    sign_up_fee = models.DecimalField(
        validators=[MinValueValidator(Decimal("0"))],
        help_text=_("One-time fee per unit paid at sign-up"),
        **MONEY_FIELD_KWARGS,
    )
    trial_length = models.PositiveIntegerField(default=0)
    trial_period = models.CharField(max_length=10, choices=PERIOD_CHOICES, blank=True)
    is_virtual = models.BooleanField(default=False)
    status = models.CharField(max_length=10, choices=STATUS_CHOICES, default="active")
    switched_from = models.ForeignKey(
        "self",
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name="switched_to",
    )
    meta = models.JSONField(default=dict, blank=True)
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        db_table = "subscription_line_items"
        verbose_name = _("Subscription Line Item")
        verbose_name_plural = _("Subscription Line Items")
        ordering = ("id",)

    def __str__(self) -> str:
        return f"{self.name or self.product_id} x {self.quantity}"

    @property
    def line_total(self) -> Decimal:
        return self.price * self.quantity

    def as_recurring_item(self, terms: BillingTerms) -> RecurringItem:
        return RecurringItem(
            price=self.price,
            quantity=self.quantity,
            sign_up_fee=self.sign_up_fee,
            period=terms.period,
            interval=terms.interval,
            length=terms.length,
            trial_length=self.trial_length,
            trial_period=self.trial_period,
            is_virtual=self.is_virtual,
        )


class SubscriptionStatusChange(models.Model):
    """Append-only status history"""

    subscription = models.ForeignKey(Subscription, on_delete=models.CASCADE, related_name="status_changes")
    old_status = models.CharField(max_length=20)
    new_status = models.CharField(max_length=20)
    note = models.TextField(blank=True)
    created_at = models.DateTimeField(default=timezone.now)

    class Meta:
        db_table = "subscription_status_changes"
        verbose_name = _("Subscription Status Change")
        verbose_name_plural = _("Subscription Status Changes")
        ordering = ("created_at", "id")

    def __str__(self) -> str:
        return f"{self.subscription_id}: {self.old_status} -> {self.new_status}"

    def save(self, *args: Any, **kwargs: Any) -> None:
        if not self._state.adding:
            raise ValueError("Subscription status history is append-only")
        super().save(*args, **kwargs)


# ===============================================================================
# ORDERS
# ===============================================================================


class Order(models.Model):
    """One-time order paying for (part of) a subscription"""

    RELATION_CHOICES: ClassVar[tuple[tuple[str, str], ...]] = (
        ("parent", _("Parent")),
        ("renewal", _("Renewal")),
        ("switch", _("Switch")),
        ("resubscribe", _("Resubscribe")),
    )

    subscription = models.ForeignKey(
        Subscription,
        on_delete=models.CASCADE,
        null=True,
        blank=True,
        related_name="orders",
    )
    relation = models.CharField(max_length=20, choices=RELATION_CHOICES, default="renewal")
    status = models.CharField(
        max_length=20,
        choices=OrderStatus.CHOICES,
        default=OrderStatus.PENDING,
        db_index=True,
    )
    total = models.DecimalField(validators=[MinValueValidator(Decimal("0"))], **MONEY_FIELD_KWARGS)
    payment_method = models.CharField(max_length=50, blank=True)
    transaction_id = models.CharField(max_length=255, blank=True)
    date_created = models.DateTimeField(default=timezone.now)
    date_paid = models.DateTimeField(null=True, blank=True)
    meta = models.JSONField(default=dict, blank=True)

    class Meta:
        db_table = "subscription_orders"
        verbose_name = _("Order")
        verbose_name_plural = _("Orders")
        ordering = ("-date_created", "-id")
        indexes = (models.Index(fields=["subscription", "relation"], name="subscriptio_subscri_3f6e92_idx"),)

    def __str__(self) -> str:
        return f"Order {self.pk} ({self.relation}, {self.status})"

    def needs_payment(self, extra_statuses: frozenset[str] | tuple[str, ...] = ()) -> bool:
        statuses = OrderStatus.NEEDS_PAYMENT | frozenset(extra_statuses)
        return self.status in statuses and self.total > 0

    @property
    def is_paid(self) -> bool:
        return self.date_paid is not None


# ===============================================================================
# PAYMENT RETRIES
# ===============================================================================


class PaymentRetry(models.Model):
    """One automatic retry of a failed renewal payment"""

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETE = "complete"
    FAILED = "failed"
    CANCELLED = "cancelled"

    STATUS_CHOICES: ClassVar[tuple[tuple[str, str], ...]] = (
        (PENDING, _("Pending")),
        (PROCESSING, _("Processing")),
        (COMPLETE, _("Complete")),
        (FAILED, _("Failed")),
        (CANCELLED, _("Cancelled")),
    )

    # Statuses in which a retry still controls the subscription
    OUTSTANDING: ClassVar[frozenset[str]] = frozenset({PENDING, PROCESSING})

    order = models.ForeignKey(Order, on_delete=models.CASCADE, related_name="payment_retries")
    status = models.CharField(max_length=20, choices=STATUS_CHOICES, default=PENDING, db_index=True)
    attempt_number = models.PositiveIntegerField(help_text=_("0-indexed retry attempt for the order"))
    rule_raw = models.JSONField(default=dict, help_text=_("Retry rule applied when the retry was created"))
    due_date = models.DateTimeField()
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        db_table = "subscription_payment_retries"
        verbose_name = _("Payment Retry")
        verbose_name_plural = _("Payment Retries")
        ordering = ("order", "attempt_number", "id")
        indexes = (models.Index(fields=["order", "status"], name="subscriptio_order_i_7c4d1a_idx"),)

    def __str__(self) -> str:
        return f"Retry #{self.attempt_number} for order {self.order_id} ({self.status})"

    @property
    def rule(self) -> RetryRule:
        return RetryRule.from_config(self.rule_raw)


__all__ = [
    "DATE_FIELDS",
    "Order",
    "PaymentRetry",
    "Subscription",
    "SubscriptionLineItem",
    "SubscriptionStatusChange",
]
