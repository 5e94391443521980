"""
Create Subscription, SubscriptionLineItem, SubscriptionStatusChange, Order and PaymentRetry models.
"""

import uuid
from decimal import Decimal

import django.core.validators
import django.db.models.deletion
import django.utils.timezone
from django.db import migrations, models

PERIOD_CHOICES = [("day", "Day"), ("week", "Week"), ("month", "Month"), ("year", "Year")]

SUBSCRIPTION_STATUS_CHOICES = [
    ("pending", "Pending"),
    ("active", "Active"),
    ("on-hold", "On hold"),
    ("pending-cancel", "Pending cancellation"),
    ("cancelled", "Cancelled"),
    ("expired", "Expired"),
    ("switched", "Switched"),
    ("trash", "Trash"),
    ("deleted", "Deleted"),
]

ORDER_STATUS_CHOICES = [
    ("pending", "Pending payment"),
    ("processing", "Processing"),
    ("on-hold", "On hold"),
    ("completed", "Completed"),
    ("failed", "Failed"),
    ("cancelled", "Cancelled"),
    ("refunded", "Refunded"),
]


def money_field(**kwargs):
    return models.DecimalField(
        decimal_places=2,
        default=Decimal("0.00"),
        max_digits=12,
        validators=[django.core.validators.MinValueValidator(Decimal("0"))],
        **kwargs,
    )


class Migration(migrations.Migration):

    initial = True

    dependencies = []

    operations = [
        migrations.CreateModel(
            name="Subscription",
            fields=[
                ("id", models.UUIDField(default=uuid.uuid4, editable=False, primary_key=True, serialize=False)),
                ("customer_id", models.CharField(db_index=True, help_text="Identifier of the owning customer", max_length=64)),
                ("status", models.CharField(choices=SUBSCRIPTION_STATUS_CHOICES, db_index=True, default="pending", max_length=20)),
                ("billing_period", models.CharField(choices=PERIOD_CHOICES, default="month", max_length=10)),
                ("billing_interval", models.PositiveIntegerField(default=1, validators=[django.core.validators.MinValueValidator(1)])),
                ("billing_length", models.PositiveIntegerField(default=0, help_text="Total number of payments (0 = until cancelled)")),
                ("is_synchronised", models.BooleanField(default=False, help_text="Renewals are aligned to a calendar anchor such as the 1st of the month")),
                ("start_date", models.DateTimeField(blank=True, null=True)),
                ("trial_end_date", models.DateTimeField(blank=True, null=True)),
                ("next_payment_date", models.DateTimeField(blank=True, db_index=True, null=True)),
                ("last_payment_date", models.DateTimeField(blank=True, null=True)),
                ("end_date", models.DateTimeField(blank=True, null=True)),
                ("cancelled_date", models.DateTimeField(blank=True, null=True)),
                ("payment_retry_date", models.DateTimeField(blank=True, null=True)),
                ("payment_method", models.CharField(blank=True, help_text="Gateway identifier used for automatic renewals", max_length=50)),
                ("payment_method_meta", models.JSONField(blank=True, default=dict)),
                ("requires_manual_renewal", models.BooleanField(default=False)),
                ("suspension_count", models.PositiveIntegerField(default=0)),
                ("meta", models.JSONField(blank=True, default=dict)),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("updated_at", models.DateTimeField(auto_now=True)),
                (
                    "resubscribed_from",
                    models.ForeignKey(
                        blank=True,
                        null=True,
                        on_delete=django.db.models.deletion.SET_NULL,
                        related_name="resubscriptions",
                        to="subscriptions.subscription",
                    ),
                ),
            ],
            options={
                "verbose_name": "Subscription",
                "verbose_name_plural": "Subscriptions",
                "db_table": "subscriptions",
                "ordering": ("-created_at",),
                "indexes": [
                    models.Index(fields=["customer_id", "status"], name="subscriptio_custome_5b1c2e_idx"),
                    models.Index(fields=["status", "next_payment_date"], name="subscriptio_status_8d0a41_idx"),
                ],
            },
        ),
        migrations.CreateModel(
            name="Order",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                (
                    "relation",
                    models.CharField(
                        choices=[("parent", "Parent"), ("renewal", "Renewal"), ("switch", "Switch"), ("resubscribe", "Resubscribe")],
                        default="renewal",
                        max_length=20,
                    ),
                ),
                ("status", models.CharField(choices=ORDER_STATUS_CHOICES, db_index=True, default="pending", max_length=20)),
                ("total", money_field()),
                ("payment_method", models.CharField(blank=True, max_length=50)),
                ("transaction_id", models.CharField(blank=True, max_length=255)),
                ("date_created", models.DateTimeField(default=django.utils.timezone.now)),
                ("date_paid", models.DateTimeField(blank=True, null=True)),
                ("meta", models.JSONField(blank=True, default=dict)),
                (
                    "subscription",
                    models.ForeignKey(
                        blank=True,
                        null=True,
                        on_delete=django.db.models.deletion.CASCADE,
                        related_name="orders",
                        to="subscriptions.subscription",
                    ),
                ),
            ],
            options={
                "verbose_name": "Order",
                "verbose_name_plural": "Orders",
                "db_table": "subscription_orders",
                "ordering": ("-date_created", "-id"),
                "indexes": [models.Index(fields=["subscription", "relation"], name="subscriptio_subscri_3f6e92_idx")],
            },
        ),
        migrations.AddField(
            model_name="subscription",
            name="parent_order",
            field=models.ForeignKey(
                blank=True,
                help_text="Order that created this subscription",
                null=True,
                on_delete=django.db.models.deletion.SET_NULL,
                related_name="+",
                to="subscriptions.order",
            ),
        ),
        migrations.CreateModel(
            name="SubscriptionLineItem",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("product_id", models.CharField(max_length=64)),
                ("name", models.CharField(blank=True, max_length=200)),
                ("quantity", models.PositiveIntegerField(default=1, validators=[django.core.validators.MinValueValidator(1)])),
                ("price", money_field(help_text="Recurring price per unit")),
                ("sign_up_fee", money_field(help_text="One-time fee per unit paid at sign-up")),
                ("trial_length", models.PositiveIntegerField(default=0)),
                ("trial_period", models.CharField(blank=True, choices=PERIOD_CHOICES, max_length=10)),
                ("is_virtual", models.BooleanField(default=False)),
                ("status", models.CharField(choices=[("active", "Active"), ("switched", "Switched")], default="active", max_length=10)),
                ("meta", models.JSONField(blank=True, default=dict)),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                (
                    "subscription",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.CASCADE,
                        related_name="line_items",
                        to="subscriptions.subscription",
                    ),
                ),
                (
                    "switched_from",
                    models.ForeignKey(
                        blank=True,
                        null=True,
                        on_delete=django.db.models.deletion.SET_NULL,
                        related_name="switched_to",
                        to="subscriptions.subscriptionlineitem",
                    ),
                ),
            ],
            options={
                "verbose_name": "Subscription Line Item",
                "verbose_name_plural": "Subscription Line Items",
                "db_table": "subscription_line_items",
                "ordering": ("id",),
            },
        ),
        migrations.CreateModel(
            name="SubscriptionStatusChange",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("old_status", models.CharField(max_length=20)),
                ("new_status", models.CharField(max_length=20)),
                ("note", models.TextField(blank=True)),
                ("created_at", models.DateTimeField(default=django.utils.timezone.now)),
                (
                    "subscription",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.CASCADE,
                        related_name="status_changes",
                        to="subscriptions.subscription",
                    ),
                ),
            ],
            options={
                "verbose_name": "Subscription Status Change",
                "verbose_name_plural": "Subscription Status Changes",
                "db_table": "subscription_status_changes",
                "ordering": ("created_at", "id"),
            },
        ),
        migrations.CreateModel(
            name="PaymentRetry",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                (
                    "status",
                    models.CharField(
                        choices=[
                            ("pending", "Pending"),
                            ("processing", "Processing"),
                            ("complete", "Complete"),
                            ("failed", "Failed"),
                            ("cancelled", "Cancelled"),
                        ],
                        db_index=True,
                        default="pending",
                        max_length=20,
                    ),
                ),
                ("attempt_number", models.PositiveIntegerField(help_text="0-indexed retry attempt for the order")),
                ("rule_raw", models.JSONField(default=dict, help_text="Retry rule applied when the retry was created")),
                ("due_date", models.DateTimeField()),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("updated_at", models.DateTimeField(auto_now=True)),
                (
                    "order",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.CASCADE,
                        related_name="payment_retries",
                        to="subscriptions.order",
                    ),
                ),
            ],
            options={
                "verbose_name": "Payment Retry",
                "verbose_name_plural": "Payment Retries",
                "db_table": "subscription_payment_retries",
                "ordering": ("order", "attempt_number", "id"),
                "indexes": [models.Index(fields=["order", "status"], name="subscriptio_order_i_7c4d1a_idx")],
            },
        ),
    ]
