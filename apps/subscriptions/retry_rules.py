"""
Payment retry rules.

A rule says how long to wait before retrying a failed renewal and which
statuses the order and subscription hold meanwhile. Rules are looked up by
0-indexed attempt number, optionally per gateway. The table is read-only once
built and may be shared freely.
"""

from __future__ import annotations

from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from datetime import timedelta
from types import MappingProxyType
from typing import Any

from .exceptions import ConfigurationError
from .status import OrderStatus, SubscriptionStatus

HOUR_IN_SECONDS = 3600
DAY_IN_SECONDS = 24 * HOUR_IN_SECONDS

DEFAULT_RETRY_RULES: list[dict[str, Any]] = [
    {
        "retry_after_interval": 12 * HOUR_IN_SECONDS,
        "email_template_customer": "",
        "email_template_admin": "payment_retry",
        "status_to_apply_to_order": OrderStatus.PENDING,
        "status_to_apply_to_subscription": SubscriptionStatus.ON_HOLD,
    },
    {
        "retry_after_interval": 12 * HOUR_IN_SECONDS,
        "email_template_customer": "customer_payment_retry",
        "email_template_admin": "payment_retry",
        "status_to_apply_to_order": OrderStatus.PENDING,
        "status_to_apply_to_subscription": SubscriptionStatus.ON_HOLD,
    },
    {
        "retry_after_interval": DAY_IN_SECONDS,
        "email_template_customer": "",
        "email_template_admin": "payment_retry",
        "status_to_apply_to_order": OrderStatus.PENDING,
        "status_to_apply_to_subscription": SubscriptionStatus.ON_HOLD,
    },
    {
        "retry_after_interval": 2 * DAY_IN_SECONDS,
        "email_template_customer": "customer_payment_retry",
        "email_template_admin": "payment_retry",
        "status_to_apply_to_order": OrderStatus.PENDING,
        "status_to_apply_to_subscription": SubscriptionStatus.ON_HOLD,
    },
    {
        "retry_after_interval": 3 * DAY_IN_SECONDS,
        "email_template_customer": "customer_payment_retry",
        "email_template_admin": "payment_retry",
        "status_to_apply_to_order": OrderStatus.PENDING,
        "status_to_apply_to_subscription": SubscriptionStatus.ON_HOLD,
    },
]


@dataclass(frozen=True)
class RetryRule:
    """One step of the retry escalation"""

    retry_after: timedelta
    status_to_apply_to_order: str = OrderStatus.PENDING
    status_to_apply_to_subscription: str = SubscriptionStatus.ON_HOLD
    email_template_customer: str = ""
    email_template_admin: str = ""

    @property
    def retry_after_seconds(self) -> int:
        return int(self.retry_after.total_seconds())

    @classmethod
    def from_config(cls, data: Mapping[str, Any]) -> RetryRule:
        """Build a rule from a settings dict, rejecting malformed values."""
        if not isinstance(data, Mapping):
            raise ConfigurationError(f"Retry rule must be a mapping, got {type(data).__name__}")

        raw_interval = data.get("retry_after_interval")
        try:
            seconds = int(raw_interval)  # type: ignore[arg-type]
        except (TypeError, ValueError) as e:
            raise ConfigurationError(f"Invalid retry_after_interval: {raw_interval!r}") from e
        if seconds < 0:
            raise ConfigurationError(f"retry_after_interval cannot be negative: {seconds}")

        order_status = data.get("status_to_apply_to_order", OrderStatus.PENDING)
        if order_status not in OrderStatus.ALL:
            raise ConfigurationError(f"Invalid status_to_apply_to_order: {order_status!r}")

        subscription_status = data.get("status_to_apply_to_subscription", SubscriptionStatus.ON_HOLD)
        if subscription_status not in SubscriptionStatus.ALL:
            raise ConfigurationError(f"Invalid status_to_apply_to_subscription: {subscription_status!r}")

        return cls(
            retry_after=timedelta(seconds=seconds),
            status_to_apply_to_order=order_status,
            status_to_apply_to_subscription=subscription_status,
            email_template_customer=str(data.get("email_template_customer") or ""),
            email_template_admin=str(data.get("email_template_admin") or ""),
        )

    def to_config(self) -> dict[str, Any]:
        """Inverse of ``from_config``; stored on each retry record."""
        return {
            "retry_after_interval": self.retry_after_seconds,
            "email_template_customer": self.email_template_customer,
            "email_template_admin": self.email_template_admin,
            "status_to_apply_to_order": self.status_to_apply_to_order,
            "status_to_apply_to_subscription": self.status_to_apply_to_subscription,
        }


def _parse_rules(rules: Any, label: str) -> tuple[RetryRule, ...]:
    if isinstance(rules, str | bytes) or not isinstance(rules, Sequence):
        raise ConfigurationError(f"{label} must be a list of rules")
    parsed = []
    for index, rule in enumerate(rules):
        try:
            parsed.append(RetryRule.from_config(rule))
        except ConfigurationError as e:
            raise ConfigurationError(f"{label}[{index}]: {e}") from e
    return tuple(parsed)


@dataclass(frozen=True)
class RetryRuleTable:
    """Ordered retry rules with optional per-gateway overrides"""

    default_rules: tuple[RetryRule, ...] = ()
    gateway_rules: Mapping[str, tuple[RetryRule, ...]] = field(default_factory=lambda: MappingProxyType({}))

    @classmethod
    def from_config(
        cls,
        rules: Sequence[Mapping[str, Any]],
        gateway_rules: Mapping[str, Sequence[Mapping[str, Any]]] | None = None,
    ) -> RetryRuleTable:
        gateway_rules = gateway_rules or {}
        if not isinstance(gateway_rules, Mapping):
            raise ConfigurationError("Gateway retry rules must be a mapping of gateway id to rule list")
        return cls(
            default_rules=_parse_rules(rules, "SUBSCRIPTIONS_RETRY_RULES"),
            gateway_rules=MappingProxyType({
                str(gateway_id): _parse_rules(gateway_list, f"SUBSCRIPTIONS_GATEWAY_RETRY_RULES[{gateway_id}]")
                for gateway_id, gateway_list in gateway_rules.items()
            }),
        )

    def rules_for(self, gateway_id: str | None = None) -> tuple[RetryRule, ...]:
        if gateway_id is not None and gateway_id in self.gateway_rules:
            return self.gateway_rules[gateway_id]
        return self.default_rules

    def has_rule(self, attempt: int, gateway_id: str | None = None) -> bool:
        return 0 <= attempt < len(self.rules_for(gateway_id))

    def get_rule(self, attempt: int, gateway_id: str | None = None) -> RetryRule | None:
        """Rule for the ``attempt``-th retry (0-indexed), or None when retries are exhausted."""
        if not self.has_rule(attempt, gateway_id):
            return None
        return self.rules_for(gateway_id)[attempt]


__all__ = ["DEFAULT_RETRY_RULES", "RetryRule", "RetryRuleTable"]
