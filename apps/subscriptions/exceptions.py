"""
Exception taxonomy for the recurring billing engine.

Pure calculators return these wrapped in ``Err`` results; the engine raises
them to its callers. Gateway declines are recorded on the order instead of
being raised, so ``GatewayError`` only travels inside ``Err`` values.
"""

from __future__ import annotations

from typing import Any


class SubscriptionError(Exception):
    """Base class for recurring billing failures"""


class InvalidTransitionError(SubscriptionError):
    """A status change was requested that the state machine forbids"""

    def __init__(self, current: str, target: str, reason: str = "") -> None:
        self.current = current
        self.target = target
        self.reason = reason or f"cannot change status from {current} to {target}"
        super().__init__(f"Unable to change subscription status to '{target}': {self.reason}")


class DateOrderingError(SubscriptionError):
    """A proposed set of schedule dates violates the ordering invariants"""

    def __init__(self, date_type: str, other_date_type: str | None, message: str) -> None:
        self.date_type = date_type
        self.other_date_type = other_date_type
        super().__init__(message)


class PersistenceError(SubscriptionError):
    """The order store failed to durably save a change"""


class GatewayError(SubscriptionError):
    """A payment gateway could not complete a renewal charge"""

    def __init__(self, gateway_id: str, message: str, details: dict[str, Any] | None = None) -> None:
        self.gateway_id = gateway_id
        self.details = details or {}
        super().__init__(f"[{gateway_id}] {message}")


class ConfigurationError(SubscriptionError):
    """Retry rules or proration policy settings are malformed"""


class SwitchError(SubscriptionError):
    """A plan switch was blocked; ``user_message`` is safe to show to customers"""

    USER_MESSAGE = "We could not calculate the cost of this plan change. Please contact support."

    def __init__(self, detail: str) -> None:
        self.detail = detail
        self.user_message = self.USER_MESSAGE
        super().__init__(detail)


__all__ = [
    "ConfigurationError",
    "DateOrderingError",
    "GatewayError",
    "InvalidTransitionError",
    "PersistenceError",
    "SubscriptionError",
    "SwitchError",
]
