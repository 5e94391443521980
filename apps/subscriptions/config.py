"""
Centralized recurring billing configuration.

Malformed scalar settings log a warning and fall back to their defaults.
Structured settings (retry rules, proration policy) are validated once per
process; a malformed value switches the affected feature off and is logged,
instead of failing every billing run.
"""

from __future__ import annotations

import logging
from datetime import timedelta
from functools import lru_cache
from typing import TYPE_CHECKING

from django.conf import settings

from .exceptions import ConfigurationError

if TYPE_CHECKING:
    from .proration import ProrationPolicy
    from .retry_rules import RetryRuleTable

logger = logging.getLogger(__name__)

# ===============================================================================
# ENGINE CONSTANTS
# ===============================================================================

# Stored next payment dates closer than this are recalculated on activation
ACTIVATION_THRESHOLD = timedelta(hours=2)

# A renewal this close to the end date is not scheduled
END_DATE_BUFFER = timedelta(hours=23)

# Hard cap on interval additions when catching up a next payment date
MAX_NEXT_PAYMENT_ITERATIONS = 3000

FAILED_PAYMENT_STATUSES = ("on-hold", "cancelled")

# ===============================================================================
# HELPER: SAFE VALUE PARSING
# ===============================================================================


def _get_bool(setting_name: str, default: bool) -> bool:
    """Get a boolean from settings, accepting common string spellings."""
    value = getattr(settings, setting_name, default)
    if isinstance(value, str):
        return value.strip().lower() in ("1", "true", "yes", "on")
    return bool(value)


def _get_non_negative_int(setting_name: str, default: int) -> int:
    """Get a non-negative integer from settings with validation."""
    value = getattr(settings, setting_name, default)
    try:
        result = int(value)
    except (TypeError, ValueError):
        logger.warning(f"⚠️ [Config] Invalid {setting_name}={value!r}, using {default}")
        result = default
    return max(0, result)


# ===============================================================================
# SCALAR SETTINGS
# ===============================================================================


def is_retry_enabled() -> bool:
    """Whether failed automatic renewals are retried at all."""
    return _get_bool("SUBSCRIPTIONS_RETRY_ENABLED", True)


def get_price_decimals() -> int:
    """Rounding precision for monetary results."""
    return _get_non_negative_int("SUBSCRIPTIONS_PRICE_DECIMALS", 2)


def get_failed_payment_status() -> str:
    """Status a subscription moves to when a renewal payment fails."""
    value = getattr(settings, "SUBSCRIPTIONS_FAILED_PAYMENT_STATUS", "on-hold")
    if value not in FAILED_PAYMENT_STATUSES:
        logger.warning(f"⚠️ [Config] Invalid SUBSCRIPTIONS_FAILED_PAYMENT_STATUS={value!r}, using on-hold")
        return "on-hold"
    return str(value)


def get_max_suspensions() -> int:
    """Suspensions allowed before a failed payment cancels instead (0 = unlimited)."""
    return _get_non_negative_int("SUBSCRIPTIONS_MAX_SUSPENSIONS", 0)


# ===============================================================================
# STRUCTURED SETTINGS (validated once per process)
# ===============================================================================


@lru_cache(maxsize=1)
def get_retry_rule_table() -> RetryRuleTable | None:
    """
    Build the retry rule table from settings.

    Returns None when retries are disabled or the rules are malformed, which
    leaves every failed payment to the terminal failure policy.
    """
    from .retry_rules import DEFAULT_RETRY_RULES, RetryRuleTable  # noqa: PLC0415

    if not is_retry_enabled():
        logger.info("⏸️ [Config] Automatic payment retries are disabled")
        return None

    try:
        return RetryRuleTable.from_config(
            getattr(settings, "SUBSCRIPTIONS_RETRY_RULES", DEFAULT_RETRY_RULES),
            getattr(settings, "SUBSCRIPTIONS_GATEWAY_RETRY_RULES", {}),
        )
    except ConfigurationError as e:
        logger.error(f"🔥 [Config] Payment retries disabled, invalid retry rules: {e}")
        return None


@lru_cache(maxsize=1)
def get_proration_policy() -> ProrationPolicy:
    """Proration policy; a malformed setting falls back to no proration."""
    from .proration import ProrationPolicy  # noqa: PLC0415

    try:
        return ProrationPolicy.from_config(getattr(settings, "SUBSCRIPTIONS_PRORATION", {}))
    except ConfigurationError as e:
        logger.error(f"🔥 [Config] Switch proration disabled, invalid policy: {e}")
        return ProrationPolicy()


def reset_config_cache() -> None:
    """Forget cached structured settings (used when settings change in tests)."""
    get_retry_rule_table.cache_clear()
    get_proration_policy.cache_clear()


__all__ = [
    "ACTIVATION_THRESHOLD",
    "END_DATE_BUFFER",
    "FAILED_PAYMENT_STATUSES",
    "MAX_NEXT_PAYMENT_ITERATIONS",
    "get_failed_payment_status",
    "get_max_suspensions",
    "get_price_decimals",
    "get_proration_policy",
    "get_retry_rule_table",
    "is_retry_enabled",
    "reset_config_cache",
]
