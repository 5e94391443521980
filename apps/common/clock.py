"""
Injectable time source for the billing engine.

Engine and calculator code never calls ``timezone.now()`` directly: the
current time is read from a ``Clock`` so tests can freeze and advance it.
All values are aware UTC datetimes.
"""

from __future__ import annotations

from datetime import UTC, datetime, timedelta
from typing import Protocol

from django.utils import timezone

# ===============================================================================
# CLOCK PROTOCOL
# ===============================================================================


class Clock(Protocol):
    """Injectable time source."""

    def now(self) -> datetime:
        """Return the current aware UTC datetime."""
        ...  # pragma: no cover


# ===============================================================================
# IMPLEMENTATIONS
# ===============================================================================


class SystemClock:
    """Production clock backed by Django's timezone support."""

    def now(self) -> datetime:
        return timezone.now().astimezone(UTC)


class FrozenClock:
    """
    Test clock returning a fixed timestamp until moved.

    Usage:
        clock = FrozenClock(datetime(2024, 1, 15, tzinfo=UTC))
        clock.advance(days=30)
    """

    def __init__(self, at: datetime) -> None:
        self._at = _require_aware(at)

    def now(self) -> datetime:
        return self._at

    def set(self, at: datetime) -> None:
        self._at = _require_aware(at)

    def advance(self, **delta: float) -> datetime:
        self._at = self._at + timedelta(**delta)
        return self._at


def _require_aware(value: datetime) -> datetime:
    if timezone.is_naive(value):
        raise ValueError("Clock values must be timezone-aware datetimes")
    return value.astimezone(UTC)


__all__ = ["Clock", "FrozenClock", "SystemClock"]
