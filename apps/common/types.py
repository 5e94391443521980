"""
Shared type system for the recurring billing platform
Rust-inspired Result pattern and common type aliases for the service layer.
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Any, Generic, TypeVar

# Type variables for generic Result
T = TypeVar("T")  # Success type
E = TypeVar("E")  # Error type

# ===============================================================================
# RESULT TYPES
# ===============================================================================


@dataclass(frozen=True)
class Ok(Generic[T]):
    """Success result containing a value"""

    value: T

    def is_ok(self) -> bool:
        return True

    def is_err(self) -> bool:
        return False

    def unwrap(self) -> T:
        """Get the success value"""
        return self.value

    def unwrap_or(self, default: T) -> T:
        """Get the success value (ignores default)"""
        return self.value

    def map(self, func: Callable[[T], Any]) -> Result[Any, Any]:
        """Transform the success value"""
        try:
            return Ok(func(self.value))
        except Exception as e:
            return Err(str(e))

    def and_then(self, func: Callable[[T], Result[Any, Any]]) -> Result[Any, Any]:
        """Chain operations that can fail"""
        try:
            return func(self.value)
        except Exception as e:
            return Err(str(e))

    def unwrap_err(self) -> Any:
        """Raises an exception since this is success, not error - provides consistent API"""
        raise ValueError(f"Called unwrap_err on Ok: {self.value}")


@dataclass(frozen=True)
class Err(Generic[E]):
    """Error result containing an error value"""

    error: E

    def is_ok(self) -> bool:
        return False

    def is_err(self) -> bool:
        return True

    def unwrap(self) -> Any:
        """Raises the wrapped exception, or ValueError for plain error values"""
        if isinstance(self.error, Exception):
            raise self.error
        raise ValueError(f"Called unwrap on Err: {self.error}")

    def unwrap_or(self, default: T) -> T:
        """Get the default value since this is an error"""
        return default

    def map(self, func: Callable[[Any], Any]) -> Result[Any, E]:
        """No-op for error results"""
        return self

    def and_then(self, func: Callable[[Any], Result[Any, Any]]) -> Result[Any, E]:
        """No-op for error results - return self"""
        return self

    def unwrap_err(self) -> E:
        """Get the error value"""
        return self.error


# Result type alias
Result = Ok[T] | Err[E]

# ===============================================================================
# BILLING TYPES
# ===============================================================================

SubscriptionId = str  # UUID string of a subscription aggregate
OrderId = int  # Primary key of an order
GatewayId = str  # Payment gateway identifier: "stripe", "bank_transfer"
Money = Decimal  # Monetary amount in store currency, never float
Timestamp = datetime  # Aware UTC datetime; None means "unset"

# ===============================================================================
# SERVICE LAYER TYPES
# ===============================================================================

ServiceMethod = Callable[..., Result[Any, str]]
GatewayMethod = Callable[..., Result[Any, str]]
EventPayload = dict[str, Any]

__all__ = [
    "E",
    "Err",
    "EventPayload",
    "GatewayId",
    "GatewayMethod",
    "Money",
    "Ok",
    "OrderId",
    "Result",
    "ServiceMethod",
    "SubscriptionId",
    "T",
    "Timestamp",
]
