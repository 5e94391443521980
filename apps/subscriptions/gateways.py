"""
Payment gateway registry for renewal charges.

Gateway adapters live outside this app; the engine only needs their feature
flags and a renewal-charge entry point. A declined or crashed charge comes
back as ``Err`` so the retry engine can treat it as data.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from typing import TYPE_CHECKING, ClassVar

from apps.common.types import Err, Result

from .exceptions import GatewayError
from .status import GatewayFeature

if TYPE_CHECKING:
    from .models import Order

logger = logging.getLogger(__name__)


# ===============================================================================
# ABSTRACT BASE GATEWAY
# ===============================================================================


class PaymentGateway(ABC):
    """
    🏛️ Abstract base class for renewal-capable payment gateways

    Subclasses declare which subscription actions the provider can honour and
    charge renewal orders against the customer's stored payment method.
    """

    supported_features: ClassVar[frozenset[str]] = frozenset()

    def __init__(self) -> None:
        self.logger = logging.getLogger(f"apps.subscriptions.gateways.{self.__class__.__name__.lower()}")

    @property
    @abstractmethod
    def gateway_id(self) -> str:
        """Gateway identifier (e.g., 'stripe', 'bank_transfer')"""

    def supports(self, feature: str) -> bool:
        return feature in self.supported_features

    @abstractmethod
    def charge_renewal(self, order: Order) -> Result[str, str]:
        """
        Charge a renewal order

        Args:
            order: Renewal order holding the amount and payment method

        Returns:
            Ok(transaction reference) or Err(decline reason)
        """


# ===============================================================================
# GATEWAY REGISTRY
# ===============================================================================


class PaymentGatewayRegistry:
    """
    🏭 Registry of gateway instances keyed by gateway id

    Unknown gateways support no features and cannot charge.
    """

    def __init__(self) -> None:
        self._gateways: dict[str, PaymentGateway] = {}

    def register(self, gateway: PaymentGateway) -> None:
        unknown = gateway.supported_features - GatewayFeature.ALL
        if unknown:
            raise ValueError(f"Gateway '{gateway.gateway_id}' declares unknown features: {sorted(unknown)}")
        self._gateways[gateway.gateway_id] = gateway

    def unregister(self, gateway_id: str) -> None:
        self._gateways.pop(gateway_id, None)

    def get(self, gateway_id: str) -> PaymentGateway | None:
        return self._gateways.get(gateway_id)

    def capability(self, gateway_id: str, feature: str) -> bool:
        gateway = self.get(gateway_id)
        return gateway is not None and gateway.supports(feature)

    def features(self, gateway_id: str) -> frozenset[str]:
        gateway = self.get(gateway_id)
        return gateway.supported_features if gateway is not None else frozenset()

    def charge_renewal(self, order: Order) -> Result[str, GatewayError]:
        gateway_id = order.payment_method
        gateway = self.get(gateway_id)
        if gateway is None:
            return Err(GatewayError(gateway_id, "payment gateway is not registered"))

        try:
            result = gateway.charge_renewal(order)
        except Exception as e:
            logger.exception(f"💥 [Gateway] {gateway_id} crashed charging renewal order {order.pk}")
            return Err(GatewayError(gateway_id, f"unexpected gateway error: {e}"))

        if result.is_err():
            logger.warning(f"⚠️ [Gateway] {gateway_id} declined renewal order {order.pk}: {result.unwrap_err()}")
            return Err(GatewayError(gateway_id, str(result.unwrap_err())))
        return result


# Process-wide registry that gateway apps register into from AppConfig.ready()
gateway_registry = PaymentGatewayRegistry()


__all__ = ["PaymentGateway", "PaymentGatewayRegistry", "gateway_registry"]
