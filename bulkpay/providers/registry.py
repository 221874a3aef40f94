"""
One gateway per (payment method, environment) pair.

Gateways cache their access tokens, so they are built lazily and kept for
the life of the process. Sandbox and production never share a gateway.
"""

import logging
from typing import Any, Optional

from bulkpay.engine.errors import ConfigurationError
from bulkpay.models.enums import PaymentMethod
from bulkpay.providers.banktransfer import BankTransferGateway
from bulkpay.providers.base import ProviderGateway
from bulkpay.providers.giftcard import GiftCardGateway
from bulkpay.providers.paypal import PayPalGateway

logger = logging.getLogger("bulkpay.providers")

GATEWAY_CLASSES: dict[str, type[ProviderGateway]] = {
    PaymentMethod.PAYPAL.value: PayPalGateway,
    PaymentMethod.GIFTCARD.value: GiftCardGateway,
    PaymentMethod.BANKTRANSFER.value: BankTransferGateway,
}


class GatewayRegistry:
    def __init__(self, **gateway_options: Any):
        self._gateways: dict[tuple[str, str], ProviderGateway] = {}
        self._options = gateway_options

    def register(self, method: str, environment: str, gateway: ProviderGateway) -> None:
        self._gateways[(method, environment)] = gateway

    def get(self, method: str, environment: str) -> ProviderGateway:
        """
        Return the gateway for a pair, building it on first use.

        Raises:
            ConfigurationError: Unknown method or missing credentials.
        """
        key = (method, environment)
        gateway = self._gateways.get(key)
        if gateway is not None:
            return gateway

        gateway_class = GATEWAY_CLASSES.get(method)
        if gateway_class is None:
            raise ConfigurationError(f"Unsupported payment method: {method}", payment_method=method)

        gateway = gateway_class(environment, **self._options)
        logger.info("Created %s gateway for %s (%s)", method, environment, gateway.base_url)
        self._gateways[key] = gateway
        return gateway

    async def aclose(self) -> None:
        for gateway in self._gateways.values():
            await gateway.aclose()
        self._gateways.clear()


_registry: Optional[GatewayRegistry] = None


def get_registry() -> GatewayRegistry:
    """FastAPI dependency; the app lifespan owns the instance."""
    global _registry
    if _registry is None:
        _registry = GatewayRegistry()
    return _registry


async def close_registry() -> None:
    global _registry
    if _registry is not None:
        await _registry.aclose()
        _registry = None
