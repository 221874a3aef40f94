from bulkpay.providers.banktransfer import BankTransferGateway
from bulkpay.providers.base import AccessToken, ProviderGateway, ProviderResult
from bulkpay.providers.giftcard import GiftCardGateway, GiftCardOrder
from bulkpay.providers.paypal import PayoutItem, PayPalGateway
from bulkpay.providers.registry import GatewayRegistry, get_registry

__all__ = [
    "AccessToken",
    "ProviderGateway",
    "ProviderResult",
    "PayPalGateway",
    "PayoutItem",
    "GiftCardGateway",
    "GiftCardOrder",
    "BankTransferGateway",
    "GatewayRegistry",
    "get_registry",
]
