"""
Provider endpoints.

GET /providers/{method}/status                           Connection test for one environment.
GET /providers/paypal/balance                            PayPal account balances.
GET /providers/giftcard/campaigns                        Gift card campaigns.
GET /providers/giftcard/funding                          Gift card funding balance.
GET /providers/banktransfer/accounts                     XE accounts.
GET /providers/banktransfer/countries                    Countries and currencies XE pays into.
GET /providers/banktransfer/payment-fields/{c}/{cur}     Cached XE field requirements.
"""

from datetime import datetime, timezone
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.ext.asyncio import AsyncSession

from bulkpay.api.common import http_error, iso
from bulkpay.config import settings
from bulkpay.database import get_session
from bulkpay.engine.errors import BatchError
from bulkpay.engine.reference_data import get_payment_fields
from bulkpay.engine.status_mapper import describe_result
from bulkpay.models.enums import Environment, PaymentMethod
from bulkpay.providers.base import ProviderGateway, ProviderResult
from bulkpay.providers.registry import GatewayRegistry, get_registry

router = APIRouter(prefix="/providers", tags=["providers"])


def _gateway(registry: GatewayRegistry, method: PaymentMethod, environment: Optional[Environment]) -> ProviderGateway:
    try:
        return registry.get(method.value, environment.value if environment else settings.default_environment)
    except BatchError as e:
        raise http_error(e)


def _unwrap(method: PaymentMethod, result: ProviderResult):
    if not result.success:
        descriptor = describe_result(method.value, result)
        raise HTTPException(status_code=502, detail=descriptor.to_dict())
    return result.data


@router.get("/{method}/status")
async def provider_status(
    method: PaymentMethod,
    environment: Optional[Environment] = None,
    registry: GatewayRegistry = Depends(get_registry),
):
    """Authenticate against the provider and report whether it worked."""
    gateway = _gateway(registry, method, environment)
    result = await gateway.test_connection()
    response = {
        "payment_method": method.value,
        "environment": gateway.environment,
        "base_url": gateway.base_url,
        "connected": result.success,
    }
    if not result.success:
        response["error"] = describe_result(method.value, result).to_dict()
    return response


@router.get("/paypal/balance")
async def paypal_balance(
    currency: Optional[str] = None,
    environment: Optional[Environment] = None,
    registry: GatewayRegistry = Depends(get_registry),
):
    gateway = _gateway(registry, PaymentMethod.PAYPAL, environment)
    balance = _unwrap(PaymentMethod.PAYPAL, await gateway.get_balance(currency))
    return {**balance, "last_updated": iso(datetime.now(timezone.utc))}


@router.get("/giftcard/campaigns")
async def giftcard_campaigns(
    environment: Optional[Environment] = None,
    registry: GatewayRegistry = Depends(get_registry),
):
    gateway = _gateway(registry, PaymentMethod.GIFTCARD, environment)
    return {"campaigns": _unwrap(PaymentMethod.GIFTCARD, await gateway.get_campaigns())}


@router.get("/giftcard/funding")
async def giftcard_funding(
    environment: Optional[Environment] = None,
    registry: GatewayRegistry = Depends(get_registry),
):
    gateway = _gateway(registry, PaymentMethod.GIFTCARD, environment)
    return {"funding": _unwrap(PaymentMethod.GIFTCARD, await gateway.get_funding())}


@router.get("/banktransfer/accounts")
async def banktransfer_accounts(
    environment: Optional[Environment] = None,
    registry: GatewayRegistry = Depends(get_registry),
):
    gateway = _gateway(registry, PaymentMethod.BANKTRANSFER, environment)
    return {"accounts": _unwrap(PaymentMethod.BANKTRANSFER, await gateway.get_accounts())}


@router.get("/banktransfer/countries")
async def banktransfer_countries(
    environment: Optional[Environment] = None,
    registry: GatewayRegistry = Depends(get_registry),
):
    gateway = _gateway(registry, PaymentMethod.BANKTRANSFER, environment)
    return {"countries": _unwrap(PaymentMethod.BANKTRANSFER, await gateway.list_countries())}


@router.get("/banktransfer/payment-fields/{country_code}/{currency_code}")
async def banktransfer_payment_fields(
    country_code: str,
    currency_code: str,
    environment: Optional[Environment] = None,
    session: AsyncSession = Depends(get_session),
    registry: GatewayRegistry = Depends(get_registry),
):
    """Field requirements for paying into a country/currency, from the local cache when fresh."""
    gateway = _gateway(registry, PaymentMethod.BANKTRANSFER, environment)
    try:
        fields, cached = await get_payment_fields(session, gateway, country_code, currency_code)
    except BatchError as e:
        raise http_error(e)
    return {
        "country_code": country_code.upper(),
        "currency_code": currency_code.upper(),
        "fields": fields,
        "cached": cached,
    }
