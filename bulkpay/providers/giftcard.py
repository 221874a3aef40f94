"""
Giftogram gift card gateway.

Giftogram has no batch endpoint: every gift card is its own order.
Bulk submission partitions orders into fixed-size windows, fires all
orders of a window concurrently and sleeps a fixed delay between
windows. Nothing adaptive: N concurrent, then wait.
"""

import asyncio
import math
import random
import string
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any, Optional

from bulkpay.config import settings
from bulkpay.providers.base import AccessToken, ProviderGateway, ProviderResult

DEFAULT_MESSAGE = "Thank you for your hard work! Enjoy your gift card!"
DEFAULT_SUBJECT = "You have received a gift card!"


@dataclass
class GiftCardOrder:
    email: str
    amount: float
    campaign_id: Optional[str]
    name: Optional[str] = None
    message: Optional[str] = None
    subject: Optional[str] = None
    notes: Optional[str] = None
    reference: Optional[str] = None  # local payment id


@dataclass
class GiftCardOrderResult:
    """Parsed order response (from create or status lookup)."""

    order_id: Optional[str]
    external_id: Optional[str] = None
    recipient_status: Optional[str] = None
    order_status: Optional[str] = None
    raw: Any = None


@dataclass
class BulkSubmission:
    """
    Outcome of a windowed bulk submission.

    ``results`` lines up index-for-index with the orders passed in.
    """

    total_processed: int = 0
    successful: int = 0
    failed: int = 0
    total_amount: float = 0.0
    results: list[tuple[GiftCardOrder, ProviderResult]] = field(default_factory=list)
    errors: list[dict[str, Any]] = field(default_factory=list)


def new_external_id() -> str:
    suffix = "".join(random.choices(string.ascii_lowercase + string.digits, k=9))
    return f"GC-{int(time.time() * 1000)}-{suffix}"


def denomination_for(amount: float) -> str:
    """Gift cards come in multiples of 5; halves round up (12.50 -> 15)."""
    return str(math.floor(amount / 5 + 0.5) * 5)


def build_order_payload(order: GiftCardOrder, external_id: str) -> dict[str, Any]:
    return {
        "external_id": external_id,
        "campaign_id": order.campaign_id,
        "message": order.message or DEFAULT_MESSAGE,
        "subject": order.subject or DEFAULT_SUBJECT,
        "notes": order.notes or "",
        "recipients": [
            {"email": order.email, "name": order.name or order.email.split("@")[0]},
        ],
        "denomination": denomination_for(order.amount),
    }


def parse_order(body: Any, external_id: Optional[str] = None) -> GiftCardOrderResult:
    """Giftogram wraps most payloads in ``data``; older responses do not."""
    body = body if isinstance(body, dict) else {}
    inner = body.get("data") if isinstance(body.get("data"), dict) else {}

    recipients = inner.get("recipients") or body.get("recipients") or []
    recipient_status = None
    if recipients and isinstance(recipients[0], dict):
        recipient_status = recipients[0].get("status")

    return GiftCardOrderResult(
        order_id=inner.get("order_id") or body.get("order_id") or body.get("id"),
        external_id=external_id or inner.get("external_id") or body.get("external_id"),
        recipient_status=recipient_status,
        order_status=inner.get("status") or body.get("status"),
        raw=body,
    )


class GiftCardGateway(ProviderGateway):
    name = "giftcard"
    base_urls = {
        "sandbox": "https://sandbox-api.giftogram.com",
        "production": "https://api.giftogram.com",
    }

    def __init__(self, environment: str, api_key: Optional[str] = None, **options: Any):
        api_key = api_key or settings.credential("giftogram", environment, "api_key")
        self._require(environment, api_key=api_key)
        self._api_key = api_key
        super().__init__(environment, **options)

    async def _fetch_token(self) -> ProviderResult:
        # Static API key: nothing to exchange, never expires.
        return ProviderResult(success=True, data=AccessToken(self._api_key))

    def _auth_headers(self, token: AccessToken) -> dict[str, str]:
        return {"Authorization": token.value, "Content-Type": "application/json"}

    def _error_message(self, body: Any) -> Optional[str]:
        if isinstance(body, dict):
            for key in ("message", "error", "details"):
                if body.get(key):
                    return str(body[key])
        return super()._error_message(body)

    async def get_campaigns(self) -> ProviderResult:
        result = await self._request("GET", "/api/v1/campaigns", retry=True)
        if not result.success:
            return result
        body = result.data if isinstance(result.data, dict) else {}
        campaigns = body.get("data", result.data)
        if isinstance(campaigns, dict):
            campaigns = [campaigns]
        return ProviderResult(success=True, data=campaigns or [], status_code=result.status_code)

    async def get_funding(self) -> ProviderResult:
        return await self._request("GET", "/api/v1/funding", retry=True)

    async def submit_one(self, order: GiftCardOrder) -> ProviderResult:
        if not order.email or not order.amount or not order.campaign_id:
            return ProviderResult.failed(
                "Missing required fields: recipient email, amount and campaign id",
                error_code="VALIDATION_ERROR",
            )

        external_id = new_external_id()
        payload = build_order_payload(order, external_id)
        result = await self._request("POST", "/api/v1/orders", json=payload)
        if not result.success:
            return result

        parsed = parse_order(result.data, external_id=external_id)
        self.logger.info(
            "Gift card order %s created for %s (%s)",
            parsed.order_id,
            order.email,
            parsed.recipient_status or "no recipient status",
        )
        return ProviderResult(success=True, data=parsed, status_code=result.status_code)

    async def submit_bulk(
        self,
        orders: list[GiftCardOrder],
        batch_size: Optional[int] = None,
        delay_ms: Optional[int] = None,
        on_window: Optional[Callable[[], Awaitable[None]]] = None,
    ) -> ProviderResult:
        """
        Submit orders in fixed windows: ``batch_size`` concurrent calls, then
        ``delay_ms`` of sleep before the next window (none after the last).

        ``on_window`` is awaited after every window; the processor uses it
        to keep its lease alive on long runs.
        """
        batch_size = batch_size or settings.giftcard_window_size
        delay_ms = settings.giftcard_window_delay_ms if delay_ms is None else delay_ms
        summary = BulkSubmission()

        for start in range(0, len(orders), batch_size):
            window = orders[start:start + batch_size]
            self.logger.info(
                "Gift card window %d: submitting %d orders",
                start // batch_size + 1,
                len(window),
            )
            outcomes = await asyncio.gather(*(self.submit_one(order) for order in window))

            for order, outcome in zip(window, outcomes):
                summary.results.append((order, outcome))
                summary.total_processed += 1
                if outcome.success:
                    summary.successful += 1
                    summary.total_amount += order.amount
                else:
                    summary.failed += 1
                    summary.errors.append({"email": order.email, "error": outcome.error})

            if on_window is not None:
                await on_window()
            if start + batch_size < len(orders) and delay_ms > 0:
                await asyncio.sleep(delay_ms / 1000)

        return ProviderResult(success=True, data=summary)

    async def get_status(self, reference: str) -> ProviderResult:
        result = await self._request("GET", f"/api/v1/orders/{reference}", retry=True)
        if not result.success:
            return result
        return ProviderResult(success=True, data=parse_order(result.data), status_code=result.status_code)
