"""
PayPal Payouts gateway.

One payout batch per local batch: every pending payment becomes one item
of a single POST /v1/payments/payouts call. PayPal answers with a
payout_batch_id and, when it has them, an ``items`` array in request
order. Items are matched back to local payments by position.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

from bulkpay.config import settings
from bulkpay.engine.status_mapper import code_for_status, extract_error_code
from bulkpay.providers.base import AccessToken, ProviderGateway, ProviderResult

DEFAULT_EMAIL_SUBJECT = "You have a payout!"
DEFAULT_EMAIL_MESSAGE = "You have received a payout! Thanks for using our service!"
DEFAULT_NOTE = "Thank you for your service"


@dataclass
class PayoutItem:
    """One line of a payout batch."""

    reference: str  # local payment id, sent as sender_item_id
    email: str
    amount: float
    currency: str = "USD"
    note: Optional[str] = None


def build_payout_request(
    sender_batch_id: str,
    items: list[PayoutItem],
    email_subject: Optional[str] = None,
    email_message: Optional[str] = None,
) -> dict[str, Any]:
    return {
        "sender_batch_header": {
            "sender_batch_id": sender_batch_id,
            "email_subject": email_subject or DEFAULT_EMAIL_SUBJECT,
            "email_message": email_message or DEFAULT_EMAIL_MESSAGE,
        },
        "items": [
            {
                "recipient_type": "EMAIL",
                "amount": {"value": f"{item.amount:.2f}", "currency": item.currency or "USD"},
                "receiver": item.email,
                "note": item.note or DEFAULT_NOTE,
                "sender_item_id": item.reference,
                "recipient_wallet": "PAYPAL",
            }
            for item in items
        ],
    }


class PayPalGateway(ProviderGateway):
    name = "paypal"
    base_urls = {
        "sandbox": "https://api-m.sandbox.paypal.com",
        "production": "https://api-m.paypal.com",
    }

    def __init__(
        self,
        environment: str,
        client_id: Optional[str] = None,
        client_secret: Optional[str] = None,
        **options: Any,
    ):
        client_id = client_id or settings.credential("paypal", environment, "client_id")
        client_secret = client_secret or settings.credential("paypal", environment, "client_secret")
        self._require(environment, client_id=client_id, client_secret=client_secret)
        self._client_id = client_id
        self._client_secret = client_secret
        super().__init__(environment, **options)

    async def _fetch_token(self) -> ProviderResult:
        result = await self._request(
            "POST",
            "/v1/oauth2/token",
            authenticated=False,
            auth=(self._client_id, self._client_secret),
            data={"grant_type": "client_credentials"},
            headers={"Accept": "application/json"},
        )
        if not result.success:
            return result

        body = result.data if isinstance(result.data, dict) else {}
        access_token = body.get("access_token")
        if not access_token:
            return ProviderResult.failed(
                "PayPal token response did not include an access_token",
                details=result.data,
                error_code="AUTHENTICATION_FAILURE",
            )
        expires_in = int(body.get("expires_in") or 3600)
        token = AccessToken(access_token, datetime.now(timezone.utc) + timedelta(seconds=expires_in))
        return ProviderResult(success=True, data=token, status_code=result.status_code)

    def _auth_headers(self, token: AccessToken) -> dict[str, str]:
        return {"Authorization": f"Bearer {token.value}", "Content-Type": "application/json"}

    def _error_message(self, body: Any) -> Optional[str]:
        if isinstance(body, dict):
            for key in ("message", "name", "error_description"):
                if body.get(key):
                    return str(body[key])
        return super()._error_message(body)

    def _error_code(self, body: Any, status_code: int) -> Optional[str]:
        if status_code == 401:
            return "AUTHENTICATION_FAILURE"
        code = extract_error_code(body) if isinstance(body, dict) else "UNKNOWN_ERROR"
        if code == "UNKNOWN_ERROR":
            return code_for_status(status_code)
        return code

    async def submit_batch(
        self,
        batch_id: str,
        items: list[PayoutItem],
        email_subject: Optional[str] = None,
        email_message: Optional[str] = None,
    ) -> ProviderResult:
        """Create one payout batch. Never retried: a duplicate would pay twice."""
        payload = build_payout_request(batch_id, items, email_subject, email_message)
        self.logger.info(
            "Submitting PayPal payout batch %s (%d items, %s)",
            batch_id,
            len(items),
            self.environment,
        )
        return await self._request("POST", "/v1/payments/payouts", json=payload)

    async def get_status(self, reference: str) -> ProviderResult:
        """Payout batch details, including items once PayPal has them."""
        return await self._request("GET", f"/v1/payments/payouts/{reference}", retry=True)

    async def get_item(self, payout_item_id: str) -> ProviderResult:
        return await self._request("GET", f"/v1/payments/payouts-item/{payout_item_id}", retry=True)

    async def get_balance(self, currency: Optional[str] = None) -> ProviderResult:
        """
        Account balances from the reporting API.

        ``data`` is ``{"balances": [...], "as_of_time": ...}``; an account
        that reports nothing gets an empty list.
        """
        params = {"currency_code": currency.upper()} if currency else None
        result = await self._request("GET", "/v1/reporting/balances", params=params, retry=True)
        if not result.success:
            return result
        body = result.data if isinstance(result.data, dict) else {}
        return ProviderResult(
            success=True,
            data={
                "balances": body.get("balances") or [],
                "account_id": body.get("account_id"),
                "as_of_time": body.get("as_of_time"),
            },
            status_code=result.status_code,
        )
