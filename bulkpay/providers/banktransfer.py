"""
XE bank transfer gateway.

XE has no batch submit: each payment is a registered recipient plus a
payment contract, optionally approved straight away. Contracts settle
asynchronously; the settlement status is the authoritative signal.
"""

import random
import string
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

from bulkpay.config import settings
from bulkpay.providers.base import AccessToken, ProviderGateway, ProviderResult


@dataclass
class ContractResult:
    contract_number: Optional[str]
    status: Optional[str] = None
    settlement_status: Optional[str] = None
    raw: Any = None


def client_reference(prefix: str = "XE", now: Optional[datetime] = None) -> str:
    """``<PREFIX>-<YYMMDDHHMMSS>-<6 chars>``, unique enough per account."""
    now = now or datetime.now(timezone.utc)
    suffix = "".join(random.choices(string.ascii_uppercase + string.digits, k=6))
    return f"{prefix}-{now.strftime('%y%m%d%H%M%S')}-{suffix}"


def purpose_code_for(currency: str) -> str:
    return "CORP_INR_UTILTY" if currency.upper() == "INR" else "CORP_INVOICE"


def build_recipient_payload(
    name: str,
    email: str,
    bank_details: dict[str, Any],
    currency: str,
    reference: Optional[str] = None,
) -> dict[str, Any]:
    """XE consumer recipient with a bank account payout method."""
    given, _, family = name.strip().partition(" ")
    account = {
        key: bank_details[key]
        for key in ("accountName", "accountNumber", "accountType", "bic", "ncc", "iban")
        if bank_details.get(key)
    }
    account["country"] = bank_details.get("country", "")
    return {
        "recipientId": {"clientReference": reference or client_reference("RCP")},
        "payoutMethod": {"type": "BankAccount", "bank": {"account": account}},
        "entity": {
            "type": "Consumer",
            "consumer": {
                "givenNames": given,
                "familyName": family or given,
                "emailAddress": email,
                "address": bank_details.get("address") or {"country": bank_details.get("country", "")},
            },
            "isDeactivated": False,
        },
        "currency": currency,
    }


def parse_contract(body: Any) -> ContractResult:
    body = body if isinstance(body, dict) else {}
    identifier = body.get("identifier") or {}
    return ContractResult(
        contract_number=identifier.get("contractNumber") or body.get("contractNumber"),
        status=body.get("status"),
        settlement_status=body.get("settlementStatus"),
        raw=body,
    )


class BankTransferGateway(ProviderGateway):
    name = "banktransfer"
    base_urls = {
        "sandbox": "https://pay-api-sandbox.xe.com",
        "production": "https://pay-api.xe.com",
    }

    def __init__(
        self,
        environment: str,
        access_key: Optional[str] = None,
        access_secret: Optional[str] = None,
        account_number: Optional[str] = None,
        bank_account_id: Optional[str] = None,
        **options: Any,
    ):
        access_key = access_key or settings.credential("xe", environment, "access_key")
        access_secret = access_secret or settings.credential("xe", environment, "access_secret")
        account_number = account_number or settings.credential("xe", environment, "account_number")
        self._require(
            environment,
            access_key=access_key,
            access_secret=access_secret,
            account_number=account_number,
        )
        self._access_key = access_key
        self._access_secret = access_secret
        self.account_number = account_number
        self.bank_account_id = bank_account_id or settings.credential("xe", environment, "bank_account_id")
        super().__init__(environment, **options)

    async def _fetch_token(self) -> ProviderResult:
        result = await self._request(
            "POST",
            "/v2/auth/token",
            authenticated=False,
            json={"accessKey": self._access_key, "accessSecret": self._access_secret},
        )
        if not result.success:
            return result

        body = result.data if isinstance(result.data, dict) else {}
        access_token = body.get("accessToken")
        if not access_token:
            return ProviderResult.failed(
                "XE token response did not include an accessToken",
                details=result.data,
                error_code="UNAUTHORIZED",
            )
        expires_at = None
        if body.get("expiresAt"):
            try:
                expires_at = datetime.fromisoformat(body["expiresAt"])
            except ValueError:
                self.logger.warning("Unparseable XE token expiry: %s", body["expiresAt"])
        if expires_at is None:
            expires_at = datetime.now(timezone.utc) + timedelta(hours=1)
        elif expires_at.tzinfo is None:
            expires_at = expires_at.replace(tzinfo=timezone.utc)
        return ProviderResult(success=True, data=AccessToken(access_token, expires_at), status_code=result.status_code)

    def _auth_headers(self, token: AccessToken) -> dict[str, str]:
        return {"Authorization": f"Bearer {token.value}", "Content-Type": "application/json"}

    def _error_message(self, body: Any) -> Optional[str]:
        if isinstance(body, dict):
            for key in ("shortErrorMsg", "longErrorMsg", "message"):
                if body.get(key):
                    return str(body[key])
        return super()._error_message(body)

    # ── Reference data ───────────────────────────────────────────────

    async def get_accounts(self) -> ProviderResult:
        return await self._request("GET", "/v2/accounts", retry=True)

    async def list_countries(self) -> ProviderResult:
        """Countries and currencies XE can pay into. ``data`` is always a list."""
        result = await self._request("GET", "/v2/countries", retry=True)
        if not result.success:
            return result
        body = result.data
        if isinstance(body, dict):
            body = body.get("countries") or body.get("data") or []
        return ProviderResult(success=True, data=body or [], status_code=result.status_code)

    async def get_payment_fields(self, country_code: str, currency_code: str) -> ProviderResult:
        return await self._request(
            "GET",
            f"/v2/paymentFields/country/{country_code.upper()}/currency/{currency_code.upper()}",
            retry=True,
        )

    # ── Recipients ──────────────────────────────────────────────────

    async def create_recipient(self, payload: dict[str, Any]) -> ProviderResult:
        """Register a recipient. ``data`` is the XE recipient id on success."""
        result = await self._request(
            "POST",
            "/v2/recipients",
            params={"accountNumber": self.account_number},
            json=payload,
        )
        if not result.success:
            return result
        body = result.data if isinstance(result.data, dict) else {}
        recipient_id = (body.get("recipientId") or {}).get("xeRecipientId")
        if not recipient_id:
            return ProviderResult.failed(
                "XE recipient response did not include a recipient id",
                details=result.data,
                status_code=result.status_code,
            )
        return ProviderResult(success=True, data=recipient_id, status_code=result.status_code, details=body)

    # ── Contracts ───────────────────────────────────────────────────

    async def create_contract(
        self,
        recipient_id: str,
        amount: float,
        buy_currency: str,
        reference: Optional[str] = None,
        recipient_reference: Optional[str] = None,
        purpose_code: Optional[str] = None,
    ) -> ProviderResult:
        """Create an unapproved payment contract settled by direct debit."""
        if not self.bank_account_id:
            return ProviderResult.failed(
                f"XE bank account id is not configured for {self.environment}",
                error_code="VALIDATION_ERROR",
            )

        payload = {
            "payments": [
                {
                    "clientReference": reference or client_reference("PAY"),
                    "sellAmount": {"currency": "USD", "amount": round(amount, 2)},
                    "buyAmount": {"currency": buy_currency.upper()},
                    "purposeOfPaymentCode": purpose_code or purpose_code_for(buy_currency),
                    "recipient": {
                        "recipientId": {"xeRecipientId": recipient_id, "clientReference": recipient_reference},
                        "type": "Registered",
                    },
                }
            ],
            "autoApprove": False,
            "settlementDetails": {
                "settlementMethod": "DirectDebit",
                "bankAccountId": int(self.bank_account_id) if str(self.bank_account_id).isdigit() else self.bank_account_id,
            },
        }
        result = await self._request(
            "POST",
            "/v2/payments",
            params={"accountNumber": self.account_number},
            json=payload,
        )
        if not result.success:
            return result
        contract = parse_contract(result.data)
        if not contract.contract_number:
            return ProviderResult.failed(
                "XE contract response did not include a contract number",
                details=result.data,
                status_code=result.status_code,
            )
        return ProviderResult(success=True, data=contract, status_code=result.status_code)

    async def approve(self, contract_number: str) -> ProviderResult:
        result = await self._request("POST", f"/v2/contracts/{contract_number}/approve")
        if not result.success:
            return result
        return ProviderResult(success=True, data=parse_contract(result.data), status_code=result.status_code)

    async def cancel(self, contract_number: str) -> ProviderResult:
        return await self._request("DELETE", f"/v2/contracts/{contract_number}")

    async def get_status(self, reference: str) -> ProviderResult:
        result = await self._request(
            "GET",
            f"/v2/payments/{reference}",
            params={"accountNumber": self.account_number},
            retry=True,
        )
        if not result.success:
            return result
        return ProviderResult(success=True, data=parse_contract(result.data), status_code=result.status_code)
