"""Tests for the provider gateways: auth caching, error normalization, bulk windows."""

import asyncio
import json
import re
import time
from datetime import datetime, timedelta, timezone

import httpx
import pytest

from bulkpay.engine.errors import ConfigurationError
from bulkpay.providers.banktransfer import (
    BankTransferGateway,
    build_recipient_payload,
    client_reference,
    purpose_code_for,
)
from bulkpay.providers.base import AccessToken
from bulkpay.providers.giftcard import GiftCardOrder, build_order_payload, denomination_for
from bulkpay.providers.paypal import PayoutItem, PayPalGateway, build_payout_request
from bulkpay.providers.registry import GatewayRegistry


class TestConstruction:
    def test_missing_credentials_fail_fast(self, monkeypatch):
        monkeypatch.setattr("bulkpay.config.settings.paypal_sandbox_client_id", None)
        monkeypatch.setattr("bulkpay.config.settings.paypal_sandbox_client_secret", None)
        with pytest.raises(ConfigurationError) as exc:
            PayPalGateway("sandbox")
        assert exc.value.status_code == 503
        assert "client_id" in str(exc.value)

    def test_invalid_environment(self):
        with pytest.raises(ConfigurationError):
            PayPalGateway("staging", client_id="id", client_secret="secret")

    @pytest.mark.asyncio
    async def test_environment_picks_base_url(self):
        sandbox = PayPalGateway("sandbox", client_id="id", client_secret="secret")
        production = PayPalGateway("production", client_id="id", client_secret="secret")
        try:
            assert sandbox.base_url == "https://api-m.sandbox.paypal.com"
            assert production.base_url == "https://api-m.paypal.com"
        finally:
            await sandbox.aclose()
            await production.aclose()

    @pytest.mark.asyncio
    async def test_registry_keeps_one_gateway_per_environment(self, make_gateway):
        registry = GatewayRegistry()
        sandbox = make_gateway("giftcard", lambda r: httpx.Response(200), "sandbox")
        production = make_gateway("giftcard", lambda r: httpx.Response(200), "production")
        registry.register("giftcard", "sandbox", sandbox)
        registry.register("giftcard", "production", production)

        assert registry.get("giftcard", "sandbox") is sandbox
        assert registry.get("giftcard", "production") is production
        with pytest.raises(ConfigurationError):
            registry.get("crypto", "sandbox")


class TestTokenCaching:
    @pytest.mark.asyncio
    async def test_token_reused_until_refresh_buffer(self, make_gateway):
        token_calls = []

        def handler(request):
            if request.url.path == "/v1/oauth2/token":
                token_calls.append(request)
                return httpx.Response(200, json={"access_token": f"tok-{len(token_calls)}", "expires_in": 3600})
            return httpx.Response(200, json={"batch_header": {}})

        gateway = make_gateway("paypal", handler, auth=False)
        await gateway.get_status("PB-1")
        await gateway.get_status("PB-1")
        assert len(token_calls) == 1

        # inside the 5 minute buffer: refreshed before the next call
        gateway._token.expires_at = datetime.now(timezone.utc) + timedelta(seconds=120)
        await gateway.get_status("PB-1")
        assert len(token_calls) == 2
        assert gateway._token.value == "tok-2"

    def test_static_token_never_expires(self):
        assert AccessToken("key").is_fresh(300)

    @pytest.mark.asyncio
    async def test_failed_auth_is_a_result(self, make_gateway):
        def handler(request):
            return httpx.Response(401, json={"error": "invalid_client", "error_description": "Bad credentials"})

        gateway = make_gateway("paypal", handler, auth=False)
        result = await gateway.authenticate()
        assert result.success is False
        assert result.error_code == "AUTHENTICATION_FAILURE"
        assert result.error == "Bad credentials"

    @pytest.mark.asyncio
    async def test_xe_token_expiry_parsed(self, make_gateway):
        def handler(request):
            return httpx.Response(200, json={"accessToken": "xe", "expiresAt": "2030-01-01T00:00:00Z"})

        gateway = make_gateway("banktransfer", handler, auth=False)
        result = await gateway.authenticate()
        assert result.success
        assert gateway._token.expires_at == datetime(2030, 1, 1, tzinfo=timezone.utc)


class TestNeverRaises:
    @pytest.mark.asyncio
    async def test_transport_error(self, make_gateway):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        gateway = make_gateway("paypal", handler)
        result = await gateway.submit_batch("batch_1", [PayoutItem("p1", "a@example.com", 10.0)])
        assert result.success is False
        assert result.error_code == "NETWORK_ERROR"

    @pytest.mark.asyncio
    async def test_timeout(self, make_gateway):
        def handler(request):
            raise httpx.ReadTimeout("slow", request=request)

        gateway = make_gateway("giftcard", handler)
        result = await gateway.get_funding()
        assert result.success is False
        assert result.error_code == "TIMEOUT"

    @pytest.mark.asyncio
    async def test_provider_error_body_kept(self, make_gateway):
        body = {"name": "INSUFFICIENT_FUNDS", "message": "Sender does not have sufficient funds"}

        def handler(request):
            return httpx.Response(422, json=body)

        gateway = make_gateway("paypal", handler)
        result = await gateway.submit_batch("batch_1", [PayoutItem("p1", "a@example.com", 10.0)])
        assert result.success is False
        assert result.status_code == 422
        assert result.error == "Sender does not have sufficient funds"
        assert result.error_code == "INSUFFICIENT_FUNDS"
        assert result.details == body

    @pytest.mark.asyncio
    async def test_xe_error_message_keys(self, make_gateway):
        def handler(request):
            return httpx.Response(400, json={"longErrorMsg": "long", "shortErrorMsg": "Recipient invalid"})

        gateway = make_gateway("banktransfer", handler)
        result = await gateway.create_recipient({})
        assert result.error == "Recipient invalid"

    @pytest.mark.asyncio
    async def test_status_reads_are_retried(self, make_gateway):
        attempts = []

        def handler(request):
            attempts.append(request)
            if len(attempts) < 3:
                return httpx.Response(503, json={"message": "busy"})
            return httpx.Response(200, json={"batch_header": {"batch_status": "SUCCESS"}})

        gateway = make_gateway("paypal", handler)
        result = await gateway.get_status("PB-1")
        assert result.success
        assert len(attempts) == 3

    @pytest.mark.asyncio
    async def test_submissions_are_not_retried(self, make_gateway):
        attempts = []

        def handler(request):
            attempts.append(request)
            return httpx.Response(503, json={"message": "busy"})

        gateway = make_gateway("paypal", handler)
        result = await gateway.submit_batch("batch_1", [PayoutItem("p1", "a@example.com", 10.0)])
        assert result.success is False
        assert len(attempts) == 1


class TestPayloads:
    def test_payout_request(self):
        payload = build_payout_request("batch_1", [PayoutItem("p1", "a@example.com", 12.5, "EUR")])
        assert payload["sender_batch_header"]["sender_batch_id"] == "batch_1"
        assert payload["sender_batch_header"]["email_subject"] == "You have a payout!"
        item = payload["items"][0]
        assert item["amount"] == {"value": "12.50", "currency": "EUR"}
        assert item["sender_item_id"] == "p1"
        assert item["note"] == "Thank you for your service"
        assert item["recipient_wallet"] == "PAYPAL"

    def test_giftcard_order_payload(self):
        order = GiftCardOrder(email="jane@example.com", amount=23.0, campaign_id="camp-1")
        payload = build_order_payload(order, "GC-1-abc")
        assert payload["denomination"] == "25"
        assert payload["recipients"] == [{"email": "jane@example.com", "name": "jane"}]
        assert payload["external_id"] == "GC-1-abc"

    def test_denomination_rounds_to_fives(self):
        assert denomination_for(12.0) == "10"
        assert denomination_for(13.0) == "15"
        assert denomination_for(100.0) == "100"
        assert denomination_for(12.5) == "15"
        assert denomination_for(22.5) == "25"
        assert denomination_for(7.49) == "5"

    def test_client_reference_format(self):
        ref = client_reference("PAY", now=datetime(2025, 3, 4, 5, 6, 7, tzinfo=timezone.utc))
        prefix, stamp, suffix = ref.split("-")
        assert prefix == "PAY"
        assert stamp == "250304050607"
        assert re.fullmatch(r"[A-Z0-9]{6}", suffix)

    def test_purpose_codes(self):
        assert purpose_code_for("INR") == "CORP_INR_UTILTY"
        assert purpose_code_for("EUR") == "CORP_INVOICE"

    def test_recipient_payload(self):
        payload = build_recipient_payload(
            "Pierre Dupont",
            "pierre@example.fr",
            {"accountNumber": "FR76", "country": "FR", "bic": "PSSTFRPP"},
            "EUR",
            reference="RCP-1",
        )
        assert payload["recipientId"] == {"clientReference": "RCP-1"}
        assert payload["payoutMethod"]["bank"]["account"] == {"accountNumber": "FR76", "bic": "PSSTFRPP", "country": "FR"}
        assert payload["entity"]["consumer"]["givenNames"] == "Pierre"
        assert payload["entity"]["consumer"]["familyName"] == "Dupont"


class TestGiftCardBulk:
    @pytest.mark.asyncio
    async def test_seven_orders_in_two_windows(self, make_gateway):
        """5 concurrent calls, a fixed pause, then the remaining 2."""
        started: list[float] = []
        finished: list[float] = []
        in_flight = 0
        peak = 0

        async def handler(request):
            nonlocal in_flight, peak
            started.append(time.monotonic())
            in_flight += 1
            peak = max(peak, in_flight)
            await asyncio.sleep(0.02)
            in_flight -= 1
            finished.append(time.monotonic())
            body = json.loads(request.content)
            return httpx.Response(201, json={"data": {
                "order_id": f"ORD-{len(started)}",
                "recipients": [{"email": body["recipients"][0]["email"], "status": "sent"}],
            }})

        gateway = make_gateway("giftcard", handler)
        orders = [GiftCardOrder(email=f"r{i}@example.com", amount=25, campaign_id="c") for i in range(7)]

        result = await gateway.submit_bulk(orders, batch_size=5, delay_ms=50)

        summary = result.data
        assert result.success
        assert summary.total_processed == 7
        assert summary.successful == 7
        assert summary.total_amount == 175
        assert peak == 5
        # every call of the first window started before any call of the second
        assert max(started[:5]) < min(started[5:])
        assert min(started[5:]) - max(finished[:5]) >= 0.045
        assert [order.email for order, _ in summary.results] == [o.email for o in orders]

    @pytest.mark.asyncio
    async def test_window_callback_runs_after_each_window(self, make_gateway, giftcard_orders):
        handler = giftcard_orders()
        gateway = make_gateway("giftcard", handler)
        orders = [GiftCardOrder(email=f"r{i}@example.com", amount=10, campaign_id="c") for i in range(7)]
        seen: list[int] = []

        async def on_window():
            seen.append(len(handler.requests))

        result = await gateway.submit_bulk(orders, batch_size=5, delay_ms=0, on_window=on_window)

        assert result.data.total_processed == 7
        assert seen == [5, 7]

    @pytest.mark.asyncio
    async def test_failures_are_counted_not_raised(self, make_gateway, giftcard_orders):
        handler = giftcard_orders(failing_emails={"r1@example.com"})
        gateway = make_gateway("giftcard", handler)
        orders = [GiftCardOrder(email=f"r{i}@example.com", amount=10, campaign_id="c") for i in range(3)]

        result = await gateway.submit_bulk(orders, delay_ms=0)

        summary = result.data
        assert summary.successful == 2
        assert summary.failed == 1
        assert summary.total_amount == 20
        assert summary.errors == [{"email": "r1@example.com", "error": "Invalid recipient r1@example.com"}]
        assert summary.results[1][1].success is False

    @pytest.mark.asyncio
    async def test_submit_one_requires_campaign(self, make_gateway, giftcard_orders):
        handler = giftcard_orders()
        gateway = make_gateway("giftcard", handler)

        result = await gateway.submit_one(GiftCardOrder(email="a@example.com", amount=10, campaign_id=None))

        assert result.success is False
        assert result.error_code == "VALIDATION_ERROR"
        assert handler.requests == []


class TestBankTransfer:
    @pytest.mark.asyncio
    async def test_contract_payload(self, make_gateway):
        seen = {}

        def handler(request):
            seen["params"] = dict(request.url.params)
            seen["body"] = json.loads(request.content)
            return httpx.Response(200, json={
                "identifier": {"contractNumber": "CN-1"},
                "status": "Quoted",
                "settlementStatus": "AwaitingFunds",
            })

        gateway = make_gateway("banktransfer", handler)
        result = await gateway.create_contract("XR-1", 100.0, "inr", reference="PAY-1", recipient_reference="RCP-1")

        assert result.success
        assert result.data.contract_number == "CN-1"
        assert seen["params"] == {"accountNumber": "XEACC-1"}
        body = seen["body"]
        assert body["autoApprove"] is False
        assert body["settlementDetails"] == {"settlementMethod": "DirectDebit", "bankAccountId": 42}
        payment = body["payments"][0]
        assert payment["sellAmount"] == {"currency": "USD", "amount": 100.0}
        assert payment["buyAmount"] == {"currency": "INR"}
        assert payment["purposeOfPaymentCode"] == "CORP_INR_UTILTY"
        assert payment["recipient"]["recipientId"] == {"xeRecipientId": "XR-1", "clientReference": "RCP-1"}

    @pytest.mark.asyncio
    async def test_contract_needs_bank_account(self, make_gateway):
        gateway = make_gateway("banktransfer", lambda r: httpx.Response(200))
        gateway.bank_account_id = None
        result = await gateway.create_contract("XR-1", 10.0, "EUR")
        assert result.success is False
        assert result.error_code == "VALIDATION_ERROR"

    def test_missing_account_number(self, monkeypatch):
        monkeypatch.setattr("bulkpay.config.settings.xe_account_number", None)
        monkeypatch.setattr("bulkpay.config.settings.xe_sandbox_account_number", None)
        with pytest.raises(ConfigurationError):
            BankTransferGateway("sandbox", access_key="k", access_secret="s")


class TestAccountReads:
    @pytest.mark.asyncio
    async def test_paypal_balance(self, make_gateway):
        seen = {}

        def handler(request):
            seen["path"] = request.url.path
            seen["params"] = dict(request.url.params)
            return httpx.Response(200, json={
                "balances": [{
                    "currency": "USD",
                    "primary": True,
                    "total_balance": {"currency_code": "USD", "value": "1500.00"},
                    "available_balance": {"currency_code": "USD", "value": "1200.00"},
                }],
                "account_id": "ACC-1",
                "as_of_time": "2026-10-01T00:00:00Z",
            })

        gateway = make_gateway("paypal", handler)
        result = await gateway.get_balance("usd")

        assert result.success
        assert seen == {"path": "/v1/reporting/balances", "params": {"currency_code": "USD"}}
        assert result.data["balances"][0]["available_balance"]["value"] == "1200.00"
        assert result.data["account_id"] == "ACC-1"

    @pytest.mark.asyncio
    async def test_paypal_balance_refused(self, make_gateway):
        def handler(request):
            return httpx.Response(403, json={"name": "PERMISSION_DENIED", "message": "No permission for the requested operation"})

        gateway = make_gateway("paypal", handler)
        result = await gateway.get_balance()

        assert result.success is False
        assert result.error_code == "PERMISSION_DENIED"

    @pytest.mark.asyncio
    async def test_xe_countries(self, make_gateway):
        countries = [{"countryCode": "GB", "currencies": ["GBP"]}, {"countryCode": "IN", "currencies": ["INR"]}]

        def handler(request):
            assert request.url.path == "/v2/countries"
            return httpx.Response(200, json=countries)

        gateway = make_gateway("banktransfer", handler)
        result = await gateway.list_countries()

        assert result.success
        assert result.data == countries

    @pytest.mark.asyncio
    async def test_xe_countries_empty_body(self, make_gateway):
        gateway = make_gateway("banktransfer", lambda request: httpx.Response(200, json={}))
        result = await gateway.list_countries()
        assert result.data == []
