"""Shared test fixtures."""

import inspect
import itertools
import json

import httpx
import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from bulkpay.database import build_engine
from bulkpay.models.batch import Base, Payment, PaymentBatch
from bulkpay.providers.banktransfer import BankTransferGateway
from bulkpay.providers.giftcard import GiftCardGateway
from bulkpay.providers.paypal import PayPalGateway
from bulkpay.providers.registry import GatewayRegistry

_ids = itertools.count(1)


@pytest_asyncio.fixture
async def session_factory(tmp_path):
    """A fresh SQLite database file per test. Sessions from the factory share it."""
    engine = build_engine(f"sqlite+aiosqlite:///{tmp_path / 'bulkpay.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

    await engine.dispose()


@pytest_asyncio.fixture
async def db_session(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture
def make_batch(db_session: AsyncSession):
    """Insert a batch with one payment per amount, in order."""

    async def _make(
        payment_method: str = "paypal",
        amounts=(10.0, 20.0, 30.0),
        status: str = "uploaded",
        payment_status: str = "pending",
        provider_config=None,
        provider_details=None,
        **batch_fields,
    ) -> PaymentBatch:
        batch = PaymentBatch(
            name=f"Test {payment_method} batch",
            payment_method=payment_method,
            environment="sandbox",
            status=status,
            provider_config=json.dumps(provider_config) if provider_config else None,
            total_payments=len(amounts),
            pending_count=len(amounts),
            **batch_fields,
        )
        db_session.add(batch)
        await db_session.flush()

        for position, amount in enumerate(amounts, start=1):
            n = next(_ids)
            db_session.add(Payment(
                id=f"pay{n:05d}",
                batch_id=batch.batch_id,
                recipient_name=f"Recipient {position}",
                recipient_email=f"recipient{position}@example.com",
                amount=amount,
                currency="USD",
                payment_method=payment_method,
                provider_details=json.dumps(provider_details) if provider_details else None,
                status=payment_status,
            ))
        await db_session.commit()
        return batch

    return _make


def _with_auth(handler):
    """Answer the token endpoints, delegate everything else to ``handler``."""

    async def wrapped(request: httpx.Request) -> httpx.Response:
        if request.url.path == "/v1/oauth2/token":
            return httpx.Response(200, json={"access_token": "paypal-token", "expires_in": 32400})
        if request.url.path == "/v2/auth/token":
            return httpx.Response(200, json={"accessToken": "xe-token", "expiresAt": "2099-01-01T00:00:00Z"})
        response = handler(request)
        if inspect.isawaitable(response):
            response = await response
        return response

    return wrapped


@pytest_asyncio.fixture
async def make_gateway():
    """Build a real gateway whose HTTP traffic goes to ``handler``."""
    built = []

    def _make(method: str, handler, environment: str = "sandbox", auth: bool = True, **options):
        transport = httpx.MockTransport(_with_auth(handler) if auth else handler)
        options = {"transport": transport, "status_retry_base_delay": 0, **options}
        if method == "paypal":
            gateway = PayPalGateway(environment, client_id="client-id", client_secret="client-secret", **options)
        elif method == "giftcard":
            gateway = GiftCardGateway(environment, api_key="gift-key", **options)
        else:
            gateway = BankTransferGateway(
                environment,
                access_key="xe-key",
                access_secret="xe-secret",
                account_number="XEACC-1",
                bank_account_id="42",
                **options,
            )
        built.append(gateway)
        return gateway

    yield _make

    for gateway in built:
        await gateway.aclose()


@pytest_asyncio.fixture
async def registry():
    registry = GatewayRegistry()
    yield registry
    await registry.aclose()


@pytest.fixture
def install(registry, make_gateway):
    """Register a fake-backed gateway for a payment method (sandbox)."""

    def _install(method: str, handler, environment: str = "sandbox", **options):
        gateway = make_gateway(method, handler, environment, **options)
        registry.register(method, environment, gateway)
        return gateway

    return _install


@pytest.fixture
def paypal_payouts():
    """
    PayPal payouts handler. Item statuses are chosen by amount value
    ("20.00" → "FAILED"); unlisted amounts succeed.
    """

    def _factory(statuses=None, with_items: bool = True, status_code: int = 201, error_body=None):
        statuses = statuses or {}
        requests = []

        def handler(request: httpx.Request) -> httpx.Response:
            if request.method == "POST" and request.url.path == "/v1/payments/payouts":
                body = json.loads(request.content)
                requests.append(body)
                if error_body is not None:
                    return httpx.Response(status_code, json=error_body)
                items = []
                for position, item in enumerate(body["items"], start=1):
                    status = statuses.get(item["amount"]["value"], "SUCCESS")
                    entry = {
                        "payout_item_id": f"ITEM-{position}",
                        "transaction_id": f"TX-{position}",
                        "transaction_status": status,
                        "payout_item": item,
                    }
                    if status == "FAILED":
                        entry["errors"] = {"name": "RECEIVER_UNREGISTERED", "message": "Receiver is unregistered"}
                    items.append(entry)
                return httpx.Response(status_code, json={
                    "batch_header": {"payout_batch_id": "PAYOUT-1", "batch_status": "PENDING"},
                    "items": items if with_items else [],
                })
            return httpx.Response(404, json={"name": "RESOURCE_NOT_FOUND", "message": "Not found"})

        handler.requests = requests
        return handler

    return _factory


@pytest.fixture
def giftcard_orders():
    """Gift card order handler. ``recipient_status`` applies to every order; failing emails get a 422."""

    def _factory(recipient_status: str = "sent", order_status: str = "processing", failing_emails=()):
        requests = []

        async def handler(request: httpx.Request) -> httpx.Response:
            if request.method == "POST" and request.url.path == "/api/v1/orders":
                body = json.loads(request.content)
                requests.append(body)
                email = body["recipients"][0]["email"]
                if email in failing_emails:
                    return httpx.Response(422, json={"message": f"Invalid recipient {email}"})
                return httpx.Response(201, json={"data": {
                    "order_id": f"ORD-{len(requests)}",
                    "external_id": body["external_id"],
                    "status": order_status,
                    "recipients": [{"email": email, "status": recipient_status}],
                }})
            return httpx.Response(404, json={"message": "Not found"})

        handler.requests = requests
        return handler

    return _factory
