"""Tests for single-payment operator actions and statistics."""

from datetime import datetime, timezone

import httpx
import pytest
from sqlalchemy import select

from bulkpay.audit.logger import payment_trail
from bulkpay.engine.errors import (
    InvalidTransitionError,
    NotSubmittedError,
    PaymentNotFoundError,
    ProviderRequestError,
    UnsupportedOperationError,
)
from bulkpay.engine.payment_ops import (
    approve_payment,
    cancel_payment,
    payment_stats,
    period_start,
    update_payment_status,
)
from bulkpay.models.batch import Payment


async def _first_payment(session, batch_id):
    result = await session.execute(
        select(Payment).where(Payment.batch_id == batch_id).order_by(Payment.id)
    )
    return result.scalars().first()


def _xe_contracts(approve_status=200, cancel_status=200):
    calls = []

    def handler(request):
        calls.append((request.method, request.url.path))
        if request.method == "POST" and request.url.path.endswith("/approve"):
            if approve_status != 200:
                return httpx.Response(approve_status, json={"message": "Contract expired"})
            return httpx.Response(200, json={
                "identifier": {"contractNumber": "CN-1"},
                "status": "Approved",
                "settlementStatus": "Settled",
            })
        if request.method == "DELETE":
            if cancel_status != 200:
                return httpx.Response(cancel_status, json={"message": "Contract already settled"})
            return httpx.Response(200, json={})
        return httpx.Response(404, json={"message": "Not found"})

    handler.calls = calls
    return handler


async def _contract_payment(session, make_batch, status="processing"):
    batch = await make_batch(payment_method="banktransfer", amounts=(100.0,), status="processing", payment_status=status)
    payment = await _first_payment(session, batch.batch_id)
    payment.provider_item_id = "CN-1"
    await session.commit()
    return batch, payment


class TestStatusUpdate:
    @pytest.mark.asyncio
    async def test_manual_move_recomputes_batch(self, db_session, make_batch):
        batch = await make_batch(amounts=(10.0, 20.0), status="processing", payment_status="processing")
        payment = await _first_payment(db_session, batch.batch_id)

        await update_payment_status(db_session, payment.id, "completed", note="Confirmed by phone")

        assert payment.status == "completed"
        assert payment.completed_at is not None
        assert "Confirmed by phone" in payment.history
        assert batch.success_count == 1
        assert batch.status == "partial"
        assert batch.lease_token is None

        trail = await payment_trail(db_session, payment.id)
        assert [entry.action for entry in trail] == ["payment_status_changed"]
        assert '"source": "operator"' in trail[0].details

    @pytest.mark.asyncio
    async def test_invalid_move_releases_lease(self, db_session, make_batch):
        batch = await make_batch(amounts=(10.0,), status="completed", payment_status="completed")
        payment = await _first_payment(db_session, batch.batch_id)

        with pytest.raises(InvalidTransitionError):
            await update_payment_status(db_session, payment.id, "pending")

        assert payment.status == "completed"
        assert batch.lease_token is None

    @pytest.mark.asyncio
    async def test_unknown_payment(self, db_session):
        with pytest.raises(PaymentNotFoundError) as exc:
            await update_payment_status(db_session, "nope", "completed")
        assert exc.value.status_code == 404


class TestApprove:
    @pytest.mark.asyncio
    async def test_approve_settles_contract(self, db_session, make_batch, install, registry):
        handler = _xe_contracts()
        install("banktransfer", handler)
        batch, payment = await _contract_payment(db_session, make_batch)

        await approve_payment(db_session, payment.id, registry)

        assert ("POST", "/v2/contracts/CN-1/approve") in handler.calls
        assert payment.status == "completed"
        assert payment.provider_status == "Settled"
        assert batch.status == "completed"
        assert [e.action for e in await payment_trail(db_session, payment.id)] == ["payment_approved"]

    @pytest.mark.asyncio
    async def test_only_bank_transfers(self, db_session, make_batch, registry):
        batch = await make_batch(status="processing", payment_status="processing")
        payment = await _first_payment(db_session, batch.batch_id)

        with pytest.raises(UnsupportedOperationError):
            await approve_payment(db_session, payment.id, registry)

    @pytest.mark.asyncio
    async def test_needs_a_contract(self, db_session, make_batch, registry):
        batch = await make_batch(payment_method="banktransfer", status="processing", payment_status="processing")
        payment = await _first_payment(db_session, batch.batch_id)

        with pytest.raises(NotSubmittedError):
            await approve_payment(db_session, payment.id, registry)

    @pytest.mark.asyncio
    async def test_provider_failure_leaves_payment_alone(self, db_session, make_batch, install, registry):
        install("banktransfer", _xe_contracts(approve_status=422))
        batch, payment = await _contract_payment(db_session, make_batch)

        with pytest.raises(ProviderRequestError) as exc:
            await approve_payment(db_session, payment.id, registry)

        assert exc.value.status_code == 502
        assert payment.status == "processing"
        assert batch.lease_token is None


class TestCancel:
    @pytest.mark.asyncio
    async def test_pending_payment_cancelled_locally(self, db_session, make_batch, registry):
        batch = await make_batch(amounts=(10.0, 20.0))
        payment = await _first_payment(db_session, batch.batch_id)

        await cancel_payment(db_session, payment.id, registry, reason="Duplicate row")

        assert payment.status == "cancelled"
        assert "Duplicate row" in payment.history
        # cancelled is neither a success nor a failure
        assert batch.pending_count == 2
        assert batch.status == "uploaded"

    @pytest.mark.asyncio
    async def test_in_flight_transfer_cancels_contract(self, db_session, make_batch, install, registry):
        handler = _xe_contracts()
        install("banktransfer", handler)
        _batch, payment = await _contract_payment(db_session, make_batch)

        await cancel_payment(db_session, payment.id, registry)

        assert ("DELETE", "/v2/contracts/CN-1") in handler.calls
        assert payment.status == "cancelled"
        assert payment.provider_status == "Cancelled"

    @pytest.mark.asyncio
    async def test_provider_refusal_keeps_payment_processing(self, db_session, make_batch, install, registry):
        install("banktransfer", _xe_contracts(cancel_status=409))
        batch, payment = await _contract_payment(db_session, make_batch)

        with pytest.raises(ProviderRequestError):
            await cancel_payment(db_session, payment.id, registry)

        assert payment.status == "processing"
        assert batch.lease_token is None

    @pytest.mark.asyncio
    async def test_in_flight_paypal_cannot_be_cancelled(self, db_session, make_batch, registry):
        batch = await make_batch(status="processing", payment_status="processing")
        payment = await _first_payment(db_session, batch.batch_id)

        with pytest.raises(UnsupportedOperationError):
            await cancel_payment(db_session, payment.id, registry)

    @pytest.mark.asyncio
    async def test_terminal_payment_cannot_be_cancelled(self, db_session, make_batch, registry):
        batch = await make_batch(status="completed", payment_status="completed")
        payment = await _first_payment(db_session, batch.batch_id)

        with pytest.raises(InvalidTransitionError):
            await cancel_payment(db_session, payment.id, registry)


class TestStats:
    def test_period_start(self):
        now = datetime(2026, 10, 14, 15, 30, tzinfo=timezone.utc)  # a Wednesday
        assert period_start("today", now) == datetime(2026, 10, 14, tzinfo=timezone.utc)
        assert period_start("week", now) == datetime(2026, 10, 12, tzinfo=timezone.utc)
        assert period_start("month", now) == datetime(2026, 10, 1, tzinfo=timezone.utc)
        assert period_start(None, now) is None

    @pytest.mark.asyncio
    async def test_stats_by_status_and_method(self, db_session, make_batch):
        await make_batch(amounts=(10.0, 20.0), status="completed", payment_status="completed")
        await make_batch(payment_method="giftcard", amounts=(5.0,), status="completed", payment_status="completed")
        failed = await make_batch(amounts=(7.0,), status="failed", payment_status="failed")

        stats = await payment_stats(db_session)

        assert stats["period"] == "all"
        assert stats["by_status"]["completed"] == {"count": 3, "amount": 35.0}
        assert stats["by_status"]["failed"] == {"count": 1, "amount": 7.0}
        assert stats["by_status"]["pending"] == {"count": 0, "amount": 0.0}
        assert stats["completed_by_method"] == {"paypal": 30.0, "giftcard": 5.0, "banktransfer": 0.0}
        assert stats["total_batches"] == 3
        assert stats["total_payments"] == 4
        assert stats["total_amount"] == 42.0

        one = await payment_stats(db_session, period="today", batch_id=failed.batch_id)
        assert one["total_batches"] == 1
        assert one["total_payments"] == 1
