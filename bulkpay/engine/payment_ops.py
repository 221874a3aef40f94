"""
Single-payment operator actions: manual status change, bank transfer
approve and cancel, and the payment statistics roll-up.

Each action takes the batch lease, goes through the payment state
machine and recomputes the batch aggregate in the same commit.
"""

import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from bulkpay.audit.logger import append_note, log_event
from bulkpay.engine.aggregate import recompute_batch
from bulkpay.engine.errors import (
    BatchNotFoundError,
    InvalidTransitionError,
    NotSubmittedError,
    PaymentNotFoundError,
    ProviderRequestError,
    UnsupportedOperationError,
)
from bulkpay.engine.lease import acquire_lease, release_lease
from bulkpay.engine.status_mapper import describe_result, map_bank_transfer_status
from bulkpay.engine.transitions import apply_status, can_transition
from bulkpay.models.batch import Payment, PaymentBatch
from bulkpay.models.enums import PaymentMethod, PaymentStatus
from bulkpay.providers.registry import GatewayRegistry

logger = logging.getLogger("bulkpay.payments")

STATS_PERIODS = {"today", "week", "month"}


async def get_payment(session: AsyncSession, payment_id: str) -> Payment:
    payment = await session.get(Payment, payment_id)
    if payment is None:
        raise PaymentNotFoundError(f"Payment not found: {payment_id}", payment_id=payment_id)
    return payment


async def _locked(session: AsyncSession, payment_id: str) -> tuple[Payment, PaymentBatch]:
    payment = await get_payment(session, payment_id)
    batch = await session.get(PaymentBatch, payment.batch_id)
    if batch is None:
        raise BatchNotFoundError(f"Batch not found: {payment.batch_id}", batch_id=payment.batch_id)
    await acquire_lease(session, batch.batch_id)
    return payment, batch


async def _commit_change(
    session: AsyncSession,
    batch: PaymentBatch,
    payment: Payment,
    action: str,
    details: dict[str, Any],
) -> None:
    await recompute_batch(session, batch)
    release_lease(batch)
    await log_event(session, action, batch_id=batch.batch_id, payment_id=payment.id, details=details)
    await session.commit()


async def _release(session: AsyncSession, batch: PaymentBatch) -> None:
    release_lease(batch)
    await session.commit()


async def update_payment_status(
    session: AsyncSession,
    payment_id: str,
    status: str,
    error_message: Optional[str] = None,
    note: Optional[str] = None,
) -> Payment:
    """
    Manually move a payment through the state machine.

    Raises:
        PaymentNotFoundError: No such payment.
        InvalidTransitionError: The move is not allowed.
        BatchLockedError: The batch is being processed or synced.
    """
    payment, batch = await _locked(session, payment_id)
    previous = payment.status
    try:
        apply_status(payment, status, error_message=error_message)
    except InvalidTransitionError:
        await _release(session, batch)
        raise

    payment.history = append_note(payment.history, note or f"Status changed from {previous} to {status} by operator")
    await _commit_change(session, batch, payment, "payment_status_changed", {
        "from": previous,
        "to": status,
        "source": "operator",
        "error": error_message,
    })
    logger.info("Payment %s: %s → %s (operator)", payment_id, previous, status)
    return payment


def _require_contract(payment: Payment, operation: str) -> str:
    if payment.payment_method != PaymentMethod.BANKTRANSFER.value:
        raise UnsupportedOperationError(
            f"Only bank transfer payments can be {operation}d at the provider",
            payment_id=payment.id,
            payment_method=payment.payment_method,
        )
    if not payment.provider_item_id:
        raise NotSubmittedError(
            "This payment has no bank transfer contract yet",
            payment_id=payment.id,
        )
    return payment.provider_item_id


async def approve_payment(session: AsyncSession, payment_id: str, registry: GatewayRegistry) -> Payment:
    """Approve a payment's XE contract and apply the returned status."""
    payment = await get_payment(session, payment_id)
    contract_number = _require_contract(payment, "approve")
    if payment.status != PaymentStatus.PROCESSING.value:
        raise InvalidTransitionError(
            f"Only processing payments can be approved, not {payment.status}",
            payment_id=payment_id,
            current_status=payment.status,
        )

    payment, batch = await _locked(session, payment_id)
    gateway = registry.get(batch.payment_method, batch.environment)
    result = await gateway.approve(contract_number)
    if not result.success:
        await _release(session, batch)
        descriptor = describe_result(PaymentMethod.BANKTRANSFER.value, result)
        raise ProviderRequestError(descriptor.user_message(), descriptor=descriptor)

    contract = result.data
    status = map_bank_transfer_status(contract.settlement_status, contract.status)
    apply_status(payment, status, provider_status=contract.settlement_status or contract.status)
    payment.error_message = None
    payment.history = append_note(payment.history, f"Contract {contract_number} approved")
    await _commit_change(session, batch, payment, "payment_approved", {
        "contract_number": contract_number,
        "status": payment.status,
    })
    logger.info("Payment %s: contract %s approved", payment_id, contract_number)
    return payment


async def cancel_payment(
    session: AsyncSession,
    payment_id: str,
    registry: GatewayRegistry,
    reason: Optional[str] = None,
) -> Payment:
    """
    Cancel a payment.

    Pending payments never reached a provider and are cancelled locally.
    Bank transfers in flight have their XE contract cancelled first.
    """
    payment = await get_payment(session, payment_id)
    if not can_transition(payment.status, PaymentStatus.CANCELLED.value):
        raise InvalidTransitionError(
            f"Payment {payment_id} cannot be cancelled from {payment.status}",
            payment_id=payment_id,
            current_status=payment.status,
        )
    contract_number = None
    if payment.status == PaymentStatus.PROCESSING.value:
        contract_number = _require_contract(payment, "cancel")

    payment, batch = await _locked(session, payment_id)
    if contract_number:
        gateway = registry.get(batch.payment_method, batch.environment)
        result = await gateway.cancel(contract_number)
        if not result.success:
            await _release(session, batch)
            descriptor = describe_result(PaymentMethod.BANKTRANSFER.value, result)
            raise ProviderRequestError(descriptor.user_message(), descriptor=descriptor)

    previous = payment.status
    apply_status(payment, PaymentStatus.CANCELLED, provider_status="Cancelled" if contract_number else None)
    payment.history = append_note(payment.history, f"Cancelled: {reason}" if reason else "Cancelled by operator")
    await _commit_change(session, batch, payment, "payment_cancelled", {
        "from": previous,
        "contract_number": contract_number,
        "reason": reason,
    })
    logger.info("Payment %s cancelled (was %s)", payment_id, previous)
    return payment


def period_start(period: Optional[str], now: Optional[datetime] = None) -> Optional[datetime]:
    """Start of the stats window, or None for all time."""
    now = now or datetime.now(timezone.utc)
    today = now.replace(hour=0, minute=0, second=0, microsecond=0)
    if period == "today":
        return today
    if period == "week":
        return today - timedelta(days=today.weekday())
    if period == "month":
        return today.replace(day=1)
    return None


async def payment_stats(
    session: AsyncSession,
    period: Optional[str] = None,
    batch_id: Optional[str] = None,
) -> dict[str, Any]:
    """Counts and amounts by status, plus completed amounts per payment method."""
    filters = []
    since = period_start(period)
    if since is not None:
        filters.append(Payment.created_at >= since)
    if batch_id:
        filters.append(Payment.batch_id == batch_id)

    by_status = {s.value: {"count": 0, "amount": 0.0} for s in PaymentStatus}
    result = await session.execute(
        select(Payment.status, func.count(Payment.id), func.coalesce(func.sum(Payment.amount), 0.0))
        .where(*filters)
        .group_by(Payment.status)
    )
    for status, count, amount in result.all():
        by_status[status] = {"count": count, "amount": round(float(amount), 2)}

    by_method = {m.value: 0.0 for m in PaymentMethod}
    result = await session.execute(
        select(Payment.payment_method, func.coalesce(func.sum(Payment.amount), 0.0))
        .where(*filters, Payment.status == PaymentStatus.COMPLETED.value)
        .group_by(Payment.payment_method)
    )
    for method, amount in result.all():
        by_method[method] = round(float(amount), 2)

    batch_filters = []
    if since is not None:
        batch_filters.append(PaymentBatch.created_at >= since)
    if batch_id:
        batch_filters.append(PaymentBatch.batch_id == batch_id)
    total_batches = await session.scalar(select(func.count(PaymentBatch.batch_id)).where(*batch_filters))

    return {
        "period": period or "all",
        "by_status": by_status,
        "completed_by_method": by_method,
        "total_batches": total_batches or 0,
        "total_payments": sum(v["count"] for v in by_status.values()),
        "total_amount": round(sum(v["amount"] for v in by_status.values()), 2),
    }
