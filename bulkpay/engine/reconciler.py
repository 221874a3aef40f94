"""
Sync reconciler: refresh local payment status from the provider.

Unlike submission, sync matches provider results to local payments by
the stored correlation id (payout item id, order id, contract number),
never by position. A payment is written only when its mapped status
or one of its provider fields (provider status, transaction id, error)
differs from what is stored, so running sync twice with no provider
changes writes nothing. Field-only refreshes are counted apart from
status changes and leave no per-payment audit row.

PayPal settles asynchronously: until the payout batch has item detail,
sync refreshes the batch-level status only and says so in its message.
"""

import logging
from dataclasses import dataclass
from typing import Any, Optional

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from bulkpay.audit.logger import log_event
from bulkpay.engine.aggregate import recompute_batch
from bulkpay.engine.errors import BatchNotFoundError, NotSubmittedError, SyncFailedError
from bulkpay.engine.lease import acquire_lease, release_lease
from bulkpay.engine.processor import paypal_item_result
from bulkpay.engine.status_mapper import (
    describe_result,
    map_bank_transfer_status,
    map_giftcard_status,
)
from bulkpay.engine.transitions import apply_status, can_transition
from bulkpay.models.batch import Payment, PaymentBatch
from bulkpay.models.enums import PaymentMethod, PaymentStatus
from bulkpay.providers.registry import GatewayRegistry

logger = logging.getLogger("bulkpay.sync")


@dataclass
class SyncOutcome:
    batch: PaymentBatch
    items_processed: int
    payments_updated: int
    details_refreshed: int
    fully_synced: bool
    message: str
    successful: int = 0
    failed: int = 0


@dataclass
class _SyncRun:
    batch: PaymentBatch
    items_processed: int = 0
    payments_updated: int = 0
    details_refreshed: int = 0
    fully_synced: bool = True
    message: str = ""
    batch_changed: bool = False


async def _reconcile(
    session: AsyncSession,
    run: _SyncRun,
    payment: Payment,
    status: PaymentStatus,
    **fields: Any,
) -> None:
    """Apply a provider status to one payment, writing only on change."""
    run.items_processed += 1
    if payment.status == status.value:
        changed = {k: v for k, v in fields.items() if v is not None and getattr(payment, k) != v}
        if changed:
            # same canonical status, newer provider detail
            for key, value in changed.items():
                setattr(payment, key, value)
            run.details_refreshed += 1
        return
    if not can_transition(payment.status, status.value):
        logger.warning(
            "Payment %s: provider reports %s but local status %s cannot move; skipped",
            payment.id,
            status.value,
            payment.status,
        )
        return

    previous = payment.status
    apply_status(payment, status, **fields)
    run.payments_updated += 1
    await log_event(session, "payment_status_changed", batch_id=run.batch.batch_id, payment_id=payment.id, details={
        "from": previous,
        "to": status.value,
        "source": "sync",
        **{k: v for k, v in fields.items() if v is not None},
    })


async def _sync_paypal(session: AsyncSession, run: _SyncRun, gateway) -> None:
    batch = run.batch
    result = await gateway.get_status(batch.provider_batch_id)
    if not result.success:
        descriptor = describe_result(PaymentMethod.PAYPAL.value, result)
        raise SyncFailedError(descriptor.user_message(), descriptor=descriptor)

    body = result.data if isinstance(result.data, dict) else {}
    header = body.get("batch_header") or {}
    batch_status = header.get("batch_status")
    if batch_status and batch_status != batch.provider_batch_status:
        batch.provider_batch_status = batch_status
        run.batch_changed = True

    items = body.get("items")
    if not isinstance(items, list) or not items:
        run.fully_synced = False
        run.message = (
            f"PayPal batch status is {batch_status or 'unknown'}; item details are not available yet. "
            "Payment statuses were left unchanged."
        )
        return

    by_item_id = await _payments_by(session, batch.batch_id, Payment.provider_item_id)
    unmatched = 0
    for item in items:
        if not isinstance(item, dict):
            continue
        payment = by_item_id.get(item.get("payout_item_id"))
        if payment is None:
            unmatched += 1
            continue
        outcome = paypal_item_result(item, batch.provider_batch_id)
        await _reconcile(
            session,
            run,
            payment,
            outcome.status,
            provider_transaction_id=outcome.fields.get("provider_transaction_id"),
            provider_status=outcome.fields.get("provider_status"),
            error_message=outcome.error_message,
            error_code=outcome.error_code,
        )
    if unmatched:
        logger.warning("Batch %s: %d PayPal items had no local payment", batch.batch_id, unmatched)
    run.message = f"Synced {run.items_processed} PayPal items"


async def _sync_giftcard(session: AsyncSession, run: _SyncRun, gateway) -> None:
    payments = await _submitted(session, run.batch.batch_id)
    if not payments:
        run.message = "No gift card orders to sync"
        return

    failures = 0
    for payment in payments:
        result = await gateway.get_status(payment.provider_item_id)
        if not result.success:
            failures += 1
            logger.warning("Payment %s: gift card status lookup failed: %s", payment.id, result.error)
            continue
        order = result.data
        status = map_giftcard_status(order.recipient_status, order.order_status)
        if status is None:
            # neither signal recognized; leave the payment alone
            run.items_processed += 1
            continue
        await _reconcile(
            session,
            run,
            payment,
            status,
            provider_status=order.recipient_status or order.order_status,
            error_message="Gift card delivery failed" if status == PaymentStatus.FAILED else None,
        )

    if failures:
        run.fully_synced = False
    run.message = f"Synced {run.items_processed} of {len(payments)} gift card orders"


async def _sync_bank_transfer(session: AsyncSession, run: _SyncRun, gateway) -> None:
    payments = await _submitted(session, run.batch.batch_id)
    if not payments:
        run.message = "No bank transfer contracts to sync"
        return

    failures = 0
    for payment in payments:
        result = await gateway.get_status(payment.provider_item_id)
        if not result.success:
            failures += 1
            logger.warning("Payment %s: XE status lookup failed: %s", payment.id, result.error)
            continue
        contract = result.data
        status = map_bank_transfer_status(contract.settlement_status, contract.status)
        await _reconcile(
            session,
            run,
            payment,
            status,
            provider_status=contract.settlement_status or contract.status,
        )

    if failures:
        run.fully_synced = False
    run.message = f"Synced {run.items_processed} of {len(payments)} bank transfer contracts"


async def _payments_by(session: AsyncSession, batch_id: str, column) -> dict[Optional[str], Payment]:
    result = await session.execute(select(Payment).where(Payment.batch_id == batch_id, column.is_not(None)))
    return {getattr(p, column.key): p for p in result.scalars().all()}


async def _submitted(session: AsyncSession, batch_id: str) -> list[Payment]:
    result = await session.execute(
        select(Payment)
        .where(Payment.batch_id == batch_id, Payment.provider_item_id.is_not(None))
        .order_by(Payment.created_at, Payment.id)
    )
    return list(result.scalars().all())


SYNCERS = {
    PaymentMethod.PAYPAL.value: _sync_paypal,
    PaymentMethod.GIFTCARD.value: _sync_giftcard,
    PaymentMethod.BANKTRANSFER.value: _sync_bank_transfer,
}


async def sync_batch(session: AsyncSession, batch_id: str, registry: GatewayRegistry) -> SyncOutcome:
    """
    Re-query the provider and reconcile local payment statuses.

    Raises:
        BatchNotFoundError: No such batch.
        NotSubmittedError: A PayPal batch that was never submitted.
        BatchLockedError: A processing or sync run owns the batch.
        SyncFailedError: The provider lookup failed; nothing was changed.
    """
    batch = await session.get(PaymentBatch, batch_id)
    if batch is None:
        raise BatchNotFoundError(f"Batch not found: {batch_id}", batch_id=batch_id)
    if batch.payment_method == PaymentMethod.PAYPAL.value and not batch.provider_batch_id:
        raise NotSubmittedError("This batch has not been submitted to PayPal yet", batch_id=batch_id)

    gateway = registry.get(batch.payment_method, batch.environment)
    await acquire_lease(session, batch_id)

    run = _SyncRun(batch=batch)
    try:
        await SYNCERS[batch.payment_method](session, run, gateway)

        before = (batch.status, batch.success_count, batch.failure_count, batch.pending_count, batch.total_amount)
        counts = await recompute_batch(session, batch)
        after = (batch.status, batch.success_count, batch.failure_count, batch.pending_count, batch.total_amount)

        release_lease(batch)
        if run.payments_updated or run.details_refreshed or run.batch_changed or before != after:
            await log_event(session, "batch_synced", batch_id=batch_id, details={
                "items_processed": run.items_processed,
                "payments_updated": run.payments_updated,
                "details_refreshed": run.details_refreshed,
                "batch_status": batch.status,
                "fully_synced": run.fully_synced,
            })
        await session.commit()
    except Exception:
        await session.rollback()
        await session.execute(
            update(PaymentBatch)
            .where(PaymentBatch.batch_id == batch_id)
            .values(lease_token=None, lease_expires_at=None)
            .execution_options(synchronize_session=False)
        )
        await session.commit()
        await session.refresh(batch)
        raise

    logger.info(
        "Batch %s synced: %d items, %d updated, status=%s%s",
        batch_id,
        run.items_processed,
        run.payments_updated,
        batch.status,
        "" if run.fully_synced else " (partial)",
    )
    return SyncOutcome(
        batch=batch,
        items_processed=run.items_processed,
        payments_updated=run.payments_updated,
        details_refreshed=run.details_refreshed,
        fully_synced=run.fully_synced,
        message=run.message,
        successful=counts.success_count,
        failed=counts.failure_count,
    )
