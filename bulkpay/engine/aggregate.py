"""
Batch counters and status, derived from the child payments.

The batch status is a pure function of its payments:

  - every payment completed → completed
  - every payment failed    → failed
  - any completed or failed → partial
  - otherwise               → unchanged (uploaded / processing)

Recomputation reads through the same session, so pending changes to the
payments are flushed first and the aggregate always sees them.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timezone

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from bulkpay.models.batch import Payment, PaymentBatch
from bulkpay.models.enums import BatchStatus, PaymentStatus

logger = logging.getLogger("bulkpay.aggregate")


@dataclass
class BatchCounts:
    total_payments: int = 0
    success_count: int = 0
    failure_count: int = 0
    pending_count: int = 0
    total_amount: float = 0.0


async def count_payments(session: AsyncSession, batch_id: str) -> BatchCounts:
    """Group the batch's payments by status. Only completed amounts are summed."""
    result = await session.execute(
        select(Payment.status, func.count(Payment.id), func.coalesce(func.sum(Payment.amount), 0.0))
        .where(Payment.batch_id == batch_id)
        .group_by(Payment.status)
    )
    counts = BatchCounts()
    for status, count, amount in result.all():
        counts.total_payments += count
        if status == PaymentStatus.COMPLETED.value:
            counts.success_count += count
            counts.total_amount += float(amount or 0.0)
        elif status == PaymentStatus.FAILED.value:
            counts.failure_count += count
        else:
            counts.pending_count += count
    counts.total_amount = round(counts.total_amount, 2)
    return counts


def derive_status(current: str, counts: BatchCounts) -> str:
    if counts.total_payments and counts.success_count == counts.total_payments:
        return BatchStatus.COMPLETED.value
    if counts.total_payments and counts.failure_count == counts.total_payments:
        return BatchStatus.FAILED.value
    if counts.success_count > 0 or counts.failure_count > 0:
        return BatchStatus.PARTIAL.value
    return current


async def recompute_batch(session: AsyncSession, batch: PaymentBatch) -> BatchCounts:
    """
    Refresh the batch counters and derived status.

    Idempotent: attributes are only assigned when they change, so a second
    call with no payment changes leaves the row untouched.
    """
    counts = await count_payments(session, batch.batch_id)
    new_status = derive_status(batch.status, counts)

    changes = {
        "total_payments": counts.total_payments,
        "success_count": counts.success_count,
        "failure_count": counts.failure_count,
        "pending_count": counts.pending_count,
        "total_amount": counts.total_amount,
        "status": new_status,
    }
    changed = {key: value for key, value in changes.items() if getattr(batch, key) != value}
    for key, value in changed.items():
        setattr(batch, key, value)

    if "status" in changed and new_status == BatchStatus.COMPLETED.value:
        batch.completed_at = datetime.now(timezone.utc)

    if changed:
        logger.info(
            "Batch %s recomputed: status=%s success=%d failure=%d pending=%d amount=%.2f",
            batch.batch_id,
            batch.status,
            counts.success_count,
            counts.failure_count,
            counts.pending_count,
            counts.total_amount,
        )
    return counts
