"""
Batch lifecycle outside of processing: upload, edit, delete, listing.

Batches are only editable (rename aside) and deletable while they are
still draft or uploaded. Once processing has started the payments carry
provider state and must stay.
"""

import json
import logging
from typing import Any, Optional

from sqlalchemy import delete, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from bulkpay.audit.logger import log_event
from bulkpay.config import settings
from bulkpay.engine.aggregate import recompute_batch
from bulkpay.engine.errors import BatchNotFoundError, InvalidBatchStateError
from bulkpay.models.batch import Payment, PaymentBatch
from bulkpay.models.enums import EDITABLE_BATCH_STATUSES, BatchStatus, PaymentStatus

logger = logging.getLogger("bulkpay.batches")


async def get_batch(session: AsyncSession, batch_id: str) -> PaymentBatch:
    batch = await session.get(PaymentBatch, batch_id)
    if batch is None:
        raise BatchNotFoundError(f"Batch not found: {batch_id}", batch_id=batch_id)
    return batch


def _require_editable(batch: PaymentBatch, operation: str) -> None:
    if batch.status not in EDITABLE_BATCH_STATUSES:
        raise InvalidBatchStateError(
            f"Cannot {operation} a batch in {batch.status} status",
            batch_id=batch.batch_id,
            status=batch.status,
        )


async def create_batch(
    session: AsyncSession,
    name: str,
    payment_method: str,
    rows: list[dict[str, Any]],
    description: Optional[str] = None,
    environment: Optional[str] = None,
    provider_config: Optional[dict[str, Any]] = None,
    source_file_name: Optional[str] = None,
) -> PaymentBatch:
    """
    Create a batch and one pending payment per row.

    Rows are expected to have passed ``validate_rows`` already.
    """
    currencies = {str(r.get("currency") or "USD").upper() for r in rows}
    batch = PaymentBatch(
        name=name,
        description=description,
        payment_method=payment_method,
        environment=environment or settings.default_environment,
        provider_config=json.dumps(provider_config) if provider_config else None,
        status=BatchStatus.UPLOADED.value,
        currency=currencies.pop() if len(currencies) == 1 else "USD",
        source_file_name=source_file_name,
    )
    session.add(batch)
    await session.flush()

    for row in rows:
        details = {k: row[k] for k in ("bank_details", "buy_currency") if row.get(k)}
        session.add(Payment(
            batch_id=batch.batch_id,
            recipient_name=str(row["name"]).strip(),
            recipient_email=str(row["email"]).strip().lower(),
            amount=round(float(row["amount"]), 2),
            currency=str(row.get("currency") or "USD").strip().upper(),
            notes=row.get("notes"),
            payment_method=payment_method,
            provider_details=json.dumps(details) if details else None,
            status=PaymentStatus.PENDING.value,
        ))
    await session.flush()

    await recompute_batch(session, batch)
    await log_event(session, "batch_uploaded", batch_id=batch.batch_id, details={
        "name": name,
        "payment_method": payment_method,
        "environment": batch.environment,
        "payments": len(rows),
        "source_file_name": source_file_name,
    })
    await session.commit()

    logger.info("Batch %s uploaded: %d %s payments", batch.batch_id, len(rows), payment_method)
    return batch


async def list_batches(
    session: AsyncSession,
    page: int = 1,
    limit: int = 20,
    status: Optional[str] = None,
) -> tuple[list[PaymentBatch], int]:
    """One page of batches, newest first, and the total count."""
    filters = [PaymentBatch.status == status] if status else []
    total = await session.scalar(select(func.count(PaymentBatch.batch_id)).where(*filters))
    result = await session.execute(
        select(PaymentBatch)
        .where(*filters)
        .order_by(PaymentBatch.created_at.desc())
        .offset((page - 1) * limit)
        .limit(limit)
    )
    return list(result.scalars().all()), total or 0


async def list_payments(
    session: AsyncSession,
    batch_id: str,
    page: int = 1,
    limit: Optional[int] = None,
    status: Optional[str] = None,
) -> tuple[list[Payment], int]:
    """Payments of a batch in upload order. ``limit`` of None returns them all."""
    filters = [Payment.batch_id == batch_id]
    if status:
        filters.append(Payment.status == status)
    total = await session.scalar(select(func.count(Payment.id)).where(*filters))

    query = select(Payment).where(*filters).order_by(Payment.created_at, Payment.id)
    if limit:
        query = query.offset((page - 1) * limit).limit(limit)
    result = await session.execute(query)
    return list(result.scalars().all()), total or 0


async def update_batch(
    session: AsyncSession,
    batch_id: str,
    name: Optional[str] = None,
    description: Optional[str] = None,
) -> PaymentBatch:
    batch = await get_batch(session, batch_id)
    if name is not None:
        batch.name = name
    if description is not None:
        batch.description = description
    await session.commit()
    return batch


async def set_payment_method(
    session: AsyncSession,
    batch_id: str,
    payment_method: str,
    environment: Optional[str] = None,
    provider_config: Optional[dict[str, Any]] = None,
) -> PaymentBatch:
    """Switch the batch (and its payments) to another provider before processing."""
    batch = await get_batch(session, batch_id)
    _require_editable(batch, "change the payment method of")

    previous = batch.payment_method
    batch.payment_method = payment_method
    if environment:
        batch.environment = environment
    if provider_config is not None:
        batch.provider_config = json.dumps(provider_config)

    await session.execute(
        update(Payment)
        .where(Payment.batch_id == batch_id)
        .values(payment_method=payment_method)
    )
    await log_event(session, "batch_payment_method_changed", batch_id=batch_id, details={
        "from": previous,
        "to": payment_method,
        "environment": batch.environment,
    })
    await session.commit()
    return batch


async def delete_batch(session: AsyncSession, batch_id: str) -> None:
    """Delete a batch and its payments. Only before processing."""
    batch = await get_batch(session, batch_id)
    _require_editable(batch, "delete")
    name = batch.name

    deleted = await session.execute(delete(Payment).where(Payment.batch_id == batch_id))
    await session.execute(delete(PaymentBatch).where(PaymentBatch.batch_id == batch_id))
    await log_event(session, "batch_deleted", batch_id=batch_id, details={
        "name": name,
        "payments_deleted": deleted.rowcount,
    })
    await session.commit()
    logger.info("Batch %s deleted with %d payments", batch_id, deleted.rowcount)
