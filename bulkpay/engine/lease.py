"""
Processing lease on a batch.

Only one processing or sync run may own a batch at a time. The lease is
taken with a single conditional UPDATE, so two concurrent callers cannot
both win; an expired lease (crashed worker) can be taken over. A long
run renews its lease as it goes, so only a run that stopped making
progress can lose it.
"""

import logging
import uuid
from datetime import datetime, timedelta, timezone
from typing import Optional

from sqlalchemy import or_, update
from sqlalchemy.ext.asyncio import AsyncSession

from bulkpay.config import settings
from bulkpay.engine.errors import BatchLockedError
from bulkpay.models.batch import PaymentBatch

logger = logging.getLogger("bulkpay.lease")


async def acquire_lease(
    session: AsyncSession,
    batch_id: str,
    ttl_seconds: Optional[int] = None,
) -> str:
    """
    Take the lease and commit it. Returns the lease token.

    Raises:
        BatchLockedError: Another run holds an unexpired lease.
    """
    now = datetime.now(timezone.utc)
    ttl = ttl_seconds if ttl_seconds is not None else settings.processing_lease_seconds
    token = str(uuid.uuid4())

    result = await session.execute(
        update(PaymentBatch)
        .where(
            PaymentBatch.batch_id == batch_id,
            or_(PaymentBatch.lease_token.is_(None), PaymentBatch.lease_expires_at < now),
        )
        .values(lease_token=token, lease_expires_at=now + timedelta(seconds=ttl))
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        # end the empty write transaction; a rollback would expire loaded rows
        await session.commit()
        raise BatchLockedError(
            f"Batch {batch_id} is already being processed",
            batch_id=batch_id,
        )
    await session.commit()
    # refresh the identity-map copy so a later release is seen as a change
    await session.get(PaymentBatch, batch_id, populate_existing=True)
    logger.debug("Lease %s acquired on batch %s", token[:8], batch_id)
    return token


async def renew_lease(
    session: AsyncSession,
    batch_id: str,
    token: str,
    ttl_seconds: Optional[int] = None,
) -> bool:
    """
    Push the expiry of a lease we still hold one TTL into the future and
    commit. Returns False if the lease is no longer ours.
    """
    ttl = ttl_seconds if ttl_seconds is not None else settings.processing_lease_seconds
    result = await session.execute(
        update(PaymentBatch)
        .where(PaymentBatch.batch_id == batch_id, PaymentBatch.lease_token == token)
        .values(lease_expires_at=datetime.now(timezone.utc) + timedelta(seconds=ttl))
        .execution_options(synchronize_session=False)
    )
    await session.commit()
    if result.rowcount != 1:
        logger.warning("Lease %s on batch %s was lost before renewal", token[:8], batch_id)
        return False
    return True


def release_lease(batch: PaymentBatch) -> None:
    """Clear the lease; lands with the caller's next commit."""
    batch.lease_token = None
    batch.lease_expires_at = None
