"""
Append-only audit trail.

Processing, sync and operator actions each leave one AuditLog row per
step, keyed by batch and, when the step concerns a single payment, by
payment. Rows are written in the same transaction as the change they
describe and are never updated.

The payment's own ``history`` column is the short, human-readable
counterpart: one timestamped line per operator-visible event.
"""

import json
import logging
from datetime import datetime, timezone
from typing import Any, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from bulkpay.models.batch import AuditLog

logger = logging.getLogger("bulkpay.audit")

_PREVIEW = 200


async def log_event(
    session: AsyncSession,
    action: str,
    batch_id: Optional[str] = None,
    payment_id: Optional[str] = None,
    details: Optional[dict[str, Any]] = None,
) -> AuditLog:
    """
    Stage an audit row; it lands with the caller's commit.

    ``details`` is stored as JSON. Datetimes and enums are stringified.
    """
    payload = json.dumps(details, default=str) if details else None
    entry = AuditLog(
        batch_id=batch_id,
        payment_id=payment_id,
        action=action,
        details=payload,
        timestamp=datetime.now(timezone.utc),
    )
    session.add(entry)
    logger.info(
        "%s batch=%s payment=%s %s",
        action,
        batch_id or "-",
        payment_id or "-",
        payload[:_PREVIEW] if payload else "",
    )
    return entry


async def payment_trail(session: AsyncSession, payment_id: str) -> list[AuditLog]:
    """Every audit row for one payment, oldest first."""
    result = await session.execute(
        select(AuditLog)
        .where(AuditLog.payment_id == payment_id)
        .order_by(AuditLog.timestamp, AuditLog.id)
    )
    return list(result.scalars().all())


def append_note(history: Optional[str], message: str, now: Optional[datetime] = None) -> str:
    """Return ``history`` with one more ``[YYYY-MM-DD HH:MM UTC] message`` line."""
    stamp = (now or datetime.now(timezone.utc)).strftime("%Y-%m-%d %H:%M UTC")
    line = f"[{stamp}] {message}"
    return f"{history}\n{line}" if history else line
