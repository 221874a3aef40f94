"""
Bank transfer field requirements, cached per country/currency.

XE's payment-field metadata changes rarely, so it is stored locally and
only refetched once the cached copy is older than ``reference_cache_days``.
"""

import json
import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from bulkpay.config import settings
from bulkpay.engine.errors import ProviderRequestError
from bulkpay.engine.status_mapper import describe_result
from bulkpay.models.batch import PaymentField
from bulkpay.models.enums import PaymentMethod
from bulkpay.providers.banktransfer import BankTransferGateway

logger = logging.getLogger("bulkpay.reference")


def _is_stale(fetched_at: Optional[datetime], max_age_days: int, now: datetime) -> bool:
    if fetched_at is None:
        return True
    if fetched_at.tzinfo is None:
        # sqlite hands back naive datetimes
        fetched_at = fetched_at.replace(tzinfo=timezone.utc)
    return now - fetched_at > timedelta(days=max_age_days)


async def get_payment_fields(
    session: AsyncSession,
    gateway: BankTransferGateway,
    country_code: str,
    currency_code: str,
    max_age_days: Optional[int] = None,
) -> tuple[Any, bool]:
    """
    Return ``(fields, cached)`` for a country/currency pair.

    Raises:
        ProviderRequestError: The cache is empty or stale and XE could not be reached.
    """
    country_code = country_code.upper()
    currency_code = currency_code.upper()
    max_age_days = max_age_days if max_age_days is not None else settings.reference_cache_days
    now = datetime.now(timezone.utc)

    cached = await session.scalar(
        select(PaymentField).where(
            PaymentField.country_code == country_code,
            PaymentField.currency_code == currency_code,
        )
    )
    if cached is not None and not _is_stale(cached.fetched_at, max_age_days, now):
        return json.loads(cached.fields), True

    result = await gateway.get_payment_fields(country_code, currency_code)
    if not result.success:
        descriptor = describe_result(PaymentMethod.BANKTRANSFER.value, result)
        raise ProviderRequestError(descriptor.user_message(), descriptor=descriptor)

    if cached is None:
        cached = PaymentField(country_code=country_code, currency_code=currency_code)
        session.add(cached)
    cached.fields = json.dumps(result.data)
    cached.fetched_at = now
    await session.commit()

    logger.info("Payment fields for %s/%s refreshed from XE", country_code, currency_code)
    return result.data, False
