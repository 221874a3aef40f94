"""SQLAlchemy models for bulk payouts."""

import random
import string
import time
import uuid
from datetime import datetime, timezone

from sqlalchemy import (
    Column,
    DateTime,
    Float,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import DeclarativeBase, relationship


class Base(DeclarativeBase):
    pass


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _new_id() -> str:
    return uuid.uuid4().hex[:12]


def new_batch_id() -> str:
    """Public batch identifier, e.g. ``batch_1718900000000_k3j9x0a2b``."""
    suffix = "".join(random.choices(string.ascii_lowercase + string.digits, k=9))
    return f"batch_{int(time.time() * 1000)}_{suffix}"


class PaymentBatch(Base):
    """
    A named collection of payments submitted to one provider together.

    The status and counters are derived from the child payments (see
    engine/aggregate.py); only ``processing`` and the rollback ``failed``
    are ever set directly. ``lease_token`` / ``lease_expires_at`` guard
    against two runs mutating the same batch at once.
    """

    __tablename__ = "payment_batches"

    batch_id = Column(String(64), primary_key=True, default=new_batch_id)
    name = Column(String(200), nullable=False)
    description = Column(Text, nullable=True)
    payment_method = Column(String(20), nullable=False, default="paypal")
    environment = Column(String(20), nullable=False, default="sandbox")
    provider_config = Column(Text, nullable=True)  # JSON blob, provider specific
    status = Column(String(20), nullable=False, default="uploaded", index=True)

    total_payments = Column(Integer, default=0)
    total_amount = Column(Float, default=0.0)
    currency = Column(String(3), default="USD")
    success_count = Column(Integer, default=0)
    failure_count = Column(Integer, default=0)
    pending_count = Column(Integer, default=0)

    provider_batch_id = Column(String(100), nullable=True)  # e.g. PayPal payout_batch_id
    provider_batch_status = Column(String(50), nullable=True)
    error_message = Column(Text, nullable=True)
    source_file_name = Column(String(255), nullable=True)

    lease_token = Column(String(36), nullable=True)
    lease_expires_at = Column(DateTime(timezone=True), nullable=True)

    uploaded_at = Column(DateTime(timezone=True), default=_utcnow)
    processed_at = Column(DateTime(timezone=True), nullable=True)
    completed_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), default=_utcnow)
    updated_at = Column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    payments = relationship("Payment", back_populates="batch", lazy="raise")


class Payment(Base):
    """
    One money movement to one recipient.

    Provider correlation fields are only filled once the provider has
    accepted the submission:
      - PayPal: provider_item_id = payout_item_id, provider_transaction_id = transaction_id
      - Gift card: provider_item_id = order_id, provider_transaction_id = external_id
      - Bank transfer: provider_recipient_id = XE recipient id, provider_item_id = contract number
    """

    __tablename__ = "payments"

    id = Column(String(12), primary_key=True, default=_new_id)
    batch_id = Column(String(64), ForeignKey("payment_batches.batch_id"), nullable=False, index=True)
    recipient_name = Column(String(200), nullable=False)
    recipient_email = Column(String(255), nullable=False, index=True)
    amount = Column(Float, nullable=False)
    currency = Column(String(3), default="USD")
    notes = Column(Text, nullable=True)
    payment_method = Column(String(20), nullable=False, default="paypal")
    provider_details = Column(Text, nullable=True)  # JSON, e.g. bank details for transfers

    status = Column(String(20), nullable=False, default="pending", index=True)
    provider_batch_id = Column(String(100), nullable=True)
    provider_item_id = Column(String(100), nullable=True, index=True)
    provider_transaction_id = Column(String(100), nullable=True)
    provider_recipient_id = Column(String(100), nullable=True)
    provider_status = Column(String(50), nullable=True)
    error_message = Column(Text, nullable=True)
    error_code = Column(String(50), nullable=True)
    history = Column(Text, nullable=True)  # timestamped operator-visible notes

    initiated_at = Column(DateTime(timezone=True), default=_utcnow)
    processed_at = Column(DateTime(timezone=True), nullable=True)
    completed_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), default=_utcnow)
    updated_at = Column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    batch = relationship("PaymentBatch", back_populates="payments")


class AuditLog(Base):
    """
    Immutable audit trail entry.

    Every status change, provider call and rollback gets an entry.
    These are append-only and never modified.
    """

    __tablename__ = "audit_logs"

    id = Column(Integer, primary_key=True, autoincrement=True)
    batch_id = Column(String(64), nullable=True, index=True)
    payment_id = Column(String(12), nullable=True, index=True)
    action = Column(String(50), nullable=False)
    details = Column(Text, nullable=True)
    timestamp = Column(DateTime(timezone=True), default=_utcnow)


class PaymentField(Base):
    """Cached bank-transfer field requirements for one country/currency pair."""

    __tablename__ = "payment_fields"
    __table_args__ = (
        UniqueConstraint("country_code", "currency_code", name="uq_country_currency"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    country_code = Column(String(2), nullable=False)
    currency_code = Column(String(3), nullable=False)
    fields = Column(Text, nullable=False)  # JSON array as returned by the provider
    fetched_at = Column(DateTime(timezone=True), default=_utcnow)
