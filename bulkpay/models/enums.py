"""Enumerations for the bulk payout domain model."""

from enum import Enum


class PaymentStatus(str, Enum):
    """Canonical lifecycle states for an individual payment."""

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class BatchStatus(str, Enum):
    """Lifecycle states for a payment batch."""

    DRAFT = "draft"
    UPLOADED = "uploaded"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    PARTIAL = "partial"


class PaymentMethod(str, Enum):
    """Supported payout rails."""

    PAYPAL = "paypal"
    GIFTCARD = "giftcard"
    BANKTRANSFER = "banktransfer"


class Environment(str, Enum):
    """Provider environments. Each one has its own credentials and base URL."""

    SANDBOX = "sandbox"
    PRODUCTION = "production"


# Batches can still be edited, re-routed or deleted in these states
EDITABLE_BATCH_STATUSES = {BatchStatus.DRAFT.value, BatchStatus.UPLOADED.value}
