"""
Payment status state machine.

Statuses only move forward:

    pending ──▶ processing ──▶ completed
       │            │    └───▶ failed
       └────────────┴────────▶ cancelled

completed, failed and cancelled are terminal.
"""

from datetime import datetime, timezone
from typing import Any

from bulkpay.engine.errors import InvalidTransitionError
from bulkpay.models.batch import Payment
from bulkpay.models.enums import PaymentStatus

ALLOWED_TRANSITIONS: dict[str, set[str]] = {
    PaymentStatus.PENDING.value: {PaymentStatus.PROCESSING.value, PaymentStatus.CANCELLED.value},
    PaymentStatus.PROCESSING.value: {
        PaymentStatus.COMPLETED.value,
        PaymentStatus.FAILED.value,
        PaymentStatus.CANCELLED.value,
    },
    PaymentStatus.COMPLETED.value: set(),
    PaymentStatus.FAILED.value: set(),
    PaymentStatus.CANCELLED.value: set(),
}


def can_transition(current: str, new: str) -> bool:
    return new in ALLOWED_TRANSITIONS.get(current, set())


def apply_status(payment: Payment, status: PaymentStatus | str, **fields: Any) -> bool:
    """
    Move a payment to ``status`` and copy provider fields onto it.

    Entering processing stamps processed_at; entering completed or failed
    stamps completed_at. Provider fields are copied even when the status
    does not move. Returns whether the status changed.

    Raises:
        InvalidTransitionError: The move is not allowed from the current status.
    """
    new = status.value if isinstance(status, PaymentStatus) else status
    changed = payment.status != new
    if changed:
        if not can_transition(payment.status, new):
            raise InvalidTransitionError(
                f"Payment {payment.id} cannot move from {payment.status} to {new}",
                payment_id=payment.id,
                current_status=payment.status,
                requested_status=new,
            )
        now = datetime.now(timezone.utc)
        payment.status = new
        if new == PaymentStatus.PROCESSING.value:
            payment.processed_at = now
        elif new in (PaymentStatus.COMPLETED.value, PaymentStatus.FAILED.value):
            payment.completed_at = now

    for key, value in fields.items():
        if value is not None:
            setattr(payment, key, value)
    return changed
