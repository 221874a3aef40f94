from bulkpay.models.enums import BatchStatus, Environment, PaymentMethod, PaymentStatus
from bulkpay.models.batch import AuditLog, Base, Payment, PaymentBatch, PaymentField

__all__ = [
    "Base",
    "PaymentBatch",
    "Payment",
    "AuditLog",
    "PaymentField",
    "PaymentStatus",
    "BatchStatus",
    "PaymentMethod",
    "Environment",
]
