"""Core reconciliation logic."""
from .errors import (
    AlreadyPaid,
    BelowMinimum,
    BillNotFound,
    Forbidden,
    InvalidAmount,
    InvalidSignature,
    MalformedEvent,
    MalformedOrderId,
    NotifierFailure,
    OverLimit,
    PaymentError,
    PaymentRejected,
    StorageConflict,
    StorageUnavailable,
)
from .reconciliation import ReconciliationEngine, ReconciliationResult
from .values import (
    AppliedEventRecord,
    Bill,
    GatewayTransactionState,
    NotificationIntent,
    OrderKind,
    PaymentEvent,
    PaymentSource,
    Status,
    derive_status,
)

__all__ = [
    "AlreadyPaid",
    "AppliedEventRecord",
    "BelowMinimum",
    "Bill",
    "BillNotFound",
    "Forbidden",
    "GatewayTransactionState",
    "InvalidAmount",
    "InvalidSignature",
    "MalformedEvent",
    "MalformedOrderId",
    "NotificationIntent",
    "NotifierFailure",
    "OrderKind",
    "OverLimit",
    "PaymentError",
    "PaymentEvent",
    "PaymentRejected",
    "PaymentSource",
    "ReconciliationEngine",
    "ReconciliationResult",
    "Status",
    "StorageConflict",
    "StorageUnavailable",
    "derive_status",
]
