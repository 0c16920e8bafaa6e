"""
Exception taxonomy for bill payment reconciliation.

Every error carries a machine-readable code, whether the caller may retry,
and structured details safe to return to the caller.
"""
from typing import Any, Dict, Optional


class PaymentError(Exception):
    """Base exception for payment reconciliation errors."""

    error_code = "payment_error"
    retryable = False

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dict for API responses."""
        return {
            "code": self.error_code,
            "message": self.message,
            "details": self.details,
        }


class BillNotFound(PaymentError):
    """Bill (or the bill behind an order id) does not exist."""

    error_code = "not_found"

    def __init__(self, bill_id: int):
        super().__init__(f"Bill {bill_id} not found", {"bill_id": bill_id})
        self.bill_id = bill_id


class Forbidden(PaymentError):
    """Caller does not own the bill."""

    error_code = "forbidden"

    def __init__(self, bill_id: int, owner_id: int):
        super().__init__(
            f"Bill {bill_id} does not belong to account {owner_id}",
            {"bill_id": bill_id},
        )


# ============================================================================
# PERMANENT REJECTIONS
# ============================================================================


class PaymentRejected(PaymentError):
    """Event can never be applied; retrying will not help."""

    error_code = "rejected"


class InvalidAmount(PaymentRejected):
    """Payment amount is zero or negative."""

    error_code = "non_positive_amount"

    def __init__(self, amount: int):
        super().__init__("Amount must be positive", {"amount": amount})


class OverLimit(PaymentRejected):
    """Amount exceeds the bill's remaining balance in a direct flow."""

    error_code = "over_limit"

    def __init__(self, amount: int, remaining: int):
        super().__init__(
            "Amount exceeds the remaining balance",
            {"amount": amount, "remaining": remaining, "max_amount": remaining},
        )
        self.amount = amount
        self.remaining = remaining


class AlreadyPaid(PaymentRejected):
    """Bill has no remaining balance to pay."""

    error_code = "already_paid"

    def __init__(self, bill_id: int):
        super().__init__(f"Bill {bill_id} is already paid", {"bill_id": bill_id})


class BelowMinimum(PaymentRejected):
    """Installment amount is below the accepted minimum."""

    error_code = "below_minimum"

    def __init__(self, amount: int, minimum: int):
        super().__init__(
            f"Amount must be at least {minimum}",
            {"amount": amount, "min_amount": minimum},
        )
        self.minimum = minimum


class MalformedEvent(PaymentRejected):
    """Payload cannot be interpreted (unparsable amount, missing fields)."""

    error_code = "malformed_event"


class MalformedOrderId(MalformedEvent):
    """Order id does not follow the <KIND>-<bill_id>-<timestamp> format."""

    error_code = "malformed_order_id"

    def __init__(self, order_id: Optional[str], reason: str):
        super().__init__(
            f"Invalid order id {order_id!r}: {reason}",
            {"order_id": order_id},
        )
        self.order_id = order_id


class InvalidSignature(MalformedEvent):
    """Gateway notification signature does not match."""

    error_code = "invalid_signature"


# ============================================================================
# TRANSIENT FAILURES
# ============================================================================


class StorageConflict(PaymentError):
    """Bill changed between read and write, or a concurrent duplicate won."""

    error_code = "storage_conflict"
    retryable = True


class StorageUnavailable(PaymentError):
    """Ledger store failed or timed out."""

    error_code = "storage_unavailable"
    retryable = True


class NotifierFailure(PaymentError):
    """Push delivery failed. Always logged and swallowed."""

    error_code = "notifier_failure"
    retryable = False
