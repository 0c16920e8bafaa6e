"""
Value types for bill payment reconciliation.

Money is an int in the smallest currency unit (rupiah); no floats anywhere
on the money path. Status is a closed enumeration and derive_status() is the
only place it gets computed from amounts.
"""
from __future__ import annotations

from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator

from tuition_payments.core.errors import MalformedEvent


class Status(str, Enum):
    """Bill payment status."""

    UNPAID = "unpaid"
    PARTIAL = "partial"
    PAID = "paid"
    FAILED = "failed"

    @classmethod
    def normalize(cls, raw: str) -> Status:
        """Map legacy and external synonyms onto the closed enumeration."""
        value = (raw or "").strip().lower()
        synonym = _STATUS_SYNONYMS.get(value)
        if synonym is not None:
            return synonym
        try:
            return cls(value)
        except ValueError:
            raise MalformedEvent(f"Unknown bill status {raw!r}", {"status": raw})


_STATUS_SYNONYMS = {
    "lunas": Status.PAID,
    "verified": Status.PAID,
    "settled": Status.PAID,
    "cicilan": Status.PARTIAL,
    "pending": Status.UNPAID,
    "rejected": Status.FAILED,
}


class PaymentSource(str, Enum):
    """Where a payment event came from."""

    CLIENT_REPORTED = "client_reported"
    ADMIN_MANUAL = "admin_manual"
    GATEWAY_WEBHOOK = "gateway_webhook"


class GatewayTransactionState(str, Enum):
    """Normalized gateway transaction state."""

    CAPTURE_ACCEPTED = "capture_accepted"
    SETTLEMENT = "settlement"
    PENDING = "pending"
    DENIED = "denied"
    CANCELLED = "cancelled"
    EXPIRED = "expired"
    UNKNOWN = "unknown"

    @property
    def is_success(self) -> bool:
        """Money has been received for the transaction."""
        return self in (GatewayTransactionState.CAPTURE_ACCEPTED, GatewayTransactionState.SETTLEMENT)


class OrderKind(str, Enum):
    """Prefix of a gateway order id."""

    FULL = "SPP"
    INSTALLMENT = "CICILAN"
    MANUAL = "MANUAL"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def derive_status(total_due: int, amount_paid: int) -> Status:
    """
    Compute bill status from amounts.

    paid    <=> amount_paid >= total_due
    partial <=> 0 < amount_paid < total_due
    unpaid  otherwise
    """
    if amount_paid >= total_due:
        return Status.PAID
    if amount_paid > 0:
        return Status.PARTIAL
    return Status.UNPAID


def parse_amount(raw: Any) -> int:
    """
    Parse an amount into smallest currency units.

    Accepts ints and numeric strings such as the gateway's "150000.00".

    Raises:
        MalformedEvent: non-numeric, negative or fractional input
    """
    if raw is None or isinstance(raw, bool):
        raise MalformedEvent("Amount is missing", {"amount": raw})
    try:
        value = Decimal(str(raw).strip())
    except InvalidOperation:
        raise MalformedEvent(f"Unparsable amount {raw!r}", {"amount": str(raw)})
    if not value.is_finite() or value < 0:
        raise MalformedEvent(f"Invalid amount {raw!r}", {"amount": str(raw)})
    if value != value.to_integral_value():
        raise MalformedEvent(f"Fractional amount {raw!r}", {"amount": str(raw)})
    return int(value)


def format_rupiah(amount: int) -> str:
    """Render an amount as 'Rp 1.500.000'."""
    return "Rp " + f"{amount:,}".replace(",", ".")


class Bill(BaseModel):
    """
    A single period's amount owed by one account.

    version is the compare-and-swap token owned by the ledger store.
    """

    model_config = ConfigDict(frozen=True)

    id: int
    owner_id: int
    period_month: str
    period_year: int
    total_due: int = Field(ge=0)
    amount_paid: int = Field(default=0, ge=0)
    status: Status = Status.UNPAID
    last_payment_method: Optional[str] = None
    last_payment_at: Optional[datetime] = None
    version: int = 0

    @model_validator(mode="after")
    def check_invariants(self) -> Bill:
        """Reject snapshots that break the amount/status relationship."""
        if self.amount_paid > self.total_due:
            raise ValueError("amount_paid cannot exceed total_due")
        if self.status == Status.FAILED:
            if self.amount_paid != 0:
                raise ValueError("only a bill without payments can be failed")
        elif self.status != derive_status(self.total_due, self.amount_paid):
            raise ValueError(
                f"status {self.status.value} inconsistent with "
                f"{self.amount_paid}/{self.total_due}"
            )
        return self

    @property
    def remaining(self) -> int:
        return self.total_due - self.amount_paid

    @property
    def period_label(self) -> str:
        return f"{self.period_month} {self.period_year}"

    def snapshot(self) -> Dict[str, Any]:
        """Serializable view returned to callers."""
        return {
            "id": self.id,
            "owner_id": self.owner_id,
            "period_month": self.period_month,
            "period_year": self.period_year,
            "total_due": self.total_due,
            "amount_paid": self.amount_paid,
            "remaining": self.remaining,
            "status": self.status.value,
            "last_payment_method": self.last_payment_method,
            "last_payment_at": (
                self.last_payment_at.isoformat() if self.last_payment_at else None
            ),
        }


class PaymentEvent(BaseModel):
    """Incoming payment fact, normalized from one of the three sources."""

    model_config = ConfigDict(frozen=True)

    source: PaymentSource
    bill_id: int
    external_order_id: Optional[str] = None
    amount: int
    method_label: str
    occurred_at: datetime
    gateway_transaction_state: Optional[GatewayTransactionState] = None
    actor: Optional[str] = None

    @model_validator(mode="after")
    def check_source_fields(self) -> PaymentEvent:
        if self.source == PaymentSource.GATEWAY_WEBHOOK:
            if self.gateway_transaction_state is None:
                raise ValueError("gateway events need a transaction state")
            if not self.external_order_id:
                raise ValueError("gateway events need an order id")
        elif self.gateway_transaction_state is not None:
            raise ValueError("only gateway events carry a transaction state")
        if self.source == PaymentSource.CLIENT_REPORTED and not self.external_order_id:
            raise ValueError("client confirmations need an order id")
        return self

    @property
    def dedup_key(self) -> str:
        """Idempotency key: the order id, else the (bill, source, amount, time) bucket."""
        if self.external_order_id:
            return self.external_order_id
        return (
            f"{self.bill_id}:{self.source.value}:{self.amount}:"
            f"{self.occurred_at.isoformat()}"
        )


class AppliedEventRecord(BaseModel):
    """Append-only record of an applied event; also the installment history."""

    model_config = ConfigDict(frozen=True)

    id: Optional[int] = None
    bill_id: int
    owner_id: int
    source: PaymentSource
    external_order_id: Optional[str] = None
    dedup_key: str
    amount: int
    requested_amount: int
    method_label: str
    occurred_at: datetime

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "bill_id": self.bill_id,
            "order_id": self.external_order_id,
            "source": self.source.value,
            "amount": self.amount,
            "requested_amount": self.requested_amount,
            "payment_method": self.method_label,
            "paid_at": self.occurred_at.isoformat(),
        }


class NotificationIntent(BaseModel):
    """User-facing notification produced by an applied payment."""

    model_config = ConfigDict(frozen=True)

    owner_id: int
    title: str
    message: str
    structured_payload: Dict[str, Any] = Field(default_factory=dict)
