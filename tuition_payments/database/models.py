"""SQLAlchemy database models for tuition bill payments."""
from datetime import datetime
from typing import Any, Dict

from sqlalchemy import (
    BigInteger,
    Boolean,
    CheckConstraint,
    DateTime,
    Index,
    Integer,
    String,
    func,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    """Base class for all database models."""

    pass


class BillRow(Base):
    """
    Tuition bills table.

    One row per account and billed period. version is bumped on every write
    and used as the compare-and-swap token.
    """

    __tablename__ = "bills"

    id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=True)
    owner_id: Mapped[int] = mapped_column(BigInteger, nullable=False, index=True)
    period_month: Mapped[str] = mapped_column(String(20), nullable=False)
    period_year: Mapped[int] = mapped_column(Integer, nullable=False)
    total_due: Mapped[int] = mapped_column(BigInteger, nullable=False)
    amount_paid: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="unpaid", index=True)
    last_payment_method: Mapped[str | None] = mapped_column(String(100), nullable=True)
    last_payment_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=func.now(),
        onupdate=func.now(),
    )

    __table_args__ = (
        CheckConstraint("total_due >= 0", name="non_negative_total"),
        CheckConstraint("amount_paid >= 0", name="non_negative_paid"),
        CheckConstraint("amount_paid <= total_due", name="paid_within_total"),
        CheckConstraint(
            "status IN ('unpaid', 'partial', 'paid', 'failed')",
            name="valid_bill_status",
        ),
        Index("idx_bills_owner_period", "owner_id", "period_year", "period_month"),
    )

    def __repr__(self) -> str:
        """String representation of BillRow."""
        return (
            f"<BillRow(id={self.id}, owner_id={self.owner_id}, "
            f"paid={self.amount_paid}/{self.total_due}, status={self.status})>"
        )


class InstallmentRecordRow(Base):
    """
    Applied payment records table.

    Append-only. order_id is unique when present and is the idempotency key
    for gateway and client-reported payments.
    """

    __tablename__ = "installment_records"

    id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=True)
    bill_id: Mapped[int] = mapped_column(BigInteger, nullable=False, index=True)
    owner_id: Mapped[int] = mapped_column(BigInteger, nullable=False, index=True)
    source: Mapped[str] = mapped_column(String(30), nullable=False)
    order_id: Mapped[str | None] = mapped_column(String(100), unique=True, nullable=True)
    dedup_key: Mapped[str] = mapped_column(String(255), nullable=False)
    amount: Mapped[int] = mapped_column(BigInteger, nullable=False)
    requested_amount: Mapped[int] = mapped_column(BigInteger, nullable=False)
    payment_method: Mapped[str] = mapped_column(String(100), nullable=False)
    paid_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=func.now()
    )

    __table_args__ = (
        CheckConstraint("amount > 0", name="positive_installment"),
        CheckConstraint(
            "source IN ('client_reported', 'admin_manual', 'gateway_webhook')",
            name="valid_installment_source",
        ),
        Index("idx_installments_owner_paid", "owner_id", "paid_at"),
    )

    def __repr__(self) -> str:
        """String representation of InstallmentRecordRow."""
        return (
            f"<InstallmentRecordRow(id={self.id}, bill_id={self.bill_id}, "
            f"order_id={self.order_id}, amount={self.amount})>"
        )


class PaymentAuditRow(Base):
    """
    Payment audit trail table.

    One row per applied or observed event. Immutable once written.
    """

    __tablename__ = "payment_audit_log"

    id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=True)
    bill_id: Mapped[int] = mapped_column(BigInteger, nullable=False, index=True)
    source: Mapped[str] = mapped_column(String(30), nullable=False)
    order_id: Mapped[str | None] = mapped_column(String(100), nullable=True, index=True)
    outcome: Mapped[str] = mapped_column(String(50), nullable=False)
    event_data: Mapped[Dict[str, Any]] = mapped_column(JSONB, nullable=False)
    recorded_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    def __repr__(self) -> str:
        """String representation of PaymentAuditRow."""
        return (
            f"<PaymentAuditRow(id={self.id}, bill_id={self.bill_id}, "
            f"outcome={self.outcome})>"
        )


class NotificationInboxRow(Base):
    """In-app notification inbox table."""

    __tablename__ = "notification_inbox"

    id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=True)
    owner_id: Mapped[int] = mapped_column(BigInteger, nullable=False)
    kind: Mapped[str] = mapped_column(String(50), nullable=False)
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    message: Mapped[str] = mapped_column(String(1000), nullable=False)
    data: Mapped[Dict[str, Any]] = mapped_column(JSONB, nullable=False)
    is_read: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    __table_args__ = (
        Index("idx_inbox_owner_unread", "owner_id", "is_read", "created_at"),
    )


class DeviceTokenRow(Base):
    """Push device token per account."""

    __tablename__ = "device_tokens"

    owner_id: Mapped[int] = mapped_column(BigInteger, primary_key=True)
    token: Mapped[str] = mapped_column(String(512), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=func.now(), onupdate=func.now()
    )
