"""
SQLAlchemy-backed ledger store.

The unit of work is one database transaction. Bill writes are
compare-and-swap updates on the version column; the unique order_id
constraint on installment_records catches concurrent duplicates that both
passed the guard check.
"""
from contextlib import asynccontextmanager
from enum import Enum
from typing import Any, AsyncGenerator, Dict, List, Optional

import structlog
from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from tuition_payments.core.errors import StorageConflict, StorageUnavailable
from tuition_payments.core.values import AppliedEventRecord, Bill, PaymentSource, Status
from tuition_payments.database.connection import get_session_factory
from tuition_payments.database.ledger_store import AuditEntry, InboxEntry, UpdateResult
from tuition_payments.database.models import (
    BillRow,
    DeviceTokenRow,
    InstallmentRecordRow,
    NotificationInboxRow,
    PaymentAuditRow,
)

logger = structlog.get_logger(__name__)


def _to_bill(row: BillRow) -> Bill:
    return Bill(
        id=row.id,
        owner_id=row.owner_id,
        period_month=row.period_month,
        period_year=row.period_year,
        total_due=row.total_due,
        amount_paid=row.amount_paid,
        status=Status.normalize(row.status),
        last_payment_method=row.last_payment_method,
        last_payment_at=row.last_payment_at,
        version=row.version,
    )


def _to_record(row: InstallmentRecordRow) -> AppliedEventRecord:
    return AppliedEventRecord(
        id=row.id,
        bill_id=row.bill_id,
        owner_id=row.owner_id,
        source=PaymentSource(row.source),
        external_order_id=row.order_id,
        dedup_key=row.dedup_key,
        amount=row.amount,
        requested_amount=row.requested_amount,
        method_label=row.payment_method,
        occurred_at=row.paid_at,
    )


class _SqlUnitOfWork:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def get_bill(self, bill_id: int) -> Optional[Bill]:
        stmt = (
            select(BillRow)
            .where(BillRow.id == bill_id)
            .execution_options(populate_existing=True)
        )
        result = await self.session.execute(stmt)
        row = result.scalar_one_or_none()
        return _to_bill(row) if row else None

    async def find_applied_record(self, order_id: str) -> Optional[AppliedEventRecord]:
        stmt = select(InstallmentRecordRow).where(InstallmentRecordRow.order_id == order_id)
        result = await self.session.execute(stmt)
        row = result.scalar_one_or_none()
        return _to_record(row) if row else None

    async def update_bill(
        self, bill_id: int, compare_version: int, fields: Dict[str, Any]
    ) -> UpdateResult:
        values = {k: v.value if isinstance(v, Enum) else v for k, v in fields.items()}
        stmt = (
            update(BillRow)
            .where(BillRow.id == bill_id, BillRow.version == compare_version)
            .values(**values, version=BillRow.version + 1)
            .execution_options(synchronize_session=False)
        )
        result = await self.session.execute(stmt)
        if result.rowcount != 1:
            return UpdateResult.CONFLICT
        return UpdateResult.APPLIED

    async def append_installment_record(self, record: AppliedEventRecord) -> AppliedEventRecord:
        row = InstallmentRecordRow(
            bill_id=record.bill_id,
            owner_id=record.owner_id,
            source=record.source.value,
            order_id=record.external_order_id,
            dedup_key=record.dedup_key,
            amount=record.amount,
            requested_amount=record.requested_amount,
            payment_method=record.method_label,
            paid_at=record.occurred_at,
        )
        self.session.add(row)
        await self.session.flush()
        return record.model_copy(update={"id": row.id})

    async def append_audit_entry(self, entry: AuditEntry) -> None:
        self.session.add(
            PaymentAuditRow(
                bill_id=entry.bill_id,
                source=entry.source,
                order_id=entry.order_id,
                outcome=entry.outcome,
                event_data=entry.event_data,
                recorded_at=entry.recorded_at,
            )
        )


class SqlAlchemyLedgerStore:
    """Ledger store on PostgreSQL through SQLAlchemy async sessions."""

    def __init__(self, session_factory: Optional[async_sessionmaker[AsyncSession]] = None):
        self._session_factory = session_factory or get_session_factory()

    @asynccontextmanager
    async def _session(self) -> AsyncGenerator[AsyncSession, Any]:
        """Session whose database errors surface as ledger errors."""
        try:
            async with self._session_factory() as session:
                yield session
        except IntegrityError as e:
            logger.warning("ledger_integrity_conflict", error=str(e.orig))
            raise StorageConflict("Concurrent write detected") from e
        except (SQLAlchemyError, OSError) as e:
            logger.error("ledger_storage_error", error=str(e))
            raise StorageUnavailable(f"Ledger store failed: {str(e)}") from e

    @asynccontextmanager
    async def unit_of_work(self) -> AsyncGenerator[_SqlUnitOfWork, Any]:
        async with self._session() as session:
            async with session.begin():
                yield _SqlUnitOfWork(session)

    async def get_bill(self, bill_id: int) -> Optional[Bill]:
        async with self._session() as session:
            row = await session.get(BillRow, bill_id)
            return _to_bill(row) if row else None

    async def list_bills(self, status: Optional[Status] = None, limit: int = 10) -> List[Bill]:
        async with self._session() as session:
            stmt = select(BillRow)
            if status is not None:
                stmt = stmt.where(BillRow.status == status.value)
            stmt = stmt.order_by(BillRow.last_payment_at.desc().nulls_last(), BillRow.id.desc())
            result = await session.execute(stmt.limit(limit))
            return [_to_bill(row) for row in result.scalars().all()]

    async def add_bill(self, bill: Bill) -> Bill:
        """Insert a new bill; used when issuing bills and seeding."""
        async with self._session() as session:
            async with session.begin():
                row = BillRow(
                    id=bill.id,
                    owner_id=bill.owner_id,
                    period_month=bill.period_month,
                    period_year=bill.period_year,
                    total_due=bill.total_due,
                    amount_paid=bill.amount_paid,
                    status=bill.status.value,
                    last_payment_method=bill.last_payment_method,
                    last_payment_at=bill.last_payment_at,
                    version=bill.version,
                )
                session.add(row)
            return bill

    async def list_installment_records(
        self, owner_id: int, bill_id: Optional[int] = None
    ) -> List[AppliedEventRecord]:
        async with self._session() as session:
            stmt = select(InstallmentRecordRow).where(InstallmentRecordRow.owner_id == owner_id)
            if bill_id is not None:
                stmt = stmt.where(InstallmentRecordRow.bill_id == bill_id)
            stmt = stmt.order_by(InstallmentRecordRow.paid_at.desc())
            result = await session.execute(stmt)
            return [_to_record(row) for row in result.scalars().all()]

    async def insert_notification_inbox(self, entry: InboxEntry) -> None:
        async with self._session() as session:
            async with session.begin():
                session.add(
                    NotificationInboxRow(
                        owner_id=entry.owner_id,
                        kind=entry.kind,
                        title=entry.title,
                        message=entry.message,
                        data=entry.data,
                        is_read=entry.is_read,
                        created_at=entry.created_at,
                    )
                )

    async def get_device_token(self, owner_id: int) -> Optional[str]:
        async with self._session() as session:
            row = await session.get(DeviceTokenRow, owner_id)
            return row.token if row else None
