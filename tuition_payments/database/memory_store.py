"""
In-memory ledger store.

Implements the same compare-and-swap and unique order id semantics as the
SQL store: writes are staged inside a unit of work and validated against
the committed state under a lock at commit time. Every operation awaits
io_delay so concurrent reconciliations interleave as they would against a
real database.
"""
import asyncio
from contextlib import asynccontextmanager
from typing import Any, AsyncGenerator, Dict, Iterable, List, Optional

from tuition_payments.core.errors import StorageConflict
from tuition_payments.core.values import AppliedEventRecord, Bill, Status
from tuition_payments.database.ledger_store import AuditEntry, InboxEntry, UpdateResult


class _MemoryUnitOfWork:
    def __init__(self, store: "InMemoryLedgerStore"):
        self._store = store
        self._bill_updates: Dict[int, tuple[int, Bill]] = {}
        self._records: List[AppliedEventRecord] = []
        self._audit: List[AuditEntry] = []

    async def get_bill(self, bill_id: int) -> Optional[Bill]:
        await asyncio.sleep(self._store.io_delay)
        if bill_id in self._bill_updates:
            return self._bill_updates[bill_id][1]
        return self._store.bills.get(bill_id)

    async def find_applied_record(self, order_id: str) -> Optional[AppliedEventRecord]:
        await asyncio.sleep(self._store.io_delay)
        for record in self._records:
            if record.external_order_id == order_id:
                return record
        return self._store.records_by_order.get(order_id)

    async def update_bill(
        self, bill_id: int, compare_version: int, fields: Dict[str, Any]
    ) -> UpdateResult:
        await asyncio.sleep(self._store.io_delay)
        current = self._store.bills.get(bill_id)
        if current is None or current.version != compare_version:
            return UpdateResult.CONFLICT
        updated = current.model_copy(update={**fields, "version": compare_version + 1})
        self._bill_updates[bill_id] = (compare_version, updated)
        return UpdateResult.APPLIED

    async def append_installment_record(self, record: AppliedEventRecord) -> AppliedEventRecord:
        await asyncio.sleep(self._store.io_delay)
        order_id = record.external_order_id
        if order_id and (
            order_id in self._store.records_by_order
            or any(r.external_order_id == order_id for r in self._records)
        ):
            raise StorageConflict(f"Order {order_id} already recorded", {"order_id": order_id})
        self._records.append(record)
        return record

    async def append_audit_entry(self, entry: AuditEntry) -> None:
        await asyncio.sleep(self._store.io_delay)
        self._audit.append(entry)

    async def commit(self) -> None:
        store = self._store
        async with store.commit_lock:
            for bill_id, (expected_version, _) in self._bill_updates.items():
                if store.bills[bill_id].version != expected_version:
                    raise StorageConflict(
                        f"Bill {bill_id} changed concurrently", {"bill_id": bill_id}
                    )
            for record in self._records:
                if record.external_order_id and record.external_order_id in store.records_by_order:
                    raise StorageConflict(
                        f"Order {record.external_order_id} already recorded",
                        {"order_id": record.external_order_id},
                    )

            for bill_id, (_, bill) in self._bill_updates.items():
                store.bills[bill_id] = bill
            for record in self._records:
                stored = record.model_copy(update={"id": store.next_record_id})
                store.next_record_id += 1
                store.records.append(stored)
                if stored.external_order_id:
                    store.records_by_order[stored.external_order_id] = stored
            store.audit_log.extend(self._audit)


class InMemoryLedgerStore:
    """Process-local ledger store for tests and single-process deployments."""

    def __init__(
        self,
        bills: Iterable[Bill] = (),
        device_tokens: Optional[Dict[int, str]] = None,
        io_delay: float = 0.0,
    ):
        self.bills: Dict[int, Bill] = {bill.id: bill for bill in bills}
        self.device_tokens: Dict[int, str] = dict(device_tokens or {})
        self.records: List[AppliedEventRecord] = []
        self.records_by_order: Dict[str, AppliedEventRecord] = {}
        self.audit_log: List[AuditEntry] = []
        self.inbox: List[InboxEntry] = []
        self.io_delay = io_delay
        self.next_record_id = 1
        self.commit_lock = asyncio.Lock()

    def add_bill(self, bill: Bill) -> None:
        self.bills[bill.id] = bill

    @asynccontextmanager
    async def unit_of_work(self) -> AsyncGenerator[_MemoryUnitOfWork, Any]:
        uow = _MemoryUnitOfWork(self)
        yield uow
        await uow.commit()

    async def get_bill(self, bill_id: int) -> Optional[Bill]:
        await asyncio.sleep(self.io_delay)
        return self.bills.get(bill_id)

    async def list_bills(self, status: Optional[Status] = None, limit: int = 10) -> List[Bill]:
        await asyncio.sleep(self.io_delay)
        bills = [b for b in self.bills.values() if status is None or b.status == status]
        never_paid = sorted(
            (b for b in bills if b.last_payment_at is None), key=lambda b: b.id, reverse=True
        )
        paid = sorted(
            (b for b in bills if b.last_payment_at is not None),
            key=lambda b: (b.last_payment_at, b.id),
            reverse=True,
        )
        return (paid + never_paid)[:limit]

    async def list_installment_records(
        self, owner_id: int, bill_id: Optional[int] = None
    ) -> List[AppliedEventRecord]:
        await asyncio.sleep(self.io_delay)
        records = [
            r for r in self.records
            if r.owner_id == owner_id and (bill_id is None or r.bill_id == bill_id)
        ]
        return sorted(records, key=lambda r: r.occurred_at, reverse=True)

    async def insert_notification_inbox(self, entry: InboxEntry) -> None:
        await asyncio.sleep(self.io_delay)
        self.inbox.append(entry)

    async def get_device_token(self, owner_id: int) -> Optional[str]:
        return self.device_tokens.get(owner_id)
