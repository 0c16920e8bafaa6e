"""
Ledger store interface.

The orchestrator only talks to storage through these protocols. A unit of
work groups the guard check, the bill compare-and-swap and the record
appends; leaving the context normally commits, raising rolls back.
"""
from datetime import datetime
from enum import Enum
from typing import Any, AsyncContextManager, Dict, List, Optional, Protocol

from pydantic import BaseModel, ConfigDict, Field

from tuition_payments.core.values import AppliedEventRecord, Bill, Status


class UpdateResult(str, Enum):
    """Result of a compare-and-swap bill update."""

    APPLIED = "applied"
    CONFLICT = "conflict"


class AuditEntry(BaseModel):
    """Audit trail row for an applied or observed payment event."""

    model_config = ConfigDict(frozen=True)

    bill_id: int
    source: str
    order_id: Optional[str] = None
    outcome: str
    event_data: Dict[str, Any] = Field(default_factory=dict)
    recorded_at: datetime


class InboxEntry(BaseModel):
    """In-app notification inbox row."""

    model_config = ConfigDict(frozen=True)

    owner_id: int
    kind: str = "payment"
    title: str
    message: str
    data: Dict[str, Any] = Field(default_factory=dict)
    is_read: bool = False
    created_at: datetime


class LedgerUnitOfWork(Protocol):
    """Operations available inside one atomic unit of work."""

    async def get_bill(self, bill_id: int) -> Optional[Bill]:
        ...

    async def find_applied_record(self, order_id: str) -> Optional[AppliedEventRecord]:
        ...

    async def update_bill(
        self, bill_id: int, compare_version: int, fields: Dict[str, Any]
    ) -> UpdateResult:
        ...

    async def append_installment_record(self, record: AppliedEventRecord) -> AppliedEventRecord:
        ...

    async def append_audit_entry(self, entry: AuditEntry) -> None:
        ...


class LedgerStore(Protocol):
    """Persistent store for bills, applied records, audit and inbox."""

    def unit_of_work(self) -> AsyncContextManager[LedgerUnitOfWork]:
        ...

    async def get_bill(self, bill_id: int) -> Optional[Bill]:
        ...

    async def list_bills(self, status: Optional[Status] = None, limit: int = 10) -> List[Bill]:
        """Bills, most recently paid first, then newest."""
        ...

    async def list_installment_records(
        self, owner_id: int, bill_id: Optional[int] = None
    ) -> List[AppliedEventRecord]:
        ...

    async def insert_notification_inbox(self, entry: InboxEntry) -> None:
        ...

    async def get_device_token(self, owner_id: int) -> Optional[str]:
        ...
