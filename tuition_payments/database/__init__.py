"""Database package for tuition payments."""
from .connection import close_db, get_session_factory, init_db
from .ledger_store import AuditEntry, InboxEntry, LedgerStore, LedgerUnitOfWork, UpdateResult
from .memory_store import InMemoryLedgerStore
from .models import (
    Base,
    BillRow,
    DeviceTokenRow,
    InstallmentRecordRow,
    NotificationInboxRow,
    PaymentAuditRow,
)
from .sql_store import SqlAlchemyLedgerStore

__all__ = [
    "AuditEntry",
    "Base",
    "BillRow",
    "DeviceTokenRow",
    "InMemoryLedgerStore",
    "InboxEntry",
    "InstallmentRecordRow",
    "LedgerStore",
    "LedgerUnitOfWork",
    "NotificationInboxRow",
    "PaymentAuditRow",
    "SqlAlchemyLedgerStore",
    "UpdateResult",
    "close_db",
    "get_session_factory",
    "init_db",
]
