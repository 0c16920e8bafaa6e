"""
FastAPI dependencies.

Services are process-wide singletons built lazily from settings. Tests swap
them through app.dependency_overrides.
"""
from functools import lru_cache
from typing import Optional

from fastapi import Depends, Header, HTTPException, status
from pydantic import BaseModel

from tuition_payments.config import get_settings
from tuition_payments.core.checkout import CheckoutService
from tuition_payments.core.idempotency import IdempotencyGuard
from tuition_payments.core.orchestrator import ReconciliationOrchestrator
from tuition_payments.database.ledger_store import LedgerStore
from tuition_payments.database.sql_store import SqlAlchemyLedgerStore
from tuition_payments.integrations.midtrans_client import MidtransClient
from tuition_payments.integrations.notifier import HttpPushNotifier, LoggingNotifier, Notifier
from tuition_payments.monitoring.health import HealthCheck

ADMIN_ROLE = "admin"


class Caller(BaseModel):
    """Identity asserted by the upstream authentication gateway."""

    user_id: int
    role: str = "student"

    @property
    def is_admin(self) -> bool:
        return self.role == ADMIN_ROLE


async def get_caller(
    x_user_id: Optional[str] = Header(default=None, alias="X-User-Id"),
    x_user_role: Optional[str] = Header(default=None, alias="X-User-Role"),
) -> Caller:
    """Read the authenticated caller from gateway headers."""
    if not x_user_id or not x_user_id.isdigit():
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing or invalid X-User-Id header",
        )
    return Caller(user_id=int(x_user_id), role=(x_user_role or "student").lower())


async def require_admin(caller: Caller = Depends(get_caller)) -> Caller:
    """Reject callers without the administrator role."""
    if not caller.is_admin:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Administrator role required",
        )
    return caller


@lru_cache()
def get_store() -> LedgerStore:
    return SqlAlchemyLedgerStore()


@lru_cache()
def get_gateway() -> MidtransClient:
    return MidtransClient()


@lru_cache()
def get_notifier() -> Notifier:
    if get_settings().push_endpoint_url:
        return HttpPushNotifier()
    return LoggingNotifier()


@lru_cache()
def get_guard() -> IdempotencyGuard:
    return IdempotencyGuard()


@lru_cache()
def get_orchestrator() -> ReconciliationOrchestrator:
    settings = get_settings()
    return ReconciliationOrchestrator(
        store=get_store(),
        guard=get_guard(),
        notifier=get_notifier(),
        gateway=get_gateway(),
        settings=settings,
        background_dispatch=settings.dispatch_in_background,
    )


@lru_cache()
def get_checkout_service() -> CheckoutService:
    return CheckoutService(store=get_store(), gateway=get_gateway())


@lru_cache()
def get_health_check() -> HealthCheck:
    return HealthCheck()
