"""
Reconciliation orchestrator.

Coordinates one reconciliation end to end:
1. Load the bill and check ownership
2. Open a unit of work
3. Idempotency check
4. Apply the event with the reconciliation engine
5. Compare-and-swap the bill, append the applied record and audit entry
6. Commit (retrying the whole step on a concurrent write)
7. Dispatch the notification (inbox + push), never failing the payment

Every entry point returns an Outcome; only programming errors escape as
exceptions.
"""
import asyncio
import time
from datetime import datetime
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Mapping, Optional, Set

import structlog
from pydantic import BaseModel, ConfigDict, Field
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception_type,
    stop_after_attempt,
    wait_random_exponential,
)

from tuition_payments.config import Settings, get_settings
from tuition_payments.core.errors import (
    Forbidden,
    MalformedEvent,
    MalformedOrderId,
    PaymentRejected,
    StorageConflict,
    StorageUnavailable,
)
from tuition_payments.core.idempotency import IdempotencyGuard, manual_order_id
from tuition_payments.core.reconciliation import ReconciliationEngine
from tuition_payments.core.values import (
    Bill,
    NotificationIntent,
    OrderKind,
    PaymentEvent,
    PaymentSource,
    Status,
    utcnow,
)
from tuition_payments.database.ledger_store import (
    AuditEntry,
    InboxEntry,
    LedgerStore,
    UpdateResult,
)
from tuition_payments.integrations.midtrans_client import GatewayError, MidtransClient
from tuition_payments.integrations.notifier import LoggingNotifier, Notifier
from tuition_payments.integrations.webhook_interpreter import WebhookInterpreter, parse_order_id
from tuition_payments.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

STAFF_VERIFICATION_LABEL = "Staff verification"
MANUAL_PAYMENT_LABEL = "Manual payment"
DEFAULT_CLIENT_METHOD = "Midtrans"


class OutcomeKind(str, Enum):
    """Result tag of a reconciliation."""

    APPLIED = "applied"
    DUPLICATE = "duplicate"
    NO_OP = "no_op"
    NOT_FOUND = "not_found"
    FORBIDDEN = "forbidden"
    REJECTED = "rejected"
    RETRYABLE_FAILURE = "retryable_failure"


class Outcome(BaseModel):
    """Tagged result returned by every orchestrator entry point."""

    model_config = ConfigDict(frozen=True)

    kind: OutcomeKind
    bill: Optional[Bill] = None
    reason: Optional[str] = None
    details: Dict[str, Any] = Field(default_factory=dict)
    applied_amount: int = 0
    notification: Optional[NotificationIntent] = None

    @property
    def succeeded(self) -> bool:
        return self.kind in (OutcomeKind.APPLIED, OutcomeKind.DUPLICATE, OutcomeKind.NO_OP)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dict for API responses."""
        data: Dict[str, Any] = {
            "outcome": self.kind.value,
            "reason": self.reason,
            "details": self.details,
            "bill": self.bill.snapshot() if self.bill else None,
        }
        if self.kind == OutcomeKind.APPLIED:
            data["applied_amount"] = self.applied_amount
        return data


class ReconciliationOrchestrator:
    """
    Applies payment events to bills exactly once.

    Per-bill serialization is optimistic: the bill write is a
    compare-and-swap on its version, and a conflicting unit of work is
    retried from the top (re-reading the bill and re-running the guard).
    """

    def __init__(
        self,
        store: LedgerStore,
        guard: Optional[IdempotencyGuard] = None,
        engine: Optional[ReconciliationEngine] = None,
        notifier: Optional[Notifier] = None,
        gateway: Optional[MidtransClient] = None,
        interpreter: Optional[WebhookInterpreter] = None,
        settings: Optional[Settings] = None,
        clock: Callable[[], datetime] = utcnow,
        background_dispatch: bool = False,
    ):
        """
        Initialize orchestrator.

        Args:
            store: Ledger store
            guard: Optional idempotency guard
            engine: Optional reconciliation engine
            notifier: Optional push notifier (log-only when omitted)
            gateway: Optional Midtrans client, used to resolve installment amounts
            interpreter: Optional webhook interpreter
            settings: Optional settings override
            clock: Source of "now" for inbox rows, audit rows and confirmations
            background_dispatch: Dispatch notifications as background tasks
        """
        self.settings = settings or get_settings()
        self.store = store
        self.guard = guard or IdempotencyGuard(settings=self.settings)
        self.engine = engine or ReconciliationEngine()
        self.notifier = notifier or LoggingNotifier()
        self.gateway = gateway
        self.interpreter = interpreter or WebhookInterpreter(settings=self.settings)
        self.clock = clock
        self.background_dispatch = background_dispatch
        self._background_tasks: Set[asyncio.Task] = set()

    # ------------------------------------------------------------------
    # Core
    # ------------------------------------------------------------------

    async def reconcile(self, event: PaymentEvent, owner_id: Optional[int] = None) -> Outcome:
        """
        Apply one payment event to its bill.

        Args:
            event: Normalized payment event
            owner_id: Caller's account id; enforced against the bill owner when given

        Returns:
            Outcome: Tagged result with the resulting bill snapshot
        """
        start = time.perf_counter()
        log = logger.bind(
            source=event.source.value,
            bill_id=event.bill_id,
            order_id=event.external_order_id,
        )
        log.info("reconciliation_started", amount=event.amount)

        outcome = await self._reconcile(event, owner_id, log)

        metrics.record_reconciliation(
            event.source.value, outcome.kind.value, time.perf_counter() - start
        )
        log.info(
            "reconciliation_finished",
            outcome=outcome.kind.value,
            reason=outcome.reason,
            applied_amount=outcome.applied_amount,
        )

        if outcome.kind == OutcomeKind.APPLIED:
            await self.guard.remember(event)
            metrics.record_applied_amount(
                outcome.applied_amount, outcome.details.get("excess_dropped", 0)
            )
            if outcome.notification is not None:
                await self._schedule_dispatch(outcome.notification)
        return outcome

    async def _reconcile(self, event: PaymentEvent, owner_id: Optional[int], log: Any) -> Outcome:
        loaded = await self._load_bill(event.bill_id, owner_id)
        if isinstance(loaded, Outcome):
            return loaded

        if await self.guard.seen_recently(event):
            metrics.record_idempotency_hit("redis")
            return Outcome(kind=OutcomeKind.DUPLICATE, bill=loaded, reason="already_applied")

        return await self._with_retries(lambda: self._apply_once(event), log)

    async def _load_bill(self, bill_id: int, owner_id: Optional[int]) -> Bill | Outcome:
        try:
            bill = await asyncio.wait_for(
                self.store.get_bill(bill_id), timeout=self.settings.storage_timeout_seconds
            )
        except (StorageUnavailable, asyncio.TimeoutError) as e:
            logger.error("bill_load_failed", bill_id=bill_id, error=str(e) or type(e).__name__)
            return Outcome(kind=OutcomeKind.RETRYABLE_FAILURE, reason="storage_unavailable")

        if bill is None:
            return Outcome(kind=OutcomeKind.NOT_FOUND, reason="bill_not_found", details={"bill_id": bill_id})
        if owner_id is not None and bill.owner_id != owner_id:
            logger.warning("bill_ownership_mismatch", bill_id=bill_id, caller_id=owner_id)
            error = Forbidden(bill_id, owner_id)
            return Outcome(kind=OutcomeKind.FORBIDDEN, reason=error.error_code, details=error.details)
        return bill

    async def _apply_once(self, event: PaymentEvent) -> Outcome:
        """One unit of work: guard check, engine, CAS write, record, audit."""
        async with self.store.unit_of_work() as uow:
            bill = await uow.get_bill(event.bill_id)
            if bill is None:
                return Outcome(
                    kind=OutcomeKind.NOT_FOUND,
                    reason="bill_not_found",
                    details={"bill_id": event.bill_id},
                )

            if not await self.guard.should_apply(event, uow):
                metrics.record_idempotency_hit("ledger")
                return Outcome(kind=OutcomeKind.DUPLICATE, bill=bill, reason="already_applied")

            result = self.engine.apply(bill, event)

            if not result.applied:
                await uow.append_audit_entry(self._audit_entry(event, result.no_op_reason))
                return Outcome(kind=OutcomeKind.NO_OP, bill=bill, reason=result.no_op_reason)

            fields = {
                "amount_paid": result.bill.amount_paid,
                "status": result.bill.status,
                "last_payment_method": result.bill.last_payment_method,
                "last_payment_at": result.bill.last_payment_at,
            }
            if await uow.update_bill(bill.id, bill.version, fields) == UpdateResult.CONFLICT:
                raise StorageConflict(
                    f"Bill {bill.id} changed concurrently", {"bill_id": bill.id}
                )

            await self.guard.record(event, result.bill, result.applied_amount, uow)
            await uow.append_audit_entry(
                self._audit_entry(
                    event,
                    OutcomeKind.APPLIED.value,
                    applied_amount=result.applied_amount,
                    excess_dropped=result.excess_dropped,
                    amount_paid=result.bill.amount_paid,
                    status=result.bill.status.value,
                )
            )

        return Outcome(
            kind=OutcomeKind.APPLIED,
            bill=result.bill.model_copy(update={"version": bill.version + 1}),
            applied_amount=result.applied_amount,
            notification=result.notification,
            details={"excess_dropped": result.excess_dropped} if result.excess_dropped else {},
        )

    async def _with_retries(self, step: Callable[[], Awaitable[Outcome]], log: Any) -> Outcome:
        """Run a unit-of-work step under the timeout, retrying on write conflicts."""

        def _on_conflict(retry_state: RetryCallState) -> None:
            metrics.record_storage_conflict()
            log.warning("storage_conflict_retrying", attempt=retry_state.attempt_number)

        try:
            async for attempt in AsyncRetrying(
                retry=retry_if_exception_type(StorageConflict),
                stop=stop_after_attempt(self.settings.reconcile_max_attempts),
                wait=wait_random_exponential(multiplier=0.01, max=0.2),
                before_sleep=_on_conflict,
                reraise=True,
            ):
                with attempt:
                    outcome = await asyncio.wait_for(
                        step(), timeout=self.settings.storage_timeout_seconds
                    )
        except StorageConflict as e:
            metrics.record_storage_conflict()
            log.error("storage_conflict_exhausted", error=e.message)
            return Outcome(
                kind=OutcomeKind.RETRYABLE_FAILURE, reason=e.error_code, details=e.details
            )
        except StorageUnavailable as e:
            log.error("storage_unavailable", error=e.message)
            return Outcome(kind=OutcomeKind.RETRYABLE_FAILURE, reason=e.error_code)
        except asyncio.TimeoutError:
            log.error("storage_timeout", timeout=self.settings.storage_timeout_seconds)
            return Outcome(kind=OutcomeKind.RETRYABLE_FAILURE, reason="storage_timeout")
        except PaymentRejected as e:
            log.warning("payment_rejected", code=e.error_code, details=e.details)
            return Outcome(kind=OutcomeKind.REJECTED, reason=e.error_code, details=e.details)
        return outcome

    def _audit_entry(self, event: PaymentEvent, outcome: Optional[str], **extra: Any) -> AuditEntry:
        data: Dict[str, Any] = {
            "amount": event.amount,
            "method": event.method_label,
            "occurred_at": event.occurred_at.isoformat(),
            "actor": event.actor,
        }
        if event.gateway_transaction_state is not None:
            data["gateway_transaction_state"] = event.gateway_transaction_state.value
        data.update(extra)
        return AuditEntry(
            bill_id=event.bill_id,
            source=event.source.value,
            order_id=event.external_order_id,
            outcome=outcome or "observed",
            event_data=data,
            recorded_at=self.clock(),
        )

    # ------------------------------------------------------------------
    # Notification dispatch
    # ------------------------------------------------------------------

    async def _schedule_dispatch(self, intent: NotificationIntent) -> None:
        if not self.background_dispatch:
            await self.dispatch(intent)
            return
        task = asyncio.create_task(self.dispatch(intent))
        self._background_tasks.add(task)
        task.add_done_callback(self._background_tasks.discard)

    async def dispatch(self, intent: NotificationIntent) -> None:
        """
        Deliver a notification to the in-app inbox and the push channel.

        Failures are logged and counted, never raised.
        """
        entry = InboxEntry(
            owner_id=intent.owner_id,
            title=intent.title,
            message=intent.message,
            data=intent.structured_payload,
            created_at=self.clock(),
        )
        try:
            await asyncio.wait_for(
                self.store.insert_notification_inbox(entry),
                timeout=self.settings.storage_timeout_seconds,
            )
            metrics.record_notification("inbox", "sent")
        except Exception as e:
            metrics.record_notification("inbox", "failed")
            logger.error(
                "notification_inbox_failed",
                owner_id=intent.owner_id,
                error=str(e) or type(e).__name__,
            )

        try:
            token = await asyncio.wait_for(
                self.store.get_device_token(intent.owner_id),
                timeout=self.settings.storage_timeout_seconds,
            )
            if not token:
                metrics.record_notification("push", "skipped")
                logger.info("push_skipped_no_device_token", owner_id=intent.owner_id)
                return
            delivered = await asyncio.wait_for(
                self.notifier.send(
                    token,
                    {
                        "title": intent.title,
                        "message": intent.message,
                        "data": intent.structured_payload,
                    },
                ),
                timeout=self.settings.notifier_timeout_seconds,
            )
            metrics.record_notification("push", "sent" if delivered else "failed")
        except Exception as e:
            metrics.record_notification("push", "failed")
            logger.error(
                "push_notification_failed",
                owner_id=intent.owner_id,
                error=str(e) or type(e).__name__,
            )

    async def drain(self) -> None:
        """Wait for pending notification dispatches."""
        while self._background_tasks:
            await asyncio.gather(*list(self._background_tasks), return_exceptions=True)

    # ------------------------------------------------------------------
    # Entry points
    # ------------------------------------------------------------------

    async def confirm_client_payment(
        self,
        bill_id: int,
        owner_id: int,
        external_order_id: str,
        amount: Optional[int] = None,
        method: Optional[str] = None,
        is_installment: bool = False,
    ) -> Outcome:
        """
        Record a client-reported payment success.

        Without an amount, installment orders ask the gateway for the
        transaction status and full orders settle the remaining balance.
        The order id must be a checkout order issued for this bill: it is the
        idempotency key shared with the gateway webhook.

        Args:
            bill_id: Bill the payment is for
            owner_id: Authenticated caller
            external_order_id: Gateway order id returned by checkout
            amount: Amount paid, when the client reports it
            method: Payment method label
            is_installment: Caller marks the payment as an installment

        Returns:
            Outcome: Tagged result
        """
        try:
            parsed = parse_order_id(external_order_id)
            if parsed.bill_id != bill_id:
                raise MalformedOrderId(
                    external_order_id, f"issued for bill {parsed.bill_id}, not {bill_id}"
                )
        except MalformedOrderId as e:
            logger.warning(
                "client_order_id_rejected",
                bill_id=bill_id,
                order_id=external_order_id,
                error=e.message,
            )
            metrics.record_reconciliation(
                PaymentSource.CLIENT_REPORTED.value, OutcomeKind.REJECTED.value, 0.0
            )
            return Outcome(kind=OutcomeKind.REJECTED, reason=e.error_code, details=e.details)

        installment = is_installment or parsed.kind == OrderKind.INSTALLMENT
        label = method or DEFAULT_CLIENT_METHOD

        if amount is None:
            loaded = await self._load_bill(bill_id, owner_id)
            if isinstance(loaded, Outcome):
                return loaded
            if loaded.status == Status.PAID:
                return Outcome(kind=OutcomeKind.NO_OP, bill=loaded, reason="already_paid")

            if installment:
                resolved = await self._amount_from_gateway(external_order_id, loaded)
                if isinstance(resolved, Outcome):
                    return resolved
                amount = resolved
            else:
                amount = loaded.remaining

        event = PaymentEvent(
            source=PaymentSource.CLIENT_REPORTED,
            bill_id=bill_id,
            external_order_id=external_order_id,
            amount=amount,
            method_label=f"{label} (installment)" if installment else label,
            occurred_at=self.clock(),
        )
        return await self.reconcile(event, owner_id=owner_id)

    async def _amount_from_gateway(self, order_id: str, bill: Bill) -> int | Outcome:
        if self.gateway is None:
            return Outcome(
                kind=OutcomeKind.REJECTED,
                bill=bill,
                reason="amount_required",
                details={"order_id": order_id},
            )
        try:
            status = await self.gateway.query_status(order_id)
        except GatewayError as e:
            logger.error(
                "gateway_status_lookup_failed",
                order_id=order_id,
                error=str(e),
                error_type=e.error_type.value,
            )
            return Outcome(
                kind=OutcomeKind.RETRYABLE_FAILURE,
                bill=bill,
                reason="gateway_unavailable",
                details={"order_id": order_id},
            )
        except MalformedEvent as e:
            return Outcome(kind=OutcomeKind.REJECTED, bill=bill, reason=e.error_code, details=e.details)

        logger.info(
            "gateway_status_resolved",
            order_id=order_id,
            amount=status.amount,
            state=status.state.value,
        )
        if not status.state.is_success:
            return Outcome(
                kind=OutcomeKind.NO_OP,
                bill=bill,
                reason="gateway_state_not_settled",
                details={"gateway_transaction_state": status.state.value},
            )
        return status.amount

    async def record_manual_payment(
        self,
        bill_id: int,
        amount: int,
        actor: str,
        idempotency_token: Optional[str] = None,
        method: Optional[str] = None,
    ) -> Outcome:
        """
        Record an administrator's manual payment entry.

        Entries without an idempotency token always apply; a token makes
        resubmissions of the same entry duplicates.
        """
        event = PaymentEvent(
            source=PaymentSource.ADMIN_MANUAL,
            bill_id=bill_id,
            external_order_id=manual_order_id(bill_id, idempotency_token) if idempotency_token else None,
            amount=amount,
            method_label=method or MANUAL_PAYMENT_LABEL,
            occurred_at=self.clock(),
            actor=actor,
        )
        return await self.reconcile(event)

    async def verify_bill(self, bill_id: int, actor: str) -> Outcome:
        """Administrator marks a bill as paid by settling its remaining balance."""
        for _ in range(self.settings.reconcile_max_attempts):
            loaded = await self._load_bill(bill_id, None)
            if isinstance(loaded, Outcome):
                return loaded
            if loaded.status == Status.PAID:
                return Outcome(kind=OutcomeKind.NO_OP, bill=loaded, reason="already_paid")

            event = PaymentEvent(
                source=PaymentSource.ADMIN_MANUAL,
                bill_id=bill_id,
                amount=loaded.remaining,
                method_label=STAFF_VERIFICATION_LABEL,
                occurred_at=self.clock(),
                actor=actor,
            )
            outcome = await self.reconcile(event)
            # over_limit here means another payment landed after the read
            if not (outcome.kind == OutcomeKind.REJECTED and outcome.reason == "over_limit"):
                return outcome
        return outcome

    async def reject_bill(self, bill_id: int, actor: str) -> Outcome:
        """
        Administrator marks an untouched bill as failed.

        Bills that already received money cannot be failed.
        """
        log = logger.bind(bill_id=bill_id, actor=actor)
        start = time.perf_counter()

        async def _step() -> Outcome:
            async with self.store.unit_of_work() as uow:
                bill = await uow.get_bill(bill_id)
                if bill is None:
                    return Outcome(
                        kind=OutcomeKind.NOT_FOUND,
                        reason="bill_not_found",
                        details={"bill_id": bill_id},
                    )
                if bill.amount_paid > 0 or bill.status == Status.PAID:
                    return Outcome(
                        kind=OutcomeKind.REJECTED,
                        bill=bill,
                        reason="bill_has_payments",
                        details={"amount_paid": bill.amount_paid},
                    )
                if bill.status == Status.FAILED:
                    return Outcome(kind=OutcomeKind.NO_OP, bill=bill, reason="already_failed")

                if await uow.update_bill(bill.id, bill.version, {"status": Status.FAILED}) == UpdateResult.CONFLICT:
                    raise StorageConflict(f"Bill {bill.id} changed concurrently", {"bill_id": bill.id})
                await uow.append_audit_entry(
                    AuditEntry(
                        bill_id=bill.id,
                        source=PaymentSource.ADMIN_MANUAL.value,
                        outcome="rejected_by_admin",
                        event_data={"actor": actor, "previous_status": bill.status.value},
                        recorded_at=self.clock(),
                    )
                )
            return Outcome(
                kind=OutcomeKind.APPLIED,
                bill=bill.model_copy(update={"status": Status.FAILED, "version": bill.version + 1}),
                reason="bill_rejected",
            )

        outcome = await self._with_retries(_step, log)
        metrics.record_reconciliation(
            PaymentSource.ADMIN_MANUAL.value, outcome.kind.value, time.perf_counter() - start
        )
        log.info("bill_rejection_finished", outcome=outcome.kind.value, reason=outcome.reason)
        return outcome

    async def handle_webhook(
        self, raw: Mapping[str, Any], received_at: Optional[datetime] = None
    ) -> Outcome:
        """
        Interpret a gateway notification and reconcile it.

        Malformed notifications are permanent rejections and are logged with
        the raw payload.
        """
        try:
            event = self.interpreter.parse(raw, received_at or self.clock())
        except MalformedEvent as e:
            metrics.record_webhook_event("malformed")
            metrics.record_reconciliation(
                PaymentSource.GATEWAY_WEBHOOK.value, OutcomeKind.REJECTED.value, 0.0
            )
            logger.error(
                "webhook_malformed",
                code=e.error_code,
                error=e.message,
                payload=self.interpreter.summarize(raw) if isinstance(raw, Mapping) else repr(raw),
            )
            return Outcome(kind=OutcomeKind.REJECTED, reason=e.error_code, details=e.details)

        metrics.record_webhook_event(event.gateway_transaction_state.value)
        return await self.reconcile(event)
