"""
Reconciliation engine: decides what a payment event does to a bill.

Pure decision logic. Given the bill's current snapshot and one payment event
it returns the new snapshot and the notification to emit, or raises a
PaymentRejected error. It never reads the clock or touches storage, so the
same inputs always give the same result.

Decision table:
- bill already paid                 -> no-op (already_paid)
- gateway state not a success state -> no-op (gateway_state_not_settled)
- amount <= 0                       -> InvalidAmount
- overpayment from the gateway      -> clamp to total_due, excess reported
- overpayment from client/admin     -> OverLimit with the remaining balance
"""
from typing import Any, Dict, Optional

import structlog
from pydantic import BaseModel, ConfigDict

from tuition_payments.core.errors import InvalidAmount, OverLimit
from tuition_payments.core.values import (
    Bill,
    NotificationIntent,
    PaymentEvent,
    PaymentSource,
    Status,
    derive_status,
    format_rupiah,
)

logger = structlog.get_logger(__name__)

NO_OP_ALREADY_PAID = "already_paid"
NO_OP_NOT_SETTLED = "gateway_state_not_settled"


class ReconciliationResult(BaseModel):
    """Outcome of applying one event to one bill snapshot."""

    model_config = ConfigDict(frozen=True)

    bill: Bill
    applied_amount: int = 0
    excess_dropped: int = 0
    notification: Optional[NotificationIntent] = None
    no_op_reason: Optional[str] = None

    @property
    def applied(self) -> bool:
        return self.no_op_reason is None


def compose_message(status: Status, amount: int, remaining: int, period_label: str) -> Dict[str, str]:
    """
    Build notification title and message.

    Args:
        status: Bill status after the payment
        amount: Amount actually applied
        remaining: Balance left after the payment
        period_label: Display label of the billed period

    Returns:
        Dict[str, str]: {"title": ..., "message": ...}
    """
    if status == Status.PAID:
        return {
            "title": "Tuition Paid in Full",
            "message": (
                f"Tuition payment for {period_label} of {format_rupiah(amount)} "
                f"succeeded. The bill is fully paid. Thank you!"
            ),
        }
    return {
        "title": "Installment Received",
        "message": (
            f"Installment for {period_label} of {format_rupiah(amount)} succeeded. "
            f"Remaining balance: {format_rupiah(remaining)}."
        ),
    }


class ReconciliationEngine:
    """Applies payment events to bill snapshots."""

    def apply(self, bill: Bill, event: PaymentEvent) -> ReconciliationResult:
        """
        Apply a payment event to a bill.

        Args:
            bill: Current bill snapshot
            event: Incoming payment event

        Returns:
            ReconciliationResult: New snapshot and notification, or a no-op

        Raises:
            InvalidAmount: If the event amount is not positive
            OverLimit: If a direct (non-gateway) payment exceeds the remaining balance
        """
        if bill.status == Status.PAID:
            logger.info(
                "bill_already_paid",
                bill_id=bill.id,
                source=event.source.value,
                order_id=event.external_order_id,
            )
            return ReconciliationResult(bill=bill, no_op_reason=NO_OP_ALREADY_PAID)

        # Expired or cancelled notifications may carry a zero amount
        if event.source == PaymentSource.GATEWAY_WEBHOOK:
            state = event.gateway_transaction_state
            if state is None or not state.is_success:
                logger.info(
                    "gateway_state_not_settled",
                    bill_id=bill.id,
                    order_id=event.external_order_id,
                    state=state.value if state else None,
                )
                return ReconciliationResult(bill=bill, no_op_reason=NO_OP_NOT_SETTLED)

        if event.amount <= 0:
            raise InvalidAmount(event.amount)

        candidate_paid = bill.amount_paid + event.amount
        excess = 0
        if candidate_paid > bill.total_due:
            if event.source != PaymentSource.GATEWAY_WEBHOOK:
                raise OverLimit(event.amount, bill.remaining)
            excess = candidate_paid - bill.total_due
            candidate_paid = bill.total_due
            logger.warning(
                "gateway_overpayment_clamped",
                bill_id=bill.id,
                order_id=event.external_order_id,
                requested=event.amount,
                excess=excess,
            )

        applied_amount = candidate_paid - bill.amount_paid
        new_status = derive_status(bill.total_due, candidate_paid)
        new_bill = bill.model_copy(
            update={
                "amount_paid": candidate_paid,
                "status": new_status,
                "last_payment_method": event.method_label,
                "last_payment_at": event.occurred_at,
            }
        )

        return ReconciliationResult(
            bill=new_bill,
            applied_amount=applied_amount,
            excess_dropped=excess,
            notification=self.build_notification(new_bill, event, applied_amount, excess),
        )

    @staticmethod
    def build_notification(
        bill: Bill, event: PaymentEvent, applied_amount: int, excess: int
    ) -> NotificationIntent:
        """
        Build the notification for an applied payment.

        Args:
            bill: Bill snapshot after the payment
            event: Applied event
            applied_amount: Amount that actually moved amount_paid
            excess: Amount dropped by clamping

        Returns:
            NotificationIntent: Notification for the bill owner
        """
        text = compose_message(bill.status, applied_amount, bill.remaining, bill.period_label)
        payload: Dict[str, Any] = {
            "bill_id": bill.id,
            "period_month": bill.period_month,
            "period_year": bill.period_year,
            "amount_applied": applied_amount,
            "amount_requested": event.amount,
            "amount_paid": bill.amount_paid,
            "remaining": bill.remaining,
            "status": bill.status.value,
            "is_installment": applied_amount < bill.total_due,
            "source": event.source.value,
            "order_id": event.external_order_id,
        }
        if excess:
            payload["excess_dropped"] = excess

        return NotificationIntent(
            owner_id=bill.owner_id,
            title=text["title"],
            message=text["message"],
            structured_payload=payload,
        )
