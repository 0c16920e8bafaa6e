"""
Checkout and bill read models for students and administrators.

Creating a checkout never touches the bill: the bill only changes when the
resulting payment is confirmed by the client or the gateway webhook.
"""
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

import structlog

from tuition_payments.config import Settings, get_settings
from tuition_payments.core.errors import (
    AlreadyPaid,
    BelowMinimum,
    BillNotFound,
    Forbidden,
    InvalidAmount,
    OverLimit,
)
from tuition_payments.core.values import Bill, OrderKind, Status, utcnow
from tuition_payments.database.ledger_store import LedgerStore
from tuition_payments.integrations.midtrans_client import (
    CheckoutOrder,
    CustomerDetails,
    MidtransClient,
)

logger = structlog.get_logger(__name__)


def minimum_payment(bill: Bill, minimum_installment: int) -> int:
    """Smallest accepted payment: the configured minimum, or the remainder if lower."""
    return min(minimum_installment, bill.remaining)


class CheckoutService:
    """Creates gateway checkouts and serves bill and installment views."""

    def __init__(
        self,
        store: LedgerStore,
        gateway: MidtransClient,
        settings: Optional[Settings] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.store = store
        self.gateway = gateway
        self.settings = settings or get_settings()
        self.clock = clock

    async def _owned_bill(self, bill_id: int, owner_id: int) -> Bill:
        bill = await self.store.get_bill(bill_id)
        if bill is None:
            raise BillNotFound(bill_id)
        if bill.owner_id != owner_id:
            raise Forbidden(bill_id, owner_id)
        return bill

    async def create_checkout(
        self,
        bill_id: int,
        owner_id: int,
        amount: int,
        customer: CustomerDetails,
    ) -> Dict[str, Any]:
        """
        Create a Snap checkout for a full or installment payment.

        Args:
            bill_id: Bill to pay
            owner_id: Authenticated caller
            amount: Amount the student wants to pay now
            customer: Customer details forwarded to the gateway

        Returns:
            Dict[str, Any]: Snap token, redirect URL, order id and payment projection

        Raises:
            BillNotFound: If the bill does not exist
            Forbidden: If the caller does not own the bill
            AlreadyPaid: If nothing remains to be paid
            InvalidAmount: If amount is not positive
            OverLimit: If amount exceeds the remaining balance
            BelowMinimum: If amount is below the accepted minimum
            GatewayError: If Midtrans rejects or cannot be reached
        """
        bill = await self._owned_bill(bill_id, owner_id)
        remaining = bill.remaining

        if remaining <= 0:
            raise AlreadyPaid(bill_id)
        if amount <= 0:
            raise InvalidAmount(amount)
        if amount > remaining:
            raise OverLimit(amount, remaining)
        minimum = minimum_payment(bill, self.settings.minimum_installment_amount)
        if amount < minimum:
            raise BelowMinimum(amount, minimum)

        settles = amount == remaining
        kind = OrderKind.FULL if settles else OrderKind.INSTALLMENT
        order_id = f"{kind.value}-{bill.id}-{int(self.clock().timestamp())}"
        item_name = (
            f"SPP {bill.period_label}" if settles else f"Installment SPP {bill.period_label}"
        )

        token = await self.gateway.create_checkout(
            CheckoutOrder(
                order_id=order_id,
                bill_id=bill.id,
                gross_amount=amount,
                item_name=item_name,
                customer=customer,
                is_installment=not settles,
                amount_paid_before=bill.amount_paid,
            )
        )

        logger.info(
            "checkout_created",
            bill_id=bill.id,
            order_id=order_id,
            amount=amount,
            kind=kind.value,
        )

        return {
            "snap_token": token.token,
            "redirect_url": token.redirect_url,
            "order_id": order_id,
            "amount": amount,
            "bill_id": bill.id,
            "bill": {
                "period": bill.period_label,
                "total_due": bill.total_due,
                "amount_paid": bill.amount_paid,
                "remaining_after_payment": remaining - amount,
                "will_be_fully_paid": settles,
            },
        }

    async def bill_detail(self, bill_id: int, owner_id: int) -> Dict[str, Any]:
        """Bill snapshot plus the payment options open to the student."""
        bill = await self._owned_bill(bill_id, owner_id)
        detail = bill.snapshot()
        detail["period"] = bill.period_label
        detail["min_payment"] = minimum_payment(bill, self.settings.minimum_installment_amount)
        detail["can_pay_installment"] = bill.remaining > 0
        return detail

    async def installment_history(
        self, owner_id: int, bill_id: Optional[int] = None
    ) -> Dict[str, Any]:
        """
        Applied payment records of a student, optionally for one bill.

        Raises:
            BillNotFound: If bill_id is given and does not exist
            Forbidden: If bill_id is given and belongs to someone else
        """
        bill: Optional[Bill] = None
        if bill_id is not None:
            bill = await self._owned_bill(bill_id, owner_id)

        records = await self.store.list_installment_records(owner_id, bill_id=bill_id)
        items: List[Dict[str, Any]] = [record.to_dict() for record in records]
        return {
            "bill": bill.snapshot() if bill else None,
            "installments": items,
            "total_paid": sum(record.amount for record in records),
            "installment_count": len(records),
        }

    async def list_bills(self, status: Optional[str] = None, limit: int = 10) -> Dict[str, Any]:
        """
        Administrator overview of bills, most recently paid first.

        Args:
            status: Optional filter; legacy synonyms such as "lunas",
                "verified" and "cicilan" are accepted
            limit: Maximum number of bills returned

        Raises:
            MalformedEvent: If the status filter is not a known status
        """
        wanted = Status.normalize(status) if status else None
        bills = await self.store.list_bills(status=wanted, limit=limit)
        return {
            "status": wanted.value if wanted else None,
            "count": len(bills),
            "bills": [bill.snapshot() for bill in bills],
        }

    async def admin_bill_detail(self, bill_id: int) -> Dict[str, Any]:
        """Any bill with every payment applied to it."""
        bill = await self.store.get_bill(bill_id)
        if bill is None:
            raise BillNotFound(bill_id)

        records = await self.store.list_installment_records(bill.owner_id, bill_id=bill.id)
        detail = bill.snapshot()
        detail["period"] = bill.period_label
        detail["payments"] = [record.to_dict() for record in records]
        detail["payment_count"] = len(records)
        return detail
