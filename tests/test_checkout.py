"""
Unit tests for checkout creation and bill views.
"""
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock

import pytest

from tuition_payments.core.checkout import CheckoutService, minimum_payment
from tuition_payments.core.errors import (
    AlreadyPaid,
    BelowMinimum,
    BillNotFound,
    Forbidden,
    InvalidAmount,
    MalformedEvent,
    OverLimit,
)
from tuition_payments.integrations.midtrans_client import CheckoutToken, CustomerDetails

CUSTOMER = CustomerDetails(first_name="Siti Rahma", email="siti@example.com", phone="0812")


@pytest.fixture
def gateway() -> AsyncMock:
    gateway = AsyncMock()
    gateway.create_checkout.return_value = CheckoutToken(
        token="snap-token-123", redirect_url="https://app.sandbox.midtrans.com/snap/v2/vtweb/snap-token-123"
    )
    return gateway


@pytest.fixture
def checkout(store, gateway, test_settings, fixed_clock) -> CheckoutService:
    return CheckoutService(store=store, gateway=gateway, settings=test_settings, clock=fixed_clock)


class TestCheckoutService:
    """Test suite for CheckoutService."""

    @pytest.mark.unit
    def test_minimum_payment(self, make_bill) -> None:
        assert minimum_payment(make_bill(), 50000) == 50000
        assert minimum_payment(make_bill(amount_paid=480000), 50000) == 20000

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_full_checkout(self, checkout, gateway, store) -> None:
        result = await checkout.create_checkout(42, 7, 500000, CUSTOMER)

        assert result["order_id"] == "SPP-42-1736132400"
        assert result["snap_token"] == "snap-token-123"
        assert result["bill"]["will_be_fully_paid"] is True
        assert result["bill"]["remaining_after_payment"] == 0

        order = gateway.create_checkout.await_args.args[0]
        assert order.gross_amount == 500000
        assert not order.is_installment
        assert order.item_name == "SPP January 2025"
        # Checkout never touches the bill
        assert store.bills[42].amount_paid == 0
        assert store.bills[42].version == 0

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_installment_checkout(self, checkout, gateway, store, make_bill) -> None:
        store.add_bill(make_bill(amount_paid=100000))

        result = await checkout.create_checkout(42, 7, 150000, CUSTOMER)

        assert result["order_id"] == "CICILAN-42-1736132400"
        assert result["bill"]["remaining_after_payment"] == 250000
        assert result["bill"]["will_be_fully_paid"] is False
        order = gateway.create_checkout.await_args.args[0]
        assert order.is_installment
        assert order.amount_paid_before == 100000

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_small_remainder_can_be_settled(self, checkout, store, make_bill) -> None:
        store.add_bill(make_bill(amount_paid=480000))

        result = await checkout.create_checkout(42, 7, 20000, CUSTOMER)

        assert result["order_id"].startswith("SPP-42-")

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_validation(self, checkout, gateway, store, make_bill) -> None:
        with pytest.raises(BelowMinimum) as exc_info:
            await checkout.create_checkout(42, 7, 10000, CUSTOMER)
        assert exc_info.value.details["min_amount"] == 50000

        with pytest.raises(OverLimit) as over:
            await checkout.create_checkout(42, 7, 600000, CUSTOMER)
        assert over.value.details["max_amount"] == 500000

        with pytest.raises(InvalidAmount):
            await checkout.create_checkout(42, 7, 0, CUSTOMER)

        with pytest.raises(Forbidden):
            await checkout.create_checkout(42, 8, 500000, CUSTOMER)

        with pytest.raises(BillNotFound):
            await checkout.create_checkout(99, 7, 500000, CUSTOMER)

        store.add_bill(make_bill(amount_paid=500000))
        with pytest.raises(AlreadyPaid):
            await checkout.create_checkout(42, 7, 50000, CUSTOMER)

        gateway.create_checkout.assert_not_awaited()

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_bill_detail(self, checkout, store, make_bill) -> None:
        store.add_bill(make_bill(amount_paid=480000))

        detail = await checkout.bill_detail(42, 7)

        assert detail["period"] == "January 2025"
        assert detail["remaining"] == 20000
        assert detail["min_payment"] == 20000
        assert detail["can_pay_installment"] is True

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_installment_history(self, checkout, orchestrator, store, make_bill) -> None:
        store.add_bill(make_bill(bill_id=43))
        await orchestrator.confirm_client_payment(42, 7, "CICILAN-42-1", amount=100000)
        await orchestrator.confirm_client_payment(42, 7, "CICILAN-42-2", amount=150000)
        await orchestrator.confirm_client_payment(43, 7, "SPP-43-1", amount=500000)

        history = await checkout.installment_history(7, bill_id=42)
        assert history["installment_count"] == 2
        assert history["total_paid"] == 250000
        assert history["bill"]["amount_paid"] == 250000
        assert {item["order_id"] for item in history["installments"]} == {"CICILAN-42-1", "CICILAN-42-2"}

        everything = await checkout.installment_history(7)
        assert everything["bill"] is None
        assert everything["installment_count"] == 3
        assert everything["total_paid"] == 750000

        with pytest.raises(Forbidden):
            await checkout.installment_history(8, bill_id=42)


class TestAdminBillViews:
    """Test suite for administrator bill views."""

    @pytest.fixture
    def bills(self, store, make_bill) -> None:
        paid_at = datetime(2025, 1, 5, 3, 0, tzinfo=timezone.utc)
        store.add_bill(make_bill(bill_id=43, amount_paid=500000, last_payment_at=paid_at))
        store.add_bill(
            make_bill(bill_id=44, amount_paid=100000, last_payment_at=paid_at + timedelta(days=1))
        )
        store.add_bill(make_bill(bill_id=45, owner_id=8))

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_recently_paid_first(self, checkout, bills) -> None:
        overview = await checkout.list_bills()

        assert overview["status"] is None
        assert overview["count"] == 4
        assert [bill["id"] for bill in overview["bills"]] == [44, 43, 45, 42]

        limited = await checkout.list_bills(limit=2)
        assert [bill["id"] for bill in limited["bills"]] == [44, 43]

    @pytest.mark.unit
    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "status, expected_status, expected_ids",
        [
            ("paid", "paid", [43]),
            ("lunas", "paid", [43]),
            ("Verified", "paid", [43]),
            ("cicilan", "partial", [44]),
            ("unpaid", "unpaid", [45, 42]),
            ("failed", "failed", []),
        ],
    )
    async def test_status_filter_accepts_synonyms(
        self, checkout, bills, status, expected_status, expected_ids
    ) -> None:
        overview = await checkout.list_bills(status=status)

        assert overview["status"] == expected_status
        assert [bill["id"] for bill in overview["bills"]] == expected_ids

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_unknown_status_filter(self, checkout) -> None:
        with pytest.raises(MalformedEvent):
            await checkout.list_bills(status="refunded")

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_admin_bill_detail(self, checkout, orchestrator) -> None:
        await orchestrator.confirm_client_payment(42, 7, "CICILAN-42-1", amount=100000)

        detail = await checkout.admin_bill_detail(42)
        assert detail["amount_paid"] == 100000
        assert detail["period"] == "January 2025"
        assert detail["payment_count"] == 1
        assert detail["payments"][0]["order_id"] == "CICILAN-42-1"

        with pytest.raises(BillNotFound):
            await checkout.admin_bill_detail(99)
