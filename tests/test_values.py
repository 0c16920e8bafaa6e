"""
Unit tests for value types.
"""
from datetime import datetime, timezone

import pytest
from pydantic import ValidationError

from tuition_payments.core.errors import MalformedEvent
from tuition_payments.core.values import (
    Bill,
    GatewayTransactionState,
    PaymentEvent,
    PaymentSource,
    Status,
    derive_status,
    format_rupiah,
    parse_amount,
)

NOW = datetime(2025, 1, 6, tzinfo=timezone.utc)


class TestDeriveStatus:
    """Test suite for status derivation."""

    @pytest.mark.unit
    @pytest.mark.parametrize(
        "total_due, amount_paid, expected",
        [
            (500000, 0, Status.UNPAID),
            (500000, 1, Status.PARTIAL),
            (500000, 499999, Status.PARTIAL),
            (500000, 500000, Status.PAID),
            (0, 0, Status.PAID),
        ],
    )
    def test_derive_status(self, total_due: int, amount_paid: int, expected: Status) -> None:
        assert derive_status(total_due, amount_paid) == expected

    @pytest.mark.unit
    @pytest.mark.parametrize(
        "raw, expected",
        [
            ("lunas", Status.PAID),
            ("verified", Status.PAID),
            ("PAID", Status.PAID),
            ("cicilan", Status.PARTIAL),
            ("pending", Status.UNPAID),
            ("rejected", Status.FAILED),
            (" unpaid ", Status.UNPAID),
        ],
    )
    def test_normalize_synonyms(self, raw: str, expected: Status) -> None:
        assert Status.normalize(raw) == expected

    @pytest.mark.unit
    def test_normalize_unknown_status(self) -> None:
        with pytest.raises(MalformedEvent, match="Unknown bill status"):
            Status.normalize("refunded")


class TestParseAmount:
    """Test suite for amount parsing."""

    @pytest.mark.unit
    @pytest.mark.parametrize(
        "raw, expected",
        [(150000, 150000), ("150000", 150000), ("150000.00", 150000), (" 75000 ", 75000)],
    )
    def test_parse_valid(self, raw: object, expected: int) -> None:
        assert parse_amount(raw) == expected

    @pytest.mark.unit
    @pytest.mark.parametrize("raw", [None, True, "abc", "-100", "150000.50", "NaN", ""])
    def test_parse_invalid(self, raw: object) -> None:
        with pytest.raises(MalformedEvent):
            parse_amount(raw)

    @pytest.mark.unit
    def test_format_rupiah(self) -> None:
        assert format_rupiah(1500000) == "Rp 1.500.000"
        assert format_rupiah(0) == "Rp 0"


class TestBill:
    """Test suite for bill snapshot invariants."""

    @pytest.mark.unit
    def test_remaining_and_snapshot(self, make_bill) -> None:
        bill = make_bill(amount_paid=200000)
        assert bill.remaining == 300000
        snapshot = bill.snapshot()
        assert snapshot["status"] == "partial"
        assert snapshot["remaining"] == 300000
        assert snapshot["last_payment_at"] is None

    @pytest.mark.unit
    def test_rejects_overpaid_snapshot(self, make_bill) -> None:
        with pytest.raises(ValidationError, match="cannot exceed"):
            make_bill(amount_paid=600000, status=Status.PAID)

    @pytest.mark.unit
    def test_rejects_inconsistent_status(self, make_bill) -> None:
        with pytest.raises(ValidationError, match="inconsistent"):
            make_bill(amount_paid=0, status=Status.PARTIAL)
        with pytest.raises(ValidationError, match="inconsistent"):
            make_bill(amount_paid=100000, status=Status.PAID)

    @pytest.mark.unit
    def test_failed_only_without_payments(self, make_bill) -> None:
        assert make_bill(status=Status.FAILED).status == Status.FAILED
        with pytest.raises(ValidationError, match="without payments"):
            make_bill(amount_paid=100000, status=Status.FAILED)

    @pytest.mark.unit
    def test_bill_is_frozen(self, make_bill) -> None:
        bill = make_bill()
        with pytest.raises(ValidationError):
            bill.amount_paid = 100


class TestPaymentEvent:
    """Test suite for payment event validation."""

    @pytest.mark.unit
    def test_gateway_event_requires_state(self) -> None:
        with pytest.raises(ValidationError, match="transaction state"):
            PaymentEvent(
                source=PaymentSource.GATEWAY_WEBHOOK,
                bill_id=42,
                external_order_id="SPP-42-1",
                amount=100000,
                method_label="gopay",
                occurred_at=NOW,
            )

    @pytest.mark.unit
    def test_only_gateway_events_carry_state(self) -> None:
        with pytest.raises(ValidationError, match="only gateway events"):
            PaymentEvent(
                source=PaymentSource.ADMIN_MANUAL,
                bill_id=42,
                amount=100000,
                method_label="cash",
                occurred_at=NOW,
                gateway_transaction_state=GatewayTransactionState.SETTLEMENT,
            )

    @pytest.mark.unit
    def test_client_event_requires_order_id(self) -> None:
        with pytest.raises(ValidationError, match="order id"):
            PaymentEvent(
                source=PaymentSource.CLIENT_REPORTED,
                bill_id=42,
                amount=100000,
                method_label="gopay",
                occurred_at=NOW,
            )

    @pytest.mark.unit
    def test_dedup_key(self, make_event) -> None:
        assert make_event(100000).dedup_key == "SPP-42-1736132400"
        manual = make_event(100000, source=PaymentSource.ADMIN_MANUAL, order_id=None)
        assert manual.dedup_key == f"42:admin_manual:100000:{NOW.replace(hour=3).isoformat()}"

    @pytest.mark.unit
    def test_success_states(self) -> None:
        assert GatewayTransactionState.SETTLEMENT.is_success
        assert GatewayTransactionState.CAPTURE_ACCEPTED.is_success
        assert not GatewayTransactionState.PENDING.is_success
        assert not GatewayTransactionState.EXPIRED.is_success
