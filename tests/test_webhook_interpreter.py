"""
Unit tests for the Midtrans notification interpreter.
"""
from datetime import datetime, timezone

import pytest

from tuition_payments.core.errors import InvalidSignature, MalformedEvent, MalformedOrderId
from tuition_payments.core.values import GatewayTransactionState, OrderKind, PaymentSource
from tuition_payments.integrations.midtrans_client import map_transaction_state
from tuition_payments.integrations.webhook_interpreter import (
    WebhookInterpreter,
    compute_signature,
    parse_order_id,
)

SERVER_KEY = "SB-Mid-server-test-key"
RECEIVED_AT = datetime(2025, 1, 6, 4, 30, tzinfo=timezone.utc)


class TestParseOrderId:
    """Test suite for order id parsing."""

    @pytest.mark.unit
    @pytest.mark.parametrize(
        "order_id, kind, bill_id",
        [
            ("SPP-42-1736132400", OrderKind.FULL, 42),
            ("SPP-42", OrderKind.FULL, 42),
            ("CICILAN-42-1700000000", OrderKind.INSTALLMENT, 42),
            ("CICILAN-7-1700000000-retry", OrderKind.INSTALLMENT, 7),
        ],
    )
    def test_valid(self, order_id: str, kind: OrderKind, bill_id: int) -> None:
        parsed = parse_order_id(order_id)
        assert parsed.kind == kind
        assert parsed.bill_id == bill_id

    @pytest.mark.unit
    @pytest.mark.parametrize(
        "order_id",
        [None, "", "SPP", "CICILAN-42", "spp-42-1", "INV-42-1", "SPP-x42-1", "SPP--1", "MANUAL-42-t"],
    )
    def test_invalid(self, order_id) -> None:
        with pytest.raises(MalformedOrderId):
            parse_order_id(order_id)


class TestTransactionState:
    """Test suite for gateway state mapping."""

    @pytest.mark.unit
    @pytest.mark.parametrize(
        "status, fraud, expected",
        [
            ("settlement", None, GatewayTransactionState.SETTLEMENT),
            ("capture", "accept", GatewayTransactionState.CAPTURE_ACCEPTED),
            ("capture", "challenge", GatewayTransactionState.UNKNOWN),
            ("capture", None, GatewayTransactionState.UNKNOWN),
            ("pending", None, GatewayTransactionState.PENDING),
            ("deny", "deny", GatewayTransactionState.DENIED),
            ("cancel", None, GatewayTransactionState.CANCELLED),
            ("expire", None, GatewayTransactionState.EXPIRED),
            ("refund", None, GatewayTransactionState.UNKNOWN),
            (None, None, GatewayTransactionState.UNKNOWN),
        ],
    )
    def test_map_transaction_state(self, status, fraud, expected) -> None:
        assert map_transaction_state(status, fraud) == expected


class TestWebhookInterpreter:
    """Test suite for WebhookInterpreter."""

    @pytest.fixture
    def interpreter(self, test_settings) -> WebhookInterpreter:
        return WebhookInterpreter(settings=test_settings)

    @pytest.mark.unit
    def test_parse_settlement(self, interpreter, webhook_payload) -> None:
        event = interpreter.parse(webhook_payload(), RECEIVED_AT)

        assert event.source == PaymentSource.GATEWAY_WEBHOOK
        assert event.bill_id == 42
        assert event.external_order_id == "CICILAN-42-1700000000"
        assert event.amount == 150000
        assert event.gateway_transaction_state == GatewayTransactionState.SETTLEMENT
        assert event.method_label == "bank_transfer (installment)"
        # transaction_time is Western Indonesian Time
        assert event.occurred_at == datetime(2025, 1, 6, 3, 0, tzinfo=timezone.utc)

    @pytest.mark.unit
    def test_full_order_label(self, interpreter, webhook_payload) -> None:
        event = interpreter.parse(
            webhook_payload(order_id="SPP-42-1", payment_type="qris"), RECEIVED_AT
        )
        assert event.method_label == "qris"

    @pytest.mark.unit
    def test_missing_transaction_time_uses_received_at(self, interpreter, webhook_payload) -> None:
        payload = webhook_payload()
        del payload["transaction_time"]
        assert interpreter.parse(payload, RECEIVED_AT).occurred_at == RECEIVED_AT

        payload["transaction_time"] = "06/01/2025 10:00"
        assert interpreter.parse(payload, RECEIVED_AT).occurred_at == RECEIVED_AT

    @pytest.mark.unit
    def test_missing_payment_type(self, interpreter, webhook_payload) -> None:
        payload = webhook_payload(order_id="SPP-42-1")
        del payload["payment_type"]
        assert interpreter.parse(payload, RECEIVED_AT).method_label == "midtrans"

    @pytest.mark.unit
    def test_pending_parses(self, interpreter, webhook_payload) -> None:
        event = interpreter.parse(webhook_payload(transaction_status="pending"), RECEIVED_AT)
        assert event.gateway_transaction_state == GatewayTransactionState.PENDING

    @pytest.mark.unit
    @pytest.mark.parametrize("gross_amount", ["", "abc", "-5000.00", "1500.50"])
    def test_bad_amount(self, interpreter, webhook_payload, gross_amount) -> None:
        with pytest.raises(MalformedEvent):
            interpreter.parse(webhook_payload(gross_amount=gross_amount), RECEIVED_AT)

    @pytest.mark.unit
    def test_non_object_body(self, interpreter) -> None:
        with pytest.raises(MalformedEvent, match="must be an object"):
            interpreter.parse(["order_id"], RECEIVED_AT)

    @pytest.mark.unit
    def test_signature(self, test_settings, webhook_payload) -> None:
        interpreter = WebhookInterpreter(
            settings=test_settings.model_copy(update={"midtrans_verify_signature": True})
        )
        payload = webhook_payload()
        interpreter.verify_signature(payload)
        assert interpreter.parse(payload, RECEIVED_AT).amount == 150000

        tampered = dict(payload, gross_amount="1500000.00")
        with pytest.raises(InvalidSignature):
            interpreter.parse(tampered, RECEIVED_AT)

        unsigned = dict(payload)
        del unsigned["signature_key"]
        with pytest.raises(InvalidSignature, match="no signature_key"):
            interpreter.verify_signature(unsigned)

    @pytest.mark.unit
    def test_compute_signature(self) -> None:
        signature = compute_signature("SPP-42-1", "200", "500000.00", SERVER_KEY)
        assert len(signature) == 128
        assert signature != compute_signature("SPP-42-1", "200", "500000.00", "other")

    @pytest.mark.unit
    def test_summarize(self, webhook_payload) -> None:
        summary = WebhookInterpreter.summarize(webhook_payload())
        assert summary["order_id"] == "CICILAN-42-1700000000"
        assert "signature_key" not in summary
