"""
Midtrans notification interpreter.

Turns a raw HTTP notification body into a PaymentEvent. Order ids follow
<KIND>-<bill_id>-<timestamp> where KIND is SPP (full payment) or CICILAN
(installment).
"""
import hashlib
import hmac
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Mapping, NamedTuple, Optional

import structlog

from tuition_payments.config import Settings, get_settings
from tuition_payments.core.errors import InvalidSignature, MalformedEvent, MalformedOrderId
from tuition_payments.core.values import (
    GatewayTransactionState,
    OrderKind,
    PaymentEvent,
    PaymentSource,
    parse_amount,
)
from tuition_payments.integrations.midtrans_client import map_transaction_state

logger = structlog.get_logger(__name__)

TRANSACTION_TIME_FORMAT = "%Y-%m-%d %H:%M:%S"
DEFAULT_METHOD_LABEL = "midtrans"

# Minimum number of dash-separated segments per order kind
_MIN_SEGMENTS = {
    OrderKind.FULL: 2,
    OrderKind.INSTALLMENT: 3,
}


class ParsedOrderId(NamedTuple):
    kind: OrderKind
    bill_id: int


def parse_order_id(order_id: Optional[str]) -> ParsedOrderId:
    """
    Split a gateway order id into its kind and bill id.

    Raises:
        MalformedOrderId: unknown kind, too few segments or a non-integer bill id
    """
    if not order_id:
        raise MalformedOrderId(order_id, "missing")

    parts = order_id.split("-")
    try:
        kind = OrderKind(parts[0])
    except ValueError:
        raise MalformedOrderId(order_id, f"unknown kind {parts[0]!r}")
    if kind not in _MIN_SEGMENTS:
        raise MalformedOrderId(order_id, f"{kind.value} orders do not come from the gateway")
    if len(parts) < _MIN_SEGMENTS[kind]:
        raise MalformedOrderId(order_id, "too few segments")
    if not parts[1].isdigit():
        raise MalformedOrderId(order_id, f"bill id {parts[1]!r} is not an integer")
    return ParsedOrderId(kind=kind, bill_id=int(parts[1]))


def compute_signature(order_id: str, status_code: str, gross_amount: str, server_key: str) -> str:
    """Midtrans notification signature: sha512 over the concatenated fields."""
    raw = f"{order_id}{status_code}{gross_amount}{server_key}"
    return hashlib.sha512(raw.encode()).hexdigest()


class WebhookInterpreter:
    """Parses and validates Midtrans HTTP notifications."""

    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()
        self._gateway_tz = timezone(timedelta(hours=self.settings.gateway_utc_offset_hours))

    def verify_signature(self, raw: Mapping[str, Any]) -> None:
        """
        Check the notification's signature_key against the server key.

        Raises:
            InvalidSignature: If the signature is missing or does not match
        """
        received = raw.get("signature_key")
        if not received:
            raise InvalidSignature("Notification has no signature_key")
        expected = compute_signature(
            str(raw.get("order_id", "")),
            str(raw.get("status_code", "")),
            str(raw.get("gross_amount", "")),
            self.settings.midtrans_server_key,
        )
        if not hmac.compare_digest(expected, str(received)):
            logger.warning("webhook_signature_mismatch", order_id=raw.get("order_id"))
            raise InvalidSignature(
                "Notification signature does not match",
                {"order_id": raw.get("order_id")},
            )

    def _occurred_at(self, raw: Mapping[str, Any], received_at: datetime) -> datetime:
        transaction_time = raw.get("transaction_time")
        if not transaction_time:
            return received_at
        try:
            local = datetime.strptime(str(transaction_time), TRANSACTION_TIME_FORMAT)
        except ValueError:
            logger.warning(
                "webhook_transaction_time_unparsable",
                order_id=raw.get("order_id"),
                transaction_time=transaction_time,
            )
            return received_at
        return local.replace(tzinfo=self._gateway_tz).astimezone(timezone.utc)

    def parse(self, raw: Mapping[str, Any], received_at: datetime) -> PaymentEvent:
        """
        Interpret one notification.

        Args:
            raw: Notification body as sent by Midtrans
            received_at: When the notification arrived (fallback for occurred_at)

        Returns:
            PaymentEvent: Gateway-sourced payment event

        Raises:
            MalformedOrderId: If the order id is missing or malformed
            MalformedEvent: If the amount cannot be parsed
            InvalidSignature: If signature verification is enabled and fails
        """
        if not isinstance(raw, Mapping):
            raise MalformedEvent("Notification body must be an object")

        order_id = raw.get("order_id")
        parsed = parse_order_id(order_id)

        if self.settings.midtrans_verify_signature:
            self.verify_signature(raw)

        state = map_transaction_state(raw.get("transaction_status"), raw.get("fraud_status"))
        if state == GatewayTransactionState.UNKNOWN:
            logger.info(
                "webhook_state_unrecognized",
                order_id=order_id,
                transaction_status=raw.get("transaction_status"),
                fraud_status=raw.get("fraud_status"),
            )

        payment_type = raw.get("payment_type") or DEFAULT_METHOD_LABEL
        method_label = (
            f"{payment_type} (installment)"
            if parsed.kind == OrderKind.INSTALLMENT
            else str(payment_type)
        )

        return PaymentEvent(
            source=PaymentSource.GATEWAY_WEBHOOK,
            bill_id=parsed.bill_id,
            external_order_id=order_id,
            amount=parse_amount(raw.get("gross_amount")),
            method_label=method_label,
            occurred_at=self._occurred_at(raw, received_at),
            gateway_transaction_state=state,
        )

    @staticmethod
    def summarize(raw: Mapping[str, Any]) -> Dict[str, Any]:
        """Subset of a notification safe to log and audit."""
        keys = (
            "order_id",
            "transaction_status",
            "fraud_status",
            "gross_amount",
            "payment_type",
            "transaction_time",
            "status_code",
        )
        return {k: raw.get(k) for k in keys if k in raw}
