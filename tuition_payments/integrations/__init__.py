"""External integrations: Midtrans gateway and push notifications."""
from .midtrans_client import (
    CheckoutOrder,
    CheckoutToken,
    CustomerDetails,
    GatewayError,
    GatewayErrorType,
    GatewayStatus,
    MidtransClient,
)
from .notifier import HttpPushNotifier, LoggingNotifier, Notifier
from .webhook_interpreter import WebhookInterpreter, parse_order_id

__all__ = [
    "CheckoutOrder",
    "CheckoutToken",
    "CustomerDetails",
    "GatewayError",
    "GatewayErrorType",
    "GatewayStatus",
    "HttpPushNotifier",
    "LoggingNotifier",
    "MidtransClient",
    "Notifier",
    "WebhookInterpreter",
    "parse_order_id",
]
