"""
Midtrans API client with retry logic and error classification.

Implements:
- Snap checkout creation
- Core API transaction status lookup
- Exponential backoff for transient errors
"""
import base64
import time
from enum import Enum
from typing import Any, Dict, List, Optional

import httpx
import structlog
from pydantic import BaseModel, ConfigDict, Field
from tenacity import (
    retry,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from tuition_payments.config import Settings, get_settings
from tuition_payments.core.values import GatewayTransactionState, parse_amount
from tuition_payments.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

ENABLED_PAYMENTS = [
    "qris", "gopay", "shopeepay", "other_qris",
    "bca_va", "bni_va", "bri_va", "mandiri_va", "permata_va", "other_va",
    "indomaret", "alfamart",
]


class GatewayErrorType(Enum):
    """Classification of Midtrans errors for retry logic."""

    TRANSIENT = "transient"  # Retry these
    PERMANENT = "permanent"  # Don't retry these


class GatewayError(Exception):
    """Base exception for Midtrans-related errors."""

    def __init__(
        self,
        message: str,
        error_type: GatewayErrorType,
        status_code: Optional[int] = None,
        original_error: Optional[Exception] = None,
    ):
        """
        Initialize gateway error.

        Args:
            message: Error message
            error_type: Classification of error
            status_code: HTTP status returned by Midtrans, if any
            original_error: Original httpx exception
        """
        super().__init__(message)
        self.error_type = error_type
        self.status_code = status_code
        self.original_error = original_error


def _is_transient(error: BaseException) -> bool:
    return isinstance(error, GatewayError) and error.error_type == GatewayErrorType.TRANSIENT


class CustomerDetails(BaseModel):
    first_name: str
    email: Optional[str] = None
    phone: str = ""


class CheckoutOrder(BaseModel):
    """Snap transaction request for one bill payment."""

    model_config = ConfigDict(frozen=True)

    order_id: str
    bill_id: int
    gross_amount: int = Field(gt=0)
    item_name: str
    customer: CustomerDetails
    is_installment: bool = False
    amount_paid_before: int = 0

    def to_payload(self) -> Dict[str, Any]:
        """Snap API request body."""
        item_prefix = "cicilan-spp" if self.is_installment else "spp"
        return {
            "transaction_details": {
                "order_id": self.order_id,
                "gross_amount": self.gross_amount,
            },
            "customer_details": self.customer.model_dump(exclude_none=True),
            "item_details": [
                {
                    "id": f"{item_prefix}-{self.bill_id}",
                    "price": self.gross_amount,
                    "quantity": 1,
                    "name": self.item_name,
                    "category": "Education",
                }
            ],
            "enabled_payments": ENABLED_PAYMENTS,
            "custom_field1": "installment" if self.is_installment else "full",
            "custom_field2": str(self.bill_id),
            "custom_field3": str(self.amount_paid_before),
        }


class CheckoutToken(BaseModel):
    model_config = ConfigDict(frozen=True)

    token: str
    redirect_url: Optional[str] = None


class GatewayStatus(BaseModel):
    """Transaction status as reported by the Core API."""

    model_config = ConfigDict(frozen=True)

    order_id: str
    amount: int
    state: GatewayTransactionState
    payment_type: Optional[str] = None


def map_transaction_state(
    transaction_status: Optional[str], fraud_status: Optional[str]
) -> GatewayTransactionState:
    """
    Map Midtrans transaction_status/fraud_status onto a normalized state.

    capture is only a success when fraud_status is accept; a challenged
    capture stays unknown.
    """
    status = (transaction_status or "").lower()
    fraud = (fraud_status or "").lower()
    if status == "capture":
        if fraud == "accept":
            return GatewayTransactionState.CAPTURE_ACCEPTED
        return GatewayTransactionState.UNKNOWN
    return {
        "settlement": GatewayTransactionState.SETTLEMENT,
        "pending": GatewayTransactionState.PENDING,
        "deny": GatewayTransactionState.DENIED,
        "cancel": GatewayTransactionState.CANCELLED,
        "expire": GatewayTransactionState.EXPIRED,
    }.get(status, GatewayTransactionState.UNKNOWN)


class MidtransClient:
    """
    Wrapper for the Midtrans Snap and Core APIs.

    Features:
    - Automatic retry with exponential backoff on network errors, 5xx and 429
    - Error classification (transient/permanent)
    - Basic auth with the server key
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        http_client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        """
        Initialize Midtrans client.

        Args:
            settings: Optional settings override
            http_client: Optional httpx client (tests pass one with a mock transport)
        """
        self.settings = settings or get_settings()
        self._client = http_client or httpx.AsyncClient(
            timeout=self.settings.midtrans_timeout_seconds
        )

        logger.info(
            "midtrans_client_initialized",
            production=self.settings.midtrans_is_production,
        )

    def _headers(self) -> Dict[str, str]:
        auth = base64.b64encode(f"{self.settings.midtrans_server_key}:".encode()).decode()
        return {
            "Accept": "application/json",
            "Content-Type": "application/json",
            "Authorization": f"Basic {auth}",
        }

    @staticmethod
    def _classify_status(status_code: int) -> GatewayErrorType:
        """
        Classify an HTTP error status for retry logic.

        Args:
            status_code: HTTP status code

        Returns:
            GatewayErrorType: Error classification
        """
        if status_code == 429 or status_code >= 500:
            return GatewayErrorType.TRANSIENT
        return GatewayErrorType.PERMANENT

    async def _request(
        self, operation: str, method: str, url: str, json: Optional[Dict[str, Any]] = None
    ) -> Dict[str, Any]:
        start = time.perf_counter()
        try:
            response = await self._client.request(method, url, json=json, headers=self._headers())
        except httpx.HTTPError as e:
            metrics.record_gateway_api_call(operation, "error", time.perf_counter() - start)
            metrics.record_gateway_api_error(GatewayErrorType.TRANSIENT.value)
            logger.error("midtrans_api_error", operation=operation, error=str(e), error_type="transient")
            raise GatewayError(str(e), GatewayErrorType.TRANSIENT, original_error=e)

        duration = time.perf_counter() - start
        try:
            body = response.json()
        except ValueError:
            body = {}

        # Core API reports failures in the body with an HTTP 200 envelope
        status_code = response.status_code
        if status_code < 400 and operation == "query_status":
            body_code = str(body.get("status_code", "200"))
            if body_code.isdigit() and int(body_code) >= 400:
                status_code = int(body_code)

        if status_code >= 400:
            error_type = self._classify_status(status_code)
            metrics.record_gateway_api_call(operation, "error", duration)
            metrics.record_gateway_api_error(error_type.value)
            messages: List[str] = body.get("error_messages") or [body.get("status_message", "")]
            logger.error(
                "midtrans_api_error",
                operation=operation,
                status_code=status_code,
                error_type=error_type.value,
                error_messages=messages,
            )
            raise GatewayError(
                "; ".join(m for m in messages if m) or f"HTTP {status_code}",
                error_type,
                status_code=status_code,
            )

        metrics.record_gateway_api_call(operation, "success", duration)
        return body

    @retry(
        retry=retry_if_exception(_is_transient),
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=0.5, min=0.5, max=4),
        reraise=True,
    )
    async def create_checkout(self, order: CheckoutOrder) -> CheckoutToken:
        """
        Create a Snap transaction.

        Args:
            order: Checkout order

        Returns:
            CheckoutToken: Snap token and redirect URL

        Raises:
            GatewayError: If the transaction cannot be created
        """
        logger.info(
            "creating_snap_transaction",
            order_id=order.order_id,
            gross_amount=order.gross_amount,
        )
        body = await self._request(
            "create_checkout",
            "POST",
            f"{self.settings.snap_base_url}/transactions",
            json=order.to_payload(),
        )
        token = body.get("token")
        if not token:
            raise GatewayError("Snap response has no token", GatewayErrorType.PERMANENT)

        logger.info("snap_transaction_created", order_id=order.order_id)
        return CheckoutToken(token=token, redirect_url=body.get("redirect_url"))

    @retry(
        retry=retry_if_exception(_is_transient),
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=0.5, min=0.5, max=4),
        reraise=True,
    )
    async def query_status(self, order_id: str) -> GatewayStatus:
        """
        Look up the current transaction status of an order.

        Args:
            order_id: Gateway order id

        Returns:
            GatewayStatus: Amount and normalized state

        Raises:
            GatewayError: If the lookup fails
        """
        logger.info("querying_transaction_status", order_id=order_id)
        body = await self._request(
            "query_status",
            "GET",
            f"{self.settings.core_api_base_url}/{order_id}/status",
        )
        return GatewayStatus(
            order_id=body.get("order_id", order_id),
            amount=parse_amount(body.get("gross_amount")),
            state=map_transaction_state(body.get("transaction_status"), body.get("fraud_status")),
            payment_type=body.get("payment_type"),
        )

    async def close(self) -> None:
        """Close the underlying HTTP client."""
        await self._client.aclose()
