"""
Pydantic schemas for API request/response models.
"""
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, Field, field_validator


class ConfirmPaymentRequest(BaseModel):
    """Request schema for a client-reported payment success."""

    bill_id: int = Field(..., gt=0, description="Bill the payment is for")
    order_id: str = Field(..., min_length=1, max_length=100, description="Gateway order id")
    amount: Optional[int] = Field(
        default=None, description="Amount paid; resolved from the order when omitted"
    )
    payment_type: Optional[str] = Field(
        default=None, max_length=100, description="Payment method reported by the client"
    )
    is_installment: bool = Field(default=False, description="Payment is an installment")

    model_config = {
        "json_schema_extra": {
            "examples": [
                {
                    "bill_id": 42,
                    "order_id": "CICILAN-42-1736150400",
                    "amount": 500000,
                    "payment_type": "gopay",
                    "is_installment": True,
                }
            ]
        }
    }


class CheckoutRequest(BaseModel):
    """Request schema for creating a gateway checkout."""

    bill_id: int = Field(..., gt=0, description="Bill to pay")
    amount: int = Field(..., description="Amount to pay now (rupiah)")
    customer_name: str = Field(..., min_length=1, max_length=255, description="Payer name")
    email: Optional[str] = Field(default=None, max_length=255, description="Payer email")
    phone: str = Field(default="", max_length=30, description="Payer phone number")

    model_config = {
        "json_schema_extra": {
            "examples": [
                {
                    "bill_id": 42,
                    "amount": 1500000,
                    "customer_name": "Siti Rahma",
                    "email": "siti@example.com",
                    "phone": "081234567890",
                }
            ]
        }
    }


class CheckoutResponse(BaseModel):
    """Response schema for checkout creation."""

    snap_token: str = Field(..., description="Snap token for the payment page")
    redirect_url: Optional[str] = Field(default=None, description="Hosted payment page URL")
    order_id: str = Field(..., description="Gateway order id")
    amount: int = Field(..., description="Checkout amount")
    bill_id: int = Field(..., description="Bill id")
    bill: Dict[str, Any] = Field(..., description="Bill projection after this payment")


class ManualPaymentRequest(BaseModel):
    """Request schema for an administrator's manual payment entry."""

    amount: int = Field(..., description="Amount received (rupiah)")
    idempotency_token: Optional[str] = Field(
        default=None,
        min_length=1,
        max_length=64,
        description="Makes resubmissions of the same entry duplicates",
    )
    method: Optional[str] = Field(default=None, max_length=100, description="Payment method label")

    @field_validator("idempotency_token")
    @classmethod
    def validate_token(cls, v: Optional[str]) -> Optional[str]:
        """Tokens become part of an order id; keep them to a safe alphabet."""
        if v is not None and not all(c.isalnum() or c in "-_.:" for c in v):
            raise ValueError("Token may only contain letters, digits, '-', '_', '.' and ':'")
        return v


class VerifyBillRequest(BaseModel):
    """Request schema for administrator verification."""

    action: Literal["verify", "reject"] = Field(
        default="verify", description="verify settles the bill, reject fails an unpaid bill"
    )


class OutcomeResponse(BaseModel):
    """Response schema for every reconciliation entry point."""

    outcome: str = Field(..., description="applied, duplicate, no_op, not_found, forbidden, rejected, retryable_failure")
    reason: Optional[str] = Field(default=None, description="Machine-readable reason")
    details: Dict[str, Any] = Field(default_factory=dict, description="Structured details")
    bill: Optional[Dict[str, Any]] = Field(default=None, description="Bill snapshot")
    applied_amount: Optional[int] = Field(default=None, description="Amount applied")


class BillDetailResponse(BaseModel):
    """Response schema for a bill with its payment options."""

    id: int
    owner_id: int
    period_month: str
    period_year: int
    period: str
    total_due: int
    amount_paid: int
    remaining: int
    status: str
    last_payment_method: Optional[str] = None
    last_payment_at: Optional[str] = None
    min_payment: int
    can_pay_installment: bool


class BillListResponse(BaseModel):
    """Response schema for the administrator bill overview."""

    status: Optional[str] = Field(default=None, description="Normalized status filter")
    count: int = Field(..., description="Number of bills returned")
    bills: List[Dict[str, Any]] = Field(..., description="Bill snapshots, most recently paid first")


class AdminBillDetailResponse(BaseModel):
    """Response schema for a bill seen by an administrator."""

    id: int
    owner_id: int
    period_month: str
    period_year: int
    period: str
    total_due: int
    amount_paid: int
    remaining: int
    status: str
    last_payment_method: Optional[str] = None
    last_payment_at: Optional[str] = None
    payments: List[Dict[str, Any]] = Field(..., description="Applied payment records, newest first")
    payment_count: int


class InstallmentHistoryResponse(BaseModel):
    """Response schema for installment history."""

    bill: Optional[Dict[str, Any]] = Field(default=None, description="Bill snapshot when filtered by bill")
    installments: List[Dict[str, Any]] = Field(..., description="Applied payment records, newest first")
    total_paid: int = Field(..., description="Sum of applied amounts")
    installment_count: int = Field(..., description="Number of applied payments")


class HealthCheckResponse(BaseModel):
    """Response schema for health checks."""

    status: str = Field(..., description="Overall health status (healthy/unhealthy)")
    checks: Optional[Dict[str, Any]] = Field(default=None, description="Individual service checks")
    message: Optional[str] = Field(default=None, description="Status message")


class ErrorResponse(BaseModel):
    """Response schema for errors raised outside the reconciliation flow."""

    code: str
    message: str
    details: Dict[str, Any] = Field(default_factory=dict)
