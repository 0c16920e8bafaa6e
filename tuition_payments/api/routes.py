"""
API routes for tuition bill payments.
"""
import json
from typing import Any, Dict, Optional

import structlog
from fastapi import APIRouter, Depends, HTTPException, Query, Request, Response, status
from fastapi.responses import JSONResponse
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from tuition_payments.core.checkout import CheckoutService
from tuition_payments.core.errors import MalformedEvent
from tuition_payments.core.orchestrator import Outcome, OutcomeKind, ReconciliationOrchestrator
from tuition_payments.integrations.midtrans_client import CustomerDetails
from tuition_payments.monitoring.health import HealthCheck

from .dependencies import (
    Caller,
    get_caller,
    get_checkout_service,
    get_health_check,
    get_orchestrator,
    require_admin,
)
from .schemas import (
    AdminBillDetailResponse,
    BillDetailResponse,
    BillListResponse,
    CheckoutRequest,
    CheckoutResponse,
    ConfirmPaymentRequest,
    HealthCheckResponse,
    InstallmentHistoryResponse,
    ManualPaymentRequest,
    OutcomeResponse,
    VerifyBillRequest,
)

logger = structlog.get_logger(__name__)

# Create routers
payment_router = APIRouter(prefix="/payments", tags=["payments"])
bill_router = APIRouter(tags=["bills"])
webhook_router = APIRouter(prefix="/webhooks", tags=["webhooks"])
admin_router = APIRouter(prefix="/admin", tags=["admin"])
monitoring_router = APIRouter(tags=["monitoring"])

OUTCOME_STATUS = {
    OutcomeKind.APPLIED: status.HTTP_200_OK,
    OutcomeKind.DUPLICATE: status.HTTP_200_OK,
    OutcomeKind.NO_OP: status.HTTP_200_OK,
    OutcomeKind.NOT_FOUND: status.HTTP_404_NOT_FOUND,
    OutcomeKind.FORBIDDEN: status.HTTP_403_FORBIDDEN,
    OutcomeKind.REJECTED: status.HTTP_400_BAD_REQUEST,
    OutcomeKind.RETRYABLE_FAILURE: status.HTTP_503_SERVICE_UNAVAILABLE,
}

MALFORMED_REASONS = {"malformed_event", "malformed_order_id"}


def outcome_status_code(outcome: Outcome) -> int:
    """HTTP status for a reconciliation outcome."""
    if outcome.kind == OutcomeKind.REJECTED:
        if outcome.reason in MALFORMED_REASONS:
            return status.HTTP_422_UNPROCESSABLE_CONTENT
        if outcome.reason == "invalid_signature":
            return status.HTTP_403_FORBIDDEN
    return OUTCOME_STATUS[outcome.kind]


def outcome_response(outcome: Outcome) -> JSONResponse:
    return JSONResponse(status_code=outcome_status_code(outcome), content=outcome.to_dict())


# ============================================================================
# STUDENT PAYMENTS
# ============================================================================


@payment_router.post(
    "/confirm",
    response_model=OutcomeResponse,
    summary="Confirm a payment",
    description="Record a payment the client app saw succeed",
)
async def confirm_payment(
    request: ConfirmPaymentRequest,
    caller: Caller = Depends(get_caller),
    orchestrator: ReconciliationOrchestrator = Depends(get_orchestrator),
) -> JSONResponse:
    """
    Client-reported payment confirmation.

    Idempotent per order id: the gateway webhook for the same order is a duplicate.
    """
    logger.info(
        "api_confirm_payment_request",
        bill_id=request.bill_id,
        order_id=request.order_id,
        amount=request.amount,
    )
    outcome = await orchestrator.confirm_client_payment(
        bill_id=request.bill_id,
        owner_id=caller.user_id,
        external_order_id=request.order_id,
        amount=request.amount,
        method=request.payment_type,
        is_installment=request.is_installment,
    )
    return outcome_response(outcome)


@payment_router.post(
    "/checkout",
    response_model=CheckoutResponse,
    summary="Create a checkout",
    description="Create a Midtrans Snap transaction for a full or installment payment",
)
async def create_checkout(
    request: CheckoutRequest,
    caller: Caller = Depends(get_caller),
    checkout: CheckoutService = Depends(get_checkout_service),
) -> Dict[str, Any]:
    """Create a gateway checkout; the bill is unchanged until the payment is confirmed."""
    logger.info("api_checkout_request", bill_id=request.bill_id, amount=request.amount)
    return await checkout.create_checkout(
        bill_id=request.bill_id,
        owner_id=caller.user_id,
        amount=request.amount,
        customer=CustomerDetails(
            first_name=request.customer_name,
            email=request.email,
            phone=request.phone,
        ),
    )


@bill_router.get(
    "/bills/{bill_id}",
    response_model=BillDetailResponse,
    summary="Get bill detail",
)
async def get_bill_detail(
    bill_id: int,
    caller: Caller = Depends(get_caller),
    checkout: CheckoutService = Depends(get_checkout_service),
) -> Dict[str, Any]:
    """Bill snapshot with remaining balance and minimum payment."""
    return await checkout.bill_detail(bill_id, caller.user_id)


@bill_router.get(
    "/bills/{bill_id}/installments",
    response_model=InstallmentHistoryResponse,
    summary="Get installment history of a bill",
)
async def get_bill_installments(
    bill_id: int,
    caller: Caller = Depends(get_caller),
    checkout: CheckoutService = Depends(get_checkout_service),
) -> Dict[str, Any]:
    return await checkout.installment_history(caller.user_id, bill_id=bill_id)


@bill_router.get(
    "/installments",
    response_model=InstallmentHistoryResponse,
    summary="Get all installment history",
)
async def get_all_installments(
    caller: Caller = Depends(get_caller),
    checkout: CheckoutService = Depends(get_checkout_service),
) -> Dict[str, Any]:
    return await checkout.installment_history(caller.user_id)


# ============================================================================
# GATEWAY WEBHOOK
# ============================================================================


@webhook_router.post(
    "/midtrans",
    response_model=OutcomeResponse,
    summary="Midtrans notification endpoint",
    description="Handle Midtrans HTTP notifications",
)
async def midtrans_webhook(
    request: Request,
    orchestrator: ReconciliationOrchestrator = Depends(get_orchestrator),
) -> JSONResponse:
    """
    Handle a Midtrans notification.

    Non-2xx responses make Midtrans redeliver, so only retryable failures
    and lookups of unknown bills answer with an error status.
    """
    body = await request.body()
    try:
        raw = json.loads(body)
    except ValueError:
        logger.error("api_webhook_invalid_json", body_prefix=body[:200].decode(errors="replace"))
        error = MalformedEvent("Notification body is not valid JSON")
        return outcome_response(
            Outcome(kind=OutcomeKind.REJECTED, reason=error.error_code, details=error.details)
        )

    logger.info(
        "api_webhook_received",
        order_id=raw.get("order_id") if isinstance(raw, dict) else None,
        transaction_status=raw.get("transaction_status") if isinstance(raw, dict) else None,
    )
    outcome = await orchestrator.handle_webhook(raw)
    return outcome_response(outcome)


# ============================================================================
# ADMINISTRATION
# ============================================================================


@admin_router.post(
    "/bills/{bill_id}/payments",
    response_model=OutcomeResponse,
    summary="Record a manual payment",
)
async def record_manual_payment(
    bill_id: int,
    request: ManualPaymentRequest,
    admin: Caller = Depends(require_admin),
    orchestrator: ReconciliationOrchestrator = Depends(get_orchestrator),
) -> JSONResponse:
    """Administrator manual entry; resubmissions with the same token are duplicates."""
    logger.info(
        "api_manual_payment_request",
        bill_id=bill_id,
        amount=request.amount,
        actor=admin.user_id,
    )
    outcome = await orchestrator.record_manual_payment(
        bill_id=bill_id,
        amount=request.amount,
        actor=str(admin.user_id),
        idempotency_token=request.idempotency_token,
        method=request.method,
    )
    return outcome_response(outcome)


@admin_router.post(
    "/bills/{bill_id}/verify",
    response_model=OutcomeResponse,
    summary="Verify or reject a bill",
)
async def verify_bill(
    bill_id: int,
    request: Optional[VerifyBillRequest] = None,
    admin: Caller = Depends(require_admin),
    orchestrator: ReconciliationOrchestrator = Depends(get_orchestrator),
) -> JSONResponse:
    """verify settles the remaining balance; reject fails a bill without payments."""
    action = request.action if request else "verify"
    logger.info("api_verify_bill_request", bill_id=bill_id, action=action, actor=admin.user_id)
    if action == "reject":
        outcome = await orchestrator.reject_bill(bill_id, actor=str(admin.user_id))
    else:
        outcome = await orchestrator.verify_bill(bill_id, actor=str(admin.user_id))
    return outcome_response(outcome)


@admin_router.get(
    "/bills",
    response_model=BillListResponse,
    summary="List bills",
    description="Bills of every account, most recently paid first",
)
async def list_bills(
    status_filter: Optional[str] = Query(
        default=None,
        alias="status",
        max_length=20,
        description="unpaid, partial, paid or failed; lunas, verified and cicilan are accepted",
    ),
    limit: int = Query(default=10, ge=1, le=100),
    admin: Caller = Depends(require_admin),
    checkout: CheckoutService = Depends(get_checkout_service),
) -> Dict[str, Any]:
    return await checkout.list_bills(status=status_filter, limit=limit)


@admin_router.get(
    "/bills/{bill_id}",
    response_model=AdminBillDetailResponse,
    summary="Get any bill",
)
async def get_admin_bill_detail(
    bill_id: int,
    admin: Caller = Depends(require_admin),
    checkout: CheckoutService = Depends(get_checkout_service),
) -> Dict[str, Any]:
    """Bill snapshot with every payment applied to it."""
    return await checkout.admin_bill_detail(bill_id)


# ============================================================================
# MONITORING
# ============================================================================


@monitoring_router.get(
    "/health",
    response_model=HealthCheckResponse,
    summary="Health check",
    description="Check overall system health",
)
async def health(health_check: HealthCheck = Depends(get_health_check)) -> Dict[str, Any]:
    """Health check endpoint for monitoring."""
    try:
        return await health_check.check_all()
    except Exception as e:
        logger.error("health_check_error", error=str(e))
        return {
            "status": "unhealthy",
            "checks": {"error": str(e)},
        }


@monitoring_router.get(
    "/health/live",
    response_model=HealthCheckResponse,
    summary="Liveness probe",
    description="Kubernetes liveness probe endpoint",
)
async def liveness(health_check: HealthCheck = Depends(get_health_check)) -> Dict[str, Any]:
    """Liveness probe endpoint."""
    return await health_check.liveness()


@monitoring_router.get(
    "/health/ready",
    response_model=HealthCheckResponse,
    summary="Readiness probe",
    description="Kubernetes readiness probe endpoint",
)
async def readiness(health_check: HealthCheck = Depends(get_health_check)) -> Dict[str, Any]:
    """Readiness probe endpoint."""
    result = await health_check.readiness()
    if result["status"] != "healthy":
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=result)
    return result


@monitoring_router.get(
    "/metrics",
    summary="Prometheus metrics",
    description="Expose Prometheus metrics",
    include_in_schema=False,
)
async def prometheus_metrics() -> Response:
    """Expose Prometheus metrics."""
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)
