"""
FastAPI application for tuition bill payments.

Students confirm and check out payments, administrators record manual
entries, and Midtrans posts notifications. Every request is tagged with a
request id bound into the structlog context; payment and gateway errors
raised outside the reconciliation flow become JSON error bodies.
"""
import time
import uuid
from contextlib import asynccontextmanager
from typing import Any, AsyncGenerator

import structlog
from fastapi import FastAPI, Request, Response, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from tuition_payments import __version__
from tuition_payments.config import get_settings
from tuition_payments.core.errors import BillNotFound, Forbidden, MalformedEvent, PaymentError
from tuition_payments.database.connection import close_db, init_db
from tuition_payments.integrations.midtrans_client import GatewayError, GatewayErrorType
from tuition_payments.integrations.notifier import HttpPushNotifier
from tuition_payments.monitoring.logging import setup_logging

from .dependencies import get_gateway, get_guard, get_notifier, get_orchestrator
from .routes import admin_router, bill_router, monitoring_router, payment_router, webhook_router

setup_logging()
logger = structlog.get_logger(__name__)

settings = get_settings()

REQUEST_ID_HEADER = "X-Request-ID"


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, Any]:
    """
    Create ledger tables on startup; on shutdown flush pending notification
    dispatches before closing the gateway, cache and database clients.
    """
    logger.info(
        "service_starting",
        app_name=settings.app_name,
        env=settings.app_env,
        midtrans_production=settings.midtrans_is_production,
        signature_verification=settings.midtrans_verify_signature,
    )
    try:
        await init_db()
    except Exception as e:
        logger.error("ledger_schema_init_failed", error=str(e))
        raise
    logger.info("ledger_schema_ready")

    yield

    logger.info("service_stopping")
    await get_orchestrator().drain()
    await get_gateway().close()
    await get_guard().close()
    notifier = get_notifier()
    if isinstance(notifier, HttpPushNotifier):
        await notifier.close()
    try:
        await close_db()
    except Exception as e:
        logger.error("ledger_shutdown_failed", error=str(e))
    else:
        logger.info("ledger_connections_closed")


app = FastAPI(
    title="Tuition Payments",
    description=(
        "Records tuition bill payments from the student app, administrators and "
        "Midtrans notifications, applying each payment exactly once."
    ),
    version=__version__,
    lifespan=lifespan,
    docs_url="/docs",
    redoc_url="/redoc",
    openapi_url="/openapi.json",
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.get_allowed_origins_list(),
    allow_credentials=True,
    allow_methods=["GET", "POST"],
    allow_headers=["*"],
    expose_headers=[REQUEST_ID_HEADER],
)


@app.middleware("http")
async def request_context_middleware(request: Request, call_next: Any) -> Response:
    """Bind request id and caller into the log context and time the request."""
    request_id = request.headers.get(REQUEST_ID_HEADER) or uuid.uuid4().hex
    structlog.contextvars.bind_contextvars(
        request_id=request_id,
        method=request.method,
        path=request.url.path,
        caller_id=request.headers.get("X-User-Id"),
    )
    start = time.perf_counter()
    try:
        response = await call_next(request)
    except Exception as e:
        logger.error(
            "request_failed",
            error=str(e),
            duration_ms=round((time.perf_counter() - start) * 1000, 2),
        )
        raise
    else:
        response.headers[REQUEST_ID_HEADER] = request_id
        logger.info(
            "request_handled",
            status_code=response.status_code,
            duration_ms=round((time.perf_counter() - start) * 1000, 2),
        )
        return response
    finally:
        structlog.contextvars.clear_contextvars()


def error_status_code(exc: PaymentError) -> int:
    """HTTP status for a payment error raised outside the reconciliation flow."""
    if isinstance(exc, BillNotFound):
        return status.HTTP_404_NOT_FOUND
    if isinstance(exc, Forbidden):
        return status.HTTP_403_FORBIDDEN
    if isinstance(exc, MalformedEvent):
        return status.HTTP_422_UNPROCESSABLE_CONTENT
    if exc.retryable:
        return status.HTTP_503_SERVICE_UNAVAILABLE
    return status.HTTP_400_BAD_REQUEST


@app.exception_handler(PaymentError)
async def payment_error_handler(request: Request, exc: PaymentError) -> JSONResponse:
    logger.warning("payment_error", code=exc.error_code, error=exc.message, details=exc.details)
    return JSONResponse(status_code=error_status_code(exc), content=exc.to_dict())


@app.exception_handler(GatewayError)
async def gateway_error_handler(request: Request, exc: GatewayError) -> JSONResponse:
    transient = exc.error_type == GatewayErrorType.TRANSIENT
    logger.error(
        "gateway_error",
        error=str(exc),
        error_type=exc.error_type.value,
        gateway_status_code=exc.status_code,
    )
    return JSONResponse(
        status_code=(
            status.HTTP_503_SERVICE_UNAVAILABLE if transient else status.HTTP_502_BAD_GATEWAY
        ),
        content={
            "code": "gateway_unavailable" if transient else "gateway_rejected",
            "message": "Payment gateway request failed",
            "details": {"gateway_status_code": exc.status_code},
        },
    )


@app.exception_handler(Exception)
async def unhandled_error_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.error("unhandled_exception", error=str(exc), error_type=type(exc).__name__)
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={"code": "internal_error", "message": "Unexpected error, please retry later", "details": {}},
    )


app.include_router(payment_router)
app.include_router(bill_router)
app.include_router(webhook_router)
app.include_router(admin_router)
app.include_router(monitoring_router)


@app.get("/", tags=["root"])
async def root() -> dict[str, Any]:
    """Service information."""
    return {
        "service": settings.app_name,
        "version": __version__,
        "status": "operational",
        "environment": settings.app_env,
        "gateway": "midtrans-production" if settings.midtrans_is_production else "midtrans-sandbox",
        "docs": "/docs",
        "health": "/health",
        "metrics": "/metrics",
    }


def run() -> None:
    """Serve the API with uvicorn."""
    import uvicorn

    uvicorn.run(
        "tuition_payments.api.main:app",
        host=settings.api_host,
        port=settings.api_port,
        reload=settings.debug,
        workers=1 if settings.debug else settings.api_workers,
        log_level=settings.log_level.lower(),
    )


if __name__ == "__main__":
    run()
