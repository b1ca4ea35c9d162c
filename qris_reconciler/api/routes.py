"""
API routes for gateway webhooks, on-demand checks and monitoring.
"""
import json
from functools import lru_cache
from typing import Any, Dict, Optional
from urllib.parse import parse_qsl

import structlog
from fastapi import APIRouter, Depends, Header, HTTPException, Request, Response, status
from fastapi.responses import JSONResponse
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from qris_reconciler.core.reconciliation import ReconciliationEngine
from qris_reconciler.exceptions import InvalidPayload, TransactionNotFound, UnknownGateway
from qris_reconciler.monitoring.health import HealthCheck
from qris_reconciler.timeutils import as_utc

from .schemas import (
    ErrorResponse,
    HealthCheckResponse,
    TransactionCheckResponse,
    WebhookAckResponse,
)

logger = structlog.get_logger(__name__)

webhook_router = APIRouter(prefix="/payments", tags=["webhooks"])
payment_router = APIRouter(prefix="/payments", tags=["payments"])
monitoring_router = APIRouter(tags=["monitoring"])

# Generic bodies only: gateways get no hint about which check failed
WEBHOOK_ERRORS = {
    InvalidPayload: "Invalid payload",
    TransactionNotFound: "Transaction not found",
    UnknownGateway: "Unsupported gateway",
}


@lru_cache()
def get_reconciliation_engine() -> ReconciliationEngine:
    return ReconciliationEngine()


@lru_cache()
def get_health_check() -> HealthCheck:
    return HealthCheck()


async def read_payload(request: Request) -> Dict[str, Any]:
    """
    Decode a webhook body, JSON or form-encoded.

    Raises:
        InvalidPayload: If a JSON body is malformed or not an object
    """
    body = await request.body()
    if not body:
        return {}

    content_type = request.headers.get("content-type", "")
    if "application/x-www-form-urlencoded" in content_type:
        return dict(parse_qsl(body.decode("utf-8", errors="replace"), keep_blank_values=True))

    try:
        payload = json.loads(body)
    except ValueError as e:
        raise InvalidPayload("Malformed JSON body") from e
    if not isinstance(payload, dict):
        raise InvalidPayload("Webhook body must be a JSON object")
    return payload


@webhook_router.post(
    "/webhook/{gateway}",
    response_model=WebhookAckResponse,
    responses={400: {"model": ErrorResponse}},
    summary="Gateway webhook endpoint",
    description="Receive a payment notification from a gateway and reconcile it",
)
async def gateway_webhook(
    gateway: str,
    request: Request,
    x_signature: Optional[str] = Header(default=None, alias="X-Signature"),
    x_callback_signature: Optional[str] = Header(default=None, alias="X-Callback-Signature"),
    engine: ReconciliationEngine = Depends(get_reconciliation_engine),
) -> Any:
    """
    Handle a gateway webhook.

    Accepted deliveries and no-ops (replays, already settled transactions)
    both answer 200 so the gateway stops retrying.
    """
    try:
        payload = await read_payload(request)
        outcome = await engine.handle_webhook(gateway, payload, x_signature or x_callback_signature)
    except (InvalidPayload, TransactionNotFound, UnknownGateway) as e:
        logger.warning(
            "api_webhook_rejected",
            gateway=gateway,
            error=str(e),
            error_type=type(e).__name__,
        )
        return JSONResponse(
            status_code=status.HTTP_400_BAD_REQUEST,
            content={"error": WEBHOOK_ERRORS[type(e)]},
        )

    logger.info(
        "api_webhook_accepted",
        gateway=gateway,
        order_id=outcome.order_id,
        outcome=outcome.status,
    )
    return {"status": "ok"}


@payment_router.post(
    "/{order_id}/check",
    response_model=TransactionCheckResponse,
    responses={404: {"model": ErrorResponse}},
    summary="Check a transaction",
    description="Ask the gateway about one pending transaction and settle it if paid",
)
async def check_transaction(
    order_id: str,
    engine: ReconciliationEngine = Depends(get_reconciliation_engine),
) -> Any:
    """On-demand check of one transaction."""
    try:
        transaction = await engine.check_transaction(order_id)
    except TransactionNotFound:
        return JSONResponse(
            status_code=status.HTTP_404_NOT_FOUND,
            content={"error": "Transaction not found"},
        )

    paid_at = as_utc(transaction.paid_at)
    return {
        "order_id": transaction.order_id,
        "status": transaction.status,
        "amount": int(transaction.amount),
        "payment_gateway": transaction.payment_gateway,
        "paid_at": paid_at.isoformat() if paid_at else None,
    }


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
    return await health_check.liveness()


@monitoring_router.get(
    "/health/ready",
    response_model=HealthCheckResponse,
    summary="Readiness probe",
    description="Kubernetes readiness probe endpoint",
)
async def readiness(health_check: HealthCheck = Depends(get_health_check)) -> Dict[str, Any]:
    """Readiness probe endpoint."""
    try:
        result = await health_check.readiness()
        if result["status"] != "healthy":
            raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=result)
        return result
    except HTTPException:
        raise
    except Exception as e:
        logger.error("readiness_check_error", error=str(e))
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail={"status": "unhealthy", "error": str(e)},
        )


@monitoring_router.get(
    "/metrics",
    summary="Prometheus metrics",
    description="Expose Prometheus metrics",
    include_in_schema=False,
)
async def prometheus_metrics() -> Response:
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)
