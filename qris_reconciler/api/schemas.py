"""
Pydantic schemas for API request/response models.
"""
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field


class WebhookAckResponse(BaseModel):
    """Acknowledgement returned to gateways."""

    status: str = Field(default="ok", description="Always 'ok' when accepted")

    model_config = {"json_schema_extra": {"examples": [{"status": "ok"}]}}


class ErrorResponse(BaseModel):
    """Generic error body returned to webhook callers."""

    error: str = Field(..., description="Error message")


class TransactionCheckResponse(BaseModel):
    """Response schema for an on-demand transaction check."""

    order_id: str = Field(..., description="Order identifier")
    status: str = Field(..., description="Transaction status")
    amount: int = Field(..., description="Amount in Rupiah")
    payment_gateway: str = Field(..., description="Gateway code")
    paid_at: Optional[str] = Field(default=None, description="Settlement timestamp (ISO 8601)")

    model_config = {
        "json_schema_extra": {
            "examples": [
                {
                    "order_id": "INV-20240101-0001",
                    "status": "success",
                    "amount": 50000,
                    "payment_gateway": "orderkuota",
                    "paid_at": "2024-01-01T10:00:05+00:00",
                }
            ]
        }
    }


class HealthCheckResponse(BaseModel):
    """Response schema for health checks."""

    status: str = Field(..., description="Overall health status (healthy/unhealthy)")
    checks: Optional[Dict[str, Any]] = Field(default=None, description="Individual service checks")
    message: Optional[str] = Field(default=None, description="Status message")
