"""Pakasir gateway: conventional create/check API with project-scoped webhooks."""
from datetime import timedelta
from typing import Any, Dict, Optional

import structlog

from qris_reconciler.exceptions import GatewayRejected
from qris_reconciler.integrations.gateways.base import (
    PaymentGateway,
    PaymentResult,
    StatusResult,
    WebhookEvent,
    to_int,
)
from qris_reconciler.timeutils import parse_timestamp, utcnow

logger = structlog.get_logger(__name__)

STATUS_MAP = {
    "completed": "success",
    "success": "success",
    "paid": "success",
    "pending": "pending",
    "waiting": "pending",
    "expired": "expired",
    "cancelled": "failed",
    "failed": "failed",
}

WEBHOOK_REQUIRED_FIELDS = ("amount", "order_id", "project", "status")


def map_status(value: Any) -> str:
    return STATUS_MAP.get(str(value or "").lower(), "pending")


class PakasirGateway(PaymentGateway):
    """Pakasir adapter. Credentials carry the project slug and an API key."""

    code = "pakasir"
    name = "Pakasir"

    @property
    def project(self) -> str:
        creds = self.credentials
        return creds.get("slug") or creds.get("project_slug") or creds.get("merchant_id") or ""

    @property
    def base_url(self) -> str:
        return self.settings.pakasir_base_url.rstrip("/")

    async def create_payment(
        self,
        amount: int,
        order_id: str,
        customer_name: Optional[str] = None,
        callback_url: Optional[str] = None,
        method: str = "qris",
    ) -> PaymentResult:
        """
        Create a Pakasir transaction.

        Args:
            amount: Amount in Rupiah
            order_id: Our order id
            customer_name: Unused by Pakasir
            callback_url: Unused, configured per project on Pakasir's side
            method: Payment method path segment (qris, va, ...)

        Returns:
            PaymentResult: QR string (or VA number), fee and expiry

        Raises:
            GatewayRejected: If Pakasir did not return a payment
        """
        result = await self.http.request_json(
            "POST",
            f"{self.base_url}/api/transactioncreate/{method}",
            json_body={
                "project": self.project,
                "order_id": order_id,
                "amount": amount,
                "api_key": self.credentials.get("api_key", ""),
            },
        )

        payment = result.get("payment") if isinstance(result, dict) else None
        if not isinstance(payment, dict):
            message = result.get("message") if isinstance(result, dict) else None
            logger.warning("pakasir_create_rejected", order_id=order_id, gateway_message=message)
            raise GatewayRejected(message or "Failed to create transaction", gateway=self.code)

        return PaymentResult(
            payment_id=order_id,
            qr_string=payment.get("payment_number"),
            expires_at=parse_timestamp(payment.get("expired_at"))
            or utcnow() + timedelta(minutes=self.settings.payment_expiry_minutes),
            amount=to_int(payment.get("total_payment")) or amount,
            fee=to_int(payment.get("fee")),
            raw=payment,
        )

    async def check_status(self, payment_id: str, amount: Optional[int] = None) -> StatusResult:
        result = await self.http.request_json(
            "GET",
            f"{self.base_url}/api/transactiondetail",
            params={
                "project": self.project,
                "order_id": payment_id,
                "amount": amount or 0,
                "api_key": self.credentials.get("api_key", ""),
            },
        )

        trx = result.get("transaction") if isinstance(result, dict) else None
        if not isinstance(trx, dict):
            return StatusResult(status="pending", payment_id=payment_id)

        return StatusResult(
            status=map_status(trx.get("status")),
            payment_id=payment_id,
            paid_at=parse_timestamp(trx.get("completed_at")),
            amount=to_int(trx.get("amount")),
        )

    def parse_webhook(self, payload: Dict[str, Any]) -> WebhookEvent:
        return WebhookEvent(
            payment_id=str(payload.get("order_id") or ""),
            status=map_status(payload.get("status")),
            amount=to_int(payload.get("amount")),
            paid_at=parse_timestamp(payload.get("completed_at")),
        )

    def validate_webhook(self, payload: Dict[str, Any], signature: Optional[str] = None) -> bool:
        if any(field not in payload for field in WEBHOOK_REQUIRED_FIELDS):
            return False
        return bool(self.project) and payload["project"] == self.project
