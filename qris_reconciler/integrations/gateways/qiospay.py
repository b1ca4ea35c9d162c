"""QiosPay static-QRIS gateway."""
from datetime import timedelta
from typing import Any, Dict, Optional

import structlog

from qris_reconciler.integrations.gateways.base import (
    PaymentGateway,
    PaymentResult,
    StatusResult,
    WebhookEvent,
    first_present,
    to_int,
    unwrap_data,
)
from qris_reconciler.timeutils import parse_timestamp, utcnow

logger = structlog.get_logger(__name__)

STATUS_MAP = {
    "paid": "success",
    "success": "success",
    "completed": "success",
    "pending": "pending",
    "waiting": "pending",
    "expired": "expired",
    "failed": "failed",
    "cancelled": "failed",
}


class QiosPayGateway(PaymentGateway):
    """
    QiosPay adapter.

    Payments are the merchant's static QRIS re-encoded with the order amount,
    so the gateway never learns our order id. Settlement is inferred from the
    mutation feed. The webhook is best-effort and often carries only an amount.
    """

    code = "qiospay"
    name = "QiosPay QRIS"
    has_mutation_feed = True

    async def create_payment(
        self,
        amount: int,
        order_id: str,
        customer_name: Optional[str] = None,
        callback_url: Optional[str] = None,
    ) -> PaymentResult:
        qr_string = self.qris_encoder(self.credentials.get("qr_string", ""), amount)
        logger.info("qiospay_dynamic_qris_created", order_id=order_id, amount=amount)
        return PaymentResult(
            payment_id=order_id,
            qr_string=qr_string,
            expires_at=utcnow() + timedelta(minutes=self.settings.payment_expiry_minutes),
            amount=amount,
        )

    async def check_status(self, payment_id: str, amount: Optional[int] = None) -> StatusResult:
        # No per-payment endpoint; the engine matches the mutation feed instead
        return StatusResult(status="pending", payment_id=payment_id)

    def parse_webhook(self, payload: Dict[str, Any]) -> WebhookEvent:
        data = unwrap_data(payload)
        payment_id = first_present(
            data.get("transaction_id"),
            data.get("trx_id"),
            data.get("reff_id"),
            data.get("reference"),
            payload.get("transaction_id"),
        )
        external_id = first_present(data.get("id"), payload.get("id"))
        raw_status = first_present(data.get("status"), payload.get("status")) or "pending"

        return WebhookEvent(
            payment_id=str(payment_id or ""),
            external_id=str(external_id) if external_id is not None else None,
            status=STATUS_MAP.get(str(raw_status).lower(), "pending"),
            amount=to_int(first_present(data.get("amount"), data.get("nominal"), payload.get("amount"))),
            paid_at=parse_timestamp(
                first_present(data.get("paid_at"), data.get("date"), payload.get("paid_at"))
            ),
        )

    def validate_webhook(self, payload: Dict[str, Any], signature: Optional[str] = None) -> bool:
        data = unwrap_data(payload)
        has_amount = bool(data.get("amount") or data.get("nominal") or payload.get("amount"))
        has_id = any(
            data.get(key) for key in ("transaction_id", "trx_id", "id", "reference")
        ) or bool(payload.get("transaction_id"))
        return has_amount or has_id
