"""OrderKuota static-QRIS gateway. Polling only, there is no webhook channel."""
from datetime import timedelta
from typing import Any, Dict, Optional

import structlog

from qris_reconciler.integrations.gateways.base import (
    PaymentGateway,
    PaymentResult,
    StatusResult,
    WebhookEvent,
)
from qris_reconciler.timeutils import utcnow

logger = structlog.get_logger(__name__)


class OrderKuotaGateway(PaymentGateway):
    """
    OrderKuota adapter.

    Statement timestamps only have minute precision, which is why this
    gateway carries a default backward tolerance of one minute.
    """

    code = "orderkuota"
    name = "OrderKuota QRIS"
    has_mutation_feed = True

    async def create_payment(
        self,
        amount: int,
        order_id: str,
        customer_name: Optional[str] = None,
        callback_url: Optional[str] = None,
    ) -> PaymentResult:
        # The bot already appended the unique suffix to the amount
        qr_string = self.qris_encoder(self.credentials.get("qris_string", ""), amount)
        logger.info("orderkuota_dynamic_qris_created", order_id=order_id, amount=amount)
        return PaymentResult(
            payment_id=order_id,
            qr_string=qr_string,
            expires_at=utcnow() + timedelta(minutes=self.settings.payment_expiry_minutes),
            amount=amount,
        )

    async def check_status(self, payment_id: str, amount: Optional[int] = None) -> StatusResult:
        return StatusResult(status="pending", payment_id=payment_id)

    def parse_webhook(self, payload: Dict[str, Any]) -> WebhookEvent:
        return WebhookEvent(payment_id="", status="pending")

    def validate_webhook(self, payload: Dict[str, Any], signature: Optional[str] = None) -> bool:
        return False
