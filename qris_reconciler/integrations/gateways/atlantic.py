"""
Atlantic H2H QRIS gateway.

Atlantic issues real dynamic QRIS and pushes webhooks. Regular QRIS deposits
stop in ``processing`` until an explicit instant-settlement call is made.
"""
from datetime import timedelta
from typing import Any, Dict, List, Optional

import structlog

from qris_reconciler.exceptions import GatewayBlocked, GatewayRejected
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
    "pending": "pending",
    "processing": "processing",
    "success": "success",
    "expired": "expired",
    "failed": "failed",
    "cancel": "failed",
    "error": "failed",
}


class AtlanticGateway(PaymentGateway):
    """
    Atlantic adapter.

    Requests are form-encoded POSTs, either straight to Atlantic or through a
    proxy that receives the target path in an ``endpoint`` field.
    """

    code = "atlantic"
    name = "Atlantic Pedia"
    metode = "qris"

    @property
    def api_key(self) -> str:
        return self.credentials.get("api_key", "")

    async def _request(self, endpoint: str, data: Dict[str, Any]) -> Dict[str, Any]:
        form = {**data, "api_key": self.api_key}
        proxy_url = self.credentials.get("proxy_url") or self.settings.atlantic_proxy_url

        if proxy_url:
            form["endpoint"] = endpoint
            url = proxy_url
        else:
            url = f"{self.settings.atlantic_base_url.rstrip('/')}{endpoint}"

        result = await self.http.request_json("POST", url, data=form)
        if not isinstance(result, dict):
            raise GatewayBlocked(f"{self.code} returned a non-object body", gateway=self.code)
        return result

    @staticmethod
    def _ok(result: Dict[str, Any]) -> bool:
        return result.get("status") is True and "data" in result

    async def create_payment(
        self,
        amount: int,
        order_id: str,
        customer_name: Optional[str] = None,
        callback_url: Optional[str] = None,
    ) -> PaymentResult:
        """
        Create a QRIS deposit.

        Args:
            amount: Amount in Rupiah
            order_id: Our order id, sent as ``reff_id``
            customer_name: Unused by Atlantic
            callback_url: Webhook target (defaults to this service's endpoint)

        Returns:
            PaymentResult: Deposit id, QR string and expiry
        """
        callback = callback_url or (
            f"{self.settings.public_base_url.rstrip('/')}/payments/webhook/{self.code}"
        )
        result = await self._request(
            "/deposit/create",
            {
                "reff_id": order_id,
                "nominal": amount,
                "type": "ewallet",
                "metode": self.metode,
                "callback_url": callback,
            },
        )

        if not self._ok(result):
            logger.warning(
                "atlantic_create_rejected",
                order_id=order_id,
                gateway_message=result.get("message"),
            )
            raise GatewayRejected(
                result.get("message") or "Failed to create QRIS payment", gateway=self.code
            )

        data = result["data"] or {}
        return PaymentResult(
            payment_id=str(data.get("id") or order_id),
            qr_string=data.get("qr_string") or "",
            expires_at=parse_timestamp(data.get("expired_at")) or utcnow() + timedelta(hours=1),
            amount=to_int(data.get("nominal")) or amount,
            fee=to_int(data.get("fee")),
            raw=data,
        )

    async def check_status(self, payment_id: str, amount: Optional[int] = None) -> StatusResult:
        result = await self._request("/deposit/status", {"id": payment_id})

        if not self._ok(result):
            logger.info(
                "atlantic_status_unavailable",
                payment_id=payment_id,
                gateway_message=result.get("message"),
            )
            return StatusResult(status="unknown", payment_id=payment_id)

        data = result["data"] or {}
        status = STATUS_MAP.get(str(data.get("status", "pending")).lower(), "pending")
        paid_at = None
        if status == "success":
            paid_at = parse_timestamp(data.get("paid_at")) or utcnow()

        return StatusResult(
            status=status,
            payment_id=str(data.get("id") or payment_id),
            paid_at=paid_at,
            amount=to_int(data.get("nominal")),
        )

    async def trigger_instant(self, deposit_id: str) -> bool:
        """
        Force settlement of a deposit sitting in ``processing``.

        Returns:
            bool: True if Atlantic accepted the instant request
        """
        result = await self._request("/deposit/instant", {"id": deposit_id, "action": "true"})
        accepted = result.get("status") is True
        logger.info(
            "atlantic_instant_triggered",
            deposit_id=deposit_id,
            accepted=accepted,
            gateway_message=result.get("message"),
        )
        return accepted

    async def get_deposit_methods(self) -> List[Dict[str, Any]]:
        result = await self._request("/deposit/method", {})
        if self._ok(result) and isinstance(result["data"], list):
            return result["data"]
        return []

    def parse_webhook(self, payload: Dict[str, Any]) -> WebhookEvent:
        data = unwrap_data(payload)
        raw_status = first_present(data.get("status"), payload.get("status")) or "pending"
        paid_at = first_present(data.get("paid_at"), payload.get("paid_at"))

        return WebhookEvent(
            payment_id=str(first_present(data.get("reff_id"), payload.get("reff_id")) or ""),
            deposit_id=str(first_present(data.get("id"), payload.get("id")) or "") or None,
            status=STATUS_MAP.get(str(raw_status).lower(), "pending"),
            amount=to_int(first_present(data.get("nominal"), payload.get("nominal"))),
            paid_at=parse_timestamp(paid_at),
        )

    def validate_webhook(self, payload: Dict[str, Any], signature: Optional[str] = None) -> bool:
        # Atlantic does not sign webhooks; only an id-like field is required
        if not payload:
            return False
        data = unwrap_data(payload)
        return any(key in source for source in (data, payload) for key in ("id", "reff_id"))


class AtlanticFastGateway(AtlanticGateway):
    """Atlantic adapter using the QRISFAST deposit method."""

    code = "atlantic_fast"
    name = "Atlantic Pedia (QRIS Fast)"
    metode = "QRISFAST"
