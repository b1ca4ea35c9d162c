"""
Signed merchant callbacks.

When a payment succeeds the bot owner's system is told via a POST to the
callback URL stored in the bot settings. The body is signed with
HMAC-SHA256 and the hex digest is sent in ``X-Webhook-Signature``.
"""
import hashlib
import hmac
import json
from dataclasses import dataclass
from typing import Any, Dict, Optional

import httpx
import structlog

from qris_reconciler.config import Settings, get_settings
from qris_reconciler.database.models import Bot, Transaction
from qris_reconciler.timeutils import as_utc, utcnow

logger = structlog.get_logger(__name__)

CALLBACK_EVENT = "payment.success"


@dataclass
class CallbackDelivery:
    """Result of one callback attempt."""

    delivered: bool
    skipped: bool = False
    status_code: Optional[int] = None
    error: Optional[str] = None


def sign_payload(body: bytes, secret: str) -> str:
    """Hex HMAC-SHA256 of the exact request body."""
    return hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()


def _iso(value: Any) -> Optional[str]:
    aware = as_utc(value)
    return aware.isoformat() if aware else None


class CallbackClient:
    """Builds, signs and delivers ``payment.success`` callbacks."""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        self.settings = settings or get_settings()
        self.timeout = self.settings.callback_timeout
        self.http_client = http_client

    def build_payload(self, transaction: Transaction) -> Dict[str, Any]:
        return {
            "event": CALLBACK_EVENT,
            "timestamp": utcnow().isoformat(),
            "data": {
                "transaction_id": transaction.id,
                "order_id": transaction.order_id,
                "amount": int(transaction.amount),
                "status": transaction.status,
                "payment_ref": transaction.payment_ref,
                "paid_at": _iso(transaction.paid_at),
                "customer": {
                    "telegram_user_id": transaction.telegram_user_id,
                    "telegram_username": transaction.telegram_username,
                    "name": transaction.product_name,
                },
                "product": {
                    "name": transaction.product_name,
                    "variant": transaction.variant,
                    "quantity": transaction.quantity,
                    "price": int(transaction.price) if transaction.price is not None else None,
                },
            },
        }

    async def _post(self, url: str, body: bytes, headers: Dict[str, str]) -> httpx.Response:
        if self.http_client is not None:
            return await self.http_client.post(url, content=body, headers=headers, timeout=self.timeout)
        async with httpx.AsyncClient(timeout=self.timeout) as client:
            return await client.post(url, content=body, headers=headers)

    async def send(self, transaction: Transaction, bot: Bot) -> CallbackDelivery:
        """
        Deliver the callback for a settled transaction.

        Args:
            transaction: Transaction in success state
            bot: Owning bot (callback URL and signing secret)

        Returns:
            CallbackDelivery: Outcome; ``skipped`` when no URL is configured
        """
        url = bot.callback_url
        if not url:
            logger.info("callback_not_configured", bot_id=bot.id, order_id=transaction.order_id)
            return CallbackDelivery(delivered=False, skipped=True)

        body = json.dumps(self.build_payload(transaction), separators=(",", ":")).encode("utf-8")
        headers = {
            "Content-Type": "application/json",
            "X-Webhook-Signature": sign_payload(body, bot.callback_secret),
            "X-Webhook-ID": str(transaction.id),
            "User-Agent": self.settings.callback_user_agent,
        }

        try:
            response = await self._post(url, body, headers)
        except httpx.HTTPError as e:
            logger.error(
                "callback_error",
                transaction_id=transaction.id,
                callback_url=url,
                error=str(e),
            )
            return CallbackDelivery(delivered=False, error=str(e))

        if response.is_success:
            logger.info(
                "callback_sent",
                transaction_id=transaction.id,
                order_id=transaction.order_id,
                status_code=response.status_code,
            )
            return CallbackDelivery(delivered=True, status_code=response.status_code)

        logger.warning(
            "callback_rejected",
            transaction_id=transaction.id,
            callback_url=url,
            status_code=response.status_code,
            body=response.text[:200],
        )
        return CallbackDelivery(delivered=False, status_code=response.status_code)
