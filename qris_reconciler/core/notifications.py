"""
Notification fanout for settled payments.

Two independent side effects run concurrently after a transaction moves to
success: a hub publish on ``bot.{id}`` and the signed merchant callback.
Either may fail without affecting the other or the committed transaction.
Only the callback is retried later (see workers/callback_retry_worker.py).
"""
import asyncio
from typing import Optional

import structlog

from qris_reconciler.database.models import Bot, Transaction
from qris_reconciler.database.repository import CredentialStore, TransactionRepository
from qris_reconciler.integrations.callback_client import CallbackClient
from qris_reconciler.integrations.hub_client import HubClient
from qris_reconciler.monitoring.metrics import metrics
from qris_reconciler.timeutils import as_utc, utcnow

logger = structlog.get_logger(__name__)


class NotificationFanout:
    """Publishes payment results to the hub and the merchant callback."""

    def __init__(
        self,
        repository: Optional[TransactionRepository] = None,
        credentials: Optional[CredentialStore] = None,
        hub: Optional[HubClient] = None,
        callback_client: Optional[CallbackClient] = None,
    ):
        """
        Initialize fanout.

        Args:
            repository: Transaction store (records callback delivery)
            credentials: Bot lookup
            hub: Pub/sub hub client
            callback_client: Merchant callback client
        """
        self.repository = repository or TransactionRepository()
        self.credentials = credentials or CredentialStore(self.repository.session_factory)
        self.hub = hub or HubClient()
        self.callback_client = callback_client or CallbackClient()

    async def notify(self, transaction: Transaction) -> None:
        """
        Run both side effects for a transaction that just settled.

        Never raises: failures are logged per channel.
        """
        bot = await self.credentials.get_bot(transaction.bot_id)

        results = await asyncio.gather(
            self.publish(transaction, bot),
            self.send_callback(transaction, bot),
            return_exceptions=True,
        )

        for channel, result in zip(("hub", "callback"), results):
            if isinstance(result, Exception):
                metrics.record_notification(channel, "error")
                logger.error(
                    "notification_failed",
                    channel=channel,
                    order_id=transaction.order_id,
                    error=str(result),
                    error_type=type(result).__name__,
                )

    async def publish(self, transaction: Transaction, bot: Optional[Bot]) -> bool:
        paid_at = as_utc(transaction.paid_at)
        published = await self.hub.broadcast_payment_status(
            bot_id=transaction.bot_id,
            order_id=transaction.order_id,
            status=transaction.status,
            amount=int(transaction.amount),
            paid_at=paid_at.isoformat() if paid_at else None,
            gateway=transaction.payment_gateway,
        )
        metrics.record_notification("hub", "sent" if published else "failed")

        if bot is not None:
            await self.hub.broadcast_notification(
                bot.user_id,
                {
                    "type": "success",
                    "title": "Payment Received",
                    "message": f"Transaction {transaction.order_id} completed - Rp {transaction.amount:,}".replace(",", "."),
                    "data": {
                        "order_id": transaction.order_id,
                        "amount": int(transaction.amount),
                        "product": transaction.product_name,
                    },
                },
            )
        return published

    async def send_callback(self, transaction: Transaction, bot: Optional[Bot]) -> bool:
        """
        Deliver the merchant callback and record acknowledgement.

        Returns:
            bool: True if delivered or nothing is configured
        """
        if bot is None:
            logger.warning("callback_bot_missing", bot_id=transaction.bot_id)
            await self.repository.record_callback(transaction.id, utcnow(), "bot_missing")
            return False

        delivery = await self.callback_client.send(transaction, bot)
        if delivery.skipped:
            # Marked as handled so the retry sweep never selects it
            await self.repository.record_callback(transaction.id, utcnow(), "skipped")
            metrics.record_notification("callback", "skipped")
            return True

        if delivery.delivered:
            await self.repository.record_callback(
                transaction.id, utcnow(), str(delivery.status_code)
            )
            metrics.record_notification("callback", "sent")
            return True

        metrics.record_notification("callback", "failed")
        return False

    async def retry_callback(self, transaction: Transaction) -> bool:
        """Re-send the merchant callback only (hub events are not replayed)."""
        bot = await self.credentials.get_bot(transaction.bot_id)
        return await self.send_callback(transaction, bot)
