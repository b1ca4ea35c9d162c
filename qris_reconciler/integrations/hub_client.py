"""
Client for the WebSocket pub/sub hub.

The hub relays events to connected bots and dashboards. Publishing is
best-effort: every method returns a bool/None and logs failures instead of
raising.
"""
from typing import Any, Dict, Optional

import httpx
import structlog

from qris_reconciler.config import Settings, get_settings

logger = structlog.get_logger(__name__)

PAYMENT_STATUS_EVENT = "payment.status.updated"
NOTIFICATION_EVENT = "notification.created"


class HubClient:
    """Publishes events to ``POST {hub_url}/broadcast``."""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        """
        Initialize hub client.

        Args:
            settings: Optional settings
            http_client: Optional shared httpx client
        """
        self.settings = settings or get_settings()
        self.hub_url = self.settings.ws_hub_url.rstrip("/")
        self.secret = self.settings.ws_hub_secret
        self.timeout = self.settings.ws_hub_timeout
        self.http_client = http_client

    async def _request(self, method: str, path: str, **kwargs: Any) -> httpx.Response:
        url = f"{self.hub_url}{path}"
        if self.http_client is not None:
            return await self.http_client.request(method, url, timeout=self.timeout, **kwargs)
        async with httpx.AsyncClient(timeout=self.timeout) as client:
            return await client.request(method, url, **kwargs)

    async def broadcast(self, channel: str, event: str, data: Dict[str, Any]) -> bool:
        """
        Broadcast an event to a channel.

        Args:
            channel: Target channel (``bot.{id}``, ``user.{id}``)
            event: Event name
            data: Event payload

        Returns:
            bool: True if the hub accepted the event
        """
        try:
            response = await self._request(
                "POST",
                "/broadcast",
                json={"secret": self.secret, "channel": channel, "event": event, "data": data},
                headers={"X-Broadcast-Secret": self.secret},
            )
        except httpx.HTTPError as e:
            logger.error("hub_broadcast_error", channel=channel, hub_event=event, error=str(e))
            return False

        if response.is_success:
            clients = 0
            try:
                clients = int(response.json().get("clients", 0))
            except (ValueError, AttributeError, TypeError):
                pass
            logger.info("hub_broadcast_sent", channel=channel, hub_event=event, clients=clients)
            return True

        logger.error(
            "hub_broadcast_failed",
            channel=channel,
            hub_event=event,
            status_code=response.status_code,
            body=response.text[:200],
        )
        return False

    async def broadcast_payment_status(
        self,
        bot_id: int,
        order_id: str,
        status: str,
        amount: Optional[int] = None,
        paid_at: Optional[str] = None,
        gateway: Optional[str] = None,
    ) -> bool:
        return await self.broadcast(
            f"bot.{bot_id}",
            PAYMENT_STATUS_EVENT,
            {
                "bot_id": bot_id,
                "order_id": order_id,
                "status": status,
                "amount": amount,
                "paid_at": paid_at,
                "gateway": gateway,
            },
        )

    async def broadcast_notification(self, user_id: int, notification: Dict[str, Any]) -> bool:
        """Push a dashboard notification to the owner's channel."""
        return await self.broadcast(
            f"user.{user_id}", NOTIFICATION_EVENT, {"notification": notification}
        )

    async def get_status(self) -> Optional[Dict[str, Any]]:
        try:
            response = await self._request("GET", "/status")
        except httpx.HTTPError as e:
            logger.error("hub_status_check_failed", error=str(e))
            return None
        if not response.is_success:
            return None
        try:
            return response.json()
        except ValueError:
            return None
