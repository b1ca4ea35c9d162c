"""
Replay cache for inbound webhook deliveries.

Gateways retry deliveries aggressively. A delivery fingerprint is kept in
Redis so exact replays are answered before touching the database. The
transaction store's conditional update stays authoritative: when Redis is
unconfigured or down every delivery is processed.
"""
import hashlib
import json
from typing import Any, Dict, Optional

import redis.asyncio as aioredis
import structlog

from qris_reconciler.config import Settings, get_settings

logger = structlog.get_logger(__name__)


def delivery_fingerprint(gateway: str, payload: Dict[str, Any]) -> str:
    canonical = json.dumps(payload, sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha256(f"{gateway}:{canonical}".encode("utf-8")).hexdigest()


class WebhookReplayCache:
    """Redis-backed set of processed webhook deliveries."""

    def __init__(
        self,
        redis_client: Optional[aioredis.Redis] = None,
        settings: Optional[Settings] = None,
    ):
        """
        Initialize replay cache.

        Args:
            redis_client: Optional Redis client (created lazily from settings otherwise)
            settings: Optional settings
        """
        self.settings = settings or get_settings()
        self.redis_client = redis_client
        self.ttl = self.settings.webhook_dedup_ttl

    @property
    def enabled(self) -> bool:
        return self.redis_client is not None or bool(self.settings.redis_url)

    async def _ensure_redis(self) -> aioredis.Redis:
        if self.redis_client is None:
            self.redis_client = aioredis.from_url(
                self.settings.redis_url,
                encoding="utf-8",
                decode_responses=True,
            )
        return self.redis_client

    @staticmethod
    def _key(fingerprint: str) -> str:
        return f"webhook:processed:{fingerprint}"

    async def is_processed(self, gateway: str, payload: Dict[str, Any]) -> bool:
        """
        Check whether this exact delivery was already processed.

        Returns:
            bool: True only if Redis confirms a previous delivery
        """
        if not self.enabled:
            return False
        fingerprint = delivery_fingerprint(gateway, payload)
        try:
            redis = await self._ensure_redis()
            return bool(await redis.exists(self._key(fingerprint)))
        except Exception as e:
            # Redis down: process anyway, the conditional update dedups
            logger.warning("webhook_dedup_check_error", gateway=gateway, error=str(e))
            return False

    async def mark_processed(self, gateway: str, payload: Dict[str, Any]) -> None:
        if not self.enabled:
            return
        fingerprint = delivery_fingerprint(gateway, payload)
        try:
            redis = await self._ensure_redis()
            await redis.setex(self._key(fingerprint), self.ttl, "1")
        except Exception as e:
            logger.warning("webhook_dedup_mark_error", gateway=gateway, error=str(e))

    async def close(self) -> None:
        if self.redis_client is not None:
            await self.redis_client.aclose()
            self.redis_client = None
