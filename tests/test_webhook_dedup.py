"""Tests for the webhook replay cache."""
from typing import Any

import pytest

from qris_reconciler.config import Settings
from qris_reconciler.core.webhook_dedup import WebhookReplayCache, delivery_fingerprint


@pytest.fixture
def redis_client(mocker: Any) -> Any:
    client = mocker.AsyncMock()
    client.exists.return_value = 0
    return client


@pytest.fixture
def cache(redis_client: Any, test_settings: Settings) -> WebhookReplayCache:
    return WebhookReplayCache(redis_client=redis_client, settings=test_settings)


class TestFingerprint:
    def test_key_order_does_not_matter(self) -> None:
        assert delivery_fingerprint("qiospay", {"a": 1, "b": 2}) == delivery_fingerprint(
            "qiospay", {"b": 2, "a": 1}
        )

    def test_gateway_is_part_of_fingerprint(self) -> None:
        payload = {"order_id": "INV-1"}
        assert delivery_fingerprint("pakasir", payload) != delivery_fingerprint("atlantic", payload)

    def test_any_field_change_is_a_new_delivery(self) -> None:
        assert delivery_fingerprint("qiospay", {"id": "M1", "status": "pending"}) != delivery_fingerprint(
            "qiospay", {"id": "M1", "status": "success"}
        )


class TestWebhookReplayCache:
    """Redis-backed processed set."""

    def test_disabled_without_redis(self, test_settings: Settings) -> None:
        assert WebhookReplayCache(settings=test_settings).enabled is False

    @pytest.mark.asyncio
    async def test_disabled_cache_never_reports_duplicates(self, test_settings: Settings) -> None:
        cache = WebhookReplayCache(settings=test_settings)

        await cache.mark_processed("pakasir", {"order_id": "INV-1"})

        assert await cache.is_processed("pakasir", {"order_id": "INV-1"}) is False

    @pytest.mark.asyncio
    async def test_mark_then_check(self, cache: WebhookReplayCache, redis_client: Any) -> None:
        payload = {"order_id": "INV-1", "status": "completed"}

        await cache.mark_processed("pakasir", payload)

        key = f"webhook:processed:{delivery_fingerprint('pakasir', payload)}"
        redis_client.setex.assert_awaited_once_with(key, cache.ttl, "1")

        redis_client.exists.return_value = 1
        assert await cache.is_processed("pakasir", payload) is True
        redis_client.exists.assert_awaited_with(key)

    @pytest.mark.asyncio
    async def test_redis_failure_processes_anyway(self, cache: WebhookReplayCache, redis_client: Any) -> None:
        redis_client.exists.side_effect = ConnectionError("redis down")

        assert await cache.is_processed("pakasir", {"order_id": "INV-1"}) is False

    @pytest.mark.asyncio
    async def test_mark_failure_is_logged_not_raised(self, cache: WebhookReplayCache, redis_client: Any) -> None:
        redis_client.setex.side_effect = ConnectionError("redis down")

        await cache.mark_processed("pakasir", {"order_id": "INV-1"})

    @pytest.mark.asyncio
    async def test_close(self, cache: WebhookReplayCache, redis_client: Any) -> None:
        await cache.close()

        redis_client.aclose.assert_awaited_once()
        assert cache.redis_client is None
