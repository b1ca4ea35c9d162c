"""Tests for the expiry sweep and the callback retry worker."""
from datetime import timedelta
from typing import Any

import httpx
import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from qris_reconciler.config import Settings
from qris_reconciler.core.notifications import NotificationFanout
from qris_reconciler.database.models import Bot
from qris_reconciler.database.repository import CredentialStore, TransactionRepository
from qris_reconciler.integrations.callback_client import CallbackClient
from qris_reconciler.integrations.hub_client import HubClient
from qris_reconciler.timeutils import utcnow
from qris_reconciler.workers.callback_retry_worker import retry_failed_callbacks
from qris_reconciler.workers.expiry_sweep import expire_pending_transactions

from conftest import CALLBACK_URL, OWNER_ID


class TestExpirySweep:
    """Pending transactions past their horizon become expired."""

    @pytest.mark.asyncio
    async def test_expires_overdue_only(
        self, make_transaction: Any, repository: TransactionRepository, test_settings: Settings
    ) -> None:
        now = utcnow()
        await make_transaction("INV-OLD", 10000, created_at=now - timedelta(minutes=20))
        await make_transaction("INV-FRESH", 10000, created_at=now - timedelta(minutes=5))
        await make_transaction(
            "INV-SHORT", 10000, created_at=now - timedelta(minutes=3), expired_at=now - timedelta(minutes=1)
        )
        await make_transaction(
            "INV-LONG", 10000, created_at=now - timedelta(minutes=20), expired_at=now + timedelta(minutes=10)
        )

        expired = await expire_pending_transactions(repository, test_settings)

        assert expired == 2
        statuses = {
            order_id: (await repository.get_by_order_id(order_id)).status
            for order_id in ("INV-OLD", "INV-FRESH", "INV-SHORT", "INV-LONG")
        }
        assert statuses == {
            "INV-OLD": "expired",
            "INV-FRESH": "pending",
            "INV-SHORT": "expired",
            "INV-LONG": "pending",
        }

    @pytest.mark.asyncio
    async def test_settled_transactions_are_untouched(
        self, make_transaction: Any, repository: TransactionRepository, test_settings: Settings
    ) -> None:
        now = utcnow()
        await make_transaction(
            "INV-PAID", 10000, created_at=now - timedelta(hours=1), status="success", paid_at=now
        )

        assert await expire_pending_transactions(repository, test_settings) == 0
        assert (await repository.get_by_order_id("INV-PAID")).status == "success"


@pytest.fixture
def retry_fanout(
    repository: TransactionRepository,
    credential_store: CredentialStore,
    test_settings: Settings,
    http_client: httpx.AsyncClient,
) -> NotificationFanout:
    return NotificationFanout(
        repository,
        credential_store,
        HubClient(test_settings, http_client),
        CallbackClient(test_settings, http_client),
    )


class TestCallbackRetry:
    """Unacknowledged callbacks are re-sent within the retry window."""

    @pytest.mark.asyncio
    async def test_resends_unacknowledged(
        self,
        seeded_bot: Any,
        make_transaction: Any,
        repository: TransactionRepository,
        retry_fanout: NotificationFanout,
        test_settings: Settings,
        gateway_stub: Any,
    ) -> None:
        now = utcnow()
        await make_transaction("INV-1", 10000, status="success", paid_at=now)
        await make_transaction(
            "INV-ACKED", 10000, status="success", paid_at=now, callback_sent_at=now, callback_response="200"
        )
        await make_transaction("INV-PENDING", 10000)
        gateway_stub.add("POST", CALLBACK_URL, {"ok": True})

        delivered = await retry_failed_callbacks(repository, retry_fanout, test_settings)

        assert delivered == 1
        assert len(gateway_stub.calls("POST", CALLBACK_URL)) == 1
        assert (await repository.get_by_order_id("INV-1")).callback_sent_at is not None
        assert gateway_stub.calls("POST", "http://hub.test/broadcast") == []

    @pytest.mark.asyncio
    async def test_outside_window_is_abandoned(
        self,
        seeded_bot: Any,
        make_transaction: Any,
        repository: TransactionRepository,
        retry_fanout: NotificationFanout,
        test_settings: Settings,
        gateway_stub: Any,
    ) -> None:
        old = utcnow() - timedelta(hours=30)
        await make_transaction("INV-OLD", 10000, created_at=old, status="success", paid_at=old)

        assert await retry_failed_callbacks(repository, retry_fanout, test_settings) == 0
        assert gateway_stub.requests == []

    @pytest.mark.asyncio
    async def test_still_failing_stays_queued(
        self,
        seeded_bot: Any,
        make_transaction: Any,
        repository: TransactionRepository,
        retry_fanout: NotificationFanout,
        test_settings: Settings,
        gateway_stub: Any,
    ) -> None:
        await make_transaction("INV-1", 10000, status="success", paid_at=utcnow())
        gateway_stub.add("POST", CALLBACK_URL, httpx.Response(500, text="still down"))

        assert await retry_failed_callbacks(repository, retry_fanout, test_settings) == 0
        assert (await repository.get_by_order_id("INV-1")).callback_sent_at is None

    @pytest.mark.asyncio
    async def test_batch_size_limits_work(
        self,
        seeded_bot: Any,
        make_transaction: Any,
        repository: TransactionRepository,
        retry_fanout: NotificationFanout,
        test_settings: Settings,
        gateway_stub: Any,
    ) -> None:
        now = utcnow()
        for i in range(3):
            await make_transaction(
                f"INV-{i}", 10000, created_at=now - timedelta(minutes=10 - i), status="success", paid_at=now
            )
        gateway_stub.add("POST", CALLBACK_URL, {"ok": True})
        settings = test_settings.model_copy(update={"callback_retry_batch_size": 2})

        assert await retry_failed_callbacks(repository, retry_fanout, settings) == 2
        assert (await repository.get_by_order_id("INV-2")).callback_sent_at is None

    @pytest.mark.asyncio
    async def test_unconfigured_bots_do_not_starve_the_batch(
        self,
        seeded_bot: Any,
        session_factory: async_sessionmaker[AsyncSession],
        make_transaction: Any,
        repository: TransactionRepository,
        retry_fanout: NotificationFanout,
        test_settings: Settings,
        gateway_stub: Any,
    ) -> None:
        async with session_factory() as session:
            session.add(Bot(id=2, user_id=OWNER_ID, name="No Callback Bot", settings={}))
            await session.commit()

        now = utcnow()
        for i in range(3):
            await make_transaction(
                f"INV-QUIET-{i}",
                10000,
                bot_id=2,
                created_at=now - timedelta(minutes=30 - i),
                status="success",
                paid_at=now,
            )
        await make_transaction(
            "INV-LIVE", 20000, created_at=now - timedelta(minutes=5), status="success", paid_at=now
        )
        gateway_stub.add("POST", CALLBACK_URL, {"ok": True})
        settings = test_settings.model_copy(update={"callback_retry_batch_size": 3})

        await retry_failed_callbacks(repository, retry_fanout, settings)
        await retry_failed_callbacks(repository, retry_fanout, settings)

        for i in range(3):
            quiet = await repository.get_by_order_id(f"INV-QUIET-{i}")
            assert quiet.callback_response == "skipped"
            assert quiet.callback_sent_at is not None
        live = await repository.get_by_order_id("INV-LIVE")
        assert live.callback_sent_at is not None
        assert len(gateway_stub.calls("POST", CALLBACK_URL)) == 1

    @pytest.mark.asyncio
    async def test_orphaned_transaction_leaves_the_queue(
        self,
        make_transaction: Any,
        repository: TransactionRepository,
        retry_fanout: NotificationFanout,
        test_settings: Settings,
        gateway_stub: Any,
    ) -> None:
        await make_transaction("INV-ORPHAN", 10000, bot_id=42, status="success", paid_at=utcnow())

        assert await retry_failed_callbacks(repository, retry_fanout, test_settings) == 0
        orphan = await repository.get_by_order_id("INV-ORPHAN")
        assert orphan.callback_response == "bot_missing"
        assert await repository.list_callback_retry(utcnow() - timedelta(hours=1), 10) == []
        assert gateway_stub.requests == []
