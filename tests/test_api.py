"""
API tests.

The app is driven in-process through ``httpx.ASGITransport``; the engine
and health check dependencies are overridden with test-wired instances.
"""
from typing import Any, AsyncGenerator

import httpx
import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from qris_reconciler.api.main import app
from qris_reconciler.api.routes import get_health_check, get_reconciliation_engine
from qris_reconciler.config import Settings
from qris_reconciler.core.reconciliation import ReconciliationEngine
from qris_reconciler.database.repository import TransactionRepository
from qris_reconciler.integrations.hub_client import HubClient
from qris_reconciler.monitoring.health import HealthCheck, HealthCheckError


@pytest.fixture
def health_check(
    test_settings: Settings,
    session_factory: async_sessionmaker[AsyncSession],
    http_client: httpx.AsyncClient,
) -> HealthCheck:
    return HealthCheck(test_settings, session_factory, HubClient(test_settings, http_client))


@pytest_asyncio.fixture
async def client(
    engine: ReconciliationEngine, health_check: HealthCheck
) -> AsyncGenerator[httpx.AsyncClient, Any]:
    app.dependency_overrides[get_reconciliation_engine] = lambda: engine
    app.dependency_overrides[get_health_check] = lambda: health_check
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://reconciler.test") as ac:
        yield ac
    app.dependency_overrides.clear()


PAKASIR_WEBHOOK = {
    "amount": 10000,
    "order_id": "INV-P",
    "project": "tokotest",
    "status": "completed",
    "completed_at": "2024-05-01T10:00:00+07:00",
}


class TestWebhookEndpoint:
    """POST /payments/webhook/{gateway}"""

    @pytest.mark.asyncio
    async def test_json_webhook_settles(
        self, client: httpx.AsyncClient, seeded_bot: Any, make_transaction: Any, repository: TransactionRepository
    ) -> None:
        await make_transaction("INV-P", 10000, "pakasir")

        response = await client.post("/payments/webhook/pakasir", json=PAKASIR_WEBHOOK)

        assert response.status_code == 200
        assert response.json() == {"status": "ok"}
        assert (await repository.get_by_order_id("INV-P")).status == "success"

    @pytest.mark.asyncio
    async def test_out_of_range_completion_time_still_settles(
        self, client: httpx.AsyncClient, seeded_bot: Any, make_transaction: Any, repository: TransactionRepository
    ) -> None:
        await make_transaction("INV-P", 10000, "pakasir")

        response = await client.post(
            "/payments/webhook/pakasir", json={**PAKASIR_WEBHOOK, "completed_at": 99999999999999}
        )

        assert response.status_code == 200
        settled = await repository.get_by_order_id("INV-P")
        assert settled.status == "success"
        assert settled.paid_at is not None

    @pytest.mark.asyncio
    async def test_form_webhook_settles(
        self, client: httpx.AsyncClient, seeded_bot: Any, make_transaction: Any, repository: TransactionRepository
    ) -> None:
        await make_transaction("INV-P", 10000, "pakasir")

        response = await client.post(
            "/payments/webhook/pakasir",
            content="amount=10000&order_id=INV-P&project=tokotest&status=completed",
            headers={"Content-Type": "application/x-www-form-urlencoded"},
        )

        assert response.status_code == 200
        assert (await repository.get_by_order_id("INV-P")).status == "success"

    @pytest.mark.asyncio
    async def test_replay_is_acknowledged(
        self, client: httpx.AsyncClient, seeded_bot: Any, make_transaction: Any, fanout: Any
    ) -> None:
        await make_transaction("INV-P", 10000, "pakasir")

        first = await client.post("/payments/webhook/pakasir", json=PAKASIR_WEBHOOK)
        second = await client.post("/payments/webhook/pakasir", json=PAKASIR_WEBHOOK)

        assert first.status_code == second.status_code == 200
        assert fanout.notify.await_count == 1

    @pytest.mark.asyncio
    async def test_unknown_transaction(self, client: httpx.AsyncClient, seeded_bot: Any) -> None:
        response = await client.post("/payments/webhook/pakasir", json=PAKASIR_WEBHOOK)

        assert response.status_code == 400
        assert response.json() == {"error": "Transaction not found"}

    @pytest.mark.asyncio
    async def test_invalid_payload_is_generic(
        self, client: httpx.AsyncClient, seeded_bot: Any, make_transaction: Any
    ) -> None:
        await make_transaction("INV-P", 10000, "pakasir")

        response = await client.post(
            "/payments/webhook/pakasir", json={**PAKASIR_WEBHOOK, "project": "other"}
        )

        assert response.status_code == 400
        assert response.json() == {"error": "Invalid payload"}

    @pytest.mark.asyncio
    async def test_unsupported_gateway(self, client: httpx.AsyncClient) -> None:
        response = await client.post("/payments/webhook/midtrans", json={"order_id": "x"})

        assert response.status_code == 400
        assert response.json() == {"error": "Unsupported gateway"}

    @pytest.mark.asyncio
    @pytest.mark.parametrize("body", [b"{not json", b"[1, 2, 3]"])
    async def test_malformed_body(self, client: httpx.AsyncClient, body: bytes) -> None:
        response = await client.post(
            "/payments/webhook/pakasir",
            content=body,
            headers={"Content-Type": "application/json"},
        )

        assert response.status_code == 400
        assert response.json() == {"error": "Invalid payload"}

    @pytest.mark.asyncio
    async def test_request_id_is_echoed(self, client: httpx.AsyncClient) -> None:
        response = await client.post(
            "/payments/webhook/midtrans", json={}, headers={"X-Request-ID": "req-123"}
        )
        assert response.headers["X-Request-ID"] == "req-123"


class TestCheckEndpoint:
    """POST /payments/{order_id}/check"""

    @pytest.mark.asyncio
    async def test_check_settles(
        self, client: httpx.AsyncClient, seeded_bot: Any, make_transaction: Any, gateway_stub: Any
    ) -> None:
        await make_transaction("INV-P", 10000, "pakasir")
        gateway_stub.add(
            "GET",
            "http://pakasir.test/api/transactiondetail",
            {"transaction": {"status": "completed", "completed_at": "2024-05-01T10:00:00+07:00"}},
        )

        response = await client.post("/payments/INV-P/check")

        assert response.status_code == 200
        assert response.json() == {
            "order_id": "INV-P",
            "status": "success",
            "amount": 10000,
            "payment_gateway": "pakasir",
            "paid_at": "2024-05-01T03:00:00+00:00",
        }

    @pytest.mark.asyncio
    async def test_check_still_pending(
        self, client: httpx.AsyncClient, seeded_bot: Any, make_transaction: Any, gateway_stub: Any
    ) -> None:
        await make_transaction("INV-P", 10000, "pakasir")
        gateway_stub.add(
            "GET", "http://pakasir.test/api/transactiondetail", {"transaction": {"status": "pending"}}
        )

        response = await client.post("/payments/INV-P/check")

        assert response.status_code == 200
        assert response.json()["status"] == "pending"
        assert response.json()["paid_at"] is None

    @pytest.mark.asyncio
    async def test_check_unknown_order(self, client: httpx.AsyncClient) -> None:
        response = await client.post("/payments/INV-404/check")

        assert response.status_code == 404
        assert response.json() == {"error": "Transaction not found"}


class TestMonitoringEndpoints:
    """Health and metrics."""

    @pytest.mark.asyncio
    async def test_health(self, client: httpx.AsyncClient, gateway_stub: Any) -> None:
        gateway_stub.add("GET", "http://hub.test/status", {"connections": 2})

        response = await client.get("/health")

        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "healthy"
        assert body["checks"]["database"]["status"] == "healthy"
        assert body["checks"]["redis"]["status"] == "disabled"
        assert body["checks"]["hub"]["status"] == "healthy"

    @pytest.mark.asyncio
    async def test_unreachable_hub_keeps_ready(self, client: httpx.AsyncClient) -> None:
        response = await client.get("/health/ready")

        assert response.status_code == 200
        assert response.json()["checks"]["hub"]["status"] == "unreachable"

    @pytest.mark.asyncio
    async def test_not_ready_without_database(
        self, client: httpx.AsyncClient, health_check: HealthCheck, mocker: Any
    ) -> None:
        mocker.patch.object(
            health_check, "check_database", side_effect=HealthCheckError("database down")
        )

        response = await client.get("/health/ready")

        assert response.status_code == 503

    @pytest.mark.asyncio
    async def test_liveness(self, client: httpx.AsyncClient) -> None:
        response = await client.get("/health/live")

        assert response.status_code == 200
        assert response.json()["status"] == "alive"

    @pytest.mark.asyncio
    async def test_metrics(self, client: httpx.AsyncClient) -> None:
        response = await client.get("/metrics")

        assert response.status_code == 200
        assert "webhook_events_total" in response.text
