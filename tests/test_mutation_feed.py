"""
Tests for mutation feed fetching and normalization.
"""
import json
from datetime import datetime, timezone
from typing import Any

import httpx
import pytest

from qris_reconciler.config import Settings
from qris_reconciler.exceptions import GatewayBlocked, GatewayRejected, GatewayUnavailable, UnknownGateway
from qris_reconciler.integrations.mutation_feed import (
    CREDIT,
    DEBIT,
    MutationFeed,
    normalize_mutation,
    normalize_orderkuota,
    normalize_qiospay,
)

PROXY = "http://proxy.test/api/unified-mutations"


@pytest.mark.unit
class TestNormalization:
    """Row normalizers."""

    def test_orderkuota_row(self) -> None:
        record = normalize_orderkuota(
            {"id": 991, "kredit": "10.000", "debet": "0", "tanggal": "01/05/2024 17:05", "status": "IN"}
        )

        assert record.external_id == "991"
        assert record.amount == 10000
        assert record.direction == CREDIT
        # WIB is UTC+7
        assert record.occurred_at == datetime(2024, 5, 1, 10, 5, tzinfo=timezone.utc)

    def test_orderkuota_debit_row(self) -> None:
        record = normalize_orderkuota({"id": 992, "kredit": "0", "debet": "5.000", "tanggal": "01/05/2024 17:05", "status": "OUT"})
        assert record.direction == DEBIT
        assert record.amount == 5000

    def test_qiospay_row(self) -> None:
        record = normalize_qiospay(
            {"id": "Q1", "type": "CR", "amount": "25000", "date": "2024-05-01 17:05:09", "issuer_reff": "ISS1"}
        )

        assert record.external_id == "Q1"
        assert record.is_credit
        assert record.occurred_at == datetime(2024, 5, 1, 10, 5, 9, tzinfo=timezone.utc)

    def test_qiospay_row_defaults_to_debit(self) -> None:
        assert normalize_qiospay({"id": "Q2", "type": "DB", "amount": "1000"}).direction == DEBIT
        assert normalize_qiospay({"id": "Q3", "amount": "1000"}).direction == DEBIT

    def test_dispatch_by_shape(self) -> None:
        unified = normalize_mutation({"ref_id": "U1", "amount": 5000, "type": "credit", "paid_at": "2024-05-01T10:00:00Z"})
        orderkuota = normalize_mutation({"id": 1, "kredit": "5.000", "tanggal": "01/05/2024 17:00"})

        assert unified.external_id == "U1"
        assert unified.occurred_at == datetime(2024, 5, 1, 10, 0, tzinfo=timezone.utc)
        assert orderkuota.amount == 5000

    def test_unparseable_timestamp_is_none(self) -> None:
        assert normalize_qiospay({"id": "Q4", "type": "CR", "amount": 1, "date": "kemarin"}).occurred_at is None


class TestMutationFeed:
    """Fetching through the unified proxy and the direct QiosPay API."""

    @pytest.mark.asyncio
    async def test_orderkuota_via_proxy(self, test_settings: Settings, http_client: httpx.AsyncClient, gateway_stub: Any) -> None:
        gateway_stub.add(
            "POST",
            PROXY,
            {
                "success": True,
                "mutations": [
                    {"id": 1, "kredit": "50.000", "tanggal": "01/05/2024 17:00", "status": "IN"},
                    {"id": 2, "debet": "20.000", "tanggal": "01/05/2024 17:01", "status": "OUT"},
                ],
            },
        )
        feed = MutationFeed(test_settings, http_client)

        mutations = await feed.fetch("orderkuota", {"username": "okuser", "token": "oktoken"})

        assert [(m.external_id, m.amount, m.direction) for m in mutations] == [
            ("1", 50000, CREDIT),
            ("2", 20000, DEBIT),
        ]
        body = json.loads(gateway_stub.requests[0].content)
        assert body == {"gateway": "orderkuota", "username": "okuser", "token": "oktoken"}

    @pytest.mark.asyncio
    async def test_qiospay_via_proxy(self, test_settings: Settings, http_client: httpx.AsyncClient, gateway_stub: Any) -> None:
        gateway_stub.add("POST", PROXY, {"success": True, "mutations": []})
        feed = MutationFeed(test_settings, http_client)

        assert await feed.fetch("qiospay", {"merchant_code": "QP001", "api_key": "qpkey"}) == []
        body = json.loads(gateway_stub.requests[0].content)
        assert body == {"gateway": "qiospay", "merchant_code": "QP001", "api_key": "qpkey"}

    @pytest.mark.asyncio
    async def test_qiospay_direct_without_proxy(self, test_settings: Settings, http_client: httpx.AsyncClient, gateway_stub: Any) -> None:
        settings = test_settings.model_copy(update={"mutation_proxy_url": None})
        gateway_stub.add(
            "GET",
            "http://qiospay.test/api/mutasi/qris/QP001/qpkey",
            {
                "status": "success",
                "data": [
                    {"id": "Q1", "type": "CR", "amount": "10000", "date": "2024-05-01 17:00:00"},
                    {"id": "Q2", "type": "DB", "amount": "3000", "date": "2024-05-01 17:01:00"},
                ],
            },
        )
        feed = MutationFeed(settings, http_client)

        mutations = await feed.fetch("qiospay", {"merchant_code": "QP001", "api_key": "qpkey"})

        assert [m.is_credit for m in mutations] == [True, False]

    @pytest.mark.asyncio
    async def test_proxy_refusal_is_blocked(self, test_settings: Settings, http_client: httpx.AsyncClient, gateway_stub: Any) -> None:
        gateway_stub.add("POST", PROXY, {"success": False, "error": "Gunakan jaringan lain"})
        feed = MutationFeed(test_settings, http_client)

        with pytest.raises(GatewayBlocked):
            await feed.fetch("orderkuota", {"username": "u", "token": "t"})

    @pytest.mark.asyncio
    async def test_proxy_down_is_unavailable(self, test_settings: Settings, http_client: httpx.AsyncClient, gateway_stub: Any) -> None:
        def refuse(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        gateway_stub.add("POST", PROXY, refuse)
        feed = MutationFeed(test_settings, http_client)

        with pytest.raises(GatewayUnavailable):
            await feed.fetch("orderkuota", {"username": "u", "token": "t"})

    @pytest.mark.asyncio
    async def test_missing_credentials(self, test_settings: Settings, http_client: httpx.AsyncClient) -> None:
        feed = MutationFeed(test_settings, http_client)

        with pytest.raises(GatewayRejected):
            await feed.fetch("orderkuota", {"username": "u"})
        with pytest.raises(GatewayRejected):
            await feed.fetch("qiospay", {"api_key": "k"})

    @pytest.mark.asyncio
    async def test_gateway_without_feed(self, test_settings: Settings, http_client: httpx.AsyncClient) -> None:
        with pytest.raises(UnknownGateway):
            await MutationFeed(test_settings, http_client).fetch("pakasir", {})
