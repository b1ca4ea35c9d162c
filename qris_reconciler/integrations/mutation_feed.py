"""
Mutation feed: incoming-funds statements from feed-based gateways.

QiosPay and OrderKuota never tell us which order was paid. We read the
merchant's account statement ("mutasi") and let the engine match amounts.
Upstreams block datacenter IPs, so the statement is normally fetched through
a proxy exposing one unified contract:

    POST {proxy}/api/unified-mutations
    {"gateway": "qiospay", "merchant_code": ..., "api_key": ...}
    {"gateway": "orderkuota", "username": ..., "token": ...}
    -> {"success": true, "mutations": [{"ref_id", "amount", "paid_at", "status", ...}]}

Without a proxy, QiosPay's own mutasi API is called directly.
"""
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

import httpx
import structlog

from qris_reconciler.config import Settings, get_settings
from qris_reconciler.exceptions import GatewayBlocked, GatewayRejected, UnknownGateway
from qris_reconciler.integrations.gateways.base import first_present, to_int
from qris_reconciler.integrations.http import GatewayHttpClient
from qris_reconciler.timeutils import parse_timestamp

logger = structlog.get_logger(__name__)

CREDIT = "credit"
DEBIT = "debit"

CREDIT_MARKERS = {"cr", "credit", "kredit", "in", "masuk", "paid", "success"}
DEBIT_MARKERS = {"db", "dr", "debit", "debet", "out", "keluar"}

# OrderKuota's upstream answers this when called from a blocked network
BLOCK_MESSAGES = ("gunakan jaringan",)


@dataclass
class MutationRecord:
    """One statement line, normalized. Never persisted."""

    external_id: Optional[str]
    amount: int
    occurred_at: Optional[datetime]
    direction: str = CREDIT
    raw: Dict[str, Any] = field(default_factory=dict, repr=False)

    @property
    def is_credit(self) -> bool:
        return self.direction == CREDIT


def _direction(*markers: Any, default: str = CREDIT) -> str:
    for marker in markers:
        if marker is None:
            continue
        value = str(marker).strip().lower()
        if value in DEBIT_MARKERS:
            return DEBIT
        if value in CREDIT_MARKERS:
            return CREDIT
    return default


def _external_id(*candidates: Any) -> Optional[str]:
    value = first_present(*candidates)
    return str(value) if value is not None else None


def normalize_unified(item: Dict[str, Any]) -> MutationRecord:
    """Normalize a mutation from the unified proxy contract."""
    return MutationRecord(
        external_id=_external_id(item.get("ref_id"), item.get("id")),
        amount=to_int(item.get("amount")),
        occurred_at=parse_timestamp(first_present(item.get("paid_at"), item.get("date"))),
        direction=_direction(item.get("type"), item.get("status")),
        raw=item,
    )


def normalize_qiospay(item: Dict[str, Any]) -> MutationRecord:
    """
    Normalize a QiosPay mutasi row.

    Rows look like ``{"id", "type": "CR"|"DB", "amount", "date", "issuer_reff", "buyer_reff"}``.
    """
    return MutationRecord(
        external_id=_external_id(item.get("id"), item.get("issuer_reff")),
        amount=to_int(item.get("amount")),
        occurred_at=parse_timestamp(item.get("date")),
        direction=_direction(item.get("type"), default=DEBIT),
        raw=item,
    )


def normalize_orderkuota(item: Dict[str, Any]) -> MutationRecord:
    """
    Normalize an OrderKuota QRIS history row.

    Amounts are Indonesian-formatted strings ("10.000") split across
    ``kredit``/``debet`` and ``tanggal`` is "dd/mm/YYYY HH:MM" in WIB.
    """
    kredit = to_int(item.get("kredit"))
    debet = to_int(item.get("debet"))
    default = DEBIT if debet and not kredit else CREDIT
    return MutationRecord(
        external_id=_external_id(item.get("id")),
        amount=kredit or debet,
        occurred_at=parse_timestamp(item.get("tanggal")),
        direction=_direction(item.get("status"), default=default),
        raw=item,
    )


def normalize_mutation(item: Dict[str, Any]) -> MutationRecord:
    """Pick the normalizer by the fields a row carries."""
    if "kredit" in item or "tanggal" in item:
        return normalize_orderkuota(item)
    if "ref_id" in item or "paid_at" in item:
        return normalize_unified(item)
    return normalize_qiospay(item)


class MutationFeed:
    """
    Fetches and normalizes statement mutations for one merchant account.

    Raises the same gateway errors as the adapters: GatewayUnavailable for
    transport trouble, GatewayBlocked when the upstream or proxy refuses us.
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        self.settings = settings or get_settings()
        self.http_client = http_client

    def _http(self, gateway: str) -> GatewayHttpClient:
        return GatewayHttpClient(
            gateway, timeout=self.settings.gateway_timeout, client=self.http_client
        )

    async def fetch(self, gateway_code: str, credentials: Dict[str, Any]) -> List[MutationRecord]:
        """
        Fetch the current mutation list for a merchant account.

        Args:
            gateway_code: ``qiospay`` or ``orderkuota``
            credentials: Credential bag of the account

        Returns:
            List[MutationRecord]: Normalized mutations, credits and debits

        Raises:
            UnknownGateway: For gateways without a mutation feed
            GatewayRejected: When credentials are missing
        """
        proxy_url = credentials.get("proxy_url") or self.settings.mutation_proxy_url

        if gateway_code == "qiospay":
            merchant_code = credentials.get("merchant_code")
            api_key = credentials.get("api_key")
            if not merchant_code or not api_key:
                raise GatewayRejected("QiosPay merchant_code/api_key missing", gateway=gateway_code)
            if proxy_url:
                body = {"gateway": "qiospay", "merchant_code": merchant_code, "api_key": api_key}
                return await self._fetch_unified(gateway_code, proxy_url, body)
            return await self._fetch_qiospay_direct(merchant_code, api_key)

        if gateway_code == "orderkuota":
            username = credentials.get("username")
            token = credentials.get("token")
            if not username or not token:
                raise GatewayRejected("OrderKuota username/token missing", gateway=gateway_code)
            if not proxy_url:
                raise GatewayRejected("OrderKuota requires a mutation proxy", gateway=gateway_code)
            body = {"gateway": "orderkuota", "username": username, "token": token}
            return await self._fetch_unified(gateway_code, proxy_url, body)

        raise UnknownGateway(f"Gateway {gateway_code} has no mutation feed")

    async def _fetch_unified(
        self, gateway_code: str, proxy_url: str, body: Dict[str, Any]
    ) -> List[MutationRecord]:
        url = f"{proxy_url.rstrip('/')}/api/unified-mutations"
        result = await self._http(gateway_code).request_json("POST", url, json_body=body)

        if not isinstance(result, dict) or not result.get("success"):
            message = ""
            if isinstance(result, dict):
                message = str(first_present(result.get("error"), result.get("message")) or "")
            logger.warning(
                "mutation_proxy_refused",
                gateway=gateway_code,
                gateway_message=message,
                blocked=any(m in message.lower() for m in BLOCK_MESSAGES),
            )
            raise GatewayBlocked(
                f"Mutation proxy refused {gateway_code}: {message or 'unknown error'}",
                gateway=gateway_code,
            )

        mutations = [
            normalize_mutation(item)
            for item in result.get("mutations") or []
            if isinstance(item, dict)
        ]
        logger.info("mutations_fetched", gateway=gateway_code, count=len(mutations), source="proxy")
        return mutations

    async def _fetch_qiospay_direct(self, merchant_code: str, api_key: str) -> List[MutationRecord]:
        base = self.settings.qiospay_base_url.rstrip("/")
        url = f"{base}/api/mutasi/qris/{merchant_code}/{api_key}"
        result = await self._http("qiospay").request_json("GET", url)

        rows = result.get("data") if isinstance(result, dict) else None
        if not isinstance(rows, list):
            message = result.get("message") if isinstance(result, dict) else None
            raise GatewayBlocked(
                f"QiosPay mutasi returned no data: {message or 'unexpected body'}",
                gateway="qiospay",
            )

        mutations = [normalize_qiospay(row) for row in rows if isinstance(row, dict)]
        logger.info("mutations_fetched", gateway="qiospay", count=len(mutations), source="direct")
        return mutations
