"""Gateway adapter registry."""
from typing import Any, Dict, List, Optional, Type

import httpx

from qris_reconciler.config import Settings
from qris_reconciler.exceptions import UnknownGateway
from qris_reconciler.integrations.gateways.atlantic import AtlanticFastGateway, AtlanticGateway
from qris_reconciler.integrations.gateways.base import PaymentGateway
from qris_reconciler.integrations.gateways.orderkuota import OrderKuotaGateway
from qris_reconciler.integrations.gateways.pakasir import PakasirGateway
from qris_reconciler.integrations.gateways.qiospay import QiosPayGateway

GATEWAYS: Dict[str, Type[PaymentGateway]] = {
    "qiospay": QiosPayGateway,
    "pakasir": PakasirGateway,
    "atlantic": AtlanticGateway,
    "atlantic_fast": AtlanticFastGateway,
    "orderkuota": OrderKuotaGateway,
}


def create_gateway(
    code: str,
    credentials: Optional[Dict[str, Any]] = None,
    settings: Optional[Settings] = None,
    http_client: Optional[httpx.AsyncClient] = None,
) -> PaymentGateway:
    """
    Build the adapter for a gateway code.

    Args:
        code: Gateway code
        credentials: Credential bag (empty for parse-only use)
        settings: Optional settings
        http_client: Optional shared httpx client

    Returns:
        PaymentGateway: Adapter instance

    Raises:
        UnknownGateway: If the code is not registered
    """
    gateway_cls = GATEWAYS.get((code or "").lower())
    if gateway_cls is None:
        raise UnknownGateway(f"Unsupported payment gateway: {code}")
    return gateway_cls(credentials or {}, settings=settings, http_client=http_client)


def available_gateway_codes() -> List[str]:
    return list(GATEWAYS)
