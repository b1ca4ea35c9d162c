"""
Common gateway adapter interface.

Every provider normalizes to the same four operations. Adapters raise
GatewayUnavailable / GatewayBlocked for transport-level trouble and never
retry inline: the polling scheduler's next cycle is the retry.
"""
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Optional

import httpx

from qris_reconciler.config import Settings, get_settings
from qris_reconciler.database.models import gateway_family
from qris_reconciler.integrations import qris
from qris_reconciler.integrations.http import GatewayHttpClient

QrisEncoder = Callable[[str, int], str]


@dataclass
class PaymentResult:
    """Outcome of issuing a payment at the gateway."""

    payment_id: str
    qr_string: Optional[str]
    expires_at: Optional[datetime]
    amount: int
    fee: int = 0
    raw: Dict[str, Any] = field(default_factory=dict)


@dataclass
class StatusResult:
    """Gateway-reported state of one payment."""

    status: str
    payment_id: str
    paid_at: Optional[datetime] = None
    amount: Optional[int] = None


@dataclass
class WebhookEvent:
    """
    Normalized inbound webhook.

    ``payment_id`` is our order id or the gateway's payment reference;
    ``external_id`` is the gateway mutation id when the provider sends one;
    ``deposit_id`` is the provider-side id needed for follow-up calls.
    """

    payment_id: str
    status: str
    amount: int = 0
    external_id: Optional[str] = None
    deposit_id: Optional[str] = None
    paid_at: Optional[datetime] = None


def unwrap_data(payload: Dict[str, Any]) -> Dict[str, Any]:
    """Providers sometimes nest the event under ``data``."""
    data = payload.get("data")
    if isinstance(data, dict):
        return data
    return payload


def first_present(*values: Any) -> Any:
    for value in values:
        if value not in (None, ""):
            return value
    return None


def to_int(value: Any) -> int:
    """
    Parse an amount that may arrive as int, float or a formatted string.

    Accepts "10000", "10000.00", "10.000" and "Rp 10.000,00".
    """
    if value is None or value == "":
        return 0
    if isinstance(value, (int, float)):
        return int(value)

    text = re.sub(r"[^\d.,]", "", str(value))
    if "," in text:
        text = text.split(",")[0].replace(".", "")
    elif re.fullmatch(r"\d+\.\d{1,2}", text):
        text = text.split(".")[0]
    else:
        text = text.replace(".", "")
    return int(text) if text else 0


class PaymentGateway(ABC):
    """
    Base class for payment gateway adapters.

    Subclasses set ``code``/``name`` and implement the four operations.
    """

    code: str = ""
    name: str = ""
    has_mutation_feed: bool = False

    def __init__(
        self,
        credentials: Dict[str, Any],
        settings: Optional[Settings] = None,
        http_client: Optional[httpx.AsyncClient] = None,
        qris_encoder: QrisEncoder = qris.make_dynamic,
    ):
        """
        Initialize adapter.

        Args:
            credentials: Opaque credential bag from the credential store
            settings: Optional settings (defaults to cached settings)
            http_client: Optional shared httpx client
            qris_encoder: Static-to-dynamic QRIS converter
        """
        self.credentials = credentials or {}
        self.settings = settings or get_settings()
        self.http = GatewayHttpClient(
            self.code, timeout=self.settings.gateway_timeout, client=http_client
        )
        self.qris_encoder = qris_encoder

    @property
    def family(self) -> str:
        return gateway_family(self.code)

    @property
    def timestamp_tolerance(self) -> timedelta:
        """Backward grace applied when comparing mutation and creation times."""
        return timedelta(seconds=self.settings.tolerance_for(self.code))

    @abstractmethod
    async def create_payment(
        self,
        amount: int,
        order_id: str,
        customer_name: Optional[str] = None,
        callback_url: Optional[str] = None,
    ) -> PaymentResult:
        """Issue a payment (QR) for an order."""

    @abstractmethod
    async def check_status(self, payment_id: str, amount: Optional[int] = None) -> StatusResult:
        """Ask the gateway for the current state of a payment."""

    @abstractmethod
    def parse_webhook(self, payload: Dict[str, Any]) -> WebhookEvent:
        """Normalize an inbound webhook body."""

    @abstractmethod
    def validate_webhook(self, payload: Dict[str, Any], signature: Optional[str] = None) -> bool:
        """Decide whether an inbound webhook is acceptable."""

    def __repr__(self) -> str:
        return f"<{type(self).__name__}(code={self.code})>"
