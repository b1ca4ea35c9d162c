"""Payment gateway adapters."""
from .atlantic import AtlanticFastGateway, AtlanticGateway
from .base import PaymentGateway, PaymentResult, StatusResult, WebhookEvent
from .factory import available_gateway_codes, create_gateway
from .orderkuota import OrderKuotaGateway
from .pakasir import PakasirGateway
from .qiospay import QiosPayGateway

__all__ = [
    "AtlanticFastGateway",
    "AtlanticGateway",
    "OrderKuotaGateway",
    "PakasirGateway",
    "PaymentGateway",
    "PaymentResult",
    "QiosPayGateway",
    "StatusResult",
    "WebhookEvent",
    "available_gateway_codes",
    "create_gateway",
]
