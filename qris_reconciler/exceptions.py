"""
Error taxonomy for the reconciliation service.

Gateway errors are classified the way the engine reacts to them:
- GatewayUnavailable: network/timeout, retried on the next cycle
- GatewayBlocked: anti-bot challenge or proxy-reported block, zero progress
"""
from enum import Enum
from typing import Optional


class GatewayErrorType(Enum):
    """Classification of gateway errors for scheduling decisions."""

    UNAVAILABLE = "unavailable"  # Retry next cycle
    BLOCKED = "blocked"  # Log and skip the cycle
    REJECTED = "rejected"  # Gateway refused the request


class ReconcilerError(Exception):
    """Base exception for reconciliation errors."""

    pass


class GatewayError(ReconcilerError):
    """Base exception for gateway adapter failures."""

    error_type = GatewayErrorType.UNAVAILABLE

    def __init__(
        self,
        message: str,
        gateway: Optional[str] = None,
        original_error: Optional[Exception] = None,
    ):
        """
        Initialize gateway error.

        Args:
            message: Error message
            gateway: Gateway code that raised the error
            original_error: Underlying exception, if any
        """
        super().__init__(message)
        self.gateway = gateway
        self.original_error = original_error


class GatewayUnavailable(GatewayError):
    """Raised on network errors, timeouts and upstream 5xx responses."""

    error_type = GatewayErrorType.UNAVAILABLE


class GatewayBlocked(GatewayError):
    """Raised when the gateway answers with an HTML challenge, garbage or a block notice."""

    error_type = GatewayErrorType.BLOCKED


class GatewayRejected(GatewayError):
    """Raised when the gateway answers but refuses the request (bad credentials, limits)."""

    error_type = GatewayErrorType.REJECTED


class InvalidPayload(ReconcilerError):
    """Raised for malformed webhook payloads or QRIS strings."""

    pass


class AlreadyConsumed(ReconcilerError):
    """Raised when a mutation id or transaction was claimed by another writer."""

    pass


class TransactionNotFound(ReconcilerError):
    """Raised when a webhook references an order we do not know about."""

    pass


class UnknownGateway(ReconcilerError):
    """Raised when no adapter is registered for a gateway code."""

    pass
