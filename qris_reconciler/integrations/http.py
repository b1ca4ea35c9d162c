"""
Shared HTTP transport for gateway adapters.

Every outbound gateway call goes through ``GatewayHttpClient`` so that
failures are classified the same way everywhere:
- connect errors, timeouts and 5xx -> GatewayUnavailable
- HTML challenge pages and non-JSON bodies -> GatewayBlocked
"""
import json
import time
from typing import Any, Dict, Optional

import httpx
import structlog

from qris_reconciler.exceptions import GatewayBlocked, GatewayUnavailable

logger = structlog.get_logger(__name__)

HTML_MARKERS = ("<!doctype html", "<html")


def looks_like_html(body: str) -> bool:
    head = body.lstrip()[:512].lower()
    return any(marker in head for marker in HTML_MARKERS)


class GatewayHttpClient:
    """
    Thin httpx wrapper with bounded timeouts and error classification.

    A caller-provided ``httpx.AsyncClient`` is reused as-is (and never
    closed here); otherwise a short-lived client is opened per request.
    """

    def __init__(
        self,
        gateway: str,
        timeout: float = 30.0,
        client: Optional[httpx.AsyncClient] = None,
    ):
        """
        Initialize transport.

        Args:
            gateway: Gateway code used in errors and logs
            timeout: Request timeout in seconds
            client: Optional shared AsyncClient
        """
        self.gateway = gateway
        self.timeout = timeout
        self.client = client

    async def _send(self, method: str, url: str, **kwargs: Any) -> httpx.Response:
        if self.client is not None:
            return await self.client.request(method, url, timeout=self.timeout, **kwargs)
        async with httpx.AsyncClient(timeout=self.timeout) as client:
            return await client.request(method, url, **kwargs)

    async def request_json(
        self,
        method: str,
        url: str,
        *,
        data: Optional[Dict[str, Any]] = None,
        json_body: Optional[Dict[str, Any]] = None,
        params: Optional[Dict[str, Any]] = None,
    ) -> Any:
        """
        Perform a request and decode its JSON body.

        4xx responses are returned decoded: gateways report business errors
        in the body and the adapter decides what they mean.

        Args:
            method: HTTP method
            url: Absolute URL
            data: Form-encoded body
            json_body: JSON body
            params: Query string parameters

        Returns:
            Any: Decoded JSON body

        Raises:
            GatewayUnavailable: Network error, timeout or 5xx response
            GatewayBlocked: HTML body or undecodable JSON
        """
        start_time = time.time()
        try:
            response = await self._send(method, url, data=data, json=json_body, params=params)
        except httpx.TimeoutException as e:
            logger.warning("gateway_request_timeout", gateway=self.gateway, url=url)
            raise GatewayUnavailable(
                f"{self.gateway} request timed out after {self.timeout}s",
                gateway=self.gateway,
                original_error=e,
            ) from e
        except httpx.TransportError as e:
            logger.warning("gateway_request_failed", gateway=self.gateway, url=url, error=str(e))
            raise GatewayUnavailable(
                f"{self.gateway} unreachable: {e}", gateway=self.gateway, original_error=e
            ) from e

        duration = time.time() - start_time
        body = response.text

        if response.status_code >= 500:
            logger.warning(
                "gateway_server_error",
                gateway=self.gateway,
                status_code=response.status_code,
                duration_seconds=duration,
            )
            raise GatewayUnavailable(
                f"{self.gateway} returned HTTP {response.status_code}", gateway=self.gateway
            )

        if looks_like_html(body):
            logger.warning(
                "gateway_html_challenge",
                gateway=self.gateway,
                status_code=response.status_code,
            )
            raise GatewayBlocked(
                f"{self.gateway} answered with an HTML page (anti-bot challenge)",
                gateway=self.gateway,
            )

        try:
            payload = json.loads(body)
        except ValueError as e:
            logger.warning(
                "gateway_invalid_json",
                gateway=self.gateway,
                status_code=response.status_code,
                body_preview=body[:200],
            )
            raise GatewayBlocked(
                f"{self.gateway} returned invalid JSON", gateway=self.gateway, original_error=e
            ) from e

        logger.debug(
            "gateway_request_completed",
            gateway=self.gateway,
            method=method,
            status_code=response.status_code,
            duration_seconds=duration,
        )
        return payload
