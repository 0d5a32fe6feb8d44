from __future__ import annotations

from typing import Any

import httpx
import structlog

from tfci_policy.core.errors import (
    GatewayError,
    NotFoundError,
    PermissionDeniedError,
    TransientError,
)

logger = structlog.get_logger()

JSONAPI_CONTENT_TYPE = "application/vnd.api+json"


def is_retryable_status(status_code: int) -> bool:
    """Determine if HTTP status code is retryable."""
    return status_code in (408, 429, 500, 502, 503, 504)


class BaseHTTPClient:
    """Base JSON:API client that maps HTTP failures onto the error taxonomy.

    Requests are never retried here. Retryable failures raise ``TransientError``
    and it is up to the caller's polling loop to try again.
    """

    def __init__(
        self,
        base_url: str,
        *,
        timeout: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._timeout = timeout
        self._transport = transport

    def _headers(self) -> dict[str, str]:
        """Override to provide custom headers."""
        return {"Content-Type": JSONAPI_CONTENT_TYPE, "Accept": JSONAPI_CONTENT_TYPE}

    async def _request(
        self,
        method: str,
        path: str,
        *,
        params: dict[str, Any] | None = None,
        json: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        """Execute HTTP request and return the decoded JSON body."""
        url = f"{self._base_url}{path}"

        try:
            async with httpx.AsyncClient(timeout=self._timeout, transport=self._transport) as client:
                response = await client.request(
                    method,
                    url,
                    params=params,
                    json=json,
                    headers=self._headers(),
                )
        except (httpx.TimeoutException, httpx.NetworkError) as exc:
            logger.warning("http_network_error", method=method, url=url, error=str(exc))
            raise TransientError(str(exc), {"method": method, "url": url}) from exc

        status = response.status_code
        details = {"method": method, "url": url, "status": status}

        if is_retryable_status(status):
            logger.warning("http_retryable_error", **details)
            raise TransientError(f"HTTP {status}", details)
        if status in (401, 403):
            logger.error("http_permission_denied", **details)
            raise PermissionDeniedError("insufficient permissions for this operation", details)
        if status == 404:
            raise NotFoundError("resource not found", details)
        if status >= 400:
            logger.error("http_permanent_error", error=response.text, **details)
            raise GatewayError(f"HTTP {status}: {response.text}", details)

        if not response.content:
            return {}
        try:
            return response.json()
        except ValueError as exc:
            raise GatewayError("response did not contain JSON", details) from exc

    async def get(self, path: str, *, params: dict[str, Any] | None = None) -> dict[str, Any]:
        """Execute GET request."""
        return await self._request("GET", path, params=params)

    async def post(self, path: str, *, json: dict[str, Any] | None = None) -> dict[str, Any]:
        """Execute POST request."""
        return await self._request("POST", path, json=json)
