"""Shared httpx plumbing for the REST clients.

Provides the tenacity retry policies (3 attempts, exponential backoff 1-10s):
``upstream_retry`` for reads, updates and deletes, and the narrower
``upstream_retry_create`` for POSTs that create an upstream object. Also
translates error responses so callers only ever see ``UpstreamAPIError`` /
``UpstreamConflict``.
"""

from __future__ import annotations

from typing import Any

import httpx
import structlog
from tenacity import retry, retry_if_exception, stop_after_attempt, wait_exponential

from src.syncbridge.exceptions import UpstreamAPIError, UpstreamConflict

logger = structlog.get_logger(__name__)


def _is_transient(exc: BaseException) -> bool:
    if isinstance(exc, UpstreamAPIError):
        return exc.retryable
    return isinstance(exc, (httpx.ConnectError, httpx.TimeoutException))


def _never_reached_upstream(exc: BaseException) -> bool:
    # A timeout or 5xx on a create may still have created the object
    if isinstance(exc, UpstreamAPIError):
        return exc.status_code in (429, 503)
    return isinstance(exc, (httpx.ConnectError, httpx.ConnectTimeout))


upstream_retry = retry(
    stop=stop_after_attempt(3),
    wait=wait_exponential(multiplier=1, min=1, max=10),
    retry=retry_if_exception(_is_transient),
    reraise=True,
)

# For non-idempotent POSTs; anything else is left to the queue's event retry
upstream_retry_create = retry(
    stop=stop_after_attempt(3),
    wait=wait_exponential(multiplier=1, min=1, max=10),
    retry=retry_if_exception(_never_reached_upstream),
    reraise=True,
)


def raise_for_upstream(response: httpx.Response, service: str) -> None:
    """Translate an error response into the engine's exception types.

    Raises:
        UpstreamConflict: On HTTP 409.
        UpstreamAPIError: On any other 4xx/5xx.
    """
    if not response.is_error:
        return

    message = response.text[:500]
    logger.warning(
        "upstream.error_response",
        service=service,
        status_code=response.status_code,
        url=str(response.request.url),
    )
    if response.status_code == 409:
        raise UpstreamConflict(service, response.status_code, message)
    raise UpstreamAPIError(service, response.status_code, message)


def decode(response: httpx.Response) -> dict[str, Any]:
    """Decode a JSON body, treating 204/empty bodies as an empty object."""
    if response.status_code == 204 or not response.content:
        return {}
    return response.json()


class BaseRestClient:
    """Common constructor and per-request httpx client creation.

    Args:
        base_url: Service root, without trailing slash.
        headers: Default headers (auth, content type).
        service: Short service label used in errors and logs.
        transport: Optional httpx transport (tests use ``httpx.MockTransport``).
    """

    TIMEOUT_MUTATE = 30.0
    TIMEOUT_READ = 10.0

    def __init__(
        self,
        base_url: str,
        headers: dict[str, str],
        service: str,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._headers = headers
        self._service = service
        self._transport = transport

    def _client(self, timeout: float) -> httpx.AsyncClient:
        """Create a new httpx client with specified timeout."""
        return httpx.AsyncClient(
            headers=self._headers,
            timeout=timeout,
            transport=self._transport,
        )

    async def _request(
        self,
        method: str,
        path: str,
        *,
        json: dict[str, Any] | None = None,
        allow_not_found: bool = False,
    ) -> dict[str, Any] | None:
        timeout = self.TIMEOUT_READ if method == "GET" else self.TIMEOUT_MUTATE
        async with self._client(timeout) as client:
            response = await client.request(method, f"{self._base_url}{path}", json=json)
        if allow_not_found and response.status_code == 404:
            return None
        raise_for_upstream(response, self._service)
        return decode(response)
