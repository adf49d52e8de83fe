"""Upstream chat-completion client built on httpx."""

import logging
from typing import Any

import httpx

from keypool.errors import UpstreamFailure

logger = logging.getLogger(__name__)


class UpstreamClient:
    """
    HTTP client for the provider's chat-completion endpoint.

    Uses one shared ``httpx.AsyncClient``. Requests are never retried:
    each inbound request is served with exactly one credential.
    Transport failures are raised as :class:`UpstreamFailure`; HTTP error
    statuses are returned to the caller untouched.
    """

    DEFAULT_TIMEOUT = httpx.Timeout(
        connect=10.0,
        read=300.0,
        write=10.0,
        pool=10.0,
    )

    def __init__(
        self,
        url: str,
        timeout: httpx.Timeout | None = None,
        headers: dict[str, str] | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        """
        Initialize the upstream client.

        Args:
            url: Chat-completion endpoint URL
            timeout: Request timeout configuration
            headers: Extra headers sent with every request (attribution)
            transport: Custom transport (tests pass ``httpx.MockTransport``)
        """
        self._url = url
        self._timeout = timeout or self.DEFAULT_TIMEOUT
        self._default_headers = headers or {}
        self._transport = transport
        self._client: httpx.AsyncClient | None = None

    @property
    def url(self) -> str:
        return self._url

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create the async HTTP client."""
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                timeout=self._timeout,
                headers=self._default_headers,
                transport=self._transport,
            )
        return self._client

    @staticmethod
    def _headers(credential: str, stream: bool) -> dict[str, str]:
        headers = {
            "Authorization": f"Bearer {credential}",
            "Content-Type": "application/json",
        }
        if stream:
            headers["Accept"] = "text/event-stream"
        return headers

    @staticmethod
    def _transport_failure(e: httpx.HTTPError) -> UpstreamFailure:
        if isinstance(e, httpx.TimeoutException):
            status_code = 504
            message = "Upstream request timed out"
        else:
            status_code = 502
            message = "Upstream request failed"
        logger.error(f"API request error: {type(e).__name__}: {e}")
        return UpstreamFailure(message, status_code=status_code, details=str(e) or None)

    async def complete(self, credential: str, payload: dict[str, Any]) -> httpx.Response:
        """
        Make a buffered completion request.

        Args:
            credential: Credential to authenticate with
            payload: JSON body

        Returns:
            The fully read response, whatever its status

        Raises:
            UpstreamFailure: On network errors and timeouts
        """
        client = await self._get_client()
        try:
            return await client.post(
                self._url,
                json=payload,
                headers=self._headers(credential, stream=False),
            )
        except httpx.HTTPError as e:
            raise self._transport_failure(e) from e

    async def open_stream(self, credential: str, payload: dict[str, Any]) -> httpx.Response:
        """
        Start a streaming completion request.

        The body is not read; the caller must consume it and call
        ``aclose()`` on the returned response.

        Raises:
            UpstreamFailure: On network errors and timeouts
        """
        client = await self._get_client()
        request = client.build_request(
            "POST",
            self._url,
            json=payload,
            headers=self._headers(credential, stream=True),
        )
        try:
            return await client.send(request, stream=True)
        except httpx.HTTPError as e:
            raise self._transport_failure(e) from e

    async def close(self) -> None:
        """Close the HTTP client."""
        if self._client is not None and not self._client.is_closed:
            await self._client.aclose()
            self._client = None
            logger.info("HTTP client closed")

    async def __aenter__(self) -> "UpstreamClient":
        """Async context manager entry."""
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        """Async context manager exit."""
        await self.close()
