"""
Request dispatch: key selection, upstream call and accounting.

One credential is chosen per request. Buffered responses are inspected
and charged here; streaming responses are handed to
:class:`~keypool.streaming.relay.StreamRelay`.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Awaitable, Callable

import httpx

from keypool.errors import InvalidRequest, LimitExceeded, UpstreamFailure
from keypool.http.client import UpstreamClient
from keypool.pool import KeyPool
from keypool.quota.signals import (
    RATE_LIMIT_ERROR_CODE,
    handle_rate_limit,
    is_rate_limit_error,
)
from keypool.quota.tracker import QuotaTracker, mask_credential
from keypool.streaming.relay import StreamRelay
from keypool.streaming.sse import SSE_HEADERS

logger = logging.getLogger(__name__)

TEXT_FIELDS = ("content", "reasoning")


@dataclass
class DispatchResult:
    """Response handed back to the HTTP layer."""

    status_code: int
    body: Any = None
    stream: AsyncIterator[str] | None = None
    headers: dict[str, str] = field(default_factory=dict)
    close: Callable[[], Awaitable[Any]] | None = None

    @property
    def is_stream(self) -> bool:
        return self.stream is not None


def parse_request_body(raw_body: bytes | str | dict[str, Any]) -> dict[str, Any]:
    """
    Decode the caller's JSON payload.

    Raises:
        InvalidRequest: If the body is not a JSON object
    """
    if isinstance(raw_body, dict):
        return raw_body
    try:
        payload = json.loads(raw_body or b"")
    except (json.JSONDecodeError, UnicodeDecodeError) as e:
        raise InvalidRequest(
            "Invalid JSON format in request or response",
            details=str(e),
        ) from e
    if not isinstance(payload, dict):
        raise InvalidRequest("Request body must be a JSON object")
    return payload


def _decode_json(response: httpx.Response) -> Any:
    try:
        return response.json()
    except (json.JSONDecodeError, UnicodeDecodeError):
        return None


def normalize_completion(body: Any) -> Any:
    """Replace literal ``\\n`` sequences in message text with real newlines."""
    if not isinstance(body, dict):
        return body
    choices = body.get("choices")
    if not isinstance(choices, list):
        return body
    for choice in choices:
        message = choice.get("message") if isinstance(choice, dict) else None
        if not isinstance(message, dict):
            continue
        for name in TEXT_FIELDS:
            value = message.get(name)
            if isinstance(value, str) and value:
                message[name] = value.replace("\\n", "\n")
    return body


class Dispatcher:
    """Serves chat-completion requests through the key pool."""

    def __init__(
        self,
        pool: KeyPool,
        tracker: QuotaTracker,
        upstream: UpstreamClient,
    ) -> None:
        self._pool = pool
        self._tracker = tracker
        self._upstream = upstream

    async def handle_request(
        self,
        raw_body: bytes | str | dict[str, Any],
        stream: bool | None = None,
    ) -> DispatchResult:
        """
        Serve one chat-completion request.

        Args:
            raw_body: Caller's JSON payload
            stream: Force streaming mode; read from the payload's
                ``stream`` field if None

        Returns:
            DispatchResult with a JSON body or an SSE frame stream

        Raises:
            InvalidRequest: Body is not a JSON object
            LimitExceeded: Every credential is exhausted
            UpstreamFailure: Transport failure or non rate-limit error status
            StoreUnavailable: Counter store unreachable
        """
        payload = parse_request_body(raw_body)
        is_streaming = stream if stream is not None else payload.get("stream") is True

        credential = await self._pool.select_available()
        if credential is None:
            logger.warning("All API keys have reached their rate limits")
            raise LimitExceeded("All API keys have reached their rate limits")

        logger.info(
            f"Making {'streaming' if is_streaming else 'normal'} request "
            f"with key {mask_credential(credential)}"
        )

        if is_streaming:
            return await self._handle_streaming(credential, payload)
        return await self._handle_buffered(credential, payload)

    async def _rate_limited(self, credential: str, body: Any) -> DispatchResult:
        error = body.get("error") if isinstance(body, dict) else None
        if not isinstance(error, dict):
            error = {"message": "Rate limit exceeded", "code": RATE_LIMIT_ERROR_CODE}
        await handle_rate_limit(self._tracker, credential, error)
        if not isinstance(body, dict):
            body = {"error": error}
        return DispatchResult(status_code=RATE_LIMIT_ERROR_CODE, body=body)

    async def _handle_buffered(self, credential: str, payload: dict[str, Any]) -> DispatchResult:
        response = await self._upstream.complete(
            credential,
            {**payload, "response_format": {"type": "text"}},
        )
        body = _decode_json(response)

        if response.status_code == RATE_LIMIT_ERROR_CODE or is_rate_limit_error(body):
            return await self._rate_limited(credential, body)

        if not response.is_success:
            logger.error(f"Upstream returned {response.status_code} for key {mask_credential(credential)}")
            raise UpstreamFailure(
                "Upstream request failed",
                status_code=response.status_code,
                body=body,
            )

        if body is None:
            raise UpstreamFailure(
                "Invalid JSON format in upstream response",
                status_code=502,
            )

        try:
            await self._tracker.record_usage(credential)
        except LimitExceeded as e:
            logger.warning(
                f"Usage for key {mask_credential(credential)} not recorded: {e.message}"
            )

        logger.debug("Successfully processed request")
        return DispatchResult(
            status_code=response.status_code,
            body=normalize_completion(body),
        )

    async def _handle_streaming(self, credential: str, payload: dict[str, Any]) -> DispatchResult:
        response = await self._upstream.open_stream(credential, payload)

        if not response.is_success:
            body = None
            try:
                await response.aread()
                body = _decode_json(response)
            except httpx.HTTPError as e:
                logger.error(f"Failed reading upstream error body: {e}")
            finally:
                await response.aclose()

            if response.status_code == RATE_LIMIT_ERROR_CODE:
                return await self._rate_limited(credential, body)

            logger.error(f"Upstream returned {response.status_code} for key {mask_credential(credential)}")
            raise UpstreamFailure(
                "Upstream request failed",
                status_code=response.status_code,
                body=body,
            )

        relay = StreamRelay(
            response.aiter_bytes(),
            credential,
            self._tracker,
            close=response.aclose,
        )
        return DispatchResult(
            status_code=200,
            stream=relay.relay(),
            close=relay.aclose,
            headers=dict(SSE_HEADERS),
        )
