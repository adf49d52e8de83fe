"""
Relay of upstream SSE streams to the client.

The upstream byte stream is re-framed line by line. JSON payloads are
checked for embedded rate-limit errors (OpenRouter reports them inside
a 200 stream) and then forwarded exactly as received. Usage is charged
once the upstream finishes; a stream the client abandons is not charged.
"""

from __future__ import annotations

import asyncio
import codecs
import json
import logging
from enum import Enum
from typing import Any, AsyncIterable, AsyncIterator, Awaitable, Callable

import httpx

from keypool.errors import LimitExceeded, MalformedStreamFragment, StoreUnavailable
from keypool.quota.signals import handle_rate_limit, is_rate_limit_error
from keypool.quota.tracker import QuotaTracker, mask_credential
from keypool.streaming.sse import DATA_PREFIX, DONE_FRAME, DONE_MARKER, format_sse_event

logger = logging.getLogger(__name__)


class RelayState(str, Enum):
    """Lifecycle of a relayed stream."""

    STREAMING = "streaming"
    DRAINING = "draining"
    CLOSED = "closed"
    ABORTED = "aborted"


class SSELineBuffer:
    """
    Splits a chunked byte stream into complete lines.

    The trailing fragment of every chunk is held back until a later
    chunk completes it. Multi-byte characters split across chunks are
    reassembled by an incremental UTF-8 decoder.
    """

    def __init__(self) -> None:
        self._pending = ""
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")

    @property
    def pending(self) -> str:
        """Incomplete fragment waiting for its newline."""
        return self._pending

    def feed(self, chunk: bytes | str) -> list[str]:
        """
        Append a chunk and return the lines it completed.

        Args:
            chunk: Raw upstream chunk

        Returns:
            Complete lines, without their line terminators
        """
        text = self._decoder.decode(chunk) if isinstance(chunk, bytes) else chunk
        self._pending += text
        lines = self._pending.split("\n")
        self._pending = lines.pop()
        return [line.rstrip("\r") for line in lines]


def parse_data_payload(payload: str) -> dict[str, Any]:
    """
    Parse the payload of a complete ``data:`` line.

    Raises:
        MalformedStreamFragment: If the payload is not a JSON object
    """
    if not payload.startswith("{") or not payload.endswith("}"):
        raise MalformedStreamFragment("Incomplete JSON data")
    try:
        parsed = json.loads(payload)
    except json.JSONDecodeError as e:
        raise MalformedStreamFragment(f"Invalid JSON: {e}") from e
    if not isinstance(parsed, dict):
        raise MalformedStreamFragment("Invalid JSON structure")
    return parsed


class StreamRelay:
    """
    Re-frames one upstream stream for one client.

    Example:
        ```python
        relay = StreamRelay(response.aiter_bytes(), key, tracker, close=response.aclose)
        return create_sse_response(relay.relay())
        ```
    """

    def __init__(
        self,
        chunks: AsyncIterable[bytes | str],
        credential: str,
        tracker: QuotaTracker,
        close: Callable[[], Awaitable[Any]] | None = None,
    ) -> None:
        """
        Initialize the relay.

        Args:
            chunks: Upstream chunk iterator
            credential: Credential the upstream call was made with
            tracker: Quota tracker charged at the end of the stream
            close: Releases the upstream transport; always awaited once
        """
        self._chunks = chunks
        self._credential = credential
        self._tracker = tracker
        self._close = close
        self._buffer = SSELineBuffer()
        self._state = RelayState.STREAMING
        self._signal_tasks: set[asyncio.Task] = set()
        self._closed = False
        self.frames_forwarded = 0
        self.fragments_dropped = 0
        self.rate_limits_seen = 0

    @property
    def state(self) -> RelayState:
        return self._state

    async def aclose(self) -> None:
        """
        Release the upstream whether or not the relay was ever iterated.

        A relay closed before it finished is marked aborted and not charged.
        """
        if self._state in (RelayState.STREAMING, RelayState.DRAINING):
            self._state = RelayState.ABORTED
        await self._close_upstream()

    def process_line(self, line: str) -> str | None:
        """
        Handle one complete line.

        Returns:
            Frame to forward, or None if the line is not forwarded
        """
        if not line.strip():
            return None

        if f"{DATA_PREFIX}{DONE_MARKER}" in line:
            return DONE_FRAME

        if not line.startswith(DATA_PREFIX):
            return None

        data = line[len(DATA_PREFIX):]
        payload = data.strip()
        if not payload or payload == DONE_MARKER:
            return None

        try:
            parsed = parse_data_payload(payload)
        except MalformedStreamFragment as e:
            self.fragments_dropped += 1
            logger.debug(f"Dropping SSE fragment: {e.message}, data: {line[:100]}...")
            return None

        if is_rate_limit_error(parsed):
            self.rate_limits_seen += 1
            self._schedule_rate_limit(parsed["error"])

        # Forward the original text, not a re-serialization
        return format_sse_event(data)

    def _schedule_rate_limit(self, error: dict[str, Any]) -> None:
        task = asyncio.create_task(
            handle_rate_limit(self._tracker, self._credential, error)
        )
        self._signal_tasks.add(task)
        task.add_done_callback(self._signal_done)

    def _signal_done(self, task: asyncio.Task) -> None:
        self._signal_tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error(
                f"Rate limit handling failed for key {mask_credential(self._credential)}: {exc}"
            )

    async def _drain_signals(self) -> None:
        if self._signal_tasks:
            await asyncio.gather(*list(self._signal_tasks), return_exceptions=True)

    async def _finalize_usage(self) -> None:
        try:
            await self._tracker.record_usage(self._credential)
        except LimitExceeded as e:
            logger.warning(
                f"Usage for completed stream on key {mask_credential(self._credential)} "
                f"not recorded: {e.message}"
            )
        except StoreUnavailable as e:
            logger.error(
                f"Usage for completed stream on key {mask_credential(self._credential)} "
                f"lost: {e.message}"
            )

    async def _close_upstream(self) -> None:
        if self._closed:
            return
        self._closed = True
        if self._close is not None:
            await self._close()

    async def relay(self) -> AsyncIterator[str]:
        """
        Forward the upstream stream as SSE frames.

        Yields:
            Formatted SSE frames, in upstream order
        """
        try:
            async for chunk in self._chunks:
                for line in self._buffer.feed(chunk):
                    frame = self.process_line(line)
                    if frame is not None:
                        self.frames_forwarded += 1
                        yield frame

            if self._buffer.pending.strip():
                logger.debug(f"Discarding unterminated trailing fragment: {self._buffer.pending[:100]}")

            self._state = RelayState.DRAINING
            await self._drain_signals()
            await self._finalize_usage()
            self._state = RelayState.CLOSED
            logger.debug(
                f"Stream closed for key {mask_credential(self._credential)} "
                f"(frames: {self.frames_forwarded}, dropped: {self.fragments_dropped})"
            )

        except (GeneratorExit, asyncio.CancelledError):
            self._state = RelayState.ABORTED
            logger.info(
                f"Client disconnected, aborting stream for key {mask_credential(self._credential)}"
            )
            raise

        except (httpx.HTTPError, httpx.StreamError) as e:
            self._state = RelayState.ABORTED
            logger.error(
                f"Upstream stream error for key {mask_credential(self._credential)}: {e}"
            )

        finally:
            await self._close_upstream()
