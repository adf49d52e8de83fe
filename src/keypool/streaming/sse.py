"""
Server-Sent Events (SSE) framing helpers.

Builds the OpenAI-compatible ``data: <payload>`` frames the relay writes
to clients and the FastAPI response that carries them.
"""

from __future__ import annotations

import json
from typing import Any, AsyncIterator, Awaitable, Callable

from fastapi.responses import StreamingResponse
from starlette.types import Receive, Scope, Send

DATA_PREFIX = "data: "
DONE_MARKER = "[DONE]"

SSE_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",  # Disable nginx buffering
}


def format_sse_event(
    data: Any,
    event: str | None = None,
    id: str | None = None,
) -> str:
    """
    Format a Server-Sent Event.

    Args:
        data: Event data; strings are written verbatim, anything else is
            JSON encoded
        event: Optional event type
        id: Optional event ID

    Returns:
        Formatted SSE string
    """
    lines = []

    if id is not None:
        lines.append(f"id: {id}")

    if event is not None:
        lines.append(f"event: {event}")

    if isinstance(data, str):
        data_str = data
    else:
        data_str = json.dumps(data)

    # Split multi-line data
    for line in data_str.split("\n"):
        lines.append(f"{DATA_PREFIX}{line}")

    return "\n".join(lines) + "\n\n"


DONE_FRAME = format_sse_event(DONE_MARKER)


class SSEResponse(StreamingResponse):
    """
    StreamingResponse that always runs a close callback.

    The callback is awaited once the ASGI call returns or fails, including
    when the client goes away before the body iterator was ever started.
    """

    def __init__(
        self,
        content: AsyncIterator[str],
        on_close: Callable[[], Awaitable[Any]] | None = None,
        **kwargs: Any,
    ) -> None:
        super().__init__(content, **kwargs)
        self.on_close = on_close

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        try:
            await super().__call__(scope, receive, send)
        finally:
            if self.on_close is not None:
                await self.on_close()


def create_sse_response(
    stream: AsyncIterator[str],
    on_close: Callable[[], Awaitable[Any]] | None = None,
) -> SSEResponse:
    """
    Create a FastAPI streaming response for an SSE frame stream.

    Args:
        stream: Async iterator of already formatted frames
        on_close: Releases upstream resources when the response ends

    Returns:
        SSEResponse
    """
    return SSEResponse(
        stream,
        on_close=on_close,
        media_type="text/event-stream",
        headers=SSE_HEADERS,
    )
