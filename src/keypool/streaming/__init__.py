"""
Streaming module for relaying upstream SSE responses.

Provides:
- Line re-framing of chunked upstream streams
- Inline detection of rate-limit errors inside 200 streams
- SSE formatting and FastAPI response helpers
"""

from keypool.streaming.relay import (
    RelayState,
    SSELineBuffer,
    StreamRelay,
    parse_data_payload,
)
from keypool.streaming.sse import (
    DONE_FRAME,
    SSE_HEADERS,
    SSEResponse,
    create_sse_response,
    format_sse_event,
)

__all__ = [
    "DONE_FRAME",
    "RelayState",
    "SSELineBuffer",
    "SSE_HEADERS",
    "SSEResponse",
    "StreamRelay",
    "create_sse_response",
    "format_sse_event",
    "parse_data_payload",
]
