"""Pytest configuration and fixtures."""

import json
import time
from collections.abc import AsyncIterator, Callable
from typing import Any

import httpx
import pytest

from keypool.pool import KeyPool
from keypool.quota.tracker import QuotaTracker
from keypool.store.memory import InMemoryCounterStore

KEY_1 = "sk-or-v1-aaaaaaaaaaaaaaaa1"
KEY_2 = "sk-or-v1-bbbbbbbbbbbbbbbb2"
KEY_3 = "sk-or-v1-cccccccccccccccc3"


@pytest.fixture
def store() -> InMemoryCounterStore:
    """Fresh in-memory counter store."""
    return InMemoryCounterStore()


@pytest.fixture
def tracker(store: InMemoryCounterStore) -> QuotaTracker:
    """Tracker with the default 20/200 limits."""
    return QuotaTracker(store, timezone="UTC")


@pytest.fixture
def pool(tracker: QuotaTracker) -> KeyPool:
    """Pool of three keys in priority order."""
    return KeyPool(tracker, [KEY_1, KEY_2, KEY_3])


async def iter_chunks(*chunks: bytes | str) -> AsyncIterator[bytes | str]:
    """Async iterator over fixed upstream chunks."""
    for chunk in chunks:
        yield chunk


def rate_limit_payload(message: str, reset: int | None = None) -> dict[str, Any]:
    """Upstream error object as OpenRouter embeds it."""
    error: dict[str, Any] = {"code": 429, "message": message}
    if reset is not None:
        error["metadata"] = {"headers": {"X-RateLimit-Reset": str(reset)}}
    return {"error": error}


def reset_in(seconds: int) -> int:
    """Epoch seconds ``seconds`` from now."""
    return int(time.time()) + seconds


@pytest.fixture
def completion_body() -> dict[str, Any]:
    """Buffered chat completion with escaped newlines in its text."""
    return {
        "id": "gen-123",
        "object": "chat.completion",
        "model": "meta-llama/llama-3-8b-instruct:free",
        "choices": [
            {
                "index": 0,
                "message": {
                    "role": "assistant",
                    "content": "line one\\nline two",
                    "reasoning": "step\\nstep",
                },
                "finish_reason": "stop",
            }
        ],
    }


def sse_body(*payloads: dict[str, Any] | str) -> bytes:
    """Encode payloads as an upstream SSE body ending with [DONE]."""
    lines = []
    for payload in payloads:
        data = payload if isinstance(payload, str) else json.dumps(payload)
        lines.append(f"data: {data}\n\n")
    lines.append("data: [DONE]\n\n")
    return "".join(lines).encode()


class RecordingHandler:
    """MockTransport handler that records requests and replays a response."""

    def __init__(self, respond: Callable[[httpx.Request], httpx.Response]) -> None:
        self._respond = respond
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        return self._respond(request)

    @property
    def last_json(self) -> dict[str, Any]:
        return json.loads(self.requests[-1].content)
