"""Tests for request dispatch and the upstream client."""

import json
from typing import Any

import httpx
import pytest

from keypool.dispatch import Dispatcher, normalize_completion, parse_request_body
from keypool.errors import InvalidRequest, LimitExceeded, UpstreamFailure
from keypool.http.client import UpstreamClient
from keypool.pool import KeyPool
from keypool.quota.tracker import Granularity, QuotaTracker, counter_key
from keypool.store.memory import InMemoryCounterStore
from keypool.streaming.sse import DONE_FRAME

from conftest import KEY_1, KEY_2, KEY_3, RecordingHandler, rate_limit_payload, reset_in, sse_body

UPSTREAM_URL = "https://openrouter.example/api/v1/chat/completions"
REQUEST = {"model": "meta-llama/llama-3-8b-instruct:free", "messages": [{"role": "user", "content": "hi"}]}


def make_dispatcher(pool: KeyPool, tracker: QuotaTracker, handler: Any) -> Dispatcher:
    upstream = UpstreamClient(
        UPSTREAM_URL,
        headers={"HTTP-Referer": "https://example.com", "X-Title": "Test"},
        transport=httpx.MockTransport(handler),
    )
    return Dispatcher(pool, tracker, upstream)


async def collect(stream) -> list[str]:
    return [frame async for frame in stream]


class TestParseRequestBody:
    """Tests for inbound body decoding."""

    def test_bytes(self) -> None:
        assert parse_request_body(b'{"a": 1}') == {"a": 1}

    def test_dict_passthrough(self) -> None:
        assert parse_request_body({"a": 1}) == {"a": 1}

    def test_invalid_json(self) -> None:
        with pytest.raises(InvalidRequest) as exc_info:
            parse_request_body(b"{nope")
        assert exc_info.value.message == "Invalid JSON format in request or response"
        assert exc_info.value.status_code == 400

    def test_empty(self) -> None:
        with pytest.raises(InvalidRequest):
            parse_request_body(b"")

    def test_not_an_object(self) -> None:
        with pytest.raises(InvalidRequest, match="JSON object"):
            parse_request_body(b"[1, 2]")


class TestNormalizeCompletion:
    """Tests for newline normalization."""

    def test_content_and_reasoning(self, completion_body: dict) -> None:
        body = normalize_completion(completion_body)
        message = body["choices"][0]["message"]
        assert message["content"] == "line one\nline two"
        assert message["reasoning"] == "step\nstep"

    def test_ignores_odd_shapes(self) -> None:
        assert normalize_completion({"choices": "x"}) == {"choices": "x"}
        assert normalize_completion({"choices": [None, {"message": None}]}) == {
            "choices": [None, {"message": None}]
        }
        assert normalize_completion("text") == "text"


class TestBufferedDispatch:
    """Tests for non-streaming requests."""

    @pytest.mark.asyncio
    async def test_success(
        self, pool: KeyPool, tracker: QuotaTracker, completion_body: dict
    ) -> None:
        """The first key is used, charged, and the body is normalized."""
        handler = RecordingHandler(lambda request: httpx.Response(200, json=completion_body))
        dispatcher = make_dispatcher(pool, tracker, handler)

        result = await dispatcher.handle_request(json.dumps(REQUEST).encode())

        assert result.status_code == 200
        assert result.is_stream is False
        assert result.body["choices"][0]["message"]["content"] == "line one\nline two"

        request = handler.requests[0]
        assert str(request.url) == UPSTREAM_URL
        assert request.headers["authorization"] == f"Bearer {KEY_1}"
        assert request.headers["http-referer"] == "https://example.com"
        assert request.headers["x-title"] == "Test"
        assert handler.last_json["response_format"] == {"type": "text"}
        assert handler.last_json["messages"] == REQUEST["messages"]

        usage = await tracker.snapshot(KEY_1)
        assert usage.minute_used == 1
        assert usage.day_used == 1

    @pytest.mark.asyncio
    async def test_uses_next_key_when_first_exhausted(
        self, pool: KeyPool, tracker: QuotaTracker, completion_body: dict
    ) -> None:
        await tracker.poison(KEY_1, Granularity.MINUTE, 60)
        handler = RecordingHandler(lambda request: httpx.Response(200, json=completion_body))

        await make_dispatcher(pool, tracker, handler).handle_request(REQUEST)

        assert handler.requests[0].headers["authorization"] == f"Bearer {KEY_2}"

    @pytest.mark.asyncio
    async def test_all_keys_exhausted(self, pool: KeyPool, tracker: QuotaTracker) -> None:
        """No upstream call is made when every key is saturated."""
        for key in (KEY_1, KEY_2, KEY_3):
            await tracker.poison(key, Granularity.DAY, 60)
        handler = RecordingHandler(lambda request: httpx.Response(200, json={}))

        with pytest.raises(LimitExceeded, match="All API keys have reached their rate limits"):
            await make_dispatcher(pool, tracker, handler).handle_request(REQUEST)

        assert handler.requests == []

    @pytest.mark.asyncio
    async def test_rate_limit_status(
        self, pool: KeyPool, tracker: QuotaTracker, store: InMemoryCounterStore
    ) -> None:
        """A 429 poisons the key, is passed through and is not charged."""
        body = rate_limit_payload("Rate limit exceeded: free-models-per-minute", reset_in(20))
        handler = RecordingHandler(lambda request: httpx.Response(429, json=body))

        result = await make_dispatcher(pool, tracker, handler).handle_request(REQUEST)

        assert result.status_code == 429
        assert result.body == body
        assert await store.get(counter_key(KEY_1, Granularity.MINUTE)) == "20"
        assert await store.get(counter_key(KEY_1, Granularity.DAY)) is None
        assert await pool.select_available() == KEY_2

    @pytest.mark.asyncio
    async def test_rate_limit_embedded_in_success(
        self, pool: KeyPool, tracker: QuotaTracker, store: InMemoryCounterStore
    ) -> None:
        body = rate_limit_payload("Rate limit exceeded")
        handler = RecordingHandler(lambda request: httpx.Response(200, json=body))

        result = await make_dispatcher(pool, tracker, handler).handle_request(REQUEST)

        assert result.status_code == 429
        assert await store.get(counter_key(KEY_1, Granularity.MINUTE)) == "20"
        assert await store.get(counter_key(KEY_1, Granularity.DAY)) == "200"

    @pytest.mark.asyncio
    async def test_rate_limit_without_body(
        self, pool: KeyPool, tracker: QuotaTracker
    ) -> None:
        handler = RecordingHandler(lambda request: httpx.Response(429, text="slow down"))

        result = await make_dispatcher(pool, tracker, handler).handle_request(REQUEST)

        assert result.status_code == 429
        assert result.body["error"]["code"] == 429
        assert await tracker.is_exhausted(KEY_1) is True

    @pytest.mark.asyncio
    async def test_upstream_error_passthrough(
        self, pool: KeyPool, tracker: QuotaTracker
    ) -> None:
        body = {"error": {"code": 500, "message": "provider down"}}
        handler = RecordingHandler(lambda request: httpx.Response(500, json=body))

        with pytest.raises(UpstreamFailure) as exc_info:
            await make_dispatcher(pool, tracker, handler).handle_request(REQUEST)

        assert exc_info.value.status_code == 500
        assert exc_info.value.to_dict() == body
        assert (await tracker.snapshot(KEY_1)).minute_used == 0

    @pytest.mark.asyncio
    async def test_invalid_upstream_json(self, pool: KeyPool, tracker: QuotaTracker) -> None:
        handler = RecordingHandler(lambda request: httpx.Response(200, text="<html>"))

        with pytest.raises(UpstreamFailure) as exc_info:
            await make_dispatcher(pool, tracker, handler).handle_request(REQUEST)

        assert exc_info.value.status_code == 502

    @pytest.mark.asyncio
    async def test_transport_timeout(self, pool: KeyPool, tracker: QuotaTracker) -> None:
        def respond(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectTimeout("timed out", request=request)

        with pytest.raises(UpstreamFailure) as exc_info:
            await make_dispatcher(pool, tracker, respond).handle_request(REQUEST)

        assert exc_info.value.status_code == 504

    @pytest.mark.asyncio
    async def test_transport_error(self, pool: KeyPool, tracker: QuotaTracker) -> None:
        def respond(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("refused", request=request)

        with pytest.raises(UpstreamFailure) as exc_info:
            await make_dispatcher(pool, tracker, respond).handle_request(REQUEST)

        assert exc_info.value.status_code == 502
        assert exc_info.value.message == "Upstream request failed"


class TestStreamingDispatch:
    """Tests for streaming requests."""

    @pytest.mark.asyncio
    async def test_stream_relayed_and_charged(
        self, pool: KeyPool, tracker: QuotaTracker
    ) -> None:
        content = sse_body({"choices": [{"delta": {"content": "Hel"}}]}, {"choices": [{"delta": {"content": "lo"}}]})
        handler = RecordingHandler(
            lambda request: httpx.Response(
                200, content=content, headers={"content-type": "text/event-stream"}
            )
        )

        result = await make_dispatcher(pool, tracker, handler).handle_request(
            {**REQUEST, "stream": True}
        )

        assert result.is_stream
        assert result.headers["Cache-Control"] == "no-cache"
        frames = await collect(result.stream)
        assert frames[-1] == DONE_FRAME
        assert len(frames) == 3
        assert json.loads(frames[0][len("data: "):])["choices"][0]["delta"]["content"] == "Hel"

        request = handler.requests[0]
        assert request.headers["accept"] == "text/event-stream"
        assert "response_format" not in handler.last_json
        assert (await tracker.snapshot(KEY_1)).minute_used == 1

    @pytest.mark.asyncio
    async def test_stream_flag_override(
        self, pool: KeyPool, tracker: QuotaTracker, completion_body: dict
    ) -> None:
        handler = RecordingHandler(lambda request: httpx.Response(200, json=completion_body))

        result = await make_dispatcher(pool, tracker, handler).handle_request(
            {**REQUEST, "stream": True}, stream=False
        )

        assert result.is_stream is False

    @pytest.mark.asyncio
    async def test_stream_rate_limit_status(
        self, pool: KeyPool, tracker: QuotaTracker
    ) -> None:
        body = rate_limit_payload("free-models-per-day", reset_in(100))
        handler = RecordingHandler(lambda request: httpx.Response(429, json=body))

        result = await make_dispatcher(pool, tracker, handler).handle_request(
            {**REQUEST, "stream": True}
        )

        assert result.status_code == 429
        assert result.is_stream is False
        assert result.body == body
        assert (await tracker.snapshot(KEY_1)).day_used == 200

    @pytest.mark.asyncio
    async def test_stream_error_status(self, pool: KeyPool, tracker: QuotaTracker) -> None:
        handler = RecordingHandler(lambda request: httpx.Response(400, json={"error": {"message": "bad model"}}))

        with pytest.raises(UpstreamFailure) as exc_info:
            await make_dispatcher(pool, tracker, handler).handle_request(
                {**REQUEST, "stream": True}
            )

        assert exc_info.value.status_code == 400
        assert exc_info.value.body == {"error": {"message": "bad model"}}
