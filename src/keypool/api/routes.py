"""Proxy routes: chat completions and key status."""

import logging
from typing import Any

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse, Response

from keypool.streaming.sse import create_sse_response

logger = logging.getLogger(__name__)
router = APIRouter()


def get_services(request: Request) -> Any:
    """Services wired by the application lifespan."""
    return request.app.state.services


@router.post("/chat/completions")
async def chat_completions(request: Request) -> Response:
    """
    OpenAI-compatible chat completion, served with a pooled key.

    Streams SSE frames when the payload sets ``"stream": true``,
    otherwise returns the upstream JSON body.
    """
    services = get_services(request)
    raw_body = await request.body()
    result = await services.dispatcher.handle_request(raw_body)

    if result.is_stream:
        return create_sse_response(result.stream, on_close=result.close)

    return JSONResponse(
        status_code=result.status_code,
        content=result.body,
        headers=result.headers,
    )


@router.get("/health")
async def health() -> dict[str, str]:
    """Liveness check."""
    return {"status": "ok"}


@router.get("/keys/status")
async def keys_status(request: Request) -> dict[str, Any]:
    """Usage of every pooled key."""
    return await get_services(request).pool.status()
