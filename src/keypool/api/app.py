"""FastAPI application for the key pool proxy."""

import logging
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import AsyncIterator

# Load environment variables from .env file
from dotenv import load_dotenv
load_dotenv()

import httpx
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from keypool import __version__
from keypool.api.admin import router as admin_router
from keypool.api.routes import router as api_router
from keypool.config import Settings, settings as default_settings
from keypool.dispatch import Dispatcher
from keypool.errors import KeyPoolError, StoreUnavailable
from keypool.http.client import UpstreamClient
from keypool.pool import KeyPool
from keypool.quota.tracker import QuotaLimits, QuotaTracker
from keypool.stats import RequestStats
from keypool.store.base import CounterStore
from keypool.store.factory import get_store, initialize_store, shutdown_store

logger = logging.getLogger(__name__)

CHAT_COMPLETIONS_PATH = "/api/v1/chat/completions"


@dataclass
class Services:
    """Components shared by all requests of one application."""

    store: CounterStore
    tracker: QuotaTracker
    pool: KeyPool
    upstream: UpstreamClient
    dispatcher: Dispatcher
    stats: RequestStats = field(default_factory=RequestStats)


def build_services(
    config: Settings,
    store: CounterStore,
    api_keys: list[str] | None = None,
    transport: httpx.AsyncBaseTransport | None = None,
) -> Services:
    """
    Wire the tracker, pool, upstream client and dispatcher together.

    Args:
        config: Application settings
        store: Counter store for quota windows
        api_keys: Initial credentials (defaults to the configured ones)
        transport: Custom httpx transport for the upstream client
    """
    tracker = QuotaTracker(
        store,
        limits=QuotaLimits(minute=config.minute_limit, day=config.day_limit),
        timezone=config.quota_timezone,
    )
    pool = KeyPool(
        tracker,
        config.api_keys if api_keys is None else api_keys,
        key_prefix=config.key_prefix,
    )
    upstream = UpstreamClient(
        config.upstream_url,
        timeout=httpx.Timeout(
            config.http_timeout_read,
            connect=config.http_timeout_connect,
        ),
        headers={
            "HTTP-Referer": config.http_referer,
            "X-Title": config.x_title,
        },
        transport=transport,
    )
    dispatcher = Dispatcher(pool, tracker, upstream)
    return Services(
        store=store,
        tracker=tracker,
        pool=pool,
        upstream=upstream,
        dispatcher=dispatcher,
    )


async def keypool_error_handler(request: Request, exc: KeyPoolError) -> JSONResponse:
    """Render domain errors as ``{"error": {message, code, details?}}``."""
    if exc.status_code >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc.message}")
    else:
        logger.warning(f"{request.method} {request.url.path} rejected: {exc.message}")
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


async def unexpected_error_handler(request: Request, exc: Exception) -> JSONResponse:
    """Fallback for anything the domain handlers did not cover."""
    logger.exception(f"Unhandled error on {request.method} {request.url.path}")
    return JSONResponse(
        status_code=500,
        content={"error": {"message": "Internal server error", "code": 500}},
    )


def create_app(
    config: Settings | None = None,
    store: CounterStore | None = None,
    api_keys: list[str] | None = None,
    transport: httpx.AsyncBaseTransport | None = None,
) -> FastAPI:
    """
    Create and configure the FastAPI application.

    Args:
        config: Settings (module settings if None)
        store: Counter store; the configured global store is initialized
            at startup if None
        api_keys: Initial credentials (configured ones if None)
        transport: Custom httpx transport for the upstream client
    """
    config = config or default_settings

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        """Application lifespan events."""
        logger.info("Starting key pool proxy...")
        counter_store = store
        if counter_store is None:
            try:
                counter_store = await initialize_store()
            except StoreUnavailable:
                logger.error(
                    "Counter store unavailable at startup, requests will fail "
                    "with 503 until it recovers"
                )
                counter_store = get_store()

        services = build_services(config, counter_store, api_keys, transport)
        app.state.services = services
        logger.info(
            f"Key pool ready with {len(services.pool)} keys "
            f"({counter_store.name} counter store)"
        )
        yield
        logger.info("Shutting down key pool proxy...")
        await services.upstream.close()
        if store is None:
            await shutdown_store()

    app = FastAPI(
        title="Key Pool Proxy",
        description="Quota-aware credential rotation for chat-completion APIs",
        version=__version__,
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
        allow_headers=["Content-Type", "Authorization"],
    )

    app.add_exception_handler(KeyPoolError, keypool_error_handler)
    app.add_exception_handler(Exception, unexpected_error_handler)

    # Request timing middleware
    @app.middleware("http")
    async def add_timing_header(request: Request, call_next):
        start_time = time.perf_counter()
        response = await call_next(request)
        process_time = (time.perf_counter() - start_time) * 1000
        response.headers["X-Process-Time-Ms"] = f"{process_time:.2f}"
        if request.url.path == CHAT_COMPLETIONS_PATH:
            request.app.state.services.stats.record(response.status_code)
        logger.debug(
            f"{request.method} {request.url.path} {response.status_code} "
            f"{process_time:.0f}ms"
        )
        return response

    app.include_router(api_router, prefix="/api/v1")
    app.include_router(admin_router, prefix="/admin", tags=["admin"])

    # Health check
    @app.get("/health")
    async def health_check(request: Request):
        services: Services = request.app.state.services
        return {
            "status": "healthy",
            "version": __version__,
            "store": await services.store.health_check(),
        }

    return app


# Create app instance
app = create_app()
