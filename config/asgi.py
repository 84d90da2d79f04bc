"""
Starlette ASGI application for the matching service, with FastStream integration.

Run with ``uvicorn config.asgi:application``.
"""

from __future__ import annotations

import asyncio
import time
from contextlib import asynccontextmanager
from typing import TYPE_CHECKING

import structlog
from redis.exceptions import RedisError
from starlette.applications import Starlette
from starlette.middleware import Middleware
from starlette.middleware.cors import CORSMiddleware
from starlette.routing import BaseRoute, Route, WebSocketRoute

from apps.matching.services.wiring import build_services
from apps.matching.views import (
    cancel_request,
    cleanup_queues,
    health_check,
    join_request,
    metrics_endpoint,
    push_socket,
    queue_status,
    request_status,
    requeue_request,
)
from config.log import configure_logging
from config.settings import MatchingSettings, get_settings
from infrastructure.broker import BrokerConnectionError, BrokerRuntime

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

    from apps.matching.services.wiring import MatchingServices

# --- Constants
API_PREFIX = "/api/v1/matching"
SHUTDOWN_TIMEOUT = 10.0

logger = structlog.get_logger(__name__)


# --- Centralized Lifespan Manager ---
@asynccontextmanager
async def lifespan(app: Starlette) -> AsyncIterator[None]:
    """
    Manages the complete application lifecycle for startup and shutdown.

    Services injected through ``create_app`` are used as-is; otherwise they
    are built here, the store is warmed up and the broker connected.
    """
    settings: MatchingSettings = app.state.settings
    owned = app.state.services is None

    # --- Startup Logic ---
    logger.info("🚀 ASGI application starting up...")
    start_time = time.monotonic()
    if owned:
        app.state.services = build_services(settings, broker=BrokerRuntime(settings))
    services: MatchingServices = app.state.services
    try:
        await services.start()
    except (RedisError, BrokerConnectionError) as e:
        logger.error("Critical error during application startup. Aborting.", error=str(e), exc_info=True)
        raise
    logger.info(
        "✅ Application startup complete. Ready to serve requests.",
        duration_s=f"{time.monotonic() - start_time:.2f}",
    )
    yield

    # --- Shutdown Logic ---
    logger.info("🛑 ASGI application shutting down...")
    try:
        async with asyncio.timeout(SHUTDOWN_TIMEOUT):
            await services.stop()
    except TimeoutError:
        logger.warning(f"Shutdown timed out after {SHUTDOWN_TIMEOUT}s. Forcing exit.")
    except Exception as e:
        logger.exception("Error during shutdown cleanup", error=str(e))
    if owned:
        app.state.services = None
    logger.info("✅ ASGI application shutdown complete.")


# --- Application Factory Functions ---
def create_middleware(settings: MatchingSettings) -> list[Middleware]:
    """Create middleware stack based on settings."""
    return [
        Middleware(
            CORSMiddleware,
            allow_origins=settings.cors_allowed_origins,
            allow_credentials=True,
            allow_methods=["*"],
            allow_headers=["*"],
        ),
    ]


def create_routes() -> list[BaseRoute]:
    """Create application routes."""
    return [
        Route("/health", endpoint=health_check, methods=["GET", "HEAD"]),
        Route("/metrics", endpoint=metrics_endpoint, methods=["GET"]),
        Route(f"{API_PREFIX}/requests", endpoint=join_request, methods=["POST"]),
        Route(f"{API_PREFIX}/requests", endpoint=cancel_request, methods=["DELETE"]),
        Route(f"{API_PREFIX}/requests/{{user_id}}/status", endpoint=request_status, methods=["GET"]),
        Route(f"{API_PREFIX}/requeue", endpoint=requeue_request, methods=["POST"]),
        Route(f"{API_PREFIX}/queues/{{topic}}/{{difficulty}}", endpoint=queue_status, methods=["GET"]),
        Route(f"{API_PREFIX}/_cleanup", endpoint=cleanup_queues, methods=["DELETE"]),
        WebSocketRoute("/ws", endpoint=push_socket),
    ]


def create_app(
    settings: MatchingSettings | None = None,
    services: MatchingServices | None = None,
) -> Starlette:
    settings = settings or get_settings()
    configure_logging(settings.log_level, json_logs=settings.log_json)
    app = Starlette(
        debug=settings.debug,
        routes=create_routes(),
        middleware=create_middleware(settings),
        lifespan=lifespan,
    )
    app.state.settings = settings
    app.state.services = services
    return app


# --- Main Application Instance ---
application = create_app()
