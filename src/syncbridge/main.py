"""FastAPI application factory.

Creates the app with logging middleware, metrics middleware, CORS, Sentry,
lifespan events for database initialization, the integration factory and
webhook queue, and the v1 API router.
"""

from __future__ import annotations

from contextlib import asynccontextmanager
from collections.abc import AsyncGenerator

import structlog
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.requests import Request
from fastapi.responses import Response

from src.syncbridge.config import get_settings
from src.syncbridge.core.database import close_db, get_session, init_db
from src.syncbridge.core.monitoring import MetricsMiddleware, get_metrics_response, init_sentry
from src.syncbridge.core.redis import close_redis, get_redis_pool
from src.syncbridge.api.middleware.logging import LoggingMiddleware, configure_structlog
from src.syncbridge.api.v1.router import router as v1_router
from src.syncbridge.events.bus import WebhookQueue
from src.syncbridge.sync.integration import IntegrationFactory
from src.syncbridge.sync.repository import SqlConfigStore, SqlMappingStore


def build_integration_factory() -> IntegrationFactory:
    """Integration factory backed by the PostgreSQL stores."""
    return IntegrationFactory(
        settings=get_settings(),
        config_store=SqlConfigStore(session_factory=get_session),
        mapping_store=lambda integration_id: SqlMappingStore(get_session, integration_id),
    )


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan: init DB, Sentry and the sync engine on startup, close on shutdown."""
    log = structlog.get_logger(__name__)
    settings = get_settings()
    configure_structlog()
    await init_db()

    if settings.SENTRY_DSN:
        init_sentry(dsn=settings.SENTRY_DSN, environment=settings.ENVIRONMENT.value)

    app.state.integration_factory = build_integration_factory()
    app.state.webhook_queue = WebhookQueue(get_redis_pool(), namespace=settings.QUEUE_NAMESPACE)
    log.info(
        "app.started",
        environment=settings.ENVIRONMENT.value,
        stream=app.state.webhook_queue.stream_key(settings.QUEUE_STREAM),
    )

    yield

    await close_db()
    await close_redis()
    log.info("app.stopped")


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    settings = get_settings()

    app = FastAPI(
        title="SyncBridge API",
        version="0.1.0",
        description="Webhook synchronization between a CRM and a telephony service",
        lifespan=lifespan,
    )

    # Middleware is added in reverse order (last added = outermost)

    if settings.CORS_ALLOWED_ORIGINS == "*":
        origins = ["*"]
    else:
        origins = [o.strip() for o in settings.CORS_ALLOWED_ORIGINS.split(",")]
    app.add_middleware(
        CORSMiddleware,
        allow_origins=origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Logging middleware (logs every request with timing)
    app.add_middleware(LoggingMiddleware)

    # Metrics middleware (outermost -- records Prometheus metrics for all requests)
    app.add_middleware(MetricsMiddleware)

    app.include_router(v1_router)

    @app.get("/metrics", include_in_schema=False)
    async def metrics(request: Request) -> Response:
        """Prometheus metrics endpoint."""
        return get_metrics_response()

    return app


# Module-level app for uvicorn
app = create_app()
