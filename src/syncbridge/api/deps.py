"""FastAPI dependencies for the integration factory and webhook queue.

Both are created in the application lifespan and stored on ``app.state``;
tests assign in-memory doubles to the same attributes.
"""

from __future__ import annotations

from fastapi import HTTPException, Request, status

from src.syncbridge.events.bus import WebhookQueue
from src.syncbridge.sync.integration import IntegrationFactory


def get_integration_factory(request: Request) -> IntegrationFactory:
    """Retrieve the IntegrationFactory from app.state, 503 if not available."""
    factory = getattr(request.app.state, "integration_factory", None)
    if factory is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Sync engine not initialized",
        )
    return factory


def get_webhook_queue(request: Request) -> WebhookQueue:
    """Retrieve the WebhookQueue from app.state, 503 if not available."""
    queue = getattr(request.app.state, "webhook_queue", None)
    if queue is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Webhook queue not initialized",
        )
    return queue
