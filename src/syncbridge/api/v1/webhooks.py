"""Webhook intake endpoint.

Both external services deliver to one URL per integration. The source is
told apart by its signature header, the delivery is authenticated against
the integration's stored secrets, and only then is it queued for the
worker. Rejections happen here, before any expensive processing.
"""

from __future__ import annotations

import json

import structlog
from fastapi import APIRouter, Depends, HTTPException, Request, status

from src.syncbridge.api.deps import get_integration_factory, get_webhook_queue
from src.syncbridge.config import get_settings
from src.syncbridge.core.context import reset_integration_context, set_integration_context
from src.syncbridge.core.monitoring import webhooks_received_total
from src.syncbridge.events.bus import WebhookQueue
from src.syncbridge.events.schemas import WebhookEnvelope
from src.syncbridge.exceptions import SignatureInvalid
from src.syncbridge.sync.integration import IntegrationFactory
from src.syncbridge.sync.router import EventKind
from src.syncbridge.sync.signatures import WebhookSource, detect_source

logger = structlog.get_logger(__name__)

router = APIRouter(prefix="/api/v1/integrations", tags=["webhooks"])

# Request headers copied onto the envelope for diagnostics
KEPT_HEADERS = ("user-agent", "x-request-id")


def _reject(source: str, outcome: str, status_code: int, detail: str) -> HTTPException:
    webhooks_received_total.labels(source=source, outcome=outcome).inc()
    return HTTPException(status_code=status_code, detail=detail)


@router.post("/{integration_id}/webhooks")
async def receive_webhook(
    integration_id: str,
    request: Request,
    factory: IntegrationFactory = Depends(get_integration_factory),
    queue: WebhookQueue = Depends(get_webhook_queue),
) -> dict:
    """Verify an inbound delivery and enqueue it.

    Returns:
        ``{"received": true, "envelope_id": ...}`` once queued.

    Raises:
        HTTPException(401): No recognised signature header, or a bad signature.
        HTTPException(404): Unknown integration.
        HTTPException(400): Body is not a JSON object.
    """
    token = set_integration_context(integration_id)
    try:
        source = detect_source(request.headers)
        if source is None:
            raise _reject("unknown", "missing_signature", status.HTTP_401_UNAUTHORIZED, "Missing signature")

        config = await factory.load_config(integration_id)
        if config is None:
            raise _reject(source.value, "unknown_integration", status.HTTP_404_NOT_FOUND, "Integration not found")

        raw_body = await request.body()
        try:
            body = json.loads(raw_body)
        except (UnicodeDecodeError, json.JSONDecodeError):
            body = None
        if not isinstance(body, dict):
            raise _reject(source.value, "malformed", status.HTTP_400_BAD_REQUEST, "Invalid JSON body")

        event_type = EventKind.CRM_RECORDS.value if source is WebhookSource.CRM else body.get("type")
        try:
            factory.verifier.verify(source, request.headers, raw_body, event_type, config)
        except SignatureInvalid as exc:
            logger.warning("webhook.signature_rejected", source=source.value, reason=exc.reason)
            raise _reject(source.value, "invalid_signature", status.HTTP_401_UNAUTHORIZED, "Invalid signature")

        envelope = WebhookEnvelope(
            integration_id=integration_id,
            source=source,
            event_type=event_type,
            body=body,
            headers={name: request.headers[name] for name in KEPT_HEADERS if name in request.headers},
        )
        settings = get_settings()
        await queue.publish(settings.QUEUE_STREAM, envelope)

        webhooks_received_total.labels(source=source.value, outcome="accepted").inc()
        logger.info(
            "webhook.accepted",
            source=source.value,
            event_type=event_type,
            envelope_id=envelope.envelope_id,
        )
        return {"received": True, "envelope_id": envelope.envelope_id}
    finally:
        reset_integration_context(token)
