"""Operator endpoints for an integration's lifecycle.

Provisioning and teardown of webhook subscriptions, backfill of existing
CRM records, and the integration's operator-visible messages.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Query, status
from pydantic import BaseModel, Field

from src.syncbridge.api.deps import get_integration_factory
from src.syncbridge.core.context import reset_integration_context, set_integration_context
from src.syncbridge.sync.integration import IntegrationFactory, SyncIntegration
from src.syncbridge.sync.schemas import (
    BackfillResult,
    IntegrationMessage,
    MessageLevel,
    ProvisioningResult,
)

router = APIRouter(prefix="/api/v1/integrations", tags=["integrations"])


# ── Request / Response Schemas ───────────────────────────────────────────────


class BackfillRequest(BaseModel):
    """Request body for a backfill run."""

    object_type: str = "people"
    cursor: int | None = Field(default=None, ge=0)
    max_pages: int = Field(default=1, ge=1, le=50)


class TeardownResponse(BaseModel):
    success: bool
    deleted: list[str] = Field(default_factory=list)
    failed: dict[str, str] = Field(default_factory=dict)


# ── Helpers ──────────────────────────────────────────────────────────────────


async def _require_integration(factory: IntegrationFactory, integration_id: str) -> SyncIntegration:
    integration = await factory.build(integration_id)
    if integration is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Integration '{integration_id}' not found",
        )
    return integration


# ── Endpoints ────────────────────────────────────────────────────────────────


@router.post("/{integration_id}/provision", response_model=ProvisioningResult)
async def provision_webhooks(
    integration_id: str,
    factory: IntegrationFactory = Depends(get_integration_factory),
) -> ProvisioningResult:
    """Create the CRM and telephony webhook subscriptions.

    Creates the integration's configuration on first use. A failed side is
    rolled back and reported in the result rather than as an HTTP error.
    """
    token = set_integration_context(integration_id)
    try:
        integration = await factory.build(integration_id, create=True)
        return await integration.provision()
    finally:
        reset_integration_context(token)


@router.delete("/{integration_id}/webhooks", response_model=TeardownResponse)
async def teardown_webhooks(
    integration_id: str,
    factory: IntegrationFactory = Depends(get_integration_factory),
) -> TeardownResponse:
    token = set_integration_context(integration_id)
    try:
        integration = await _require_integration(factory, integration_id)
        result = await integration.teardown()
        return TeardownResponse(success=result.success, deleted=result.deleted, failed=result.failed)
    finally:
        reset_integration_context(token)


@router.post("/{integration_id}/backfill", response_model=list[BackfillResult])
async def run_backfill(
    integration_id: str,
    body: BackfillRequest,
    factory: IntegrationFactory = Depends(get_integration_factory),
) -> list[BackfillResult]:
    """Sync existing CRM records page by page, starting at ``cursor``."""
    token = set_integration_context(integration_id)
    try:
        integration = await _require_integration(factory, integration_id)
        return await integration.run_backfill(body.object_type, body.cursor, body.max_pages)
    finally:
        reset_integration_context(token)


@router.get("/{integration_id}/messages", response_model=list[IntegrationMessage])
async def list_messages(
    integration_id: str,
    level: MessageLevel | None = Query(default=None),
    factory: IntegrationFactory = Depends(get_integration_factory),
) -> list[IntegrationMessage]:
    if await factory.load_config(integration_id) is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Integration '{integration_id}' not found",
        )
    return await factory.config_store.list_messages(integration_id, level)
