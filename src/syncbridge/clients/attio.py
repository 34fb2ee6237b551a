"""Async client for the Attio REST API (v2), the CRM side of the sync.

Implements CRMClient over httpx with the shared tenacity retry policy.
Attio has no note-update endpoint, so enrichment replaces notes by
create-then-delete (``can_update_notes = False``).
"""

from __future__ import annotations

from typing import Any

import httpx
import structlog

from src.syncbridge.clients.base import CRMClient
from src.syncbridge.clients.http import BaseRestClient, upstream_retry, upstream_retry_create

logger = structlog.get_logger(__name__)


class AttioClient(BaseRestClient, CRMClient):
    """Attio workspace client authenticated with an access token.

    Args:
        api_key: Attio access token (bearer).
        base_url: API root (default: https://api.attio.com).
        transport: Optional httpx transport override.
    """

    can_update_notes = False

    def __init__(
        self,
        api_key: str,
        base_url: str = "https://api.attio.com",
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        super().__init__(
            base_url=base_url,
            headers={
                "Authorization": f"Bearer {api_key}",
                "Content-Type": "application/json",
            },
            service="crm",
            transport=transport,
        )

    # ── Objects & Records ───────────────────────────────────────────────

    @upstream_retry
    async def get_object(self, object_id: str) -> dict[str, Any]:
        return await self._request("GET", f"/v2/objects/{object_id}") or {}

    @upstream_retry
    async def get_record(self, object_type: str, record_id: str) -> dict[str, Any] | None:
        return await self._request(
            "GET",
            f"/v2/objects/{object_type}/records/{record_id}",
            allow_not_found=True,
        )

    @upstream_retry
    async def list_records(self, object_type: str, params: dict[str, Any]) -> dict[str, Any]:
        """List records via the query endpoint (``limit``/``offset`` paging)."""
        body = {k: v for k, v in params.items() if v is not None}
        return await self._request("POST", f"/v2/objects/{object_type}/records/query", json=body) or {}

    @upstream_retry
    async def query_records(self, object_type: str, query: dict[str, Any]) -> dict[str, Any]:
        return await self._request("POST", f"/v2/objects/{object_type}/records/query", json=query) or {}

    @upstream_retry
    async def search_records(self, query: str, objects: list[str]) -> dict[str, Any]:
        return await self._request(
            "POST",
            "/v2/objects/records/search",
            json={
                "query": query,
                "objects": objects,
                "request_as": {"type": "workspace"},
                "limit": 25,
            },
        ) or {}

    @upstream_retry_create
    async def create_record(self, object_type: str, values: dict[str, Any]) -> dict[str, Any]:
        data = await self._request(
            "POST",
            f"/v2/objects/{object_type}/records",
            json={"data": {"values": values}},
        ) or {}
        logger.info("attio.record_created", object_type=object_type)
        return data

    # ── Notes ───────────────────────────────────────────────────────────

    @upstream_retry_create
    async def create_note(self, note: dict[str, Any]) -> dict[str, Any]:
        data = await self._request("POST", "/v2/notes", json={"data": note}) or {}
        logger.info(
            "attio.note_created",
            parent_record_id=note.get("parent_record_id"),
            note_id=((data.get("data") or {}).get("id") or {}).get("note_id"),
        )
        return data

    @upstream_retry
    async def delete_note(self, note_id: str) -> None:
        await self._request("DELETE", f"/v2/notes/{note_id}")
        logger.info("attio.note_deleted", note_id=note_id)

    # ── Webhooks ────────────────────────────────────────────────────────

    @upstream_retry_create
    async def create_webhook(
        self, target_url: str, subscriptions: list[dict[str, Any]]
    ) -> dict[str, Any]:
        return await self._request(
            "POST",
            "/v2/webhooks",
            json={"data": {"target_url": target_url, "subscriptions": subscriptions}},
        ) or {}

    @upstream_retry
    async def delete_webhook(self, webhook_id: str) -> None:
        await self._request("DELETE", f"/v2/webhooks/{webhook_id}")
