"""Async client for the Quo (OpenPhone) public API, the telephony side of the sync.

Implements TelephonyClient over httpx with the shared tenacity retry policy.

Contact lookups by external id must send one ``externalIds`` query
parameter per id (``externalIds=a&externalIds=b``); the API rejects
comma-joined and bracket-suffixed forms. ``+`` in values is sent as ``%2B``.
"""

from __future__ import annotations

from typing import Any
from urllib.parse import urlencode

import httpx
import structlog

from src.syncbridge.clients.base import TelephonyClient
from src.syncbridge.clients.http import BaseRestClient, upstream_retry, upstream_retry_create

logger = structlog.get_logger(__name__)


def build_contacts_query(
    external_ids: list[str] | None = None,
    max_results: int | None = None,
    page_token: str | None = None,
) -> str:
    """Serialize contact-list filters into a query string.

    Args:
        external_ids: Ids to match; each becomes its own repeated parameter.
            An empty or missing list omits the parameter entirely.
        max_results: Page size.
        page_token: Continuation token from a previous page.

    Returns:
        Query string without the leading ``?`` (may be empty).
    """
    pairs: list[tuple[str, str]] = [("externalIds", str(i)) for i in (external_ids or [])]
    if max_results is not None:
        pairs.append(("maxResults", str(max_results)))
    if page_token:
        pairs.append(("pageToken", page_token))
    return urlencode(pairs)


class QuoClient(BaseRestClient, TelephonyClient):
    """Quo workspace client authenticated with an API key.

    Args:
        api_key: Quo API key (sent verbatim in the Authorization header).
        base_url: API root (default: https://api.openphone.com).
        transport: Optional httpx transport override.
    """

    def __init__(
        self,
        api_key: str,
        base_url: str = "https://api.openphone.com",
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        super().__init__(
            base_url=base_url,
            headers={
                "Authorization": api_key,
                "Content-Type": "application/json",
            },
            service="telephony",
            transport=transport,
        )

    # ── Calls ───────────────────────────────────────────────────────────

    @upstream_retry
    async def get_call(self, call_id: str) -> dict[str, Any] | None:
        return await self._request("GET", f"/v1/calls/{call_id}", allow_not_found=True)

    @upstream_retry
    async def get_call_voicemails(self, call_id: str) -> dict[str, Any]:
        return await self._request("GET", f"/v1/call-voicemails/{call_id}") or {}

    @upstream_retry
    async def get_call_recordings(self, call_id: str) -> dict[str, Any]:
        return await self._request("GET", f"/v1/call-recordings/{call_id}") or {}

    # ── Lines & Users ───────────────────────────────────────────────────

    @upstream_retry
    async def get_phone_number(self, phone_number_id: str) -> dict[str, Any]:
        return await self._request("GET", f"/v1/phone-numbers/{phone_number_id}") or {}

    @upstream_retry
    async def get_user(self, user_id: str) -> dict[str, Any]:
        return await self._request("GET", f"/v1/users/{user_id}") or {}

    # ── Contacts ────────────────────────────────────────────────────────

    @upstream_retry
    async def list_contacts(
        self,
        external_ids: list[str] | None = None,
        max_results: int | None = None,
        page_token: str | None = None,
    ) -> dict[str, Any]:
        query = build_contacts_query(external_ids, max_results, page_token)
        path = f"/v1/contacts?{query}" if query else "/v1/contacts"
        return await self._request("GET", path) or {}

    @upstream_retry_create
    async def create_contact(self, contact: dict[str, Any]) -> dict[str, Any]:
        data = await self._request("POST", "/v1/contacts", json=contact) or {}
        logger.info("quo.contact_created", external_id=contact.get("externalId"))
        return data

    @upstream_retry
    async def update_contact(self, contact_id: str, contact: dict[str, Any]) -> dict[str, Any]:
        data = await self._request("PATCH", f"/v1/contacts/{contact_id}", json=contact) or {}
        logger.info("quo.contact_updated", contact_id=contact_id)
        return data

    @upstream_retry
    async def delete_contact(self, contact_id: str) -> None:
        await self._request("DELETE", f"/v1/contacts/{contact_id}")
        logger.info("quo.contact_deleted", contact_id=contact_id)

    # ── Webhooks ────────────────────────────────────────────────────────

    async def _create_webhook(
        self, path: str, url: str, events: list[str], label: str, resource_ids: list[str]
    ) -> dict[str, Any]:
        body: dict[str, Any] = {
            "url": url,
            "events": events,
            "label": label,
            "status": "enabled",
        }
        if resource_ids:
            body["resourceIds"] = resource_ids
        return await self._request("POST", path, json=body) or {}

    @upstream_retry_create
    async def create_message_webhook(
        self, url: str, events: list[str], label: str, resource_ids: list[str]
    ) -> dict[str, Any]:
        return await self._create_webhook("/v1/webhooks/messages", url, events, label, resource_ids)

    @upstream_retry_create
    async def create_call_webhook(
        self, url: str, events: list[str], label: str, resource_ids: list[str]
    ) -> dict[str, Any]:
        return await self._create_webhook("/v1/webhooks/calls", url, events, label, resource_ids)

    @upstream_retry_create
    async def create_call_summary_webhook(
        self, url: str, events: list[str], label: str, resource_ids: list[str]
    ) -> dict[str, Any]:
        return await self._create_webhook("/v1/webhooks/call-summaries", url, events, label, resource_ids)

    @upstream_retry
    async def delete_webhook(self, webhook_id: str) -> None:
        await self._request("DELETE", f"/v1/webhooks/{webhook_id}")
