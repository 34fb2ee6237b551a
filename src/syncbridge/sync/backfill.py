"""Cursor-driven bulk sync of existing CRM people into the telephony service.

Cursor model: pages are requested with ``{limit, offset}``; the next
cursor is ``offset + limit`` when the page came back full, else None
(done). Company references on a page are fetched once for the whole page.
"""

from __future__ import annotations

import structlog

from src.syncbridge.clients.base import CRMClient, TelephonyClient
from src.syncbridge.sync.records import ContactSync, live_contact_id, record_person_mapping
from src.syncbridge.sync.schemas import BackfillPage, BackfillResult, SyncCursor, SyncMethod
from src.syncbridge.sync.store import MappingStore
from src.syncbridge.sync.transform import PersonTransformer, record_id_of

logger = structlog.get_logger(__name__)


class BackfillEngine:
    """Pages through CRM records and upserts them as telephony contacts.

    Args:
        crm: CRM capability interface.
        telephony: Telephony capability interface.
        mappings: Identity mapping store for the integration.
        page_size: Default records per page.
    """

    def __init__(
        self,
        crm: CRMClient,
        telephony: TelephonyClient,
        mappings: MappingStore,
        page_size: int = 50,
    ) -> None:
        self._crm = crm
        self._mappings = mappings
        self._page_size = page_size
        self._transformer = PersonTransformer(crm)
        self._contacts = ContactSync(telephony)

    async def fetch_page(
        self, object_type: str, cursor: int | None = None, limit: int | None = None
    ) -> BackfillPage:
        limit = limit or self._page_size
        offset = cursor or 0
        response = await self._crm.list_records(object_type, {"limit": limit, "offset": offset})
        records = list((response or {}).get("data") or [])

        full = len(records) == limit
        next_cursor = SyncCursor(cursor=offset + limit if full else None, has_more=full)
        logger.info(
            "backfill.page_fetched",
            object_type=object_type,
            offset=offset,
            count=len(records),
            has_more=full,
        )
        return BackfillPage(records=records, next=next_cursor)

    async def sync_page(
        self, object_type: str = "people", cursor: int | None = None, limit: int | None = None
    ) -> BackfillResult:
        """Fetch one page and upsert every person on it; per-record failures are collected."""
        page = await self.fetch_page(object_type, cursor, limit)
        result = BackfillResult(object_type=object_type, next=page.next)
        if not page.records:
            return result

        company_map = await self._transformer.fetch_company_map(page.records)

        for record in page.records:
            result.processed += 1
            record_id = record_id_of(record)
            if not record_id:
                result.skipped += 1
                continue
            try:
                contact = await self._transformer.transform(record, company_map)
                existing = live_contact_id(await self._mappings.get(record_id))
                action, contact_id = await self._contacts.push(contact, existing)
                await record_person_mapping(
                    self._mappings, record_id, contact, contact_id, action, SyncMethod.BACKFILL
                )
                result.synced += 1
            except Exception as exc:
                logger.error("backfill.record_failed", record_id=record_id, error=str(exc))
                result.errors.append(f"{record_id}: {exc}")

        logger.info(
            "backfill.page_synced",
            object_type=object_type,
            processed=result.processed,
            synced=result.synced,
            errors=len(result.errors),
            next_cursor=result.next.cursor,
        )
        return result

    async def run(
        self, object_type: str = "people", cursor: int | None = None, max_pages: int | None = None
    ) -> list[BackfillResult]:
        """Sync consecutive pages until the cursor is exhausted or ``max_pages`` is reached."""
        results: list[BackfillResult] = []
        while max_pages is None or len(results) < max_pages:
            page = await self.sync_page(object_type, cursor)
            results.append(page)
            if page.next.cursor is None:
                break
            cursor = page.next.cursor
        return results
