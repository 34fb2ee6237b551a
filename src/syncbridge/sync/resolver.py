"""Contact resolution: phone number -> CRM record id.

Only records that already have a live person mapping are eligible, i.e.
contacts previously synced from the CRM. Activity is never attached to a
record the integration does not own.
"""

from __future__ import annotations

from typing import Any

import structlog

from src.syncbridge.clients.base import CRMClient
from src.syncbridge.exceptions import ContactNotFound
from src.syncbridge.sync.phone import normalize_phone
from src.syncbridge.sync.schemas import EntityType, SyncAction
from src.syncbridge.sync.store import MappingStore

logger = structlog.get_logger(__name__)

PEOPLE = "people"


def _record_id(item: dict[str, Any]) -> str | None:
    identifier = item.get("id")
    if isinstance(identifier, dict):
        return identifier.get("record_id")
    return item.get("record_id") or identifier


class ContactResolver:
    """Resolves phone numbers to mapped CRM person records.

    Args:
        crm: CRM capability interface.
        mappings: Identity mapping store for the integration.
        candidate_limit: Maximum structured-query matches to consider.
    """

    def __init__(self, crm: CRMClient, mappings: MappingStore, candidate_limit: int = 10) -> None:
        self._crm = crm
        self._mappings = mappings
        self._candidate_limit = candidate_limit

    async def find_candidates(self, normalized: str) -> list[str]:
        """Find CRM person record ids matching a normalized phone number.

        Tries an exact structured filter first; if that query fails or
        returns nothing, falls back to free-text search. Search failures
        propagate.
        """
        try:
            response = await self._crm.query_records(
                PEOPLE,
                {"filter": {"phone_numbers": normalized}, "limit": self._candidate_limit},
            )
            records = response.get("data") or []
        except Exception as exc:
            logger.warning("resolver.query_failed", phone=normalized, error=str(exc))
            records = []

        ids = [rid for rid in (_record_id(r) for r in records) if rid]
        if ids:
            return ids

        response = await self._crm.search_records(normalized, [PEOPLE])
        matches = [
            item for item in (response.get("data") or [])
            if (item.get("object") or item.get("object_slug")) == PEOPLE
        ]
        return [rid for rid in (_record_id(m) for m in matches) if rid]

    async def resolve_by_phone(self, phone_number: str | None) -> str:
        """Return the CRM record id for a phone number.

        Raises:
            ContactNotFound: If no candidate has a live person mapping.
        """
        normalized = normalize_phone(phone_number)
        if not normalized:
            raise ContactNotFound(str(phone_number))

        candidates = await self.find_candidates(normalized)
        for record_id in candidates:
            mapping = await self._mappings.get(record_id)
            if (
                mapping is not None
                and mapping.entity_type == EntityType.PERSON
                and mapping.last_action != SyncAction.DELETED
            ):
                logger.debug("resolver.resolved", phone=normalized, record_id=record_id)
                return record_id

        logger.info(
            "resolver.not_found",
            phone=normalized,
            candidates=len(candidates),
            reason="no_mapped_candidate" if candidates else "no_match",
        )
        raise ContactNotFound(normalized)
