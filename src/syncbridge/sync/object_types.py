"""CRM object id -> object slug resolution cache.

Owned by one integration instance and seeded from / written back to its
persisted configuration, so resolutions survive worker restarts without a
module-level global.
"""

from __future__ import annotations

import structlog

from src.syncbridge.clients.base import CRMClient
from src.syncbridge.exceptions import UpstreamAPIError

logger = structlog.get_logger(__name__)


class ObjectTypeCache:
    """Lookup-or-fetch-and-memoize resolution of CRM object ids.

    Args:
        crm: CRM capability interface used on a cache miss.
        initial: Previously persisted resolutions.
    """

    def __init__(self, crm: CRMClient, initial: dict[str, str] | None = None) -> None:
        self._crm = crm
        self._entries: dict[str, str] = dict(initial or {})
        self._dirty = False

    def __contains__(self, object_id: str) -> bool:
        return object_id in self._entries

    @property
    def dirty(self) -> bool:
        """True when new resolutions were added since the last snapshot."""
        return self._dirty

    def snapshot(self) -> dict[str, str]:
        self._dirty = False
        return dict(self._entries)

    async def resolve(self, object_id: str) -> str:
        """Return the object's slug (``api_slug``, else lowercase plural noun).

        An empty response or a permanent 4xx falls back to the raw object id
        without caching it. Transient failures (429, 5xx, transport errors)
        propagate so the event is retried.
        """
        cached = self._entries.get(object_id)
        if cached is not None:
            return cached

        try:
            response = await self._crm.get_object(object_id)
        except UpstreamAPIError as exc:
            if exc.retryable:
                raise
            logger.warning("object_types.resolve_failed", object_id=object_id, error=str(exc))
            return object_id

        obj = response.get("data") or {}
        if not obj:
            logger.warning("object_types.empty_response", object_id=object_id)
            return object_id

        plural = obj.get("plural_noun")
        object_type = obj.get("api_slug") or (plural.lower() if plural else None) or object_id

        self._entries[object_id] = object_type
        self._dirty = True
        logger.info("object_types.resolved", object_id=object_id, object_type=object_type)
        return object_type
