"""Activity notes on CRM person records."""

from __future__ import annotations

from typing import Any

import structlog

from src.syncbridge.clients.base import CRMClient
from src.syncbridge.exceptions import SyncError

logger = structlog.get_logger(__name__)

PARENT_OBJECT = "people"


def note_id_of(response: dict[str, Any] | None) -> str | None:
    identifier = ((response or {}).get("data") or {}).get("id")
    if isinstance(identifier, dict):
        return identifier.get("note_id")
    return identifier


class NoteWriter:
    """Creates, replaces and deletes activity notes through the CRM interface.

    Args:
        crm: CRM capability interface.
        note_format: Rendering method; plain text notes are sent as
            ``plaintext``, everything else as ``markdown``.
    """

    def __init__(self, crm: CRMClient, note_format: str = "markdown") -> None:
        self._crm = crm
        self._format = "plaintext" if note_format == "plainText" else "markdown"

    @property
    def can_update(self) -> bool:
        return bool(getattr(self._crm, "can_update_notes", False))

    async def create(
        self,
        record_id: str,
        title: str,
        content: str,
        created_at: str | None = None,
    ) -> str:
        """Create a note on a person record and return its id.

        Raises:
            SyncError: If the CRM response carries no note id.
        """
        note: dict[str, Any] = {
            "parent_object": PARENT_OBJECT,
            "parent_record_id": record_id,
            "title": title,
            "format": self._format,
            "content": content,
        }
        if created_at:
            note["created_at"] = created_at

        response = await self._crm.create_note(note)
        note_id = note_id_of(response)
        if not note_id:
            raise SyncError(f"Note creation for record {record_id} returned no note id")

        logger.debug("notes.created", record_id=record_id, note_id=note_id)
        return note_id

    async def update(self, note_id: str, title: str, content: str) -> str:
        await self._crm.update_note(note_id, title, content)
        logger.debug("notes.updated", note_id=note_id)
        return note_id

    async def delete(self, note_id: str) -> None:
        await self._crm.delete_note(note_id)
        logger.debug("notes.deleted", note_id=note_id)
