"""Two-phase call enrichment.

A ``call.summary.completed`` (or ``call.recording.completed``) event
amends the notes logged for ``call.completed``: the status header is
re-derived the same way, recordings, voicemail, AI summary, next steps and
job results are added, and each participant's note is replaced rather
than duplicated. The title keeps the single "Call" prefix.

A summary for a call without a mapping is dropped with a typed
``skipped`` result; nothing is buffered for later replay.
"""

from __future__ import annotations

import asyncio
from datetime import datetime, timezone
from typing import Any

import structlog

from src.syncbridge.clients.base import CRMClient, TelephonyClient
from src.syncbridge.sync import content
from src.syncbridge.sync.activities import fetch_line_info, voicemail_from_response
from src.syncbridge.sync.notes import NoteWriter
from src.syncbridge.sync.schemas import (
    EnrichmentResult,
    IdentityMapping,
    IntegrationConfig,
    SyncAction,
)
from src.syncbridge.sync.store import MappingStore

logger = structlog.get_logger(__name__)


def mapped_notes(mapping: IdentityMapping) -> list[dict[str, Any]]:
    """Participant notes recorded on a call mapping.

    Mappings that only carry a single ``noteId`` are read as one entry.
    """
    notes = mapping.metadata.get("notes")
    if notes:
        return [dict(n) for n in notes if n.get("noteId")]
    note_id = mapping.metadata.get("noteId")
    if not note_id:
        return []
    return [
        {
            "noteId": note_id,
            "contactId": mapping.metadata.get("contactId") or mapping.counterpart_id,
            "contactPhone": mapping.metadata.get("contactPhone"),
        }
    ]


class CallEnricher:
    """Replaces logged call notes with their enriched version.

    Args:
        crm: CRM capability interface.
        telephony: Telephony capability interface.
        mappings: Identity mapping store for the integration.
        config: Integration configuration (line metadata).
        note_format: ``markdown``, ``html`` or ``plainText``.
        service_name: Telephony service name used in deep-link text.
    """

    def __init__(
        self,
        crm: CRMClient,
        telephony: TelephonyClient,
        mappings: MappingStore,
        config: IntegrationConfig,
        *,
        note_format: str = "markdown",
        service_name: str = "Quo",
    ) -> None:
        self._telephony = telephony
        self._mappings = mappings
        self._config = config
        self._notes = NoteWriter(crm, note_format)
        self._options = content.get_format_options(note_format)
        self._service_name = service_name

    async def fetch_media(self, call_id: str) -> tuple[list[dict[str, Any]], dict[str, Any] | None]:
        """Fetch recordings and voicemail concurrently; failures yield empty media."""
        recordings_response, voicemail_response = await asyncio.gather(
            self._telephony.get_call_recordings(call_id),
            self._telephony.get_call_voicemails(call_id),
            return_exceptions=True,
        )

        recordings: list[dict[str, Any]] = []
        if isinstance(recordings_response, BaseException):
            logger.warning("enrichment.recordings_failed", call_id=call_id, error=str(recordings_response))
        else:
            recordings = list((recordings_response or {}).get("data") or [])

        voicemail = None
        if isinstance(voicemail_response, BaseException):
            logger.warning("enrichment.voicemail_failed", call_id=call_id, error=str(voicemail_response))
        else:
            voicemail = voicemail_from_response(voicemail_response)

        return recordings, voicemail

    def build_header(
        self,
        call: dict[str, Any],
        user_name: str,
        recordings: list[dict[str, Any]],
        voicemail: dict[str, Any] | None,
    ) -> str:
        header = content.build_call_status(call, user_name)
        formatted = content.format_call_recordings(
            recordings, call.get("duration"), self._options.method
        )
        if formatted:
            header += f" / {formatted}"
        header += content.build_voicemail_section(voicemail, self._options)
        return header

    async def enrich(
        self,
        call_id: str,
        summary: list[str] | None = None,
        next_steps: list[str] | None = None,
        jobs: list[dict[str, Any]] | None = None,
        deep_link: str | None = None,
    ) -> EnrichmentResult:
        mapping = await self._mappings.get(call_id)
        notes = mapped_notes(mapping) if mapping is not None else []
        if not notes:
            logger.info("enrichment.no_mapping", call_id=call_id)
            return EnrichmentResult(call_id=call_id, skipped=True, reason="no_mapping")

        response = await self._telephony.get_call(call_id)
        call = (response or {}).get("data")
        if not call:
            logger.warning("enrichment.call_not_found", call_id=call_id)
            return EnrichmentResult(call_id=call_id, error="Call not found")

        recordings, voicemail = await self.fetch_media(call_id)
        line = await fetch_line_info(
            self._telephony,
            self._config,
            call.get("phoneNumberId"),
            call.get("answeredBy") or call.get("userId"),
        )

        body = self.build_header(call, line.user_name, recordings, voicemail)
        body += content.build_summary_sections(summary, next_steps, jobs, self._options)
        body += content.build_deep_link(deep_link, self._options, self._service_name)
        body = self._options.wrap(body)

        updated: list[dict[str, Any]] = []
        replaced: list[str] = []
        try:
            for entry in notes:
                title = content.build_call_title(
                    call, line.inbox_name, line.inbox_number, entry.get("contactPhone") or "", self._options
                )
                new_id = await self._replace_note(entry, title, body, call.get("createdAt"), replaced)
                updated.append({**entry, "noteId": new_id})
        finally:
            if updated:
                await self._save(call_id, updated + notes[len(updated):])

        logger.info(
            "enrichment.complete",
            call_id=call_id,
            notes=len(updated),
            recordings=len(recordings),
            has_voicemail=voicemail is not None,
        )
        return EnrichmentResult(
            call_id=call_id,
            enriched=True,
            note_ids=[n["noteId"] for n in updated],
            replaced_note_ids=replaced,
            recordings_count=len(recordings),
            has_voicemail=voicemail is not None,
        )

    async def _replace_note(
        self,
        entry: dict[str, Any],
        title: str,
        body: str,
        created_at: str | None,
        replaced: list[str],
    ) -> str:
        old_id = entry["noteId"]
        if self._notes.can_update:
            return await self._notes.update(old_id, title, body)

        # The new note must exist before the old one is removed.
        new_id = await self._notes.create(entry["contactId"], title, body, created_at)
        try:
            await self._notes.delete(old_id)
            replaced.append(old_id)
        except Exception as exc:
            logger.warning("enrichment.old_note_delete_failed", note_id=old_id, error=str(exc))
        return new_id

    async def _save(self, call_id: str, notes: list[dict[str, Any]]) -> None:
        await self._mappings.upsert(
            call_id,
            {
                "counterpart_id": notes[0].get("contactId"),
                "last_action": SyncAction.UPDATED,
                "metadata": {
                    "notes": notes,
                    "noteId": notes[0]["noteId"],
                    "contactId": notes[0].get("contactId"),
                    "enrichedAt": datetime.now(timezone.utc).isoformat(),
                },
            },
        )
