"""Call and message activity logging (telephony -> CRM).

Every side effect is keyed through the identity mapping store:

- A call mapping records one note per external participant
  (``metadata.notes``) and a ``complete`` flag. A complete mapping makes a
  re-delivered ``call.completed`` a no-op; an incomplete one (some
  participant failed with a retryable upstream error) is resumed on the
  next delivery, skipping participants that already have a note.
- A message mapping with a ``noteId`` makes re-delivery a no-op.

Missing calls, missing contacts and duplicates are typed results, not
exceptions. Upstream failures for individual participants are captured
per participant and flagged ``retryable`` so the router can decide
whether the event as a whole should be retried.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Any

import structlog

from src.syncbridge.clients.base import CRMClient, TelephonyClient
from src.syncbridge.exceptions import ContactNotFound, SyncError, UpstreamAPIError
from src.syncbridge.sync import content
from src.syncbridge.sync.notes import NoteWriter
from src.syncbridge.sync.phone import external_participants, normalize_phone
from src.syncbridge.sync.resolver import ContactResolver
from src.syncbridge.sync.schemas import (
    CallLogResult,
    EntityType,
    IntegrationConfig,
    MessageLogResult,
    ParticipantResult,
    SyncAction,
    SyncMethod,
)
from src.syncbridge.sync.store import MappingStore

logger = structlog.get_logger(__name__)

VOICEMAIL_STATUSES = ("no-answer", "missed")


@dataclass(frozen=True)
class LineInfo:
    """Display metadata for the telephony line and user on an activity."""

    inbox_name: str
    inbox_number: str
    user_name: str


async def fetch_line_info(
    telephony: TelephonyClient,
    config: IntegrationConfig,
    phone_number_id: str | None,
    user_id: str | None,
) -> LineInfo:
    """Fetch phone-line and user details concurrently.

    The line's number falls back to the integration's resource metadata
    cache when the phone-number lookup carries none.
    """

    async def _none() -> None:
        return None

    phone_number, user = await asyncio.gather(
        telephony.get_phone_number(phone_number_id) if phone_number_id else _none(),
        telephony.get_user(user_id) if user_id else _none(),
    )

    cached = config.resource_metadata.get(phone_number_id or "", {})
    number = ((phone_number or {}).get("data") or {}).get("number") or cached.get("number") or ""
    name = content.inbox_name(phone_number)
    if name == content.DEFAULT_INBOX_NAME and cached.get("name"):
        name = cached["name"]

    return LineInfo(inbox_name=name, inbox_number=number, user_name=content.user_name(user))


def voicemail_from_response(response: dict[str, Any] | None) -> dict[str, Any] | None:
    """Normalize a voicemail lookup to ``{id, duration, url, transcript, status}``."""
    data = (response or {}).get("data")
    if isinstance(data, list):
        data = data[0] if data else None
    if not data:
        return None
    return {
        "id": data.get("id"),
        "duration": data.get("duration"),
        "url": data.get("recordingUrl") or data.get("url"),
        "transcript": data.get("transcript"),
        "status": data.get("status"),
    }


class ActivityPipeline:
    """Logs telephony calls and messages as notes on mapped CRM people.

    Args:
        crm: CRM capability interface.
        telephony: Telephony capability interface.
        mappings: Identity mapping store for the integration.
        resolver: Phone number -> mapped CRM record resolver.
        config: The integration's configuration (own numbers, line metadata).
        note_format: ``markdown``, ``html`` or ``plainText``.
        service_name: Telephony service name used in deep-link text.
        voicemail_delay: Seconds to wait before fetching a missed call's voicemail.
    """

    def __init__(
        self,
        crm: CRMClient,
        telephony: TelephonyClient,
        mappings: MappingStore,
        resolver: ContactResolver,
        config: IntegrationConfig,
        *,
        note_format: str = "markdown",
        service_name: str = "Quo",
        voicemail_delay: float = 3.0,
    ) -> None:
        self._telephony = telephony
        self._mappings = mappings
        self._resolver = resolver
        self._config = config
        self._notes = NoteWriter(crm, note_format)
        self._options = content.get_format_options(note_format)
        self._service_name = service_name
        self._voicemail_delay = voicemail_delay

    # ── Calls ───────────────────────────────────────────────────────────

    async def fetch_call(self, call_id: str) -> dict[str, Any] | None:
        """Fetch the authoritative call, merging a completed voicemail for missed calls."""
        response = await self._telephony.get_call(call_id)
        call = (response or {}).get("data")
        if not call:
            return None
        call = dict(call)

        if call.get("status") in VOICEMAIL_STATUSES:
            if self._voicemail_delay > 0:
                await asyncio.sleep(self._voicemail_delay)
            try:
                voicemail = voicemail_from_response(await self._telephony.get_call_voicemails(call_id))
            except Exception as exc:
                logger.warning("activity.voicemail_fetch_failed", call_id=call_id, error=str(exc))
                voicemail = None

            if voicemail and voicemail.get("status") == "completed":
                call["voicemail"] = voicemail
                logger.info("activity.voicemail_attached", call_id=call_id)

        return call

    async def log_call(self, call_id: str, deep_link: str | None = None) -> CallLogResult:
        """Log a completed call to every external participant's CRM record."""
        existing = await self._mappings.get(call_id)
        if existing is not None and existing.metadata.get("complete"):
            logger.info("activity.call_duplicate", call_id=call_id)
            return CallLogResult(call_id=call_id, skipped=True, reason="duplicate")

        prior_notes: list[dict[str, Any]] = list(existing.metadata.get("notes", [])) if existing else []
        logged_phones = {normalize_phone(n.get("contactPhone")): n for n in prior_notes}

        call = await self.fetch_call(call_id)
        if call is None:
            logger.warning("activity.call_not_found", call_id=call_id)
            return CallLogResult(call_id=call_id, error="Call not found")

        participants = external_participants(call.get("participants"), self._config.own_phone_numbers())
        if not participants:
            logger.warning("activity.no_external_participants", call_id=call_id)
            return CallLogResult(call_id=call_id, error="No external participants")

        line = await fetch_line_info(
            self._telephony,
            self._config,
            call.get("phoneNumberId"),
            call.get("answeredBy") or call.get("userId"),
        )
        body = content.build_call_content(
            call, line.user_name, deep_link, self._options, self._service_name
        )

        notes = list(prior_notes)
        results: list[ParticipantResult] = []
        for phone in participants:
            previous = logged_phones.get(normalize_phone(phone))
            if previous is not None:
                results.append(
                    ParticipantResult(
                        contact_phone=phone,
                        contact_id=previous.get("contactId"),
                        note_id=previous.get("noteId"),
                        logged=True,
                        already_logged=True,
                    )
                )
                continue

            result = await self._log_call_participant(call, phone, line, body)
            if result.logged:
                notes.append(
                    {"contactId": result.contact_id, "noteId": result.note_id, "contactPhone": phone}
                )
            results.append(result)

        complete = not any(r.retryable for r in results)
        if len(notes) > len(prior_notes) or (notes and complete):
            await self._mappings.upsert(
                call_id,
                {
                    "entity_type": EntityType.CALL,
                    "counterpart_id": notes[0]["contactId"],
                    "sync_method": SyncMethod.WEBHOOK,
                    "last_action": SyncAction.CREATED,
                    "metadata": {
                        "callId": call_id,
                        "noteId": notes[0]["noteId"],
                        "contactId": notes[0]["contactId"],
                        "notes": notes,
                        "complete": complete,
                        "direction": call.get("direction"),
                        "phoneNumberId": call.get("phoneNumberId"),
                    },
                },
            )

        logged = all(r.logged for r in results)
        errors = sorted({r.error for r in results if r.error})
        logger.info(
            "activity.call_processed",
            call_id=call_id,
            participants=len(participants),
            logged=sum(1 for r in results if r.logged),
            complete=complete,
        )
        return CallLogResult(
            call_id=call_id,
            logged=logged,
            error="; ".join(errors) if errors else None,
            participants=results,
        )

    async def _log_call_participant(
        self,
        call: dict[str, Any],
        phone: str,
        line: LineInfo,
        body: str,
    ) -> ParticipantResult:
        try:
            contact_id = await self._resolver.resolve_by_phone(phone)
        except ContactNotFound:
            return ParticipantResult(contact_phone=phone, error="Contact not found")
        except UpstreamAPIError as exc:
            logger.error("activity.resolve_failed", phone=phone, error=str(exc))
            return ParticipantResult(contact_phone=phone, error=str(exc), retryable=exc.retryable)

        title = content.build_call_title(call, line.inbox_name, line.inbox_number, phone, self._options)
        try:
            note_id = await self._notes.create(contact_id, title, body, call.get("createdAt"))
        except UpstreamAPIError as exc:
            logger.error("activity.note_failed", call_id=call.get("id"), contact_id=contact_id, error=str(exc))
            return ParticipantResult(
                contact_phone=phone, contact_id=contact_id, error=str(exc), retryable=exc.retryable
            )
        except SyncError as exc:
            return ParticipantResult(contact_phone=phone, contact_id=contact_id, error=str(exc))

        logger.info("activity.call_logged", call_id=call.get("id"), contact_id=contact_id, note_id=note_id)
        return ParticipantResult(contact_phone=phone, contact_id=contact_id, note_id=note_id, logged=True)

    # ── Messages ────────────────────────────────────────────────────────

    async def log_message(self, message: dict[str, Any], deep_link: str | None = None) -> MessageLogResult:
        """Log a message to the CRM record of the external party."""
        message_id = message.get("id") or ""
        existing = await self._mappings.get(message_id)
        if existing is not None and existing.metadata.get("noteId"):
            logger.info("activity.message_duplicate", message_id=message_id)
            return MessageLogResult(
                message_id=message_id,
                skipped=True,
                reason="duplicate",
                contact_id=existing.counterpart_id,
                note_id=existing.metadata["noteId"],
            )

        outgoing = message.get("direction") == "outgoing"
        contact_phone = message.get("to") if outgoing else message.get("from")
        if isinstance(contact_phone, list):
            contact_phone = contact_phone[0] if contact_phone else None

        try:
            contact_id = await self._resolver.resolve_by_phone(contact_phone)
        except ContactNotFound:
            return MessageLogResult(message_id=message_id, error="Contact not found")

        line = await fetch_line_info(
            self._telephony, self._config, message.get("phoneNumberId"), message.get("userId")
        )
        inbox_number = message.get("from") if outgoing else message.get("to")
        if isinstance(inbox_number, list):
            inbox_number = inbox_number[0] if inbox_number else None

        title = content.build_message_title(
            message, line.inbox_name, inbox_number or line.inbox_number, contact_phone, self._options
        )
        body = content.build_message_content(
            message, line.user_name, deep_link, self._options, self._service_name
        )
        note_id = await self._notes.create(contact_id, title, body, message.get("createdAt"))

        await self._mappings.upsert(
            message_id,
            {
                "entity_type": EntityType.MESSAGE,
                "counterpart_id": contact_id,
                "sync_method": SyncMethod.WEBHOOK,
                "last_action": SyncAction.CREATED,
                "metadata": {
                    "messageId": message_id,
                    "noteId": note_id,
                    "contactId": contact_id,
                    "contactPhone": contact_phone,
                    "direction": message.get("direction"),
                },
            },
        )
        logger.info("activity.message_logged", message_id=message_id, contact_id=contact_id, note_id=note_id)
        return MessageLogResult(message_id=message_id, logged=True, contact_id=contact_id, note_id=note_id)
