"""CRM record change sync (CRM -> telephony contacts).

Handles batched CRM webhook deliveries of the form
``{"events": [{"event_type", "id": {"record_id", "object_id", ...}, "actor"}]}``.
Each event is processed independently and produces its own result; only
``people`` records are synced.
"""

from __future__ import annotations

from enum import Enum
from typing import Any

import structlog

from src.syncbridge.clients.base import CRMClient, TelephonyClient
from src.syncbridge.exceptions import InvalidPayload, SyncError, UpstreamAPIError, UpstreamConflict
from src.syncbridge.sync.object_types import ObjectTypeCache
from src.syncbridge.sync.schemas import (
    EntityType,
    IdentityMapping,
    RecordBatchResult,
    RecordEventResult,
    SyncAction,
    SyncMethod,
)
from src.syncbridge.sync.store import MappingStore
from src.syncbridge.sync.transform import PersonTransformer

logger = structlog.get_logger(__name__)

PEOPLE = "people"


class RecordEventKind(str, Enum):
    CREATED = "record.created"
    UPDATED = "record.updated"
    DELETED = "record.deleted"


def live_contact_id(mapping: IdentityMapping | None) -> str | None:
    """Telephony contact id of a live person mapping, if any."""
    if mapping is None or mapping.entity_type != EntityType.PERSON:
        return None
    if mapping.last_action == SyncAction.DELETED:
        return None
    return mapping.counterpart_id


def first_phone(contact: dict[str, Any]) -> str | None:
    numbers = (contact.get("defaultFields") or {}).get("phoneNumbers") or []
    return numbers[0].get("value") if numbers else None


class ContactSync:
    """Creates, updates and deletes telephony contacts keyed by CRM record id."""

    def __init__(self, telephony: TelephonyClient) -> None:
        self._telephony = telephony

    async def find_by_external_id(self, external_id: str, max_results: int = 10) -> dict[str, Any] | None:
        response = await self._telephony.list_contacts(external_ids=[external_id], max_results=max_results)
        for contact in (response or {}).get("data") or []:
            if contact.get("externalId") == external_id:
                return contact
        return None

    async def _update(self, contact_id: str, contact: dict[str, Any]) -> None:
        body = {k: v for k, v in contact.items() if k != "externalId"}
        await self._telephony.update_contact(contact_id, body)

    async def push(
        self, contact: dict[str, Any], existing_id: str | None = None
    ) -> tuple[SyncAction, str | None]:
        """Create or update a contact; a 409 on create becomes an update.

        Returns:
            The applied action and the telephony contact id.

        Raises:
            SyncError: If creation conflicts but no contact carries the external id.
        """
        external_id = contact.get("externalId")

        if existing_id:
            try:
                await self._update(existing_id, contact)
                return SyncAction.UPDATED, existing_id
            except UpstreamAPIError as exc:
                if exc.status_code != 404:
                    raise
                logger.warning("contacts.mapped_contact_missing", external_id=external_id, contact_id=existing_id)

        try:
            response = await self._telephony.create_contact(contact)
            contact_id = ((response or {}).get("data") or {}).get("id")
            return SyncAction.CREATED, contact_id
        except UpstreamConflict:
            logger.info("contacts.create_conflict", external_id=external_id)

        existing = await self.find_by_external_id(external_id, max_results=1)
        if existing is None:
            raise SyncError(f"Contact for {external_id} already exists but could not be found by external id")

        await self._update(existing["id"], contact)
        logger.info("contacts.conflict_resolved", external_id=external_id, contact_id=existing["id"])
        return SyncAction.CONFLICT_RESOLVED, existing["id"]


async def record_person_mapping(
    mappings: MappingStore,
    record_id: str,
    contact: dict[str, Any],
    contact_id: str | None,
    action: SyncAction,
    method: SyncMethod,
) -> None:
    await mappings.upsert(
        record_id,
        {
            "entity_type": EntityType.PERSON,
            "counterpart_id": contact_id,
            "sync_method": method,
            "last_action": action,
            "metadata": {
                "externalId": record_id,
                "contactId": contact_id,
                "phoneNumber": first_phone(contact),
            },
        },
    )


class RecordSyncHandler:
    """Applies CRM record events to telephony contacts.

    Args:
        crm: CRM capability interface.
        telephony: Telephony capability interface.
        mappings: Identity mapping store for the integration.
        object_types: The integration's object id -> slug cache.
        transformer: Person -> contact transformer.
    """

    def __init__(
        self,
        crm: CRMClient,
        telephony: TelephonyClient,
        mappings: MappingStore,
        object_types: ObjectTypeCache,
        transformer: PersonTransformer | None = None,
    ) -> None:
        self._crm = crm
        self._telephony = telephony
        self._mappings = mappings
        self._object_types = object_types
        self._transformer = transformer or PersonTransformer(crm)
        self._contacts = ContactSync(telephony)

    async def handle_batch(self, body: dict[str, Any]) -> RecordBatchResult:
        events = body.get("events") if isinstance(body, dict) else None
        if not events or not isinstance(events, list):
            raise InvalidPayload("CRM webhook body contains no events")

        results = [await self.handle_event(event) for event in events]
        logger.info(
            "records.batch_processed",
            total=len(results),
            succeeded=sum(1 for r in results if r.success),
            skipped=sum(1 for r in results if r.skipped),
            failed=sum(1 for r in results if r.error),
        )
        return RecordBatchResult(total_events=len(events), results=results)

    async def handle_event(self, event: dict[str, Any]) -> RecordEventResult:
        event_type = event.get("event_type")
        ids = event.get("id") or {}
        record_id, object_id = ids.get("record_id"), ids.get("object_id")

        if not event_type:
            return RecordEventResult(record_id=record_id, error="Missing event_type")

        try:
            kind = RecordEventKind(event_type)
        except ValueError:
            logger.info("records.unsupported_event", event_type=event_type)
            return RecordEventResult(
                event_type=event_type, record_id=record_id, skipped=True, reason="unsupported_event"
            )

        if not record_id or not object_id:
            return RecordEventResult(
                event_type=event_type, record_id=record_id, error="Missing record_id or object_id"
            )

        try:
            if kind is RecordEventKind.DELETED:
                return await self._delete(event_type, record_id, object_id)
            return await self._upsert(event_type, record_id, object_id)
        except Exception as exc:
            logger.error("records.event_failed", event_type=event_type, record_id=record_id, error=str(exc))
            return RecordEventResult(
                event_type=event_type,
                record_id=record_id,
                error=str(exc),
                retryable=isinstance(exc, UpstreamAPIError) and exc.retryable,
            )

    async def _upsert(self, event_type: str, record_id: str, object_id: str) -> RecordEventResult:
        object_type = await self._object_types.resolve(object_id)
        if object_type != PEOPLE:
            return RecordEventResult(
                event_type=event_type,
                record_id=record_id,
                skipped=True,
                reason=f"unsupported_object:{object_type}",
            )

        response = await self._crm.get_record(object_type, record_id)
        record = (response or {}).get("data")
        if not record:
            logger.warning("records.record_not_found", record_id=record_id)
            return RecordEventResult(
                event_type=event_type, record_id=record_id, skipped=True, reason="record_not_found"
            )

        contact = await self._transformer.transform(record)
        existing = live_contact_id(await self._mappings.get(record_id))
        action, contact_id = await self._contacts.push(contact, existing)
        await record_person_mapping(self._mappings, record_id, contact, contact_id, action, SyncMethod.WEBHOOK)

        logger.info("records.person_synced", record_id=record_id, contact_id=contact_id, action=action.value)
        return RecordEventResult(
            event_type=event_type,
            record_id=record_id,
            success=True,
            action=action,
            contact_id=contact_id,
        )

    async def _delete(self, event_type: str, record_id: str, object_id: str) -> RecordEventResult:
        object_type = await self._object_types.resolve(object_id)
        if object_type != PEOPLE:
            return RecordEventResult(
                event_type=event_type,
                record_id=record_id,
                skipped=True,
                reason=f"unsupported_object:{object_type}",
            )

        contact = await self._contacts.find_by_external_id(record_id, max_results=10)
        if contact is None:
            await self._mappings.delete(record_id)
            logger.warning("records.contact_not_found", record_id=record_id)
            return RecordEventResult(
                event_type=event_type, record_id=record_id, skipped=True, reason="contact_not_found"
            )

        await self._telephony.delete_contact(contact["id"])
        await self._mappings.delete(record_id)
        logger.info("records.person_deleted", record_id=record_id, contact_id=contact["id"])
        return RecordEventResult(
            event_type=event_type,
            record_id=record_id,
            success=True,
            action=SyncAction.DELETED,
            contact_id=contact["id"],
        )
