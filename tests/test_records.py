"""Tests for CRM record event sync and the cursor-driven backfill engine."""

from __future__ import annotations

import pytest

from src.syncbridge.exceptions import InvalidPayload, UpstreamAPIError, UpstreamConflict
from src.syncbridge.sync.backfill import BackfillEngine
from src.syncbridge.sync.object_types import ObjectTypeCache
from src.syncbridge.sync.records import RecordSyncHandler
from src.syncbridge.sync.schemas import EntityType, SyncAction, SyncMethod


def _person(record_id: str) -> dict:
    return {
        "id": {"record_id": record_id},
        "web_url": f"https://crm/{record_id}",
        "values": {
            "name": [{"first_name": "Ana", "last_name": "Lee", "active_until": None}],
            "phone_numbers": [{"phone_number": "+15552223333", "active_until": None}],
        },
    }


def _event(event_type: str, record_id: str = "rec-1", object_id: str = "obj-people") -> dict:
    return {"event_type": event_type, "id": {"record_id": record_id, "object_id": object_id}}


@pytest.fixture
def handler(crm, telephony, mappings) -> RecordSyncHandler:
    object_types = ObjectTypeCache(crm, {"obj-people": "people", "obj-companies": "companies"})
    return RecordSyncHandler(crm, telephony, mappings, object_types)


class TestRecordUpsert:
    async def test_created_person_creates_contact(self, handler, crm, telephony, mappings):
        crm.get_record.return_value = {"data": _person("rec-1")}
        telephony.create_contact.return_value = {"data": {"id": "ct-1"}}

        result = await handler.handle_event(_event("record.created"))

        assert result.success is True
        assert result.action is SyncAction.CREATED
        assert result.contact_id == "ct-1"
        crm.get_record.assert_awaited_once_with("people", "rec-1")
        mapping = await mappings.get("rec-1")
        assert mapping.entity_type == EntityType.PERSON
        assert mapping.counterpart_id == "ct-1"
        assert mapping.metadata["phoneNumber"] == "+15552223333"

    async def test_mapped_person_is_updated_without_external_id(self, handler, crm, telephony, mappings):
        await mappings.upsert(
            "rec-1",
            {"entity_type": EntityType.PERSON, "counterpart_id": "ct-1", "last_action": SyncAction.CREATED},
        )
        crm.get_record.return_value = {"data": _person("rec-1")}

        result = await handler.handle_event(_event("record.updated"))

        assert result.action is SyncAction.UPDATED
        contact_id, body = telephony.update_contact.await_args.args
        assert contact_id == "ct-1"
        assert "externalId" not in body
        telephony.create_contact.assert_not_awaited()

    async def test_missing_mapped_contact_is_recreated(self, handler, crm, telephony, mappings):
        await mappings.upsert(
            "rec-1",
            {"entity_type": EntityType.PERSON, "counterpart_id": "ct-gone", "last_action": SyncAction.CREATED},
        )
        crm.get_record.return_value = {"data": _person("rec-1")}
        telephony.update_contact.side_effect = UpstreamAPIError("telephony", 404, "not found")
        telephony.create_contact.return_value = {"data": {"id": "ct-2"}}

        result = await handler.handle_event(_event("record.updated"))

        assert result.action is SyncAction.CREATED
        assert (await mappings.get("rec-1")).counterpart_id == "ct-2"

    async def test_create_conflict_resolves_to_update(self, handler, crm, telephony, mappings):
        crm.get_record.return_value = {"data": _person("rec-1")}
        telephony.create_contact.side_effect = UpstreamConflict("telephony", 409, "exists")
        telephony.list_contacts.return_value = {"data": [{"id": "ct-9", "externalId": "rec-1"}]}

        result = await handler.handle_event(_event("record.created"))

        assert result.action is SyncAction.CONFLICT_RESOLVED
        assert result.contact_id == "ct-9"
        telephony.list_contacts.assert_awaited_once_with(external_ids=["rec-1"], max_results=1)
        assert (await mappings.get("rec-1")).last_action == SyncAction.CONFLICT_RESOLVED

    async def test_non_person_object_skipped(self, handler, crm):
        result = await handler.handle_event(_event("record.created", object_id="obj-companies"))
        assert result.skipped is True
        assert result.reason == "unsupported_object:companies"
        crm.get_record.assert_not_awaited()

    async def test_record_not_found(self, handler, crm):
        crm.get_record.return_value = {"data": None}
        result = await handler.handle_event(_event("record.updated"))
        assert result.reason == "record_not_found"

    async def test_retryable_failure_flagged(self, handler, crm):
        crm.get_record.side_effect = UpstreamAPIError("crm", 503, "unavailable")
        result = await handler.handle_event(_event("record.updated"))
        assert result.success is False
        assert result.retryable is True

    async def test_object_lookup_outage_is_retryable(self, handler, crm, telephony):
        crm.get_object.side_effect = UpstreamAPIError("crm", 503, "unavailable")

        result = await handler.handle_event(_event("record.created", object_id="obj-unseen"))

        assert result.skipped is False
        assert result.retryable is True
        telephony.create_contact.assert_not_awaited()

    async def test_client_error_not_retryable(self, handler, crm):
        crm.get_record.side_effect = UpstreamAPIError("crm", 400, "bad request")
        result = await handler.handle_event(_event("record.updated"))
        assert result.error
        assert result.retryable is False


class TestRecordDelete:
    async def test_deletes_contact_and_mapping(self, handler, telephony, mappings):
        await mappings.upsert("rec-1", {"entity_type": EntityType.PERSON, "counterpart_id": "ct-1"})
        telephony.list_contacts.return_value = {"data": [{"id": "ct-1", "externalId": "rec-1"}]}

        result = await handler.handle_event(_event("record.deleted"))

        assert result.action is SyncAction.DELETED
        telephony.delete_contact.assert_awaited_once_with("ct-1")
        assert await mappings.get("rec-1") is None

    async def test_missing_contact_skips_and_clears_mapping(self, handler, telephony, mappings):
        await mappings.upsert("rec-1", {"entity_type": EntityType.PERSON, "counterpart_id": "ct-1"})
        telephony.list_contacts.return_value = {"data": [{"id": "ct-x", "externalId": "other"}]}

        result = await handler.handle_event(_event("record.deleted"))

        assert result.reason == "contact_not_found"
        telephony.delete_contact.assert_not_awaited()
        assert await mappings.get("rec-1") is None


class TestRecordBatch:
    async def test_unsupported_and_invalid_events(self, handler):
        batch = await handler.handle_batch(
            {"events": [{"event_type": "note.created"}, {"id": {}}, _event("record.created", record_id="")]}
        )
        assert batch.total_events == 3
        assert batch.results[0].reason == "unsupported_event"
        assert batch.results[1].error == "Missing event_type"
        assert batch.results[2].error == "Missing record_id or object_id"

    @pytest.mark.parametrize("body", [{}, {"events": []}, {"events": "nope"}])
    async def test_no_events_is_invalid(self, handler, body):
        with pytest.raises(InvalidPayload):
            await handler.handle_batch(body)


class TestBackfill:
    async def test_pages_until_short_page(self, crm, telephony, mappings):
        crm.list_records.side_effect = [
            {"data": [_person("rec-1"), _person("rec-2")]},
            {"data": [_person("rec-3")]},
        ]
        telephony.create_contact.return_value = {"data": {"id": "ct-x"}}

        results = await BackfillEngine(crm, telephony, mappings, page_size=2).run()

        assert [r.synced for r in results] == [2, 1]
        assert results[0].next.cursor == 2
        assert results[0].next.has_more is True
        assert results[1].next.cursor is None
        assert crm.list_records.await_args_list[1].args == ("people", {"limit": 2, "offset": 2})
        mapping = await mappings.get("rec-3")
        assert mapping.sync_method == SyncMethod.BACKFILL

    async def test_max_pages_stops_early(self, crm, telephony, mappings):
        crm.list_records.return_value = {"data": [_person("rec-1")]}
        telephony.create_contact.return_value = {"data": {"id": "ct-1"}}

        results = await BackfillEngine(crm, telephony, mappings, page_size=1).run(max_pages=1)

        assert len(results) == 1
        assert results[0].next.cursor == 1

    async def test_record_failures_are_collected(self, crm, telephony, mappings):
        crm.list_records.return_value = {"data": [_person("rec-1"), _person("rec-2"), {"values": {}}]}
        telephony.create_contact.side_effect = [
            {"data": {"id": "ct-1"}},
            UpstreamAPIError("telephony", 500, "boom"),
        ]

        result = await BackfillEngine(crm, telephony, mappings, page_size=50).sync_page()

        assert result.processed == 3
        assert result.synced == 1
        assert result.skipped == 1
        assert len(result.errors) == 1
        assert result.errors[0].startswith("rec-2:")
        assert result.next.cursor is None

    async def test_empty_page(self, crm, telephony, mappings):
        crm.list_records.return_value = {"data": []}
        result = await BackfillEngine(crm, telephony, mappings).sync_page(cursor=100)
        assert result.processed == 0
        assert result.next.cursor is None
        crm.list_records.assert_awaited_once_with("people", {"limit": 50, "offset": 100})
