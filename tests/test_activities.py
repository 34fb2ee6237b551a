"""Tests for call/message activity logging and two-phase call enrichment.

Covers:
- Call logged once per external participant, idempotent re-delivery
- Partial failure leaves the mapping incomplete and resumes on re-delivery
- Typed results for missing calls, participants and contacts
- Voicemail attached to missed calls
- Message logging and duplicate detection
- Enrichment replaces notes (create-then-delete) and skips unmapped calls
"""

from __future__ import annotations

import pytest

from src.syncbridge.exceptions import UpstreamAPIError
from src.syncbridge.sync.activities import ActivityPipeline
from src.syncbridge.sync.enrichment import CallEnricher
from src.syncbridge.sync.resolver import ContactResolver
from src.syncbridge.sync.schemas import EntityType, SyncAction

LINE_ID = "PN-line-1"
LINE_NUMBER = "+15550000001"
ANA = "+15552223333"
BEN = "+15554445555"


def _call(participants: list[str], **overrides) -> dict:
    call = {
        "id": "AC1",
        "status": "completed",
        "direction": "incoming",
        "answeredAt": "2026-01-01T10:00:05Z",
        "createdAt": "2026-01-01T10:00:00Z",
        "duration": 30,
        "participants": participants,
        "phoneNumberId": LINE_ID,
        "userId": "US1",
    }
    call.update(overrides)
    return {"data": call}


@pytest.fixture
def directory(crm):
    """People known to the CRM, keyed by normalized phone."""
    people = {ANA: "rec-ana", BEN: "rec-ben"}

    async def query_records(object_type, body):
        record_id = people.get(body["filter"]["phone_numbers"])
        return {"data": [{"id": {"record_id": record_id}}] if record_id else []}

    crm.query_records.side_effect = query_records
    crm.search_records.return_value = {"data": []}
    return people


@pytest.fixture
def line(telephony):
    telephony.get_phone_number.return_value = {"data": {"name": "Sales", "number": LINE_NUMBER}}
    telephony.get_user.return_value = {"data": {"firstName": "Ana", "lastName": "Agent"}}


@pytest.fixture
def notes(crm):
    created: list[dict] = []

    async def create_note(note):
        created.append(note)
        return {"data": {"id": {"note_id": f"note-{len(created)}"}}}

    crm.create_note.side_effect = create_note
    return created


@pytest.fixture
def pipeline(crm, telephony, mappings, config):
    return ActivityPipeline(
        crm, telephony, mappings, ContactResolver(crm, mappings), config, voicemail_delay=0
    )


async def _map_people(mappings, *record_ids):
    for record_id in record_ids:
        await mappings.upsert(record_id, {"entity_type": EntityType.PERSON, "last_action": SyncAction.CREATED})


class TestLogCall:
    async def test_logs_each_external_participant(self, pipeline, telephony, mappings, directory, line, notes):
        await _map_people(mappings, "rec-ana", "rec-ben")
        telephony.get_call.return_value = _call([LINE_NUMBER, ANA, BEN])

        result = await pipeline.log_call("AC1", "https://app/c/AC1")

        assert result.logged is True
        assert [p.contact_id for p in result.participants] == ["rec-ana", "rec-ben"]
        assert [n["parent_record_id"] for n in notes] == ["rec-ana", "rec-ben"]
        assert notes[0]["title"] == f"☎️  Call {ANA} → Sales {LINE_NUMBER}"
        assert notes[0]["content"].startswith("Incoming answered by Ana Agent")
        assert notes[0]["created_at"] == "2026-01-01T10:00:00Z"

        mapping = await mappings.get("AC1")
        assert mapping.entity_type == EntityType.CALL
        assert mapping.metadata["complete"] is True
        assert [n["noteId"] for n in mapping.metadata["notes"]] == ["note-1", "note-2"]

    async def test_redelivery_is_duplicate(self, pipeline, telephony, mappings, directory, line, notes):
        await _map_people(mappings, "rec-ana")
        telephony.get_call.return_value = _call([LINE_NUMBER, ANA])

        await pipeline.log_call("AC1")
        second = await pipeline.log_call("AC1")

        assert second.skipped is True
        assert second.reason == "duplicate"
        assert len(notes) == 1
        telephony.get_call.assert_awaited_once_with("AC1")

    async def test_retryable_failure_resumes_without_duplicates(
        self, pipeline, crm, telephony, mappings, directory, line, notes
    ):
        await _map_people(mappings, "rec-ana", "rec-ben")
        telephony.get_call.return_value = _call([LINE_NUMBER, ANA, BEN])
        create_note = crm.create_note.side_effect

        async def flaky(note):
            if note["parent_record_id"] == "rec-ben":
                raise UpstreamAPIError("crm", 503, "unavailable")
            return await create_note(note)

        crm.create_note.side_effect = flaky
        first = await pipeline.log_call("AC1")

        assert first.logged is False
        assert first.participants[1].retryable is True
        mapping = await mappings.get("AC1")
        assert mapping.metadata["complete"] is False
        assert len(mapping.metadata["notes"]) == 1

        crm.create_note.side_effect = create_note
        second = await pipeline.log_call("AC1")

        assert second.logged is True
        assert second.participants[0].already_logged is True
        assert [n["parent_record_id"] for n in notes] == ["rec-ana", "rec-ben"]
        assert (await mappings.get("AC1")).metadata["complete"] is True

    async def test_call_not_found(self, pipeline, telephony):
        telephony.get_call.return_value = {"data": None}
        result = await pipeline.log_call("AC404")
        assert result.error == "Call not found"
        assert result.logged is False

    async def test_no_external_participants(self, pipeline, telephony, line):
        telephony.get_call.return_value = _call([LINE_NUMBER, "(555) 000-0001"])
        result = await pipeline.log_call("AC1")
        assert result.error == "No external participants"

    async def test_unmapped_contact_is_not_logged(self, pipeline, crm, telephony, mappings, directory, line):
        telephony.get_call.return_value = _call([LINE_NUMBER, ANA])

        result = await pipeline.log_call("AC1")

        assert result.logged is False
        assert result.error == "Contact not found"
        crm.create_note.assert_not_awaited()
        assert await mappings.get("AC1") is None

    async def test_missed_call_includes_voicemail(self, pipeline, telephony, mappings, directory, line, notes):
        await _map_people(mappings, "rec-ana")
        telephony.get_call.return_value = _call([LINE_NUMBER, ANA], status="missed", answeredAt=None)
        telephony.get_call_voicemails.return_value = {
            "data": [{"id": "VM1", "duration": 11, "recordingUrl": "https://vm/1", "status": "completed"}]
        }

        await pipeline.log_call("AC1")

        assert "**Voicemail:**" in notes[0]["content"]
        assert "https://vm/1" in notes[0]["content"]

    async def test_unanswered_call_with_voicemail_note(self, pipeline, telephony, mappings, directory, line, notes):
        await _map_people(mappings, "rec-ana")
        telephony.get_call.return_value = _call(
            [LINE_NUMBER, ANA], direction="incoming", status="no-answer", duration=0, answeredAt=None
        )
        telephony.get_call_voicemails.return_value = {
            "data": [{"id": "VM1", "duration": 11, "recordingUrl": "https://vm/1", "status": "completed"}]
        }

        result = await pipeline.log_call("AC1")

        assert result.logged is True
        body = notes[0]["content"]
        assert body.startswith("Incoming missed")
        assert "[Listen to voicemail](https://vm/1) (0:11)" in body
        assert "Recording" not in body


class TestLogMessage:
    def _message(self, **overrides) -> dict:
        message = {
            "id": "MS1",
            "direction": "incoming",
            "from": ANA,
            "to": [LINE_NUMBER],
            "text": "hello",
            "phoneNumberId": LINE_ID,
            "userId": "US1",
            "createdAt": "2026-01-01T10:00:00Z",
        }
        message.update(overrides)
        return message

    async def test_logs_incoming_message(self, pipeline, mappings, directory, line, notes):
        await _map_people(mappings, "rec-ana")

        result = await pipeline.log_message(self._message())

        assert result.logged is True
        assert result.contact_id == "rec-ana"
        assert notes[0]["title"] == f"💬 Message {ANA} → Sales {LINE_NUMBER}"
        assert notes[0]["content"].startswith("Received: hello")
        mapping = await mappings.get("MS1")
        assert mapping.entity_type == EntityType.MESSAGE
        assert mapping.metadata["noteId"] == "note-1"

    async def test_redelivery_is_duplicate(self, pipeline, mappings, directory, line, notes):
        await _map_people(mappings, "rec-ana")
        await pipeline.log_message(self._message())

        second = await pipeline.log_message(self._message())

        assert second.skipped is True
        assert second.note_id == "note-1"
        assert len(notes) == 1

    async def test_outgoing_resolves_recipient(self, pipeline, mappings, directory, line, notes):
        await _map_people(mappings, "rec-ben")
        result = await pipeline.log_message(self._message(direction="outgoing", **{"from": LINE_NUMBER, "to": [BEN]}))
        assert result.contact_id == "rec-ben"
        assert notes[0]["content"].startswith("Ana Agent sent: hello")

    async def test_contact_not_found(self, pipeline, crm, directory, line):
        result = await pipeline.log_message(self._message())
        assert result.error == "Contact not found"
        crm.create_note.assert_not_awaited()


class TestCallEnricher:
    @pytest.fixture
    def enricher(self, crm, telephony, mappings, config):
        return CallEnricher(crm, telephony, mappings, config)

    async def _seed_call(self, mappings):
        await mappings.upsert(
            "AC1",
            {
                "entity_type": EntityType.CALL,
                "counterpart_id": "rec-ana",
                "metadata": {
                    "noteId": "note-old",
                    "contactId": "rec-ana",
                    "notes": [{"contactId": "rec-ana", "noteId": "note-old", "contactPhone": ANA}],
                    "complete": True,
                },
            },
        )

    async def test_replaces_note_with_enriched_content(self, enricher, crm, telephony, mappings, line, notes):
        await self._seed_call(mappings)
        telephony.get_call.return_value = _call([LINE_NUMBER, ANA])
        telephony.get_call_recordings.return_value = {"data": [{"url": "https://r/1", "duration": 30}]}
        telephony.get_call_voicemails.return_value = {"data": []}

        result = await enricher.enrich("AC1", summary=["Discussed pricing"], next_steps=["Send quote"])

        assert result.enriched is True
        assert result.note_ids == ["note-1"]
        assert result.replaced_note_ids == ["note-old"]
        assert result.recordings_count == 1
        body = notes[0]["content"]
        assert body.startswith("Incoming answered by Ana Agent / [▶️ Recording (0:30)](https://r/1)")
        assert "**Summary:**\n• Discussed pricing" in body
        assert "**Next Steps:**\n• Send quote" in body
        assert notes[0]["title"].count("Call") == 1
        crm.delete_note.assert_awaited_once_with("note-old")

        mapping = await mappings.get("AC1")
        assert mapping.metadata["noteId"] == "note-1"
        assert mapping.last_action == SyncAction.UPDATED
        assert mapping.entity_type == EntityType.CALL

    async def test_update_in_place_when_supported(self, enricher, crm, telephony, mappings, line):
        await self._seed_call(mappings)
        crm.can_update_notes = True
        telephony.get_call.return_value = _call([LINE_NUMBER, ANA])
        telephony.get_call_recordings.return_value = {"data": []}
        telephony.get_call_voicemails.return_value = {"data": []}

        result = await enricher.enrich("AC1", summary=["Done"])

        assert result.note_ids == ["note-old"]
        crm.update_note.assert_awaited_once()
        crm.create_note.assert_not_awaited()
        crm.delete_note.assert_not_awaited()

    async def test_old_note_delete_failure_keeps_new_note(self, enricher, crm, telephony, mappings, line, notes):
        await self._seed_call(mappings)
        telephony.get_call.return_value = _call([LINE_NUMBER, ANA])
        telephony.get_call_recordings.side_effect = UpstreamAPIError("telephony", 500, "boom")
        telephony.get_call_voicemails.return_value = {"data": []}
        crm.delete_note.side_effect = UpstreamAPIError("crm", 500, "boom")

        result = await enricher.enrich("AC1")

        assert result.enriched is True
        assert result.replaced_note_ids == []
        assert (await mappings.get("AC1")).metadata["noteId"] == "note-1"

    async def test_unmapped_call_is_skipped(self, enricher, telephony):
        result = await enricher.enrich("AC404", summary=["x"])
        assert result.skipped is True
        assert result.reason == "no_mapping"
        telephony.get_call.assert_not_awaited()
