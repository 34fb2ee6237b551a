"""Capability interfaces for the two external systems.

The engine depends only on these ABCs. Concrete REST implementations live
in ``attio.py`` (CRM) and ``quo.py`` (telephony); tests substitute AsyncMock
doubles. Methods return the service's decoded JSON response (usually an
object with a ``data`` envelope) and raise ``UpstreamAPIError`` /
``UpstreamConflict`` on failure.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any


class CRMClient(ABC):
    """Abstract interface for the CRM (record system) REST API.

    Methods:
        get_object: Fetch an object definition (slug, nouns) by id.
        get_record: Fetch one record by object type and id.
        list_records: List records page by page (limit/offset).
        query_records: Structured filter query over an object's records.
        search_records: Free-text search across objects.
        create_record: Create a record.
        create_note: Create a note attached to a record.
        delete_note: Delete a note.
        update_note: Overwrite a note (only when ``can_update_notes``).
        create_webhook: Register a webhook subscription.
        delete_webhook: Remove a webhook subscription.
    """

    can_update_notes: bool = False

    @abstractmethod
    async def get_object(self, object_id: str) -> dict[str, Any]:
        ...

    @abstractmethod
    async def get_record(self, object_type: str, record_id: str) -> dict[str, Any] | None:
        """Return the record response, or None if it does not exist."""
        ...

    @abstractmethod
    async def list_records(self, object_type: str, params: dict[str, Any]) -> dict[str, Any]:
        ...

    @abstractmethod
    async def query_records(self, object_type: str, query: dict[str, Any]) -> dict[str, Any]:
        ...

    @abstractmethod
    async def search_records(self, query: str, objects: list[str]) -> dict[str, Any]:
        ...

    @abstractmethod
    async def create_record(self, object_type: str, values: dict[str, Any]) -> dict[str, Any]:
        ...

    @abstractmethod
    async def create_note(self, note: dict[str, Any]) -> dict[str, Any]:
        """Create a note; ``note`` carries parent object/record, title, format, content."""
        ...

    @abstractmethod
    async def delete_note(self, note_id: str) -> None:
        ...

    async def update_note(self, note_id: str, title: str, content: str) -> dict[str, Any]:
        raise NotImplementedError(f"{type(self).__name__} does not support note updates")

    @abstractmethod
    async def create_webhook(
        self, target_url: str, subscriptions: list[dict[str, Any]]
    ) -> dict[str, Any]:
        ...

    @abstractmethod
    async def delete_webhook(self, webhook_id: str) -> None:
        ...


class TelephonyClient(ABC):
    """Abstract interface for the telephony (communications platform) REST API."""

    @abstractmethod
    async def get_call(self, call_id: str) -> dict[str, Any] | None:
        """Return the call response, or None if the call is not (yet) queryable."""
        ...

    @abstractmethod
    async def get_call_voicemails(self, call_id: str) -> dict[str, Any]:
        ...

    @abstractmethod
    async def get_call_recordings(self, call_id: str) -> dict[str, Any]:
        ...

    @abstractmethod
    async def get_phone_number(self, phone_number_id: str) -> dict[str, Any]:
        ...

    @abstractmethod
    async def get_user(self, user_id: str) -> dict[str, Any]:
        ...

    @abstractmethod
    async def list_contacts(
        self,
        external_ids: list[str] | None = None,
        max_results: int | None = None,
        page_token: str | None = None,
    ) -> dict[str, Any]:
        ...

    @abstractmethod
    async def create_contact(self, contact: dict[str, Any]) -> dict[str, Any]:
        ...

    @abstractmethod
    async def update_contact(self, contact_id: str, contact: dict[str, Any]) -> dict[str, Any]:
        ...

    @abstractmethod
    async def delete_contact(self, contact_id: str) -> None:
        ...

    @abstractmethod
    async def create_message_webhook(
        self, url: str, events: list[str], label: str, resource_ids: list[str]
    ) -> dict[str, Any]:
        ...

    @abstractmethod
    async def create_call_webhook(
        self, url: str, events: list[str], label: str, resource_ids: list[str]
    ) -> dict[str, Any]:
        ...

    @abstractmethod
    async def create_call_summary_webhook(
        self, url: str, events: list[str], label: str, resource_ids: list[str]
    ) -> dict[str, Any]:
        ...

    @abstractmethod
    async def delete_webhook(self, webhook_id: str) -> None:
        ...
