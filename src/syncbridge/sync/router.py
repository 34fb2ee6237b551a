"""Event routing for verified webhook deliveries.

Telephony deliveries carry a single typed event
(``{"type", "data": {"object", "deepLink"}}``); CRM deliveries carry a
batch (``{"events": [...]}``). Both are mapped onto a closed set of
``EventKind`` values and dispatched through a handler table with an
entry for every kind; unknown event types are logged and skipped.

Failures propagate to the queue layer for retry after being recorded as
an integration message. Expected outcomes (duplicates, missing contacts,
no mapping) are returned as results and never retried.
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from enum import Enum
from typing import Any

import structlog
from pydantic import BaseModel, Field

from src.syncbridge.core.monitoring import sync_events_processed_total
from src.syncbridge.exceptions import InvalidPayload, PartialSyncError
from src.syncbridge.sync.activities import ActivityPipeline
from src.syncbridge.sync.enrichment import CallEnricher
from src.syncbridge.sync.records import RecordSyncHandler
from src.syncbridge.sync.schemas import IntegrationMessage, MessageLevel
from src.syncbridge.sync.signatures import WebhookSource
from src.syncbridge.sync.store import IntegrationConfigStore

logger = structlog.get_logger(__name__)


class EventKind(str, Enum):
    MESSAGE_RECEIVED = "message.received"
    MESSAGE_DELIVERED = "message.delivered"
    CALL_COMPLETED = "call.completed"
    CALL_RECORDING_COMPLETED = "call.recording.completed"
    CALL_SUMMARY_COMPLETED = "call.summary.completed"
    CRM_RECORDS = "crm.records"
    UNKNOWN = "unknown"

    @classmethod
    def parse(cls, event_type: str | None) -> EventKind:
        try:
            kind = cls(event_type)
        except ValueError:
            return cls.UNKNOWN
        return kind


class RoutedEvent(BaseModel):
    """Outcome of routing one delivery."""

    kind: EventKind
    event_type: str | None = None
    outcome: str
    result: dict[str, Any] = Field(default_factory=dict)


def _outcome(result: BaseModel) -> str:
    data = result.model_dump()
    if data.get("skipped"):
        return "skipped"
    if data.get("logged") or data.get("enriched"):
        return "processed"
    if data.get("error"):
        return "failed"
    return "processed"


Handler = Callable[[dict[str, Any]], Awaitable[RoutedEvent]]


class EventRouter:
    """Dispatches verified webhook bodies to the sync handlers of one integration.

    Args:
        integration_id: Integration the events belong to.
        activities: Call/message logging pipeline.
        enricher: Two-phase call enrichment.
        records: CRM record change handler.
        config_store: Used to record operator-visible failure messages.
    """

    def __init__(
        self,
        integration_id: str,
        activities: ActivityPipeline,
        enricher: CallEnricher,
        records: RecordSyncHandler,
        config_store: IntegrationConfigStore,
    ) -> None:
        self._integration_id = integration_id
        self._activities = activities
        self._enricher = enricher
        self._records = records
        self._config_store = config_store
        self._handlers: dict[EventKind, Handler] = {
            EventKind.MESSAGE_RECEIVED: self._on_message,
            EventKind.MESSAGE_DELIVERED: self._on_message,
            EventKind.CALL_COMPLETED: self._on_call_completed,
            EventKind.CALL_RECORDING_COMPLETED: self._on_recording_completed,
            EventKind.CALL_SUMMARY_COMPLETED: self._on_summary_completed,
            EventKind.CRM_RECORDS: self._on_crm_records,
            EventKind.UNKNOWN: self._on_unknown,
        }

    @staticmethod
    def classify(source: WebhookSource, body: dict[str, Any]) -> tuple[EventKind, str | None]:
        if source is WebhookSource.CRM:
            return EventKind.CRM_RECORDS, EventKind.CRM_RECORDS.value
        event_type = body.get("type")
        return EventKind.parse(event_type), event_type

    async def route(self, source: WebhookSource, body: dict[str, Any]) -> RoutedEvent:
        """Handle one verified delivery.

        Raises:
            PartialSyncError: Some items failed with retryable upstream errors.
            Exception: Any handler failure, after recording an integration message.
        """
        kind, event_type = self.classify(source, body)
        log = logger.bind(integration_id=self._integration_id, kind=kind.value, event_type=event_type)

        try:
            routed = await self._handlers[kind](body)
        except Exception as exc:
            sync_events_processed_total.labels(kind=kind.value, outcome="error").inc()
            log.error("router.handler_failed", error=str(exc))
            await self._record_failure(kind, event_type, exc)
            raise

        routed.event_type = event_type
        sync_events_processed_total.labels(kind=kind.value, outcome=routed.outcome).inc()
        log.info("router.event_handled", outcome=routed.outcome)
        return routed

    async def _record_failure(self, kind: EventKind, event_type: str | None, exc: Exception) -> None:
        level = MessageLevel.WARNINGS if isinstance(exc, PartialSyncError) else MessageLevel.ERRORS
        try:
            await self._config_store.add_message(
                self._integration_id,
                IntegrationMessage(
                    level=level,
                    title=f"Failed to process {event_type or kind.value}",
                    message=str(exc),
                ),
            )
        except Exception as store_exc:
            logger.error("router.message_record_failed", error=str(store_exc))

    # ── Handlers ────────────────────────────────────────────────────────

    @staticmethod
    def _data(body: dict[str, Any]) -> tuple[dict[str, Any], str | None]:
        data = body.get("data") or {}
        obj = data.get("object")
        if not isinstance(obj, dict):
            raise InvalidPayload("Telephony webhook body has no data.object")
        return obj, data.get("deepLink")

    async def _on_message(self, body: dict[str, Any]) -> RoutedEvent:
        message, deep_link = self._data(body)
        if not message.get("id"):
            raise InvalidPayload("Message event has no message id")
        result = await self._activities.log_message(message, deep_link)
        return RoutedEvent(
            kind=EventKind.parse(body.get("type")), outcome=_outcome(result), result=result.model_dump(mode="json")
        )

    async def _on_call_completed(self, body: dict[str, Any]) -> RoutedEvent:
        call, deep_link = self._data(body)
        call_id = call.get("id")
        if not call_id:
            raise InvalidPayload("Call event has no call id")

        result = await self._activities.log_call(call_id, deep_link)
        retryable = [p for p in result.participants if p.retryable]
        if retryable:
            raise PartialSyncError(
                f"Call {call_id}: {len(retryable)} participant(s) failed upstream",
                [f"{p.contact_phone}: {p.error}" for p in retryable],
            )
        return RoutedEvent(kind=EventKind.CALL_COMPLETED, outcome=_outcome(result), result=result.model_dump(mode="json"))

    async def _on_recording_completed(self, body: dict[str, Any]) -> RoutedEvent:
        call, deep_link = self._data(body)
        call_id = call.get("id") or call.get("callId")
        if not call_id:
            raise InvalidPayload("Recording event has no call id")
        result = await self._enricher.enrich(call_id, deep_link=deep_link)
        return RoutedEvent(
            kind=EventKind.CALL_RECORDING_COMPLETED, outcome=_outcome(result), result=result.model_dump(mode="json")
        )

    async def _on_summary_completed(self, body: dict[str, Any]) -> RoutedEvent:
        summary, deep_link = self._data(body)
        call_id = summary.get("callId")
        if not call_id:
            raise InvalidPayload("Summary event has no callId")
        result = await self._enricher.enrich(
            call_id,
            summary=summary.get("summary") or [],
            next_steps=summary.get("nextSteps") or [],
            jobs=summary.get("jobs") or [],
            deep_link=deep_link,
        )
        return RoutedEvent(
            kind=EventKind.CALL_SUMMARY_COMPLETED, outcome=_outcome(result), result=result.model_dump(mode="json")
        )

    async def _on_crm_records(self, body: dict[str, Any]) -> RoutedEvent:
        batch = await self._records.handle_batch(body)
        retryable = [r for r in batch.results if r.retryable]
        if retryable:
            raise PartialSyncError(
                f"{len(retryable)} of {batch.total_events} CRM event(s) failed upstream",
                [f"{r.record_id}: {r.error}" for r in retryable],
            )
        failed = any(r.error for r in batch.results)
        return RoutedEvent(
            kind=EventKind.CRM_RECORDS,
            outcome="failed" if failed else "processed",
            result=batch.model_dump(mode="json"),
        )

    async def _on_unknown(self, body: dict[str, Any]) -> RoutedEvent:
        logger.info("router.unknown_event", event_type=body.get("type"))
        return RoutedEvent(kind=EventKind.UNKNOWN, outcome="skipped", result={"reason": "unknown_event"})
