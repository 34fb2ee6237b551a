"""Pydantic schemas for the synchronization engine.

Defines all structured types shared across the engine:
- Enums: EntityType, SyncMethod, SyncAction, SubscriptionCategory, ProvisioningStatus, MessageLevel
- Persistent state: IdentityMapping, WebhookSubscription, IntegrationConfig, IntegrationMessage
- Backfill: SyncCursor, BackfillPage, BackfillResult
- Handler results: ParticipantResult, CallLogResult, MessageLogResult, EnrichmentResult,
  RecordEventResult, RecordBatchResult
- Provisioning results: SideResult, ProvisioningResult, TeardownResult
"""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ── Enums ───────────────────────────────────────────────────────────────────


class EntityType(str, Enum):
    """Kind of entity a mapping key refers to."""

    PERSON = "person"
    CALL = "call"
    MESSAGE = "message"


class SyncMethod(str, Enum):
    """Path through which a mapping was last written."""

    WEBHOOK = "webhook"
    BACKFILL = "backfill"


class SyncAction(str, Enum):
    """Last action applied for a mapping."""

    CREATED = "created"
    UPDATED = "updated"
    DELETED = "deleted"
    CONFLICT_RESOLVED = "conflict_resolved"


class SubscriptionCategory(str, Enum):
    """One logical webhook subscription per category per integration."""

    CRM_RECORDS = "crm_records"
    MESSAGES = "messages"
    CALLS = "calls"
    CALL_SUMMARIES = "call_summaries"


TELEPHONY_CATEGORIES: tuple[SubscriptionCategory, ...] = (
    SubscriptionCategory.MESSAGES,
    SubscriptionCategory.CALLS,
    SubscriptionCategory.CALL_SUMMARIES,
)


class ProvisioningStatus(str, Enum):
    CONFIGURED = "configured"
    ALREADY_CONFIGURED = "already_configured"
    FAILED = "failed"


class MessageLevel(str, Enum):
    WARNINGS = "warnings"
    ERRORS = "errors"


# ── Persistent State ────────────────────────────────────────────────────────


class IdentityMapping(BaseModel):
    """Sync relationship between a record in one system and its counterpart.

    Presence of a mapping for a call or message id is the idempotence
    signal: a second event with the same key must not create a second
    downstream record.
    """

    key: str
    counterpart_id: str | None = None
    entity_type: EntityType
    sync_method: SyncMethod = SyncMethod.WEBHOOK
    last_action: SyncAction | None = None
    last_synced_at: datetime | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)


class WebhookSubscription(BaseModel):
    """A registered webhook subscription with an external service."""

    id: str
    secret: str | None = None
    url: str
    subscribed_events: list[str] = Field(default_factory=list)
    resource_ids: list[str] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=_utcnow)


class IntegrationConfig(BaseModel):
    """Persisted configuration for one integration instance.

    Attributes:
        integration_id: Owning integration.
        subscriptions: Provisioned webhook subscriptions keyed by category.
        enabled_resource_ids: Telephony phone-line ids webhook delivery is scoped to.
        resource_metadata: Phone-line id -> {name, number, formattedNumber, symbol}.
        object_types: Persisted CRM object id -> object slug resolutions.
    """

    integration_id: str
    subscriptions: dict[SubscriptionCategory, WebhookSubscription] = Field(default_factory=dict)
    enabled_resource_ids: list[str] = Field(default_factory=list)
    resource_metadata: dict[str, dict[str, Any]] = Field(default_factory=dict)
    object_types: dict[str, str] = Field(default_factory=dict)

    def has_subscription(self, category: SubscriptionCategory) -> bool:
        return category in self.subscriptions

    def secret_for(self, category: SubscriptionCategory) -> str | None:
        subscription = self.subscriptions.get(category)
        return subscription.secret if subscription else None

    def own_phone_numbers(self) -> list[str]:
        """Raw numbers (plain and formatted) belonging to the telephony lines."""
        numbers: list[str] = []
        for meta in self.resource_metadata.values():
            for field in ("number", "formattedNumber"):
                if meta.get(field):
                    numbers.append(meta[field])
        return numbers


class IntegrationMessage(BaseModel):
    """Operator-visible message recorded against an integration."""

    level: MessageLevel
    title: str
    message: str
    timestamp: datetime = Field(default_factory=_utcnow)


# ── Backfill ────────────────────────────────────────────────────────────────


class SyncCursor(BaseModel):
    """Position within a paginated listing; ``cursor=None`` means done."""

    cursor: int | None = None
    has_more: bool = False


class BackfillPage(BaseModel):
    records: list[dict[str, Any]] = Field(default_factory=list)
    next: SyncCursor = Field(default_factory=SyncCursor)


class BackfillResult(BaseModel):
    object_type: str
    processed: int = 0
    synced: int = 0
    skipped: int = 0
    errors: list[str] = Field(default_factory=list)
    next: SyncCursor = Field(default_factory=SyncCursor)


# ── Handler Results ─────────────────────────────────────────────────────────


class ParticipantResult(BaseModel):
    """Outcome of logging one call to one external participant's record."""

    contact_phone: str
    contact_id: str | None = None
    note_id: str | None = None
    logged: bool = False
    already_logged: bool = False
    error: str | None = None
    retryable: bool = False


class CallLogResult(BaseModel):
    call_id: str
    logged: bool = False
    skipped: bool = False
    reason: str | None = None
    error: str | None = None
    participants: list[ParticipantResult] = Field(default_factory=list)


class MessageLogResult(BaseModel):
    message_id: str
    logged: bool = False
    skipped: bool = False
    reason: str | None = None
    error: str | None = None
    contact_id: str | None = None
    note_id: str | None = None


class EnrichmentResult(BaseModel):
    call_id: str
    enriched: bool = False
    skipped: bool = False
    reason: str | None = None
    error: str | None = None
    note_ids: list[str] = Field(default_factory=list)
    replaced_note_ids: list[str] = Field(default_factory=list)
    recordings_count: int = 0
    has_voicemail: bool = False


class RecordEventResult(BaseModel):
    event_type: str | None = None
    record_id: str | None = None
    success: bool = False
    skipped: bool = False
    reason: str | None = None
    error: str | None = None
    action: SyncAction | None = None
    contact_id: str | None = None
    retryable: bool = False


class RecordBatchResult(BaseModel):
    total_events: int = 0
    processed_at: datetime = Field(default_factory=_utcnow)
    results: list[RecordEventResult] = Field(default_factory=list)


# ── Provisioning Results ────────────────────────────────────────────────────


class SideResult(BaseModel):
    """Provisioning outcome for one external service."""

    status: ProvisioningStatus
    subscription_ids: dict[SubscriptionCategory, str] = Field(default_factory=dict)
    webhook_url: str | None = None
    error: str | None = None


class ProvisioningResult(BaseModel):
    success: bool
    crm: SideResult
    telephony: SideResult


class TeardownResult(BaseModel):
    deleted: list[str] = Field(default_factory=list)
    failed: dict[str, str] = Field(default_factory=dict)

    @property
    def success(self) -> bool:
        return not self.failed
