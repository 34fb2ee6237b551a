"""Webhook envelope carried on the Redis Stream between intake and worker.

Deliveries are verified at the HTTP edge and then wrapped in a
``WebhookEnvelope``; the worker only ever sees authenticated bodies.
Envelopes serialize to flat string dicts for Redis Streams and
deserialize back losslessly.

Stream key pattern: {namespace}:events:{stream_name}
"""

from __future__ import annotations

import json
import uuid
from datetime import datetime, timezone
from typing import Any

from pydantic import BaseModel, Field

from src.syncbridge.sync.signatures import WebhookSource


class WebhookEnvelope(BaseModel):
    """One verified webhook delivery awaiting processing.

    Attributes:
        envelope_id: Unique identifier (auto-generated UUID4).
        version: Schema version for forward compatibility.
        integration_id: Integration the delivery was addressed to.
        source: Which external service sent it.
        event_type: Telephony event type, or ``crm.records`` for CRM batches.
        body: Parsed JSON body.
        headers: Selected request headers kept for diagnostics (e.g. request id).
        received_at: UTC intake time.
        retry_count: Number of failed processing attempts so far.
    """

    envelope_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    version: str = "1.0"
    integration_id: str
    source: WebhookSource
    event_type: str | None = None
    body: dict[str, Any] = Field(default_factory=dict)
    headers: dict[str, str] = Field(default_factory=dict)
    received_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    retry_count: int = 0

    def to_stream_dict(self) -> dict[str, str]:
        """Serialize to a flat dict of strings for XADD.

        JSON-encodes the body and headers; None becomes an empty string.
        The retry counter is stored as ``_retry_count`` so the consumer can
        bump it without decoding the envelope.
        """
        return {
            "envelope_id": self.envelope_id,
            "version": self.version,
            "integration_id": self.integration_id,
            "source": self.source.value,
            "event_type": self.event_type or "",
            "body": json.dumps(self.body),
            "headers": json.dumps(self.headers),
            "received_at": self.received_at.isoformat(),
            "_retry_count": str(self.retry_count),
        }

    @classmethod
    def from_stream_dict(cls, raw: dict[str, str]) -> WebhookEnvelope:
        """Reverse ``to_stream_dict()``."""
        return cls(
            envelope_id=raw["envelope_id"],
            version=raw.get("version", "1.0"),
            integration_id=raw["integration_id"],
            source=WebhookSource(raw["source"]),
            event_type=raw.get("event_type") or None,
            body=json.loads(raw["body"]) if raw.get("body") else {},
            headers=json.loads(raw["headers"]) if raw.get("headers") else {},
            received_at=datetime.fromisoformat(raw["received_at"]),
            retry_count=int(raw.get("_retry_count", "0") or 0),
        )
