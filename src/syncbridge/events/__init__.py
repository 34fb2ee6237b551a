"""Durable webhook queue between HTTP intake and the sync worker.

Verified deliveries are wrapped in envelopes and appended to a Redis
Stream; workers consume them through a consumer group with
exponential-backoff retry and a dead letter queue.

Exports:
    WebhookEnvelope: Verified delivery with retry counter.
    WebhookQueue: Publish/subscribe on namespaced Redis Streams.
    WebhookConsumer: Consumer with retry logic and abandoned-message reclaim.
    DeadLetterQueue: DLQ handler for failed envelope review and replay.
"""

from __future__ import annotations

from src.syncbridge.events.schemas import WebhookEnvelope

__all__ = [
    "DeadLetterQueue",
    "WebhookConsumer",
    "WebhookEnvelope",
    "WebhookQueue",
]


def __getattr__(name: str):  # noqa: N807
    """Lazy-load queue, consumer, and DLQ."""
    if name == "WebhookQueue":
        from src.syncbridge.events.bus import WebhookQueue

        return WebhookQueue
    if name == "WebhookConsumer":
        from src.syncbridge.events.consumer import WebhookConsumer

        return WebhookConsumer
    if name == "DeadLetterQueue":
        from src.syncbridge.events.dlq import DeadLetterQueue

        return DeadLetterQueue
    msg = f"module {__name__!r} has no attribute {name!r}"
    raise AttributeError(msg)
