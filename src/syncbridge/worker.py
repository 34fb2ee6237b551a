"""Queue worker: applies queued webhook envelopes to the sync engine.

Run with ``python -m src.syncbridge.worker``. Each envelope is handled end
to end by the integration it was addressed to; exceptions propagate to the
consumer, which retries with backoff and dead-letters after 3 attempts.
"""

from __future__ import annotations

import asyncio
import signal
import socket

import structlog

from src.syncbridge.api.middleware.logging import configure_structlog
from src.syncbridge.config import get_settings
from src.syncbridge.core.context import reset_integration_context, set_integration_context
from src.syncbridge.core.database import close_db, init_db
from src.syncbridge.core.monitoring import init_sentry
from src.syncbridge.core.redis import close_redis, get_redis_pool
from src.syncbridge.events.bus import WebhookQueue
from src.syncbridge.events.consumer import WebhookConsumer
from src.syncbridge.events.dlq import DeadLetterQueue
from src.syncbridge.events.schemas import WebhookEnvelope
from src.syncbridge.sync.integration import IntegrationFactory

logger = structlog.get_logger(__name__)


class SyncWorker:
    """Dispatches envelopes to the integration they belong to.

    Args:
        factory: Builds the per-integration sync engine.
    """

    def __init__(self, factory: IntegrationFactory) -> None:
        self._factory = factory

    async def handle(self, envelope: WebhookEnvelope) -> None:
        token = set_integration_context(envelope.integration_id)
        try:
            integration = await self._factory.build(envelope.integration_id)
            if integration is None:
                # Integration removed after the delivery was accepted
                logger.warning(
                    "worker.integration_missing",
                    envelope_id=envelope.envelope_id,
                    event_type=envelope.event_type,
                )
                return

            routed = await integration.handle(envelope.source, envelope.body)
            logger.info(
                "worker.envelope_handled",
                envelope_id=envelope.envelope_id,
                kind=routed.kind.value,
                outcome=routed.outcome,
                attempt=envelope.retry_count + 1,
            )
        finally:
            reset_integration_context(token)


async def run() -> None:
    from src.syncbridge.main import build_integration_factory

    settings = get_settings()
    configure_structlog()
    await init_db()
    if settings.SENTRY_DSN:
        init_sentry(dsn=settings.SENTRY_DSN, environment=settings.ENVIRONMENT.value)

    queue = WebhookQueue(get_redis_pool(), namespace=settings.QUEUE_NAMESPACE)
    consumer = WebhookConsumer(
        queue=queue,
        stream=settings.QUEUE_STREAM,
        group=settings.QUEUE_GROUP,
        consumer_name=f"{socket.gethostname()}-{id(queue):x}",
        dlq=DeadLetterQueue(queue),
    )
    worker = SyncWorker(build_integration_factory())

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, consumer.stop)

    try:
        await consumer.process_loop(worker.handle)
    finally:
        await close_db()
        await close_redis()


def main() -> None:
    asyncio.run(run())


if __name__ == "__main__":
    main()
