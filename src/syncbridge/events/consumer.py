"""Webhook consumer with retry logic and consumer group management.

Reads envelopes from the webhook stream through a consumer group and
hands them to the sync handler. A handler failure re-queues the envelope
with backoff (1s, 4s, 16s); after 3 failed attempts it is moved to the
dead letter queue. Structurally invalid envelopes go straight to the DLQ.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable

import structlog
from pydantic import ValidationError

from src.syncbridge.events.bus import WebhookQueue
from src.syncbridge.events.dlq import DeadLetterQueue
from src.syncbridge.events.schemas import WebhookEnvelope
from src.syncbridge.exceptions import InvalidPayload

logger = structlog.get_logger(__name__)

EnvelopeHandler = Callable[[WebhookEnvelope], Awaitable[None]]


class WebhookConsumer:
    """Processes webhook envelopes from a Redis Stream with retries.

    Args:
        queue: WebhookQueue to read from.
        stream: Stream name to consume from.
        group: Consumer group name.
        consumer_name: Unique consumer identifier within the group.
        dlq: DeadLetterQueue for permanently failed envelopes.
        retry_delays: Backoff delays in seconds, one per retry.
    """

    MAX_RETRIES: int = 3
    RETRY_DELAYS: list[float] = [1, 4, 16]

    def __init__(
        self,
        queue: WebhookQueue,
        stream: str,
        group: str,
        consumer_name: str,
        dlq: DeadLetterQueue,
        retry_delays: list[float] | None = None,
    ) -> None:
        self._queue = queue
        self._stream = stream
        self._group = group
        self._consumer_name = consumer_name
        self._dlq = dlq
        self._retry_delays = retry_delays if retry_delays is not None else list(self.RETRY_DELAYS)
        self._running = False

    @property
    def running(self) -> bool:
        return self._running

    async def process_loop(self, handler: EnvelopeHandler) -> None:
        """Read, handle and acknowledge envelopes until ``stop()`` is called.

        Abandoned deliveries of crashed consumers are reclaimed once at
        startup so nothing stays pending forever.

        Args:
            handler: Async callable processing one envelope. Must raise on
                failure for retry to engage.
        """
        self._running = True
        logger.info(
            "consumer.started",
            stream=self._stream,
            group=self._group,
            consumer=self._consumer_name,
        )

        await self._queue.ensure_group(self._stream, self._group)
        await self.reclaim_abandoned(handler)

        while self._running:
            messages = await self._queue.subscribe(self._stream, self._group, self._consumer_name)
            for _stream_key, stream_messages in messages or []:
                for message_id, raw_data in stream_messages:
                    await self.process_message(message_id, raw_data, handler)

        logger.info("consumer.stopped", consumer=self._consumer_name)

    async def process_message(
        self,
        message_id: str,
        raw_data: dict[str, str],
        handler: EnvelopeHandler,
    ) -> None:
        """Handle one stream message, retrying or dead-lettering on failure.

        On success the message is acknowledged. On failure:
        - Invalid envelopes and exhausted retries go to the DLQ, then ack.
        - Otherwise, sleep with backoff and re-publish with an incremented
          ``_retry_count``; the re-published message is a new delivery.
        """
        retry_count = int(raw_data.get("_retry_count", "0") or 0)

        try:
            envelope = WebhookEnvelope.from_stream_dict(raw_data)
        except (ValidationError, KeyError, ValueError) as exc:
            logger.warning("consumer.envelope_malformed", message_id=message_id, error=str(exc))
            await self._dead_letter(message_id, raw_data, exc, retry_count)
            return

        try:
            await handler(envelope)
        except InvalidPayload as exc:
            logger.warning("consumer.envelope_invalid", message_id=message_id, error=str(exc))
            await self._dead_letter(message_id, raw_data, exc, retry_count)
            return
        except Exception as exc:
            logger.warning(
                "consumer.envelope_failed",
                message_id=message_id,
                integration_id=raw_data.get("integration_id"),
                retry_count=retry_count,
                error=str(exc),
            )
            if retry_count >= self.MAX_RETRIES:
                await self._dead_letter(message_id, raw_data, exc, retry_count)
            else:
                await self._retry(message_id, raw_data, retry_count)
            return

        await self._queue.ack(self._stream, self._group, message_id)
        logger.debug(
            "consumer.envelope_processed",
            envelope_id=envelope.envelope_id,
            event_type=envelope.event_type,
            message_id=message_id,
        )

    async def _retry(self, message_id: str, raw_data: dict[str, str], retry_count: int) -> None:
        delay = 0.0
        if self._retry_delays:
            delay = self._retry_delays[min(retry_count, len(self._retry_delays) - 1)]
            await asyncio.sleep(delay)

        retry_data = dict(raw_data)
        retry_data["_retry_count"] = str(retry_count + 1)
        await self._queue.publish_raw(self._stream, retry_data)
        await self._queue.ack(self._stream, self._group, message_id)

        logger.info(
            "consumer.envelope_retried",
            message_id=message_id,
            retry_count=retry_count + 1,
            delay=delay,
        )

    async def _dead_letter(
        self,
        message_id: str,
        raw_data: dict[str, str],
        exc: Exception,
        retry_count: int,
    ) -> None:
        await self._dlq.send_to_dlq(
            original_stream=self._stream,
            message_id=message_id,
            data=raw_data,
            error=str(exc),
            retry_count=retry_count,
        )
        await self._queue.ack(self._stream, self._group, message_id)
        logger.error("consumer.envelope_dead_lettered", message_id=message_id, retry_count=retry_count)

    async def reclaim_abandoned(self, handler: EnvelopeHandler, idle_time_ms: int = 60000) -> int:
        """Take over and process envelopes stalled in other consumers' pending lists.

        Returns:
            Number of reclaimed envelopes.
        """
        reclaimed = await self._queue.autoclaim(
            self._stream,
            self._group,
            self._consumer_name,
            idle_time_ms=idle_time_ms,
        )
        for message_id, raw_data in reclaimed:
            if raw_data:
                await self.process_message(message_id, raw_data, handler)
        if reclaimed:
            logger.info("consumer.reclaimed", count=len(reclaimed))
        return len(reclaimed)

    def stop(self) -> None:
        """Signal the processing loop to stop after the current batch."""
        self._running = False
