"""Webhook queue on Redis Streams.

Intake publishes verified envelopes; workers read them through a
consumer group and acknowledge after processing.

Stream key pattern: {namespace}:events:{stream_name}
"""

from __future__ import annotations

from typing import Any

import redis.asyncio as aioredis
import structlog

from src.syncbridge.events.schemas import WebhookEnvelope

logger = structlog.get_logger(__name__)

STREAM_MAXLEN = 10000


class WebhookQueue:
    """Publish to and consume from namespaced Redis Streams.

    Args:
        redis: Async Redis client.
        namespace: Key prefix shared by every stream of this deployment.
    """

    def __init__(self, redis: aioredis.Redis, namespace: str = "syncbridge") -> None:
        self._redis = redis
        self._namespace = namespace

    @property
    def redis(self) -> aioredis.Redis:
        return self._redis

    def stream_key(self, stream: str) -> str:
        """Full key like ``{namespace}:events:{stream}``."""
        return f"{self._namespace}:events:{stream}"

    async def publish(self, stream: str, envelope: WebhookEnvelope) -> str:
        """Append an envelope to a stream.

        Returns:
            Redis message ID assigned by XADD.
        """
        return await self.publish_raw(stream, envelope.to_stream_dict(), envelope_id=envelope.envelope_id)

    async def publish_raw(self, stream: str, data: dict[str, str], envelope_id: str | None = None) -> str:
        """Append an already-serialized envelope (retries and DLQ replays)."""
        stream_key = self.stream_key(stream)
        message_id = await self._redis.xadd(
            stream_key,
            data,
            maxlen=STREAM_MAXLEN,
            approximate=True,
        )
        logger.debug(
            "queue.published",
            stream=stream_key,
            envelope_id=envelope_id or data.get("envelope_id"),
            message_id=message_id,
        )
        return message_id

    async def ensure_group(self, stream: str, group: str) -> None:
        """Create the consumer group if it does not already exist."""
        try:
            await self._redis.xgroup_create(self.stream_key(stream), group, id="0", mkstream=True)
        except aioredis.ResponseError as exc:
            if "BUSYGROUP" not in str(exc):
                raise

    async def subscribe(
        self,
        stream: str,
        group: str,
        consumer: str,
        count: int = 10,
        block: int = 5000,
    ) -> list[tuple[str, list[tuple[str, dict[str, str]]]]]:
        """Read new messages as a consumer in a consumer group.

        Returns:
            List of ``(stream_key, [(message_id, data), ...])`` tuples.
        """
        await self.ensure_group(stream, group)
        return await self._redis.xreadgroup(
            groupname=group,
            consumername=consumer,
            streams={self.stream_key(stream): ">"},
            count=count,
            block=block,
        )

    async def ack(self, stream: str, group: str, message_id: str) -> None:
        await self._redis.xack(self.stream_key(stream), group, message_id)

    async def autoclaim(
        self,
        stream: str,
        group: str,
        consumer: str,
        idle_time_ms: int = 60000,
        count: int = 10,
    ) -> list[tuple[str, dict[str, str]]]:
        """Take over messages idle in the pending list longer than ``idle_time_ms``."""
        result = await self._redis.xautoclaim(
            self.stream_key(stream),
            group,
            consumer,
            min_idle_time=idle_time_ms,
            start_id="0",
            count=count,
        )
        # XAUTOCLAIM returns [next_start_id, messages, (deleted_ids on Redis 7+)]
        return list(result[1]) if result and len(result) > 1 else []

    async def get_stream_info(self, stream: str) -> dict[str, Any]:
        return await self._redis.xinfo_stream(self.stream_key(stream))

    async def get_pending(self, stream: str, group: str) -> dict[str, Any]:
        """Pending summary with count, min/max IDs and per-consumer counts."""
        return await self._redis.xpending(self.stream_key(stream), group)
