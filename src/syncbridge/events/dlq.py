"""Dead letter queue for webhook envelopes that exhausted their retries.

DLQ key pattern: {namespace}:events:{original_stream}:dlq
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

import structlog

from src.syncbridge.events.bus import WebhookQueue

logger = structlog.get_logger(__name__)


class DeadLetterQueue:
    """Dead letter stream next to each webhook stream.

    Supports listing dead-lettered envelopes and replaying them to their
    original stream with a fresh retry budget.

    Args:
        queue: The webhook queue whose streams this DLQ shadows.
    """

    def __init__(self, queue: WebhookQueue) -> None:
        self._queue = queue
        self._redis = queue.redis

    def _dlq_key(self, original_stream: str) -> str:
        return f"{self._queue.stream_key(original_stream)}:dlq"

    async def send_to_dlq(
        self,
        original_stream: str,
        message_id: str,
        data: dict[str, str],
        error: str,
        retry_count: int,
    ) -> str:
        """Move a failed envelope to the DLQ with failure metadata.

        Returns:
            DLQ message ID assigned by XADD.
        """
        dlq_key = self._dlq_key(original_stream)
        dlq_data: dict[str, str] = {
            **data,
            "_dlq_original_stream": original_stream,
            "_dlq_original_id": message_id,
            "_dlq_error": error,
            "_dlq_retry_count": str(retry_count),
            "_dlq_timestamp": datetime.now(timezone.utc).isoformat(),
        }
        dlq_message_id = await self._redis.xadd(dlq_key, dlq_data)

        logger.warning(
            "dlq.envelope_dead_lettered",
            dlq_key=dlq_key,
            envelope_id=data.get("envelope_id"),
            integration_id=data.get("integration_id"),
            event_type=data.get("event_type"),
            error=error,
            retry_count=retry_count,
        )
        return dlq_message_id

    async def list_dlq_messages(
        self,
        original_stream: str,
        count: int = 50,
    ) -> list[tuple[str, dict[str, Any]]]:
        """Return up to ``count`` ``(message_id, data)`` tuples, oldest first."""
        return await self._redis.xrange(self._dlq_key(original_stream), count=count)

    async def replay_message(self, original_stream: str, dlq_message_id: str) -> str:
        """Re-publish a dead-lettered envelope and remove it from the DLQ.

        DLQ metadata is stripped and the retry counter reset.

        Returns:
            New message ID in the original stream.

        Raises:
            ValueError: If the DLQ message ID is not found.
        """
        dlq_key = self._dlq_key(original_stream)
        messages = await self._redis.xrange(dlq_key, min=dlq_message_id, max=dlq_message_id, count=1)
        if not messages:
            msg = f"DLQ message '{dlq_message_id}' not found in {dlq_key}"
            raise ValueError(msg)

        _msg_id, data = messages[0]
        replay_data = {k: v for k, v in data.items() if not k.startswith("_dlq_")}
        replay_data["_retry_count"] = "0"

        new_id = await self._queue.publish_raw(original_stream, replay_data)
        await self._redis.xdel(dlq_key, dlq_message_id)

        logger.info(
            "dlq.envelope_replayed",
            original_stream=original_stream,
            dlq_message_id=dlq_message_id,
            new_message_id=new_id,
        )
        return new_id
