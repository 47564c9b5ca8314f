from __future__ import annotations

from typing import Optional

import redis.asyncio as aioredis
from redis import Redis

from canvasflow.logging import get_logger
from canvasflow.storage.models import QueueMessage

logger = get_logger(__name__)

PROCESSING_SUFFIX = ":processing"


def processing_list(source: str) -> str:
    return f"{source}{PROCESSING_SUFFIX}"


class RedisTaskQueue:
    """Reliable-list task transport.

    Producers LPUSH JSON bodies onto a source list. ``receive`` atomically
    moves the oldest body onto ``<source>:processing`` (BLMOVE) so a crashed
    worker leaves it recoverable; ``acknowledge`` removes it from there. The
    message handle is the body itself.
    """

    DEFAULT_OPERATION_TIMEOUT = 5.0

    def __init__(
        self,
        redis_url: str,
        *,
        max_wait: float = 5.0,
        client: Optional[aioredis.Redis] = None,
    ) -> None:
        self.redis_url = redis_url
        # socket timeout must outlast the blocking poll
        timeout = max(self.DEFAULT_OPERATION_TIMEOUT, max_wait + 5.0)
        self.client = client or aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=timeout,
            socket_connect_timeout=self.DEFAULT_OPERATION_TIMEOUT,
        )

    def verify_connection(self) -> None:
        """Fail fast at startup when Redis is unreachable."""
        client = Redis.from_url(
            self.redis_url,
            socket_timeout=self.DEFAULT_OPERATION_TIMEOUT,
            socket_connect_timeout=self.DEFAULT_OPERATION_TIMEOUT,
        )
        try:
            client.ping()
        finally:
            client.close()

    async def enqueue(self, source: str, body: str) -> str:
        await self.client.lpush(source, body)
        return body

    async def receive(self, source: str, max_wait: float) -> Optional[QueueMessage]:
        if max_wait > 0:
            body = await self.client.blmove(
                source, processing_list(source), max_wait, src="RIGHT", dest="LEFT"
            )
        else:
            body = await self.client.lmove(source, processing_list(source), src="RIGHT", dest="LEFT")
        if body is None:
            return None
        return QueueMessage(source=source, handle=body, body=body)

    async def acknowledge(self, source: str, handle: str) -> None:
        removed = await self.client.lrem(processing_list(source), 1, handle)
        if not removed:
            logger.warning("queue_ack_missing", source=source)

    async def close(self) -> None:
        await self.client.aclose()


class RedisFileTextStore:
    """Extracted text of uploaded files, written by the file-processing pipeline."""

    def __init__(self, client: aioredis.Redis) -> None:
        self.client = client

    @staticmethod
    def key(storage_id: str) -> str:
        return f"file:{storage_id}:text"

    async def get_file_text(self, storage_id: str) -> Optional[str]:
        value = await self.client.get(self.key(storage_id))
        return value or None
