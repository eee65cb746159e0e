"""Redis transport using a reliable-queue pattern.

Messages are pushed onto ``<prefix>:<topic>``. A consumer atomically moves each
message onto ``<prefix>:<topic>:processing`` and removes it from there on
``ack``; ``nack`` puts it back at the head of the topic queue. Deliveries left
on the processing list by a consumer that died are reclaimed when the next
subscription to the topic starts, so one consumer per topic is assumed.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, AsyncIterator, Optional, Tuple

import redis.asyncio as redis
from pydantic import ValidationError

from ..contracts import WorkflowMessage
from .base import BaseTransport

logger = logging.getLogger(__name__)

RawRedisMessage = Tuple[str, str]


class RedisTransport(BaseTransport[RawRedisMessage]):
    """Cross-process transport backed by Redis lists."""

    def __init__(
        self,
        host: str = "localhost",
        port: int = 6379,
        db: int = 0,
        password: Optional[str] = None,
        key_prefix: str = "stepwise",
        block_timeout: int = 1,
    ) -> None:
        self.host = host
        self.port = port
        self.db = db
        self.password = password
        self.key_prefix = key_prefix
        self.block_timeout = block_timeout
        self._redis: Optional[Any] = None

    def queue_key(self, topic: str) -> str:
        return f"{self.key_prefix}:{topic}"

    def processing_key(self, topic: str) -> str:
        return f"{self.key_prefix}:{topic}:processing"

    async def connect(self) -> None:
        self._redis = redis.Redis(
            host=self.host,
            port=self.port,
            db=self.db,
            password=self.password,
            decode_responses=True,
        )
        await self._redis.ping()
        logger.info(f"Connected to Redis at {self.host}:{self.port}/{self.db}")

    async def disconnect(self) -> None:
        if self._redis:
            await self._redis.aclose()
            self._redis = None

    async def _client(self) -> Any:
        if not self._redis:
            await self.connect()
        return self._redis

    async def publish(self, topic: str, message: WorkflowMessage) -> None:
        client = await self._client()
        await client.lpush(self.queue_key(topic), message.to_json())

    async def subscribe(
        self, topic: str, lifespan: Optional[float] = None
    ) -> AsyncIterator[Tuple[RawRedisMessage, WorkflowMessage]]:
        """Move messages onto the processing list and yield them until ``lifespan`` elapses."""
        client = await self._client()
        queue, processing = self.queue_key(topic), self.processing_key(topic)
        reclaimed = await self.reclaim(topic)
        if reclaimed:
            logger.warning(f"Requeued {reclaimed} unacknowledged message(s) on {queue}")
        loop = asyncio.get_running_loop()
        start_time = loop.time()

        while lifespan is None or loop.time() - start_time < lifespan:
            payload = await client.blmove(
                queue, processing, self.block_timeout, src="RIGHT", dest="LEFT"
            )
            if payload is None:
                continue
            try:
                message = WorkflowMessage.from_json(payload)
            except ValidationError as e:
                logger.warning(f"Dropping unparseable message on {queue}: {e}")
                await client.lrem(processing, 1, payload)
                continue
            yield (processing, payload), message

    async def reclaim(self, topic: str) -> int:
        """Move unacknowledged deliveries back to the head of the topic queue, oldest first."""
        client = await self._client()
        queue, processing = self.queue_key(topic), self.processing_key(topic)
        moved = 0
        while await client.lmove(processing, queue, src="LEFT", dest="RIGHT") is not None:
            moved += 1
        return moved

    async def ack(self, raw_message: RawRedisMessage) -> None:
        processing, payload = raw_message
        client = await self._client()
        await client.lrem(processing, 1, payload)

    async def nack(self, raw_message: RawRedisMessage, requeue: bool = True) -> None:
        processing, payload = raw_message
        client = await self._client()
        await client.lrem(processing, 1, payload)
        if requeue:
            queue = processing.removesuffix(":processing")
            await client.rpush(queue, payload)
