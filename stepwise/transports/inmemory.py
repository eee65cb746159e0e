"""Single-process transport used by tests and embedded engines."""

from __future__ import annotations

import asyncio
from collections import defaultdict, deque
from typing import AsyncIterator, Deque, Dict, List, Optional, Tuple

from ..contracts import WorkflowMessage
from .base import BaseTransport

RawMemoryMessage = Tuple[str, WorkflowMessage]


class InMemoryTransport(BaseTransport[RawMemoryMessage]):
    """Per-topic FIFO queues; deliveries stay in flight until acked or nacked."""

    def __init__(self, poll_interval: float = 0.01) -> None:
        self._queues: Dict[str, Deque[WorkflowMessage]] = defaultdict(deque)
        self._in_flight: Dict[str, WorkflowMessage] = {}
        self._poll_interval = poll_interval

    async def publish(self, topic: str, message: WorkflowMessage) -> None:
        self._queues[topic].append(message)

    async def subscribe(
        self, topic: str, lifespan: Optional[float] = None
    ) -> AsyncIterator[Tuple[RawMemoryMessage, WorkflowMessage]]:
        loop = asyncio.get_running_loop()
        deadline = None if lifespan is None else loop.time() + lifespan
        queue = self._queues[topic]

        while deadline is None or loop.time() < deadline:
            if not queue:
                await asyncio.sleep(self._poll_interval)
                continue
            message = queue.popleft()
            self._in_flight[message.message_id] = message
            yield (topic, message), message

    async def ack(self, raw_message: RawMemoryMessage) -> None:
        _, message = raw_message
        self._in_flight.pop(message.message_id, None)

    async def nack(self, raw_message: RawMemoryMessage, requeue: bool = True) -> None:
        topic, message = raw_message
        if self._in_flight.pop(message.message_id, None) is not None and requeue:
            self._queues[topic].appendleft(message)

    @property
    def in_flight(self) -> int:
        return len(self._in_flight)

    def drain(self, topic: str) -> List[WorkflowMessage]:
        """Remove and return every queued message for ``topic``."""
        messages = list(self._queues[topic])
        self._queues[topic].clear()
        return messages
