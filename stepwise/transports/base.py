"""Transport interface shared by the signal relay and event publishing."""

from __future__ import annotations

import abc
from typing import AsyncIterator, Generic, Optional, Tuple, TypeVar

from ..contracts import WorkflowMessage

RawMessageT = TypeVar("RawMessageT")


class BaseTransport(Generic[RawMessageT], metaclass=abc.ABCMeta):
    """Moves ``WorkflowMessage`` envelopes between processes.

    ``RawMessageT`` is whatever the backend needs to acknowledge a delivery.
    """

    async def connect(self) -> None:
        return None

    async def disconnect(self) -> None:
        return None

    @abc.abstractmethod
    async def publish(self, topic: str, message: WorkflowMessage) -> None:
        ...

    @abc.abstractmethod
    def subscribe(
        self, topic: str, lifespan: Optional[float] = None
    ) -> AsyncIterator[Tuple[RawMessageT, WorkflowMessage]]:
        """Yield ``(raw, envelope)`` pairs, stopping after ``lifespan`` seconds when given."""

    @abc.abstractmethod
    async def ack(self, raw_message: RawMessageT) -> None:
        """Mark a delivery as handled."""

    async def nack(self, raw_message: RawMessageT, requeue: bool = True) -> None:
        """Reject a delivery; backends without redelivery simply drop it."""
        await self.ack(raw_message)
