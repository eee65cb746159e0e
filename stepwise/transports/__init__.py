"""Transports carrying signal envelopes in and run events out."""

from __future__ import annotations

import os
from typing import Optional

from ..config import StepwiseConfig, load_config
from .base import BaseTransport
from .inmemory import InMemoryTransport
from .redis import RedisTransport


def get_transport(
    backend: Optional[str] = None, config: Optional[StepwiseConfig] = None
) -> BaseTransport:
    """Build the transport named by ``backend``, ``STEPWISE_TRANSPORT`` or config."""
    config = config or load_config()
    name = (backend or os.getenv("STEPWISE_TRANSPORT") or config.transport.backend).lower()

    if name == "inmemory":
        return InMemoryTransport()
    if name == "redis":
        return RedisTransport(**config.transport.redis.model_dump())
    raise ValueError(f"Unsupported transport backend: {name}")


__all__ = ["BaseTransport", "InMemoryTransport", "RedisTransport", "get_transport"]
