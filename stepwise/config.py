from __future__ import annotations

import logging
import os
from typing import Literal, Optional

import yaml
from pydantic import BaseModel

from .constants import (
    DEFAULT_CHECKPOINT_EVERY,
    DEFAULT_EQ_TOLERANCE,
    DEFAULT_RESOLUTION_RETRY_DELAY,
    DEFAULT_SECONDS_PER_PICK,
    DEFAULT_STEP_TIMEOUT,
)
from .contracts import RetryPolicy


class RedisConfig(BaseModel):
    """Configuration for Redis transport."""

    host: str = "localhost"
    port: int = 6379
    db: int = 0
    password: Optional[str] = None
    key_prefix: str = "stepwise"


class TransportConfig(BaseModel):
    """Transport configuration settings."""

    backend: Literal["inmemory", "redis"] = "inmemory"
    redis: RedisConfig = RedisConfig()


class StepConfig(BaseModel):
    """Default timeout and retry policy for steps that do not set their own."""

    timeout: float = DEFAULT_STEP_TIMEOUT
    retry: RetryPolicy = RetryPolicy()


class DraftConfig(BaseModel):
    seconds_per_pick: float = DEFAULT_SECONDS_PER_PICK
    checkpoint_every: int = DEFAULT_CHECKPOINT_EVERY


class ResolutionConfig(BaseModel):
    retry_delay_seconds: float = DEFAULT_RESOLUTION_RETRY_DELAY
    eq_tolerance: float = DEFAULT_EQ_TOLERANCE
    max_reschedules: Optional[int] = None


class LoggingConfig(BaseModel):
    level: str = "INFO"


class StepwiseConfig(BaseModel):
    """Top-level configuration model."""

    transport: TransportConfig = TransportConfig()
    database_url: Optional[str] = None
    steps: StepConfig = StepConfig()
    draft: DraftConfig = DraftConfig()
    resolution: ResolutionConfig = ResolutionConfig()
    logging: LoggingConfig = LoggingConfig()


def load_config(path: Optional[str] = None) -> StepwiseConfig:
    """Load configuration from YAML file.

    Args:
        path: Optional path to config file. Falls back to STEPWISE_CONFIG env
            variable or 'config.yaml' in the current directory.
    """

    config_path = path or os.getenv("STEPWISE_CONFIG", "config.yaml")
    if os.path.exists(config_path):
        with open(config_path) as f:
            data = yaml.safe_load(f) or {}
        config = StepwiseConfig(**data)
    else:
        config = StepwiseConfig()

    env_db_url = os.getenv("STEPWISE_DATABASE_URL") or os.getenv("DATABASE_URL")
    if env_db_url:
        config.database_url = env_db_url
    return config


def configure_logging(config: StepwiseConfig) -> None:
    """Configure root logging for command line entry points."""
    logging.basicConfig(
        level=getattr(logging, config.logging.level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
