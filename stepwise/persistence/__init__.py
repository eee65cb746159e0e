"""Durable storage for runs, step records and the signal inbox."""

from __future__ import annotations

import os
from typing import Optional

from ..config import StepwiseConfig, load_config
from .inmemory import InMemoryWorkflowRepository
from .models import SignalRecord, StepRecord
from .postgres import PostgresWorkflowRepository
from .repository import WorkflowRepository
from .sqlite import SQLiteWorkflowRepository

_repository_instance: WorkflowRepository | None = None


def repository_for_url(database_url: Optional[str]) -> WorkflowRepository:
    """Build the repository backend matching ``database_url``'s scheme.

    ``sqlite://<path>`` and ``postgres(ql)://...`` select the SQL backends;
    an empty url selects the in-memory repository.
    """
    if not database_url:
        return InMemoryWorkflowRepository()
    scheme = database_url.split("://", 1)[0]
    if scheme == "sqlite":
        return SQLiteWorkflowRepository(database_url[len("sqlite://"):])
    if scheme in ("postgres", "postgresql"):
        return PostgresWorkflowRepository(database_url)
    raise ValueError(f"Unsupported database backend: {database_url}")


def get_repository(
    database_url: Optional[str] = None, config: Optional[StepwiseConfig] = None
) -> WorkflowRepository:
    """Return the process-wide repository, creating it on first use.

    Passing ``database_url`` or ``config`` always builds a fresh backend. The
    url is taken from the argument, then ``STEPWISE_DATABASE_URL`` or
    ``DATABASE_URL``, then ``config.database_url``.
    """
    global _repository_instance
    if _repository_instance is not None and database_url is None and config is None:
        return _repository_instance

    config = config or load_config()
    _repository_instance = repository_for_url(
        database_url
        or os.getenv("STEPWISE_DATABASE_URL")
        or os.getenv("DATABASE_URL")
        or config.database_url
    )
    return _repository_instance


__all__ = [
    "InMemoryWorkflowRepository",
    "PostgresWorkflowRepository",
    "SQLiteWorkflowRepository",
    "SignalRecord",
    "StepRecord",
    "WorkflowRepository",
    "get_repository",
    "repository_for_url",
]
