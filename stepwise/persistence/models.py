"""Data models for persisted workflow state."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel, Field

from ..contracts import WorkflowRun, utcnow


class StepRecord(BaseModel):
    """Record of one attempt of a step execution."""

    id: Optional[int] = None
    run_id: str
    step_name: str
    idempotency_key: str
    attempt: int = 1
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    status: Optional[str] = None
    output: Optional[dict[str, Any]] = None


class SignalRecord(BaseModel):
    """A signal received for a run, kept until the run acknowledges it."""

    id: Optional[int] = None
    run_id: str
    signal_type: str
    payload: dict[str, Any] = Field(default_factory=dict)
    received_at: datetime = Field(default_factory=utcnow)
    acknowledged: bool = False


__all__ = ["SignalRecord", "StepRecord", "WorkflowRun"]
