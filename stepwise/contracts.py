"""Core contracts for the stepwise coordination model."""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, Field

from .constants import (
    DEFAULT_BACKOFF_COEFFICIENT,
    DEFAULT_INITIAL_INTERVAL,
    DEFAULT_MAXIMUM_ATTEMPTS,
    DEFAULT_MAXIMUM_INTERVAL,
    DEFAULT_STEP_TIMEOUT,
)

RunStatus = Literal["running", "suspended", "completed", "rejected", "failed", "cancelled"]
TERMINAL_STATUSES = frozenset({"completed", "rejected", "failed", "cancelled"})

OutcomeKind = Literal["success", "retryable_failure", "terminal_failure"]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class RetryPolicy(BaseModel):
    """Backoff and attempt limits applied to a single step."""

    maximum_attempts: int = DEFAULT_MAXIMUM_ATTEMPTS
    initial_interval: float = DEFAULT_INITIAL_INTERVAL
    backoff_coefficient: float = DEFAULT_BACKOFF_COEFFICIENT
    maximum_interval: float = DEFAULT_MAXIMUM_INTERVAL
    jitter: float = 0.0
    non_retryable_errors: List[str] = Field(default_factory=list)


class StepSpec(BaseModel):
    """Defines one invocation of an external operation."""

    name: str
    timeout: float = DEFAULT_STEP_TIMEOUT
    retry_policy: RetryPolicy = Field(default_factory=RetryPolicy)
    memoize: bool = True

    def idempotency_key(self, run_id: str) -> str:
        """Attempt-independent key identifying this step within a run."""
        return f"{run_id}:{self.name}"


class StepOutcome(BaseModel):
    """Classified result of executing a step."""

    step_name: str
    kind: OutcomeKind
    result: Any = None
    reason: Optional[str] = None
    attempts: int = 0
    replayed: bool = False

    @property
    def ok(self) -> bool:
        return self.kind == "success"


class HistoryEvent(BaseModel):
    """Entry in a run's execution history."""

    kind: str
    name: str
    detail: Dict[str, Any] = Field(default_factory=dict)
    timestamp: datetime = Field(default_factory=utcnow)


class WorkflowRun(BaseModel):
    """One durable process instance."""

    run_id: str
    kind: str
    phase: str = "pending"
    input: Dict[str, Any] = Field(default_factory=dict)
    state: Dict[str, Any] = Field(default_factory=dict)
    status: RunStatus = "running"
    history: List[HistoryEvent] = Field(default_factory=list)
    continuations: int = 0
    reschedules: int = 0
    result: Optional[Dict[str, Any]] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES


class RunResult(BaseModel):
    """Final classified outcome reported to callers."""

    run_id: str
    kind: str
    status: RunStatus
    phase: str
    result: Dict[str, Any] = Field(default_factory=dict)
    failure_reason: Optional[str] = None
    compensated: Optional[bool] = None
    unresolved_compensations: List[str] = Field(default_factory=list)


class WorkflowMessage(BaseModel):
    """
    Envelope exchanged over a transport: inbound signals and outbound
    phase-change events.
    """

    message_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    run_id: str
    message_type: Literal["signal", "event"] = "signal"
    name: str
    payload: Dict[str, Any] = Field(default_factory=dict)
    timestamp: datetime = Field(default_factory=utcnow)
    spec_version: str = "1.0"

    def to_json(self) -> str:
        """Serialize message to JSON."""
        return self.model_dump_json()

    @classmethod
    def from_json(cls, data: str) -> "WorkflowMessage":
        """Deserialize message from JSON."""
        return cls.model_validate_json(data)


# ----------------------------------------------------------------------
# Errors


class ActivityFailed(Exception):
    """Raised by a step function to classify its own failure."""

    def __init__(self, message: str, retryable: bool = True) -> None:
        super().__init__(message)
        self.retryable = retryable


class StepFailed(Exception):
    """A step ended in a terminal failure."""

    def __init__(self, outcome: StepOutcome) -> None:
        super().__init__(outcome.reason or f"step {outcome.step_name} failed")
        self.outcome = outcome

    @property
    def step_name(self) -> str:
        return self.outcome.step_name


class Rejection(Exception):
    """Business rule violation detected before any side effect was made."""

    def __init__(self, reason: str) -> None:
        super().__init__(reason)
        self.reason = reason


class DataNotAvailable(Exception):
    """External data needed to proceed does not exist yet; reschedule the run."""


class ContinueAsNew(Exception):
    """Restart the run with a fresh history, carrying ``state`` forward."""

    def __init__(self, state: Dict[str, Any]) -> None:
        super().__init__("continue as new")
        self.state = state


class WorkflowNotFound(LookupError):
    """No run exists for the given id."""


class UnknownQuery(ValueError):
    """The run's protocol does not answer the requested query type."""
