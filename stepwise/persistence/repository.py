"""Repository abstraction for workflow state persistence."""

from __future__ import annotations

from typing import Iterable, Optional, Protocol

from ..contracts import WorkflowRun
from .models import SignalRecord, StepRecord


class WorkflowRepository(Protocol):
    """Protocol for workflow state persistence backends."""

    async def create_run(self, run: WorkflowRun) -> None:
        """Persist a new run. Raises ``ValueError`` if the id is taken."""

    async def save_run(self, run: WorkflowRun) -> None:
        """Persist the run's current phase, status, state and history."""

    async def get_run(self, run_id: str) -> WorkflowRun | None:
        """Retrieve a run by id."""

    async def list_runs(self, statuses: Optional[Iterable[str]] = None) -> list[WorkflowRun]:
        """Return persisted runs, optionally filtered by status."""

    async def mark_step_started(
        self, run_id: str, step_name: str, idempotency_key: str, attempt: int = 1
    ) -> None:
        """Record start of a step attempt."""

    async def mark_step_completed(
        self,
        idempotency_key: str,
        status: str,
        output: dict | None = None,
        attempt: int = 1,
    ) -> None:
        """Record completion of a step attempt."""

    async def get_step_result(self, idempotency_key: str) -> StepRecord | None:
        """Return the successful record for ``idempotency_key`` if any."""

    async def list_steps(self, run_id: str) -> list[StepRecord]:
        """Return step records of a run in execution order."""

    async def truncate_history(self, run_id: str) -> None:
        """Drop step records of a run (used on continuation)."""

    async def append_signal(self, run_id: str, signal_type: str, payload: dict) -> int:
        """Store a received signal and return its id."""

    async def ack_signal(self, signal_id: int) -> None:
        """Mark a signal as applied."""

    async def pending_signals(self, run_id: str) -> list[SignalRecord]:
        """Return signals not yet acknowledged, oldest first."""
