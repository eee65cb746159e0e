"""In-memory implementation of the workflow repository."""

from __future__ import annotations

from typing import Dict, Iterable, List, Optional

from ..contracts import WorkflowRun, utcnow
from .models import SignalRecord, StepRecord
from .repository import WorkflowRepository


class InMemoryWorkflowRepository(WorkflowRepository):
    """Store workflow state in local memory.

    Useful for tests or when no database is configured. Data is not
    persisted across process restarts.
    """

    def __init__(self) -> None:
        self._runs: Dict[str, WorkflowRun] = {}
        self._steps: List[StepRecord] = []
        self._signals: List[SignalRecord] = []
        self._step_id = 0
        self._signal_id = 0

    # ------------------------------------------------------------------
    async def create_run(self, run: WorkflowRun) -> None:
        if run.run_id in self._runs:
            raise ValueError(f"Run {run.run_id} already exists")
        self._runs[run.run_id] = run.model_copy(deep=True)

    async def save_run(self, run: WorkflowRun) -> None:
        run.updated_at = utcnow()
        self._runs[run.run_id] = run.model_copy(deep=True)

    async def get_run(self, run_id: str) -> WorkflowRun | None:
        run = self._runs.get(run_id)
        return run.model_copy(deep=True) if run else None

    async def list_runs(self, statuses: Optional[Iterable[str]] = None) -> list[WorkflowRun]:
        wanted = set(statuses) if statuses is not None else None
        return [
            run.model_copy(deep=True)
            for run in self._runs.values()
            if wanted is None or run.status in wanted
        ]

    async def mark_step_started(
        self, run_id: str, step_name: str, idempotency_key: str, attempt: int = 1
    ) -> None:
        # ignore duplicate starts for the same attempt
        for step in self._steps:
            if step.idempotency_key == idempotency_key and step.attempt == attempt:
                return
        self._step_id += 1
        self._steps.append(
            StepRecord(
                id=self._step_id,
                run_id=run_id,
                step_name=step_name,
                idempotency_key=idempotency_key,
                attempt=attempt,
                started_at=utcnow(),
            )
        )

    async def mark_step_completed(
        self,
        idempotency_key: str,
        status: str,
        output: dict | None = None,
        attempt: int = 1,
    ) -> None:
        for step in self._steps:
            if (
                step.idempotency_key == idempotency_key
                and step.attempt == attempt
                and step.completed_at is None
            ):
                step.completed_at = utcnow()
                step.status = status
                step.output = output or {}
                break

    async def get_step_result(self, idempotency_key: str) -> StepRecord | None:
        for step in self._steps:
            if step.idempotency_key == idempotency_key and step.status == "completed":
                return step.model_copy(deep=True)
        return None

    async def list_steps(self, run_id: str) -> list[StepRecord]:
        return [s.model_copy(deep=True) for s in self._steps if s.run_id == run_id]

    async def truncate_history(self, run_id: str) -> None:
        self._steps = [s for s in self._steps if s.run_id != run_id]

    async def append_signal(self, run_id: str, signal_type: str, payload: dict) -> int:
        self._signal_id += 1
        self._signals.append(
            SignalRecord(
                id=self._signal_id,
                run_id=run_id,
                signal_type=signal_type,
                payload=dict(payload),
            )
        )
        return self._signal_id

    async def ack_signal(self, signal_id: int) -> None:
        for record in self._signals:
            if record.id == signal_id:
                record.acknowledged = True
                break

    async def pending_signals(self, run_id: str) -> list[SignalRecord]:
        return [
            s.model_copy(deep=True)
            for s in self._signals
            if s.run_id == run_id and not s.acknowledged
        ]
