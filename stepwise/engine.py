"""Workflow engine: owns runs, drives them, routes signals and queries."""

from __future__ import annotations

import asyncio
import functools
import logging
import uuid
from typing import Any, Dict, Iterable, List, Optional, Type

from .collaborators import Collaborators
from .config import StepwiseConfig, load_config
from .constants import EVENTS_TOPIC, SIGNALS_TOPIC
from .context import WorkflowContext
from .contracts import (
    ContinueAsNew,
    DataNotAvailable,
    HistoryEvent,
    RunResult,
    UnknownQuery,
    WorkflowMessage,
    WorkflowNotFound,
    WorkflowRun,
)
from .execute import RetryController, StepExecutor
from .persistence import WorkflowRepository, get_repository
from .transports import BaseTransport
from .workflows import BUILTIN_WORKFLOWS, Completion, Workflow

logger = logging.getLogger(__name__)


class WorkflowRegistry:
    """Maps workflow kinds to the classes that implement them."""

    def __init__(self, workflows: Iterable[Type[Workflow]] = ()) -> None:
        self._workflows: Dict[str, Type[Workflow]] = {}
        for workflow_cls in workflows:
            self.register(workflow_cls)

    @classmethod
    def default(cls) -> "WorkflowRegistry":
        """Registry holding every built-in protocol."""
        return cls(BUILTIN_WORKFLOWS)

    def register(self, workflow_cls: Type[Workflow]) -> Type[Workflow]:
        if workflow_cls.kind in self._workflows:
            raise ValueError(f"Workflow kind {workflow_cls.kind!r} already registered")
        self._workflows[workflow_cls.kind] = workflow_cls
        return workflow_cls

    def get(self, kind: str) -> Type[Workflow]:
        try:
            return self._workflows[kind]
        except KeyError:
            raise ValueError(f"Unknown workflow kind: {kind}") from None

    def kinds(self) -> List[str]:
        return sorted(self._workflows)


class WorkflowEngine:
    """Runs workflows durably against a repository.

    Every suspension point persists the run, step results are memoized by
    idempotency key and unacknowledged signals are replayed, so a new engine
    calling :meth:`recover` picks up where a crashed one stopped.
    """

    def __init__(
        self,
        registry: WorkflowRegistry,
        collaborators: Collaborators,
        repository: WorkflowRepository | None = None,
        transport: BaseTransport | None = None,
        config: StepwiseConfig | None = None,
        events_topic: str = EVENTS_TOPIC,
    ) -> None:
        self.registry = registry
        self.collaborators = collaborators
        self.config = config or load_config()
        self.repository = repository or get_repository(config=self.config)
        self.transport = transport
        self.events_topic = events_topic
        self._controller = RetryController(StepExecutor(self.repository))
        self._runs: Dict[str, WorkflowRun] = {}
        self._workflows: Dict[str, Workflow] = {}
        self._contexts: Dict[str, WorkflowContext] = {}
        self._tasks: Dict[str, asyncio.Task] = {}

    # ------------------------------------------------------------------
    # Lifecycle
    async def start(
        self, kind: str, input: Dict[str, Any] | Any, run_id: Optional[str] = None
    ) -> str:
        """Create and launch a run. Returns its id."""
        workflow_cls = self.registry.get(kind)
        workflow = workflow_cls(input, self.collaborators, self.config)
        run_id = run_id or f"{kind}_{uuid.uuid4().hex}"
        if run_id in self._runs:
            raise ValueError(f"Run {run_id} already exists")

        run = WorkflowRun(
            run_id=run_id,
            kind=kind,
            phase=workflow.phase,
            input=workflow.input.model_dump(mode="json"),
            state=workflow.snapshot(),
        )
        await self.repository.create_run(run)
        self._launch(run, workflow)
        logger.info(f"Started {kind} workflow run_id={run_id}")
        return run_id

    async def recover(self) -> List[str]:
        """Resume every persisted run that has not reached a terminal status."""
        resumed = []
        for run in await self.repository.list_runs(statuses=("running", "suspended")):
            task = self._tasks.get(run.run_id)
            if task is not None and not task.done():
                continue
            workflow = self.registry.get(run.kind)(
                run.input, self.collaborators, self.config, state=run.state
            )
            self._register(run, workflow)
            for record in await self.repository.pending_signals(run.run_id):
                self._apply_signal(run, record.signal_type, record.payload)
                await self.repository.ack_signal(record.id)
            await self._persist(run, "running")
            self._tasks[run.run_id] = asyncio.create_task(self._drive(run))
            logger.info(f"Recovered {run.kind} workflow run_id={run.run_id} in phase {run.phase}")
            resumed.append(run.run_id)
        return resumed

    async def result(self, run_id: str, timeout: Optional[float] = None) -> RunResult:
        """Wait for a run to finish and return its classified outcome."""
        task = self._tasks.get(run_id)
        if task is not None:
            return await asyncio.wait_for(asyncio.shield(task), timeout)

        run = await self.repository.get_run(run_id)
        if run is None:
            raise WorkflowNotFound(f"Run {run_id} not found")
        if not run.is_terminal():
            raise WorkflowNotFound(f"Run {run_id} is not active in this engine; call recover()")
        return self._run_result(run)

    async def shutdown(self) -> None:
        """Stop every live run without marking it terminal."""
        tasks = [task for task in self._tasks.values() if not task.done()]
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._tasks.clear()
        self._runs.clear()
        self._workflows.clear()
        self._contexts.clear()
        logger.info(f"Engine shut down with {len(tasks)} live run(s)")

    # ------------------------------------------------------------------
    # Signals and queries
    async def signal(
        self, run_id: str, signal_type: str, payload: Optional[Dict[str, Any]] = None
    ) -> bool:
        """Deliver a signal. Returns ``True`` when it changed the run's state.

        Signals for runs persisted but not live in this engine are stored in
        the inbox and applied on :meth:`recover`.
        """
        payload = payload or {}
        run = self._runs.get(run_id)
        if run is None:
            stored = await self.repository.get_run(run_id)
            if stored is None or stored.is_terminal():
                logger.warning(f"Ignoring signal {signal_type} for unknown or finished run_id={run_id}")
                return False
            await self.repository.append_signal(run_id, signal_type, payload)
            logger.info(f"Queued signal {signal_type} for inactive run_id={run_id}")
            return True
        if run.is_terminal():
            logger.info(f"Ignoring signal {signal_type} for finished run_id={run_id}")
            return False

        signal_id = await self.repository.append_signal(run_id, signal_type, payload)
        applied = self._apply_signal(run, signal_type, payload)
        if applied:
            await self._persist(run)
        await self.repository.ack_signal(signal_id)
        if applied:
            await self._contexts[run_id].notify()
        return applied

    def query(self, run_id: str, query_type: str) -> Dict[str, Any]:
        """Return a snapshot of a live or finished run's state."""
        workflow = self._workflows.get(run_id)
        if workflow is None:
            raise WorkflowNotFound(f"Run {run_id} not found")
        return workflow.query(query_type)

    async def load_query(self, run_id: str, query_type: str) -> Dict[str, Any]:
        """Answer a query from persisted state, for runs not held in memory."""
        if run_id in self._workflows:
            return self.query(run_id, query_type)
        run = await self.repository.get_run(run_id)
        if run is None:
            raise WorkflowNotFound(f"Run {run_id} not found")
        workflow_cls = self.registry.get(run.kind)
        if query_type != workflow_cls.query_type:
            raise UnknownQuery(f"{run.kind} runs do not answer {query_type}")
        return run.state

    def _apply_signal(self, run: WorkflowRun, signal_type: str, payload: Dict[str, Any]) -> bool:
        if run.is_terminal():
            return False
        workflow = self._workflows[run.run_id]
        signal = workflow.parse_signal(signal_type, payload)
        if signal is None:
            logger.info(f"Ignoring unknown signal {signal_type} for run_id={run.run_id}")
            return False
        applied = workflow.handle_signal(signal)
        self._contexts[run.run_id].record("signal", signal_type, applied=applied)
        if not applied:
            logger.info(f"Signal {signal_type} not applicable to run_id={run.run_id} in phase {workflow.phase}")
        return applied

    # ------------------------------------------------------------------
    # Driving
    def _register(self, run: WorkflowRun, workflow: Workflow) -> None:
        self._runs[run.run_id] = run
        self._workflows[run.run_id] = workflow
        self._contexts[run.run_id] = WorkflowContext(
            run,
            self._controller,
            self.config.steps,
            functools.partial(self._persist, run),
        )

    def _launch(self, run: WorkflowRun, workflow: Workflow) -> None:
        self._register(run, workflow)
        self._tasks[run.run_id] = asyncio.create_task(self._drive(run))

    async def _drive(self, run: WorkflowRun) -> RunResult:
        while True:
            workflow = self._workflows[run.run_id]
            ctx = self._contexts[run.run_id]
            try:
                completion = await workflow.run(ctx)
            except ContinueAsNew as e:
                await self._continue_as_new(run, e.state)
                continue
            except DataNotAvailable as e:
                limit = self.config.resolution.max_reschedules
                if limit is None or run.reschedules < limit:
                    await self._reschedule(run, str(e))
                    continue
                reason = f"gave up after {run.reschedules} reschedules: {e}"
                workflow.fail(reason)
                completion = Completion(status="failed", failure_reason=reason)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.exception(f"Workflow {run.kind} crashed for run_id={run.run_id}")
                reason = str(e) or type(e).__name__
                workflow.fail(reason)
                completion = Completion(status="failed", failure_reason=reason)
            return await self._finish(run, completion)

    async def _continue_as_new(self, run: WorkflowRun, state: Dict[str, Any]) -> None:
        # swap in the new instance before awaiting so signals land on it
        workflow = self.registry.get(run.kind)(
            run.input, self.collaborators, self.config, state=state
        )
        run.continuations += 1
        run.history = [
            HistoryEvent(kind="continuation", name="continue_as_new", detail={"count": run.continuations})
        ]
        self._register(run, workflow)
        await self.repository.truncate_history(run.run_id)
        await self._persist(run)
        logger.info(f"Continued run_id={run.run_id} as new (continuation {run.continuations})")

    async def _reschedule(self, run: WorkflowRun, reason: str) -> None:
        workflow = self.registry.get(run.kind)(run.input, self.collaborators, self.config)
        run.reschedules += 1
        self._register(run, workflow)
        self._contexts[run.run_id].record("reschedule", "data_not_available", reason=reason, count=run.reschedules)
        await self._persist(run)
        logger.info(f"Rescheduled run_id={run.run_id} (attempt {run.reschedules}): {reason}")

    async def _persist(self, run: WorkflowRun, status: Optional[str] = None) -> None:
        workflow = self._workflows[run.run_id]
        previous = run.phase
        run.state = workflow.snapshot()
        run.phase = workflow.phase
        if status is not None:
            run.status = status
        await self.repository.save_run(run)
        if run.phase != previous:
            await self._emit(run, "phase_changed", {"previous_phase": previous})

    async def _finish(self, run: WorkflowRun, completion: Completion) -> RunResult:
        run.result = completion.model_dump(mode="json")
        await self._persist(run, completion.status)
        await self._emit(run, "run_finished", {"result": run.result})
        level = logging.INFO if completion.status == "completed" else logging.WARNING
        logger.log(
            level,
            f"Workflow {run.kind} finished {completion.status} for run_id={run.run_id}"
            + (f": {completion.failure_reason}" if completion.failure_reason else ""),
        )
        return self._run_result(run)

    async def _emit(self, run: WorkflowRun, name: str, payload: Dict[str, Any]) -> None:
        if self.transport is None:
            return
        message = WorkflowMessage(
            run_id=run.run_id,
            message_type="event",
            name=name,
            payload={"kind": run.kind, "phase": run.phase, "status": run.status, **payload},
        )
        try:
            await self.transport.publish(self.events_topic, message)
        except Exception as e:
            logger.warning(f"Failed to publish {name} for run_id={run.run_id}: {e}")

    @staticmethod
    def _run_result(run: WorkflowRun) -> RunResult:
        result = run.result or {}
        return RunResult(
            run_id=run.run_id,
            kind=run.kind,
            status=run.status,
            phase=run.phase,
            result=result.get("result") or {},
            failure_reason=result.get("failure_reason"),
            compensated=result.get("compensated"),
            unresolved_compensations=result.get("unresolved_compensations") or [],
        )


class SignalRelay:
    """Forwards signal envelopes from a transport topic to an engine."""

    def __init__(
        self, engine: WorkflowEngine, transport: BaseTransport, topic: str = SIGNALS_TOPIC
    ) -> None:
        self._engine = engine
        self._transport = transport
        self._topic = topic

    async def start(self, lifespan: Optional[float] = None) -> int:
        """Relay signals until ``lifespan`` elapses. Returns how many were forwarded."""
        forwarded = 0
        async for raw_message, message in self._transport.subscribe(self._topic, lifespan=lifespan):
            if message.message_type != "signal":
                logger.warning(f"Dropping {message.message_type} message {message.message_id} on {self._topic}")
                await self._transport.ack(raw_message)
                continue
            try:
                await self._engine.signal(message.run_id, message.name, message.payload)
            except Exception:
                logger.exception(f"Failed to deliver {message.name} to run_id={message.run_id}")
                await self._transport.nack(raw_message, requeue=False)
                continue
            await self._transport.ack(raw_message)
            forwarded += 1
        return forwarded


async def publish_signal(
    transport: BaseTransport,
    run_id: str,
    signal_type: str,
    payload: Optional[Dict[str, Any]] = None,
    topic: str = SIGNALS_TOPIC,
) -> WorkflowMessage:
    """Send a signal envelope to a remote engine's relay."""
    message = WorkflowMessage(run_id=run_id, name=signal_type, payload=payload or {})
    await transport.publish(topic, message)
    return message
