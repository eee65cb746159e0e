"""Run-scoped capabilities handed to workflow coordination code."""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime
from typing import Any, Awaitable, Callable, Optional

from .config import StepConfig
from .contracts import (
    ContinueAsNew,
    HistoryEvent,
    RetryPolicy,
    StepFailed,
    StepOutcome,
    StepSpec,
    WorkflowRun,
    utcnow,
)
from .execute import RetryController

logger = logging.getLogger(__name__)

PersistFn = Callable[[Optional[str]], Awaitable[None]]


class WorkflowContext:
    """Narrow interface between one run and the engine driving it.

    Workflows never reference the engine directly: they invoke steps, wait on
    timers and conditions, and persist through this object.
    """

    def __init__(
        self,
        run: WorkflowRun,
        controller: RetryController,
        step_defaults: StepConfig,
        persist: PersistFn,
    ) -> None:
        self._run = run
        self._controller = controller
        self._defaults = step_defaults
        self._persist = persist
        self._condition = asyncio.Condition()

    @property
    def run_id(self) -> str:
        return self._run.run_id

    @property
    def reschedules(self) -> int:
        return self._run.reschedules

    @property
    def continuations(self) -> int:
        return self._run.continuations

    def now(self) -> datetime:
        return utcnow()

    def monotonic(self) -> float:
        return asyncio.get_running_loop().time()

    def record(self, event_kind: str, name: str, **detail: Any) -> None:
        """Append an event to the run's execution history."""
        self._run.history.append(HistoryEvent(kind=event_kind, name=name, detail=detail))

    # ------------------------------------------------------------------
    # Steps
    def step_spec(
        self,
        name: str,
        timeout: Optional[float] = None,
        retry_policy: Optional[RetryPolicy] = None,
        memoize: bool = True,
    ) -> StepSpec:
        return StepSpec(
            name=name,
            timeout=timeout if timeout is not None else self._defaults.timeout,
            retry_policy=retry_policy or self._defaults.retry,
            memoize=memoize,
        )

    async def try_step(
        self,
        name: str,
        fn: Callable[..., Any],
        *args: Any,
        timeout: Optional[float] = None,
        retry_policy: Optional[RetryPolicy] = None,
        memoize: bool = True,
        **kwargs: Any,
    ) -> StepOutcome:
        """Execute a step and return its classified outcome."""
        spec = self.step_spec(name, timeout, retry_policy, memoize)
        outcome = await self._controller.execute(self.run_id, spec, fn, *args, **kwargs)
        self.record(
            "step",
            name,
            kind=outcome.kind,
            attempts=outcome.attempts,
            replayed=outcome.replayed,
        )
        return outcome

    async def run_step(self, name: str, fn: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
        """Execute a step and return its result, raising :class:`StepFailed` on failure."""
        outcome = await self.try_step(name, fn, *args, **kwargs)
        if not outcome.ok:
            raise StepFailed(outcome)
        return outcome.result

    async def fire_and_forget(self, name: str, fn: Callable[..., Any], *args: Any, **kwargs: Any) -> None:
        """Execute a side-effect step whose failure never affects the run."""
        outcome = await self.try_step(name, fn, *args, **kwargs)
        if not outcome.ok:
            logger.warning(
                f"Side effect {name} failed for run_id={self.run_id}: {outcome.reason}"
            )

    # ------------------------------------------------------------------
    # Suspension
    async def checkpoint(self) -> None:
        """Persist the run's current state."""
        await self._persist(None)

    async def sleep(self, seconds: float) -> None:
        """Suspend the run for ``seconds``."""
        self.record("timer", "sleep", seconds=seconds)
        await self._persist("suspended")
        try:
            await asyncio.sleep(max(seconds, 0))
        finally:
            self._run.status = "running"

    async def wait_condition(
        self, predicate: Callable[[], bool], timeout: Optional[float] = None
    ) -> bool:
        """Suspend until ``predicate`` holds or ``timeout`` elapses.

        Returns ``True`` when the predicate was satisfied and ``False`` when
        the deadline fired. When both happen together the deadline wins.
        """
        loop = asyncio.get_running_loop()
        deadline = None if timeout is None else loop.time() + max(timeout, 0)
        if deadline is not None and timeout <= 0:
            return False

        await self._persist("suspended")
        try:
            async with self._condition:
                try:
                    await asyncio.wait_for(self._condition.wait_for(predicate), timeout)
                except asyncio.TimeoutError:
                    self.record("timer", "deadline", timeout=timeout)
                    return False
        finally:
            self._run.status = "running"

        if deadline is not None and loop.time() >= deadline:
            self.record("timer", "deadline", timeout=timeout)
            return False
        return True

    async def notify(self) -> None:
        """Wake waiters so they re-evaluate their predicates."""
        async with self._condition:
            self._condition.notify_all()

    def continue_as_new(self, state: dict) -> None:
        """Restart the run with a fresh history, carrying ``state`` forward."""
        raise ContinueAsNew(state)
