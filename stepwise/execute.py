"""Step execution and retry control for stepwise runs."""

from __future__ import annotations

import asyncio
import inspect
import logging
from typing import Any, Callable

from .contracts import ActivityFailed, RetryPolicy, StepOutcome, StepSpec
from .persistence import InMemoryWorkflowRepository, WorkflowRepository
from .utils import retry

logger = logging.getLogger(__name__)


def _accepts_idempotency_key(fn: Callable[..., Any]) -> bool:
    try:
        params = inspect.signature(fn).parameters
    except (TypeError, ValueError):
        return False
    return "idempotency_key" in params or any(
        p.kind is inspect.Parameter.VAR_KEYWORD for p in params.values()
    )


def classify_failure(exc: BaseException, policy: RetryPolicy) -> bool:
    """Return ``True`` when ``exc`` should be retried under ``policy``."""
    if isinstance(exc, ActivityFailed):
        return exc.retryable
    if type(exc).__name__ in policy.non_retryable_errors:
        return False
    return True


class StepExecutor:
    """Invokes a single step attempt and classifies its outcome."""

    def __init__(self, repository: WorkflowRepository | None = None) -> None:
        self._repository = repository or InMemoryWorkflowRepository()

    @property
    def repository(self) -> WorkflowRepository:
        return self._repository

    async def attempt(
        self,
        run_id: str,
        step: StepSpec,
        attempt: int,
        fn: Callable[..., Any],
        *args: Any,
        **kwargs: Any,
    ) -> StepOutcome:
        """Run one attempt of ``step`` with its timeout applied."""
        key = step.idempotency_key(run_id)
        if _accepts_idempotency_key(fn):
            kwargs.setdefault("idempotency_key", key)

        logger.info(f"Starting step {step.name} attempt {attempt} for run_id={run_id}")
        await self._repository.mark_step_started(run_id, step.name, key, attempt)

        async def invoke() -> Any:
            result = fn(*args, **kwargs)
            if inspect.isawaitable(result):
                result = await result
            return result

        try:
            result = await asyncio.wait_for(invoke(), timeout=step.timeout)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            retryable = classify_failure(e, step.retry_policy)
            if isinstance(e, asyncio.TimeoutError):
                reason = f"step {step.name} timed out after {step.timeout}s"
            else:
                reason = str(e) or type(e).__name__
            kind = "retryable_failure" if retryable else "terminal_failure"
            await self._repository.mark_step_completed(
                key, status=kind, output={"error": reason}, attempt=attempt
            )
            return StepOutcome(step_name=step.name, kind=kind, reason=reason, attempts=attempt)

        await self._repository.mark_step_completed(
            key, status="completed", output={"result": result}, attempt=attempt
        )
        return StepOutcome(step_name=step.name, kind="success", result=result, attempts=attempt)


class RetryController:
    """Drives a :class:`StepExecutor` with exponential backoff.

    Successful results are looked up by idempotency key first, so a step that
    already completed for a run is never invoked again after a restart.
    """

    def __init__(self, executor: StepExecutor) -> None:
        self._executor = executor

    async def execute(
        self, run_id: str, step: StepSpec, fn: Callable[..., Any], *args: Any, **kwargs: Any
    ) -> StepOutcome:
        key = step.idempotency_key(run_id)
        if step.memoize:
            recorded = await self._executor.repository.get_step_result(key)
            if recorded is not None:
                logger.info(f"Replaying recorded result of step {step.name} for run_id={run_id}")
                return StepOutcome(
                    step_name=step.name,
                    kind="success",
                    result=(recorded.output or {}).get("result"),
                    attempts=recorded.attempt,
                    replayed=True,
                )

        policy = step.retry_policy
        attempt = 0
        while True:
            attempt += 1
            outcome = await self._executor.attempt(run_id, step, attempt, fn, *args, **kwargs)
            if outcome.kind == "success":
                return outcome
            if outcome.kind == "terminal_failure":
                logger.error(
                    f"Step {step.name} failed terminally for run_id={run_id}: {outcome.reason}"
                )
                return outcome
            if attempt >= policy.maximum_attempts:
                logger.error(
                    f"Step {step.name} exhausted {attempt} attempts for run_id={run_id}: "
                    f"{outcome.reason}"
                )
                return outcome.model_copy(update={"kind": "terminal_failure"})
            logger.warning(
                f"Step {step.name} attempt {attempt} failed for run_id={run_id}: "
                f"{outcome.reason}; retrying"
            )
            await retry.schedule_retry(attempt, policy)
