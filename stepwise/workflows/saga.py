"""Forward steps with compensations undone in reverse order."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Tuple

from ..contracts import RetryPolicy
from ..context import WorkflowContext

logger = logging.getLogger(__name__)


class InvariantViolation(Exception):
    """A numeric safety invariant of the saga no longer holds."""


class SagaCancelled(Exception):
    """The caller cancelled the saga at a cancellation checkpoint."""


@dataclass
class Compensation:
    name: str
    fn: Callable[..., Any]
    args: Tuple[Any, ...] = ()
    kwargs: Dict[str, Any] = field(default_factory=dict)


class Saga:
    """Tracks compensations registered by completed forward steps.

    Once :meth:`point_of_no_return` is called the registered compensations
    are discarded: value has moved and only forward remediation is valid.
    """

    def __init__(self, ctx: WorkflowContext, retry_policy: Optional[RetryPolicy] = None) -> None:
        self._ctx = ctx
        self._retry_policy = retry_policy
        self._compensations: List[Compensation] = []
        self.committed = False

    @property
    def pending(self) -> List[str]:
        return [c.name for c in self._compensations]

    def add_compensation(self, name: str, fn: Callable[..., Any], *args: Any, **kwargs: Any) -> None:
        if self.committed:
            raise RuntimeError("cannot register compensations past the point of no return")
        if name in self.pending:
            return
        self._compensations.append(Compensation(name, fn, args, kwargs))

    def point_of_no_return(self) -> None:
        self._compensations.clear()
        self.committed = True

    async def compensate(self) -> Tuple[List[str], List[str]]:
        """Run compensations newest first.

        Returns the names that succeeded and the names left unresolved after
        their own retries were exhausted.
        """
        done: List[str] = []
        unresolved: List[str] = []
        while self._compensations:
            comp = self._compensations.pop()
            outcome = await self._ctx.try_step(
                f"compensate:{comp.name}",
                comp.fn,
                *comp.args,
                retry_policy=self._retry_policy,
                **comp.kwargs,
            )
            if outcome.ok:
                logger.info(f"Compensation {comp.name} succeeded for run_id={self._ctx.run_id}")
                done.append(comp.name)
            else:
                logger.error(
                    f"Compensation {comp.name} unresolved for run_id={self._ctx.run_id}: "
                    f"{outcome.reason}"
                )
                unresolved.append(comp.name)
        return done, unresolved
