"""Prediction market resolution against an external data feed."""

from __future__ import annotations

import logging
from typing import Dict, List, Literal, Optional

from pydantic import BaseModel, Field

from ..context import WorkflowContext
from ..contracts import DataNotAvailable, StepFailed
from .base import Completion, Workflow

logger = logging.getLogger(__name__)

Operator = Literal["gt", "gte", "lt", "lte", "eq"]

_TINY = 1e-12


def evaluate_condition(value: float, operator: Operator, target: float, tolerance: float) -> bool:
    """Compare an observed ``value`` against ``target``.

    ``eq`` is a relative comparison: ``|value - target| <= tolerance * max(|target|, tiny)``.
    """
    if operator == "gt":
        return value > target
    if operator == "gte":
        return value >= target
    if operator == "lt":
        return value < target
    if operator == "lte":
        return value <= target
    if operator == "eq":
        return abs(value - target) <= tolerance * max(abs(target), _TINY)
    raise ValueError(f"unknown operator {operator}")


def settlement_payout(side: str, quantity: float, outcome: bool) -> float:
    winning_side = "yes" if outcome else "no"
    return float(quantity) if side == winning_side else 0.0


class ResolutionInput(BaseModel):
    market_id: str
    data_key: str
    operator: Operator
    target_value: float
    retry_delay_seconds: Optional[float] = None


class Settlement(BaseModel):
    position_id: str
    user_id: str
    side: str
    quantity: float
    payout: float


class ResolutionState(BaseModel):
    phase: Literal["fetching_data", "evaluating", "settling", "resolved", "failed"] = (
        "fetching_data"
    )
    observed_value: Optional[float] = None
    outcome: Optional[bool] = None
    settlements: List[Settlement] = Field(default_factory=list)
    total_payout: float = 0.0
    reschedules: int = 0
    failure_reason: Optional[str] = None


class ResolutionWorkflow(Workflow):
    """Fetch, evaluate, settle.

    When the data feed has nothing yet the run waits ``retry_delay_seconds``
    and asks the engine to start it over from the top.
    """

    kind = "resolution"
    query_type = "getResolutionStatus"
    input_model = ResolutionInput
    state_model = ResolutionState

    @property
    def retry_delay(self) -> float:
        if self.input.retry_delay_seconds is not None:
            return self.input.retry_delay_seconds
        return self.config.resolution.retry_delay_seconds

    async def run(self, ctx: WorkflowContext) -> Completion:
        s = self.state
        inp = self.input
        feed = self.collaborators.require("market_data")
        positions = self.collaborators.require("positions")
        s.reschedules = ctx.reschedules

        try:
            if s.outcome is None:
                await self._observe(ctx, feed)
            else:
                logger.info(
                    f"Market {inp.market_id} already evaluated to {s.outcome}; "
                    f"resuming settlement for run_id={ctx.run_id}"
                )

            await self.enter(ctx, "settling")
            open_positions = await ctx.run_step(
                "open_positions", positions.open_positions, inp.market_id
            )
            await self._settle(ctx, positions, open_positions)
            await ctx.run_step(
                "close_market", positions.close_market, inp.market_id, s.outcome
            )
        except StepFailed as exc:
            s.failure_reason = str(exc)
            await self.enter(ctx, "failed")
            return Completion(status="failed", failure_reason=s.failure_reason)

        await self.enter(ctx, "resolved")
        return Completion(
            status="completed",
            result={
                "market_id": inp.market_id,
                "outcome": s.outcome,
                "observed_value": s.observed_value,
                "total_payout": s.total_payout,
            },
        )

    async def _observe(self, ctx: WorkflowContext, feed) -> None:
        """Fetch the observed value and fix the market's outcome."""
        s = self.state
        inp = self.input
        await self.enter(ctx, "fetching_data")
        value = await ctx.run_step(
            "fetch_value", feed.fetch_value, inp.data_key, memoize=False
        )
        if value is None:
            logger.info(
                f"No data for {inp.data_key} yet; retrying market {inp.market_id} "
                f"in {self.retry_delay}s for run_id={ctx.run_id}"
            )
            await ctx.sleep(self.retry_delay)
            raise DataNotAvailable(f"no value published for {inp.data_key}")
        s.observed_value = float(value)

        await self.enter(ctx, "evaluating")
        s.outcome = evaluate_condition(
            s.observed_value,
            inp.operator,
            inp.target_value,
            self.config.resolution.eq_tolerance,
        )

    async def _settle(self, ctx: WorkflowContext, positions, open_positions: List[Dict]) -> None:
        s = self.state
        settled = {item.position_id for item in s.settlements}
        for position in open_positions:
            position_id = position["position_id"]
            if position_id in settled:
                continue
            payout = settlement_payout(position["side"], position["quantity"], s.outcome)
            await ctx.run_step(
                f"settle_position:{position_id}",
                positions.settle_position,
                position_id,
                payout,
            )
            s.settlements.append(
                Settlement(
                    position_id=position_id,
                    user_id=position["user_id"],
                    side=position["side"],
                    quantity=position["quantity"],
                    payout=payout,
                )
            )
            s.total_payout += payout
            await ctx.checkpoint()
