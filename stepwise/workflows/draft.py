"""Timed, turn-based league draft."""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field

from ..context import WorkflowContext
from ..contracts import StepFailed, StepOutcome
from . import turns
from .base import Completion, Workflow

logger = logging.getLogger(__name__)


class DraftInput(BaseModel):
    draft_id: str
    league_id: str
    team_ids: List[str] = Field(min_length=1)
    total_rounds: int = Field(gt=0)
    order: turns.TurnOrder = "snake"
    seconds_per_pick: Optional[float] = None
    checkpoint_every: Optional[int] = None
    scheduled_at: Optional[datetime] = None


class MakePick(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    type: Literal["makePick"] = "makePick"
    team_id: str = Field(alias="teamId")
    player_id: str = Field(alias="playerId")


class PauseDraft(BaseModel):
    type: Literal["pauseDraft"] = "pauseDraft"


class ResumeDraft(BaseModel):
    type: Literal["resumeDraft"] = "resumeDraft"


class SkipPick(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    type: Literal["skipPick"] = "skipPick"
    team_id: str = Field(alias="teamId")


class PendingPick(BaseModel):
    team_id: str
    player_id: str


class DraftPick(BaseModel):
    round: int
    pick_in_round: int
    overall_pick: int
    team_id: str
    player_id: str
    is_auto_pick: bool = False
    auto_pick_reason: Optional[str] = None
    picked_at: datetime


class DraftState(BaseModel):
    status: Literal["pending", "in_progress", "paused", "completed", "failed"] = "pending"
    total_picks: int = 0
    completed_picks: int = 0
    current_team_id: Optional[str] = None
    current_round: Optional[int] = None
    current_pick_in_round: Optional[int] = None
    pick_deadline: Optional[datetime] = None
    pending_pick: Optional[PendingPick] = None
    skip_requested: bool = False
    last_rejection: Optional[str] = None
    checkpoints: int = 0
    failure_reason: Optional[str] = None
    picks: List[DraftPick] = Field(default_factory=list)


class DraftWorkflow(Workflow):
    """Runs picks in snake or linear order until every roster slot is filled.

    Turn state is recomputed from ``completed_picks`` alone, so the run
    continues correctly after a restart or a checkpoint.
    """

    kind = "draft"
    query_type = "getDraftState"
    input_model = DraftInput
    state_model = DraftState
    signal_types = (MakePick, PauseDraft, ResumeDraft, SkipPick)

    def initial_state(self) -> DraftState:
        state = DraftState(total_picks=len(self.input.team_ids) * self.input.total_rounds)
        return state

    @property
    def phase(self) -> str:
        return self.state.status

    def fail(self, reason: str) -> None:
        self.state.status = "failed"
        self.state.failure_reason = reason

    @property
    def seconds_per_pick(self) -> float:
        if self.input.seconds_per_pick is not None:
            return self.input.seconds_per_pick
        return self.config.draft.seconds_per_pick

    @property
    def checkpoint_every(self) -> int:
        return self.input.checkpoint_every or self.config.draft.checkpoint_every

    # ------------------------------------------------------------------
    def handle_signal(self, signal: BaseModel) -> bool:
        s = self.state
        if isinstance(signal, PauseDraft):
            if s.status != "in_progress":
                return False
            s.status = "paused"
            s.pick_deadline = None
            return True
        if isinstance(signal, ResumeDraft):
            if s.status != "paused":
                return False
            s.status = "in_progress"
            return True
        if s.status != "in_progress" or signal.team_id != s.current_team_id:
            return False
        if s.pending_pick is not None or s.skip_requested:
            return False
        if isinstance(signal, SkipPick):
            s.skip_requested = True
            return True
        if any(p.player_id == signal.player_id for p in s.picks):
            return False
        s.pending_pick = PendingPick(team_id=signal.team_id, player_id=signal.player_id)
        return True

    def _refresh_turn(self) -> None:
        s = self.state
        team_count = len(self.input.team_ids)
        if s.completed_picks >= s.total_picks:
            s.current_team_id = None
            s.current_round = None
            s.current_pick_in_round = None
            s.pick_deadline = None
            return
        idx = turns.turn_index(s.completed_picks, team_count, self.input.order)
        s.current_team_id = self.input.team_ids[idx]
        s.current_round, s.current_pick_in_round = turns.round_and_pick(
            s.completed_picks, team_count
        )

    # ------------------------------------------------------------------
    async def run(self, ctx: WorkflowContext) -> Completion:
        s = self.state
        inp = self.input
        league = self.collaborators.require("league")

        if s.status == "pending":
            await ctx.checkpoint()
            if inp.scheduled_at is not None:
                delay = (inp.scheduled_at - ctx.now()).total_seconds()
                if delay > 0:
                    await ctx.sleep(delay)
            s.status = "in_progress"
            await self.audit(
                ctx, inp.league_id, "draft_started", "draft", inp.draft_id,
                total_picks=s.total_picks,
            )

        self._refresh_turn()
        await ctx.checkpoint()
        try:
            while s.completed_picks < s.total_picks:
                await self._play_turn(ctx, league)
                if (
                    s.completed_picks < s.total_picks
                    and s.completed_picks % self.checkpoint_every == 0
                ):
                    s.checkpoints += 1
                    logger.info(
                        f"Checkpointing draft {inp.draft_id} at pick {s.completed_picks} "
                        f"for run_id={ctx.run_id}"
                    )
                    ctx.continue_as_new(self.snapshot())
        except StepFailed as exc:
            s.status = "failed"
            s.failure_reason = str(exc)
            await ctx.checkpoint()
            return Completion(status="failed", failure_reason=s.failure_reason)

        s.status = "completed"
        await ctx.checkpoint()
        await self.audit(
            ctx, inp.league_id, "draft_completed", "draft", inp.draft_id,
            total_picks=s.total_picks,
        )
        return Completion(
            status="completed",
            result={
                "draft_id": inp.draft_id,
                "completed_picks": s.completed_picks,
                "auto_picks": sum(1 for p in s.picks if p.is_auto_pick),
            },
        )

    async def _play_turn(self, ctx: WorkflowContext, league) -> None:
        s = self.state
        deadline = self._start_clock(ctx)
        await ctx.checkpoint()
        while True:
            outcome = await turns.wait_for_turn(
                ctx,
                deadline,
                acted=lambda: s.pending_pick is not None or s.skip_requested,
                paused=lambda: s.status == "paused",
            )
            if outcome == turns.RESUMED:
                deadline = self._start_clock(ctx)
                await ctx.checkpoint()
                continue

            if outcome == turns.ACTED and s.pending_pick is not None:
                pending, s.pending_pick = s.pending_pick, None
                recorded = await self._record(ctx, league, pending.player_id, None)
                if recorded.ok:
                    return
                s.last_rejection = recorded.reason
                logger.info(
                    f"Pick of {pending.player_id} by {pending.team_id} rejected for "
                    f"run_id={ctx.run_id}: {recorded.reason}"
                )
                await ctx.checkpoint()
                continue

            reason = "skipped" if outcome == turns.ACTED else "timeout"
            player_id = await ctx.run_step(
                f"auto_select:{s.completed_picks + 1}",
                league.auto_select,
                self.input.draft_id,
                s.current_team_id,
            )
            recorded = await self._record(ctx, league, player_id, reason)
            if not recorded.ok:
                raise StepFailed(recorded)
            return

    def _start_clock(self, ctx: WorkflowContext) -> float:
        seconds = self.seconds_per_pick
        if self.state.status == "paused":
            self.state.pick_deadline = None
        else:
            self.state.pick_deadline = ctx.now() + timedelta(seconds=seconds)
        return ctx.monotonic() + seconds

    async def _record(
        self, ctx: WorkflowContext, league, player_id: str, auto_reason: Optional[str]
    ) -> StepOutcome:
        s = self.state
        pick = DraftPick(
            round=s.current_round,
            pick_in_round=s.current_pick_in_round,
            overall_pick=s.completed_picks + 1,
            team_id=s.current_team_id,
            player_id=player_id,
            is_auto_pick=auto_reason is not None,
            auto_pick_reason=auto_reason,
            picked_at=ctx.now(),
        )
        outcome = await ctx.try_step(
            f"record_pick:{pick.overall_pick}:{player_id}",
            league.record_pick,
            self.input.draft_id,
            pick.model_dump(mode="json"),
        )
        if outcome.ok:
            s.picks.append(pick)
            s.completed_picks += 1
            s.pending_pick = None
            s.skip_requested = False
            s.last_rejection = None
            self._refresh_turn()
            await ctx.checkpoint()
        return outcome
