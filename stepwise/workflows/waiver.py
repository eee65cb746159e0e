"""Single-shot waiver batch processing."""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Dict, Iterable, List, Literal, Optional

from pydantic import BaseModel, Field

from ..context import WorkflowContext
from ..contracts import StepFailed
from .base import Completion, Workflow

logger = logging.getLogger(__name__)

WaiverType = Literal["faab", "rolling", "reverse_standings"]

ALREADY_CLAIMED = "already claimed by higher priority"
NOT_AVAILABLE = "player no longer available"
ROSTER_FULL = "roster full"
INSUFFICIENT_BUDGET = "insufficient FAAB budget"


class WaiverClaim(BaseModel):
    claim_id: str
    team_id: str
    add_player_id: str
    drop_player_id: Optional[str] = None
    faab_bid: float = 0.0
    priority: int = 0
    submitted_at: datetime


class ClaimResult(BaseModel):
    claim_id: str
    team_id: str
    add_player_id: str
    succeeded: bool
    reason: Optional[str] = None


class WaiverInput(BaseModel):
    league_id: str
    waiver_type: WaiverType = "faab"


class WaiverState(BaseModel):
    phase: Literal["pending", "processing", "complete", "failed"] = "pending"
    claims_total: int = 0
    processed: int = 0
    results: List[ClaimResult] = Field(default_factory=list)
    new_priorities: Optional[Dict[str, int]] = None
    failure_reason: Optional[str] = None


def sort_claims(claims: Iterable[WaiverClaim], waiver_type: WaiverType) -> List[WaiverClaim]:
    """Order claims by league policy, highest precedence first."""
    if waiver_type == "faab":
        return sorted(claims, key=lambda c: (-c.faab_bid, c.submitted_at))
    return sorted(claims, key=lambda c: (c.priority, c.submitted_at))


def rotate_priorities(priorities: Dict[str, int], winners: Iterable[str]) -> Dict[str, int]:
    """Move each successful team to the back of the order, in processing order."""
    order = sorted(priorities, key=lambda team: priorities[team])
    for team in winners:
        if team in order:
            order.remove(team)
            order.append(team)
    return {team: i + 1 for i, team in enumerate(order)}


class WaiverWorkflow(Workflow):
    kind = "waiver"
    query_type = "getWaiverState"
    input_model = WaiverInput
    state_model = WaiverState

    async def run(self, ctx: WorkflowContext) -> Completion:
        s = self.state
        inp = self.input
        league = self.collaborators.require("league")

        await self.enter(ctx, "processing")
        try:
            raw_claims = await ctx.run_step(
                "fetch_pending_claims", league.pending_claims, inp.league_id
            )
            claims = sort_claims(
                (WaiverClaim.model_validate(c) for c in raw_claims), inp.waiver_type
            )
            s.claims_total = len(claims)
            done = {r.claim_id for r in s.results}
            claimed = {r.add_player_id for r in s.results if r.succeeded}

            for claim in claims:
                if claim.claim_id in done:
                    continue
                reason = await self._check(ctx, league, claim, claimed)
                if reason is None:
                    outcome = await ctx.try_step(
                        f"execute_claim:{claim.claim_id}",
                        league.execute_claim,
                        inp.league_id,
                        claim.model_dump(mode="json"),
                    )
                    reason = None if outcome.ok else outcome.reason
                if reason is None:
                    claimed.add(claim.add_player_id)
                else:
                    logger.info(f"Waiver claim {claim.claim_id} failed: {reason}")
                s.results.append(
                    ClaimResult(
                        claim_id=claim.claim_id,
                        team_id=claim.team_id,
                        add_player_id=claim.add_player_id,
                        succeeded=reason is None,
                        reason=reason,
                    )
                )
                s.processed += 1
                await ctx.checkpoint()

            if inp.waiver_type != "faab":
                await self._update_priorities(ctx, league)
        except StepFailed as exc:
            s.failure_reason = str(exc)
            await self.enter(ctx, "failed")
            return Completion(status="failed", failure_reason=s.failure_reason)

        await self.enter(ctx, "complete")
        succeeded = [r.claim_id for r in s.results if r.succeeded]
        return Completion(
            status="completed",
            result={
                "processed": s.processed,
                "succeeded": succeeded,
                "failed": [r.claim_id for r in s.results if not r.succeeded],
            },
        )

    async def _check(
        self, ctx: WorkflowContext, league, claim: WaiverClaim, claimed: set
    ) -> Optional[str]:
        league_id = self.input.league_id
        if claim.add_player_id in claimed:
            return ALREADY_CLAIMED
        available = await ctx.run_step(
            f"check_available:{claim.claim_id}",
            league.is_player_available,
            league_id,
            claim.add_player_id,
        )
        if not available:
            return NOT_AVAILABLE
        room = await ctx.run_step(
            f"check_roster:{claim.claim_id}",
            league.has_roster_room,
            league_id,
            claim.team_id,
            claim.drop_player_id,
        )
        if not room:
            return ROSTER_FULL
        if self.input.waiver_type == "faab":
            remaining = await ctx.run_step(
                f"check_budget:{claim.claim_id}",
                league.faab_remaining,
                league_id,
                claim.team_id,
            )
            if claim.faab_bid > remaining:
                return INSUFFICIENT_BUDGET
        return None

    async def _update_priorities(self, ctx: WorkflowContext, league) -> None:
        s = self.state
        current = await ctx.run_step(
            "get_waiver_priorities", league.waiver_priorities, self.input.league_id
        )
        winners = [r.team_id for r in s.results if r.succeeded]
        s.new_priorities = rotate_priorities(current, winners)
        await ctx.run_step(
            "update_waiver_priorities",
            league.update_waiver_priorities,
            self.input.league_id,
            s.new_priorities,
        )
