"""Fractional-share purchase saga."""

from __future__ import annotations

import logging
import math
import uuid
from typing import List, Literal, Optional

from pydantic import BaseModel, Field

from ..context import WorkflowContext
from ..contracts import Rejection, StepFailed
from .base import Completion, Workflow
from .saga import InvariantViolation, Saga, SagaCancelled

logger = logging.getLogger(__name__)

PurchasePhase = Literal[
    "validating",
    "verifying_eligibility",
    "reserving_resource",
    "holding_funds",
    "executing",
    "transferring_ownership",
    "finalizing",
    "completed",
    "rejected",
    "failed",
    "cancelled",
]

# Terminal step failures here mean nothing was reserved yet.
REJECTING_PHASES = frozenset({"validating", "verifying_eligibility"})


class PurchaseInput(BaseModel):
    listing_id: str
    buyer_id: str
    shares: int


class CancelPurchase(BaseModel):
    type: Literal["cancelPurchase"] = "cancelPurchase"


class PurchaseState(BaseModel):
    purchase_id: str = Field(default_factory=lambda: f"purchase_{uuid.uuid4()}")
    phase: PurchasePhase = "validating"
    seller_id: Optional[str] = None
    price_per_share: Optional[float] = None
    total_cost: Optional[float] = None
    reservation_id: Optional[str] = None
    reserved_shares: int = 0
    hold_id: Optional[str] = None
    held_funds: float = 0.0
    past_point_of_no_return: bool = False
    cancel_requested: bool = False
    cancel_refused: bool = False
    completed_steps: List[str] = Field(default_factory=list)
    failure_reason: Optional[str] = None
    compensated: Optional[bool] = None
    unresolved_compensations: List[str] = Field(default_factory=list)
    remediation_required: bool = False


class PurchaseWorkflow(Workflow):
    """Reserve shares, hold funds, then move value in one irreversible step."""

    kind = "purchase"
    query_type = "getPurchaseStatus"
    input_model = PurchaseInput
    state_model = PurchaseState
    signal_types = (CancelPurchase,)

    def handle_signal(self, signal: BaseModel) -> bool:
        s = self.state
        if s.phase in ("completed", "rejected", "failed", "cancelled"):
            return False
        if s.past_point_of_no_return or s.phase in ("executing", "transferring_ownership", "finalizing"):
            if s.cancel_refused:
                return False
            logger.info(f"Refusing cancellation of {s.purchase_id}: past the point of no return")
            s.cancel_refused = True
            return True
        if s.cancel_requested:
            return False
        s.cancel_requested = True
        return True

    def _cancellation_checkpoint(self) -> None:
        if self.state.cancel_requested:
            raise SagaCancelled("Purchase cancelled by user")

    def _step_done(self, phase: str) -> None:
        if phase not in self.state.completed_steps:
            self.state.completed_steps.append(phase)

    async def run(self, ctx: WorkflowContext) -> Completion:
        s = self.state
        inp = self.input
        inventory = self.collaborators.require("inventory")
        balances = self.collaborators.require("balances")
        eligibility = self.collaborators.require("eligibility")
        ownership = self.collaborators.require("ownership")
        saga = Saga(ctx)
        self._restore_compensations(saga, inventory, balances)

        await self.audit(
            ctx, inp.buyer_id, "purchase_started", "purchase", s.purchase_id,
            listing_id=inp.listing_id, shares=inp.shares,
        )
        try:
            await self.enter(ctx, "validating")
            listing = await ctx.run_step("get_listing", inventory.get_listing, inp.listing_id)
            self._validate(listing)
            s.seller_id = listing["seller_id"]
            s.price_per_share = float(listing["price_per_share"])
            s.total_cost = s.price_per_share * inp.shares
            self._step_done("validating")
            self._cancellation_checkpoint()

            await self.enter(ctx, "verifying_eligibility")
            kyc = await ctx.run_step("check_kyc", eligibility.check_kyc, inp.buyer_id, s.total_cost)
            if not kyc.get("valid"):
                raise Rejection(kyc.get("reason") or "KYC verification failed")
            available = await ctx.run_step(
                "check_buying_power", balances.available_balance, inp.buyer_id
            )
            if available < s.total_cost:
                raise Rejection("insufficient buying power")
            self._step_done("verifying_eligibility")
            self._cancellation_checkpoint()

            await self.enter(ctx, "reserving_resource")
            reservation = await ctx.run_step(
                "reserve_shares", inventory.reserve_shares, inp.listing_id, inp.shares
            )
            s.reservation_id = reservation["reservation_id"]
            s.reserved_shares = int(reservation["reserved_shares"])
            saga.add_compensation(
                "release_reservation", inventory.release_reservation, s.reservation_id
            )
            if s.reserved_shares != inp.shares or s.reserved_shares > int(listing["available_shares"]):
                raise InvariantViolation(
                    f"reserved {s.reserved_shares} shares against {listing['available_shares']} available"
                )
            self._step_done("reserving_resource")
            self._cancellation_checkpoint()

            await self.enter(ctx, "holding_funds")
            hold = await ctx.run_step("hold_funds", balances.hold_funds, inp.buyer_id, s.total_cost)
            s.hold_id = hold["hold_id"]
            s.held_funds = float(hold["amount"])
            saga.add_compensation("release_funds", balances.release_funds, s.hold_id)
            if not math.isclose(s.held_funds, s.total_cost, rel_tol=1e-9, abs_tol=1e-9):
                raise InvariantViolation(f"held {s.held_funds} for a cost of {s.total_cost}")
            self._step_done("holding_funds")
            self._cancellation_checkpoint()

            saga.point_of_no_return()
            s.past_point_of_no_return = True
            await self.enter(ctx, "executing")
            await ctx.run_step(
                "execute_transfer", balances.execute_transfer, s.hold_id, s.seller_id, s.total_cost
            )
            s.held_funds = 0.0
            self._step_done("executing")

            await self.enter(ctx, "transferring_ownership")
            await ctx.run_step(
                "transfer_ownership",
                ownership.transfer_ownership,
                inp.listing_id,
                inp.buyer_id,
                inp.shares,
                s.reservation_id,
            )
            self._step_done("transferring_ownership")

            await self.enter(ctx, "finalizing")
            await self._notify(ctx)
            await self.audit(
                ctx, inp.buyer_id, "purchase_completed", "purchase", s.purchase_id,
                listing_id=inp.listing_id, shares=inp.shares, total_cost=s.total_cost,
            )
            await self.enter(ctx, "completed")
            return Completion(
                status="completed",
                result={
                    "purchase_id": s.purchase_id,
                    "shares": inp.shares,
                    "total_cost": s.total_cost,
                },
            )
        except Rejection as exc:
            return await self._reject(ctx, exc.reason)
        except SagaCancelled as exc:
            await self._compensate(ctx, saga)
            s.failure_reason = str(exc)
            await self.enter(ctx, "cancelled")
            return self._completion("cancelled")
        except (StepFailed, InvariantViolation) as exc:
            if isinstance(exc, StepFailed) and s.phase in REJECTING_PHASES:
                return await self._reject(ctx, str(exc))
            return await self._fail(ctx, saga, str(exc))

    def _restore_compensations(self, saga: Saga, inventory, balances) -> None:
        """Re-register compensations for side effects recorded before a restart.

        A cancellation replayed on recovery can fire before the steps that
        registered them are replayed.
        """
        s = self.state
        if s.past_point_of_no_return:
            return
        if s.reservation_id and s.reserved_shares:
            saga.add_compensation(
                "release_reservation", inventory.release_reservation, s.reservation_id
            )
        if s.hold_id and s.held_funds:
            saga.add_compensation("release_funds", balances.release_funds, s.hold_id)

    def _validate(self, listing: Optional[dict]) -> None:
        inp = self.input
        if listing is None:
            raise Rejection("listing not found")
        if not listing.get("active", True):
            raise Rejection("listing is not active")
        if inp.shares <= 0:
            raise Rejection("shares must be positive")
        if listing["seller_id"] == inp.buyer_id:
            raise Rejection("cannot buy from your own listing")
        if inp.shares > int(listing["available_shares"]):
            raise Rejection("insufficient inventory")

    async def _notify(self, ctx: WorkflowContext) -> None:
        notifications = self.collaborators.notifications
        if notifications is None:
            return
        s = self.state
        data = {
            "purchase_id": s.purchase_id,
            "listing_id": self.input.listing_id,
            "shares": self.input.shares,
            "total_cost": s.total_cost,
        }
        await ctx.fire_and_forget(
            "notify_buyer", notifications.send, self.input.buyer_id, "purchase_confirmation", data
        )
        await ctx.fire_and_forget(
            "notify_seller", notifications.send, s.seller_id, "shares_sold", data
        )

    async def _compensate(self, ctx: WorkflowContext, saga: Saga) -> None:
        s = self.state
        done, unresolved = await saga.compensate()
        if "release_funds" in done:
            s.held_funds = 0.0
        if "release_reservation" in done:
            s.reserved_shares = 0
        s.unresolved_compensations = unresolved
        s.compensated = not unresolved

    async def _reject(self, ctx: WorkflowContext, reason: str) -> Completion:
        s = self.state
        s.failure_reason = reason
        logger.info(f"Purchase {s.purchase_id} rejected for run_id={ctx.run_id}: {reason}")
        await self.enter(ctx, "rejected")
        await self.audit(
            ctx, self.input.buyer_id, "purchase_rejected", "purchase", s.purchase_id, reason=reason
        )
        return self._completion("rejected")

    async def _fail(self, ctx: WorkflowContext, saga: Saga, reason: str) -> Completion:
        s = self.state
        s.failure_reason = reason
        if s.past_point_of_no_return:
            logger.error(
                f"Purchase {s.purchase_id} failed after moving value for run_id={ctx.run_id}; "
                "forward remediation required"
            )
            s.compensated = False
            s.remediation_required = True
        else:
            await self._compensate(ctx, saga)
        await self.enter(ctx, "failed")
        await self.audit(
            ctx, self.input.buyer_id, "purchase_failed", "purchase", s.purchase_id,
            error=reason, compensated=s.compensated,
        )
        return self._completion("failed")

    def _completion(self, status: str) -> Completion:
        s = self.state
        return Completion(
            status=status,
            result={"purchase_id": s.purchase_id},
            failure_reason=s.failure_reason,
            compensated=s.compensated if status != "rejected" else None,
            unresolved_compensations=s.unresolved_compensations,
        )
