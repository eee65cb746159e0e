"""Asset listing saga: verify, price, publish, notify."""

from __future__ import annotations

import logging
import uuid
from typing import List, Literal, Optional

from pydantic import BaseModel, Field

from ..context import WorkflowContext
from ..contracts import Rejection, StepFailed
from .base import Completion, Workflow
from .saga import SagaCancelled

logger = logging.getLogger(__name__)

GRADING_COMPANIES = ("PSA", "BGS", "CGC")

REJECTING_PHASES = frozenset(
    {"validating", "verifying_ownership", "verifying_certification"}
)


class AssetDetails(BaseModel):
    name: str
    grade: str
    grading_company: str
    cert_number: str
    images: List[str] = Field(default_factory=list)


class ListingInput(BaseModel):
    seller_id: str
    asset_type: Literal["pokemon_card", "sports_card", "collectible"]
    asset_details: AssetDetails
    total_shares: int
    price_per_share: float


class CancelListing(BaseModel):
    type: Literal["cancelListing"] = "cancelListing"


class ListingState(BaseModel):
    listing_id: str = Field(default_factory=lambda: f"listing_{uuid.uuid4()}")
    phase: Literal[
        "validating",
        "verifying_ownership",
        "verifying_certification",
        "pricing",
        "creating_listing",
        "notifying_interested_parties",
        "active",
        "rejected",
        "failed",
        "cancelled",
    ] = "validating"
    verified_grade: Optional[str] = None
    market_price: Optional[float] = None
    suggested_price: Optional[float] = None
    listing_created: bool = False
    notified_count: Optional[int] = None
    cancel_requested: bool = False
    cancel_refused: bool = False
    failure_reason: Optional[str] = None


class ListingWorkflow(Workflow):
    kind = "listing"
    query_type = "getListingStatus"
    input_model = ListingInput
    state_model = ListingState
    signal_types = (CancelListing,)

    def handle_signal(self, signal: BaseModel) -> bool:
        s = self.state
        if s.phase in ("active", "rejected", "failed", "cancelled"):
            return False
        if s.listing_created or s.phase in ("creating_listing", "notifying_interested_parties"):
            if s.cancel_refused:
                return False
            s.cancel_refused = True
            return True
        if s.cancel_requested:
            return False
        s.cancel_requested = True
        return True

    def _cancellation_checkpoint(self) -> None:
        if self.state.cancel_requested:
            raise SagaCancelled("Listing cancelled by seller")

    async def run(self, ctx: WorkflowContext) -> Completion:
        s = self.state
        inp = self.input
        details = inp.asset_details
        eligibility = self.collaborators.require("eligibility")
        pricing = self.collaborators.require("pricing")
        inventory = self.collaborators.require("inventory")
        notifications = self.collaborators.require("notifications")

        await self.audit(
            ctx, inp.seller_id, "asset_listing_started", "listing", s.listing_id,
            asset_type=inp.asset_type, total_shares=inp.total_shares,
            price_per_share=inp.price_per_share,
        )
        try:
            await self.enter(ctx, "validating")
            if inp.total_shares <= 0:
                raise Rejection("total shares must be positive")
            if inp.price_per_share <= 0:
                raise Rejection("price per share must be positive")
            if details.grading_company not in GRADING_COMPANIES:
                raise Rejection(f"unsupported grading company {details.grading_company}")
            self._cancellation_checkpoint()

            await self.enter(ctx, "verifying_ownership")
            ownership = await ctx.run_step(
                "verify_ownership",
                eligibility.verify_asset_ownership,
                inp.seller_id,
                details.grading_company,
                details.cert_number,
            )
            if not ownership.get("verified"):
                raise Rejection(f"Ownership verification failed: {ownership.get('reason')}")
            self._cancellation_checkpoint()

            await self.enter(ctx, "verifying_certification")
            certificate = await ctx.run_step(
                "verify_certificate",
                eligibility.verify_certificate,
                details.grading_company,
                details.cert_number,
                details.grade,
            )
            if not certificate.get("valid"):
                raise Rejection(f"Certificate verification failed: {certificate.get('reason')}")
            s.verified_grade = certificate.get("grade", details.grade)
            self._cancellation_checkpoint()

            await self.enter(ctx, "pricing")
            price = await ctx.run_step(
                "get_market_price",
                pricing.get_market_price,
                inp.asset_type,
                details.name,
                details.grade,
                details.grading_company,
            )
            s.market_price = float(price["price"])
            s.suggested_price = s.market_price / inp.total_shares
            self._cancellation_checkpoint()

            await self.enter(ctx, "creating_listing")
            await ctx.run_step("create_listing", inventory.create_listing, self._listing_record())
            s.listing_created = True

            await self.enter(ctx, "notifying_interested_parties")
            s.notified_count = await ctx.run_step(
                "notify_interested_parties",
                notifications.notify_interested_parties,
                self._listing_record(),
            )

            await self.enter(ctx, "active")
            await self.audit(
                ctx, inp.seller_id, "asset_listing_completed", "listing", s.listing_id,
                market_price=s.market_price,
            )
            return Completion(
                status="completed",
                result={"listing_id": s.listing_id, "market_price": s.market_price},
            )
        except Rejection as exc:
            return await self._finish(ctx, "rejected", exc.reason)
        except SagaCancelled as exc:
            return await self._finish(ctx, "cancelled", str(exc))
        except StepFailed as exc:
            if s.phase in REJECTING_PHASES:
                return await self._finish(ctx, "rejected", str(exc))
            return await self._finish(ctx, "failed", str(exc))

    def _listing_record(self) -> dict:
        inp = self.input
        return {
            "listing_id": self.state.listing_id,
            "seller_id": inp.seller_id,
            "asset_type": inp.asset_type,
            "asset_details": {
                **inp.asset_details.model_dump(),
                "verified_grade": self.state.verified_grade,
            },
            "total_shares": inp.total_shares,
            "available_shares": inp.total_shares,
            "price_per_share": inp.price_per_share,
            "market_price": self.state.market_price,
            "active": True,
        }

    async def _finish(self, ctx: WorkflowContext, phase: str, reason: str) -> Completion:
        s = self.state
        s.failure_reason = reason
        logger.info(f"Listing {s.listing_id} ended {phase} for run_id={ctx.run_id}: {reason}")
        await self.enter(ctx, phase)
        await self.audit(
            ctx, self.input.seller_id, f"asset_listing_{phase}", "listing", s.listing_id,
            error=reason,
        )
        return Completion(
            status=phase,
            result={"listing_id": s.listing_id},
            failure_reason=reason,
            compensated=True if phase == "failed" else None,
        )
