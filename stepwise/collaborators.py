"""Interfaces of the external services runs call as steps.

Implementations live outside this package; every mutating call receives an
``idempotency_key`` so that re-delivery after a crash never double-applies.
Collaborators signal a business refusal by raising
``ActivityFailed(..., retryable=False)``.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Protocol


class BalanceService(Protocol):
    async def available_balance(self, user_id: str) -> float: ...

    async def hold_funds(self, user_id: str, amount: float, *, idempotency_key: str) -> Dict[str, Any]:
        """Place a hold and return ``{"hold_id", "amount"}``."""

    async def release_funds(self, hold_id: str, *, idempotency_key: str) -> Dict[str, Any]: ...

    async def execute_transfer(
        self, hold_id: str, seller_id: str, amount: float, *, idempotency_key: str
    ) -> Dict[str, Any]:
        """Atomically debit the held amount and credit the seller."""


class InventoryService(Protocol):
    async def get_listing(self, listing_id: str) -> Optional[Dict[str, Any]]: ...

    async def reserve_shares(
        self, listing_id: str, shares: int, *, idempotency_key: str
    ) -> Dict[str, Any]:
        """Conditionally decrement available shares; returns ``reservation_id``
        and ``reserved_shares``."""

    async def release_reservation(self, reservation_id: str, *, idempotency_key: str) -> Dict[str, Any]: ...

    async def create_listing(self, listing: Dict[str, Any], *, idempotency_key: str) -> Dict[str, Any]: ...


class OwnershipService(Protocol):
    async def transfer_ownership(
        self,
        listing_id: str,
        buyer_id: str,
        shares: int,
        reservation_id: str,
        *,
        idempotency_key: str,
    ) -> Dict[str, Any]: ...


class EligibilityService(Protocol):
    async def check_kyc(self, user_id: str, amount: float) -> Dict[str, Any]:
        """Return ``{"valid": bool, "reason": str | None}``."""

    async def verify_asset_ownership(
        self, seller_id: str, grading_company: str, cert_number: str
    ) -> Dict[str, Any]:
        """Return ``{"verified": bool, "reason": str | None}``."""

    async def verify_certificate(
        self, grading_company: str, cert_number: str, expected_grade: str
    ) -> Dict[str, Any]:
        """Return ``{"valid": bool, "grade": str, "reason": str | None}``."""


class PricingService(Protocol):
    async def get_market_price(
        self, asset_type: str, name: str, grade: str, grading_company: str
    ) -> Dict[str, Any]:
        """Return ``{"price": float, "source": str}``."""


class NotificationService(Protocol):
    async def send(
        self, recipient_id: str, template: str, data: Dict[str, Any], *, idempotency_key: str
    ) -> None: ...

    async def notify_interested_parties(
        self, listing: Dict[str, Any], *, idempotency_key: str
    ) -> int:
        """Notify watchers of a new listing and return how many were notified."""


class AuditLog(Protocol):
    async def append(
        self,
        actor_id: str,
        action: str,
        resource_type: str,
        resource_id: str,
        metadata: Dict[str, Any],
        *,
        idempotency_key: str,
    ) -> None: ...


class LeagueService(Protocol):
    async def record_pick(self, draft_id: str, pick: Dict[str, Any], *, idempotency_key: str) -> Dict[str, Any]: ...

    async def auto_select(self, draft_id: str, team_id: str, *, idempotency_key: str) -> str:
        """Deterministically choose a player for ``team_id``."""

    async def pending_claims(self, league_id: str) -> List[Dict[str, Any]]: ...

    async def is_player_available(self, league_id: str, player_id: str) -> bool: ...

    async def has_roster_room(
        self, league_id: str, team_id: str, drop_player_id: Optional[str]
    ) -> bool: ...

    async def faab_remaining(self, league_id: str, team_id: str) -> float: ...

    async def execute_claim(self, league_id: str, claim: Dict[str, Any], *, idempotency_key: str) -> Dict[str, Any]: ...

    async def waiver_priorities(self, league_id: str) -> Dict[str, int]: ...

    async def update_waiver_priorities(
        self, league_id: str, priorities: Dict[str, int], *, idempotency_key: str
    ) -> None: ...


class MarketDataFeed(Protocol):
    async def fetch_value(self, data_key: str) -> Optional[float]:
        """Return the observed value, or ``None`` when not yet published."""


class PositionBook(Protocol):
    async def open_positions(self, market_id: str) -> List[Dict[str, Any]]:
        """Return ``{"position_id", "user_id", "side", "quantity"}`` records."""

    async def settle_position(
        self, position_id: str, payout: float, *, idempotency_key: str
    ) -> Dict[str, Any]:
        """Credit ``payout`` to the holder and close the position."""

    async def close_market(self, market_id: str, outcome: bool, *, idempotency_key: str) -> None: ...


@dataclass
class Collaborators:
    """Bundle of external services available to runs."""

    balances: Optional[BalanceService] = None
    inventory: Optional[InventoryService] = None
    ownership: Optional[OwnershipService] = None
    eligibility: Optional[EligibilityService] = None
    pricing: Optional[PricingService] = None
    notifications: Optional[NotificationService] = None
    audit: Optional[AuditLog] = None
    league: Optional[LeagueService] = None
    market_data: Optional[MarketDataFeed] = None
    positions: Optional[PositionBook] = None

    def require(self, name: str) -> Any:
        service = getattr(self, name)
        if service is None:
            raise RuntimeError(f"Collaborator {name!r} is not configured")
        return service
