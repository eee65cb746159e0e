"""Turn order and per-turn waiting for multi-party runs."""

from __future__ import annotations

from typing import Callable, List, Literal, Tuple

from ..context import WorkflowContext

TurnOrder = Literal["snake", "linear"]

ACTED = "acted"
TIMEOUT = "timeout"
RESUMED = "resumed"


def round_and_pick(completed_picks: int, team_count: int) -> Tuple[int, int]:
    """Return the 0-based ``(round, pick_in_round)`` of the next pick."""
    if team_count <= 0:
        raise ValueError("team_count must be positive")
    return divmod(completed_picks, team_count)


def turn_index(completed_picks: int, team_count: int, order: TurnOrder = "snake") -> int:
    """Index into the draft order of the team whose turn it is."""
    round_index, pick_in_round = round_and_pick(completed_picks, team_count)
    if order == "linear" or round_index % 2 == 0:
        return pick_in_round
    return team_count - 1 - pick_in_round


def round_order(round_index: int, team_count: int, order: TurnOrder = "snake") -> List[int]:
    start = round_index * team_count
    return [turn_index(start + i, team_count, order) for i in range(team_count)]


async def wait_for_turn(
    ctx: WorkflowContext,
    deadline: float,
    acted: Callable[[], bool],
    paused: Callable[[], bool],
) -> str:
    """Wait for the current party to act before ``deadline`` (loop time).

    Returns ``ACTED``, ``TIMEOUT`` or ``RESUMED``. A pause abandons the turn
    timer; after resuming the caller starts a fresh one.
    """
    fired = await ctx.wait_condition(
        lambda: acted() or paused(), timeout=deadline - ctx.monotonic()
    )
    if not fired:
        return TIMEOUT
    if paused():
        await ctx.wait_condition(lambda: not paused())
        return RESUMED
    return ACTED
