from datetime import datetime, timedelta, timezone

import pytest

from stepwise.contracts import ActivityFailed
from stepwise.workflows.waiver import WaiverClaim, rotate_priorities, sort_claims

QUERY = "getWaiverState"
T0 = datetime(2024, 9, 10, 8, 0, tzinfo=timezone.utc)


def _claim(claim_id, team_id, player, bid=0.0, priority=0, minutes=0, drop=None):
    return {
        "claim_id": claim_id,
        "team_id": team_id,
        "add_player_id": player,
        "drop_player_id": drop,
        "faab_bid": bid,
        "priority": priority,
        "submitted_at": (T0 + timedelta(minutes=minutes)).isoformat(),
    }


def _results(engine, run_id):
    return {r["claim_id"]: r for r in engine.query(run_id, QUERY)["results"]}


def test_faab_sort_prefers_higher_bid_then_earlier_submission():
    claims = [
        WaiverClaim(**_claim("c1", "a", "x", bid=10, minutes=5)),
        WaiverClaim(**_claim("c2", "b", "x", bid=25, minutes=9)),
        WaiverClaim(**_claim("c3", "c", "x", bid=10, minutes=1)),
    ]
    assert [c.claim_id for c in sort_claims(claims, "faab")] == ["c2", "c3", "c1"]


def test_priority_sort_uses_priority_then_submission():
    claims = [
        WaiverClaim(**_claim("c1", "a", "x", priority=2, minutes=0)),
        WaiverClaim(**_claim("c2", "b", "x", priority=1, minutes=9)),
        WaiverClaim(**_claim("c3", "c", "x", priority=1, minutes=3)),
    ]
    assert [c.claim_id for c in sort_claims(claims, "rolling")] == ["c3", "c2", "c1"]


def test_rotate_priorities_moves_winners_to_back_in_order():
    priorities = {"a": 1, "b": 2, "c": 3, "d": 4}
    assert rotate_priorities(priorities, ["b", "a"]) == {"c": 1, "d": 2, "b": 3, "a": 4}
    assert rotate_priorities(priorities, []) == {"a": 1, "b": 2, "c": 3, "d": 4}


@pytest.mark.asyncio
async def test_only_highest_bid_gets_contested_player(engine, fakes):
    fakes.league.claims = [
        _claim("c1", "a", "star", bid=10),
        _claim("c2", "b", "star", bid=30),
        _claim("c3", "c", "bench", bid=1),
    ]

    run_id = await engine.start("waiver", {"league_id": "l1", "waiver_type": "faab"})
    result = await engine.result(run_id, timeout=2)

    assert result.status == "completed"
    assert result.phase == "complete"
    results = _results(engine, run_id)
    assert results["c2"]["succeeded"] is True
    assert results["c1"]["succeeded"] is False
    assert results["c1"]["reason"] == "already claimed by higher priority"
    assert results["c3"]["succeeded"] is True
    assert sorted(fakes.league.executed) == ["c2", "c3"]
    assert engine.query(run_id, QUERY)["new_priorities"] is None


@pytest.mark.asyncio
async def test_per_claim_checks(engine, fakes):
    fakes.league.unavailable.add("gone")
    fakes.league.full_rosters.add("b")
    fakes.league.faab["c"] = 5.0
    fakes.league.claims = [
        _claim("c1", "a", "gone", bid=40),
        _claim("c2", "b", "p2", bid=30),
        _claim("c3", "c", "p3", bid=20),
        _claim("c4", "b", "p4", bid=10, drop="old"),
    ]

    run_id = await engine.start("waiver", {"league_id": "l1", "waiver_type": "faab"})
    await engine.result(run_id, timeout=2)

    results = _results(engine, run_id)
    assert results["c1"]["reason"] == "player no longer available"
    assert results["c2"]["reason"] == "roster full"
    assert results["c3"]["reason"] == "insufficient FAAB budget"
    assert results["c4"]["succeeded"] is True


@pytest.mark.asyncio
async def test_rolling_waivers_rotate_priorities(engine, fakes):
    fakes.league.priorities = {"a": 1, "b": 2, "c": 3}
    fakes.league.claims = [
        _claim("c1", "c", "p1", priority=3),
        _claim("c2", "a", "p1", priority=1),
        _claim("c3", "b", "p2", priority=2),
    ]

    run_id = await engine.start("waiver", {"league_id": "l1", "waiver_type": "rolling"})
    result = await engine.result(run_id, timeout=2)

    assert result.result["succeeded"] == ["c2", "c3"]
    assert result.result["failed"] == ["c1"]
    assert fakes.league.priorities == {"c": 1, "a": 2, "b": 3}
    assert engine.query(run_id, QUERY)["new_priorities"] == {"c": 1, "a": 2, "b": 3}


@pytest.mark.asyncio
async def test_failed_commit_fails_only_that_claim(engine, fakes):
    fakes.league.fail_next("execute_claim", ActivityFailed("transaction rejected", retryable=False))
    fakes.league.claims = [
        _claim("c1", "a", "p1", bid=50),
        _claim("c2", "b", "p1", bid=20),
    ]

    run_id = await engine.start("waiver", {"league_id": "l1"})
    result = await engine.result(run_id, timeout=2)

    results = _results(engine, run_id)
    assert result.status == "completed"
    assert results["c1"]["reason"] == "transaction rejected"
    assert results["c2"]["succeeded"] is True


@pytest.mark.asyncio
async def test_unreachable_league_fails_batch(engine, fakes):
    fakes.league.fail_next("pending_claims", *[ConnectionError("league api down")] * 3)

    run_id = await engine.start("waiver", {"league_id": "l1"})
    result = await engine.result(run_id, timeout=2)

    assert result.status == "failed"
    assert engine.query(run_id, QUERY)["phase"] == "failed"


@pytest.mark.asyncio
async def test_empty_batch_completes(engine):
    run_id = await engine.start("waiver", {"league_id": "l1"})
    result = await engine.result(run_id, timeout=2)

    assert result.status == "completed"
    assert engine.query(run_id, QUERY)["processed"] == 0
