import asyncio
from datetime import timedelta

import pytest

from fixtures.helpers import wait_until
from stepwise.contracts import utcnow

QUERY = "getDraftState"


def _draft(teams=("a", "b"), rounds=1, seconds=5.0, **extra):
    return {
        "draft_id": "d1",
        "league_id": "l1",
        "team_ids": list(teams),
        "total_rounds": rounds,
        "seconds_per_pick": seconds,
        **extra,
    }


async def _pick(engine, run_id, completed, team, player):
    await wait_until(
        lambda: engine.query(run_id, QUERY)["completed_picks"] == completed
        and engine.query(run_id, QUERY)["current_team_id"] == team
    )
    return await engine.signal(run_id, "makePick", {"teamId": team, "playerId": player})


@pytest.mark.asyncio
async def test_manual_picks_follow_snake_order(engine, fakes):
    run_id = await engine.start("draft", _draft(rounds=2))

    assert await _pick(engine, run_id, 0, "a", "p10")
    assert await _pick(engine, run_id, 1, "b", "p11")
    assert await _pick(engine, run_id, 2, "b", "p12")
    assert await _pick(engine, run_id, 3, "a", "p13")
    result = await engine.result(run_id, timeout=2)

    assert result.status == "completed"
    state = engine.query(run_id, QUERY)
    assert state["status"] == "completed"
    assert [p["team_id"] for p in state["picks"]] == ["a", "b", "b", "a"]
    assert [p["overall_pick"] for p in state["picks"]] == [1, 2, 3, 4]
    assert [(p["round"], p["pick_in_round"]) for p in state["picks"]] == [(0, 0), (0, 1), (1, 0), (1, 1)]
    assert not any(p["is_auto_pick"] for p in state["picks"])
    assert fakes.league.drafted("d1") == ["p10", "p11", "p12", "p13"]


@pytest.mark.asyncio
async def test_timeout_auto_picks_and_advances(engine, fakes):
    run_id = await engine.start("draft", _draft(teams=("a", "b", "c"), seconds=0.02))
    result = await engine.result(run_id, timeout=2)

    assert result.status == "completed"
    assert result.result["auto_picks"] == 3
    state = engine.query(run_id, QUERY)
    assert state["completed_picks"] == state["total_picks"] == 3
    assert all(p["is_auto_pick"] and p["auto_pick_reason"] == "timeout" for p in state["picks"])
    assert len(set(fakes.league.drafted("d1"))) == 3


@pytest.mark.asyncio
async def test_skip_pick_uses_auto_select(engine):
    run_id = await engine.start("draft", _draft(teams=("a",)))
    await wait_until(lambda: engine.query(run_id, QUERY)["current_team_id"] == "a")

    assert await engine.signal(run_id, "skipPick", {"teamId": "a"})
    result = await engine.result(run_id, timeout=2)

    pick = engine.query(run_id, QUERY)["picks"][0]
    assert result.status == "completed"
    assert pick["is_auto_pick"] is True
    assert pick["auto_pick_reason"] == "skipped"


@pytest.mark.asyncio
async def test_picks_from_wrong_team_or_taken_player_are_ignored(engine):
    run_id = await engine.start("draft", _draft(rounds=2))

    assert await _pick(engine, run_id, 0, "a", "p1")
    await wait_until(lambda: engine.query(run_id, QUERY)["completed_picks"] == 1)
    assert await engine.signal(run_id, "makePick", {"teamId": "a", "playerId": "p2"}) is False
    assert await engine.signal(run_id, "makePick", {"teamId": "b", "playerId": "p1"}) is False
    assert await engine.signal(run_id, "makePick", {"teamId": "b"}) is False
    assert await engine.signal(run_id, "tradePlayer", {"teamId": "b"}) is False

    state = engine.query(run_id, QUERY)
    assert state["completed_picks"] == 1
    assert state["pending_pick"] is None
    await engine.shutdown()


@pytest.mark.asyncio
async def test_rejected_pick_keeps_turn(engine, fakes):
    fakes.league.picks["d1"] = [{"player_id": "p1"}]
    run_id = await engine.start("draft", _draft(teams=("a",)))

    assert await _pick(engine, run_id, 0, "a", "p1")
    await wait_until(lambda: engine.query(run_id, QUERY)["last_rejection"] is not None)
    state = engine.query(run_id, QUERY)
    assert state["completed_picks"] == 0
    assert state["current_team_id"] == "a"
    assert "already drafted" in state["last_rejection"]

    assert await _pick(engine, run_id, 0, "a", "p2")
    result = await engine.result(run_id, timeout=2)
    assert result.status == "completed"
    assert engine.query(run_id, QUERY)["picks"][0]["player_id"] == "p2"


@pytest.mark.asyncio
async def test_pause_abandons_timer_and_resume_restarts_it(engine):
    run_id = await engine.start("draft", _draft(teams=("a",), seconds=0.15))
    await wait_until(lambda: engine.query(run_id, QUERY)["status"] == "in_progress")

    assert await engine.signal(run_id, "pauseDraft")
    assert await engine.signal(run_id, "pauseDraft") is False
    state = engine.query(run_id, QUERY)
    assert state["status"] == "paused"
    assert state["pick_deadline"] is None

    await asyncio.sleep(0.3)
    assert engine.query(run_id, QUERY)["completed_picks"] == 0
    assert await engine.signal(run_id, "makePick", {"teamId": "a", "playerId": "p5"}) is False

    assert await engine.signal(run_id, "resumeDraft")
    await wait_until(lambda: engine.query(run_id, QUERY)["pick_deadline"] is not None)
    assert await engine.signal(run_id, "makePick", {"teamId": "a", "playerId": "p5"})
    result = await engine.result(run_id, timeout=2)

    pick = engine.query(run_id, QUERY)["picks"][0]
    assert result.status == "completed"
    assert pick["player_id"] == "p5"
    assert pick["is_auto_pick"] is False


@pytest.mark.asyncio
async def test_resume_when_not_paused_is_ignored(engine):
    run_id = await engine.start("draft", _draft(teams=("a",)))
    await wait_until(lambda: engine.query(run_id, QUERY)["status"] == "in_progress")

    assert await engine.signal(run_id, "resumeDraft") is False
    await engine.shutdown()


@pytest.mark.asyncio
async def test_checkpoints_are_transparent(engine, repository):
    run_id = await engine.start(
        "draft", _draft(teams=("a", "b"), rounds=3, seconds=0.01, checkpoint_every=2)
    )
    result = await engine.result(run_id, timeout=3)

    assert result.status == "completed"
    state = engine.query(run_id, QUERY)
    assert state["completed_picks"] == 6
    assert [p["overall_pick"] for p in state["picks"]] == [1, 2, 3, 4, 5, 6]
    assert [p["team_id"] for p in state["picks"]] == ["a", "b", "b", "a", "a", "b"]
    assert state["checkpoints"] == 2
    run = await repository.get_run(run_id)
    assert run.continuations == 2
    assert run.history[0].kind == "continuation"


@pytest.mark.asyncio
async def test_scheduled_start_waits(engine):
    start_at = utcnow() + timedelta(seconds=0.2)
    run_id = await engine.start("draft", _draft(teams=("a",), seconds=0.01, scheduled_at=start_at.isoformat()))

    await asyncio.sleep(0.05)
    assert engine.query(run_id, QUERY)["status"] == "pending"
    result = await engine.result(run_id, timeout=2)

    assert result.status == "completed"
    assert engine.query(run_id, QUERY)["completed_picks"] == 1


@pytest.mark.asyncio
async def test_signals_after_completion_are_ignored(engine):
    run_id = await engine.start("draft", _draft(teams=("a",), seconds=0.01))
    await engine.result(run_id, timeout=2)

    assert await engine.signal(run_id, "pauseDraft") is False
    assert engine.query(run_id, QUERY)["status"] == "completed"
