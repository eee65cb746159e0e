"""Crash and recovery against a SQLite-backed repository."""

import asyncio

import pytest

from fixtures.helpers import gate, wait_for_phase, wait_until
from stepwise import WorkflowEngine, WorkflowRegistry
from stepwise.contracts import ActivityFailed
from stepwise.persistence import SQLiteWorkflowRepository

DRAFT_QUERY = "getDraftState"
RESOLUTION_QUERY = "getResolutionStatus"
PURCHASE_QUERY = "getPurchaseStatus"
PURCHASE = {"listing_id": "listing_1", "buyer_id": "buyer", "shares": 5}


def _engine(collaborators, config, path):
    return WorkflowEngine(
        WorkflowRegistry.default(),
        collaborators,
        SQLiteWorkflowRepository(path),
        config=config,
    )


@pytest.mark.asyncio
async def test_draft_resumes_after_crash_with_queued_signals(collaborators, config, fakes, tmp_path):
    db = tmp_path / "wf.db"
    first = _engine(collaborators, config, db)
    run_id = await first.start(
        "draft",
        {"draft_id": "d1", "league_id": "l1", "team_ids": ["a", "b"], "total_rounds": 2, "seconds_per_pick": 5.0},
    )

    await wait_until(lambda: first.query(run_id, DRAFT_QUERY)["current_team_id"] == "a")
    assert await first.signal(run_id, "makePick", {"teamId": "a", "playerId": "p10"})
    await wait_until(lambda: first.query(run_id, DRAFT_QUERY)["completed_picks"] == 1)
    assert await first.signal(run_id, "makePick", {"teamId": "b", "playerId": "p11"})
    await wait_until(lambda: first.query(run_id, DRAFT_QUERY)["completed_picks"] == 2)
    await first.shutdown()

    second = _engine(collaborators, config, db)
    assert await second.signal(run_id, "pauseDraft", {})
    assert (await second.load_query(run_id, DRAFT_QUERY))["completed_picks"] == 2

    assert await second.recover() == [run_id]
    await wait_until(lambda: second.query(run_id, DRAFT_QUERY)["status"] == "paused")
    assert second.query(run_id, DRAFT_QUERY)["pick_deadline"] is None

    assert await second.signal(run_id, "resumeDraft", {})
    await wait_until(lambda: second.query(run_id, DRAFT_QUERY)["pick_deadline"] is not None)
    assert await second.signal(run_id, "makePick", {"teamId": "b", "playerId": "p12"})
    await wait_until(lambda: second.query(run_id, DRAFT_QUERY)["current_team_id"] == "a")
    assert await second.signal(run_id, "makePick", {"teamId": "a", "playerId": "p13"})

    result = await second.result(run_id, timeout=2)
    assert result.status == "completed"
    assert fakes.league.drafted("d1") == ["p10", "p11", "p12", "p13"]
    assert await second.repository.pending_signals(run_id) == []
    await second.shutdown()


@pytest.mark.asyncio
async def test_resolution_recovery_keeps_outcome_and_never_pays_twice(collaborators, config, fakes, tmp_path):
    db = tmp_path / "wf.db"
    fakes.market_data.values = {"btc-close": [120.0]}
    fakes.positions.positions = [
        {"position_id": "pos1", "user_id": "u1", "side": "yes", "quantity": 10},
        {"position_id": "pos2", "user_id": "u2", "side": "yes", "quantity": 4},
        {"position_id": "pos3", "user_id": "u3", "side": "no", "quantity": 7},
    ]
    original = fakes.positions.settle_position
    hanging = asyncio.Event()
    never = asyncio.Event()

    async def settle_first_then_hang(position_id, payout, *, idempotency_key):
        if fakes.positions.payouts:
            hanging.set()
            await never.wait()
        return await original(position_id, payout, idempotency_key=idempotency_key)

    fakes.positions.settle_position = settle_first_then_hang

    first = _engine(collaborators, config, db)
    run_id = await first.start(
        "resolution",
        {"market_id": "m1", "data_key": "btc-close", "operator": "gte", "target_value": 100.0},
    )
    await asyncio.wait_for(hanging.wait(), timeout=2)
    assert len(first.query(run_id, RESOLUTION_QUERY)["settlements"]) == 1
    await first.shutdown()

    del fakes.positions.settle_position
    fakes.market_data.values = {"btc-close": [80.0]}
    second = _engine(collaborators, config, db)
    assert await second.recover() == [run_id]
    result = await second.result(run_id, timeout=2)

    assert result.status == "completed"
    assert result.result["total_payout"] == 14.0
    assert fakes.positions.payouts == {"pos1": 10.0, "pos2": 4.0, "pos3": 0.0}
    assert fakes.positions.closed == {"m1": True}
    assert len(second.query(run_id, RESOLUTION_QUERY)["settlements"]) == 3
    assert fakes.market_data.count("fetch_value") == 1
    await second.shutdown()


@pytest.mark.asyncio
async def test_finished_runs_are_not_recovered(collaborators, config, fakes, tmp_path):
    db = tmp_path / "wf.db"
    fakes.market_data.values = {"btc-close": [50.0]}
    first = _engine(collaborators, config, db)
    run_id = await first.start(
        "resolution",
        {"market_id": "m2", "data_key": "btc-close", "operator": "gt", "target_value": 100.0},
    )
    assert (await first.result(run_id, timeout=2)).status == "completed"

    second = _engine(collaborators, config, db)
    assert await second.recover() == []
    stored = await second.result(run_id)
    assert stored.status == "completed"
    assert stored.result["outcome"] is False
    assert not await second.signal(run_id, "anything", {})


async def _crash_while_holding_funds(collaborators, config, fakes, db):
    fakes.balances.hold_funds, _ = gate(fakes.balances.hold_funds)
    first = _engine(collaborators, config, db)
    run_id = await first.start("purchase", PURCHASE)
    await wait_for_phase(first, run_id, PURCHASE_QUERY, "holding_funds")
    assert fakes.inventory.listings["listing_1"]["available_shares"] == 95
    await first.shutdown()
    del fakes.balances.hold_funds
    return run_id


@pytest.mark.asyncio
async def test_recovered_purchase_compensates_replayed_reservation(collaborators, config, fakes, tmp_path):
    db = tmp_path / "wf.db"
    run_id = await _crash_while_holding_funds(collaborators, config, fakes, db)
    fakes.balances.fail_next("hold_funds", ActivityFailed("account frozen", retryable=False))

    second = _engine(collaborators, config, db)
    assert await second.recover() == [run_id]
    result = await second.result(run_id, timeout=2)

    assert result.status == "failed"
    assert result.compensated is True
    assert fakes.inventory.count("reserve_shares") == 1
    assert fakes.inventory.count("release_reservation") == 1
    assert fakes.inventory.listings["listing_1"]["available_shares"] == 100
    assert fakes.inventory.reservations == {}
    assert fakes.balances.balances == {"buyer": 1000.0, "seller": 0.0}
    assert fakes.balances.holds == {}
    await second.shutdown()


@pytest.mark.asyncio
async def test_cancel_queued_during_outage_releases_reservation(collaborators, config, fakes, tmp_path):
    db = tmp_path / "wf.db"
    run_id = await _crash_while_holding_funds(collaborators, config, fakes, db)

    second = _engine(collaborators, config, db)
    assert await second.signal(run_id, "cancelPurchase", {})
    assert await second.recover() == [run_id]
    result = await second.result(run_id, timeout=2)

    assert result.status == "cancelled"
    assert result.compensated is True
    assert fakes.inventory.count("release_reservation") == 1
    assert fakes.inventory.listings["listing_1"]["available_shares"] == 100
    assert fakes.balances.count("hold_funds") == 0
    assert fakes.balances.balances == {"buyer": 1000.0, "seller": 0.0}
    state = second.query(run_id, PURCHASE_QUERY)
    assert state["phase"] == "cancelled"
    assert state["reserved_shares"] == 0
    await second.shutdown()
