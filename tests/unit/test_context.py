import asyncio

import pytest

from stepwise.config import StepConfig
from stepwise.context import WorkflowContext
from stepwise.contracts import ContinueAsNew, RetryPolicy, StepFailed, WorkflowRun
from stepwise.execute import RetryController, StepExecutor
from stepwise.persistence import InMemoryWorkflowRepository


def _context():
    run = WorkflowRun(run_id="run1", kind="test")
    persisted = []

    async def persist(status):
        if status is not None:
            run.status = status
        persisted.append(run.status)

    ctx = WorkflowContext(
        run,
        RetryController(StepExecutor(InMemoryWorkflowRepository())),
        StepConfig(retry=RetryPolicy(maximum_attempts=2, initial_interval=0.0)),
        persist,
    )
    return ctx, run, persisted


@pytest.mark.asyncio
async def test_wait_condition_satisfied_by_notify():
    ctx, run, persisted = _context()
    state = {"ready": False}

    async def release():
        await asyncio.sleep(0.01)
        state["ready"] = True
        await ctx.notify()

    asyncio.create_task(release())
    satisfied = await ctx.wait_condition(lambda: state["ready"], timeout=1.0)

    assert satisfied is True
    assert persisted == ["suspended"]
    assert run.status == "running"


@pytest.mark.asyncio
async def test_wait_condition_times_out():
    ctx, run, _ = _context()

    satisfied = await ctx.wait_condition(lambda: False, timeout=0.02)

    assert satisfied is False
    assert run.history[-1].name == "deadline"


@pytest.mark.asyncio
async def test_wait_condition_with_expired_deadline_does_not_wait():
    ctx, _, persisted = _context()

    assert await ctx.wait_condition(lambda: True, timeout=0) is False
    assert persisted == []


@pytest.mark.asyncio
async def test_deadline_wins_when_both_fire(monkeypatch):
    ctx, _, _ = _context()
    loop = asyncio.get_running_loop()
    state = {"ready": False}
    real_time = loop.time

    async def release_late():
        await asyncio.sleep(0.01)
        state["ready"] = True
        # predicate holds, but the clock says the deadline already passed
        monkeypatch.setattr(loop, "time", lambda: real_time() + 10)
        await ctx.notify()

    asyncio.create_task(release_late())
    satisfied = await ctx.wait_condition(lambda: state["ready"], timeout=0.5)

    assert satisfied is False


@pytest.mark.asyncio
async def test_sleep_suspends_and_resumes():
    ctx, run, persisted = _context()

    await ctx.sleep(0.01)

    assert persisted == ["suspended"]
    assert run.status == "running"
    assert run.history[0].kind == "timer"


@pytest.mark.asyncio
async def test_run_step_raises_on_terminal_failure():
    ctx, run, _ = _context()

    async def broken():
        raise RuntimeError("boom")

    with pytest.raises(StepFailed) as exc_info:
        await ctx.run_step("broken", broken)

    assert exc_info.value.step_name == "broken"
    assert exc_info.value.outcome.attempts == 2
    assert run.history[-1].detail["kind"] == "terminal_failure"


@pytest.mark.asyncio
async def test_fire_and_forget_swallows_failure():
    ctx, _, _ = _context()

    async def broken():
        raise RuntimeError("smtp down")

    await ctx.fire_and_forget("notify", broken)


def test_continue_as_new_carries_state():
    ctx, _, _ = _context()
    with pytest.raises(ContinueAsNew) as exc_info:
        ctx.continue_as_new({"completed_picks": 50})
    assert exc_info.value.state == {"completed_picks": 50}


@pytest.mark.asyncio
async def test_step_outcome_is_recorded_in_history():
    ctx, run, _ = _context()

    async def reserve():
        return {"reservation_id": "r1"}

    assert await ctx.run_step("reserve", reserve) == {"reservation_id": "r1"}

    event = run.history[-1]
    assert (event.kind, event.name) == ("step", "reserve")
    assert event.detail == {"kind": "success", "attempts": 1, "replayed": False}
