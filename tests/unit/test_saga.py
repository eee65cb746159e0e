import pytest

from stepwise.config import StepConfig
from stepwise.context import WorkflowContext
from stepwise.contracts import RetryPolicy, WorkflowRun
from stepwise.execute import RetryController, StepExecutor
from stepwise.persistence import InMemoryWorkflowRepository
from stepwise.workflows.saga import Saga


async def _noop_persist(status):
    return None


def _saga():
    ctx = WorkflowContext(
        WorkflowRun(run_id="run1", kind="test"),
        RetryController(StepExecutor(InMemoryWorkflowRepository())),
        StepConfig(retry=RetryPolicy(maximum_attempts=2, initial_interval=0.0)),
        _noop_persist,
    )
    return Saga(ctx)


@pytest.mark.asyncio
async def test_compensations_run_newest_first():
    saga = _saga()
    order = []

    async def undo(name):
        order.append(name)

    saga.add_compensation("release_reservation", undo, "reservation")
    saga.add_compensation("release_funds", undo, "funds")

    done, unresolved = await saga.compensate()

    assert order == ["funds", "reservation"]
    assert done == ["release_funds", "release_reservation"]
    assert unresolved == []


@pytest.mark.asyncio
async def test_failed_compensation_is_reported_and_others_continue():
    saga = _saga()
    calls = []

    async def broken():
        calls.append("broken")
        raise ConnectionError("ledger unavailable")

    async def fine():
        calls.append("fine")

    saga.add_compensation("release_reservation", fine)
    saga.add_compensation("release_funds", broken)

    done, unresolved = await saga.compensate()

    assert done == ["release_reservation"]
    assert unresolved == ["release_funds"]
    assert calls == ["broken", "broken", "fine"]


@pytest.mark.asyncio
async def test_point_of_no_return_drops_compensations():
    saga = _saga()

    async def undo():
        raise AssertionError("must not run")

    saga.add_compensation("release_funds", undo)
    saga.point_of_no_return()

    assert saga.pending == []
    assert await saga.compensate() == ([], [])
    with pytest.raises(RuntimeError):
        saga.add_compensation("release_funds", undo)


def test_registering_a_compensation_twice_keeps_one():
    saga = _saga()

    async def undo(reservation_id):
        return None

    saga.add_compensation("release_reservation", undo, "res_1")
    saga.add_compensation("release_reservation", undo, "res_1")

    assert saga.pending == ["release_reservation"]
