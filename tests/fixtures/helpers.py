import asyncio
import inspect


async def wait_until(predicate, timeout=2.0, interval=0.005):
    """Poll ``predicate`` until it holds; fail the test after ``timeout``."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(interval)


async def wait_for_phase(engine, run_id, query_type, phase, field="phase"):
    await wait_until(lambda: engine.query(run_id, query_type)[field] == phase)


def gate(method):
    """Wrap an async collaborator method so it blocks until the event is set."""
    event = asyncio.Event()
    keyed = "idempotency_key" in inspect.signature(method).parameters

    async def gated(*args, **kwargs):
        await event.wait()
        if not keyed:
            kwargs.pop("idempotency_key", None)
        return await method(*args, **kwargs)

    return gated, event
