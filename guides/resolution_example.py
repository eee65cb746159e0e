"""Example resolving a prediction market with in-process services.

Run with ``STEPWISE_DATABASE_URL=sqlite:///tmp/stepwise.db`` to keep run
history, then inspect it with ``stepwise run list``.
"""

import asyncio

from stepwise import Collaborators, WorkflowEngine, WorkflowRegistry, load_config
from stepwise.config import configure_logging


class StaticFeed:
    def __init__(self, values):
        self.values = values

    async def fetch_value(self, data_key):
        return self.values.get(data_key)


class PrintingPositionBook:
    def __init__(self, positions):
        self.positions = positions

    async def open_positions(self, market_id):
        return self.positions

    async def settle_position(self, position_id, payout, *, idempotency_key):
        print(f"Paid {payout:.2f} on {position_id}")
        return {"position_id": position_id, "payout": payout}

    async def close_market(self, market_id, outcome, *, idempotency_key):
        print(f"Closed {market_id} with outcome {outcome}")


async def main():
    config = load_config()
    configure_logging(config)

    collaborators = Collaborators(
        market_data=StaticFeed({"btc-close-2024-12-31": 93_450.0}),
        positions=PrintingPositionBook(
            [
                {"position_id": "pos-1", "user_id": "alice", "side": "yes", "quantity": 25},
                {"position_id": "pos-2", "user_id": "bob", "side": "no", "quantity": 40},
            ]
        ),
    )
    engine = WorkflowEngine(WorkflowRegistry.default(), collaborators, config=config)

    run_id = await engine.start(
        "resolution",
        {
            "market_id": "btc-90k",
            "data_key": "btc-close-2024-12-31",
            "operator": "gte",
            "target_value": 90_000.0,
        },
    )
    result = await engine.result(run_id)
    print(f"{run_id}: {result.status} {result.result}")


if __name__ == "__main__":
    asyncio.run(main())
