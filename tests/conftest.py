from types import SimpleNamespace

import pytest

from fixtures.collaborators import (
    FakeAudit,
    FakeBalances,
    FakeEligibility,
    FakeInventory,
    FakeLeague,
    FakeMarketData,
    FakeNotifications,
    FakeOwnership,
    FakePositions,
    FakePricing,
)
from stepwise import Collaborators, WorkflowEngine, WorkflowRegistry
from stepwise.config import DraftConfig, ResolutionConfig, StepConfig, StepwiseConfig
from stepwise.contracts import RetryPolicy
from stepwise.persistence import InMemoryWorkflowRepository

LISTING = {
    "listing_id": "listing_1",
    "seller_id": "seller",
    "price_per_share": 10.0,
    "available_shares": 100,
    "total_shares": 100,
    "active": True,
}


@pytest.fixture
def config():
    return StepwiseConfig(
        steps=StepConfig(
            timeout=2.0,
            retry=RetryPolicy(maximum_attempts=3, initial_interval=0.0, maximum_interval=0.0),
        ),
        draft=DraftConfig(seconds_per_pick=0.3, checkpoint_every=50),
        resolution=ResolutionConfig(retry_delay_seconds=0.01),
    )


@pytest.fixture
def fakes():
    return SimpleNamespace(
        balances=FakeBalances({"buyer": 1000.0, "seller": 0.0}),
        inventory=FakeInventory([LISTING]),
        ownership=FakeOwnership(),
        eligibility=FakeEligibility(),
        pricing=FakePricing(),
        notifications=FakeNotifications(),
        audit=FakeAudit(),
        league=FakeLeague(),
        market_data=FakeMarketData(),
        positions=FakePositions(),
    )


@pytest.fixture
def collaborators(fakes):
    return Collaborators(**vars(fakes))


@pytest.fixture
def repository():
    return InMemoryWorkflowRepository()


@pytest.fixture
def engine(collaborators, repository, config):
    return WorkflowEngine(WorkflowRegistry.default(), collaborators, repository, config=config)
