from datetime import datetime, timedelta, timezone

import pytest

from practice_crm.services.client_population import InMemoryClientPopulation
from practice_crm.services.segment_evaluator import RuleEvaluator
from practice_crm.services.segment_registry import SegmentRegistry


CLIENTS = [
    {"id": 1, "status": "active", "lastSession": 45, "diagnoses": ["anxiety", "ptsd"], "lifetimeValue": 100},
    {"id": 2, "status": "inactive", "lastSession": 45, "diagnoses": ["ptsd"], "lifetimeValue": 500},
    {"id": 3, "status": "active", "lastSession": 10, "diagnoses": ["depression"], "lifetimeValue": 501},
    {"id": 4, "status": "active", "lastSession": 90, "diagnoses": [], "lifetimeValue": 50},
]

ACTIVE_FILTER = {
    "matchType": "all",
    "conditions": [
        {"id": "c1", "field": "lastSession", "operator": "lessThan", "value": 60},
        {"id": "c2", "field": "status", "operator": "equals", "value": "active"},
    ],
}


class FakeClock:
    """Deterministic clock; every call advances one second."""

    def __init__(self):
        self.now = datetime(2026, 1, 1, tzinfo=timezone.utc)

    def __call__(self):
        self.now = self.now + timedelta(seconds=1)
        return self.now


@pytest.fixture
def evaluator() -> RuleEvaluator:
    return RuleEvaluator()


@pytest.fixture
def population() -> InMemoryClientPopulation:
    return InMemoryClientPopulation([dict(c) for c in CLIENTS])


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def registry(population, clock) -> SegmentRegistry:
    return SegmentRegistry(population, clock=clock)
