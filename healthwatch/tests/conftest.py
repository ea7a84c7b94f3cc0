# Copyright (c) Meta Platforms, Inc. and affiliates.
# All rights reserved.
import pytest

from healthwatch.health_watch.evaluators import MonitorContext
from healthwatch.health_watch.memory_store import InMemorySampleStore
from healthwatch.health_watch.uncontained_errors import UncontainedErrorTracker
from healthwatch.schemas.health_watch.incident import HealthResponse
from healthwatch.tests.fakes import FakeClock


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def store() -> InMemorySampleStore:
    return InMemorySampleStore()


@pytest.fixture
def tracker() -> UncontainedErrorTracker:
    return UncontainedErrorTracker()


@pytest.fixture
def ctx(
    store: InMemorySampleStore, clock: FakeClock, tracker: UncontainedErrorTracker
) -> MonitorContext:
    return MonitorContext(store=store, clock=clock, tracker=tracker)


@pytest.fixture
def response() -> HealthResponse:
    return HealthResponse()
