"""Shared fixtures for the luach test suite."""

from __future__ import annotations

import pytest

from luach.google_calendar import CalendarResolver
from luach.projector import DateProjector
from luach.retry import external_policy, store_policy
from luach.sync import SyncOrchestrator
from luach.window import WindowCalculator
from tests.fakes import TODAY, FakeCalendarClient, InMemoryEventStore, RecordingSleep


@pytest.fixture
def projector() -> DateProjector:
    return DateProjector(clock=lambda: TODAY)


@pytest.fixture
def windows(projector: DateProjector) -> WindowCalculator:
    return WindowCalculator(projector)


@pytest.fixture
def store() -> InMemoryEventStore:
    store = InMemoryEventStore()
    store.add_user("user-1")
    return store


@pytest.fixture
def client() -> FakeCalendarClient:
    return FakeCalendarClient()


@pytest.fixture
def resolver(store: InMemoryEventStore) -> CalendarResolver:
    return CalendarResolver(store)


@pytest.fixture
def sleep() -> RecordingSleep:
    return RecordingSleep()


@pytest.fixture
def orchestrator(
    store: InMemoryEventStore,
    resolver: CalendarResolver,
    projector: DateProjector,
    sleep: RecordingSleep,
) -> SyncOrchestrator:
    return SyncOrchestrator(
        store,
        resolver,
        projector,
        external_retry=external_policy(),
        store_retry=store_policy(),
        sleep=sleep,
    )
