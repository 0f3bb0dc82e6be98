"""Tests for the event lifecycle service."""

from __future__ import annotations

import pytest

from luach.errors import EventAlreadySyncedError, EventNotFoundError
from luach.events import EventService
from luach.google_calendar import CalendarRequestError
from luach.models import NewRecurringEvent, RecurrenceRule
from luach.projector import hebrew_to_gregorian
from tests.fakes import CURRENT_YEAR, FakeCalendarClient, make_event

pytestmark = pytest.mark.unit


@pytest.fixture
def service(store, orchestrator, windows, resolver, sleep) -> EventService:
    return EventService(store, orchestrator, windows, resolver, sleep=sleep)


class TestCreateEvent:
    async def test_distant_past_event_populates_rolling_window(self, service, store, client):
        payload = NewRecurringEvent(
            title="Yahrzeit", hebrew_day=1, hebrew_month=7, hebrew_year=CURRENT_YEAR - 15
        )

        event, result = await service.create_event(
            "user-1", payload, client=client, calendar_id="cal-1"
        )

        expected_years = list(range(CURRENT_YEAR - 10, CURRENT_YEAR + 11))
        assert len(expected_years) == 21
        assert result.synced_years == expected_years
        assert result.errors == []
        assert len(await store.get_occurrences(event.id)) == 21
        assert store.events[event.id].last_synced_hebrew_year == CURRENT_YEAR + 10
        assert client.entry_dates() == [hebrew_to_gregorian(1, 7, y) for y in expected_years]

    async def test_recent_event_backfills_from_origin(self, service, store, client):
        payload = NewRecurringEvent(
            title="Wedding", hebrew_day=15, hebrew_month=1, hebrew_year=CURRENT_YEAR - 3
        )

        event, result = await service.create_event(
            "user-1", payload, client=client, calendar_id="cal-1"
        )

        assert result.synced_years[0] == CURRENT_YEAR - 3
        assert result.synced_years[-1] == CURRENT_YEAR + 10
        assert store.events[event.id].watermark == CURRENT_YEAR + 10
        titles = sorted(entry.summary for entry in client.entries["cal-1"].values())
        assert "Wedding" in titles
        assert "(13) Wedding" in titles

    async def test_watermark_is_window_end_even_with_failures(self, service, store, client):
        payload = NewRecurringEvent(
            title="Birthday", hebrew_day=1, hebrew_month=7, hebrew_year=CURRENT_YEAR
        )
        client.always_fail_dates[hebrew_to_gregorian(1, 7, CURRENT_YEAR + 10)] = (
            CalendarRequestError(status_code=400, message="rejected")
        )

        event, result = await service.create_event(
            "user-1", payload, client=client, calendar_id="cal-1"
        )

        assert result.failed_years == [CURRENT_YEAR + 10]
        assert store.events[event.id].last_synced_hebrew_year == CURRENT_YEAR + 10

    async def test_monthly_event_is_stored_but_not_materialized(self, service, store, client):
        payload = NewRecurringEvent(
            title="Rosh Chodesh",
            hebrew_day=1,
            hebrew_month=7,
            hebrew_year=CURRENT_YEAR,
            recurrence_rule=RecurrenceRule.MONTHLY,
        )

        event, result = await service.create_event(
            "user-1", payload, client=client, calendar_id="cal-1"
        )

        assert client.insert_calls == []
        assert result.synced_years == []
        assert result.errors == []
        assert event.id in store.events
        assert store.events[event.id].last_synced_hebrew_year is None
        assert await store.get_occurrences(event.id) == []


class TestSyncEvent:
    async def test_unsynced_event_is_populated(self, service, store, client):
        event = await store.create_event(make_event(year=CURRENT_YEAR - 1))

        result = await service.sync_event(event.id, "user-1", client=client)

        assert result.synced_years == list(range(CURRENT_YEAR - 1, CURRENT_YEAR + 11))
        assert result.calendar_id == "cal-1"

    async def test_already_synced_event_is_rejected(self, service, store, client):
        event = await store.create_event(make_event(year=CURRENT_YEAR - 1))
        await service.sync_event(event.id, "user-1", client=client)

        with pytest.raises(EventAlreadySyncedError):
            await service.sync_event(event.id, "user-1", client=client)

    async def test_other_users_event_is_not_found(self, service, store, client):
        event = await store.create_event(make_event(user_id="someone-else"))

        with pytest.raises(EventNotFoundError):
            await service.sync_event(event.id, "user-1", client=client)

    async def test_calendar_is_resolved_when_user_has_none(self, service, store):
        store.add_user("user-2", calendar_id=None)
        client = FakeCalendarClient(calendars={})
        event = await store.create_event(make_event(user_id="user-2", year=CURRENT_YEAR))

        result = await service.sync_event(event.id, "user-2", client=client)

        assert result.calendar_id in client.calendars
        assert store.users["user-2"]["calendar_id"] == result.calendar_id
        assert len(result.synced_years) == 11

    async def test_weekly_event_sync_writes_nothing(self, service, store, client):
        event = await store.create_event(
            make_event(year=CURRENT_YEAR, recurrence_rule=RecurrenceRule.WEEKLY)
        )

        result = await service.sync_event(event.id, "user-1", client=client)

        assert result.synced_years == []
        assert client.insert_calls == []


class TestDeleteEvent:
    async def test_removes_calendar_entries_and_event(self, service, store, client):
        event, _ = await service.create_event(
            "user-1",
            NewRecurringEvent(title="x", hebrew_day=1, hebrew_month=7, hebrew_year=CURRENT_YEAR),
            client=client,
            calendar_id="cal-1",
        )

        await service.delete_event(event.id, "user-1", client=client, calendar_id="cal-1")

        assert client.entries["cal-1"] == {}
        assert event.id not in store.events
        assert await store.get_occurrences(event.id) == []

    async def test_already_deleted_entries_are_ignored(self, service, store, client):
        event, _ = await service.create_event(
            "user-1",
            NewRecurringEvent(title="x", hebrew_day=1, hebrew_month=7, hebrew_year=CURRENT_YEAR),
            client=client,
            calendar_id="cal-1",
        )
        client.entries["cal-1"].clear()

        await service.delete_event(event.id, "user-1", client=client, calendar_id="cal-1")

        assert event.id not in store.events

    async def test_missing_event(self, service, client):
        with pytest.raises(EventNotFoundError):
            await service.delete_event("missing", "user-1", client=client, calendar_id="cal-1")


class TestSyncStatus:
    async def test_reports_per_event_status(self, service, store, client):
        synced = await store.create_event(make_event(year=CURRENT_YEAR))
        unsynced = await store.create_event(make_event(year=CURRENT_YEAR))
        await service.sync_event(synced.id, "user-1", client=client)

        assert await service.sync_status(synced.id, "user-1") is True
        assert await service.sync_status(unsynced.id, "user-1") is False
        assert await service.sync_statuses([synced.id, unsynced.id]) == {
            synced.id: True,
            unsynced.id: False,
        }
