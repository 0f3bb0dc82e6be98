"""Event lifecycle: create-and-populate, manual sync, delete and sync status."""

from __future__ import annotations

import asyncio
import logging

from luach.errors import EventAlreadySyncedError, EventNotFoundError
from luach.google_calendar import CalendarClient, CalendarResolver, is_calendar_not_found
from luach.models import NewRecurringEvent, RecurrenceRule, RecurringEvent
from luach.retry import RetryPolicy, Sleep, external_policy, with_retry
from luach.store import EventStore
from luach.sync import SyncOrchestrator, SyncResult
from luach.window import WindowCalculator

logger = logging.getLogger(__name__)


class EventService:
    def __init__(
        self,
        store: EventStore,
        orchestrator: SyncOrchestrator,
        windows: WindowCalculator,
        resolver: CalendarResolver,
        *,
        external_retry: RetryPolicy | None = None,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self._store = store
        self._orchestrator = orchestrator
        self._windows = windows
        self._resolver = resolver
        self._external_retry = external_retry or external_policy()
        self._sleep = sleep

    async def create_event(
        self,
        user_id: str,
        payload: NewRecurringEvent,
        *,
        client: CalendarClient,
        calendar_id: str,
    ) -> tuple[RecurringEvent, SyncResult]:
        """Persist a new event and populate its initial window of occurrences.

        The stored watermark is the window's last year; if some years fail
        they are listed in the returned result and are not retried by
        progression.
        Events that do not recur yearly are stored without occurrences.
        """
        window = self._windows.initial_window(payload.hebrew_year)
        yearly = payload.recurrence_rule == RecurrenceRule.YEARLY
        event = await self._store.create_event(
            RecurringEvent.from_new(
                payload,
                user_id=user_id,
                last_synced_hebrew_year=window.end if yearly else None,
            )
        )
        if not yearly:
            logger.info(
                "Created %s event %s for user %s; not materialized",
                event.recurrence_rule,
                event.id,
                user_id,
            )
            return event, SyncResult(event_id=event.id, calendar_id=calendar_id)
        logger.info(
            "Created event %s for user %s; populating years %d-%d",
            event.id,
            user_id,
            window.start,
            window.end,
        )
        result = await self._orchestrator.sync_years(
            event,
            window.years(),
            client=client,
            user_id=user_id,
            calendar_id=calendar_id,
        )
        return event, result

    async def sync_event(
        self,
        event_id: str,
        user_id: str,
        *,
        client: CalendarClient,
        calendar_id: str | None = None,
    ) -> SyncResult:
        """Populate the initial window of an event that has no occurrences yet."""
        event = await self._store.get_event(event_id, user_id)
        if event is None:
            raise EventNotFoundError(event_id)
        if await self._store.is_event_synced(event_id):
            raise EventAlreadySyncedError(event_id)
        if not event.is_yearly:
            return SyncResult(event_id=event_id, calendar_id=calendar_id)

        if not calendar_id:
            calendar_id = await self._store.get_user_calendar_id(user_id)
        if not calendar_id:
            resolution = await self._resolver.ensure_calendar_exists(client, user_id)
            calendar_id = resolution.calendar_id

        window = self._windows.initial_window(event.hebrew_year)
        return await self._orchestrator.sync_years(
            event,
            window.years(),
            client=client,
            user_id=user_id,
            calendar_id=calendar_id,
        )

    async def delete_event(
        self,
        event_id: str,
        user_id: str,
        *,
        client: CalendarClient,
        calendar_id: str,
    ) -> None:
        """Remove an event's calendar entries, then the event and its occurrences."""
        event = await self._store.get_event(event_id, user_id)
        if event is None:
            raise EventNotFoundError(event_id)

        for occurrence in await self._store.get_occurrences(event_id):
            try:
                await with_retry(
                    lambda entry_id=occurrence.google_event_id: client.delete_entry(
                        calendar_id, entry_id
                    ),
                    self._external_retry,
                    operation_name=f"delete entry {occurrence.google_event_id}",
                    sleep=self._sleep,
                )
            except Exception as exc:
                if not is_calendar_not_found(exc):
                    raise
                logger.info(
                    "Calendar entry %s already gone; continuing", occurrence.google_event_id
                )

        await self._store.delete_event(event_id, user_id)
        logger.info("Deleted event %s for user %s", event_id, user_id)

    async def sync_status(self, event_id: str, user_id: str) -> bool:
        event = await self._store.get_event(event_id, user_id)
        if event is None:
            raise EventNotFoundError(event_id)
        return await self._store.is_event_synced(event_id)

    async def sync_statuses(self, event_ids: list[str]) -> dict[str, bool]:
        return await self._store.get_events_sync_status(event_ids)
