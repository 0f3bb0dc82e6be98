"""Year progression: catching events up as the Hebrew year advances."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import UTC, datetime

from luach.google_calendar import CalendarClient
from luach.store import EventStore
from luach.sync import SyncOrchestrator, SyncResult
from luach.window import WindowCalculator, YearProgressionStatus

logger = logging.getLogger(__name__)


@dataclass
class UserProgressionResult:
    user_id: str
    total_events: int = 0
    events_needing_update: int = 0
    events_updated: int = 0
    events_failed: int = 0
    errors: list[str] = field(default_factory=list)
    updated_events: list[str] = field(default_factory=list)


@dataclass(frozen=True)
class ProgressionSummary:
    total_events: int
    events_needing_update: int
    events_up_to_date: int
    last_checked: datetime


class ProgressionService:
    def __init__(
        self,
        store: EventStore,
        orchestrator: SyncOrchestrator,
        windows: WindowCalculator,
    ) -> None:
        self._store = store
        self._orchestrator = orchestrator
        self._windows = windows

    async def check_event(self, event_id: str, user_id: str) -> YearProgressionStatus | None:
        event = await self._store.get_event(event_id, user_id)
        if event is None:
            return None
        return self._windows.progression(event)

    async def check_user(self, user_id: str) -> list[YearProgressionStatus]:
        """Return the progression status of every event that has years due."""
        statuses = [
            self._windows.progression(event)
            for event in await self._store.get_events_for_user(user_id)
        ]
        return [status for status in statuses if status.needs_update]

    async def sync_event_new_years(
        self,
        event_id: str,
        user_id: str,
        *,
        client: CalendarClient,
        calendar_id: str,
    ) -> SyncResult:
        event = await self._store.get_event(event_id, user_id)
        if event is None:
            return SyncResult(event_id=event_id, calendar_id=calendar_id)
        status = self._windows.progression(event)
        if not status.needs_update:
            return SyncResult(
                event_id=event_id,
                watermark=event.last_synced_hebrew_year,
                calendar_id=calendar_id,
            )

        logger.info(
            "Event %s needs years %s (watermark %d, current %d)",
            event_id,
            status.years_needing_sync,
            status.last_synced_year,
            status.current_year,
        )
        return await self._orchestrator.sync_years(
            event,
            status.years_needing_sync,
            client=client,
            user_id=user_id,
            calendar_id=calendar_id,
        )

    async def process_user(
        self,
        user_id: str,
        *,
        client: CalendarClient,
        calendar_id: str,
    ) -> UserProgressionResult:
        """Catch up every event of *user_id* that has years due.

        One event's failure is recorded and the remaining events still run.
        """
        events = await self._store.get_events_for_user(user_id)
        result = UserProgressionResult(user_id=user_id, total_events=len(events))

        for event in events:
            status = self._windows.progression(event)
            if not status.needs_update:
                continue
            result.events_needing_update += 1
            try:
                sync = await self._orchestrator.sync_years(
                    event,
                    status.years_needing_sync,
                    client=client,
                    user_id=user_id,
                    calendar_id=calendar_id,
                )
            except Exception as exc:
                logger.error(
                    "Progression failed for event %s of user %s",
                    event.id,
                    user_id,
                    exc_info=True,
                )
                result.events_failed += 1
                result.errors.append(f"{event.title}: {exc}")
                continue

            # A replaced calendar becomes the target for the rest of this user's events.
            if sync.calendar_id:
                calendar_id = sync.calendar_id

            if sync.synced_years:
                result.events_updated += 1
                result.updated_events.append(event.id)
            elif sync.errors:
                result.events_failed += 1
            result.errors.extend(
                f"{event.title} ({error.year}): {error.message}" for error in sync.errors
            )

        if result.events_needing_update:
            logger.info(
                "User %s progression: %d updated, %d failed of %d due",
                user_id,
                result.events_updated,
                result.events_failed,
                result.events_needing_update,
            )
        return result

    async def summary(self, user_id: str) -> ProgressionSummary:
        events = await self._store.get_events_for_user(user_id)
        needing = sum(1 for event in events if self._windows.progression(event).needs_update)
        return ProgressionSummary(
            total_events=len(events),
            events_needing_update=needing,
            events_up_to_date=len(events) - needing,
            last_checked=datetime.now(UTC),
        )
