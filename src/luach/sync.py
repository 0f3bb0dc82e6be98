"""Replicate a recurring event's yearly occurrences into the user's calendar.

``SyncOrchestrator.sync_years`` makes the external calendar hold one all-day
entry for each requested Hebrew year of an event, records the created entries
locally in a single batch, and then advances the event's watermark.

Each year is independent: a failed year is reported on the result and the
remaining years are still attempted.  The first insert of a run gets one
chance to recover from a deleted calendar by resolving (or recreating) the
user's calendar and retrying.
"""

from __future__ import annotations

import asyncio
import logging
import weakref
from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import date

from opentelemetry import trace

from luach.errors import EventNotFoundError, OccurrencePersistError, WatermarkConflictError
from luach.google_calendar import (
    CalendarClient,
    CalendarEntry,
    CalendarResolver,
    is_calendar_not_found,
)
from luach.models import EventOccurrence, RecurringEvent
from luach.projector import DateProjector, format_event_title
from luach.retry import RetryPolicy, Sleep, describe_failure, external_policy, store_policy, with_retry
from luach.store import EventStore

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class YearSyncError:
    year: int
    message: str
    retryable: bool = False
    status_code: int | None = None


@dataclass
class SyncResult:
    event_id: str
    requested_years: list[int] = field(default_factory=list)
    synced_years: list[int] = field(default_factory=list)
    errors: list[YearSyncError] = field(default_factory=list)
    watermark: int | None = None
    calendar_id: str | None = None
    calendar_replaced: bool = False

    @property
    def success(self) -> bool:
        return not self.errors

    @property
    def first_error(self) -> str | None:
        return self.errors[0].message if self.errors else None

    @property
    def failed_years(self) -> list[int]:
        return [error.year for error in self.errors if error.year > 0]


class SyncOrchestrator:
    def __init__(
        self,
        store: EventStore,
        resolver: CalendarResolver,
        projector: DateProjector,
        *,
        external_retry: RetryPolicy | None = None,
        store_retry: RetryPolicy | None = None,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self._store = store
        self._resolver = resolver
        self._projector = projector
        self._external_retry = external_retry or external_policy()
        self._store_retry = store_retry or store_policy()
        self._sleep = sleep
        self._locks: weakref.WeakValueDictionary[str, asyncio.Lock] = (
            weakref.WeakValueDictionary()
        )
        self._tracer = trace.get_tracer("luach")

    def _lock_for(self, event_id: str) -> asyncio.Lock:
        lock = self._locks.get(event_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[event_id] = lock
        return lock

    async def sync_years(
        self,
        event: RecurringEvent,
        years: Iterable[int],
        *,
        client: CalendarClient,
        user_id: str,
        calendar_id: str,
    ) -> SyncResult:
        """Materialize *years* of *event* in the calendar *calendar_id*.

        Only yearly events are materialized; any other recurrence yields an
        empty result. A missing calendar is recovered at most once per run, on
        the first year that needs a new entry. Years already recorded locally
        or adopted from a tagged entry do not use up that attempt.

        Raises:
            EventNotFoundError: The event was deleted before the run started.
            HebrewDateError: A year could not be projected.
            OccurrencePersistError: Calendar entries were created but the local
                batch insert failed.
        """
        if not event.is_yearly:
            logger.debug(
                "Event %s recurs %s; no occurrences to materialize",
                event.id,
                event.recurrence_rule,
            )
            years = ()
        requested = sorted(set(years))
        result = SyncResult(event_id=event.id, requested_years=requested, calendar_id=calendar_id)
        if not requested:
            result.watermark = event.last_synced_hebrew_year
            return result

        lock = self._lock_for(event.id)
        with self._tracer.start_as_current_span("luach.sync.event") as span:
            span.set_attribute("luach.event_id", event.id)
            span.set_attribute("luach.years.requested", len(requested))
            async with lock:
                await self._sync_locked(event.id, requested, result, client, user_id)
            span.set_attribute("luach.years.synced", len(result.synced_years))
            span.set_attribute("luach.years.failed", len(result.errors))
        return result

    async def _sync_locked(
        self,
        event_id: str,
        requested: list[int],
        result: SyncResult,
        client: CalendarClient,
        user_id: str,
    ) -> None:
        current = await self._store.get_event(event_id)
        if current is None:
            raise EventNotFoundError(event_id)
        expected = current.last_synced_hebrew_year
        result.watermark = expected

        local_dates = {occ.gregorian_date for occ in await self._store.get_occurrences(event_id)}
        calendar_id = result.calendar_id or ""
        external = await self._tagged_entries(client, calendar_id, event_id)

        staged: list[tuple[int, EventOccurrence]] = []
        healing_available = True

        for year in requested:
            occurrence_date = self._projector.cached_hebrew_to_gregorian(
                current.hebrew_day, current.hebrew_month, year
            )
            if occurrence_date in local_dates:
                result.synced_years.append(year)
                continue

            entry_id = external.get(occurrence_date)
            if entry_id is not None:
                logger.info(
                    "Adopting existing calendar entry %s for event %s year %d",
                    entry_id,
                    event_id,
                    year,
                )
            else:
                entry = self._build_entry(current, year, occurrence_date)
                first_insert = healing_available
                healing_available = False
                try:
                    entry_id = await self._insert(client, calendar_id, entry, year)
                except Exception as exc:
                    if not (first_insert and is_calendar_not_found(exc)):
                        self._record_failure(result, year, exc)
                        continue
                    logger.warning(
                        "Calendar %s not found for user %s; resolving a replacement",
                        calendar_id,
                        user_id,
                    )
                    try:
                        resolution = await self._resolver.ensure_calendar_exists(
                            client, user_id, calendar_id
                        )
                        calendar_id = resolution.calendar_id
                        result.calendar_id = calendar_id
                        result.calendar_replaced = True
                        external = {}
                        entry_id = await self._insert(client, calendar_id, entry, year)
                    except Exception as retry_exc:
                        self._record_failure(result, year, retry_exc)
                        continue

            staged.append(
                (
                    year,
                    EventOccurrence(
                        event_id=event_id,
                        gregorian_date=occurrence_date,
                        google_event_id=entry_id,
                    ),
                )
            )
            local_dates.add(occurrence_date)
            result.synced_years.append(year)

        if staged:
            await self._persist(event_id, staged)

        if result.synced_years:
            await self._advance_watermark(current, expected, result)

    async def _tagged_entries(
        self, client: CalendarClient, calendar_id: str, event_id: str
    ) -> dict[date, str]:
        try:
            entries = await client.find_entries_by_tag(calendar_id, event_id)
        except Exception as exc:
            logger.warning(
                "Could not list existing calendar entries for event %s: %s", event_id, exc
            )
            return {}
        found: dict[date, str] = {}
        for entry in entries:
            if entry.date is not None and entry.provenance_tag == event_id:
                found.setdefault(entry.date, entry.entry_id)
        return found

    @staticmethod
    def _build_entry(event: RecurringEvent, year: int, occurrence_date: date) -> CalendarEntry:
        return CalendarEntry(
            summary=format_event_title(event.title, year - event.hebrew_year),
            description=event.description,
            date=occurrence_date,
            provenance_tag=event.id,
        )

    async def _insert(
        self, client: CalendarClient, calendar_id: str, entry: CalendarEntry, year: int
    ) -> str:
        return await with_retry(
            lambda: client.insert_entry(calendar_id, entry),
            self._external_retry,
            operation_name=f"insert entry for year {year}",
            sleep=self._sleep,
        )

    def _record_failure(self, result: SyncResult, year: int, exc: BaseException) -> None:
        info = describe_failure(exc, self._external_retry)
        logger.error(
            "Failed to sync event %s year %d (%s, retryable=%s): %s",
            result.event_id,
            year,
            info.code,
            info.retryable,
            info.message,
        )
        result.errors.append(
            YearSyncError(
                year=year,
                message=info.message,
                retryable=info.retryable,
                status_code=info.status_code,
            )
        )

    async def _persist(self, event_id: str, staged: list[tuple[int, EventOccurrence]]) -> None:
        occurrences = [occ for _, occ in staged]
        try:
            await with_retry(
                lambda: self._store.create_occurrences_batch(occurrences),
                self._store_retry,
                operation_name=f"persist occurrences for event {event_id}",
                sleep=self._sleep,
            )
        except Exception as exc:
            years = [year for year, _ in staged]
            logger.error(
                "Calendar entries exist for event %s years %s but were not recorded locally",
                event_id,
                years,
            )
            raise OccurrencePersistError(event_id, years, exc) from exc

    async def _advance_watermark(
        self, event: RecurringEvent, expected: int | None, result: SyncResult
    ) -> None:
        target = max(result.synced_years)
        if target <= event.watermark:
            return

        skipped = [year for year in result.failed_years if year < target]
        if skipped:
            logger.warning(
                "Advancing watermark of event %s to %d past failed years %s",
                event.id,
                target,
                skipped,
            )

        advanced = await with_retry(
            lambda: self._store.update_watermark(event.id, target, expected=expected),
            self._store_retry,
            operation_name=f"advance watermark for event {event.id}",
            sleep=self._sleep,
        )
        if advanced:
            result.watermark = target
            return

        # A retried CAS whose first attempt committed reads back as a loss.
        refreshed = await self._store.get_event(event.id)
        if refreshed is not None and refreshed.last_synced_hebrew_year == target:
            logger.info(
                "Watermark of event %s already at %d after a retried update", event.id, target
            )
            result.watermark = target
            return

        conflict = WatermarkConflictError(event.id, expected, target)
        result.errors.append(YearSyncError(year=0, message=str(conflict)))
        if refreshed is not None:
            result.watermark = refreshed.last_synced_hebrew_year
