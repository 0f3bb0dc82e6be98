"""Sync windows and year-progression status for recurring events."""

from __future__ import annotations

from dataclasses import dataclass, field

from luach.models import RecurringEvent
from luach.projector import DateProjector

# Years kept materialized on either side of "now".
WINDOW_PAST_YEARS = 10
WINDOW_FUTURE_YEARS = 10


@dataclass(frozen=True)
class SyncWindow:
    """Inclusive range of Hebrew years that should have occurrences."""

    start: int
    end: int

    def __post_init__(self) -> None:
        if self.end < self.start:
            raise ValueError(f"SyncWindow end ({self.end}) precedes start ({self.start})")

    def years(self) -> list[int]:
        return list(range(self.start, self.end + 1))

    def __len__(self) -> int:
        return self.end - self.start + 1

    def __contains__(self, year: object) -> bool:
        return isinstance(year, int) and self.start <= year <= self.end


@dataclass(frozen=True)
class YearProgressionStatus:
    event_id: str
    title: str
    origin_year: int
    last_synced_year: int
    current_year: int
    years_needing_sync: list[int] = field(default_factory=list)

    @property
    def needs_update(self) -> bool:
        return bool(self.years_needing_sync)


def calculate_initial_window(origin_year: int, current_year: int) -> SyncWindow:
    """Window populated when an event is first synced.

    Distant-past events get a rolling window centred on now rather than a
    full back-fill; recent and present events back-fill from their origin;
    future events start at their origin.
    """
    if origin_year < current_year - WINDOW_PAST_YEARS:
        return SyncWindow(current_year - WINDOW_PAST_YEARS, current_year + WINDOW_FUTURE_YEARS)
    if origin_year <= current_year:
        return SyncWindow(origin_year, current_year + WINDOW_FUTURE_YEARS)
    return SyncWindow(origin_year, origin_year + WINDOW_FUTURE_YEARS)


def years_needing_sync(watermark: int, current_year: int) -> list[int]:
    return list(range(watermark + 1, current_year + 1))


def check_progression(event: RecurringEvent, current_year: int) -> YearProgressionStatus:
    last_synced = event.watermark
    due = years_needing_sync(last_synced, current_year) if event.is_yearly else []
    return YearProgressionStatus(
        event_id=event.id,
        title=event.title,
        origin_year=event.hebrew_year,
        last_synced_year=last_synced,
        current_year=current_year,
        years_needing_sync=due,
    )


class WindowCalculator:
    """Window math bound to a projector's notion of the current Hebrew year."""

    def __init__(self, projector: DateProjector) -> None:
        self._projector = projector

    def current_year(self) -> int:
        return self._projector.current_hebrew_year()

    def initial_window(self, origin_year: int) -> SyncWindow:
        return calculate_initial_window(origin_year, self.current_year())

    def progression(self, event: RecurringEvent) -> YearProgressionStatus:
        return check_progression(event, self.current_year())
