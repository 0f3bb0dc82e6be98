"""Hebrew calendar projection: Hebrew/Gregorian conversion with a bounded memo cache.

Month numbering follows the civil convention used by ``convertdate``:
Nisan = 1 … Elul = 6, Tishrei = 7 … Adar (Adar I in leap years) = 12,
Adar II = 13.  The Hebrew year begins on 1 Tishrei.

Projection of an anniversary into a later year normalizes the two
situations where the origin date does not exist in the target year:

- Adar II (13) in a common year is projected onto Adar (12).
- A day past the end of the month (30 Cheshvan/Kislev in a short year,
  30 Adar I in a common year) rolls over into the next month.
"""

from __future__ import annotations

import logging
from collections import OrderedDict
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from datetime import UTC, date, datetime

from convertdate import hebrew

logger = logging.getLogger(__name__)

NISAN = 1
ELUL = 6
TISHREI = 7
CHESHVAN = 8
KISLEV = 9
ADAR = 12
ADAR_II = 13

MIN_HEBREW_YEAR = 1
MAX_HEBREW_YEAR = 9999
MAX_MONTH_DAYS = 30

DEFAULT_CACHE_SIZE = 1000

Clock = Callable[[], date]


class HebrewDateError(ValueError):
    """Raised for Hebrew date components outside the calendar's ranges."""


def _utc_today() -> date:
    return datetime.now(UTC).date()


def is_leap_year(year: int) -> bool:
    return bool(hebrew.leap(year))


def months_in_year(year: int) -> int:
    return hebrew.year_months(year)


def days_in_month(month: int, year: int) -> int:
    if month == ADAR_II and not is_leap_year(year):
        month = ADAR
    return hebrew.month_length(year, month)


def _check_components(day: int, month: int, year: int) -> None:
    if not MIN_HEBREW_YEAR <= year <= MAX_HEBREW_YEAR:
        raise HebrewDateError(f"Hebrew year out of range: {year!r}")
    if not NISAN <= month <= ADAR_II:
        raise HebrewDateError(f"Hebrew month out of range: {month!r}")
    if not 1 <= day <= MAX_MONTH_DAYS:
        raise HebrewDateError(f"Hebrew day out of range: {day!r}")


def validate_hebrew_date(day: int, month: int, year: int) -> None:
    """Strictly validate that (day, month, year) names a real Hebrew date."""
    _check_components(day, month, year)
    if month > months_in_year(year):
        raise HebrewDateError(f"Hebrew year {year} has no month {month} (not a leap year)")
    length = days_in_month(month, year)
    if day > length:
        raise HebrewDateError(f"Hebrew month {month} of {year} has only {length} days")


def hebrew_to_gregorian(day: int, month: int, year: int) -> date:
    """Project a Hebrew date onto the Gregorian calendar."""
    _check_components(day, month, year)
    if month == ADAR_II and not is_leap_year(year):
        month = ADAR
    # convertdate counts days from the start of the month without clamping,
    # so an overflowing day lands in the following month.
    gy, gm, gd = hebrew.to_gregorian(year, month, day)
    return date(gy, gm, gd)


def hebrew_year_of(instant: date | datetime) -> int:
    """Return the Hebrew year whose span contains *instant*."""
    day = instant.date() if isinstance(instant, datetime) else instant
    return hebrew.from_gregorian(day.year, day.month, day.day)[0]


def format_event_title(title: str, anniversary: int) -> str:
    return f"({anniversary}) {title}" if anniversary > 0 else title


class ProjectionCache:
    """Size-bounded memo table for Hebrew→Gregorian projections.

    Eviction drops the least recently used key once ``maxsize`` is reached.
    """

    def __init__(self, maxsize: int = DEFAULT_CACHE_SIZE) -> None:
        if maxsize < 1:
            raise ValueError("maxsize must be at least 1")
        self.maxsize = maxsize
        self._entries: OrderedDict[tuple[int, int, int], date] = OrderedDict()

    def get(self, key: tuple[int, int, int]) -> date | None:
        value = self._entries.get(key)
        if value is not None:
            self._entries.move_to_end(key)
        return value

    def put(self, key: tuple[int, int, int], value: date) -> None:
        if key in self._entries:
            self._entries.move_to_end(key)
        elif len(self._entries) >= self.maxsize:
            self._entries.popitem(last=False)
        self._entries[key] = value

    def clear(self) -> None:
        self._entries.clear()

    def __contains__(self, key: object) -> bool:
        return key in self._entries

    def __len__(self) -> int:
        return len(self._entries)


@dataclass(frozen=True)
class ProjectedOccurrence:
    """One anniversary of a recurring event placed on a Gregorian date."""

    event_id: str
    title: str
    date: date
    hebrew_year: int
    anniversary: int


class DateProjector:
    """Calendar math service owning its own projection cache and clock."""

    def __init__(
        self,
        cache: ProjectionCache | None = None,
        clock: Clock | None = None,
    ) -> None:
        self.cache = cache if cache is not None else ProjectionCache()
        self._clock = clock or _utc_today

    def today(self) -> date:
        return self._clock()

    def current_hebrew_year(self) -> int:
        return hebrew_year_of(self._clock())

    def hebrew_to_gregorian(self, day: int, month: int, year: int) -> date:
        return hebrew_to_gregorian(day, month, year)

    def hebrew_year_of(self, instant: date | datetime) -> int:
        return hebrew_year_of(instant)

    def cached_hebrew_to_gregorian(self, day: int, month: int, year: int) -> date:
        key = (day, month, year)
        cached = self.cache.get(key)
        if cached is not None:
            return cached
        projected = hebrew_to_gregorian(day, month, year)
        self.cache.put(key, projected)
        return projected

    def clear_cache(self) -> None:
        self.cache.clear()

    def generate_occurrences_in_range(
        self,
        events: Iterable,
        range_start: date,
        range_end: date,
    ) -> list[ProjectedOccurrence]:
        """Project every yearly event into ``[range_start, range_end]``.

        Years before an event's origin year are never projected, even when
        the range reaches further back.
        """
        if range_end < range_start:
            return []

        first_year = hebrew_year_of(range_start)
        last_year = hebrew_year_of(range_end)
        occurrences: list[ProjectedOccurrence] = []

        for event in events:
            if not _is_yearly(event):
                continue
            for year in range(max(first_year, event.hebrew_year), last_year + 1):
                projected = self.cached_hebrew_to_gregorian(
                    event.hebrew_day, event.hebrew_month, year
                )
                if not range_start <= projected <= range_end:
                    continue
                anniversary = year - event.hebrew_year
                occurrences.append(
                    ProjectedOccurrence(
                        event_id=str(event.id),
                        title=format_event_title(event.title, anniversary),
                        date=projected,
                        hebrew_year=year,
                        anniversary=anniversary,
                    )
                )

        occurrences.sort(key=lambda occ: (occ.date, occ.event_id))
        return occurrences


def _is_yearly(event: object) -> bool:
    rule = getattr(event, "recurrence_rule", "yearly")
    return str(rule) == "yearly"
