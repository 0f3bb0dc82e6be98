"""Domain errors raised by the event and sync services."""

from __future__ import annotations


class LuachError(Exception):
    """Base class for Luach domain errors."""


class EventNotFoundError(LuachError):
    def __init__(self, event_id: str) -> None:
        self.event_id = event_id
        super().__init__(f"Event not found: {event_id}")


class EventAlreadySyncedError(LuachError):
    def __init__(self, event_id: str) -> None:
        self.event_id = event_id
        super().__init__(f"Event {event_id} already has synced occurrences")


class OccurrencePersistError(LuachError):
    """Raised when external entries were created but could not be recorded locally.

    Attributes:
        event_id: The event whose occurrences failed to persist.
        synced_years: Hebrew years whose external entries now exist.
    """

    def __init__(self, event_id: str, synced_years: list[int], cause: BaseException) -> None:
        self.event_id = event_id
        self.synced_years = list(synced_years)
        super().__init__(
            f"Failed to persist {len(self.synced_years)} occurrence(s) for event {event_id} "
            f"after creating calendar entries for years {self.synced_years}: {cause}"
        )


class WatermarkConflictError(LuachError):
    """Raised when the watermark changed between read and compare-and-swap."""

    def __init__(self, event_id: str, expected: int | None, attempted: int) -> None:
        self.event_id = event_id
        self.expected = expected
        self.attempted = attempted
        super().__init__(
            f"Watermark conflict on event {event_id}: expected {expected!r}, "
            f"could not advance to {attempted}"
        )
