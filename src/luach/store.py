"""Persistence for users, recurring events and their occurrences.

``EventStore`` is the interface the services depend on;
``PostgresEventStore`` implements it on an asyncpg pool. Tables are created
and evolved by the Alembic chain under ``alembic/versions/luach``.
"""

from __future__ import annotations

import abc
import logging
from collections.abc import Iterable, Sequence
from datetime import datetime
from typing import Any

import asyncpg

from luach.models import EventOccurrence, RecurringEvent, SyncUser, UserTokens

logger = logging.getLogger(__name__)

_EVENT_COLUMNS = (
    "id, user_id, title, description, hebrew_year, hebrew_month, hebrew_day, "
    "recurrence_rule, last_synced_hebrew_year, created_at, updated_at"
)
_OCCURRENCE_COLUMNS = "id, event_id, gregorian_date, google_event_id, created_at"


class EventStore(abc.ABC):
    """Storage operations used by the event, sync and progression services."""

    @abc.abstractmethod
    async def create_event(self, event: RecurringEvent) -> RecurringEvent: ...

    @abc.abstractmethod
    async def get_event(self, event_id: str, user_id: str | None = None) -> RecurringEvent | None:
        """Return the event, scoped to *user_id* when given."""
        ...

    @abc.abstractmethod
    async def get_events_for_user(self, user_id: str) -> list[RecurringEvent]: ...

    @abc.abstractmethod
    async def delete_event(self, event_id: str, user_id: str) -> bool: ...

    @abc.abstractmethod
    async def create_occurrence(self, occurrence: EventOccurrence) -> EventOccurrence: ...

    @abc.abstractmethod
    async def create_occurrences_batch(
        self, occurrences: Sequence[EventOccurrence]
    ) -> list[EventOccurrence]:
        """Insert all *occurrences* atomically: either every row lands or none."""
        ...

    @abc.abstractmethod
    async def get_occurrences(self, event_id: str) -> list[EventOccurrence]: ...

    @abc.abstractmethod
    async def is_event_synced(self, event_id: str) -> bool: ...

    @abc.abstractmethod
    async def get_events_sync_status(self, event_ids: Iterable[str]) -> dict[str, bool]: ...

    @abc.abstractmethod
    async def update_watermark(self, event_id: str, year: int, *, expected: int | None) -> bool:
        """Set the watermark to *year* only if it still equals *expected*.

        Returns False when another writer changed it first.
        """
        ...

    @abc.abstractmethod
    async def list_users_with_sync_enabled(self) -> list[SyncUser]: ...

    @abc.abstractmethod
    async def get_user_calendar_id(self, user_id: str) -> str | None: ...

    @abc.abstractmethod
    async def update_user_calendar_id(self, user_id: str, calendar_id: str) -> None: ...

    @abc.abstractmethod
    async def set_sync_enabled(self, user_id: str, enabled: bool) -> None: ...

    @abc.abstractmethod
    async def get_user_tokens(self, user_id: str) -> UserTokens | None: ...

    @abc.abstractmethod
    async def update_user_tokens(
        self,
        user_id: str,
        *,
        access_token: str,
        refresh_token: str,
        expires_at: datetime | None = None,
    ) -> None: ...


def _event_from_row(row: Any) -> RecurringEvent:
    return RecurringEvent.model_validate(dict(row))


def _occurrence_from_row(row: Any) -> EventOccurrence:
    return EventOccurrence.model_validate(dict(row))


class PostgresEventStore(EventStore):
    """asyncpg implementation of :class:`EventStore`."""

    def __init__(self, pool: asyncpg.Pool) -> None:
        self._pool = pool

    async def create_event(self, event: RecurringEvent) -> RecurringEvent:
        row = await self._pool.fetchrow(
            f"""
            INSERT INTO events ({_EVENT_COLUMNS})
            VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11)
            RETURNING {_EVENT_COLUMNS}
            """,
            event.id,
            event.user_id,
            event.title,
            event.description,
            event.hebrew_year,
            event.hebrew_month,
            event.hebrew_day,
            str(event.recurrence_rule),
            event.last_synced_hebrew_year,
            event.created_at,
            event.updated_at,
        )
        return _event_from_row(row)

    async def get_event(self, event_id: str, user_id: str | None = None) -> RecurringEvent | None:
        if user_id is None:
            row = await self._pool.fetchrow(
                f"SELECT {_EVENT_COLUMNS} FROM events WHERE id = $1", event_id
            )
        else:
            row = await self._pool.fetchrow(
                f"SELECT {_EVENT_COLUMNS} FROM events WHERE id = $1 AND user_id = $2",
                event_id,
                user_id,
            )
        return _event_from_row(row) if row is not None else None

    async def get_events_for_user(self, user_id: str) -> list[RecurringEvent]:
        rows = await self._pool.fetch(
            f"SELECT {_EVENT_COLUMNS} FROM events WHERE user_id = $1 ORDER BY created_at",
            user_id,
        )
        return [_event_from_row(row) for row in rows]

    async def delete_event(self, event_id: str, user_id: str) -> bool:
        result = await self._pool.execute(
            "DELETE FROM events WHERE id = $1 AND user_id = $2", event_id, user_id
        )
        return result.endswith(" 1")

    async def create_occurrence(self, occurrence: EventOccurrence) -> EventOccurrence:
        row = await self._pool.fetchrow(
            f"""
            INSERT INTO event_occurrences ({_OCCURRENCE_COLUMNS})
            VALUES ($1, $2, $3, $4, $5)
            RETURNING {_OCCURRENCE_COLUMNS}
            """,
            occurrence.id,
            occurrence.event_id,
            occurrence.gregorian_date,
            occurrence.google_event_id,
            occurrence.created_at,
        )
        return _occurrence_from_row(row)

    async def create_occurrences_batch(
        self, occurrences: Sequence[EventOccurrence]
    ) -> list[EventOccurrence]:
        if not occurrences:
            return []
        async with self._pool.acquire() as conn:
            async with conn.transaction():
                await conn.executemany(
                    f"INSERT INTO event_occurrences ({_OCCURRENCE_COLUMNS}) "
                    "VALUES ($1, $2, $3, $4, $5)",
                    [
                        (
                            occ.id,
                            occ.event_id,
                            occ.gregorian_date,
                            occ.google_event_id,
                            occ.created_at,
                        )
                        for occ in occurrences
                    ],
                )
        return list(occurrences)

    async def get_occurrences(self, event_id: str) -> list[EventOccurrence]:
        rows = await self._pool.fetch(
            f"SELECT {_OCCURRENCE_COLUMNS} FROM event_occurrences "
            "WHERE event_id = $1 ORDER BY gregorian_date",
            event_id,
        )
        return [_occurrence_from_row(row) for row in rows]

    async def is_event_synced(self, event_id: str) -> bool:
        return bool(
            await self._pool.fetchval(
                "SELECT EXISTS (SELECT 1 FROM event_occurrences WHERE event_id = $1)",
                event_id,
            )
        )

    async def get_events_sync_status(self, event_ids: Iterable[str]) -> dict[str, bool]:
        ids = list(dict.fromkeys(event_ids))
        if not ids:
            return {}
        rows = await self._pool.fetch(
            "SELECT DISTINCT event_id FROM event_occurrences WHERE event_id = ANY($1::text[])",
            ids,
        )
        synced = {row["event_id"] for row in rows}
        return {event_id: event_id in synced for event_id in ids}

    async def update_watermark(self, event_id: str, year: int, *, expected: int | None) -> bool:
        row = await self._pool.fetchrow(
            """
            UPDATE events
            SET last_synced_hebrew_year = $2,
                updated_at = now()
            WHERE id = $1 AND last_synced_hebrew_year IS NOT DISTINCT FROM $3
            RETURNING id
            """,
            event_id,
            year,
            expected,
        )
        if row is None:
            logger.warning(
                "Watermark CAS lost for event %s (expected %r, attempted %d)",
                event_id,
                expected,
                year,
            )
            return False
        return True

    async def list_users_with_sync_enabled(self) -> list[SyncUser]:
        rows = await self._pool.fetch(
            """
            SELECT id AS user_id, calendar_id
            FROM users
            WHERE sync_enabled = TRUE
              AND calendar_id IS NOT NULL
              AND access_token IS NOT NULL
              AND refresh_token IS NOT NULL
            ORDER BY id
            """
        )
        return [SyncUser(user_id=row["user_id"], calendar_id=row["calendar_id"]) for row in rows]

    async def get_user_calendar_id(self, user_id: str) -> str | None:
        return await self._pool.fetchval("SELECT calendar_id FROM users WHERE id = $1", user_id)

    async def update_user_calendar_id(self, user_id: str, calendar_id: str) -> None:
        await self._pool.execute(
            "UPDATE users SET calendar_id = $2, updated_at = now() WHERE id = $1",
            user_id,
            calendar_id,
        )

    async def set_sync_enabled(self, user_id: str, enabled: bool) -> None:
        await self._pool.execute(
            "UPDATE users SET sync_enabled = $2, updated_at = now() WHERE id = $1",
            user_id,
            enabled,
        )

    async def get_user_tokens(self, user_id: str) -> UserTokens | None:
        row = await self._pool.fetchrow(
            """
            SELECT access_token, refresh_token, token_expires_at AS expires_at
            FROM users WHERE id = $1
            """,
            user_id,
        )
        return UserTokens.model_validate(dict(row)) if row is not None else None

    async def update_user_tokens(
        self,
        user_id: str,
        *,
        access_token: str,
        refresh_token: str,
        expires_at: datetime | None = None,
    ) -> None:
        await self._pool.execute(
            """
            UPDATE users
            SET access_token = $2,
                refresh_token = $3,
                token_expires_at = $4,
                updated_at = now()
            WHERE id = $1
            """,
            user_id,
            access_token,
            refresh_token,
            expires_at,
        )
