"""Persisted and exchanged data models for recurring Hebrew-date events."""

from __future__ import annotations

import uuid
from datetime import UTC, date, datetime
from enum import StrEnum

from pydantic import BaseModel, ConfigDict, Field, ValidationInfo, field_validator, model_validator

from luach.projector import (
    ADAR_II,
    MAX_HEBREW_YEAR,
    MAX_MONTH_DAYS,
    MIN_HEBREW_YEAR,
    NISAN,
    HebrewDateError,
    validate_hebrew_date,
)

MAX_TITLE_LENGTH = 200
MAX_DESCRIPTION_LENGTH = 1000


def _new_id() -> str:
    return str(uuid.uuid4())


def _utc_now() -> datetime:
    return datetime.now(UTC)


class RecurrenceRule(StrEnum):
    """Recurrence class of an event. Only ``yearly`` is expanded."""

    YEARLY = "yearly"
    MONTHLY = "monthly"
    WEEKLY = "weekly"


class _HebrewOrigin(BaseModel):
    title: str = Field(min_length=1, max_length=MAX_TITLE_LENGTH)
    description: str | None = Field(default=None, max_length=MAX_DESCRIPTION_LENGTH)
    hebrew_year: int = Field(ge=MIN_HEBREW_YEAR, le=MAX_HEBREW_YEAR)
    hebrew_month: int = Field(ge=NISAN, le=ADAR_II)
    hebrew_day: int = Field(ge=1, le=MAX_MONTH_DAYS)
    recurrence_rule: RecurrenceRule = RecurrenceRule.YEARLY

    @field_validator("title")
    @classmethod
    def _normalize_title(cls, value: str, info: ValidationInfo) -> str:
        normalized = value.strip()
        if not normalized:
            raise ValueError(f"{info.field_name} must be a non-empty string")
        return normalized

    @field_validator("description")
    @classmethod
    def _normalize_description(cls, value: str | None) -> str | None:
        if value is None:
            return None
        normalized = value.strip()
        return normalized or None


class NewRecurringEvent(_HebrewOrigin):
    """Creation input; the origin date must exist in the origin year."""

    model_config = ConfigDict(extra="forbid")

    @model_validator(mode="after")
    def _origin_date_exists(self) -> NewRecurringEvent:
        try:
            validate_hebrew_date(self.hebrew_day, self.hebrew_month, self.hebrew_year)
        except HebrewDateError as exc:
            raise ValueError(str(exc)) from exc
        return self


class RecurringEvent(_HebrewOrigin):
    """A user's event anchored to a Hebrew date."""

    model_config = ConfigDict(extra="ignore")

    id: str = Field(default_factory=_new_id)
    user_id: str = Field(min_length=1)
    last_synced_hebrew_year: int | None = None
    created_at: datetime = Field(default_factory=_utc_now)
    updated_at: datetime = Field(default_factory=_utc_now)

    @model_validator(mode="after")
    def _watermark_not_before_origin(self) -> RecurringEvent:
        watermark = self.last_synced_hebrew_year
        if watermark is not None and watermark < self.hebrew_year:
            raise ValueError(
                f"last_synced_hebrew_year ({watermark}) precedes origin year ({self.hebrew_year})"
            )
        return self

    @property
    def watermark(self) -> int:
        """Highest Hebrew year believed materialized (origin year when unset)."""
        if self.last_synced_hebrew_year is None:
            return self.hebrew_year
        return self.last_synced_hebrew_year

    @property
    def is_yearly(self) -> bool:
        return self.recurrence_rule == RecurrenceRule.YEARLY

    @classmethod
    def from_new(
        cls,
        payload: NewRecurringEvent,
        *,
        user_id: str,
        last_synced_hebrew_year: int | None = None,
    ) -> RecurringEvent:
        return cls(
            user_id=user_id,
            last_synced_hebrew_year=last_synced_hebrew_year,
            **payload.model_dump(),
        )


class EventOccurrence(BaseModel):
    """One externally replicated, dated instance of a recurring event."""

    model_config = ConfigDict(extra="ignore")

    id: str = Field(default_factory=_new_id)
    event_id: str = Field(min_length=1)
    gregorian_date: date
    google_event_id: str = Field(min_length=1)
    created_at: datetime = Field(default_factory=_utc_now)


class SyncUser(BaseModel):
    """A user eligible for background synchronization."""

    model_config = ConfigDict(extra="ignore")

    user_id: str = Field(min_length=1)
    calendar_id: str = Field(min_length=1)
    has_credentials: bool = True


class UserTokens(BaseModel):
    """Stored OAuth token pair for a user."""

    model_config = ConfigDict(extra="ignore")

    access_token: str | None = None
    refresh_token: str | None = None
    expires_at: datetime | None = None

    def __repr__(self) -> str:
        return f"UserTokens(access_token=<REDACTED>, refresh_token=<REDACTED>, expires_at={self.expires_at!r})"

    __str__ = __repr__
