"""Google Calendar client and calendar resolution.

This module defines:
- ``CalendarClient``: the calendar operations the sync engine relies on
- ``GoogleCalendarClient``: bearer-token client for the Calendar v3 REST API
- ``CalendarResolver``: find-or-create of the user's dedicated calendar
"""

from __future__ import annotations

import abc
import logging
import re
from dataclasses import dataclass
from datetime import date, timedelta
from typing import TYPE_CHECKING, Any
from urllib.parse import quote

import httpx
from pydantic import BaseModel, ConfigDict, Field

if TYPE_CHECKING:
    from luach.store import EventStore

logger = logging.getLogger(__name__)

GOOGLE_CALENDAR_API_BASE_URL = "https://www.googleapis.com/calendar/v3"
PROVENANCE_PRIVATE_KEY = "luach_event_id"
DEFAULT_CALENDAR_NAME = "Luach"
DEFAULT_CALENDAR_DESCRIPTION = "Hebrew calendar events managed by Luach"
DEFAULT_REQUEST_TIMEOUT_SECONDS = 30.0
CALENDAR_NOT_FOUND_STATUS_CODES = {404, 410}
_MAX_ERROR_MESSAGE_LENGTH = 200
_LIST_PAGE_SIZE = 250


class CalendarError(RuntimeError):
    """Base error raised by Google Calendar helpers."""


class CalendarTransportError(CalendarError):
    """Raised when the request never produced an HTTP response."""


class CalendarTokenRefreshError(CalendarError):
    """Raised when refresh-token exchange fails."""


class CalendarRequestError(CalendarError):
    """Raised when a Google Calendar API request fails."""

    def __init__(self, *, status_code: int, message: str, reason: str | None = None) -> None:
        self.status_code = status_code
        self.message = message
        self.reason = reason
        super().__init__(f"Google Calendar API request failed ({status_code}): {message}")


def is_calendar_not_found(exc: BaseException) -> bool:
    return isinstance(exc, CalendarRequestError) and (
        exc.status_code in CALENDAR_NOT_FOUND_STATUS_CODES
    )


def redact_credentials(message: str) -> str:
    """Redact token-like values from an error message."""
    redacted = re.sub(
        r"(?i)\b(client_secret|refresh_token|access_token|token)\s*[=:]\s*([^\s,;&]+)",
        r"\1=[REDACTED]",
        message,
    )
    redacted = re.sub(r"(?i)\bBearer\s+[A-Za-z0-9_\-.~+/]+=*", "Bearer [REDACTED]", redacted)
    return re.sub(r"\bya29\.[A-Za-z0-9_\-.]+", "[REDACTED]", redacted)


def sanitize_error_message(message: str) -> str:
    return " ".join(redact_credentials(message).split())[:_MAX_ERROR_MESSAGE_LENGTH]


def _error_payload(response: httpx.Response) -> dict[str, Any] | None:
    try:
        payload = response.json()
    except ValueError:
        return None
    if isinstance(payload, dict):
        error_payload = payload.get("error")
        if isinstance(error_payload, dict):
            return error_payload
    return None


def safe_google_error_message(response: httpx.Response) -> str:
    error_payload = _error_payload(response)
    if error_payload is not None:
        message = error_payload.get("message")
        if isinstance(message, str) and message.strip():
            return sanitize_error_message(message)

    raw_text = response.text.strip()
    if raw_text:
        return sanitize_error_message(raw_text)
    return "Request failed without an error payload"


def google_error_reason(response: httpx.Response) -> str | None:
    """Return Google's machine-readable reason (e.g. ``quotaExceeded``)."""
    error_payload = _error_payload(response)
    if error_payload is None:
        return None
    errors = error_payload.get("errors")
    if isinstance(errors, list):
        for item in errors:
            if isinstance(item, dict) and isinstance(item.get("reason"), str):
                return item["reason"]
    status = error_payload.get("status")
    return status if isinstance(status, str) else None


class CalendarEntry(BaseModel):
    """All-day entry written to the external calendar for one occurrence."""

    model_config = ConfigDict(extra="forbid")

    summary: str = Field(min_length=1)
    description: str | None = None
    date: date
    provenance_tag: str = Field(min_length=1)

    def to_google_body(self) -> dict[str, Any]:
        body: dict[str, Any] = {
            "summary": self.summary,
            # All-day end dates are exclusive in the Calendar API.
            "start": {"date": self.date.isoformat()},
            "end": {"date": (self.date + timedelta(days=1)).isoformat()},
            "extendedProperties": {"private": {PROVENANCE_PRIVATE_KEY: self.provenance_tag}},
        }
        if self.description:
            body["description"] = self.description
        return body


@dataclass(frozen=True)
class CalendarInfo:
    calendar_id: str
    summary: str


@dataclass(frozen=True)
class ExternalEntry:
    entry_id: str
    date: date | None
    provenance_tag: str | None


class CalendarClient(abc.ABC):
    """Calendar operations used by the sync engine."""

    @abc.abstractmethod
    async def insert_entry(self, calendar_id: str, entry: CalendarEntry) -> str:
        """Insert an all-day entry and return its external id."""
        ...

    @abc.abstractmethod
    async def get_calendar(self, calendar_id: str) -> CalendarInfo | None:
        """Return calendar metadata, or ``None`` when it does not exist."""
        ...

    @abc.abstractmethod
    async def list_calendars(self) -> list[CalendarInfo]:
        """Return the calendars on the user's calendar list."""
        ...

    @abc.abstractmethod
    async def create_calendar(self, name: str, description: str | None = None) -> str:
        """Create a secondary calendar and return its id."""
        ...

    @abc.abstractmethod
    async def find_entries_by_tag(self, calendar_id: str, tag: str) -> list[ExternalEntry]:
        """Return entries whose provenance tag equals *tag*."""
        ...

    @abc.abstractmethod
    async def delete_entry(self, calendar_id: str, entry_id: str) -> None:
        """Delete an entry. Raises ``CalendarRequestError`` (404) when absent."""
        ...

    async def aclose(self) -> None:
        return None


class GoogleCalendarClient(CalendarClient):
    """Calendar v3 client authenticated with a user's OAuth access token."""

    def __init__(
        self,
        access_token: str,
        http_client: httpx.AsyncClient | None = None,
        *,
        timeout: float = DEFAULT_REQUEST_TIMEOUT_SECONDS,
    ) -> None:
        if not access_token or not access_token.strip():
            raise ValueError("access_token must be a non-empty string")
        self._access_token = access_token.strip()
        self._owns_http_client = http_client is None
        self._http_client = http_client or httpx.AsyncClient(timeout=timeout)

    async def _request(
        self,
        method: str,
        path: str,
        *,
        params: dict[str, Any] | None = None,
        json_body: dict[str, Any] | None = None,
    ) -> httpx.Response:
        normalized_path = path if path.startswith("/") else f"/{path}"
        try:
            return await self._http_client.request(
                method,
                f"{GOOGLE_CALENDAR_API_BASE_URL}{normalized_path}",
                params=params,
                json=json_body,
                headers={"Authorization": f"Bearer {self._access_token}"},
            )
        except httpx.TransportError as exc:
            raise CalendarTransportError(
                f"Google Calendar request failed: {sanitize_error_message(str(exc))}"
            ) from exc

    @staticmethod
    def _raise_for_status(response: httpx.Response) -> None:
        if response.status_code < 200 or response.status_code >= 300:
            raise CalendarRequestError(
                status_code=response.status_code,
                message=safe_google_error_message(response),
                reason=google_error_reason(response),
            )

    async def _request_json(
        self,
        method: str,
        path: str,
        *,
        params: dict[str, Any] | None = None,
        json_body: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        response = await self._request(method, path, params=params, json_body=json_body)
        self._raise_for_status(response)
        if response.status_code == 204:
            return {}
        try:
            payload = response.json()
        except ValueError as exc:
            raise CalendarError(
                "Google Calendar API returned invalid JSON for a successful response"
            ) from exc
        if not isinstance(payload, dict):
            raise CalendarError("Google Calendar API returned an unexpected JSON payload shape")
        return payload

    async def insert_entry(self, calendar_id: str, entry: CalendarEntry) -> str:
        payload = await self._request_json(
            "POST",
            f"/calendars/{quote(calendar_id, safe='')}/events",
            json_body=entry.to_google_body(),
        )
        entry_id = payload.get("id")
        if not isinstance(entry_id, str) or not entry_id:
            raise CalendarError("Google Calendar insert response is missing an event id")
        return entry_id

    async def get_calendar(self, calendar_id: str) -> CalendarInfo | None:
        response = await self._request("GET", f"/calendars/{quote(calendar_id, safe='')}")
        if response.status_code in CALENDAR_NOT_FOUND_STATUS_CODES:
            return None
        self._raise_for_status(response)
        payload = response.json()
        return CalendarInfo(
            calendar_id=str(payload.get("id") or calendar_id),
            summary=str(payload.get("summary") or ""),
        )

    async def list_calendars(self) -> list[CalendarInfo]:
        calendars: list[CalendarInfo] = []
        page_token: str | None = None
        while True:
            params: dict[str, Any] = {"maxResults": _LIST_PAGE_SIZE}
            if page_token:
                params["pageToken"] = page_token
            payload = await self._request_json("GET", "/users/me/calendarList", params=params)
            for item in payload.get("items") or []:
                if isinstance(item, dict) and isinstance(item.get("id"), str):
                    calendars.append(
                        CalendarInfo(calendar_id=item["id"], summary=str(item.get("summary", "")))
                    )
            page_token = payload.get("nextPageToken")
            if not page_token:
                return calendars

    async def create_calendar(self, name: str, description: str | None = None) -> str:
        body: dict[str, Any] = {"summary": name}
        if description:
            body["description"] = description
        payload = await self._request_json("POST", "/calendars", json_body=body)
        calendar_id = payload.get("id")
        if not isinstance(calendar_id, str) or not calendar_id:
            raise CalendarError("Google Calendar create response is missing a calendar id")
        return calendar_id

    async def find_entries_by_tag(self, calendar_id: str, tag: str) -> list[ExternalEntry]:
        entries: list[ExternalEntry] = []
        page_token: str | None = None
        while True:
            params: dict[str, Any] = {
                "privateExtendedProperty": f"{PROVENANCE_PRIVATE_KEY}={tag}",
                "showDeleted": False,
                "maxResults": _LIST_PAGE_SIZE,
            }
            if page_token:
                params["pageToken"] = page_token
            payload = await self._request_json(
                "GET",
                f"/calendars/{quote(calendar_id, safe='')}/events",
                params=params,
            )
            for item in payload.get("items") or []:
                entry = _external_entry_from_google(item)
                if entry is not None:
                    entries.append(entry)
            page_token = payload.get("nextPageToken")
            if not page_token:
                return entries

    async def delete_entry(self, calendar_id: str, entry_id: str) -> None:
        response = await self._request(
            "DELETE",
            f"/calendars/{quote(calendar_id, safe='')}/events/{quote(entry_id, safe='')}",
        )
        self._raise_for_status(response)

    async def aclose(self) -> None:
        if self._owns_http_client:
            await self._http_client.aclose()


def _external_entry_from_google(item: Any) -> ExternalEntry | None:
    if not isinstance(item, dict) or item.get("status") == "cancelled":
        return None
    entry_id = item.get("id")
    if not isinstance(entry_id, str) or not entry_id:
        return None

    start = item.get("start")
    start_date: date | None = None
    if isinstance(start, dict) and isinstance(start.get("date"), str):
        try:
            start_date = date.fromisoformat(start["date"])
        except ValueError:
            start_date = None

    private = (item.get("extendedProperties") or {}).get("private") or {}
    tag = private.get(PROVENANCE_PRIVATE_KEY) if isinstance(private, dict) else None
    return ExternalEntry(entry_id=entry_id, date=start_date, provenance_tag=tag)


@dataclass(frozen=True)
class CalendarResolution:
    calendar_id: str
    created: bool
    existed: bool


class CalendarResolver:
    """Finds or creates the dedicated calendar and keeps the stored id current."""

    def __init__(
        self,
        store: EventStore,
        *,
        calendar_name: str = DEFAULT_CALENDAR_NAME,
        calendar_description: str = DEFAULT_CALENDAR_DESCRIPTION,
    ) -> None:
        self._store = store
        self.calendar_name = calendar_name
        self.calendar_description = calendar_description

    async def ensure_calendar_exists(
        self,
        client: CalendarClient,
        user_id: str,
        current_calendar_id: str | None = None,
    ) -> CalendarResolution:
        if current_calendar_id:
            try:
                existing = await client.get_calendar(current_calendar_id)
            except CalendarError as exc:
                logger.info(
                    "Calendar %s not accessible (%s); searching for %r",
                    current_calendar_id,
                    exc,
                    self.calendar_name,
                )
                existing = None
            if existing is not None:
                return CalendarResolution(
                    calendar_id=current_calendar_id, created=False, existed=True
                )

        created = False
        match = next(
            (c for c in await client.list_calendars() if c.summary == self.calendar_name),
            None,
        )
        if match is not None:
            calendar_id = match.calendar_id
        else:
            calendar_id = await client.create_calendar(
                self.calendar_name, self.calendar_description
            )
            created = True
            logger.info("Created calendar %r for user %s: %s", self.calendar_name, user_id, calendar_id)

        if calendar_id != current_calendar_id:
            try:
                await self._store.update_user_calendar_id(user_id, calendar_id)
            except Exception:
                logger.error(
                    "Failed to store calendar id %s for user %s",
                    calendar_id,
                    user_id,
                    exc_info=True,
                )

        return CalendarResolution(calendar_id=calendar_id, created=created, existed=not created)
