"""Abstract calendar provider interface and shared provider plumbing."""

from __future__ import annotations

import functools
import logging
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Awaitable, Callable, Optional, TypeVar

import httpx

from calbridge.config import Settings, get_settings
from calbridge.schemas.calendar import (
    AppointmentConflict,
    AppointmentDetails,
    AppointmentUpdate,
    AvailabilityQuery,
    AvailableSlot,
    CalendarConnection,
    CalendarEvent,
    CalendarInfo,
    CalendarOperationResult,
    CalendarProvider,
    EventStatus,
    FreeBusyQuery,
    FreeBusyResponse,
    OAuthTokens,
)
from calbridge.services.calendar import utils
from calbridge.services.calendar.errors import (
    MissingAccessTokenError,
    ProviderAPIError,
    redact_secrets,
)
from calbridge.services.calendar.oauth import OAuthHandler

logger = logging.getLogger(__name__)

F = TypeVar("F", bound=Callable[..., Awaitable[CalendarOperationResult]])


def catch_errors(error_code: str) -> Callable[[F], F]:
    """Turn exceptions raised by a provider operation into a failed result.

    ``asyncio.CancelledError`` is a ``BaseException`` and passes through.
    """

    def decorator(func: F) -> F:
        @functools.wraps(func)
        async def wrapper(self: CalendarProviderBase, *args: Any, **kwargs: Any) -> CalendarOperationResult:
            try:
                return await func(self, *args, **kwargs)
            except MissingAccessTokenError as e:
                return CalendarOperationResult.fail("NO_ACCESS_TOKEN", str(e) or "No access token available")
            except ProviderAPIError as e:
                logger.warning("%s.%s failed: %s", type(self).__name__, func.__name__, e.code)
                return CalendarOperationResult.fail(
                    e.code, redact_secrets(e.message), retryable=e.retryable
                )
            except Exception as e:
                logger.exception("%s.%s raised unexpectedly", type(self).__name__, func.__name__)
                return CalendarOperationResult.fail(
                    error_code, redact_secrets(str(e) or type(e).__name__), retryable=True
                )

        return wrapper  # type: ignore[return-value]

    return decorator


class CalendarProviderBase(ABC):
    """Abstract interface for a calendar backend (Google, Outlook, Apple).

    One instance serves every connection of its provider type: each
    operation receives the :class:`CalendarConnection` it acts for.
    """

    provider: CalendarProvider
    error_prefix: str

    def __init__(
        self,
        oauth: OAuthHandler,
        settings: Optional[Settings] = None,
        http_client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self.oauth = oauth
        self.settings = settings or get_settings()
        self.client = http_client or httpx.AsyncClient(timeout=self.settings.http_timeout_seconds)

    async def aclose(self) -> None:
        await self.client.aclose()

    # ── HTTP helpers ──

    async def _auth_headers(self, connection: CalendarConnection) -> dict[str, str]:
        token = await self.oauth.get_access_token(connection)
        if not token:
            raise MissingAccessTokenError("No access token available")
        return {"Authorization": f"Bearer {token}"}

    async def _request(
        self,
        connection: CalendarConnection,
        method: str,
        url: str,
        *,
        headers: Optional[dict[str, str]] = None,
        **kwargs: Any,
    ) -> httpx.Response:
        """Authenticated request; non-2xx answers raise :class:`ProviderAPIError`."""
        request_headers = await self._auth_headers(connection)
        if headers:
            request_headers.update(headers)
        response = await self.client.request(method, url, headers=request_headers, **kwargs)
        if response.status_code >= 400:
            raise ProviderAPIError(
                prefix=self.error_prefix,
                status_code=response.status_code,
                message=self._error_message(response),
            )
        return response

    @staticmethod
    def _error_message(response: httpx.Response) -> str:
        try:
            body = response.json()
        except ValueError:
            return (response.text or response.reason_phrase or "").strip()[:300]
        error = body.get("error") if isinstance(body, dict) else None
        if isinstance(error, dict):
            return str(error.get("message") or error.get("code") or error)
        if error:
            return str(body.get("error_description") or error)
        return str(body)[:300]

    def _timezone_for(self, connection: CalendarConnection, explicit: Optional[str] = None) -> str:
        return explicit or connection.timezone or self.settings.default_timezone

    # ── Lifecycle ──

    async def initialize(self, connection: CalendarConnection) -> CalendarOperationResult[bool]:
        """Check the connection against the backend before it is accepted."""
        result = await self.list_calendars(connection)
        if not result.success:
            return CalendarOperationResult.from_error(result.error)
        return CalendarOperationResult.ok(True)

    @catch_errors("TOKEN_REFRESH_ERROR")
    async def refresh_tokens(
        self,
        connection: CalendarConnection,
        refresh_token: Optional[str] = None,
    ) -> CalendarOperationResult[OAuthTokens]:
        if refresh_token and refresh_token != connection.tokens.refresh_token:
            connection.tokens = connection.tokens.model_copy(update={"refresh_token": refresh_token})
        tokens = await self.oauth.refresh_connection(connection)
        return CalendarOperationResult.ok(tokens)

    async def validate_connection(self, connection: CalendarConnection) -> CalendarOperationResult[bool]:
        result = await self.list_calendars(connection)
        if not result.success:
            logger.info(
                "Connection %s failed validation: %s",
                connection.id,
                result.error.code if result.error else "unknown",
            )
        return CalendarOperationResult.ok(result.success)

    # ── Backend operations ──

    @abstractmethod
    async def list_calendars(self, connection: CalendarConnection) -> CalendarOperationResult[list[CalendarInfo]]:
        """List the calendars visible to the connection."""

    @abstractmethod
    async def get_events(
        self,
        connection: CalendarConnection,
        calendar_id: str,
        start: datetime,
        end: datetime,
        timezone: Optional[str] = None,
    ) -> CalendarOperationResult[list[CalendarEvent]]:
        """Events overlapping ``[start, end]``."""

    @abstractmethod
    async def get_event(
        self,
        connection: CalendarConnection,
        calendar_id: str,
        event_id: str,
    ) -> CalendarOperationResult[CalendarEvent]:
        """Fetch one event."""

    @abstractmethod
    async def create_event(
        self,
        connection: CalendarConnection,
        calendar_id: str,
        appointment: AppointmentDetails,
    ) -> CalendarOperationResult[CalendarEvent]:
        """Create an event and return it as stored by the backend."""

    @abstractmethod
    async def update_event(
        self,
        connection: CalendarConnection,
        calendar_id: str,
        event_id: str,
        updates: AppointmentUpdate,
    ) -> CalendarOperationResult[CalendarEvent]:
        """Apply a partial update on top of the live event."""

    @abstractmethod
    async def delete_event(
        self,
        connection: CalendarConnection,
        calendar_id: str,
        event_id: str,
    ) -> CalendarOperationResult[bool]:
        """Delete an event."""

    @abstractmethod
    async def get_free_busy(
        self,
        connection: CalendarConnection,
        query: FreeBusyQuery,
    ) -> CalendarOperationResult[FreeBusyResponse]:
        """Busy and free periods of the first calendar in the query."""

    # ── Defaults built on the operations above ──

    @catch_errors("SLOT_FINDING_ERROR")
    async def find_available_slots(
        self,
        connection: CalendarConnection,
        calendar_id: str,
        query: AvailabilityQuery,
    ) -> CalendarOperationResult[list[AvailableSlot]]:
        free_busy = await self.get_free_busy(
            connection,
            FreeBusyQuery(
                start=query.start,
                end=query.end,
                calendar_ids=[calendar_id],
                timezone=query.timezone,
            ),
        )
        if not free_busy.success or free_busy.data is None:
            return CalendarOperationResult.from_error(free_busy.error)

        return CalendarOperationResult.ok(utils.find_available_slots(free_busy.data, query))

    @catch_errors("CONFLICT_CHECK_ERROR")
    async def check_conflict(
        self,
        connection: CalendarConnection,
        calendar_id: str,
        start: datetime,
        end: datetime,
        exclude_event_id: Optional[str] = None,
    ) -> CalendarOperationResult[AppointmentConflict]:
        start, end = utils.ensure_utc(start), utils.ensure_utc(end)
        events = await self.get_events(connection, calendar_id, start, end)
        if not events.success or events.data is None:
            return CalendarOperationResult.from_error(events.error)

        conflicts = [
            event
            for event in events.data
            if event.id != exclude_event_id
            and event.status != EventStatus.CANCELLED
            and utils.time_ranges_overlap(start, end, event.start, event.end)
        ]
        return CalendarOperationResult.ok(
            AppointmentConflict(
                has_conflict=bool(conflicts),
                conflicting_events=conflicts or None,
            )
        )
