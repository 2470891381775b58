"""
Unified calendar service.

Single entry point over every provider: keeps the registry of connections,
resolves a connection id to its provider, guards writes with a conflict
check and bounds every call with a deadline.
"""

from __future__ import annotations

import asyncio
import functools
import logging
from datetime import datetime, timezone
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
    ConnectionStatus,
    FreeBusyQuery,
    FreeBusyResponse,
    OAuthTokens,
)
from calbridge.services.calendar.base import CalendarProviderBase
from calbridge.services.calendar.errors import redact_secrets
from calbridge.services.calendar.factory import get_calendar_provider
from calbridge.services.calendar.oauth import OAuthHandler
from calbridge.services.calendar.token_store import TokenStore

logger = logging.getLogger(__name__)

F = TypeVar("F", bound=Callable[..., Awaitable[CalendarOperationResult]])


def with_deadline(func: F) -> F:
    """Bound the call by ``timeout`` (seconds) or the configured operation timeout."""

    @functools.wraps(func)
    async def wrapper(
        self: CalendarService,
        *args: Any,
        timeout: Optional[float] = None,
        **kwargs: Any,
    ) -> CalendarOperationResult:
        seconds = timeout if timeout is not None else self.settings.operation_timeout_seconds
        try:
            async with asyncio.timeout(seconds):
                return await func(self, *args, **kwargs)
        except TimeoutError:
            logger.warning("Calendar operation %s timed out after %ss", func.__name__, seconds)
            return CalendarOperationResult.fail(
                "OPERATION_TIMEOUT",
                f"{func.__name__} did not complete within {seconds} seconds",
                retryable=True,
            )

    return wrapper  # type: ignore[return-value]


def _not_found(connection_id: str) -> CalendarOperationResult:
    return CalendarOperationResult.fail("CONNECTION_NOT_FOUND", f"Connection {connection_id} not found")


def _store_failed(action: str, error: Exception) -> CalendarOperationResult:
    logger.exception("Connection store failed to %s", action)
    return CalendarOperationResult.fail(
        "CONNECTION_STORE_ERROR",
        redact_secrets(str(error) or type(error).__name__),
        retryable=True,
    )


class CalendarService:
    """Facade over the Google, Outlook and Apple providers."""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        oauth: Optional[OAuthHandler] = None,
        token_store: Optional[TokenStore] = None,
        http_client: Optional[httpx.AsyncClient] = None,
        providers: Optional[dict[CalendarProvider, CalendarProviderBase]] = None,
    ) -> None:
        self.settings = settings or get_settings()
        self.oauth = oauth or OAuthHandler(self.settings, token_store=token_store, http_client=http_client)
        self.providers = providers or {
            provider: get_calendar_provider(provider, self.oauth, self.settings, http_client)
            for provider in CalendarProvider
        }
        self.connections: dict[str, CalendarConnection] = {}

    async def aclose(self) -> None:
        """Close the HTTP clients of every provider and of the OAuth handler."""
        for provider in self.providers.values():
            await provider.aclose()
        await self.oauth.aclose()

    def _resolve(self, connection_id: str) -> Optional[tuple[CalendarConnection, CalendarProviderBase]]:
        connection = self.connections.get(connection_id)
        if connection is None:
            return None
        provider = self.providers.get(connection.provider)
        if provider is None:
            return None
        return connection, provider

    # ========== Connections ==========

    @with_deadline
    async def register_connection(
        self, connection: CalendarConnection
    ) -> CalendarOperationResult[CalendarConnection]:
        """Validate a connection against its provider, then register and persist it."""
        provider = self.providers.get(connection.provider)
        if provider is None:
            return CalendarOperationResult.fail(
                "INVALID_CONNECTION", f"Unsupported calendar provider: {connection.provider}"
            )

        init = await provider.initialize(connection)
        if not init.success:
            error = init.error
            if error is not None and error.code in ("INVALID_CONNECTION", "NO_ACCESS_TOKEN"):
                return CalendarOperationResult.from_error(error)
            logger.warning("Rejected %s connection %s", connection.provider.value, connection.id)
            return CalendarOperationResult.fail(
                "CONNECTION_VALIDATION_FAILED",
                f"Failed to validate {connection.provider.value} calendar connection",
                details=error.model_dump() if error else None,
            )

        connection.status = ConnectionStatus.CONNECTED
        connection.updated_at = datetime.now(timezone.utc)
        try:
            await self.oauth.store_connection(connection)
        except Exception as e:
            return _store_failed(f"persist connection {connection.id}", e)
        self.connections[connection.id] = connection
        logger.info("Registered %s connection %s", connection.provider.value, connection.id)
        return CalendarOperationResult.ok(connection)

    @with_deadline
    async def restore_connections(self) -> CalendarOperationResult[list[CalendarConnection]]:
        """Load persisted connections into the registry without contacting providers."""
        try:
            restored = await self.oauth.get_all_connections()
        except Exception as e:
            return _store_failed("load connections", e)
        for connection in restored:
            self.connections[connection.id] = connection
        logger.info("Restored %d calendar connection(s)", len(restored))
        return CalendarOperationResult.ok(restored)

    async def get_connection(self, connection_id: str) -> CalendarOperationResult[CalendarConnection]:
        connection = self.connections.get(connection_id)
        if connection is None:
            return _not_found(connection_id)
        return CalendarOperationResult.ok(connection)

    async def get_all_connections(self) -> CalendarOperationResult[list[CalendarConnection]]:
        return CalendarOperationResult.ok(list(self.connections.values()))

    @with_deadline
    async def remove_connection(self, connection_id: str) -> CalendarOperationResult[bool]:
        if connection_id not in self.connections:
            return _not_found(connection_id)
        try:
            await self.oauth.delete_connection(connection_id)
        except Exception as e:
            return _store_failed(f"delete connection {connection_id}", e)
        del self.connections[connection_id]
        logger.info("Removed calendar connection %s", connection_id)
        return CalendarOperationResult.ok(True)

    @with_deadline
    async def validate_connection(self, connection_id: str) -> CalendarOperationResult[bool]:
        resolved = self._resolve(connection_id)
        if resolved is None:
            return _not_found(connection_id)
        connection, provider = resolved
        return await provider.validate_connection(connection)

    @with_deadline
    async def refresh_connection_tokens(self, connection_id: str) -> CalendarOperationResult[OAuthTokens]:
        resolved = self._resolve(connection_id)
        if resolved is None:
            return _not_found(connection_id)
        connection, provider = resolved
        return await provider.refresh_tokens(connection, connection.tokens.refresh_token)

    # ========== Calendars & events ==========

    @with_deadline
    async def list_calendars(self, connection_id: str) -> CalendarOperationResult[list[CalendarInfo]]:
        resolved = self._resolve(connection_id)
        if resolved is None:
            return _not_found(connection_id)
        connection, provider = resolved
        return await provider.list_calendars(connection)

    @with_deadline
    async def get_events(
        self,
        connection_id: str,
        calendar_id: Optional[str],
        start: datetime,
        end: datetime,
        timezone: Optional[str] = None,
    ) -> CalendarOperationResult[list[CalendarEvent]]:
        resolved = self._resolve(connection_id)
        if resolved is None:
            return _not_found(connection_id)
        connection, provider = resolved
        return await provider.get_events(connection, calendar_id or connection.calendar_id, start, end, timezone)

    @with_deadline
    async def get_appointment(
        self,
        connection_id: str,
        calendar_id: Optional[str],
        event_id: str,
    ) -> CalendarOperationResult[CalendarEvent]:
        resolved = self._resolve(connection_id)
        if resolved is None:
            return _not_found(connection_id)
        connection, provider = resolved
        return await provider.get_event(connection, calendar_id or connection.calendar_id, event_id)

    @with_deadline
    async def create_appointment(
        self,
        connection_id: str,
        calendar_id: Optional[str],
        appointment: AppointmentDetails,
    ) -> CalendarOperationResult[CalendarEvent]:
        """Book an appointment unless it overlaps an existing event."""
        resolved = self._resolve(connection_id)
        if resolved is None:
            return _not_found(connection_id)
        connection, provider = resolved
        calendar_id = calendar_id or connection.calendar_id

        rejected = await self._reject_on_conflict(
            provider, connection, calendar_id, appointment.start, appointment.end
        )
        if rejected is not None:
            return rejected

        result = await provider.create_event(connection, calendar_id, appointment)
        if result.success and result.data is not None:
            logger.info("Booked appointment %s on connection %s", result.data.id, connection_id)
        return result

    @with_deadline
    async def update_appointment(
        self,
        connection_id: str,
        calendar_id: Optional[str],
        event_id: str,
        updates: AppointmentUpdate,
    ) -> CalendarOperationResult[CalendarEvent]:
        """Apply a partial update; moved appointments are checked for conflicts first."""
        resolved = self._resolve(connection_id)
        if resolved is None:
            return _not_found(connection_id)
        connection, provider = resolved
        calendar_id = calendar_id or connection.calendar_id

        if updates.start is not None or updates.end is not None:
            start, end = updates.start, updates.end
            if start is None or end is None:
                existing = await provider.get_event(connection, calendar_id, event_id)
                if not existing.success or existing.data is None:
                    return existing
                start = start or existing.data.start
                end = end or existing.data.end
            if end <= start:
                return CalendarOperationResult.fail("INVALID_TIME_RANGE", "Appointment end must be after its start")

            rejected = await self._reject_on_conflict(
                provider, connection, calendar_id, start, end, exclude_event_id=event_id
            )
            if rejected is not None:
                return rejected

        return await provider.update_event(connection, calendar_id, event_id, updates)

    @with_deadline
    async def cancel_appointment(
        self,
        connection_id: str,
        calendar_id: Optional[str],
        event_id: str,
    ) -> CalendarOperationResult[bool]:
        resolved = self._resolve(connection_id)
        if resolved is None:
            return _not_found(connection_id)
        connection, provider = resolved
        result = await provider.delete_event(connection, calendar_id or connection.calendar_id, event_id)
        if result.success:
            logger.info("Cancelled appointment %s on connection %s", event_id, connection_id)
        return result

    async def _reject_on_conflict(
        self,
        provider: CalendarProviderBase,
        connection: CalendarConnection,
        calendar_id: str,
        start: datetime,
        end: datetime,
        exclude_event_id: Optional[str] = None,
    ) -> Optional[CalendarOperationResult]:
        """Failed result when the range cannot be booked, else ``None``."""
        conflict = await provider.check_conflict(connection, calendar_id, start, end, exclude_event_id)
        if not conflict.success or conflict.data is None:
            return CalendarOperationResult.from_error(conflict.error)
        if conflict.data.has_conflict:
            events = conflict.data.conflicting_events or []
            return CalendarOperationResult.fail(
                "APPOINTMENT_CONFLICT",
                f"Time slot conflicts with {len(events)} existing event(s)",
                details=[event.model_dump(mode="json") for event in events],
            )
        return None

    # ========== Availability ==========

    @with_deadline
    async def find_available_slots(
        self,
        connection_id: str,
        calendar_id: Optional[str],
        query: AvailabilityQuery,
    ) -> CalendarOperationResult[list[AvailableSlot]]:
        resolved = self._resolve(connection_id)
        if resolved is None:
            return _not_found(connection_id)
        connection, provider = resolved
        return await provider.find_available_slots(connection, calendar_id or connection.calendar_id, query)

    @with_deadline
    async def check_conflict(
        self,
        connection_id: str,
        calendar_id: Optional[str],
        start: datetime,
        end: datetime,
        exclude_event_id: Optional[str] = None,
    ) -> CalendarOperationResult[AppointmentConflict]:
        resolved = self._resolve(connection_id)
        if resolved is None:
            return _not_found(connection_id)
        connection, provider = resolved
        return await provider.check_conflict(
            connection, calendar_id or connection.calendar_id, start, end, exclude_event_id
        )

    @with_deadline
    async def get_free_busy(
        self,
        connection_id: str,
        calendar_id: Optional[str],
        query: FreeBusyQuery,
    ) -> CalendarOperationResult[FreeBusyResponse]:
        resolved = self._resolve(connection_id)
        if resolved is None:
            return _not_found(connection_id)
        connection, provider = resolved
        if not query.calendar_ids:
            query = query.model_copy(update={"calendar_ids": [calendar_id or connection.calendar_id]})
        return await provider.get_free_busy(connection, query)
