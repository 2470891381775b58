"""
Calendar API endpoints.

Provides REST API for:
- OAuth authorization and callback
- Registering, validating and refreshing calendar connections
- Appointment CRUD with double-booking protection
- Availability, conflict and free/busy lookups
"""

import logging
import secrets
import uuid
from datetime import datetime
from typing import Any, Optional

from fastapi import APIRouter, HTTPException, Query, Response, status

from calbridge.deps import CalendarServiceDep
from calbridge.schemas.calendar import (
    AppointmentConflict,
    AppointmentDetails,
    AppointmentUpdate,
    AuthorizationUrlResponse,
    AvailabilityQuery,
    AvailableSlot,
    CalendarConnection,
    CalendarEvent,
    CalendarInfo,
    CalendarOperationResult,
    CalendarProvider,
    ConflictCheckRequest,
    ConnectionCreateRequest,
    ConnectionResponse,
    FreeBusyQuery,
    FreeBusyResponse,
    ValidationResponse,
)
from calbridge.services.calendar.errors import OAuthError

logger = logging.getLogger(__name__)

router = APIRouter(tags=["calendar"])

_STATUS_BY_CODE = {
    "CONNECTION_NOT_FOUND": status.HTTP_404_NOT_FOUND,
    "CALENDAR_NOT_FOUND": status.HTTP_404_NOT_FOUND,
    "SCHEDULE_NOT_FOUND": status.HTTP_404_NOT_FOUND,
    "APPOINTMENT_CONFLICT": status.HTTP_409_CONFLICT,
    "NO_ACCESS_TOKEN": status.HTTP_401_UNAUTHORIZED,
    "OPERATION_TIMEOUT": status.HTTP_504_GATEWAY_TIMEOUT,
    "INVALID_CONNECTION": status.HTTP_400_BAD_REQUEST,
    "CONNECTION_VALIDATION_FAILED": status.HTTP_400_BAD_REQUEST,
    "INVALID_TIME_RANGE": status.HTTP_400_BAD_REQUEST,
}


def _unwrap(result: CalendarOperationResult) -> Any:
    """Return the result data or raise the matching HTTP error."""
    if result.success:
        return result.data
    error = result.error
    if error is None:
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail={"message": "Calendar operation failed"})
    raise HTTPException(
        status_code=_STATUS_BY_CODE.get(error.code, status.HTTP_502_BAD_GATEWAY),
        detail=error.model_dump(mode="json"),
    )


# ========== OAuth ==========


@router.get("/oauth/{provider}/authorize", response_model=AuthorizationUrlResponse)
async def get_authorization_url(
    provider: CalendarProvider,
    service: CalendarServiceDep,
    state: Optional[str] = Query(None),
):
    """Consent URL to send the user to."""
    state = state or secrets.token_urlsafe(32)
    config = service.oauth.resolve_oauth_config(
        CalendarConnection(id="", provider=provider, tokens={"access_token": ""})
    )
    return AuthorizationUrlResponse(url=service.oauth.generate_auth_url(provider, config, state), state=state)


@router.get(
    "/oauth/{provider}/callback",
    response_model=ConnectionResponse,
    status_code=status.HTTP_201_CREATED,
)
async def oauth_callback(
    provider: CalendarProvider,
    service: CalendarServiceDep,
    code: str = Query(...),
    state: Optional[str] = Query(None),
    calendar_id: str = Query("primary"),
    timezone: Optional[str] = Query(None),
):
    """Exchange the authorization code, then register and persist the connection."""
    connection = CalendarConnection(
        id=str(uuid.uuid4()),
        provider=provider,
        calendar_id=calendar_id,
        tokens={"access_token": ""},
        timezone=timezone,
    )
    try:
        connection.tokens = await service.oauth.exchange_code_for_tokens(
            provider, service.oauth.resolve_oauth_config(connection), code
        )
    except OAuthError as e:
        logger.warning("OAuth callback for %s failed (state=%s): %s", provider.value, state, e)
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={"code": "OAUTH_ERROR", "message": str(e), "retryable": False},
        )

    registered = _unwrap(await service.register_connection(connection))
    return ConnectionResponse.from_connection(registered)


# ========== Connections ==========


@router.post("/connections", response_model=ConnectionResponse, status_code=status.HTTP_201_CREATED)
async def register_connection(request: ConnectionCreateRequest, service: CalendarServiceDep):
    connection = CalendarConnection(
        id=request.id or str(uuid.uuid4()),
        **request.model_dump(exclude={"id"}),
    )
    registered = _unwrap(await service.register_connection(connection))
    return ConnectionResponse.from_connection(registered)


@router.get("/connections", response_model=list[ConnectionResponse])
async def list_connections(service: CalendarServiceDep):
    connections = _unwrap(await service.get_all_connections())
    return [ConnectionResponse.from_connection(c) for c in connections]


@router.get("/connections/{connection_id}", response_model=ConnectionResponse)
async def get_connection(connection_id: str, service: CalendarServiceDep):
    return ConnectionResponse.from_connection(_unwrap(await service.get_connection(connection_id)))


@router.delete("/connections/{connection_id}", status_code=status.HTTP_204_NO_CONTENT)
async def remove_connection(connection_id: str, service: CalendarServiceDep):
    _unwrap(await service.remove_connection(connection_id))
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.post("/connections/{connection_id}/validate", response_model=ValidationResponse)
async def validate_connection(connection_id: str, service: CalendarServiceDep):
    return ValidationResponse(valid=_unwrap(await service.validate_connection(connection_id)))


@router.post("/connections/{connection_id}/refresh", response_model=ConnectionResponse)
async def refresh_connection(connection_id: str, service: CalendarServiceDep):
    _unwrap(await service.refresh_connection_tokens(connection_id))
    return ConnectionResponse.from_connection(_unwrap(await service.get_connection(connection_id)))


@router.get("/connections/{connection_id}/calendars", response_model=list[CalendarInfo])
async def list_calendars(connection_id: str, service: CalendarServiceDep):
    return _unwrap(await service.list_calendars(connection_id))


# ========== Events & appointments ==========


@router.get("/connections/{connection_id}/events", response_model=list[CalendarEvent])
async def get_events(
    connection_id: str,
    service: CalendarServiceDep,
    start: datetime = Query(...),
    end: datetime = Query(...),
    calendar_id: Optional[str] = Query(None),
    timezone: Optional[str] = Query(None),
):
    return _unwrap(await service.get_events(connection_id, calendar_id, start, end, timezone))


@router.post(
    "/connections/{connection_id}/appointments",
    response_model=CalendarEvent,
    status_code=status.HTTP_201_CREATED,
)
async def create_appointment(
    connection_id: str,
    appointment: AppointmentDetails,
    service: CalendarServiceDep,
    calendar_id: Optional[str] = Query(None),
):
    """Book an appointment. Returns 409 with the conflicting events when the slot is taken."""
    return _unwrap(await service.create_appointment(connection_id, calendar_id, appointment))


@router.get("/connections/{connection_id}/appointments/{event_id}", response_model=CalendarEvent)
async def get_appointment(
    connection_id: str,
    event_id: str,
    service: CalendarServiceDep,
    calendar_id: Optional[str] = Query(None),
):
    return _unwrap(await service.get_appointment(connection_id, calendar_id, event_id))


@router.patch("/connections/{connection_id}/appointments/{event_id}", response_model=CalendarEvent)
async def update_appointment(
    connection_id: str,
    event_id: str,
    updates: AppointmentUpdate,
    service: CalendarServiceDep,
    calendar_id: Optional[str] = Query(None),
):
    return _unwrap(await service.update_appointment(connection_id, calendar_id, event_id, updates))


@router.delete(
    "/connections/{connection_id}/appointments/{event_id}",
    status_code=status.HTTP_204_NO_CONTENT,
)
async def cancel_appointment(
    connection_id: str,
    event_id: str,
    service: CalendarServiceDep,
    calendar_id: Optional[str] = Query(None),
):
    _unwrap(await service.cancel_appointment(connection_id, calendar_id, event_id))
    return Response(status_code=status.HTTP_204_NO_CONTENT)


# ========== Availability ==========


@router.post("/connections/{connection_id}/availability", response_model=list[AvailableSlot])
async def find_available_slots(
    connection_id: str,
    query: AvailabilityQuery,
    service: CalendarServiceDep,
    calendar_id: Optional[str] = Query(None),
):
    return _unwrap(await service.find_available_slots(connection_id, calendar_id, query))


@router.post("/connections/{connection_id}/conflicts", response_model=AppointmentConflict)
async def check_conflict(
    connection_id: str,
    request: ConflictCheckRequest,
    service: CalendarServiceDep,
    calendar_id: Optional[str] = Query(None),
):
    return _unwrap(
        await service.check_conflict(connection_id, calendar_id, request.start, request.end, request.exclude_event_id)
    )


@router.post("/connections/{connection_id}/free-busy", response_model=FreeBusyResponse)
async def get_free_busy(
    connection_id: str,
    query: FreeBusyQuery,
    service: CalendarServiceDep,
    calendar_id: Optional[str] = Query(None),
):
    return _unwrap(await service.get_free_busy(connection_id, calendar_id, query))
