"""Pydantic schemas for API request/response validation."""

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
    ConnectionResponse,
    ConnectionStatus,
    FreeBusyQuery,
    FreeBusyResponse,
    OAuthTokens,
    PatientInfo,
)

__all__ = [
    "AppointmentConflict",
    "AppointmentDetails",
    "AppointmentUpdate",
    "AvailabilityQuery",
    "AvailableSlot",
    "CalendarConnection",
    "CalendarEvent",
    "CalendarInfo",
    "CalendarOperationResult",
    "CalendarProvider",
    "ConnectionResponse",
    "ConnectionStatus",
    "FreeBusyQuery",
    "FreeBusyResponse",
    "OAuthTokens",
    "PatientInfo",
]
