"""Pydantic schemas for the unified calendar layer.

Every datetime crossing this layer is timezone-aware. Naive values coming
from callers are interpreted as UTC.
"""

from __future__ import annotations

from datetime import date, datetime, timezone
from enum import Enum
from typing import Any, Generic, Optional, TypeVar

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

T = TypeVar("T")


def _as_aware(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


# ── Enums ──


class CalendarProvider(str, Enum):
    GOOGLE = "google"
    OUTLOOK = "outlook"
    APPLE = "apple"


class ConnectionStatus(str, Enum):
    PENDING = "pending"
    CONNECTED = "connected"
    REFRESHING = "refreshing"
    EXPIRED = "expired"
    REVOKED = "revoked"
    ERROR = "error"


class EventStatus(str, Enum):
    CONFIRMED = "confirmed"
    TENTATIVE = "tentative"
    CANCELLED = "cancelled"


# ── OAuth / connections ──


class OAuthTokens(BaseModel):
    access_token: str
    refresh_token: Optional[str] = None
    expires_at: Optional[datetime] = None
    token_type: Optional[str] = None
    scope: list[str] = Field(default_factory=list)

    @field_validator("expires_at")
    @classmethod
    def _expires_at_aware(cls, value: Optional[datetime]) -> Optional[datetime]:
        return _as_aware(value) if value is not None else None


class OAuthConfig(BaseModel):
    client_id: str
    client_secret: str
    redirect_uri: str
    scopes: list[str] = Field(default_factory=list)


class CalendarConnection(BaseModel):
    """A registered calendar account bound to one provider."""

    id: str
    provider: CalendarProvider
    calendar_id: str = "primary"
    calendar_name: Optional[str] = None
    tokens: OAuthTokens
    status: ConnectionStatus = ConnectionStatus.CONNECTED
    timezone: Optional[str] = None
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    updated_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    metadata: dict[str, Any] = Field(default_factory=dict)


class CalendarInfo(BaseModel):
    id: str
    name: str
    primary: bool = False
    timezone: Optional[str] = None


# ── Events ──


class PatientInfo(BaseModel):
    """Domain payload embedded in provider events."""

    name: str
    phone: Optional[str] = None
    email: Optional[str] = None
    reason: Optional[str] = None
    notes: Optional[str] = None
    custom_fields: dict[str, Any] = Field(default_factory=dict)


class Attendee(BaseModel):
    email: str
    name: Optional[str] = None
    response_status: Optional[str] = None  # accepted | declined | tentative | needsAction


class Organizer(BaseModel):
    email: str
    name: Optional[str] = None


class CalendarEvent(BaseModel):
    """Provider-independent view of a calendar event."""

    id: str
    title: str
    description: Optional[str] = None
    start: datetime
    end: datetime
    timezone: Optional[str] = None
    location: Optional[str] = None
    status: EventStatus = EventStatus.CONFIRMED
    attendees: list[Attendee] = Field(default_factory=list)
    organizer: Optional[Organizer] = None
    recurrence: Optional[str] = None  # RRULE text
    metadata: dict[str, Any] = Field(default_factory=dict)
    provider: CalendarProvider
    provider_event_id: str

    @field_validator("start", "end")
    @classmethod
    def _aware(cls, value: datetime) -> datetime:
        return _as_aware(value)

    @property
    def patient(self) -> Optional[PatientInfo]:
        raw = self.metadata.get("patient")
        if isinstance(raw, dict) and raw.get("name"):
            return PatientInfo.model_validate(raw)
        return None


class AppointmentDetails(BaseModel):
    """Write-side shape for creating an appointment."""

    title: str
    description: Optional[str] = None
    start: datetime
    end: datetime
    timezone: Optional[str] = None
    location: Optional[str] = None
    attendees: list[Attendee] = Field(default_factory=list)
    patient: Optional[PatientInfo] = None
    reminder_minutes: list[int] = Field(default_factory=list)

    @field_validator("start", "end")
    @classmethod
    def _aware(cls, value: datetime) -> datetime:
        return _as_aware(value)

    @model_validator(mode="after")
    def _end_after_start(self) -> AppointmentDetails:
        if self.end <= self.start:
            raise ValueError("end must be after start")
        return self


class AppointmentUpdate(BaseModel):
    """Partial update: only the fields that are set are changed."""

    title: Optional[str] = None
    description: Optional[str] = None
    start: Optional[datetime] = None
    end: Optional[datetime] = None
    timezone: Optional[str] = None
    location: Optional[str] = None
    attendees: Optional[list[Attendee]] = None
    patient: Optional[PatientInfo] = None
    reminder_minutes: Optional[list[int]] = None

    @field_validator("start", "end")
    @classmethod
    def _aware(cls, value: Optional[datetime]) -> Optional[datetime]:
        return _as_aware(value) if value is not None else None

    def merged_with(self, existing: CalendarEvent, default_timezone: str) -> AppointmentDetails:
        """Overlay this update on an existing event."""
        patient = self.patient
        if patient is None:
            patient = existing.patient or PatientInfo(name=existing.title)
        reminders = self.reminder_minutes
        if reminders is None:
            reminders = list(existing.metadata.get("reminder_minutes") or [])
        return AppointmentDetails(
            title=self.title if self.title is not None else existing.title,
            description=self.description if self.description is not None else existing.description,
            start=self.start or existing.start,
            end=self.end or existing.end,
            timezone=self.timezone or existing.timezone or default_timezone,
            location=self.location if self.location is not None else existing.location,
            attendees=self.attendees if self.attendees is not None else existing.attendees,
            patient=patient,
            reminder_minutes=reminders,
        )


# ── Availability ──


class BusinessHours(BaseModel):
    start: str = "09:00"  # HH:MM
    end: str = "17:00"  # HH:MM
    days_of_week: Optional[list[int]] = None  # 0=Sunday .. 6=Saturday

    @field_validator("start", "end")
    @classmethod
    def _hh_mm(cls, value: str) -> str:
        hours, sep, minutes = value.partition(":")
        if not sep or not hours.isdigit() or not minutes.isdigit():
            raise ValueError(f"expected HH:MM, got {value!r}")
        if not (0 <= int(hours) <= 23 and 0 <= int(minutes) <= 59):
            raise ValueError(f"time out of range: {value!r}")
        return value


class AvailabilityQuery(BaseModel):
    start: datetime
    end: datetime
    duration: int = Field(gt=0, description="Required duration in minutes")
    timezone: Optional[str] = None
    business_hours: Optional[BusinessHours] = None
    exclude_dates: list[date] = Field(default_factory=list)

    @field_validator("start", "end")
    @classmethod
    def _aware(cls, value: datetime) -> datetime:
        return _as_aware(value)


class AvailableSlot(BaseModel):
    start: datetime
    end: datetime
    duration: int
    available: bool = True


class TimeRange(BaseModel):
    start: datetime
    end: datetime


class FreeBusyQuery(BaseModel):
    start: datetime
    end: datetime
    calendar_ids: list[str] = Field(default_factory=list)
    timezone: Optional[str] = None

    @field_validator("start", "end")
    @classmethod
    def _aware(cls, value: datetime) -> datetime:
        return _as_aware(value)


class FreeBusyResponse(BaseModel):
    calendar_id: str
    busy: list[TimeRange] = Field(default_factory=list)
    available: list[TimeRange] = Field(default_factory=list)


class AppointmentConflict(BaseModel):
    has_conflict: bool
    conflicting_events: Optional[list[CalendarEvent]] = None


# ── Operation results ──


class OperationError(BaseModel):
    code: str
    message: str
    retryable: bool = False
    details: Optional[Any] = None


class CalendarOperationResult(BaseModel, Generic[T]):
    """Uniform result envelope returned by every public calendar operation."""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    success: bool
    data: Optional[T] = None
    error: Optional[OperationError] = None

    @classmethod
    def ok(cls, data: Any = None) -> CalendarOperationResult:
        return cls(success=True, data=data)

    @classmethod
    def fail(
        cls,
        code: str,
        message: str,
        *,
        retryable: bool = False,
        details: Any = None,
    ) -> CalendarOperationResult:
        return cls(
            success=False,
            error=OperationError(code=code, message=message, retryable=retryable, details=details),
        )

    @classmethod
    def from_error(cls, error: Optional[OperationError]) -> CalendarOperationResult:
        return cls(success=False, error=error)


# ── API request / response ──


class ConnectionCreateRequest(BaseModel):
    """Register a connection whose credentials were obtained elsewhere."""

    id: Optional[str] = None
    provider: CalendarProvider
    calendar_id: str = "primary"
    calendar_name: Optional[str] = None
    tokens: OAuthTokens
    timezone: Optional[str] = None
    metadata: dict[str, Any] = Field(default_factory=dict)


class ConnectionResponse(BaseModel):
    """A connection as exposed over HTTP: tokens never leave the service."""

    id: str
    provider: CalendarProvider
    calendar_id: str
    calendar_name: Optional[str] = None
    status: ConnectionStatus
    timezone: Optional[str] = None
    created_at: datetime
    updated_at: datetime
    token_expires_at: Optional[datetime] = None

    @classmethod
    def from_connection(cls, connection: CalendarConnection) -> ConnectionResponse:
        return cls(
            **connection.model_dump(include={
                "id", "provider", "calendar_id", "calendar_name", "status", "timezone", "created_at", "updated_at",
            }),
            token_expires_at=connection.tokens.expires_at,
        )


class AuthorizationUrlResponse(BaseModel):
    url: str
    state: str


class ConflictCheckRequest(BaseModel):
    start: datetime
    end: datetime
    exclude_event_id: Optional[str] = None


class ValidationResponse(BaseModel):
    valid: bool
