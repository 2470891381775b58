"""
Calendar tool handlers.

These handlers execute calendar tools against a :class:`CalendarService` and
return plain dict payloads an agent can read back.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional

from pydantic import ValidationError

from calbridge.config import Settings, get_settings
from calbridge.schemas.calendar import (
    AppointmentDetails,
    AppointmentUpdate,
    AvailabilityQuery,
    BusinessHours,
    CalendarOperationResult,
    FreeBusyQuery,
    PatientInfo,
)
from calbridge.services.calendar.service import CalendarService
from calbridge.services.calendar.utils import parse_datetime_from_api

logger = logging.getLogger(__name__)

DEFAULT_WINDOW = timedelta(days=7)


@dataclass
class CalendarToolConfig:
    """What the handlers need besides the tool arguments."""

    service: CalendarService
    default_connection_id: Optional[str] = None
    default_calendar_id: Optional[str] = None
    settings: Settings = field(default_factory=get_settings)


class InvalidToolInput(ValueError):
    def __init__(self, message: str, missing: Optional[List[str]] = None) -> None:
        super().__init__(message)
        self.missing = missing or []


# ========== Helpers ==========


def _invalid(message: str, missing: Optional[List[str]] = None) -> Dict[str, Any]:
    return {
        "success": False,
        "error": {
            "code": "INVALID_INPUT",
            "message": message,
            "retryable": False,
            "details": {"missing": missing or []},
        },
    }


def _failure(result: CalendarOperationResult, fallback: str) -> Dict[str, Any]:
    if result.error is None:
        return {"success": False, "error": {"code": "CALENDAR_ERROR", "message": fallback, "retryable": False}}
    return {"success": False, "error": result.error.model_dump(mode="json")}


def _resolve_ids(args: Dict[str, Any], config: CalendarToolConfig, *extra: str) -> tuple:
    connection_id = args.get("connection_id") or config.default_connection_id
    calendar_id = args.get("calendar_id") or config.default_calendar_id
    values = {"connection_id": connection_id, "calendar_id": calendar_id}
    values.update({name: args.get(name) for name in extra})

    missing = [name for name, value in values.items() if not value]
    if missing:
        raise InvalidToolInput(f"{', '.join(missing)} required", missing)
    return tuple(values.values())


def _parse_when(args: Dict[str, Any], name: str) -> Optional[datetime]:
    raw = args.get(name)
    if not raw:
        return None
    try:
        return parse_datetime_from_api(str(raw))
    except ValueError:
        raise InvalidToolInput(f"{name} is not a valid ISO 8601 datetime: {raw!r}") from None


def build_appointment_description(patient: PatientInfo) -> str:
    parts = []
    if patient.reason:
        parts.append(f"Reason: {patient.reason}")
    if patient.phone:
        parts.append(f"Phone: {patient.phone}")
    if patient.email:
        parts.append(f"Email: {patient.email}")
    if patient.notes:
        parts.append(f"Notes: {patient.notes}")
    return "\n".join(parts) or "Appointment booking"


def _patient_from_args(args: Dict[str, Any]) -> Optional[PatientInfo]:
    if args.get("patient"):
        return PatientInfo.model_validate(args["patient"])
    if not args.get("patient_name"):
        return None
    return PatientInfo(
        name=args["patient_name"],
        phone=args.get("patient_phone"),
        email=args.get("patient_email"),
        reason=args.get("reason"),
        notes=args.get("notes"),
    )


# ========== Handlers ==========


async def handle_get_calendar_availability(args: Dict[str, Any], config: CalendarToolConfig) -> Dict[str, Any]:
    connection_id, calendar_id = _resolve_ids(args, config)
    start = _parse_when(args, "start_date") or datetime.now(timezone.utc)
    end = _parse_when(args, "end_date") or start + DEFAULT_WINDOW
    duration = int(args.get("duration") or config.settings.default_slot_duration_minutes)

    query = AvailabilityQuery(
        start=start,
        end=end,
        duration=duration,
        timezone=args.get("timezone"),
        business_hours=BusinessHours.model_validate(args["business_hours"]) if args.get("business_hours") else None,
    )
    result = await config.service.find_available_slots(connection_id, calendar_id, query)
    if not result.success:
        return _failure(result, "Failed to get calendar availability")

    slots = result.data or []
    return {
        "success": True,
        "data": {
            "slots": [slot.model_dump(mode="json") for slot in slots],
            "count": len(slots),
            "start_date": start.isoformat(),
            "end_date": end.isoformat(),
            "duration": duration,
        },
    }


async def handle_create_calendar_event(args: Dict[str, Any], config: CalendarToolConfig) -> Dict[str, Any]:
    connection_id, calendar_id = _resolve_ids(args, config)
    start = _parse_when(args, "start")
    end = _parse_when(args, "end")
    if start is None or end is None:
        missing = [name for name, value in (("start", start), ("end", end)) if value is None]
        return _invalid("start and end times are required", missing)

    patient = _patient_from_args(args)
    if patient is None or not patient.name:
        return _invalid("Patient name is required", ["patient.name"])

    appointment = AppointmentDetails(
        title=args.get("title") or f"{patient.name} - {patient.reason or 'Appointment'}",
        description=args.get("description") or build_appointment_description(patient),
        start=start,
        end=end,
        timezone=args.get("timezone"),
        location=args.get("location"),
        patient=patient,
        reminder_minutes=args.get("reminder_minutes") or list(config.settings.default_reminder_minutes),
    )
    result = await config.service.create_appointment(connection_id, calendar_id, appointment)
    if not result.success or result.data is None:
        return _failure(result, "Failed to create calendar event")

    event = result.data
    return {
        "success": True,
        "data": {
            "event": event.model_dump(mode="json"),
            "event_id": event.id,
            "confirmation": {
                "title": event.title,
                "start": event.start.isoformat(),
                "end": event.end.isoformat(),
                "location": event.location,
            },
        },
    }


async def handle_update_calendar_event(args: Dict[str, Any], config: CalendarToolConfig) -> Dict[str, Any]:
    connection_id, calendar_id, event_id = _resolve_ids(args, config, "event_id")
    updates = AppointmentUpdate(
        start=_parse_when(args, "start"),
        end=_parse_when(args, "end"),
        title=args.get("title"),
        description=args.get("description"),
        location=args.get("location"),
        timezone=args.get("timezone"),
        patient=PatientInfo.model_validate(args["patient"]) if args.get("patient") else None,
    )
    result = await config.service.update_appointment(connection_id, calendar_id, event_id, updates)
    if not result.success or result.data is None:
        return _failure(result, "Failed to update calendar event")
    return {
        "success": True,
        "data": {"event": result.data.model_dump(mode="json"), "event_id": result.data.id},
    }


async def handle_delete_calendar_event(args: Dict[str, Any], config: CalendarToolConfig) -> Dict[str, Any]:
    connection_id, calendar_id, event_id = _resolve_ids(args, config, "event_id")
    result = await config.service.cancel_appointment(connection_id, calendar_id, event_id)
    if not result.success:
        return _failure(result, "Failed to delete calendar event")
    return {"success": True, "data": {"deleted": True, "event_id": event_id}}


async def handle_check_calendar_conflict(args: Dict[str, Any], config: CalendarToolConfig) -> Dict[str, Any]:
    connection_id, calendar_id = _resolve_ids(args, config)
    start = _parse_when(args, "start")
    end = _parse_when(args, "end")
    if start is None or end is None:
        missing = [name for name, value in (("start", start), ("end", end)) if value is None]
        return _invalid("start and end times are required", missing)

    result = await config.service.check_conflict(
        connection_id, calendar_id, start, end, args.get("exclude_event_id")
    )
    if not result.success or result.data is None:
        return _failure(result, "Failed to check calendar conflict")
    return {
        "success": True,
        "data": {
            "has_conflict": result.data.has_conflict,
            "conflicting_events": [e.model_dump(mode="json") for e in result.data.conflicting_events or []],
        },
    }


async def handle_get_free_busy(args: Dict[str, Any], config: CalendarToolConfig) -> Dict[str, Any]:
    connection_id, calendar_id = _resolve_ids(args, config)
    start = _parse_when(args, "start") or datetime.now(timezone.utc)
    end = _parse_when(args, "end") or start + DEFAULT_WINDOW

    query = FreeBusyQuery(start=start, end=end, calendar_ids=[calendar_id], timezone=args.get("timezone"))
    result = await config.service.get_free_busy(connection_id, calendar_id, query)
    if not result.success or result.data is None:
        return _failure(result, "Failed to get free/busy information")
    return {"success": True, "data": result.data.model_dump(mode="json")}


ToolHandler = Callable[[Dict[str, Any], CalendarToolConfig], Awaitable[Dict[str, Any]]]

CALENDAR_TOOL_HANDLERS: Dict[str, ToolHandler] = {
    "get_calendar_availability": handle_get_calendar_availability,
    "create_calendar_event": handle_create_calendar_event,
    "update_calendar_event": handle_update_calendar_event,
    "delete_calendar_event": handle_delete_calendar_event,
    "check_calendar_conflict": handle_check_calendar_conflict,
    "get_free_busy": handle_get_free_busy,
}


async def execute_calendar_tool(
    tool_name: str,
    args: Dict[str, Any],
    config: CalendarToolConfig,
) -> Dict[str, Any]:
    """Dispatch a tool call by name; malformed input never raises."""
    handler = CALENDAR_TOOL_HANDLERS.get(tool_name)
    if handler is None:
        return _invalid(f"Unknown calendar tool: {tool_name}")

    try:
        return await handler(args, config)
    except InvalidToolInput as e:
        return _invalid(str(e), e.missing)
    except ValidationError as e:
        return _invalid(f"Invalid arguments for {tool_name}: {e.errors(include_url=False)}")
    except Exception as e:
        logger.error(f"Error in {tool_name}: {e}", exc_info=True)
        return {
            "success": False,
            "error": {"code": "EXTERNAL_API_FAILURE", "message": str(e), "retryable": True},
        }
