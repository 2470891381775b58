"""
Calendar tools for LLM tool-calling.

These tools allow an agent to:
- Look up free appointment slots
- Book, reschedule and cancel appointments
- Check a time range for conflicts
- Read free/busy information

Handlers live in ``calendar_handlers``; every tool answers with a
``{"success": ..., "data" | "error": ...}`` payload.
"""

from typing import List

_CONNECTION_PROPERTIES = {
    "connection_id": {
        "type": "string",
        "description": "Calendar connection ID (optional when a default connection is configured)",
    },
    "calendar_id": {
        "type": "string",
        "description": "Calendar ID inside the connection (optional when a default calendar is configured)",
    },
}

_PATIENT_SCHEMA = {
    "type": "object",
    "description": "Patient the appointment is for",
    "properties": {
        "name": {"type": "string"},
        "phone": {"type": "string"},
        "email": {"type": "string"},
        "reason": {"type": "string"},
        "notes": {"type": "string"},
    },
    "required": ["name"],
}


def get_calendar_tools() -> List[dict]:
    """
    Get calendar tool definitions for LLM function calling.

    Returns OpenAI-compatible function calling definitions.
    """
    return [
        {
            "type": "function",
            "function": {
                "name": "get_calendar_availability",
                "description": (
                    "Find free appointment slots. Defaults to the next 7 days and 30-minute slots. "
                    "Slots are proposed every 15 minutes."
                ),
                "parameters": {
                    "type": "object",
                    "properties": {
                        **_CONNECTION_PROPERTIES,
                        "start_date": {
                            "type": "string",
                            "description": "Start of the search window (ISO 8601, default: now)",
                            "format": "date-time",
                        },
                        "end_date": {
                            "type": "string",
                            "description": "End of the search window (ISO 8601, default: start + 7 days)",
                            "format": "date-time",
                        },
                        "duration": {
                            "type": "integer",
                            "description": "Appointment length in minutes (default: 30)",
                            "default": 30,
                        },
                        "timezone": {
                            "type": "string",
                            "description": "IANA timezone used for business hours and excluded dates",
                        },
                        "business_hours": {
                            "type": "object",
                            "description": "Only propose slots inside these hours",
                            "properties": {
                                "start": {"type": "string", "description": "HH:MM"},
                                "end": {"type": "string", "description": "HH:MM"},
                                "days_of_week": {
                                    "type": "array",
                                    "items": {"type": "integer"},
                                    "description": "0=Sunday .. 6=Saturday",
                                },
                            },
                        },
                    },
                    "required": [],
                },
            },
        },
        {
            "type": "function",
            "function": {
                "name": "create_calendar_event",
                "description": (
                    "Book an appointment for a patient. Fails with APPOINTMENT_CONFLICT "
                    "when the time slot is already taken."
                ),
                "parameters": {
                    "type": "object",
                    "properties": {
                        **_CONNECTION_PROPERTIES,
                        "start": {"type": "string", "format": "date-time"},
                        "end": {"type": "string", "format": "date-time"},
                        "timezone": {"type": "string"},
                        "title": {
                            "type": "string",
                            "description": "Defaults to '<patient name> - <reason>'",
                        },
                        "description": {"type": "string"},
                        "location": {"type": "string"},
                        "patient": _PATIENT_SCHEMA,
                        "patient_name": {"type": "string", "description": "Shortcut for patient.name"},
                        "patient_phone": {"type": "string"},
                        "patient_email": {"type": "string"},
                        "reason": {"type": "string"},
                        "notes": {"type": "string"},
                        "reminder_minutes": {
                            "type": "array",
                            "items": {"type": "integer"},
                            "description": "Reminders before start, in minutes (default: 1440 and 60)",
                        },
                    },
                    "required": ["start", "end"],
                },
            },
        },
        {
            "type": "function",
            "function": {
                "name": "update_calendar_event",
                "description": "Reschedule or edit an appointment. Only the given fields change.",
                "parameters": {
                    "type": "object",
                    "properties": {
                        **_CONNECTION_PROPERTIES,
                        "event_id": {"type": "string"},
                        "start": {"type": "string", "format": "date-time"},
                        "end": {"type": "string", "format": "date-time"},
                        "timezone": {"type": "string"},
                        "title": {"type": "string"},
                        "description": {"type": "string"},
                        "location": {"type": "string"},
                        "patient": _PATIENT_SCHEMA,
                    },
                    "required": ["event_id"],
                },
            },
        },
        {
            "type": "function",
            "function": {
                "name": "delete_calendar_event",
                "description": "Cancel an appointment. Ask for confirmation first.",
                "parameters": {
                    "type": "object",
                    "properties": {
                        **_CONNECTION_PROPERTIES,
                        "event_id": {"type": "string"},
                    },
                    "required": ["event_id"],
                },
            },
        },
        {
            "type": "function",
            "function": {
                "name": "check_calendar_conflict",
                "description": "Check whether a time range overlaps existing appointments.",
                "parameters": {
                    "type": "object",
                    "properties": {
                        **_CONNECTION_PROPERTIES,
                        "start": {"type": "string", "format": "date-time"},
                        "end": {"type": "string", "format": "date-time"},
                        "exclude_event_id": {
                            "type": "string",
                            "description": "Ignore this event (when rescheduling it)",
                        },
                    },
                    "required": ["start", "end"],
                },
            },
        },
        {
            "type": "function",
            "function": {
                "name": "get_free_busy",
                "description": "Busy and free periods of a calendar (default: next 7 days).",
                "parameters": {
                    "type": "object",
                    "properties": {
                        **_CONNECTION_PROPERTIES,
                        "start": {"type": "string", "format": "date-time"},
                        "end": {"type": "string", "format": "date-time"},
                        "timezone": {"type": "string"},
                    },
                    "required": [],
                },
            },
        },
    ]


# System prompt addition for calendar context
CALENDAR_SYSTEM_PROMPT_ADDITION = """
## Calendar Tools

You can manage appointments in the connected Google, Outlook or Apple calendar.

### Recommended workflow:

1. **Find a slot**: call `get_calendar_availability` and offer at most three slots
2. **Book**: call `create_calendar_event` with the patient name and reason
   - On `APPOINTMENT_CONFLICT`, offer other slots instead of retrying
3. **Reschedule / cancel**: use `update_calendar_event` / `delete_calendar_event`
   - Confirm with the caller before cancelling

### Rules:

- Always send ISO 8601 datetimes with an offset
- Default appointment length: 30 minutes
- Retry only errors marked `retryable`
"""
