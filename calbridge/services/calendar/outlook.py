"""Microsoft Outlook provider (Microsoft Graph v1.0)."""

from __future__ import annotations

import json
import logging
from datetime import datetime
from typing import Any, Optional
from urllib.parse import quote

from calbridge.schemas.calendar import (
    AppointmentDetails,
    AppointmentUpdate,
    Attendee,
    CalendarConnection,
    CalendarEvent,
    CalendarInfo,
    CalendarOperationResult,
    CalendarProvider,
    EventStatus,
    FreeBusyQuery,
    FreeBusyResponse,
    Organizer,
)
from calbridge.services.calendar import utils
from calbridge.services.calendar.base import CalendarProviderBase, catch_errors

logger = logging.getLogger(__name__)

GRAPH_API_BASE = "https://graph.microsoft.com/v1.0"

# Named MAPI property holding the JSON patient payload.
PATIENT_PROPERTY_ID = "String {66f5a359-4659-4830-9070-00047ec6ac6e} Name Patient"
PATIENT_EXPAND = f"singleValueExtendedProperties($filter=id eq '{PATIENT_PROPERTY_ID}')"

# Reads come back in UTC so parsing never depends on the mailbox timezone.
READ_HEADERS = {"Prefer": 'outlook.timezone="UTC"'}

DEFAULT_REMINDER_MINUTES = 15

_RESPONSE_MAP = {"accepted": "accepted", "declined": "declined", "tentativelyAccepted": "tentative"}


class OutlookCalendarProvider(CalendarProviderBase):
    """Outlook / Microsoft 365 calendars through Microsoft Graph."""

    provider = CalendarProvider.OUTLOOK
    error_prefix = "GRAPH_API_ERROR"

    @staticmethod
    def _calendar_path(calendar_id: str) -> str:
        if calendar_id in ("primary", "me"):
            return "me/calendar"
        return f"me/calendars/{quote(calendar_id, safe='')}"

    def _event_url(self, calendar_id: str, event_id: str) -> str:
        return f"{GRAPH_API_BASE}/{self._calendar_path(calendar_id)}/events/{quote(event_id, safe='')}"

    # ========== Calendars ==========

    @catch_errors("LIST_CALENDARS_ERROR")
    async def list_calendars(self, connection: CalendarConnection) -> CalendarOperationResult[list[CalendarInfo]]:
        calendars = []
        url: Optional[str] = f"{GRAPH_API_BASE}/me/calendars"
        while url:
            response = await self._request(connection, "GET", url)
            data = response.json()
            for item in data.get("value", []):
                calendars.append(
                    CalendarInfo(
                        id=item["id"],
                        name=item.get("name") or item["id"],
                        primary=bool(item.get("isDefaultCalendar", False)),
                        timezone=connection.timezone,
                    )
                )
            url = data.get("@odata.nextLink")
        return CalendarOperationResult.ok(calendars)

    # ========== Events ==========

    @catch_errors("GET_EVENTS_ERROR")
    async def get_events(
        self,
        connection: CalendarConnection,
        calendar_id: str,
        start: datetime,
        end: datetime,
        timezone: Optional[str] = None,
    ) -> CalendarOperationResult[list[CalendarEvent]]:
        url: Optional[str] = f"{GRAPH_API_BASE}/{self._calendar_path(calendar_id)}/calendarView"
        params: Optional[dict[str, Any]] = {
            "startDateTime": utils.format_datetime_for_api(start),
            "endDateTime": utils.format_datetime_for_api(end),
            "$orderby": "start/dateTime",
            "$top": 100,
            "$expand": PATIENT_EXPAND,
        }

        events = []
        while url:
            response = await self._request(connection, "GET", url, params=params, headers=READ_HEADERS)
            data = response.json()
            events.extend(self._to_calendar_event(item) for item in data.get("value", []))
            # nextLink already carries the query string.
            url, params = data.get("@odata.nextLink"), None

        return CalendarOperationResult.ok(events)

    @catch_errors("GET_EVENT_ERROR")
    async def get_event(
        self,
        connection: CalendarConnection,
        calendar_id: str,
        event_id: str,
    ) -> CalendarOperationResult[CalendarEvent]:
        response = await self._request(
            connection,
            "GET",
            self._event_url(calendar_id, event_id),
            params={"$expand": PATIENT_EXPAND},
            headers=READ_HEADERS,
        )
        return CalendarOperationResult.ok(self._to_calendar_event(response.json()))

    @catch_errors("CREATE_EVENT_ERROR")
    async def create_event(
        self,
        connection: CalendarConnection,
        calendar_id: str,
        appointment: AppointmentDetails,
    ) -> CalendarOperationResult[CalendarEvent]:
        tz = self._timezone_for(connection, appointment.timezone)
        response = await self._request(
            connection,
            "POST",
            f"{GRAPH_API_BASE}/{self._calendar_path(calendar_id)}/events",
            json=self._to_graph_event(appointment, tz),
        )
        event = self._with_written_metadata(self._to_calendar_event(response.json()), appointment)
        logger.info("Created Outlook event %s on calendar %s", event.id, calendar_id)
        return CalendarOperationResult.ok(event)

    @catch_errors("UPDATE_EVENT_ERROR")
    async def update_event(
        self,
        connection: CalendarConnection,
        calendar_id: str,
        event_id: str,
        updates: AppointmentUpdate,
    ) -> CalendarOperationResult[CalendarEvent]:
        existing = await self.get_event(connection, calendar_id, event_id)
        if not existing.success or existing.data is None:
            return existing

        merged = updates.merged_with(existing.data, self._timezone_for(connection))
        response = await self._request(
            connection,
            "PATCH",
            self._event_url(calendar_id, event_id),
            json=self._to_graph_event(merged, merged.timezone),
        )
        return CalendarOperationResult.ok(
            self._with_written_metadata(self._to_calendar_event(response.json()), merged)
        )

    @catch_errors("DELETE_EVENT_ERROR")
    async def delete_event(
        self,
        connection: CalendarConnection,
        calendar_id: str,
        event_id: str,
    ) -> CalendarOperationResult[bool]:
        await self._request(connection, "DELETE", self._event_url(calendar_id, event_id))
        return CalendarOperationResult.ok(True)

    # ========== Free/busy ==========

    @catch_errors("GET_FREEBUSY_ERROR")
    async def get_free_busy(
        self,
        connection: CalendarConnection,
        query: FreeBusyQuery,
    ) -> CalendarOperationResult[FreeBusyResponse]:
        calendar_id = query.calendar_ids[0] if query.calendar_ids else connection.calendar_id
        if calendar_id in ("primary", "me"):
            schedule_id = connection.metadata.get("email") or "me"
        else:
            schedule_id = calendar_id

        body = {
            "schedules": [schedule_id],
            "startTime": {"dateTime": utils.format_local_datetime(query.start, "UTC"), "timeZone": "UTC"},
            "endTime": {"dateTime": utils.format_local_datetime(query.end, "UTC"), "timeZone": "UTC"},
            "availabilityViewInterval": utils.AVAILABILITY_VIEW_INTERVAL_MINUTES,
        }
        response = await self._request(
            connection, "POST", f"{GRAPH_API_BASE}/me/calendar/getSchedule", json=body
        )
        schedules = response.json().get("value") or []
        if not schedules:
            return CalendarOperationResult.fail("SCHEDULE_NOT_FOUND", "Schedule not found in response")

        busy, available = utils.parse_availability_view(
            schedules[0].get("availabilityView") or "",
            query.start,
            query.end,
        )
        return CalendarOperationResult.ok(
            FreeBusyResponse(calendar_id=calendar_id, busy=busy, available=available)
        )

    # ========== Mapping ==========

    @staticmethod
    def _to_graph_event(appointment: AppointmentDetails, tz: Optional[str]) -> dict:
        event: dict[str, Any] = {
            "subject": appointment.title,
            "body": {"contentType": "text", "content": appointment.description or ""},
            "start": {"dateTime": utils.format_local_datetime(appointment.start, tz), "timeZone": tz},
            "end": {"dateTime": utils.format_local_datetime(appointment.end, tz), "timeZone": tz},
            "isReminderOn": True,
            # Graph keeps a single reminder per event.
            "reminderMinutesBeforeStart": (
                appointment.reminder_minutes[0] if appointment.reminder_minutes else DEFAULT_REMINDER_MINUTES
            ),
        }
        if appointment.location:
            event["location"] = {"displayName": appointment.location}
        if appointment.attendees:
            event["attendees"] = [
                {"emailAddress": {"address": a.email, "name": a.name}, "type": "required"}
                for a in appointment.attendees
            ]
        if appointment.patient:
            event["singleValueExtendedProperties"] = [
                {"id": PATIENT_PROPERTY_ID, "value": appointment.patient.model_dump_json(exclude_none=True)}
            ]
        return event

    @staticmethod
    def _with_written_metadata(event: CalendarEvent, appointment: AppointmentDetails) -> CalendarEvent:
        """Write responses omit expanded properties; fill them from what was sent."""
        if appointment.patient and "patient" not in event.metadata:
            event.metadata["patient"] = appointment.patient.model_dump(exclude_none=True)
        return event

    @staticmethod
    def _parse_when(when: dict) -> datetime:
        return utils.parse_datetime_from_api(when["dateTime"], when.get("timeZone") or "UTC")

    def _to_calendar_event(self, item: dict) -> CalendarEvent:
        metadata: dict[str, Any] = {}
        for prop in item.get("singleValueExtendedProperties") or []:
            if prop.get("id", "").lower() == PATIENT_PROPERTY_ID.lower() and prop.get("value"):
                try:
                    metadata["patient"] = json.loads(prop["value"])
                except ValueError:
                    logger.warning("Ignoring malformed patient metadata on Graph event %s", item.get("id"))
        if item.get("isReminderOn") and item.get("reminderMinutesBeforeStart") is not None:
            metadata["reminder_minutes"] = [item["reminderMinutesBeforeStart"]]

        if item.get("isCancelled"):
            status = EventStatus.CANCELLED
        elif item.get("showAs") == "tentative":
            status = EventStatus.TENTATIVE
        else:
            status = EventStatus.CONFIRMED

        attendees = []
        for a in item.get("attendees") or []:
            address = (a.get("emailAddress") or {}).get("address")
            if not address:
                continue
            response = (a.get("status") or {}).get("response")
            attendees.append(
                Attendee(
                    email=address,
                    name=a["emailAddress"].get("name"),
                    response_status=_RESPONSE_MAP.get(response, "needsAction"),
                )
            )

        organizer_address = ((item.get("organizer") or {}).get("emailAddress") or {})
        body = item.get("body") or {}
        start = item.get("start") or {}
        return CalendarEvent(
            id=item["id"],
            title=item.get("subject") or "Untitled Event",
            description=body.get("content") or item.get("bodyPreview"),
            start=self._parse_when(start),
            end=self._parse_when(item.get("end") or {}),
            timezone=start.get("timeZone"),
            location=(item.get("location") or {}).get("displayName") or None,
            status=status,
            attendees=attendees,
            organizer=Organizer(email=organizer_address["address"], name=organizer_address.get("name"))
            if organizer_address.get("address")
            else None,
            recurrence=json.dumps(item["recurrence"]) if item.get("recurrence") else None,
            metadata=metadata,
            provider=CalendarProvider.OUTLOOK,
            provider_event_id=item["id"],
        )
