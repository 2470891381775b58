"""Google Calendar provider (Calendar API v3)."""

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
    TimeRange,
)
from calbridge.services.calendar import utils
from calbridge.services.calendar.base import CalendarProviderBase, catch_errors

logger = logging.getLogger(__name__)

GOOGLE_API_BASE = "https://www.googleapis.com/calendar/v3"
PAGE_SIZE = 250


class GoogleCalendarProvider(CalendarProviderBase):
    """Google Calendar over REST with OAuth bearer tokens."""

    provider = CalendarProvider.GOOGLE
    error_prefix = "GOOGLE_API_ERROR"

    def _events_url(self, calendar_id: str, event_id: Optional[str] = None) -> str:
        url = f"{GOOGLE_API_BASE}/calendars/{quote(calendar_id, safe='')}/events"
        if event_id:
            url = f"{url}/{quote(event_id, safe='')}"
        return url

    # ========== Calendars ==========

    @catch_errors("LIST_CALENDARS_ERROR")
    async def list_calendars(self, connection: CalendarConnection) -> CalendarOperationResult[list[CalendarInfo]]:
        calendars = []
        page_token = None
        while True:
            params = {"pageToken": page_token} if page_token else None
            response = await self._request(
                connection, "GET", f"{GOOGLE_API_BASE}/users/me/calendarList", params=params
            )
            data = response.json()
            for item in data.get("items", []):
                calendars.append(
                    CalendarInfo(
                        id=item["id"],
                        name=item.get("summaryOverride") or item.get("summary") or item["id"],
                        primary=bool(item.get("primary", False)),
                        timezone=item.get("timeZone"),
                    )
                )
            page_token = data.get("nextPageToken")
            if not page_token:
                break
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
        params: dict[str, Any] = {
            "timeMin": utils.format_datetime_for_api(start),
            "timeMax": utils.format_datetime_for_api(end),
            "singleEvents": "true",
            "orderBy": "startTime",
            "maxResults": PAGE_SIZE,
        }
        if timezone:
            params["timeZone"] = timezone

        events = []
        while True:
            response = await self._request(connection, "GET", self._events_url(calendar_id), params=params)
            data = response.json()
            events.extend(self._to_calendar_event(item) for item in data.get("items", []))
            page_token = data.get("nextPageToken")
            if not page_token:
                break
            params["pageToken"] = page_token

        return CalendarOperationResult.ok(events)

    @catch_errors("GET_EVENT_ERROR")
    async def get_event(
        self,
        connection: CalendarConnection,
        calendar_id: str,
        event_id: str,
    ) -> CalendarOperationResult[CalendarEvent]:
        response = await self._request(connection, "GET", self._events_url(calendar_id, event_id))
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
            self._events_url(calendar_id),
            json=self._to_google_event(appointment, tz),
        )
        event = self._to_calendar_event(response.json())
        logger.info("Created Google event %s on calendar %s", event.id, calendar_id)
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
            self._events_url(calendar_id, event_id),
            json=self._to_google_event(merged, merged.timezone),
        )
        return CalendarOperationResult.ok(self._to_calendar_event(response.json()))

    @catch_errors("DELETE_EVENT_ERROR")
    async def delete_event(
        self,
        connection: CalendarConnection,
        calendar_id: str,
        event_id: str,
    ) -> CalendarOperationResult[bool]:
        response = await self.client.delete(
            self._events_url(calendar_id, event_id),
            headers=await self._auth_headers(connection),
        )
        # Already gone counts as deleted.
        if response.status_code == 404:
            logger.info("Google event %s was already deleted", event_id)
            return CalendarOperationResult.ok(True)
        if response.status_code >= 400:
            return CalendarOperationResult.fail(
                f"{self.error_prefix}_{response.status_code}",
                self._error_message(response) or "Failed to delete event",
                retryable=response.status_code == 401 or response.status_code >= 500,
            )
        return CalendarOperationResult.ok(True)

    # ========== Free/busy ==========

    @catch_errors("GET_FREEBUSY_ERROR")
    async def get_free_busy(
        self,
        connection: CalendarConnection,
        query: FreeBusyQuery,
    ) -> CalendarOperationResult[FreeBusyResponse]:
        calendar_id = query.calendar_ids[0] if query.calendar_ids else connection.calendar_id
        body: dict[str, Any] = {
            "timeMin": utils.format_datetime_for_api(query.start),
            "timeMax": utils.format_datetime_for_api(query.end),
            "items": [{"id": calendar_id}],
        }
        if query.timezone:
            body["timeZone"] = query.timezone

        response = await self._request(connection, "POST", f"{GOOGLE_API_BASE}/freeBusy", json=body)
        calendar_data = response.json().get("calendars", {}).get(calendar_id)
        if not calendar_data or calendar_data.get("errors"):
            return CalendarOperationResult.fail(
                "CALENDAR_NOT_FOUND",
                f"Calendar {calendar_id} not found in free/busy response",
            )

        busy = [
            TimeRange(
                start=utils.parse_datetime_from_api(period["start"]),
                end=utils.parse_datetime_from_api(period["end"]),
            )
            for period in calendar_data.get("busy", [])
        ]
        return CalendarOperationResult.ok(
            utils.build_free_busy(calendar_id, query.start, query.end, busy)
        )

    # ========== Mapping ==========

    @staticmethod
    def _to_google_event(appointment: AppointmentDetails, tz: Optional[str]) -> dict:
        event: dict[str, Any] = {
            "summary": appointment.title,
            "description": appointment.description or "",
            "start": {"dateTime": utils.format_datetime_for_api(appointment.start, tz), "timeZone": tz},
            "end": {"dateTime": utils.format_datetime_for_api(appointment.end, tz), "timeZone": tz},
        }
        if appointment.location:
            event["location"] = appointment.location
        if appointment.attendees:
            event["attendees"] = [
                {"email": a.email, "displayName": a.name} if a.name else {"email": a.email}
                for a in appointment.attendees
            ]
        if appointment.reminder_minutes:
            event["reminders"] = {
                "useDefault": False,
                "overrides": [{"method": "email", "minutes": m} for m in appointment.reminder_minutes],
            }
        if appointment.patient:
            event["extendedProperties"] = {
                "private": {"patient": appointment.patient.model_dump_json(exclude_none=True)}
            }
        return event

    @staticmethod
    def _parse_when(when: dict) -> datetime:
        if when.get("dateTime"):
            return utils.parse_datetime_from_api(when["dateTime"], when.get("timeZone"))
        return utils.parse_datetime_from_api(when["date"], when.get("timeZone"))

    def _to_calendar_event(self, item: dict) -> CalendarEvent:
        start = item.get("start") or {}
        end = item.get("end") or {}

        metadata: dict[str, Any] = {}
        raw_patient = (item.get("extendedProperties") or {}).get("private", {}).get("patient")
        if raw_patient:
            try:
                metadata["patient"] = json.loads(raw_patient)
            except ValueError:
                logger.warning("Ignoring malformed patient metadata on Google event %s", item.get("id"))
        overrides = (item.get("reminders") or {}).get("overrides")
        if overrides:
            metadata["reminder_minutes"] = [r["minutes"] for r in overrides if "minutes" in r]

        organizer = item.get("organizer")
        recurrence = item.get("recurrence")
        return CalendarEvent(
            id=item["id"],
            title=item.get("summary") or "Untitled Event",
            description=item.get("description"),
            start=self._parse_when(start),
            end=self._parse_when(end),
            timezone=start.get("timeZone") or end.get("timeZone"),
            location=item.get("location"),
            status=_STATUS_MAP.get(item.get("status", "confirmed"), EventStatus.CONFIRMED),
            attendees=[
                Attendee(email=a["email"], name=a.get("displayName"), response_status=a.get("responseStatus"))
                for a in item.get("attendees", [])
                if a.get("email")
            ],
            organizer=Organizer(email=organizer["email"], name=organizer.get("displayName"))
            if organizer and organizer.get("email")
            else None,
            recurrence="\n".join(recurrence) if recurrence else None,
            metadata=metadata,
            provider=CalendarProvider.GOOGLE,
            provider_event_id=item["id"],
        )


_STATUS_MAP = {
    "confirmed": EventStatus.CONFIRMED,
    "tentative": EventStatus.TENTATIVE,
    "cancelled": EventStatus.CANCELLED,
}
