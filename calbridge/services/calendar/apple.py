"""
Apple iCloud provider over CalDAV.

iCloud calendars authenticate with HTTP Basic Auth: ``metadata["username"]``
plus an app-specific password stored in ``tokens.access_token``. Each event
is a ``{uid}.ics`` resource inside ``/calendars/{calendar_id}/``.
"""

from __future__ import annotations

import base64
import json
import logging
import uuid
import xml.etree.ElementTree as ET
from datetime import date, datetime, time, timedelta, timezone
from typing import Any, Optional
from urllib.parse import quote, unquote

from icalendar import Alarm, Calendar, Event, vCalAddress, vText

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
    OAuthTokens,
    Organizer,
    TimeRange,
)
from calbridge.services.calendar import utils
from calbridge.services.calendar.base import CalendarProviderBase, catch_errors
from calbridge.services.calendar.errors import MissingAccessTokenError

logger = logging.getLogger(__name__)

DAV_NS = {"d": "DAV:", "c": "urn:ietf:params:xml:ns:caldav"}
PRODID = "-//calbridge//CalDAV client//EN"
PATIENT_PROPERTY = "X-PATIENT"

PROPFIND_CALENDARS = """<?xml version="1.0" encoding="utf-8" ?>
<d:propfind xmlns:d="DAV:" xmlns:c="urn:ietf:params:xml:ns:caldav">
  <d:prop>
    <d:displayname/>
    <c:calendar-description/>
    <d:resourcetype/>
  </d:prop>
</d:propfind>"""

CALENDAR_QUERY = """<?xml version="1.0" encoding="utf-8" ?>
<c:calendar-query xmlns:d="DAV:" xmlns:c="urn:ietf:params:xml:ns:caldav">
  <d:prop>
    <d:getetag/>
    <c:calendar-data/>
  </d:prop>
  <c:filter>
    <c:comp-filter name="VCALENDAR">
      <c:comp-filter name="VEVENT">
        <c:time-range start="{start}" end="{end}"/>
      </c:comp-filter>
    </c:comp-filter>
  </c:filter>
</c:calendar-query>"""

XML_HEADERS = {"Content-Type": "application/xml; charset=utf-8"}
ICS_HEADERS = {"Content-Type": "text/calendar; charset=utf-8"}


class AppleCalendarProvider(CalendarProviderBase):
    """iCloud (or any CalDAV server) calendars."""

    provider = CalendarProvider.APPLE
    error_prefix = "CALDAV_ERROR"

    # ── Auth & URLs ──

    @staticmethod
    def _credentials(connection: CalendarConnection) -> tuple[str, str]:
        return connection.metadata.get("username") or "", connection.tokens.access_token or ""

    async def _auth_headers(self, connection: CalendarConnection) -> dict[str, str]:
        username, password = self._credentials(connection)
        if not username or not password:
            raise MissingAccessTokenError("Apple Calendar requires username and app-specific password")
        encoded = base64.b64encode(f"{username}:{password}".encode()).decode()
        return {"Authorization": f"Basic {encoded}"}

    def _base_url(self, connection: CalendarConnection) -> str:
        return (connection.metadata.get("caldav_url") or self.settings.apple_caldav_url).rstrip("/")

    def _calendar_url(self, connection: CalendarConnection, calendar_id: str) -> str:
        return f"{self._base_url(connection)}/calendars/{quote(calendar_id, safe='')}/"

    def _event_url(self, connection: CalendarConnection, calendar_id: str, event_id: str) -> str:
        return f"{self._calendar_url(connection, calendar_id)}{quote(event_id, safe='')}.ics"

    # ── Lifecycle ──

    async def initialize(self, connection: CalendarConnection) -> CalendarOperationResult[bool]:
        username, password = self._credentials(connection)
        if not username or not password:
            return CalendarOperationResult.fail(
                "INVALID_CONNECTION", "Apple Calendar requires username and app-specific password"
            )
        return await super().initialize(connection)

    async def refresh_tokens(
        self,
        connection: CalendarConnection,
        refresh_token: Optional[str] = None,
    ) -> CalendarOperationResult[OAuthTokens]:
        # App-specific passwords do not expire.
        return CalendarOperationResult.ok(connection.tokens)

    # ========== Calendars ==========

    @catch_errors("LIST_CALENDARS_ERROR")
    async def list_calendars(self, connection: CalendarConnection) -> CalendarOperationResult[list[CalendarInfo]]:
        response = await self._request(
            connection,
            "PROPFIND",
            f"{self._base_url(connection)}/calendars/",
            content=PROPFIND_CALENDARS,
            headers={**XML_HEADERS, "Depth": "1"},
        )

        calendars = []
        for entry in ET.fromstring(response.content).findall("d:response", DAV_NS):
            if entry.find(".//d:resourcetype/c:calendar", DAV_NS) is None:
                continue
            calendar_id = _href_name(entry.findtext("d:href", default="", namespaces=DAV_NS))
            if not calendar_id:
                continue
            calendars.append(
                CalendarInfo(
                    id=calendar_id,
                    name=entry.findtext(".//d:displayname", default="", namespaces=DAV_NS) or calendar_id,
                    primary=calendar_id == connection.calendar_id,
                    timezone=connection.timezone,
                )
            )
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
        body = CALENDAR_QUERY.format(start=utils.format_ics_datetime(start), end=utils.format_ics_datetime(end))
        response = await self._request(
            connection,
            "REPORT",
            self._calendar_url(connection, calendar_id),
            content=body,
            headers={**XML_HEADERS, "Depth": "1"},
        )

        events = []
        for entry in ET.fromstring(response.content).findall("d:response", DAV_NS):
            data = entry.findtext(".//c:calendar-data", default="", namespaces=DAV_NS)
            if not data.strip():
                continue
            href = entry.findtext("d:href", default="", namespaces=DAV_NS)
            events.append(parse_ics_event(data, event_id=_href_name(href, suffix=".ics") or None))
        events.sort(key=lambda e: e.start)
        return CalendarOperationResult.ok(events)

    @catch_errors("GET_EVENT_ERROR")
    async def get_event(
        self,
        connection: CalendarConnection,
        calendar_id: str,
        event_id: str,
    ) -> CalendarOperationResult[CalendarEvent]:
        response = await self._request(connection, "GET", self._event_url(connection, calendar_id, event_id))
        return CalendarOperationResult.ok(parse_ics_event(response.text, event_id=event_id))

    @catch_errors("CREATE_EVENT_ERROR")
    async def create_event(
        self,
        connection: CalendarConnection,
        calendar_id: str,
        appointment: AppointmentDetails,
    ) -> CalendarOperationResult[CalendarEvent]:
        uid = str(uuid.uuid4())
        ics = build_ics_event(uid, appointment)
        await self._request(
            connection,
            "PUT",
            self._event_url(connection, calendar_id, uid),
            content=ics,
            headers={**ICS_HEADERS, "If-None-Match": "*"},
        )
        logger.info("Created CalDAV event %s on calendar %s", uid, calendar_id)
        return CalendarOperationResult.ok(await self._read_back(connection, calendar_id, uid, ics))

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
        ics = build_ics_event(existing.data.provider_event_id, merged)
        await self._request(
            connection,
            "PUT",
            self._event_url(connection, calendar_id, event_id),
            content=ics,
            headers=ICS_HEADERS,
        )
        return CalendarOperationResult.ok(await self._read_back(connection, calendar_id, event_id, ics))

    async def _read_back(
        self,
        connection: CalendarConnection,
        calendar_id: str,
        event_id: str,
        sent_ics: bytes,
    ) -> CalendarEvent:
        """Return the stored event, or the one we sent when the read fails."""
        result = await self.get_event(connection, calendar_id, event_id)
        if result.success and result.data is not None:
            return result.data
        logger.warning(
            "Could not read back CalDAV event %s (%s), using the written copy",
            event_id,
            result.error.code if result.error else "unknown",
        )
        return parse_ics_event(sent_ics, event_id=event_id)

    @catch_errors("DELETE_EVENT_ERROR")
    async def delete_event(
        self,
        connection: CalendarConnection,
        calendar_id: str,
        event_id: str,
    ) -> CalendarOperationResult[bool]:
        await self._request(connection, "DELETE", self._event_url(connection, calendar_id, event_id))
        return CalendarOperationResult.ok(True)

    # ========== Free/busy ==========

    @catch_errors("GET_FREEBUSY_ERROR")
    async def get_free_busy(
        self,
        connection: CalendarConnection,
        query: FreeBusyQuery,
    ) -> CalendarOperationResult[FreeBusyResponse]:
        calendar_id = query.calendar_ids[0] if query.calendar_ids else connection.calendar_id
        events = await self.get_events(connection, calendar_id, query.start, query.end, query.timezone)
        if not events.success or events.data is None:
            return CalendarOperationResult.from_error(events.error)

        busy = [
            TimeRange(start=event.start, end=event.end)
            for event in events.data
            if event.status != EventStatus.CANCELLED
        ]
        return CalendarOperationResult.ok(utils.build_free_busy(calendar_id, query.start, query.end, busy))


# ========== iCalendar mapping ==========


def _href_name(href: str, suffix: str = "") -> str:
    """Last path segment of a DAV href, without *suffix*."""
    name = unquote(href.rstrip("/").rsplit("/", 1)[-1])
    if suffix and name.endswith(suffix):
        name = name[: -len(suffix)]
    return name


def build_ics_event(uid: str, appointment: AppointmentDetails) -> bytes:
    """Serialize an appointment as a single-VEVENT VCALENDAR."""
    cal = Calendar()
    cal.add("prodid", PRODID)
    cal.add("version", "2.0")

    event = Event()
    event.add("uid", uid)
    event.add("dtstamp", datetime.now(timezone.utc).replace(microsecond=0))
    event.add("dtstart", utils.ensure_utc(appointment.start).replace(microsecond=0))
    event.add("dtend", utils.ensure_utc(appointment.end).replace(microsecond=0))
    event.add("summary", appointment.title)
    if appointment.description:
        event.add("description", appointment.description)
    if appointment.location:
        event.add("location", appointment.location)

    for attendee in appointment.attendees:
        address = vCalAddress(f"mailto:{attendee.email}")
        if attendee.name:
            address.params["cn"] = vText(attendee.name)
        event.add("attendee", address, encode=0)

    for minutes in appointment.reminder_minutes:
        alarm = Alarm()
        alarm.add("action", "DISPLAY")
        alarm.add("description", appointment.title)
        alarm.add("trigger", timedelta(minutes=-minutes))
        event.add_component(alarm)

    if appointment.patient:
        event.add(PATIENT_PROPERTY, appointment.patient.model_dump_json(exclude_none=True))

    cal.add_component(event)
    return cal.to_ical()


def _as_utc_datetime(value: Any) -> datetime:
    if isinstance(value, datetime):
        return utils.ensure_utc(value)
    if isinstance(value, date):
        return datetime.combine(value, time.min, tzinfo=timezone.utc)
    raise ValueError(f"Unsupported iCalendar date value: {value!r}")


def _address(value: Any) -> tuple[str, Optional[str]]:
    email = str(value)
    if email.lower().startswith("mailto:"):
        email = email[len("mailto:"):]
    params = getattr(value, "params", {}) or {}
    name = params.get("CN")
    return email, str(name) if name else None


def parse_ics_event(ics: str | bytes, event_id: Optional[str] = None) -> CalendarEvent:
    """Parse the first VEVENT of an iCalendar document.

    ``event_id`` is the resource name; it defaults to the UID.
    """
    cal = Calendar.from_ical(ics)
    vevents = cal.walk("VEVENT")
    if not vevents:
        raise ValueError("iCalendar data contains no VEVENT")
    component = vevents[0]

    uid = str(component.get("uid", "")) or (event_id or "")
    if not uid:
        raise ValueError("VEVENT has neither UID nor resource name")

    start = _as_utc_datetime(component.decoded("dtstart"))
    if component.get("dtend") is not None:
        end = _as_utc_datetime(component.decoded("dtend"))
    elif component.get("duration") is not None:
        end = start + component.decoded("duration")
    else:
        end = start

    metadata: dict[str, Any] = {}
    raw_patient = component.get(PATIENT_PROPERTY)
    if raw_patient is not None:
        try:
            metadata["patient"] = json.loads(str(raw_patient))
        except ValueError:
            logger.warning("Ignoring malformed %s on CalDAV event %s", PATIENT_PROPERTY, uid)

    reminders = []
    for alarm in component.walk("VALARM"):
        trigger = alarm.decoded("trigger", None)
        if isinstance(trigger, timedelta):
            reminders.append(int(abs(trigger.total_seconds()) // 60))
    if reminders:
        metadata["reminder_minutes"] = reminders

    raw_attendees = component.get("attendee") or []
    if not isinstance(raw_attendees, list):
        raw_attendees = [raw_attendees]
    attendees = []
    for raw in raw_attendees:
        email, name = _address(raw)
        partstat = (getattr(raw, "params", {}) or {}).get("PARTSTAT")
        attendees.append(
            Attendee(email=email, name=name, response_status=str(partstat).lower() if partstat else None)
        )

    organizer = None
    if component.get("organizer") is not None:
        email, name = _address(component.get("organizer"))
        organizer = Organizer(email=email, name=name)

    rrule = component.get("rrule")
    dtstart_params = getattr(component.get("dtstart"), "params", {}) or {}
    description = component.get("description")
    location = component.get("location")

    return CalendarEvent(
        id=event_id or uid,
        title=str(component.get("summary", "")) or "Untitled Event",
        description=str(description) if description is not None else None,
        start=start,
        end=end,
        timezone=str(dtstart_params["TZID"]) if "TZID" in dtstart_params else None,
        location=str(location) if location is not None else None,
        status=_STATUS_MAP.get(str(component.get("status", "CONFIRMED")).upper(), EventStatus.CONFIRMED),
        attendees=attendees,
        organizer=organizer,
        recurrence=rrule.to_ical().decode() if rrule is not None else None,
        metadata=metadata,
        provider=CalendarProvider.APPLE,
        provider_event_id=uid,
    )


_STATUS_MAP = {
    "CONFIRMED": EventStatus.CONFIRMED,
    "TENTATIVE": EventStatus.TENTATIVE,
    "CANCELLED": EventStatus.CANCELLED,
}
