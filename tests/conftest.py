"""Shared fixtures: settings, connections and in-process fake calendar backends.

The fakes speak just enough of the Google Calendar, Microsoft Graph and
CalDAV wire formats to exercise the providers end to end through
``httpx.MockTransport``.
"""

import base64
import json
import uuid
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional
from urllib.parse import unquote
from zoneinfo import ZoneInfo

import httpx
import pytest
from cryptography.fernet import Fernet
from icalendar import Calendar

from calbridge.config import Settings
from calbridge.schemas.calendar import CalendarConnection, CalendarProvider, OAuthTokens
from calbridge.services.calendar.oauth import OAuthHandler
from calbridge.services.calendar.service import CalendarService
from calbridge.services.calendar.token_store import FernetTokenCipher, InMemoryKeyValueStore, TokenStore


def _iso(value: str) -> datetime:
    parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def _overlaps(start: datetime, end: datetime, window_start: datetime, window_end: datetime) -> bool:
    return start < window_end and end > window_start


# ── Settings & connections ──


@pytest.fixture
def settings() -> Settings:
    return Settings(
        _env_file=None,
        database_url="sqlite+aiosqlite:///:memory:",
        token_encryption_key=Fernet.generate_key().decode(),
        google_client_id="google-client",
        google_client_secret="google-secret",
        outlook_client_id="outlook-client",
        outlook_client_secret="outlook-secret",
        operation_timeout_seconds=5.0,
    )


@pytest.fixture
def token_store(settings) -> TokenStore:
    return TokenStore(InMemoryKeyValueStore(), FernetTokenCipher(settings.token_encryption_key))


@pytest.fixture
def make_connection() -> Callable[..., CalendarConnection]:
    def _make(
        provider: CalendarProvider = CalendarProvider.GOOGLE,
        connection_id: Optional[str] = None,
        access_token: str = "access-1",
        refresh_token: Optional[str] = "refresh-1",
        expires_in: Optional[timedelta] = timedelta(hours=1),
        **kwargs,
    ) -> CalendarConnection:
        expires_at = datetime.now(timezone.utc) + expires_in if expires_in is not None else None
        return CalendarConnection(
            id=connection_id or f"{provider.value}-{uuid.uuid4().hex[:8]}",
            provider=provider,
            tokens=OAuthTokens(access_token=access_token, refresh_token=refresh_token, expires_at=expires_at),
            **kwargs,
        )

    return _make


# ── Fake Google Calendar ──


class FakeGoogleCalendar:
    """In-memory Google Calendar v3."""

    def __init__(self) -> None:
        self.events: dict[str, dict] = {}
        self.requests: list[httpx.Request] = []
        self.fail_with: Optional[int] = None
        self.page_size = 100

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.fail_with:
            return httpx.Response(self.fail_with, json={"error": {"code": self.fail_with, "message": "boom"}})

        parts = [unquote(p) for p in request.url.path.split("/") if p][2:]  # drop calendar/v3
        if parts == ["users", "me", "calendarList"]:
            return httpx.Response(
                200,
                json={"items": [{"id": "primary", "summary": "Clinic", "primary": True, "timeZone": "UTC"}]},
            )
        if parts == ["freeBusy"]:
            return self._free_busy(json.loads(request.content))
        if len(parts) >= 3 and parts[0] == "calendars" and parts[2] == "events":
            calendar_id = parts[1]
            event_id = parts[3] if len(parts) > 3 else None
            return self._events(request, calendar_id, event_id)
        return httpx.Response(404, json={"error": {"message": "unknown path"}})

    def _events(self, request: httpx.Request, calendar_id: str, event_id: Optional[str]) -> httpx.Response:
        if event_id is None and request.method == "POST":
            body = json.loads(request.content)
            body.update({"id": uuid.uuid4().hex, "status": "confirmed", "_calendar": calendar_id})
            self.events[body["id"]] = body
            return httpx.Response(200, json=self._public(body))

        if event_id is None:
            window_start = _iso(request.url.params["timeMin"])
            window_end = _iso(request.url.params["timeMax"])
            items = [
                self._public(e)
                for e in self.events.values()
                if e["_calendar"] == calendar_id
                and _overlaps(_iso(e["start"]["dateTime"]), _iso(e["end"]["dateTime"]), window_start, window_end)
            ]
            items.sort(key=lambda e: _iso(e["start"]["dateTime"]))
            offset = int(request.url.params.get("pageToken", 0))
            page = items[offset : offset + self.page_size]
            data = {"items": page}
            if offset + self.page_size < len(items):
                data["nextPageToken"] = str(offset + self.page_size)
            return httpx.Response(200, json=data)

        event = self.events.get(event_id)
        if event is None:
            return httpx.Response(404, json={"error": {"code": 404, "message": "Not Found"}})
        if request.method == "GET":
            return httpx.Response(200, json=self._public(event))
        if request.method == "PATCH":
            event.update(json.loads(request.content))
            return httpx.Response(200, json=self._public(event))
        if request.method == "DELETE":
            del self.events[event_id]
            return httpx.Response(204)
        return httpx.Response(405)

    def _free_busy(self, body: dict) -> httpx.Response:
        window_start, window_end = _iso(body["timeMin"]), _iso(body["timeMax"])
        calendars = {}
        for item in body["items"]:
            busy = [
                {"start": e["start"]["dateTime"], "end": e["end"]["dateTime"]}
                for e in self.events.values()
                if e["_calendar"] == item["id"]
                and _overlaps(_iso(e["start"]["dateTime"]), _iso(e["end"]["dateTime"]), window_start, window_end)
            ]
            calendars[item["id"]] = {"busy": busy}
        return httpx.Response(200, json={"calendars": calendars})

    @staticmethod
    def _public(event: dict) -> dict:
        return {k: v for k, v in event.items() if not k.startswith("_")}


# ── Fake Microsoft Graph ──


class FakeGraphCalendar:
    """In-memory Graph calendar: events are stored with their local wall time and zone."""

    def __init__(self) -> None:
        self.events: dict[str, dict] = {}
        self.requests: list[httpx.Request] = []
        self.schedule_view: Optional[str] = None
        self.empty_schedule = False

    @staticmethod
    def _instant(when: dict) -> datetime:
        local = datetime.fromisoformat(when["dateTime"][:19])
        return local.replace(tzinfo=ZoneInfo(when["timeZone"])).astimezone(timezone.utc)

    def _as_utc(self, event: dict, expand: bool) -> dict:
        out = {k: v for k, v in event.items() if k != "singleValueExtendedProperties" or expand}
        for key in ("start", "end"):
            instant = self._instant(event[key])
            out[key] = {"dateTime": instant.strftime("%Y-%m-%dT%H:%M:%S.0000000"), "timeZone": "UTC"}
        return out

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        parts = [unquote(p) for p in request.url.path.split("/") if p][1:]  # drop v1.0
        expand = "$expand" in request.url.params

        if parts == ["me", "calendars"]:
            return httpx.Response(
                200, json={"value": [{"id": "cal-1", "name": "Calendar", "isDefaultCalendar": True}]}
            )
        if parts == ["me", "calendar", "getSchedule"]:
            return self._schedule(json.loads(request.content))
        if parts == ["me", "calendar", "calendarView"]:
            window_start = _iso(request.url.params["startDateTime"])
            window_end = _iso(request.url.params["endDateTime"])
            value = [
                self._as_utc(e, expand)
                for e in self.events.values()
                if _overlaps(self._instant(e["start"]), self._instant(e["end"]), window_start, window_end)
            ]
            return httpx.Response(200, json={"value": value})
        if parts == ["me", "calendar", "events"] and request.method == "POST":
            body = json.loads(request.content)
            body["id"] = f"AAMk{uuid.uuid4().hex}"
            self.events[body["id"]] = body
            # Create responses echo the request timezone and omit extended properties.
            return httpx.Response(201, json={k: v for k, v in body.items() if k != "singleValueExtendedProperties"})
        if len(parts) == 4 and parts[:3] == ["me", "calendar", "events"]:
            event = self.events.get(parts[3])
            if event is None:
                return httpx.Response(404, json={"error": {"code": "ErrorItemNotFound", "message": "Not found"}})
            if request.method == "GET":
                return httpx.Response(200, json=self._as_utc(event, expand))
            if request.method == "PATCH":
                event.update(json.loads(request.content))
                return httpx.Response(200, json={k: v for k, v in event.items() if k != "singleValueExtendedProperties"})
            if request.method == "DELETE":
                del self.events[parts[3]]
                return httpx.Response(204)
        return httpx.Response(404, json={"error": {"code": "NotFound", "message": "unknown path"}})

    def _schedule(self, body: dict) -> httpx.Response:
        if self.empty_schedule:
            return httpx.Response(200, json={"value": []})
        start = self._instant(body["startTime"])
        end = self._instant(body["endTime"])
        view = self.schedule_view
        if view is None:
            step = timedelta(minutes=body["availabilityViewInterval"])
            chars = []
            cursor = start
            while cursor < end:
                busy = any(
                    _overlaps(self._instant(e["start"]), self._instant(e["end"]), cursor, cursor + step)
                    for e in self.events.values()
                )
                chars.append("2" if busy else "0")
                cursor += step
            view = "".join(chars)
        return httpx.Response(200, json={"value": [{"scheduleId": body["schedules"][0], "availabilityView": view}]})


# ── Fake CalDAV ──


MULTISTATUS = '<?xml version="1.0" encoding="utf-8"?>\n<d:multistatus xmlns:d="DAV:" xmlns:c="urn:ietf:params:xml:ns:caldav">{}</d:multistatus>'


class FakeCalDAVServer:
    """In-memory CalDAV collection ``/calendars/home/``."""

    def __init__(self, username: str = "user@icloud.com", password: str = "app-password") -> None:
        self.resources: dict[str, bytes] = {}
        self.requests: list[httpx.Request] = []
        self.expected_auth = "Basic " + base64.b64encode(f"{username}:{password}".encode()).decode()
        self.fail_get = False

    def _authorized(self, request: httpx.Request) -> bool:
        return request.headers.get("Authorization") == self.expected_auth

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if not self._authorized(request):
            return httpx.Response(401, text="Unauthorized")

        path = request.url.path
        if request.method == "PROPFIND" and path == "/calendars/":
            body = (
                "<d:response><d:href>/calendars/</d:href><d:propstat><d:prop>"
                "<d:resourcetype><d:collection/></d:resourcetype></d:prop></d:propstat></d:response>"
                "<d:response><d:href>/calendars/home/</d:href><d:propstat><d:prop>"
                "<d:displayname>Home</d:displayname>"
                "<d:resourcetype><d:collection/><c:calendar/></d:resourcetype></d:prop></d:propstat></d:response>"
            )
            return httpx.Response(207, text=MULTISTATUS.format(body))
        if request.method == "REPORT" and path == "/calendars/home/":
            return self._report(request)
        if not path.startswith("/calendars/home/") or not path.endswith(".ics"):
            return httpx.Response(404)

        name = path.rsplit("/", 1)[-1]
        if request.method == "PUT":
            if request.headers.get("If-None-Match") == "*" and name in self.resources:
                return httpx.Response(412)
            self.resources[name] = request.content
            return httpx.Response(201)
        if name not in self.resources:
            return httpx.Response(404, text="Not Found")
        if request.method == "GET":
            if self.fail_get:
                return httpx.Response(503, text="Unavailable")
            return httpx.Response(200, content=self.resources[name], headers={"Content-Type": "text/calendar"})
        if request.method == "DELETE":
            del self.resources[name]
            return httpx.Response(204)
        return httpx.Response(405)

    def _report(self, request: httpx.Request) -> httpx.Response:
        body = request.content.decode()
        start = datetime.strptime(body.split('start="')[1][:16], "%Y%m%dT%H%M%SZ").replace(tzinfo=timezone.utc)
        end = datetime.strptime(body.split('end="')[1][:16], "%Y%m%dT%H%M%SZ").replace(tzinfo=timezone.utc)

        responses = []
        for name, data in self.resources.items():
            vevent = Calendar.from_ical(data).walk("VEVENT")[0]
            if not _overlaps(vevent.decoded("dtstart"), vevent.decoded("dtend"), start, end):
                continue
            responses.append(
                f"<d:response><d:href>/calendars/home/{name}</d:href><d:propstat><d:prop>"
                f"<d:getetag>\"{hash(data)}\"</d:getetag>"
                f"<c:calendar-data><![CDATA[{data.decode()}]]></c:calendar-data>"
                "</d:prop></d:propstat></d:response>"
            )
        return httpx.Response(207, text=MULTISTATUS.format("".join(responses)))


# ── Fixtures wiring fakes into a service ──


@pytest.fixture
def fake_google() -> FakeGoogleCalendar:
    return FakeGoogleCalendar()


@pytest.fixture
def fake_graph() -> FakeGraphCalendar:
    return FakeGraphCalendar()


@pytest.fixture
def fake_caldav() -> FakeCalDAVServer:
    return FakeCalDAVServer()


@pytest.fixture
def http_client(fake_google, fake_graph, fake_caldav) -> httpx.AsyncClient:
    """One client routing each host to its fake backend."""

    def handler(request: httpx.Request) -> httpx.Response:
        host = request.url.host
        if host == "www.googleapis.com":
            return fake_google.handler(request)
        if host == "graph.microsoft.com":
            return fake_graph.handler(request)
        if host == "caldav.icloud.com":
            return fake_caldav.handler(request)
        return httpx.Response(500, json={"error": f"unexpected host {host}"})

    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


@pytest.fixture
def oauth(settings, token_store, http_client) -> OAuthHandler:
    return OAuthHandler(settings, token_store=token_store, http_client=http_client)


@pytest.fixture
def service(settings, oauth, http_client) -> CalendarService:
    return CalendarService(settings, oauth=oauth, http_client=http_client)


@pytest.fixture
def apple_connection(make_connection) -> CalendarConnection:
    return make_connection(
        CalendarProvider.APPLE,
        access_token="app-password",
        refresh_token=None,
        expires_in=None,
        calendar_id="home",
        metadata={"username": "user@icloud.com"},
    )
