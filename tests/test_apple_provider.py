"""Apple CalDAV provider against an in-process CalDAV collection."""

from datetime import datetime, timedelta, timezone

import pytest

from calbridge.schemas.calendar import (
    AppointmentDetails,
    AppointmentUpdate,
    Attendee,
    CalendarProvider,
    EventStatus,
    FreeBusyQuery,
    PatientInfo,
)
from calbridge.services.calendar.apple import AppleCalendarProvider, build_ics_event, parse_ics_event
from calbridge.services.calendar.factory import get_calendar_provider

T = datetime(2025, 2, 3, 9, 0, tzinfo=timezone.utc)


@pytest.fixture
def apple(oauth, settings, http_client) -> AppleCalendarProvider:
    return get_calendar_provider(CalendarProvider.APPLE, oauth, settings, http_client)


def _appointment(offset_min: int = 0, duration: int = 30, **kwargs) -> AppointmentDetails:
    start = T + timedelta(minutes=offset_min)
    return AppointmentDetails(
        title=kwargs.pop("title", "Jane Doe - Checkup"),
        start=start,
        end=start + timedelta(minutes=duration),
        **kwargs,
    )


class TestCalDAV:
    @pytest.mark.asyncio
    async def test_list_calendars(self, apple, apple_connection, fake_caldav):
        result = await apple.list_calendars(apple_connection)

        assert [(c.id, c.name, c.primary) for c in result.data] == [("home", "Home", True)]
        request = fake_caldav.requests[0]
        assert request.method == "PROPFIND"
        assert request.headers["Depth"] == "1"

    @pytest.mark.asyncio
    async def test_create_then_get_round_trip(self, apple, apple_connection, fake_caldav):
        patient = PatientInfo(name="Jane Doe", phone="+33 6 00 00 00 00", notes="Allergic; bring list, please")
        created = await apple.create_event(
            apple_connection, "home", _appointment(patient=patient, reminder_minutes=[1440, 60])
        )
        assert created.success, created.error

        put = fake_caldav.requests[0]
        assert put.method == "PUT"
        assert put.headers["If-None-Match"] == "*"
        assert put.url.path == f"/calendars/home/{created.data.id}.ics"

        fetched = await apple.get_event(apple_connection, "home", created.data.id)

        event = fetched.data
        assert event.title == "Jane Doe - Checkup"
        assert event.start == T
        assert event.end == T + timedelta(minutes=30)
        assert event.patient == patient
        assert event.metadata["reminder_minutes"] == [1440, 60]
        assert event.provider_event_id == created.data.id

    @pytest.mark.asyncio
    async def test_create_falls_back_to_sent_copy(self, apple, apple_connection, fake_caldav):
        fake_caldav.fail_get = True

        result = await apple.create_event(apple_connection, "home", _appointment(title="Walk-in"))

        assert result.success
        assert result.data.title == "Walk-in"
        assert result.data.start == T
        assert f"{result.data.id}.ics" in fake_caldav.resources

    @pytest.mark.asyncio
    async def test_get_events_filters_by_window(self, apple, apple_connection):
        await apple.create_event(apple_connection, "home", _appointment(120))
        await apple.create_event(apple_connection, "home", _appointment(0))
        await apple.create_event(apple_connection, "home", _appointment(24 * 60))

        result = await apple.get_events(apple_connection, "home", T, T + timedelta(hours=4))

        assert [e.start for e in result.data] == [T, T + timedelta(hours=2)]

    @pytest.mark.asyncio
    async def test_update_rewrites_resource(self, apple, apple_connection, fake_caldav):
        created = await apple.create_event(apple_connection, "home", _appointment(patient=PatientInfo(name="Jane")))

        updated = await apple.update_event(
            apple_connection, "home", created.data.id, AppointmentUpdate(start=T + timedelta(minutes=15))
        )

        assert updated.data.start == T + timedelta(minutes=15)
        assert updated.data.end == T + timedelta(minutes=30)
        assert updated.data.patient.name == "Jane"
        put = [r for r in fake_caldav.requests if r.method == "PUT"][-1]
        assert "If-None-Match" not in put.headers
        assert len(fake_caldav.resources) == 1

    @pytest.mark.asyncio
    async def test_delete(self, apple, apple_connection, fake_caldav):
        created = await apple.create_event(apple_connection, "home", _appointment())

        assert (await apple.delete_event(apple_connection, "home", created.data.id)).data is True
        assert fake_caldav.resources == {}

        again = await apple.delete_event(apple_connection, "home", created.data.id)
        assert again.error.code == "CALDAV_ERROR_404"

    @pytest.mark.asyncio
    async def test_free_busy_from_events(self, apple, apple_connection):
        await apple.create_event(apple_connection, "home", _appointment(30, 30))

        result = await apple.get_free_busy(apple_connection, FreeBusyQuery(start=T, end=T + timedelta(hours=2)))

        assert [(r.start, r.end) for r in result.data.busy] == [(T + timedelta(minutes=30), T + timedelta(hours=1))]
        assert len(result.data.available) == 2


class TestCredentials:
    @pytest.mark.asyncio
    async def test_wrong_password_is_retryable_401(self, apple, apple_connection):
        apple_connection.tokens.access_token = "wrong"

        result = await apple.list_calendars(apple_connection)

        assert result.error.code == "CALDAV_ERROR_401"
        assert result.error.retryable

    @pytest.mark.asyncio
    async def test_missing_password(self, apple, make_connection, fake_caldav):
        connection = make_connection(
            CalendarProvider.APPLE, access_token="", refresh_token=None, expires_in=None,
            metadata={"username": "user@icloud.com"},
        )

        init = await apple.initialize(connection)
        events = await apple.get_events(connection, "home", T, T + timedelta(hours=1))

        assert init.error.code == "INVALID_CONNECTION"
        assert events.error.code == "NO_ACCESS_TOKEN"
        assert fake_caldav.requests == []

    @pytest.mark.asyncio
    async def test_initialize_and_refresh(self, apple, apple_connection):
        assert (await apple.initialize(apple_connection)).data is True

        refreshed = await apple.refresh_tokens(apple_connection)

        assert refreshed.data == apple_connection.tokens


class TestICalendarMapping:
    def test_build_ics_contains_alarms_and_attendees(self):
        ics = build_ics_event(
            "uid-1",
            _appointment(
                attendees=[Attendee(email="jane@example.com", name="Jane")],
                reminder_minutes=[30],
                location="Room 2",
            ),
        ).decode()

        assert "UID:uid-1" in ics
        assert "DTSTART:20250203T090000Z" in ics
        assert "BEGIN:VALARM" in ics
        assert "TRIGGER:-PT30M" in ics
        assert "mailto:jane@example.com" in ics

        event = parse_ics_event(ics)
        assert event.id == "uid-1"
        assert event.location == "Room 2"
        assert event.attendees[0].email == "jane@example.com"
        assert event.attendees[0].name == "Jane"

    def test_parse_all_day_and_duration(self):
        ics = (
            "BEGIN:VCALENDAR\r\nVERSION:2.0\r\nPRODID:-//test//EN\r\n"
            "BEGIN:VEVENT\r\nUID:all-day\r\nDTSTART;VALUE=DATE:20250203\r\nDURATION:P1D\r\n"
            "SUMMARY:Closed\r\nSTATUS:CANCELLED\r\nEND:VEVENT\r\nEND:VCALENDAR\r\n"
        )

        event = parse_ics_event(ics, event_id="resource-name")

        assert event.id == "resource-name"
        assert event.provider_event_id == "all-day"
        assert event.start == datetime(2025, 2, 3, tzinfo=timezone.utc)
        assert event.end == datetime(2025, 2, 4, tzinfo=timezone.utc)
        assert event.status == EventStatus.CANCELLED

    def test_parse_without_vevent_fails(self):
        with pytest.raises(ValueError):
            parse_ics_event("BEGIN:VCALENDAR\r\nVERSION:2.0\r\nEND:VCALENDAR\r\n")
