"""
Calendar utilities.

Pure helpers for timezone conversion, API date formatting, business-hours
checks, free/busy merging and slot generation. No I/O happens here, so
every provider computes availability with the same semantics.
"""

from __future__ import annotations

import logging
import re
from datetime import date, datetime, time, timedelta, timezone
from typing import Iterable, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from calbridge.schemas.calendar import (
    AvailabilityQuery,
    AvailableSlot,
    BusinessHours,
    FreeBusyResponse,
    TimeRange,
)

logger = logging.getLogger(__name__)

# Candidate slots are tried on this grid regardless of the requested duration.
SLOT_STEP_MINUTES = 15
AVAILABILITY_VIEW_INTERVAL_MINUTES = 15

_FRACTION_RE = re.compile(r"(\.\d{6})\d+")


# ========== Timezones & formatting ==========


def ensure_utc(value: datetime) -> datetime:
    """Return *value* as an aware UTC datetime (naive input is taken as UTC)."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def get_zone(tz_name: Optional[str]) -> ZoneInfo:
    """Resolve an IANA zone name, falling back to UTC for unknown names."""
    if not tz_name:
        return ZoneInfo("UTC")
    try:
        return ZoneInfo(tz_name)
    except (ZoneInfoNotFoundError, ValueError):
        logger.warning("Unknown timezone %r, falling back to UTC", tz_name)
        return ZoneInfo("UTC")


def convert_to_timezone(value: datetime, tz_name: Optional[str]) -> datetime:
    """Express the same instant in the wall clock of *tz_name*."""
    return ensure_utc(value).astimezone(get_zone(tz_name))


def format_datetime_for_api(value: datetime, tz_name: Optional[str] = None) -> str:
    """RFC 3339 timestamp, with the offset of *tz_name* or ``Z`` for UTC."""
    if tz_name:
        return convert_to_timezone(value, tz_name).isoformat(timespec="seconds")
    return ensure_utc(value).isoformat(timespec="seconds").replace("+00:00", "Z")


def format_local_datetime(value: datetime, tz_name: Optional[str]) -> str:
    """Wall-clock time without offset, as Graph ``dateTimeTimeZone`` expects."""
    return convert_to_timezone(value, tz_name).replace(tzinfo=None).isoformat(timespec="seconds")


def format_ics_datetime(value: datetime) -> str:
    """iCalendar / CalDAV UTC form: ``YYYYMMDDTHHMMSSZ``."""
    return ensure_utc(value).strftime("%Y%m%dT%H%M%SZ")


def parse_datetime_from_api(value: str, tz_name: Optional[str] = None) -> datetime:
    """Parse an API timestamp into an aware UTC datetime.

    Handles a trailing ``Z``, Graph's seven-digit fractions, naive values
    (interpreted in *tz_name*, else UTC) and date-only values (midnight).
    """
    normalized = value.strip()
    if normalized.endswith("Z"):
        normalized = f"{normalized[:-1]}+00:00"
    normalized = _FRACTION_RE.sub(r"\1", normalized)

    if "T" not in normalized:
        day = date.fromisoformat(normalized)
        return datetime.combine(day, time.min, tzinfo=get_zone(tz_name)).astimezone(timezone.utc)

    parsed = datetime.fromisoformat(normalized)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=get_zone(tz_name))
    return parsed.astimezone(timezone.utc)


# ========== Interval math ==========


def time_ranges_overlap(start1: datetime, end1: datetime, start2: datetime, end2: datetime) -> bool:
    """Half-open overlap test; commutative in its two ranges."""
    return start1 < end2 and end1 > start2


def merge_busy_intervals(busy: Iterable[TimeRange]) -> list[TimeRange]:
    """Sort and coalesce overlapping or touching intervals."""
    merged: list[TimeRange] = []
    for period in sorted(busy, key=lambda p: p.start):
        if period.end <= period.start:
            continue
        if merged and period.start <= merged[-1].end:
            if period.end > merged[-1].end:
                merged[-1] = TimeRange(start=merged[-1].start, end=period.end)
            continue
        merged.append(TimeRange(start=period.start, end=period.end))
    return merged


def build_free_busy(
    calendar_id: str,
    window_start: datetime,
    window_end: datetime,
    busy: Iterable[TimeRange],
) -> FreeBusyResponse:
    """Clip busy periods to the window, merge them and derive the free gaps."""
    window_start = ensure_utc(window_start)
    window_end = ensure_utc(window_end)

    clipped = []
    for period in busy:
        start = max(ensure_utc(period.start), window_start)
        end = min(ensure_utc(period.end), window_end)
        if start < end:
            clipped.append(TimeRange(start=start, end=end))
    merged = merge_busy_intervals(clipped)

    available: list[TimeRange] = []
    cursor = window_start
    for period in merged:
        if cursor < period.start:
            available.append(TimeRange(start=cursor, end=period.start))
        cursor = max(cursor, period.end)
    if cursor < window_end:
        available.append(TimeRange(start=cursor, end=window_end))

    return FreeBusyResponse(calendar_id=calendar_id, busy=merged, available=available)


def parse_availability_view(
    view: str,
    window_start: datetime,
    window_end: datetime,
    interval_minutes: int = AVAILABILITY_VIEW_INTERVAL_MINUTES,
) -> tuple[list[TimeRange], list[TimeRange]]:
    """Decode a Graph ``availabilityView`` string into busy and free runs.

    Each character covers one interval starting at ``window_start +
    i*interval``. ``'0'`` is free; every other code (tentative, busy,
    out-of-office, working elsewhere) counts as busy. Adjacent characters of
    the same kind are coalesced and both lists are built in a single pass.
    """
    window_start = ensure_utc(window_start)
    window_end = ensure_utc(window_end)
    step = timedelta(minutes=interval_minutes)

    busy: list[TimeRange] = []
    available: list[TimeRange] = []
    run_start: Optional[datetime] = None
    run_is_busy = False

    for index, code in enumerate(view):
        slot_start = window_start + index * step
        if slot_start >= window_end:
            break
        is_busy = code != "0"
        if run_start is None:
            run_start, run_is_busy = slot_start, is_busy
        elif is_busy != run_is_busy:
            (busy if run_is_busy else available).append(TimeRange(start=run_start, end=slot_start))
            run_start, run_is_busy = slot_start, is_busy

    if run_start is not None:
        run_end = min(window_start + len(view) * step, window_end)
        if run_start < run_end:
            (busy if run_is_busy else available).append(TimeRange(start=run_start, end=run_end))

    return busy, available


# ========== Availability ==========


def _day_of_week(value: datetime) -> int:
    """0=Sunday .. 6=Saturday."""
    return (value.weekday() + 1) % 7


def _minutes_of(hh_mm: str) -> int:
    hours, _, minutes = hh_mm.partition(":")
    return int(hours) * 60 + int(minutes)


def is_within_business_hours(
    value: datetime,
    business_hours: Optional[BusinessHours],
    tz_name: Optional[str] = None,
) -> bool:
    """Day-of-week and minute-of-day check; no restriction when unset."""
    if business_hours is None:
        return True

    local = convert_to_timezone(value, tz_name)
    if business_hours.days_of_week is not None and _day_of_week(local) not in business_hours.days_of_week:
        return False

    current = local.hour * 60 + local.minute
    return _minutes_of(business_hours.start) <= current <= _minutes_of(business_hours.end)


def is_excluded_date(value: datetime, exclude_dates: Iterable[date], tz_name: Optional[str] = None) -> bool:
    local_day = convert_to_timezone(value, tz_name).date()
    return any(local_day == excluded for excluded in exclude_dates)


def find_available_slots(
    free_busy: FreeBusyResponse,
    query: AvailabilityQuery,
    step_minutes: int = SLOT_STEP_MINUTES,
) -> list[AvailableSlot]:
    """Walk the query window on a fixed grid and keep the free candidates.

    A 90-minute meeting is still tried every 15 minutes, so returned slots
    may overlap each other.
    """
    duration = timedelta(minutes=query.duration)
    step = timedelta(minutes=step_minutes)
    busy = merge_busy_intervals(free_busy.busy)
    window_end = ensure_utc(query.end)

    slots: list[AvailableSlot] = []
    current = ensure_utc(query.start)
    while current + duration <= window_end:
        slot_end = current + duration
        if (
            not is_excluded_date(current, query.exclude_dates, query.timezone)
            and is_within_business_hours(current, query.business_hours, query.timezone)
            and not any(time_ranges_overlap(current, slot_end, b.start, b.end) for b in busy)
        ):
            slots.append(
                AvailableSlot(start=current, end=slot_end, duration=query.duration, available=True)
            )
        current += step

    return slots
