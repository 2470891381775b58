"""Factory for calendar provider instances."""

from __future__ import annotations

from typing import Optional

import httpx

from calbridge.config import Settings
from calbridge.schemas.calendar import CalendarProvider
from calbridge.services.calendar.apple import AppleCalendarProvider
from calbridge.services.calendar.base import CalendarProviderBase
from calbridge.services.calendar.errors import UnsupportedProviderError
from calbridge.services.calendar.google import GoogleCalendarProvider
from calbridge.services.calendar.oauth import OAuthHandler
from calbridge.services.calendar.outlook import OutlookCalendarProvider

_PROVIDERS: dict[CalendarProvider, type[CalendarProviderBase]] = {
    CalendarProvider.GOOGLE: GoogleCalendarProvider,
    CalendarProvider.OUTLOOK: OutlookCalendarProvider,
    CalendarProvider.APPLE: AppleCalendarProvider,
}


def get_calendar_provider(
    provider: CalendarProvider | str,
    oauth: OAuthHandler,
    settings: Optional[Settings] = None,
    http_client: Optional[httpx.AsyncClient] = None,
) -> CalendarProviderBase:
    """Create the right provider implementation for a given provider name."""
    try:
        provider = CalendarProvider(provider)
    except ValueError:
        raise UnsupportedProviderError(f"Unknown calendar provider: {provider}") from None
    return _PROVIDERS[provider](oauth, settings=settings, http_client=http_client)
