"""
Calendar services package.

Services:
- oauth: OAuth flows and lazy, single-flight token refresh
- token_store: encrypted persistence of calendar connections
- google / outlook / apple: provider implementations behind one contract
- service: facade that resolves connections and guards bookings
"""

from calbridge.services.calendar.base import CalendarProviderBase
from calbridge.services.calendar.factory import get_calendar_provider
from calbridge.services.calendar.oauth import OAuthHandler
from calbridge.services.calendar.service import CalendarService
from calbridge.services.calendar.token_store import (
    FernetTokenCipher,
    InMemoryKeyValueStore,
    SqlKeyValueStore,
    TokenStore,
)

__all__ = [
    "CalendarProviderBase",
    "CalendarService",
    "FernetTokenCipher",
    "InMemoryKeyValueStore",
    "OAuthHandler",
    "SqlKeyValueStore",
    "TokenStore",
    "get_calendar_provider",
]
