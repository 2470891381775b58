"""FastAPI dependencies."""

import logging
from functools import lru_cache
from typing import Annotated

from fastapi import Depends

from calbridge.config import get_settings
from calbridge.database import async_session_maker
from calbridge.services.calendar import (
    CalendarService,
    FernetTokenCipher,
    SqlKeyValueStore,
    TokenStore,
)

logger = logging.getLogger(__name__)


@lru_cache
def get_calendar_service() -> CalendarService:
    """Process-wide calendar service, persisting connections when a key is configured."""
    settings = get_settings()

    token_store = None
    if settings.token_encryption_key:
        token_store = TokenStore(
            SqlKeyValueStore(async_session_maker),
            FernetTokenCipher(settings.token_encryption_key),
            settings.connections_storage_key,
        )
    else:
        logger.warning("TOKEN_ENCRYPTION_KEY is not set; calendar connections will not be persisted")

    return CalendarService(settings, token_store=token_store)


CalendarServiceDep = Annotated[CalendarService, Depends(get_calendar_service)]
