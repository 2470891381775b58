"""Exceptions raised inside the calendar layer.

They never escape the public provider/service methods: the edges convert
them into ``CalendarOperationResult`` failures.
"""

from __future__ import annotations

import re


class CalendarError(RuntimeError):
    """Base error for the calendar integration layer."""


class UnsupportedProviderError(CalendarError, ValueError):
    """Raised for a provider name the layer does not know."""


class MissingAccessTokenError(CalendarError):
    """No usable access token (none stored, or refresh failed)."""


class ProviderAPIError(CalendarError):
    """Non-2xx answer from a provider API."""

    def __init__(self, *, prefix: str, status_code: int, message: str) -> None:
        self.prefix = prefix
        self.status_code = status_code
        self.message = message
        super().__init__(f"{prefix} {status_code}: {message}")

    @property
    def code(self) -> str:
        return f"{self.prefix}_{self.status_code}"

    @property
    def retryable(self) -> bool:
        # A 401 may succeed after a token refresh.
        return self.status_code == 401 or self.status_code >= 500


class OAuthError(CalendarError):
    """Base error for OAuth flows."""


class TokenExchangeError(OAuthError):
    """Authorization-code exchange failed."""


class TokenRefreshError(OAuthError):
    """Refresh-token exchange failed."""


class AppleOAuthNotSupportedError(OAuthError):
    """Apple calendars authenticate with CalDAV app-specific passwords."""


_SECRET_PATTERNS = (
    (
        re.compile(r"(?i)\b(client_secret|refresh_token|access_token|password|token)\s*=\s*([^\s,;&]+)"),
        r"\1=[REDACTED]",
    ),
    (
        re.compile(
            r"""(?i)(['"]?(?:client_secret|refresh_token|access_token|password|token)['"]?\s*:\s*)(['"]).*?\2"""
        ),
        r'\1"[REDACTED]"',
    ),
    (re.compile(r"(?i)\b(Bearer|Basic)\s+[A-Za-z0-9._~+/=-]+"), r"\1 [REDACTED]"),
)


def redact_secrets(message: str) -> str:
    """Strip credential values from a message before it leaves the layer."""
    redacted = message
    for pattern, replacement in _SECRET_PATTERNS:
        redacted = pattern.sub(replacement, redacted)
    return " ".join(redacted.split())[:500]
