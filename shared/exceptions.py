"""
Custom exception classes for TelegramRelay.

Provides specific exception types for the relay pipeline so callers can decide
which failures are fatal (resolution, authentication) and which are contained
(delivery, backfill).
"""

from __future__ import annotations

from typing import Optional


class RelayError(Exception):
    """Base exception for all TelegramRelay errors"""
    pass


class ConfigurationError(RelayError):
    """Configuration or environment variable errors"""
    pass


class ResolutionError(RelayError):
    """Watched chat lookup failed or returned an unexpected shape"""
    pass


class StaleChatError(RelayError):
    """Telegram rejected a cached chat handle (CHANNEL_INVALID)"""
    pass


class BackfillPageError(RelayError):
    """A history page fetch failed; aborts the backfill run only"""
    pass


class AuthenticationError(RelayError):
    """Login flow failed or the session could not be authorized"""
    pass


class SelfLookupError(RelayError):
    """Fetching the logged-in user's own identity failed"""
    pass


class DeliveryError(RelayError):
    """Webhook POST failed (network error or non-200 response)"""

    def __init__(self, message: str, *, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.status_code = status_code

    @property
    def retryable(self) -> bool:
        if self.status_code is None:
            return True
        return self.status_code == 429 or self.status_code >= 500
