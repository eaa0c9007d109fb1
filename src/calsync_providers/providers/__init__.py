"""Calendar provider interfaces and implementations."""

from .base import (
    AuthenticationError,
    BaseCalendarProvider,
    CalendarNotFoundError,
    CalendarProviderError,
    NetworkError,
    ParseError,
    PermissionDeniedError,
    ProviderErrorType,
    RateLimitError,
    RequestTimeoutError,
    SyncCancelledError,
    classify_error,
    user_notice,
)
from .apple_caldav import AppleCaldavProvider
from .factory import CalendarSourceManager, ProviderFactory
from .google import GoogleCalendarProvider
from .outlook import OutlookCalendarProvider

__all__ = [
    'AppleCaldavProvider',
    'AuthenticationError',
    'BaseCalendarProvider',
    'CalendarNotFoundError',
    'CalendarProviderError',
    'CalendarSourceManager',
    'GoogleCalendarProvider',
    'NetworkError',
    'OutlookCalendarProvider',
    'ParseError',
    'PermissionDeniedError',
    'ProviderErrorType',
    'ProviderFactory',
    'RateLimitError',
    'RequestTimeoutError',
    'SyncCancelledError',
    'classify_error',
    'user_notice',
]
