"""Multi-provider calendar sync engine."""

__version__ = "2.1.0"

from .auth import CalendarAuthEngine, OAuthError
from .config import Settings, load_settings
from .models import (
    AppleCaldavSource,
    AuthEvent,
    AuthEventType,
    CalendarEvent,
    CalendarListEntry,
    DateRange,
    GoogleCalendarSource,
    OAuthTokenData,
    OutlookCalendarSource,
    ProviderState,
    ProviderStatus,
    ProviderType,
    UrlIcsSource,
    WriteResult,
    parse_sources,
)
from .providers import (
    AppleCaldavProvider,
    BaseCalendarProvider,
    CalendarProviderError,
    CalendarSourceManager,
    GoogleCalendarProvider,
    OutlookCalendarProvider,
    ProviderFactory,
)

__all__ = [
    '__version__',
    'AppleCaldavProvider',
    'AppleCaldavSource',
    'AuthEvent',
    'AuthEventType',
    'BaseCalendarProvider',
    'CalendarAuthEngine',
    'CalendarEvent',
    'CalendarListEntry',
    'CalendarProviderError',
    'CalendarSourceManager',
    'DateRange',
    'GoogleCalendarProvider',
    'GoogleCalendarSource',
    'OAuthError',
    'OAuthTokenData',
    'OutlookCalendarProvider',
    'OutlookCalendarSource',
    'ProviderFactory',
    'ProviderState',
    'ProviderStatus',
    'ProviderType',
    'Settings',
    'UrlIcsSource',
    'WriteResult',
    'load_settings',
    'parse_sources',
]
