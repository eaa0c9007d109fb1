"""Data models for multi-provider calendar synchronization."""

from datetime import date, datetime, timedelta
from enum import Enum
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, Field, TypeAdapter, validator
import pytz


class ProviderType(str, Enum):
    """Calendar provider type discriminator."""

    URL_ICS = "url-ics"
    GOOGLE = "google"
    OUTLOOK = "outlook"
    APPLE_CALDAV = "apple-caldav"


class EventStatus(str, Enum):
    """Normalized event status (iCalendar STATUS values)."""

    CONFIRMED = "CONFIRMED"
    TENTATIVE = "TENTATIVE"
    CANCELLED = "CANCELLED"


class Transparency(str, Enum):
    """Busy/free transparency (iCalendar TRANSP values)."""

    OPAQUE = "OPAQUE"
    TRANSPARENT = "TRANSPARENT"


class ProviderState(str, Enum):
    """Provider connection state."""

    IDLE = "idle"
    CONNECTING = "connecting"
    SYNCING = "syncing"
    ERROR = "error"
    DISABLED = "disabled"


class AuthEventType(str, Enum):
    """Auth engine lifecycle events."""

    STATUS_CHANGE = "status-change"
    AUTH_SUCCESS = "auth-success"
    AUTH_ERROR = "auth-error"
    TOKEN_REFRESHED = "token-refreshed"
    DISCONNECTED = "disconnected"


def _utcnow() -> datetime:
    return datetime.now(pytz.UTC)


def _as_aware(v):
    if isinstance(v, datetime) and v.tzinfo is None:
        return v.replace(tzinfo=pytz.UTC)
    if isinstance(v, date) and not isinstance(v, datetime):
        return datetime(v.year, v.month, v.day, tzinfo=pytz.UTC)
    return v


class EventAttendee(BaseModel):
    """Organizer or attendee of an event."""

    name: Optional[str] = None
    email: Optional[str] = None
    role: Optional[str] = Field(None, description="iCalendar ROLE, e.g. REQ-PARTICIPANT")
    status: Optional[str] = Field(None, description="iCalendar PARTSTAT, e.g. ACCEPTED")


class CalendarEvent(BaseModel):
    """Provider-agnostic calendar event.

    ``end`` is always inclusive. All-day events carry midnight (UTC) of their
    first and last day, whatever the wire convention of the provider.
    """

    uid: str = Field("", description="Universal event UID (iCal UID)")
    summary: str = Field("", description="Event title/summary")
    description: Optional[str] = Field(None, description="Event description")
    location: Optional[str] = Field(None, description="Event location")
    start: datetime = Field(..., description="Event start")
    end: Optional[datetime] = Field(None, description="Inclusive event end")
    all_day: bool = Field(False, description="Whether event is all-day")
    status: Optional[EventStatus] = Field(None, description="Normalized status")
    transparency: Optional[Transparency] = Field(None, description="Busy/free")
    priority: Optional[int] = Field(None, ge=0, le=9, description="iCalendar priority 1-9")
    organizer: Optional[EventAttendee] = None
    attendees: List[EventAttendee] = Field(default_factory=list)
    categories: List[str] = Field(default_factory=list)
    recurrence_rule: Optional[str] = Field(None, description="RRULE text for recurring events")
    created: Optional[datetime] = None
    last_modified: Optional[datetime] = None
    custom_properties: Dict[str, str] = Field(default_factory=dict)

    # Sync metadata
    provider_event_id: Optional[str] = Field(None, description="Provider-native event id or resource href")
    provider_calendar_id: Optional[str] = Field(None, description="Provider-native calendar id or href")
    etag: Optional[str] = Field(None, description="Version tag (ETag or changeKey)")
    can_edit: bool = Field(False, description="Whether the event may be written back")
    recurring_event_id: Optional[str] = Field(None, description="Series master id")
    is_recurring_instance: bool = Field(False, description="Whether this is an expanded occurrence")

    @validator('start', 'end', 'created', 'last_modified', pre=True)
    def ensure_timezone_aware(cls, v):
        """Ensure datetime objects are timezone-aware."""
        return _as_aware(v)

    @validator('end')
    def end_not_before_start(cls, v, values):
        """Ensure the inclusive end does not precede the start."""
        if v is not None and 'start' in values and v < values['start']:
            raise ValueError(f"End time ({v}) must not be before start time ({values['start']})")
        return v

    def explicit_fields(self) -> set:
        """Fields the caller actually set; partial updates send only these."""
        return set(self.model_fields_set)


class OAuthTokenData(BaseModel):
    """OAuth token set. Replaced wholesale on refresh."""

    access_token: str
    refresh_token: Optional[str] = None
    expires_at: datetime
    scope: str = ""
    token_type: str = "Bearer"
    issued_at: datetime = Field(default_factory=_utcnow)

    @validator('expires_at', 'issued_at', pre=True)
    def ensure_timezone_aware(cls, v):
        """Ensure datetime objects are timezone-aware."""
        return _as_aware(v)

    def is_expired(self, buffer_seconds: int = 300, now: Optional[datetime] = None) -> bool:
        """True once ``now`` is past ``expires_at`` minus the buffer."""
        now = now or _utcnow()
        return now > self.expires_at - timedelta(seconds=buffer_seconds)


class PendingOAuthRequest(BaseModel):
    """An authorization flow waiting for its callback, keyed by ``state``."""

    state: str
    provider: ProviderType
    code_verifier: str
    redirect_uri: str
    created_at: datetime = Field(default_factory=_utcnow)
    tenant_id: Optional[str] = None
    source_id: Optional[str] = None


class CalendarListEntry(BaseModel):
    """Calendar as listed by a provider."""

    id: str
    name: str
    color: Optional[str] = None
    primary: bool = False
    can_write: bool = False
    description: Optional[str] = None
    timezone: Optional[str] = None


class DateRange(BaseModel):
    """Time window for event fetches."""

    start: datetime
    end: datetime

    @validator('start', 'end', pre=True)
    def ensure_timezone_aware(cls, v):
        """Ensure datetime objects are timezone-aware."""
        return _as_aware(v)

    @classmethod
    def default_range(cls) -> 'DateRange':
        """30 days back to 90 days ahead."""
        now = _utcnow()
        return cls(start=now - timedelta(days=30), end=now + timedelta(days=90))

    @classmethod
    def around(cls, center: datetime, days_before: int = 30, days_after: int = 90) -> 'DateRange':
        center = _as_aware(center)
        return cls(start=center - timedelta(days=days_before), end=center + timedelta(days=days_after))


class WriteResult(BaseModel):
    """Outcome of a create/update/delete."""

    success: bool
    event: Optional[CalendarEvent] = None
    error: Optional[str] = None
    conflict: bool = False


class ProviderStatus(BaseModel):
    """Observable provider status."""

    state: ProviderState = ProviderState.IDLE
    error: Optional[str] = None
    last_sync: Optional[datetime] = None
    event_count: Optional[int] = None


class AuthEvent(BaseModel):
    """Event emitted by the auth engine to its subscribers."""

    type: AuthEventType
    provider: Optional[ProviderType] = Field(None, description="Unknown for callbacks without a valid state")
    tokens: Optional[OAuthTokenData] = None
    email: Optional[str] = None
    error: Optional[str] = None
    error_code: Optional[str] = Field(None, description="Machine-readable error kind")
    source_id: Optional[str] = None
    status: Optional[ProviderState] = None


class BaseCalendarSource(BaseModel):
    """Configuration shared by all calendar sources."""

    id: str
    name: str
    enabled: bool = True
    color: Optional[str] = None
    refresh_interval: int = Field(60, ge=1, description="Sync interval in minutes")
    last_synced: Optional[datetime] = None
    calendar_labels: Dict[str, str] = Field(default_factory=dict)


class GoogleCalendarSource(BaseCalendarSource):
    type: Literal["google"] = "google"
    account_email: Optional[str] = None
    calendar_ids: List[str] = Field(default_factory=list)
    auth: Optional[OAuthTokenData] = None
    include_primary_calendar: bool = True
    include_shared_calendars: bool = False


class OutlookCalendarSource(BaseCalendarSource):
    type: Literal["outlook"] = "outlook"
    account_email: Optional[str] = None
    calendar_ids: List[str] = Field(default_factory=list)
    auth: Optional[OAuthTokenData] = None
    tenant_id: str = "common"
    include_primary_calendar: bool = True
    include_shared_calendars: bool = False


class AppleCaldavSource(BaseCalendarSource):
    type: Literal["apple-caldav"] = "apple-caldav"
    server_url: str = "https://caldav.icloud.com/"
    username: str = ""
    app_specific_password: Optional[str] = Field(
        None, description="App-specific password, never the account password"
    )
    calendar_hrefs: List[str] = Field(default_factory=list)
    principal_url: Optional[str] = None


class UrlIcsSource(BaseCalendarSource):
    type: Literal["url-ics"] = "url-ics"
    url: str


CalendarSource = Annotated[
    Union[GoogleCalendarSource, OutlookCalendarSource, AppleCaldavSource, UrlIcsSource],
    Field(discriminator="type"),
]

_source_list_adapter = TypeAdapter(List[CalendarSource])


def parse_sources(data: Any) -> List[Any]:
    """Validate a JSON-like list of source objects into typed sources."""
    return _source_list_adapter.validate_python(data)


def is_oauth_source(source: Any) -> bool:
    """Whether the source authenticates through OAuth."""
    return getattr(source, 'type', None) in (ProviderType.GOOGLE, ProviderType.OUTLOOK)


def has_valid_tokens(source: Any, buffer_seconds: int = 300) -> bool:
    """Whether an OAuth source holds a token that is not about to expire."""
    if not is_oauth_source(source) or source.auth is None:
        return False
    return not source.auth.is_expired(buffer_seconds)
