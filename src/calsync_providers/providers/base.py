"""Base calendar provider interface with async support."""

import asyncio
import json
import logging
from abc import ABC, abstractmethod
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

import httpx
import pytz
from caldav.lib import error as dav_error
from lxml import etree

from ..auth import OAuthError
from ..config import Settings
from ..models import (
    CalendarEvent, CalendarListEntry, DateRange, ProviderState, ProviderStatus, ProviderType, WriteResult
)

logger = logging.getLogger(__name__)


class ProviderErrorType(str, Enum):
    """Fixed error taxonomy surfaced by every provider."""

    AUTH = "auth"
    NETWORK = "network"
    RATE_LIMIT = "rate_limit"
    NOT_FOUND = "not_found"
    PERMISSION = "permission"
    PARSE = "parse"
    TIMEOUT = "timeout"
    UNKNOWN = "unknown"


RETRYABLE_ERROR_TYPES = frozenset({
    ProviderErrorType.RATE_LIMIT,
    ProviderErrorType.TIMEOUT,
    ProviderErrorType.NETWORK,
})


class CalendarProviderError(Exception):
    """Base exception for calendar provider errors."""

    error_type = ProviderErrorType.UNKNOWN

    def __init__(self, message: str, error_type: Optional[ProviderErrorType] = None,
                 original_error: Optional[BaseException] = None):
        super().__init__(message)
        if error_type is not None:
            self.error_type = ProviderErrorType(error_type)
        self.original_error = original_error

    @property
    def retryable(self) -> bool:
        """Whether the caller may retry later. Never retried internally."""
        return self.error_type in RETRYABLE_ERROR_TYPES


class AuthenticationError(CalendarProviderError):
    """Authentication-related errors."""
    error_type = ProviderErrorType.AUTH


class NetworkError(CalendarProviderError):
    """Connection-level failures."""
    error_type = ProviderErrorType.NETWORK


class RateLimitError(CalendarProviderError):
    """Rate limiting errors."""
    error_type = ProviderErrorType.RATE_LIMIT


class CalendarNotFoundError(CalendarProviderError):
    """Calendar, event or discovery target not found."""
    error_type = ProviderErrorType.NOT_FOUND


class PermissionDeniedError(CalendarProviderError):
    """Access to the calendar or event is forbidden."""
    error_type = ProviderErrorType.PERMISSION


class ParseError(CalendarProviderError):
    """Malformed JSON, XML or calendar data."""
    error_type = ProviderErrorType.PARSE


class RequestTimeoutError(CalendarProviderError):
    """Request timed out."""
    error_type = ProviderErrorType.TIMEOUT


class SyncCancelledError(CalendarProviderError):
    """The caller cancelled an in-flight fetch."""
    error_type = ProviderErrorType.UNKNOWN


ERROR_CLASSES = {
    ProviderErrorType.AUTH: AuthenticationError,
    ProviderErrorType.NETWORK: NetworkError,
    ProviderErrorType.RATE_LIMIT: RateLimitError,
    ProviderErrorType.NOT_FOUND: CalendarNotFoundError,
    ProviderErrorType.PERMISSION: PermissionDeniedError,
    ProviderErrorType.PARSE: ParseError,
    ProviderErrorType.TIMEOUT: RequestTimeoutError,
    ProviderErrorType.UNKNOWN: CalendarProviderError,
}

USER_NOTICES = {
    ProviderErrorType.AUTH: "Authentication failed. Please reconnect your calendar.",
    ProviderErrorType.NETWORK: "Network error. Please check your internet connection.",
    ProviderErrorType.RATE_LIMIT: "Too many requests. Please try again later.",
    ProviderErrorType.PERMISSION: "Permission denied. Please check calendar permissions.",
    ProviderErrorType.TIMEOUT: "Request timed out. Please try again.",
    ProviderErrorType.NOT_FOUND: "Calendar or event not found.",
    ProviderErrorType.PARSE: "Received data could not be read.",
    ProviderErrorType.UNKNOWN: "Calendar sync failed. Please try again.",
}

# Checked in order; first match wins.
_MESSAGE_PATTERNS = [
    (ProviderErrorType.AUTH, ("401", "unauthorized", "authentication", "invalid_grant")),
    (ProviderErrorType.PERMISSION, ("403", "forbidden", "permission")),
    (ProviderErrorType.NOT_FOUND, ("404", "not found")),
    (ProviderErrorType.RATE_LIMIT, ("429", "rate limit", "too many requests")),
    (ProviderErrorType.TIMEOUT, ("timeout", "timed out")),
    (ProviderErrorType.NETWORK, ("network", "connection", "econnrefused", "fetch failed")),
    (ProviderErrorType.PARSE, ("parse", "json", "xml")),
]


def make_error(error_type: ProviderErrorType, message: str,
               original_error: Optional[BaseException] = None) -> CalendarProviderError:
    """Instantiate the taxonomy class for ``error_type``."""
    return ERROR_CLASSES[error_type](message, original_error=original_error)


def error_type_for_status(status_code: int) -> ProviderErrorType:
    if status_code == 401:
        return ProviderErrorType.AUTH
    if status_code == 403:
        return ProviderErrorType.PERMISSION
    if status_code in (404, 410):
        return ProviderErrorType.NOT_FOUND
    if status_code == 429:
        return ProviderErrorType.RATE_LIMIT
    if status_code in (408, 504):
        return ProviderErrorType.TIMEOUT
    return ProviderErrorType.UNKNOWN


def classify_error(error: BaseException, context: Optional[str] = None) -> CalendarProviderError:
    """Normalize any exception into the provider error taxonomy.

    Status codes and exception types are used where the transport exposes
    them; otherwise the message is matched against known patterns.

    Args:
        error: Exception raised anywhere below a provider
        context: Optional operation name prefixed to the message

    Returns:
        A CalendarProviderError (the same instance if already classified)
    """
    if isinstance(error, CalendarProviderError):
        return error

    message = str(error) or type(error).__name__
    if context:
        message = f"{context}: {message}"

    if isinstance(error, httpx.TimeoutException):
        error_type = ProviderErrorType.TIMEOUT
    elif isinstance(error, httpx.TransportError):
        error_type = ProviderErrorType.NETWORK
    elif isinstance(error, httpx.HTTPStatusError):
        error_type = error_type_for_status(error.response.status_code)
    elif isinstance(error, OAuthError):
        error_type = ProviderErrorType.AUTH
    elif isinstance(error, dav_error.AuthorizationError):
        # caldav raises the same class for 401 and 403
        forbidden = 'forbidden' in str(error.reason).lower()
        error_type = ProviderErrorType.PERMISSION if forbidden else ProviderErrorType.AUTH
    elif isinstance(error, dav_error.RateLimitError):
        error_type = ProviderErrorType.RATE_LIMIT
    elif isinstance(error, dav_error.NotFoundError):
        error_type = ProviderErrorType.NOT_FOUND
    elif isinstance(error, (etree.XMLSyntaxError, dav_error.ResponseError, json.JSONDecodeError)):
        error_type = ProviderErrorType.PARSE
    elif isinstance(error, asyncio.TimeoutError):
        error_type = ProviderErrorType.TIMEOUT
    else:
        error_type = ProviderErrorType.UNKNOWN
        lowered = message.lower()
        for candidate, patterns in _MESSAGE_PATTERNS:
            if any(p in lowered for p in patterns):
                error_type = candidate
                break

    return make_error(error_type, message, original_error=error)


def user_notice(error: BaseException) -> str:
    """User-facing message derived from the error category, never the raw text."""
    return USER_NOTICES[classify_error(error).error_type]


def write_not_supported() -> WriteResult:
    return WriteResult(success=False, error="Write operations are not supported by this provider")


class BaseCalendarProvider(ABC):
    """Abstract base class for calendar providers with async support.

    Concrete providers implement connection handling, calendar listing and a
    single-calendar fetch; the fan-out over calendars, status reporting and
    error normalization live here.
    """

    def __init__(self, source: Any, settings: Settings,
                 notifier: Optional[Callable[[str], None]] = None):
        """Initialize calendar provider.

        Args:
            source: Calendar source configuration (read; tokens written back)
            settings: Application settings
            notifier: Optional callable receiving user-facing notices
        """
        self.source = source
        self.settings = settings
        self.provider_type = ProviderType(source.type)
        self.logger = logger.getChild(self.provider_type.value)
        self._notifier = notifier
        self._status = ProviderStatus()
        self._status_listeners: List[Callable[[ProviderStatus], None]] = []

    # ------------------------------------------------------------------
    # Status
    # ------------------------------------------------------------------

    @property
    def status(self) -> ProviderStatus:
        return self._status

    def subscribe_status(self, listener: Callable[[ProviderStatus], None]) -> Callable[[], None]:
        """Register a status listener.

        Returns:
            Callable that removes the listener again
        """
        self._status_listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._status_listeners:
                self._status_listeners.remove(listener)

        return unsubscribe

    def update_status(self, **changes: Any) -> None:
        self._status = self._status.model_copy(update=changes)
        for listener in list(self._status_listeners):
            try:
                listener(self._status)
            except Exception:
                self.logger.exception("Status listener failed")

    def set_syncing(self, syncing: bool) -> None:
        if syncing:
            self.update_status(state=ProviderState.SYNCING)
        elif self._status.state == ProviderState.SYNCING:
            self.update_status(state=ProviderState.IDLE)

    def handle_error(self, error: BaseException, context: str) -> CalendarProviderError:
        """Classify, record and announce an error.

        Returns:
            The classified error, for the caller to raise or discard
        """
        classified = classify_error(error, context)
        notice = USER_NOTICES[classified.error_type]
        self.logger.error(f"{context} failed ({classified.error_type.value}): {classified}")
        self.update_status(state=ProviderState.ERROR, error=notice)
        if self._notifier is not None:
            self._notifier(notice)
        return classified

    # ------------------------------------------------------------------
    # Connection and reads
    # ------------------------------------------------------------------

    @abstractmethod
    async def connect(self) -> bool:
        """Validate (and refresh where needed) the credentials.

        Returns:
            True when the provider is ready for requests
        """

    @abstractmethod
    async def disconnect(self) -> None:
        """Drop credentials and mark the provider disabled."""

    @abstractmethod
    async def list_calendars(self) -> List[CalendarListEntry]:
        """Get list of accessible calendars.

        Raises:
            CalendarProviderError: If calendars cannot be retrieved
        """

    @abstractmethod
    async def _fetch_calendar_events(
        self,
        calendar_id: str,
        date_range: DateRange,
        max_results: Optional[int],
        expand_recurring: bool,
        cancel_event: Optional[asyncio.Event],
    ) -> List[CalendarEvent]:
        """Fetch all events of one calendar within the range."""

    def update_config(self, source: Any) -> None:
        """Swap in a newer configuration of the same source."""
        self.source = source

    def configured_calendar_ids(self) -> List[str]:
        return list(getattr(self.source, 'calendar_ids', []) or [])

    @staticmethod
    def check_cancelled(cancel_event: Optional[asyncio.Event]) -> None:
        if cancel_event is not None and cancel_event.is_set():
            raise SyncCancelledError("Request cancelled")

    async def get_events(
        self,
        date_range: Optional[DateRange] = None,
        calendar_ids: Optional[List[str]] = None,
        max_results: Optional[int] = None,
        expand_recurring: bool = True,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> List[CalendarEvent]:
        """Fetch events from the requested (or configured) calendars.

        Calendars are fetched concurrently and in isolation: a failing
        calendar is logged and contributes no events.

        Args:
            date_range: Time window, defaults to DateRange.default_range()
            calendar_ids: Calendars to read, defaults to the configured ones
            max_results: Upper bound per calendar
            expand_recurring: Expand recurring series into instances
            cancel_event: Set to abandon the fetch

        Returns:
            Events of all calendars that could be read

        Raises:
            SyncCancelledError: If cancellation was observed
        """
        if not await self.connect():
            return []

        ids = list(calendar_ids or self.configured_calendar_ids())
        if not ids:
            self.logger.warning("No calendars configured")
            return []

        date_range = date_range or DateRange.default_range()
        self.set_syncing(True)
        try:
            outcomes = await asyncio.gather(
                *(self._fetch_isolated(cid, date_range, max_results, expand_recurring, cancel_event)
                  for cid in ids),
                return_exceptions=True,
            )
        finally:
            self.set_syncing(False)

        events: List[CalendarEvent] = []
        failures: List[CalendarProviderError] = []
        cancelled: Optional[SyncCancelledError] = None
        for calendar_id, outcome in zip(ids, outcomes):
            if isinstance(outcome, SyncCancelledError):
                cancelled = outcome
            elif isinstance(outcome, Exception):
                classified = classify_error(outcome, f"Fetch {calendar_id}")
                self.logger.error(f"Error fetching {calendar_id} ({classified.error_type.value}): {classified}")
                failures.append(classified)
            elif isinstance(outcome, BaseException):
                raise outcome
            else:
                events.extend(outcome)

        if cancelled is not None:
            raise cancelled

        if failures and len(failures) == len(ids):
            self.handle_error(failures[-1], "Fetch events")
            return events

        self.update_status(
            state=ProviderState.IDLE,
            error=USER_NOTICES[failures[-1].error_type] if failures else None,
            last_sync=datetime.now(pytz.UTC),
            event_count=len(events),
        )
        return events

    async def _fetch_isolated(self, calendar_id, date_range, max_results, expand_recurring, cancel_event):
        self.check_cancelled(cancel_event)
        return await self._fetch_calendar_events(
            calendar_id, date_range, max_results, expand_recurring, cancel_event
        )

    # ------------------------------------------------------------------
    # Writes (read-only by default)
    # ------------------------------------------------------------------

    def supports_write(self) -> bool:
        return False

    def can_write_to_calendar(self, calendar_id: Optional[str] = None) -> bool:
        return False

    async def create_event(self, event: CalendarEvent, calendar_id: Optional[str] = None) -> WriteResult:
        return write_not_supported()

    async def update_event(
        self,
        event: CalendarEvent,
        original_event: Optional[CalendarEvent] = None,
        calendar_id: Optional[str] = None,
    ) -> WriteResult:
        return write_not_supported()

    async def delete_event(
        self,
        event_id: str,
        calendar_id: Optional[str] = None,
        etag: Optional[str] = None,
    ) -> WriteResult:
        return write_not_supported()

    # ------------------------------------------------------------------
    # Diagnostics and lifecycle
    # ------------------------------------------------------------------

    async def test_connection(self) -> Dict[str, Any]:
        """Test connection to the calendar provider.

        Returns:
            Dictionary with connection test results
        """
        try:
            if not await self.connect():
                return {
                    'success': False,
                    'error': self._status.error,
                    'error_type': ProviderErrorType.AUTH.value,
                }
            calendars = await self.list_calendars()
            primary = next((c for c in calendars if c.primary), calendars[0] if calendars else None)
            return {
                'success': True,
                'calendar_count': len(calendars),
                'primary_calendar': primary.name if primary else None,
            }
        except Exception as e:
            classified = classify_error(e)
            return {
                'success': False,
                'error': user_notice(classified),
                'error_type': classified.error_type.value,
            }

    async def close(self) -> None:
        """Release transport resources."""
