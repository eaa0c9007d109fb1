"""Apple iCloud (CalDAV) provider.

Discovery follows RFC 4791: the current-user-principal is read from the
server root, the calendar-home-set from the principal, and calendars are
the children of the home set whose resourcetype contains ``C:calendar``.
Basic authentication uses an app-specific password, never the account
password.
"""

import asyncio
import uuid
from typing import Any, Callable, Dict, List, Optional
from urllib.parse import quote, urljoin

from caldav.async_davclient import AsyncDAVClient
from caldav.elements import cdav, dav, ical
from lxml import etree

from ..config import Settings
from ..ics import build_ics, parse_ics
from ..models import CalendarEvent, CalendarListEntry, DateRange, ProviderState, WriteResult
from .base import (
    AuthenticationError, BaseCalendarProvider, CalendarNotFoundError, ParseError, PermissionDeniedError,
    classify_error, error_type_for_status, make_error,
)

AUTH_FAILED_MESSAGE = "Authentication failed - check your App-Specific Password"
WRITE_FORBIDDEN_MESSAGE = "Permission denied - you may not have write access to this calendar"

CALENDAR_LISTING_BODY = str(
    dav.Propfind() + (dav.Prop() + [
        dav.ResourceType(),
        dav.DisplayName(),
        ical.CalendarColor(),
        cdav.CalendarDescription(),
    ])
)


def calendar_query_body(date_range: DateRange) -> str:
    """calendar-query REPORT asking for the etag and data of VEVENTs in range."""
    vevent = cdav.CompFilter("VEVENT") + cdav.TimeRange(date_range.start, date_range.end)
    query = cdav.CalendarQuery() + [
        dav.Prop() + [dav.GetEtag(), cdav.CalendarData()],
        cdav.Filter() + (cdav.CompFilter("VCALENDAR") + vevent),
    ]
    return str(query)


def normalize_apple_color(color: Optional[str]) -> Optional[str]:
    """Apple reports ``#RRGGBBAA``; keep ``#RRGGBB``."""
    if not color:
        return None
    color = color.strip()
    if color.startswith('#') and len(color) == 9:
        return color[:7]
    return color


def calendar_name_from_href(href: str) -> str:
    parts = [part for part in href.split('/') if part]
    return parts[-1] if parts else href


def first_property(results: List[Any], tag: str) -> Optional[str]:
    """First non-empty value of ``tag`` across PROPFIND results."""
    for result in results:
        value = result.properties.get(tag)
        if isinstance(value, list):
            value = value[0] if value else None
        if isinstance(value, str) and value.strip():
            return value.strip()
    return None


class AppleCaldavProvider(BaseCalendarProvider):
    """iCloud calendar provider over CalDAV with async support."""

    def __init__(
        self,
        source: Any,
        settings: Settings,
        notifier: Optional[Callable[[str], None]] = None,
        dav_client: Optional[AsyncDAVClient] = None,
    ):
        """Initialize CalDAV provider.

        Args:
            source: AppleCaldavSource configuration
            settings: Application settings
            notifier: Optional callable receiving user-facing notices
            dav_client: Shared CalDAV client, a private one is created otherwise
        """
        super().__init__(source, settings, notifier)
        self._dav_client = dav_client
        self._owns_client = dav_client is None

    @property
    def server_url(self) -> str:
        return self.source.server_url or self.settings.caldav_server_url

    def configured_calendar_ids(self) -> List[str]:
        return list(self.source.calendar_hrefs or [])

    def _absolute(self, href: str, base: Optional[str] = None) -> str:
        return urljoin(base or self.server_url, href)

    def _resource_url(self, calendar_href: str, uid: str) -> str:
        base = self._absolute(calendar_href)
        separator = '' if base.endswith('/') else '/'
        return f"{base}{separator}{quote(uid, safe='@')}.ics"

    def _get_client(self) -> AsyncDAVClient:
        if self._dav_client is None:
            self._dav_client = AsyncDAVClient(
                url=self.server_url,
                username=self.source.username,
                password=self.source.app_specific_password or '',
                auth_type='basic',
                timeout=self.settings.request_timeout_seconds,
                enable_rfc6764=False,
                rate_limit_handle=False,
            )
            self._owns_client = True
        return self._dav_client

    async def _propfind(self, url: str, depth: int, props: Optional[List[str]] = None,
                        body: str = '') -> List[Any]:
        """PROPFIND ``url`` and return the parsed per-resource results.

        Raises:
            caldav.lib.error.AuthorizationError: On 401 or 403
            CalendarProviderError: On any other HTTP error status
        """
        response = await self._get_client().propfind(url, body=body, depth=depth, props=props)
        if response.status >= 400:
            raise make_error(
                error_type_for_status(response.status),
                f"PROPFIND {url} failed: HTTP {response.status}",
            )
        return response.results or []

    # ------------------------------------------------------------------
    # Connection
    # ------------------------------------------------------------------

    async def connect(self) -> bool:
        if not self.source.app_specific_password:
            self.update_status(state=ProviderState.ERROR, error="App-specific password not configured")
            return False

        try:
            await self._propfind(self.server_url, 0, props=['current-user-principal'])
        except Exception as e:
            self.handle_error(e, "Connection")
            return False

        if self.status.state in (ProviderState.ERROR, ProviderState.DISABLED, ProviderState.CONNECTING):
            self.update_status(state=ProviderState.IDLE, error=None)
        return True

    async def disconnect(self) -> None:
        await self.close()
        self.update_status(state=ProviderState.DISABLED, error=None)

    # ------------------------------------------------------------------
    # Discovery
    # ------------------------------------------------------------------

    async def discover_calendar_home_set(self) -> str:
        """Resolve the absolute calendar-home-set URL.

        iCloud answers with a home set on a partition host such as
        ``p42-caldav.icloud.com``; absolute hrefs are kept as given.

        Raises:
            CalendarNotFoundError: If the principal or home set is missing
        """
        principal_url = self.source.principal_url
        if not principal_url:
            results = await self._propfind(self.server_url, 0, props=['current-user-principal'])
            principal_href = first_property(results, dav.CurrentUserPrincipal.tag)
            if not principal_href:
                raise CalendarNotFoundError("Could not discover user principal")
            principal_url = self._absolute(principal_href)

        results = await self._propfind(principal_url, 0, props=['calendar-home-set'])
        home_href = first_property(results, cdav.CalendarHomeSet.tag)
        if not home_href:
            raise CalendarNotFoundError("Could not discover calendar home set")
        return self._absolute(home_href, base=principal_url)

    async def list_calendars(self) -> List[CalendarListEntry]:
        if not await self.connect():
            raise AuthenticationError("Not authenticated with iCloud Calendar")

        try:
            home_set = await self.discover_calendar_home_set()
            results = await self._propfind(home_set, 1, body=CALENDAR_LISTING_BODY)
        except Exception as e:
            raise self.handle_error(e, "List calendars") from e

        calendars = []
        for result in results:
            resource_types = result.properties.get(dav.ResourceType.tag) or []
            if cdav.Calendar.tag not in resource_types:
                continue
            calendars.append(CalendarListEntry(
                id=self._absolute(result.href, base=home_set),
                name=result.properties.get(dav.DisplayName.tag) or calendar_name_from_href(result.href),
                color=normalize_apple_color(result.properties.get(ical.CalendarColor.tag)),
                primary=False,
                can_write=True,
                description=result.properties.get(cdav.CalendarDescription.tag),
            ))
        return calendars

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def _fetch_calendar_events(
        self,
        calendar_id: str,
        date_range: DateRange,
        max_results: Optional[int],
        expand_recurring: bool,
        cancel_event: Optional[asyncio.Event],
    ) -> List[CalendarEvent]:
        calendar_url = self._absolute(calendar_id)
        try:
            response = await self._get_client().report(calendar_url, calendar_query_body(date_range), depth=1)
        except etree.XMLSyntaxError as e:
            raise ParseError(f"Malformed REPORT response for {calendar_id}: {e}", original_error=e) from e
        if response.status >= 400:
            raise make_error(
                error_type_for_status(response.status),
                f"CalDAV REPORT failed: HTTP {response.status}",
            )

        events: List[CalendarEvent] = []
        for result in response.parse_calendar_query():
            data = (result.calendar_data or '').strip()
            if not data.startswith('BEGIN:VCALENDAR'):
                continue
            try:
                parsed = parse_ics(data)
            except ValueError as e:
                self.logger.warning(f"Failed to parse calendar data at {result.href}: {e}")
                continue
            for event in parsed:
                events.append(event.model_copy(update={
                    'provider_event_id': self._absolute(result.href, base=calendar_url),
                    'provider_calendar_id': calendar_id,
                    'etag': result.etag,
                    'can_edit': True,
                }))

        if max_results is not None:
            events = events[:max_results]
        return events

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def supports_write(self) -> bool:
        return True

    def can_write_to_calendar(self, calendar_id: Optional[str] = None) -> bool:
        return bool(self.source.app_specific_password)

    def _failed_write(self, error: BaseException, context: str) -> WriteResult:
        classified = classify_error(error, context)
        self.logger.error(f"{context} failed ({classified.error_type.value}): {classified}")
        if isinstance(classified, AuthenticationError):
            return WriteResult(success=False, error=AUTH_FAILED_MESSAGE)
        if isinstance(classified, PermissionDeniedError):
            return WriteResult(success=False, error=WRITE_FORBIDDEN_MESSAGE)
        return WriteResult(success=False, error=str(classified))

    async def create_event(self, event: CalendarEvent, calendar_id: Optional[str] = None) -> WriteResult:
        if not await self.connect():
            return WriteResult(success=False, error="Not authenticated")

        configured = self.configured_calendar_ids()
        target = calendar_id or event.provider_calendar_id or (configured[0] if configured else None)
        if not target:
            return WriteResult(success=False, error="No calendar specified")

        uid = event.uid or str(uuid.uuid4())
        resource_url = self._resource_url(target, uid)
        to_write = event.model_copy(update={'uid': uid})
        try:
            response = await self._get_client().put(
                resource_url,
                build_ics(to_write),
                {'Content-Type': 'text/calendar; charset=utf-8', 'If-None-Match': '*'},
            )
        except Exception as e:
            return self._failed_write(e, "Create event")

        if response.status in (200, 201, 204):
            self.logger.info(f"Created CalDAV event {uid}")
            return WriteResult(success=True, event=to_write.model_copy(update={
                'provider_event_id': resource_url,
                'provider_calendar_id': target,
                'etag': response.headers.get('ETag'),
                'can_edit': True,
            }))
        if response.status == 412:
            return WriteResult(success=False, error="Event already exists (UID conflict)", conflict=True)
        return WriteResult(success=False, error=f"Create failed: HTTP {response.status}")

    async def update_event(
        self,
        event: CalendarEvent,
        original_event: Optional[CalendarEvent] = None,
        calendar_id: Optional[str] = None,
    ) -> WriteResult:
        """PUT the full event back to its resource.

        A known version tag is sent as If-Match; a 412 reports a conflict.
        """
        if not await self.connect():
            return WriteResult(success=False, error="Not authenticated")

        resource = event.provider_event_id
        target = calendar_id or event.provider_calendar_id
        if not resource and target and event.uid:
            resource = self._resource_url(target, event.uid)
        if not resource:
            return WriteResult(success=False, error="Cannot determine event URL for update")

        headers: Dict[str, str] = {'Content-Type': 'text/calendar; charset=utf-8'}
        etag = (original_event.etag if original_event else None) or event.etag
        if etag:
            headers['If-Match'] = etag

        try:
            response = await self._get_client().put(self._absolute(resource), build_ics(event), headers)
        except Exception as e:
            return self._failed_write(e, "Update event")

        if response.status in (200, 201, 204):
            self.logger.info(f"Updated CalDAV event {event.uid}")
            return WriteResult(success=True, event=event.model_copy(update={
                'provider_event_id': resource,
                'etag': response.headers.get('ETag'),
            }))
        if response.status == 412:
            return WriteResult(
                success=False,
                error="Conflict: The event was modified on the server. Please refresh and try again.",
                conflict=True,
            )
        if response.status == 404:
            return WriteResult(success=False, error="Event not found - it may have been deleted")
        return WriteResult(success=False, error=f"Update failed: HTTP {response.status}")

    async def delete_event(
        self,
        event_id: str,
        calendar_id: Optional[str] = None,
        etag: Optional[str] = None,
    ) -> WriteResult:
        if not await self.connect():
            return WriteResult(success=False, error="Not authenticated")

        resource = event_id
        # A bare UID is resolved against the calendar
        if '/' not in event_id and calendar_id:
            resource = self._resource_url(calendar_id, event_id)

        try:
            response = await self._get_client().delete(
                self._absolute(resource), {'If-Match': etag} if etag else {}
            )
        except Exception as e:
            return self._failed_write(e, "Delete event")

        if response.status in (200, 204, 404):
            self.logger.info(f"Deleted CalDAV event {event_id}")
            return WriteResult(success=True)
        if response.status == 412:
            return WriteResult(success=False, error="Conflict: The event was modified on the server", conflict=True)
        return WriteResult(success=False, error=f"Delete failed: HTTP {response.status}")

    async def close(self) -> None:
        if self._dav_client is not None and self._owns_client:
            client, self._dav_client = self._dav_client, None
            await client.close()
