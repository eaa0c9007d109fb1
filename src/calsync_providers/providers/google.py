"""Google Calendar provider over the Calendar v3 REST API."""

import asyncio
from datetime import date, datetime
from typing import Any, Dict, List, Optional, Tuple
from urllib.parse import quote

from dateutil.parser import isoparse
import pytz

from ..models import (
    CalendarEvent, CalendarListEntry, DateRange, EventAttendee, EventStatus, Transparency, WriteResult
)
from ..ics import exclusive_end_from_inclusive, inclusive_end_from_exclusive
from .base import AuthenticationError
from .rest import NOT_AUTHENTICATED, TokenRestProvider

GOOGLE_MAX_RESULTS = 2500

STATUS_FROM_GOOGLE = {
    'confirmed': EventStatus.CONFIRMED,
    'tentative': EventStatus.TENTATIVE,
    'cancelled': EventStatus.CANCELLED,
}
STATUS_TO_GOOGLE = {value: key for key, value in STATUS_FROM_GOOGLE.items()}

RESPONSE_FROM_GOOGLE = {
    'accepted': 'ACCEPTED',
    'declined': 'DECLINED',
    'tentative': 'TENTATIVE',
    'needsAction': 'NEEDS-ACTION',
}

WRITE_ROLES = ('writer', 'owner')
WRITE_SCOPES = ('https://www.googleapis.com/auth/calendar', 'https://www.googleapis.com/auth/calendar.events')


def format_api_datetime(value: datetime) -> str:
    """RFC 3339 in UTC with a ``Z`` suffix."""
    return value.astimezone(pytz.UTC).strftime('%Y-%m-%dT%H:%M:%SZ')


def _midnight(day: date) -> datetime:
    return datetime(day.year, day.month, day.day, tzinfo=pytz.UTC)


class GoogleCalendarProvider(TokenRestProvider):
    """Google Calendar provider with async support."""

    items_key = 'items'

    @property
    def api_base(self) -> str:
        return self.settings.google_api_base.rstrip('/')

    def _events_url(self, calendar_id: str, event_id: Optional[str] = None) -> str:
        url = f"{self.api_base}/calendars/{quote(calendar_id, safe='')}/events"
        if event_id:
            url = f"{url}/{quote(event_id, safe='')}"
        return url

    def _next_page(self, url, params, payload) -> Optional[Tuple[str, Optional[Dict[str, Any]]]]:
        token = payload.get('nextPageToken')
        if not token:
            return None
        return url, {**(params or {}), 'pageToken': token}

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def list_calendars(self) -> List[CalendarListEntry]:
        if not await self.connect():
            raise AuthenticationError("Not authenticated with Google Calendar")

        try:
            items = await self._collect_pages(
                f"{self.api_base}/users/me/calendarList", {'maxResults': '250'}, "List calendars"
            )
        except Exception as e:
            raise self.handle_error(e, "List calendars") from e

        return [
            CalendarListEntry(
                id=item['id'],
                name=item.get('summaryOverride') or item.get('summary') or item['id'],
                color=item.get('backgroundColor'),
                primary=bool(item.get('primary', False)),
                can_write=item.get('accessRole') in WRITE_ROLES,
                description=item.get('description'),
                timezone=item.get('timeZone'),
            )
            for item in items
        ]

    async def _fetch_calendar_events(
        self,
        calendar_id: str,
        date_range: DateRange,
        max_results: Optional[int],
        expand_recurring: bool,
        cancel_event: Optional[asyncio.Event],
    ) -> List[CalendarEvent]:
        params = {
            'timeMin': format_api_datetime(date_range.start),
            'timeMax': format_api_datetime(date_range.end),
            'singleEvents': 'true' if expand_recurring else 'false',
            'maxResults': str(min(max_results or self.settings.default_max_results, GOOGLE_MAX_RESULTS)),
        }
        if expand_recurring:
            params['orderBy'] = 'startTime'

        items = await self._collect_pages(
            self._events_url(calendar_id), params, f"Fetch events for {calendar_id}",
            cancel_event=cancel_event, limit=max_results,
        )

        events = []
        for item in items:
            if item.get('status') == 'cancelled':
                continue
            try:
                events.append(self._convert_event(item, calendar_id, can_write=self.can_write_to_calendar(calendar_id)))
            except (KeyError, ValueError, TypeError) as e:
                self.logger.warning(f"Skipping unreadable Google event {item.get('id')}: {e}")
        self.logger.debug(f"Fetched {len(events)} events from {calendar_id}")
        return events

    def _convert_event(self, item: Dict[str, Any], calendar_id: str, can_write: bool = False) -> CalendarEvent:
        """Map a Google event resource to a CalendarEvent."""
        start = item.get('start') or {}
        end = item.get('end') or {}
        all_day = 'date' in start

        if all_day:
            start_dt = _midnight(date.fromisoformat(start['date']))
            end_dt = inclusive_end_from_exclusive(date.fromisoformat(end['date'])) if end.get('date') else start_dt
            end_dt = max(end_dt, start_dt)
        else:
            start_dt = isoparse(start['dateTime'])
            end_dt = isoparse(end['dateTime']) if end.get('dateTime') else None

        raw_status = item.get('status')
        status = STATUS_FROM_GOOGLE.get(raw_status, EventStatus.CONFIRMED) if raw_status else None
        transparency = Transparency.TRANSPARENT if item.get('transparency') == 'transparent' else Transparency.OPAQUE

        organizer = item.get('organizer')
        custom_properties = {
            'X-GOOGLE-CALENDAR-ID': calendar_id,
            'X-GOOGLE-EVENT-ID': item['id'],
        }
        if item.get('htmlLink'):
            custom_properties['X-GOOGLE-HTML-LINK'] = item['htmlLink']

        return CalendarEvent(
            uid=item.get('iCalUID') or item['id'],
            summary=item.get('summary') or "(No title)",
            description=item.get('description'),
            location=item.get('location'),
            start=start_dt,
            end=end_dt,
            all_day=all_day,
            status=status,
            transparency=transparency,
            organizer=EventAttendee(
                name=organizer.get('displayName'), email=organizer.get('email')
            ) if organizer else None,
            attendees=[
                EventAttendee(
                    name=attendee.get('displayName'),
                    email=attendee.get('email'),
                    role='OPT-PARTICIPANT' if attendee.get('optional') else 'REQ-PARTICIPANT',
                    status=RESPONSE_FROM_GOOGLE.get(attendee.get('responseStatus')),
                )
                for attendee in item.get('attendees') or []
            ],
            recurrence_rule='\n'.join(item['recurrence']) if item.get('recurrence') else None,
            created=isoparse(item['created']) if item.get('created') else None,
            last_modified=isoparse(item['updated']) if item.get('updated') else None,
            custom_properties=custom_properties,
            provider_event_id=item['id'],
            provider_calendar_id=calendar_id,
            etag=item.get('etag'),
            can_edit=can_write and raw_status != 'cancelled',
            recurring_event_id=item.get('recurringEventId'),
            is_recurring_instance=bool(item.get('recurringEventId')),
        )

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    @staticmethod
    def _to_google_time(value: datetime, all_day: bool, is_end: bool = False) -> Dict[str, str]:
        if all_day:
            day = exclusive_end_from_inclusive(value) if is_end else value.date()
            return {'date': day.isoformat()}
        return {'dateTime': format_api_datetime(value)}

    def _event_body(self, event: CalendarEvent, fields: Optional[set] = None) -> Dict[str, Any]:
        """Google resource for ``event``, limited to ``fields`` when given."""
        def wanted(*names: str) -> bool:
            return fields is None or any(name in fields for name in names)

        body: Dict[str, Any] = {}
        if wanted('summary'):
            body['summary'] = event.summary
        if wanted('description'):
            body['description'] = event.description
        if wanted('location'):
            body['location'] = event.location
        # A partial body only carries the times that were set; all_day shapes them
        if wanted('start'):
            body['start'] = self._to_google_time(event.start, event.all_day)
        end = event.end or event.start if fields is None else event.end
        if wanted('end') and end is not None:
            body['end'] = self._to_google_time(end, event.all_day, is_end=True)
        if fields is not None and 'all_day' in fields and not fields & {'start', 'end'}:
            self.logger.warning("all_day changed without start or end; event times left as they are")
        if event.status and wanted('status'):
            body['status'] = STATUS_TO_GOOGLE.get(event.status, 'confirmed')
        if event.transparency and wanted('transparency'):
            body['transparency'] = 'transparent' if event.transparency == Transparency.TRANSPARENT else 'opaque'
        if event.recurrence_rule and wanted('recurrence_rule'):
            body['recurrence'] = [line for line in event.recurrence_rule.splitlines() if line.strip()]
        if fields is not None and 'attendees' in fields:
            body['attendees'] = [
                {
                    'email': attendee.email,
                    'displayName': attendee.name,
                    'optional': attendee.role == 'OPT-PARTICIPANT',
                }
                for attendee in event.attendees if attendee.email
            ]
        return body

    def _forbidden_message(self) -> str:
        scopes = (self.source.auth.scope if self.source.auth else '').split()
        if not any(scope in WRITE_SCOPES for scope in scopes):
            return (
                "Your Google Calendar authorization only has read-only permissions. "
                "Please disconnect and reconnect your Google Calendar to grant write access."
            )
        return (
            "Permission denied. This may be a subscribed or shared calendar that you cannot edit. "
            "Only events in your own calendars can be modified."
        )

    async def create_event(self, event: CalendarEvent, calendar_id: Optional[str] = None) -> WriteResult:
        if not await self.connect():
            return WriteResult(success=False, error=NOT_AUTHENTICATED)

        configured = self.configured_calendar_ids()
        target = calendar_id or event.provider_calendar_id or (configured[0] if configured else 'primary')
        context = "Create event"
        try:
            response = await self._request('POST', self._events_url(target), json=self._event_body(event))
            if not response.is_success:
                return self._write_failure(response, context)
            created = self._convert_event(self._json(response, context), target, can_write=True)
        except Exception as e:
            return self._write_exception(e, context)

        self.logger.info(f"Created Google event {created.provider_event_id}")
        return WriteResult(success=True, event=created)

    async def update_event(
        self,
        event: CalendarEvent,
        original_event: Optional[CalendarEvent] = None,
        calendar_id: Optional[str] = None,
        force: bool = False,
    ) -> WriteResult:
        """PATCH the fields set on ``event``.

        Args:
            event: Event carrying the changed fields
            original_event: Last read version, source of the version tag
            calendar_id: Target calendar, defaults to the event's calendar
            force: On conflict, repeat the update without If-Match

        Returns:
            WriteResult, with conflict=True when the version tag is stale
        """
        if not await self.connect():
            return WriteResult(success=False, error=NOT_AUTHENTICATED)

        event_id = event.provider_event_id or event.custom_properties.get('X-GOOGLE-EVENT-ID')
        target = (
            calendar_id
            or event.provider_calendar_id
            or event.custom_properties.get('X-GOOGLE-CALENDAR-ID')
            or 'primary'
        )
        if not event_id:
            return WriteResult(success=False, error="Event ID not found")

        etag = (original_event.etag if original_event else None) or event.etag
        body = self._event_body(event, fields=event.explicit_fields())
        url = self._events_url(target, event_id)
        context = "Update event"
        try:
            response = await self._request('PATCH', url, json=body, headers={'If-Match': etag} if etag else None)
            if response.status_code == 412 and force:
                self.logger.warning(f"Update conflict on {event_id}, forcing update without version check")
                response = await self._request('PATCH', url, json=body)
            if not response.is_success:
                return self._write_failure(response, context)
            updated = self._convert_event(self._json(response, context), target, can_write=True)
        except Exception as e:
            return self._write_exception(e, context)

        self.logger.info(f"Updated Google event {event_id}")
        return WriteResult(success=True, event=updated)

    async def delete_event(
        self,
        event_id: str,
        calendar_id: Optional[str] = None,
        etag: Optional[str] = None,
    ) -> WriteResult:
        if not await self.connect():
            return WriteResult(success=False, error=NOT_AUTHENTICATED)

        context = "Delete event"
        try:
            response = await self._request(
                'DELETE',
                self._events_url(calendar_id or 'primary', event_id),
                headers={'If-Match': etag} if etag else None,
            )
        except Exception as e:
            return self._write_exception(e, context)

        if response.status_code in (200, 204, 404, 410):
            self.logger.info(f"Deleted Google event {event_id}")
            return WriteResult(success=True)
        return self._write_failure(response, context)
