"""Microsoft Outlook provider over the Graph v1.0 REST API."""

import asyncio
from datetime import date, datetime
from typing import Any, Dict, List, Optional, Tuple
from urllib.parse import quote

from dateutil.parser import isoparse
import pytz

from ..ics import exclusive_end_from_inclusive, inclusive_end_from_exclusive
from ..models import (
    CalendarEvent, CalendarListEntry, DateRange, EventAttendee, EventStatus, Transparency, WriteResult
)
from .base import AuthenticationError
from .rest import NOT_AUTHENTICATED, TokenRestProvider

GRAPH_PAGE_SIZE = 100
GRAPH_MAX_EVENTS_PER_REQUEST = 999

OUTLOOK_COLORS = {
    'lightBlue': '#0078D4',
    'lightGreen': '#107C10',
    'lightOrange': '#FF8C00',
    'lightGray': '#737373',
    'lightYellow': '#FFC000',
    'lightTeal': '#008272',
    'lightPink': '#E3008C',
    'lightBrown': '#8E562E',
    'lightRed': '#E81123',
}

TRANSPARENCY_FROM_SHOW_AS = {
    'free': Transparency.TRANSPARENT,
    'tentative': Transparency.OPAQUE,
    'busy': Transparency.OPAQUE,
    'oof': Transparency.OPAQUE,
    'workingElsewhere': Transparency.OPAQUE,
}

PRIORITY_FROM_IMPORTANCE = {'high': 1, 'normal': 5, 'low': 9}

ROLE_FROM_ATTENDEE_TYPE = {
    'required': 'REQ-PARTICIPANT',
    'optional': 'OPT-PARTICIPANT',
    'resource': 'NON-PARTICIPANT',
}
ATTENDEE_TYPE_FROM_ROLE = {value: key for key, value in ROLE_FROM_ATTENDEE_TYPE.items()}

STATUS_FROM_RESPONSE = {
    'accepted': 'ACCEPTED',
    'organizer': 'ACCEPTED',
    'declined': 'DECLINED',
    'tentativelyAccepted': 'TENTATIVE',
    'none': 'NEEDS-ACTION',
    'notResponded': 'NEEDS-ACTION',
}


def importance_for_priority(priority: Optional[int]) -> str:
    if priority is not None and 1 <= priority <= 4:
        return 'high'
    if priority is not None and 6 <= priority <= 9:
        return 'low'
    return 'normal'


def format_graph_filter_datetime(value: datetime) -> str:
    return value.astimezone(pytz.UTC).strftime('%Y-%m-%dT%H:%M:%SZ')


def to_graph_datetime(value: datetime, all_day: bool, is_end: bool = False) -> Dict[str, str]:
    """Graph dateTimeTimeZone in UTC; all-day ends become exclusive."""
    if all_day:
        day = exclusive_end_from_inclusive(value) if is_end else value.date()
        return {'dateTime': f"{day.isoformat()}T00:00:00.0000000", 'timeZone': 'UTC'}
    return {'dateTime': value.astimezone(pytz.UTC).strftime('%Y-%m-%dT%H:%M:%S.%f0'), 'timeZone': 'UTC'}


def parse_graph_datetime(value: Dict[str, str], all_day: bool):
    """Graph dateTimeTimeZone -> date (all-day) or aware datetime.

    Naive values are UTC because every request carries the UTC Prefer header.
    """
    text = value['dateTime']
    if all_day:
        return date.fromisoformat(text.split('T')[0])
    parsed = isoparse(text)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=pytz.UTC)
    return parsed


class OutlookCalendarProvider(TokenRestProvider):
    """Outlook / Microsoft 365 calendar provider."""

    items_key = 'value'

    @property
    def api_base(self) -> str:
        return self.settings.graph_api_base.rstrip('/')

    def _tenant_id(self) -> Optional[str]:
        return getattr(self.source, 'tenant_id', None) or self.settings.outlook_tenant_id

    def _default_headers(self) -> Dict[str, str]:
        return {'Prefer': 'outlook.timezone="UTC"'}

    def _next_page(self, url, params, payload) -> Optional[Tuple[str, Optional[Dict[str, Any]]]]:
        next_link = payload.get('@odata.nextLink')
        if not next_link:
            return None
        # nextLink already carries every query parameter
        return next_link, None

    def _event_url(self, event_id: str) -> str:
        return f"{self.api_base}/me/events/{quote(event_id, safe='')}"

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def list_calendars(self) -> List[CalendarListEntry]:
        if not await self.connect():
            raise AuthenticationError("Not authenticated with Microsoft")

        try:
            items = await self._collect_pages(
                f"{self.api_base}/me/calendars", {'$top': str(GRAPH_PAGE_SIZE)}, "List calendars"
            )
        except Exception as e:
            raise self.handle_error(e, "List calendars") from e

        return [
            CalendarListEntry(
                id=item['id'],
                name=item.get('name') or item['id'],
                color=item.get('hexColor') or OUTLOOK_COLORS.get(item.get('color')),
                primary=bool(item.get('isDefaultCalendar', False)),
                can_write=bool(item.get('canEdit', False)),
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
        # calendarView always expands recurring series
        params = {
            'startDateTime': format_graph_filter_datetime(date_range.start),
            'endDateTime': format_graph_filter_datetime(date_range.end),
            '$top': str(min(max_results or GRAPH_MAX_EVENTS_PER_REQUEST, GRAPH_MAX_EVENTS_PER_REQUEST)),
            '$orderby': 'start/dateTime',
        }
        url = f"{self.api_base}/me/calendars/{quote(calendar_id, safe='')}/calendarView"
        items = await self._collect_pages(
            url, params, f"Fetch events for {calendar_id}", cancel_event=cancel_event, limit=max_results
        )

        events = []
        for item in items:
            if item.get('isCancelled'):
                continue
            try:
                events.append(self._convert_event(item, calendar_id, can_write=self.can_write_to_calendar(calendar_id)))
            except (KeyError, ValueError, TypeError) as e:
                self.logger.warning(f"Skipping unreadable Outlook event {item.get('id')}: {e}")
        return events

    def _convert_event(self, item: Dict[str, Any], calendar_id: str, can_write: bool = False) -> CalendarEvent:
        """Map a Graph event resource to a CalendarEvent."""
        all_day = bool(item.get('isAllDay'))
        start = parse_graph_datetime(item['start'], all_day)
        end = parse_graph_datetime(item['end'], all_day) if item.get('end') else None

        if all_day:
            start = datetime(start.year, start.month, start.day, tzinfo=pytz.UTC)
            end = max(inclusive_end_from_exclusive(end), start) if end else start

        if item.get('isCancelled'):
            status = EventStatus.CANCELLED
        elif (item.get('responseStatus') or {}).get('response') == 'tentativelyAccepted':
            status = EventStatus.TENTATIVE
        else:
            status = EventStatus.CONFIRMED

        body = item.get('body') or {}
        organizer = (item.get('organizer') or {}).get('emailAddress')
        custom_properties = {
            'X-OUTLOOK-CALENDAR-ID': calendar_id,
            'X-OUTLOOK-EVENT-ID': item['id'],
        }
        if item.get('webLink'):
            custom_properties['X-OUTLOOK-WEB-LINK'] = item['webLink']
        if item.get('sensitivity'):
            custom_properties['X-OUTLOOK-SENSITIVITY'] = item['sensitivity']

        return CalendarEvent(
            uid=item.get('iCalUId') or item['id'],
            summary=item.get('subject') or "(No subject)",
            description=item.get('bodyPreview') or body.get('content'),
            location=(item.get('location') or {}).get('displayName') or None,
            start=start,
            end=end,
            all_day=all_day,
            status=status,
            transparency=TRANSPARENCY_FROM_SHOW_AS.get(item.get('showAs'), Transparency.OPAQUE),
            priority=PRIORITY_FROM_IMPORTANCE.get(item.get('importance'), 5),
            organizer=EventAttendee(name=organizer.get('name'), email=organizer.get('address')) if organizer else None,
            attendees=[
                EventAttendee(
                    name=(attendee.get('emailAddress') or {}).get('name'),
                    email=(attendee.get('emailAddress') or {}).get('address'),
                    role=ROLE_FROM_ATTENDEE_TYPE.get(attendee.get('type')),
                    status=STATUS_FROM_RESPONSE.get((attendee.get('status') or {}).get('response')),
                )
                for attendee in item.get('attendees') or []
            ],
            categories=list(item.get('categories') or []),
            created=isoparse(item['createdDateTime']) if item.get('createdDateTime') else None,
            last_modified=isoparse(item['lastModifiedDateTime']) if item.get('lastModifiedDateTime') else None,
            custom_properties=custom_properties,
            provider_event_id=item['id'],
            provider_calendar_id=calendar_id,
            etag=item.get('changeKey'),
            can_edit=can_write and not item.get('isCancelled', False),
            recurring_event_id=item.get('seriesMasterId'),
            is_recurring_instance=item.get('type') in ('occurrence', 'exception'),
        )

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def _event_body(self, event: CalendarEvent, fields: Optional[set] = None) -> Dict[str, Any]:
        """Graph resource for ``event``, limited to ``fields`` when given."""
        def wanted(*names: str) -> bool:
            return fields is None or any(name in fields for name in names)

        body: Dict[str, Any] = {}
        if wanted('summary'):
            body['subject'] = event.summary
        if wanted('description') and (fields is not None or event.description):
            body['body'] = {'contentType': 'text', 'content': event.description or ''}
        if wanted('location') and (fields is not None or event.location):
            body['location'] = {'displayName': event.location or ''}
        # A partial body only carries the times that were set; all_day shapes them
        if wanted('start'):
            body['start'] = to_graph_datetime(event.start, event.all_day)
        end = event.end or event.start if fields is None else event.end
        if wanted('end') and end is not None:
            body['end'] = to_graph_datetime(end, event.all_day, is_end=True)
        if wanted('all_day'):
            body['isAllDay'] = event.all_day
        if event.transparency and wanted('transparency'):
            body['showAs'] = 'free' if event.transparency == Transparency.TRANSPARENT else 'busy'
        if event.priority is not None and wanted('priority'):
            body['importance'] = importance_for_priority(event.priority)
        if event.categories and wanted('categories'):
            body['categories'] = list(event.categories)
        if fields is not None and 'attendees' in fields:
            body['attendees'] = [
                {
                    'emailAddress': {'address': attendee.email, 'name': attendee.name},
                    'type': ATTENDEE_TYPE_FROM_ROLE.get(attendee.role, 'required'),
                }
                for attendee in event.attendees if attendee.email
            ]
        return body

    @staticmethod
    def _if_match(change_key: Optional[str]) -> Optional[Dict[str, str]]:
        return {'If-Match': f'W/"{change_key}"'} if change_key else None

    def _forbidden_message(self) -> str:
        return (
            "Permission denied. Please ensure you have write access to this calendar. "
            "You may need to reconnect your Outlook Calendar with write permissions."
        )

    async def create_event(self, event: CalendarEvent, calendar_id: Optional[str] = None) -> WriteResult:
        if not await self.connect():
            return WriteResult(success=False, error=NOT_AUTHENTICATED)

        configured = self.configured_calendar_ids()
        target = calendar_id or event.provider_calendar_id or (configured[0] if configured else None)
        if not target:
            return WriteResult(success=False, error="No calendar ID specified")

        context = "Create event"
        url = f"{self.api_base}/me/calendars/{quote(target, safe='')}/events"
        try:
            response = await self._request('POST', url, json=self._event_body(event))
            if not response.is_success:
                return self._write_failure(response, context)
            created = self._convert_event(self._json(response, context), target, can_write=True)
        except Exception as e:
            return self._write_exception(e, context)

        self.logger.info(f"Created Outlook event {created.provider_event_id}")
        return WriteResult(success=True, event=created)

    async def update_event(
        self,
        event: CalendarEvent,
        original_event: Optional[CalendarEvent] = None,
        calendar_id: Optional[str] = None,
    ) -> WriteResult:
        if not await self.connect():
            return WriteResult(success=False, error=NOT_AUTHENTICATED)

        event_id = event.provider_event_id or event.custom_properties.get('X-OUTLOOK-EVENT-ID')
        if not event_id:
            return WriteResult(success=False, error="Event ID not found")
        target = (
            calendar_id
            or event.provider_calendar_id
            or event.custom_properties.get('X-OUTLOOK-CALENDAR-ID')
            or ''
        )

        change_key = (original_event.etag if original_event else None) or event.etag
        context = "Update event"
        try:
            response = await self._request(
                'PATCH',
                self._event_url(event_id),
                json=self._event_body(event, fields=event.explicit_fields()),
                headers=self._if_match(change_key),
            )
            if not response.is_success:
                return self._write_failure(response, context)
            updated = self._convert_event(self._json(response, context), target, can_write=True)
        except Exception as e:
            return self._write_exception(e, context)

        self.logger.info(f"Updated Outlook event {event_id}")
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
            response = await self._request('DELETE', self._event_url(event_id), headers=self._if_match(etag))
        except Exception as e:
            return self._write_exception(e, context)

        if response.status_code in (200, 204, 404):
            self.logger.info(f"Deleted Outlook event {event_id}")
            return WriteResult(success=True)
        return self._write_failure(response, context)
