from datetime import datetime

import httpx
import pytest
import pytz

from calsync_providers.models import CalendarEvent, DateRange, EventStatus, OutlookCalendarSource, Transparency
from calsync_providers.providers import OutlookCalendarProvider
from calsync_providers.providers.outlook import importance_for_priority, to_graph_datetime

from conftest import make_tokens

API = '/v1.0/me'
GRAPH = 'https://graph.microsoft.com/v1.0/me'
MARCH = DateRange(start=datetime(2024, 3, 1, tzinfo=pytz.UTC), end=datetime(2024, 4, 1, tzinfo=pytz.UTC))


def graph_event(event_id='o1', **extra):
    item = {
        'id': event_id,
        'iCalUId': f"ical-{event_id}",
        'subject': 'Sync',
        'changeKey': 'ck1',
        'isAllDay': False,
        'isCancelled': False,
        'start': {'dateTime': '2024-03-12T14:00:00.0000000', 'timeZone': 'UTC'},
        'end': {'dateTime': '2024-03-12T15:00:00.0000000', 'timeZone': 'UTC'},
        'showAs': 'busy',
        'importance': 'normal',
    }
    item.update(extra)
    return item


def make_provider(settings, auth_engine, http_client, **overrides):
    values = dict(id='o1', name='Office', calendar_ids=['cal1'], auth=make_tokens(scope='Calendars.ReadWrite'))
    values.update(overrides)
    return OutlookCalendarProvider(OutlookCalendarSource(**values), settings, auth_engine, http_client=http_client)


def test_graph_datetime_formats():
    day = datetime(2024, 3, 6, tzinfo=pytz.UTC)

    assert to_graph_datetime(day, all_day=True) == {'dateTime': '2024-03-06T00:00:00.0000000', 'timeZone': 'UTC'}
    assert to_graph_datetime(day, all_day=True, is_end=True)['dateTime'] == '2024-03-07T00:00:00.0000000'
    assert to_graph_datetime(datetime(2024, 3, 6, 8, 30, tzinfo=pytz.UTC), all_day=False)['dateTime'] == \
        '2024-03-06T08:30:00.0000000'


@pytest.mark.parametrize("priority, importance", [(1, 'high'), (4, 'high'), (5, 'normal'), (None, 'normal'), (9, 'low')])
def test_importance_for_priority(priority, importance):
    assert importance_for_priority(priority) == importance


@pytest.mark.asyncio
async def test_list_calendars(settings, auth_engine, http_client, fake_api):
    fake_api.on('GET', f"{API}/calendars", httpx.Response(200, json={'value': [
        {'id': 'cal1', 'name': 'Calendar', 'isDefaultCalendar': True, 'canEdit': True, 'color': 'lightBlue'},
        {'id': 'cal2', 'name': 'Holidays', 'canEdit': False, 'hexColor': '#123456', 'color': 'auto'},
    ]}))
    provider = make_provider(settings, auth_engine, http_client)

    calendars = await provider.list_calendars()

    assert [(c.id, c.primary, c.can_write, c.color) for c in calendars] == [
        ('cal1', True, True, '#0078D4'),
        ('cal2', False, False, '#123456'),
    ]
    assert fake_api.requests[0].url.params['$top'] == '100'


@pytest.mark.asyncio
async def test_calendar_view_follows_next_link(settings, auth_engine, http_client, fake_api):
    def calendar_view(request):
        if '$skip' in request.url.params:
            return httpx.Response(200, json={'value': [
                graph_event('holiday', isAllDay=True,
                            start={'dateTime': '2024-03-04T00:00:00.0000000', 'timeZone': 'UTC'},
                            end={'dateTime': '2024-03-07T00:00:00.0000000', 'timeZone': 'UTC'}),
            ]})
        return httpx.Response(200, json={
            'value': [
                graph_event('meeting', showAs='free', importance='high',
                            responseStatus={'response': 'tentativelyAccepted'},
                            attendees=[{'type': 'optional', 'status': {'response': 'declined'},
                                        'emailAddress': {'name': 'Bob', 'address': 'bob@example.com'}}]),
                graph_event('cancelled', isCancelled=True),
            ],
            '@odata.nextLink': f"{GRAPH}/calendars/cal1/calendarView?$skip=2",
        })

    fake_api.on('GET', f"{API}/calendars/cal1/calendarView", calendar_view)
    provider = make_provider(settings, auth_engine, http_client)

    events = await provider.get_events(MARCH)

    assert [e.provider_event_id for e in events] == ['meeting', 'holiday']
    meeting, holiday = events
    assert meeting.start == datetime(2024, 3, 12, 14, tzinfo=pytz.UTC)
    assert meeting.etag == 'ck1'
    assert meeting.status == EventStatus.TENTATIVE
    assert meeting.transparency == Transparency.TRANSPARENT
    assert meeting.priority == 1
    assert meeting.attendees[0].role == 'OPT-PARTICIPANT'
    assert meeting.attendees[0].status == 'DECLINED'
    assert holiday.all_day
    assert holiday.start == datetime(2024, 3, 4, tzinfo=pytz.UTC)
    assert holiday.end == datetime(2024, 3, 6, tzinfo=pytz.UTC)

    first = fake_api.requests[0]
    assert first.headers['Prefer'] == 'outlook.timezone="UTC"'
    assert first.url.params['startDateTime'] == '2024-03-01T00:00:00Z'
    assert first.url.params['$top'] == '999'
    assert first.url.params['$orderby'] == 'start/dateTime'
    assert fake_api.requests[1].headers['Prefer'] == 'outlook.timezone="UTC"'


@pytest.mark.asyncio
async def test_refresh_uses_source_tenant(settings, auth_engine, http_client, fake_api):
    fake_api.on('GET', f"{API}/calendars/cal1/calendarView", httpx.Response(200, json={'value': []}))
    provider = make_provider(settings, auth_engine, http_client, tenant_id='contoso', auth=make_tokens(expires_in=0))

    await provider.get_events(MARCH)

    assert fake_api.requests[0].url.path == '/contoso/oauth2/v2.0/token'
    assert provider.source.auth.access_token == 'issued-1'


@pytest.mark.asyncio
async def test_update_sends_weak_etag(settings, auth_engine, http_client, fake_api):
    def patch(request):
        if request.headers.get('If-Match') == 'W/"ck1"':
            return httpx.Response(200, json=graph_event(subject='Moved', changeKey='ck2'))
        return httpx.Response(412, json={'error': {'code': 'ErrorIrresolvableConflict'}})

    fake_api.on('PATCH', f"{API}/events/o1", patch)
    provider = make_provider(settings, auth_engine, http_client)
    original = CalendarEvent(summary='Sync', start=datetime(2024, 3, 12, 14, tzinfo=pytz.UTC),
                             provider_event_id='o1', provider_calendar_id='cal1', etag='ck1')
    change = original.model_copy(update={'summary': 'Moved'})

    result = await provider.update_event(change, original_event=original)
    stale = await provider.update_event(change, original_event=original.model_copy(update={'etag': 'ck0'}))

    assert result.success
    assert result.event.etag == 'ck2'
    assert result.event.summary == 'Moved'
    assert stale.conflict
    assert not stale.success


@pytest.mark.asyncio
async def test_all_day_update_sends_only_given_times(settings, auth_engine, http_client, fake_api):
    fake_api.on('PATCH', f"{API}/events/o1", httpx.Response(200, json=graph_event(subject='Renamed', isAllDay=True)))
    provider = make_provider(settings, auth_engine, http_client)
    change = CalendarEvent(
        summary='Renamed', start=datetime(2024, 3, 4, tzinfo=pytz.UTC), all_day=True, provider_event_id='o1',
    )

    result = await provider.update_event(change)

    assert result.success
    body = fake_api.body()
    assert body['subject'] == 'Renamed'
    assert body['start'] == {'dateTime': '2024-03-04T00:00:00.0000000', 'timeZone': 'UTC'}
    assert body['isAllDay'] is True
    assert 'end' not in body


@pytest.mark.asyncio
async def test_create_requires_calendar(settings, auth_engine, http_client, fake_api):
    provider = make_provider(settings, auth_engine, http_client, calendar_ids=[])
    event = CalendarEvent(summary='x', start=datetime(2024, 3, 1, tzinfo=pytz.UTC))

    result = await provider.create_event(event)

    assert not result.success
    assert result.error == "No calendar ID specified"
    assert fake_api.requests == []


@pytest.mark.asyncio
async def test_create_all_day_round_trip(settings, auth_engine, http_client, fake_api):
    def create(request):
        sent = fake_api.body()
        return httpx.Response(201, json=graph_event('created', isAllDay=True, start=sent['start'], end=sent['end']))

    fake_api.on('POST', f"{API}/calendars/cal1/events", create)
    provider = make_provider(settings, auth_engine, http_client)
    event = CalendarEvent(
        summary='Offsite',
        start=datetime(2024, 3, 4, tzinfo=pytz.UTC),
        end=datetime(2024, 3, 6, tzinfo=pytz.UTC),
        all_day=True,
        priority=9,
        categories=['Team'],
    )

    result = await provider.create_event(event)

    body = fake_api.body()
    assert body['isAllDay'] is True
    assert body['end']['dateTime'] == '2024-03-07T00:00:00.0000000'
    assert body['importance'] == 'low'
    assert body['categories'] == ['Team']
    assert result.success
    assert result.event.end == event.end
    assert result.event.provider_calendar_id == 'cal1'


@pytest.mark.asyncio
async def test_delete(settings, auth_engine, http_client, fake_api):
    fake_api.on('DELETE', f"{API}/events/gone", httpx.Response(404))
    fake_api.on('DELETE', f"{API}/events/locked", httpx.Response(403))
    provider = make_provider(settings, auth_engine, http_client)

    assert (await provider.delete_event('gone')).success
    locked = await provider.delete_event('locked', etag='ck1')

    assert not locked.success
    assert 'write access' in locked.error
    assert fake_api.requests[-1].headers['If-Match'] == 'W/"ck1"'
