from datetime import date, datetime

import pytz

from calsync_providers.ics import (
    build_ics, exclusive_end_from_inclusive, inclusive_end_from_exclusive, parse_ics
)
from calsync_providers.models import CalendarEvent, EventAttendee, EventStatus, Transparency

ALL_DAY_ICS = """BEGIN:VCALENDAR
VERSION:2.0
PRODID:-//Apple Inc.//iCloud//EN
BEGIN:VEVENT
UID:trip-1
DTSTART;VALUE=DATE:20240310
DTEND;VALUE=DATE:20240313
SUMMARY:Ski trip
TRANSP:TRANSPARENT
CATEGORIES:Holiday,Family
END:VEVENT
END:VCALENDAR
"""

TIMED_ICS = """BEGIN:VCALENDAR
VERSION:2.0
PRODID:-//Example//EN
BEGIN:VEVENT
UID:meeting-1
DTSTART:20240115T090000Z
DURATION:PT45M
SUMMARY:Standup
STATUS:TENTATIVE
PRIORITY:1
ORGANIZER;CN=Boss:mailto:boss@example.com
ATTENDEE;CN=Ann;ROLE=REQ-PARTICIPANT;PARTSTAT=ACCEPTED:mailto:ann@example.com
ATTENDEE;CN=Bob;ROLE=OPT-PARTICIPANT;PARTSTAT=DECLINED:mailto:bob@example.com
RRULE:FREQ=WEEKLY;BYDAY=MO
X-APPLE-TRAVEL-ADVISORY-BEHAVIOR:AUTOMATIC
END:VEVENT
BEGIN:VEVENT
UID:no-start
SUMMARY:Broken
END:VEVENT
END:VCALENDAR
"""


def test_end_conversions():
    assert inclusive_end_from_exclusive(date(2024, 3, 13)) == datetime(2024, 3, 12, tzinfo=pytz.UTC)
    assert exclusive_end_from_inclusive(datetime(2024, 3, 12, tzinfo=pytz.UTC)) == date(2024, 3, 13)
    assert exclusive_end_from_inclusive(datetime(2024, 12, 31, tzinfo=pytz.UTC)) == date(2025, 1, 1)


def test_all_day_end_becomes_inclusive():
    [event] = parse_ics(ALL_DAY_ICS)

    assert event.all_day
    assert event.start == datetime(2024, 3, 10, tzinfo=pytz.UTC)
    assert event.end == datetime(2024, 3, 12, tzinfo=pytz.UTC)
    assert event.transparency == Transparency.TRANSPARENT
    assert event.categories == ['Holiday', 'Family']


def test_timed_event_properties():
    events = parse_ics(TIMED_ICS)

    assert len(events) == 1
    event = events[0]
    assert event.uid == 'meeting-1'
    assert event.end == datetime(2024, 1, 15, 9, 45, tzinfo=pytz.UTC)
    assert event.status == EventStatus.TENTATIVE
    assert event.priority == 1
    assert event.organizer == EventAttendee(name='Boss', email='boss@example.com')
    assert [(a.email, a.role, a.status) for a in event.attendees] == [
        ('ann@example.com', 'REQ-PARTICIPANT', 'ACCEPTED'),
        ('bob@example.com', 'OPT-PARTICIPANT', 'DECLINED'),
    ]
    assert event.recurrence_rule == 'FREQ=WEEKLY;BYDAY=MO'
    assert event.custom_properties == {'X-APPLE-TRAVEL-ADVISORY-BEHAVIOR': 'AUTOMATIC'}


def test_all_day_round_trip():
    event = CalendarEvent(
        uid='vacation',
        summary='Vacation',
        start=datetime(2024, 7, 1, tzinfo=pytz.UTC),
        end=datetime(2024, 7, 5, tzinfo=pytz.UTC),
        all_day=True,
    )

    text = build_ics(event)

    assert 'DTSTART;VALUE=DATE:20240701' in text
    assert 'DTEND;VALUE=DATE:20240706' in text
    [parsed] = parse_ics(text)
    assert parsed.all_day
    assert parsed.start == event.start
    assert parsed.end == event.end


def test_single_day_all_day_round_trip():
    day = datetime(2024, 2, 29, tzinfo=pytz.UTC)
    event = CalendarEvent(uid='leap', summary='Leap day', start=day, end=day, all_day=True)

    text = build_ics(event)

    assert 'DTEND;VALUE=DATE:20240301' in text
    assert parse_ics(text)[0].end == day


def test_build_timed_event():
    event = CalendarEvent(
        uid='m-2',
        summary='Review',
        location='Room 1',
        start=pytz.timezone('Europe/Berlin').localize(datetime(2024, 1, 15, 10, 0)),
        end=datetime(2024, 1, 15, 11, 0, tzinfo=pytz.UTC),
        status=EventStatus.CONFIRMED,
        attendees=[EventAttendee(name='Ann', email='ann@example.com', role='REQ-PARTICIPANT')],
        recurrence_rule='RRULE:FREQ=DAILY;COUNT=3',
        categories=['Work'],
    )

    text = build_ics(event)

    assert 'BEGIN:VCALENDAR' in text
    assert 'CALSCALE:GREGORIAN' in text
    assert 'DTSTART:20240115T090000Z' in text
    assert 'DTEND:20240115T110000Z' in text
    assert 'STATUS:CONFIRMED' in text
    [parsed] = parse_ics(text)
    assert parsed.location == 'Room 1'
    assert parsed.attendees[0].email == 'ann@example.com'
    assert parsed.recurrence_rule == 'FREQ=DAILY;COUNT=3'
    assert parsed.categories == ['Work']
