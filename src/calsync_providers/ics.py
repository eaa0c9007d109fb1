"""iCalendar parsing and generation for CalDAV resources."""

import logging
from datetime import date, datetime, timedelta
from typing import Any, List, Optional

import pytz
from icalendar import Calendar, Event as ICalEvent, vCalAddress, vRecur, vText

from .models import CalendarEvent, EventAttendee, EventStatus, Transparency

logger = logging.getLogger(__name__)

PRODID = "-//CalSync Providers//CalSync Providers 2.1//EN"


def inclusive_end_from_exclusive(exclusive_end: date) -> datetime:
    """Wire all-day end (day after the last day) -> inclusive model end."""
    last_day = exclusive_end - timedelta(days=1)
    return datetime(last_day.year, last_day.month, last_day.day, tzinfo=pytz.UTC)


def exclusive_end_from_inclusive(inclusive_end: datetime) -> date:
    """Inclusive model end -> wire all-day end (day after the last day)."""
    return inclusive_end.date() + timedelta(days=1)


def _strip_mailto(value: Any) -> Optional[str]:
    text = str(value or '').strip()
    if text.lower().startswith('mailto:'):
        text = text[7:]
    return text or None


def _address(prop: Any) -> EventAttendee:
    params = getattr(prop, 'params', {}) or {}
    return EventAttendee(
        name=params.get('CN'),
        email=_strip_mailto(prop),
        role=params.get('ROLE'),
        status=params.get('PARTSTAT'),
    )


def _as_list(value: Any) -> list:
    if value is None:
        return []
    return value if isinstance(value, list) else [value]


def _categories(value: Any) -> List[str]:
    result = []
    for prop in _as_list(value):
        cats = getattr(prop, 'cats', None)
        if cats is None:
            cats = str(prop).split(',')
        result.extend(str(c).strip() for c in cats if str(c).strip())
    return result


def _enum_or_none(enum_cls, value: Any):
    if value is None:
        return None
    try:
        return enum_cls(str(value).upper())
    except ValueError:
        return None


def _timestamp(vevent, name: str) -> Optional[datetime]:
    prop = vevent.get(name)
    if prop is None:
        return None
    value = prop.dt
    if isinstance(value, datetime):
        return value
    return datetime(value.year, value.month, value.day, tzinfo=pytz.UTC)


def event_from_vevent(vevent) -> Optional[CalendarEvent]:
    """Map one VEVENT to a CalendarEvent. Returns None without DTSTART."""
    dtstart = vevent.get('dtstart')
    if dtstart is None:
        return None

    start_value = dtstart.dt
    all_day = not isinstance(start_value, datetime)
    dtend = vevent.get('dtend')
    duration = vevent.get('duration')

    if all_day:
        start = datetime(start_value.year, start_value.month, start_value.day, tzinfo=pytz.UTC)
        if dtend is not None:
            end = inclusive_end_from_exclusive(dtend.dt if not isinstance(dtend.dt, datetime) else dtend.dt.date())
        elif duration is not None:
            end = inclusive_end_from_exclusive(start_value + duration.dt)
        else:
            end = start
        # Zero-length all-day ranges collapse to one day
        if end < start:
            end = start
    else:
        start = start_value
        if dtend is not None:
            end = dtend.dt
        elif duration is not None:
            end = start_value + duration.dt
        else:
            end = None

    organizer = vevent.get('organizer')
    priority = vevent.get('priority')
    rrule = vevent.get('rrule')

    return CalendarEvent(
        uid=str(vevent.get('uid', '')),
        summary=str(vevent.get('summary', '')),
        description=str(vevent['description']) if vevent.get('description') is not None else None,
        location=str(vevent['location']) if vevent.get('location') is not None else None,
        start=start,
        end=end,
        all_day=all_day,
        status=_enum_or_none(EventStatus, vevent.get('status')),
        transparency=_enum_or_none(Transparency, vevent.get('transp')),
        priority=int(priority) if priority is not None else None,
        organizer=_address(organizer) if organizer is not None else None,
        attendees=[_address(a) for a in _as_list(vevent.get('attendee'))],
        categories=_categories(vevent.get('categories')),
        recurrence_rule=rrule.to_ical().decode('utf-8') if rrule is not None else None,
        created=_timestamp(vevent, 'created'),
        last_modified=_timestamp(vevent, 'last-modified'),
        custom_properties={
            key: str(value) for key, value in vevent.items()
            if key.upper().startswith('X-') and not isinstance(value, list)
        },
    )


def parse_ics(text: str) -> List[CalendarEvent]:
    """Parse every VEVENT of a VCALENDAR document.

    Raises:
        ValueError: If the document is not valid iCalendar
    """
    calendar = Calendar.from_ical(text)
    events = []
    for component in calendar.walk('VEVENT'):
        event = event_from_vevent(component)
        if event is None:
            logger.debug("Skipping VEVENT without DTSTART")
            continue
        events.append(event)
    return events


def _cal_address(person: EventAttendee, with_role: bool = True) -> vCalAddress:
    address = vCalAddress(f"mailto:{person.email}")
    if person.name:
        address.params['CN'] = vText(person.name)
    if with_role and person.role:
        address.params['ROLE'] = vText(person.role)
    if with_role and person.status:
        address.params['PARTSTAT'] = vText(person.status)
    return address


def build_ics(event: CalendarEvent, prodid: str = PRODID) -> str:
    """Serialize one event as a VCALENDAR document (all-day ends exclusive)."""
    cal = Calendar()
    cal.add('prodid', prodid)
    cal.add('version', '2.0')
    cal.add('calscale', 'GREGORIAN')

    vevent = ICalEvent()
    vevent.add('uid', event.uid)
    vevent.add('dtstamp', datetime.now(pytz.UTC))

    if event.all_day:
        vevent.add('dtstart', event.start.date())
        last = event.end or event.start
        vevent.add('dtend', exclusive_end_from_inclusive(last))
    else:
        vevent.add('dtstart', event.start.astimezone(pytz.UTC))
        if event.end is not None:
            vevent.add('dtend', event.end.astimezone(pytz.UTC))

    if event.summary:
        vevent.add('summary', event.summary)
    if event.description:
        vevent.add('description', event.description)
    if event.location:
        vevent.add('location', event.location)
    if event.status:
        vevent.add('status', event.status.value)
    if event.transparency:
        vevent.add('transp', event.transparency.value)
    if event.priority is not None:
        vevent.add('priority', event.priority)
    if event.recurrence_rule:
        rule = event.recurrence_rule
        if rule.upper().startswith('RRULE:'):
            rule = rule[6:]
        vevent.add('rrule', vRecur.from_ical(rule))
    if event.categories:
        vevent.add('categories', event.categories)
    if event.organizer and event.organizer.email:
        vevent.add('organizer', _cal_address(event.organizer, with_role=False))
    for attendee in event.attendees:
        if attendee.email:
            vevent.add('attendee', _cal_address(attendee))
    if event.created:
        vevent.add('created', event.created.astimezone(pytz.UTC))
    if event.last_modified:
        vevent.add('last-modified', event.last_modified.astimezone(pytz.UTC))
    for key, value in event.custom_properties.items():
        vevent.add(key, value)

    cal.add_component(vevent)
    return cal.to_ical().decode('utf-8')
