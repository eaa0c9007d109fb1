"""Tests for data models."""

import pytest
from datetime import date, datetime, timedelta

import pytz
from pydantic import ValidationError

from calsync_providers.models import (
    AppleCaldavSource, CalendarEvent, DateRange, GoogleCalendarSource, OAuthTokenData,
    OutlookCalendarSource, ProviderType, UrlIcsSource, has_valid_tokens, is_oauth_source, parse_sources
)

from conftest import make_tokens


class TestCalendarEvent:
    """Tests for CalendarEvent model."""

    def test_create_basic_event(self):
        """Test creating a basic calendar event."""
        start = datetime.now(pytz.UTC)
        end = start + timedelta(hours=1)

        event = CalendarEvent(uid="uid-123", summary="Test Event", start=start, end=end)

        assert event.uid == "uid-123"
        assert event.summary == "Test Event"
        assert event.start == start
        assert event.end == end
        assert not event.all_day
        assert event.attendees == []
        assert not event.can_edit

    def test_timezone_validation(self):
        """Naive datetimes are treated as UTC."""
        event = CalendarEvent(
            summary="Test Event",
            start=datetime(2023, 12, 1, 10, 0, 0),
            end=datetime(2023, 12, 1, 11, 0, 0),
        )

        assert event.start.tzinfo == pytz.UTC
        assert event.end.tzinfo == pytz.UTC

    def test_dates_become_midnight_utc(self):
        event = CalendarEvent(summary="Holiday", start=date(2024, 3, 1), end=date(2024, 3, 3), all_day=True)

        assert event.start == datetime(2024, 3, 1, tzinfo=pytz.UTC)
        assert event.end == datetime(2024, 3, 3, tzinfo=pytz.UTC)

    def test_end_before_start_rejected(self):
        start = datetime.now(pytz.UTC)

        with pytest.raises(ValidationError):
            CalendarEvent(summary="Backwards", start=start, end=start - timedelta(hours=1))

    def test_single_day_all_day_event_end_equals_start(self):
        day = datetime(2024, 3, 1, tzinfo=pytz.UTC)

        event = CalendarEvent(summary="One day", start=day, end=day, all_day=True)

        assert event.end == event.start

    def test_explicit_fields_tracks_set_fields_only(self):
        event = CalendarEvent(start=datetime(2024, 1, 1, tzinfo=pytz.UTC), summary="Renamed")

        assert event.explicit_fields() == {'start', 'summary'}

    def test_priority_range(self):
        with pytest.raises(ValidationError):
            CalendarEvent(summary="x", start=datetime(2024, 1, 1, tzinfo=pytz.UTC), priority=10)


class TestOAuthTokenData:
    """Tests for token expiry."""

    def test_not_expired_outside_buffer(self):
        tokens = make_tokens(expires_in=3600)

        assert not tokens.is_expired(buffer_seconds=300)

    def test_expired_inside_buffer(self):
        tokens = make_tokens(expires_in=120)

        assert tokens.is_expired(buffer_seconds=300)
        assert not tokens.is_expired(buffer_seconds=0)

    def test_explicit_now(self):
        tokens = OAuthTokenData(access_token="a", expires_at=datetime(2024, 1, 1, 12, tzinfo=pytz.UTC))

        assert not tokens.is_expired(now=datetime(2024, 1, 1, 11, 54, tzinfo=pytz.UTC))
        assert tokens.is_expired(now=datetime(2024, 1, 1, 11, 56, tzinfo=pytz.UTC))


class TestDateRange:
    """Tests for DateRange helpers."""

    def test_default_range(self):
        date_range = DateRange.default_range()

        assert date_range.end - date_range.start == timedelta(days=120)

    def test_around(self):
        center = datetime(2024, 6, 15, tzinfo=pytz.UTC)

        date_range = DateRange.around(center, days_before=1, days_after=2)

        assert date_range.start == datetime(2024, 6, 14, tzinfo=pytz.UTC)
        assert date_range.end == datetime(2024, 6, 17, tzinfo=pytz.UTC)


class TestSources:
    """Tests for calendar source configuration."""

    def test_parse_sources_discriminates_on_type(self):
        sources = parse_sources([
            {'id': 'g', 'name': 'Work', 'type': 'google', 'calendar_ids': ['primary']},
            {'id': 'o', 'name': 'Office', 'type': 'outlook', 'tenant_id': 'contoso'},
            {'id': 'a', 'name': 'Home', 'type': 'apple-caldav', 'username': 'me@icloud.com'},
            {'id': 'u', 'name': 'Feed', 'type': 'url-ics', 'url': 'https://example.com/feed.ics'},
        ])

        assert isinstance(sources[0], GoogleCalendarSource)
        assert isinstance(sources[1], OutlookCalendarSource)
        assert sources[1].tenant_id == 'contoso'
        assert isinstance(sources[2], AppleCaldavSource)
        assert sources[2].server_url == "https://caldav.icloud.com/"
        assert isinstance(sources[3], UrlIcsSource)

    def test_unknown_type_rejected(self):
        with pytest.raises(ValidationError):
            parse_sources([{'id': 'x', 'name': 'X', 'type': 'exchange'}])

    def test_oauth_helpers(self):
        google = GoogleCalendarSource(id='g', name='G', auth=make_tokens())
        expired = OutlookCalendarSource(id='o', name='O', auth=make_tokens(expires_in=10))
        apple = AppleCaldavSource(id='a', name='A')

        assert is_oauth_source(google)
        assert not is_oauth_source(apple)
        assert has_valid_tokens(google)
        assert not has_valid_tokens(expired)
        assert not has_valid_tokens(apple)
        assert ProviderType(google.type) == ProviderType.GOOGLE
