import calsync_providers
from calsync_providers import CalendarAuthEngine, CalendarEvent, GoogleCalendarProvider, ProviderFactory, Settings
from calsync_providers.auth import CalendarAuthEngine as EngineImpl
from calsync_providers.config import Settings as SettingsImpl
from calsync_providers.models import CalendarEvent as EventImpl
from calsync_providers.providers import GoogleCalendarProvider as GoogleImpl, ProviderFactory as FactoryImpl


def test_public_names_resolve():
    missing = [name for name in calsync_providers.__all__ if not hasattr(calsync_providers, name)]

    assert missing == []


def test_reexports_are_the_implementations():
    assert CalendarAuthEngine is EngineImpl
    assert Settings is SettingsImpl
    assert CalendarEvent is EventImpl
    assert GoogleCalendarProvider is GoogleImpl
    assert ProviderFactory is FactoryImpl
