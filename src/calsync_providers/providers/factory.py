"""Provider construction and per-source provider cache."""

import asyncio
import logging
from typing import Any, Dict, List, Optional

import httpx

from ..auth import CalendarAuthEngine
from ..config import Settings
from ..models import ProviderType
from .apple_caldav import AppleCaldavProvider
from .base import BaseCalendarProvider
from .google import GoogleCalendarProvider
from .outlook import OutlookCalendarProvider

logger = logging.getLogger(__name__)

DISPLAY_NAMES = {
    ProviderType.GOOGLE: "Google Calendar",
    ProviderType.OUTLOOK: "Outlook / Microsoft 365",
    ProviderType.APPLE_CALDAV: "Apple iCloud Calendar",
    ProviderType.URL_ICS: "ICS/iCal URL",
}


class ProviderFactory:
    """Builds the provider matching a source's type."""

    def __init__(
        self,
        auth_engine: CalendarAuthEngine,
        settings: Settings,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        self.auth_engine = auth_engine
        self.settings = settings
        self.http_client = http_client

    def create_provider(self, source: Any) -> BaseCalendarProvider:
        """Create a provider for ``source``.

        Raises:
            ValueError: For url-ics sources and unknown types
        """
        try:
            provider_type = ProviderType(source.type)
        except ValueError:
            raise ValueError(f"Unknown calendar provider type: {source.type}")

        if provider_type == ProviderType.GOOGLE:
            return GoogleCalendarProvider(source, self.settings, self.auth_engine, http_client=self.http_client)
        if provider_type == ProviderType.OUTLOOK:
            return OutlookCalendarProvider(source, self.settings, self.auth_engine, http_client=self.http_client)
        if provider_type == ProviderType.APPLE_CALDAV:
            return AppleCaldavProvider(source, self.settings)
        raise ValueError("URL ICS sources are fetched directly, not through a provider")

    @staticmethod
    def requires_oauth(provider_type) -> bool:
        return ProviderType(provider_type) in (ProviderType.GOOGLE, ProviderType.OUTLOOK)

    @staticmethod
    def requires_credentials(provider_type) -> bool:
        return ProviderType(provider_type) in (ProviderType.APPLE_CALDAV, ProviderType.URL_ICS)

    @staticmethod
    def display_name(provider_type) -> str:
        try:
            return DISPLAY_NAMES[ProviderType(provider_type)]
        except ValueError:
            return "Unknown"


class CalendarSourceManager:
    """Keeps one provider per source id."""

    def __init__(
        self,
        auth_engine: CalendarAuthEngine,
        settings: Settings,
        factory: Optional[ProviderFactory] = None,
    ):
        self.auth_engine = auth_engine
        self.settings = settings
        self.factory = factory or ProviderFactory(auth_engine, settings)
        self.logger = logger.getChild('source_manager')
        self._providers: Dict[str, BaseCalendarProvider] = {}

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.disconnect_all()

    def get_provider(self, source: Any) -> BaseCalendarProvider:
        """Cached provider for ``source``, refreshed with its current config."""
        provider = self._providers.get(source.id)
        if provider is not None:
            provider.update_config(source)
            return provider

        provider = self.factory.create_provider(source)
        self._providers[source.id] = provider
        self.logger.debug(f"Created {provider.provider_type.value} provider for {source.id}")
        return provider

    async def remove_provider(self, source_id: str) -> None:
        provider = self._providers.pop(source_id, None)
        if provider is not None:
            await provider.disconnect()
            await provider.close()

    def get_all_providers(self) -> List[BaseCalendarProvider]:
        return list(self._providers.values())

    async def _shutdown(self, source_id: str, provider: BaseCalendarProvider) -> None:
        try:
            await provider.disconnect()
            await provider.close()
        except Exception as e:
            self.logger.error(f"Error disconnecting provider {source_id}: {e}")

    async def disconnect_all(self) -> None:
        """Disconnect and dispose every provider. Errors are logged only."""
        providers, self._providers = self._providers, {}
        await asyncio.gather(*(self._shutdown(sid, p) for sid, p in providers.items()))
