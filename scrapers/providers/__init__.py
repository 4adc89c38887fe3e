"""Provider-specific scraper implementations and their registry."""

import re
from typing import AsyncContextManager, Dict, List, Optional, Type

from scrapers.base.base_scraper import BaseScraper, create_scraper
from scrapers.base.exceptions import UnsupportedProviderError

from .detektor import DetektorScraper
from .satrack import SatrackScraper
from .simon_movilidad import SimonMovilidadScraper

PROVIDERS: Dict[str, Type[BaseScraper]] = {
    "detektor": DetektorScraper,
    "detektorgps": DetektorScraper,
    "satrack": SatrackScraper,
    "satrackgps": SatrackScraper,
    "simonmovilidad": SimonMovilidadScraper,
    "simonmovilidadgps": SimonMovilidadScraper,
    "simon": SimonMovilidadScraper,
}


def _provider_lookup_key(provider: str) -> str:
    return re.sub(r"[\s_\-\.]+", "", provider or "").lower()


def get_scraper_class(provider: str) -> Type[BaseScraper]:
    """Get the scraper class for a provider name.

    Lookup ignores case and separators, so "Simon Movilidad",
    "simon_movilidad" and "SIMON-MOVILIDAD" are the same provider.

    Raises:
        UnsupportedProviderError: If the provider is not known
    """
    scraper_class = PROVIDERS.get(_provider_lookup_key(provider))
    if scraper_class is None:
        available = ", ".join(sorted({cls.provider_key for cls in PROVIDERS.values()}))
        raise UnsupportedProviderError(
            f"Unknown provider: {provider}. Available providers: {available}",
            context={"provider": provider},
        )
    return scraper_class


def available_providers() -> List[str]:
    """Canonical provider keys, one per scraper."""
    return sorted({cls.provider_key for cls in PROVIDERS.values()})


class LocationScraperFactory:
    """Builds a scraper for a provider name with shared construction arguments."""

    def __init__(self, settings=None, user_id: Optional[str] = None, ip_address: Optional[str] = None):
        self.settings = settings
        self.user_id = user_id
        self.ip_address = ip_address

    def _arguments(self, kwargs: dict) -> dict:
        kwargs.setdefault("settings", self.settings)
        kwargs.setdefault("user_id", self.user_id)
        kwargs.setdefault("ip_address", self.ip_address)
        return kwargs

    def create(self, provider: str, **kwargs) -> BaseScraper:
        return get_scraper_class(provider)(**self._arguments(kwargs))

    def open(self, provider: str, **kwargs) -> AsyncContextManager[BaseScraper]:
        """Scraper with its browser started on entry and disposed on exit.

        Raises:
            UnsupportedProviderError: If the provider is not known
        """
        return create_scraper(get_scraper_class(provider), **self._arguments(kwargs))


__all__ = [
    "PROVIDERS",
    "DetektorScraper",
    "SatrackScraper",
    "SimonMovilidadScraper",
    "LocationScraperFactory",
    "available_providers",
    "get_scraper_class",
]
