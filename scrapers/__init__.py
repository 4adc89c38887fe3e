"""
GPS tracking scrapers package.

Drives GPS provider web portals with a real browser to read the current
location of a vehicle: login, locate the plate, extract the telemetry popup.
"""

from scrapers.base import BaseScraper, create_scraper
from scrapers.providers import (
    DetektorScraper,
    LocationScraperFactory,
    SatrackScraper,
    SimonMovilidadScraper,
    get_scraper_class,
)

__all__ = [
    "BaseScraper",
    "create_scraper",
    "DetektorScraper",
    "SatrackScraper",
    "SimonMovilidadScraper",
    "LocationScraperFactory",
    "get_scraper_class",
]
