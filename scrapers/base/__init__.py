"""Base scraper components."""

from scrapers.base.adaptive_wait import AdaptiveWait, TimingProfile, TimingProfileStore, WaitResult
from scrapers.base.base_scraper import BaseScraper, create_scraper
from scrapers.base.browser_session import BrowserSession
from scrapers.base.extractor import LocationRecordExtractor, derive_heading, parse_timestamp
from scrapers.base.interactions import Interactions
from scrapers.base.overlays import OverlayHandler, PopupMonitor
from scrapers.base.exceptions import (
    ErrorKind,
    TrackingError,
    ServerDownError,
    ConfigurationInvalidError,
    TransientOperationError,
    BrowserInitializationError,
    NotAuthenticatedError,
    UnsupportedProviderError,
    ExtractionError,
)

__all__ = [
    "AdaptiveWait",
    "TimingProfile",
    "TimingProfileStore",
    "WaitResult",
    "BaseScraper",
    "create_scraper",
    "BrowserSession",
    "LocationRecordExtractor",
    "derive_heading",
    "parse_timestamp",
    "Interactions",
    "OverlayHandler",
    "PopupMonitor",
    "ErrorKind",
    "TrackingError",
    "ServerDownError",
    "ConfigurationInvalidError",
    "TransientOperationError",
    "BrowserInitializationError",
    "NotAuthenticatedError",
    "UnsupportedProviderError",
    "ExtractionError",
]
