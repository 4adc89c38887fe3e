"""Custom exceptions for tracking scrapers.

Every failure that crosses the public ``login``/``get_vehicle_location``
boundary is a ``TrackingError`` carrying an explicit ``ErrorKind``, so callers
branch on the kind and never on message text.
"""

from enum import Enum
from typing import Any, Dict, List, Optional


class ErrorKind(str, Enum):
    """Discriminant for tracking failures."""

    SERVER_DOWN = "server_down"
    CONFIG_INVALID = "config_invalid"
    TRANSIENT = "transient"
    FATAL = "fatal"
    EXTRACTION_FAILED = "extraction_failed"


class TrackingError(Exception):
    """Base exception for all scraper errors."""

    kind: ErrorKind = ErrorKind.FATAL

    def __init__(
        self,
        message: str,
        kind: Optional[ErrorKind] = None,
        context: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message)
        if kind is not None:
            self.kind = kind
        self.context = context or {}


class ServerDownError(TrackingError):
    """Raised when the remote portal itself is unavailable."""

    kind = ErrorKind.SERVER_DOWN

    def __init__(self, context: str, detail: Optional[str] = None):
        message = f"Portal unavailable during '{context}'"
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message, context={"step": context, "detail": detail})
        self.step = context


class ConfigurationInvalidError(TrackingError):
    """Raised when the plate is not part of the account's visible fleet."""

    kind = ErrorKind.CONFIG_INVALID

    def __init__(self, plate: str, available_plates: Optional[List[str]] = None):
        self.plate = plate
        self.available_plates = list(available_plates or [])
        listed = ", ".join(self.available_plates) or "none"
        super().__init__(
            f"Vehicle {plate} is not available for this account. "
            f"Visible plates: {listed}",
            context={"plate": plate, "available_plates": self.available_plates},
        )


class TransientOperationError(TrackingError):
    """Raised when a UI step keeps failing after its local retries."""

    kind = ErrorKind.TRANSIENT


class BrowserInitializationError(TrackingError):
    """Raised when the browser engine cannot be started."""

    kind = ErrorKind.FATAL


class NotAuthenticatedError(TrackingError):
    """Raised when a lookup is attempted before a successful login."""

    kind = ErrorKind.FATAL


class UnsupportedProviderError(TrackingError):
    """Raised when no scraper is registered for a provider name."""

    kind = ErrorKind.FATAL


class ExtractionError(TrackingError):
    """Raised when popup text is present but coordinates cannot be parsed."""

    kind = ErrorKind.EXTRACTION_FAILED

    def __init__(self, message: str, raw_text: str):
        super().__init__(f"{message}. Raw text: {raw_text}", context={"raw_text": raw_text})
        self.raw_text = raw_text
