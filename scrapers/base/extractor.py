"""Location record extraction from free popup text.

Popup and table text arrives as "Label : value" lines in Spanish. Each field
has its own label-anchored pattern; only latitude and longitude are
mandatory.
"""

import math
import re
from datetime import datetime, timedelta
from typing import Dict, Optional, Tuple

from models.location import LocationRecord
from scrapers.base.exceptions import ExtractionError
from utils.logging import get_logger
from utils.scraping_utils import clean_text, parse_decimal

logger = get_logger(__name__)

DEFAULT_PATTERNS: Dict[str, str] = {
    "timestamp": r"Fecha[ \t]*Gps[ \t]*:[ \t]*([^\n]+)",
    "latitude": r"Latitude?[ \t]*:[ \t]*([-+]?\d*\.?\d+)",
    "longitude": r"Longitude?[ \t]*:[ \t]*([-+]?\d*\.?\d+)",
    "speed": r"Velocidad[ \t]*:[ \t]*([^\n]*)",
    "reason": r"Motivo[ \t]*:[ \t]*([^\n]*)",
    "driver": r"Conductor[ \t]*:[ \t]*([^\n]*)",
    "georeference": r"Georeferencia[ \t]*:[ \t]*([^\n]*)",
    "in_zone": r"En[ \t]*Zona[ \t]*:[ \t]*([^\n]*)",
    "detention_time": r"Tiempo[ \t]*Detenci[oó]n[ \t]*:[ \t]*([^\n]*)",
    "distance_traveled": r"Distancia[ \t]*Recorrida[ \t]*\(Km\)[ \t]*:[ \t]*([^\n]*)",
    "temperature": r"Temperatura[ \t]*:[ \t]*([^\n]*)",
}

COMPASS_POINTS: Dict[str, int] = {
    "n": 0, "ne": 45, "e": 90, "se": 135, "s": 180,
    "so": 225, "sw": 225, "o": 270, "w": 270, "no": 315, "nw": 315,
}

COMPASS_WORDS: Dict[str, int] = {
    "noreste": 45, "nordeste": 45, "northeast": 45,
    "sureste": 135, "sudeste": 135, "southeast": 135,
    "suroeste": 225, "sudoeste": 225, "southwest": 225,
    "noroeste": 315, "northwest": 315,
    "norte": 0, "north": 0,
    "sur": 180, "south": 180,
    "oeste": 270, "west": 270,
    "este": 90, "east": 90,
}

_WORD_ALTERNATION = "|".join(sorted(COMPASS_WORDS, key=len, reverse=True))
_LABELLED_COMPASS = re.compile(
    rf"(?:rumbo|sentido|orientaci[oó]n|heading|direction)\s*:?\s*({_WORD_ALTERNATION})\b",
    re.IGNORECASE,
)
_ICON_SUFFIX = re.compile(
    r"[_\-](n|ne|e|se|s|so|sw|o|w|no|nw)\.(?:png|gif|svg|jpe?g|webp)(?:[?#].*)?$",
    re.IGNORECASE,
)
_ROTATE = re.compile(r"rotate(?:z)?\(\s*([-+]?\d*\.?\d+)\s*(deg|rad|turn|grad)?[^)]*\)", re.IGNORECASE)
_MATRIX = re.compile(r"matrix\(\s*([-+]?[\d.e-]+)\s*,\s*([-+]?[\d.e-]+)", re.IGNORECASE)

ABSOLUTE_FORMATS = (
    "%Y-%m-%d %H:%M:%S",
    "%Y-%m-%d %H:%M",
    "%Y-%m-%dT%H:%M:%S",
    "%Y/%m/%d %H:%M:%S",
    "%d/%m/%Y %H:%M:%S",
    "%d/%m/%Y %H:%M",
    "%d-%m-%Y %H:%M:%S",
    "%d-%m-%Y %H:%M",
)

_TODAY_YESTERDAY = re.compile(
    r"\b(hoy|ayer|today|yesterday)\b\s*(?:a\s+las|at)?\s*(\d{1,2}):(\d{2})(?::(\d{2}))?",
    re.IGNORECASE,
)
_AGO_SPANISH = re.compile(
    r"\bhace\s+(\d+)\s*(segundos?|minutos?|min|horas?|h|d[ií]as?)\b", re.IGNORECASE
)
_AGO_ENGLISH = re.compile(
    r"\b(\d+)\s*(seconds?|minutes?|mins?|hours?|days?)\s+ago\b", re.IGNORECASE
)
_ABSOLUTE_CANDIDATE = re.compile(
    r"\d{4}[-/]\d{2}[-/]\d{2}[ T]\d{2}:\d{2}(?::\d{2})?|\d{2}[-/]\d{2}[-/]\d{4}\s+\d{2}:\d{2}(?::\d{2})?"
)


def _normalize_angle(degrees: float) -> int:
    return int(round(degrees)) % 360


def heading_from_transform(transform: Optional[str]) -> Optional[int]:
    """Angle from a CSS/SVG rotate() or matrix() transform."""
    if not transform:
        return None
    match = _ROTATE.search(transform)
    if match:
        value = float(match.group(1))
        unit = (match.group(2) or "deg").lower()
        if unit == "rad":
            value = math.degrees(value)
        elif unit == "turn":
            value *= 360
        elif unit == "grad":
            value *= 0.9
        return _normalize_angle(value)
    match = _MATRIX.search(transform)
    if match:
        a, b = float(match.group(1)), float(match.group(2))
        if a == 1 and b == 0:
            return None
        return _normalize_angle(math.degrees(math.atan2(b, a)))
    return None


def heading_from_icon(icon_src: Optional[str]) -> Optional[int]:
    """Angle from a directional suffix such as ``carro_ne.png``."""
    if not icon_src:
        return None
    match = _ICON_SUFFIX.search(icon_src)
    return COMPASS_POINTS[match.group(1).lower()] if match else None


def heading_from_text(text: Optional[str]) -> Optional[int]:
    """Angle from a compass word ("noreste" is 45).

    Inside longer text only a word after a direction label counts, so
    addresses and zone names ("Calle 10 Sur", "Zona Norte") are ignored.
    "Dirección" is an address label on these portals, not a direction one.
    """
    if not text:
        return None
    match = _LABELLED_COMPASS.search(text)
    if match:
        return COMPASS_WORDS[match.group(1).lower()]
    return COMPASS_WORDS.get(text.strip().lower())


def derive_heading(
    transform: Optional[str] = None,
    icon_src: Optional[str] = None,
    text: Optional[str] = None,
) -> int:
    """Rotation transform, then icon suffix, then compass word, else 0."""
    for candidate in (
        heading_from_transform(transform),
        heading_from_icon(icon_src),
        heading_from_text(text),
    ):
        if candidate is not None:
            return candidate
    return 0


def parse_timestamp(value: Optional[str], now: Optional[datetime] = None) -> Optional[datetime]:
    """Parse an absolute or relative Spanish/English timestamp.

    Returns None when nothing matches so the caller can fall back to the
    capture time.
    """
    if not value:
        return None
    now = now or datetime.now()
    text = value.strip()

    candidate = _ABSOLUTE_CANDIDATE.search(text)
    if candidate:
        raw = candidate.group(0).replace("T", " ")
        for fmt in ABSOLUTE_FORMATS:
            try:
                return datetime.strptime(raw, fmt)
            except ValueError:
                continue

    match = _TODAY_YESTERDAY.search(text)
    if match:
        day = now.date()
        if match.group(1).lower() in ("ayer", "yesterday"):
            day -= timedelta(days=1)
        hour, minute = int(match.group(2)), int(match.group(3))
        second = int(match.group(4) or 0)
        if hour < 24 and minute < 60 and second < 60:
            return datetime(day.year, day.month, day.day, hour, minute, second)

    match = _AGO_SPANISH.search(text) or _AGO_ENGLISH.search(text)
    if match:
        amount = int(match.group(1))
        unit = match.group(2).lower()
        if unit.startswith(("seg", "sec")):
            delta = timedelta(seconds=amount)
        elif unit.startswith("min"):
            delta = timedelta(minutes=amount)
        elif unit.startswith("h"):
            delta = timedelta(hours=amount)
        else:
            delta = timedelta(days=amount)
        return now - delta

    return None


class LocationRecordExtractor:
    """Turns popup text into a LocationRecord using label-anchored patterns."""

    def __init__(self, patterns: Optional[Dict[str, str]] = None):
        merged = {**DEFAULT_PATTERNS, **(patterns or {})}
        self.patterns = {
            name: re.compile(pattern, re.IGNORECASE) for name, pattern in merged.items()
        }

    def find(self, field: str, text: str) -> Optional[str]:
        pattern = self.patterns.get(field)
        if pattern is None:
            return None
        match = pattern.search(text)
        if not match:
            return None
        value = match.group(1).strip()
        return value or None

    def extract(
        self,
        text: str,
        plate: str,
        heading: int = 0,
        captured_at: Optional[datetime] = None,
        provider: Optional[str] = None,
        coordinates: Optional[Tuple[float, float]] = None,
    ) -> LocationRecord:
        """Build a record from raw text.

        ``coordinates`` overrides the latitude/longitude labels for portals
        that expose the position outside the popup text (URL, data
        attributes, map objects).

        Raises:
            ExtractionError: If latitude or longitude is missing or unparseable
        """
        captured_at = captured_at or datetime.now()
        normalized = clean_text(text)

        if coordinates is not None:
            lat_value, lon_value = coordinates
        else:
            latitude = self.find("latitude", normalized)
            longitude = self.find("longitude", normalized)
            if latitude is None or longitude is None:
                raise ExtractionError("Coordinates not found in popup text", raw_text=text)
            try:
                lat_value, lon_value = float(latitude), float(longitude)
            except ValueError as e:
                raise ExtractionError("Coordinates could not be parsed", raw_text=text) from e
        if not (-90 <= lat_value <= 90 and -180 <= lon_value <= 180):
            raise ExtractionError("Coordinates out of range", raw_text=text)

        timestamp = parse_timestamp(self.find("timestamp", normalized), captured_at)
        if timestamp is None:
            logger.debug("timestamp_fallback_to_capture_time", plate=plate)
            timestamp = captured_at

        record = LocationRecord(
            plate=plate,
            latitude=lat_value,
            longitude=lon_value,
            speed=parse_decimal(self.find("speed", normalized)),
            heading=heading % 360,
            timestamp=timestamp,
            captured_at=captured_at,
            provider=provider,
            reason=self.find("reason", normalized),
            driver=self.find("driver", normalized),
            georeference=self.find("georeference", normalized),
            in_zone=self.find("in_zone", normalized),
            detention_time=self.find("detention_time", normalized) or "0",
            distance_traveled=parse_decimal(self.find("distance_traveled", normalized)),
            temperature=parse_decimal(self.find("temperature", normalized)),
        )
        logger.debug(
            "location_extracted",
            plate=record.plate,
            latitude=record.latitude,
            longitude=record.longitude,
        )
        return record
