"""Common utilities for scraping operations."""

import math
import re
from typing import Any, Iterable, Optional, Tuple


_NUMBER_PATTERN = re.compile(r"[-+]?\d*\.?\d+")


def clean_text(text: Optional[str]) -> str:
    """
    Clean text by removing extra whitespace and normalizing.

    Args:
        text: Text to clean

    Returns:
        Cleaned text
    """
    if not text:
        return ""

    # Decode HTML entities if present
    text = (text.replace("&amp;", "&")
            .replace("&lt;", "<")
            .replace("&gt;", ">")
            .replace("&#39;", "'")
            .replace("&quot;", '"')
            .replace("&nbsp;", " ")
            .replace("\xa0", " "))

    # Collapse runs of whitespace inside each line but keep line breaks,
    # popup parsing is label-per-line
    lines = [re.sub(r"[ \t]+", " ", line).strip() for line in text.splitlines()]
    return "\n".join(line for line in lines if line)


def normalize_plate(plate: Optional[str]) -> str:
    """Normalize a plate for exact comparison (trimmed, upper-case)."""
    if not plate:
        return ""
    return re.sub(r"\s+", " ", plate).strip().upper()


def parse_decimal(value: Any, default: float = 0.0) -> float:
    """
    Parse a number using the period as decimal separator.

    Empty values, "-", NaN and anything unparseable yield ``default``.
    A comma is read as decimal separator when no period is present and as a
    thousands separator otherwise.

    Args:
        value: Raw value, usually a string scraped from the page

    Returns:
        Parsed float or default
    """
    if value is None:
        return default
    if isinstance(value, (int, float)):
        return default if math.isnan(value) else float(value)

    text = str(value).strip()
    if not text or text == "-" or text.lower() == "nan":
        return default
    if "," in text:
        text = text.replace(",", "" if "." in text else ".")

    match = _NUMBER_PATTERN.search(text.replace(" ", ""))
    if not match:
        return default
    try:
        number = float(match.group(0))
    except ValueError:
        return default
    return default if math.isnan(number) else number


def truncate(text: Optional[str], max_length: int) -> Optional[str]:
    """Cut text to max_length characters."""
    if text is None:
        return None
    return text if len(text) <= max_length else text[:max_length]


def calculate_retry_delay(attempt: int, base_delay: float = 1.0, max_delay: float = 60.0) -> float:
    """
    Calculate exponential backoff delay for retries.

    Args:
        attempt: Current attempt number (0-based)
        base_delay: Base delay in seconds
        max_delay: Maximum delay in seconds

    Returns:
        Delay in seconds
    """
    delay = base_delay * (2 ** attempt)
    return min(delay, max_delay)


def join_reason(parts: Iterable[Tuple[str, Any]], max_length: int = 2000) -> Optional[str]:
    """
    Join labelled values into a single " | " separated reason string.

    Empty values, zero numbers and "-" are skipped.

    Args:
        parts: (label, value) pairs in display order
        max_length: Cap applied to the joined string

    Returns:
        Joined string, or None when nothing remained
    """
    pieces = []
    for label, value in parts:
        if value is None:
            continue
        if isinstance(value, (int, float)):
            if not value:
                continue
            value = f"{value:g}"
        value = str(value).strip()
        if not value or value == "-":
            continue
        pieces.append(f"{label}: {value}" if label else value)
    if not pieces:
        return None
    return truncate(" | ".join(pieces), max_length)
