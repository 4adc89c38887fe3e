"""Local persistence for extracted location records.

Records are appended as JSON lines, one per successful lookup, so the file
doubles as a history of every fix the flows have captured.
"""

import threading
from pathlib import Path
from typing import Iterator, List, Optional, Protocol

from pydantic import ValidationError

from config import get_settings
from models.location import LocationRecord
from utils.logging import get_logger
from utils.scraping_utils import normalize_plate

logger = get_logger(__name__)


class LocationRepository(Protocol):
    """Where tracked locations are stored."""

    def save(self, record: LocationRecord) -> None:
        ...

    def latest(self, plate: str) -> Optional[LocationRecord]:
        ...


class JsonLinesLocationRepository:
    """Append-only JSON-lines store for location records."""

    def __init__(self, path: Optional[Path] = None):
        self.path = Path(path) if path else get_settings().locations_file
        self._lock = threading.Lock()

    def save(self, record: LocationRecord) -> None:
        line = record.model_dump_json()
        with self._lock:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with open(self.path, "a", encoding="utf-8") as f:
                f.write(line + "\n")
        logger.info("location_saved", plate=record.plate, path=str(self.path))

    def _iter_records(self) -> Iterator[LocationRecord]:
        if not self.path.exists():
            return
        with open(self.path, "r", encoding="utf-8") as f:
            for line_number, line in enumerate(f, start=1):
                line = line.strip()
                if not line:
                    continue
                try:
                    yield LocationRecord.model_validate_json(line)
                except ValidationError as e:
                    logger.warning(
                        "location_line_skipped", line=line_number, error=str(e.errors()[0]["msg"])
                    )

    def history(self, plate: str) -> List[LocationRecord]:
        """Every stored record for ``plate``, oldest first."""
        target = normalize_plate(plate)
        return [record for record in self._iter_records() if record.plate == target]

    def latest(self, plate: str) -> Optional[LocationRecord]:
        """Most recently captured record for ``plate``."""
        records = self.history(plate)
        if not records:
            return None
        return max(records, key=lambda record: record.captured_at)
