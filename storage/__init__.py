"""Storage backends for tracked locations."""

from storage.location_repository import JsonLinesLocationRepository, LocationRepository

__all__ = ["JsonLinesLocationRepository", "LocationRepository"]
