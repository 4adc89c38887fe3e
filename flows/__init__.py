"""Prefect flows for GPS vehicle tracking."""

from . import track_vehicles

__all__ = [
    "track_vehicles",
]
