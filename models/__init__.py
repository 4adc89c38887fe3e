"""GPS tracking models."""

from .location import (
    LocationRecord,
    TrackingResult,
    TrackingStatus,
    VehicleAssignment,
)

__all__ = [
    "LocationRecord",
    "TrackingResult",
    "TrackingStatus",
    "VehicleAssignment",
]
