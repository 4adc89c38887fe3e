"""Vehicle location models."""

from datetime import datetime, timezone
from enum import Enum
from typing import Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, SecretStr, field_validator


class LocationRecord(BaseModel):
    """Normalized location fix extracted from a provider portal."""

    model_config = ConfigDict(frozen=True)

    plate: str = Field(..., description="Vehicle plate used for the lookup")
    latitude: float = Field(..., ge=-90, le=90, description="Decimal degrees")
    longitude: float = Field(..., ge=-180, le=180, description="Decimal degrees")
    speed: float = Field(0.0, description="Speed in km/h, 0 when not reported")
    heading: int = Field(0, ge=0, le=359, description="Heading in degrees")
    timestamp: datetime = Field(..., description="Event time reported by the provider")
    captured_at: datetime = Field(default_factory=datetime.now)
    provider: Optional[str] = None

    reason: Optional[str] = None
    driver: Optional[str] = None
    georeference: Optional[str] = None
    in_zone: Optional[str] = None
    detention_time: str = "0"
    distance_traveled: float = 0.0
    temperature: float = 0.0

    @field_validator("plate")
    @classmethod
    def normalize_plate(cls, v):
        """Plates are compared case-insensitively, store them upper-cased."""
        v = v.strip().upper()
        if not v:
            raise ValueError("Plate must not be empty")
        return v


class VehicleAssignment(BaseModel):
    """One vehicle to track, with the portal credentials that can see it."""

    plate: str
    provider: str
    username: str
    password: SecretStr
    vehicle_id: Optional[UUID] = None


class TrackingStatus(str, Enum):
    """Caller-visible outcome of one tracking attempt."""

    SUCCESS = "Exitoso"
    CONFIG_ERROR = "Error de configuración"
    AUTH_ERROR = "Error de autenticación"
    SERVER_DOWN = "Servidor caído"
    INTERNAL_ERROR = "Error interno"


class TrackingResult(BaseModel):
    """Result row produced by the orchestration flow for each vehicle."""

    plate: str
    provider: str
    success: bool
    status: TrackingStatus
    message: str = ""
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    processed_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
