"""Configuration management for GPS tracking scrapers."""

from pathlib import Path
from typing import Dict, Optional
from functools import lru_cache

from pydantic import BaseModel, field_validator
from pydantic_settings import BaseSettings


class ProviderSettings(BaseModel):
    """Per-portal settings."""

    name: str
    base_url: str = ""
    max_retry_attempts: int = 3
    timeout_seconds: int = 30
    # Overall budget for one get_vehicle_location call, unset means unbounded
    call_deadline_seconds: Optional[float] = None
    enabled: bool = True


class DetektorSettings(ProviderSettings):
    name: str = "Detektor"


class SatrackSettings(ProviderSettings):
    name: str = "Satrack"


class SimonMovilidadSettings(ProviderSettings):
    name: str = "SimonMovilidad"


class BrowserSettings(BaseModel):
    """Browser launch options."""

    headless: bool = True
    window_width: int = 1920
    window_height: int = 1080
    executable_path: Optional[str] = None
    action_timeout_ms: int = 5000
    navigation_timeout_ms: int = 30000


class WaitSettings(BaseModel):
    """Adaptive wait engine limits."""

    max_wait_seconds: float = 60.0
    default_poll_interval_seconds: float = 0.25


class Settings(BaseSettings):
    """Application settings."""

    # Providers
    detektor: DetektorSettings = DetektorSettings()
    satrack: SatrackSettings = SatrackSettings()
    simon_movilidad: SimonMovilidadSettings = SimonMovilidadSettings()

    # Browser
    browser: BrowserSettings = BrowserSettings()
    waits: WaitSettings = WaitSettings()

    # Application
    log_level: str = "INFO"

    # Paths
    base_dir: Path = Path(__file__).parent
    logs_dir: Path = base_dir / "logs"
    locations_file: Path = base_dir / "data" / "locations.jsonl"

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        env_nested_delimiter = "__"
        extra = "allow"

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v):
        level = v.upper()
        if level not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
            raise ValueError(f"Invalid log level: {v}")
        return level

    @property
    def providers(self) -> Dict[str, ProviderSettings]:
        """Provider settings keyed by attribute name."""
        return {
            "detektor": self.detektor,
            "satrack": self.satrack,
            "simon_movilidad": self.simon_movilidad,
        }


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()


def get_logs_dir() -> Path:
    """Get logs directory path."""
    settings = get_settings()
    settings.logs_dir.mkdir(parents=True, exist_ok=True)
    return settings.logs_dir
