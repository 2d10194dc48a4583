"""
Application Configuration
Uses pydantic-settings for environment variable management
"""

from functools import lru_cache
from typing import Optional
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables"""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    # Application
    APP_NAME: str = "Availability & Scheduling Engine"
    APP_VERSION: str = "0.1.0"
    DEBUG: bool = False
    API_V1_PREFIX: str = "/api/v1"

    # MongoDB
    MONGO_URL: str = "mongodb://localhost:27017"
    DB_NAME: str = "scheduling"

    # CORS
    CORS_ORIGINS: list[str] = ["*"]

    # Slot generation
    SLOT_INCREMENT_MINUTES: int = 60
    MAX_SLOT_RANGE_DAYS: int = 93

    # Booking commit
    # Pads active bookings by the profile's break duration during conflict checks
    BREAK_BUFFER_ENABLED: bool = False
    COMMIT_MAX_ATTEMPTS: int = 5
    CLAIM_GRACE_SECONDS: int = 120

    # Storage retries
    PERSISTENCE_RETRY_ATTEMPTS: int = 3
    PERSISTENCE_RETRY_BACKOFF_SECONDS: float = 0.1

    # Route optimization
    ROUTE_TRAVEL_BUFFER_MINUTES: int = 30
    ROUTE_IMPROVEMENT_THRESHOLD: float = 0.85
    ROUTE_DAY_START: str = "08:00"
    ROUTE_USE_LEG_DURATIONS: bool = True
    ROUTE_LOCK_TTL_SECONDS: int = 60
    ROUTE_LOCK_WAIT_SECONDS: float = 10.0
    ROUTE_OPTIMIZATION_TIMEOUT_SECONDS: float = 30.0

    # Upper bound for each best-effort side effect after a commit
    SIDE_EFFECT_TIMEOUT_SECONDS: float = 15.0

    # Routing service (OSRM)
    OSRM_BASE_URL: str = "https://router.project-osrm.org"
    ROUTING_TIMEOUT_SECONDS: float = 10.0

    # Notification gateway
    NOTIFICATION_SERVICE_URL: Optional[str] = None
    NOTIFICATION_SERVICE_TOKEN: Optional[str] = None
    NOTIFICATION_TIMEOUT_SECONDS: float = 5.0

    # Calendar export
    CALENDAR_DOMAIN: str = "scheduling.local"
    CALENDAR_PRODUCT_ID: str = "-//Scheduling Engine//Job Calendar//EN"
    PUBLIC_BASE_URL: str = "http://localhost:8000"

    def is_production(self) -> bool:
        """Check if running in production mode"""
        return not self.DEBUG

    def validate_production_settings(self) -> list[str]:
        """Validate that production-critical settings are configured"""
        errors = []
        if self.is_production():
            if "*" in self.CORS_ORIGINS:
                errors.append("CORS_ORIGINS should not be '*' in production")
            if not self.NOTIFICATION_SERVICE_URL:
                errors.append("NOTIFICATION_SERVICE_URL is not set, notifications will be skipped")
        if self.SLOT_INCREMENT_MINUTES <= 0:
            errors.append("SLOT_INCREMENT_MINUTES must be positive")
        if not 0 < self.ROUTE_IMPROVEMENT_THRESHOLD <= 1:
            errors.append("ROUTE_IMPROVEMENT_THRESHOLD must be in (0, 1]")
        return errors


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance"""
    return Settings()
