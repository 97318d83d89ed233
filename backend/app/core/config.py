"""
Dispatch service settings.

Every timer, radius and transport knob the SOS flow uses lives here, read
through pydantic-settings from the environment or a .env file. Defaults run
the whole service in memory with simulated SMS.

Usage:
    from backend.app.core.config import settings
    print(settings.ALERT_FEEDBACK_SECONDS)
"""

from __future__ import annotations

from functools import lru_cache
from typing import List, Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Env var beats .env file beats the default below."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=True,
        extra="ignore",
    )

    # ── Application ──
    APP_NAME: str = "SafeGuard SOS"
    APP_VERSION: str = "1.0.0"
    ENVIRONMENT: str = "development"  # development | staging | production
    DEBUG: bool = True
    LOG_LEVEL: str = "INFO"  # DEBUG | INFO | WARNING | ERROR | CRITICAL

    # ── Server ──
    HOST: str = "0.0.0.0"
    PORT: int = 8000

    # ── CORS ──
    CORS_ORIGINS: List[str] = [
        "http://localhost:3000",
        "http://localhost:8000",
    ]
    CORS_ALLOW_ALL: bool = True  # False in production

    # ── Alert store ──
    ALERT_STORE_BACKEND: str = "memory"  # memory | redis
    REDIS_URL: str = "redis://localhost:6379/0"
    SUBSCRIPTION_BUFFER_SIZE: int = 64  # max snapshots queued per subscriber

    # ── SMS transport ──
    SMS_PROVIDER: str = "simulation"  # simulation | http
    SMS_GATEWAY_URL: str = "http://localhost:9091/api/sms"
    SMS_API_KEY: Optional[str] = None
    SMS_SENDER_ID: str = "SAFEGD"
    SMS_TIMEOUT_SECONDS: float = 15.0
    FANOUT_MAX_CONCURRENCY: int = 8
    LOCATION_URL_TEMPLATE: str = "https://maps.google.com/?q={lat},{lon}"

    # ── Active alert timers ──
    ALERT_FEEDBACK_SECONDS: float = 30.0  # siren + vibration auto-silence
    LOCATION_PUSH_INTERVAL_SECONDS: float = 5.0
    MAX_AUDIO_CAPTURE_SECONDS: float = 300.0  # 5 minutes, hard cap

    # ── Helper matching ──
    DEFAULT_HELPER_RADIUS_KM: float = 10.0
    MIN_HELPER_RADIUS_KM: float = 5.0
    MAX_HELPER_RADIUS_KM: float = 20.0
    ETA_SPEED_KMH: float = 30.0  # city traffic assumption

    @property
    def is_production(self) -> bool:
        return self.ENVIRONMENT == "production"


@lru_cache()
def get_settings() -> Settings:
    """Cached settings singleton."""
    return Settings()


settings = get_settings()
