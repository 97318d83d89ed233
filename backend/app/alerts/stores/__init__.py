"""Alert, contact and helper stores."""

from __future__ import annotations

from backend.app.alerts.stores.base import AlertStore
from backend.app.alerts.stores.memory import InMemoryAlertStore
from backend.app.core.config import Settings


def build_alert_store(settings: Settings) -> AlertStore:
    """Select the alert store named by ``ALERT_STORE_BACKEND``."""
    backend = settings.ALERT_STORE_BACKEND.lower()
    if backend == "memory":
        return InMemoryAlertStore()
    if backend == "redis":
        from backend.app.alerts.stores.redis_store import RedisAlertStore
        return RedisAlertStore(settings.REDIS_URL)
    raise ValueError(f"Unknown alert store backend: {settings.ALERT_STORE_BACKEND}")
