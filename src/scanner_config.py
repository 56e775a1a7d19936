"""Environment-driven settings for the scanner service."""

from __future__ import annotations

import os
from dataclasses import dataclass

from dotenv import load_dotenv

TRUTHY = ("1", "true", "yes")


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() in TRUTHY


@dataclass(frozen=True)
class Settings:
    store_backend: str = "convex"
    deployment_url: str | None = None
    admin_key: str | None = None

    # Presence
    staleness_threshold_ms: int = 30000
    reconcile_interval_seconds: float = 30.0
    reconciler_enabled: bool = True

    # Store call limits
    store_timeout_seconds: float = 15.0
    device_timeout_seconds: float = 8.0
    store_max_retries: int = 3
    store_retry_initial_delay_seconds: float = 1.0
    max_store_consecutive_timeouts: int = 3
    store_circuit_open_seconds: float = 30.0

    # Attendance
    event_timezone: str = "Asia/Jakarta"
    event_name: str = "Seminar Teknologi 2025"
    event_location: str = "Auditorium Utama"
    event_session_id: str = "seminar-2025"
    attendance_duplicate_window_ms: int = 15000

    cron_secret: str | None = None
    host: str = "0.0.0.0"
    port: int = 5000
    log_file: str = "scanner_service.log"

    @property
    def store_configured(self) -> bool:
        return self.store_backend == "memory" or bool(self.deployment_url)


def load_settings(dotenv: bool = True) -> Settings:
    """Read settings from the environment (and ``.env`` when present)."""
    if dotenv:
        load_dotenv()

    deployment_url = os.getenv("CONVEX_SELF_HOSTED_URL") or os.getenv(
        "CONVEX_DEPLOYMENT_URL"
    )

    return Settings(
        store_backend=os.getenv("STORE_BACKEND", "convex").lower(),
        deployment_url=deployment_url or None,
        admin_key=os.getenv("CONVEX_SELF_HOSTED_ADMIN_KEY") or None,
        staleness_threshold_ms=int(os.getenv("STALENESS_THRESHOLD_MS", "30000")),
        reconcile_interval_seconds=float(os.getenv("RECONCILE_INTERVAL_SECONDS", "30")),
        reconciler_enabled=_env_bool("RECONCILER_ENABLED", "true"),
        store_timeout_seconds=float(os.getenv("STORE_TIMEOUT_SECONDS", "15")),
        device_timeout_seconds=float(os.getenv("DEVICE_TIMEOUT_SECONDS", "8")),
        store_max_retries=int(os.getenv("STORE_MAX_RETRIES", "3")),
        store_retry_initial_delay_seconds=float(
            os.getenv("STORE_RETRY_INITIAL_DELAY_SECONDS", "1.0")
        ),
        max_store_consecutive_timeouts=int(
            os.getenv("MAX_STORE_CONSECUTIVE_TIMEOUTS", "3")
        ),
        store_circuit_open_seconds=float(os.getenv("STORE_CIRCUIT_OPEN_SECONDS", "30")),
        event_timezone=os.getenv("EVENT_TIMEZONE", "Asia/Jakarta"),
        event_name=os.getenv("EVENT_NAME", "Seminar Teknologi 2025"),
        event_location=os.getenv("EVENT_LOCATION", "Auditorium Utama"),
        event_session_id=os.getenv("EVENT_SESSION_ID", "seminar-2025"),
        attendance_duplicate_window_ms=int(
            os.getenv("ATTENDANCE_DUPLICATE_WINDOW_MS", "15000")
        ),
        cron_secret=os.getenv("CRON_SECRET") or None,
        host=os.getenv("HOST", "0.0.0.0"),
        port=int(os.getenv("PORT", "5000")),
        log_file=os.getenv("LOG_FILE", "scanner_service.log"),
    )
