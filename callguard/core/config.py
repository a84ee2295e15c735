"""Settings: centralized configuration for callguard.

All settings are loaded from environment variables with the CALLGUARD_ prefix.
Durations are in seconds.
"""

from __future__ import annotations

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """callguard configuration.

    All fields can be overridden by environment variables prefixed with
    ``CALLGUARD_``.  For example, ``CALLGUARD_RETRY_MAX_ATTEMPTS=5``
    overrides the default attempt budget.
    """

    # ── Retry ───────────────────────────────────────────────────────
    RETRY_MAX_ATTEMPTS: int = 3
    RETRY_BASE_DELAY: float = 0.3
    RETRY_MAX_DELAY: float = 10.0
    RETRY_BACKOFF_FACTOR: float = 2.0
    RETRY_JITTER: bool = True
    RETRY_ATTEMPT_TIMEOUT: float | None = 30.0  # None disables the per-attempt limit
    RETRY_TOTAL_TIMEOUT: float | None = 60.0  # Covers every attempt of one call
    RETRY_THROW_ERRORS: bool = True

    # ── Circuit breaker ─────────────────────────────────────────────
    CIRCUIT_FAILURE_THRESHOLD: float = 50.0  # Percent, or raw count
    CIRCUIT_THRESHOLD_IS_PERCENTAGE: bool = True
    CIRCUIT_RESET_TIMEOUT_SECONDS: float = 30.0  # Seconds OPEN before a probe
    CIRCUIT_WINDOW_SIZE: int = 10
    CIRCUIT_MINIMUM_REQUESTS: int = 5

    # ── Offline queue ───────────────────────────────────────────────
    OFFLINE_ENABLED: bool = True
    OFFLINE_STORAGE_KEY_PREFIX: str = "callguard_offline_"
    OFFLINE_MAX_QUEUE_SIZE: int = 100
    OFFLINE_MAX_OPERATION_AGE_SECONDS: float = 7 * 24 * 60 * 60
    OFFLINE_AUTO_SYNC: bool = True
    OFFLINE_CHECK_INTERVAL_SECONDS: float = 30.0
    OFFLINE_MERGE_STRATEGY: str = "latest_only"  # latest_only | keep_all | combine

    # ── Connectivity probe ──────────────────────────────────────────
    CONNECTIVITY_PROBE_URL: str = "https://www.gstatic.com/generate_204"
    CONNECTIVITY_PROBE_TIMEOUT: float = 5.0

    # ── Durable store ───────────────────────────────────────────────
    STORE_BACKEND: str = "memory"  # memory | file | redis
    STORE_PATH: str = "data/offline"
    REDIS_URL: str = "redis://localhost:6379"

    model_config = {
        "env_prefix": "CALLGUARD_",
    }
