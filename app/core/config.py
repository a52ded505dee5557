from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Literal

AppEnv = Literal["dev", "test", "prod"]
LogLevel = Literal["debug", "info", "warning", "error"]


def _getenv(name: str, default: str) -> str:
    # Centralize env access so it’s easy to extend later (type casting, required vars)
    return os.environ.get(name, default).strip()


def _getenv_int(name: str, default: int, *, minimum: int = 0) -> int:
    raw = _getenv(name, str(default))
    try:
        value = int(raw)
    except ValueError:
        raise ValueError(f"{name} must be an integer (got {raw!r})") from None
    if value < minimum:
        raise ValueError(f"{name} must be >= {minimum} (got {value})")
    return value


@dataclass(frozen=True)
class Settings:
    app_env: AppEnv
    log_level: LogLevel
    log_json: bool
    port: int
    database_url: str | None
    redis_url: str | None

    # Sync reconciler
    sync_timeout_seconds: int = 10
    clock_skew_tolerance_seconds: int = 300
    sync_batch_window_seconds: int = 86_400
    sync_batch_window_size: int = 10_000
    store_retry_attempts: int = 5

    # Aggregation / caching
    time_spent_ceiling_factor: int = 3
    progress_cache_ttl_seconds: int = 300
    invalidation_max_attempts: int = 8

    # PEM-encoded public key of the upstream token issuer
    jwt_public_key: str | None = None

    @property
    def is_dev(self) -> bool:
        return self.app_env == "dev"

    @property
    def is_test(self) -> bool:
        return self.app_env == "test"

    @property
    def is_prod(self) -> bool:
        return self.app_env == "prod"


def load_settings() -> Settings:
    app_env_raw = _getenv("APP_ENV", "dev").lower()
    log_level_raw = _getenv("LOG_LEVEL", "info").lower()
    log_json_raw = _getenv("LOG_JSON", "false").lower()

    if app_env_raw not in ("dev", "test", "prod"):
        raise ValueError(f"APP_ENV must be dev|test|prod (got {app_env_raw!r})")

    if log_level_raw not in ("debug", "info", "warning", "error"):
        raise ValueError(
            f"LOG_LEVEL must be debug|info|warning|error (got {log_level_raw!r})"
        )

    if log_json_raw not in ("true", "false", "1", "0"):
        raise ValueError(f"LOG_JSON must be true|false (got {log_json_raw!r})")

    port = _getenv_int("PORT", 8000, minimum=1)

    database_url = _getenv("DATABASE_URL", "") or None
    redis_url = _getenv("REDIS_URL", "") or None
    jwt_public_key = _getenv("JWT_PUBLIC_KEY", "") or None

    if app_env_raw == "prod" and jwt_public_key is None:
        raise ValueError("JWT_PUBLIC_KEY is required when APP_ENV=prod")

    return Settings(  # type: ignore[arg-type]
        app_env=app_env_raw,
        log_level=log_level_raw,
        log_json=log_json_raw in ("true", "1"),
        port=port,
        database_url=database_url,
        redis_url=redis_url,
        sync_timeout_seconds=_getenv_int("SYNC_TIMEOUT_SECONDS", 10, minimum=1),
        clock_skew_tolerance_seconds=_getenv_int(
            "CLOCK_SKEW_TOLERANCE_SECONDS", 300
        ),
        sync_batch_window_seconds=_getenv_int(
            "SYNC_BATCH_WINDOW_SECONDS", 86_400, minimum=1
        ),
        sync_batch_window_size=_getenv_int(
            "SYNC_BATCH_WINDOW_SIZE", 10_000, minimum=1
        ),
        store_retry_attempts=_getenv_int("STORE_RETRY_ATTEMPTS", 5, minimum=1),
        time_spent_ceiling_factor=_getenv_int(
            "TIME_SPENT_CEILING_FACTOR", 3, minimum=1
        ),
        progress_cache_ttl_seconds=_getenv_int(
            "PROGRESS_CACHE_TTL_SECONDS", 300, minimum=1
        ),
        invalidation_max_attempts=_getenv_int(
            "INVALIDATION_MAX_ATTEMPTS", 8, minimum=1
        ),
        jwt_public_key=jwt_public_key,
    )


# Optional: module-level singleton so imports are cheap
SETTINGS = load_settings()
