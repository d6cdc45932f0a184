from __future__ import annotations

import os
from dataclasses import dataclass


def _as_bool(value: str | None, default: bool) -> bool:
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    return default


def _as_csv_tuple(value: str | None) -> tuple[str, ...]:
    if value is None:
        return ()
    items = [item.strip().lower() for item in value.split(",")]
    return tuple(item for item in items if item)


def _as_int(value: str | None, default: int, *, minimum: int = 0) -> int:
    if value is None:
        return default
    try:
        parsed = int(value.strip())
    except ValueError:
        return default
    return parsed if parsed >= minimum else default


def _as_float(value: str | None, default: float) -> float:
    if value is None:
        return default
    try:
        return float(value.strip())
    except ValueError:
        return default


def _normalize_mode(value: str | None, *, default: str, allowed: set[str]) -> str:
    if value is None:
        return default
    normalized = value.strip().lower()
    return normalized if normalized in allowed else default


def _is_placeholder(value: str, *, defaults: set[str]) -> bool:
    normalized = value.strip()
    if not normalized:
        return True
    if normalized in defaults:
        return True
    lower = normalized.lower()
    return lower in {"change-me", "replace-me", "placeholder", "changeme"}


@dataclass(frozen=True)
class Settings:
    app_name: str = "Reengage Dispatch Engine"
    api_prefix: str = "/api/v1"
    cron_secret: str = "dev-cron-secret"
    reminder_store_backend: str = "inmemory"
    database_url: str = ""
    dispatch_batch_size: int = 50
    dispatch_batch_max: int = 500
    dispatch_concurrency: int = 4
    retry_max: int = 5
    retry_base_delay_seconds: float = 30.0
    retry_max_delay_seconds: float = 21600.0
    window_skip_delay_seconds: float = 60.0
    transport_sender_type: str = "stub"
    transport_enabled: bool = True
    transport_channels: tuple[str, ...] = ("email", "sms", "chat")
    transport_api_base_url: str = ""
    transport_api_key: str = ""
    transport_timeout_seconds: int = 10
    cors_allow_origins: tuple[str, ...] = ("http://localhost:3000",)
    runtime_secret_guard_mode: str = "warn"


def get_settings() -> Settings:
    return Settings(
        app_name=os.getenv("REENGAGE_APP_NAME", "Reengage Dispatch Engine"),
        api_prefix=os.getenv("REENGAGE_API_PREFIX", "/api/v1"),
        cron_secret=os.getenv("CRON_SECRET", "dev-cron-secret"),
        reminder_store_backend=_normalize_mode(
            os.getenv("REMINDER_STORE_BACKEND"),
            default="inmemory",
            allowed={"inmemory", "postgres"},
        ),
        database_url=os.getenv("DATABASE_URL", ""),
        dispatch_batch_size=_as_int(os.getenv("DISPATCH_BATCH_SIZE"), 50, minimum=1),
        dispatch_batch_max=_as_int(os.getenv("DISPATCH_BATCH_MAX"), 500, minimum=1),
        dispatch_concurrency=_as_int(os.getenv("DISPATCH_CONCURRENCY"), 4, minimum=1),
        retry_max=_as_int(os.getenv("RETRY_MAX"), 5),
        retry_base_delay_seconds=_as_float(os.getenv("RETRY_BASE_DELAY_SECONDS"), 30.0),
        retry_max_delay_seconds=_as_float(os.getenv("RETRY_MAX_DELAY_SECONDS"), 21600.0),
        window_skip_delay_seconds=_as_float(os.getenv("WINDOW_SKIP_DELAY_SECONDS"), 60.0),
        transport_sender_type=_normalize_mode(
            os.getenv("TRANSPORT_SENDER_TYPE"),
            default="stub",
            allowed={"stub", "http"},
        ),
        transport_enabled=_as_bool(os.getenv("TRANSPORT_ENABLED"), True),
        transport_channels=_as_csv_tuple(os.getenv("TRANSPORT_CHANNELS")) or ("email", "sms", "chat"),
        transport_api_base_url=os.getenv("TRANSPORT_API_BASE_URL", ""),
        transport_api_key=os.getenv("TRANSPORT_API_KEY", ""),
        transport_timeout_seconds=_as_int(os.getenv("TRANSPORT_TIMEOUT_SECONDS"), 10, minimum=1),
        cors_allow_origins=_as_csv_tuple(os.getenv("CORS_ALLOW_ORIGINS", "http://localhost:3000")),
        runtime_secret_guard_mode=_normalize_mode(
            os.getenv("RUNTIME_SECRET_GUARD_MODE"),
            default="warn",
            allowed={"off", "warn", "enforce"},
        ),
    )


def runtime_secret_issues(settings: Settings) -> tuple[str, ...]:
    issues: list[str] = []
    if _is_placeholder(
        settings.cron_secret,
        defaults={"dev-cron-secret", "change-me-in-production"},
    ):
        issues.append("CRON_SECRET is empty or uses a development placeholder")
    if settings.transport_sender_type == "http":
        if not settings.transport_api_base_url.strip():
            issues.append("TRANSPORT_API_BASE_URL is required when TRANSPORT_SENDER_TYPE=http")
        if not settings.transport_api_key.strip():
            issues.append("TRANSPORT_API_KEY is required when TRANSPORT_SENDER_TYPE=http")
    if settings.reminder_store_backend == "postgres" and not settings.database_url.strip():
        issues.append("DATABASE_URL is required when REMINDER_STORE_BACKEND=postgres")
    return tuple(issues)
