from __future__ import annotations

import os

from reengage_web.config import get_settings, runtime_secret_issues


def _set_env(name: str, value: str | None) -> str | None:
    previous = os.environ.get(name)
    if value is None:
        os.environ.pop(name, None)
    else:
        os.environ[name] = value
    return previous


def _restore_env(name: str, previous: str | None) -> None:
    if previous is None:
        os.environ.pop(name, None)
    else:
        os.environ[name] = previous


def test_get_settings_defaults() -> None:
    keys = ("DISPATCH_BATCH_SIZE", "RETRY_MAX", "TRANSPORT_SENDER_TYPE", "TRANSPORT_CHANNELS", "REMINDER_STORE_BACKEND")
    previous = {key: _set_env(key, None) for key in keys}
    try:
        settings = get_settings()
        assert settings.dispatch_batch_size == 50
        assert settings.retry_max == 5
        assert settings.retry_base_delay_seconds == 30.0
        assert settings.retry_max_delay_seconds == 21600.0
        assert settings.transport_sender_type == "stub"
        assert settings.transport_channels == ("email", "sms", "chat")
        assert settings.reminder_store_backend == "inmemory"
    finally:
        for key, value in previous.items():
            _restore_env(key, value)


def test_get_settings_parses_and_guards_numeric_values() -> None:
    previous = {
        "DISPATCH_BATCH_SIZE": _set_env("DISPATCH_BATCH_SIZE", "0"),
        "DISPATCH_CONCURRENCY": _set_env("DISPATCH_CONCURRENCY", "8"),
        "RETRY_MAX": _set_env("RETRY_MAX", "not-a-number"),
        "TRANSPORT_CHANNELS": _set_env("TRANSPORT_CHANNELS", " Email , SMS ,"),
        "TRANSPORT_SENDER_TYPE": _set_env("TRANSPORT_SENDER_TYPE", "carrier-pigeon"),
    }
    try:
        settings = get_settings()
        assert settings.dispatch_batch_size == 50
        assert settings.dispatch_concurrency == 8
        assert settings.retry_max == 5
        assert settings.transport_channels == ("email", "sms")
        assert settings.transport_sender_type == "stub"
    finally:
        for key, value in previous.items():
            _restore_env(key, value)


def test_placeholder_cron_secret_is_flagged() -> None:
    previous = _set_env("CRON_SECRET", None)
    try:
        issues = runtime_secret_issues(get_settings())
        assert any("CRON_SECRET" in issue for issue in issues)
    finally:
        _restore_env("CRON_SECRET", previous)


def test_http_transport_requires_credentials() -> None:
    previous = {
        "CRON_SECRET": _set_env("CRON_SECRET", "prod-cron-secret-001"),
        "TRANSPORT_SENDER_TYPE": _set_env("TRANSPORT_SENDER_TYPE", "http"),
        "TRANSPORT_API_BASE_URL": _set_env("TRANSPORT_API_BASE_URL", None),
        "TRANSPORT_API_KEY": _set_env("TRANSPORT_API_KEY", None),
    }
    try:
        issues = runtime_secret_issues(get_settings())
        assert not any("CRON_SECRET" in issue for issue in issues)
        assert any("TRANSPORT_API_BASE_URL" in issue for issue in issues)
        assert any("TRANSPORT_API_KEY" in issue for issue in issues)
    finally:
        for key, value in previous.items():
            _restore_env(key, value)


def test_clean_production_settings_have_no_issues() -> None:
    previous = {
        "CRON_SECRET": _set_env("CRON_SECRET", "prod-cron-secret-001"),
        "TRANSPORT_SENDER_TYPE": _set_env("TRANSPORT_SENDER_TYPE", "http"),
        "TRANSPORT_API_BASE_URL": _set_env("TRANSPORT_API_BASE_URL", "https://gateway.example.com"),
        "TRANSPORT_API_KEY": _set_env("TRANSPORT_API_KEY", "live-key-001"),
        "REMINDER_STORE_BACKEND": _set_env("REMINDER_STORE_BACKEND", "postgres"),
        "DATABASE_URL": _set_env("DATABASE_URL", "postgresql+psycopg://app@db/reengage"),
    }
    try:
        assert runtime_secret_issues(get_settings()) == ()
    finally:
        for key, value in previous.items():
            _restore_env(key, value)
