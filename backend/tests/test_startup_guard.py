from __future__ import annotations

import logging
import os

import pytest

from reengage_web.main import create_app


def _set_env(overrides: dict[str, str | None]) -> dict[str, str | None]:
    previous: dict[str, str | None] = {}
    for key, value in overrides.items():
        previous[key] = os.environ.get(key)
        if value is None:
            os.environ.pop(key, None)
        else:
            os.environ[key] = value
    return previous


def _restore_env(previous: dict[str, str | None]) -> None:
    for key, value in previous.items():
        if value is None:
            os.environ.pop(key, None)
        else:
            os.environ[key] = value


def test_create_app_starts_with_real_secrets_in_enforce_mode() -> None:
    previous = _set_env(
        {
            "CRON_SECRET": "prod-cron-secret-001",
            "RUNTIME_SECRET_GUARD_MODE": "enforce",
            "TRANSPORT_SENDER_TYPE": "stub",
        }
    )
    try:
        app = create_app()
        assert app.title == "Reengage Dispatch Engine"
    finally:
        _restore_env(previous)


def test_create_app_blocks_placeholder_secret_in_enforce_mode() -> None:
    previous = _set_env(
        {
            "CRON_SECRET": "change-me",
            "RUNTIME_SECRET_GUARD_MODE": "enforce",
        }
    )
    try:
        with pytest.raises(RuntimeError, match="CRON_SECRET"):
            create_app()
    finally:
        _restore_env(previous)


def test_create_app_warns_in_warn_mode(caplog: pytest.LogCaptureFixture) -> None:
    previous = _set_env(
        {
            "CRON_SECRET": None,
            "RUNTIME_SECRET_GUARD_MODE": "warn",
        }
    )
    try:
        with caplog.at_level(logging.WARNING, logger="reengage_web.main"):
            create_app()
        assert any("runtime secret guard warning" in message for message in caplog.messages)
    finally:
        _restore_env(previous)
