#!/usr/bin/env python3
"""Trigger one dispatch cycle, either over HTTP or in-process against DATABASE_URL.

Meant to be called from cron or a platform scheduler; overlapping invocations are safe.
"""
from __future__ import annotations

import argparse
import json
import logging
import os
import sys
import urllib.error
import urllib.parse
import urllib.request
from pathlib import Path
from typing import Any

ROOT_DIR = Path(__file__).resolve().parents[1]
BACKEND_SRC = ROOT_DIR / "backend" / "src"
if str(BACKEND_SRC) not in sys.path:
    sys.path.insert(0, str(BACKEND_SRC))

from reengage_web.config import get_settings  # noqa: E402
from reengage_web.dispatcher import DispatchService  # noqa: E402
from reengage_web.providers import build_router  # noqa: E402
from reengage_web.reminder_store import create_reminder_store_repository  # noqa: E402


def _load_dotenv(path: Path) -> None:
    if not path.is_file():
        return
    for raw_line in path.read_text(encoding="utf-8").splitlines():
        line = raw_line.strip()
        if not line or line.startswith("#") or "=" not in line:
            continue
        key, value = line.split("=", 1)
        key = key.strip()
        if not key or key in os.environ:
            continue
        parsed = value.strip()
        if parsed and (parsed[0] == parsed[-1]) and parsed[0] in {'"', "'"}:
            parsed = parsed[1:-1]
        os.environ[key] = parsed


def _resolve_api_base_url(explicit_value: str | None) -> str:
    candidate = (explicit_value or os.getenv("REENGAGE_API_BASE_URL", "") or "http://localhost:8000").strip()
    if candidate.endswith("/api/v1/reengage"):
        return candidate
    return f"{candidate.rstrip('/')}/api/v1/reengage"


def _trigger_http(base_url: str, secret: str, batch_size: int | None) -> dict[str, Any]:
    query = f"?{urllib.parse.urlencode({'batch_size': batch_size})}" if batch_size else ""
    request = urllib.request.Request(
        f"{base_url}/cron/dispatch{query}",
        data=b"",
        headers={"Accept": "application/json", "Authorization": f"Bearer {secret}"},
        method="POST",
    )
    try:
        with urllib.request.urlopen(request, timeout=120) as response:
            return json.loads(response.read().decode("utf-8"))
    except urllib.error.HTTPError as exc:
        detail = exc.read().decode("utf-8", errors="replace")
        raise RuntimeError(f"POST cron/dispatch failed with {exc.code}: {detail}") from exc


def _run_local(batch_size: int | None) -> dict[str, Any]:
    settings = get_settings()
    repository = create_reminder_store_repository(
        backend=settings.reminder_store_backend,
        database_url=settings.database_url,
    )
    service = DispatchService.from_settings(settings, repository=repository, router=build_router(settings))
    result = service.run_cycle(batch_size=batch_size)
    return {
        "processed": result.processed,
        "sent": result.sent,
        "failed": result.failed,
        "retried": result.retried,
        "skipped": result.skipped,
    }


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Run one reminder dispatch cycle.")
    parser.add_argument(
        "--mode",
        choices=("http", "local"),
        default="http",
        help="http calls the running API; local claims directly from DATABASE_URL.",
    )
    parser.add_argument("--api-base-url", default=None, help="Backend base URL (http mode).")
    parser.add_argument("--secret", default=None, help="Cron secret. Defaults to CRON_SECRET.")
    parser.add_argument("--batch-size", type=int, default=None, help="Maximum reminders to claim.")
    return parser.parse_args()


def main() -> int:
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    _load_dotenv(ROOT_DIR / ".env")
    args = parse_args()
    if args.batch_size is not None and args.batch_size < 1:
        raise SystemExit("--batch-size must be positive")

    if args.mode == "local":
        counts = _run_local(args.batch_size)
    else:
        secret = (args.secret or os.getenv("CRON_SECRET", "")).strip()
        if not secret:
            raise SystemExit("CRON_SECRET is required (set .env or pass --secret)")
        counts = _trigger_http(_resolve_api_base_url(args.api_base_url), secret, args.batch_size)

    print(json.dumps(counts, sort_keys=True))
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
