#!/usr/bin/env python3
from __future__ import annotations

import argparse
import json
import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path

ROOT_DIR = Path(__file__).resolve().parents[1]
BACKEND_SRC = ROOT_DIR / "backend" / "src"
if str(BACKEND_SRC) not in sys.path:
    sys.path.insert(0, str(BACKEND_SRC))

from reengage_web.planner import SchedulePlanner  # noqa: E402
from reengage_web.reminder_store import (  # noqa: E402
    ClientRecord,
    ReminderRuleRecord,
    SqlAlchemyReminderStoreRepository,
)
from reengage_web.send_window import parse_send_window  # noqa: E402

DEMO_RULES = (
    ("thanks-1d", 1, "email", "Hi {first_name}, thanks for your purchase!"),
    ("review-7d", 7, "email", "Hi {first_name}, how are you enjoying it? We'd love a review."),
    ("comeback-30d", 30, "sms", "{first_name}, we miss you. Here's 10% off your next visit."),
)


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Seed a demo tenant with clients, rules and a send window.")
    parser.add_argument("--database-url", required=True, help="SQLAlchemy URL, e.g. sqlite:///./reengage.db")
    parser.add_argument("--tenant-id", default="demo-tenant")
    parser.add_argument("--clients", type=int, default=5, help="Number of demo clients to create.")
    parser.add_argument("--timezone", default="Europe/Paris")
    parser.add_argument("--plan", action="store_true", help="Run the planner after seeding.")
    return parser.parse_args()


def main() -> int:
    args = parse_args()
    if args.clients < 1 or args.clients > 1000:
        raise SystemExit("--clients must be between 1 and 1000")

    repository = SqlAlchemyReminderStoreRepository(args.database_url)
    repository.set_send_window(
        args.tenant_id,
        parse_send_window(timezone_name=args.timezone, days=range(1, 6), start="09:00", end="18:00"),
    )
    for position, (rule_id, delay_days, channel, template) in enumerate(DEMO_RULES):
        repository.upsert_rule(
            ReminderRuleRecord(
                id=rule_id,
                tenant_id=args.tenant_id,
                delay_days=delay_days,
                channel=channel,
                message_template=template,
                position=position,
            )
        )

    now = datetime.now(timezone.utc)
    for index in range(args.clients):
        repository.upsert_client(
            ClientRecord(
                id=f"client-{index + 1:03d}",
                tenant_id=args.tenant_id,
                email=f"client{index + 1}@example.com",
                phone=f"+3360000{index + 1:04d}" if index % 2 == 0 else None,
                first_name=f"Client{index + 1}",
                last_name="Demo",
                purchased_at=now - timedelta(days=index),
            )
        )

    summary: dict[str, object] = {
        "tenant_id": args.tenant_id,
        "clients": args.clients,
        "rules": len(DEMO_RULES),
    }
    if args.plan:
        result = SchedulePlanner(repository=repository).plan_for_tenant(args.tenant_id)
        summary["planned"] = {"created": result.created, "skipped": result.skipped}

    print(json.dumps(summary, indent=2))
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
