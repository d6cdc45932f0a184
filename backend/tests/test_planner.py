from __future__ import annotations

from datetime import datetime, timezone
from pathlib import Path

import pytest

from reengage_web.planner import SchedulePlanner, compute_scheduled_at, render_template
from reengage_web.reminder_store import (
    ClientNotFoundError,
    ClientRecord,
    InMemoryReminderStoreRepository,
    ReminderRuleRecord,
    ReminderStoreRepository,
    SqlAlchemyReminderStoreRepository,
)
from reengage_web.send_window import parse_send_window

TENANT = "tenant-a"
PURCHASE = datetime(2025, 1, 1, 0, 0, tzinfo=timezone.utc)
PLAN_NOW = datetime(2025, 1, 1, 12, 0, tzinfo=timezone.utc)


@pytest.fixture(params=["inmemory", "sqlite"])
def repository(request: pytest.FixtureRequest, tmp_path: Path) -> ReminderStoreRepository:
    if request.param == "sqlite":
        return SqlAlchemyReminderStoreRepository(f"sqlite:///{tmp_path / 'planner.db'}")
    return InMemoryReminderStoreRepository()


def _paris_policy():
    return parse_send_window(timezone_name="Europe/Paris", days=[1, 2, 3, 4, 5], start="09:00", end="18:00")


def _seed(repository: ReminderStoreRepository) -> None:
    repository.set_send_window(TENANT, _paris_policy())
    repository.upsert_rule(
        ReminderRuleRecord(
            id="review-7d",
            tenant_id=TENANT,
            delay_days=7,
            channel="email",
            message_template="Hi {first_name}, how was it?",
            position=0,
        )
    )
    repository.upsert_rule(
        ReminderRuleRecord(id="sms-3d", tenant_id=TENANT, delay_days=3, channel="sms", message_template="Hey {name}")
    )
    repository.upsert_rule(
        ReminderRuleRecord(id="disabled", tenant_id=TENANT, delay_days=1, channel="email", enabled=False)
    )
    repository.upsert_client(
        ClientRecord(id="email-only", tenant_id=TENANT, email="a@example.com", first_name="Ana", purchased_at=PURCHASE)
    )
    repository.upsert_client(
        ClientRecord(
            id="both",
            tenant_id=TENANT,
            email="b@example.com",
            phone="+33600000001",
            first_name="Ben",
            last_name="Okafor",
            purchased_at=PURCHASE,
        )
    )
    repository.upsert_client(
        ClientRecord(id="gone", tenant_id=TENANT, email="c@example.com", unsubscribed=True, purchased_at=PURCHASE)
    )


def test_seven_day_email_rule_lands_on_paris_opening() -> None:
    scheduled = compute_scheduled_at(PURCHASE, 7, _paris_policy(), now=PLAN_NOW)
    assert scheduled == datetime(2025, 1, 8, 8, 0, tzinfo=timezone.utc)


def test_past_reference_is_moved_to_now_before_clamping() -> None:
    now = datetime(2025, 1, 20, 10, 30, tzinfo=timezone.utc)  # Monday 11:30 Paris
    assert compute_scheduled_at(PURCHASE, 7, _paris_policy(), now=now) == now


def test_compute_without_policy_adds_plain_days() -> None:
    assert compute_scheduled_at(PURCHASE, 2, None, now=PLAN_NOW) == datetime(2025, 1, 3, tzinfo=timezone.utc)


def test_plan_for_tenant_respects_eligibility(repository: ReminderStoreRepository) -> None:
    _seed(repository)

    result = SchedulePlanner(repository=repository).plan_for_tenant(TENANT, now=PLAN_NOW)

    assert result.clients_considered == 3
    assert result.rules_considered == 2
    # email-only gets the email rule, both gets both rules, unsubscribed gets nothing.
    assert result.created == 3
    assert result.skipped == 0
    planned = {(sample.client_id, sample.rule_id) for sample in result.samples}
    assert planned == {("email-only", "review-7d"), ("both", "review-7d"), ("both", "sms-3d")}
    reminders = {row.client_id + ":" + (row.rule_id or ""): row for row in repository.list_reminders(TENANT)}
    assert reminders["email-only:review-7d"].scheduled_at == datetime(2025, 1, 8, 8, 0, tzinfo=timezone.utc)
    assert reminders["email-only:review-7d"].message == "Hi Ana, how was it?"
    assert reminders["both:sms-3d"].message == "Hey Ben Okafor"
    # 2025-01-04 is a Saturday, so the sms moves to Monday's opening.
    assert reminders["both:sms-3d"].scheduled_at == datetime(2025, 1, 6, 8, 0, tzinfo=timezone.utc)


def test_planning_twice_creates_nothing_the_second_time(repository: ReminderStoreRepository) -> None:
    _seed(repository)
    planner = SchedulePlanner(repository=repository)

    first = planner.plan_for_tenant(TENANT, now=PLAN_NOW)
    second = planner.plan_for_tenant(TENANT, now=PLAN_NOW)

    assert first.created == 3
    assert second.created == 0
    assert second.skipped == 3
    assert repository.count_by_status(TENANT)["scheduled"] == 3


def test_dry_run_persists_nothing(repository: ReminderStoreRepository) -> None:
    _seed(repository)
    planner = SchedulePlanner(repository=repository)

    dry = planner.plan_for_tenant(TENANT, dry_run=True, now=PLAN_NOW)

    assert dry.dry_run is True
    assert dry.created == 3
    assert len(dry.samples) == 3
    assert repository.list_reminders(TENANT) == []

    planner.plan_for_tenant(TENANT, now=PLAN_NOW)
    again = planner.plan_for_tenant(TENANT, dry_run=True, now=PLAN_NOW)
    assert (again.created, again.skipped) == (0, 3)


def test_rule_filter_and_client_limit(repository: ReminderStoreRepository) -> None:
    _seed(repository)

    result = SchedulePlanner(repository=repository).plan_for_tenant(
        TENANT,
        rule_ids=["sms-3d"],
        limit_clients=1,
        now=PLAN_NOW,
    )

    assert result.rules_considered == 1
    assert result.clients_considered == 1
    # Clients are taken in id order, so only "both" is considered and it has a phone.
    assert result.created == 1


def test_samples_are_capped_at_ten() -> None:
    repository = InMemoryReminderStoreRepository()
    repository.upsert_rule(ReminderRuleRecord(id="r1", tenant_id=TENANT, delay_days=1, channel="email"))
    for index in range(15):
        repository.upsert_client(ClientRecord(id=f"c{index:02d}", tenant_id=TENANT, email=f"c{index}@example.com"))

    result = SchedulePlanner(repository=repository).plan_for_tenant(TENANT, now=PLAN_NOW)

    assert result.created == 15
    assert len(result.samples) == 10


def test_plan_for_purchase_uses_event_date(repository: ReminderStoreRepository) -> None:
    _seed(repository)
    planner = SchedulePlanner(repository=repository)

    result = planner.plan_for_purchase(TENANT, "email-only", purchased_at=PURCHASE, now=PLAN_NOW)

    assert result.created == 1
    assert result.samples[0].scheduled_at == datetime(2025, 1, 8, 8, 0, tzinfo=timezone.utc)
    with pytest.raises(ClientNotFoundError):
        planner.plan_for_purchase(TENANT, "missing", purchased_at=PURCHASE, now=PLAN_NOW)


def test_plan_adhoc_dedupes_on_delay_and_channel(repository: ReminderStoreRepository) -> None:
    _seed(repository)
    planner = SchedulePlanner(repository=repository)

    first = planner.plan_adhoc(TENANT, "both", delay_days=2, channel="sms", message="Hi {first_name}", now=PLAN_NOW)
    second = planner.plan_adhoc(TENANT, "both", delay_days=2, channel="sms", message="Hi again", now=PLAN_NOW)
    other = planner.plan_adhoc(TENANT, "both", delay_days=2, channel="email", message="Hi", now=PLAN_NOW)

    assert (first.created, second.created, second.skipped, other.created) == (1, 0, 1, 1)
    rows = repository.list_reminders(TENANT, channel="sms")
    assert [row.message for row in rows] == ["Hi Ben"]
    assert rows[0].rule_id is None


def test_render_template_leaves_unknown_placeholders() -> None:
    client = ClientRecord(id="x", tenant_id=TENANT, first_name="Ana")
    assert render_template("{first_name} {coupon}", client) == "Ana {coupon}"
    assert render_template(None, client) is None
