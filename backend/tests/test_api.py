from __future__ import annotations

from datetime import datetime, timedelta, timezone

from fastapi.testclient import TestClient

from reengage_web import api as api_module
from reengage_web.main import create_app
from reengage_web.providers import ProviderRouter, StubChannelTransport
from reengage_web.reminder_store import ClientRecord, NewReminder, ReminderRuleRecord
from reengage_web.send_window import parse_send_window

TENANT = "tenant-a"
BASE = "/api/v1/reengage"
HEADERS = {"X-Tenant-Id": TENANT}


def _client() -> TestClient:
    api_module.reset_runtime_state_for_tests()
    api_module.provider_router = ProviderRouter(
        {channel: StubChannelTransport(channel=channel) for channel in ("email", "sms", "chat")}
    )
    return TestClient(create_app())


def _cron_headers() -> dict[str, str]:
    return {"Authorization": f"Bearer {api_module._settings.cron_secret}"}


def _seed_client(client_id: str = "client-1", **overrides) -> None:
    api_module.reminder_repo.upsert_client(
        ClientRecord(
            id=client_id,
            tenant_id=TENANT,
            email=overrides.get("email", f"{client_id}@example.com"),
            phone=overrides.get("phone"),
            first_name=overrides.get("first_name", "Ana"),
            purchased_at=overrides.get("purchased_at"),
        )
    )


def _seed_due(*, message: str | None = "Thanks!", client_id: str = "client-1", minutes_ago: int = 5) -> str:
    record = api_module.reminder_repo.insert_reminder_if_absent(
        NewReminder(
            tenant_id=TENANT,
            client_id=client_id,
            rule_id=None,
            channel="email",
            message=message,
            scheduled_at=datetime.now(timezone.utc) - timedelta(minutes=minutes_ago),
        )
    )
    assert record is not None
    return record.id


def test_cron_dispatch_requires_secret() -> None:
    client = _client()

    assert client.post(f"{BASE}/cron/dispatch").status_code == 401
    assert client.post(f"{BASE}/cron/dispatch", headers={"Authorization": "Bearer wrong"}).status_code == 401
    assert client.get(f"{BASE}/cron/dispatch?secret=wrong").status_code == 401


def test_cron_dispatch_processes_due_reminders() -> None:
    client = _client()
    _seed_client()
    _seed_client("client-fail", email="fail@example.com")
    _seed_due()
    _seed_due(message="")
    _seed_due(client_id="client-fail")

    response = client.post(f"{BASE}/cron/dispatch", headers=_cron_headers())

    assert response.status_code == 200
    assert response.json() == {"processed": 3, "sent": 1, "failed": 1, "retried": 1, "skipped": 0}

    overview = client.get(f"{BASE}/reminders/overview", headers=HEADERS).json()
    assert overview["sent"] == 1
    assert overview["failed"] == 1
    assert overview["scheduled"] == 1

    logs = client.get(f"{BASE}/reminders/logs?limit=10", headers=HEADERS).json()["logs"]
    assert len(logs) == 3
    assert sorted(log["outcome"] for log in logs) == ["failed", "failed", "success"]
    retry_log = next(log for log in logs if log["error_detail"] and log["error_detail"]["code"] == "stub_delivery_failed")
    assert retry_log["error_detail"]["retry_in_seconds"] > 0


def test_cron_dispatch_accepts_query_secret_and_batch_size() -> None:
    client = _client()
    _seed_client()
    for minutes in (3, 2, 1):
        _seed_due(minutes_ago=minutes)

    secret = api_module._settings.cron_secret
    first = client.get(f"{BASE}/cron/dispatch?secret={secret}&batch_size=2")
    second = client.get(f"{BASE}/cron/dispatch?secret={secret}")

    assert first.json()["processed"] == 2
    assert second.json()["processed"] == 1


def test_cron_dispatch_claim_failure_returns_500(monkeypatch) -> None:
    client = _client()

    def _boom(**kwargs):
        raise RuntimeError("database unavailable")

    monkeypatch.setattr(api_module.reminder_repo, "claim_due", _boom)

    response = client.post(f"{BASE}/cron/dispatch", headers=_cron_headers())

    assert response.status_code == 500
    assert response.json()["detail"] == "dispatch_failed"


def test_plan_endpoint_dry_run_then_commit() -> None:
    client = _client()
    api_module.reminder_repo.set_send_window(
        TENANT,
        parse_send_window(timezone_name="Europe/Paris", days=[1, 2, 3, 4, 5], start="09:00", end="18:00"),
    )
    api_module.reminder_repo.upsert_rule(
        ReminderRuleRecord(id="review-7d", tenant_id=TENANT, delay_days=7, channel="email", message_template="Hi")
    )
    _seed_client(purchased_at=datetime(2025, 1, 1, tzinfo=timezone.utc))
    body = {"dry_run": True, "now_override": "2025-01-01T12:00:00Z"}

    dry = client.post(f"{BASE}/reminders/plan", json=body, headers=HEADERS)
    assert dry.status_code == 200
    assert dry.json()["created"] == 1
    assert dry.json()["samples"][0]["scheduled_at"].startswith("2025-01-08T08:00:00")
    assert client.get(f"{BASE}/reminders", headers=HEADERS).json()["items"] == []

    committed = client.post(f"{BASE}/reminders/plan", json={**body, "dry_run": False}, headers=HEADERS)
    repeat = client.post(f"{BASE}/reminders/plan", json={**body, "dry_run": False}, headers=HEADERS)
    assert committed.json()["created"] == 1
    assert repeat.json()["created"] == 0
    assert repeat.json()["skipped"] == 1


def test_plan_requires_tenant_header() -> None:
    client = _client()
    assert client.post(f"{BASE}/reminders/plan", json={}).status_code == 400


def test_purchase_plan_unknown_client_is_404() -> None:
    client = _client()
    response = client.post(
        f"{BASE}/reminders/plan/purchase",
        json={"client_id": "missing", "purchased_at": "2025-01-01T00:00:00Z"},
        headers=HEADERS,
    )
    assert response.status_code == 404


def test_manual_create_and_list_filters() -> None:
    client = _client()
    _seed_client()

    created = client.post(
        f"{BASE}/reminders",
        json={"client_id": "client-1", "channel": "email", "message": "Hello", "scheduled_at": "2030-01-01T10:00:00Z"},
        headers=HEADERS,
    )

    assert created.status_code == 201
    assert created.json()["status"] == "scheduled"
    assert created.json()["next_attempt_at"].startswith("2030-01-01T10:00:00")
    assert len(client.get(f"{BASE}/reminders?status=scheduled", headers=HEADERS).json()["items"]) == 1
    assert client.get(f"{BASE}/reminders?channel=sms", headers=HEADERS).json()["items"] == []
    assert client.get(f"{BASE}/reminders", headers={"X-Tenant-Id": "tenant-b"}).json()["items"] == []
    missing = client.post(
        f"{BASE}/reminders",
        json={"client_id": "nobody", "scheduled_at": "2030-01-01T10:00:00Z"},
        headers=HEADERS,
    )
    assert missing.status_code == 404


def test_cancel_endpoint_status_codes() -> None:
    client = _client()
    _seed_client()
    reminder_id = _seed_due()

    assert client.post(f"{BASE}/reminders/rem_missing/cancel", headers=HEADERS).status_code == 404
    canceled = client.post(f"{BASE}/reminders/{reminder_id}/cancel", headers=HEADERS)
    assert canceled.status_code == 200
    assert canceled.json() == {"reminder_id": reminder_id, "status": "canceled"}
    assert client.post(f"{BASE}/reminders/{reminder_id}/cancel", headers=HEADERS).status_code == 409

    dispatched = client.post(f"{BASE}/cron/dispatch", headers=_cron_headers()).json()
    assert dispatched["processed"] == 0


def test_send_now_endpoint() -> None:
    client = _client()
    _seed_client()
    reminder_id = _seed_due(minutes_ago=-60 * 24)

    assert client.post(f"{BASE}/reminders/rem_missing/send-now", headers=HEADERS).status_code == 404
    sent = client.post(f"{BASE}/reminders/{reminder_id}/send-now", headers=HEADERS)
    assert sent.status_code == 200
    assert sent.json()["outcome"] == "sent"
    assert sent.json()["status"] == "sent"
    assert sent.json()["provider_id"].startswith("stub-email-")
    assert client.post(f"{BASE}/reminders/{reminder_id}/send-now", headers=HEADERS).status_code == 409


def test_unsubscribe_cancels_pending_and_blocks_planning() -> None:
    client = _client()
    _seed_client()
    api_module.reminder_repo.upsert_rule(
        ReminderRuleRecord(id="r1", tenant_id=TENANT, delay_days=1, channel="email", message_template="Hi")
    )
    _seed_due()
    _seed_due(minutes_ago=-60)

    response = client.post(f"{BASE}/unsubscribe/client-1", headers=HEADERS)

    assert response.status_code == 200
    assert response.json() == {"client_id": "client-1", "unsubscribed": True, "canceled_count": 2}
    planned = client.post(f"{BASE}/reminders/plan", json={}, headers=HEADERS).json()
    assert planned["created"] == 0
    assert client.post(f"{BASE}/unsubscribe/nobody", headers=HEADERS).status_code == 404


def test_logs_limit_is_bounded() -> None:
    client = _client()
    assert client.get(f"{BASE}/reminders/logs?limit=51", headers=HEADERS).status_code == 422


def test_preview_renders_message_for_client() -> None:
    client = _client()
    _seed_client()
    created = client.post(
        f"{BASE}/reminders",
        json={
            "client_id": "client-1",
            "channel": "email",
            "message": "Hi {first_name}!",
            "scheduled_at": "2030-01-01T10:00:00Z",
        },
        headers=HEADERS,
    ).json()

    preview = client.get(f"{BASE}/reminders/{created['id']}/preview", headers=HEADERS)

    assert preview.status_code == 200
    body = preview.json()
    assert body["message"] == "Hi Ana!"
    assert body["recipient"] == "c***@example.com"
    assert body["deliverable"] is True
    assert body["status"] == "scheduled"
    assert client.get(f"{BASE}/reminders/rem_missing/preview", headers=HEADERS).status_code == 404

    client.post(f"{BASE}/unsubscribe/client-1", headers=HEADERS)
    assert client.get(f"{BASE}/reminders/{created['id']}/preview", headers=HEADERS).json()["deliverable"] is False
