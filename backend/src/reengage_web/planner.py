from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Iterable

from .reminder_store import (
    ClientNotFoundError,
    ClientRecord,
    NewReminder,
    ReminderRuleRecord,
    ReminderStoreRepository,
)
from .send_window import SendWindowPolicy, add_local_days, next_window_open

logger = logging.getLogger(__name__)

MAX_PLAN_SAMPLES = 10


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


def _coerce_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


@dataclass(frozen=True)
class PlannedReminder:
    client_id: str
    rule_id: str | None
    channel: str
    scheduled_at: datetime


@dataclass
class PlanResult:
    dry_run: bool
    clients_considered: int = 0
    rules_considered: int = 0
    created: int = 0
    skipped: int = 0
    samples: list[PlannedReminder] = field(default_factory=list)


def compute_scheduled_at(
    reference: datetime,
    delay_days: int,
    policy: SendWindowPolicy | None,
    *,
    now: datetime,
) -> datetime:
    """Reference plus ``delay_days`` on the tenant's calendar, moved into the send window.

    Results that land in the past are pulled forward to ``now`` first, so a late
    planning run never produces a reminder that is already overdue by days.
    """
    candidate = add_local_days(reference, delay_days, policy)
    normalized_now = _coerce_utc(now)
    if candidate < normalized_now:
        candidate = normalized_now
    return next_window_open(candidate, policy)


def render_template(template: str | None, client: ClientRecord) -> str | None:
    if template is None:
        return None
    first = (client.first_name or "").strip()
    last = (client.last_name or "").strip()
    full = " ".join(part for part in (first, last) if part)
    return template.replace("{first_name}", first).replace("{last_name}", last).replace("{name}", full)


def rule_dedupe_key(tenant_id: str, client_id: str, rule_id: str) -> str:
    return f"{tenant_id}:{client_id}:{rule_id}"


def adhoc_dedupe_key(tenant_id: str, client_id: str, delay_days: int, channel: str) -> str:
    return f"{tenant_id}:{client_id}:d{delay_days}:{channel}"


def is_eligible(client: ClientRecord, channel: str) -> bool:
    if client.unsubscribed:
        return False
    return client.address_for(channel) is not None


class SchedulePlanner:
    def __init__(self, *, repository: ReminderStoreRepository) -> None:
        self._repository = repository

    def plan_for_tenant(
        self,
        tenant_id: str,
        *,
        dry_run: bool = False,
        rule_ids: Iterable[str] | None = None,
        limit_clients: int | None = None,
        now: datetime | None = None,
    ) -> PlanResult:
        resolved_now = _coerce_utc(now) if now is not None else _now_utc()
        rules = self._repository.list_rules(tenant_id, enabled_only=True, rule_ids=rule_ids)
        clients = self._repository.list_clients(tenant_id, limit=limit_clients)
        policy = self._repository.get_send_window(tenant_id)
        result = PlanResult(dry_run=dry_run, clients_considered=len(clients), rules_considered=len(rules))
        for client in clients:
            reference = client.purchased_at or resolved_now
            for rule in rules:
                self._plan_one(result, tenant_id, client, rule, reference, policy, resolved_now)
        logger.info(
            "planned reminders tenant=%s dry_run=%s clients=%s rules=%s created=%s skipped=%s",
            tenant_id,
            dry_run,
            result.clients_considered,
            result.rules_considered,
            result.created,
            result.skipped,
        )
        return result

    def plan_for_purchase(
        self,
        tenant_id: str,
        client_id: str,
        *,
        purchased_at: datetime,
        dry_run: bool = False,
        now: datetime | None = None,
    ) -> PlanResult:
        resolved_now = _coerce_utc(now) if now is not None else _now_utc()
        client = self._repository.get_client(tenant_id, client_id)
        if client is None:
            raise ClientNotFoundError(client_id)
        rules = self._repository.list_rules(tenant_id, enabled_only=True)
        policy = self._repository.get_send_window(tenant_id)
        result = PlanResult(dry_run=dry_run, clients_considered=1, rules_considered=len(rules))
        reference = _coerce_utc(purchased_at)
        for rule in rules:
            self._plan_one(result, tenant_id, client, rule, reference, policy, resolved_now)
        return result

    def plan_adhoc(
        self,
        tenant_id: str,
        client_id: str,
        *,
        delay_days: int,
        channel: str,
        message: str | None,
        reference: datetime | None = None,
        dry_run: bool = False,
        now: datetime | None = None,
    ) -> PlanResult:
        """Plan a single rule-less reminder, deduplicated on delay and channel."""
        resolved_now = _coerce_utc(now) if now is not None else _now_utc()
        client = self._repository.get_client(tenant_id, client_id)
        if client is None:
            raise ClientNotFoundError(client_id)
        policy = self._repository.get_send_window(tenant_id)
        result = PlanResult(dry_run=dry_run, clients_considered=1, rules_considered=0)
        if not is_eligible(client, channel):
            return result
        base = _coerce_utc(reference) if reference is not None else (client.purchased_at or resolved_now)
        scheduled_at = compute_scheduled_at(base, delay_days, policy, now=resolved_now)
        self._store(
            result,
            NewReminder(
                tenant_id=tenant_id,
                client_id=client.id,
                rule_id=None,
                channel=channel,
                message=render_template(message, client),
                scheduled_at=scheduled_at,
                dedupe_key=adhoc_dedupe_key(tenant_id, client.id, delay_days, channel),
            ),
        )
        return result

    def _plan_one(
        self,
        result: PlanResult,
        tenant_id: str,
        client: ClientRecord,
        rule: ReminderRuleRecord,
        reference: datetime,
        policy: SendWindowPolicy | None,
        now: datetime,
    ) -> None:
        if not is_eligible(client, rule.channel):
            return
        self._store(
            result,
            NewReminder(
                tenant_id=tenant_id,
                client_id=client.id,
                rule_id=rule.id,
                channel=rule.channel,
                message=render_template(rule.message_template, client),
                scheduled_at=compute_scheduled_at(reference, rule.delay_days, policy, now=now),
                dedupe_key=rule_dedupe_key(tenant_id, client.id, rule.id),
            ),
        )

    def _store(self, result: PlanResult, reminder: NewReminder) -> None:
        if result.dry_run:
            if reminder.dedupe_key is not None and self._repository.dedupe_key_exists(reminder.dedupe_key):
                result.skipped += 1
                return
        elif self._repository.insert_reminder_if_absent(reminder) is None:
            result.skipped += 1
            return

        result.created += 1
        if len(result.samples) < MAX_PLAN_SAMPLES:
            result.samples.append(
                PlannedReminder(
                    client_id=reminder.client_id,
                    rule_id=reminder.rule_id,
                    channel=reminder.channel,
                    scheduled_at=reminder.scheduled_at,
                )
            )
