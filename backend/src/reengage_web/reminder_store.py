from __future__ import annotations

import json
import secrets
import threading
from dataclasses import dataclass, replace
from datetime import datetime, time, timezone
from typing import Any, Iterable, Protocol

from sqlalchemy import Boolean, DateTime, Integer, String, Text, create_engine, func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, sessionmaker

from .send_window import SendWindowPolicy, parse_send_window

CANCELABLE_STATUSES = frozenset({"draft", "scheduled", "sending"})
REMINDER_STATUSES = ("draft", "scheduled", "sending", "sent", "failed", "canceled")


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


def _coerce_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _optional_utc(value: datetime | None) -> datetime | None:
    return _coerce_utc(value) if value is not None else None


def new_reminder_id() -> str:
    return f"rem_{secrets.token_hex(8)}"


def new_claim_token() -> str:
    return f"claim_{secrets.token_hex(8)}"


class ReminderNotFoundError(KeyError):
    pass


class ClientNotFoundError(KeyError):
    pass


class ReminderStateError(ValueError):
    def __init__(self, reminder_id: str, status: str, action: str) -> None:
        super().__init__(f"reminder {reminder_id} cannot {action} from status {status}")
        self.reminder_id = reminder_id
        self.status = status
        self.action = action


@dataclass(frozen=True)
class ClientRecord:
    id: str
    tenant_id: str
    email: str | None = None
    phone: str | None = None
    first_name: str | None = None
    last_name: str | None = None
    unsubscribed: bool = False
    purchased_at: datetime | None = None
    unsubscribed_at: datetime | None = None

    def address_for(self, channel: str) -> str | None:
        raw = self.email if channel == "email" else self.phone
        if raw is None or not raw.strip():
            return None
        return raw.strip()


@dataclass(frozen=True)
class ReminderRuleRecord:
    id: str
    tenant_id: str
    delay_days: int
    channel: str
    message_template: str | None = None
    position: int = 0
    enabled: bool = True


@dataclass(frozen=True)
class ReminderRecord:
    id: str
    tenant_id: str
    client_id: str
    rule_id: str | None
    channel: str
    message: str | None
    status: str
    scheduled_at: datetime
    next_attempt_at: datetime | None
    retry_count: int
    last_attempt_at: datetime | None
    last_error_code: str | None
    last_error: str | None
    sent_at: datetime | None
    provider_id: str | None
    dedupe_key: str | None
    claim_token: str | None
    created_at: datetime
    updated_at: datetime


@dataclass(frozen=True)
class NewReminder:
    tenant_id: str
    client_id: str
    rule_id: str | None
    channel: str
    message: str | None
    scheduled_at: datetime
    dedupe_key: str | None = None
    status: str = "scheduled"


@dataclass(frozen=True)
class DispatchLogRecord:
    id: int
    tenant_id: str
    reminder_id: str
    channel: str
    outcome: str
    provider_id: str | None
    error_detail: dict[str, Any] | None
    created_at: datetime


class ReminderStoreRepository(Protocol):
    def reset(self) -> None: ...

    def upsert_client(self, client: ClientRecord) -> ClientRecord: ...

    def get_client(self, tenant_id: str, client_id: str) -> ClientRecord | None: ...

    def list_clients(self, tenant_id: str, *, limit: int | None = None) -> list[ClientRecord]: ...

    def upsert_rule(self, rule: ReminderRuleRecord) -> ReminderRuleRecord: ...

    def list_rules(
        self,
        tenant_id: str,
        *,
        enabled_only: bool = True,
        rule_ids: Iterable[str] | None = None,
    ) -> list[ReminderRuleRecord]: ...

    def set_send_window(self, tenant_id: str, policy: SendWindowPolicy | None) -> None: ...

    def get_send_window(self, tenant_id: str) -> SendWindowPolicy | None: ...

    def dedupe_key_exists(self, dedupe_key: str) -> bool: ...

    def insert_reminder_if_absent(self, reminder: NewReminder) -> ReminderRecord | None: ...

    def get_reminder(self, tenant_id: str, reminder_id: str) -> ReminderRecord | None: ...

    def list_reminders(
        self,
        tenant_id: str,
        *,
        status: str | None = None,
        channel: str | None = None,
        limit: int = 100,
    ) -> list[ReminderRecord]: ...

    def count_by_status(self, tenant_id: str) -> dict[str, int]: ...

    def claim_due(self, *, now: datetime, limit: int, claim_token: str) -> list[ReminderRecord]: ...

    def claim_one(self, tenant_id: str, reminder_id: str, *, claim_token: str) -> ReminderRecord: ...

    def mark_sent(self, reminder_id: str, *, claim_token: str, provider_id: str | None, at: datetime) -> bool: ...

    def mark_retry(
        self,
        reminder_id: str,
        *,
        claim_token: str,
        error_code: str,
        error_message: str | None,
        attempted_at: datetime,
        next_attempt_at: datetime,
    ) -> bool: ...

    def mark_failed(
        self,
        reminder_id: str,
        *,
        claim_token: str,
        error_code: str,
        error_message: str | None,
        attempted_at: datetime,
    ) -> bool: ...

    def mark_window_skipped(self, reminder_id: str, *, claim_token: str, next_attempt_at: datetime) -> bool: ...

    def cancel(self, tenant_id: str, reminder_id: str) -> ReminderRecord: ...

    def unsubscribe_client(self, tenant_id: str, client_id: str, *, at: datetime) -> int: ...

    def append_log(
        self,
        *,
        tenant_id: str,
        reminder_id: str,
        channel: str,
        outcome: str,
        provider_id: str | None = None,
        error_detail: dict[str, Any] | None = None,
    ) -> DispatchLogRecord: ...

    def list_logs(self, tenant_id: str, *, limit: int = 20) -> list[DispatchLogRecord]: ...


class InMemoryReminderStoreRepository:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._log_counter = 1
        self._clients: dict[tuple[str, str], ClientRecord] = {}
        self._rules: dict[tuple[str, str], ReminderRuleRecord] = {}
        self._windows: dict[str, SendWindowPolicy] = {}
        self._reminders: dict[str, ReminderRecord] = {}
        self._dedupe_keys: dict[str, str] = {}
        self._logs: list[DispatchLogRecord] = []

    def reset(self) -> None:
        with self._lock:
            self._log_counter = 1
            self._clients.clear()
            self._rules.clear()
            self._windows.clear()
            self._reminders.clear()
            self._dedupe_keys.clear()
            self._logs.clear()

    def upsert_client(self, client: ClientRecord) -> ClientRecord:
        normalized = replace(
            client,
            purchased_at=_optional_utc(client.purchased_at),
            unsubscribed_at=_optional_utc(client.unsubscribed_at),
        )
        with self._lock:
            self._clients[(client.tenant_id, client.id)] = normalized
        return normalized

    def get_client(self, tenant_id: str, client_id: str) -> ClientRecord | None:
        with self._lock:
            return self._clients.get((tenant_id, client_id))

    def list_clients(self, tenant_id: str, *, limit: int | None = None) -> list[ClientRecord]:
        with self._lock:
            rows = [row for (tenant, _), row in self._clients.items() if tenant == tenant_id]
        rows.sort(key=lambda row: row.id)
        return rows[:limit] if limit is not None else rows

    def upsert_rule(self, rule: ReminderRuleRecord) -> ReminderRuleRecord:
        with self._lock:
            self._rules[(rule.tenant_id, rule.id)] = rule
        return rule

    def list_rules(
        self,
        tenant_id: str,
        *,
        enabled_only: bool = True,
        rule_ids: Iterable[str] | None = None,
    ) -> list[ReminderRuleRecord]:
        wanted = set(rule_ids) if rule_ids is not None else None
        with self._lock:
            rows = [
                row
                for (tenant, rule_id), row in self._rules.items()
                if tenant == tenant_id
                and (not enabled_only or row.enabled)
                and (wanted is None or rule_id in wanted)
            ]
        return sorted(rows, key=lambda row: (row.position, row.id))

    def set_send_window(self, tenant_id: str, policy: SendWindowPolicy | None) -> None:
        with self._lock:
            if policy is None:
                self._windows.pop(tenant_id, None)
            else:
                self._windows[tenant_id] = policy

    def get_send_window(self, tenant_id: str) -> SendWindowPolicy | None:
        with self._lock:
            return self._windows.get(tenant_id)

    def dedupe_key_exists(self, dedupe_key: str) -> bool:
        with self._lock:
            return dedupe_key in self._dedupe_keys

    def insert_reminder_if_absent(self, reminder: NewReminder) -> ReminderRecord | None:
        now = _now_utc()
        scheduled_at = _coerce_utc(reminder.scheduled_at)
        with self._lock:
            if reminder.dedupe_key is not None and reminder.dedupe_key in self._dedupe_keys:
                return None
            record = ReminderRecord(
                id=new_reminder_id(),
                tenant_id=reminder.tenant_id,
                client_id=reminder.client_id,
                rule_id=reminder.rule_id,
                channel=reminder.channel,
                message=reminder.message,
                status=reminder.status,
                scheduled_at=scheduled_at,
                next_attempt_at=scheduled_at if reminder.status == "scheduled" else None,
                retry_count=0,
                last_attempt_at=None,
                last_error_code=None,
                last_error=None,
                sent_at=None,
                provider_id=None,
                dedupe_key=reminder.dedupe_key,
                claim_token=None,
                created_at=now,
                updated_at=now,
            )
            self._reminders[record.id] = record
            if reminder.dedupe_key is not None:
                self._dedupe_keys[reminder.dedupe_key] = record.id
        return record

    def get_reminder(self, tenant_id: str, reminder_id: str) -> ReminderRecord | None:
        with self._lock:
            row = self._reminders.get(reminder_id)
        if row is None or row.tenant_id != tenant_id:
            return None
        return row

    def list_reminders(
        self,
        tenant_id: str,
        *,
        status: str | None = None,
        channel: str | None = None,
        limit: int = 100,
    ) -> list[ReminderRecord]:
        with self._lock:
            rows = [
                row
                for row in self._reminders.values()
                if row.tenant_id == tenant_id
                and (status is None or row.status == status)
                and (channel is None or row.channel == channel)
            ]
        rows.sort(key=lambda row: (row.scheduled_at, row.id), reverse=True)
        return rows[:limit]

    def count_by_status(self, tenant_id: str) -> dict[str, int]:
        counts = {status: 0 for status in REMINDER_STATUSES}
        with self._lock:
            statuses = [row.status for row in self._reminders.values() if row.tenant_id == tenant_id]
        for status in statuses:
            counts[status] = counts.get(status, 0) + 1
        return counts

    def claim_due(self, *, now: datetime, limit: int, claim_token: str) -> list[ReminderRecord]:
        normalized_now = _coerce_utc(now)
        with self._lock:
            due = sorted(
                (
                    row
                    for row in self._reminders.values()
                    if row.status == "scheduled"
                    and row.next_attempt_at is not None
                    and row.next_attempt_at <= normalized_now
                ),
                key=lambda row: (row.next_attempt_at, row.id),
            )
            claimed: list[ReminderRecord] = []
            for row in due[: max(0, limit)]:
                updated = replace(row, status="sending", claim_token=claim_token, updated_at=_now_utc())
                self._reminders[row.id] = updated
                claimed.append(updated)
        return claimed

    def claim_one(self, tenant_id: str, reminder_id: str, *, claim_token: str) -> ReminderRecord:
        with self._lock:
            row = self._reminders.get(reminder_id)
            if row is None or row.tenant_id != tenant_id:
                raise ReminderNotFoundError(reminder_id)
            if row.status != "scheduled":
                raise ReminderStateError(reminder_id, row.status, "send now")
            updated = replace(row, status="sending", claim_token=claim_token, updated_at=_now_utc())
            self._reminders[reminder_id] = updated
        return updated

    def _finish(self, reminder_id: str, claim_token: str, *, increment_retry: bool = False, **changes: Any) -> bool:
        with self._lock:
            row = self._reminders.get(reminder_id)
            if row is None or row.status != "sending" or row.claim_token != claim_token:
                return False
            if increment_retry:
                changes["retry_count"] = row.retry_count + 1
            self._reminders[reminder_id] = replace(row, claim_token=None, updated_at=_now_utc(), **changes)
        return True

    def mark_sent(self, reminder_id: str, *, claim_token: str, provider_id: str | None, at: datetime) -> bool:
        sent_at = _coerce_utc(at)
        return self._finish(
            reminder_id,
            claim_token,
            status="sent",
            sent_at=sent_at,
            last_attempt_at=sent_at,
            next_attempt_at=None,
            provider_id=provider_id,
            last_error_code=None,
            last_error=None,
        )

    def mark_retry(
        self,
        reminder_id: str,
        *,
        claim_token: str,
        error_code: str,
        error_message: str | None,
        attempted_at: datetime,
        next_attempt_at: datetime,
    ) -> bool:
        return self._finish(
            reminder_id,
            claim_token,
            status="scheduled",
            increment_retry=True,
            last_attempt_at=_coerce_utc(attempted_at),
            next_attempt_at=_coerce_utc(next_attempt_at),
            last_error_code=error_code,
            last_error=error_message,
        )

    def mark_failed(
        self,
        reminder_id: str,
        *,
        claim_token: str,
        error_code: str,
        error_message: str | None,
        attempted_at: datetime,
    ) -> bool:
        return self._finish(
            reminder_id,
            claim_token,
            status="failed",
            last_attempt_at=_coerce_utc(attempted_at),
            next_attempt_at=None,
            last_error_code=error_code,
            last_error=error_message,
        )

    def mark_window_skipped(self, reminder_id: str, *, claim_token: str, next_attempt_at: datetime) -> bool:
        return self._finish(
            reminder_id,
            claim_token,
            status="scheduled",
            next_attempt_at=_coerce_utc(next_attempt_at),
        )

    def cancel(self, tenant_id: str, reminder_id: str) -> ReminderRecord:
        with self._lock:
            row = self._reminders.get(reminder_id)
            if row is None or row.tenant_id != tenant_id:
                raise ReminderNotFoundError(reminder_id)
            if row.status not in CANCELABLE_STATUSES:
                raise ReminderStateError(reminder_id, row.status, "cancel")
            updated = replace(
                row,
                status="canceled",
                next_attempt_at=None,
                claim_token=None,
                updated_at=_now_utc(),
            )
            self._reminders[reminder_id] = updated
        return updated

    def unsubscribe_client(self, tenant_id: str, client_id: str, *, at: datetime) -> int:
        unsubscribed_at = _coerce_utc(at)
        with self._lock:
            client = self._clients.get((tenant_id, client_id))
            if client is None:
                raise ClientNotFoundError(client_id)
            if not client.unsubscribed:
                self._clients[(tenant_id, client_id)] = replace(
                    client,
                    unsubscribed=True,
                    unsubscribed_at=unsubscribed_at,
                )
            canceled = 0
            for reminder_id, row in list(self._reminders.items()):
                if row.tenant_id != tenant_id or row.client_id != client_id:
                    continue
                if row.status not in CANCELABLE_STATUSES:
                    continue
                self._reminders[reminder_id] = replace(
                    row,
                    status="canceled",
                    next_attempt_at=None,
                    claim_token=None,
                    updated_at=_now_utc(),
                )
                canceled += 1
        return canceled

    def append_log(
        self,
        *,
        tenant_id: str,
        reminder_id: str,
        channel: str,
        outcome: str,
        provider_id: str | None = None,
        error_detail: dict[str, Any] | None = None,
    ) -> DispatchLogRecord:
        with self._lock:
            record = DispatchLogRecord(
                id=self._log_counter,
                tenant_id=tenant_id,
                reminder_id=reminder_id,
                channel=channel,
                outcome=outcome,
                provider_id=provider_id,
                error_detail=dict(error_detail) if error_detail is not None else None,
                created_at=_now_utc(),
            )
            self._log_counter += 1
            self._logs.append(record)
        return record

    def list_logs(self, tenant_id: str, *, limit: int = 20) -> list[DispatchLogRecord]:
        with self._lock:
            rows = [row for row in self._logs if row.tenant_id == tenant_id]
        return list(reversed(rows))[:limit]


class ReengageBase(DeclarativeBase):
    pass


class _ClientRow(ReengageBase):
    __tablename__ = "clients"

    tenant_id: Mapped[str] = mapped_column(String(128), primary_key=True)
    id: Mapped[str] = mapped_column(String(128), primary_key=True)
    email: Mapped[str | None] = mapped_column(String(320), nullable=True)
    phone: Mapped[str | None] = mapped_column(String(64), nullable=True)
    first_name: Mapped[str | None] = mapped_column(String(128), nullable=True)
    last_name: Mapped[str | None] = mapped_column(String(128), nullable=True)
    unsubscribed: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    purchased_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    unsubscribed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)


class _ReminderRuleRow(ReengageBase):
    __tablename__ = "reminder_rules"

    tenant_id: Mapped[str] = mapped_column(String(128), primary_key=True)
    id: Mapped[str] = mapped_column(String(128), primary_key=True)
    delay_days: Mapped[int] = mapped_column(Integer, nullable=False)
    channel: Mapped[str] = mapped_column(String(16), nullable=False)
    message_template: Mapped[str | None] = mapped_column(Text, nullable=True)
    position: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)


class _SendWindowRow(ReengageBase):
    __tablename__ = "send_window_policies"

    tenant_id: Mapped[str] = mapped_column(String(128), primary_key=True)
    timezone: Mapped[str] = mapped_column(String(64), nullable=False)
    days: Mapped[str] = mapped_column(String(32), nullable=False)
    start_time: Mapped[str] = mapped_column(String(5), nullable=False)
    end_time: Mapped[str] = mapped_column(String(5), nullable=False)


class _ReminderRow(ReengageBase):
    __tablename__ = "reminders"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    tenant_id: Mapped[str] = mapped_column(String(128), nullable=False, index=True)
    client_id: Mapped[str] = mapped_column(String(128), nullable=False, index=True)
    rule_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    channel: Mapped[str] = mapped_column(String(16), nullable=False)
    message: Mapped[str | None] = mapped_column(Text, nullable=True)
    status: Mapped[str] = mapped_column(String(16), nullable=False, index=True)
    scheduled_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    next_attempt_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True, index=True)
    retry_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_attempt_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    last_error_code: Mapped[str | None] = mapped_column(String(128), nullable=True)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    sent_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    provider_id: Mapped[str | None] = mapped_column(String(256), nullable=True)
    dedupe_key: Mapped[str | None] = mapped_column(String(512), nullable=True, unique=True)
    claim_token: Mapped[str | None] = mapped_column(String(64), nullable=True, index=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


class _DispatchLogRow(ReengageBase):
    __tablename__ = "dispatch_logs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    tenant_id: Mapped[str] = mapped_column(String(128), nullable=False, index=True)
    reminder_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    channel: Mapped[str] = mapped_column(String(16), nullable=False)
    outcome: Mapped[str] = mapped_column(String(32), nullable=False)
    provider_id: Mapped[str | None] = mapped_column(String(256), nullable=True)
    error_detail_json: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


def _client_from_row(row: _ClientRow) -> ClientRecord:
    return ClientRecord(
        id=row.id,
        tenant_id=row.tenant_id,
        email=row.email,
        phone=row.phone,
        first_name=row.first_name,
        last_name=row.last_name,
        unsubscribed=bool(row.unsubscribed),
        purchased_at=_optional_utc(row.purchased_at),
        unsubscribed_at=_optional_utc(row.unsubscribed_at),
    )


def _rule_from_row(row: _ReminderRuleRow) -> ReminderRuleRecord:
    return ReminderRuleRecord(
        id=row.id,
        tenant_id=row.tenant_id,
        delay_days=row.delay_days,
        channel=row.channel,
        message_template=row.message_template,
        position=row.position,
        enabled=bool(row.enabled),
    )


def _reminder_from_row(row: _ReminderRow) -> ReminderRecord:
    return ReminderRecord(
        id=row.id,
        tenant_id=row.tenant_id,
        client_id=row.client_id,
        rule_id=row.rule_id,
        channel=row.channel,
        message=row.message,
        status=row.status,
        scheduled_at=_coerce_utc(row.scheduled_at),
        next_attempt_at=_optional_utc(row.next_attempt_at),
        retry_count=row.retry_count,
        last_attempt_at=_optional_utc(row.last_attempt_at),
        last_error_code=row.last_error_code,
        last_error=row.last_error,
        sent_at=_optional_utc(row.sent_at),
        provider_id=row.provider_id,
        dedupe_key=row.dedupe_key,
        claim_token=row.claim_token,
        created_at=_coerce_utc(row.created_at),
        updated_at=_coerce_utc(row.updated_at),
    )


def _log_from_row(row: _DispatchLogRow) -> DispatchLogRecord:
    return DispatchLogRecord(
        id=row.id,
        tenant_id=row.tenant_id,
        reminder_id=row.reminder_id,
        channel=row.channel,
        outcome=row.outcome,
        provider_id=row.provider_id,
        error_detail=json.loads(row.error_detail_json) if row.error_detail_json else None,
        created_at=_coerce_utc(row.created_at),
    )


def _format_time(value: time) -> str:
    return value.strftime("%H:%M")


class SqlAlchemyReminderStoreRepository:
    def __init__(self, database_url: str) -> None:
        if not database_url:
            raise RuntimeError("DATABASE_URL is required for REMINDER_STORE_BACKEND=postgres")
        connect_args: dict[str, Any] = {}
        if database_url.startswith("sqlite"):
            # Dispatch workers share the engine across threads.
            connect_args["check_same_thread"] = False
        self._engine = create_engine(database_url, future=True, pool_pre_ping=True, connect_args=connect_args)
        self._session_factory = sessionmaker(self._engine, expire_on_commit=False, future=True)
        if database_url.startswith("sqlite"):
            ReengageBase.metadata.create_all(self._engine)

    def _session(self):
        return self._session_factory()

    def reset(self) -> None:
        with self._session() as session:
            with session.begin():
                session.query(_DispatchLogRow).delete()
                session.query(_ReminderRow).delete()
                session.query(_SendWindowRow).delete()
                session.query(_ReminderRuleRow).delete()
                session.query(_ClientRow).delete()

    def upsert_client(self, client: ClientRecord) -> ClientRecord:
        with self._session() as session:
            with session.begin():
                row = session.get(_ClientRow, (client.tenant_id, client.id))
                if row is None:
                    row = _ClientRow(tenant_id=client.tenant_id, id=client.id)
                    session.add(row)
                row.email = client.email
                row.phone = client.phone
                row.first_name = client.first_name
                row.last_name = client.last_name
                row.unsubscribed = client.unsubscribed
                row.purchased_at = _optional_utc(client.purchased_at)
                row.unsubscribed_at = _optional_utc(client.unsubscribed_at)
                session.flush()
                return _client_from_row(row)

    def get_client(self, tenant_id: str, client_id: str) -> ClientRecord | None:
        with self._session() as session:
            row = session.get(_ClientRow, (tenant_id, client_id))
            return _client_from_row(row) if row is not None else None

    def list_clients(self, tenant_id: str, *, limit: int | None = None) -> list[ClientRecord]:
        query = select(_ClientRow).where(_ClientRow.tenant_id == tenant_id).order_by(_ClientRow.id.asc())
        if limit is not None:
            query = query.limit(limit)
        with self._session() as session:
            return [_client_from_row(row) for row in session.execute(query).scalars().all()]

    def upsert_rule(self, rule: ReminderRuleRecord) -> ReminderRuleRecord:
        with self._session() as session:
            with session.begin():
                row = session.get(_ReminderRuleRow, (rule.tenant_id, rule.id))
                if row is None:
                    row = _ReminderRuleRow(tenant_id=rule.tenant_id, id=rule.id)
                    session.add(row)
                row.delay_days = rule.delay_days
                row.channel = rule.channel
                row.message_template = rule.message_template
                row.position = rule.position
                row.enabled = rule.enabled
        return rule

    def list_rules(
        self,
        tenant_id: str,
        *,
        enabled_only: bool = True,
        rule_ids: Iterable[str] | None = None,
    ) -> list[ReminderRuleRecord]:
        query = select(_ReminderRuleRow).where(_ReminderRuleRow.tenant_id == tenant_id)
        if enabled_only:
            query = query.where(_ReminderRuleRow.enabled.is_(True))
        if rule_ids is not None:
            query = query.where(_ReminderRuleRow.id.in_(list(rule_ids)))
        query = query.order_by(_ReminderRuleRow.position.asc(), _ReminderRuleRow.id.asc())
        with self._session() as session:
            return [_rule_from_row(row) for row in session.execute(query).scalars().all()]

    def set_send_window(self, tenant_id: str, policy: SendWindowPolicy | None) -> None:
        with self._session() as session:
            with session.begin():
                row = session.get(_SendWindowRow, tenant_id)
                if policy is None:
                    if row is not None:
                        session.delete(row)
                    return
                if row is None:
                    row = _SendWindowRow(tenant_id=tenant_id)
                    session.add(row)
                row.timezone = policy.timezone
                row.days = ",".join(str(day) for day in sorted(policy.days))
                row.start_time = _format_time(policy.start)
                row.end_time = _format_time(policy.end)

    def get_send_window(self, tenant_id: str) -> SendWindowPolicy | None:
        with self._session() as session:
            row = session.get(_SendWindowRow, tenant_id)
            if row is None:
                return None
            return parse_send_window(
                timezone_name=row.timezone,
                days=[int(day) for day in row.days.split(",") if day.strip()],
                start=row.start_time,
                end=row.end_time,
            )

    def dedupe_key_exists(self, dedupe_key: str) -> bool:
        with self._session() as session:
            found = session.execute(
                select(_ReminderRow.id).where(_ReminderRow.dedupe_key == dedupe_key)
            ).first()
            return found is not None

    def insert_reminder_if_absent(self, reminder: NewReminder) -> ReminderRecord | None:
        now = _now_utc()
        scheduled_at = _coerce_utc(reminder.scheduled_at)
        row = _ReminderRow(
            id=new_reminder_id(),
            tenant_id=reminder.tenant_id,
            client_id=reminder.client_id,
            rule_id=reminder.rule_id,
            channel=reminder.channel,
            message=reminder.message,
            status=reminder.status,
            scheduled_at=scheduled_at,
            next_attempt_at=scheduled_at if reminder.status == "scheduled" else None,
            retry_count=0,
            dedupe_key=reminder.dedupe_key,
            created_at=now,
            updated_at=now,
        )
        try:
            with self._session() as session:
                with session.begin():
                    if reminder.dedupe_key is not None:
                        existing = session.execute(
                            select(_ReminderRow.id).where(_ReminderRow.dedupe_key == reminder.dedupe_key)
                        ).first()
                        if existing is not None:
                            return None
                    session.add(row)
                    session.flush()
                    return _reminder_from_row(row)
        except IntegrityError:
            # A concurrent planner inserted the same dedupe key first.
            return None

    def get_reminder(self, tenant_id: str, reminder_id: str) -> ReminderRecord | None:
        with self._session() as session:
            row = session.get(_ReminderRow, reminder_id)
            if row is None or row.tenant_id != tenant_id:
                return None
            return _reminder_from_row(row)

    def list_reminders(
        self,
        tenant_id: str,
        *,
        status: str | None = None,
        channel: str | None = None,
        limit: int = 100,
    ) -> list[ReminderRecord]:
        query = select(_ReminderRow).where(_ReminderRow.tenant_id == tenant_id)
        if status is not None:
            query = query.where(_ReminderRow.status == status)
        if channel is not None:
            query = query.where(_ReminderRow.channel == channel)
        query = query.order_by(_ReminderRow.scheduled_at.desc(), _ReminderRow.id.desc()).limit(limit)
        with self._session() as session:
            return [_reminder_from_row(row) for row in session.execute(query).scalars().all()]

    def count_by_status(self, tenant_id: str) -> dict[str, int]:
        counts = {status: 0 for status in REMINDER_STATUSES}
        query = (
            select(_ReminderRow.status, func.count())
            .where(_ReminderRow.tenant_id == tenant_id)
            .group_by(_ReminderRow.status)
        )
        with self._session() as session:
            for status, total in session.execute(query).all():
                counts[status] = int(total)
        return counts

    def claim_due(self, *, now: datetime, limit: int, claim_token: str) -> list[ReminderRecord]:
        normalized_now = _coerce_utc(now)
        due_ids = (
            select(_ReminderRow.id)
            .where(_ReminderRow.status == "scheduled")
            .where(_ReminderRow.next_attempt_at <= normalized_now)
            .order_by(_ReminderRow.next_attempt_at.asc(), _ReminderRow.id.asc())
            .limit(max(0, limit))
            .with_for_update(skip_locked=True)
        )
        claim = (
            update(_ReminderRow)
            .where(_ReminderRow.id.in_(due_ids))
            .where(_ReminderRow.status == "scheduled")
            .where(_ReminderRow.next_attempt_at <= normalized_now)
            .values(status="sending", claim_token=claim_token, updated_at=_now_utc())
            .execution_options(synchronize_session=False)
        )
        with self._session() as session:
            with session.begin():
                session.execute(claim)
                rows = session.execute(
                    select(_ReminderRow)
                    .where(_ReminderRow.claim_token == claim_token)
                    .where(_ReminderRow.status == "sending")
                    .order_by(_ReminderRow.next_attempt_at.asc(), _ReminderRow.id.asc())
                ).scalars().all()
                return [_reminder_from_row(row) for row in rows]

    def claim_one(self, tenant_id: str, reminder_id: str, *, claim_token: str) -> ReminderRecord:
        with self._session() as session:
            with session.begin():
                row = session.get(_ReminderRow, reminder_id)
                if row is None or row.tenant_id != tenant_id:
                    raise ReminderNotFoundError(reminder_id)
                result = session.execute(
                    update(_ReminderRow)
                    .where(_ReminderRow.id == reminder_id)
                    .where(_ReminderRow.status == "scheduled")
                    .values(status="sending", claim_token=claim_token, updated_at=_now_utc())
                    .execution_options(synchronize_session=False)
                )
                if result.rowcount != 1:
                    session.refresh(row)
                    raise ReminderStateError(reminder_id, row.status, "send now")
                session.refresh(row)
                return _reminder_from_row(row)

    def _finish(self, reminder_id: str, claim_token: str, **values: Any) -> bool:
        statement = (
            update(_ReminderRow)
            .where(_ReminderRow.id == reminder_id)
            .where(_ReminderRow.status == "sending")
            .where(_ReminderRow.claim_token == claim_token)
            .values(claim_token=None, updated_at=_now_utc(), **values)
            .execution_options(synchronize_session=False)
        )
        with self._session() as session:
            with session.begin():
                result = session.execute(statement)
                return result.rowcount == 1

    def mark_sent(self, reminder_id: str, *, claim_token: str, provider_id: str | None, at: datetime) -> bool:
        sent_at = _coerce_utc(at)
        return self._finish(
            reminder_id,
            claim_token,
            status="sent",
            sent_at=sent_at,
            last_attempt_at=sent_at,
            next_attempt_at=None,
            provider_id=provider_id,
            last_error_code=None,
            last_error=None,
        )

    def mark_retry(
        self,
        reminder_id: str,
        *,
        claim_token: str,
        error_code: str,
        error_message: str | None,
        attempted_at: datetime,
        next_attempt_at: datetime,
    ) -> bool:
        return self._finish(
            reminder_id,
            claim_token,
            status="scheduled",
            retry_count=_ReminderRow.retry_count + 1,
            last_attempt_at=_coerce_utc(attempted_at),
            next_attempt_at=_coerce_utc(next_attempt_at),
            last_error_code=error_code,
            last_error=error_message,
        )

    def mark_failed(
        self,
        reminder_id: str,
        *,
        claim_token: str,
        error_code: str,
        error_message: str | None,
        attempted_at: datetime,
    ) -> bool:
        return self._finish(
            reminder_id,
            claim_token,
            status="failed",
            last_attempt_at=_coerce_utc(attempted_at),
            next_attempt_at=None,
            last_error_code=error_code,
            last_error=error_message,
        )

    def mark_window_skipped(self, reminder_id: str, *, claim_token: str, next_attempt_at: datetime) -> bool:
        return self._finish(
            reminder_id,
            claim_token,
            status="scheduled",
            next_attempt_at=_coerce_utc(next_attempt_at),
        )

    def cancel(self, tenant_id: str, reminder_id: str) -> ReminderRecord:
        with self._session() as session:
            with session.begin():
                row = session.get(_ReminderRow, reminder_id, with_for_update=True)
                if row is None or row.tenant_id != tenant_id:
                    raise ReminderNotFoundError(reminder_id)
                if row.status not in CANCELABLE_STATUSES:
                    raise ReminderStateError(reminder_id, row.status, "cancel")
                row.status = "canceled"
                row.next_attempt_at = None
                row.claim_token = None
                row.updated_at = _now_utc()
                session.flush()
                return _reminder_from_row(row)

    def unsubscribe_client(self, tenant_id: str, client_id: str, *, at: datetime) -> int:
        with self._session() as session:
            with session.begin():
                client = session.get(_ClientRow, (tenant_id, client_id))
                if client is None:
                    raise ClientNotFoundError(client_id)
                if not client.unsubscribed:
                    client.unsubscribed = True
                    client.unsubscribed_at = _coerce_utc(at)
                result = session.execute(
                    update(_ReminderRow)
                    .where(_ReminderRow.tenant_id == tenant_id)
                    .where(_ReminderRow.client_id == client_id)
                    .where(_ReminderRow.status.in_(sorted(CANCELABLE_STATUSES)))
                    .values(status="canceled", next_attempt_at=None, claim_token=None, updated_at=_now_utc())
                    .execution_options(synchronize_session=False)
                )
                return int(result.rowcount or 0)

    def append_log(
        self,
        *,
        tenant_id: str,
        reminder_id: str,
        channel: str,
        outcome: str,
        provider_id: str | None = None,
        error_detail: dict[str, Any] | None = None,
    ) -> DispatchLogRecord:
        with self._session() as session:
            with session.begin():
                row = _DispatchLogRow(
                    tenant_id=tenant_id,
                    reminder_id=reminder_id,
                    channel=channel,
                    outcome=outcome,
                    provider_id=provider_id,
                    error_detail_json=(
                        json.dumps(error_detail, sort_keys=True, separators=(",", ":"))
                        if error_detail is not None
                        else None
                    ),
                    created_at=_now_utc(),
                )
                session.add(row)
                session.flush()
                return _log_from_row(row)

    def list_logs(self, tenant_id: str, *, limit: int = 20) -> list[DispatchLogRecord]:
        query = (
            select(_DispatchLogRow)
            .where(_DispatchLogRow.tenant_id == tenant_id)
            .order_by(_DispatchLogRow.id.desc())
            .limit(limit)
        )
        with self._session() as session:
            return [_log_from_row(row) for row in session.execute(query).scalars().all()]


def create_reminder_store_repository(*, backend: str, database_url: str) -> ReminderStoreRepository:
    normalized = backend.strip().lower()
    if normalized == "postgres":
        return SqlAlchemyReminderStoreRepository(database_url)
    return InMemoryReminderStoreRepository()
