from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Literal

from pydantic import BaseModel, Field, field_validator

Channel = Literal["email", "sms", "chat"]
ReminderStatus = Literal["draft", "scheduled", "sending", "sent", "failed", "canceled"]
DispatchOutcome = Literal["success", "failed", "skipped_window"]
SendNowOutcome = Literal["sent", "retry_scheduled", "failed", "skipped_window"]

CHANNELS: tuple[str, ...] = ("email", "sms", "chat")


def _normalize_utc(value: datetime | None) -> datetime | None:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class ReminderCreateRequest(BaseModel):
    client_id: str = Field(min_length=1, max_length=128)
    channel: Channel = "email"
    message: str | None = Field(default=None, max_length=4000)
    scheduled_at: datetime
    rule_id: str | None = Field(default=None, min_length=1, max_length=128)

    @field_validator("client_id")
    @classmethod
    def _normalize_client_id(cls, value: str) -> str:
        normalized = value.strip()
        if not normalized:
            raise ValueError("client_id cannot be blank")
        return normalized

    @field_validator("scheduled_at")
    @classmethod
    def _normalize_scheduled_at(cls, value: datetime) -> datetime:
        return _normalize_utc(value)  # type: ignore[return-value]


class ReminderItem(BaseModel):
    id: str
    tenant_id: str
    client_id: str
    rule_id: str | None = None
    channel: str
    message: str | None = None
    status: ReminderStatus
    scheduled_at: datetime
    next_attempt_at: datetime | None = None
    retry_count: int
    last_attempt_at: datetime | None = None
    last_error_code: str | None = None
    last_error: str | None = None
    sent_at: datetime | None = None
    provider_id: str | None = None
    created_at: datetime
    updated_at: datetime


class ReminderListResponse(BaseModel):
    items: list[ReminderItem]


class ReminderOverviewResponse(BaseModel):
    draft: int = 0
    scheduled: int = 0
    sending: int = 0
    sent: int = 0
    failed: int = 0
    canceled: int = 0


class PlanRequest(BaseModel):
    dry_run: bool = False
    rule_ids: list[str] | None = Field(default=None, max_length=100)
    limit_clients: int | None = Field(default=None, ge=1, le=5000)
    now_override: datetime | None = None

    @field_validator("rule_ids")
    @classmethod
    def _normalize_rule_ids(cls, value: list[str] | None) -> list[str] | None:
        if value is None:
            return None
        normalized: list[str] = []
        for raw in value:
            rule_id = str(raw).strip()
            if not rule_id:
                raise ValueError("rule_ids entries cannot be blank")
            if rule_id not in normalized:
                normalized.append(rule_id)
        return normalized or None

    @field_validator("now_override")
    @classmethod
    def _normalize_override(cls, value: datetime | None) -> datetime | None:
        return _normalize_utc(value)


class PurchasePlanRequest(BaseModel):
    client_id: str = Field(min_length=1, max_length=128)
    purchased_at: datetime
    dry_run: bool = False
    now_override: datetime | None = None

    @field_validator("purchased_at", "now_override")
    @classmethod
    def _normalize_dates(cls, value: datetime | None) -> datetime | None:
        return _normalize_utc(value)


class PlannedReminderItem(BaseModel):
    client_id: str
    rule_id: str | None = None
    channel: Channel
    scheduled_at: datetime


class PlanResponse(BaseModel):
    dry_run: bool
    clients_considered: int
    rules_considered: int
    created: int
    skipped: int
    samples: list[PlannedReminderItem] = Field(default_factory=list)


class DispatchCycleResponse(BaseModel):
    processed: int
    sent: int
    failed: int
    retried: int
    skipped: int


class SendNowResponse(BaseModel):
    reminder_id: str
    outcome: SendNowOutcome
    status: ReminderStatus
    provider_id: str | None = None
    error_code: str | None = None
    error_message: str | None = None


class CancelResponse(BaseModel):
    reminder_id: str
    status: ReminderStatus


class ReminderPreviewResponse(BaseModel):
    reminder_id: str
    client_id: str
    channel: Channel
    status: ReminderStatus
    recipient: str | None = None
    message: str | None = None
    deliverable: bool


class DispatchLogItem(BaseModel):
    id: int
    reminder_id: str
    channel: str
    outcome: DispatchOutcome
    provider_id: str | None = None
    error_detail: dict[str, Any] | None = None
    created_at: datetime


class DispatchLogListResponse(BaseModel):
    logs: list[DispatchLogItem]


class UnsubscribeResponse(BaseModel):
    client_id: str
    unsubscribed: bool
    canceled_count: int
