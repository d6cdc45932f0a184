from __future__ import annotations

import logging
import random
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable, Literal

from .backoff import (
    BASE_DELAY_SECONDS,
    DEFAULT_RETRY_MAX,
    MAX_DELAY_SECONDS,
    decide_failure,
)
from .config import Settings
from .models import CHANNELS
from .providers import DISPATCH_ERROR_CODE, ProviderRouter, ProviderSendRequest
from .reminder_store import ReminderRecord, ReminderStoreRepository, new_claim_token
from .send_window import in_window

logger = logging.getLogger(__name__)

OutcomeKind = Literal["sent", "retried", "failed", "skipped"]

WINDOW_SKIP_CODE = "outside_send_window"


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


def _coerce_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


@dataclass(frozen=True)
class ItemOutcome:
    reminder_id: str
    kind: OutcomeKind
    status: str
    applied: bool = True
    provider_id: str | None = None
    error_code: str | None = None
    error_message: str | None = None


@dataclass(frozen=True)
class DispatchCycleResult:
    processed: int
    sent: int
    failed: int
    retried: int
    skipped: int

    @classmethod
    def from_outcomes(cls, outcomes: list[ItemOutcome]) -> "DispatchCycleResult":
        kinds = [outcome.kind for outcome in outcomes]
        return cls(
            processed=len(outcomes),
            sent=kinds.count("sent"),
            failed=kinds.count("failed"),
            retried=kinds.count("retried"),
            skipped=kinds.count("skipped"),
        )


class _ValidationFailure(Exception):
    def __init__(self, code: str, message: str) -> None:
        super().__init__(message)
        self.code = code
        self.message = message


class DispatchService:
    """Claims due reminders and pushes each one through gate, router and backoff."""

    def __init__(
        self,
        *,
        repository: ReminderStoreRepository,
        router: ProviderRouter,
        batch_size: int = 50,
        concurrency: int = 1,
        retry_max: int = DEFAULT_RETRY_MAX,
        base_delay_seconds: float = BASE_DELAY_SECONDS,
        max_delay_seconds: float = MAX_DELAY_SECONDS,
        window_skip_delay_seconds: float = 60.0,
        rng: Callable[[], float] = random.random,
        clock: Callable[[], datetime] = _now_utc,
    ) -> None:
        self._repository = repository
        self._router = router
        self._batch_size = max(1, batch_size)
        self._concurrency = max(1, concurrency)
        self._retry_max = max(0, retry_max)
        self._base_delay_seconds = base_delay_seconds
        self._max_delay_seconds = max_delay_seconds
        self._window_skip_delay = timedelta(seconds=max(0.0, window_skip_delay_seconds))
        self._rng = rng
        self._clock = clock

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        *,
        repository: ReminderStoreRepository,
        router: ProviderRouter,
    ) -> "DispatchService":
        return cls(
            repository=repository,
            router=router,
            batch_size=settings.dispatch_batch_size,
            concurrency=settings.dispatch_concurrency,
            retry_max=settings.retry_max,
            base_delay_seconds=settings.retry_base_delay_seconds,
            max_delay_seconds=settings.retry_max_delay_seconds,
            window_skip_delay_seconds=settings.window_skip_delay_seconds,
        )

    def run_cycle(self, *, batch_size: int | None = None, now: datetime | None = None) -> DispatchCycleResult:
        cycle_now = _coerce_utc(now) if now is not None else self._clock()
        limit = batch_size if batch_size is not None and batch_size > 0 else self._batch_size
        claim_token = new_claim_token()
        try:
            claimed = self._repository.claim_due(now=cycle_now, limit=limit, claim_token=claim_token)
        except Exception:
            logger.exception("dispatch claim failed claim_token=%s limit=%s", claim_token, limit)
            raise

        if not claimed:
            return DispatchCycleResult.from_outcomes([])

        if self._concurrency == 1 or len(claimed) == 1:
            outcomes = [self._process_safely(record, claim_token, cycle_now) for record in claimed]
        else:
            with ThreadPoolExecutor(max_workers=min(self._concurrency, len(claimed))) as pool:
                outcomes = list(
                    pool.map(lambda record: self._process_safely(record, claim_token, cycle_now), claimed)
                )

        result = DispatchCycleResult.from_outcomes(outcomes)
        logger.info(
            "dispatch cycle finished claim_token=%s processed=%s sent=%s failed=%s retried=%s skipped=%s",
            claim_token,
            result.processed,
            result.sent,
            result.failed,
            result.retried,
            result.skipped,
        )
        return result

    def send_now(self, tenant_id: str, reminder_id: str, *, now: datetime | None = None) -> ItemOutcome:
        """Send one scheduled reminder immediately, ignoring ``next_attempt_at``.

        Raises ``ReminderNotFoundError`` or ``ReminderStateError`` from the store
        when the reminder is unknown or not in ``scheduled``.
        """
        claim_token = new_claim_token()
        record = self._repository.claim_one(tenant_id, reminder_id, claim_token=claim_token)
        return self._process_safely(record, claim_token, _coerce_utc(now) if now is not None else self._clock())

    def _process_safely(self, record: ReminderRecord, claim_token: str, now: datetime) -> ItemOutcome:
        try:
            return self._process(record, claim_token, now)
        except Exception as exc:
            logger.exception("dispatch item crashed reminder_id=%s tenant=%s", record.id, record.tenant_id)
            message = str(exc) or exc.__class__.__name__
        try:
            return self._apply_failure(record, claim_token, DISPATCH_ERROR_CODE, message, now)
        except Exception:
            # Store writes are failing too; the row stays claimed.
            logger.exception("dispatch failure handling crashed reminder_id=%s tenant=%s", record.id, record.tenant_id)
            return ItemOutcome(
                reminder_id=record.id,
                kind="failed",
                status=record.status,
                applied=False,
                error_code=DISPATCH_ERROR_CODE,
                error_message=message,
            )

    def _process(self, record: ReminderRecord, claim_token: str, now: datetime) -> ItemOutcome:
        policy = self._repository.get_send_window(record.tenant_id)
        if not in_window(now, policy):
            return self._apply_window_skip(record, claim_token, now)

        try:
            recipient, message = self._validate(record)
        except _ValidationFailure as exc:
            return self._apply_failure(record, claim_token, exc.code, exc.message, now)

        result = self._router.send(
            record.channel,
            ProviderSendRequest(
                reminder_id=record.id,
                tenant_id=record.tenant_id,
                channel=record.channel,
                recipient=recipient,
                message=message,
                idempotency_key=f"{record.id}:{record.retry_count}",
            ),
        )
        if not result.ok:
            return self._apply_failure(
                record,
                claim_token,
                result.code or DISPATCH_ERROR_CODE,
                result.message,
                now,
                retryable=result.retryable,
            )

        applied = self._repository.mark_sent(
            record.id,
            claim_token=claim_token,
            provider_id=result.provider_id,
            at=result.at,
        )
        self._warn_if_stale(record, applied, "sent")
        self._append_log(
            tenant_id=record.tenant_id,
            reminder_id=record.id,
            channel=record.channel,
            outcome="success",
            provider_id=result.provider_id,
        )
        return ItemOutcome(
            reminder_id=record.id,
            kind="sent",
            status=self._current_status(record, applied, "sent"),
            applied=applied,
            provider_id=result.provider_id,
        )

    def _validate(self, record: ReminderRecord) -> tuple[str, str]:
        message = (record.message or "").strip()
        if not message:
            raise _ValidationFailure("empty_message", "Reminder message is empty")
        if record.channel not in CHANNELS:
            raise _ValidationFailure("unknown_channel", f"Unsupported channel '{record.channel}'")
        client = self._repository.get_client(record.tenant_id, record.client_id)
        if client is None:
            raise _ValidationFailure("client_not_found", f"Client {record.client_id} does not exist")
        if client.unsubscribed:
            raise _ValidationFailure("client_unsubscribed", f"Client {record.client_id} has unsubscribed")
        recipient = client.address_for(record.channel)
        if recipient is None:
            field_name = "email" if record.channel == "email" else "phone"
            raise _ValidationFailure("missing_recipient", f"Client has no {field_name} for {record.channel}")
        return recipient, message

    def _apply_window_skip(self, record: ReminderRecord, claim_token: str, now: datetime) -> ItemOutcome:
        next_attempt_at = now + self._window_skip_delay
        applied = self._repository.mark_window_skipped(
            record.id,
            claim_token=claim_token,
            next_attempt_at=next_attempt_at,
        )
        self._warn_if_stale(record, applied, "skipped_window")
        self._append_log(
            tenant_id=record.tenant_id,
            reminder_id=record.id,
            channel=record.channel,
            outcome="skipped_window",
            error_detail={
                "code": WINDOW_SKIP_CODE,
                "message": "Outside the tenant send window",
                "retry_in_seconds": self._window_skip_delay.total_seconds(),
            },
        )
        return ItemOutcome(
            reminder_id=record.id,
            kind="skipped",
            status=self._current_status(record, applied, "scheduled"),
            applied=applied,
            error_code=WINDOW_SKIP_CODE,
        )

    def _apply_failure(
        self,
        record: ReminderRecord,
        claim_token: str,
        code: str,
        message: str | None,
        now: datetime,
        *,
        retryable: bool | None = None,
    ) -> ItemOutcome:
        attempted_at = max(now, self._clock())
        decision = decide_failure(
            code,
            retry_count=record.retry_count,
            retry_max=self._retry_max,
            base_seconds=self._base_delay_seconds,
            max_seconds=self._max_delay_seconds,
            rng=self._rng,
            retryable=retryable,
        )
        detail: dict[str, object] = {"code": code, "message": message}

        if decision.action == "retry" and decision.delay_seconds is not None:
            applied = self._repository.mark_retry(
                record.id,
                claim_token=claim_token,
                error_code=code,
                error_message=message,
                attempted_at=attempted_at,
                next_attempt_at=attempted_at + timedelta(seconds=decision.delay_seconds),
            )
            detail["retry_in_seconds"] = round(decision.delay_seconds, 3)
            kind: OutcomeKind = "retried"
            target_status = "scheduled"
        else:
            applied = self._repository.mark_failed(
                record.id,
                claim_token=claim_token,
                error_code=code,
                error_message=message,
                attempted_at=attempted_at,
            )
            kind = "failed"
            target_status = "failed"

        self._warn_if_stale(record, applied, target_status)
        self._append_log(
            tenant_id=record.tenant_id,
            reminder_id=record.id,
            channel=record.channel,
            outcome="failed",
            error_detail=detail,
        )
        return ItemOutcome(
            reminder_id=record.id,
            kind=kind,
            status=self._current_status(record, applied, target_status),
            applied=applied,
            error_code=code,
            error_message=message,
        )

    def _append_log(self, **entry: object) -> None:
        # Audit rows are best effort once the reminder row is written.
        try:
            self._repository.append_log(**entry)
        except Exception:
            logger.exception(
                "dispatch log write failed reminder_id=%s outcome=%s",
                entry.get("reminder_id"),
                entry.get("outcome"),
            )

    def _current_status(self, record: ReminderRecord, applied: bool, target_status: str) -> str:
        if applied:
            return target_status
        current = self._repository.get_reminder(record.tenant_id, record.id)
        return current.status if current is not None else record.status

    @staticmethod
    def _warn_if_stale(record: ReminderRecord, applied: bool, transition: str) -> None:
        if not applied:
            logger.warning(
                "skipped stale dispatch write reminder_id=%s transition=%s (claim no longer held)",
                record.id,
                transition,
            )
