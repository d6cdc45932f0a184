from __future__ import annotations

import hmac
import logging
from datetime import datetime, timezone

from fastapi import APIRouter, HTTPException, Query, Request, status

from .config import get_settings
from .dispatcher import DispatchService, ItemOutcome
from .models import (
    CancelResponse,
    Channel,
    DispatchCycleResponse,
    DispatchLogItem,
    DispatchLogListResponse,
    PlannedReminderItem,
    PlanRequest,
    PlanResponse,
    PurchasePlanRequest,
    ReminderCreateRequest,
    ReminderItem,
    ReminderListResponse,
    ReminderOverviewResponse,
    ReminderPreviewResponse,
    ReminderStatus,
    SendNowResponse,
    UnsubscribeResponse,
)
from .planner import PlanResult, SchedulePlanner, is_eligible, render_template
from .providers import ProviderRouter, build_router, mask_contact_target
from .reminder_store import (
    ClientNotFoundError,
    NewReminder,
    ReminderNotFoundError,
    ReminderRecord,
    ReminderStateError,
    ReminderStoreRepository,
    create_reminder_store_repository,
)

logger = logging.getLogger(__name__)

_settings = get_settings()
router = APIRouter(prefix=f"{_settings.api_prefix}/reengage", tags=["reengage"])

reminder_repo: ReminderStoreRepository = create_reminder_store_repository(
    backend=_settings.reminder_store_backend,
    database_url=_settings.database_url,
)
provider_router: ProviderRouter = build_router(_settings)

_SEND_NOW_OUTCOMES = {
    "sent": "sent",
    "retried": "retry_scheduled",
    "failed": "failed",
    "skipped": "skipped_window",
}


def reset_runtime_state_for_tests() -> None:
    reminder_repo.reset()


def _dispatch_service() -> DispatchService:
    # Resolved per call so tests can swap provider_router.
    return DispatchService.from_settings(_settings, repository=reminder_repo, router=provider_router)


def _planner() -> SchedulePlanner:
    return SchedulePlanner(repository=reminder_repo)


def _require_cron_secret(request: Request) -> None:
    expected = _settings.cron_secret.strip()
    header = request.headers.get("Authorization", "")
    provided = header.removeprefix("Bearer ").strip() if header.startswith("Bearer ") else ""
    if not provided:
        provided = request.query_params.get("secret", "").strip()
    if not expected or not provided or not hmac.compare_digest(provided, expected):
        raise HTTPException(status_code=401, detail="unauthorized")


def _require_tenant(request: Request) -> str:
    tenant_id = request.headers.get("X-Tenant-Id", "").strip()
    if not tenant_id:
        raise HTTPException(status_code=400, detail="X-Tenant-Id header is required")
    return tenant_id


def _reminder_item(record: ReminderRecord) -> ReminderItem:
    return ReminderItem(
        id=record.id,
        tenant_id=record.tenant_id,
        client_id=record.client_id,
        rule_id=record.rule_id,
        channel=record.channel,
        message=record.message,
        status=record.status,  # type: ignore[arg-type]
        scheduled_at=record.scheduled_at,
        next_attempt_at=record.next_attempt_at,
        retry_count=record.retry_count,
        last_attempt_at=record.last_attempt_at,
        last_error_code=record.last_error_code,
        last_error=record.last_error,
        sent_at=record.sent_at,
        provider_id=record.provider_id,
        created_at=record.created_at,
        updated_at=record.updated_at,
    )


def _plan_response(result: PlanResult) -> PlanResponse:
    return PlanResponse(
        dry_run=result.dry_run,
        clients_considered=result.clients_considered,
        rules_considered=result.rules_considered,
        created=result.created,
        skipped=result.skipped,
        samples=[
            PlannedReminderItem(
                client_id=sample.client_id,
                rule_id=sample.rule_id,
                channel=sample.channel,  # type: ignore[arg-type]
                scheduled_at=sample.scheduled_at,
            )
            for sample in result.samples
        ],
    )


def _run_dispatch(request: Request, batch_size: int | None) -> DispatchCycleResponse:
    _require_cron_secret(request)
    if batch_size is not None and batch_size > _settings.dispatch_batch_max:
        batch_size = _settings.dispatch_batch_max
    try:
        result = _dispatch_service().run_cycle(batch_size=batch_size)
    except Exception as exc:
        raise HTTPException(status_code=500, detail="dispatch_failed") from exc
    return DispatchCycleResponse(
        processed=result.processed,
        sent=result.sent,
        failed=result.failed,
        retried=result.retried,
        skipped=result.skipped,
    )


@router.post("/cron/dispatch", response_model=DispatchCycleResponse)
def dispatch_due_reminders(
    request: Request,
    batch_size: int | None = Query(default=None, ge=1),
) -> DispatchCycleResponse:
    return _run_dispatch(request, batch_size)


@router.get("/cron/dispatch", response_model=DispatchCycleResponse)
def dispatch_due_reminders_get(
    request: Request,
    batch_size: int | None = Query(default=None, ge=1),
) -> DispatchCycleResponse:
    return _run_dispatch(request, batch_size)


@router.post("/reminders/plan", response_model=PlanResponse)
def plan_reminders(payload: PlanRequest, request: Request) -> PlanResponse:
    tenant_id = _require_tenant(request)
    result = _planner().plan_for_tenant(
        tenant_id,
        dry_run=payload.dry_run,
        rule_ids=payload.rule_ids,
        limit_clients=payload.limit_clients,
        now=payload.now_override,
    )
    return _plan_response(result)


@router.post("/reminders/plan/purchase", response_model=PlanResponse)
def plan_purchase_reminders(payload: PurchasePlanRequest, request: Request) -> PlanResponse:
    tenant_id = _require_tenant(request)
    try:
        result = _planner().plan_for_purchase(
            tenant_id,
            payload.client_id,
            purchased_at=payload.purchased_at,
            dry_run=payload.dry_run,
            now=payload.now_override,
        )
    except ClientNotFoundError as exc:
        raise HTTPException(status_code=404, detail=f"client not found: {payload.client_id}") from exc
    return _plan_response(result)


@router.post("/reminders", response_model=ReminderItem, status_code=status.HTTP_201_CREATED)
def create_reminder(payload: ReminderCreateRequest, request: Request) -> ReminderItem:
    tenant_id = _require_tenant(request)
    if reminder_repo.get_client(tenant_id, payload.client_id) is None:
        raise HTTPException(status_code=404, detail=f"client not found: {payload.client_id}")
    record = reminder_repo.insert_reminder_if_absent(
        NewReminder(
            tenant_id=tenant_id,
            client_id=payload.client_id,
            rule_id=payload.rule_id,
            channel=payload.channel,
            message=payload.message,
            scheduled_at=payload.scheduled_at,
        )
    )
    if record is None:
        raise HTTPException(status_code=409, detail="reminder already exists")
    return _reminder_item(record)


@router.get("/reminders", response_model=ReminderListResponse)
def list_reminders(
    request: Request,
    status_filter: ReminderStatus | None = Query(default=None, alias="status"),
    channel: Channel | None = Query(default=None),
    limit: int = Query(default=100, ge=1, le=500),
) -> ReminderListResponse:
    tenant_id = _require_tenant(request)
    records = reminder_repo.list_reminders(tenant_id, status=status_filter, channel=channel, limit=limit)
    return ReminderListResponse(items=[_reminder_item(record) for record in records])


@router.get("/reminders/overview", response_model=ReminderOverviewResponse)
def reminders_overview(request: Request) -> ReminderOverviewResponse:
    tenant_id = _require_tenant(request)
    return ReminderOverviewResponse(**reminder_repo.count_by_status(tenant_id))


@router.get("/reminders/logs", response_model=DispatchLogListResponse)
def list_dispatch_logs(
    request: Request,
    limit: int = Query(default=20, ge=1, le=50),
) -> DispatchLogListResponse:
    tenant_id = _require_tenant(request)
    rows = reminder_repo.list_logs(tenant_id, limit=limit)
    return DispatchLogListResponse(
        logs=[
            DispatchLogItem(
                id=row.id,
                reminder_id=row.reminder_id,
                channel=row.channel,
                outcome=row.outcome,  # type: ignore[arg-type]
                provider_id=row.provider_id,
                error_detail=row.error_detail,
                created_at=row.created_at,
            )
            for row in rows
        ]
    )


@router.post("/reminders/{reminder_id}/cancel", response_model=CancelResponse)
def cancel_reminder(reminder_id: str, request: Request) -> CancelResponse:
    tenant_id = _require_tenant(request)
    try:
        record = reminder_repo.cancel(tenant_id, reminder_id)
    except ReminderNotFoundError as exc:
        raise HTTPException(status_code=404, detail=f"reminder not found: {reminder_id}") from exc
    except ReminderStateError as exc:
        raise HTTPException(status_code=409, detail=str(exc)) from exc
    return CancelResponse(reminder_id=record.id, status="canceled")


@router.get("/reminders/{reminder_id}/preview", response_model=ReminderPreviewResponse)
def preview_reminder(reminder_id: str, request: Request) -> ReminderPreviewResponse:
    """Render a reminder for its client without sending it. The recipient is masked."""
    tenant_id = _require_tenant(request)
    record = reminder_repo.get_reminder(tenant_id, reminder_id)
    if record is None:
        raise HTTPException(status_code=404, detail=f"reminder not found: {reminder_id}")
    client = reminder_repo.get_client(tenant_id, record.client_id)
    if client is None:
        raise HTTPException(status_code=404, detail=f"client not found: {record.client_id}")
    address = client.address_for(record.channel)
    message = render_template(record.message, client)
    return ReminderPreviewResponse(
        reminder_id=record.id,
        client_id=record.client_id,
        channel=record.channel,  # type: ignore[arg-type]
        status=record.status,  # type: ignore[arg-type]
        recipient=mask_contact_target(address, record.channel) if address else None,
        message=message,
        deliverable=is_eligible(client, record.channel) and bool((message or "").strip()),
    )


@router.post("/reminders/{reminder_id}/send-now", response_model=SendNowResponse)
def send_reminder_now(reminder_id: str, request: Request) -> SendNowResponse:
    tenant_id = _require_tenant(request)
    try:
        outcome: ItemOutcome = _dispatch_service().send_now(tenant_id, reminder_id)
    except ReminderNotFoundError as exc:
        raise HTTPException(status_code=404, detail=f"reminder not found: {reminder_id}") from exc
    except ReminderStateError as exc:
        raise HTTPException(status_code=409, detail=str(exc)) from exc
    return SendNowResponse(
        reminder_id=outcome.reminder_id,
        outcome=_SEND_NOW_OUTCOMES[outcome.kind],  # type: ignore[arg-type]
        status=outcome.status,  # type: ignore[arg-type]
        provider_id=outcome.provider_id,
        error_code=outcome.error_code,
        error_message=outcome.error_message,
    )


@router.post("/unsubscribe/{client_id}", response_model=UnsubscribeResponse)
def unsubscribe_client(client_id: str, request: Request) -> UnsubscribeResponse:
    tenant_id = _require_tenant(request)
    try:
        canceled = reminder_repo.unsubscribe_client(tenant_id, client_id, at=datetime.now(timezone.utc))
    except ClientNotFoundError as exc:
        raise HTTPException(status_code=404, detail=f"client not found: {client_id}") from exc
    logger.info("client unsubscribed tenant=%s client_id=%s canceled=%s", tenant_id, client_id, canceled)
    return UnsubscribeResponse(client_id=client_id, unsubscribed=True, canceled_count=canceled)
