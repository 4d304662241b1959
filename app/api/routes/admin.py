"""
Operator endpoints: inbox and dead-letter queue, quote/job sync records,
billing state, margin and reconciliation alerts, circuit breakers.

Everything here is guarded by ``X-Admin-API-Key``.
"""
from datetime import datetime
from typing import Any

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.dependencies.admin_auth import require_admin_api_key
from app.core.circuit_breaker import CircuitBreaker, get_fsm_circuit_breaker
from app.core.exceptions import NotFoundException
from app.core.logging import get_logger
from app.db.database import get_db
from app.db.models.billing import BillingInvoice
from app.db.models.dead_letter_item import DeadLetterItem, DeadLetterStatus
from app.db.models.quote_job_sync import QuoteJobSyncStatus
from app.db.models.reconciliation_alert import ReconciliationAlertStatus
from app.db.models.webhook_event import WebhookEvent, WebhookEventStatus
from app.domain.services import margin_variance_service, payment_reconciliation_service
from app.domain.services.billing_milestone_service import (
    BillingMilestoneEngine,
    get_billing_state_for_job,
    get_billing_summary,
)
from app.domain.services.dead_letter_service import DeadLetterService
from app.domain.services.fsm import get_fsm_client
from app.domain.services.quote_job_reconciler import list_sync_records
from app.workers.retry_processor import get_retry_processor

logger = get_logger(__name__)

router = APIRouter(dependencies=[Depends(require_admin_api_key)])

_AUTH_RESPONSES = {
    401: {"description": "Missing API key"},
    403: {"description": "Wrong API key"},
}


# ─── Pydantic models ────────────────────────────────────────────────────────

class ORMModel(BaseModel):
    model_config = ConfigDict(from_attributes=True)


class WebhookEventResponse(ORMModel):
    event_id: str
    account_id: str
    topic: str
    object_id: str
    status: WebhookEventStatus
    attempts: int
    next_retry_at: datetime | None
    error: str | None
    handled_families: dict[str, str]
    occurred_at: datetime
    received_at: datetime
    completed_at: datetime | None


class CountSummaryResponse(BaseModel):
    total: int
    by_status: dict[str, int]
    by_topic: dict[str, int]


class DeadLetterItemResponse(ORMModel):
    id: int
    webhook_event_id: str
    account_id: str
    topic: str
    status: DeadLetterStatus
    retry_count: int
    max_retries: int
    next_retry_at: datetime | None
    last_retry_at: datetime | None
    error_message: str | None
    last_error: str | None
    resolved_at: datetime | None
    resolution_notes: str | None
    created_at: datetime


class NotesRequest(BaseModel):
    notes: str | None = Field(default=None, max_length=2000)


class SyncRecordResponse(ORMModel):
    id: int
    account_id: str
    topic: str
    quote_id: str
    job_id: str | None
    status: QuoteJobSyncStatus
    diff: dict[str, Any] | None
    violations: list[dict[str, Any]] | None
    change_order_reason: str | None
    skip_reason: str | None
    error: str | None
    created_at: datetime
    completed_at: datetime | None


class BillingInvoiceResponse(ORMModel):
    id: int
    invoice_type: str
    milestone: str
    amount_cents: int
    percentage: int
    description: str | None
    status: str
    external_invoice_id: str | None
    last_error: str | None
    retry_count: int
    sent_at: datetime | None
    paid_at: datetime | None


class BillingStateResponse(ORMModel):
    id: int
    account_id: str
    job_id: str
    service_type: str
    total_job_value_cents: int
    current_milestone: str
    deposit_invoice_sent: bool
    progress_invoice_sent: bool
    final_invoice_sent: bool
    billing_stage: str
    invoices: list[BillingInvoiceResponse]


class MarginAlertResponse(ORMModel):
    id: int
    account_id: str
    job_id: str
    alert_type: str
    severity: str
    title: str
    description: str
    expected_duration_mins: int | None
    actual_duration_mins: int | None
    expected_visits: int | None
    actual_visits: int | None
    duration_variance_percent: int | None
    recommended_actions: list[dict[str, str]]
    status: str
    acknowledged_by: str | None
    resolved_by: str | None
    resolution: str | None
    created_at: datetime


class ActorRequest(BaseModel):
    by: str = Field(min_length=1, max_length=100)


class MarginResolveRequest(ActorRequest):
    resolution: str = Field(min_length=1, max_length=2000)


class ReconciliationResolveRequest(ActorRequest):
    notes: str | None = Field(default=None, max_length=2000)


class ReconciliationAlertResponse(ORMModel):
    id: int
    account_id: str
    entity_type: str
    entity_id: str
    job_id: str | None
    alert_type: str
    severity: str
    expected_value_cents: int
    actual_value_cents: int
    variance_cents: int
    description: str
    status: str
    external_field_updated: bool
    acknowledged_by: str | None
    resolved_by: str | None
    resolution_notes: str | None
    created_at: datetime


# ─── Inbox ──────────────────────────────────────────────────────────────────

@router.get(
    "/webhook-events/summary",
    response_model=CountSummaryResponse,
    summary="Inbox counts by status and topic",
    responses=_AUTH_RESPONSES,
)
async def get_webhook_event_summary(
    account_id: str | None = Query(None),
    db: AsyncSession = Depends(get_db),
) -> CountSummaryResponse:
    filters = [WebhookEvent.account_id == account_id] if account_id else []

    by_status = {s.value: 0 for s in WebhookEventStatus}
    rows = await db.execute(
        select(WebhookEvent.status, func.count()).where(*filters).group_by(WebhookEvent.status)
    )
    for row_status, count in rows.all():
        by_status[WebhookEventStatus(row_status).value] = count

    topic_rows = await db.execute(
        select(WebhookEvent.topic, func.count()).where(*filters).group_by(WebhookEvent.topic)
    )
    return CountSummaryResponse(
        total=sum(by_status.values()),
        by_status=by_status,
        by_topic={topic: count for topic, count in topic_rows.all()},
    )


@router.get(
    "/webhook-events",
    response_model=list[WebhookEventResponse],
    summary="List inbox events",
    responses=_AUTH_RESPONSES,
)
async def list_webhook_events(
    account_id: str | None = Query(None),
    status: WebhookEventStatus | None = Query(None),
    limit: int = Query(50, ge=1, le=500),
    db: AsyncSession = Depends(get_db),
) -> list[WebhookEvent]:
    query = select(WebhookEvent)
    if account_id:
        query = query.where(WebhookEvent.account_id == account_id)
    if status:
        query = query.where(WebhookEvent.status == status)
    result = await db.execute(query.order_by(WebhookEvent.received_at.desc()).limit(limit))
    return list(result.scalars().all())


@router.get("/processor", summary="In-process event worker status", responses=_AUTH_RESPONSES)
async def get_processor_status() -> dict[str, Any]:
    return get_retry_processor().status()


# ─── Dead-letter queue ──────────────────────────────────────────────────────

@router.get(
    "/dead-letters/summary",
    response_model=CountSummaryResponse,
    summary="Dead-letter counts by status and topic",
    responses=_AUTH_RESPONSES,
)
async def get_dead_letter_summary(
    account_id: str | None = Query(None),
    db: AsyncSession = Depends(get_db),
) -> dict[str, Any]:
    return await DeadLetterService(db).summary(account_id)


@router.get(
    "/dead-letters",
    response_model=list[DeadLetterItemResponse],
    summary="List dead-letter items",
    responses=_AUTH_RESPONSES,
)
async def list_dead_letters(
    account_id: str | None = Query(None),
    status: DeadLetterStatus | None = Query(None),
    limit: int = Query(50, ge=1, le=500),
    offset: int = Query(0, ge=0),
    db: AsyncSession = Depends(get_db),
) -> list[DeadLetterItem]:
    return await DeadLetterService(db).list_items(
        account_id=account_id, status=status, limit=limit, offset=offset
    )


@router.post(
    "/dead-letters/{item_id}/retry",
    response_model=DeadLetterItemResponse,
    summary="Retry a dead-letter item now",
    description="Requeues the item (resetting an exhausted retry budget) and re-attempts it immediately.",
    responses={**_AUTH_RESPONSES, 404: {"description": "Item not found"}, 400: {"description": "Item already closed"}},
)
async def retry_dead_letter(
    item_id: int,
    db: AsyncSession = Depends(get_db),
) -> DeadLetterItem:
    await DeadLetterService(db).requeue(item_id)
    succeeded = await get_retry_processor().retry_dead_letter(item_id)
    logger.info("Operator retried dead letter item", extra_data={"item_id": item_id, "succeeded": succeeded})
    return await db.get(DeadLetterItem, item_id, populate_existing=True)


@router.post(
    "/dead-letters/{item_id}/resolve",
    response_model=DeadLetterItemResponse,
    summary="Mark a dead-letter item resolved",
    responses={**_AUTH_RESPONSES, 404: {"description": "Item not found"}, 400: {"description": "Item already closed"}},
)
async def resolve_dead_letter(
    item_id: int,
    body: NotesRequest,
    db: AsyncSession = Depends(get_db),
) -> DeadLetterItem:
    return await DeadLetterService(db).resolve(item_id, body.notes)


@router.post(
    "/dead-letters/{item_id}/discard",
    response_model=DeadLetterItemResponse,
    summary="Discard a dead-letter item (irreversible)",
    responses={**_AUTH_RESPONSES, 404: {"description": "Item not found"}, 400: {"description": "Item already closed"}},
)
async def discard_dead_letter(
    item_id: int,
    body: NotesRequest,
    db: AsyncSession = Depends(get_db),
) -> DeadLetterItem:
    return await DeadLetterService(db).discard(item_id, body.notes)


# ─── Quote → job sync ───────────────────────────────────────────────────────

@router.get(
    "/sync-records",
    response_model=list[SyncRecordResponse],
    summary="List quote/job sync records",
    responses=_AUTH_RESPONSES,
)
async def get_sync_records(
    account_id: str | None = Query(None),
    status: QuoteJobSyncStatus | None = Query(None),
    limit: int = Query(50, ge=1, le=500),
    db: AsyncSession = Depends(get_db),
):
    return await list_sync_records(db, account_id, status, limit)


# ─── Billing ────────────────────────────────────────────────────────────────

@router.get("/billing/{account_id}/summary", summary="Billing summary for an account", responses=_AUTH_RESPONSES)
async def billing_summary(account_id: str, db: AsyncSession = Depends(get_db)) -> dict[str, Any]:
    return await get_billing_summary(db, account_id)


@router.get(
    "/billing/{account_id}/jobs/{job_id}",
    response_model=BillingStateResponse,
    summary="Billing state of one job",
    responses={**_AUTH_RESPONSES, 404: {"description": "No billing state for the job"}},
)
async def billing_state(account_id: str, job_id: str, db: AsyncSession = Depends(get_db)):
    return await get_billing_state_for_job(db, account_id, job_id)


@router.post(
    "/billing/invoices/{invoice_id}/resend",
    response_model=BillingInvoiceResponse,
    summary="Resend an invoice that was created but not sent",
    responses={**_AUTH_RESPONSES, 404: {"description": "Invoice not found"}, 400: {"description": "Invoice not in created status"}},
)
async def resend_invoice(invoice_id: int, db: AsyncSession = Depends(get_db)):
    invoice = await db.get(BillingInvoice, invoice_id)
    if invoice is None:
        raise NotFoundException("billing invoice", invoice_id)
    engine = BillingMilestoneEngine(db, get_fsm_client(invoice.account_id, db))
    return await engine.resend_invoice(invoice_id)


# ─── Margin alerts ──────────────────────────────────────────────────────────

@router.get(
    "/margin-alerts",
    response_model=list[MarginAlertResponse],
    summary="Open margin alerts",
    responses=_AUTH_RESPONSES,
)
async def list_margin_alerts(
    account_id: str | None = Query(None),
    limit: int = Query(100, ge=1, le=500),
    db: AsyncSession = Depends(get_db),
):
    return await margin_variance_service.get_open_alerts(db, account_id, limit)


@router.post("/margin-alerts/{alert_id}/acknowledge", response_model=MarginAlertResponse, responses=_AUTH_RESPONSES)
async def acknowledge_margin_alert(alert_id: int, body: ActorRequest, db: AsyncSession = Depends(get_db)):
    return await margin_variance_service.acknowledge_alert(db, alert_id, body.by)


@router.post("/margin-alerts/{alert_id}/resolve", response_model=MarginAlertResponse, responses=_AUTH_RESPONSES)
async def resolve_margin_alert(alert_id: int, body: MarginResolveRequest, db: AsyncSession = Depends(get_db)):
    return await margin_variance_service.resolve_alert(db, alert_id, body.by, body.resolution)


@router.post("/margin-alerts/{alert_id}/dismiss", response_model=MarginAlertResponse, responses=_AUTH_RESPONSES)
async def dismiss_margin_alert(alert_id: int, db: AsyncSession = Depends(get_db)):
    return await margin_variance_service.dismiss_alert(db, alert_id)


# ─── Reconciliation alerts ──────────────────────────────────────────────────

@router.get(
    "/reconciliation-alerts/summary",
    summary="Reconciliation alert counts and total open variance",
    responses=_AUTH_RESPONSES,
)
async def reconciliation_summary(
    account_id: str = Query(...),
    db: AsyncSession = Depends(get_db),
) -> dict[str, Any]:
    return await payment_reconciliation_service.get_reconciliation_summary(db, account_id)


@router.get(
    "/reconciliation-alerts",
    response_model=list[ReconciliationAlertResponse],
    summary="List reconciliation alerts",
    responses=_AUTH_RESPONSES,
)
async def list_reconciliation_alerts(
    account_id: str | None = Query(None),
    status: ReconciliationAlertStatus | None = Query(None),
    limit: int = Query(100, ge=1, le=500),
    db: AsyncSession = Depends(get_db),
):
    return await payment_reconciliation_service.list_reconciliation_alerts(db, account_id, status, limit)


@router.post(
    "/reconciliation-alerts/{alert_id}/acknowledge",
    response_model=ReconciliationAlertResponse,
    responses=_AUTH_RESPONSES,
)
async def acknowledge_reconciliation_alert(alert_id: int, body: ActorRequest, db: AsyncSession = Depends(get_db)):
    return await payment_reconciliation_service.acknowledge_reconciliation_alert(db, alert_id, body.by)


@router.post(
    "/reconciliation-alerts/{alert_id}/resolve",
    response_model=ReconciliationAlertResponse,
    responses=_AUTH_RESPONSES,
)
async def resolve_reconciliation_alert(
    alert_id: int,
    body: ReconciliationResolveRequest,
    db: AsyncSession = Depends(get_db),
):
    return await payment_reconciliation_service.resolve_reconciliation_alert(db, alert_id, body.by, body.notes)


# ─── Circuit breakers ───────────────────────────────────────────────────────

@router.get(
    "/circuit-breakers",
    summary="Circuit breaker status",
    description="Current state of every registered breaker (the FSM API breaker is always listed).",
    responses=_AUTH_RESPONSES,
)
async def get_circuit_breaker_status() -> list[dict[str, Any]]:
    get_fsm_circuit_breaker()
    return CircuitBreaker.all_statuses()
