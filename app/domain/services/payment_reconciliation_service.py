"""
Payment reconciliation engine.

Compares the paid total an invoice reports against the sum of its payment
records, checks deposit handling, and keeps one open alert per invoice.
The RECON_STATUS marker on the invoice's job mirrors the outcome.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import settings
from app.core.exceptions import ErrorCode, FSMNotFoundError, InvalidStatusError, NotFoundException
from app.core.logging import get_logger
from app.core.time_utils import utcnow
from app.db.models.reconciliation_alert import (
    ReconciliationAlert,
    ReconciliationAlertStatus,
    ReconciliationAlertType,
    ReconciliationSeverity,
)
from app.db.models.webhook_event import WebhookEvent
from app.domain.services.engine_outcome import EngineOutcome
from app.domain.services.fsm.client import FSMClient
from app.domain.services.fsm.custom_fields import RECON_STATUS_FIELD
from app.domain.services.fsm.schemas import Invoice, Payment, to_cents

logger = get_logger(__name__)

NEEDS_REVIEW_STATUS = "NEEDS_REVIEW"
OK_STATUS = "OK"
INVOICE_ENTITY = "invoice"
DEPOSIT_MAX_SHARE_PERCENT = 50


def _dollars(cents: int) -> str:
    sign = "-" if cents < 0 else ""
    return f"{sign}${abs(cents) / 100:.2f}"


@dataclass
class ReconciliationCheck:
    invoice_id: str
    job_id: str | None
    invoice_total_cents: int
    reported_paid_cents: int
    payments_sum_cents: int
    deposit_inconsistency: bool

    @property
    def variance_cents(self) -> int:
        return self.payments_sum_cents - self.reported_paid_cents

    @property
    def payment_mismatch(self) -> bool:
        return self.variance_cents != 0

    @property
    def consistent(self) -> bool:
        return not (self.payment_mismatch or self.deposit_inconsistency)

    @property
    def alert_type(self) -> ReconciliationAlertType:
        if self.deposit_inconsistency:
            return ReconciliationAlertType.DEPOSIT_INCONSISTENCY
        return ReconciliationAlertType.PAYMENT_MISMATCH

    @property
    def severity(self) -> ReconciliationSeverity:
        if abs(self.variance_cents) > settings.PAYMENT_VARIANCE_CRITICAL_CENTS:
            return ReconciliationSeverity.CRITICAL
        return ReconciliationSeverity.WARNING

    @property
    def description(self) -> str:
        if self.deposit_inconsistency:
            return "Deposit handling inconsistency detected in payment records"
        return (
            f"Payment sum mismatch: Invoice shows {_dollars(self.reported_paid_cents)} paid, "
            f"but sum of payments is {_dollars(self.payments_sum_cents)} "
            f"(variance: {_dollars(self.variance_cents)})"
        )


def has_deposit_inconsistency(invoice_total_cents: int, payments: list[Payment]) -> bool:
    """A deposit over half the invoice total, or more than one deposit payment"""
    deposits = [p for p in payments if p.is_deposit]
    if not deposits:
        return False
    if to_cents(deposits[0].amount) * 100 > invoice_total_cents * DEPOSIT_MAX_SHARE_PERCENT:
        return True
    return len(deposits) > 1


def check_invoice(invoice: Invoice, payments: list[Payment]) -> ReconciliationCheck:
    total = to_cents(invoice.amounts.total)
    return ReconciliationCheck(
        invoice_id=invoice.id,
        job_id=invoice.job.id if invoice.job else None,
        invoice_total_cents=total,
        reported_paid_cents=to_cents(invoice.amounts.paid),
        payments_sum_cents=sum(to_cents(p.amount) for p in payments),
        deposit_inconsistency=has_deposit_inconsistency(total, payments),
    )


class PaymentReconciliationEngine:
    def __init__(self, db: AsyncSession, client: FSMClient):
        self.db = db
        self.client = client

    async def process(self, event: WebhookEvent) -> EngineOutcome:
        try:
            if event.topic.startswith("PAYMENT_"):
                payment = await self.client.get_payment(event.object_id)
                if payment.invoice is None:
                    logger.info("Payment has no linked invoice", extra_data={"payment_id": payment.id})
                    return EngineOutcome.SKIPPED
                invoice_id = payment.invoice.id
            elif event.topic.startswith("INVOICE_"):
                invoice_id = event.object_id
            else:
                return EngineOutcome.SKIPPED

            await self.reconcile(event.account_id, invoice_id)
        except FSMNotFoundError as e:
            logger.info(
                "Reconciliation source object not found upstream",
                extra_data={"topic": event.topic, "resource": e.resource, "identifier": e.identifier},
            )
            return EngineOutcome.SKIPPED
        return EngineOutcome.PROCESSED

    async def reconcile(self, account_id: str, invoice_id: str) -> ReconciliationAlert | None:
        invoice = await self.client.get_invoice(invoice_id)
        payments = await self.client.get_invoice_payments(invoice_id)
        check = check_invoice(invoice, payments)

        if check.consistent:
            logger.info("Invoice payments consistent", extra_data={"invoice_id": invoice_id})
            await self._set_recon_status(check.job_id, OK_STATUS)
            return None

        logger.warning(
            "Invoice payment inconsistency",
            extra_data={
                "account_id": account_id,
                "invoice_id": invoice_id,
                "alert_type": check.alert_type.value,
                "variance_cents": check.variance_cents,
                "description": check.description,
            },
        )

        alert = await self._get_open_alert(account_id, invoice_id)
        if alert is not None:
            alert.alert_type = check.alert_type
            alert.severity = check.severity
            alert.job_id = check.job_id
            alert.expected_value_cents = check.reported_paid_cents
            alert.actual_value_cents = check.payments_sum_cents
            alert.variance_cents = check.variance_cents
            alert.description = check.description
            await self.db.commit()
            logger.info("Reconciliation alert refreshed", extra_data={"alert_id": alert.id, "invoice_id": invoice_id})
        else:
            alert = ReconciliationAlert(
                account_id=account_id,
                entity_type=INVOICE_ENTITY,
                entity_id=invoice_id,
                job_id=check.job_id,
                alert_type=check.alert_type,
                severity=check.severity,
                expected_value_cents=check.reported_paid_cents,
                actual_value_cents=check.payments_sum_cents,
                variance_cents=check.variance_cents,
                description=check.description,
                status=ReconciliationAlertStatus.OPEN,
            )
            self.db.add(alert)
            await self.db.commit()

        # Retried on refresh when the marker write failed earlier
        if not alert.external_field_updated and await self._set_recon_status(check.job_id, NEEDS_REVIEW_STATUS):
            alert.external_field_updated = True
            await self.db.commit()
        return alert

    async def _get_open_alert(self, account_id: str, invoice_id: str) -> ReconciliationAlert | None:
        result = await self.db.execute(
            select(ReconciliationAlert)
            .where(
                ReconciliationAlert.account_id == account_id,
                ReconciliationAlert.entity_type == INVOICE_ENTITY,
                ReconciliationAlert.entity_id == invoice_id,
                ReconciliationAlert.status == ReconciliationAlertStatus.OPEN,
            )
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def _set_recon_status(self, job_id: str | None, status: str) -> bool:
        if not job_id:
            return False
        try:
            await self.client.set_job_custom_field(job_id, RECON_STATUS_FIELD, status)
        except Exception as e:
            logger.warning(
                "Failed to update reconciliation status on job",
                extra_data={"job_id": job_id, "status": status, "error": str(e)},
            )
            return False
        return True


# ── operator actions ──

async def list_reconciliation_alerts(
    db: AsyncSession,
    account_id: str | None = None,
    status: ReconciliationAlertStatus | None = None,
    limit: int = 100,
) -> list[ReconciliationAlert]:
    query = select(ReconciliationAlert)
    if account_id:
        query = query.where(ReconciliationAlert.account_id == account_id)
    if status:
        query = query.where(ReconciliationAlert.status == status)
    result = await db.execute(query.order_by(ReconciliationAlert.created_at.desc()).limit(limit))
    return list(result.scalars().all())


async def get_reconciliation_summary(db: AsyncSession, account_id: str) -> dict[str, Any]:
    base = ReconciliationAlert.account_id == account_id

    async def _counts(column) -> dict[str, int]:
        rows = await db.execute(select(column, func.count()).where(base).group_by(column))
        return {value.value: count for value, count in rows.all()}

    by_status = await _counts(ReconciliationAlert.status)
    by_type = await _counts(ReconciliationAlert.alert_type)
    by_severity = await _counts(ReconciliationAlert.severity)

    open_variance = await db.execute(
        select(func.coalesce(func.sum(func.abs(ReconciliationAlert.variance_cents)), 0)).where(
            base, ReconciliationAlert.status == ReconciliationAlertStatus.OPEN
        )
    )
    return {
        "total": sum(by_status.values()),
        "by_status": {s.value: by_status.get(s.value, 0) for s in ReconciliationAlertStatus},
        "by_type": {t.value: by_type.get(t.value, 0) for t in ReconciliationAlertType},
        "by_severity": {s.value: by_severity.get(s.value, 0) for s in ReconciliationSeverity},
        "total_open_variance_cents": int(open_variance.scalar_one()),
    }


async def _get_alert(db: AsyncSession, alert_id: int) -> ReconciliationAlert:
    alert = await db.get(ReconciliationAlert, alert_id)
    if alert is None:
        raise NotFoundException("reconciliation alert", alert_id, ErrorCode.ALERT_NOT_FOUND)
    return alert


async def acknowledge_reconciliation_alert(db: AsyncSession, alert_id: int, acknowledged_by: str) -> ReconciliationAlert:
    alert = await _get_alert(db, alert_id)
    if alert.status != ReconciliationAlertStatus.OPEN:
        raise InvalidStatusError(
            "reconciliation alert", alert_id, alert.status.value, "acknowledge", ErrorCode.ALERT_INVALID_STATUS
        )
    alert.status = ReconciliationAlertStatus.ACKNOWLEDGED
    alert.acknowledged_by = acknowledged_by
    alert.acknowledged_at = utcnow()
    await db.commit()
    return alert


async def resolve_reconciliation_alert(
    db: AsyncSession,
    alert_id: int,
    resolved_by: str,
    notes: str | None = None,
) -> ReconciliationAlert:
    alert = await _get_alert(db, alert_id)
    if alert.status == ReconciliationAlertStatus.RESOLVED:
        raise InvalidStatusError(
            "reconciliation alert", alert_id, alert.status.value, "resolve", ErrorCode.ALERT_INVALID_STATUS
        )
    alert.status = ReconciliationAlertStatus.RESOLVED
    alert.resolved_by = resolved_by
    alert.resolved_at = utcnow()
    alert.resolution_notes = notes
    await db.commit()
    return alert
