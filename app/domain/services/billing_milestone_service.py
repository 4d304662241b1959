"""
Billing milestone engine.

Job and visit lifecycle events move a job through billing milestones; each
milestone may raise one invoice of a given type. Invoicing is guarded twice,
by the state's ``*_invoice_sent`` flag and by the unique
(billing state, invoice type) row, so a replayed or racing event never
raises a second invoice.
"""
from __future__ import annotations

from typing import Any

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.exceptions import (
    ErrorCode,
    FSMNotFoundError,
    InvalidStatusError,
    InvoiceCreationPendingError,
    NotFoundException,
)
from app.core.logging import get_logger
from app.core.time_utils import utcnow
from app.db.models.billing import (
    MILESTONE_ORDER,
    BillingInvoice,
    BillingInvoiceStatus,
    BillingMilestone,
    JobBillingState,
)
from app.db.models.webhook_event import WebhookEvent
from app.domain.services.billing_rules import (
    BillingRule,
    MilestoneInvoice,
    get_billing_rule,
    is_visit_topic,
    milestone_for_topic,
)
from app.domain.services.engine_outcome import EngineOutcome
from app.domain.services.fsm.client import FSMClient
from app.domain.services.fsm.schemas import Job, LineItem, to_cents

logger = get_logger(__name__)

INVOICE_DELIVERY_METHOD = "EMAIL"


def milestone_amount_cents(total_cents: int, percentage: int) -> int:
    """Share of the job value, rounded half up to the cent"""
    return (total_cents * percentage + 50) // 100


class BillingMilestoneEngine:
    def __init__(self, db: AsyncSession, client: FSMClient):
        self.db = db
        self.client = client

    async def process(self, event: WebhookEvent) -> EngineOutcome:
        if event.topic == "INVOICE_PAID":
            return await self.handle_invoice_paid(event.account_id, event.object_id)

        milestone = milestone_for_topic(event.topic)
        if milestone is None:
            return EngineOutcome.SKIPPED

        job = await self._resolve_job(event)
        if job is None:
            return EngineOutcome.SKIPPED

        rule = get_billing_rule(job.job_type_name)
        if rule is None:
            logger.info(
                "No billing rule for job type",
                extra_data={"job_id": job.id, "job_type": job.job_type_name},
            )
            return EngineOutcome.SKIPPED

        state = await self._upsert_state(event.account_id, job, rule, milestone)

        config = rule.invoice_for_milestone(milestone)
        if config is None:
            logger.debug(
                "No invoice configured for milestone",
                extra_data={"job_id": job.id, "milestone": milestone.value},
            )
            return EngineOutcome.PROCESSED

        await self._raise_milestone_invoice(state, rule, config)
        return EngineOutcome.PROCESSED

    async def _resolve_job(self, event: WebhookEvent) -> Job | None:
        job_id = event.object_id
        try:
            if is_visit_topic(event.topic):
                visit = await self.client.get_visit(event.object_id)
                if visit.job is None:
                    logger.info("Visit has no job, skipping billing", extra_data={"visit_id": visit.id})
                    return None
                job_id = visit.job.id
            return await self.client.get_job(job_id)
        except FSMNotFoundError as e:
            logger.info(
                "Billing source object not found upstream",
                extra_data={"resource": e.resource, "identifier": e.identifier},
            )
            return None

    async def _get_state(self, account_id: str, job_id: str) -> JobBillingState | None:
        result = await self.db.execute(
            select(JobBillingState).where(
                JobBillingState.account_id == account_id,
                JobBillingState.job_id == job_id,
            )
        )
        return result.scalar_one_or_none()

    async def _upsert_state(
        self,
        account_id: str,
        job: Job,
        rule: BillingRule,
        milestone: BillingMilestone,
    ) -> JobBillingState:
        state = await self._get_state(account_id, job.id)
        if state is None:
            try:
                async with self.db.begin_nested():
                    state = JobBillingState(
                        account_id=account_id,
                        job_id=job.id,
                        service_type=rule.service_type,
                        total_job_value_cents=to_cents(job.amounts.total),
                        current_milestone=milestone,
                        billing_stage="pending",
                    )
                    self.db.add(state)
                logger.info(
                    "Billing state created",
                    extra_data={"job_id": job.id, "service_type": rule.service_type, "milestone": milestone.value},
                )
            except IntegrityError:
                state = await self._get_state(account_id, job.id)

        # Milestones only move forward; an older event still evaluates its own invoice
        if MILESTONE_ORDER[milestone] > MILESTONE_ORDER[state.current_milestone]:
            state.current_milestone = milestone
        await self.db.commit()
        return state

    async def _get_invoice(self, state: JobBillingState, config: MilestoneInvoice) -> BillingInvoice | None:
        result = await self.db.execute(
            select(BillingInvoice).where(
                BillingInvoice.billing_state_id == state.id,
                BillingInvoice.invoice_type == config.invoice_type,
            )
        )
        return result.scalar_one_or_none()

    async def _raise_milestone_invoice(
        self,
        state: JobBillingState,
        rule: BillingRule,
        config: MilestoneInvoice,
    ) -> None:
        invoice_type = config.invoice_type
        if state.invoice_sent_flag(invoice_type):
            logger.info(
                "Invoice already sent for milestone",
                extra_data={"job_id": state.job_id, "invoice_type": invoice_type.value},
            )
            return

        invoice = await self._get_invoice(state, config)
        if invoice is not None and invoice.status != BillingInvoiceStatus.PENDING:
            logger.info(
                "Invoice record already exists for milestone",
                extra_data={
                    "job_id": state.job_id,
                    "invoice_type": invoice_type.value,
                    "status": invoice.status.value,
                },
            )
            return

        if invoice is None:
            try:
                async with self.db.begin_nested():
                    invoice = BillingInvoice(
                        billing_state_id=state.id,
                        account_id=state.account_id,
                        job_id=state.job_id,
                        invoice_type=invoice_type,
                        milestone=config.milestone,
                        amount_cents=milestone_amount_cents(state.total_job_value_cents, config.percentage_of_total),
                        percentage=config.percentage_of_total,
                        description=config.description,
                        status=BillingInvoiceStatus.PENDING,
                    )
                    self.db.add(invoice)
            except IntegrityError:
                logger.info(
                    "Invoice claimed concurrently for milestone",
                    extra_data={"job_id": state.job_id, "invoice_type": invoice_type.value},
                )
                return
            await self.db.commit()

        try:
            created = await self.client.create_invoice(
                state.job_id,
                [LineItem(name=config.description, quantity=1, unit_price=invoice.amount_cents / 100)],
            )
        except Exception as e:
            invoice.last_error = str(e)
            invoice.retry_count += 1
            await self.db.commit()
            logger.warning(
                "Invoice creation failed, left pending",
                extra_data={
                    "job_id": state.job_id,
                    "invoice_type": invoice_type.value,
                    "retry_count": invoice.retry_count,
                    "error": str(e),
                },
            )
            raise InvoiceCreationPendingError(state.job_id, invoice_type.value, str(e)) from e

        invoice.external_invoice_id = created.object_id
        invoice.status = BillingInvoiceStatus.CREATED
        invoice.last_error = None
        await self.db.commit()

        if await self._send(invoice):
            state.set_invoice_sent_flag(invoice_type)
            await self.db.commit()
            logger.info(
                "Milestone invoice sent",
                extra_data={
                    "job_id": state.job_id,
                    "invoice_type": invoice_type.value,
                    "external_invoice_id": invoice.external_invoice_id,
                    "amount_cents": invoice.amount_cents,
                },
            )
            await self._update_billing_stage(state, rule.billing_stage_field, rule.stage_label(invoice_type, paid=False))

    async def _send(self, invoice: BillingInvoice) -> bool:
        """Send a created invoice; a failure leaves it ``created`` for an operator resend"""
        try:
            await self.client.send_invoice(invoice.external_invoice_id, INVOICE_DELIVERY_METHOD)
        except Exception as e:
            invoice.last_error = f"Created but send failed: {e}"
            await self.db.commit()
            logger.warning(
                "Invoice created but send failed",
                extra_data={
                    "job_id": invoice.job_id,
                    "external_invoice_id": invoice.external_invoice_id,
                    "error": str(e),
                },
            )
            return False

        invoice.status = BillingInvoiceStatus.SENT
        invoice.sent_at = utcnow()
        invoice.last_error = None
        return True

    async def _update_billing_stage(self, state: JobBillingState, field_label: str, value: str) -> None:
        try:
            await self.client.set_job_custom_field(state.job_id, field_label, value)
        except Exception as e:
            logger.warning(
                "Failed to update billing stage on job",
                extra_data={"job_id": state.job_id, "billing_stage": value, "error": str(e)},
            )
            return
        state.billing_stage = value
        await self.db.commit()

    async def handle_invoice_paid(self, account_id: str, invoice_id: str) -> EngineOutcome:
        try:
            external_invoice = await self.client.get_invoice(invoice_id)
        except FSMNotFoundError:
            logger.info("Paid invoice not found upstream", extra_data={"invoice_id": invoice_id})
            return EngineOutcome.SKIPPED

        result = await self.db.execute(
            select(BillingInvoice).where(
                BillingInvoice.account_id == account_id,
                BillingInvoice.external_invoice_id == invoice_id,
            )
        )
        invoice = result.scalar_one_or_none()
        if invoice is None:
            logger.debug("Paid invoice is not a milestone invoice", extra_data={"invoice_id": invoice_id})
            return EngineOutcome.SKIPPED

        if invoice.status != BillingInvoiceStatus.PAID:
            invoice.status = BillingInvoiceStatus.PAID
            invoice.paid_at = utcnow()
            await self.db.commit()

        state = await self.db.get(JobBillingState, invoice.billing_state_id)
        rule = get_billing_rule(state.service_type) if state else None
        if state is not None and rule is not None:
            if external_invoice.job and external_invoice.job.id != state.job_id:
                logger.warning(
                    "Paid invoice job differs from billing state job",
                    extra_data={"invoice_id": invoice_id, "job_id": state.job_id},
                )
            await self._update_billing_stage(
                state, rule.billing_stage_field, rule.stage_label(invoice.invoice_type, paid=True)
            )

        logger.info(
            "Milestone invoice paid",
            extra_data={"invoice_id": invoice_id, "invoice_type": invoice.invoice_type.value},
        )
        return EngineOutcome.PROCESSED

    async def resend_invoice(self, invoice_row_id: int) -> BillingInvoice:
        """Operator action: retry sending an invoice left ``created``"""
        invoice = await self.db.get(BillingInvoice, invoice_row_id)
        if invoice is None:
            raise NotFoundException("billing invoice", invoice_row_id)
        if invoice.status != BillingInvoiceStatus.CREATED or not invoice.external_invoice_id:
            raise InvalidStatusError(
                "billing invoice", invoice_row_id, invoice.status.value, "resend",
                ErrorCode.INVOICE_INVALID_STATUS,
            )

        state = await self.db.get(JobBillingState, invoice.billing_state_id)
        if await self._send(invoice):
            state.set_invoice_sent_flag(invoice.invoice_type)
            await self.db.commit()
            rule = get_billing_rule(state.service_type)
            if rule is not None:
                await self._update_billing_stage(
                    state, rule.billing_stage_field, rule.stage_label(invoice.invoice_type, paid=False)
                )
        return invoice


async def get_billing_state_for_job(db: AsyncSession, account_id: str, job_id: str) -> JobBillingState:
    result = await db.execute(
        select(JobBillingState).where(
            JobBillingState.account_id == account_id,
            JobBillingState.job_id == job_id,
        )
    )
    state = result.scalar_one_or_none()
    if state is None:
        raise NotFoundException("billing state", f"{account_id}/{job_id}")
    return state


async def get_billing_summary(db: AsyncSession, account_id: str) -> dict[str, Any]:
    """Invoice counts by status, totals invoiced/paid and jobs by milestone"""
    invoices_by_status = {status.value: 0 for status in BillingInvoiceStatus}
    rows = await db.execute(
        select(BillingInvoice.status, func.count(), func.coalesce(func.sum(BillingInvoice.amount_cents), 0))
        .where(BillingInvoice.account_id == account_id)
        .group_by(BillingInvoice.status)
    )
    total_invoiced = 0
    total_paid = 0
    for status, count, amount in rows.all():
        status = BillingInvoiceStatus(status)
        invoices_by_status[status.value] = count
        total_invoiced += int(amount)
        if status == BillingInvoiceStatus.PAID:
            total_paid += int(amount)

    jobs_by_milestone = {milestone.value: 0 for milestone in BillingMilestone}
    milestone_rows = await db.execute(
        select(JobBillingState.current_milestone, func.count())
        .where(JobBillingState.account_id == account_id)
        .group_by(JobBillingState.current_milestone)
    )
    for milestone, count in milestone_rows.all():
        jobs_by_milestone[BillingMilestone(milestone).value] = count

    return {
        "total_jobs": sum(jobs_by_milestone.values()),
        "invoices_by_status": invoices_by_status,
        "total_invoiced_cents": total_invoiced,
        "total_paid_cents": total_paid,
        "jobs_by_milestone": jobs_by_milestone,
    }
