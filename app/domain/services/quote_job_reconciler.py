"""
Quote -> job reconciler.

On an approved quote, diff its line items against the linked job and either
apply them to the job or flag a change order. Each semantic event
(topic, object, time) is handled once, and events caused by our own writes
are ignored.
"""
from __future__ import annotations

import hashlib
from dataclasses import asdict
from datetime import datetime, timedelta

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import settings
from app.core.exceptions import FSMNotFoundError
from app.core.logging import get_logger
from app.core.time_utils import isoformat_z, to_naive_utc, utcnow
from app.db.models.quote_job_sync import QuoteJobSyncRecord, QuoteJobSyncStatus
from app.db.models.webhook_event import WebhookEvent
from app.domain.services.engine_outcome import EngineOutcome
from app.domain.services.fsm.client import FSMClient
from app.domain.services.fsm.custom_fields import CHANGE_ORDER_REQUIRED_FIELD
from app.domain.services.fsm.schemas import Quote
from app.domain.services.quote_job_rules import (
    DEFAULT_POLICY,
    LineItem,
    QuoteJobPolicy,
    can_auto_apply,
    change_order_reason,
    evaluate_rules,
)
from app.domain.services.write_source_service import WriteSourceService

logger = get_logger(__name__)

CLIENT_JOBS_LOOKUP_LIMIT = 10


def compute_idempotency_key(topic: str, object_id: str, occurred_at: datetime) -> str:
    raw = f"{topic}:{object_id}:{isoformat_z(occurred_at)}"
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()


class QuoteJobReconciler:
    def __init__(self, db: AsyncSession, client: FSMClient, policy: QuoteJobPolicy = DEFAULT_POLICY):
        self.db = db
        self.client = client
        self.policy = policy
        self.write_sources = WriteSourceService(db)

    async def process(self, event: WebhookEvent) -> EngineOutcome:
        account_id = event.account_id
        quote_id = event.object_id
        key = compute_idempotency_key(event.topic, quote_id, event.occurred_at)

        record = await self._get_record(key)
        if record is not None and not self._is_resumable(record, event):
            logger.info(
                "Quote event already reconciled",
                extra_data={"quote_id": quote_id, "idempotency_key": key, "status": record.status.value},
            )
            return EngineOutcome.DUPLICATE

        if await self.write_sources.is_write_loop(account_id, "quote", quote_id, event.occurred_at):
            await self._save_skipped(record, event, key, "Writeback loop detected")
            return EngineOutcome.SKIPPED

        record = await self._start_record(record, event, key)
        if record is None:
            return EngineOutcome.DUPLICATE
        record_id = record.id

        try:
            return await self._reconcile(record, event)
        except Exception as e:
            await self.db.rollback()
            await self.db.execute(
                update(QuoteJobSyncRecord)
                .where(QuoteJobSyncRecord.id == record_id)
                .values(status=QuoteJobSyncStatus.FAILED, error=str(e), completed_at=utcnow())
            )
            await self.db.commit()
            raise

    async def _reconcile(self, record: QuoteJobSyncRecord, event: WebhookEvent) -> EngineOutcome:
        account_id = event.account_id
        quote_id = event.object_id

        try:
            quote = await self.client.get_quote(quote_id)
        except FSMNotFoundError:
            return await self._finish_skipped(record, "Quote not found")

        if not quote.is_approved:
            return await self._finish_skipped(record, f"Quote status: {quote.quote_status}")

        job_id = await self.find_linked_job(quote)
        if job_id is None:
            return await self._finish_skipped(record, "No linked job found")
        record.job_id = job_id

        if await self.write_sources.is_write_loop(account_id, "job", job_id, event.occurred_at):
            return await self._finish_skipped(record, "Writeback loop detected")

        try:
            job = await self.client.get_job(job_id)
        except FSMNotFoundError:
            return await self._finish_skipped(record, "Linked job not found")

        quote_items = [LineItem.from_fsm(item) for item in quote.line_items]
        job_items = [LineItem.from_fsm(item) for item in job.line_items]
        evaluation = evaluate_rules(quote_items, job_items, self.policy)
        record.diff = evaluation.diff_as_dict()
        record.violations = evaluation.violations_as_list()

        if can_auto_apply(evaluation):
            await self._apply(record, account_id, job_id, quote_items, has_changes=bool(evaluation.diffs))
        else:
            await self._flag_change_order(record, account_id, job_id, change_order_reason(evaluation))

        record.completed_at = utcnow()
        await self.db.commit()
        return EngineOutcome.PROCESSED

    async def _apply(
        self,
        record: QuoteJobSyncRecord,
        account_id: str,
        job_id: str,
        quote_items: list[LineItem],
        *,
        has_changes: bool,
    ) -> None:
        if has_changes:
            await self.write_sources.mark_self_write(account_id, "job", job_id)
            await self.client.update_job_line_items(job_id, [item.to_fsm() for item in quote_items])

        record.status = QuoteJobSyncStatus.APPLIED
        record.applied_changes = {
            "line_items": [asdict(item) for item in quote_items],
            "written": has_changes,
        }
        logger.info(
            "Quote changes applied to job",
            extra_data={
                "account_id": account_id,
                "quote_id": record.quote_id,
                "job_id": job_id,
                "line_items": len(quote_items),
                "written": has_changes,
            },
        )

    async def _flag_change_order(self, record: QuoteJobSyncRecord, account_id: str, job_id: str, reason: str) -> None:
        await self.write_sources.mark_self_write(account_id, "job", job_id)

        try:
            await self.client.set_job_custom_field(job_id, CHANGE_ORDER_REQUIRED_FIELD, "true")
        except Exception as e:
            logger.warning(
                "Failed to set change order marker on job",
                extra_data={"account_id": account_id, "job_id": job_id, "error": str(e)},
            )

        try:
            await self.client.add_job_note(job_id, f"Change order required - {reason}")
        except Exception as e:
            logger.warning(
                "Failed to add change order note to job",
                extra_data={"account_id": account_id, "job_id": job_id, "error": str(e)},
            )

        record.status = QuoteJobSyncStatus.CHANGE_ORDER
        record.change_order_reason = reason
        logger.info(
            "Change order required for job",
            extra_data={
                "account_id": account_id,
                "quote_id": record.quote_id,
                "job_id": job_id,
                "reason": reason,
            },
        )

    async def find_linked_job(self, quote: Quote) -> str | None:
        """Direct link, then converted-to link, then the client's most recent job created just after the quote"""
        if quote.job and quote.job.id:
            return quote.job.id
        if quote.converted_to and quote.converted_to.job and quote.converted_to.job.id:
            return quote.converted_to.job.id
        if not (quote.client and quote.client.id):
            return None

        try:
            jobs = await self.client.get_client_jobs(quote.client.id, CLIENT_JOBS_LOOKUP_LIMIT)
        except FSMNotFoundError:
            return None

        quote_created = to_naive_utc(quote.created_at) if quote.created_at else utcnow()
        window = timedelta(days=settings.LINKED_JOB_LOOKBACK_DAYS)
        candidates = [
            job for job in jobs
            if job.created_at is not None
            and timedelta(0) <= to_naive_utc(job.created_at) - quote_created <= window
        ]
        if not candidates:
            return None
        candidates.sort(key=lambda job: to_naive_utc(job.created_at), reverse=True)
        return candidates[0].id

    # ── sync records ──

    async def _get_record(self, key: str) -> QuoteJobSyncRecord | None:
        result = await self.db.execute(
            select(QuoteJobSyncRecord).where(QuoteJobSyncRecord.idempotency_key == key)
        )
        return result.scalar_one_or_none()

    @staticmethod
    def _is_resumable(record: QuoteJobSyncRecord, event: WebhookEvent) -> bool:
        """A failed record, or one left processing by a crashed attempt of this same event"""
        if record.status == QuoteJobSyncStatus.FAILED:
            return True
        return record.status == QuoteJobSyncStatus.PROCESSING and record.webhook_event_id == event.event_id

    async def _start_record(
        self,
        record: QuoteJobSyncRecord | None,
        event: WebhookEvent,
        key: str,
    ) -> QuoteJobSyncRecord | None:
        if record is None:
            record = QuoteJobSyncRecord(
                idempotency_key=key,
                account_id=event.account_id,
                topic=event.topic,
                quote_id=event.object_id,
                occurred_at=event.occurred_at,
            )
            try:
                async with self.db.begin_nested():
                    self.db.add(record)
            except IntegrityError:
                logger.info("Quote event claimed concurrently", extra_data={"idempotency_key": key})
                return None

        record.webhook_event_id = event.event_id
        record.status = QuoteJobSyncStatus.PROCESSING
        record.error = None
        record.skip_reason = None
        await self.db.commit()
        return record

    async def _save_skipped(
        self,
        record: QuoteJobSyncRecord | None,
        event: WebhookEvent,
        key: str,
        reason: str,
    ) -> None:
        if record is None:
            record = await self._start_record(None, event, key)
            if record is None:
                return
        await self._finish_skipped(record, reason)

    async def _finish_skipped(self, record: QuoteJobSyncRecord, reason: str) -> EngineOutcome:
        record.status = QuoteJobSyncStatus.SKIPPED
        record.skip_reason = reason
        record.completed_at = utcnow()
        await self.db.commit()
        logger.info(
            "Quote event skipped",
            extra_data={"quote_id": record.quote_id, "job_id": record.job_id, "reason": reason},
        )
        return EngineOutcome.SKIPPED


async def list_sync_records(
    db: AsyncSession,
    account_id: str | None = None,
    status: QuoteJobSyncStatus | None = None,
    limit: int = 50,
) -> list[QuoteJobSyncRecord]:
    query = select(QuoteJobSyncRecord)
    if account_id:
        query = query.where(QuoteJobSyncRecord.account_id == account_id)
    if status:
        query = query.where(QuoteJobSyncRecord.status == status)
    result = await db.execute(query.order_by(QuoteJobSyncRecord.created_at.desc()).limit(limit))
    return list(result.scalars().all())
