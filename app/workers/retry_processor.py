"""
Inbox processor: claims webhook events, runs the engine families for their
topic in order, and routes failures to backoff retries or the dead-letter
queue.

Every failure path ends in a persisted status, so nothing escapes to the
caller and the durable rows always describe where an event stands.
"""
from __future__ import annotations

from datetime import timedelta
from typing import Any, Callable, Protocol

from sqlalchemy import and_, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.core.config import settings
from app.core.exceptions import FSMNotFoundError
from app.core.logging import event_correlation_id, get_logger, set_correlation_id
from app.core.retry_policy import RetryPolicy, dead_letter_retry_policy, webhook_retry_policy
from app.core.time_utils import utcnow
from app.db.database import AsyncSessionLocal
from app.db.models.dead_letter_item import DeadLetterItem, RETRYABLE_DEAD_LETTER_STATUSES
from app.db.models.webhook_event import WebhookEvent, WebhookEventStatus
from app.domain.services.billing_milestone_service import BillingMilestoneEngine
from app.domain.services.dead_letter_service import DeadLetterService
from app.domain.services.engine_outcome import EngineOutcome
from app.domain.services.fsm import get_fsm_client
from app.domain.services.fsm.client import FSMClient
from app.domain.services.margin_variance_service import MarginVarianceEngine
from app.domain.services.payment_reconciliation_service import PaymentReconciliationEngine
from app.domain.services.quote_job_reconciler import QuoteJobReconciler
from app.domain.services.quote_job_rules import DEFAULT_POLICY, QuoteJobPolicy
from app.domain.services.webhook_ingest_service import EngineFamily, families_for_topic
from app.workers.event_worker import EventWorker

logger = get_logger(__name__)

MAX_ERROR_LENGTH = 2000


class Engine(Protocol):
    async def process(self, event: WebhookEvent) -> EngineOutcome: ...


ClientFactory = Callable[[str, AsyncSession], FSMClient]


class RetryProcessor:
    def __init__(
        self,
        session_factory: async_sessionmaker | None = None,
        client_factory: ClientFactory = get_fsm_client,
        policy: RetryPolicy | None = None,
        dead_letter_policy: RetryPolicy | None = None,
        quote_job_policy: QuoteJobPolicy = DEFAULT_POLICY,
    ):
        self.session_factory = session_factory or AsyncSessionLocal
        self.client_factory = client_factory
        self.policy = policy or webhook_retry_policy()
        self.dead_letter_policy = dead_letter_policy or dead_letter_retry_policy()
        self.quote_job_policy = quote_job_policy
        self.worker = EventWorker(self.process_event)

    # ── lifecycle ──

    async def start(self) -> int:
        self.worker.start()
        return await self.recover()

    async def stop(self) -> None:
        await self.worker.stop()

    def enqueue(self, event_id: str) -> None:
        self.worker.enqueue(event_id)

    async def recover(self) -> int:
        """Re-hydrate the queue from pending rows and stale processing rows"""
        now = utcnow()
        async with self.session_factory() as db:
            await self._release_stale(db, now)
            rows = await db.execute(
                select(WebhookEvent.event_id, WebhookEvent.next_retry_at)
                .where(WebhookEvent.status == WebhookEventStatus.PENDING)
                .order_by(WebhookEvent.received_at)
            )
            pending = rows.all()

        for event_id, next_retry_at in pending:
            delay = (next_retry_at - now).total_seconds() if next_retry_at else 0
            if delay > 0:
                self.worker.enqueue_later(event_id, delay)
            else:
                self.worker.enqueue(event_id)

        if pending:
            logger.info("Recovered pending webhook events", extra_data={"count": len(pending)})
        return len(pending)

    async def _release_stale(self, db: AsyncSession, now) -> int:
        """Stale inbox claims go back to PENDING; stale dead-letter retries go back to FAILED"""
        stale_before = now - timedelta(seconds=settings.STALE_PROCESSING_SECONDS)
        stale = and_(
            WebhookEvent.status == WebhookEventStatus.PROCESSING,
            or_(
                WebhookEvent.processing_started_at.is_(None),
                WebhookEvent.processing_started_at < stale_before,
            ),
        )
        dead_lettered = WebhookEvent.event_id.in_(
            select(DeadLetterItem.webhook_event_id).where(
                DeadLetterItem.status.in_(RETRYABLE_DEAD_LETTER_STATUSES)
            )
        )

        to_failed = await db.execute(
            update(WebhookEvent)
            .where(stale, dead_lettered)
            .values(status=WebhookEventStatus.FAILED)
        )
        to_pending = await db.execute(
            update(WebhookEvent)
            .where(stale)
            .values(status=WebhookEventStatus.PENDING)
        )
        await db.commit()

        released = (to_failed.rowcount or 0) + (to_pending.rowcount or 0)
        if released:
            logger.warning(
                "Released stale processing events",
                extra_data={"to_pending": to_pending.rowcount or 0, "to_failed": to_failed.rowcount or 0},
            )
        return released

    # ── inbox processing ──

    async def process_event(self, event_id: str) -> WebhookEventStatus | None:
        """
        Process one inbox event.

        Returns the resulting status, or None when the event could not be
        claimed (already taken, finished, or missing).
        """
        set_correlation_id(event_correlation_id(event_id))
        async with self.session_factory() as db:
            event = await self._claim(db, event_id, WebhookEventStatus.PENDING)
            if event is None:
                logger.debug("Webhook event not claimable", extra_data={"event_id": event_id})
                return None

            client = self.client_factory(event.account_id, db)
            try:
                status = await self._run_families(db, client, event)
            except Exception as e:
                return await self._record_failure(db, event_id, e)

            await self._finish(db, event, status)
            return status

    async def process_overdue(self, limit: int = 50) -> dict[str, int]:
        """
        Process pending events the in-process queue has not picked up in time.

        Used by the periodic task; claims keep it from racing the queue.
        """
        now = utcnow()
        grace = timedelta(seconds=settings.STALE_PROCESSING_SECONDS)
        async with self.session_factory() as db:
            released = await self._release_stale(db, now)
            rows = await db.execute(
                select(WebhookEvent.event_id)
                .where(
                    WebhookEvent.status == WebhookEventStatus.PENDING,
                    or_(
                        WebhookEvent.next_retry_at <= now - grace,
                        and_(WebhookEvent.next_retry_at.is_(None), WebhookEvent.received_at <= now - grace),
                    ),
                )
                .order_by(WebhookEvent.received_at)
                .limit(limit)
            )
            event_ids = list(rows.scalars().all())

        results = {"released": released, "processed": 0, "failed": 0}
        for event_id in event_ids:
            status = await self.process_event(event_id)
            if status in (WebhookEventStatus.COMPLETED, WebhookEventStatus.SKIPPED):
                results["processed"] += 1
            elif status is not None:
                results["failed"] += 1
        return results

    async def _claim(
        self,
        db: AsyncSession,
        event_id: str,
        from_status: WebhookEventStatus,
    ) -> WebhookEvent | None:
        result = await db.execute(
            update(WebhookEvent)
            .where(WebhookEvent.event_id == event_id, WebhookEvent.status == from_status)
            .values(status=WebhookEventStatus.PROCESSING, processing_started_at=utcnow())
        )
        await db.commit()
        if result.rowcount != 1:
            return None
        return await db.get(WebhookEvent, event_id, populate_existing=True)

    def build_engine(self, family: EngineFamily, db: AsyncSession, client: FSMClient) -> Engine:
        if family == EngineFamily.QUOTE_JOB:
            return QuoteJobReconciler(db, client, self.quote_job_policy)
        if family == EngineFamily.BILLING:
            return BillingMilestoneEngine(db, client)
        if family == EngineFamily.MARGIN:
            return MarginVarianceEngine(db, client)
        return PaymentReconciliationEngine(db, client)

    async def _run_families(self, db: AsyncSession, client: FSMClient, event: WebhookEvent) -> WebhookEventStatus:
        families = families_for_topic(event.topic)
        handled: dict[str, str] = dict(event.handled_families or {})

        for family in families:
            if family.value in handled:
                continue
            engine = self.build_engine(family, db, client)
            try:
                outcome = await engine.process(event)
            except FSMNotFoundError as e:
                logger.info(
                    "Object not found upstream, family skipped",
                    extra_data={"event_id": event.event_id, "family": family.value, "identifier": e.identifier},
                )
                outcome = EngineOutcome.SKIPPED

            handled[family.value] = outcome.value
            event.handled_families = dict(handled)
            await db.commit()
            logger.debug(
                "Engine family finished",
                extra_data={"event_id": event.event_id, "family": family.value, "outcome": outcome.value},
            )

        outcomes = [handled.get(f.value) for f in families]
        if outcomes and all(o == EngineOutcome.SKIPPED.value for o in outcomes):
            return WebhookEventStatus.SKIPPED
        return WebhookEventStatus.COMPLETED

    async def _finish(self, db: AsyncSession, event: WebhookEvent, status: WebhookEventStatus) -> None:
        event.status = status
        event.completed_at = utcnow()
        event.next_retry_at = None
        event.error = None
        await db.commit()
        logger.info(
            "Webhook event processed",
            extra_data={
                "event_id": event.event_id,
                "topic": event.topic,
                "status": status.value,
                "attempts": event.attempts,
                "families": event.handled_families,
            },
        )

    async def _record_failure(self, db: AsyncSession, event_id: str, error: Exception) -> WebhookEventStatus:
        message = str(error)[:MAX_ERROR_LENGTH] or type(error).__name__
        await db.rollback()
        event = await db.get(WebhookEvent, event_id, populate_existing=True)

        event.attempts = (event.attempts or 0) + 1
        event.error = message

        if not self.policy.exhausted(event.attempts):
            delay = self.policy.backoff_seconds(event.attempts)
            event.status = WebhookEventStatus.PENDING
            event.next_retry_at = utcnow() + timedelta(seconds=delay)
            await db.commit()
            logger.warning(
                "Webhook event failed, retry scheduled",
                extra_data={
                    "event_id": event_id,
                    "topic": event.topic,
                    "attempts": event.attempts,
                    "max_attempts": self.policy.max_attempts,
                    "retry_in_seconds": delay,
                    "error": message,
                },
            )
            self.worker.enqueue_later(event_id, delay)
            return WebhookEventStatus.PENDING

        event.status = WebhookEventStatus.FAILED
        event.next_retry_at = None
        event.completed_at = utcnow()
        await DeadLetterService(db, self.dead_letter_policy).add(event, message)
        await db.commit()
        logger.error(
            "Webhook event exhausted retries",
            extra_data={"event_id": event_id, "topic": event.topic, "attempts": event.attempts, "error": message},
        )
        return WebhookEventStatus.FAILED

    # ── dead-letter sweep ──

    async def sweep_dead_letters(self, limit: int | None = None) -> dict[str, int]:
        async with self.session_factory() as db:
            items = await DeadLetterService(db, self.dead_letter_policy).get_retryable_items(limit)
            item_ids = [item.id for item in items]

        results = {"retried": 0, "resolved": 0, "failed": 0}
        for item_id in item_ids:
            results["retried"] += 1
            if await self.retry_dead_letter(item_id):
                results["resolved"] += 1
            else:
                results["failed"] += 1

        if item_ids:
            logger.info("Dead letter sweep finished", extra_data=results)
        return results

    async def retry_dead_letter(self, item_id: int) -> bool:
        """One re-attempt of a dead-lettered event; the item's own schedule handles failures"""
        async with self.session_factory() as db:
            dead_letters = DeadLetterService(db, self.dead_letter_policy)
            item = await dead_letters.get_item(item_id)
            if item.status not in RETRYABLE_DEAD_LETTER_STATUSES:
                return False
            event_id = item.webhook_event_id
            set_correlation_id(event_correlation_id(event_id))

            event = await self._claim(db, event_id, WebhookEventStatus.FAILED)
            if event is None:
                return await self._unclaimable_dead_letter(db, dead_letters, item_id, event_id)

            client = self.client_factory(event.account_id, db)
            try:
                status = await self._run_families(db, client, event)
            except Exception as e:
                message = str(e)[:MAX_ERROR_LENGTH] or type(e).__name__
                await db.rollback()
                event = await db.get(WebhookEvent, event_id, populate_existing=True)
                event.status = WebhookEventStatus.FAILED
                event.error = message
                item = await db.get(DeadLetterItem, item_id, populate_existing=True)
                await dead_letters.mark_retry_attempt(item, False, message)
                await db.commit()
                return False

            await self._finish(db, event, status)
            item = await db.get(DeadLetterItem, item_id, populate_existing=True)
            await dead_letters.mark_retry_attempt(item, True)
            await db.commit()
            return True

    async def _unclaimable_dead_letter(
        self,
        db: AsyncSession,
        dead_letters: DeadLetterService,
        item_id: int,
        event_id: str,
    ) -> bool:
        """
        The event left FAILED behind the sweep's back.

        Finished events resolve the item. Anything else counts as a failed
        attempt so the item keeps moving toward EXHAUSTED.
        """
        event = await db.get(WebhookEvent, event_id, populate_existing=True)
        item = await db.get(DeadLetterItem, item_id, populate_existing=True)
        if event is not None and event.status in (WebhookEventStatus.COMPLETED, WebhookEventStatus.SKIPPED):
            await dead_letters.mark_retry_attempt(item, True)
            await db.commit()
            return True

        state = event.status.value if event is not None else "missing"
        logger.warning(
            "Dead-lettered event not claimable",
            extra_data={"item_id": item_id, "event_id": event_id, "event_status": state},
        )
        await dead_letters.mark_retry_attempt(item, False, f"Event not claimable (status: {state})")
        await db.commit()
        return False

    def status(self) -> dict[str, Any]:
        return {
            "running": self.worker.running,
            "queue_size": self.worker.queue_size,
            "max_attempts": self.policy.max_attempts,
        }


_processor: RetryProcessor | None = None


def get_retry_processor() -> RetryProcessor:
    """Process-wide processor used by the API and the lifespan hooks"""
    global _processor
    if _processor is None:
        _processor = RetryProcessor()
    return _processor
