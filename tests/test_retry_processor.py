"""
Tests for the inbox processor: claiming, family dispatch, retry backoff,
dead-lettering and the dead-letter sweep.

Engines are replaced with scripted fakes through ``build_engine``; the
processor runs against the in-memory database through its own sessions.
"""
from datetime import timedelta

import pytest
from sqlalchemy import select

from app.core.exceptions import FSMAPIError, FSMNotFoundError
from app.core.retry_policy import RetryPolicy
from app.core.time_utils import utcnow
from app.db.models.dead_letter_item import DeadLetterItem, DeadLetterStatus
from app.db.models.webhook_event import WebhookEvent, WebhookEventStatus
from app.domain.services.billing_milestone_service import BillingMilestoneEngine
from app.domain.services.dead_letter_service import DeadLetterService
from app.domain.services.engine_outcome import EngineOutcome
from app.domain.services.margin_variance_service import MarginVarianceEngine
from app.domain.services.payment_reconciliation_service import PaymentReconciliationEngine
from app.domain.services.quote_job_reconciler import QuoteJobReconciler
from app.domain.services.webhook_ingest_service import EngineFamily
from app.workers.retry_processor import RetryProcessor


class FakeEngine:
    """Engine double: returns scripted outcomes or raises scripted errors, in order"""

    def __init__(self, *results):
        self.results = list(results) or [EngineOutcome.PROCESSED]
        self.calls: list[str] = []

    async def process(self, event: WebhookEvent) -> EngineOutcome:
        self.calls.append(event.event_id)
        result = self.results.pop(0) if len(self.results) > 1 else self.results[0]
        if isinstance(result, Exception):
            raise result
        return result


@pytest.fixture
def engines() -> dict[EngineFamily, FakeEngine]:
    return {family: FakeEngine() for family in EngineFamily}


@pytest.fixture
def processor(session_factory, fsm_client, engines) -> RetryProcessor:
    proc = RetryProcessor(
        session_factory=session_factory,
        client_factory=lambda account_id, db: fsm_client,
        policy=RetryPolicy(max_attempts=3, base_seconds=5, max_backoff_seconds=3600),
        dead_letter_policy=RetryPolicy(max_attempts=3, base_seconds=5, max_backoff_seconds=3600),
    )
    proc.build_engine = lambda family, db, client: engines[family]
    return proc


async def _reload(session_factory, event_id: str) -> WebhookEvent:
    async with session_factory() as db:
        return await db.get(WebhookEvent, event_id)


async def _dead_letters(session_factory) -> list[DeadLetterItem]:
    async with session_factory() as db:
        result = await db.execute(select(DeadLetterItem))
        return list(result.scalars().all())


class TestProcessEvent:

    @pytest.mark.asyncio
    async def test_runs_families_in_order_and_completes(self, processor, engines, event_factory, session_factory) -> None:
        event = await event_factory("JOB_COMPLETED", "job-1")

        status = await processor.process_event(event.event_id)

        assert status == WebhookEventStatus.COMPLETED
        assert engines[EngineFamily.BILLING].calls == [event.event_id]
        assert engines[EngineFamily.MARGIN].calls == [event.event_id]
        assert engines[EngineFamily.PAYMENTS].calls == []

        stored = await _reload(session_factory, event.event_id)
        assert stored.status == WebhookEventStatus.COMPLETED
        assert stored.handled_families == {"billing": "processed", "margin": "processed"}
        assert stored.completed_at is not None
        assert stored.error is None

    @pytest.mark.asyncio
    async def test_all_families_skipped(self, processor, engines, event_factory) -> None:
        engines[EngineFamily.BILLING].results = [EngineOutcome.SKIPPED]
        engines[EngineFamily.PAYMENTS].results = [EngineOutcome.SKIPPED]
        event = await event_factory("INVOICE_PAID", "inv-1")

        assert await processor.process_event(event.event_id) == WebhookEventStatus.SKIPPED

    @pytest.mark.asyncio
    async def test_one_processed_family_completes(self, processor, engines, event_factory) -> None:
        engines[EngineFamily.BILLING].results = [EngineOutcome.SKIPPED]
        event = await event_factory("INVOICE_PAID", "inv-1")

        assert await processor.process_event(event.event_id) == WebhookEventStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_not_found_upstream_skips_family(self, processor, engines, event_factory, session_factory) -> None:
        engines[EngineFamily.BILLING].results = [FSMNotFoundError("job", "job-1")]
        event = await event_factory("JOB_COMPLETED", "job-1")

        assert await processor.process_event(event.event_id) == WebhookEventStatus.COMPLETED
        stored = await _reload(session_factory, event.event_id)
        assert stored.handled_families == {"billing": "skipped", "margin": "processed"}
        assert stored.attempts == 0

    @pytest.mark.asyncio
    async def test_topic_without_families_completes(self, processor, engines, event_factory) -> None:
        event = await event_factory("CLIENT_CREATE", "client-1")

        assert await processor.process_event(event.event_id) == WebhookEventStatus.COMPLETED
        assert all(engine.calls == [] for engine in engines.values())

    @pytest.mark.asyncio
    async def test_unclaimable_events(self, processor, event_factory) -> None:
        processing = await event_factory(status=WebhookEventStatus.PROCESSING)
        completed = await event_factory(status=WebhookEventStatus.COMPLETED)

        assert await processor.process_event(processing.event_id) is None
        assert await processor.process_event(completed.event_id) is None
        assert await processor.process_event("evt-missing") is None

    @pytest.mark.asyncio
    async def test_event_processed_once(self, processor, engines, event_factory) -> None:
        event = await event_factory("QUOTE_APPROVED", "q-1")

        await processor.process_event(event.event_id)
        await processor.process_event(event.event_id)

        assert engines[EngineFamily.QUOTE_JOB].calls == [event.event_id]


class TestFailures:

    @pytest.mark.asyncio
    async def test_failure_schedules_retry_with_backoff(
        self, processor, engines, event_factory, session_factory
    ) -> None:
        engines[EngineFamily.MARGIN].results = [FSMAPIError("FSM API returned 500")]
        event = await event_factory("JOB_COMPLETED", "job-1")

        before = utcnow()
        status = await processor.process_event(event.event_id)

        assert status == WebhookEventStatus.PENDING
        stored = await _reload(session_factory, event.event_id)
        assert stored.status == WebhookEventStatus.PENDING
        assert stored.attempts == 1
        assert stored.error == "FSM API error: FSM API returned 500"
        assert stored.next_retry_at >= before + timedelta(seconds=10)
        # Billing finished before margin failed
        assert stored.handled_families == {"billing": "processed"}

    @pytest.mark.asyncio
    async def test_retry_skips_finished_families(self, processor, engines, event_factory, session_factory) -> None:
        engines[EngineFamily.MARGIN].results = [FSMAPIError("timeout"), EngineOutcome.PROCESSED]
        event = await event_factory("JOB_COMPLETED", "job-1")

        await processor.process_event(event.event_id)
        status = await processor.process_event(event.event_id)

        assert status == WebhookEventStatus.COMPLETED
        assert engines[EngineFamily.BILLING].calls == [event.event_id]
        assert engines[EngineFamily.MARGIN].calls == [event.event_id, event.event_id]
        stored = await _reload(session_factory, event.event_id)
        assert stored.attempts == 1
        assert stored.handled_families == {"billing": "processed", "margin": "processed"}

    @pytest.mark.asyncio
    async def test_exhausted_event_is_dead_lettered(
        self, processor, engines, event_factory, session_factory
    ) -> None:
        engines[EngineFamily.BILLING].results = [FSMAPIError("FSM API returned 503")]
        event = await event_factory("JOB_COMPLETED", "job-1")

        statuses = [await processor.process_event(event.event_id) for _ in range(3)]

        assert statuses == [WebhookEventStatus.PENDING, WebhookEventStatus.PENDING, WebhookEventStatus.FAILED]
        stored = await _reload(session_factory, event.event_id)
        assert stored.status == WebhookEventStatus.FAILED
        assert stored.attempts == 3
        assert stored.next_retry_at is None

        [item] = await _dead_letters(session_factory)
        assert item.webhook_event_id == event.event_id
        assert item.status == DeadLetterStatus.PENDING
        assert item.topic == "JOB_COMPLETED"
        assert item.error_message == "FSM API error: FSM API returned 503"

        # A failed event is no longer claimable by normal processing
        assert await processor.process_event(event.event_id) is None

    @pytest.mark.asyncio
    async def test_empty_error_message_uses_exception_name(
        self, processor, engines, event_factory, session_factory
    ) -> None:
        engines[EngineFamily.QUOTE_JOB].results = [RuntimeError()]
        event = await event_factory("QUOTE_APPROVED", "q-1")

        await processor.process_event(event.event_id)

        assert (await _reload(session_factory, event.event_id)).error == "RuntimeError"


class TestRecovery:

    @pytest.mark.asyncio
    async def test_recover_releases_stale_and_counts_pending(
        self, processor, event_factory, db_session, session_factory
    ) -> None:
        pending = await event_factory()
        stale = await event_factory(status=WebhookEventStatus.PROCESSING)
        fresh = await event_factory(status=WebhookEventStatus.PROCESSING)
        stale.processing_started_at = utcnow() - timedelta(minutes=10)
        fresh.processing_started_at = utcnow()
        await db_session.commit()

        assert await processor.recover() == 2

        assert (await _reload(session_factory, pending.event_id)).status == WebhookEventStatus.PENDING
        assert (await _reload(session_factory, stale.event_id)).status == WebhookEventStatus.PENDING
        assert (await _reload(session_factory, fresh.event_id)).status == WebhookEventStatus.PROCESSING

    @pytest.mark.asyncio
    async def test_process_overdue_picks_up_only_old_events(
        self, processor, engines, event_factory, db_session, session_factory
    ) -> None:
        overdue = await event_factory("QUOTE_APPROVED", "q-1")
        recent = await event_factory("QUOTE_APPROVED", "q-2")
        overdue.received_at = utcnow() - timedelta(hours=1)
        await db_session.commit()

        results = await processor.process_overdue()

        assert results == {"released": 0, "processed": 1, "failed": 0}
        assert (await _reload(session_factory, overdue.event_id)).status == WebhookEventStatus.COMPLETED
        assert (await _reload(session_factory, recent.event_id)).status == WebhookEventStatus.PENDING

    @pytest.mark.asyncio
    async def test_started_worker_drains_recovered_events(
        self, processor, engines, event_factory, session_factory
    ) -> None:
        first = await event_factory("QUOTE_APPROVED", "q-1")
        second = await event_factory("QUOTE_APPROVED", "q-2")

        try:
            assert await processor.start() == 2
            assert processor.status()["running"] is True
            await processor.worker.join()
        finally:
            await processor.stop()

        assert engines[EngineFamily.QUOTE_JOB].calls == [first.event_id, second.event_id]
        assert (await _reload(session_factory, second.event_id)).status == WebhookEventStatus.COMPLETED
        assert processor.status()["running"] is False


class TestDeadLetterSweep:

    @pytest.fixture
    async def dead_lettered(self, db_session, event_factory) -> DeadLetterItem:
        event = await event_factory("JOB_COMPLETED", "job-1", status=WebhookEventStatus.FAILED, attempts=3)
        item = await DeadLetterService(db_session).add(event, "FSM API returned 503")
        item.next_retry_at = utcnow() - timedelta(seconds=1)
        await db_session.commit()
        return item

    @pytest.mark.asyncio
    async def test_successful_retry_resolves(self, processor, dead_lettered, session_factory) -> None:
        results = await processor.sweep_dead_letters()

        assert results == {"retried": 1, "resolved": 1, "failed": 0}
        [item] = await _dead_letters(session_factory)
        assert item.status == DeadLetterStatus.RESOLVED
        event = await _reload(session_factory, dead_lettered.webhook_event_id)
        assert event.status == WebhookEventStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_repeated_failures_exhaust(
        self, processor, engines, dead_lettered, db_session, session_factory
    ) -> None:
        engines[EngineFamily.BILLING].results = [FSMAPIError("still down")]

        for _ in range(3):
            results = await processor.sweep_dead_letters()
            assert results == {"retried": 1, "resolved": 0, "failed": 1}
            # Make the next attempt due right away
            async with session_factory() as db:
                item = await db.get(DeadLetterItem, dead_lettered.id)
                if item.next_retry_at is not None:
                    item.next_retry_at = utcnow() - timedelta(seconds=1)
                    await db.commit()

        [item] = await _dead_letters(session_factory)
        assert item.status == DeadLetterStatus.EXHAUSTED
        assert item.retry_count == 3
        assert item.last_error == "FSM API error: still down"
        event = await _reload(session_factory, dead_lettered.webhook_event_id)
        assert event.status == WebhookEventStatus.FAILED

        assert await processor.sweep_dead_letters() == {"retried": 0, "resolved": 0, "failed": 0}

    @pytest.mark.asyncio
    async def test_crashed_retry_returns_to_failed(
        self, processor, dead_lettered, db_session, session_factory
    ) -> None:
        """A dead-letter retry that died mid-flight is handed back to the sweep, not the inbox"""
        event = await db_session.get(WebhookEvent, dead_lettered.webhook_event_id)
        event.status = WebhookEventStatus.PROCESSING
        event.processing_started_at = utcnow() - timedelta(minutes=10)
        await db_session.commit()

        assert await processor.recover() == 0
        assert (await _reload(session_factory, event.event_id)).status == WebhookEventStatus.FAILED

        assert await processor.sweep_dead_letters() == {"retried": 1, "resolved": 1, "failed": 0}

    @pytest.mark.asyncio
    async def test_unclaimable_event_still_exhausts(
        self, processor, dead_lettered, db_session, session_factory
    ) -> None:
        event = await db_session.get(WebhookEvent, dead_lettered.webhook_event_id)
        event.status = WebhookEventStatus.PENDING
        await db_session.commit()

        for _ in range(3):
            assert await processor.sweep_dead_letters() == {"retried": 1, "resolved": 0, "failed": 1}
            async with session_factory() as db:
                item = await db.get(DeadLetterItem, dead_lettered.id)
                if item.next_retry_at is not None:
                    item.next_retry_at = utcnow() - timedelta(seconds=1)
                    await db.commit()

        [item] = await _dead_letters(session_factory)
        assert item.status == DeadLetterStatus.EXHAUSTED
        assert item.retry_count == 3
        assert item.last_error == "Event not claimable (status: pending)"
        assert await processor.sweep_dead_letters() == {"retried": 0, "resolved": 0, "failed": 0}

    @pytest.mark.asyncio
    async def test_event_finished_elsewhere_resolves_item(
        self, processor, engines, dead_lettered, db_session, session_factory
    ) -> None:
        event = await db_session.get(WebhookEvent, dead_lettered.webhook_event_id)
        event.status = WebhookEventStatus.COMPLETED
        await db_session.commit()

        assert await processor.retry_dead_letter(dead_lettered.id) is True

        [item] = await _dead_letters(session_factory)
        assert item.status == DeadLetterStatus.RESOLVED
        assert engines[EngineFamily.BILLING].calls == []

    @pytest.mark.asyncio
    async def test_retry_of_resolved_item_is_refused(self, processor, dead_lettered, db_session) -> None:
        await DeadLetterService(db_session).resolve(dead_lettered.id, "fixed by hand")

        assert await processor.retry_dead_letter(dead_lettered.id) is False


@pytest.mark.unit
def test_build_engine_maps_families(session_factory, fsm_client, db_session) -> None:
    processor = RetryProcessor(session_factory=session_factory, client_factory=lambda a, d: fsm_client)

    assert isinstance(processor.build_engine(EngineFamily.QUOTE_JOB, db_session, fsm_client), QuoteJobReconciler)
    assert isinstance(processor.build_engine(EngineFamily.BILLING, db_session, fsm_client), BillingMilestoneEngine)
    assert isinstance(processor.build_engine(EngineFamily.MARGIN, db_session, fsm_client), MarginVarianceEngine)
    assert isinstance(
        processor.build_engine(EngineFamily.PAYMENTS, db_session, fsm_client), PaymentReconciliationEngine
    )
    assert processor.status() == {"running": False, "queue_size": 0, "max_attempts": 3}
