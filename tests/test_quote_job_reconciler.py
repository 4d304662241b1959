"""
Tests for the quote -> job reconciler.

The FSM client is an AsyncMock; sync records and write-source markers live
in the in-memory database.
"""
from datetime import datetime

import pytest
from sqlalchemy import select

from app.core.exceptions import FSMAPIError, FSMNotFoundError
from app.core.time_utils import utcnow
from app.db.models.quote_job_sync import QuoteJobSyncRecord, QuoteJobSyncStatus
from app.domain.services.engine_outcome import EngineOutcome
from app.domain.services.fsm.custom_fields import CHANGE_ORDER_REQUIRED_FIELD
from app.domain.services.fsm.schemas import ClientJob
from app.domain.services.quote_job_reconciler import (
    QuoteJobReconciler,
    compute_idempotency_key,
    list_sync_records,
)
from app.domain.services.write_source_service import WriteSourceService
from tests.factories import TEST_ACCOUNT_ID, make_job, make_line_item, make_quote

BASE_ITEMS = [make_line_item("Mowing", quantity=10, unit_price=50.0)]


async def _records(db_session) -> list[QuoteJobSyncRecord]:
    result = await db_session.execute(select(QuoteJobSyncRecord))
    return list(result.scalars().all())


class TestIdempotencyKey:

    @pytest.mark.unit
    def test_stable_for_same_semantic_event(self) -> None:
        when = datetime(2026, 5, 1, 12, 0, 0)
        assert compute_idempotency_key("QUOTE_APPROVED", "q-1", when) == compute_idempotency_key(
            "QUOTE_APPROVED", "q-1", when
        )
        assert len(compute_idempotency_key("QUOTE_APPROVED", "q-1", when)) == 64

    @pytest.mark.unit
    def test_differs_by_topic_object_and_time(self) -> None:
        when = datetime(2026, 5, 1, 12, 0, 0)
        base = compute_idempotency_key("QUOTE_APPROVED", "q-1", when)
        assert base != compute_idempotency_key("QUOTE_UPDATE", "q-1", when)
        assert base != compute_idempotency_key("QUOTE_APPROVED", "q-2", when)
        assert base != compute_idempotency_key("QUOTE_APPROVED", "q-1", datetime(2026, 5, 1, 12, 0, 1))


class TestApply:
    """Quotes within policy are written to the job"""

    @pytest.mark.asyncio
    async def test_identical_items_apply_without_write(self, db_session, fsm_client, event_factory) -> None:
        fsm_client.get_quote.return_value = make_quote(line_items=BASE_ITEMS)
        fsm_client.get_job.return_value = make_job(line_items=BASE_ITEMS)
        event = await event_factory("QUOTE_APPROVED", "q-1")

        outcome = await QuoteJobReconciler(db_session, fsm_client).process(event)

        assert outcome == EngineOutcome.PROCESSED
        fsm_client.update_job_line_items.assert_not_called()
        [record] = await _records(db_session)
        assert record.status == QuoteJobSyncStatus.APPLIED
        assert record.job_id == "job-1"
        assert record.applied_changes["written"] is False
        assert record.diff["added"] == 0
        assert record.completed_at is not None

    @pytest.mark.asyncio
    async def test_small_addition_is_written(self, db_session, fsm_client, event_factory) -> None:
        quote_items = BASE_ITEMS + [make_line_item("Edging", quantity=1, unit_price=20.0)]
        fsm_client.get_quote.return_value = make_quote(line_items=quote_items)
        fsm_client.get_job.return_value = make_job(line_items=BASE_ITEMS)
        event = await event_factory("QUOTE_APPROVED", "q-1")

        outcome = await QuoteJobReconciler(db_session, fsm_client).process(event)

        assert outcome == EngineOutcome.PROCESSED
        fsm_client.update_job_line_items.assert_awaited_once()
        job_id, written_items = fsm_client.update_job_line_items.await_args.args
        assert job_id == "job-1"
        assert [item.name for item in written_items] == ["Mowing", "Edging"]

        [record] = await _records(db_session)
        assert record.status == QuoteJobSyncStatus.APPLIED
        assert record.applied_changes["written"] is True
        assert record.diff["added"] == 1
        assert record.violations == []

        marker = await WriteSourceService(db_session).get_marker(TEST_ACCOUNT_ID, "job", "job-1")
        assert marker is not None


class TestChangeOrder:
    """Quotes outside policy flag the job instead"""

    @pytest.mark.asyncio
    async def test_blocked_category_flags_change_order(self, db_session, fsm_client, event_factory) -> None:
        quote_items = BASE_ITEMS + [make_line_item("Retaining wall", quantity=1, unit_price=800.0)]
        fsm_client.get_quote.return_value = make_quote(line_items=quote_items)
        fsm_client.get_job.return_value = make_job(line_items=BASE_ITEMS)
        event = await event_factory("QUOTE_APPROVED", "q-1")

        outcome = await QuoteJobReconciler(db_session, fsm_client).process(event)

        assert outcome == EngineOutcome.PROCESSED
        fsm_client.update_job_line_items.assert_not_called()
        fsm_client.set_job_custom_field.assert_awaited_once_with("job-1", CHANGE_ORDER_REQUIRED_FIELD, "true")
        note = fsm_client.add_job_note.await_args.args[1]
        assert note.startswith("Change order required - ")

        [record] = await _records(db_session)
        assert record.status == QuoteJobSyncStatus.CHANGE_ORDER
        assert "Retaining wall" in record.change_order_reason
        rules = {v["rule"] for v in record.violations}
        assert "blockedCategories" in rules
        assert "maxLineItemAddRemoveCents" in rules

    @pytest.mark.asyncio
    async def test_marker_failures_do_not_fail_the_event(self, db_session, fsm_client, event_factory) -> None:
        fsm_client.get_quote.return_value = make_quote(
            line_items=[make_line_item("Mowing", quantity=10, unit_price=52.0)]
        )
        fsm_client.get_job.return_value = make_job(line_items=BASE_ITEMS)
        fsm_client.set_job_custom_field.side_effect = FSMAPIError("field write failed")
        fsm_client.add_job_note.side_effect = FSMAPIError("note write failed")
        event = await event_factory("QUOTE_APPROVED", "q-1")

        outcome = await QuoteJobReconciler(db_session, fsm_client).process(event)

        assert outcome == EngineOutcome.PROCESSED
        [record] = await _records(db_session)
        assert record.status == QuoteJobSyncStatus.CHANGE_ORDER
        assert [v["rule"] for v in record.violations] == ["maxPriceChangePercent"]


class TestSkips:

    @pytest.mark.asyncio
    async def test_unapproved_quote(self, db_session, fsm_client, event_factory) -> None:
        fsm_client.get_quote.return_value = make_quote(status="draft")
        event = await event_factory("QUOTE_UPDATE", "q-1")

        outcome = await QuoteJobReconciler(db_session, fsm_client).process(event)

        assert outcome == EngineOutcome.SKIPPED
        [record] = await _records(db_session)
        assert record.status == QuoteJobSyncStatus.SKIPPED
        assert record.skip_reason == "Quote status: draft"
        fsm_client.get_job.assert_not_called()

    @pytest.mark.asyncio
    async def test_quote_not_found(self, db_session, fsm_client, event_factory) -> None:
        fsm_client.get_quote.side_effect = FSMNotFoundError("quote", "q-1")
        event = await event_factory("QUOTE_APPROVED", "q-1")

        assert await QuoteJobReconciler(db_session, fsm_client).process(event) == EngineOutcome.SKIPPED
        [record] = await _records(db_session)
        assert record.skip_reason == "Quote not found"

    @pytest.mark.asyncio
    async def test_no_linked_job(self, db_session, fsm_client, event_factory) -> None:
        fsm_client.get_quote.return_value = make_quote(job_id=None)
        event = await event_factory("QUOTE_APPROVED", "q-1")

        assert await QuoteJobReconciler(db_session, fsm_client).process(event) == EngineOutcome.SKIPPED
        [record] = await _records(db_session)
        assert record.skip_reason == "No linked job found"

    @pytest.mark.asyncio
    async def test_linked_job_deleted(self, db_session, fsm_client, event_factory) -> None:
        fsm_client.get_quote.return_value = make_quote()
        fsm_client.get_job.side_effect = FSMNotFoundError("job", "job-1")
        event = await event_factory("QUOTE_APPROVED", "q-1")

        assert await QuoteJobReconciler(db_session, fsm_client).process(event) == EngineOutcome.SKIPPED
        [record] = await _records(db_session)
        assert record.skip_reason == "Linked job not found"
        assert record.job_id == "job-1"

    @pytest.mark.asyncio
    async def test_echo_of_own_quote_write(self, db_session, fsm_client, event_factory) -> None:
        await WriteSourceService(db_session).mark_self_write(TEST_ACCOUNT_ID, "quote", "q-1")
        event = await event_factory("QUOTE_UPDATE", "q-1", occurred_at=utcnow())

        assert await QuoteJobReconciler(db_session, fsm_client).process(event) == EngineOutcome.SKIPPED
        fsm_client.get_quote.assert_not_called()
        [record] = await _records(db_session)
        assert record.skip_reason == "Writeback loop detected"

    @pytest.mark.asyncio
    async def test_echo_of_own_job_write(self, db_session, fsm_client, event_factory) -> None:
        fsm_client.get_quote.return_value = make_quote()
        await WriteSourceService(db_session).mark_self_write(TEST_ACCOUNT_ID, "job", "job-1")
        event = await event_factory("QUOTE_APPROVED", "q-1", occurred_at=utcnow())

        assert await QuoteJobReconciler(db_session, fsm_client).process(event) == EngineOutcome.SKIPPED
        fsm_client.get_job.assert_not_called()


class TestIdempotency:

    @pytest.mark.asyncio
    async def test_replay_is_duplicate(self, db_session, fsm_client, event_factory) -> None:
        fsm_client.get_quote.return_value = make_quote(line_items=BASE_ITEMS)
        fsm_client.get_job.return_value = make_job(line_items=BASE_ITEMS)
        occurred = datetime(2026, 5, 1, 9, 30, 0)
        first = await event_factory("QUOTE_APPROVED", "q-1", occurred_at=occurred)
        # Same semantic event redelivered under a new webhook id
        replay = await event_factory("QUOTE_APPROVED", "q-1", occurred_at=occurred)
        reconciler = QuoteJobReconciler(db_session, fsm_client)

        assert await reconciler.process(first) == EngineOutcome.PROCESSED
        assert await reconciler.process(replay) == EngineOutcome.DUPLICATE
        assert await reconciler.process(first) == EngineOutcome.DUPLICATE

        assert fsm_client.get_quote.await_count == 1
        assert len(await _records(db_session)) == 1

    @pytest.mark.asyncio
    async def test_failed_record_resumes_on_retry(self, db_session, fsm_client, event_factory) -> None:
        fsm_client.get_quote.return_value = make_quote(line_items=BASE_ITEMS)
        fsm_client.get_job.side_effect = FSMAPIError("FSM API returned 502")
        event = await event_factory("QUOTE_APPROVED", "q-1")
        reconciler = QuoteJobReconciler(db_session, fsm_client)

        with pytest.raises(FSMAPIError):
            await reconciler.process(event)

        [record] = await _records(db_session)
        assert record.status == QuoteJobSyncStatus.FAILED
        assert "502" in record.error

        fsm_client.get_job.side_effect = None
        fsm_client.get_job.return_value = make_job(line_items=BASE_ITEMS)
        await db_session.refresh(event)

        assert await reconciler.process(event) == EngineOutcome.PROCESSED
        [record] = await _records(db_session)
        assert record.status == QuoteJobSyncStatus.APPLIED
        assert record.error is None

    @pytest.mark.asyncio
    async def test_processing_record_of_other_event_is_not_taken_over(
        self, db_session, fsm_client, event_factory
    ) -> None:
        occurred = datetime(2026, 5, 1, 9, 30, 0)
        event = await event_factory("QUOTE_APPROVED", "q-1", occurred_at=occurred)
        db_session.add(QuoteJobSyncRecord(
            idempotency_key=compute_idempotency_key("QUOTE_APPROVED", "q-1", occurred),
            account_id=TEST_ACCOUNT_ID,
            webhook_event_id="evt-other",
            topic="QUOTE_APPROVED",
            quote_id="q-1",
            status=QuoteJobSyncStatus.PROCESSING,
        ))
        await db_session.commit()

        assert await QuoteJobReconciler(db_session, fsm_client).process(event) == EngineOutcome.DUPLICATE
        fsm_client.get_quote.assert_not_called()


class TestFindLinkedJob:

    @pytest.mark.asyncio
    async def test_converted_to_link(self, db_session, fsm_client) -> None:
        quote = make_quote(job_id=None, convertedTo={"job": {"id": "job-9"}})

        assert await QuoteJobReconciler(db_session, fsm_client).find_linked_job(quote) == "job-9"

    @pytest.mark.asyncio
    async def test_most_recent_client_job_in_window(self, db_session, fsm_client) -> None:
        quote = make_quote(job_id=None, client={"id": "client-1"}, createdAt="2026-05-01T10:00:00Z")
        fsm_client.get_client_jobs.return_value = [
            ClientJob(id="job-before", created_at=datetime(2026, 4, 20)),
            ClientJob(id="job-a", created_at=datetime(2026, 5, 2)),
            ClientJob(id="job-b", created_at=datetime(2026, 5, 3)),
            ClientJob(id="job-late", created_at=datetime(2026, 5, 20)),
            ClientJob(id="job-undated"),
        ]

        assert await QuoteJobReconciler(db_session, fsm_client).find_linked_job(quote) == "job-b"

    @pytest.mark.asyncio
    async def test_no_client_jobs_in_window(self, db_session, fsm_client) -> None:
        quote = make_quote(job_id=None, client={"id": "client-1"}, createdAt="2026-05-01T10:00:00Z")
        fsm_client.get_client_jobs.return_value = [ClientJob(id="job-late", created_at=datetime(2026, 6, 1))]

        assert await QuoteJobReconciler(db_session, fsm_client).find_linked_job(quote) is None


@pytest.mark.asyncio
async def test_list_sync_records_filters(db_session, fsm_client, event_factory) -> None:
    fsm_client.get_quote.side_effect = [make_quote(status="draft"), make_quote(line_items=BASE_ITEMS)]
    fsm_client.get_job.return_value = make_job(line_items=BASE_ITEMS)
    reconciler = QuoteJobReconciler(db_session, fsm_client)
    await reconciler.process(await event_factory("QUOTE_UPDATE", "q-1"))
    await reconciler.process(await event_factory("QUOTE_APPROVED", "q-2"))

    assert len(await list_sync_records(db_session, TEST_ACCOUNT_ID)) == 2
    applied = await list_sync_records(db_session, TEST_ACCOUNT_ID, QuoteJobSyncStatus.APPLIED)
    assert [r.quote_id for r in applied] == ["q-2"]
    assert await list_sync_records(db_session, "acct-other") == []
