"""
Tests for the webhook ingest gateway: dedup, topic classification and
object id extraction.
"""
from datetime import datetime
from unittest.mock import MagicMock

import pytest
from pydantic import ValidationError
from sqlalchemy import func, select

from app.db.models.webhook_event import WebhookEvent, WebhookEventStatus
from app.domain.services.webhook_ingest_service import (
    EngineFamily,
    IngestStatus,
    WebhookIngestGateway,
    WebhookPayload,
    extract_object_id,
    families_for_topic,
    is_supported_topic,
    normalize_topic,
)
from tests.factories import TEST_ACCOUNT_ID


def _payload(event_id: str = "wh-1", topic: str = "JOB_COMPLETED", **kwargs) -> WebhookPayload:
    body = {"webhookEventId": event_id, "accountId": TEST_ACCOUNT_ID, "topic": topic}
    body.update(kwargs)
    return WebhookPayload.model_validate(body)


class TestTopics:
    """Topic normalization and family routing"""

    @pytest.mark.unit
    def test_normalize_strips_and_uppercases(self) -> None:
        assert normalize_topic("  job_completed ") == "JOB_COMPLETED"

    @pytest.mark.unit
    def test_aliases_map_to_canonical(self) -> None:
        assert normalize_topic("QUOTE_UPDATED") == "QUOTE_UPDATE"
        assert normalize_topic("invoice_created") == "INVOICE_CREATE"
        assert is_supported_topic("PAYMENT_UPDATED")

    @pytest.mark.unit
    def test_unknown_topic_not_supported(self) -> None:
        assert not is_supported_topic("APP_CONNECT")
        assert not is_supported_topic("")

    @pytest.mark.unit
    @pytest.mark.parametrize(
        "topic, expected",
        [
            ("QUOTE_APPROVED", [EngineFamily.QUOTE_JOB]),
            ("JOB_COMPLETED", [EngineFamily.BILLING, EngineFamily.MARGIN]),
            ("INVOICE_PAID", [EngineFamily.BILLING, EngineFamily.PAYMENTS]),
            ("VISIT_CREATE", [EngineFamily.MARGIN]),
            ("PAYMENT_CREATED", [EngineFamily.PAYMENTS]),
            ("CLIENT_CREATE", []),
        ],
    )
    def test_families_in_dispatch_order(self, topic: str, expected: list[EngineFamily]) -> None:
        assert families_for_topic(topic) == expected


class TestExtractObjectId:
    """resourceId, then webUri, then data.id / data.itemId"""

    @pytest.mark.unit
    def test_explicit_resource_id_wins(self) -> None:
        payload = _payload(resourceId="job-77", data={"webUri": "https://app.example.com/jobs/12", "id": "x"})
        assert extract_object_id(payload) == "job-77"

    @pytest.mark.unit
    @pytest.mark.parametrize(
        "uri, expected",
        [
            ("https://app.example.com/jobs/12345", "12345"),
            ("https://app.example.com/clients/9/edit", "9"),
            ("https://app.example.com/client/42", "42"),
            ("https://app.example.com/INVOICES/7", "7"),
        ],
    )
    def test_web_uri(self, uri: str, expected: str) -> None:
        assert extract_object_id(_payload(data={"webUri": uri})) == expected

    @pytest.mark.unit
    def test_data_id_then_item_id(self) -> None:
        assert extract_object_id(_payload(data={"id": 55, "itemId": "66"})) == "55"
        assert extract_object_id(_payload(data={"itemId": "66"})) == "66"

    @pytest.mark.unit
    def test_overlong_ids_are_passed_over(self) -> None:
        long_id = "7" * 101
        payload = _payload(data={"webUri": f"https://app.example.com/jobs/{long_id}", "id": long_id, "itemId": "66"})
        assert extract_object_id(payload) == "66"

    @pytest.mark.unit
    def test_resource_id_length_is_bounded(self) -> None:
        with pytest.raises(ValidationError):
            _payload(resourceId="x" * 101)

    @pytest.mark.unit
    def test_unknown_when_nothing_matches(self) -> None:
        assert extract_object_id(_payload(data={"webUri": "https://app.example.com/settings"})) == "unknown"
        assert extract_object_id(_payload()) == "unknown"


class TestWebhookIngestGateway:
    """Inbox writes"""

    @pytest.mark.asyncio
    async def test_accepts_and_enqueues_new_event(self, db_session) -> None:
        enqueue = MagicMock()
        gateway = WebhookIngestGateway(db_session, enqueue=enqueue)

        result = await gateway.receive(_payload(
            "wh-1", "job_completed", resourceId="job-1", occurredAt="2026-05-01T12:00:00Z",
        ))

        assert result.status == IngestStatus.ACCEPTED
        assert result.acknowledged
        enqueue.assert_called_once_with("wh-1")

        event = await db_session.get(WebhookEvent, "wh-1")
        assert event.status == WebhookEventStatus.PENDING
        assert event.topic == "JOB_COMPLETED"
        assert event.object_id == "job-1"
        assert event.attempts == 0
        assert event.occurred_at == datetime(2026, 5, 1, 12, 0, 0)
        assert event.payload["webhookEventId"] == "wh-1"

    @pytest.mark.asyncio
    async def test_duplicate_is_acknowledged_without_second_row(self, db_session) -> None:
        enqueue = MagicMock()
        gateway = WebhookIngestGateway(db_session, enqueue=enqueue)

        first = await gateway.receive(_payload("wh-dup"))
        second = await gateway.receive(_payload("wh-dup", topic="JOB_UPDATE"))

        assert first.status == IngestStatus.ACCEPTED
        assert second.status == IngestStatus.DUPLICATE
        assert enqueue.call_count == 1

        count = await db_session.execute(
            select(func.count()).select_from(WebhookEvent).where(WebhookEvent.event_id == "wh-dup")
        )
        assert count.scalar_one() == 1
        event = await db_session.get(WebhookEvent, "wh-dup")
        assert event.topic == "JOB_COMPLETED"

    @pytest.mark.asyncio
    async def test_unsupported_topic_is_recorded_as_skipped(self, db_session) -> None:
        enqueue = MagicMock()
        gateway = WebhookIngestGateway(db_session, enqueue=enqueue)

        result = await gateway.receive(_payload("wh-2", topic="APP_CONNECT"))

        assert result.status == IngestStatus.IGNORED
        enqueue.assert_not_called()

        event = await db_session.get(WebhookEvent, "wh-2")
        assert event.status == WebhookEventStatus.SKIPPED
        assert event.completed_at is not None
        assert event.error == "Unsupported topic: APP_CONNECT"

    @pytest.mark.asyncio
    async def test_missing_occurred_at_falls_back_to_receipt_time(self, db_session) -> None:
        gateway = WebhookIngestGateway(db_session)

        await gateway.receive(_payload("wh-3", occurredAt="not a timestamp"))

        event = await db_session.get(WebhookEvent, "wh-3")
        assert event.occurred_at == event.received_at

    @pytest.mark.asyncio
    async def test_works_without_enqueue_callback(self, db_session) -> None:
        gateway = WebhookIngestGateway(db_session)

        result = await gateway.receive(_payload("wh-4", topic="QUOTE_APPROVED", resourceId="q-1"))

        assert result.status == IngestStatus.ACCEPTED
        assert (await db_session.get(WebhookEvent, "wh-4")).object_id == "q-1"
