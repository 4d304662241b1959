"""
Webhook ingest gateway.

Dedups inbound FSM events by event id, classifies the topic, persists the
inbox row and hands supported events to the processor. The caller gets an
acknowledgment right away and never waits on downstream work.
"""
from __future__ import annotations

import enum
import re
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.logging import get_logger
from app.core.time_utils import parse_timestamp, utcnow
from app.db.models.webhook_event import WebhookEvent, WebhookEventStatus

logger = get_logger(__name__)


# ── topics ──

SUPPORTED_TOPICS = frozenset({
    "CLIENT_CREATE",
    "CLIENT_UPDATE",
    "PROPERTY_CREATE",
    "PROPERTY_UPDATE",
    "QUOTE_CREATE",
    "QUOTE_UPDATE",
    "QUOTE_APPROVED",
    "JOB_CREATE",
    "JOB_UPDATE",
    "JOB_SCHEDULE_UPDATE",
    "JOB_COMPLETED",
    "VISIT_CREATE",
    "VISIT_UPDATE",
    "VISIT_COMPLETED",
    "VISIT_APPROVED",
    "INVOICE_CREATE",
    "INVOICE_UPDATE",
    "INVOICE_PAID",
    "PAYMENT_CREATE",
    "PAYMENT_UPDATE",
})

TOPIC_ALIASES = {
    "QUOTE_UPDATED": "QUOTE_UPDATE",
    "JOB_CREATED": "JOB_CREATE",
    "JOB_UPDATED": "JOB_UPDATE",
    "VISIT_CREATED": "VISIT_CREATE",
    "VISIT_UPDATED": "VISIT_UPDATE",
    "INVOICE_CREATED": "INVOICE_CREATE",
    "INVOICE_UPDATED": "INVOICE_UPDATE",
    "PAYMENT_CREATED": "PAYMENT_CREATE",
    "PAYMENT_UPDATED": "PAYMENT_UPDATE",
}


class EngineFamily(str, enum.Enum):
    QUOTE_JOB = "quote_job"
    BILLING = "billing"
    MARGIN = "margin"
    PAYMENTS = "payments"


_FAMILY_TOPICS: dict[EngineFamily, frozenset[str]] = {
    EngineFamily.QUOTE_JOB: frozenset({"QUOTE_APPROVED", "QUOTE_UPDATE"}),
    EngineFamily.BILLING: frozenset({
        "JOB_CREATE", "JOB_SCHEDULE_UPDATE", "JOB_UPDATE", "JOB_COMPLETED",
        "VISIT_COMPLETED", "VISIT_APPROVED", "INVOICE_PAID",
    }),
    EngineFamily.MARGIN: frozenset({
        "JOB_CREATE", "JOB_UPDATE", "JOB_COMPLETED",
        "VISIT_CREATE", "VISIT_UPDATE", "VISIT_COMPLETED", "VISIT_APPROVED",
    }),
    EngineFamily.PAYMENTS: frozenset({
        "INVOICE_CREATE", "INVOICE_UPDATE", "INVOICE_PAID", "PAYMENT_CREATE", "PAYMENT_UPDATE",
    }),
}


def normalize_topic(topic: str) -> str:
    canonical = (topic or "").strip().upper()
    return TOPIC_ALIASES.get(canonical, canonical)


def is_supported_topic(topic: str) -> bool:
    return normalize_topic(topic) in SUPPORTED_TOPICS


def families_for_topic(topic: str) -> list[EngineFamily]:
    """Engine families that process a topic, in dispatch order"""
    canonical = normalize_topic(topic)
    return [family for family, topics in _FAMILY_TOPICS.items() if canonical in topics]


# ── payload ──

_WEB_URI_ID = re.compile(r"/(clients?|properties|quotes|jobs|visits|invoices|payments)/(\d+)", re.IGNORECASE)
UNKNOWN_OBJECT_ID = "unknown"
OBJECT_ID_MAX_LENGTH = 100


class WebhookPayload(BaseModel):
    """Inbound FSM webhook body"""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="allow")

    webhook_event_id: str = Field(min_length=1, max_length=200)
    account_id: str = Field(min_length=1, max_length=100)
    topic: str = Field(min_length=1, max_length=50)
    data: dict[str, Any] = Field(default_factory=dict)
    resource_id: str | None = Field(default=None, max_length=OBJECT_ID_MAX_LENGTH)
    occurred_at: str | None = None


def extract_object_id(payload: WebhookPayload) -> str:
    """
    Explicit resourceId, else the id in data.webUri, else data.id / data.itemId.
    Candidates longer than OBJECT_ID_MAX_LENGTH are passed over.
    """
    if payload.resource_id:
        return str(payload.resource_id)

    data = payload.data or {}
    web_uri = data.get("webUri")
    if isinstance(web_uri, str):
        match = _WEB_URI_ID.search(web_uri)
        if match and len(match.group(2)) <= OBJECT_ID_MAX_LENGTH:
            return match.group(2)

    for key in ("id", "itemId"):
        value = data.get(key)
        if value not in (None, "") and len(str(value)) <= OBJECT_ID_MAX_LENGTH:
            return str(value)
    return UNKNOWN_OBJECT_ID


def resolve_occurred_at(payload: WebhookPayload, received_at: datetime) -> datetime:
    return parse_timestamp(payload.occurred_at) or received_at


# ── gateway ──

class IngestStatus(str, enum.Enum):
    ACCEPTED = "accepted"
    DUPLICATE = "duplicate"
    IGNORED = "ignored"


@dataclass(frozen=True)
class IngestResult:
    status: IngestStatus
    event_id: str

    @property
    def acknowledged(self) -> bool:
        return True


class WebhookIngestGateway:
    """
    Inbox writer for FSM webhooks.

    ``enqueue`` is called with the event id of every newly accepted event;
    the durable row stays authoritative if the process dies before it runs.
    """

    def __init__(self, db: AsyncSession, enqueue: Callable[[str], None] | None = None):
        self.db = db
        self._enqueue = enqueue

    async def receive(self, payload: WebhookPayload) -> IngestResult:
        event_id = payload.webhook_event_id
        existing = await self.db.execute(
            select(WebhookEvent.event_id).where(WebhookEvent.event_id == event_id)
        )
        if existing.scalar_one_or_none() is not None:
            logger.info("Duplicate webhook event, acknowledged", extra_data={"event_id": event_id})
            return IngestResult(IngestStatus.DUPLICATE, event_id)

        topic = normalize_topic(payload.topic)
        supported = topic in SUPPORTED_TOPICS
        received_at = utcnow()
        event = WebhookEvent(
            event_id=event_id,
            account_id=payload.account_id,
            topic=topic,
            object_id=extract_object_id(payload),
            payload=payload.model_dump(by_alias=True, mode="json"),
            status=WebhookEventStatus.PENDING if supported else WebhookEventStatus.SKIPPED,
            attempts=0,
            handled_families={},
            occurred_at=resolve_occurred_at(payload, received_at),
            received_at=received_at,
            completed_at=None if supported else received_at,
            error=None if supported else f"Unsupported topic: {payload.topic}",
        )

        # Optimistic insert; a concurrent delivery of the same id loses on the primary key
        try:
            async with self.db.begin_nested():
                self.db.add(event)
            await self.db.commit()
        except IntegrityError:
            logger.info("Concurrent duplicate webhook event, acknowledged", extra_data={"event_id": event_id})
            return IngestResult(IngestStatus.DUPLICATE, event_id)

        if not supported:
            logger.info(
                "Unsupported webhook topic, acknowledged without processing",
                extra_data={"event_id": event_id, "topic": payload.topic},
            )
            return IngestResult(IngestStatus.IGNORED, event_id)

        logger.info(
            "Webhook event accepted",
            extra_data={
                "event_id": event_id,
                "account_id": payload.account_id,
                "topic": topic,
                "object_id": event.object_id,
            },
        )
        if self._enqueue is not None:
            self._enqueue(event_id)
        return IngestResult(IngestStatus.ACCEPTED, event_id)
