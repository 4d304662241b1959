"""
Dead-letter queue for inbox events that exhausted their primary retries.

The durable row is authoritative: the sweep polls ``next_retry_at`` so a
restart loses nothing. Resolve, discard and requeue are operator actions.
"""
from __future__ import annotations

from datetime import timedelta
from typing import Any

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import settings
from app.core.exceptions import ErrorCode, InvalidStatusError, NotFoundException
from app.core.logging import get_logger
from app.core.retry_policy import RetryPolicy, dead_letter_retry_policy
from app.core.time_utils import utcnow
from app.db.models.dead_letter_item import (
    DeadLetterItem,
    DeadLetterStatus,
    RETRYABLE_DEAD_LETTER_STATUSES,
)
from app.db.models.webhook_event import WebhookEvent

logger = get_logger(__name__)

# Delay before the first sweep attempt of a freshly dead-lettered event
FIRST_RETRY_DELAY_SECONDS = 5


class DeadLetterService:
    def __init__(self, db: AsyncSession, policy: RetryPolicy | None = None):
        self.db = db
        self.policy = policy or dead_letter_retry_policy()

    async def get_item(self, item_id: int) -> DeadLetterItem:
        item = await self.db.get(DeadLetterItem, item_id)
        if item is None:
            raise NotFoundException("dead letter item", item_id, ErrorCode.DEAD_LETTER_NOT_FOUND)
        return item

    async def get_by_event_id(self, event_id: str) -> DeadLetterItem | None:
        result = await self.db.execute(
            select(DeadLetterItem).where(DeadLetterItem.webhook_event_id == event_id)
        )
        return result.scalar_one_or_none()

    async def add(self, event: WebhookEvent, error: str) -> DeadLetterItem:
        """
        Dead-letter an inbox event.

        An event dead-lettered again (e.g. after an operator requeue) reuses
        its row with a fresh schedule. Does not commit.
        """
        next_retry_at = utcnow() + timedelta(seconds=FIRST_RETRY_DELAY_SECONDS)
        item = await self.get_by_event_id(event.event_id)
        if item is None:
            item = DeadLetterItem(
                webhook_event_id=event.event_id,
                account_id=event.account_id,
                topic=event.topic,
                payload=event.payload,
                retry_count=0,
                max_retries=self.policy.max_attempts,
                error_message=error,
            )
            self.db.add(item)
        else:
            item.retry_count = 0
            item.resolved_at = None

        item.status = DeadLetterStatus.PENDING
        item.next_retry_at = next_retry_at
        item.last_error = error

        logger.warning(
            "Event moved to dead letter queue",
            extra_data={
                "event_id": event.event_id,
                "account_id": event.account_id,
                "topic": event.topic,
                "error": error,
            },
        )
        return item

    async def get_retryable_items(self, limit: int | None = None) -> list[DeadLetterItem]:
        """Pending/retrying items due now, oldest schedule first"""
        result = await self.db.execute(
            select(DeadLetterItem)
            .where(
                DeadLetterItem.status.in_(RETRYABLE_DEAD_LETTER_STATUSES),
                DeadLetterItem.next_retry_at <= utcnow(),
            )
            .order_by(DeadLetterItem.next_retry_at)
            .limit(limit or settings.DLQ_SWEEP_BATCH_SIZE)
        )
        return list(result.scalars().all())

    async def mark_retry_attempt(self, item: DeadLetterItem, success: bool, error: str | None = None) -> None:
        """Record a sweep attempt. Does not commit."""
        now = utcnow()
        item.last_retry_at = now

        if success:
            item.status = DeadLetterStatus.RESOLVED
            item.resolved_at = now
            item.resolution_notes = f"Reprocessed after {item.retry_count} retries"
            logger.info(
                "Dead letter item resolved by retry",
                extra_data={"item_id": item.id, "event_id": item.webhook_event_id},
            )
            return

        item.retry_count += 1
        if error:
            item.last_error = error

        if item.retry_count >= item.max_retries:
            item.status = DeadLetterStatus.EXHAUSTED
            item.next_retry_at = None
            logger.error(
                "Dead letter item exhausted, manual resolution required",
                extra_data={
                    "item_id": item.id,
                    "event_id": item.webhook_event_id,
                    "retry_count": item.retry_count,
                    "error": error,
                },
            )
            return

        item.status = DeadLetterStatus.RETRYING
        item.next_retry_at = self.policy.next_retry_at(item.retry_count, now)
        logger.warning(
            "Dead letter retry failed, rescheduled",
            extra_data={
                "item_id": item.id,
                "event_id": item.webhook_event_id,
                "retry_count": item.retry_count,
                "max_retries": item.max_retries,
                "next_retry_at": item.next_retry_at.isoformat(),
            },
        )

    # ── operator actions ──

    async def discard(self, item_id: int, reason: str | None = None) -> DeadLetterItem:
        """Irreversible: a discarded item is never retried again"""
        item = await self.get_item(item_id)
        if item.status in (DeadLetterStatus.RESOLVED, DeadLetterStatus.DISCARDED):
            raise InvalidStatusError(
                "dead letter item", item_id, item.status.value, "discard",
                ErrorCode.DEAD_LETTER_INVALID_STATUS,
            )
        item.status = DeadLetterStatus.DISCARDED
        item.resolved_at = utcnow()
        item.next_retry_at = None
        item.resolution_notes = reason or "Discarded by operator"
        await self.db.commit()
        logger.info("Dead letter item discarded", extra_data={"item_id": item_id, "reason": reason})
        return item

    async def resolve(self, item_id: int, notes: str | None = None) -> DeadLetterItem:
        """Mark an item handled out-of-band"""
        item = await self.get_item(item_id)
        if item.status in (DeadLetterStatus.RESOLVED, DeadLetterStatus.DISCARDED):
            raise InvalidStatusError(
                "dead letter item", item_id, item.status.value, "resolve",
                ErrorCode.DEAD_LETTER_INVALID_STATUS,
            )
        item.status = DeadLetterStatus.RESOLVED
        item.resolved_at = utcnow()
        item.next_retry_at = None
        item.resolution_notes = notes or "Resolved by operator"
        await self.db.commit()
        logger.info("Dead letter item resolved by operator", extra_data={"item_id": item_id})
        return item

    async def requeue(self, item_id: int) -> DeadLetterItem:
        """Make an item due for the next sweep, resetting its retry budget if exhausted"""
        item = await self.get_item(item_id)
        if item.status in (DeadLetterStatus.RESOLVED, DeadLetterStatus.DISCARDED):
            raise InvalidStatusError(
                "dead letter item", item_id, item.status.value, "retry",
                ErrorCode.DEAD_LETTER_INVALID_STATUS,
            )
        if item.status == DeadLetterStatus.EXHAUSTED:
            item.retry_count = 0
        item.status = DeadLetterStatus.PENDING
        item.next_retry_at = utcnow()
        await self.db.commit()
        logger.info("Dead letter item requeued", extra_data={"item_id": item_id})
        return item

    # ── queries ──

    async def list_items(
        self,
        *,
        account_id: str | None = None,
        status: DeadLetterStatus | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[DeadLetterItem]:
        query = select(DeadLetterItem)
        if account_id:
            query = query.where(DeadLetterItem.account_id == account_id)
        if status:
            query = query.where(DeadLetterItem.status == status)
        result = await self.db.execute(
            query.order_by(DeadLetterItem.created_at.desc()).limit(limit).offset(offset)
        )
        return list(result.scalars().all())

    async def summary(self, account_id: str | None = None) -> dict[str, Any]:
        """Counts by status and by topic"""
        filters = [DeadLetterItem.account_id == account_id] if account_id else []

        by_status = {status.value: 0 for status in DeadLetterStatus}
        status_rows = await self.db.execute(
            select(DeadLetterItem.status, func.count()).where(*filters).group_by(DeadLetterItem.status)
        )
        for status, count in status_rows.all():
            by_status[DeadLetterStatus(status).value] = count

        topic_rows = await self.db.execute(
            select(DeadLetterItem.topic, func.count()).where(*filters).group_by(DeadLetterItem.topic)
        )
        by_topic = {topic: count for topic, count in topic_rows.all()}

        return {
            "total": sum(by_status.values()),
            "by_status": by_status,
            "by_topic": by_topic,
        }
