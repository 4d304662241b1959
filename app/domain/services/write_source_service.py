"""
Write-source markers: recognize webhooks caused by our own FSM writes.
"""
from __future__ import annotations

from datetime import datetime

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import settings
from app.core.logging import get_logger
from app.core.time_utils import to_naive_utc, utcnow
from app.db.models.write_source_marker import SELF_WRITE_SOURCE, WriteSourceMarker

logger = get_logger(__name__)


class WriteSourceService:
    def __init__(self, db: AsyncSession):
        self.db = db

    async def get_marker(self, account_id: str, object_type: str, object_id: str) -> WriteSourceMarker | None:
        result = await self.db.execute(
            select(WriteSourceMarker).where(
                WriteSourceMarker.account_id == account_id,
                WriteSourceMarker.object_type == object_type,
                WriteSourceMarker.object_id == object_id,
            )
        )
        return result.scalar_one_or_none()

    async def mark_self_write(self, account_id: str, object_type: str, object_id: str) -> WriteSourceMarker:
        """
        Record that we are about to write the object.

        Committed immediately so the marker exists before the FSM echoes the
        write back as a webhook.
        """
        marker = await self.get_marker(account_id, object_type, object_id)
        now = utcnow()
        if marker is None:
            try:
                async with self.db.begin_nested():
                    marker = WriteSourceMarker(
                        account_id=account_id,
                        object_type=object_type,
                        object_id=object_id,
                        last_write_source=SELF_WRITE_SOURCE,
                        last_write_at=now,
                    )
                    self.db.add(marker)
            except IntegrityError:
                # Created concurrently; update the winner's row instead
                marker = await self.get_marker(account_id, object_type, object_id)

        marker.last_write_source = SELF_WRITE_SOURCE
        marker.last_write_at = now
        await self.db.commit()
        return marker

    async def is_write_loop(
        self,
        account_id: str,
        object_type: str,
        object_id: str,
        occurred_at: datetime,
    ) -> bool:
        """True when the event is within the buffer window of our own last write"""
        marker = await self.get_marker(account_id, object_type, object_id)
        if marker is None or marker.last_write_source != SELF_WRITE_SOURCE:
            return False

        delta = abs((to_naive_utc(occurred_at) - marker.last_write_at).total_seconds())
        if delta < settings.WRITE_LOOP_BUFFER_SECONDS:
            logger.info(
                "Write loop detected, ignoring event",
                extra_data={
                    "account_id": account_id,
                    "object_type": object_type,
                    "object_id": object_id,
                    "seconds_since_write": round(delta, 3),
                },
            )
            return True
        return False
