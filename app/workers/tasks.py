"""
Celery Tasks for Periodic Maintenance

The in-process queue handles the happy path; these tasks re-drive whatever it
missed from the durable rows: due dead-letter items, overdue inbox events and
expired write-source markers.
"""
from __future__ import annotations

import asyncio
from contextlib import contextmanager
from datetime import timedelta

from sqlalchemy import delete

from app.workers.celery_app import celery_app
from app.db.database import get_task_session_factory
from app.db.models.write_source_marker import WriteSourceMarker
from app.core.config import settings
from app.core.logging import get_logger, log_async_operation, set_correlation_id
from app.core.time_utils import utcnow
from app.workers.retry_processor import RetryProcessor

logger = get_logger(__name__)


@contextmanager
def get_event_loop():
    """
    Context manager for proper event loop handling in Celery tasks.
    Creates a new event loop and ensures proper cleanup to prevent resource leaks.
    """
    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)
    try:
        yield loop
    finally:
        try:
            # The Redis singleton is bound to this loop; drop it before the loop closes
            from app.core.redis_client import close_redis
            loop.run_until_complete(close_redis())
        except Exception as e:
            logger.warning(
                "Failed to close Redis at task end",
                extra_data={"error": str(e)},
            )
        try:
            pending = asyncio.all_tasks(loop)
            for task in pending:
                task.cancel()
            if pending:
                loop.run_until_complete(asyncio.gather(*pending, return_exceptions=True))
        finally:
            loop.run_until_complete(loop.shutdown_asyncgens())
            loop.close()


def run_async(coro):
    """Helper to run async code in sync Celery task with proper cleanup"""
    # Set correlation ID for task tracking
    set_correlation_id()

    with get_event_loop() as loop:
        return loop.run_until_complete(coro)


@celery_app.task(name="app.workers.tasks.sweep_dead_letter_queue")
def sweep_dead_letter_queue(limit: int | None = None):
    """Re-attempt dead-letter items whose next_retry_at has passed"""

    @log_async_operation("dead_letter_sweep")
    async def _sweep():
        async with get_task_session_factory() as session_factory:
            processor = RetryProcessor(session_factory=session_factory)
            return await processor.sweep_dead_letters(limit or settings.DLQ_SWEEP_BATCH_SIZE)

    return run_async(_sweep())


@celery_app.task(name="app.workers.tasks.recover_stalled_webhook_events")
def recover_stalled_webhook_events(limit: int = 50):
    """Process pending inbox events that were never picked up, and release stale claims"""

    @log_async_operation("stalled_event_recovery")
    async def _recover():
        async with get_task_session_factory() as session_factory:
            processor = RetryProcessor(session_factory=session_factory)
            results = await processor.process_overdue(limit)
            if results["processed"] or results["failed"] or results["released"]:
                logger.info("Recovered stalled webhook events", extra_data=results)
            return results

    return run_async(_recover())


@celery_app.task(name="app.workers.tasks.cleanup_write_source_markers")
def cleanup_write_source_markers(days: int | None = None):
    """Delete write-source markers too old to suppress any webhook"""
    days = days or settings.WRITE_SOURCE_MARKER_RETENTION_DAYS

    @log_async_operation("write_source_marker_cleanup")
    async def _cleanup():
        async with get_task_session_factory() as session_factory:
            async with session_factory() as db:
                cutoff = utcnow() - timedelta(days=days)
                result = await db.execute(
                    delete(WriteSourceMarker).where(WriteSourceMarker.last_write_at < cutoff)
                )
                deleted = result.rowcount
                await db.commit()

        logger.info(
            "Cleaned up old write source markers",
            extra_data={"deleted": deleted, "cutoff_days": days},
        )
        return {"deleted": deleted}

    return run_async(_cleanup())
