"""
Celery Tasks

- Expiry sweep (stale spots, expired offers, expired handshake sessions)
- Worker side of the transactional outbox: publishes pending change events
  to Redis pub/sub channels ``realtime:{table}``
- Retention cleanup of published events
"""
from __future__ import annotations

import asyncio
from contextlib import contextmanager

from app.workers.celery_app import celery_app
from app.core.config import settings
from app.core.logging import get_logger, set_correlation_id
from app.core.redis_client import publish_change
from app.db.database import get_task_session
from app.db.models.outbox_event import OutboxEvent
from app.domain.services.outbox_service import OutboxService
from app.domain.services.sweeper_service import ExpirySweeper

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
    set_correlation_id()

    with get_event_loop() as loop:
        return loop.run_until_complete(coro)


def _event_message(event: OutboxEvent) -> dict:
    return {
        "event_id": event.id,
        "table": event.table_name,
        "operation": event.operation.value,
        "row_id": event.row_id,
        "payload": event.payload,
        "created_at": event.created_at.isoformat() if event.created_at else None,
    }


async def _publish_pending_events(db, limit: int) -> dict:
    outbox_service = OutboxService(db)
    events = await outbox_service.get_pending_events(limit=limit)
    # Plain values up front; the mark_* calls commit between events
    messages = [(event.id, event.table_name, _event_message(event)) for event in events]

    published = 0
    failed = 0
    for event_id, table_name, message in messages:
        try:
            await publish_change(table_name, message)
        except Exception as e:
            logger.warning(
                "Change event publish failed",
                extra_data={"event_id": event_id, "table": table_name, "error": str(e)},
            )
            await outbox_service.mark_as_failed(event_id, str(e))
            failed += 1
            continue
        await outbox_service.mark_as_published(event_id)
        published += 1

    return {"published": published, "failed": failed}


@celery_app.task(name="app.workers.tasks.publish_outbox_events")
def publish_outbox_events(limit: int | None = None):
    """
    Publish pending change events.
    Runs every few seconds; subscribers never block the writers.
    """

    async def _publish():
        async with get_task_session() as db:
            return await _publish_pending_events(db, limit or settings.OUTBOX_PUBLISH_BATCH_SIZE)

    result = run_async(_publish())
    if result["published"] or result["failed"]:
        logger.info("Change feed published", extra_data=result)
    return result


@celery_app.task(name="app.workers.tasks.run_expiry_sweep")
def run_expiry_sweep():
    """Periodic reclamation of stale spots, expired offers and handshake sessions"""

    async def _sweep():
        async with get_task_session() as db:
            result = await ExpirySweeper(db).run()
            return result.to_dict()

    return run_async(_sweep())


@celery_app.task(name="app.workers.tasks.cleanup_published_events")
def cleanup_published_events(days: int | None = None):
    """Delete change events published longer ago than the retention period"""
    retention_days = days if days is not None else settings.OUTBOX_RETENTION_DAYS

    async def _cleanup():
        async with get_task_session() as db:
            deleted = await OutboxService(db).cleanup_published(retention_days)
            logger.info(
                "Cleaned up published change events",
                extra_data={"deleted": deleted, "cutoff_days": retention_days},
            )
            return {"deleted": deleted}

    return run_async(_cleanup())
