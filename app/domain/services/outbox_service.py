"""
Outbox Service - Transactional Outbox for the Realtime Change Feed

Row-level change events are written in the same transaction as the change
itself, so subscribers only ever hear about committed state. A Celery worker
publishes pending events to Redis; the request path never waits on it.
"""
from __future__ import annotations

from datetime import datetime, timedelta
from enum import Enum
from typing import Any, List
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select, delete, or_

from app.core.config import settings
from app.core.timeutils import utcnow
from app.db.models.outbox_event import OutboxEvent, ChangeOperation, EventStatus
from app.db.models.parking_spot import ParkingSpot
from app.db.models.handshake_deal import HandshakeDeal


def _calculate_backoff_seconds(
    retry_count: int,
    *,
    base_seconds: int,
    max_backoff_seconds: int,
) -> int:
    """
    Calculate exponential backoff seconds with a hard upper bound.

        backoff = base_seconds * (2 ** retry_count)

    The result is capped at max_backoff_seconds and avoids computing huge
    powers when retry_count is unexpectedly large.
    """
    if retry_count < 0:
        retry_count = 0

    if base_seconds <= 0 or max_backoff_seconds <= 0:
        return 0

    if base_seconds >= max_backoff_seconds:
        return max_backoff_seconds

    # 2**retry_count >= ceil(max/base) decided on bit lengths, without the power
    required_multiplier = (max_backoff_seconds + base_seconds - 1) // base_seconds
    is_power_of_two = (required_multiplier & (required_multiplier - 1)) == 0
    threshold = required_multiplier.bit_length() - 1
    if not is_power_of_two:
        threshold += 1

    if retry_count >= threshold:
        return max_backoff_seconds

    backoff = base_seconds * (1 << retry_count)
    return min(backoff, max_backoff_seconds)


def _json_value(value: Any) -> Any:
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, Enum):
        return value.value
    return value


def spot_payload(spot: ParkingSpot) -> dict:
    return {
        "id": spot.id,
        "latitude": spot.latitude,
        "longitude": spot.longitude,
        "available": spot.available,
        "available_since": _json_value(spot.available_since),
    }


def deal_payload(deal: HandshakeDeal) -> dict:
    return {
        "id": deal.id,
        "spot_id": deal.spot_id,
        "giver_id": deal.giver_id,
        "receiver_id": deal.receiver_id,
        "status": _json_value(deal.status),
        "latitude": deal.latitude,
        "longitude": deal.longitude,
        "departure_time": _json_value(deal.departure_time),
        "cancel_reason": _json_value(deal.cancel_reason),
    }


class OutboxService:
    """
    Service for managing change-feed events.

    Writers call ``record_change`` inside their own transaction and never
    commit on its behalf; the publisher methods below commit their own
    bookkeeping.
    """

    def __init__(self, db: AsyncSession):
        self.db = db

    async def record_change(
        self,
        table_name: str,
        operation: ChangeOperation,
        row_id: int | str,
        payload: dict,
    ) -> OutboxEvent:
        """Queue a single change event"""
        event = OutboxEvent(
            table_name=table_name,
            operation=operation,
            row_id=str(row_id),
            payload={k: _json_value(v) for k, v in payload.items()},
            status=EventStatus.PENDING,
            retry_count=0,
            max_retries=5,
        )
        self.db.add(event)
        return event

    async def record_spot_change(self, spot: ParkingSpot, operation: ChangeOperation) -> OutboxEvent:
        return await self.record_change("parking_spots", operation, spot.id, spot_payload(spot))

    async def record_spot_deleted(self, spot_id: int) -> OutboxEvent:
        return await self.record_change(
            "parking_spots", ChangeOperation.DELETE, spot_id, {"id": spot_id}
        )

    async def record_deal_change(self, deal: HandshakeDeal, operation: ChangeOperation) -> OutboxEvent:
        return await self.record_change("handshake_deals", operation, deal.id, deal_payload(deal))

    async def record_balance_change(self, user_id: str, balance: int) -> OutboxEvent:
        return await self.record_change(
            "credit_accounts",
            ChangeOperation.UPDATE,
            user_id,
            {"user_id": user_id, "balance": balance},
        )

    async def get_pending_events(self, limit: int = 100) -> List[OutboxEvent]:
        """Pending events whose retry delay (if any) has elapsed, oldest first"""
        now = utcnow()
        result = await self.db.execute(
            select(OutboxEvent)
            .where(
                OutboxEvent.status == EventStatus.PENDING,
                or_(
                    OutboxEvent.next_retry_at.is_(None),
                    OutboxEvent.next_retry_at <= now,
                ),
            )
            .order_by(OutboxEvent.created_at, OutboxEvent.id)
            .limit(limit)
        )
        return list(result.scalars().all())

    async def mark_as_published(self, event_id: int) -> None:
        """Mark event as successfully published"""
        result = await self.db.execute(
            select(OutboxEvent).where(OutboxEvent.id == event_id)
        )
        event = result.scalar_one_or_none()
        if event:
            event.status = EventStatus.PUBLISHED
            event.published_at = utcnow()
            event.last_error = None
            await self.db.commit()

    async def mark_as_failed(self, event_id: int, error: str) -> None:
        """Record a publish failure and schedule the retry"""
        result = await self.db.execute(
            select(OutboxEvent).where(OutboxEvent.id == event_id)
        )
        event = result.scalar_one_or_none()
        if event:
            event.retry_count = (event.retry_count or 0) + 1
            event.last_error = error[:1000]

            if event.retry_count >= event.max_retries:
                event.status = EventStatus.FAILED
            else:
                event.status = EventStatus.PENDING
                backoff_seconds = _calculate_backoff_seconds(
                    event.retry_count,
                    base_seconds=settings.OUTBOX_RETRY_BASE_SECONDS,
                    max_backoff_seconds=settings.OUTBOX_MAX_BACKOFF_SECONDS,
                )
                event.next_retry_at = utcnow() + timedelta(seconds=backoff_seconds)

            await self.db.commit()

    async def cleanup_published(self, days: int) -> int:
        """Delete events published more than ``days`` ago; returns the count"""
        cutoff = utcnow() - timedelta(days=days)
        result = await self.db.execute(
            delete(OutboxEvent).where(
                OutboxEvent.status == EventStatus.PUBLISHED,
                OutboxEvent.published_at < cutoff,
            )
        )
        await self.db.commit()
        return result.rowcount or 0
