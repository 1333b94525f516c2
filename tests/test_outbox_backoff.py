from datetime import timedelta

import pytest

from app.core.config import settings
from app.core.timeutils import utcnow
from app.db.models.outbox_event import ChangeOperation, EventStatus, OutboxEvent
from app.domain.services.outbox_service import OutboxService, _calculate_backoff_seconds


def test_calculate_backoff_seconds_doubles() -> None:
    base = 5
    max_backoff = 600

    assert _calculate_backoff_seconds(0, base_seconds=base, max_backoff_seconds=max_backoff) == 5
    assert _calculate_backoff_seconds(1, base_seconds=base, max_backoff_seconds=max_backoff) == 10
    assert _calculate_backoff_seconds(6, base_seconds=base, max_backoff_seconds=max_backoff) == 320


def test_calculate_backoff_seconds_is_capped() -> None:
    base = 5
    max_backoff = 600

    # 5 * 2**7 = 640 -> capped to 600
    assert _calculate_backoff_seconds(7, base_seconds=base, max_backoff_seconds=max_backoff) == 600
    assert _calculate_backoff_seconds(10_000, base_seconds=base, max_backoff_seconds=max_backoff) == 600


def test_calculate_backoff_seconds_degenerate_inputs() -> None:
    assert _calculate_backoff_seconds(-3, base_seconds=5, max_backoff_seconds=600) == 5
    assert _calculate_backoff_seconds(2, base_seconds=0, max_backoff_seconds=600) == 0
    assert _calculate_backoff_seconds(2, base_seconds=900, max_backoff_seconds=600) == 600


async def _insert_event(db, **overrides) -> OutboxEvent:
    values = dict(
        table_name="parking_spots",
        operation=ChangeOperation.UPDATE,
        row_id="1",
        payload={"id": 1, "available": True},
        status=EventStatus.PENDING,
        retry_count=0,
        max_retries=5,
    )
    values.update(overrides)
    event = OutboxEvent(**values)
    db.add(event)
    await db.commit()
    await db.refresh(event)
    return event


@pytest.mark.asyncio
async def test_mark_as_failed_sets_next_retry_at_with_cap(db_session) -> None:
    # A huge retry_count must not compute 2**retry_count
    event = await _insert_event(db_session, retry_count=10_000, max_retries=20_000)

    svc = OutboxService(db_session)
    before = utcnow()
    await svc.mark_as_failed(event.id, "boom")
    after = utcnow()

    await db_session.refresh(event)
    assert event.status == EventStatus.PENDING
    assert event.next_retry_at is not None
    assert event.last_error == "boom"

    max_backoff = settings.OUTBOX_MAX_BACKOFF_SECONDS
    lower = before + timedelta(seconds=max_backoff) - timedelta(seconds=2)
    upper = after + timedelta(seconds=max_backoff) + timedelta(seconds=2)
    assert lower <= event.next_retry_at <= upper


@pytest.mark.asyncio
async def test_mark_as_failed_gives_up_after_max_retries(db_session) -> None:
    event = await _insert_event(db_session, retry_count=4, max_retries=5)

    await OutboxService(db_session).mark_as_failed(event.id, "still down")

    await db_session.refresh(event)
    assert event.status == EventStatus.FAILED
    assert event.retry_count == 5


@pytest.mark.asyncio
async def test_pending_events_skip_scheduled_retries(db_session) -> None:
    ready = await _insert_event(db_session)
    await _insert_event(db_session, next_retry_at=utcnow() + timedelta(minutes=5))
    await _insert_event(db_session, status=EventStatus.PUBLISHED)

    pending = await OutboxService(db_session).get_pending_events()

    assert [e.id for e in pending] == [ready.id]


@pytest.mark.asyncio
async def test_cleanup_published_only_removes_old_published(db_session) -> None:
    old = await _insert_event(
        db_session, status=EventStatus.PUBLISHED, published_at=utcnow() - timedelta(days=10)
    )
    recent = await _insert_event(
        db_session, status=EventStatus.PUBLISHED, published_at=utcnow() - timedelta(days=1)
    )
    pending = await _insert_event(db_session)

    deleted = await OutboxService(db_session).cleanup_published(days=7)

    assert deleted == 1
    assert await db_session.get(OutboxEvent, old.id, populate_existing=True) is None
    assert await db_session.get(OutboxEvent, recent.id, populate_existing=True) is not None
    assert await db_session.get(OutboxEvent, pending.id, populate_existing=True) is not None
