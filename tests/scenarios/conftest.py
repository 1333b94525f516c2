"""
Fixtures and helpers for end-to-end scenario tests.

Provides:
- DB assertions (spot state, deal status, balances, history)
- the ledger conservation check run at the end of every scenario
- a second session bound to the same test database, for interleaved callers
"""
from typing import Optional

import pytest
from sqlalchemy import select, func
from sqlalchemy.ext.asyncio import AsyncSession

from app.db.models.credit_account import CreditAccount
from app.db.models.credit_transaction import CreditTransaction
from app.db.models.handshake_deal import HandshakeDeal, HandshakeStatus
from app.db.models.outbox_event import ChangeOperation, OutboxEvent
from app.db.models.parking_spot import ParkingSpot


# ============================================================================
# Fixtures
# ============================================================================


@pytest.fixture
async def other_session(session_maker):
    """A second caller's session on the same database"""
    async with session_maker() as session:
        yield session
        await session.rollback()


# ============================================================================
# DB assertions
# ============================================================================


async def get_spot(db: AsyncSession, spot_id: int) -> Optional[ParkingSpot]:
    return await db.get(ParkingSpot, spot_id, populate_existing=True)


async def assert_spot_available(db: AsyncSession, spot_id: int, available: bool = True) -> ParkingSpot:
    spot = await get_spot(db, spot_id)
    assert spot is not None, f"spot {spot_id} does not exist"
    assert spot.available is available, f"spot {spot_id}: available={spot.available}, expected {available}"
    if available:
        assert spot.available_since is not None
    else:
        assert spot.available_since is None
    return spot


async def assert_spot_gone(db: AsyncSession, spot_id: int) -> None:
    assert await get_spot(db, spot_id) is None, f"spot {spot_id} still exists"


async def assert_deal_status(db: AsyncSession, deal_id: int, expected: HandshakeStatus) -> HandshakeDeal:
    deal = await db.get(HandshakeDeal, deal_id, populate_existing=True)
    assert deal is not None, f"deal {deal_id} not found"
    assert deal.status == expected, f"deal {deal_id}: {deal.status.value}, expected {expected.value}"
    return deal


async def assert_balance(db: AsyncSession, user_id: str, expected: int) -> None:
    result = await db.execute(
        select(CreditAccount.balance)
        .where(CreditAccount.user_id == user_id)
        .execution_options(populate_existing=True)
    )
    balance = result.scalar_one()
    assert balance == expected, f"{user_id}: balance {balance}, expected {expected}"


async def assert_ledger_conserved(db: AsyncSession) -> None:
    """Every balance equals the sum of that user's transactions, and none is negative"""
    accounts = await db.execute(select(CreditAccount.user_id, CreditAccount.balance))
    for user_id, balance in accounts.all():
        total = await db.execute(
            select(func.coalesce(func.sum(CreditTransaction.amount), 0))
            .where(CreditTransaction.user_id == user_id)
        )
        assert balance >= 0, f"{user_id}: negative balance {balance}"
        assert total.scalar_one() == balance, f"{user_id}: ledger does not add up to {balance}"


async def count_change_events(db: AsyncSession, table_name: str, operation: ChangeOperation | None = None) -> int:
    query = select(func.count(OutboxEvent.id)).where(OutboxEvent.table_name == table_name)
    if operation:
        query = query.where(OutboxEvent.operation == operation)
    result = await db.execute(query)
    return result.scalar_one()
