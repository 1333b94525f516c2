"""
Property-based tests with hypothesis for multi-step flows.

Invariants checked:
1. Credit ledger - random credit/debit sequences never overdraw and the
   balance always equals the sum of the user's transactions
2. Handshake deals - random action sequences keep a valid status, terminal
   statuses stick, and rewards are paid at most once
3. Availability curves - probability never rises with elapsed time
"""
import itertools
from datetime import datetime, timedelta

import pytest
from hypothesis import given, settings as h_settings, HealthCheck
from hypothesis.strategies import (
    sampled_from,
    integers,
    floats,
    lists,
    tuples,
)
from sqlalchemy import select, func

from app.core.exceptions import AppException, InsufficientFundsError
from app.db.models.credit_transaction import CreditTransaction, TransactionKind
from app.db.models.handshake_deal import HandshakeDeal, HandshakeStatus
from app.domain.services.availability import (
    OFF_PEAK_CURVE,
    PEAK_CURVE,
    calculate_availability_probability,
    probability_from_curve,
)
from app.domain.services.handshake_service import HandshakeService
from app.domain.services.ledger_service import CreditLedgerService
from app.state_machine import HandshakeEvent, ParticipantRole, next_status, is_terminal

# global counter for unique user ids across hypothesis examples
_prop_counter = itertools.count(900000)


# ============================================================================
# Strategies
# ============================================================================

LEDGER_OPERATIONS = lists(
    tuples(sampled_from(["credit", "debit"]), integers(min_value=1, max_value=30)),
    min_size=1,
    max_size=15,
)

HANDSHAKE_ACTIONS = lists(
    tuples(
        sampled_from(["giver", "receiver", "stranger"]),
        sampled_from(["request", "accept", "decline", "confirm", "cancel"]),
    ),
    min_size=2,
    max_size=12,
)

ELAPSED_MINUTES = floats(min_value=0, max_value=300, allow_nan=False, allow_infinity=False)


# ============================================================================
# Credit ledger
# ============================================================================


class TestLedgerProperties:

    @pytest.mark.asyncio
    @given(operations=LEDGER_OPERATIONS)
    @h_settings(
        max_examples=50,
        suppress_health_check=[HealthCheck.function_scoped_fixture],
        deadline=None,
    )
    async def test_balance_matches_ledger_and_never_negative(
        self, operations: list[tuple[str, int]], db_session
    ):
        user_id = f"prop-ledger-{next(_prop_counter)}"
        ledger = CreditLedgerService(db_session)
        await ledger.get_or_create_account(user_id)
        await db_session.commit()
        expected = 20

        for op, amount in operations:
            if op == "credit":
                balance = await ledger.credit(user_id, amount, TransactionKind.PURCHASE)
                await db_session.commit()
                expected += amount
            else:
                try:
                    balance = await ledger.debit(user_id, amount, TransactionKind.PARKING_USED)
                    await db_session.commit()
                    expected -= amount
                except InsufficientFundsError:
                    await db_session.rollback()
                    assert amount > expected, f"debit of {amount} rejected with balance {expected}"
                    balance = await ledger.get_balance(user_id)

            assert balance == expected
            assert balance >= 0
            assert await ledger.get_ledger_sum(user_id) == balance


# ============================================================================
# Handshake deals
# ============================================================================


async def _dispatch(service: HandshakeService, deal_id: int, action: str, user_id: str) -> None:
    await getattr(service, action)(deal_id, user_id)


class TestHandshakeProperties:

    @pytest.mark.asyncio
    @given(actions=HANDSHAKE_ACTIONS)
    @h_settings(
        max_examples=40,
        suppress_health_check=[HealthCheck.function_scoped_fixture],
        deadline=None,
    )
    async def test_random_actions_keep_deal_consistent(
        self, actions: list[tuple[str, str]], db_session, spot_factory
    ):
        uid = next(_prop_counter)
        users = {
            "giver": f"prop-giver-{uid}",
            "receiver": f"prop-receiver-{uid}",
            "stranger": f"prop-stranger-{uid}",
        }
        spot = await spot_factory(holder=users["giver"])
        service = HandshakeService(db_session)
        deal = await service.offer(users["giver"], spot.id)
        deal_id = deal.id

        valid_statuses = set(HandshakeStatus)
        terminal_seen: HandshakeStatus | None = None

        for actor, action in actions:
            try:
                await _dispatch(service, deal_id, action, users[actor])
            except AppException:
                pass

            current = await db_session.get(HandshakeDeal, deal_id, populate_existing=True)
            assert current.status in valid_statuses
            if terminal_seen is not None:
                assert current.status == terminal_seen, (
                    f"left terminal status {terminal_seen.value} after {actor} {action}"
                )
            elif is_terminal(current.status):
                terminal_seen = current.status

        rewards = await db_session.execute(
            select(func.count(CreditTransaction.id)).where(CreditTransaction.related_deal_id == deal_id)
        )
        paid = rewards.scalar_one()
        final = await db_session.get(HandshakeDeal, deal_id, populate_existing=True)
        if final.status == HandshakeStatus.COMPLETED:
            assert paid == 2
        else:
            assert paid == 0

    @pytest.mark.unit
    @given(
        events=lists(
            tuples(sampled_from(list(HandshakeEvent)), sampled_from(list(ParticipantRole))),
            max_size=20,
        )
    )
    @h_settings(max_examples=200, deadline=None)
    def test_transition_table_never_leaves_terminal(self, events):
        status = HandshakeStatus.OPEN
        for event, role in events:
            target = next_status(status, event, role)
            if is_terminal(status):
                assert target is None
            if target is not None:
                status = target
        assert status in set(HandshakeStatus)


# ============================================================================
# Availability curves
# ============================================================================


class TestAvailabilityProperties:

    @pytest.mark.unit
    @given(first=ELAPSED_MINUTES, second=ELAPSED_MINUTES, curve=sampled_from([PEAK_CURVE, OFF_PEAK_CURVE]))
    @h_settings(max_examples=300, deadline=None)
    def test_probability_is_monotonic(self, first: float, second: float, curve):
        earlier, later = sorted((first, second))
        assert probability_from_curve(earlier, curve) >= probability_from_curve(later, curve)

    @pytest.mark.unit
    @given(elapsed=ELAPSED_MINUTES, hour=integers(min_value=0, max_value=23))
    @h_settings(max_examples=200, deadline=None)
    def test_probability_stays_in_range(self, elapsed: float, hour: int):
        now = datetime(2026, 3, 10, hour, 0)
        probability = calculate_availability_probability(now - timedelta(minutes=elapsed), now)
        assert 5 <= probability <= 100
