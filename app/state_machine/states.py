"""
Handshake State Definitions and Transition Table
"""
from enum import Enum

from app.db.models.handshake_deal import HandshakeStatus, TERMINAL_STATUSES, ACTIVE_STATUSES


class HandshakeEvent(str, Enum):
    """Events a participant can fire on an existing deal"""

    REQUEST = "request"
    ACCEPT = "accept"
    DECLINE = "decline"
    CONFIRM = "confirm"
    CANCEL = "cancel"


class ParticipantRole(str, Enum):
    """Role of the actor relative to a deal"""

    GIVER = "giver"
    RECEIVER = "receiver"
    OTHER = "other"  # authenticated user not (yet) part of the deal


# (current status, event, actor role) -> next status
HANDSHAKE_TRANSITIONS: dict[tuple[HandshakeStatus, HandshakeEvent, ParticipantRole], HandshakeStatus] = {
    (HandshakeStatus.OPEN, HandshakeEvent.REQUEST, ParticipantRole.OTHER): HandshakeStatus.PENDING_APPROVAL,

    (HandshakeStatus.PENDING_APPROVAL, HandshakeEvent.ACCEPT, ParticipantRole.GIVER): HandshakeStatus.ACCEPTED,
    (HandshakeStatus.PENDING_APPROVAL, HandshakeEvent.DECLINE, ParticipantRole.GIVER): HandshakeStatus.OPEN,

    (HandshakeStatus.ACCEPTED, HandshakeEvent.CONFIRM, ParticipantRole.GIVER): HandshakeStatus.GIVER_CONFIRMED,
    (HandshakeStatus.ACCEPTED, HandshakeEvent.CONFIRM, ParticipantRole.RECEIVER): HandshakeStatus.RECEIVER_CONFIRMED,
    (HandshakeStatus.GIVER_CONFIRMED, HandshakeEvent.CONFIRM, ParticipantRole.RECEIVER): HandshakeStatus.COMPLETED,
    (HandshakeStatus.RECEIVER_CONFIRMED, HandshakeEvent.CONFIRM, ParticipantRole.GIVER): HandshakeStatus.COMPLETED,
}

# Cancellation is open to both participants from every non-terminal status
for _status in ACTIVE_STATUSES:
    HANDSHAKE_TRANSITIONS[(_status, HandshakeEvent.CANCEL, ParticipantRole.GIVER)] = HandshakeStatus.CANCELLED
    if _status != HandshakeStatus.OPEN:
        HANDSHAKE_TRANSITIONS[(_status, HandshakeEvent.CANCEL, ParticipantRole.RECEIVER)] = HandshakeStatus.CANCELLED
del _status

# Which roles may fire an event at all; checked before the status
EVENT_ALLOWED_ROLES: dict[HandshakeEvent, frozenset[ParticipantRole]] = {
    HandshakeEvent.REQUEST: frozenset({ParticipantRole.OTHER}),
    HandshakeEvent.ACCEPT: frozenset({ParticipantRole.GIVER}),
    HandshakeEvent.DECLINE: frozenset({ParticipantRole.GIVER}),
    HandshakeEvent.CONFIRM: frozenset({ParticipantRole.GIVER, ParticipantRole.RECEIVER}),
    HandshakeEvent.CANCEL: frozenset({ParticipantRole.GIVER, ParticipantRole.RECEIVER}),
}


def role_of(giver_id: str, receiver_id: str | None, user_id: str) -> ParticipantRole:
    """Classify ``user_id`` against a deal's participants"""
    if user_id == giver_id:
        return ParticipantRole.GIVER
    if receiver_id is not None and user_id == receiver_id:
        return ParticipantRole.RECEIVER
    return ParticipantRole.OTHER


def is_role_allowed(event: HandshakeEvent, role: ParticipantRole) -> bool:
    return role in EVENT_ALLOWED_ROLES[event]


def next_status(
    current: HandshakeStatus,
    event: HandshakeEvent,
    role: ParticipantRole,
) -> HandshakeStatus | None:
    """Resolve the transition; None when the event is not permitted from ``current``"""
    return HANDSHAKE_TRANSITIONS.get((current, event, role))


def is_terminal(status: HandshakeStatus) -> bool:
    return status in TERMINAL_STATUSES
