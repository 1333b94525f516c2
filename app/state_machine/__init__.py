"""
Handshake state machine: closed status enum plus a transition table keyed on
(current status, event, actor role).
"""
from app.state_machine.states import (
    HandshakeEvent,
    ParticipantRole,
    HANDSHAKE_TRANSITIONS,
    EVENT_ALLOWED_ROLES,
    role_of,
    is_role_allowed,
    next_status,
    is_terminal,
)

__all__ = [
    "HandshakeEvent",
    "ParticipantRole",
    "HANDSHAKE_TRANSITIONS",
    "EVENT_ALLOWED_ROLES",
    "role_of",
    "is_role_allowed",
    "next_status",
    "is_terminal",
]
