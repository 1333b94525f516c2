"""
Custom Exception Hierarchy

Structured exceptions shared by the services and the API layer. Every
domain failure carries an error code, an HTTP status and a details dict.
"""
from typing import Any
from enum import Enum


class ErrorCode(str, Enum):
    """Standard error codes for API responses"""

    # General errors (1xxx)
    INTERNAL_ERROR = "ERR_1000"
    VALIDATION_ERROR = "ERR_1001"
    NOT_FOUND = "ERR_1002"
    ALREADY_EXISTS = "ERR_1003"
    UNAUTHORIZED = "ERR_1004"
    FORBIDDEN = "ERR_1005"
    RATE_LIMITED = "ERR_1006"

    # Parking spot errors (2xxx)
    SPOT_NOT_FOUND = "ERR_2001"
    SPOT_ALREADY_CLAIMED = "ERR_2002"
    SPOT_NOT_HELD = "ERR_2003"
    ALREADY_PARKED = "ERR_2004"

    # Handshake errors (3xxx)
    DEAL_NOT_FOUND = "ERR_3001"
    HANDSHAKE_ALREADY_ACTIVE = "ERR_3002"
    PARTICIPANT_BUSY = "ERR_3003"
    HANDSHAKE_IN_PROGRESS = "ERR_3004"

    # Credit errors (4xxx)
    INSUFFICIENT_FUNDS = "ERR_4002"
    INVALID_AMOUNT = "ERR_4003"

    # State machine errors (6xxx)
    STALE_STATE = "ERR_6001"


class AppException(Exception):
    """Base exception for all application errors"""

    def __init__(
        self,
        message: str,
        error_code: ErrorCode = ErrorCode.INTERNAL_ERROR,
        status_code: int = 500,
        details: dict[str, Any] | None = None
    ):
        super().__init__(message)
        self.message = message
        self.error_code = error_code
        self.status_code = status_code
        self.details = details or {}

    def to_dict(self) -> dict[str, Any]:
        """Convert exception to dictionary for API response"""
        return {
            "error": {
                "code": self.error_code.value,
                "message": self.message,
                "details": self.details
            }
        }


class ValidationException(AppException):
    """Raised when input validation fails"""

    def __init__(
        self,
        message: str,
        field: str | None = None,
        details: dict[str, Any] | None = None
    ):
        super().__init__(
            message=message,
            error_code=ErrorCode.VALIDATION_ERROR,
            status_code=400,
            details=details
        )
        if field:
            self.details["field"] = field


class NotFoundException(AppException):
    """Raised when a requested resource is not found"""

    def __init__(
        self,
        resource: str,
        identifier: Any,
        error_code: ErrorCode = ErrorCode.NOT_FOUND
    ):
        super().__init__(
            message=f"{resource} not found: {identifier}",
            error_code=error_code,
            status_code=404,
            details={"resource": resource, "identifier": str(identifier)}
        )


class ForbiddenActionError(AppException):
    """Raised when the actor is not allowed to perform an action; checked before any write"""

    def __init__(self, message: str, user_id: str, details: dict[str, Any] | None = None):
        super().__init__(
            message=message,
            error_code=ErrorCode.FORBIDDEN,
            status_code=403,
            details=details
        )
        self.details["user_id"] = user_id


class ConflictException(AppException):
    """Raised when an operation lost a race or conflicts with current state"""

    def __init__(
        self,
        message: str,
        error_code: ErrorCode,
        details: dict[str, Any] | None = None
    ):
        super().__init__(
            message=message,
            error_code=error_code,
            status_code=409,
            details=details
        )


# ==================== Parking spots ====================

class SpotNotFoundError(NotFoundException):
    """Raised when a parking spot does not exist (deleted, swept or handed over)"""

    def __init__(self, spot_id: int):
        super().__init__("ParkingSpot", spot_id, error_code=ErrorCode.SPOT_NOT_FOUND)


class SpotAlreadyClaimedError(ConflictException):
    """Raised when the conditional claim update found the spot already occupied"""

    def __init__(self, spot_id: int):
        super().__init__(
            message=f"Parking spot {spot_id} has already been claimed",
            error_code=ErrorCode.SPOT_ALREADY_CLAIMED,
            details={"spot_id": spot_id}
        )


class SpotNotHeldError(ForbiddenActionError):
    """Raised when a user acts on a spot they are not parked in"""

    def __init__(self, spot_id: int, user_id: str):
        super().__init__(
            message=f"User does not hold parking spot {spot_id}",
            user_id=user_id,
            details={"spot_id": spot_id}
        )
        self.error_code = ErrorCode.SPOT_NOT_HELD


class AlreadyParkedError(ConflictException):
    """Raised when a user who already occupies a spot tries to take another one"""

    def __init__(self, user_id: str, session_id: int | None = None, spot_id: int | None = None):
        super().__init__(
            message="User already has an active parking session",
            error_code=ErrorCode.ALREADY_PARKED,
            details={"user_id": user_id, "session_id": session_id, "spot_id": spot_id}
        )


# ==================== Handshake ====================

class DealNotFoundError(NotFoundException):
    """Raised when a handshake deal does not exist"""

    def __init__(self, deal_id: int):
        super().__init__("HandshakeDeal", deal_id, error_code=ErrorCode.DEAL_NOT_FOUND)


class NotParticipantError(ForbiddenActionError):
    """Raised when the actor is not the required participant of a deal"""

    def __init__(self, deal_id: int, user_id: str, required_role: str):
        super().__init__(
            message=f"User may not act on handshake deal {deal_id} (requires {required_role})",
            user_id=user_id,
            details={"deal_id": deal_id, "required_role": required_role}
        )


class StaleStateError(ConflictException):
    """Raised when a deal is no longer in the status the transition expects.

    The caller should re-fetch the deal and decide whether to retry or abort.
    """

    def __init__(self, deal_id: int, current_status: str | None, expected_status: str | None = None):
        super().__init__(
            message=f"Handshake deal {deal_id} is in status '{current_status}'",
            error_code=ErrorCode.STALE_STATE,
            details={
                "deal_id": deal_id,
                "current_status": current_status,
                "expected_status": expected_status,
            }
        )


class HandshakeAlreadyActiveError(ConflictException):
    """Raised when a spot already has a non-terminal deal"""

    def __init__(self, spot_id: int, deal_id: int | None = None):
        super().__init__(
            message=f"Parking spot {spot_id} already has an active handshake",
            error_code=ErrorCode.HANDSHAKE_ALREADY_ACTIVE,
            details={"spot_id": spot_id, "deal_id": deal_id}
        )


class ParticipantBusyError(ConflictException):
    """Raised when a user already participates in another non-terminal deal"""

    def __init__(self, user_id: str, deal_id: int):
        super().__init__(
            message="User already participates in an active handshake",
            error_code=ErrorCode.PARTICIPANT_BUSY,
            details={"user_id": user_id, "deal_id": deal_id}
        )


class HandshakeInProgressError(ConflictException):
    """Raised when a spot cannot be released normally because a handshake is running on it"""

    def __init__(self, spot_id: int, deal_id: int):
        super().__init__(
            message=f"Parking spot {spot_id} has an active handshake; cancel it first",
            error_code=ErrorCode.HANDSHAKE_IN_PROGRESS,
            details={"spot_id": spot_id, "deal_id": deal_id}
        )


# ==================== Credits ====================

class InsufficientFundsError(AppException):
    """Raised when a debit would take a balance below zero; nothing is written"""

    def __init__(self, user_id: str, current_balance: int, required_amount: int):
        super().__init__(
            message="Insufficient credits",
            error_code=ErrorCode.INSUFFICIENT_FUNDS,
            status_code=400,
            details={
                "user_id": user_id,
                "balance": current_balance,
                "required": required_amount,
            }
        )


class InvalidAmountError(ValidationException):
    """Raised when a ledger amount is not a positive integer"""

    def __init__(self, amount: Any):
        super().__init__(
            message=f"Credit amount must be a positive integer, got {amount!r}",
            field="amount",
        )
        self.error_code = ErrorCode.INVALID_AMOUNT
